# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Task API Routes

- GET    /tasks            - queue status
- GET    /tasks/{id}       - poll a task
- DELETE /tasks/{id}       - cancel a task
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException

from flowengine.core.errors import ConflictError, NotFoundError
from flowengine.services.task_queue import TaskQueue, task_status_payload

from .dependencies import get_task_queue

router = APIRouter(prefix="/tasks", tags=["tasks"])


@router.get("")
async def get_queue_status(queue: TaskQueue = Depends(get_task_queue)) -> Dict[str, Any]:
    return await queue.get_queue_status()


@router.get("/{task_id}")
async def get_task(task_id: str, queue: TaskQueue = Depends(get_task_queue)) -> Dict[str, Any]:
    """Poll task status; result is present once completed"""
    task = await queue.get_task(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"Task '{task_id}' not found")
    return task_status_payload(task)


@router.delete("/{task_id}")
async def cancel_task(task_id: str, queue: TaskQueue = Depends(get_task_queue)) -> Dict[str, Any]:
    try:
        task = await queue.cancel_task(task_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=e.message)
    return task_status_payload(task)
