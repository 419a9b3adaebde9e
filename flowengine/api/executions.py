# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Execution API Routes

- POST /executions/{id}/retry   - rerun a failed run from its failing node
"""

from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from flowengine.models import TaskStatus
from flowengine.services.task_queue import TaskQueue

from .dependencies import get_task_queue

router = APIRouter(prefix="/executions", tags=["executions"])


class RetryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    organization_id: Optional[str] = Field(default=None, alias="organizationId")
    user_id: Optional[str] = Field(default=None, alias="userId")


@router.post("/{execution_id}/retry")
async def retry_execution(
    execution_id: str,
    body: Optional[RetryRequest] = None,
    queue: TaskQueue = Depends(get_task_queue),
):
    """Queue the retry; earlier node outputs are reused. Answers 202 with a task id."""
    body = body or RetryRequest()
    task_id = await queue.enqueue_retry(
        execution_id,
        organization_id=body.organization_id,
        user_id=body.user_id,
    )
    return JSONResponse(
        status_code=202,
        content={"taskId": task_id, "executionId": execution_id, "status": TaskStatus.PENDING.value},
    )
