# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Workflow API Routes

- GET  /workflows                 - list known workflow definitions
- POST /workflows/{id}/execute    - run asynchronously (task id) or synchronously
"""

from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from flowengine.core.errors import NotFoundError, ValidationError
from flowengine.models import TaskStatus
from flowengine.services.task_queue import TaskQueue
from flowengine.services.workflow_service import WorkflowService

from .dependencies import get_task_queue, get_workflow_service

router = APIRouter(prefix="/workflows", tags=["workflows"])


class ExecutionRequest(BaseModel):
    """Request to execute a workflow"""
    model_config = ConfigDict(populate_by_name=True)

    organization_id: Optional[str] = Field(default=None, alias="organizationId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    input: Dict[str, Any] = Field(default_factory=dict)
    mode: Literal["async", "sync"] = "async"


@router.get("")
async def list_workflows(
    service: WorkflowService = Depends(get_workflow_service)
) -> List[Dict[str, Any]]:
    """List all known workflows"""
    return await service.list_workflows()


@router.post("/{workflow_id}/execute")
async def execute_workflow(
    workflow_id: str,
    request: ExecutionRequest,
    service: WorkflowService = Depends(get_workflow_service),
    queue: TaskQueue = Depends(get_task_queue),
):
    """Execute a workflow. Async mode answers 202 with a task id to poll."""
    try:
        definition = await service.get_workflow(workflow_id, request.organization_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    if not definition.active:
        raise HTTPException(status_code=400, detail=f"Workflow '{workflow_id}' is not active")

    if request.mode == "sync":
        try:
            result = await service.execute_workflow(
                workflow_id,
                organization_id=request.organization_id,
                user_id=request.user_id,
                input_data=request.input,
            )
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=e.message)
        return result.to_wire()

    task_id = await queue.enqueue(
        workflow_id,
        organization_id=request.organization_id,
        user_id=request.user_id,
        input_data=request.input,
    )
    return JSONResponse(status_code=202, content={"taskId": task_id, "status": TaskStatus.PENDING.value})
