# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Dependency injection for the HTTP surface.

Services are built once in the app lifespan and kept on app.state.
"""

from fastapi import Request

from flowengine.services.approval_service import ApprovalService
from flowengine.services.scheduler import TriggerScheduler
from flowengine.services.task_queue import TaskQueue
from flowengine.services.workflow_service import WorkflowService


def get_workflow_service(request: Request) -> WorkflowService:
    return request.app.state.workflow_service


def get_task_queue(request: Request) -> TaskQueue:
    return request.app.state.task_queue


def get_approval_service(request: Request) -> ApprovalService:
    return request.app.state.approval_service


def get_scheduler(request: Request) -> TriggerScheduler:
    return request.app.state.scheduler
