# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
FastAPI application - workflow execution service.

Wires the store, clients, engine and services at startup and keeps them on
app.state for dependency injection.
"""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from flowengine.api import approvals, executions, tasks, triggers, webhooks, workflows
from flowengine.clients.ai_provider import AIProviderClient, HttpAIProviderClient
from flowengine.clients.credentials import ConfigCredentialStore, CredentialStore
from flowengine.clients.sandbox import CodeSandbox, SubprocessSandbox
from flowengine.core.config import Config, get_config
from flowengine.core.errors import FlowEngineError
from flowengine.core.logging import get_service_logger
from flowengine.processors import build_default_registry
from flowengine.services.approval_service import ApprovalService
from flowengine.services.scheduler import TriggerScheduler
from flowengine.services.task_queue import TaskQueue
from flowengine.services.workflow_service import WorkflowService
from flowengine.storage.store import Store, create_store
from flowengine.workflow.executor import WorkflowEngine

logger = get_service_logger("main")


def create_app(
    config: Optional[Config] = None,
    store: Optional[Store] = None,
    ai_client: Optional[AIProviderClient] = None,
    credentials: Optional[CredentialStore] = None,
    sandbox: Optional[CodeSandbox] = None,
) -> FastAPI:
    """
    Build the application.

    Any collaborator left as None is created from configuration.
    """
    config = config or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        record_store = store or create_store(config.store_backend, config.tasks_path)

        approval_service = ApprovalService(
            record_store,
            default_timeout=config.approval_default_timeout,
            retention=config.approval_retention,
        )
        registry = build_default_registry(
            ai_client or HttpAIProviderClient(config.ai_provider_urls, timeout=config.ai_request_timeout),
            credentials or ConfigCredentialStore(config.ai_configs),
            sandbox or SubprocessSandbox(max_log_lines=config.code_max_log_lines),
            approval_service,
            config,
        )
        engine = WorkflowEngine(registry, record_store)
        workflow_service = WorkflowService(Path(config.workflows_path), engine)
        queue = TaskQueue(
            record_store,
            workflow_service,
            engine,
            approval_service,
            max_concurrent=config.queue_max_concurrent,
            task_timeout=config.queue_task_timeout,
            retention=config.queue_task_retention,
            cleanup_interval=config.queue_cleanup_interval,
            stuck_threshold=config.queue_stuck_threshold,
            snapshot_retention=config.queue_snapshot_retention,
        )
        # Terminal approvals continue their run as a resume task
        approval_service.resume_handler = queue.enqueue_resume

        scheduler = TriggerScheduler(
            record_store,
            queue,
            workflow_service,
            default_timezone=config.scheduler_timezone,
            retry_base_delay=config.scheduler_retry_base_delay,
            retry_max_delay=config.scheduler_retry_max_delay,
            max_logs_per_trigger=config.scheduler_max_logs_per_trigger,
        )

        app.state.store = record_store
        app.state.engine = engine
        app.state.workflow_service = workflow_service
        app.state.approval_service = approval_service
        app.state.task_queue = queue
        app.state.scheduler = scheduler

        await queue.start()
        await scheduler.initialize()
        approval_service.start_sweeper(config.approval_sweep_interval)
        logger.info("Workflow execution service started")

        try:
            yield
        finally:
            await scheduler.stop_all()
            await approval_service.stop_sweeper()
            await queue.stop()
            logger.info("Workflow execution service stopped")

    app = FastAPI(
        title="FlowEngine",
        description="Workflow execution engine with task queue, approvals and triggers",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(FlowEngineError)
    async def flowengine_error_handler(request: Request, exc: FlowEngineError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.get("/health")
    async def health(request: Request):
        queue: TaskQueue = request.app.state.task_queue
        scheduler: TriggerScheduler = request.app.state.scheduler
        return {
            "status": "healthy" if queue.is_running else "degraded",
            "queue": await queue.get_queue_status(),
            "scheduler": {
                "jobs": scheduler.get_job_count(),
                "active_jobs": scheduler.get_active_jobs(),
            },
        }

    app.include_router(workflows.router)
    app.include_router(tasks.router)
    app.include_router(webhooks.router)
    app.include_router(approvals.router)
    app.include_router(triggers.router)
    app.include_router(executions.router)

    return app


def main():
    config = get_config()
    uvicorn.run(create_app(config), host=config.host, port=config.port)


if __name__ == "__main__":
    main()
