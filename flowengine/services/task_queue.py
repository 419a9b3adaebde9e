# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Task Queue

Accepts execution requests, returns a task id immediately and runs the
engine in a pool of asyncio workers. Status is polled from the store.

Lifecycle per task: pending -> running -> completed | failed | cancelled.
Every transition is a conditional update on the current status, so a task
cancelled while pending is never picked up, and a worker never overwrites
a terminal state.
"""

import asyncio
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from flowengine.core.errors import ConflictError, FlowEngineError, NotFoundError, sanitize_error_for_user
from flowengine.core.logging import get_service_logger, log_event
from flowengine.models import ApprovalRequest, Task, TaskKind, TaskStatus
from flowengine.storage.store import FAILED_RUNS, TASKS, Store
from flowengine.workflow.exceptions import SuspensionError
from flowengine.workflow.executor import WorkflowEngine
from flowengine.workflow.models import ExecutionResult, ExecutionStatus, now_iso

from .approval_service import ApprovalService
from .workflow_service import WorkflowService

logger = get_service_logger("queue")


def new_task_id() -> str:
    return f"task_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def task_status_payload(task: Task) -> Dict[str, Any]:
    """Polling wire shape: {taskId, status, result?, error?, executionId?}"""
    payload: Dict[str, Any] = {"taskId": task.id, "status": task.status.value}
    if task.status == TaskStatus.FAILED and task.execution_id is not None:
        payload["executionId"] = task.execution_id
    if task.status == TaskStatus.COMPLETED and task.result is not None:
        payload["result"] = task.result.to_wire()
    if task.error is not None:
        payload["error"] = task.error
    return payload


class TaskQueue:
    """
    Asynchronous execution queue.

    Responsibilities:
    - Create pending tasks and hand them to workers
    - Drive each task through the engine with a whole-task timeout
    - Cooperative cancellation, stuck-task detection and cleanup
    """

    def __init__(
        self,
        store: Store,
        workflows: WorkflowService,
        engine: WorkflowEngine,
        approvals: ApprovalService,
        max_concurrent: int = 5,
        task_timeout: Optional[float] = 300.0,
        retention: float = 1800.0,
        cleanup_interval: float = 60.0,
        stuck_threshold: float = 900.0,
        snapshot_retention: float = 86400.0,
    ):
        self.store = store
        self.workflows = workflows
        self.engine = engine
        self.approvals = approvals
        self.max_concurrent = max_concurrent
        self.task_timeout = task_timeout
        self.retention = retention
        self.cleanup_interval = cleanup_interval
        self.stuck_threshold = stuck_threshold
        self.snapshot_retention = snapshot_retention

        self._queue: asyncio.Queue = asyncio.Queue()
        self._workers: List[asyncio.Task] = []
        self._cleanup: Optional[asyncio.Task] = None
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._done_events: Dict[str, asyncio.Event] = {}

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    # ------------------------------------------------------------ submission

    async def enqueue(
        self,
        workflow_id: str,
        organization_id: Optional[str] = None,
        user_id: Optional[str] = None,
        input_data: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Create a pending task and schedule it. Returns the task id."""
        task = Task(
            id=new_task_id(),
            kind=TaskKind.EXECUTE,
            workflow_id=workflow_id,
            organization_id=organization_id,
            submitted_by=user_id,
            input=input_data or {},
            created_at=now_iso(),
        )
        return await self._submit(task)

    async def enqueue_resume(self, request: ApprovalRequest) -> str:
        """Schedule the continuation of a run whose approval became terminal"""
        task = Task(
            id=new_task_id(),
            kind=TaskKind.RESUME,
            workflow_id=request.workflow_id,
            organization_id=request.organization_id,
            approval_request_id=request.id,
            created_at=now_iso(),
        )
        return await self._submit(task)

    async def enqueue_retry(self, execution_id: str, organization_id: Optional[str] = None,
                            user_id: Optional[str] = None) -> str:
        """Schedule a failed run to continue from its failing node"""
        snapshot = await self.store.get(FAILED_RUNS, execution_id)
        owner = (snapshot or {}).get("context", {}).get("organization_id")
        if snapshot is None or (organization_id and owner and owner != organization_id):
            raise NotFoundError("Failed run", execution_id)
        if snapshot.get("state") != "failed":
            raise ConflictError(f"Run is already {snapshot.get('state')}", resource=execution_id)

        task = Task(
            id=new_task_id(),
            kind=TaskKind.RETRY,
            workflow_id=snapshot.get("workflow_id"),
            organization_id=owner,
            submitted_by=user_id,
            execution_id=execution_id,
            created_at=now_iso(),
        )
        return await self._submit(task)

    async def _submit(self, task: Task) -> str:
        while not await self.store.create(TASKS, task.id, task.to_record()):
            task.id = new_task_id()
        self._done_events[task.id] = asyncio.Event()
        self._queue.put_nowait(task.id)

        log_event(logger, "Task enqueued", task_id=task.id, kind=task.kind.value,
                  workflow_id=task.workflow_id, queue_size=self._queue.qsize())
        return task.id

    # --------------------------------------------------------------- queries

    async def get_task(self, task_id: str) -> Optional[Task]:
        record = await self.store.get(TASKS, task_id)
        return Task.model_validate(record) if record is not None else None

    async def get_task_with_details(self, task_id: str) -> Optional[Dict[str, Any]]:
        """
        Current status plus the execution payload once terminal.

        Returns None for an unknown or expired task id.
        """
        task = await self.get_task(task_id)
        if task is None:
            return None
        execution = task.result.to_wire() if task.result is not None else None
        return {"task": task.to_wire(), "execution": execution}

    async def get_queue_status(self) -> Dict[str, Any]:
        counts = {status.value: 0 for status in TaskStatus}
        for record in await self.store.list(TASKS):
            counts[record["status"]] = counts.get(record["status"], 0) + 1
        return {
            "workers": len(self._workers),
            "max_concurrent": self.max_concurrent,
            "queued": self._queue.qsize(),
            "tasks": counts,
        }

    async def find_stuck_tasks(self, threshold: Optional[float] = None) -> List[Task]:
        """Running tasks whose startedAt is older than the liveness threshold"""
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=threshold or self.stuck_threshold)
        stuck = []
        for record in await self.store.list(TASKS, status=TaskStatus.RUNNING.value):
            task = Task.model_validate(record)
            if task.started_at and datetime.fromisoformat(task.started_at) < cutoff:
                stuck.append(task)
        if stuck:
            log_event(logger, "Stuck tasks detected", "WARNING",
                      task_ids=[t.id for t in stuck], error_kind="infrastructure")
        return stuck

    async def wait_for(self, task_id: str, timeout: float = 30.0, poll_interval: float = 0.1) -> Task:
        """Wait until the task is terminal. Raises asyncio.TimeoutError."""
        event = self._done_events.get(task_id)
        if event is not None:
            await asyncio.wait_for(event.wait(), timeout=timeout)
            return await self.get_task(task_id)

        # Task created by another process: poll the store
        deadline = time.monotonic() + timeout
        while True:
            task = await self.get_task(task_id)
            if task is None:
                raise NotFoundError("Task", task_id)
            if task.status.is_terminal:
                return task
            if time.monotonic() >= deadline:
                raise asyncio.TimeoutError()
            await asyncio.sleep(poll_interval)

    # ---------------------------------------------------------- cancellation

    async def cancel_task(self, task_id: str) -> Task:
        """
        Cancel a task.

        Pending tasks become cancelled at once. Running tasks are signalled
        and stop between nodes.
        """
        record = await self.store.update(
            TASKS, task_id,
            {"status": TaskStatus.CANCELLED.value, "completed_at": now_iso(), "error": "Task cancelled"},
            expected={"status": TaskStatus.PENDING.value},
        )
        if record is not None:
            self._mark_done(task_id)
            log_event(logger, "Task cancelled", task_id=task_id)
            return Task.model_validate(record)

        task = await self.get_task(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        if task.status == TaskStatus.RUNNING and task_id in self._cancel_events:
            self._cancel_events[task_id].set()
            log_event(logger, "Task cancellation requested", task_id=task_id)
            return task
        raise ConflictError(f"Task is already {task.status.value}", resource=task_id)

    # ----------------------------------------------------------- lifecycle

    async def start(self) -> None:
        if self._workers:
            return

        # Pending tasks survive restarts; running ones are left for stuck detection
        for record in await self.store.list(TASKS, status=TaskStatus.PENDING.value):
            if record["id"] not in self._done_events:
                self._done_events[record["id"]] = asyncio.Event()
                self._queue.put_nowait(record["id"])

        self._workers = [
            asyncio.create_task(self._worker(index)) for index in range(self.max_concurrent)
        ]
        self._cleanup = asyncio.create_task(self._cleanup_loop())
        logger.info(f"Task queue started with {self.max_concurrent} workers")

    async def stop(self) -> None:
        tasks = list(self._workers)
        if self._cleanup is not None:
            tasks.append(self._cleanup)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._cleanup = None
        logger.info("Task queue stopped")

    async def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        """Drop terminal tasks older than the retention window"""
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(seconds=self.retention)
        removed = 0
        for record in await self.store.list(TASKS):
            task = Task.model_validate(record)
            if not task.status.is_terminal or not task.completed_at:
                continue
            if datetime.fromisoformat(task.completed_at) < cutoff:
                await self.store.delete(TASKS, task.id)
                self._done_events.pop(task.id, None)
                removed += 1
        if removed:
            log_event(logger, "Expired tasks removed", removed=removed)
        return removed

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                await self.cleanup_expired()
                await self.engine.prune_snapshots(self.snapshot_retention)
                await self.find_stuck_tasks()
            except FlowEngineError as e:
                log_event(logger, "Queue maintenance failed", "ERROR",
                          error_kind="infrastructure", error=e.message)

    # -------------------------------------------------------------- workers

    async def _worker(self, index: int) -> None:
        while True:
            task_id = await self._queue.get()
            try:
                await self._execute(task_id)
            except Exception as e:
                # Leaves the task running; stuck detection surfaces it
                log_event(logger, "Worker crashed on task", "ERROR", worker=index,
                          task_id=task_id, error_kind="infrastructure", error=str(e))
            finally:
                self._queue.task_done()

    async def _execute(self, task_id: str) -> None:
        record = await self.store.update(
            TASKS, task_id,
            {"status": TaskStatus.RUNNING.value, "started_at": now_iso()},
            expected={"status": TaskStatus.PENDING.value},
        )
        if record is None:
            return

        task = Task.model_validate(record)
        cancel_event = asyncio.Event()
        self._cancel_events[task_id] = cancel_event
        log_event(logger, "Task started", task_id=task_id, kind=task.kind.value, workflow_id=task.workflow_id)

        try:
            if self.task_timeout:
                result = await asyncio.wait_for(self._run(task, cancel_event), timeout=self.task_timeout)
            else:
                result = await self._run(task, cancel_event)
        except asyncio.TimeoutError:
            await self._finish(task_id, TaskStatus.FAILED,
                               error=f"Task execution timed out after {self.task_timeout}s")
        except FlowEngineError as e:
            await self._finish(task_id, TaskStatus.FAILED, error=e.message)
        except SuspensionError as e:
            await self._finish(task_id, TaskStatus.FAILED, error=str(e))
        except Exception as e:
            log_event(logger, "Task crashed", "ERROR", task_id=task_id,
                      error_kind="infrastructure", error=str(e))
            await self._finish(task_id, TaskStatus.FAILED, error=sanitize_error_for_user(e))
        else:
            if result.status == ExecutionStatus.FAILED:
                await self._finish(task_id, TaskStatus.FAILED, error=result.error,
                                   execution_id=result.execution_id)
            elif result.status == ExecutionStatus.CANCELLED:
                await self._finish(task_id, TaskStatus.CANCELLED, error=result.error)
            else:
                # SUSPENDED also ends the task; the run continues in a resume task
                await self._finish(task_id, TaskStatus.COMPLETED, result=result)
        finally:
            self._cancel_events.pop(task_id, None)

    async def _run(self, task: Task, cancel_event: asyncio.Event) -> ExecutionResult:
        if task.kind == TaskKind.RESUME:
            request = await self.approvals.get_request(task.approval_request_id)
            return await self.engine.resume(
                request.id,
                self.approvals.build_outcome(request),
                cancel_event=cancel_event,
            )
        if task.kind == TaskKind.RETRY:
            return await self.engine.resume_failed(task.execution_id, cancel_event=cancel_event)

        return await self.workflows.execute_workflow(
            task.workflow_id,
            organization_id=task.organization_id,
            user_id=task.submitted_by,
            input_data=task.input,
            cancel_event=cancel_event,
        )

    async def _finish(
        self,
        task_id: str,
        status: TaskStatus,
        result: Optional[ExecutionResult] = None,
        error: Optional[str] = None,
        execution_id: Optional[str] = None,
    ) -> None:
        updates: Dict[str, Any] = {"status": status.value, "completed_at": now_iso(), "error": error}
        if execution_id is not None:
            # Failed runs keep no result; the id is what a retry needs
            updates["execution_id"] = execution_id
        if result is not None:
            updates["result"] = result.model_dump(mode="json")
        await self.store.update(TASKS, task_id, updates, expected={"status": TaskStatus.RUNNING.value})
        self._mark_done(task_id)
        log_event(logger, "Task finished", "INFO" if status == TaskStatus.COMPLETED else "WARNING",
                  task_id=task_id, status=status.value, error=error)

    def _mark_done(self, task_id: str) -> None:
        event = self._done_events.get(task_id)
        if event is not None:
            event.set()
