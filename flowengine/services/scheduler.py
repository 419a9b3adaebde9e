# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Trigger Scheduler

Owns the live job table for SCHEDULE triggers (one asyncio task per
trigger id, driven by croniter) and fires WEBHOOK triggers. Every fire
goes through the task queue; the scheduler waits on the task and applies
the trigger's retry policy, writing one TriggerLog per attempt.
"""

import asyncio
import hashlib
import hmac
import json
import uuid
import weakref
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from flowengine.core.config import get_webhook_secret_override
from flowengine.core.errors import (
    ConflictError, FlowEngineError, NotFoundError, UnauthorizedError, ValidationError,
)
from flowengine.core.logging import get_service_logger, log_event
from flowengine.models import Task, TaskStatus, Trigger, TriggerLog, TriggerLogStatus, TriggerType
from flowengine.storage.store import TRIGGER_LOGS, TRIGGERS, Store
from flowengine.workflow.models import now_iso

from .task_queue import TaskQueue
from .workflow_service import WorkflowService

logger = get_service_logger("scheduler")

SIGNATURE_PREFIX = "sha256="

# Written by the fire path only; saves and updates never touch them
COUNTER_DEFAULTS = {
    "trigger_count": 0,
    "last_triggered_at": None,
    "last_success_at": None,
    "last_failure_at": None,
}


def verify_webhook_signature(secret: str, payload_body: bytes, signature_header: Optional[str]) -> bool:
    """Verify the `sha256=<hex>` HMAC of the raw body in constant time."""
    if not signature_header or not signature_header.startswith(SIGNATURE_PREFIX):
        return False

    signature = signature_header[len(SIGNATURE_PREFIX):]

    mac = hmac.new(secret.encode(), msg=payload_body, digestmod=hashlib.sha256)
    return hmac.compare_digest(mac.hexdigest(), signature)


def validate_cron(cron_expression: str) -> None:
    if not cron_expression or not croniter.is_valid(cron_expression):
        raise ValidationError(f"Invalid cron expression: {cron_expression!r}", field="cronExpression")


def resolve_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timezone: {name!r}", field="timezone")


@dataclass
class ScheduledJob:
    """A live cron job for one trigger"""
    trigger_id: str
    workflow_id: str
    cron_expression: str
    timezone: str
    organization_id: Optional[str] = None
    created_by_id: Optional[str] = None
    next_run: Optional[datetime] = None
    task: Optional[asyncio.Task] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "triggerId": self.trigger_id,
            "workflowId": self.workflow_id,
            "cronExpression": self.cron_expression,
            "timezone": self.timezone,
            "nextRun": self.next_run.isoformat() if self.next_run else None,
        }


class TriggerScheduler:
    """
    Schedules and fires triggers.

    Responsibilities:
    - Upsert and remove cron jobs keyed by trigger id
    - Fire triggers through the task queue
    - Retry failed runs per trigger policy and keep counters current
    """

    def __init__(
        self,
        store: Store,
        queue: TaskQueue,
        workflows: WorkflowService,
        default_timezone: str = "UTC",
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 60.0,
        attempt_timeout: Optional[float] = None,
        max_logs_per_trigger: int = 200,
    ):
        self.store = store
        self.queue = queue
        self.workflows = workflows
        self.default_timezone = default_timezone
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.attempt_timeout = attempt_timeout or (queue.task_timeout or 300.0) + 30.0
        self.max_logs_per_trigger = max_logs_per_trigger

        self._jobs: Dict[str, ScheduledJob] = {}
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._fires: Set[asyncio.Task] = set()

    def _get_lock(self, trigger_id: str) -> asyncio.Lock:
        lock = self._locks.get(trigger_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[trigger_id] = lock
        return lock

    # ------------------------------------------------------------ job table

    async def schedule_job(
        self,
        trigger_id: str,
        cron_expression: str,
        workflow_id: str,
        organization_id: Optional[str] = None,
        created_by_id: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> ScheduledJob:
        """Create or replace the cron job for a trigger id."""
        options = options or {}
        validate_cron(cron_expression)
        tz_name = options.get("timezone") or self.default_timezone
        resolve_timezone(tz_name)

        async with self._get_lock(trigger_id):
            await self._cancel_job(self._jobs.pop(trigger_id, None))

            job = ScheduledJob(
                trigger_id=trigger_id,
                workflow_id=workflow_id,
                cron_expression=cron_expression,
                timezone=tz_name,
                organization_id=organization_id,
                created_by_id=created_by_id,
            )
            job.next_run = self._next_run(job)
            job.task = asyncio.create_task(self._job_loop(job))
            self._jobs[trigger_id] = job

        log_event(logger, "Job scheduled", trigger_id=trigger_id, workflow_id=workflow_id,
                  cron_expression=cron_expression, timezone=tz_name,
                  next_run=job.next_run.isoformat())
        return job

    async def remove_job(self, trigger_id: str) -> bool:
        """Deregister a job. Returns False when there was none."""
        async with self._get_lock(trigger_id):
            job = self._jobs.pop(trigger_id, None)
            await self._cancel_job(job)

        if job is not None:
            log_event(logger, "Job removed", trigger_id=trigger_id)
        return job is not None

    async def update_job(self, trigger_id: str, **changes: Any) -> Optional[ScheduledJob]:
        """Apply configuration changes to a stored trigger and re-sync its job."""
        counters = set(changes) & set(COUNTER_DEFAULTS)
        if counters:
            raise ValidationError(f"Trigger counters cannot be set: {sorted(counters)}", field=sorted(counters)[0])

        trigger = await self.get_trigger(trigger_id)
        updated = trigger.model_copy(update=changes)
        self._check_config(updated)
        await self._check_webhook_path(updated)

        fields = {key: value for key, value in updated.to_record().items() if key in changes}
        record = await self.store.update(TRIGGERS, trigger_id, fields)
        if record is None:
            raise NotFoundError("Trigger", trigger_id)
        return await self._sync_job(Trigger.model_validate(record))

    async def toggle_job(self, trigger_id: str, enabled: bool) -> Optional[ScheduledJob]:
        return await self.update_job(trigger_id, enabled=enabled)

    def has_job(self, trigger_id: str) -> bool:
        return trigger_id in self._jobs

    def get_job_count(self) -> int:
        return len(self._jobs)

    def get_active_jobs(self) -> List[Dict[str, Any]]:
        return [job.to_dict() for job in self._jobs.values()]

    def get_next_run(self, trigger_id: str) -> Optional[datetime]:
        job = self._jobs.get(trigger_id)
        return job.next_run if job else None

    def get_status(self) -> Dict[str, Any]:
        return {
            "jobs": self.get_job_count(),
            "in_flight_fires": len(self._fires),
            "active_jobs": self.get_active_jobs(),
        }

    async def initialize(self) -> int:
        """Register jobs for every enabled SCHEDULE trigger in the store."""
        count = 0
        for record in await self.store.list(TRIGGERS, type=TriggerType.SCHEDULE.value, enabled=True):
            trigger = Trigger.model_validate(record)
            try:
                await self._sync_job(trigger)
                count += 1
            except ValidationError as e:
                log_event(logger, "Trigger not scheduled", "ERROR",
                          trigger_id=trigger.id, error_kind="validation", error=e.message)
        logger.info(f"Scheduler initialized with {count} jobs")
        return count

    async def stop_all(self) -> None:
        for trigger_id in list(self._jobs):
            await self.remove_job(trigger_id)
        fires = list(self._fires)
        for fire in fires:
            fire.cancel()
        await asyncio.gather(*fires, return_exceptions=True)
        self._fires.clear()
        logger.info("Scheduler stopped")

    # --------------------------------------------------------- trigger records

    async def save_trigger(self, trigger: Trigger) -> Trigger:
        """
        Create or replace a trigger's configuration and sync its job.

        Counters are kept from the stored record on replace and start at zero
        on create, whatever the caller sent.
        """
        self._check_config(trigger)
        await self._check_webhook_path(trigger)

        record = {**trigger.to_record(), **COUNTER_DEFAULTS}
        if not await self.store.create(TRIGGERS, trigger.id, record):
            config = {key: value for key, value in record.items() if key not in COUNTER_DEFAULTS}
            if await self.store.update(TRIGGERS, trigger.id, config) is None:
                raise ConflictError("Trigger was deleted while saving", resource=trigger.id)

        saved = await self.get_trigger(trigger.id)
        await self._sync_job(saved)
        return saved

    def _check_config(self, trigger: Trigger) -> None:
        if trigger.type == TriggerType.SCHEDULE:
            validate_cron(trigger.cron_expression)
        elif not trigger.webhook_path:
            raise ValidationError("Webhook trigger requires webhookPath", field="webhookPath")

    async def _check_webhook_path(self, trigger: Trigger) -> None:
        """A webhook path routes to exactly one trigger"""
        if trigger.type != TriggerType.WEBHOOK:
            return
        for record in await self.store.list(TRIGGERS, type=TriggerType.WEBHOOK.value,
                                            webhook_path=trigger.webhook_path):
            if record["id"] != trigger.id:
                raise ConflictError(
                    f"Webhook path '{trigger.webhook_path}' is already used by trigger {record['id']}",
                    resource=trigger.id,
                )

    async def delete_trigger(self, trigger_id: str) -> bool:
        await self.remove_job(trigger_id)
        deleted = await self.store.delete(TRIGGERS, trigger_id)
        for log in await self.store.list(TRIGGER_LOGS, trigger_id=trigger_id):
            await self.store.delete(TRIGGER_LOGS, log["id"])
        return deleted

    async def get_trigger(self, trigger_id: str) -> Trigger:
        record = await self.store.get(TRIGGERS, trigger_id)
        if record is None:
            raise NotFoundError("Trigger", trigger_id)
        return Trigger.model_validate(record)

    async def get_logs(self, trigger_id: str) -> List[TriggerLog]:
        logs = [TriggerLog.model_validate(r) for r in await self.store.list(TRIGGER_LOGS, trigger_id=trigger_id)]
        return sorted(logs, key=lambda log: (log.started_at, log.attempt))

    async def _sync_job(self, trigger: Trigger) -> Optional[ScheduledJob]:
        if trigger.type != TriggerType.SCHEDULE or not trigger.enabled:
            await self.remove_job(trigger.id)
            return None
        return await self.schedule_job(
            trigger.id,
            trigger.cron_expression,
            trigger.workflow_id,
            organization_id=trigger.organization_id,
            created_by_id=trigger.created_by_id,
            options={"timezone": trigger.timezone},
        )

    # ----------------------------------------------------------------- firing

    async def trigger_now(self, trigger_id: str) -> List[TriggerLog]:
        """Fire a trigger immediately and wait for every attempt."""
        return await self.fire_trigger(trigger_id, source="manual")

    async def fire_trigger(self, trigger_id: str, source: str = "schedule",
                           payload: Optional[Dict[str, Any]] = None) -> List[TriggerLog]:
        started = await self._begin_fire(trigger_id, source, payload)
        if started is None:
            return []
        trigger, first_log, input_data = started
        if first_log.status != TriggerLogStatus.RUNNING:
            return [first_log]
        return await self._complete_fire(trigger, first_log, input_data)

    async def fire_webhook(self, path: str, body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Handle an inbound webhook.

        Verifies the signature, enqueues the first attempt and returns at
        once; waiting and retries continue in the background.
        """
        records = await self.store.list(TRIGGERS, type=TriggerType.WEBHOOK.value, webhook_path=path)
        if not records:
            raise NotFoundError("Webhook", path)
        # Paths are unique per save; an enabled match wins over stale duplicates
        records.sort(key=lambda r: not r.get("enabled", True))
        trigger = Trigger.model_validate(records[0])

        secret = trigger.webhook_secret or get_webhook_secret_override()
        if secret and not verify_webhook_signature(secret, body, signature):
            log_event(logger, "Webhook signature rejected", "WARNING", trigger_id=trigger.id, path=path)
            raise UnauthorizedError("Invalid webhook signature")

        try:
            payload = json.loads(body) if body else {}
        except ValueError:
            raise ValidationError("Webhook body must be JSON", field="body")

        started = await self._begin_fire(trigger.id, "webhook", payload)
        if started is None:
            raise NotFoundError("Trigger", trigger.id)
        trigger, first_log, input_data = started

        if first_log.status == TriggerLogStatus.RUNNING:
            self._spawn(self._complete_fire(trigger, first_log, input_data))

        return {
            "triggerId": trigger.id,
            "taskId": first_log.task_id,
            "logId": first_log.id,
            "status": first_log.status.value,
        }

    def _build_input(self, trigger: Trigger, source: str, payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        input_data = dict(trigger.input_template)
        input_data["_trigger"] = {
            "triggerId": trigger.id,
            "type": trigger.type.value,
            "source": source,
            "triggeredAt": now_iso(),
        }
        if payload is not None:
            input_data["payload"] = payload
        return input_data

    async def _begin_fire(
        self, trigger_id: str, source: str, payload: Optional[Dict[str, Any]]
    ) -> Optional[Tuple[Trigger, TriggerLog, Dict[str, Any]]]:
        """Checks, counters and the first enqueue. None when the trigger is gone."""
        record = await self.store.get(TRIGGERS, trigger_id)
        if record is None:
            log_event(logger, "Fired trigger no longer exists", "WARNING", trigger_id=trigger_id)
            await self.remove_job(trigger_id)
            return None
        trigger = Trigger.model_validate(record)
        input_data = self._build_input(trigger, source, payload)

        if not trigger.enabled:
            return trigger, await self._skip(trigger, 1, input_data, "Trigger is disabled"), input_data

        try:
            workflow = await self.workflows.get_workflow(trigger.workflow_id, trigger.organization_id)
        except NotFoundError as e:
            return trigger, await self._skip(trigger, 1, input_data, e.message), input_data
        if not workflow.active:
            return trigger, await self._skip(trigger, 1, input_data, "Workflow is not active"), input_data

        await self._bump_counters(trigger.id, fired=True)
        log = await self._open_log(trigger, 1, input_data)
        log.task_id = await self._enqueue(trigger, input_data, log)
        return trigger, log, input_data

    async def _complete_fire(self, trigger: Trigger, log: TriggerLog, input_data: Dict[str, Any]) -> List[TriggerLog]:
        """Wait on attempts and retry per policy"""
        attempts = 1 + max(trigger.max_retries, 0) if trigger.retry_on_fail else 1
        logs = [log]

        for attempt in range(1, attempts + 1):
            if attempt > 1:
                delay = min(self.retry_base_delay * (2 ** (attempt - 2)), self.retry_max_delay)
                await asyncio.sleep(delay)

                current = await self.store.get(TRIGGERS, trigger.id)
                if current is None or not current.get("enabled"):
                    logs.append(await self._skip(trigger, attempt, input_data, "Trigger disabled before retry"))
                    break

                log = await self._open_log(trigger, attempt, input_data)
                log.task_id = await self._enqueue(trigger, input_data, log)
                logs.append(log)

            if log.status == TriggerLogStatus.FAILED:
                # Enqueue itself failed; already closed
                success, error = False, log.error_message
            else:
                success, error = await self._await_task(log.task_id)
                await self._close_log(log, TriggerLogStatus.SUCCESS if success else TriggerLogStatus.FAILED, error)

            await self._bump_counters(trigger.id, success=success)
            if success:
                break
            log_event(logger, "Trigger attempt failed", "WARNING", trigger_id=trigger.id,
                      attempt=attempt, max_attempts=attempts, error=error)

        return logs

    async def _enqueue(self, trigger: Trigger, input_data: Dict[str, Any], log: TriggerLog) -> Optional[str]:
        try:
            task_id = await self.queue.enqueue(
                trigger.workflow_id,
                organization_id=trigger.organization_id,
                user_id=trigger.created_by_id,
                input_data=input_data,
            )
        except FlowEngineError as e:
            await self._close_log(log, TriggerLogStatus.FAILED, e.message)
            return None
        await self.store.update(TRIGGER_LOGS, log.id, {"task_id": task_id})
        return task_id

    async def _await_task(self, task_id: str) -> Tuple[bool, Optional[str]]:
        try:
            task: Task = await self.queue.wait_for(task_id, timeout=self.attempt_timeout)
        except asyncio.TimeoutError:
            return False, f"Timed out waiting for task {task_id}"
        except NotFoundError as e:
            return False, e.message
        return task.status == TaskStatus.COMPLETED, task.error

    # ------------------------------------------------------------ bookkeeping

    async def _open_log(self, trigger: Trigger, attempt: int, input_data: Dict[str, Any]) -> TriggerLog:
        log = TriggerLog(
            id=f"tlog_{uuid.uuid4().hex}",
            trigger_id=trigger.id,
            workflow_id=trigger.workflow_id,
            attempt=attempt,
            input=input_data,
            started_at=now_iso(),
        )
        await self.store.put(TRIGGER_LOGS, log.id, log.to_record())
        return log

    async def _close_log(self, log: TriggerLog, status: TriggerLogStatus, error: Optional[str] = None) -> None:
        log.status = status
        log.error_message = error
        log.completed_at = now_iso()
        started = datetime.fromisoformat(log.started_at)
        log.duration_ms = int((datetime.fromisoformat(log.completed_at) - started).total_seconds() * 1000)
        await self.store.put(TRIGGER_LOGS, log.id, log.to_record())
        await self._prune_logs(log.trigger_id)

    async def _prune_logs(self, trigger_id: str) -> None:
        """Keep the newest finished logs of a trigger up to the per-trigger cap"""
        finished = [
            TriggerLog.model_validate(r) for r in await self.store.list(TRIGGER_LOGS, trigger_id=trigger_id)
            if r.get("status") != TriggerLogStatus.RUNNING.value
        ]
        excess = len(finished) - self.max_logs_per_trigger
        if excess <= 0:
            return
        finished.sort(key=lambda log: (log.started_at, log.attempt))
        for log in finished[:excess]:
            await self.store.delete(TRIGGER_LOGS, log.id)

    async def _skip(self, trigger: Trigger, attempt: int, input_data: Dict[str, Any], reason: str) -> TriggerLog:
        log = await self._open_log(trigger, attempt, input_data)
        await self._close_log(log, TriggerLogStatus.SKIPPED, reason)
        log_event(logger, "Trigger skipped", trigger_id=trigger.id, reason=reason)
        return log

    async def _bump_counters(self, trigger_id: str, success: Optional[bool] = None, fired: bool = False) -> None:
        # Conditional write on trigger_count keeps concurrent fires from losing updates
        for _ in range(5):
            record = await self.store.get(TRIGGERS, trigger_id)
            if record is None:
                return
            now = now_iso()
            updates: Dict[str, Any] = {}
            if fired:
                updates["trigger_count"] = record.get("trigger_count", 0) + 1
                updates["last_triggered_at"] = now
            if success is True:
                updates["last_success_at"] = now
            elif success is False:
                updates["last_failure_at"] = now
            if await self.store.update(TRIGGERS, trigger_id, updates,
                                       expected={"trigger_count": record.get("trigger_count", 0)}):
                return

    # ----------------------------------------------------------------- loops

    def _next_run(self, job: ScheduledJob) -> datetime:
        now = datetime.now(ZoneInfo(job.timezone))
        return croniter(job.cron_expression, now).get_next(datetime)

    async def _job_loop(self, job: ScheduledJob) -> None:
        while True:
            job.next_run = self._next_run(job)
            delay = (job.next_run - datetime.now(ZoneInfo(job.timezone))).total_seconds()
            await asyncio.sleep(max(delay, 0))
            log_event(logger, "Cron tick", trigger_id=job.trigger_id, scheduled_for=job.next_run.isoformat())
            self._spawn(self._safe_fire(job.trigger_id))
            # Avoid double-firing inside the same second
            await asyncio.sleep(1)

    async def _safe_fire(self, trigger_id: str) -> None:
        try:
            await self.fire_trigger(trigger_id, source="schedule")
        except FlowEngineError as e:
            log_event(logger, "Scheduled fire failed", "ERROR", trigger_id=trigger_id,
                      error_kind="infrastructure", error=e.message)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._fires.add(task)
        task.add_done_callback(self._fires.discard)
        return task

    async def _cancel_job(self, job: Optional[ScheduledJob]) -> None:
        if job is None or job.task is None:
            return
        job.task.cancel()
        try:
            await job.task
        except asyncio.CancelledError:
            pass
