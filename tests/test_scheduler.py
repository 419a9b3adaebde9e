# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Unit tests for the trigger scheduler
"""

import hashlib
import hmac
import json
from datetime import datetime, timezone

import pytest

from flowengine.core.errors import ConflictError, NotFoundError, UnauthorizedError, ValidationError
from flowengine.models import TaskStatus, Trigger, TriggerLogStatus
from flowengine.services.scheduler import TriggerScheduler
from flowengine.services.task_queue import TaskQueue

from .helpers import running


@pytest.fixture
def queue(store, workflow_service, engine, approvals, echo_workflow):
    workflow_service.register(echo_workflow)
    inactive = dict(echo_workflow, id="dormant", active=False)
    workflow_service.register(inactive)
    return TaskQueue(store, workflow_service, engine, approvals, max_concurrent=2, task_timeout=5.0)


@pytest.fixture
def scheduler(store, queue, workflow_service):
    return TriggerScheduler(
        store, queue, workflow_service,
        retry_base_delay=0.01, retry_max_delay=0.05, attempt_timeout=5.0,
    )


def schedule_trigger(**overrides) -> Trigger:
    fields = {
        "id": "trg_1",
        "workflow_id": "echo",
        "type": "SCHEDULE",
        "cron_expression": "0 * * * *",
        "input_template": {"text": "scheduled"},
    }
    fields.update(overrides)
    return Trigger(**fields)


def sign(secret: str, body: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class TestJobTable:
    """schedule_job / remove_job bookkeeping"""

    @pytest.mark.asyncio
    async def test_schedule_job_is_an_upsert(self, scheduler):
        try:
            first = await scheduler.schedule_job("trg_1", "*/5 * * * *", "echo")
            second = await scheduler.schedule_job("trg_1", "0 9 * * *", "echo")

            assert scheduler.get_job_count() == 1
            assert first.task.cancelled()
            assert scheduler.get_active_jobs()[0]["cronExpression"] == "0 9 * * *"
            assert second.next_run.hour == 9
        finally:
            await scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_remove_missing_job_is_a_no_op(self, scheduler):
        assert await scheduler.remove_job("never-scheduled") is False
        assert scheduler.get_job_count() == 0

    @pytest.mark.asyncio
    async def test_remove_job(self, scheduler):
        await scheduler.schedule_job("trg_1", "*/5 * * * *", "echo")

        assert await scheduler.remove_job("trg_1") is True
        assert not scheduler.has_job("trg_1")
        assert scheduler.get_next_run("trg_1") is None

    @pytest.mark.asyncio
    async def test_invalid_cron_expression(self, scheduler):
        with pytest.raises(ValidationError, match="cron"):
            await scheduler.schedule_job("trg_1", "every tuesday", "echo")
        assert scheduler.get_job_count() == 0

    @pytest.mark.asyncio
    async def test_unknown_timezone(self, scheduler):
        with pytest.raises(ValidationError, match="timezone"):
            await scheduler.schedule_job("trg_1", "0 * * * *", "echo", options={"timezone": "Mars/Olympus"})

    @pytest.mark.asyncio
    async def test_next_run_respects_timezone(self, scheduler):
        try:
            await scheduler.schedule_job("trg_1", "30 8 * * *", "echo", options={"timezone": "Europe/Berlin"})
            next_run = scheduler.get_next_run("trg_1")

            assert next_run > datetime.now(timezone.utc)
            assert (next_run.hour, next_run.minute) == (8, 30)
            assert str(next_run.tzinfo) == "Europe/Berlin"
        finally:
            await scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_initialize_registers_enabled_schedule_triggers(self, scheduler, store):
        await store.put("triggers", "on", schedule_trigger(id="on").to_record())
        await store.put("triggers", "off", schedule_trigger(id="off", enabled=False).to_record())
        await store.put("triggers", "hook", Trigger(
            id="hook", workflow_id="echo", type="WEBHOOK", webhook_path="gh"
        ).to_record())

        try:
            assert await scheduler.initialize() == 1
            assert scheduler.has_job("on")
            assert not scheduler.has_job("off")
        finally:
            await scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_toggle_job(self, scheduler):
        try:
            await scheduler.save_trigger(schedule_trigger())
            assert scheduler.has_job("trg_1")

            await scheduler.toggle_job("trg_1", False)

            assert not scheduler.has_job("trg_1")
            assert (await scheduler.get_trigger("trg_1")).enabled is False
        finally:
            await scheduler.stop_all()


class TestFiring:
    """trigger_now and the retry policy"""

    @pytest.mark.asyncio
    async def test_successful_fire(self, scheduler, queue):
        async with running(queue):
            await scheduler.save_trigger(schedule_trigger())
            logs = await scheduler.trigger_now("trg_1")
            await scheduler.stop_all()

        assert [log.status for log in logs] == [TriggerLogStatus.SUCCESS]
        task = await queue.get_task(logs[0].task_id)
        assert task.status == TaskStatus.COMPLETED
        assert task.input["text"] == "scheduled"
        assert task.input["_trigger"]["triggerId"] == "trg_1"
        assert task.input["_trigger"]["type"] == "SCHEDULE"

        trigger = await scheduler.get_trigger("trg_1")
        assert trigger.trigger_count == 1
        assert trigger.last_success_at is not None
        assert trigger.last_failure_at is None

    @pytest.mark.asyncio
    async def test_failed_fire_retries_with_one_log_per_attempt(self, scheduler, queue):
        trigger = schedule_trigger(input_template={}, retry_on_fail=True, max_retries=2)

        async with running(queue):
            await scheduler.save_trigger(trigger)
            logs = await scheduler.trigger_now("trg_1")
            await scheduler.stop_all()

        assert [log.attempt for log in logs] == [1, 2, 3]
        assert all(log.status == TriggerLogStatus.FAILED for log in logs)
        assert len({log.task_id for log in logs}) == 3
        assert [log.id for log in await scheduler.get_logs("trg_1")] == [log.id for log in logs]

        stored = await scheduler.get_trigger("trg_1")
        assert stored.trigger_count == 1
        assert stored.last_failure_at is not None

    @pytest.mark.asyncio
    async def test_no_retry_without_retry_on_fail(self, scheduler, queue):
        async with running(queue):
            await scheduler.save_trigger(schedule_trigger(input_template={}, max_retries=5))
            logs = await scheduler.trigger_now("trg_1")
            await scheduler.stop_all()

        assert len(logs) == 1
        assert logs[0].status == TriggerLogStatus.FAILED

    @pytest.mark.asyncio
    async def test_disabled_trigger_is_skipped(self, scheduler, store):
        await store.put("triggers", "trg_1", schedule_trigger(enabled=False).to_record())

        logs = await scheduler.trigger_now("trg_1")

        assert [log.status for log in logs] == [TriggerLogStatus.SKIPPED]
        assert logs[0].task_id is None

    @pytest.mark.asyncio
    async def test_inactive_workflow_is_skipped(self, scheduler, store):
        await store.put("triggers", "trg_1", schedule_trigger(workflow_id="dormant").to_record())

        logs = await scheduler.trigger_now("trg_1")

        assert logs[0].status == TriggerLogStatus.SKIPPED
        assert "not active" in logs[0].error_message

    @pytest.mark.asyncio
    async def test_missing_workflow_is_skipped(self, scheduler, store):
        await store.put("triggers", "trg_1", schedule_trigger(workflow_id="gone").to_record())

        logs = await scheduler.trigger_now("trg_1")

        assert logs[0].status == TriggerLogStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_deleted_trigger_fires_nothing(self, scheduler):
        assert await scheduler.fire_trigger("trg_missing") == []


class TestWebhooks:
    """fire_webhook signature checks and enqueueing"""

    @pytest.fixture
    def webhook(self):
        return Trigger(
            id="trg_hook",
            workflow_id="echo",
            type="WEBHOOK",
            webhook_path="github/push",
            webhook_secret="s3cret",
            input_template={"text": "from webhook"},
        )

    @pytest.mark.asyncio
    async def test_valid_signature_enqueues(self, scheduler, queue, webhook):
        body = json.dumps({"ref": "main"}).encode()
        await scheduler.save_trigger(webhook)

        async with running(queue):
            accepted = await scheduler.fire_webhook("github/push", body, sign("s3cret", body))
            task = await queue.wait_for(accepted["taskId"], timeout=5)
            await scheduler.stop_all()

        assert accepted["triggerId"] == "trg_hook"
        assert task.status == TaskStatus.COMPLETED
        assert task.input["payload"] == {"ref": "main"}
        assert task.input["_trigger"]["type"] == "WEBHOOK"

    @pytest.mark.asyncio
    async def test_bad_signature_is_rejected(self, scheduler, queue, webhook):
        await scheduler.save_trigger(webhook)

        with pytest.raises(UnauthorizedError):
            await scheduler.fire_webhook("github/push", b"{}", sign("wrong", b"{}"))
        assert (await queue.get_queue_status())["queued"] == 0

    @pytest.mark.asyncio
    async def test_missing_signature_is_rejected(self, scheduler, webhook):
        await scheduler.save_trigger(webhook)

        with pytest.raises(UnauthorizedError):
            await scheduler.fire_webhook("github/push", b"{}", None)

    @pytest.mark.asyncio
    async def test_unknown_path(self, scheduler):
        with pytest.raises(NotFoundError):
            await scheduler.fire_webhook("nope", b"{}", None)

    @pytest.mark.asyncio
    async def test_non_json_body(self, scheduler, webhook):
        await scheduler.save_trigger(webhook)

        with pytest.raises(ValidationError):
            await scheduler.fire_webhook("github/push", b"not json", sign("s3cret", b"not json"))

    @pytest.mark.asyncio
    async def test_webhook_trigger_requires_path(self, scheduler):
        with pytest.raises(ValidationError):
            await scheduler.save_trigger(Trigger(id="t", workflow_id="echo", type="WEBHOOK"))

    @pytest.mark.asyncio
    async def test_webhook_path_belongs_to_one_trigger(self, scheduler, webhook):
        await scheduler.save_trigger(webhook)
        rival = webhook.model_copy(update={"id": "trg_other"})

        with pytest.raises(ConflictError, match="already used"):
            await scheduler.save_trigger(rival)
        with pytest.raises(NotFoundError):
            await scheduler.get_trigger("trg_other")

    @pytest.mark.asyncio
    async def test_resaving_a_webhook_keeps_its_path(self, scheduler, webhook):
        await scheduler.save_trigger(webhook)

        saved = await scheduler.save_trigger(webhook.model_copy(update={"webhook_secret": "rotated"}))

        assert saved.webhook_secret == "rotated"

    @pytest.mark.asyncio
    async def test_moving_a_webhook_onto_a_taken_path(self, scheduler, webhook):
        await scheduler.save_trigger(webhook)
        await scheduler.save_trigger(webhook.model_copy(update={"id": "trg_other", "webhook_path": "gitlab/push"}))

        with pytest.raises(ConflictError):
            await scheduler.update_job("trg_other", webhook_path="github/push")
        assert (await scheduler.get_trigger("trg_other")).webhook_path == "gitlab/push"


class TestTriggerRecords:
    """save_trigger / update_job keep fire counters intact"""

    @pytest.mark.asyncio
    async def test_resave_keeps_counters(self, scheduler, queue):
        async with running(queue):
            await scheduler.save_trigger(schedule_trigger())
            await scheduler.trigger_now("trg_1")
            fired = await scheduler.get_trigger("trg_1")

            saved = await scheduler.save_trigger(schedule_trigger(cron_expression="*/5 * * * *"))
            await scheduler.stop_all()

        assert saved.cron_expression == "*/5 * * * *"
        assert saved.trigger_count == 1
        assert saved.last_triggered_at == fired.last_triggered_at
        assert saved.last_success_at == fired.last_success_at

    @pytest.mark.asyncio
    async def test_caller_supplied_counters_are_ignored(self, scheduler):
        try:
            saved = await scheduler.save_trigger(schedule_trigger(trigger_count=42))
        finally:
            await scheduler.stop_all()

        assert saved.trigger_count == 0
        assert saved.last_triggered_at is None

    @pytest.mark.asyncio
    async def test_update_job_rejects_counters(self, scheduler):
        try:
            await scheduler.save_trigger(schedule_trigger())

            with pytest.raises(ValidationError, match="counters"):
                await scheduler.update_job("trg_1", trigger_count=0)
        finally:
            await scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_update_job_changes_only_named_fields(self, scheduler, queue):
        async with running(queue):
            await scheduler.save_trigger(schedule_trigger())
            await scheduler.trigger_now("trg_1")

            await scheduler.update_job("trg_1", cron_expression="15 * * * *")
            stored = await scheduler.get_trigger("trg_1")
            await scheduler.stop_all()

        assert stored.cron_expression == "15 * * * *"
        assert stored.trigger_count == 1

    @pytest.mark.asyncio
    async def test_update_job_revalidates_cron(self, scheduler):
        try:
            await scheduler.save_trigger(schedule_trigger())

            with pytest.raises(ValidationError):
                await scheduler.update_job("trg_1", cron_expression="every tuesday")
            assert (await scheduler.get_trigger("trg_1")).cron_expression == "0 * * * *"
        finally:
            await scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_delete_trigger_drops_its_logs(self, scheduler, store):
        await store.put("triggers", "trg_1", schedule_trigger(enabled=False).to_record())
        await scheduler.trigger_now("trg_1")

        assert await scheduler.delete_trigger("trg_1") is True
        assert await scheduler.get_logs("trg_1") == []


class TestLogRetention:

    @pytest.mark.asyncio
    async def test_logs_are_capped_per_trigger(self, store, queue, workflow_service):
        scheduler = TriggerScheduler(store, queue, workflow_service, max_logs_per_trigger=2)
        await store.put("triggers", "trg_1", schedule_trigger(enabled=False).to_record())
        await store.put("triggers", "trg_2", schedule_trigger(id="trg_2", enabled=False).to_record())

        fired = [(await scheduler.trigger_now("trg_1"))[0] for _ in range(4)]
        await scheduler.trigger_now("trg_2")

        kept = await scheduler.get_logs("trg_1")
        assert [log.id for log in kept] == [log.id for log in fired[-2:]]
        assert len(await scheduler.get_logs("trg_2")) == 1
