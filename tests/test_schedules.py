"""Tests for cron schedule evaluation and the due-schedule scan."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from stepflow.service.agent import StubAgent
from stepflow.service.coordinator import ExecutionCoordinator
from stepflow.service.errors import ValidationError, WorkflowNotFoundError
from stepflow.service.invoker import StepInvoker
from stepflow.service.schedules import ScheduleService, ScheduleWorker, next_run_after
from stepflow.storage.memory import MemoryStore


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def user(store):
    return store.create_user("cron@example.com")


@pytest.fixture
def service(store):
    async def no_sleep(_seconds):
        return None

    coordinator = ExecutionCoordinator(store, StepInvoker(StubAgent(), sleep=no_sleep))
    return ScheduleService(store, coordinator, batch_limit=10)


class TestNextRunAfter:
    def test_utc_hourly(self):
        now = datetime(2024, 3, 1, 10, 15, tzinfo=timezone.utc)
        assert next_run_after("0 * * * *", "UTC", now) == datetime(
            2024, 3, 1, 11, 0, tzinfo=timezone.utc
        )

    def test_evaluated_in_schedule_timezone(self):
        # 09:00 in New York during EST is 14:00 UTC
        now = datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc)
        assert next_run_after("0 9 * * *", "America/New_York", now) == datetime(
            2024, 1, 10, 14, 0, tzinfo=timezone.utc
        )

    def test_missing_timezone_defaults_to_utc(self):
        now = datetime(2024, 3, 1, 10, 15, tzinfo=timezone.utc)
        assert next_run_after("30 10 * * *", None, now) == datetime(
            2024, 3, 1, 10, 30, tzinfo=timezone.utc
        )

    def test_invalid_cron_rejected(self):
        with pytest.raises(ValidationError) as excinfo:
            next_run_after("every tuesday", "UTC")
        assert excinfo.value.detail == {"cron": "every tuesday"}

    def test_unknown_timezone_rejected(self):
        with pytest.raises(ValidationError, match="unknown timezone"):
            next_run_after("* * * * *", "Mars/Olympus")


class TestScheduleService:
    def test_upsert_requires_owned_workflow(self, service, store, user):
        workflow = store.create_workflow(user.id, "wf")
        stranger = store.create_user("stranger@example.com")
        with pytest.raises(WorkflowNotFoundError):
            service.upsert(stranger.id, workflow.id, cron="* * * * *")

    def test_upsert_computes_next_run(self, service, store, user):
        workflow = store.create_workflow(user.id, "wf")
        schedule = service.upsert(user.id, workflow.id, cron=" */5 * * * * ")
        assert schedule.cron == "*/5 * * * *"
        assert schedule.timezone == "UTC"
        assert schedule.next_run_at > datetime.now(timezone.utc)
        assert service.get(user.id, workflow.id).id == schedule.id
        assert service.delete(user.id, workflow.id) is True
        assert service.get(user.id, workflow.id) is None

    @pytest.mark.asyncio
    async def test_run_due_runs_and_advances(self, service, store, user):
        workflow = store.create_workflow(
            user.id, "wf", steps=[{"id": "wait", "type": "delay", "parameters": {"duration": 0}}]
        )
        schedule = service.upsert(user.id, workflow.id, cron="0 * * * *")
        now = schedule.next_run_at + timedelta(seconds=1)

        results = await service.run_due(now=now)

        assert len(results) == 1
        assert results[0]["ok"] is True
        execution = store.get_execution(results[0]["execution_id"])
        assert execution.trigger == "schedule"
        assert execution.status == "completed"
        updated = store.get_schedule(workflow.id)
        assert updated.last_run_at == now
        assert updated.next_run_at > now
        assert await service.run_due(now=now) == []

    @pytest.mark.asyncio
    async def test_failed_run_still_advances(self, service, store, user):
        workflow = store.create_workflow(
            user.id, "wf", steps=[{"id": "a", "type": "delay", "parameters": {"duration": "soon"}}]
        )
        schedule = service.upsert(user.id, workflow.id, cron="0 * * * *")
        now = schedule.next_run_at

        [result] = await service.run_due(now=now)

        assert result["ok"] is False
        assert result["error"] == "invalid delay duration: 'soon'"
        assert store.get_schedule(workflow.id).next_run_at > now

    @pytest.mark.asyncio
    async def test_missing_workflow_disables_schedule(self, service, store, user):
        workflow = store.create_workflow(user.id, "wf")
        schedule = service.upsert(user.id, workflow.id, cron="* * * * *")
        # Simulate a workflow removed out from under its schedule
        del store.workflows[workflow.id]

        [result] = await service.run_due(now=schedule.next_run_at)

        assert result == {
            "schedule_id": schedule.id,
            "skipped": True,
            "reason": "workflow missing",
        }
        assert store.schedules[schedule.id].enabled is False


@pytest.mark.asyncio
async def test_worker_runs_due_schedules_until_stopped(service, store, user):
    workflow = store.create_workflow(user.id, "wf")
    schedule = service.upsert(user.id, workflow.id, cron="* * * * *")
    store.schedules[schedule.id].next_run_at = None

    worker = ScheduleWorker(service, poll_interval=0.01)
    await worker.start()
    for _ in range(100):
        if store.list_executions(workflow.id):
            break
        await asyncio.sleep(0.01)
    await worker.stop()

    [execution] = store.list_executions(workflow.id)
    assert execution.trigger == "schedule"
    assert store.get_schedule(workflow.id).last_run_at is not None


@pytest.mark.asyncio
async def test_stopping_worker_mid_step_fails_the_execution(store, user):
    coordinator = ExecutionCoordinator(store, StepInvoker(StubAgent()))
    service = ScheduleService(store, coordinator)
    workflow = store.create_workflow(
        user.id, "wf", steps=[{"id": "wait", "type": "delay", "parameters": {"duration": 5000}}]
    )
    schedule = service.upsert(user.id, workflow.id, cron="* * * * *")
    store.schedules[schedule.id].next_run_at = None

    worker = ScheduleWorker(service, poll_interval=60)
    await worker.start()
    for _ in range(100):
        executions = store.list_executions(workflow.id)
        if executions and store.list_execution_steps(executions[0].id)[0].status == "running":
            break
        await asyncio.sleep(0.01)
    await worker.stop()
    await coordinator.shutdown()

    [execution] = store.list_executions(workflow.id)
    assert execution.status == "failed"
    assert execution.error_message == "execution cancelled"
    assert [rec.status for rec in store.list_execution_steps(execution.id)] == ["failed"]
