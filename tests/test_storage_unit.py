"""Unit tests for the memory store's workflow, execution and schedule records."""

from datetime import timedelta

import pytest

from stepflow.storage.common import allowed_step_sources, check_step_transition
from stepflow.storage.errors import ConstraintViolation
from stepflow.storage.memory import MemoryStore
from stepflow.storage.models import StepDefinition, utcnow


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def test_user(memory_store):
    return memory_store.create_user("test@example.com", handle="testuser")


@pytest.fixture
def workflow(memory_store, test_user):
    return memory_store.create_workflow(
        test_user.id,
        "Daily digest",
        steps=[{"id": "a", "action": "FETCH"}, {"id": "b", "type": "delay"}],
    )


def _definitions(workflow):
    return [StepDefinition.from_dict(raw, i) for i, raw in enumerate(workflow.steps)]


class TestTransitions:
    def test_step_sources(self):
        assert allowed_step_sources("running") == ["pending"]
        assert allowed_step_sources("failed") == ["running"]
        assert allowed_step_sources("pending") == []

    @pytest.mark.parametrize(
        "current,target",
        [("pending", "completed"), ("completed", "running"), ("failed", "failed")],
    )
    def test_illegal_step_moves_rejected(self, current, target):
        with pytest.raises(ConstraintViolation):
            check_step_transition("rec", current, target)


class TestWorkflows:
    def test_duplicate_email_rejected(self, memory_store, test_user):
        with pytest.raises(ConstraintViolation):
            memory_store.create_user("TEST@example.com ")

    def test_workflow_requires_existing_user(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.create_workflow("nobody", "wf")

    def test_list_is_newest_first_and_filtered(self, memory_store, test_user, workflow):
        second = memory_store.create_workflow(test_user.id, "Second", status="active")
        assert [wf.id for wf in memory_store.list_workflows(test_user.id)] == [
            second.id,
            workflow.id,
        ]
        assert [
            wf.id for wf in memory_store.list_workflows(test_user.id, status="active")
        ] == [second.id]

    def test_workflows_are_scoped_to_owner(self, memory_store, workflow):
        other = memory_store.create_user("other@example.com")
        assert memory_store.get_workflow(workflow.id, other.id) is None
        assert memory_store.update_workflow(workflow.id, other.id, name="x") is None
        assert memory_store.delete_workflow(workflow.id, other.id) is False

    def test_delete_removes_schedule_but_keeps_executions(
        self, memory_store, test_user, workflow
    ):
        execution = memory_store.create_execution(workflow.id, test_user.id)
        memory_store.upsert_schedule(test_user.id, workflow.id, cron="0 * * * *")
        assert memory_store.delete_workflow(workflow.id, test_user.id)
        assert memory_store.get_schedule(workflow.id) is None
        assert memory_store.get_execution(execution.id) is not None


class TestExecutions:
    def test_steps_created_pending_in_order(self, memory_store, test_user, workflow):
        execution = memory_store.create_execution(
            workflow.id, test_user.id, input_data={"x": 1}
        )
        records = memory_store.create_execution_steps(execution.id, _definitions(workflow))
        assert [(r.step_index, r.step_id, r.status) for r in records] == [
            (0, "a", "pending"),
            (1, "b", "pending"),
        ]
        assert records[1].step_type == "delay"

    def test_steps_created_only_once(self, memory_store, test_user, workflow):
        execution = memory_store.create_execution(workflow.id, test_user.id)
        memory_store.create_execution_steps(execution.id, _definitions(workflow))
        with pytest.raises(ConstraintViolation):
            memory_store.create_execution_steps(execution.id, _definitions(workflow))

    def test_step_lifecycle_timestamps_and_logs(self, memory_store, test_user, workflow):
        execution = memory_store.create_execution(workflow.id, test_user.id)
        record = memory_store.create_execution_steps(execution.id, _definitions(workflow))[0]
        running = memory_store.update_execution_step(record.id, status="running")
        assert running.started_at is not None and running.completed_at is None
        done = memory_store.update_execution_step(
            record.id, status="completed", output_data={"ok": True}, attempts=1, logs=["done"]
        )
        assert done.completed_at is not None
        assert done.logs == ["done"]
        with pytest.raises(ConstraintViolation):
            memory_store.update_execution_step(record.id, status="failed")

    def test_terminal_execution_is_final(self, memory_store, test_user, workflow):
        execution = memory_store.create_execution(workflow.id, test_user.id)
        memory_store.update_execution(execution.id, status="completed", output_data={})
        with pytest.raises(ConstraintViolation):
            memory_store.update_execution(execution.id, status="failed", error_message="late")
        assert memory_store.get_execution(execution.id).status == "completed"

    def test_state_survives_reload(self, tmp_path, memory_store, test_user, workflow):
        execution = memory_store.create_execution(workflow.id, test_user.id)
        memory_store.create_execution_steps(execution.id, _definitions(workflow))
        memory_store.update_execution(execution.id, status="failed", error_message="boom")

        reloaded = MemoryStore(fs_root=str(tmp_path))
        restored = reloaded.get_execution(execution.id, test_user.id)
        assert restored.status == "failed"
        assert restored.error_message == "boom"
        assert [r.step_id for r in reloaded.list_execution_steps(execution.id)] == ["a", "b"]


class TestSchedules:
    def test_upsert_updates_in_place(self, memory_store, test_user, workflow):
        first = memory_store.upsert_schedule(test_user.id, workflow.id, cron="0 * * * *")
        second = memory_store.upsert_schedule(
            test_user.id, workflow.id, cron="*/5 * * * *", enabled=False
        )
        assert first.id == second.id
        assert memory_store.get_schedule(workflow.id).cron == "*/5 * * * *"

    def test_due_schedules_put_never_run_first(self, memory_store, test_user, workflow):
        now = utcnow()
        other = memory_store.create_workflow(test_user.id, "Other")
        late = memory_store.create_workflow(test_user.id, "Late")
        never = memory_store.upsert_schedule(test_user.id, workflow.id, cron="* * * * *")
        due = memory_store.upsert_schedule(
            test_user.id, other.id, cron="* * * * *", next_run_at=now - timedelta(minutes=1)
        )
        memory_store.upsert_schedule(
            test_user.id, late.id, cron="* * * * *", next_run_at=now + timedelta(hours=1)
        )
        assert [s.id for s in memory_store.list_due_schedules(now)] == [never.id, due.id]
        memory_store.update_schedule(due.id, enabled=False)
        assert [s.id for s in memory_store.list_due_schedules(now)] == [never.id]
