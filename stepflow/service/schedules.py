from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import List, Optional

import pytz
from croniter import croniter

from stepflow.logging import get_logger
from stepflow.service.coordinator import ExecutionCoordinator
from stepflow.service.errors import ValidationError, WorkflowNotFoundError
from stepflow.storage.models import WorkflowSchedule, utcnow

logger = get_logger(__name__)

DEFAULT_TIMEZONE = "UTC"


def next_run_after(
    cron: str, tz_name: Optional[str], now: Optional[datetime] = None
) -> datetime:
    """Next time ``cron`` fires after ``now``, evaluated in ``tz_name``, as UTC."""
    tz_name = tz_name or DEFAULT_TIMEZONE
    try:
        tz = pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError as exc:
        raise ValidationError(
            "unknown timezone", detail={"timezone": tz_name}
        ) from exc
    if not croniter.is_valid(cron):
        raise ValidationError("invalid cron expression", detail={"cron": cron})
    base = (now or utcnow()).astimezone(tz)
    upcoming = croniter(cron, base).get_next(datetime)
    return upcoming.astimezone(timezone.utc)


class ScheduleService:
    """Cron schedules attached to workflows, and the due-schedule scan."""

    def __init__(
        self, store, coordinator: ExecutionCoordinator, *, batch_limit: int = 25
    ) -> None:
        self.store = store
        self.coordinator = coordinator
        self.batch_limit = batch_limit

    def _require_workflow(self, user_id: str, workflow_id: str) -> None:
        if not self.store.get_workflow(workflow_id, user_id):
            raise WorkflowNotFoundError(workflow_id)

    def get(self, user_id: str, workflow_id: str) -> Optional[WorkflowSchedule]:
        self._require_workflow(user_id, workflow_id)
        return self.store.get_schedule(workflow_id, user_id)

    def upsert(
        self,
        user_id: str,
        workflow_id: str,
        *,
        cron: str,
        tz_name: Optional[str] = None,
        enabled: bool = True,
    ) -> WorkflowSchedule:
        self._require_workflow(user_id, workflow_id)
        cron = cron.strip()
        tz_name = tz_name or DEFAULT_TIMEZONE
        next_run_at = next_run_after(cron, tz_name)
        schedule = self.store.upsert_schedule(
            user_id,
            workflow_id,
            cron=cron,
            timezone=tz_name,
            enabled=enabled,
            next_run_at=next_run_at,
        )
        logger.info(
            "schedule_saved",
            workflow_id=workflow_id,
            cron=cron,
            timezone=tz_name,
            next_run_at=next_run_at.isoformat(),
        )
        return schedule

    def delete(self, user_id: str, workflow_id: str) -> bool:
        self._require_workflow(user_id, workflow_id)
        return self.store.delete_schedule(workflow_id, user_id)

    async def run_due(
        self, now: Optional[datetime] = None, limit: Optional[int] = None
    ) -> List[dict]:
        """Run every due schedule once and advance its next fire time."""
        now = now or utcnow()
        due = self.store.list_due_schedules(now, limit or self.batch_limit)
        results: List[dict] = []
        for schedule in due:
            results.append(await self._run_one(schedule, now))
        if due:
            logger.info(
                "schedule_scan_complete",
                due=len(due),
                ok=sum(1 for item in results if item.get("ok")),
            )
        return results

    async def _run_one(self, schedule: WorkflowSchedule, now: datetime) -> dict:
        workflow = self.store.get_workflow(schedule.workflow_id, schedule.user_id)
        if workflow is None:
            self.store.update_schedule(schedule.id, enabled=False)
            logger.warning(
                "schedule_workflow_missing",
                schedule_id=schedule.id,
                workflow_id=schedule.workflow_id,
            )
            return {"schedule_id": schedule.id, "skipped": True, "reason": "workflow missing"}

        outcome: dict = {"schedule_id": schedule.id}
        try:
            execution = await self.coordinator.run(
                workflow, schedule.user_id, trigger="schedule"
            )
        except Exception as exc:
            logger.exception(
                "schedule_run_failed", schedule_id=schedule.id, workflow_id=workflow.id
            )
            outcome.update(ok=False, error=str(exc) or type(exc).__name__)
        else:
            outcome["execution_id"] = execution.id
            outcome["ok"] = execution.status == "completed"
            if execution.error_message:
                outcome["error"] = execution.error_message

        try:
            next_run_at = next_run_after(schedule.cron, schedule.timezone, now)
        except ValidationError as exc:
            self.store.update_schedule(schedule.id, enabled=False, last_run_at=now)
            logger.warning(
                "schedule_disabled_invalid", schedule_id=schedule.id, error=exc.message
            )
            outcome.update(ok=False, error=exc.message)
            return outcome
        self.store.update_schedule(schedule.id, last_run_at=now, next_run_at=next_run_at)
        outcome["next_run_at"] = next_run_at.isoformat()
        return outcome


class ScheduleWorker:
    """Background loop that runs the due-schedule scan on an interval."""

    def __init__(self, service: ScheduleService, *, poll_interval: int = 60) -> None:
        self.service = service
        self.poll_interval = poll_interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._running:
            logger.warning("schedule_worker_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("schedule_worker_started", poll_interval=self.poll_interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("schedule_worker_stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.service.run_due()
            except Exception as exc:
                logger.error(
                    "schedule_worker_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            await asyncio.sleep(self.poll_interval)
