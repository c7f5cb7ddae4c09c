from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from stepflow.logging import get_logger
from stepflow.storage.common import (
    check_execution_transition,
    check_step_transition,
    normalize_email,
)
from stepflow.storage.errors import ConstraintViolation
from stepflow.storage.models import (
    WORKFLOW_STATUSES,
    Execution,
    ExecutionStep,
    Session,
    StepDefinition,
    User,
    Workflow,
    WorkflowSchedule,
    utcnow,
)


class MemoryStore:
    """In-process store for dev and tests, snapshotted to JSON on every write."""

    def __init__(self, fs_root: str = "/tmp/stepflow") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.workflows: Dict[str, Workflow] = {}
        self.executions: Dict[str, Execution] = {}
        self.execution_steps: Dict[str, List[ExecutionStep]] = {}
        self.schedules: Dict[str, WorkflowSchedule] = {}
        # RLock so helpers can re-enter while a caller holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # user / auth
    def create_user(
        self,
        email: str,
        handle: Optional[str] = None,
        *,
        is_active: bool = True,
        meta: Optional[Dict] = None,
    ) -> User:
        email = normalize_email(email)
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                handle=handle,
                is_active=is_active,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        *,
        meta: Optional[Dict] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id=user_id,
                ttl_minutes=ttl_minutes,
                user_agent=user_agent,
                meta=meta,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def revoke_session(self, session_id: str) -> None:
        with self._data_lock:
            self.sessions.pop(session_id, None)
            self._persist_state()

    # workflows
    def create_workflow(
        self,
        user_id: str,
        name: str,
        *,
        description: str = "",
        steps: Optional[List[dict]] = None,
        status: str = "draft",
    ) -> Workflow:
        if status not in WORKFLOW_STATUSES:
            raise ConstraintViolation("invalid workflow status", {"status": status})
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            workflow = Workflow(
                id=str(uuid.uuid4()),
                user_id=user_id,
                name=name,
                description=description,
                steps=[dict(step) for step in (steps or [])],
                status=status,
            )
            self.workflows[workflow.id] = workflow
            self._persist_state()
            return workflow

    def get_workflow(
        self, workflow_id: str, user_id: Optional[str] = None
    ) -> Optional[Workflow]:
        with self._data_lock:
            workflow = self.workflows.get(workflow_id)
            if workflow and user_id is not None and workflow.user_id != user_id:
                return None
            return workflow

    def list_workflows(
        self, user_id: str, status: Optional[str] = None, limit: int = 100
    ) -> List[Workflow]:
        with self._data_lock:
            items = [
                wf
                for wf in self.workflows.values()
                if wf.user_id == user_id and (status is None or wf.status == status)
            ]
        items.sort(key=lambda wf: wf.created_at, reverse=True)
        return items[:limit]

    def update_workflow(
        self,
        workflow_id: str,
        user_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        steps: Optional[List[dict]] = None,
        status: Optional[str] = None,
    ) -> Optional[Workflow]:
        if status is not None and status not in WORKFLOW_STATUSES:
            raise ConstraintViolation("invalid workflow status", {"status": status})
        with self._data_lock:
            workflow = self.get_workflow(workflow_id, user_id)
            if not workflow:
                return None
            if name is not None:
                workflow.name = name
            if description is not None:
                workflow.description = description
            if steps is not None:
                workflow.steps = [dict(step) for step in steps]
            if status is not None:
                workflow.status = status
            workflow.updated_at = utcnow()
            self._persist_state()
            return workflow

    def delete_workflow(self, workflow_id: str, user_id: str) -> bool:
        """Delete a workflow with its schedule; past executions are kept."""
        with self._data_lock:
            workflow = self.get_workflow(workflow_id, user_id)
            if not workflow:
                return False
            del self.workflows[workflow_id]
            stale = [
                sid
                for sid, sched in self.schedules.items()
                if sched.workflow_id == workflow_id
            ]
            for sid in stale:
                del self.schedules[sid]
            self._persist_state()
            return True

    # executions
    def create_execution(
        self,
        workflow_id: str,
        user_id: str,
        *,
        trigger: str = "manual",
        input_data: Optional[Dict[str, Any]] = None,
    ) -> Execution:
        with self._data_lock:
            if workflow_id not in self.workflows:
                raise ConstraintViolation(
                    "workflow does not exist", {"workflow_id": workflow_id}
                )
            execution = Execution(
                id=str(uuid.uuid4()),
                workflow_id=workflow_id,
                user_id=user_id,
                trigger=trigger,
                input_data=dict(input_data or {}),
            )
            self.executions[execution.id] = execution
            self.execution_steps[execution.id] = []
            self._persist_state()
            return execution

    def get_execution(
        self, execution_id: str, user_id: Optional[str] = None
    ) -> Optional[Execution]:
        with self._data_lock:
            execution = self.executions.get(execution_id)
            if execution and user_id is not None and execution.user_id != user_id:
                return None
            return execution

    def list_executions(
        self, workflow_id: str, user_id: Optional[str] = None, limit: int = 50
    ) -> List[Execution]:
        with self._data_lock:
            items = [
                ex
                for ex in self.executions.values()
                if ex.workflow_id == workflow_id
                and (user_id is None or ex.user_id == user_id)
            ]
        items.sort(key=lambda ex: ex.started_at, reverse=True)
        return items[:limit]

    def update_execution(
        self,
        execution_id: str,
        *,
        status: str,
        output_data: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> Execution:
        with self._data_lock:
            execution = self.executions.get(execution_id)
            if not execution:
                raise ConstraintViolation(
                    "execution not found", {"execution_id": execution_id}
                )
            check_execution_transition(execution_id, execution.status, status)
            execution.status = status
            if output_data is not None:
                execution.output_data = dict(output_data)
            if error_message is not None:
                execution.error_message = error_message
            execution.completed_at = utcnow()
            self._persist_state()
            return execution

    def create_execution_steps(
        self, execution_id: str, definitions: Sequence[StepDefinition]
    ) -> List[ExecutionStep]:
        with self._data_lock:
            if execution_id not in self.executions:
                raise ConstraintViolation(
                    "execution not found", {"execution_id": execution_id}
                )
            records = self.execution_steps.setdefault(execution_id, [])
            if records:
                raise ConstraintViolation(
                    "execution steps already created", {"execution_id": execution_id}
                )
            for index, definition in enumerate(definitions):
                records.append(
                    ExecutionStep(
                        id=str(uuid.uuid4()),
                        execution_id=execution_id,
                        step_index=index,
                        step_id=definition.id,
                        step_name=definition.name,
                        step_type=definition.kind,
                        input_data=dict(definition.parameters),
                    )
                )
            self._persist_state()
            return list(records)

    def _find_step(self, record_id: str) -> Optional[ExecutionStep]:
        for records in self.execution_steps.values():
            for record in records:
                if record.id == record_id:
                    return record
        return None

    def update_execution_step(
        self,
        record_id: str,
        *,
        status: str,
        output_data: Any = None,
        error_message: Optional[str] = None,
        attempts: Optional[int] = None,
        logs: Optional[List[str]] = None,
    ) -> ExecutionStep:
        with self._data_lock:
            record = self._find_step(record_id)
            if not record:
                raise ConstraintViolation(
                    "execution step not found", {"step_record_id": record_id}
                )
            check_step_transition(record_id, record.status, status)
            record.status = status
            now = utcnow()
            if status == "running":
                record.started_at = now
            else:
                record.completed_at = now
            if output_data is not None:
                record.output_data = output_data
            if error_message is not None:
                record.error_message = error_message
            if attempts is not None:
                record.attempts = attempts
            if logs:
                record.logs.extend(logs)
            self._persist_state()
            return record

    def list_execution_steps(self, execution_id: str) -> List[ExecutionStep]:
        with self._data_lock:
            records = list(self.execution_steps.get(execution_id, []))
        records.sort(key=lambda rec: rec.step_index)
        return records

    # schedules
    def upsert_schedule(
        self,
        user_id: str,
        workflow_id: str,
        *,
        cron: str,
        timezone: str = "UTC",
        enabled: bool = True,
        next_run_at: Optional[datetime] = None,
    ) -> WorkflowSchedule:
        with self._data_lock:
            if workflow_id not in self.workflows:
                raise ConstraintViolation(
                    "workflow does not exist", {"workflow_id": workflow_id}
                )
            existing = self.get_schedule(workflow_id, user_id)
            if existing:
                existing.cron = cron
                existing.timezone = timezone
                existing.enabled = enabled
                existing.next_run_at = next_run_at
                existing.updated_at = utcnow()
                schedule = existing
            else:
                schedule = WorkflowSchedule(
                    id=str(uuid.uuid4()),
                    user_id=user_id,
                    workflow_id=workflow_id,
                    cron=cron,
                    timezone=timezone,
                    enabled=enabled,
                    next_run_at=next_run_at,
                )
                self.schedules[schedule.id] = schedule
            self._persist_state()
            return schedule

    def get_schedule(
        self, workflow_id: str, user_id: Optional[str] = None
    ) -> Optional[WorkflowSchedule]:
        with self._data_lock:
            return next(
                (
                    sched
                    for sched in self.schedules.values()
                    if sched.workflow_id == workflow_id
                    and (user_id is None or sched.user_id == user_id)
                ),
                None,
            )

    def delete_schedule(self, workflow_id: str, user_id: str) -> bool:
        with self._data_lock:
            schedule = self.get_schedule(workflow_id, user_id)
            if not schedule:
                return False
            del self.schedules[schedule.id]
            self._persist_state()
            return True

    def list_due_schedules(
        self, now: datetime, limit: int = 25
    ) -> List[WorkflowSchedule]:
        """Enabled schedules never run yet or due at ``now``, oldest first."""
        with self._data_lock:
            due = [
                sched
                for sched in self.schedules.values()
                if sched.enabled
                and (sched.next_run_at is None or sched.next_run_at <= now)
            ]
        due.sort(
            key=lambda sched: (
                sched.next_run_at is not None,
                sched.next_run_at or sched.created_at,
            )
        )
        return due[:limit]

    def update_schedule(
        self,
        schedule_id: str,
        *,
        enabled: Optional[bool] = None,
        next_run_at: Optional[datetime] = None,
        last_run_at: Optional[datetime] = None,
    ) -> Optional[WorkflowSchedule]:
        with self._data_lock:
            schedule = self.schedules.get(schedule_id)
            if not schedule:
                return None
            if enabled is not None:
                schedule.enabled = enabled
            if next_run_at is not None:
                schedule.next_run_at = next_run_at
            if last_run_at is not None:
                schedule.last_run_at = last_run_at
            schedule.updated_at = utcnow()
            self._persist_state()
            return schedule

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "workflows": [self._serialize_workflow(w) for w in self.workflows.values()],
            "executions": [
                self._serialize_execution(e) for e in self.executions.values()
            ],
            "execution_steps": [
                self._serialize_execution_step(rec)
                for records in self.execution_steps.values()
                for rec in records
            ],
            "schedules": [
                self._serialize_schedule(s) for s in self.schedules.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2, default=str))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.workflows = {
            w["id"]: self._deserialize_workflow(w) for w in data.get("workflows", [])
        }
        self.executions = {
            e["id"]: self._deserialize_execution(e) for e in data.get("executions", [])
        }
        self.execution_steps = {}
        for rec_data in data.get("execution_steps", []):
            rec = self._deserialize_execution_step(rec_data)
            self.execution_steps.setdefault(rec.execution_id, []).append(rec)
        for records in self.execution_steps.values():
            records.sort(key=lambda rec: rec.step_index)
        self.schedules = {
            s["id"]: self._deserialize_schedule(s) for s in data.get("schedules", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "handle": user.handle,
            "created_at": self._serialize_datetime(user.created_at),
            "is_active": user.is_active,
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            handle=data.get("handle"),
            created_at=self._deserialize_datetime(data["created_at"]),
            is_active=data.get("is_active", True),
            meta=data.get("meta"),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "user_agent": session.user_agent,
            "meta": session.meta,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            user_agent=data.get("user_agent"),
            meta=data.get("meta"),
        )

    def _serialize_workflow(self, workflow: Workflow) -> dict:
        return {
            "id": workflow.id,
            "user_id": workflow.user_id,
            "name": workflow.name,
            "description": workflow.description,
            "steps": workflow.steps,
            "status": workflow.status,
            "created_at": self._serialize_datetime(workflow.created_at),
            "updated_at": self._serialize_datetime(workflow.updated_at),
        }

    def _deserialize_workflow(self, data: dict) -> Workflow:
        return Workflow(
            id=data["id"],
            user_id=data["user_id"],
            name=data["name"],
            description=data.get("description") or "",
            steps=list(data.get("steps") or []),
            status=data.get("status", "draft"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_execution(self, execution: Execution) -> dict:
        return {
            "id": execution.id,
            "workflow_id": execution.workflow_id,
            "user_id": execution.user_id,
            "status": execution.status,
            "trigger": execution.trigger,
            "started_at": self._serialize_datetime(execution.started_at),
            "completed_at": self._serialize_datetime(execution.completed_at),
            "input_data": execution.input_data,
            "output_data": execution.output_data,
            "error_message": execution.error_message,
        }

    def _deserialize_execution(self, data: dict) -> Execution:
        return Execution(
            id=data["id"],
            workflow_id=data["workflow_id"],
            user_id=data["user_id"],
            status=data.get("status", "running"),
            trigger=data.get("trigger", "manual"),
            started_at=self._deserialize_datetime(data["started_at"]),
            completed_at=self._deserialize_datetime(data.get("completed_at")),
            input_data=data.get("input_data") or {},
            output_data=data.get("output_data"),
            error_message=data.get("error_message"),
        )

    def _serialize_execution_step(self, record: ExecutionStep) -> dict:
        return {
            "id": record.id,
            "execution_id": record.execution_id,
            "step_index": record.step_index,
            "step_id": record.step_id,
            "step_name": record.step_name,
            "step_type": record.step_type,
            "status": record.status,
            "input_data": record.input_data,
            "output_data": record.output_data,
            "error_message": record.error_message,
            "attempts": record.attempts,
            "logs": record.logs,
            "started_at": self._serialize_datetime(record.started_at),
            "completed_at": self._serialize_datetime(record.completed_at),
        }

    def _deserialize_execution_step(self, data: dict) -> ExecutionStep:
        return ExecutionStep(
            id=data["id"],
            execution_id=data["execution_id"],
            step_index=int(data["step_index"]),
            step_id=data["step_id"],
            step_name=data.get("step_name") or data["step_id"],
            step_type=data.get("step_type", "action"),
            status=data.get("status", "pending"),
            input_data=data.get("input_data") or {},
            output_data=data.get("output_data"),
            error_message=data.get("error_message"),
            attempts=int(data.get("attempts") or 0),
            logs=list(data.get("logs") or []),
            started_at=self._deserialize_datetime(data.get("started_at")),
            completed_at=self._deserialize_datetime(data.get("completed_at")),
        )

    def _serialize_schedule(self, schedule: WorkflowSchedule) -> dict:
        return {
            "id": schedule.id,
            "user_id": schedule.user_id,
            "workflow_id": schedule.workflow_id,
            "cron": schedule.cron,
            "timezone": schedule.timezone,
            "enabled": schedule.enabled,
            "next_run_at": self._serialize_datetime(schedule.next_run_at),
            "last_run_at": self._serialize_datetime(schedule.last_run_at),
            "created_at": self._serialize_datetime(schedule.created_at),
            "updated_at": self._serialize_datetime(schedule.updated_at),
        }

    def _deserialize_schedule(self, data: dict) -> WorkflowSchedule:
        return WorkflowSchedule(
            id=data["id"],
            user_id=data["user_id"],
            workflow_id=data["workflow_id"],
            cron=data["cron"],
            timezone=data.get("timezone") or "UTC",
            enabled=data.get("enabled", True),
            next_run_at=self._deserialize_datetime(data.get("next_run_at")),
            last_run_at=self._deserialize_datetime(data.get("last_run_at")),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )
