from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


WORKFLOW_STATUSES = ("draft", "active", "paused", "archived")
EXECUTION_STATUSES = ("running", "completed", "failed")
STEP_STATUSES = ("pending", "running", "completed", "failed")
STEP_KINDS = ("action", "delay")


@dataclass
class User:
    id: str
    email: str
    handle: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True
    meta: Dict | None = None


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        *,
        meta: Dict | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            user_agent=user_agent,
            meta=meta,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class Workflow:
    id: str
    user_id: str
    name: str
    description: str = ""
    steps: List[dict] = field(default_factory=list)
    status: str = "draft"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class RetryHint:
    max_attempts: int = 1
    backoff_ms: int = 0


@dataclass
class StepDefinition:
    """One authored step, parsed from the workflow's stored JSON."""

    id: str
    name: str
    kind: str = "action"
    app: Optional[str] = None
    action: Optional[str] = None
    description: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    depends_on: List[str] = field(default_factory=list)
    retry: Optional[RetryHint] = None

    @classmethod
    def from_dict(cls, raw: dict, index: int) -> "StepDefinition":
        step_id = raw.get("id")
        step_id = str(step_id) if step_id not in (None, "") else f"step-{index}"
        params = raw.get("parameters")
        if params is None:
            params = raw.get("input")
        depends = raw.get("depends_on")
        if depends is None:
            depends = raw.get("dependsOn")
        retry_raw = raw.get("retry")
        retry = None
        if isinstance(retry_raw, dict):
            attempts = retry_raw.get("max_attempts", retry_raw.get("maxAttempts", 1))
            backoff = retry_raw.get("backoff_ms", retry_raw.get("backoffMs", 0))
            retry = RetryHint(max_attempts=int(attempts or 1), backoff_ms=int(backoff or 0))
        return cls(
            id=step_id,
            name=raw.get("name") or f"Step {index + 1}",
            kind=raw.get("type") or raw.get("kind") or "action",
            app=raw.get("app"),
            action=raw.get("action"),
            description=raw.get("description"),
            parameters=dict(params or {}),
            depends_on=[str(dep) for dep in (depends or [])],
            retry=retry,
        )


@dataclass
class Execution:
    id: str
    workflow_id: str
    user_id: str
    status: str = "running"
    trigger: str = "manual"
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    input_data: Dict[str, Any] = field(default_factory=dict)
    output_data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != "running"


@dataclass
class ExecutionStep:
    id: str
    execution_id: str
    step_index: int
    step_id: str
    step_name: str
    step_type: str
    status: str = "pending"
    input_data: Dict[str, Any] = field(default_factory=dict)
    output_data: Any = None
    error_message: Optional[str] = None
    attempts: int = 0
    logs: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


@dataclass
class WorkflowSchedule:
    id: str
    user_id: str
    workflow_id: str
    cron: str
    timezone: str = "UTC"
    enabled: bool = True
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
