from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from stepflow.logging import get_correlation_id
from stepflow.storage.models import Execution, ExecutionStep, WorkflowSchedule

# Maximum nested JSON depth accepted in parameter bags
MAX_JSON_DEPTH = 20
MAX_STEPS = 100

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_HANDLE_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


def _validate_email(value: str) -> str:
    normalized = value.strip().lower()
    if len(normalized) > 254 or not _EMAIL_PATTERN.match(normalized):
        raise ValueError("invalid email address")
    return normalized


# auth
class SignupRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=8, max_length=128)
    handle: Optional[str] = Field(default=None, max_length=64)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("handle")
    @classmethod
    def _validate_handle(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not _HANDLE_PATTERN.match(value):
            raise ValueError(
                "handle must contain only alphanumeric characters, underscores, and hyphens"
            )
        return value


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return value.strip().lower()


class AuthResponse(BaseModel):
    user_id: str
    session_id: str
    session_expires_at: datetime
    token_type: str = "bearer"


class UserResponse(BaseModel):
    id: str
    email: str
    handle: Optional[str] = None
    created_at: datetime


# workflows
class RetryHintModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    max_attempts: int = Field(default=1, ge=1, le=10, alias="maxAttempts")
    backoff_ms: int = Field(default=0, ge=0, le=600_000, alias="backoffMs")


class StepDefinitionModel(BaseModel):
    """One authored step; unknown keys are kept and stored as-is."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: Optional[str] = Field(default=None, max_length=128)
    name: Optional[str] = Field(default=None, max_length=256)
    type: Literal["action", "delay"] = "action"
    app: Optional[str] = Field(default=None, max_length=128)
    action: Optional[str] = Field(default=None, max_length=256)
    description: Optional[str] = Field(default=None, max_length=4096)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list, alias="dependsOn")
    retry: Optional[RetryHintModel] = None

    @field_validator("parameters")
    @classmethod
    def _validate_parameters(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        _validate_json_depth(value)
        return value

    @field_validator("depends_on", mode="before")
    @classmethod
    def _coerce_dependencies(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [str(item) for item in value]
        return value

    def to_stored(self) -> dict:
        return self.model_dump(exclude_none=True)


def _check_unique_ids(steps: List[StepDefinitionModel]) -> None:
    seen: set[str] = set()
    for index, step in enumerate(steps):
        step_id = step.id or f"step-{index}"
        if step_id in seen:
            raise ValueError(f"duplicate step id: {step_id}")
        seen.add(step_id)


WorkflowStatus = Literal["draft", "active", "paused", "archived"]


class WorkflowCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=256)
    description: str = Field(default="", max_length=4096)
    steps: List[StepDefinitionModel] = Field(..., max_length=MAX_STEPS)
    status: WorkflowStatus = "draft"

    @model_validator(mode="after")
    def _unique_step_ids(self):
        _check_unique_ids(self.steps)
        return self


class WorkflowUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=256)
    description: Optional[str] = Field(default=None, max_length=4096)
    steps: Optional[List[StepDefinitionModel]] = Field(default=None, max_length=MAX_STEPS)
    status: Optional[WorkflowStatus] = None

    @model_validator(mode="after")
    def _unique_step_ids(self):
        if self.steps is not None:
            _check_unique_ids(self.steps)
        return self


class ExecuteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    input_data: Dict[str, Any] = Field(default_factory=dict, alias="inputData")

    @field_validator("input_data")
    @classmethod
    def _validate_input(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        _validate_json_depth(value)
        return value


class ExecutionResponse(BaseModel):
    id: str
    workflow_id: str
    status: str
    trigger: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    input_data: Dict[str, Any] = Field(default_factory=dict)
    output_data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None

    @classmethod
    def from_model(cls, execution: Execution) -> "ExecutionResponse":
        return cls(
            id=execution.id,
            workflow_id=execution.workflow_id,
            status=execution.status,
            trigger=execution.trigger,
            started_at=execution.started_at,
            completed_at=execution.completed_at,
            input_data=execution.input_data,
            output_data=execution.output_data,
            error_message=execution.error_message,
        )


class ExecutionStepResponse(BaseModel):
    id: str
    step_index: int
    step_id: str
    step_name: str
    step_type: str
    status: str
    input_data: Dict[str, Any] = Field(default_factory=dict)
    output_data: Optional[Any] = None
    error_message: Optional[str] = None
    attempts: int = 0
    logs: List[str] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, record: ExecutionStep) -> "ExecutionStepResponse":
        return cls(
            id=record.id,
            step_index=record.step_index,
            step_id=record.step_id,
            step_name=record.step_name,
            step_type=record.step_type,
            status=record.status,
            input_data=record.input_data,
            output_data=record.output_data,
            error_message=record.error_message,
            attempts=record.attempts,
            logs=list(record.logs),
            started_at=record.started_at,
            completed_at=record.completed_at,
        )


class TimelineResponse(BaseModel):
    execution: ExecutionResponse
    steps: List[ExecutionStepResponse]
    summary: Dict[str, int] = Field(default_factory=dict)


# schedules
class ScheduleRequest(BaseModel):
    cron: str = Field(..., min_length=1, max_length=128)
    timezone: Optional[str] = Field(default=None, min_length=1, max_length=64)
    enabled: bool = True


class ScheduleResponse(BaseModel):
    id: str
    workflow_id: str
    cron: str
    timezone: str
    enabled: bool
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    updated_at: datetime

    @classmethod
    def from_model(cls, schedule: WorkflowSchedule) -> "ScheduleResponse":
        return cls(
            id=schedule.id,
            workflow_id=schedule.workflow_id,
            cron=schedule.cron,
            timezone=schedule.timezone,
            enabled=schedule.enabled,
            next_run_at=schedule.next_run_at,
            last_run_at=schedule.last_run_at,
            updated_at=schedule.updated_at,
        )


# templates and parsing
class TemplateInstantiateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=256)


class ParseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    instruction: str = Field(..., min_length=1, max_length=4000)
    available_apps: List[str] = Field(default_factory=list, alias="availableApps", max_length=100)
