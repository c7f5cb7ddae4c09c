from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class WorkflowNotFoundError(NotFoundError):
    """Workflow does not exist or is not owned by the caller."""

    def __init__(self, workflow_id: str) -> None:
        super().__init__("workflow not found", detail={"workflow_id": workflow_id})
        self.workflow_id = workflow_id


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ExecutionError(ServiceError):
    """A workflow execution reached the ``failed`` state."""

    status_code = 500
    error_code = "server_error"


class CyclicOrMissingDependencyError(ExecutionError):
    """No pending step can run: the dependency graph has a cycle or a dangling id."""

    status_code = 400
    error_code = "validation_error"

    def __init__(self, pending: list[str], unresolved: dict[str, list[str]]) -> None:
        super().__init__(
            "circular dependency or missing step detected",
            detail={"pending": pending, "unresolved": unresolved},
        )
        self.pending = pending
        self.unresolved = unresolved


class StepExecutionFailedError(ExecutionError):
    """One step failed; ``message`` carries the underlying error verbatim."""

    status_code = 502

    def __init__(self, step_id: str, message: str) -> None:
        super().__init__(message, detail={"step_id": step_id})
        self.step_id = step_id


class PersistenceFailureError(ExecutionError):
    """A store operation failed while recording execution progress."""

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(message, detail={"operation": operation})
        self.operation = operation


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "WorkflowNotFoundError",
    "ConflictError",
    "ServerError",
    "ExecutionError",
    "CyclicOrMissingDependencyError",
    "StepExecutionFailedError",
    "PersistenceFailureError",
]
