"""Rules shared by the memory and postgres store implementations."""

from __future__ import annotations

from stepflow.storage.errors import ConstraintViolation

# Allowed status moves for an execution step; anything else is rejected
STEP_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"running"}),
    "running": frozenset({"completed", "failed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}

EXECUTION_TRANSITIONS: dict[str, frozenset[str]] = {
    "running": frozenset({"completed", "failed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}


def allowed_step_sources(target: str) -> list[str]:
    """Statuses a step may be in right before moving to ``target``."""
    return [src for src, targets in STEP_TRANSITIONS.items() if target in targets]


def check_step_transition(step_id: str, current: str, target: str) -> None:
    if target not in STEP_TRANSITIONS.get(current, frozenset()):
        raise ConstraintViolation(
            "illegal execution step transition",
            {"step_record_id": step_id, "from": current, "to": target},
        )


def check_execution_transition(
    execution_id: str, current: str, target: str
) -> None:
    if target not in EXECUTION_TRANSITIONS.get(current, frozenset()):
        raise ConstraintViolation(
            "illegal execution transition",
            {"execution_id": execution_id, "from": current, "to": target},
        )


def normalize_email(email: str) -> str:
    return email.strip().lower()


__all__ = [
    "STEP_TRANSITIONS",
    "EXECUTION_TRANSITIONS",
    "allowed_step_sources",
    "check_step_transition",
    "check_execution_transition",
    "normalize_email",
]
