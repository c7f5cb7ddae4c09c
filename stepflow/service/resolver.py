"""Dependency ordering for workflow steps.

Steps run in declaration order, except that a step is held back until every
id in its ``depends_on`` list has executed. Ids are not checked ahead of time;
a cycle or a reference to an id that does not exist surfaces as
:class:`CyclicOrMissingDependencyError` once nothing else can run.
"""

from __future__ import annotations

from typing import AbstractSet, List, Optional, Sequence

from stepflow.service.errors import CyclicOrMissingDependencyError
from stepflow.storage.models import StepDefinition


def next_runnable_step(
    steps: Sequence[StepDefinition], executed: AbstractSet[str]
) -> Optional[StepDefinition]:
    """Return the first unexecuted step whose dependencies have all run.

    Returns ``None`` once every step id is in ``executed``.
    """
    pending = [step for step in steps if step.id not in executed]
    if not pending:
        return None
    for step in pending:
        if all(dep in executed for dep in step.depends_on):
            return step
    raise CyclicOrMissingDependencyError(
        pending=[step.id for step in pending],
        unresolved={
            step.id: [dep for dep in step.depends_on if dep not in executed]
            for step in pending
        },
    )


def resolve_order(steps: Sequence[StepDefinition]) -> List[StepDefinition]:
    order: List[StepDefinition] = []
    executed: set[str] = set()
    while True:
        step = next_runnable_step(steps, executed)
        if step is None:
            return order
        order.append(step)
        executed.add(step.id)
