from __future__ import annotations

from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from stepflow.logging import get_logger
from stepflow.service.coordinator import ExecutionCoordinator, ProgressEvent
from stepflow.service.errors import NotFoundError, ValidationError, WorkflowNotFoundError
from stepflow.service.templates import get_template
from stepflow.storage.models import (
    STEP_KINDS,
    Execution,
    ExecutionStep,
    Workflow,
)

logger = get_logger(__name__)

COPY_SUFFIX = " (Copy)"


def serialize_workflow(workflow: Workflow) -> dict:
    return {
        "id": workflow.id,
        "name": workflow.name,
        "description": workflow.description,
        "status": workflow.status,
        "steps": workflow.steps,
        "created_at": workflow.created_at.isoformat(),
        "updated_at": workflow.updated_at.isoformat(),
    }


def check_steps(steps: List[dict]) -> List[dict]:
    """Reject step lists the engine could never run; dependencies are checked at run time."""
    seen: set[str] = set()
    for index, raw in enumerate(steps):
        if not isinstance(raw, dict):
            raise ValidationError("each step must be an object", detail={"index": index})
        kind = raw.get("type") or raw.get("kind") or "action"
        if kind not in STEP_KINDS:
            raise ValidationError(
                "unsupported step type", detail={"index": index, "type": kind}
            )
        step_id = raw.get("id")
        step_id = str(step_id) if step_id not in (None, "") else f"step-{index}"
        if step_id in seen:
            raise ValidationError("duplicate step id", detail={"step_id": step_id})
        seen.add(step_id)
    return steps


class WorkflowService:
    """Workflow CRUD, the per-user list cache, and execution entry points."""

    def __init__(self, store, coordinator: ExecutionCoordinator, cache) -> None:
        self.store = store
        self.coordinator = coordinator
        self.cache = cache

    def get(self, user_id: str, workflow_id: str) -> Workflow:
        workflow = self.store.get_workflow(workflow_id, user_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    async def list_workflows(
        self, user_id: str, status: Optional[str] = None
    ) -> Tuple[List[dict], bool]:
        """Return ``(workflows, cache_hit)``."""
        cached = await self.cache.get_workflow_list(user_id, status)
        if cached is not None:
            return cached, True
        items = [
            serialize_workflow(wf)
            for wf in self.store.list_workflows(user_id, status=status, limit=100)
        ]
        await self.cache.set_workflow_list(user_id, status, items)
        return items, False

    async def create(
        self,
        user_id: str,
        *,
        name: str,
        steps: List[dict],
        description: str = "",
        status: str = "draft",
    ) -> Workflow:
        workflow = self.store.create_workflow(
            user_id,
            name,
            description=description,
            steps=check_steps(steps),
            status=status,
        )
        await self.cache.invalidate_workflow_lists(user_id)
        logger.info("workflow_created", workflow_id=workflow.id, user_id=user_id)
        return workflow

    async def update(
        self,
        user_id: str,
        workflow_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        steps: Optional[List[dict]] = None,
        status: Optional[str] = None,
    ) -> Workflow:
        workflow = self.store.update_workflow(
            workflow_id,
            user_id,
            name=name,
            description=description,
            steps=check_steps(steps) if steps is not None else None,
            status=status,
        )
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        await self.cache.invalidate_workflow_lists(user_id)
        return workflow

    async def delete(self, user_id: str, workflow_id: str) -> None:
        if not self.store.delete_workflow(workflow_id, user_id):
            raise WorkflowNotFoundError(workflow_id)
        await self.cache.invalidate_workflow_lists(user_id)
        logger.info("workflow_deleted", workflow_id=workflow_id, user_id=user_id)

    async def copy(self, user_id: str, workflow_id: str) -> Workflow:
        original = self.get(user_id, workflow_id)
        copied = self.store.create_workflow(
            user_id,
            f"{original.name}{COPY_SUFFIX}",
            description=original.description,
            steps=original.steps,
            status="draft",
        )
        await self.cache.invalidate_workflow_lists(user_id)
        return copied

    async def create_from_template(
        self, user_id: str, template_id: str, *, name: Optional[str] = None
    ) -> Workflow:
        template = get_template(template_id)
        if template is None:
            raise NotFoundError("template not found", detail={"template_id": template_id})
        workflow = await self.create(
            user_id,
            name=name or template.name,
            description=template.description,
            steps=template.to_dict()["steps"],
        )
        logger.info(
            "workflow_created_from_template", workflow_id=workflow.id, template_id=template_id
        )
        return workflow

    # executions
    def start_execution(
        self, user_id: str, workflow_id: str, input_data: Optional[Dict[str, Any]] = None
    ) -> Execution:
        workflow = self.get(user_id, workflow_id)
        return self.coordinator.start_detached(workflow, user_id, input_data=input_data)

    async def run_execution(
        self, user_id: str, workflow_id: str, input_data: Optional[Dict[str, Any]] = None
    ) -> Execution:
        workflow = self.get(user_id, workflow_id)
        return await self.coordinator.run(
            workflow, user_id, input_data=input_data, raise_on_failure=True
        )

    def stream_execution(
        self, user_id: str, workflow_id: str, input_data: Optional[Dict[str, Any]] = None
    ) -> AsyncIterator[ProgressEvent]:
        workflow = self.get(user_id, workflow_id)
        return self.coordinator.stream(workflow, user_id, input_data=input_data)

    def list_executions(
        self, user_id: str, workflow_id: str, limit: int = 50
    ) -> List[Execution]:
        self.get(user_id, workflow_id)
        return self.store.list_executions(workflow_id, user_id=user_id, limit=limit)

    def timeline(
        self, user_id: str, execution_id: str
    ) -> Tuple[Execution, List[ExecutionStep]]:
        execution = self.store.get_execution(execution_id, user_id)
        if execution is None:
            raise NotFoundError("execution not found", detail={"execution_id": execution_id})
        return execution, self.store.list_execution_steps(execution_id)
