from __future__ import annotations

import asyncio
import json
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Mapping, Optional

from stepflow.logging import get_logger
from stepflow.service.agent import Agent
from stepflow.service.errors import StepExecutionFailedError
from stepflow.storage.models import StepDefinition

logger = get_logger(__name__)

ACTION_PLACEHOLDER_RESULT = {"message": "Step executed"}


def build_instruction(
    step: StepDefinition,
    input_data: Mapping[str, Any],
    previous: Mapping[str, Any],
) -> str:
    """Render the text handed to the agent for an action step."""
    context = {"input_data": dict(input_data), "previous": dict(previous)}
    return "\n".join(
        [
            f"Step name: {step.name}",
            f"Step app: {step.app or ''}",
            f"Step action: {step.action or ''}",
            f"Step description: {step.description or ''}",
            f"Parameters JSON: {json.dumps(step.parameters, default=str)}",
            f"Context JSON: {json.dumps(context, default=str)}",
            "Do the step now. If you need to call a tool, call it. Return the tool result.",
        ]
    )


class StepInvoker:
    """Executes a single step; never touches execution records."""

    def __init__(
        self,
        agent: Agent,
        *,
        default_delay_ms: int = 1000,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ) -> None:
        self.agent = agent
        self.default_delay_ms = default_delay_ms
        self._sleep = sleep or asyncio.sleep

    async def invoke(
        self,
        step: StepDefinition,
        *,
        user_id: str,
        previous: Mapping[str, Any],
        input_data: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        snapshot = MappingProxyType(dict(previous))
        if step.kind == "delay":
            return await self._run_delay(step)
        if step.kind == "action":
            return await self._run_action(step, user_id, snapshot, input_data or {})
        raise StepExecutionFailedError(step.id, f"unsupported step type: {step.kind}")

    def _delay_ms(self, step: StepDefinition) -> int:
        raw = step.parameters.get("duration")
        if raw is None or raw == "":
            return self.default_delay_ms
        try:
            duration = int(raw)
        except (TypeError, ValueError):
            raise StepExecutionFailedError(step.id, f"invalid delay duration: {raw!r}")
        if duration < 0:
            raise StepExecutionFailedError(step.id, f"invalid delay duration: {raw!r}")
        return duration

    async def _run_delay(self, step: StepDefinition) -> dict:
        duration = self._delay_ms(step)
        await self._sleep(duration / 1000.0)
        return {"ok": True, "duration": duration}

    async def _run_action(
        self,
        step: StepDefinition,
        user_id: str,
        previous: Mapping[str, Any],
        input_data: Mapping[str, Any],
    ) -> Any:
        if not step.action:
            # placeholder steps (e.g. from templates) have nothing to delegate
            logger.info("step_action_empty", step_id=step.id, app=step.app)
            return dict(ACTION_PLACEHOLDER_RESULT)
        instruction = build_instruction(step, input_data, previous)
        toolkits = [step.app] if step.app else []
        try:
            return await self.agent.run(
                user_id=user_id, toolkits=toolkits, instruction=instruction
            )
        except StepExecutionFailedError:
            raise
        except Exception as exc:
            logger.warning(
                "step_action_failed",
                step_id=step.id,
                app=step.app,
                action=step.action,
                error_type=type(exc).__name__,
            )
            raise StepExecutionFailedError(step.id, str(exc)) from exc
