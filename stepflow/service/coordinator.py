"""Drives one workflow execution from creation to a terminal state.

Three entry points share the same state machine:

- ``run`` awaits the whole execution in the caller's task.
- ``stream`` yields progress events while a tracked background task runs the
  execution, so a consumer that stops listening does not strand it.
- ``start_detached`` returns the freshly created execution and finishes it in
  a tracked background task.

Step records are created in bulk before the first step runs. Each record
moves ``pending -> running -> completed|failed`` exactly once; retries happen
while the record stays ``running``.
"""

from __future__ import annotations

import asyncio
import dataclasses
from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Set,
    Tuple,
)

from stepflow.logging import get_logger, log_execution_trace
from stepflow.service.errors import (
    ExecutionError,
    PersistenceFailureError,
    ServiceError,
    StepExecutionFailedError,
    ValidationError,
)
from stepflow.service.invoker import StepInvoker
from stepflow.service.resolver import next_runnable_step
from stepflow.storage.models import (
    Execution,
    ExecutionStep,
    StepDefinition,
    Workflow,
    utcnow,
)

logger = get_logger(__name__)

MAX_RETRY_ATTEMPTS = 3
RETRY_BACKOFF_FACTOR = 4

Emit = Callable[[str, dict], Awaitable[None]]


@dataclass
class ProgressEvent:
    name: str
    data: dict

    def to_sse(self, dumps: Callable[[Any], str]) -> str:
        return f"event: {self.name}\ndata: {dumps(self.data)}\n\n"


@dataclass
class _RunState:
    execution: Execution
    definitions: List[StepDefinition]
    records: Dict[str, ExecutionStep]
    results: Dict[str, Any] = field(default_factory=dict)
    current: Optional[ExecutionStep] = None
    trace: List[dict] = field(default_factory=list)


async def _no_events(name: str, data: dict) -> None:
    return None


def parse_steps(workflow: Workflow) -> List[StepDefinition]:
    try:
        return [
            StepDefinition.from_dict(raw, index)
            for index, raw in enumerate(workflow.steps)
        ]
    except (TypeError, ValueError, AttributeError) as exc:
        raise ValidationError(
            "invalid step definition", detail={"workflow_id": workflow.id, "error": str(exc)}
        ) from exc


class ExecutionCoordinator:
    def __init__(
        self,
        store,
        invoker: StepInvoker,
        *,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        shutdown_grace_seconds: float = 5.0,
    ) -> None:
        self.store = store
        self.invoker = invoker
        self._sleep = sleep or asyncio.sleep
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self._background: Set[asyncio.Task] = set()

    # store access
    def _store_call(self, operation: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        try:
            return fn(*args, **kwargs)
        except Exception as exc:
            logger.error(
                "execution_store_call_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise PersistenceFailureError(operation, str(exc) or type(exc).__name__) from exc

    def _begin(
        self,
        workflow: Workflow,
        user_id: str,
        *,
        trigger: str,
        input_data: Optional[Dict[str, Any]],
    ) -> _RunState:
        definitions = parse_steps(workflow)
        execution = self._store_call(
            "create_execution",
            self.store.create_execution,
            workflow.id,
            user_id,
            trigger=trigger,
            input_data=input_data or {},
        )
        state = _RunState(execution=execution, definitions=definitions, records={})
        try:
            records = self._store_call(
                "create_execution_steps",
                self.store.create_execution_steps,
                execution.id,
                definitions,
            )
        except PersistenceFailureError as exc:
            self._mark_failed(state, exc.message)
            raise
        state.records = {rec.step_id: rec for rec in records}
        logger.info(
            "execution_started",
            execution_id=execution.id,
            workflow_id=workflow.id,
            user_id=user_id,
            trigger=trigger,
            step_count=len(definitions),
        )
        return state

    def _mark_failed(self, state: _RunState, message: str) -> Execution:
        """Persist ``failed`` on the execution, and on a step left ``running``."""
        execution = state.execution
        current = state.current
        if current is not None:
            try:
                self.store.update_execution_step(
                    current.id,
                    status="failed",
                    error_message=message,
                    logs=[f"Error: {message}"],
                )
            except Exception:
                logger.exception(
                    "execution_step_fail_persist_failed",
                    execution_id=execution.id,
                    step_id=current.step_id,
                )
            state.current = None
        try:
            return self.store.update_execution(
                execution.id,
                status="failed",
                output_data=state.results,
                error_message=message,
            )
        except Exception:
            logger.exception("execution_fail_persist_failed", execution_id=execution.id)
            return dataclasses.replace(
                execution,
                status="failed",
                error_message=message,
                output_data=dict(state.results),
                completed_at=utcnow(),
            )

    # step loop
    def _max_attempts(self, step: StepDefinition) -> int:
        if step.retry is None:
            return 1
        return max(1, min(step.retry.max_attempts, MAX_RETRY_ATTEMPTS))

    async def _attempt(
        self, state: _RunState, step: StepDefinition
    ) -> Tuple[Any, Optional[StepExecutionFailedError]]:
        try:
            result = await self.invoker.invoke(
                step,
                user_id=state.execution.user_id,
                previous=state.results,
                input_data=state.execution.input_data,
            )
        except StepExecutionFailedError as exc:
            return None, exc
        except Exception as exc:
            return None, StepExecutionFailedError(step.id, str(exc) or type(exc).__name__)
        return result, None

    async def _run_step(
        self, state: _RunState, step: StepDefinition, index: int, emit: Emit
    ) -> Any:
        execution = state.execution
        record = state.records[step.id]
        self._store_call(
            "update_execution_step",
            self.store.update_execution_step,
            record.id,
            status="running",
        )
        state.current = record
        logger.info(
            "step_started", execution_id=execution.id, step_id=step.id, kind=step.kind
        )
        await emit(
            "step_started",
            {
                "execution_id": execution.id,
                "step_index": index,
                "step_id": step.id,
                "name": step.name,
            },
        )

        max_attempts = self._max_attempts(step)
        logs: List[str] = []
        attempt = 0
        while True:
            attempt += 1
            result, failure = await self._attempt(state, step)
            if failure is None:
                break
            logs.append(f"Error: {failure.message}")
            if attempt >= max_attempts:
                logger.warning(
                    "step_failed",
                    execution_id=execution.id,
                    step_id=step.id,
                    attempts=attempt,
                    error=failure.message,
                )
                self._store_call(
                    "update_execution_step",
                    self.store.update_execution_step,
                    record.id,
                    status="failed",
                    error_message=failure.message,
                    attempts=attempt,
                    logs=logs,
                )
                state.current = None
                state.trace.append(
                    {"step_id": step.id, "status": "failed", "attempts": attempt}
                )
                await emit(
                    "step_failed",
                    {
                        "execution_id": execution.id,
                        "step_index": index,
                        "step_id": step.id,
                        "message": failure.message,
                    },
                )
                raise failure
            backoff_ms = step.retry.backoff_ms * RETRY_BACKOFF_FACTOR ** (attempt - 1)
            logger.info(
                "step_retry_scheduled",
                execution_id=execution.id,
                step_id=step.id,
                attempt=attempt,
                backoff_ms=backoff_ms,
            )
            await self._sleep(backoff_ms / 1000.0)

        logs.append(f"Step {step.name} completed successfully")
        self._store_call(
            "update_execution_step",
            self.store.update_execution_step,
            record.id,
            status="completed",
            output_data=result,
            attempts=attempt,
            logs=logs,
        )
        state.current = None
        state.trace.append({"step_id": step.id, "status": "completed", "attempts": attempt})
        logger.info("step_completed", execution_id=execution.id, step_id=step.id)
        await emit(
            "step_completed",
            {
                "execution_id": execution.id,
                "step_index": index,
                "step_id": step.id,
                "result": result,
            },
        )
        return result

    async def _drive(
        self, state: _RunState, emit: Emit
    ) -> Tuple[Execution, Optional[ExecutionError]]:
        execution = state.execution
        positions = {step.id: index for index, step in enumerate(state.definitions)}
        executed: Set[str] = set()
        try:
            while True:
                step = next_runnable_step(state.definitions, executed)
                if step is None:
                    break
                result = await self._run_step(state, step, positions[step.id], emit)
                state.results[step.id] = result
                executed.add(step.id)
            final = self._store_call(
                "update_execution",
                self.store.update_execution,
                execution.id,
                status="completed",
                output_data=state.results,
            )
        except ExecutionError as exc:
            final = self._mark_failed(state, exc.message)
            logger.warning(
                "execution_failed",
                execution_id=execution.id,
                error_code=exc.error_code,
                error=exc.message,
            )
            log_execution_trace(execution.id, state.trace, logger)
            await emit(
                "execution_failed",
                {
                    "execution_id": execution.id,
                    "message": exc.message,
                    "code": exc.error_code,
                },
            )
            return final, exc
        logger.info("execution_completed", execution_id=execution.id)
        log_execution_trace(execution.id, state.trace, logger)
        await emit(
            "execution_completed",
            {"execution_id": execution.id, "output": state.results},
        )
        return final, None

    async def _guarded(self, state: _RunState, emit: Emit) -> None:
        """Drive a background run; the execution always ends up terminal."""
        try:
            await self._drive(state, emit)
        except asyncio.CancelledError:
            self._mark_failed(state, "execution cancelled")
            raise
        except Exception as exc:
            logger.exception("execution_crashed", execution_id=state.execution.id)
            self._mark_failed(state, str(exc) or type(exc).__name__)

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # entry points
    async def run(
        self,
        workflow: Workflow,
        user_id: str,
        *,
        input_data: Optional[Dict[str, Any]] = None,
        trigger: str = "manual",
        raise_on_failure: bool = False,
    ) -> Execution:
        state = self._begin(workflow, user_id, trigger=trigger, input_data=input_data)
        try:
            final, failure = await self._drive(state, _no_events)
        except asyncio.CancelledError:
            # e.g. the schedule worker stopping mid-step
            self._mark_failed(state, "execution cancelled")
            raise
        except Exception as exc:
            logger.exception("execution_crashed", execution_id=state.execution.id)
            self._mark_failed(state, str(exc) or type(exc).__name__)
            raise
        if failure is not None and raise_on_failure:
            raise failure
        return final

    def start_detached(
        self,
        workflow: Workflow,
        user_id: str,
        *,
        input_data: Optional[Dict[str, Any]] = None,
        trigger: str = "manual",
    ) -> Execution:
        """Create the execution records, then finish the run in the background."""
        state = self._begin(workflow, user_id, trigger=trigger, input_data=input_data)
        self._spawn(self._guarded(state, _no_events))
        return state.execution

    async def stream(
        self,
        workflow: Workflow,
        user_id: str,
        *,
        input_data: Optional[Dict[str, Any]] = None,
        trigger: str = "stream",
    ) -> AsyncIterator[ProgressEvent]:
        queue: asyncio.Queue = asyncio.Queue()

        async def emit(name: str, data: dict) -> None:
            await queue.put(ProgressEvent(name, data))

        async def produce() -> None:
            try:
                try:
                    state = self._begin(
                        workflow, user_id, trigger=trigger, input_data=input_data
                    )
                except ServiceError as exc:
                    await emit(
                        "execution_failed",
                        {"execution_id": None, "message": exc.message, "code": exc.error_code},
                    )
                    return
                await emit("execution_started", {"execution_id": state.execution.id})
                await self._guarded(state, emit)
            finally:
                queue.put_nowait(None)

        self._spawn(produce())
        while True:
            event = await queue.get()
            if event is None:
                return
            yield event

    async def wait_for_background(self, timeout: Optional[float] = None) -> bool:
        """Wait for background runs; returns False if some are still going."""
        pending = [task for task in self._background if not task.done()]
        if not pending:
            return True
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        return not still_running

    async def shutdown(self) -> None:
        if await self.wait_for_background(self.shutdown_grace_seconds):
            return
        pending = [task for task in self._background if not task.done()]
        logger.warning("execution_shutdown_cancelling", pending=len(pending))
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    @property
    def background_count(self) -> int:
        return sum(1 for task in self._background if not task.done())


def summarize_steps(records: Sequence[ExecutionStep]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for record in records:
        counts[record.status] = counts.get(record.status, 0) + 1
    return counts
