"""Step handlers: the kind → handler registry the engine dispatches through.

ARCHITECTURE
────────────
::

    dispatch_step(handlers, step, ctx)
      ├── precondition false          → SKIPPED
      └── handlers.get(step.kind)(step, ctx) → ExecutionResult

    START / END                 → marker handlers
    TASK / USER_TASK / SERVICE_CALL / SCRIPT / EMAIL
                                → TaskHandler (executor registry, retry, deadline)
    TIMER                       → timer_handler (WAITING; the engine schedules the wake-up)
    CONDITION                   → ConditionalRouter.execute
    PARALLEL_GATEWAY            → ParallelCoordinator.execute
                                     └── BranchExecutor runs each branch's member steps

Handlers never touch instance state; they only answer with an
:class:`ExecutionResult` that the engine applies.

Tags:
    stepflow, engine, handlers, retry, dispatch
"""

from __future__ import annotations

import dataclasses
import threading
import time
from collections.abc import Callable
from typing import Any

from stepflow.core.errors import (
    ErrorCategory,
    ExecutionError,
    StepflowError,
    StepTimeoutError,
    categorize_error,
)
from stepflow.core.expressions import SafeEvalError, safe_eval_bool
from stepflow.core.logging import get_logger
from stepflow.execution.context import ExecutionContext
from stepflow.execution.executors import ExecutorRegistry, StepExecutor
from stepflow.execution.results import ExecutionResult, ExecutionStatus
from stepflow.execution.retry import strategy_for_step
from stepflow.execution.timeout import run_with_timeout
from stepflow.model.definition import WorkflowDefinition
from stepflow.model.step import StepDefinition
from stepflow.model.step_types import StepKind
from stepflow.parallel.coordinator import ParallelBranch

logger = get_logger(__name__)

StepHandler = Callable[[StepDefinition, ExecutionContext], ExecutionResult]

RETRY_EVENT = "step.retry"


class HandlerRegistry:
    """Kind → handler map. Thread-safe; later registrations replace earlier ones."""

    def __init__(self) -> None:
        self._handlers: dict[StepKind, StepHandler] = {}
        self._lock = threading.Lock()

    def register(self, kind: StepKind | str, handler: StepHandler) -> None:
        kind = StepKind(kind)
        with self._lock:
            self._handlers[kind] = handler
        logger.debug("handler.registered", kind=kind.value)

    def get(self, kind: StepKind) -> StepHandler:
        with self._lock:
            handler = self._handlers.get(kind)
        if handler is None:
            raise ExecutionError(f"No handler registered for step kind {kind.value}")
        return handler

    def kinds(self) -> list[StepKind]:
        with self._lock:
            return list(self._handlers)


# =============================================================================
# Dispatch
# =============================================================================


def check_precondition(step: StepDefinition, context: ExecutionContext) -> ExecutionResult | None:
    """SKIPPED when the precondition is false, FAILURE when it can't be evaluated."""
    if not step.precondition:
        return None
    try:
        holds = safe_eval_bool(step.precondition, context.namespace())
    except SafeEvalError as e:
        return ExecutionResult.failure(
            f"Precondition of step {step.id} could not be evaluated: {e}",
            category=ErrorCategory.VALIDATION,
            retryable=False,
        )
    if holds:
        return None
    return ExecutionResult.skipped(f"Precondition not met: {step.precondition}")


def dispatch_step(handlers: HandlerRegistry, step: StepDefinition, context: ExecutionContext) -> ExecutionResult:
    """Run one step through its handler. Never raises."""
    gate = check_precondition(step, context)
    if gate is not None:
        return gate
    try:
        return handlers.get(step.kind)(step, context)
    except StepflowError as e:
        logger.warning("step.handler_error", step_id=step.id, error=e.message)
        return ExecutionResult.failure(e.message, category=e.category, retryable=False)
    except Exception as e:
        logger.exception("step.handler_exception", step_id=step.id)
        return ExecutionResult.failure(
            f"Handler for step {step.id} raised {type(e).__name__}: {e}",
            category=ErrorCategory.INTERNAL,
            retryable=False,
        )


# =============================================================================
# Built-in handlers
# =============================================================================


def start_handler(step: StepDefinition, context: ExecutionContext) -> ExecutionResult:
    return ExecutionResult.success(message="Workflow started")


def end_handler(step: StepDefinition, context: ExecutionContext) -> ExecutionResult:
    return ExecutionResult.success(message="Workflow reached end")


def timer_handler(step: StepDefinition, context: ExecutionContext) -> ExecutionResult:
    """Park the instance; the engine schedules the wake-up from ``wait_duration``."""
    duration = step.wait_duration
    if duration is None:
        return ExecutionResult.failure(
            f"TIMER step {step.id} has no wait_duration",
            category=ErrorCategory.CONFIG,
            retryable=False,
        )
    if duration <= 0:
        return ExecutionResult.success(message="Timer elapsed immediately")
    return ExecutionResult.waiting(message=f"Waiting {duration:g}s")


class TaskHandler:
    """Runs task-like steps through the executor registry.

    Failures of retryable kinds are retried inline with exponential backoff;
    every retry is recorded as a ``step.retry`` event on the final result.
    Executors run under a wall-clock deadline (``step.timeout``) when
    ``enforce_timeouts`` is on. USER_TASK timeouts are waiting deadlines
    and are left to the scheduler.

    Args:
        executors: Registry resolving ``step.executor`` references
        base_delay: First backoff delay in seconds
        max_delay: Backoff ceiling in seconds
        enforce_timeouts: Bound executor calls by the step timeout
        sleep: Injected for tests
    """

    def __init__(
        self,
        executors: ExecutorRegistry,
        *,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        enforce_timeouts: bool = True,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        self._executors = executors
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._enforce_timeouts = enforce_timeouts
        self._sleep = sleep

    def __call__(self, step: StepDefinition, context: ExecutionContext) -> ExecutionResult:
        try:
            executor = self._executors.resolve(step)
        except ExecutionError as e:
            return ExecutionResult.failure(e.message, category=ErrorCategory.CONFIG, retryable=False)

        strategy = strategy_for_step(step, self._base_delay, self._max_delay)
        retries: list[dict[str, Any]] = []
        attempt = 0
        while True:
            result = self._attempt(executor, step, context.for_step(step.id, attempt + 1))
            if not result.is_failure or not result.retryable or context.is_cancelled:
                break
            if not strategy.should_retry(attempt):
                break
            delay = strategy.next_delay(attempt)
            retries.append({"event": RETRY_EVENT, "attempt": attempt + 1, "delay": delay, "error": result.message})
            logger.warning("step.retry", step_id=step.id, attempt=attempt + 1, delay=delay, error=result.message)
            self._sleep(delay)
            attempt += 1

        if retries:
            result = dataclasses.replace(result, events=[*result.events, *retries])
        return result

    def _attempt(
        self,
        executor: StepExecutor,
        step: StepDefinition,
        context: ExecutionContext,
    ) -> ExecutionResult:
        try:
            if self._enforce_timeouts and step.timeout and step.kind is not StepKind.USER_TASK:
                raw = run_with_timeout(
                    executor.execute,
                    float(step.timeout),
                    operation=step.id,
                    args=(step, context),
                )
            else:
                raw = executor.execute(step, context)
        except StepTimeoutError as e:
            logger.warning("step.timeout", step_id=step.id, timeout=e.timeout)
            return ExecutionResult.timeout(e.message)
        except Exception as e:
            logger.exception("step.exception", step_id=step.id, attempt=context.attempt)
            return ExecutionResult.failure(
                str(e) or type(e).__name__,
                category=categorize_error(e),
                retryable=e.retryable if isinstance(e, StepflowError) else True,
            )
        return ExecutionResult.from_value(raw)


def attempts_of(result: ExecutionResult) -> int:
    """Number of executor attempts behind *result*."""
    return 1 + sum(1 for event in result.events if event.get("event") == RETRY_EVENT)


class BranchExecutor:
    """Branch runner for the parallel coordinator.

    Runs a branch's member steps in order against a branch-local context;
    each member's output is visible to the next through ``inputs``. A
    failing optional member is skipped; any other failure, or a member that
    would wait, ends the branch.
    """

    def __init__(
        self,
        handlers: HandlerRegistry,
        definitions: Callable[[str], WorkflowDefinition],
    ):
        self._handlers = handlers
        self._definitions = definitions

    def __call__(self, branch: ParallelBranch, context: ExecutionContext) -> ExecutionResult:
        definition = self._definitions(context.definition_id)
        collected: dict[str, Any] = {}
        ctx = context
        for step_id in branch.step_ids:
            if ctx.is_cancelled:
                return ExecutionResult.failure(
                    f"Branch {branch.id} cancelled",
                    category=ErrorCategory.STATE,
                    retryable=False,
                )
            step = definition.get_step(step_id)
            if step is None:
                return ExecutionResult.failure(
                    f"Branch {branch.id} references unknown step {step_id}",
                    category=ErrorCategory.CONFIG,
                    retryable=False,
                )
            result = dispatch_step(self._handlers, step, ctx.for_step(step.id))
            logger.debug("branch.step_completed", branch_id=branch.id, step_id=step.id, status=result.status.value)
            if result.status is ExecutionStatus.WAITING:
                return result
            if result.is_failure:
                if step.optional:
                    continue
                return result
            collected.update(result.output)
            ctx = ctx.with_inputs(result.output)
        return ExecutionResult.success(output=collected, message=f"Branch {branch.id} completed")


__all__ = [
    "StepHandler",
    "HandlerRegistry",
    "check_precondition",
    "dispatch_step",
    "start_handler",
    "end_handler",
    "timer_handler",
    "TaskHandler",
    "BranchExecutor",
    "attempts_of",
]
