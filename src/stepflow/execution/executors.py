"""Step executor contract and registry.

Task-like steps (TASK, USER_TASK, SERVICE_CALL, SCRIPT, EMAIL) are executed by
host-supplied executors. A step names its executor by reference
(``StepDefinition.executor``); the registry resolves the reference, falling
back to an executor registered for the step's kind.

Example::

    registry = ExecutorRegistry()

    @registry.executor("invoice.create")
    def create_invoice(step, ctx):
        return {"invoice_id": billing.create(ctx.get("order_id"))}

    registry.register("service_call", HttpServiceExecutor(session))
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from stepflow.core.errors import ConfigurationError, ExecutionError
from stepflow.core.logging import get_logger
from stepflow.execution.context import ExecutionContext
from stepflow.execution.results import ExecutionResult
from stepflow.model.step import StepDefinition
from stepflow.model.step_types import ConfigKey, StepKind

logger = get_logger(__name__)


@runtime_checkable
class StepExecutor(Protocol):
    """Executes one task-like step."""

    def execute(self, step: StepDefinition, context: ExecutionContext) -> ExecutionResult:
        ...


class FunctionExecutor:
    """Adapts ``fn(step, context)`` into a :class:`StepExecutor`.

    Plain return values are coerced with :meth:`ExecutionResult.from_value`.
    """

    def __init__(self, fn: Callable[[StepDefinition, ExecutionContext], Any], name: str | None = None):
        self._fn = fn
        self.name = name or getattr(fn, "__name__", "executor")

    def execute(self, step: StepDefinition, context: ExecutionContext) -> ExecutionResult:
        return ExecutionResult.from_value(self._fn(step, context))

    def __repr__(self) -> str:
        return f"FunctionExecutor({self.name!r})"


class UserTaskExecutor:
    """Default ``user_task`` executor: park the instance until completion.

    The engine turns the WAITING result into a pending :class:`UserTask`;
    the assignment details travel in the output.
    """

    def execute(self, step: StepDefinition, context: ExecutionContext) -> ExecutionResult:
        assignee = step.config(ConfigKey.ASSIGNEE)
        return ExecutionResult.waiting(
            message=f"Waiting for {assignee or 'any user'} to complete {step.name}",
            output={
                "assignee": assignee,
                "candidate_groups": step.config(ConfigKey.CANDIDATE_GROUPS, []),
                "form_key": step.config(ConfigKey.FORM_KEY),
            },
        )


def _as_executor(executor: StepExecutor | Callable[..., Any]) -> StepExecutor:
    if isinstance(executor, StepExecutor):
        return executor
    if callable(executor):
        return FunctionExecutor(executor)
    raise ConfigurationError(
        f"Expected a StepExecutor or callable, got {type(executor).__name__}",
        value=executor,
    )


class ExecutorRegistry:
    """Reference → executor map with per-kind fallbacks. Thread-safe."""

    def __init__(self, *, include_defaults: bool = True) -> None:
        self._by_ref: dict[str, StepExecutor] = {}
        self._by_kind: dict[StepKind, StepExecutor] = {}
        self._lock = threading.Lock()
        if include_defaults:
            self.register("user_task", UserTaskExecutor())

    def register(self, ref: str, executor: StepExecutor | Callable[..., Any]) -> None:
        if not ref:
            raise ConfigurationError("Executor reference must be a non-empty string", key="executor")
        with self._lock:
            self._by_ref[ref] = _as_executor(executor)
        logger.debug("executor.registered", ref=ref)

    def register_for_kind(self, kind: StepKind, executor: StepExecutor | Callable[..., Any]) -> None:
        with self._lock:
            self._by_kind[StepKind(kind)] = _as_executor(executor)
        logger.debug("executor.registered_for_kind", kind=StepKind(kind).value)

    def executor(self, ref: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator form of :meth:`register`."""

        def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
            self.register(ref, fn)
            return fn

        return decorator

    def unregister(self, ref: str) -> None:
        with self._lock:
            self._by_ref.pop(ref, None)

    def has(self, ref: str) -> bool:
        with self._lock:
            return ref in self._by_ref

    def refs(self) -> list[str]:
        with self._lock:
            return sorted(self._by_ref)

    def resolve(self, step: StepDefinition) -> StepExecutor:
        """Executor for *step*: by reference first, then by kind.

        Raises:
            ExecutionError: Nothing registered for the step.
        """
        with self._lock:
            if step.executor and step.executor in self._by_ref:
                return self._by_ref[step.executor]
            if step.kind in self._by_kind:
                return self._by_kind[step.kind]
        raise ExecutionError(
            f"No executor registered for step {step.id} "
            f"(executor={step.executor!r}, kind={step.kind.value})",
            step_id=step.id,
        )


__all__ = [
    "StepExecutor",
    "FunctionExecutor",
    "UserTaskExecutor",
    "ExecutorRegistry",
]
