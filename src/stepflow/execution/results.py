"""ExecutionResult: the uniform envelope every step dispatch returns.

Executors, the conditional router, the parallel coordinator and the engine's
built-in handlers all answer with an :class:`ExecutionResult`; the engine
applies it to the instance (advance currentStepId, merge ``output`` into the
context, persist) without caring who produced it.

Example::

    from stepflow.execution import ExecutionResult

    def charge_card(step, ctx):
        receipt = gateway.charge(ctx.get("amount"))
        return ExecutionResult.success(output={"receipt_id": receipt.id})

    def route(step, ctx):
        return ExecutionResult.success().with_next_step("manual_review")
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from stepflow.core.errors import ErrorCategory


class ExecutionStatus(str, Enum):
    """Outcome of one step dispatch."""

    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    WAITING = "WAITING"
    SKIPPED = "SKIPPED"
    TIMEOUT = "TIMEOUT"


@dataclass(frozen=True)
class ExecutionResult:
    """
    Result of executing one step.

    Attributes:
        status: SUCCESS / FAILURE / WAITING / SKIPPED / TIMEOUT
        next_step_id: Override for the next step (routers, gateways, executors)
        output: Keys merged into the instance context on success
        message: Human-readable status or error message
        error_category: Category for retry decisions and reporting
        retryable: Whether a FAILURE may be retried (kinds with retry_count)
        events: Structured log events for observability
    """

    status: ExecutionStatus
    next_step_id: str | None = None
    output: dict[str, Any] = field(default_factory=dict)
    message: str | None = None
    error_category: str | None = None
    retryable: bool = True
    events: list[dict[str, Any]] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.status in (ExecutionStatus.FAILURE, ExecutionStatus.TIMEOUT) and not self.message:
            object.__setattr__(self, "message", "Step failed without error message")
        if isinstance(self.error_category, ErrorCategory):
            object.__setattr__(self, "error_category", self.error_category.value)

    # =========================================================================
    # Factories
    # =========================================================================

    @classmethod
    def success(
        cls,
        output: dict[str, Any] | None = None,
        next_step_id: str | None = None,
        message: str | None = None,
        events: list[dict[str, Any]] | None = None,
    ) -> ExecutionResult:
        """Create a successful result."""
        return cls(
            status=ExecutionStatus.SUCCESS,
            next_step_id=next_step_id,
            output=output or {},
            message=message,
            events=events or [],
        )

    @classmethod
    def failure(
        cls,
        message: str,
        category: ErrorCategory | str = ErrorCategory.EXECUTION,
        output: dict[str, Any] | None = None,
        retryable: bool = True,
        next_step_id: str | None = None,
    ) -> ExecutionResult:
        """
        Create a failed result.

        Args:
            message: Human-readable error message
            category: Error category for retry/alerting decisions
            output: Partial output, recorded but not merged
            retryable: False stops retries even for kinds that declare them
            next_step_id: Recovery target chosen by the producer (e.g. gateway error step)
        """
        return cls(
            status=ExecutionStatus.FAILURE,
            next_step_id=next_step_id,
            output=output or {},
            message=message,
            error_category=category,
            retryable=retryable,
        )

    @classmethod
    def waiting(cls, message: str | None = None, output: dict[str, Any] | None = None) -> ExecutionResult:
        """The step is blocked on an external signal (user task, timer)."""
        return cls(status=ExecutionStatus.WAITING, output=output or {}, message=message)

    @classmethod
    def skipped(cls, message: str = "Step skipped") -> ExecutionResult:
        return cls(status=ExecutionStatus.SKIPPED, message=message)

    @classmethod
    def timeout(cls, message: str, next_step_id: str | None = None) -> ExecutionResult:
        return cls(
            status=ExecutionStatus.TIMEOUT,
            next_step_id=next_step_id,
            message=message,
            error_category=ErrorCategory.TIMEOUT,
        )

    @classmethod
    def from_value(cls, value: Any) -> ExecutionResult:
        """Coerce an executor's plain return value into a result.

        ``None`` → success with no output, ``bool`` → success/failure,
        ``dict`` → success with that output.
        """
        if isinstance(value, ExecutionResult):
            return value
        if value is None:
            return cls.success()
        if isinstance(value, bool):
            return cls.success() if value else cls.failure("Executor returned False")
        if isinstance(value, dict):
            return cls.success(output=value)
        return cls.success(output={"result": value})

    # =========================================================================
    # Helpers
    # =========================================================================

    @property
    def is_success(self) -> bool:
        return self.status in (ExecutionStatus.SUCCESS, ExecutionStatus.SKIPPED)

    @property
    def is_failure(self) -> bool:
        return self.status in (ExecutionStatus.FAILURE, ExecutionStatus.TIMEOUT)

    def with_next_step(self, step_id: str | None) -> ExecutionResult:
        return dataclasses.replace(self, next_step_id=step_id)

    def with_output(self, **values: Any) -> ExecutionResult:
        return dataclasses.replace(self, output={**self.output, **values})

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"status": self.status.value}
        if self.next_step_id:
            d["next_step_id"] = self.next_step_id
        if self.output:
            d["output"] = dict(self.output)
        if self.message:
            d["message"] = self.message
        if self.error_category:
            d["error_category"] = self.error_category
        if self.events:
            d["events"] = list(self.events)
        return d


__all__ = ["ExecutionStatus", "ExecutionResult"]
