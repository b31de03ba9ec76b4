"""Retry strategies for retryable step kinds.

Only SERVICE_CALL and EMAIL steps retry; :func:`strategy_for_step` returns
:class:`NoRetry` for everything else. Delays follow
``min(max_delay, base_delay * 2 ** attempt)``.
"""

from __future__ import annotations

import random
from abc import ABC, abstractmethod
from dataclasses import dataclass

from stepflow.model.step import StepDefinition


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Delay in seconds before the next attempt.

        Args:
            attempt: Zero-based retry number (0 = first retry)
        """
        ...

    @abstractmethod
    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        """Whether retry number *attempt* (zero-based) may run."""
        ...


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Exponential backoff with optional jitter.

    Delay = min(base_delay * (multiplier ** attempt), max_delay) ± jitter
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: bool = False
    jitter_range: float = 0.25

    def next_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.multiplier ** attempt), self.max_delay)
        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay = max(0.0, delay + random.uniform(-jitter_amount, jitter_amount))
        return delay

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        return attempt < self.max_retries


@dataclass
class NoRetry(RetryStrategy):
    """No retry - fail immediately."""

    def next_delay(self, attempt: int) -> float:
        return 0.0

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        return False


def strategy_for_step(
    step: StepDefinition,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
) -> RetryStrategy:
    """Retry strategy for *step*, honouring its kind and ``retry_count``."""
    if not step.kind.supports_retry or step.retry_count <= 0:
        return NoRetry()
    return ExponentialBackoff(
        max_retries=step.retry_count,
        base_delay=base_delay,
        max_delay=max_delay,
    )


__all__ = ["RetryStrategy", "ExponentialBackoff", "NoRetry", "strategy_for_step"]
