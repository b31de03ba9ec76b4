"""Tests for stepflow.execution.retry — backoff strategies per step kind."""

from __future__ import annotations

import pytest

from stepflow.execution import ExponentialBackoff, NoRetry, strategy_for_step
from stepflow.model import StepDefinition, StepKind


def _step(kind: StepKind, retry_count: int) -> StepDefinition:
    config = {"service_url": "https://x"} if kind is StepKind.SERVICE_CALL else {}
    return StepDefinition(
        id="s", name="s", kind=kind, order=1, executor="x", configuration=config, retry_count=retry_count
    )


class TestExponentialBackoff:
    def test_delays_double_until_cap(self):
        backoff = ExponentialBackoff(max_retries=5, base_delay=1.0, max_delay=5.0)
        assert [backoff.next_delay(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_should_retry(self):
        backoff = ExponentialBackoff(max_retries=2)
        assert backoff.should_retry(0)
        assert backoff.should_retry(1)
        assert not backoff.should_retry(2)

    def test_jitter_stays_in_range(self):
        backoff = ExponentialBackoff(base_delay=4.0, jitter=True, jitter_range=0.25)
        for _ in range(50):
            assert 3.0 <= backoff.next_delay(0) <= 5.0


def test_no_retry():
    assert not NoRetry().should_retry(0)
    assert NoRetry().next_delay(3) == 0.0


class TestStrategyForStep:
    @pytest.mark.parametrize("kind", [StepKind.SERVICE_CALL, StepKind.EMAIL])
    def test_retryable_kinds(self, kind):
        strategy = strategy_for_step(_step(kind, 2), base_delay=0.5, max_delay=10)
        assert isinstance(strategy, ExponentialBackoff)
        assert strategy.max_retries == 2
        assert strategy.next_delay(1) == 1.0

    @pytest.mark.parametrize("kind", [StepKind.TASK, StepKind.SCRIPT, StepKind.USER_TASK])
    def test_other_kinds_never_retry(self, kind):
        assert isinstance(strategy_for_step(_step(kind, 5)), NoRetry)

    def test_zero_retry_count(self):
        assert isinstance(strategy_for_step(_step(StepKind.SERVICE_CALL, 0)), NoRetry)
