"""Fluent builder for PARALLEL_GATEWAY step configuration.

Examples
--------
::

    fan_out = (
        ParallelStepBuilder()
        .add_branch("credit", "Credit check", ["credit_check"])
        .add_branch("fraud", "Fraud screen", ["fraud_screen"])
        .add_optional_branch("crm", "CRM sync", ["crm_sync"])
        .min_success(2)
        .timeout(120)
        .on_timeout("manual_review")
        .build()
    )
    builder.add_parallel_steps("screening", 5, fan_out)
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from stepflow.core.errors import ConfigurationError
from stepflow.model.step_types import ConfigKey
from stepflow.parallel.coordinator import (
    DEFAULT_BATCH_SIZE,
    ExecutionStrategy,
    GatewayConfig,
    ParallelBranch,
)
from stepflow.parallel.join import JoinType


class ParallelStepBuilder:
    """Collects branches, a join policy and an execution strategy."""

    def __init__(self) -> None:
        self._branches: list[ParallelBranch] = []
        self._join_type: str = JoinType.AND.value
        self._join_condition: str | None = None
        self._strategy = ExecutionStrategy.PARALLEL
        self._batch_size = DEFAULT_BATCH_SIZE
        self._max_concurrency = 0
        self._timeout: float | None = None
        self._timeout_step_id: str | None = None
        self._error_step_id: str | None = None
        self._collect_results = True
        self._wait_for_all = False
        self._share_data = False
        self._fail_fast = False

    # ── Branches ────────────────────────────────────────────────────────

    def add_branch(
        self,
        branch_id: str,
        name: str,
        step_ids: Iterable[str],
        *,
        configuration: Mapping[str, Any] | None = None,
        priority: int = 0,
        optional: bool = False,
        description: str | None = None,
    ) -> ParallelStepBuilder:
        if not branch_id:
            raise ConfigurationError("Branch id must be a non-empty string", key="id")
        if any(b.id == branch_id for b in self._branches):
            raise ConfigurationError(f"Duplicate branch id: {branch_id}", key="id", value=branch_id)
        members = tuple(step_ids)
        if not members:
            raise ConfigurationError(f"Branch {branch_id} has no member steps", key="step_ids")
        self._branches.append(ParallelBranch(
            id=branch_id,
            name=name or branch_id,
            step_ids=members,
            configuration=dict(configuration or {}),
            priority=priority,
            optional=optional,
            description=description,
        ))
        return self

    def add_optional_branch(
        self,
        branch_id: str,
        name: str,
        step_ids: Iterable[str],
        **kwargs: Any,
    ) -> ParallelStepBuilder:
        return self.add_branch(branch_id, name, step_ids, optional=True, **kwargs)

    def add_branches(self, branches: Iterable[ParallelBranch | Mapping[str, Any]]) -> ParallelStepBuilder:
        for branch in branches:
            if not isinstance(branch, ParallelBranch):
                branch = ParallelBranch.from_dict(branch)
            self.add_branch(
                branch.id,
                branch.name,
                branch.step_ids,
                configuration=branch.configuration,
                priority=branch.priority,
                optional=branch.optional,
                description=branch.description,
            )
        return self

    def remove_branch(self, branch_id: str) -> ParallelStepBuilder:
        self._branches = [b for b in self._branches if b.id != branch_id]
        return self

    # ── Join policy ─────────────────────────────────────────────────────

    def join_and(self) -> ParallelStepBuilder:
        self._join_type, self._join_condition = JoinType.AND.value, None
        return self

    def join_or(self) -> ParallelStepBuilder:
        self._join_type, self._join_condition = JoinType.OR.value, None
        return self

    def join_majority(self) -> ParallelStepBuilder:
        self._join_type, self._join_condition = JoinType.MAJORITY.value, None
        return self

    def join_first(self) -> ParallelStepBuilder:
        self._join_type, self._join_condition = JoinType.FIRST.value, None
        return self

    def join_with(self, policy_name: str) -> ParallelStepBuilder:
        """Use a join policy registered with ``register_join_policy``."""
        self._join_type, self._join_condition = policy_name.upper(), None
        return self

    def custom_join(self, condition: str) -> ParallelStepBuilder:
        if not condition:
            raise ConfigurationError("Custom join condition must be non-empty", key="join_condition")
        self._join_type, self._join_condition = JoinType.CUSTOM.value, condition
        return self

    def min_success(self, count: int) -> ParallelStepBuilder:
        if count < 1:
            raise ConfigurationError("min_success must be >= 1", key="join_condition", value=count)
        return self.custom_join(f"successCount >= {int(count)}")

    def success_rate(self, rate: float) -> ParallelStepBuilder:
        if not 0 < rate <= 1:
            raise ConfigurationError("success_rate must be in (0, 1]", key="join_condition", value=rate)
        return self.custom_join(f"(successCount * 1.0 / totalCount) >= {float(rate)}")

    # ── Timeouts / error routing ────────────────────────────────────────

    def timeout(self, seconds: float) -> ParallelStepBuilder:
        if seconds is None or seconds <= 0:
            raise ConfigurationError("Gateway timeout must be > 0", key="timeout", value=seconds)
        self._timeout = seconds
        return self

    def on_timeout(self, step: str) -> ParallelStepBuilder:
        self._timeout_step_id = step
        return self

    def on_error(self, step: str) -> ParallelStepBuilder:
        self._error_step_id = step
        return self

    # ── Execution ───────────────────────────────────────────────────────

    def collect_results(self, collect: bool = True) -> ParallelStepBuilder:
        self._collect_results = collect
        return self

    def wait_for_all(self, wait: bool = True) -> ParallelStepBuilder:
        self._wait_for_all = wait
        return self

    def share_data(self, share: bool = True) -> ParallelStepBuilder:
        self._share_data = share
        return self

    def fail_fast(self, enabled: bool = True) -> ParallelStepBuilder:
        self._fail_fast = enabled
        return self

    def max_concurrency(self, limit: int) -> ParallelStepBuilder:
        if limit < 0:
            raise ConfigurationError("max_concurrency must be >= 0", key="max_concurrency", value=limit)
        self._max_concurrency = limit
        return self

    def parallel(self) -> ParallelStepBuilder:
        self._strategy = ExecutionStrategy.PARALLEL
        return self

    def sequential(self) -> ParallelStepBuilder:
        self._strategy = ExecutionStrategy.SEQUENTIAL
        return self

    def batch(self, size: int = DEFAULT_BATCH_SIZE) -> ParallelStepBuilder:
        if size <= 0:
            raise ConfigurationError("Batch size must be > 0", key="batch_size", value=size)
        self._strategy = ExecutionStrategy.BATCH
        self._batch_size = size
        return self

    # ── Build ───────────────────────────────────────────────────────────

    @property
    def branches(self) -> list[ParallelBranch]:
        return list(self._branches)

    def _config(self) -> dict[str, Any]:
        config: dict[str, Any] = {
            ConfigKey.BRANCHES: [b.to_dict() for b in self._branches],
            ConfigKey.JOIN_TYPE: self._join_type,
            "execution_strategy": self._strategy.value,
            "batch_size": self._batch_size,
            "max_concurrency": self._max_concurrency,
            "collect_results": self._collect_results,
            "wait_for_all": self._wait_for_all,
            "share_data": self._share_data,
            "fail_fast": self._fail_fast,
        }
        if self._join_condition:
            config["join_condition"] = self._join_condition
        if self._timeout is not None:
            config["timeout"] = self._timeout
        if self._timeout_step_id:
            config[ConfigKey.TIMEOUT_STEP] = self._timeout_step_id
        if self._error_step_id:
            config[ConfigKey.ERROR_STEP] = self._error_step_id
        return config

    def validate(self) -> None:
        """Raises :class:`ConfigurationError` for an unusable gateway."""
        GatewayConfig.from_mapping(self._config())

    def build(self) -> dict[str, Any]:
        """Validate and return the PARALLEL_GATEWAY configuration map."""
        self.validate()
        config = self._config()
        config.update({
            "branch_count": len(self._branches),
            "optional_branch_count": sum(1 for b in self._branches if b.optional),
            "has_timeout": self._timeout is not None,
            "has_error_handler": self._error_step_id is not None,
        })
        return config


__all__ = ["ParallelStepBuilder"]
