"""Fluent builder for CONDITION step configuration.

Examples
--------
::

    routing = (
        ConditionalStepBuilder()
        .when_number("days", ">", 5).then_goto("director_review")
        .when_number("days", ">", 2).then_goto("manager_review")
        .otherwise("auto_approve")
        .on_error("manual_triage")
        .build()
    )
    builder.add_conditional_step("route_by_days", 4, routing)

Targets may be step ids or step names; ``WorkflowBuilder.build()`` resolves
names to ids.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from stepflow.core.errors import ConfigurationError
from stepflow.model.step_types import ConfigKey
from stepflow.routing.conditions import ConditionSpec, EvaluatorRegistry, default_registry
from stepflow.routing.router import ConditionBranch, EvaluationStrategy

ConditionLike = ConditionSpec | Mapping[str, Any] | str


def _as_condition(condition: ConditionLike) -> ConditionSpec:
    if isinstance(condition, str):
        return ConditionSpec.expression(condition)
    return ConditionSpec.from_dict(condition)


class ConditionalStepBuilder:
    """Collects branches, a default target and an error target."""

    def __init__(self, registry: EvaluatorRegistry | None = None) -> None:
        self._registry = registry or default_registry()
        self._branches: list[ConditionBranch] = []
        self._pending: ConditionSpec | None = None
        self._default: str | None = None
        self._error: str | None = None
        self._strategy = EvaluationStrategy.FIRST_MATCH
        self._priority_counter = 1

    # ── Branches ────────────────────────────────────────────────────────

    def when(self, condition: ConditionLike) -> ConditionalStepBuilder:
        """Start a branch; must be followed by :meth:`then_goto`."""
        if self._pending is not None:
            raise ConfigurationError("Previous when() has no then_goto()", key="branches")
        self._pending = _as_condition(condition)
        return self

    def then_goto(self, target: str, description: str | None = None) -> ConditionalStepBuilder:
        if self._pending is None:
            raise ConfigurationError("then_goto() called without a preceding when()", key="branches")
        condition, self._pending = self._pending, None
        return self.add_branch(condition, target, description=description)

    def add_branch(
        self,
        condition: ConditionLike,
        target: str,
        priority: int | None = None,
        description: str | None = None,
    ) -> ConditionalStepBuilder:
        if not target:
            raise ConfigurationError("Branch target must be a non-empty step id or name", key="target")
        if priority is None:
            priority = self._priority_counter
            self._priority_counter += 1
        self._branches.append(ConditionBranch(
            condition=_as_condition(condition),
            target=target,
            priority=priority,
            description=description,
        ))
        return self

    def when_number(self, variable: str, operator: str, value: float) -> ConditionalStepBuilder:
        return self.when(ConditionSpec.comparison(variable, operator, value))

    def when_string(self, variable: str, operator: str, value: str) -> ConditionalStepBuilder:
        return self.when(ConditionSpec.comparison(variable, operator, value))

    def when_boolean(self, variable: str, value: bool = True) -> ConditionalStepBuilder:
        return self.when(ConditionSpec.comparison(variable, "==", value))

    def when_null(self, variable: str, check: str = "null") -> ConditionalStepBuilder:
        return self.when(ConditionSpec.null_check(variable, check))

    def when_contains(self, variable: str, value: Any) -> ConditionalStepBuilder:
        return self.when(ConditionSpec.contains(variable, value))

    def when_in_range(
        self,
        variable: str,
        min: float | None = None,
        max: float | None = None,
    ) -> ConditionalStepBuilder:
        return self.when(ConditionSpec.range(variable, min, max))

    def when_regex(self, variable: str, pattern: str) -> ConditionalStepBuilder:
        return self.when(ConditionSpec.regex(variable, pattern))

    def when_expression(self, expression: str) -> ConditionalStepBuilder:
        return self.when(ConditionSpec.expression(expression))

    def when_all(self, *conditions: ConditionLike) -> ConditionalStepBuilder:
        return self.when(ConditionSpec.all_of(*(_as_condition(c) for c in conditions)))

    def when_any(self, *conditions: ConditionLike) -> ConditionalStepBuilder:
        return self.when(ConditionSpec.any_of(*(_as_condition(c) for c in conditions)))

    # ── Fallbacks ───────────────────────────────────────────────────────

    def otherwise(self, target: str) -> ConditionalStepBuilder:
        self._default = target
        return self

    default_to = otherwise

    def on_error(self, target: str) -> ConditionalStepBuilder:
        self._error = target
        return self

    # ── Strategy ────────────────────────────────────────────────────────

    def strategy(self, strategy: EvaluationStrategy | str) -> ConditionalStepBuilder:
        self._strategy = EvaluationStrategy.parse(strategy)
        return self

    def first_match(self) -> ConditionalStepBuilder:
        return self.strategy(EvaluationStrategy.FIRST_MATCH)

    def all_match(self) -> ConditionalStepBuilder:
        return self.strategy(EvaluationStrategy.ALL_MATCH)

    def priority_match(self) -> ConditionalStepBuilder:
        return self.strategy(EvaluationStrategy.PRIORITY)

    def priority(self, priority: int) -> ConditionalStepBuilder:
        """Re-prioritize the most recently added branch."""
        if not self._branches:
            raise ConfigurationError("priority() called before any branch was added", key="priority")
        last = self._branches[-1]
        self._branches[-1] = ConditionBranch(last.condition, last.target, priority, last.description)
        return self

    # ── Build ───────────────────────────────────────────────────────────

    @property
    def branches(self) -> list[ConditionBranch]:
        return list(self._branches)

    def validate(self) -> None:
        if self._pending is not None:
            raise ConfigurationError("Dangling when() without then_goto()", key="branches")
        if not self._branches:
            raise ConfigurationError("Condition step requires at least one branch", key=ConfigKey.BRANCHES)
        for index, branch in enumerate(self._branches):
            if not branch.target:
                raise ConfigurationError(f"Condition branch {index} has no target", key="target")
            self._registry.validate(branch.condition)

    def build(self) -> dict[str, Any]:
        """Validate and return the CONDITION step configuration map."""
        self.validate()
        branches = list(self._branches)
        if self._strategy is EvaluationStrategy.PRIORITY:
            branches.sort(key=lambda b: -b.priority)
        config: dict[str, Any] = {
            ConfigKey.BRANCHES: [b.to_dict() for b in branches],
            ConfigKey.EVALUATION_STRATEGY: self._strategy.value,
            "branch_count": len(branches),
            "has_default": self._default is not None,
            "has_error_handler": self._error is not None,
        }
        if self._default is not None:
            config[ConfigKey.DEFAULT_BRANCH] = self._default
        if self._error is not None:
            config[ConfigKey.ERROR_BRANCH] = self._error
        return config

    def reset(self) -> ConditionalStepBuilder:
        self.__init__(self._registry)  # type: ignore[misc]
        return self


__all__ = ["ConditionalStepBuilder", "ConditionLike"]
