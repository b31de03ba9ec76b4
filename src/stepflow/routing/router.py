"""Conditional router: resolves the next step of a CONDITION step.

Manifesto:
A condition step is a list of branches, each ``{condition, target,
priority}``, plus an optional default target and an optional error target.
The router evaluates the branches against an :class:`EvaluatorRegistry`
under one of three strategies and turns the outcome into an
:class:`ExecutionResult` whose ``next_step_id`` is the chosen target. It
never touches the instance; the engine applies the result.

ARCHITECTURE
────────────
::

    ConditionalRouter.execute(step, ExecutionContext)
        │
        ├── parse_branches(step.configuration)   ── list[ConditionBranch]
        ├── route(step, ConditionContext)        ── RoutingDecision
        │     FIRST_MATCH : stop at first match; errors recorded
        │     ALL_MATCH   : evaluate all; any error aborts; routes only if all match
        │     PRIORITY    : evaluate all; errors recorded; highest priority wins
        │
        └── ExecutionResult.success(next_step_id=decision.target, output=...)

Fallbacks, in order: matched target → default target → :class:`RoutingError`.
The error target only catches evaluator failures, including an aborted
ALL_MATCH evaluation.

Tags:
    stepflow, routing, conditions, strategy
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from stepflow.core.errors import ConfigurationError, ErrorCategory, RoutingError
from stepflow.core.logging import get_logger
from stepflow.execution.context import ExecutionContext
from stepflow.execution.results import ExecutionResult
from stepflow.model.step import StepDefinition, thaw
from stepflow.model.step_types import ConfigKey, StepKind
from stepflow.routing.conditions import (
    ConditionContext,
    ConditionSpec,
    EvaluatorRegistry,
)

logger = get_logger(__name__)


class EvaluationStrategy(str, Enum):
    """How a condition step's branches are evaluated."""

    FIRST_MATCH = "FIRST_MATCH"
    ALL_MATCH = "ALL_MATCH"
    PRIORITY = "PRIORITY"

    @classmethod
    def parse(cls, value: str | EvaluationStrategy | None) -> EvaluationStrategy:
        if value is None:
            return cls.FIRST_MATCH
        try:
            return cls(str(value.value if isinstance(value, Enum) else value).upper())
        except ValueError:
            raise ConfigurationError(
                f"Unknown evaluation strategy: {value}",
                key=ConfigKey.EVALUATION_STRATEGY,
                value=value,
            ) from None


@dataclass(frozen=True)
class ConditionBranch:
    """One conditional path: if ``condition`` matches, go to ``target``."""

    condition: ConditionSpec
    target: str | None
    priority: int = 0
    description: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "condition": self.condition.to_dict(),
            "target": self.target,
            "priority": self.priority,
        }
        if self.description:
            d["description"] = self.description
        return d

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ConditionBranch:
        if "condition" not in data:
            raise ConfigurationError("Condition branch has no 'condition'", key="condition")
        return cls(
            condition=ConditionSpec.from_dict(data["condition"]),
            target=data.get("target"),
            priority=int(data.get("priority", 0)),
            description=data.get("description"),
        )


@dataclass
class RoutingDecision:
    """Where a condition step goes, and why."""

    target: str | None
    strategy: EvaluationStrategy
    matched_branches: list[dict[str, Any]] = field(default_factory=list)
    evaluation_details: dict[str, Any] = field(default_factory=dict)
    used_default: bool = False
    used_error_target: bool = False
    error: str | None = None

    @property
    def matched(self) -> bool:
        return bool(self.matched_branches)

    def to_output(self) -> dict[str, Any]:
        output: dict[str, Any] = {
            "condition_result": self.target,
            "matched_branches": list(self.matched_branches),
            "evaluation_details": dict(self.evaluation_details),
            "used_default": self.used_default,
            "used_error_target": self.used_error_target,
        }
        if self.error:
            output["routing_error"] = self.error
        return output


def parse_branches(configuration: Mapping[str, Any]) -> list[ConditionBranch]:
    """Branch records from a CONDITION step's configuration, in list order."""
    raw = thaw(configuration.get(ConfigKey.BRANCHES) or [])
    if not isinstance(raw, list):
        raise ConfigurationError(
            "Condition 'branches' must be a list",
            key=ConfigKey.BRANCHES,
            value=raw,
        )
    return [b if isinstance(b, ConditionBranch) else ConditionBranch.from_dict(b) for b in raw]


class ConditionalRouter:
    """Evaluates CONDITION steps.

    Example:
        >>> router = ConditionalRouter()
        >>> result = router.execute(condition_step, ctx)
        >>> result.next_step_id
        'manual_review'
    """

    def __init__(self, registry: EvaluatorRegistry | None = None):
        self.registry = registry or EvaluatorRegistry.with_defaults()

    # =========================================================================
    # Validation
    # =========================================================================

    def validate_config(self, configuration: Mapping[str, Any]) -> None:
        """Check a CONDITION step's configuration.

        Raises:
            ConfigurationError: No branches, a branch without target, an
                unknown strategy, or a condition its evaluator rejects.
        """
        branches = parse_branches(configuration)
        if not branches:
            raise ConfigurationError(
                "Condition step requires at least one branch",
                key=ConfigKey.BRANCHES,
            )
        EvaluationStrategy.parse(configuration.get(ConfigKey.EVALUATION_STRATEGY))
        for index, branch in enumerate(branches):
            if not branch.target:
                raise ConfigurationError(
                    f"Condition branch {index} has no target",
                    key="target",
                )
            self.registry.validate(branch.condition)

    # =========================================================================
    # Routing
    # =========================================================================

    def route(self, step: StepDefinition, context: ConditionContext) -> RoutingDecision:
        """Evaluate *step*'s branches and pick a target.

        Raises:
            RoutingError: Nothing matched and no default is configured, or
                an evaluator failed without an error target.
        """
        config = step.configuration
        branches = parse_branches(config)
        strategy = EvaluationStrategy.parse(config.get(ConfigKey.EVALUATION_STRATEGY))
        default_target = config.get(ConfigKey.DEFAULT_BRANCH)
        error_target = config.get(ConfigKey.ERROR_BRANCH)

        decision = RoutingDecision(target=None, strategy=strategy)
        matched: list[tuple[int, ConditionBranch, str | None]] = []
        errors: list[str] = []

        for index, branch in enumerate(branches):
            key = f"branch_{index}"
            try:
                outcome = self.registry.evaluate(branch.condition, context)
            except Exception as e:
                message = f"{branch.condition.kind} condition failed: {e}"
                decision.evaluation_details[key] = {"error": message}
                errors.append(message)
                logger.warning("routing.branch_error", step_id=step.id, branch=index, error=str(e))
                if strategy is EvaluationStrategy.ALL_MATCH:
                    return self._fallback(step, decision, error_target, message, aborted=True)
                continue

            decision.evaluation_details[key] = outcome.to_dict()
            if outcome.matched:
                matched.append((index, branch, outcome.target or branch.target))
                if strategy is EvaluationStrategy.FIRST_MATCH:
                    break

        decision.matched_branches = [
            {"index": index, "target": target, "priority": branch.priority}
            for index, branch, target in matched
        ]

        selected = matched
        if strategy is EvaluationStrategy.ALL_MATCH and len(matched) < len(branches):
            # every branch must hold before the first one routes
            selected = []

        if selected:
            if strategy is EvaluationStrategy.PRIORITY:
                # max() keeps the first of equal priorities
                _, _, target = max(selected, key=lambda m: m[1].priority)
            else:
                _, _, target = selected[0]
            decision.target = target
            logger.debug("routing.matched", step_id=step.id, target=target, strategy=strategy.value)
            return decision

        if default_target:
            decision.target = default_target
            decision.used_default = True
            logger.debug("routing.default", step_id=step.id, target=default_target)
            return decision

        if not errors:
            raise RoutingError(f"No branch matched in condition step {step.id}").with_context(
                step_id=step.id, step_name=step.name
            )
        return self._fallback(step, decision, error_target, errors[-1], aborted=False)

    def _fallback(
        self,
        step: StepDefinition,
        decision: RoutingDecision,
        error_target: str | None,
        reason: str,
        *,
        aborted: bool,
    ) -> RoutingDecision:
        if not error_target:
            raise RoutingError(reason).with_context(step_id=step.id, step_name=step.name)
        decision.target = error_target
        decision.used_error_target = True
        decision.error = reason
        if aborted:
            decision.matched_branches = []
        logger.info("routing.error_target", step_id=step.id, target=error_target, reason=reason)
        return decision

    # =========================================================================
    # Step handler entry point
    # =========================================================================

    def execute(self, step: StepDefinition, context: ExecutionContext) -> ExecutionResult:
        """Route *step* and wrap the decision as an :class:`ExecutionResult`.

        Routing failures come back as FAILURE results (category ROUTING) so
        the engine can apply the step's error policy.
        """
        if step.kind is not StepKind.CONDITION:
            raise ConfigurationError(f"Step {step.id} is not a CONDITION step", value=step.kind.value)

        condition_context = ConditionContext(
            variables=context.variables,
            inputs=context.inputs,
            scratch=context.scratch if isinstance(context.scratch, Mapping) else {},
        )
        try:
            decision = self.route(step, condition_context)
        except (RoutingError, ConfigurationError) as e:
            logger.warning("routing.failed", step_id=step.id, error=e.message)
            return ExecutionResult.failure(
                e.message,
                category=ErrorCategory.ROUTING,
                retryable=False,
            )

        return ExecutionResult.success(
            output=decision.to_output(),
            next_step_id=decision.target,
            message=(
                f"Routed to {decision.target}"
                + (" (default)" if decision.used_default else "")
                + (" (error target)" if decision.used_error_target else "")
            ),
        )


__all__ = [
    "EvaluationStrategy",
    "ConditionBranch",
    "RoutingDecision",
    "ConditionalRouter",
    "parse_branches",
]
