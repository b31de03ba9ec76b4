"""Conditional routing: condition evaluators and the CONDITION step router."""

from stepflow.routing.conditions import (
    ConditionContext,
    ConditionEvaluator,
    ConditionSpec,
    EvaluationOutcome,
    EvaluatorRegistry,
    ScriptEvaluator,
    default_registry,
)
from stepflow.routing.router import (
    ConditionalRouter,
    ConditionBranch,
    EvaluationStrategy,
    RoutingDecision,
    parse_branches,
)

__all__ = [
    "ConditionBranch",
    "ConditionContext",
    "ConditionEvaluator",
    "ConditionSpec",
    "ConditionalRouter",
    "EvaluationOutcome",
    "EvaluationStrategy",
    "EvaluatorRegistry",
    "RoutingDecision",
    "ScriptEvaluator",
    "default_registry",
    "parse_branches",
]
