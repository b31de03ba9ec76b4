"""Join policies for parallel gateways.

A join policy looks at the aggregate counters of a gateway's branches and
answers PENDING (keep going), SATISFIED (the gateway succeeded) or FAILED
(success is no longer reachable). The coordinator re-evaluates it every time
a branch reports in, so a policy must give a stable answer once it leaves
PENDING.

Built-in policies:

    AND       every non-optional branch succeeded
    OR        at least one branch succeeded
    MAJORITY  more than half of all branches succeeded
    FIRST     the first branch to complete decides
    CUSTOM    boolean expression over the counters

CUSTOM expressions see ``successCount``, ``failureCount``,
``completedCount``, ``totalCount`` and ``pendingCount`` (plus snake_case
aliases). They are evaluated after each report, so a condition that should
only be judged at the end has to say so, e.g.
``completedCount == totalCount and failureCount <= 1``.

Example:
    >>> counts = JoinCounts(total=3, required=3, succeeded=2, completed=2)
    >>> evaluate_join("CUSTOM", counts, "successCount >= 2").decision
    <JoinDecision.SATISFIED: 'SATISFIED'>
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from stepflow.core.errors import ConfigurationError
from stepflow.core.expressions import SafeEvalError, safe_eval_bool, validate_expression


class JoinType(str, Enum):
    AND = "AND"
    OR = "OR"
    CUSTOM = "CUSTOM"
    MAJORITY = "MAJORITY"
    FIRST = "FIRST"


class JoinDecision(str, Enum):
    PENDING = "PENDING"
    SATISFIED = "SATISFIED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class JoinCounts:
    """Aggregate branch counters at one point in time."""

    total: int
    required: int
    completed: int = 0
    succeeded: int = 0
    failed: int = 0
    required_succeeded: int = 0
    required_failed: int = 0
    first_succeeded: bool | None = None

    @property
    def pending(self) -> int:
        return self.total - self.completed

    def namespace(self) -> dict[str, Any]:
        return {
            "successCount": self.succeeded,
            "failureCount": self.failed,
            "completedCount": self.completed,
            "totalCount": self.total,
            "pendingCount": self.pending,
            "requiredCount": self.required,
            "success_count": self.succeeded,
            "failure_count": self.failed,
            "completed_count": self.completed,
            "total_count": self.total,
            "pending_count": self.pending,
            "required_count": self.required,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_count": self.total,
            "required_count": self.required,
            "completed_count": self.completed,
            "success_count": self.succeeded,
            "failure_count": self.failed,
        }


@dataclass(frozen=True)
class JoinEvaluation:
    decision: JoinDecision
    message: str

    @property
    def satisfied(self) -> bool:
        return self.decision is JoinDecision.SATISFIED

    @property
    def is_final(self) -> bool:
        return self.decision is not JoinDecision.PENDING


JoinPolicy = Callable[[JoinCounts, str | None], JoinEvaluation]


# =============================================================================
# Built-in policies
# =============================================================================


def and_join(counts: JoinCounts, condition: str | None = None) -> JoinEvaluation:
    if counts.required_failed:
        return JoinEvaluation(
            JoinDecision.FAILED,
            f"{counts.required_failed} required branch(es) failed",
        )
    if counts.required and counts.required_succeeded >= counts.required:
        return JoinEvaluation(JoinDecision.SATISFIED, "All required branches succeeded")
    if not counts.required and counts.pending == 0:
        # Every branch is optional: done once they have all reported.
        return JoinEvaluation(JoinDecision.SATISFIED, "All optional branches completed")
    return JoinEvaluation(JoinDecision.PENDING, "Waiting for required branches")


def or_join(counts: JoinCounts, condition: str | None = None) -> JoinEvaluation:
    if counts.succeeded:
        return JoinEvaluation(JoinDecision.SATISFIED, f"{counts.succeeded} branch(es) succeeded")
    if counts.pending == 0:
        return JoinEvaluation(JoinDecision.FAILED, "All branches failed")
    return JoinEvaluation(JoinDecision.PENDING, "Waiting for a successful branch")


def majority_join(counts: JoinCounts, condition: str | None = None) -> JoinEvaluation:
    message = f"{counts.succeeded}/{counts.total} branches succeeded"
    if counts.succeeded * 2 > counts.total:
        return JoinEvaluation(JoinDecision.SATISFIED, message)
    if (counts.succeeded + counts.pending) * 2 <= counts.total:
        return JoinEvaluation(JoinDecision.FAILED, message)
    return JoinEvaluation(JoinDecision.PENDING, message)


def first_join(counts: JoinCounts, condition: str | None = None) -> JoinEvaluation:
    if counts.first_succeeded is None:
        return JoinEvaluation(JoinDecision.PENDING, "No branch completed yet")
    if counts.first_succeeded:
        return JoinEvaluation(JoinDecision.SATISFIED, "First completed branch succeeded")
    return JoinEvaluation(JoinDecision.FAILED, "First completed branch failed")


def custom_join(counts: JoinCounts, condition: str | None = None) -> JoinEvaluation:
    if not condition:
        raise ConfigurationError("CUSTOM join requires a join_condition", key="join_condition")
    try:
        result = safe_eval_bool(condition, counts.namespace())
    except SafeEvalError as e:
        return JoinEvaluation(JoinDecision.FAILED, f"Join condition error: {e}")
    if result:
        return JoinEvaluation(JoinDecision.SATISFIED, f"Join condition met: {condition}")
    if counts.pending == 0:
        return JoinEvaluation(JoinDecision.FAILED, f"Join condition not met: {condition}")
    return JoinEvaluation(JoinDecision.PENDING, f"Join condition pending: {condition}")


# =============================================================================
# Registry
# =============================================================================


class JoinPolicyRegistry:
    """Name → join policy. Built-ins are keyed by their :class:`JoinType` value."""

    def __init__(self) -> None:
        self._policies: dict[str, JoinPolicy] = {
            JoinType.AND.value: and_join,
            JoinType.OR.value: or_join,
            JoinType.MAJORITY.value: majority_join,
            JoinType.FIRST.value: first_join,
            JoinType.CUSTOM.value: custom_join,
        }
        self._lock = threading.Lock()

    def register(self, name: str, policy: JoinPolicy) -> None:
        if not name:
            raise ConfigurationError("Join policy name must be a non-empty string", key="join_type")
        if name.upper() in JoinType.__members__:
            raise ConfigurationError(f"Cannot replace built-in join type: {name}", key="join_type", value=name)
        with self._lock:
            self._policies[name.upper()] = policy

    def get(self, name: str | JoinType) -> JoinPolicy:
        key = (name.value if isinstance(name, JoinType) else str(name)).upper()
        with self._lock:
            policy = self._policies.get(key)
        if policy is None:
            raise ConfigurationError(f"Unknown join type: {name}", key="join_type", value=name)
        return policy

    def unregister(self, name: str) -> None:
        """Remove a custom policy; built-ins stay."""
        key = name.upper()
        if key in JoinType.__members__:
            raise ConfigurationError(f"Cannot unregister built-in join type: {name}", key="join_type")
        with self._lock:
            self._policies.pop(key, None)

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._policies)


_registry = JoinPolicyRegistry()


def join_policies() -> JoinPolicyRegistry:
    """Process-wide join policy registry."""
    return _registry


def register_join_policy(name: str, policy: JoinPolicy) -> None:
    _registry.register(name, policy)


def validate_join(join_type: str | JoinType, condition: str | None, registry: JoinPolicyRegistry | None = None) -> None:
    """Raise :class:`ConfigurationError` for an unusable join configuration."""
    (registry or _registry).get(join_type)
    if str(getattr(join_type, "value", join_type)).upper() == JoinType.CUSTOM.value:
        if not condition:
            raise ConfigurationError("CUSTOM join requires a join_condition", key="join_condition")
        try:
            validate_expression(condition)
        except SafeEvalError as e:
            raise ConfigurationError(
                f"Invalid join condition: {e}",
                key="join_condition",
                value=condition,
            ) from e


def evaluate_join(
    join_type: str | JoinType,
    counts: JoinCounts,
    condition: str | None = None,
    registry: JoinPolicyRegistry | None = None,
) -> JoinEvaluation:
    return (registry or _registry).get(join_type)(counts, condition)


__all__ = [
    "JoinType",
    "JoinDecision",
    "JoinCounts",
    "JoinEvaluation",
    "JoinPolicy",
    "JoinPolicyRegistry",
    "and_join",
    "or_join",
    "majority_join",
    "first_join",
    "custom_join",
    "join_policies",
    "register_join_policy",
    "validate_join",
    "evaluate_join",
]
