"""Parallel gateways: branch fan-out, execution strategies and join policies."""

from stepflow.parallel.coordinator import (
    BranchResult,
    BranchStatus,
    ExecutionStrategy,
    GatewayConfig,
    ParallelBranch,
    ParallelCoordinator,
    SharedData,
)
from stepflow.parallel.join import (
    JoinCounts,
    JoinDecision,
    JoinEvaluation,
    JoinPolicyRegistry,
    JoinType,
    evaluate_join,
    join_policies,
    register_join_policy,
    validate_join,
)

__all__ = [
    "BranchResult",
    "BranchStatus",
    "ExecutionStrategy",
    "GatewayConfig",
    "JoinCounts",
    "JoinDecision",
    "JoinEvaluation",
    "JoinPolicyRegistry",
    "JoinType",
    "ParallelBranch",
    "ParallelCoordinator",
    "SharedData",
    "evaluate_join",
    "join_policies",
    "register_join_policy",
    "validate_join",
]
