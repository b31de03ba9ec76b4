"""Step execution contract: results, contexts, executors, retry and deadlines."""

from stepflow.execution.context import ExecutionContext
from stepflow.execution.executors import (
    ExecutorRegistry,
    FunctionExecutor,
    StepExecutor,
    UserTaskExecutor,
)
from stepflow.execution.results import ExecutionResult, ExecutionStatus
from stepflow.execution.retry import (
    ExponentialBackoff,
    NoRetry,
    RetryStrategy,
    strategy_for_step,
)
from stepflow.execution.timeout import run_with_timeout

__all__ = [
    "ExecutionContext",
    "ExecutionResult",
    "ExecutionStatus",
    "ExecutorRegistry",
    "ExponentialBackoff",
    "FunctionExecutor",
    "NoRetry",
    "RetryStrategy",
    "StepExecutor",
    "UserTaskExecutor",
    "run_with_timeout",
    "strategy_for_step",
]
