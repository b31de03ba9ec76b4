"""Parallel coordinator: fan-out / join for PARALLEL_GATEWAY steps.

Manifesto:
A parallel gateway owns a set of branches, each an ordered list of member
steps. The coordinator dispatches the branches according to an execution
strategy, collects each branch result as it finishes, and re-evaluates the
join policy after every report. The first final join decision ends the
gateway. It never drives member steps itself; a ``branch_runner`` callable
supplied by the engine does that, so member steps get the same handler,
retry and precondition treatment as top-level steps.

ARCHITECTURE
────────────
::

    ParallelCoordinator.execute(gateway_step, ExecutionContext)
        │
        ├── GatewayConfig.from_step()        validate + parse configuration
        ├── dispatch loop                    ThreadPoolExecutor per gateway run
        │     PARALLEL   : window = max_concurrency (0 = all branches)
        │     SEQUENTIAL : window = 1, priority order, optional fail_fast
        │     BATCH      : groups of batch_size, each group drained before the next
        │
        ├── on each completion  ─▶ JoinCounts ─▶ evaluate_join() ─▶ PENDING / SATISFIED / FAILED
        └── ExecutionResult
              SATISFIED   → success (output: branch_results, join_result, merged_data, shared_data)
              FAILED      → failure, next_step_id = error_step_id
              deadline    → timeout, next_step_id = timeout_step_id

A satisfied join stops dispatching branches that have not started (unless
``wait_for_all``); branches already running are left to finish and their
results are discarded. Cancellation of the instance stops dispatch the same
way.

Tags:
    stepflow, parallel, fan-out, join, concurrency, thread-pool
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable, Iterator, Mapping, MutableMapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from stepflow.core.errors import ConfigurationError, ErrorCategory
from stepflow.core.logging import get_logger
from stepflow.execution.context import ExecutionContext
from stepflow.execution.results import ExecutionResult, ExecutionStatus
from stepflow.model.step import StepDefinition, thaw
from stepflow.model.step_types import ConfigKey, StepKind
from stepflow.parallel.join import (
    JoinCounts,
    JoinDecision,
    JoinEvaluation,
    JoinPolicyRegistry,
    JoinType,
    evaluate_join,
    join_policies,
    validate_join,
)

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 5


class ExecutionStrategy(str, Enum):
    PARALLEL = "PARALLEL"
    SEQUENTIAL = "SEQUENTIAL"
    BATCH = "BATCH"


class BranchStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"


# =============================================================================
# Branch records
# =============================================================================


@dataclass(frozen=True)
class ParallelBranch:
    """One fan-out path of a gateway."""

    id: str
    name: str
    step_ids: tuple[str, ...]
    configuration: dict[str, Any] = field(default_factory=dict)
    priority: int = 0
    optional: bool = False
    description: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "step_ids", tuple(self.step_ids))

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "step_ids": list(self.step_ids),
            "priority": self.priority,
            "optional": self.optional,
        }
        if self.configuration:
            d["configuration"] = dict(self.configuration)
        if self.description:
            d["description"] = self.description
        return d

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ParallelBranch:
        if not data.get("id"):
            raise ConfigurationError("Parallel branch requires an 'id'", key="id")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            step_ids=tuple(data.get("step_ids") or ()),
            configuration=dict(data.get("configuration") or {}),
            priority=int(data.get("priority", 0)),
            optional=bool(data.get("optional", False)),
            description=data.get("description"),
        )


@dataclass
class BranchResult:
    branch_id: str
    status: BranchStatus
    output: dict[str, Any] = field(default_factory=dict)
    message: str | None = None
    duration: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status is BranchStatus.SUCCESS

    @property
    def completed(self) -> bool:
        """Reported in (success or failure); SKIPPED/CANCELLED never ran to an end."""
        return self.status in (BranchStatus.SUCCESS, BranchStatus.FAILED, BranchStatus.TIMEOUT)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "branch_id": self.branch_id,
            "status": self.status.value,
            "duration": round(self.duration, 6),
        }
        if self.output:
            d["output"] = dict(self.output)
        if self.message:
            d["message"] = self.message
        return d


class SharedData(MutableMapping[str, Any]):
    """Lock-protected scratch map shared by a gateway's branches."""

    def __init__(self, initial: Mapping[str, Any] | None = None):
        self._data: dict[str, Any] = dict(initial or {})
        self._lock = threading.RLock()

    def __getitem__(self, key: str) -> Any:
        with self._lock:
            return self._data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value

    def __delitem__(self, key: str) -> None:
        with self._lock:
            del self._data[key]

    def __iter__(self) -> Iterator[str]:
        with self._lock:
            return iter(list(self._data))

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def merge(self, values: Mapping[str, Any]) -> None:
        with self._lock:
            self._data.update(values)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return dict(self._data)


# =============================================================================
# Gateway configuration
# =============================================================================


def _enum_value(value: Any) -> str:
    return str(value.value if isinstance(value, Enum) else value)


@dataclass(frozen=True)
class GatewayConfig:
    """Parsed and validated PARALLEL_GATEWAY configuration."""

    branches: tuple[ParallelBranch, ...]
    join_type: str = JoinType.AND.value
    join_condition: str | None = None
    strategy: ExecutionStrategy = ExecutionStrategy.PARALLEL
    batch_size: int = DEFAULT_BATCH_SIZE
    max_concurrency: int = 0
    timeout: float | None = None
    timeout_step_id: str | None = None
    error_step_id: str | None = None
    collect_results: bool = True
    wait_for_all: bool = False
    share_data: bool = False
    fail_fast: bool = False

    @classmethod
    def from_mapping(
        cls,
        config: Mapping[str, Any],
        registry: JoinPolicyRegistry | None = None,
    ) -> GatewayConfig:
        """Parse *config*.

        Raises:
            ConfigurationError: Any rule in the gateway validation list fails.
        """
        raw_branches = thaw(config.get(ConfigKey.BRANCHES) or [])
        if not isinstance(raw_branches, list) or not raw_branches:
            raise ConfigurationError(
                "Parallel gateway requires at least one branch",
                key=ConfigKey.BRANCHES,
            )
        branches = tuple(
            b if isinstance(b, ParallelBranch) else ParallelBranch.from_dict(b)
            for b in raw_branches
        )
        seen: set[str] = set()
        for branch in branches:
            if branch.id in seen:
                raise ConfigurationError(f"Duplicate branch id: {branch.id}", key="id", value=branch.id)
            seen.add(branch.id)

        join_type = _enum_value(config.get(ConfigKey.JOIN_TYPE) or JoinType.AND).upper()
        join_condition = config.get("join_condition")
        validate_join(join_type, join_condition, registry)

        raw_strategy = config.get("execution_strategy") or ExecutionStrategy.PARALLEL.value
        try:
            strategy = ExecutionStrategy(_enum_value(raw_strategy).upper())
        except ValueError:
            raise ConfigurationError(
                f"Unknown execution strategy: {raw_strategy}",
                key="execution_strategy",
                value=raw_strategy,
            ) from None

        raw_batch = config.get("batch_size")
        batch_size = DEFAULT_BATCH_SIZE if raw_batch is None else int(raw_batch)
        if strategy is ExecutionStrategy.BATCH and batch_size <= 0:
            raise ConfigurationError("BATCH strategy requires batch_size > 0", key="batch_size", value=batch_size)

        max_concurrency = int(config.get("max_concurrency") or 0)
        if max_concurrency < 0:
            raise ConfigurationError("max_concurrency must be >= 0", key="max_concurrency", value=max_concurrency)

        timeout = config.get("timeout")
        if timeout is not None:
            timeout = float(timeout)
            if timeout <= 0:
                raise ConfigurationError("Gateway timeout must be > 0", key="timeout", value=timeout)

        return cls(
            branches=branches,
            join_type=join_type,
            join_condition=join_condition,
            strategy=strategy,
            batch_size=batch_size,
            max_concurrency=max_concurrency,
            timeout=timeout,
            timeout_step_id=config.get(ConfigKey.TIMEOUT_STEP),
            error_step_id=config.get(ConfigKey.ERROR_STEP),
            collect_results=bool(config.get("collect_results", True)),
            wait_for_all=bool(config.get("wait_for_all", False)),
            share_data=bool(config.get("share_data", False)),
            fail_fast=bool(config.get("fail_fast", False)),
        )

    @classmethod
    def from_step(cls, step: StepDefinition, registry: JoinPolicyRegistry | None = None) -> GatewayConfig:
        if step.kind is not StepKind.PARALLEL_GATEWAY:
            raise ConfigurationError(f"Step {step.id} is not a PARALLEL_GATEWAY step", value=step.kind.value)
        return cls.from_mapping(step.configuration, registry)

    def dispatch_order(self) -> list[ParallelBranch]:
        """Branches by descending priority; ties keep list order."""
        return sorted(self.branches, key=lambda b: -b.priority)

    @property
    def window(self) -> int:
        """How many branches may run at once."""
        if self.strategy is ExecutionStrategy.SEQUENTIAL:
            return 1
        if self.strategy is ExecutionStrategy.BATCH:
            return self.batch_size
        return self.max_concurrency or len(self.branches)


# =============================================================================
# Join bookkeeping
# =============================================================================


class _JoinTracker:
    """Accumulates branch results and evaluates the join after each report."""

    def __init__(self, config: GatewayConfig, registry: JoinPolicyRegistry):
        self._config = config
        self._registry = registry
        self._optional = {b.id: b.optional for b in config.branches}
        self.results: dict[str, BranchResult] = {}
        self._first_succeeded: bool | None = None

    def record(self, result: BranchResult) -> None:
        self.results[result.branch_id] = result
        if self._first_succeeded is None and result.completed:
            self._first_succeeded = result.succeeded

    def counts(self) -> JoinCounts:
        completed = [r for r in self.results.values() if r.completed]
        required = [b for b, optional in self._optional.items() if not optional]
        return JoinCounts(
            total=len(self._optional),
            required=len(required),
            completed=len(completed),
            succeeded=sum(1 for r in completed if r.succeeded),
            failed=sum(1 for r in completed if not r.succeeded),
            required_succeeded=sum(
                1 for b in required if b in self.results and self.results[b].succeeded
            ),
            required_failed=sum(
                1 for b in required if b in self.results and self.results[b].completed and not self.results[b].succeeded
            ),
            first_succeeded=self._first_succeeded,
        )

    def evaluate(self) -> JoinEvaluation:
        counts = self.counts()
        evaluation = evaluate_join(self._config.join_type, counts, self._config.join_condition, self._registry)
        if (
            evaluation.decision is JoinDecision.PENDING
            and self._config.fail_fast
            and counts.required_failed
        ):
            return JoinEvaluation(JoinDecision.FAILED, "Required branch failed (fail_fast)")
        return evaluation


# =============================================================================
# Coordinator
# =============================================================================


BranchRunner = Callable[[ParallelBranch, ExecutionContext], ExecutionResult]


class ParallelCoordinator:
    """Runs PARALLEL_GATEWAY steps.

    Args:
        branch_runner: Executes one branch (its member steps, in order) and
            returns an aggregate :class:`ExecutionResult`.
        max_workers: Upper bound on threads per gateway run.
        join_registry: Join policies; defaults to the process-wide registry.
    """

    def __init__(
        self,
        branch_runner: BranchRunner,
        max_workers: int = 8,
        join_registry: JoinPolicyRegistry | None = None,
    ):
        if max_workers < 1:
            raise ConfigurationError("max_workers must be >= 1", key="max_workers", value=max_workers)
        self._branch_runner = branch_runner
        self._max_workers = max_workers
        self._join_registry = join_registry or join_policies()
        self._pools: set[ThreadPoolExecutor] = set()
        self._pools_lock = threading.Lock()
        self._closed = False

    def validate_config(self, configuration: Mapping[str, Any]) -> None:
        GatewayConfig.from_mapping(configuration, self._join_registry)

    # -------------------------------------------------------------------------
    # Branch execution
    # -------------------------------------------------------------------------

    def _run_branch(self, branch: ParallelBranch, context: ExecutionContext) -> BranchResult:
        started = time.monotonic()
        try:
            result = self._branch_runner(branch, context)
        except Exception as e:
            logger.exception("parallel.branch_exception", branch_id=branch.id, step_id=context.step_id)
            return BranchResult(
                branch_id=branch.id,
                status=BranchStatus.FAILED,
                message=f"Branch {branch.id} raised: {e}",
                duration=time.monotonic() - started,
            )

        duration = time.monotonic() - started
        if result.is_success:
            status = BranchStatus.SUCCESS
        elif result.status is ExecutionStatus.TIMEOUT:
            status = BranchStatus.TIMEOUT
        else:
            status = BranchStatus.FAILED
        message = result.message
        if result.status is ExecutionStatus.WAITING:
            message = f"Branch {branch.id} blocked on a waiting step: {result.message or ''}".rstrip(": ")
        return BranchResult(
            branch_id=branch.id,
            status=status,
            output=dict(result.output),
            message=message,
            duration=duration,
        )

    def _branch_context(
        self,
        branch: ParallelBranch,
        context: ExecutionContext,
        shared: SharedData | None,
    ) -> ExecutionContext:
        ctx = context.with_inputs({**branch.configuration, "branch_id": branch.id})
        return ctx.with_scratch(shared if shared is not None else {})

    # -------------------------------------------------------------------------
    # Gateway execution
    # -------------------------------------------------------------------------

    def execute(self, step: StepDefinition, context: ExecutionContext) -> ExecutionResult:
        """Fan out *step*'s branches and join them.

        Configuration problems come back as FAILURE results (category CONFIG)
        so the engine applies the gateway's error policy.
        """
        try:
            config = GatewayConfig.from_step(step, self._join_registry)
        except ConfigurationError as e:
            return ExecutionResult.failure(e.message, category=ErrorCategory.CONFIG, retryable=False)
        if self._closed:
            return ExecutionResult.failure("Parallel coordinator is shut down", retryable=False)

        shared = SharedData(context.scratch if isinstance(context.scratch, Mapping) else None) \
            if config.share_data else None
        tracker = _JoinTracker(config, self._join_registry)
        pending: deque[ParallelBranch] = deque(config.dispatch_order())
        in_flight: dict[Future[BranchResult], ParallelBranch] = {}
        deadline = time.monotonic() + config.timeout if config.timeout else None
        evaluation = JoinEvaluation(JoinDecision.PENDING, "No branch completed yet")
        timed_out = False
        cancelled = False

        pool = ThreadPoolExecutor(
            max_workers=max(1, min(self._max_workers, config.window)),
            thread_name_prefix=f"stepflow-{step.id}",
        )
        with self._pools_lock:
            self._pools.add(pool)

        def submit(branch: ParallelBranch) -> None:
            branch_context = self._branch_context(branch, context, shared)
            in_flight[pool.submit(self._run_branch, branch, branch_context)] = branch

        logger.info(
            "parallel.started",
            step_id=step.id,
            branches=len(config.branches),
            join_type=config.join_type,
            strategy=config.strategy.value,
        )
        try:
            while True:
                if context.is_cancelled:
                    cancelled = True
                    break

                dispatching = evaluation.decision is JoinDecision.PENDING or (
                    evaluation.satisfied and config.wait_for_all
                )
                if dispatching:
                    if config.strategy is ExecutionStrategy.BATCH:
                        if not in_flight:
                            for _ in range(min(config.batch_size, len(pending))):
                                submit(pending.popleft())
                    else:
                        while pending and len(in_flight) < config.window:
                            submit(pending.popleft())

                if not in_flight:
                    break

                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    timed_out = True
                    break
                done, _ = wait(in_flight, timeout=remaining, return_when=FIRST_COMPLETED)
                if not done:
                    timed_out = True
                    break

                for future in done:
                    branch = in_flight.pop(future)
                    result = future.result()
                    if evaluation.is_final and not (evaluation.satisfied and config.wait_for_all):
                        # finished in the wakeup that decided the join: real status, no output
                        tracker.record(replace(
                            result,
                            output={},
                            message="Finished after join decision; result discarded",
                        ))
                        continue
                    tracker.record(result)
                    if shared is not None and result.succeeded:
                        shared.merge(result.output)
                    logger.debug(
                        "parallel.branch_completed",
                        step_id=step.id,
                        branch_id=branch.id,
                        status=result.status.value,
                    )
                    if evaluation.decision is JoinDecision.PENDING:
                        evaluation = tracker.evaluate()

                if evaluation.decision is JoinDecision.FAILED:
                    break
                if evaluation.satisfied and not config.wait_for_all:
                    break
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
            with self._pools_lock:
                self._pools.discard(pool)

        for branch in in_flight.values():
            status = BranchStatus.TIMEOUT if timed_out else BranchStatus.CANCELLED
            tracker.results.setdefault(branch.id, BranchResult(
                branch_id=branch.id,
                status=status,
                message="Deadline reached while running" if timed_out else "Abandoned after join decision",
            ))
        for branch in pending:
            tracker.results.setdefault(branch.id, BranchResult(
                branch_id=branch.id,
                status=BranchStatus.CANCELLED if cancelled else BranchStatus.SKIPPED,
                message="Not dispatched",
            ))

        output = self._build_output(config, tracker, evaluation, shared)

        if cancelled:
            logger.info("parallel.cancelled", step_id=step.id)
            return ExecutionResult.failure(
                f"Parallel gateway {step.id} cancelled",
                category=ErrorCategory.STATE,
                output=output,
                retryable=False,
            )
        if timed_out and not evaluation.satisfied:
            logger.warning("parallel.timeout", step_id=step.id, timeout=config.timeout)
            return ExecutionResult(
                status=ExecutionStatus.TIMEOUT,
                next_step_id=config.timeout_step_id,
                output=output,
                message=f"Parallel gateway {step.id} timed out after {config.timeout:g}s",
                error_category=ErrorCategory.TIMEOUT,
                retryable=False,
            )
        if not evaluation.satisfied:
            if evaluation.decision is JoinDecision.PENDING:
                evaluation = tracker.evaluate()
            if not evaluation.satisfied:
                logger.info("parallel.join_failed", step_id=step.id, reason=evaluation.message)
                return ExecutionResult.failure(
                    f"Parallel gateway {step.id} join failed: {evaluation.message}",
                    output=output,
                    retryable=False,
                    next_step_id=config.error_step_id,
                )

        logger.info("parallel.completed", step_id=step.id, join=evaluation.message)
        return ExecutionResult.success(output=output, message=evaluation.message)

    def _build_output(
        self,
        config: GatewayConfig,
        tracker: _JoinTracker,
        evaluation: JoinEvaluation,
        shared: SharedData | None,
    ) -> dict[str, Any]:
        ordered = [tracker.results[b.id] for b in config.branches if b.id in tracker.results]
        output: dict[str, Any] = {}
        if config.collect_results:
            merged: dict[str, Any] = {}
            for result in ordered:
                if result.succeeded:
                    merged.update(result.output)
            output.update(merged)
            output["merged_data"] = merged
        output["branch_results"] = {r.branch_id: r.to_dict() for r in ordered}
        output["join_result"] = {
            "satisfied": evaluation.satisfied,
            "decision": evaluation.decision.value,
            "message": evaluation.message,
            **tracker.counts().to_dict(),
        }
        if shared is not None:
            output["shared_data"] = shared.snapshot()
        return output

    def shutdown(self) -> None:
        """Stop accepting gateway runs and abandon branches still queued."""
        self._closed = True
        with self._pools_lock:
            pools = list(self._pools)
            self._pools.clear()
        for pool in pools:
            pool.shutdown(wait=False, cancel_futures=True)


__all__ = [
    "DEFAULT_BATCH_SIZE",
    "ExecutionStrategy",
    "BranchStatus",
    "ParallelBranch",
    "BranchResult",
    "SharedData",
    "GatewayConfig",
    "BranchRunner",
    "ParallelCoordinator",
]
