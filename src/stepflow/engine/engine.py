"""WorkflowEngine: drives instances through their definitions.

Manifesto:
An instance only moves when the engine applies an :class:`ExecutionResult`
to it. Steps run outside the instance lock; results are applied under it,
after re-checking that the instance is still RUNNING at the same step. A
result that arrives after a cancel, suspend or terminate is recorded as
DISCARDED and has no effect. Waiting instances hold no thread: the engine
returns, and an external signal (task completion, timer, deadline) picks
the instance up again.

ARCHITECTURE
────────────
::

    start_workflow ─┐
    complete_task  ─┤            ┌───────────── per-instance lock ─────────────┐
    handle_timer   ─┼──▶ _drive ─┤ load instance, resolve current step         │
    handle_timeout ─┤    (claim) │                                             │
    resume         ─┘            └──────────────────┬──────────────────────────┘
                                                    ▼
                                 dispatch_step(handlers, step, ctx)   (unlocked)
                                                    ▼
                                 ┌───────────── per-instance lock ─────────────┐
                                 │ still RUNNING at this step? else DISCARDED  │
                                 │ SUCCESS/SKIPPED → merge output, advance      │
                                 │ WAITING         → user task, schedule, stop  │
                                 │ FAILURE/TIMEOUT → error step | optional |    │
                                 │                   FAILED                     │
                                 └─────────────────────────────────────────────┘

Next step: the result's ``next_step_id``, else the step's ``next_step_id``,
else the next step by order (skipping parallel-branch members). An END
step, or running out of steps, completes the instance.

Tags:
    stepflow, engine, state-machine, concurrency, user-tasks
"""

from __future__ import annotations

import copy
import threading
import time
from collections import Counter
from collections.abc import Callable, Mapping
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from stepflow.core.errors import (
    DefinitionNotActiveError,
    DefinitionNotFoundError,
    ErrorCategory,
    InstanceNotFoundError,
    InvalidTransitionError,
    StepflowError,
    TaskNotFoundError,
    ValidationError,
)
from stepflow.core.logging import LogContext, get_logger
from stepflow.core.settings import EngineSettings, get_settings
from stepflow.core.timestamps import utc_now
from stepflow.engine.handlers import (
    BranchExecutor,
    HandlerRegistry,
    StepHandler,
    TaskHandler,
    attempts_of,
    dispatch_step,
    end_handler,
    start_handler,
    timer_handler,
)
from stepflow.engine.locks import InstanceLocks
from stepflow.engine.records import (
    EngineStatistics,
    RecordStatus,
    StepExecutionRecord,
    TaskStatus,
    UserTask,
)
from stepflow.engine.scheduler import EventKind, ScheduledEvent, ThreadTimeoutScheduler, TimeoutScheduler
from stepflow.engine.store import InMemoryWorkflowStore, WorkflowStore
from stepflow.execution.context import ExecutionContext
from stepflow.execution.executors import ExecutorRegistry, StepExecutor
from stepflow.execution.results import ExecutionResult, ExecutionStatus
from stepflow.model.definition import WorkflowDefinition
from stepflow.model.instance import WorkflowInstance
from stepflow.model.step import StepDefinition
from stepflow.model.step_types import DefinitionStatus, InstanceStatus, StepKind
from stepflow.parallel.coordinator import ParallelCoordinator
from stepflow.parallel.join import JoinPolicyRegistry
from stepflow.routing.conditions import EvaluatorRegistry
from stepflow.routing.router import ConditionalRouter

logger = get_logger(__name__)

LAST_ERROR_KEY = "last_error"

_TASK_LIKE_KINDS = (
    StepKind.TASK,
    StepKind.USER_TASK,
    StepKind.SERVICE_CALL,
    StepKind.SCRIPT,
    StepKind.EMAIL,
)


@dataclass(frozen=True)
class _PendingWait:
    """What a WAITING instance is blocked on."""

    step_id: str
    events: tuple[ScheduledEvent, ...] = ()


class WorkflowEngine:
    """Executes workflow instances.

    Step history and user tasks stay queryable for the life of the engine,
    like the instances in an in-memory store. Per-instance locks are dropped
    once an instance reaches a terminal status.

    Args:
        store: Persistence boundary; defaults to :class:`InMemoryWorkflowStore`
        executors: Executor registry for task-like steps
        settings: Engine settings; defaults to :func:`get_settings`
        scheduler: Deadline scheduler; defaults to a :class:`ThreadTimeoutScheduler`
            polling every ``settings.timeout_poll_interval`` seconds
        evaluators: Condition evaluator registry for CONDITION steps
        join_registry: Join policies for PARALLEL_GATEWAY steps
        signal_pool: Runs instances woken by the scheduler; defaults to an
            engine-owned thread pool of ``settings.max_workers`` threads
        sleep: Backoff sleep, injectable for tests

    Example::

        engine = WorkflowEngine()
        engine.register_executor("service_call", call_service)
        definition = engine.deploy(builder.build())
        instance = engine.start_workflow(definition.id, {"days": 3})
        for task in engine.get_pending_tasks(assignee="manager"):
            engine.complete_user_task(task.id, {"approved": True}, completed_by="manager")
    """

    def __init__(
        self,
        store: WorkflowStore | None = None,
        executors: ExecutorRegistry | None = None,
        *,
        settings: EngineSettings | None = None,
        scheduler: TimeoutScheduler | None = None,
        evaluators: EvaluatorRegistry | None = None,
        join_registry: JoinPolicyRegistry | None = None,
        signal_pool: Executor | None = None,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        self._settings = settings or get_settings()
        self._store: WorkflowStore = store if store is not None else InMemoryWorkflowStore()
        self._executors = executors if executors is not None else ExecutorRegistry()
        self._scheduler: TimeoutScheduler = scheduler if scheduler is not None else ThreadTimeoutScheduler(
            poll_interval=self._settings.timeout_poll_interval,
        )
        self._locks = InstanceLocks()
        self._owns_signal_pool = signal_pool is None
        self._signal_pool: Executor = signal_pool if signal_pool is not None else ThreadPoolExecutor(
            max_workers=self._settings.max_workers,
            thread_name_prefix="stepflow-signal",
        )

        self._tasks: dict[str, UserTask] = {}
        self._history: dict[str, list[StepExecutionRecord]] = {}
        self._waits: dict[str, _PendingWait] = {}
        self._cancel_events: dict[str, threading.Event] = {}
        self._counters: Counter[str] = Counter()
        self._state_lock = threading.Lock()
        self._closed = False

        self._handlers = HandlerRegistry()
        self._router = ConditionalRouter(evaluators)
        self._coordinator = ParallelCoordinator(
            BranchExecutor(self._handlers, self._require_definition),
            max_workers=self._settings.max_workers,
            join_registry=join_registry,
        )
        task_handler = TaskHandler(
            self._executors,
            base_delay=self._settings.base_retry_delay,
            max_delay=self._settings.max_retry_delay,
            enforce_timeouts=self._settings.enforce_step_timeouts,
            sleep=sleep,
        )
        self._handlers.register(StepKind.START, start_handler)
        self._handlers.register(StepKind.END, end_handler)
        for kind in _TASK_LIKE_KINDS:
            self._handlers.register(kind, task_handler)
        self._handlers.register(StepKind.TIMER, timer_handler)
        self._handlers.register(StepKind.CONDITION, self._router.execute)
        self._handlers.register(StepKind.PARALLEL_GATEWAY, self._coordinator.execute)

        self._scheduler.start(self._on_scheduled_event)
        logger.info("engine.started", max_workers=self._settings.max_workers)

    # =========================================================================
    # Registration
    # =========================================================================

    @property
    def executors(self) -> ExecutorRegistry:
        return self._executors

    @property
    def scheduler(self) -> TimeoutScheduler:
        return self._scheduler

    def register_executor(self, ref: str, executor: StepExecutor | Callable[..., Any]) -> None:
        self._executors.register(ref, executor)

    def register_handler(self, kind: StepKind | str, handler: StepHandler) -> None:
        """Replace the handler for a step kind."""
        self._handlers.register(kind, handler)

    # =========================================================================
    # Definitions
    # =========================================================================

    def deploy(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Store *definition* and mark it ACTIVE. Redeploying replaces it."""
        active = definition if definition.is_active else definition.with_status(DefinitionStatus.ACTIVE)
        if self._store.get_definition_by_id(active.id) is None:
            self._store.create_definition(active)
        else:
            self._store.update_definition(active)
        logger.info("definition.deployed", definition_id=active.id, name=active.name, version=active.version)
        return active

    def deactivate(self, definition_id: str) -> WorkflowDefinition:
        """Stop new instances of a definition; running ones are unaffected."""
        inactive = self._require_definition(definition_id).with_status(DefinitionStatus.INACTIVE)
        self._store.update_definition(inactive)
        logger.info("definition.deactivated", definition_id=definition_id)
        return inactive

    def get_definition(self, definition_id: str) -> WorkflowDefinition:
        return self._require_definition(definition_id)

    def _require_definition(self, definition_id: str) -> WorkflowDefinition:
        definition = self._store.get_definition_by_id(definition_id)
        if definition is None:
            raise DefinitionNotFoundError(definition_id)
        return definition

    # =========================================================================
    # Instance lifecycle
    # =========================================================================

    def start_workflow(
        self,
        definition_id: str,
        variables: Mapping[str, Any] | None = None,
        *,
        instance_id: str | None = None,
    ) -> WorkflowInstance:
        """Create an instance and drive it until it waits or finishes.

        Raises:
            DefinitionNotFoundError: Unknown definition.
            DefinitionNotActiveError: The definition is not ACTIVE.
        """
        if self._closed:
            raise StepflowError("Workflow engine is shut down", category=ErrorCategory.STATE)
        definition = self._require_definition(definition_id)
        if not definition.is_active:
            raise DefinitionNotActiveError(definition.id, definition.status.value)

        instance = WorkflowInstance.create(
            definition.id,
            definition.version,
            dict(variables or {}),
            instance_id=instance_id,
        )
        instance.current_step_id = definition.start_step.id
        self._store.create_instance(instance)
        with self._state_lock:
            self._cancel_events[instance.id] = threading.Event()
            self._history[instance.id] = []
            self._counters["started"] += 1

        with self._locks.hold(instance.id):
            self._set_status(instance, InstanceStatus.RUNNING)
        logger.info("instance.started", instance_id=instance.id, definition_id=definition.id)

        self._drive(instance.id)
        return self.get_instance(instance.id)

    def complete_task(
        self,
        instance_id: str,
        step_id: str,
        output: Mapping[str, Any] | None = None,
        completed_by: str | None = None,
    ) -> WorkflowInstance:
        """Signal that the step *instance_id* is waiting on has completed.

        *output* is merged into the instance context and the flow continues
        from the step's successor.

        Raises:
            InvalidTransitionError: The instance is not WAITING.
            ValidationError: The instance is waiting on a different step.
        """
        with self._locks.hold(instance_id):
            instance = self._require_instance(instance_id)
            self._require_waiting_on(instance, step_id)
            definition = self._require_definition(instance.definition_id)
            step = self._require_step(definition, step_id)
            self._release_wait(instance.id, TaskStatus.COMPLETED, output, completed_by)
            self._set_status(instance, InstanceStatus.RUNNING)
            self._merge_context(instance, output)
            self._record(
                instance, step, RecordStatus.SUCCESS,
                message=f"Completed by {completed_by}" if completed_by else "Completed",
                output=dict(output or {}),
            )
            self._advance(instance, definition, step, None)
        logger.info("task.completed", instance_id=instance_id, step_id=step_id, completed_by=completed_by)

        self._drive(instance_id)
        return self.get_instance(instance_id)

    def complete_user_task(
        self,
        task_id: str,
        form_data: Mapping[str, Any] | None = None,
        completed_by: str | None = None,
    ) -> WorkflowInstance:
        """Complete a pending :class:`UserTask` and continue its instance."""
        task = self._require_task(task_id)
        if not task.is_pending:
            raise StepflowError(
                f"User task {task_id} is {task.status.value}, expected PENDING",
                category=ErrorCategory.STATE,
            )
        return self.complete_task(task.instance_id, task.step_id, form_data, completed_by)

    def handle_timer(self, instance_id: str, step_id: str) -> bool:
        """A TIMER step's wait elapsed. Returns False if the signal was stale."""
        if not self._fire_timer(instance_id, step_id):
            return False
        self._drive(instance_id)
        return True

    def handle_timeout(self, instance_id: str, step_id: str) -> bool:
        """A waiting step's deadline passed. Returns False if the signal was stale.

        The step's error policy applies: route to its error step, continue
        past it when optional, or fail the instance.
        """
        if not self._fire_timeout(instance_id, step_id):
            return False
        self._drive(instance_id)
        return True

    def _fire_timer(self, instance_id: str, step_id: str) -> bool:
        with self._locks.hold(instance_id):
            instance = self._require_instance(instance_id)
            if not self._is_waiting_on(instance, step_id):
                logger.info("timer.ignored", instance_id=instance_id, step_id=step_id, status=instance.status.value)
                return False
            definition = self._require_definition(instance.definition_id)
            step = self._require_step(definition, step_id)
            self._release_wait(instance.id, TaskStatus.COMPLETED, None, None)
            self._set_status(instance, InstanceStatus.RUNNING)
            self._record(instance, step, RecordStatus.SUCCESS, message="Timer fired")
            self._advance(instance, definition, step, None)
        logger.info("timer.fired", instance_id=instance_id, step_id=step_id)
        return True

    def _fire_timeout(self, instance_id: str, step_id: str) -> bool:
        with self._locks.hold(instance_id):
            instance = self._require_instance(instance_id)
            if not self._is_waiting_on(instance, step_id):
                logger.info("timeout.ignored", instance_id=instance_id, step_id=step_id, status=instance.status.value)
                return False
            definition = self._require_definition(instance.definition_id)
            step = self._require_step(definition, step_id)
            self._release_wait(instance.id, TaskStatus.CANCELLED, None, None)
            result = ExecutionResult.timeout(f"Step {step.id} timed out after {step.timeout}s")
            self._record(instance, step, RecordStatus.TIMEOUT, message=result.message)
            logger.warning("step.deadline_passed", instance_id=instance_id, step_id=step_id, timeout=step.timeout)
            self._set_status(instance, InstanceStatus.RUNNING)
            self._recover(instance, definition, step, result)
        return True

    def suspend(self, instance_id: str) -> WorkflowInstance:
        """Pause a RUNNING or WAITING instance.

        A step already in flight finishes, but its result is discarded and
        the step runs again on :meth:`resume`.
        """
        with self._locks.hold(instance_id):
            instance = self._require_instance(instance_id)
            self._set_status(instance, InstanceStatus.SUSPENDED)
        logger.info("instance.suspended", instance_id=instance_id)
        return self.get_instance(instance_id)

    def resume(self, instance_id: str) -> WorkflowInstance:
        """Continue a SUSPENDED instance.

        Raises:
            InvalidTransitionError: The instance is not SUSPENDED.
        """
        with self._locks.hold(instance_id):
            instance = self._require_instance(instance_id)
            if instance.status is not InstanceStatus.SUSPENDED:
                raise InvalidTransitionError(
                    instance.status.value,
                    InstanceStatus.RUNNING.value,
                    f"Instance {instance_id} is {instance.status.value}; only SUSPENDED instances resume",
                )
            self._set_status(instance, InstanceStatus.RUNNING)
            with self._state_lock:
                wait = self._waits.get(instance_id)
            waiting = False
            if wait is not None and wait.step_id == instance.current_step_id:
                waiting = True
                self._set_status(instance, InstanceStatus.WAITING)
                for event in wait.events:
                    self._scheduler.schedule(event)
        logger.info("instance.resumed", instance_id=instance_id)
        if not waiting:
            self._drive(instance_id)
        return self.get_instance(instance_id)

    def cancel(self, instance_id: str, reason: str | None = None) -> WorkflowInstance:
        """Cancel from any non-terminal state. In-flight branches are abandoned."""
        return self._stop(instance_id, InstanceStatus.CANCELLED, reason)

    def terminate(self, instance_id: str, reason: str | None = None) -> WorkflowInstance:
        """Forcefully end from any non-terminal state."""
        return self._stop(instance_id, InstanceStatus.TERMINATED, reason)

    def _stop(self, instance_id: str, target: InstanceStatus, reason: str | None) -> WorkflowInstance:
        with self._locks.hold(instance_id):
            instance = self._require_instance(instance_id)
            self._finish(instance, target, error=reason)
        return self.get_instance(instance_id)

    def update_context(self, instance_id: str, updates: Mapping[str, Any]) -> WorkflowInstance:
        """Merge *updates* into a non-terminal instance's variables."""
        with self._locks.hold(instance_id):
            instance = self._require_instance(instance_id)
            if instance.is_terminal:
                raise StepflowError(
                    f"Instance {instance_id} is {instance.status.value}; its context is read-only",
                    category=ErrorCategory.STATE,
                )
            self._merge_context(instance, updates)
        logger.debug("instance.context_updated", instance_id=instance_id, keys=sorted(updates))
        return self.get_instance(instance_id)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_instance(self, instance_id: str) -> WorkflowInstance:
        return self._require_instance(instance_id)

    def list_instances(
        self,
        definition_id: str | None = None,
        status: InstanceStatus | None = None,
    ) -> list[WorkflowInstance]:
        return self._store.list_instances(definition_id, status)

    def get_history(self, instance_id: str) -> list[StepExecutionRecord]:
        """Step execution records of an instance, oldest first."""
        self._require_instance(instance_id)
        with self._state_lock:
            return copy.deepcopy(self._history.get(instance_id, []))

    def get_task(self, task_id: str) -> UserTask:
        return copy.deepcopy(self._require_task(task_id))

    def get_pending_tasks(self, assignee: str | None = None) -> list[UserTask]:
        """Pending user tasks, optionally only those assigned to *assignee*."""
        with self._state_lock:
            tasks = [
                copy.deepcopy(task)
                for task in self._tasks.values()
                if task.is_pending and (assignee is None or task.assignee == assignee)
            ]
        return sorted(tasks, key=lambda t: t.created_at)

    def statistics(self) -> EngineStatistics:
        active = sum(1 for i in self._store.list_instances() if not i.is_terminal)
        with self._state_lock:
            counters = dict(self._counters)
        return EngineStatistics(
            started=counters.get("started", 0),
            completed=counters.get("completed", 0),
            failed=counters.get("failed", 0),
            cancelled=counters.get("cancelled", 0),
            terminated=counters.get("terminated", 0),
            active=active,
        )

    def shutdown(self) -> None:
        """Stop the scheduler, the signal pool and the parallel coordinator.

        Instances keep their state; a woken instance stops after its current step.
        """
        if self._closed:
            return
        self._closed = True
        self._scheduler.stop()
        if self._owns_signal_pool:
            self._signal_pool.shutdown(wait=True)
        self._coordinator.shutdown()
        logger.info("engine.shutdown")

    def __enter__(self) -> WorkflowEngine:
        return self

    def __exit__(self, *args: Any) -> None:
        self.shutdown()

    # =========================================================================
    # Driver loop
    # =========================================================================

    def _drive(self, instance_id: str) -> None:
        """Run steps until the instance waits, pauses or finishes.

        Only one driver runs per instance; a second caller returns at once
        and the active driver picks up the change.
        """
        token = self._locks.claim(instance_id)
        if token is None:
            return
        try:
            with LogContext(instance_id=instance_id):
                while self._step_once(instance_id, token):
                    pass
        finally:
            self._locks.release(instance_id, token)

    def _step_once(self, instance_id: str, token: object) -> bool:
        with self._locks.hold(instance_id):
            instance = self._require_instance(instance_id)
            if instance.status is not InstanceStatus.RUNNING or self._closed:
                self._locks.release(instance_id, token)
                return False
            definition = self._require_definition(instance.definition_id)
            step = definition.get_step(instance.current_step_id) if instance.current_step_id else None
            if step is None:
                if instance.current_step_id is None:
                    self._finish(instance, InstanceStatus.COMPLETED)
                else:
                    self._finish(
                        instance,
                        InstanceStatus.FAILED,
                        error=f"Current step {instance.current_step_id} is not in definition {definition.id}",
                    )
                self._locks.release(instance_id, token)
                return False
            context = self._context_for(instance, step)

        started = utc_now()
        logger.debug("step.started", step_id=step.id, kind=step.kind.value)
        result = dispatch_step(self._handlers, step, context)

        with self._locks.hold(instance_id):
            instance = self._require_instance(instance_id)
            if instance.status is not InstanceStatus.RUNNING or instance.current_step_id != step.id:
                self._record(
                    instance, step, RecordStatus.DISCARDED,
                    message=f"{result.status.value} result discarded; instance is {instance.status.value}",
                    attempts=attempts_of(result),
                    started_at=started,
                )
                logger.info("step.result_discarded", step_id=step.id, status=instance.status.value)
                keep_going = instance.status is InstanceStatus.RUNNING
            else:
                keep_going = self._apply(instance, definition, step, result, started)
            if not keep_going:
                self._locks.release(instance_id, token)
            return keep_going

    def _apply(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        step: StepDefinition,
        result: ExecutionResult,
        started: datetime,
    ) -> bool:
        """Apply *result* to a RUNNING instance. Returns True to keep driving."""
        attempts = attempts_of(result)
        logger.info(
            "step.finished",
            step_id=step.id,
            status=result.status.value,
            attempts=attempts,
            next_step_id=result.next_step_id,
        )

        if result.status is ExecutionStatus.WAITING:
            self._record(instance, step, RecordStatus.WAITING, message=result.message,
                         attempts=attempts, started_at=started)
            self._enter_wait(instance, step)
            return False

        if result.is_success:
            status = RecordStatus.SKIPPED if result.status is ExecutionStatus.SKIPPED else RecordStatus.SUCCESS
            self._record(instance, step, status, message=result.message, output=result.output,
                         attempts=attempts, started_at=started)
            self._merge_context(instance, result.output)
            if step.kind is StepKind.END:
                self._finish(instance, InstanceStatus.COMPLETED)
                return False
            return self._advance(instance, definition, step, result.next_step_id)

        status = RecordStatus.TIMEOUT if result.status is ExecutionStatus.TIMEOUT else RecordStatus.FAILURE
        self._record(instance, step, status, message=result.message, output=result.output,
                     attempts=attempts, started_at=started)
        return self._recover(instance, definition, step, result)

    def _advance(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        step: StepDefinition,
        override: str | None,
    ) -> bool:
        target = override or step.next_step_id
        if target is None:
            following = definition.step_after(step)
            target = following.id if following is not None else None
        if target is None:
            self._finish(instance, InstanceStatus.COMPLETED)
            return False
        self._move_to(instance, target)
        return True

    def _recover(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        step: StepDefinition,
        result: ExecutionResult,
    ) -> bool:
        """Failure policy: recovery target, error step, optional, or FAILED."""
        target = result.next_step_id or step.error_step_id
        if target is not None:
            self._merge_context(instance, {LAST_ERROR_KEY: result.message})
            logger.info("step.error_routed", step_id=step.id, error_step_id=target, error=result.message)
            self._move_to(instance, target)
            return True
        if step.optional:
            logger.info("step.optional_failure", step_id=step.id, error=result.message)
            return self._advance(instance, definition, step, None)
        self._finish(instance, InstanceStatus.FAILED, error=result.message)
        return False

    # =========================================================================
    # Waiting
    # =========================================================================

    def _enter_wait(self, instance: WorkflowInstance, step: StepDefinition) -> None:
        events: list[ScheduledEvent] = []
        if step.kind is StepKind.TIMER:
            events.append(ScheduledEvent.after(instance.id, step.id, EventKind.TIMER, step.wait_duration or 0))
        elif step.timeout:
            events.append(ScheduledEvent.after(instance.id, step.id, EventKind.TIMEOUT, step.timeout))

        self._set_status(instance, InstanceStatus.WAITING)
        with self._state_lock:
            self._waits[instance.id] = _PendingWait(step.id, tuple(events))
            if step.kind is StepKind.USER_TASK:
                due_at = events[0].due_at if events else None
                task = UserTask.from_step(instance.id, step, due_at)
                self._tasks[task.id] = task
            else:
                task = None
        for event in events:
            self._scheduler.schedule(event)
        if task is not None:
            logger.info("task.created", task_id=task.id, step_id=step.id, assignee=task.assignee)

    def _release_wait(
        self,
        instance_id: str,
        task_status: TaskStatus,
        form_data: Mapping[str, Any] | None,
        completed_by: str | None,
    ) -> None:
        """Clear the pending wait: drop its deadlines and settle its user tasks."""
        self._scheduler.cancel(instance_id)
        with self._state_lock:
            self._waits.pop(instance_id, None)
            for task in self._tasks.values():
                if task.instance_id != instance_id or not task.is_pending:
                    continue
                if task_status is TaskStatus.COMPLETED:
                    task.complete(dict(form_data or {}), completed_by)
                else:
                    task.cancel()

    def _is_waiting_on(self, instance: WorkflowInstance, step_id: str) -> bool:
        return instance.status is InstanceStatus.WAITING and instance.current_step_id == step_id

    def _require_waiting_on(self, instance: WorkflowInstance, step_id: str) -> None:
        if instance.status is not InstanceStatus.WAITING:
            raise InvalidTransitionError(
                instance.status.value,
                InstanceStatus.RUNNING.value,
                f"Instance {instance.id} is {instance.status.value}; only WAITING instances accept task completion",
            )
        if instance.current_step_id != step_id:
            raise ValidationError(
                f"Instance {instance.id} is waiting on step {instance.current_step_id}, not {step_id}",
                field="step_id",
                value=step_id,
            )

    def _on_scheduled_event(self, event: ScheduledEvent) -> None:
        """Apply the signal on the scheduler thread; drive the instance on the signal pool."""
        if event.kind is EventKind.TIMER:
            released = self._fire_timer(event.instance_id, event.step_id)
        else:
            released = self._fire_timeout(event.instance_id, event.step_id)
        if released and not self._closed:
            self._signal_pool.submit(self._drive_woken, event.instance_id)

    def _drive_woken(self, instance_id: str) -> None:
        try:
            self._drive(instance_id)
        except Exception:
            logger.exception("instance.drive_failed", instance_id=instance_id)
            raise

    # =========================================================================
    # State helpers (called under the instance lock)
    # =========================================================================

    def _set_status(self, instance: WorkflowInstance, target: InstanceStatus, error: str | None = None) -> None:
        instance.transition_to(target, error)
        self._store.update_status(instance.id, target, error)

    def _move_to(self, instance: WorkflowInstance, step_id: str) -> None:
        instance.current_step_id = step_id
        self._store.update_current_step(instance.id, step_id)

    def _merge_context(self, instance: WorkflowInstance, output: Mapping[str, Any] | None) -> None:
        if not output:
            return
        instance.context.update(copy.deepcopy(dict(output)))
        self._store.update_context(instance.id, instance.context)

    def _finish(self, instance: WorkflowInstance, target: InstanceStatus, error: str | None = None) -> None:
        self._set_status(instance, target, error)
        with self._state_lock:
            cancel_event = self._cancel_events.pop(instance.id, None)
            self._counters[target.value.lower()] += 1
        if cancel_event is not None:
            cancel_event.set()
        self._release_wait(instance.id, TaskStatus.CANCELLED, None, None)
        self._locks.discard(instance.id)
        if target is InstanceStatus.COMPLETED:
            logger.info("instance.completed", instance_id=instance.id)
        elif target is InstanceStatus.FAILED:
            logger.warning("instance.failed", instance_id=instance.id, error=error)
        else:
            logger.info("instance.stopped", instance_id=instance.id, status=target.value, reason=error)

    def _record(
        self,
        instance: WorkflowInstance,
        step: StepDefinition,
        status: RecordStatus,
        *,
        message: str | None = None,
        output: Mapping[str, Any] | None = None,
        attempts: int = 1,
        started_at: datetime | None = None,
    ) -> None:
        now = utc_now()
        record = StepExecutionRecord(
            instance_id=instance.id,
            step_id=step.id,
            step_name=step.name,
            step_kind=step.kind.value,
            status=status,
            attempts=attempts,
            message=message,
            output=copy.deepcopy(dict(output or {})),
            started_at=started_at or now,
            completed_at=now,
        )
        with self._state_lock:
            self._history.setdefault(instance.id, []).append(record)

    def _context_for(self, instance: WorkflowInstance, step: StepDefinition) -> ExecutionContext:
        with self._state_lock:
            cancel_event = self._cancel_events.setdefault(instance.id, threading.Event())
        return ExecutionContext(
            instance_id=instance.id,
            definition_id=instance.definition_id,
            step_id=step.id,
            variables=copy.deepcopy(instance.context),
            cancel_event=cancel_event,
        )

    # =========================================================================
    # Lookups
    # =========================================================================

    def _require_instance(self, instance_id: str) -> WorkflowInstance:
        instance = self._store.get_instance_by_id(instance_id)
        if instance is None:
            raise InstanceNotFoundError(instance_id)
        return instance

    def _require_step(self, definition: WorkflowDefinition, step_id: str) -> StepDefinition:
        step = definition.get_step(step_id)
        if step is None:
            raise ValidationError(
                f"Step {step_id} is not in definition {definition.id}",
                field="step_id",
                value=step_id,
            )
        return step

    def _require_task(self, task_id: str) -> UserTask:
        with self._state_lock:
            task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task


__all__ = ["WorkflowEngine", "LAST_ERROR_KEY"]
