"""Execution engine: instance state machine, handlers, store and scheduler."""

from stepflow.engine.engine import LAST_ERROR_KEY, WorkflowEngine
from stepflow.engine.handlers import (
    BranchExecutor,
    HandlerRegistry,
    StepHandler,
    TaskHandler,
    dispatch_step,
)
from stepflow.engine.locks import InstanceLocks
from stepflow.engine.records import (
    EngineStatistics,
    RecordStatus,
    StepExecutionRecord,
    TaskStatus,
    UserTask,
)
from stepflow.engine.scheduler import (
    EventKind,
    ScheduledEvent,
    ThreadTimeoutScheduler,
    TimeoutScheduler,
)
from stepflow.engine.store import InMemoryWorkflowStore, WorkflowStore

__all__ = [
    "BranchExecutor",
    "EngineStatistics",
    "EventKind",
    "HandlerRegistry",
    "InMemoryWorkflowStore",
    "InstanceLocks",
    "LAST_ERROR_KEY",
    "RecordStatus",
    "ScheduledEvent",
    "StepExecutionRecord",
    "StepHandler",
    "TaskHandler",
    "TaskStatus",
    "ThreadTimeoutScheduler",
    "TimeoutScheduler",
    "UserTask",
    "WorkflowEngine",
    "WorkflowStore",
    "dispatch_step",
]
