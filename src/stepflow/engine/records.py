"""Engine-side records: user tasks, step history and statistics."""

from __future__ import annotations

import copy
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from stepflow.core.timestamps import generate_ulid, to_iso8601, utc_now
from stepflow.model.step import StepDefinition
from stepflow.model.step_types import ConfigKey


class TaskStatus(str, Enum):
    """Lifecycle of a user task."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class RecordStatus(str, Enum):
    """Outcome recorded for one step execution."""

    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    WAITING = "WAITING"
    SKIPPED = "SKIPPED"
    TIMEOUT = "TIMEOUT"
    DISCARDED = "DISCARDED"


# =============================================================================
# User tasks
# =============================================================================


@dataclass
class UserTask:
    """A pending piece of human work created by a USER_TASK step.

    Completing the task (``WorkflowEngine.complete_user_task``) is the
    signal that moves its instance from WAITING back to RUNNING.
    """

    id: str
    instance_id: str
    step_id: str
    name: str
    assignee: str | None = None
    candidate_groups: list[str] = field(default_factory=list)
    priority: int | None = None
    form_key: str | None = None
    form_data: dict[str, Any] = field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    created_at: datetime = field(default_factory=utc_now)
    due_at: datetime | None = None
    completed_by: str | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_step(
        cls,
        instance_id: str,
        step: StepDefinition,
        due_at: datetime | None = None,
    ) -> UserTask:
        return cls(
            id=generate_ulid(),
            instance_id=instance_id,
            step_id=step.id,
            name=step.name,
            assignee=step.config(ConfigKey.ASSIGNEE),
            candidate_groups=list(step.config(ConfigKey.CANDIDATE_GROUPS) or []),
            priority=step.config(ConfigKey.PRIORITY),
            form_key=step.config(ConfigKey.FORM_KEY),
            due_at=due_at,
        )

    @property
    def is_pending(self) -> bool:
        return self.status is TaskStatus.PENDING

    def is_overdue(self, now: datetime | None = None) -> bool:
        return self.is_pending and self.due_at is not None and (now or utc_now()) > self.due_at

    def can_be_handled_by(self, user_id: str, groups: Iterable[str] = ()) -> bool:
        """True for the assignee, or for anyone in a candidate group when unassigned."""
        if self.assignee:
            return self.assignee == user_id
        if not self.candidate_groups:
            return True
        return bool(set(groups) & set(self.candidate_groups))

    def complete(self, form_data: dict[str, Any] | None = None, completed_by: str | None = None) -> None:
        self.status = TaskStatus.COMPLETED
        self.form_data = copy.deepcopy(form_data or {})
        self.completed_by = completed_by
        self.completed_at = utc_now()

    def cancel(self) -> None:
        self.status = TaskStatus.CANCELLED
        self.completed_at = utc_now()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "step_id": self.step_id,
            "name": self.name,
            "assignee": self.assignee,
            "candidate_groups": list(self.candidate_groups),
            "priority": self.priority,
            "form_key": self.form_key,
            "form_data": copy.deepcopy(self.form_data),
            "status": self.status.value,
            "created_at": to_iso8601(self.created_at),
            "due_at": to_iso8601(self.due_at),
            "completed_by": self.completed_by,
            "completed_at": to_iso8601(self.completed_at),
        }


# =============================================================================
# Step history
# =============================================================================


@dataclass
class StepExecutionRecord:
    """One entry of an instance's execution history."""

    instance_id: str
    step_id: str
    step_name: str
    step_kind: str
    status: RecordStatus
    attempts: int = 1
    message: str | None = None
    output: dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(default_factory=utc_now)
    completed_at: datetime = field(default_factory=utc_now)
    id: str = field(default_factory=generate_ulid)

    @property
    def duration_seconds(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "step_id": self.step_id,
            "step_name": self.step_name,
            "step_kind": self.step_kind,
            "status": self.status.value,
            "attempts": self.attempts,
            "message": self.message,
            "output": copy.deepcopy(self.output),
            "started_at": to_iso8601(self.started_at),
            "completed_at": to_iso8601(self.completed_at),
            "duration_seconds": self.duration_seconds,
        }


# =============================================================================
# Statistics
# =============================================================================


@dataclass(frozen=True)
class EngineStatistics:
    """Instance counters since the engine was created."""

    started: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    terminated: int = 0
    active: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "started": self.started,
            "completed": self.completed,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "terminated": self.terminated,
            "active": self.active,
        }


__all__ = [
    "TaskStatus",
    "RecordStatus",
    "UserTask",
    "StepExecutionRecord",
    "EngineStatistics",
]
