"""WorkflowInstance: one run of a definition, owned by the engine."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from stepflow.core.timestamps import from_iso8601, generate_ulid, to_iso8601, utc_now
from stepflow.model.step_types import InstanceStatus, validate_instance_transition


@dataclass
class WorkflowInstance:
    """Mutable run record.

    Only the execution engine mutates instances, always under the
    instance's lock, and always through :meth:`transition_to` for status
    changes so the transition table is enforced.

    Example:
        >>> instance = WorkflowInstance.create("leave-approval", "1.0", {"days": 3})
        >>> instance.status
        <InstanceStatus.CREATED: 'CREATED'>
    """

    id: str
    definition_id: str
    definition_version: str
    status: InstanceStatus = InstanceStatus.CREATED
    current_step_id: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    started_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    completed_at: datetime | None = None

    @classmethod
    def create(
        cls,
        definition_id: str,
        definition_version: str,
        variables: dict[str, Any] | None = None,
        instance_id: str | None = None,
    ) -> WorkflowInstance:
        """Create a new instance in CREATED status."""
        return cls(
            id=instance_id or generate_ulid(),
            definition_id=definition_id,
            definition_version=definition_version,
            context=copy.deepcopy(variables or {}),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition_to(self, target: InstanceStatus, error: str | None = None) -> None:
        """Validate and apply a status change.

        Raises:
            InvalidTransitionError: If the transition table forbids it.
        """
        validate_instance_transition(self.status, target)
        self.status = target
        self.updated_at = utc_now()
        if error is not None:
            self.error = error
        if target.is_terminal:
            self.completed_at = self.updated_at

    def snapshot(self) -> WorkflowInstance:
        """Deep copy handed out to callers so engine state can't be aliased."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "definition_id": self.definition_id,
            "definition_version": self.definition_version,
            "status": self.status.value,
            "current_step_id": self.current_step_id,
            "context": copy.deepcopy(self.context),
            "error": self.error,
            "started_at": to_iso8601(self.started_at),
            "updated_at": to_iso8601(self.updated_at),
            "completed_at": to_iso8601(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowInstance:
        return cls(
            id=data["id"],
            definition_id=data["definition_id"],
            definition_version=str(data.get("definition_version", "1.0")),
            status=InstanceStatus(data.get("status", InstanceStatus.CREATED.value)),
            current_step_id=data.get("current_step_id"),
            context=copy.deepcopy(data.get("context") or {}),
            error=data.get("error"),
            started_at=from_iso8601(data.get("started_at")) or utc_now(),
            updated_at=from_iso8601(data.get("updated_at")) or utc_now(),
            completed_at=from_iso8601(data.get("completed_at")),
        )


__all__ = ["WorkflowInstance"]
