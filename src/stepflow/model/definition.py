"""WorkflowDefinition: the sealed, validated step graph.

Manifesto:
A definition is built once, validated once, and then only read. The engine
never mutates it; the store owns it. Everything the engine needs to walk
the graph (start step, lookups by id, "next step by order") is answered
here, so handlers never re-derive graph structure.

ARCHITECTURE
────────────
::

    WorkflowBuilder.build() ─┐
    WorkflowDefinition.from_dict() ─┼──▶ validate_steps() ──▶ WorkflowDefinition
    WorkflowDefinition.from_yaml() ─┘                          │
                                                               ├── get_step / find_step_by_name
                                                               ├── start_step / end_steps
                                                               ├── step_after (default sequencing)
                                                               └── to_dict / to_yaml

Invariants checked by :func:`validate_steps`:
    - step ids unique, step orders unique
    - next/error references and every gateway target resolve to a step id
    - at least one START and one END step (when ``require_markers``)

Tags:
    stepflow, model, definition, validation, serialization
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import yaml

from stepflow.core.errors import ValidationError
from stepflow.core.timestamps import from_iso8601, to_iso8601, utc_now
from stepflow.model.step import StepDefinition, freeze, thaw
from stepflow.model.step_types import DefinitionStatus, StepKind

API_VERSION = "stepflow.io/v1"
MANIFEST_KIND = "WorkflowDefinition"


def validate_steps(steps: Sequence[StepDefinition], *, require_markers: bool = True) -> None:
    """Check the referential integrity of a step list.

    Raises:
        ValidationError: On the first violated invariant.
    """
    if not steps:
        raise ValidationError("Workflow must contain at least one step", field="steps")

    ids: set[str] = set()
    orders: dict[int, str] = {}
    for step in steps:
        if step.id in ids:
            raise ValidationError(
                f"Duplicate step id: {step.id}",
                field="id",
                value=step.id,
                constraint="unique",
            )
        ids.add(step.id)
        if step.order in orders:
            raise ValidationError(
                f"Duplicate step order {step.order}: {orders[step.order]} and {step.id}",
                field="order",
                value=step.order,
                constraint="unique",
            )
        orders[step.order] = step.id

    for step in steps:
        if step.next_step_id is not None and step.next_step_id not in ids:
            raise ValidationError(
                f"Step {step.id} references unknown next step: {step.next_step_id}",
                field="next_step_id",
                value=step.next_step_id,
                constraint="exists",
            )
        if step.error_step_id is not None and step.error_step_id not in ids:
            raise ValidationError(
                f"Step {step.id} references unknown error step: {step.error_step_id}",
                field="error_step_id",
                value=step.error_step_id,
                constraint="exists",
            )
        missing = sorted(step.referenced_step_ids() - ids)
        if missing:
            raise ValidationError(
                f"{step.kind.value} step {step.id} references unknown step: {missing[0]}",
                field="configuration",
                value=missing[0],
                constraint="exists",
            )
        if step.id in step.branch_member_ids():
            raise ValidationError(
                f"Parallel gateway {step.id} cannot be a member of its own branches",
                field="configuration",
                value=step.id,
            )

    if require_markers:
        kinds = {step.kind for step in steps}
        if StepKind.START not in kinds:
            raise ValidationError("Workflow has no START step", field="steps", constraint="start")
        if StepKind.END not in kinds:
            raise ValidationError("Workflow has no END step", field="steps", constraint="end")


@dataclass(frozen=True)
class WorkflowDefinition:
    """A sealed workflow definition.

    Construct through :class:`~stepflow.builder.WorkflowBuilder` or
    :meth:`from_dict` / :meth:`from_yaml`; both validate before returning.

    Example::

        definition = (
            WorkflowBuilder("leave.approval")
            .add_user_task("manager_review", assignee="manager")
            .add_service_call("notify_hr", "https://hr.example.com/api")
            .build()
        )
        definition.start_step.order  # 0
    """

    id: str
    name: str
    steps: tuple[StepDefinition, ...]
    version: str = "1.0"
    status: DefinitionStatus = DefinitionStatus.DRAFT
    configuration: Mapping[str, Any] = field(default_factory=dict)
    description: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        ordered = tuple(sorted(self.steps, key=lambda s: s.order))
        object.__setattr__(self, "steps", ordered)
        object.__setattr__(self, "configuration", freeze(self.configuration or {}))
        if not isinstance(self.status, DefinitionStatus):
            object.__setattr__(self, "status", DefinitionStatus(self.status))
        object.__setattr__(self, "_by_id", {s.id: s for s in ordered})
        members: set[str] = set()
        for step in ordered:
            members.update(step.branch_member_ids())
        object.__setattr__(self, "_branch_members", frozenset(members))

    # =========================================================================
    # Lookups
    # =========================================================================

    def get_step(self, step_id: str) -> StepDefinition | None:
        return self._by_id.get(step_id)  # type: ignore[attr-defined]

    def has_step(self, step_id: str) -> bool:
        return step_id in self._by_id  # type: ignore[attr-defined]

    def find_step_by_name(self, name: str) -> StepDefinition | None:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    @property
    def step_ids(self) -> list[str]:
        return [s.id for s in self.steps]

    @property
    def start_step(self) -> StepDefinition:
        """The first START step by order."""
        for step in self.steps:
            if step.kind is StepKind.START:
                return step
        raise ValidationError(f"Workflow {self.id} has no START step", field="steps")

    @property
    def end_steps(self) -> list[StepDefinition]:
        return [s for s in self.steps if s.kind is StepKind.END]

    @property
    def branch_member_ids(self) -> frozenset[str]:
        """Step ids that only run inside a parallel gateway branch."""
        return self._branch_members  # type: ignore[attr-defined]

    def step_after(self, step: StepDefinition) -> StepDefinition | None:
        """Next step by order, skipping parallel-branch members."""
        for candidate in self.steps:
            if candidate.order > step.order and candidate.id not in self.branch_member_ids:
                return candidate
        return None

    def with_status(self, status: DefinitionStatus) -> WorkflowDefinition:
        return dataclasses.replace(self, status=status, updated_at=utc_now())

    @property
    def is_active(self) -> bool:
        return self.status is DefinitionStatus.ACTIVE

    # =========================================================================
    # Serialization
    # =========================================================================

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the generic map form handed to external stores."""
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "status": self.status.value,
            "description": self.description,
            "configuration": thaw(self.configuration),
            "steps": [s.to_dict() for s in self.steps],
            "created_at": to_iso8601(self.created_at),
            "updated_at": to_iso8601(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowDefinition:
        """Rebuild and re-validate a definition from :meth:`to_dict` output.

        Raises:
            ValidationError: Missing keys or a broken step graph.
        """
        try:
            steps = [StepDefinition.from_dict(sd) for sd in data.get("steps", [])]
            name = data["name"]
            definition_id = data["id"]
        except (KeyError, ValueError, TypeError) as e:
            raise ValidationError(f"Malformed workflow definition: {e}", cause=e) from e

        validate_steps(steps)
        kwargs: dict[str, Any] = {}
        if data.get("created_at"):
            kwargs["created_at"] = from_iso8601(data["created_at"])
        if data.get("updated_at"):
            kwargs["updated_at"] = from_iso8601(data["updated_at"])
        return cls(
            id=definition_id,
            name=name,
            steps=tuple(steps),
            version=str(data.get("version", "1.0")),
            status=DefinitionStatus(data.get("status", DefinitionStatus.DRAFT.value)),
            configuration=data.get("configuration") or {},
            description=data.get("description"),
            **kwargs,
        )

    def to_yaml(self) -> str:
        """Serialize to a manifest YAML document (``kind: WorkflowDefinition``)."""
        doc: dict[str, Any] = {
            "apiVersion": API_VERSION,
            "kind": MANIFEST_KIND,
            "metadata": {
                "id": self.id,
                "name": self.name,
                "version": self.version,
                "status": self.status.value,
            },
        }
        if self.description:
            doc["metadata"]["description"] = self.description
        doc["metadata"]["created_at"] = to_iso8601(self.created_at)
        doc["metadata"]["updated_at"] = to_iso8601(self.updated_at)

        spec: dict[str, Any] = {}
        if self.configuration:
            spec["configuration"] = thaw(self.configuration)
        spec["steps"] = [s.to_dict() for s in self.steps]
        doc["spec"] = spec
        return yaml.safe_dump(doc, default_flow_style=False, sort_keys=False)

    @classmethod
    def from_yaml(cls, content: str) -> WorkflowDefinition:
        """Parse a manifest document produced by :meth:`to_yaml`."""
        from stepflow.model.manifest import WorkflowManifest

        return WorkflowManifest.from_yaml(content).to_definition()

    def __repr__(self) -> str:
        return (
            f"WorkflowDefinition({self.id!r}, {self.name!r}, version={self.version!r}, "
            f"status={self.status.value}, steps={len(self.steps)})"
        )


def steps_equivalent(a: Iterable[StepDefinition], b: Iterable[StepDefinition]) -> bool:
    """Structural comparison: same ids, orders, kinds, and transitions."""

    def shape(steps: Iterable[StepDefinition]) -> list[tuple[Any, ...]]:
        return sorted(
            (s.id, s.order, s.kind.value, s.next_step_id, s.error_step_id)
            for s in steps
        )

    return shape(a) == shape(b)


__all__ = [
    "API_VERSION",
    "MANIFEST_KIND",
    "WorkflowDefinition",
    "validate_steps",
    "steps_equivalent",
]
