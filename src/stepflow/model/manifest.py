"""Pydantic models for workflow definition manifests.

Validates the document shape of a YAML manifest before it is turned into a
:class:`~stepflow.model.definition.WorkflowDefinition`; graph-level checks
(dangling references, duplicate orders, START/END) stay in
:func:`~stepflow.model.definition.validate_steps`.

Usage::

    from stepflow.model.manifest import WorkflowManifest

    manifest = WorkflowManifest.from_yaml(yaml_content)
    definition = manifest.to_definition()

Example YAML::

    apiVersion: stepflow.io/v1
    kind: WorkflowDefinition
    metadata:
      id: leave-approval
      name: leave.approval
      version: "1.0"
      status: ACTIVE
    spec:
      steps:
        - id: step_start
          name: start
          kind: START
          order: 0
        - id: step_1
          name: review
          kind: USER_TASK
          order: 1
          executor: user_task
          configuration:
            assignee: manager
        - id: step_end
          name: end
          kind: END
          order: 2

Tags:
    stepflow, manifest, yaml, pydantic, declarative
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

from stepflow.core.errors import ValidationError
from stepflow.model.definition import API_VERSION, WorkflowDefinition
from stepflow.model.step_types import DefinitionStatus, StepKind


class ManifestMetadata(BaseModel):
    """Metadata section of a manifest."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=1, description="Definition id")
    name: str = Field(..., min_length=1, description="Workflow name")
    version: str = Field(default="1.0", description="Definition version")
    status: DefinitionStatus = Field(default=DefinitionStatus.DRAFT)
    description: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("version", mode="before")
    @classmethod
    def _coerce_version(cls, v: Any) -> str:
        return str(v)


class StepManifest(BaseModel):
    """One step entry under ``spec.steps``."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    kind: StepKind
    order: int
    executor: str | None = None
    configuration: dict[str, Any] = Field(default_factory=dict)
    precondition: str | None = None
    next_step_id: str | None = None
    error_step_id: str | None = None
    optional: bool = False
    timeout: int | None = Field(default=None, gt=0)
    retry_count: int = Field(default=0, ge=0)
    description: str | None = None


class ManifestSpec(BaseModel):
    """The ``spec`` section: configuration plus steps."""

    model_config = ConfigDict(extra="forbid")

    configuration: dict[str, Any] = Field(default_factory=dict)
    steps: list[StepManifest] = Field(..., min_length=1)


class WorkflowManifest(BaseModel):
    """Root model of a workflow definition manifest."""

    model_config = ConfigDict(extra="forbid")

    apiVersion: Literal["stepflow.io/v1"] = Field(default=API_VERSION)
    kind: Literal["WorkflowDefinition"] = Field(default="WorkflowDefinition")
    metadata: ManifestMetadata
    spec: ManifestSpec

    def to_definition(self) -> WorkflowDefinition:
        """Convert to a validated :class:`WorkflowDefinition`."""
        data: dict[str, Any] = {
            **self.metadata.model_dump(mode="json"),
            "configuration": self.spec.configuration,
            "steps": [s.model_dump(mode="json", exclude_none=True) for s in self.spec.steps],
        }
        return WorkflowDefinition.from_dict(data)

    @classmethod
    def from_yaml(cls, content: str) -> WorkflowManifest:
        """Parse and validate YAML content.

        Raises:
            ValidationError: Invalid YAML or a document that doesn't match the schema.
        """
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ValidationError(f"Invalid YAML: {e}", cause=e) from e
        if not isinstance(data, dict):
            raise ValidationError(
                f"Expected a mapping, got {type(data).__name__}", field="root"
            )
        try:
            return cls.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid workflow manifest: {e}", cause=e) from e

    @classmethod
    def from_yaml_file(cls, path: Path | str) -> WorkflowManifest:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Workflow manifest not found: {path}")
        return cls.from_yaml(path.read_text(encoding="utf-8"))


__all__ = [
    "ManifestMetadata",
    "StepManifest",
    "ManifestSpec",
    "WorkflowManifest",
]
