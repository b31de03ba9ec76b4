"""Step/definition model: immutable definitions and engine-owned instances."""

from stepflow.model.definition import (
    API_VERSION,
    WorkflowDefinition,
    steps_equivalent,
    validate_steps,
)
from stepflow.model.instance import WorkflowInstance
from stepflow.model.manifest import WorkflowManifest
from stepflow.model.step import StepDefinition
from stepflow.model.step_types import (
    INSTANCE_VALID_TRANSITIONS,
    ConfigKey,
    DefinitionStatus,
    InstanceStatus,
    StepKind,
    validate_instance_transition,
)

__all__ = [
    "API_VERSION",
    "ConfigKey",
    "DefinitionStatus",
    "INSTANCE_VALID_TRANSITIONS",
    "InstanceStatus",
    "StepDefinition",
    "StepKind",
    "WorkflowDefinition",
    "WorkflowInstance",
    "WorkflowManifest",
    "steps_equivalent",
    "validate_instance_transition",
    "validate_steps",
]
