"""Fluent builders for steps, gateways and whole workflow definitions."""

from stepflow.builder.conditional import ConditionalStepBuilder
from stepflow.builder.parallel import ParallelStepBuilder
from stepflow.builder.step_builder import StepBuilder
from stepflow.builder.workflow_builder import END_STEP_ID, START_STEP_ID, WorkflowBuilder

__all__ = [
    "ConditionalStepBuilder",
    "END_STEP_ID",
    "ParallelStepBuilder",
    "START_STEP_ID",
    "StepBuilder",
    "WorkflowBuilder",
]
