"""
Stepflow - workflow definition and execution engine.

- stepflow.builder: fluent builders for steps, gateways and definitions
- stepflow.model: sealed definitions and engine-owned instances
- stepflow.routing: condition evaluators and the CONDITION router
- stepflow.parallel: parallel gateways and join policies
- stepflow.engine: the instance state machine
"""

__version__ = "0.1.0"

from stepflow.builder import (
    ConditionalStepBuilder,
    ParallelStepBuilder,
    StepBuilder,
    WorkflowBuilder,
)
from stepflow.core import *  # noqa
from stepflow.engine import InMemoryWorkflowStore, WorkflowEngine
from stepflow.execution import ExecutionContext, ExecutionResult, ExecutionStatus, ExecutorRegistry
from stepflow.model import (
    DefinitionStatus,
    InstanceStatus,
    StepDefinition,
    StepKind,
    WorkflowDefinition,
    WorkflowInstance,
)
from stepflow.routing import ConditionSpec
