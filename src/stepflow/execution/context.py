"""ExecutionContext: the read-only snapshot a step executes against."""

from __future__ import annotations

import copy
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from stepflow.core.expressions import lookup_path


@dataclass(frozen=True)
class ExecutionContext:
    """
    Immutable view of an instance at the moment a step is dispatched.

    ``variables`` is a deep copy of the instance context, so executors can't
    mutate engine state; they change it only by returning output. Parallel
    branches get ``scratch`` (the gateway's shared data when ``share_data``
    is on) and accumulate earlier member outputs in ``inputs``.

    Attributes:
        instance_id: Workflow instance being driven
        definition_id: Definition the instance runs
        step_id: Step being executed
        variables: Instance variable context (copy)
        inputs: Step inputs (task completion data, branch-local outputs)
        scratch: Shared scratch data (parallel gateways)
        attempt: 1-based attempt number for retried kinds
        cancel_event: Set when the instance is cancelled or terminated
    """

    instance_id: str
    definition_id: str
    step_id: str
    variables: dict[str, Any] = field(default_factory=dict)
    inputs: dict[str, Any] = field(default_factory=dict)
    scratch: Any = field(default_factory=dict)
    attempt: int = 1
    cancel_event: threading.Event | None = field(default=None, compare=False, repr=False)

    # =========================================================================
    # Accessors (read-only)
    # =========================================================================

    def get(self, name: str, default: Any = None) -> Any:
        """Look a name up in scratch, then inputs, then variables."""
        for source in (self.scratch, self.inputs, self.variables):
            if isinstance(source, Mapping):
                value = lookup_path(source, name)
                if value is not None:
                    return value
        return default

    def get_variable(self, name: str, default: Any = None) -> Any:
        value = lookup_path(self.variables, name)
        return default if value is None else value

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def namespace(self) -> dict[str, Any]:
        """Flat namespace for expressions (scratch wins over inputs over variables)."""
        scratch = dict(self.scratch) if isinstance(self.scratch, Mapping) else {}
        return {**self.variables, **self.inputs, **scratch}

    # =========================================================================
    # Mutation (returns new context)
    # =========================================================================

    def for_step(self, step_id: str, attempt: int = 1) -> ExecutionContext:
        return self._copy_with(step_id=step_id, attempt=attempt)

    def with_inputs(self, inputs: Mapping[str, Any]) -> ExecutionContext:
        merged = copy.deepcopy(self.inputs)
        merged.update(copy.deepcopy(dict(inputs)))
        return self._copy_with(inputs=merged)

    def with_variables(self, updates: Mapping[str, Any]) -> ExecutionContext:
        merged = copy.deepcopy(self.variables)
        merged.update(copy.deepcopy(dict(updates)))
        return self._copy_with(variables=merged)

    def with_scratch(self, scratch: Any) -> ExecutionContext:
        return self._copy_with(scratch=scratch)

    def _copy_with(self, **changes: Any) -> ExecutionContext:
        values = {
            "instance_id": self.instance_id,
            "definition_id": self.definition_id,
            "step_id": self.step_id,
            "variables": self.variables,
            "inputs": self.inputs,
            "scratch": self.scratch,
            "attempt": self.attempt,
            "cancel_event": self.cancel_event,
        }
        values.update(changes)
        return ExecutionContext(**values)

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "definition_id": self.definition_id,
            "step_id": self.step_id,
            "variables": copy.deepcopy(self.variables),
            "inputs": copy.deepcopy(self.inputs),
            "attempt": self.attempt,
        }


__all__ = ["ExecutionContext"]
