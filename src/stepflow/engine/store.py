"""Persistence boundary between the engine and whatever stores its state.

Manifesto:
The engine never touches storage directly. Everything it persists goes
through the :class:`WorkflowStore` protocol, one narrow call per kind of
change, so a database-backed store only has to implement a handful of
single-row updates. Stores hand out copies; the engine writes back through
the ``update_*`` calls rather than by mutating what it read.

ARCHITECTURE
────────────
::

    WorkflowEngine ──▶ WorkflowStore (Protocol)
                           ├── create_definition / get_definition_by_id / update_definition
                           ├── create_instance / get_instance_by_id / list_instances
                           └── update_status / update_current_step / update_context
                                    ▲
                     InMemoryWorkflowStore (bundled, thread-safe)

Tags:
    stepflow, engine, persistence, protocol
"""

from __future__ import annotations

import copy
import threading
from typing import Any, Protocol, runtime_checkable

from stepflow.core.errors import DefinitionNotFoundError, InstanceNotFoundError, StorageError
from stepflow.core.timestamps import utc_now
from stepflow.model.definition import WorkflowDefinition
from stepflow.model.instance import WorkflowInstance
from stepflow.model.step_types import InstanceStatus


@runtime_checkable
class WorkflowStore(Protocol):
    """Storage contract used by :class:`~stepflow.engine.WorkflowEngine`."""

    def create_definition(self, definition: WorkflowDefinition) -> None: ...

    def get_definition_by_id(self, definition_id: str) -> WorkflowDefinition | None: ...

    def update_definition(self, definition: WorkflowDefinition) -> None: ...

    def create_instance(self, instance: WorkflowInstance) -> None: ...

    def get_instance_by_id(self, instance_id: str) -> WorkflowInstance | None: ...

    def update_status(
        self,
        instance_id: str,
        status: InstanceStatus,
        error: str | None = None,
    ) -> None: ...

    def update_current_step(self, instance_id: str, step_id: str | None) -> None: ...

    def update_context(self, instance_id: str, context: dict[str, Any]) -> None: ...

    def list_instances(
        self,
        definition_id: str | None = None,
        status: InstanceStatus | None = None,
    ) -> list[WorkflowInstance]: ...


class InMemoryWorkflowStore:
    """Dict-backed :class:`WorkflowStore`.

    Definitions are immutable and stored as-is; instances are deep-copied
    in both directions.

    Example:
        >>> store = InMemoryWorkflowStore()
        >>> store.create_instance(WorkflowInstance.create("wf_1", "1.0"))
        >>> len(store.list_instances())
        1
    """

    def __init__(self) -> None:
        self._definitions: dict[str, WorkflowDefinition] = {}
        self._instances: dict[str, WorkflowInstance] = {}
        self._lock = threading.RLock()

    # -------------------------------------------------------------------------
    # Definitions
    # -------------------------------------------------------------------------

    def create_definition(self, definition: WorkflowDefinition) -> None:
        with self._lock:
            if definition.id in self._definitions:
                raise StorageError(f"Workflow definition already exists: {definition.id}")
            self._definitions[definition.id] = definition

    def get_definition_by_id(self, definition_id: str) -> WorkflowDefinition | None:
        with self._lock:
            return self._definitions.get(definition_id)

    def update_definition(self, definition: WorkflowDefinition) -> None:
        with self._lock:
            if definition.id not in self._definitions:
                raise DefinitionNotFoundError(definition.id)
            self._definitions[definition.id] = definition

    def list_definitions(self) -> list[WorkflowDefinition]:
        with self._lock:
            return list(self._definitions.values())

    # -------------------------------------------------------------------------
    # Instances
    # -------------------------------------------------------------------------

    def create_instance(self, instance: WorkflowInstance) -> None:
        with self._lock:
            if instance.id in self._instances:
                raise StorageError(f"Workflow instance already exists: {instance.id}")
            self._instances[instance.id] = instance.snapshot()

    def get_instance_by_id(self, instance_id: str) -> WorkflowInstance | None:
        with self._lock:
            instance = self._instances.get(instance_id)
            return instance.snapshot() if instance is not None else None

    def _require(self, instance_id: str) -> WorkflowInstance:
        instance = self._instances.get(instance_id)
        if instance is None:
            raise InstanceNotFoundError(instance_id)
        return instance

    def update_status(
        self,
        instance_id: str,
        status: InstanceStatus,
        error: str | None = None,
    ) -> None:
        with self._lock:
            instance = self._require(instance_id)
            instance.status = status
            instance.updated_at = utc_now()
            if error is not None:
                instance.error = error
            if status.is_terminal:
                instance.completed_at = instance.updated_at

    def update_current_step(self, instance_id: str, step_id: str | None) -> None:
        with self._lock:
            instance = self._require(instance_id)
            instance.current_step_id = step_id
            instance.updated_at = utc_now()

    def update_context(self, instance_id: str, context: dict[str, Any]) -> None:
        with self._lock:
            instance = self._require(instance_id)
            instance.context = copy.deepcopy(context)
            instance.updated_at = utc_now()

    def list_instances(
        self,
        definition_id: str | None = None,
        status: InstanceStatus | None = None,
    ) -> list[WorkflowInstance]:
        with self._lock:
            return [
                instance.snapshot()
                for instance in self._instances.values()
                if (definition_id is None or instance.definition_id == definition_id)
                and (status is None or instance.status is status)
            ]


__all__ = ["WorkflowStore", "InMemoryWorkflowStore"]
