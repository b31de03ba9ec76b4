"""StepDefinition: one immutable node of a workflow graph."""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from stepflow.model.step_types import ConfigKey, StepKind


def freeze(value: Any) -> Any:
    """Read-only deep copy: mappings become proxies, lists become tuples."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    if isinstance(value, (set, frozenset)):
        return frozenset(freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Plain mutable copy of a :func:`freeze`d value."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [thaw(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return {thaw(v) for v in value}
    return value


@dataclass(frozen=True)
class StepDefinition:
    """A sealed step record.

    Records are frozen; builders "update" a step by replacing the record
    (``with_next_step`` / ``with_error_step`` / ``replace``). The
    configuration map is frozen on the way in (nested mappings become
    read-only proxies and lists become tuples); :meth:`config` and
    :meth:`to_dict` hand out plain mutable copies.

    Attributes:
        id: Unique within its definition (``step_N`` when builder-assigned).
        name: Human name, unique within a builder so ``connect`` can resolve it.
        kind: Which handler executes the step.
        order: Unique position used for sorting and default sequencing.
        executor: Executor reference; required for task-like kinds.
        configuration: Opaque string-keyed map (see :class:`ConfigKey`).
        precondition: Optional expression; a false result skips the step.
        next_step_id: Explicit successor. ``None`` means "next by order".
        error_step_id: Where failures route to.
        optional: Failures are swallowed and flow continues.
        timeout: Seconds; enforced for executor calls and waiting steps.
        retry_count: Extra attempts for kinds that support retry.
    """

    id: str
    name: str
    kind: StepKind
    order: int
    executor: str | None = None
    configuration: Mapping[str, Any] = field(default_factory=dict)
    precondition: str | None = None
    next_step_id: str | None = None
    error_step_id: str | None = None
    optional: bool = False
    timeout: int | None = None
    retry_count: int = 0
    description: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.kind, StepKind):
            object.__setattr__(self, "kind", StepKind(self.kind))
        object.__setattr__(self, "configuration", freeze(self.configuration or {}))

    # =========================================================================
    # Accessors
    # =========================================================================

    def config(self, key: str, default: Any = None) -> Any:
        """Read one configuration value as a plain mutable copy."""
        return thaw(self.configuration.get(key, default))

    @property
    def is_task_like(self) -> bool:
        return self.kind.is_task_like

    @property
    def wait_duration(self) -> float | None:
        value = self.configuration.get(ConfigKey.WAIT_DURATION)
        return float(value) if value is not None else None

    def referenced_step_ids(self) -> set[str]:
        """Every step id this record points at, including gateway targets."""
        refs = {ref for ref in (self.next_step_id, self.error_step_id) if ref}
        cfg = self.configuration
        if self.kind is StepKind.CONDITION:
            for branch in cfg.get(ConfigKey.BRANCHES, []):
                if branch.get("target"):
                    refs.add(branch["target"])
            for key in (ConfigKey.DEFAULT_BRANCH, ConfigKey.ERROR_BRANCH):
                if cfg.get(key):
                    refs.add(cfg[key])
        elif self.kind is StepKind.PARALLEL_GATEWAY:
            refs.update(self.branch_member_ids())
            for key in (ConfigKey.TIMEOUT_STEP, ConfigKey.ERROR_STEP):
                if cfg.get(key):
                    refs.add(cfg[key])
        return refs

    def branch_member_ids(self) -> list[str]:
        """Member step ids of a parallel gateway's branches, in branch order."""
        if self.kind is not StepKind.PARALLEL_GATEWAY:
            return []
        members: list[str] = []
        for branch in self.configuration.get(ConfigKey.BRANCHES, []):
            members.extend(branch.get("step_ids", []))
        return members

    # =========================================================================
    # Record replacement
    # =========================================================================

    def replace(self, **changes: Any) -> StepDefinition:
        return dataclasses.replace(self, **changes)

    def with_next_step(self, step_id: str | None) -> StepDefinition:
        return self.replace(next_step_id=step_id)

    def with_error_step(self, step_id: str | None) -> StepDefinition:
        return self.replace(error_step_id=step_id)

    # =========================================================================
    # Serialization
    # =========================================================================

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dict for storage and YAML export."""
        d: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "kind": self.kind.value,
            "order": self.order,
        }
        if self.executor:
            d["executor"] = self.executor
        if self.configuration:
            d["configuration"] = thaw(self.configuration)
        if self.precondition:
            d["precondition"] = self.precondition
        if self.next_step_id:
            d["next_step_id"] = self.next_step_id
        if self.error_step_id:
            d["error_step_id"] = self.error_step_id
        if self.optional:
            d["optional"] = True
        if self.timeout is not None:
            d["timeout"] = self.timeout
        if self.retry_count:
            d["retry_count"] = self.retry_count
        if self.description:
            d["description"] = self.description
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StepDefinition:
        """Rebuild a step from :meth:`to_dict` output."""
        return cls(
            id=data["id"],
            name=data["name"],
            kind=StepKind(data["kind"]),
            order=int(data["order"]),
            executor=data.get("executor"),
            configuration=data.get("configuration") or {},
            precondition=data.get("precondition"),
            next_step_id=data.get("next_step_id"),
            error_step_id=data.get("error_step_id"),
            optional=bool(data.get("optional", False)),
            timeout=data.get("timeout"),
            retry_count=int(data.get("retry_count", 0)),
            description=data.get("description"),
        )

    def __repr__(self) -> str:
        return f"StepDefinition({self.id!r}, {self.name!r}, kind={self.kind.value}, order={self.order})"
