"""WorkflowBuilder: assemble, validate and seal a :class:`WorkflowDefinition`.

Manifesto:
The builder is an arena of sealed step records addressed by index. Adding a
step appends a record; ``connect`` / ``on_error`` replace the record at its
index with an updated copy. Nothing in the arena is ever mutated in place,
and ``build()`` works on a copy of the arena, so building twice gives the
same definition.

ARCHITECTURE
────────────
::

    WorkflowBuilder("leave.approval")
        .add_user_task(...) / .add_service_call(...) / .add_step(...)
        .add_conditional_step(name, order, ConditionalStepBuilder | map | fn)
        .add_parallel_steps(name, order, ParallelStepBuilder | map | fn)
        .connect(a, b) / .on_error(a, handler)
        .build()
            ├── resolve step names used as gateway targets → ids
            ├── validate gateway configuration (router / coordinator rules)
            ├── auto-insert START (order 0) and END (order max+1)
            ├── validate_steps()  (ids, orders, references, markers)
            └── WorkflowDefinition (sealed, steps sorted by order)

Tags:
    stepflow, builder, fluent-api, validation
"""

from __future__ import annotations

import copy
from collections.abc import Callable, Mapping
from typing import Any

from stepflow.builder.conditional import ConditionalStepBuilder
from stepflow.builder.parallel import ParallelStepBuilder
from stepflow.builder.step_builder import StepBuilder
from stepflow.core.errors import ConfigurationError, ValidationError
from stepflow.core.logging import get_logger
from stepflow.core.timestamps import generate_ulid, utc_now
from stepflow.model.definition import WorkflowDefinition, validate_steps
from stepflow.model.step import StepDefinition, thaw
from stepflow.model.step_types import ConfigKey, DefinitionStatus, StepKind
from stepflow.parallel.coordinator import GatewayConfig
from stepflow.routing.conditions import EvaluatorRegistry, default_registry
from stepflow.routing.router import ConditionalRouter

logger = get_logger(__name__)

START_STEP_ID = "step_start"
END_STEP_ID = "step_end"

StepConfig = StepBuilder | StepDefinition | Callable[[StepBuilder], Any]


class WorkflowBuilder:
    """Fluent builder for workflow definitions.

    Examples
    --------
    ::

        definition = (
            WorkflowBuilder("leave.approval")
            .description("Two-level leave approval")
            .add_user_task("manager_review", "manager")
            .add_conditional_step(
                "route", None,
                ConditionalStepBuilder()
                .when_number("days", ">", 5).then_goto("director_review")
                .otherwise("notify_hr"),
            )
            .add_user_task("director_review", "director")
            .add_service_call("notify_hr", "https://hr.example.com/api/leave")
            .connect("director_review", "notify_hr")
            .build()
        )
    """

    def __init__(self, name: str | None = None, *, registry: EvaluatorRegistry | None = None) -> None:
        self._id = f"wf_{generate_ulid().lower()}"
        self._name = name
        self._description: str | None = None
        self._version = "1.0"
        self._status = DefinitionStatus.DRAFT
        self._configuration: dict[str, Any] = {}
        self._steps: list[StepDefinition] = []
        self._name_index: dict[str, int] = {}
        self._id_counter = 1
        self._created_at = utc_now()
        self._registry = registry or default_registry()

    # ── Definition metadata ─────────────────────────────────────────────

    def id(self, workflow_id: str) -> WorkflowBuilder:
        if not workflow_id:
            raise ConfigurationError("Workflow id must be a non-empty string", key="id")
        self._id = workflow_id
        return self

    def name(self, name: str) -> WorkflowBuilder:
        if not name or not name.strip():
            raise ConfigurationError("Workflow name must be a non-empty string", key="name")
        self._name = name
        return self

    def description(self, description: str) -> WorkflowBuilder:
        self._description = description
        return self

    def version(self, version: str) -> WorkflowBuilder:
        if not version:
            raise ConfigurationError("Workflow version must be a non-empty string", key="version")
        self._version = str(version)
        return self

    def status(self, status: DefinitionStatus | str) -> WorkflowBuilder:
        try:
            self._status = DefinitionStatus(status)
        except ValueError:
            raise ConfigurationError(f"Unknown definition status: {status}", key="status", value=status) from None
        return self

    def config(self, key: str, value: Any) -> WorkflowBuilder:
        self._configuration[key] = copy.deepcopy(value)
        return self

    def configs(self, values: Mapping[str, Any]) -> WorkflowBuilder:
        for key, value in values.items():
            self.config(key, value)
        return self

    # ── Steps ───────────────────────────────────────────────────────────

    def _next_step_id(self) -> str:
        taken = {s.id for s in self._steps}
        while f"step_{self._id_counter}" in taken:
            self._id_counter += 1
        step_id = f"step_{self._id_counter}"
        self._id_counter += 1
        return step_id

    def _append(self, step: StepDefinition) -> WorkflowBuilder:
        if step.name in self._name_index:
            raise ConfigurationError(
                f"Duplicate step name: {step.name}",
                key="name",
                value=step.name,
            )
        self._name_index[step.name] = len(self._steps)
        self._steps.append(step)
        logger.debug("builder.step_added", step_id=step.id, name=step.name, kind=step.kind.value)
        return self

    def add_step(self, step: StepConfig) -> WorkflowBuilder:
        """Append a step.

        Parameters
        ----------
        step:
            A :class:`StepBuilder`, a callable that configures a fresh
            ``StepBuilder``, or a ready :class:`StepDefinition`. Builders get
            ``step_N`` as id and ``len(steps) + 1`` as order unless they set
            their own.
        """
        if isinstance(step, StepDefinition):
            return self._append(step)
        if isinstance(step, StepBuilder):
            sb = step
        elif callable(step):
            sb = StepBuilder()
            step(sb)
        else:
            raise ConfigurationError(
                f"add_step() expects a StepBuilder, StepDefinition or callable, got {type(step).__name__}",
                key="step",
            )
        default_id = None if sb.current_id else self._next_step_id()
        return self._append(sb.build(default_id=default_id, default_order=len(self._steps) + 1))

    def add_conditional_step(
        self,
        name: str,
        order: int | None,
        condition_config: ConditionalStepBuilder | Mapping[str, Any] | Callable[[ConditionalStepBuilder], Any],
    ) -> WorkflowBuilder:
        """Append a CONDITION step built from *condition_config*."""
        if isinstance(condition_config, ConditionalStepBuilder):
            config = condition_config.build()
        elif isinstance(condition_config, Mapping):
            config = dict(condition_config)
        elif callable(condition_config):
            cb = ConditionalStepBuilder(self._registry)
            condition_config(cb)
            config = cb.build()
        else:
            raise ConfigurationError("Invalid condition configuration", key=ConfigKey.BRANCHES)
        sb = StepBuilder(name, StepKind.CONDITION).configs(config)
        if order is not None:
            sb.order(order)
        return self.add_step(sb)

    def add_parallel_steps(
        self,
        name: str,
        order: int | None,
        parallel_config: ParallelStepBuilder | Mapping[str, Any] | Callable[[ParallelStepBuilder], Any],
    ) -> WorkflowBuilder:
        """Append a PARALLEL_GATEWAY step built from *parallel_config*."""
        if isinstance(parallel_config, ParallelStepBuilder):
            config = parallel_config.build()
        elif isinstance(parallel_config, Mapping):
            config = dict(parallel_config)
        elif callable(parallel_config):
            pb = ParallelStepBuilder()
            parallel_config(pb)
            config = pb.build()
        else:
            raise ConfigurationError("Invalid parallel configuration", key=ConfigKey.BRANCHES)
        sb = StepBuilder(name, StepKind.PARALLEL_GATEWAY).configs(config)
        if order is not None:
            sb.order(order)
        return self.add_step(sb)

    # ── DSL helpers ─────────────────────────────────────────────────────

    def add_user_task(self, name: str, assignee: str | None = None) -> WorkflowBuilder:
        sb = StepBuilder(name, StepKind.USER_TASK).executor("user_task")
        if assignee:
            sb.assignee(assignee)
        return self.add_step(sb)

    def add_service_call(self, name: str, url: str, method: str = "POST") -> WorkflowBuilder:
        return self.add_step(
            StepBuilder(name, StepKind.SERVICE_CALL)
            .executor("service_call")
            .service_url(url)
            .http_method(method)
        )

    def add_script(self, name: str, script_type: str, script: str) -> WorkflowBuilder:
        return self.add_step(
            StepBuilder(name, StepKind.SCRIPT)
            .executor("script")
            .script_type(script_type)
            .script(script)
        )

    def add_email(self, name: str, to: str, subject: str, template: str | None = None) -> WorkflowBuilder:
        sb = (
            StepBuilder(name, StepKind.EMAIL)
            .executor("email")
            .email_to(to)
            .email_subject(subject)
        )
        if template:
            sb.email_template(template)
        return self.add_step(sb)

    def add_timer(self, name: str, duration: float) -> WorkflowBuilder:
        return self.add_step(StepBuilder(name, StepKind.TIMER).wait_duration(duration))

    # ── Transitions ─────────────────────────────────────────────────────

    def _index_of(self, name: str) -> int:
        index = self._name_index.get(name)
        if index is None:
            raise ConfigurationError(f"Unknown step name: {name}", key="name", value=name)
        return index

    def connect(self, from_name: str, to_name: str) -> WorkflowBuilder:
        """Set *from_name*'s next step to *to_name*."""
        source = self._index_of(from_name)
        target = self._steps[self._index_of(to_name)]
        self._steps[source] = self._steps[source].with_next_step(target.id)
        return self

    def on_error(self, from_name: str, error_name: str) -> WorkflowBuilder:
        """Route *from_name*'s failures to *error_name*."""
        source = self._index_of(from_name)
        target = self._steps[self._index_of(error_name)]
        self._steps[source] = self._steps[source].with_error_step(target.id)
        return self

    # ── Introspection ───────────────────────────────────────────────────

    def get_step(self, name: str) -> StepDefinition | None:
        index = self._name_index.get(name)
        return self._steps[index] if index is not None else None

    def has_step(self, name: str) -> bool:
        return name in self._name_index

    @property
    def step_count(self) -> int:
        return len(self._steps)

    @property
    def step_names(self) -> list[str]:
        return [s.name for s in self._steps]

    def clear_steps(self) -> WorkflowBuilder:
        self._steps = []
        self._name_index = {}
        self._id_counter = 1
        return self

    def clone(self) -> WorkflowBuilder:
        """Independent copy; steps are shared since records are immutable."""
        other = WorkflowBuilder(self._name, registry=self._registry)
        other._id = self._id
        other._description = self._description
        other._version = self._version
        other._status = self._status
        other._configuration = copy.deepcopy(self._configuration)
        other._steps = list(self._steps)
        other._name_index = dict(self._name_index)
        other._id_counter = self._id_counter
        other._created_at = self._created_at
        return other

    # ── Build ───────────────────────────────────────────────────────────

    def _resolve_gateway_refs(self, steps: list[StepDefinition]) -> list[StepDefinition]:
        ids = {s.id for s in steps}
        by_name = {s.name: s.id for s in steps}

        def resolve(ref: Any) -> Any:
            if isinstance(ref, str) and ref not in ids and ref in by_name:
                return by_name[ref]
            return ref

        resolved: list[StepDefinition] = []
        for step in steps:
            config = thaw(step.configuration)
            branches = config.get(ConfigKey.BRANCHES) or []
            if step.kind is StepKind.CONDITION:
                config[ConfigKey.BRANCHES] = [{**b, "target": resolve(b.get("target"))} for b in branches]
                ref_keys = (ConfigKey.DEFAULT_BRANCH, ConfigKey.ERROR_BRANCH)
            elif step.kind is StepKind.PARALLEL_GATEWAY:
                config[ConfigKey.BRANCHES] = [
                    {**b, "step_ids": [resolve(m) for m in b.get("step_ids", [])]} for b in branches
                ]
                ref_keys = (ConfigKey.TIMEOUT_STEP, ConfigKey.ERROR_STEP)
            else:
                resolved.append(step)
                continue
            for key in ref_keys:
                if config.get(key):
                    config[key] = resolve(config[key])
            resolved.append(step.replace(configuration=config))
        return resolved

    def _validate_gateways(self, steps: list[StepDefinition]) -> None:
        router = ConditionalRouter(self._registry)
        for step in steps:
            if step.kind is StepKind.CONDITION:
                router.validate_config(step.configuration)
            elif step.kind is StepKind.PARALLEL_GATEWAY:
                GatewayConfig.from_mapping(step.configuration)

    def _with_markers(self, steps: list[StepDefinition]) -> list[StepDefinition]:
        kinds = {s.kind for s in steps}
        orders = [s.order for s in steps]
        result = list(steps)
        if StepKind.START not in kinds:
            start_order = 0 if 0 not in orders else min(orders) - 1
            result.append(StepDefinition(id=START_STEP_ID, name="start", kind=StepKind.START, order=start_order))
        if StepKind.END not in kinds:
            result.append(StepDefinition(id=END_STEP_ID, name="end", kind=StepKind.END, order=max(orders) + 1))
        return result

    def build(self) -> WorkflowDefinition:
        """Validate and seal the definition.

        Raises
        ------
        ConfigurationError
            Missing name or invalid gateway configuration.
        ValidationError
            No steps, duplicate ids/orders, or dangling references.
        """
        if not self._name or not self._name.strip():
            raise ConfigurationError("Workflow name is required", key="name")
        if not self._steps:
            raise ValidationError("Workflow must contain at least one step", field="steps")

        steps = self._resolve_gateway_refs(list(self._steps))
        self._validate_gateways(steps)
        steps = self._with_markers(steps)
        validate_steps(steps)

        definition = WorkflowDefinition(
            id=self._id,
            name=self._name,
            steps=tuple(steps),
            version=self._version,
            status=self._status,
            configuration=self._configuration,
            description=self._description,
            created_at=self._created_at,
            updated_at=self._created_at,
        )
        logger.info(
            "builder.definition_built",
            definition_id=definition.id,
            name=definition.name,
            steps=len(definition.steps),
        )
        return definition

    def __repr__(self) -> str:
        return f"WorkflowBuilder(name={self._name!r}, steps={len(self._steps)})"


__all__ = ["WorkflowBuilder", "START_STEP_ID", "END_STEP_ID"]
