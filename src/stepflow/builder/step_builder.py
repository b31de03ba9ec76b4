"""Fluent builder for a single :class:`StepDefinition`.

Setting a kind applies that kind's defaults (timeouts, retries, well-known
configuration) to anything not set explicitly. ``build()`` runs the
kind-specific checks and seals the record.

Examples
--------
::

    step = (
        StepBuilder("notify_hr")
        .kind(StepKind.SERVICE_CALL)
        .order(3)
        .executor("service_call")
        .service_url("https://hr.example.com/api/leave")
        .header("X-Source", "stepflow")
        .build()
    )
    step.retry_count  # 3
"""

from __future__ import annotations

import copy
from collections.abc import Callable, Mapping
from typing import Any

from stepflow.core.errors import ConfigurationError
from stepflow.core.expressions import SafeEvalError, validate_expression
from stepflow.model.step import StepDefinition
from stepflow.model.step_types import ConfigKey, StepKind

HIGH_PRIORITY = 8
NORMAL_PRIORITY = 5
LOW_PRIORITY = 2


class StepBuilder:
    """Accumulates one step's settings; every setter returns ``self``."""

    def __init__(self, name: str | None = None, kind: StepKind | str | None = None) -> None:
        self._id: str | None = None
        self._name: str | None = name
        self._description: str | None = None
        self._kind: StepKind | None = None
        self._order: int | None = None
        self._executor: str | None = None
        self._configuration: dict[str, Any] = {}
        self._precondition: str | None = None
        self._next_step_id: str | None = None
        self._error_step_id: str | None = None
        self._optional = False
        self._timeout: int | None = None
        self._retry_count: int | None = None
        if kind is not None:
            self.kind(kind)

    # ── Identity ────────────────────────────────────────────────────────

    def id(self, step_id: str) -> StepBuilder:
        if not step_id:
            raise ConfigurationError("Step id must be a non-empty string", key="id")
        self._id = step_id
        return self

    def name(self, name: str) -> StepBuilder:
        if not name or not name.strip():
            raise ConfigurationError("Step name must be a non-empty string", key="name")
        self._name = name
        return self

    def description(self, description: str) -> StepBuilder:
        self._description = description
        return self

    def kind(self, kind: StepKind | str) -> StepBuilder:
        """Set the step kind and apply its defaults."""
        try:
            self._kind = StepKind(kind)
        except ValueError:
            raise ConfigurationError(f"Unknown step kind: {kind}", key="kind", value=kind) from None
        self._apply_kind_defaults(self._kind)
        return self

    def order(self, order: int) -> StepBuilder:
        if order is None or int(order) < 0:
            raise ConfigurationError("Step order must be >= 0", key="order", value=order)
        self._order = int(order)
        return self

    def executor(self, ref: str) -> StepBuilder:
        """Executor reference resolved through the engine's ``ExecutorRegistry``."""
        if not ref:
            raise ConfigurationError("Executor reference must be a non-empty string", key="executor")
        self._executor = ref
        return self

    # ── Configuration ───────────────────────────────────────────────────

    def config(self, key: str, value: Any) -> StepBuilder:
        if not key:
            raise ConfigurationError("Configuration key must be a non-empty string", key="configuration")
        self._configuration[key] = copy.deepcopy(value)
        return self

    def configs(self, values: Mapping[str, Any]) -> StepBuilder:
        for key, value in values.items():
            self.config(key, value)
        return self

    def configure(self, configurer: Callable[[dict[str, Any]], None]) -> StepBuilder:
        """Let *configurer* edit the configuration map in place."""
        configurer(self._configuration)
        return self

    def precondition(self, expression: str) -> StepBuilder:
        """Expression over instance variables; a false result skips the step."""
        try:
            validate_expression(expression)
        except SafeEvalError as e:
            raise ConfigurationError(
                f"Invalid precondition: {e}",
                key="precondition",
                value=expression,
            ) from e
        self._precondition = expression
        return self

    # ── Transitions ─────────────────────────────────────────────────────

    def next_step(self, step_id: str) -> StepBuilder:
        self._next_step_id = step_id
        return self

    on_success = next_step

    def on_error(self, step_id: str) -> StepBuilder:
        self._error_step_id = step_id
        return self

    def optional(self, optional: bool = True) -> StepBuilder:
        self._optional = optional
        return self

    def required(self) -> StepBuilder:
        return self.optional(False)

    # ── Timeout / retry ─────────────────────────────────────────────────

    def timeout(self, seconds: int) -> StepBuilder:
        """Step timeout in whole seconds."""
        if seconds is None or seconds <= 0:
            raise ConfigurationError("Timeout must be > 0", key="timeout", value=seconds)
        if seconds < 1:
            raise ConfigurationError("Timeout is in whole seconds; must be >= 1", key="timeout", value=seconds)
        self._timeout = int(seconds)
        return self

    def timeout_minutes(self, minutes: int) -> StepBuilder:
        return self.timeout(minutes * 60)

    def timeout_hours(self, hours: int) -> StepBuilder:
        return self.timeout(hours * 3600)

    def retry_count(self, count: int) -> StepBuilder:
        if count is None or count < 0:
            raise ConfigurationError("Retry count must be >= 0", key="retry_count", value=count)
        self._retry_count = int(count)
        return self

    def no_retry(self) -> StepBuilder:
        return self.retry_count(0)

    # ── User task ───────────────────────────────────────────────────────

    def assignee(self, assignee: str) -> StepBuilder:
        return self.config(ConfigKey.ASSIGNEE, assignee)

    def candidate_groups(self, *groups: str) -> StepBuilder:
        return self.config(ConfigKey.CANDIDATE_GROUPS, list(groups))

    def priority(self, priority: int) -> StepBuilder:
        return self.config(ConfigKey.PRIORITY, priority)

    def high_priority(self) -> StepBuilder:
        return self.priority(HIGH_PRIORITY)

    def normal_priority(self) -> StepBuilder:
        return self.priority(NORMAL_PRIORITY)

    def low_priority(self) -> StepBuilder:
        return self.priority(LOW_PRIORITY)

    def form_key(self, form_key: str) -> StepBuilder:
        return self.config(ConfigKey.FORM_KEY, form_key)

    # ── Service call ────────────────────────────────────────────────────

    def service_url(self, url: str) -> StepBuilder:
        return self.config(ConfigKey.SERVICE_URL, url)

    def http_method(self, method: str) -> StepBuilder:
        return self.config(ConfigKey.HTTP_METHOD, method.upper())

    def request_body(self, body: Any) -> StepBuilder:
        return self.config(ConfigKey.REQUEST_BODY, body)

    def headers(self, headers: Mapping[str, str]) -> StepBuilder:
        return self.config(ConfigKey.HEADERS, dict(headers))

    def header(self, name: str, value: str) -> StepBuilder:
        headers = dict(self._configuration.get(ConfigKey.HEADERS) or {})
        headers[name] = value
        return self.config(ConfigKey.HEADERS, headers)

    # ── Script / email / timer ──────────────────────────────────────────

    def script(self, script: str) -> StepBuilder:
        return self.config(ConfigKey.SCRIPT, script)

    def script_type(self, script_type: str) -> StepBuilder:
        return self.config(ConfigKey.SCRIPT_TYPE, script_type)

    def email_to(self, to: str) -> StepBuilder:
        return self.config(ConfigKey.EMAIL_TO, to)

    def email_subject(self, subject: str) -> StepBuilder:
        return self.config(ConfigKey.EMAIL_SUBJECT, subject)

    def email_template(self, template: str) -> StepBuilder:
        return self.config(ConfigKey.EMAIL_TEMPLATE, template)

    def wait_duration(self, seconds: float) -> StepBuilder:
        if seconds is None or seconds < 0:
            raise ConfigurationError("Wait duration must be >= 0", key=ConfigKey.WAIT_DURATION, value=seconds)
        return self.config(ConfigKey.WAIT_DURATION, seconds)

    def join_type(self, join_type: str) -> StepBuilder:
        return self.config(ConfigKey.JOIN_TYPE, str(getattr(join_type, "value", join_type)).upper())

    # ── Read access (used by WorkflowBuilder) ───────────────────────────

    @property
    def current_id(self) -> str | None:
        return self._id

    @property
    def current_name(self) -> str | None:
        return self._name

    @property
    def current_order(self) -> int | None:
        return self._order

    @property
    def current_kind(self) -> StepKind | None:
        return self._kind

    # ── Build ───────────────────────────────────────────────────────────

    def _apply_kind_defaults(self, kind: StepKind) -> None:
        if self._timeout is None and kind not in (StepKind.TIMER, StepKind.PARALLEL_GATEWAY):
            self._timeout = kind.default_timeout
        if self._retry_count is None and kind.default_retry_count:
            self._retry_count = kind.default_retry_count
        if kind is StepKind.SERVICE_CALL:
            self._configuration.setdefault(ConfigKey.HTTP_METHOD, "POST")
        elif kind is StepKind.SCRIPT:
            self._configuration.setdefault(ConfigKey.SCRIPT_TYPE, "javascript")
        elif kind is StepKind.PARALLEL_GATEWAY:
            self._configuration.setdefault(ConfigKey.JOIN_TYPE, "AND")

    def validate(self, *, default_order: int | None = None) -> None:
        """Kind-specific completeness checks.

        Raises
        ------
        ConfigurationError
            A required field or kind-specific configuration key is missing.
        """
        if not self._name or not self._name.strip():
            raise ConfigurationError("Step name is required", key="name")
        if self._kind is None:
            raise ConfigurationError(f"Step {self._name} has no kind", key="kind")
        if self._order is None and default_order is None:
            raise ConfigurationError(f"Step {self._name} has no order", key="order")

        kind = self._kind
        if kind.is_task_like and not self._executor:
            raise ConfigurationError(
                f"{kind.value} step {self._name} requires an executor reference",
                key="executor",
            )
        required: list[str] = []
        if kind is StepKind.SERVICE_CALL:
            required = [ConfigKey.SERVICE_URL]
        elif kind is StepKind.SCRIPT:
            required = [ConfigKey.SCRIPT]
        elif kind is StepKind.EMAIL:
            required = [ConfigKey.EMAIL_TO, ConfigKey.EMAIL_SUBJECT]
        elif kind is StepKind.TIMER:
            required = [ConfigKey.WAIT_DURATION]
        for key in required:
            if self._configuration.get(key) in (None, ""):
                raise ConfigurationError(
                    f"{kind.value} step {self._name} requires '{key}'",
                    key=key,
                )

        if self._timeout is not None and self._timeout <= 0:
            raise ConfigurationError("Timeout must be > 0", key="timeout", value=self._timeout)
        if self._retry_count is not None and self._retry_count < 0:
            raise ConfigurationError("Retry count must be >= 0", key="retry_count", value=self._retry_count)

    def build(self, *, default_id: str | None = None, default_order: int | None = None) -> StepDefinition:
        """Validate and seal the step.

        Parameters
        ----------
        default_id:
            Used when no id was set (``WorkflowBuilder`` passes ``step_N``).
        default_order:
            Used when no order was set.
        """
        self.validate(default_order=default_order)
        step_id = self._id or default_id
        if not step_id:
            raise ConfigurationError(f"Step {self._name} has no id", key="id")
        return StepDefinition(
            id=step_id,
            name=self._name,  # type: ignore[arg-type]
            kind=self._kind,  # type: ignore[arg-type]
            order=self._order if self._order is not None else default_order,  # type: ignore[arg-type]
            executor=self._executor,
            configuration=self._configuration,
            precondition=self._precondition,
            next_step_id=self._next_step_id,
            error_step_id=self._error_step_id,
            optional=self._optional,
            timeout=self._timeout,
            retry_count=self._retry_count or 0,
            description=self._description,
        )

    def clone(self) -> StepBuilder:
        other = StepBuilder()
        other.__dict__.update(copy.deepcopy(self.__dict__))
        return other

    def reset(self) -> StepBuilder:
        self.__init__()  # type: ignore[misc]
        return self

    def __repr__(self) -> str:
        kind = self._kind.value if self._kind else None
        return f"StepBuilder(name={self._name!r}, kind={kind}, order={self._order})"


__all__ = ["StepBuilder", "HIGH_PRIORITY", "NORMAL_PRIORITY", "LOW_PRIORITY"]
