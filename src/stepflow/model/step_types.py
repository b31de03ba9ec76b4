"""Step kinds and lifecycle statuses.

Manifesto:
A definition is a graph of typed steps. The kind decides which handler the
engine dispatches to, which defaults the step builder applies, and which
configuration keys validation insists on. Instance status is the only real
state machine in the system, so its transition table lives here next to the
enum it guards.

ARCHITECTURE
────────────
::

    StepKind          ── START, END, TASK, USER_TASK, SERVICE_CALL, SCRIPT,
                         EMAIL, TIMER, CONDITION, PARALLEL_GATEWAY
    DefinitionStatus  ── DRAFT, ACTIVE, INACTIVE, DEPRECATED
    InstanceStatus    ── CREATED → RUNNING ⇄ WAITING / SUSPENDED → terminal
    ConfigKey         ── well-known keys inside StepDefinition.configuration

Instance transition graph::

    CREATED   → RUNNING | CANCELLED | TERMINATED
    RUNNING   → WAITING | SUSPENDED | COMPLETED | FAILED | CANCELLED | TERMINATED
    WAITING   → RUNNING | SUSPENDED | FAILED | CANCELLED | TERMINATED
    SUSPENDED → RUNNING | CANCELLED | TERMINATED
    COMPLETED / CANCELLED / TERMINATED / FAILED → (terminal)

Tags:
    stepflow, model, enums, state-machine
"""

from __future__ import annotations

from enum import Enum

from stepflow.core.errors import InvalidTransitionError


class StepKind(str, Enum):
    """Type of workflow step."""

    START = "START"
    END = "END"
    TASK = "TASK"
    USER_TASK = "USER_TASK"
    SERVICE_CALL = "SERVICE_CALL"
    SCRIPT = "SCRIPT"
    EMAIL = "EMAIL"
    TIMER = "TIMER"
    CONDITION = "CONDITION"
    PARALLEL_GATEWAY = "PARALLEL_GATEWAY"

    @property
    def is_task_like(self) -> bool:
        """Kinds that are handed to an external step executor."""
        return self in _TASK_LIKE

    @property
    def supports_retry(self) -> bool:
        return self in (StepKind.SERVICE_CALL, StepKind.EMAIL)

    @property
    def is_gateway(self) -> bool:
        return self in (StepKind.CONDITION, StepKind.PARALLEL_GATEWAY)

    @property
    def is_marker(self) -> bool:
        return self in (StepKind.START, StepKind.END)

    @property
    def default_timeout(self) -> int:
        """Default timeout in seconds applied by the step builder."""
        return _DEFAULT_TIMEOUTS.get(self, 60)

    @property
    def default_retry_count(self) -> int:
        return _DEFAULT_RETRIES.get(self, 0)


_TASK_LIKE = frozenset({
    StepKind.TASK,
    StepKind.USER_TASK,
    StepKind.SERVICE_CALL,
    StepKind.SCRIPT,
    StepKind.EMAIL,
})

_DEFAULT_TIMEOUTS: dict[StepKind, int] = {
    StepKind.USER_TASK: 24 * 60 * 60,
    StepKind.SERVICE_CALL: 30,
    StepKind.SCRIPT: 5 * 60,
    StepKind.EMAIL: 60,
    StepKind.CONDITION: 10,
}

_DEFAULT_RETRIES: dict[StepKind, int] = {
    StepKind.SERVICE_CALL: 3,
    StepKind.EMAIL: 2,
}


class DefinitionStatus(str, Enum):
    """Lifecycle of a workflow definition. Only ACTIVE definitions start."""

    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    DEPRECATED = "DEPRECATED"


class InstanceStatus(str, Enum):
    """Status of a workflow instance.

    Transitions are enforced via ``INSTANCE_VALID_TRANSITIONS``; use
    :func:`validate_instance_transition` before changing status.
    """

    CREATED = "CREATED"
    RUNNING = "RUNNING"
    WAITING = "WAITING"
    SUSPENDED = "SUSPENDED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    TERMINATED = "TERMINATED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return not INSTANCE_VALID_TRANSITIONS[self]

    @property
    def is_active(self) -> bool:
        return self in (InstanceStatus.RUNNING, InstanceStatus.WAITING)

    @property
    def can_suspend(self) -> bool:
        return InstanceStatus.SUSPENDED in INSTANCE_VALID_TRANSITIONS[self]

    @property
    def can_resume(self) -> bool:
        return self is InstanceStatus.SUSPENDED

    def can_transition_to(self, target: InstanceStatus) -> bool:
        return target in INSTANCE_VALID_TRANSITIONS[self]


INSTANCE_VALID_TRANSITIONS: dict[InstanceStatus, frozenset[InstanceStatus]] = {
    InstanceStatus.CREATED: frozenset({
        InstanceStatus.RUNNING,
        InstanceStatus.CANCELLED,
        InstanceStatus.TERMINATED,
    }),
    InstanceStatus.RUNNING: frozenset({
        InstanceStatus.WAITING,
        InstanceStatus.SUSPENDED,
        InstanceStatus.COMPLETED,
        InstanceStatus.FAILED,
        InstanceStatus.CANCELLED,
        InstanceStatus.TERMINATED,
    }),
    InstanceStatus.WAITING: frozenset({
        InstanceStatus.RUNNING,
        InstanceStatus.SUSPENDED,
        InstanceStatus.FAILED,
        InstanceStatus.CANCELLED,
        InstanceStatus.TERMINATED,
    }),
    InstanceStatus.SUSPENDED: frozenset({
        InstanceStatus.RUNNING,
        InstanceStatus.CANCELLED,
        InstanceStatus.TERMINATED,
    }),
    InstanceStatus.COMPLETED: frozenset(),  # terminal
    InstanceStatus.CANCELLED: frozenset(),  # terminal
    InstanceStatus.TERMINATED: frozenset(),  # terminal
    InstanceStatus.FAILED: frozenset(),  # terminal
}


def validate_instance_transition(current: InstanceStatus, target: InstanceStatus) -> None:
    """Raise :class:`InvalidTransitionError` if *current → target* is illegal.

    Example:
        >>> validate_instance_transition(InstanceStatus.COMPLETED, InstanceStatus.RUNNING)
        Traceback (most recent call last):
        ...
        InvalidTransitionError: Invalid instance transition: COMPLETED → RUNNING
    """
    if target not in INSTANCE_VALID_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current.value, target.value)


class ConfigKey:
    """Well-known keys inside ``StepDefinition.configuration``."""

    # User task
    ASSIGNEE = "assignee"
    CANDIDATE_GROUPS = "candidate_groups"
    PRIORITY = "priority"
    FORM_KEY = "form_key"

    # Service call
    SERVICE_URL = "service_url"
    HTTP_METHOD = "http_method"
    REQUEST_BODY = "request_body"
    HEADERS = "headers"

    # Script
    SCRIPT = "script"
    SCRIPT_TYPE = "script_type"

    # Email
    EMAIL_TO = "email_to"
    EMAIL_SUBJECT = "email_subject"
    EMAIL_TEMPLATE = "email_template"

    # Timer
    WAIT_DURATION = "wait_duration"

    # Gateways
    JOIN_TYPE = "join_type"
    BRANCHES = "branches"
    EVALUATION_STRATEGY = "evaluation_strategy"
    DEFAULT_BRANCH = "default_branch"
    ERROR_BRANCH = "error_branch"
    TIMEOUT_STEP = "timeout_step_id"
    ERROR_STEP = "error_step_id"


__all__ = [
    "StepKind",
    "DefinitionStatus",
    "InstanceStatus",
    "INSTANCE_VALID_TRANSITIONS",
    "validate_instance_transition",
    "ConfigKey",
]
