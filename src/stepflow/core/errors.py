"""
Structured error types for stepflow.

Provides a typed hierarchy of errors with metadata for error categorization,
structured logging, and root cause analysis through error chaining.

Every failure the engine can raise or record is a StepflowError. Builder
problems surface synchronously as ConfigurationError or ValidationError;
runtime problems are ExecutionError or RoutingError and are either recovered
through an error/timeout target or recorded on the instance as FAILED.

Manifesto:
    - **Typed Error Hierarchy:** One error type per failure domain
    - **Explicit Retry Semantics:** Each error knows if it's retryable
    - **Rich Context:** Errors carry instance/step ids for logging
    - **Error Chaining:** Preserve original exceptions while adding context

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                       StepflowError                             │
        │  (category, retryable, retry_after, context, cause)             │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                 │
        │  ConfigurationError   ValidationError     ExecutionError        │
        │  (CONFIG)             (VALIDATION)        (EXECUTION)           │
        │                                                │                │
        │                                           StepTimeoutError      │
        │                                                                 │
        │  RoutingError         InvalidTransitionError  NotFoundError     │
        │  (ROUTING)            (STATE)                 (NOT_FOUND)       │
        │                       DefinitionNotActive     DefinitionNotFound│
        │                                               InstanceNotFound  │
        │                                               TaskNotFound      │
        └─────────────────────────────────────────────────────────────────┘

Examples:
    >>> error = ConfigurationError("Step name is required", key="name")
    >>> error.category
    <ErrorCategory.CONFIG: 'CONFIG'>
    >>> error.retryable
    False

    >>> try:
    ...     raise ConnectionError("refused")
    ... except ConnectionError as e:
    ...     err = ExecutionError("Executor failed", step_id="step_2", cause=e)
    >>> err.to_dict()["cause"]
    'refused'

Guardrails:
    ❌ DON'T: Raise bare Exception from builders or the engine
    ✅ DO: Use the StepflowError subclass for the failure domain

    ❌ DON'T: Swallow the original exception
    ✅ DO: Pass it as cause= for error chaining

Tags:
    error-handling, exception-hierarchy, error-context, stepflow

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """
    Standard error categories for classification and routing.

    Categories are grouped by when they surface:
    - **Build time:** CONFIG, VALIDATION
    - **Run time:** EXECUTION, ROUTING, TIMEOUT
    - **Lifecycle:** STATE, NOT_FOUND
    - **Infrastructure:** STORAGE, INTERNAL, UNKNOWN
    """

    CONFIG = "CONFIG"
    VALIDATION = "VALIDATION"
    EXECUTION = "EXECUTION"
    ROUTING = "ROUTING"
    TIMEOUT = "TIMEOUT"
    STATE = "STATE"
    NOT_FOUND = "NOT_FOUND"
    STORAGE = "STORAGE"
    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """
    Structured metadata context for errors.

    Typed fields cover the identifiers that matter inside the engine; any
    other metadata goes into ``metadata``. ``to_dict()`` drops unset fields.

    Attributes:
        workflow: Name of the workflow definition
        definition_id: Definition identifier
        instance_id: Workflow instance identifier
        step_id: Step identifier within the definition
        step_name: Step name within the definition
        metadata: Additional key-value pairs
    """

    workflow: str | None = None
    definition_id: str | None = None
    instance_id: str | None = None
    step_id: str | None = None
    step_name: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["workflow", "definition_id", "instance_id", "step_id", "step_name"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class StepflowError(Exception):
    """
    Base exception for all stepflow errors.

    All StepflowError instances carry:
    - **category:** ErrorCategory enum for classification and routing
    - **retryable:** Boolean indicating if operation can be retried
    - **retry_after:** Optional seconds to wait before retry
    - **context:** ErrorContext with structured metadata
    - **cause:** Optional underlying exception for chaining

    Subclasses set ``default_category`` and ``default_retryable`` class
    attributes to provide sensible defaults for their domain.

    Examples:
        >>> error = StepflowError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>

        >>> error = StepflowError("Step failed").with_context(
        ...     instance_id="01HX...", step_id="step_3"
        ... )
        >>> error.context.step_id
        'step_3'
    """

    # Default category for this error type
    default_category: ErrorCategory = ErrorCategory.INTERNAL
    # Default retryable setting
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: int | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> StepflowError:
        """
        Add context to this error (fluent API).

        Usage:
            raise ExecutionError("Failed").with_context(
                instance_id=instance.id,
                step_id=step.id,
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        if self.context:
            context_dict = self.context.to_dict()
            if context_dict:
                result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# BUILD-TIME ERRORS
# =============================================================================


class ConfigurationError(StepflowError):
    """
    Invalid or missing builder input.

    Never retryable - the definition must be fixed.
    """

    default_category = ErrorCategory.CONFIG
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        key: str | None = None,
        value: Any = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.key = key
        self.value = value

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.key:
            result["key"] = self.key
        if self.value is not None:
            result["value"] = repr(self.value)
        return result


class ValidationError(StepflowError):
    """
    Referential-integrity violation in a definition.

    Never retryable - the definition must be fixed.
    """

    default_category = ErrorCategory.VALIDATION
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: Any = None,
        constraint: str | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value
        self.constraint = constraint

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        if self.value is not None:
            result["value"] = repr(self.value)
        if self.constraint:
            result["constraint"] = self.constraint
        return result


# =============================================================================
# RUN-TIME ERRORS
# =============================================================================


class ExecutionError(StepflowError):
    """A step executor raised or exceeded its deadline."""

    default_category = ErrorCategory.EXECUTION
    default_retryable = False

    def __init__(self, message: str, *, step_id: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.step_id = step_id
        if step_id is not None and self.context.step_id is None:
            self.context.step_id = step_id


class StepTimeoutError(ExecutionError):
    """A step or gateway ran past its wall-clock deadline."""

    default_category = ErrorCategory.TIMEOUT
    default_retryable = True

    def __init__(
        self,
        message: str,
        *,
        timeout: float,
        elapsed: float | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.timeout = timeout
        self.elapsed = elapsed


class RoutingError(StepflowError):
    """A condition step could not resolve a target."""

    default_category = ErrorCategory.ROUTING
    default_retryable = False


# =============================================================================
# LIFECYCLE ERRORS
# =============================================================================


class InvalidTransitionError(StepflowError):
    """Raised when an illegal instance status transition is attempted."""

    default_category = ErrorCategory.STATE

    def __init__(self, current: str, target: str, message: str | None = None):
        self.current = current
        self.target = target
        super().__init__(message or f"Invalid instance transition: {current} → {target}")


class DefinitionNotActiveError(StepflowError):
    """Only ACTIVE definitions can be started."""

    default_category = ErrorCategory.STATE

    def __init__(self, definition_id: str, status: str):
        self.definition_id = definition_id
        self.status = status
        super().__init__(
            f"Workflow definition {definition_id} is {status}, expected ACTIVE"
        )


class NotFoundError(StepflowError):
    """Lookup through the store or task registry found nothing."""

    default_category = ErrorCategory.NOT_FOUND


class DefinitionNotFoundError(NotFoundError):
    def __init__(self, definition_id: str):
        self.definition_id = definition_id
        super().__init__(f"Workflow definition not found: {definition_id}")


class InstanceNotFoundError(NotFoundError):
    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"Workflow instance not found: {instance_id}")


class TaskNotFoundError(NotFoundError):
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"User task not found: {task_id}")


class StorageError(StepflowError):
    """Store-level failure (duplicate keys, backend errors)."""

    default_category = ErrorCategory.STORAGE


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, StepflowError):
        return error.retryable
    retryable_types = (
        ConnectionError,
        TimeoutError,
        BrokenPipeError,
    )
    return isinstance(error, retryable_types)


def categorize_error(error: Exception) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, StepflowError):
        return error.category
    if isinstance(error, TimeoutError):
        return ErrorCategory.TIMEOUT
    if isinstance(error, (KeyError, AttributeError)):
        return ErrorCategory.CONFIG
    if isinstance(error, (ValueError, TypeError)):
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNKNOWN


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "StepflowError",
    "ConfigurationError",
    "ValidationError",
    "ExecutionError",
    "StepTimeoutError",
    "RoutingError",
    "InvalidTransitionError",
    "DefinitionNotActiveError",
    "NotFoundError",
    "DefinitionNotFoundError",
    "InstanceNotFoundError",
    "TaskNotFoundError",
    "StorageError",
    "is_retryable",
    "categorize_error",
]
