"""Shared primitives: errors, logging, settings, timestamps, expressions."""

from stepflow.core.errors import (
    ConfigurationError,
    DefinitionNotActiveError,
    DefinitionNotFoundError,
    ErrorCategory,
    ErrorContext,
    ExecutionError,
    InstanceNotFoundError,
    InvalidTransitionError,
    NotFoundError,
    RoutingError,
    StepflowError,
    StepTimeoutError,
    StorageError,
    TaskNotFoundError,
    ValidationError,
)
from stepflow.core.expressions import SafeEvalError, safe_eval, safe_eval_bool
from stepflow.core.logging import LogContext, configure_logging, get_logger
from stepflow.core.settings import EngineSettings, get_settings

__all__ = [
    "ConfigurationError",
    "DefinitionNotActiveError",
    "DefinitionNotFoundError",
    "EngineSettings",
    "ErrorCategory",
    "ErrorContext",
    "ExecutionError",
    "InstanceNotFoundError",
    "InvalidTransitionError",
    "LogContext",
    "NotFoundError",
    "RoutingError",
    "SafeEvalError",
    "StepflowError",
    "StepTimeoutError",
    "StorageError",
    "TaskNotFoundError",
    "ValidationError",
    "configure_logging",
    "get_logger",
    "get_settings",
    "safe_eval",
    "safe_eval_bool",
]
