"""Condition descriptors and the pluggable evaluators that decide them.

Manifesto:
A condition is data, not code: ``{"kind": "comparison", "params": {...}}``.
The kind selects an evaluator from an :class:`EvaluatorRegistry`; the params
are whatever that evaluator understands. Definitions therefore stay
serializable, and new condition kinds are added by registration instead of
by editing the router.

ARCHITECTURE
────────────
::

    ConditionSpec(kind, params)
          │
          ▼
    EvaluatorRegistry.get(kind) ──▶ ConditionEvaluator
          │                              ├── validate(params)       (build time)
          │                              └── evaluate(params, ctx)  (run time)
          ▼
    EvaluationOutcome(matched, target, details, message)

    Built-in kinds:
        expression  comparison  regex  range  contains  null
        script      default     all    any

Variable lookup (:meth:`ConditionContext.get`): scratch → step inputs →
instance variables. Dotted names (``order.total``) walk nested maps.

Tags:
    stepflow, routing, conditions, strategy-pattern, registry
"""

from __future__ import annotations

import re
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Protocol, runtime_checkable

from stepflow.core.errors import ConfigurationError, RoutingError
from stepflow.core.expressions import (
    SafeEvalError,
    lookup_path,
    safe_eval_bool,
    validate_expression,
)


# =============================================================================
# Descriptors and context
# =============================================================================


@dataclass(frozen=True)
class ConditionSpec:
    """Tagged condition descriptor stored inside a CONDITION step."""

    kind: str
    params: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "params": dict(self.params)}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | ConditionSpec) -> ConditionSpec:
        if isinstance(data, ConditionSpec):
            return data
        if "kind" not in data:
            raise ConfigurationError("Condition descriptor requires a 'kind'", key="kind")
        return cls(kind=str(data["kind"]), params=dict(data.get("params") or {}))

    # -- Factories ----------------------------------------------------------

    @classmethod
    def expression(cls, expression: str) -> ConditionSpec:
        return cls("expression", {"expression": expression})

    @classmethod
    def comparison(cls, variable: str, operator: str, value: Any) -> ConditionSpec:
        return cls("comparison", {"variable": variable, "operator": operator, "value": value})

    @classmethod
    def regex(cls, variable: str, pattern: str) -> ConditionSpec:
        return cls("regex", {"variable": variable, "pattern": pattern})

    @classmethod
    def range(cls, variable: str, min: float | None = None, max: float | None = None) -> ConditionSpec:
        params: dict[str, Any] = {"variable": variable}
        if min is not None:
            params["min"] = min
        if max is not None:
            params["max"] = max
        return cls("range", params)

    @classmethod
    def contains(cls, variable: str, value: Any) -> ConditionSpec:
        return cls("contains", {"variable": variable, "value": value})

    @classmethod
    def null_check(cls, variable: str, check: str = "null") -> ConditionSpec:
        return cls("null", {"variable": variable, "check": check})

    @classmethod
    def script(cls, script: str, language: str = "python") -> ConditionSpec:
        return cls("script", {"script": script, "language": language})

    @classmethod
    def always(cls) -> ConditionSpec:
        return cls("default", {})

    @classmethod
    def all_of(cls, *conditions: ConditionSpec) -> ConditionSpec:
        return cls("all", {"conditions": [c.to_dict() for c in conditions]})

    @classmethod
    def any_of(cls, *conditions: ConditionSpec) -> ConditionSpec:
        return cls("any", {"conditions": [c.to_dict() for c in conditions]})


@dataclass(frozen=True)
class ConditionContext:
    """Read-only view handed to evaluators."""

    variables: Mapping[str, Any] = field(default_factory=dict)
    inputs: Mapping[str, Any] = field(default_factory=dict)
    scratch: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in ("variables", "inputs", "scratch"):
            value = getattr(self, name)
            if not isinstance(value, MappingProxyType):
                object.__setattr__(self, name, MappingProxyType(dict(value or {})))

    def get(self, name: str, default: Any = None) -> Any:
        for source in (self.scratch, self.inputs, self.variables):
            value = lookup_path(source, name)
            if value is not None:
                return value
        return default

    def namespace(self) -> dict[str, Any]:
        """Flat namespace for expressions (scratch wins over inputs over variables)."""
        return {**self.variables, **self.inputs, **self.scratch}


@dataclass
class EvaluationOutcome:
    """Result of one evaluator call."""

    matched: bool
    target: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    message: str | None = None

    @classmethod
    def match(cls, message: str | None = None, **details: Any) -> EvaluationOutcome:
        return cls(matched=True, message=message, details=details)

    @classmethod
    def no_match(cls, message: str | None = None, **details: Any) -> EvaluationOutcome:
        return cls(matched=False, message=message, details=details)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"matched": self.matched}
        if self.target:
            d["target"] = self.target
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = dict(self.details)
        return d


@runtime_checkable
class ConditionEvaluator(Protocol):
    """Strategy for one condition kind."""

    def validate(self, params: Mapping[str, Any]) -> None:
        """Raise :class:`ConfigurationError` for params that can never work."""
        ...

    def evaluate(self, params: Mapping[str, Any], context: ConditionContext) -> EvaluationOutcome:
        ...


def _require(params: Mapping[str, Any], key: str, kind: str) -> Any:
    if params.get(key) in (None, ""):
        raise ConfigurationError(f"'{kind}' condition requires '{key}'", key=key)
    return params[key]


def _to_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    return None


# =============================================================================
# Built-in evaluators
# =============================================================================


class ExpressionEvaluator:
    """``{"expression": "amount > 1000 and region == 'EU'"}``"""

    def validate(self, params: Mapping[str, Any]) -> None:
        expression = _require(params, "expression", "expression")
        try:
            validate_expression(expression)
        except SafeEvalError as e:
            raise ConfigurationError(str(e), key="expression", value=expression) from e

    def evaluate(self, params: Mapping[str, Any], context: ConditionContext) -> EvaluationOutcome:
        expression = params["expression"]
        matched = safe_eval_bool(expression, context.namespace())
        return EvaluationOutcome(matched=matched, details={"expression": expression})


class ComparisonEvaluator:
    """``{"variable": "amount", "operator": ">=", "value": 1000}``

    Numeric when both sides coerce to numbers, boolean when either side is a
    boolean, lexical string comparison otherwise. A missing variable only
    matches ``== null``.
    """

    OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
        "==": lambda a, b: a == b,
        "!=": lambda a, b: a != b,
        ">": lambda a, b: a > b,
        ">=": lambda a, b: a >= b,
        "<": lambda a, b: a < b,
        "<=": lambda a, b: a <= b,
    }
    ALIASES = {"eq": "==", "ne": "!=", "gt": ">", "ge": ">=", "lt": "<", "le": "<="}

    def _operator(self, raw: str) -> str:
        op = self.ALIASES.get(str(raw).lower(), raw)
        if op not in self.OPERATORS:
            raise ConfigurationError(
                f"Unsupported comparison operator: {raw}",
                key="operator",
                value=raw,
            )
        return op

    def validate(self, params: Mapping[str, Any]) -> None:
        _require(params, "variable", "comparison")
        self._operator(_require(params, "operator", "comparison"))

    def evaluate(self, params: Mapping[str, Any], context: ConditionContext) -> EvaluationOutcome:
        op = self._operator(params["operator"])
        expected = params.get("value")
        actual = context.get(params["variable"])
        details = {"variable": params["variable"], "actual": actual, "operator": op, "expected": expected}

        if actual is None:
            is_null = expected is None or str(expected).lower() == "null"
            return EvaluationOutcome(matched=(op == "==" and is_null), details=details)

        left_bool, right_bool = _to_bool(actual), _to_bool(expected)
        if isinstance(actual, bool) or isinstance(expected, bool):
            if left_bool is not None and right_bool is not None and op in ("==", "!="):
                return EvaluationOutcome(
                    matched=self.OPERATORS[op](left_bool, right_bool), details=details
                )

        left_num, right_num = _to_number(actual), _to_number(expected)
        if left_num is not None and right_num is not None:
            details["mode"] = "numeric"
            return EvaluationOutcome(matched=self.OPERATORS[op](left_num, right_num), details=details)

        details["mode"] = "lexical"
        return EvaluationOutcome(
            matched=self.OPERATORS[op](str(actual), str(expected)), details=details
        )


class RegexEvaluator:
    """``{"variable": "email", "pattern": ".+@example\\.com"}`` (full match)."""

    def __init__(self) -> None:
        self._compiled: dict[tuple[str, int], re.Pattern[str]] = {}
        self._lock = threading.Lock()

    def _compile(self, pattern: str, flags: int = 0) -> re.Pattern[str]:
        key = (pattern, flags)
        with self._lock:
            if key not in self._compiled:
                try:
                    self._compiled[key] = re.compile(pattern, flags)
                except re.error as e:
                    raise ConfigurationError(
                        f"Invalid regex pattern {pattern!r}: {e}",
                        key="pattern",
                        value=pattern,
                    ) from e
            return self._compiled[key]

    def validate(self, params: Mapping[str, Any]) -> None:
        _require(params, "variable", "regex")
        self._compile(_require(params, "pattern", "regex"), self._flags(params))

    @staticmethod
    def _flags(params: Mapping[str, Any]) -> int:
        return re.IGNORECASE if params.get("ignore_case") else 0

    def evaluate(self, params: Mapping[str, Any], context: ConditionContext) -> EvaluationOutcome:
        value = context.get(params["variable"])
        if value is None:
            return EvaluationOutcome.no_match("variable is null", variable=params["variable"])
        compiled = self._compile(params["pattern"], self._flags(params))
        return EvaluationOutcome(
            matched=compiled.fullmatch(str(value)) is not None,
            details={"variable": params["variable"], "pattern": params["pattern"]},
        )


class RangeEvaluator:
    """``{"variable": "score", "min": 60, "max": 100}``; a missing bound is open."""

    def validate(self, params: Mapping[str, Any]) -> None:
        _require(params, "variable", "range")
        low, high = params.get("min"), params.get("max")
        for key, bound in (("min", low), ("max", high)):
            if bound is not None and _to_number(bound) is None:
                raise ConfigurationError(f"Range bound '{key}' must be numeric", key=key, value=bound)
        if low is not None and high is not None and float(low) > float(high):
            raise ConfigurationError(
                f"Range min ({low}) is greater than max ({high})", key="min", value=low
            )

    def evaluate(self, params: Mapping[str, Any], context: ConditionContext) -> EvaluationOutcome:
        value = _to_number(context.get(params["variable"]))
        if value is None:
            return EvaluationOutcome.no_match("value is not numeric", variable=params["variable"])
        low, high = params.get("min"), params.get("max")
        matched = (low is None or value >= float(low)) and (high is None or value <= float(high))
        return EvaluationOutcome(matched=matched, details={"value": value, "min": low, "max": high})


class ContainsEvaluator:
    """Substring test for strings, membership test for collections."""

    def validate(self, params: Mapping[str, Any]) -> None:
        _require(params, "variable", "contains")
        if "value" not in params:
            raise ConfigurationError("'contains' condition requires 'value'", key="value")

    def evaluate(self, params: Mapping[str, Any], context: ConditionContext) -> EvaluationOutcome:
        haystack = context.get(params["variable"])
        needle = params["value"]
        if haystack is None:
            return EvaluationOutcome.no_match("variable is null", variable=params["variable"])
        if isinstance(haystack, str):
            if params.get("ignore_case"):
                matched = str(needle).lower() in haystack.lower()
            else:
                matched = str(needle) in haystack
        elif isinstance(haystack, (list, tuple, set, frozenset, Mapping)):
            matched = needle in haystack
        else:
            matched = str(needle) in str(haystack)
        return EvaluationOutcome(matched=matched, details={"variable": params["variable"], "value": needle})


class NullCheckEvaluator:
    """``{"variable": "approver", "check": "not_null"}``"""

    CHECKS = ("null", "not_null", "empty", "not_empty")

    def validate(self, params: Mapping[str, Any]) -> None:
        _require(params, "variable", "null")
        check = params.get("check", "null")
        if check not in self.CHECKS:
            raise ConfigurationError(f"Unknown null check: {check}", key="check", value=check)

    def evaluate(self, params: Mapping[str, Any], context: ConditionContext) -> EvaluationOutcome:
        value = context.get(params["variable"])
        check = params.get("check", "null")
        is_empty = value is None or (hasattr(value, "__len__") and len(value) == 0)
        if check == "null":
            matched = value is None
        elif check == "not_null":
            matched = value is not None
        elif check == "empty":
            matched = is_empty
        else:
            matched = not is_empty
        return EvaluationOutcome(matched=matched, details={"variable": params["variable"], "check": check})


ScriptEngine = Callable[[str, Mapping[str, Any]], Any]


class ScriptEvaluator:
    """Delegates to a host-registered script engine per language.

    No engine ships with stepflow; a script condition without a registered
    engine fails at run time with :class:`RoutingError`.
    """

    def __init__(self, engines: Mapping[str, ScriptEngine] | None = None):
        self._engines: dict[str, ScriptEngine] = dict(engines or {})

    def register_engine(self, language: str, engine: ScriptEngine) -> None:
        self._engines[language] = engine

    def validate(self, params: Mapping[str, Any]) -> None:
        _require(params, "script", "script")

    def evaluate(self, params: Mapping[str, Any], context: ConditionContext) -> EvaluationOutcome:
        language = params.get("language", "python")
        engine = self._engines.get(language)
        if engine is None:
            raise RoutingError(f"No script engine registered for language: {language}")
        result = engine(params["script"], context.namespace())
        if isinstance(result, EvaluationOutcome):
            return result
        return EvaluationOutcome(matched=bool(result), details={"language": language})


class DefaultEvaluator:
    """Always matches; used for catch-all branches."""

    def validate(self, params: Mapping[str, Any]) -> None:
        return None

    def evaluate(self, params: Mapping[str, Any], context: ConditionContext) -> EvaluationOutcome:
        return EvaluationOutcome.match("default branch")


class CompositeEvaluator:
    """``all`` / ``any`` over nested condition descriptors."""

    def __init__(self, registry: EvaluatorRegistry, mode: str):
        self._registry = registry
        self._mode = mode

    def validate(self, params: Mapping[str, Any]) -> None:
        conditions = params.get("conditions")
        if not conditions:
            raise ConfigurationError(
                f"'{self._mode}' condition requires a non-empty 'conditions' list",
                key="conditions",
            )
        for nested in conditions:
            self._registry.validate(ConditionSpec.from_dict(nested))

    def evaluate(self, params: Mapping[str, Any], context: ConditionContext) -> EvaluationOutcome:
        results = []
        for nested in params["conditions"]:
            outcome = self._registry.evaluate(ConditionSpec.from_dict(nested), context)
            results.append(outcome.matched)
            if self._mode == "all" and not outcome.matched:
                break
            if self._mode == "any" and outcome.matched:
                break
        matched = all(results) if self._mode == "all" else any(results)
        return EvaluationOutcome(matched=matched, details={"mode": self._mode, "results": results})


# =============================================================================
# Registry
# =============================================================================


class EvaluatorRegistry:
    """Kind → evaluator map. Registration replaces built-ins of the same kind.

    Example:
        >>> registry = EvaluatorRegistry.with_defaults()
        >>> registry.register("weekday", WeekdayEvaluator())
        >>> sorted(registry.kinds())[:3]
        ['all', 'any', 'comparison']
    """

    def __init__(self) -> None:
        self._evaluators: dict[str, ConditionEvaluator] = {}
        self._lock = threading.Lock()

    @classmethod
    def with_defaults(cls, script_engines: Mapping[str, ScriptEngine] | None = None) -> EvaluatorRegistry:
        registry = cls()
        registry.register("expression", ExpressionEvaluator())
        registry.register("comparison", ComparisonEvaluator())
        registry.register("regex", RegexEvaluator())
        registry.register("range", RangeEvaluator())
        registry.register("contains", ContainsEvaluator())
        registry.register("null", NullCheckEvaluator())
        registry.register("script", ScriptEvaluator(script_engines))
        registry.register("default", DefaultEvaluator())
        registry.register("all", CompositeEvaluator(registry, "all"))
        registry.register("any", CompositeEvaluator(registry, "any"))
        return registry

    def register(self, kind: str, evaluator: ConditionEvaluator) -> None:
        if not kind:
            raise ConfigurationError("Evaluator kind must be a non-empty string", key="kind")
        with self._lock:
            self._evaluators[kind] = evaluator

    def unregister(self, kind: str) -> None:
        with self._lock:
            self._evaluators.pop(kind, None)

    def get(self, kind: str) -> ConditionEvaluator:
        with self._lock:
            evaluator = self._evaluators.get(kind)
        if evaluator is None:
            raise ConfigurationError(
                f"No evaluator registered for condition kind: {kind}",
                key="kind",
                value=kind,
            )
        return evaluator

    def kinds(self) -> list[str]:
        with self._lock:
            return sorted(self._evaluators)

    def validate(self, spec: ConditionSpec) -> None:
        self.get(spec.kind).validate(spec.params)

    def evaluate(self, spec: ConditionSpec, context: ConditionContext) -> EvaluationOutcome:
        return self.get(spec.kind).evaluate(spec.params, context)


_default_registry: EvaluatorRegistry | None = None
_default_lock = threading.Lock()


def default_registry() -> EvaluatorRegistry:
    """Shared registry used by builders for build-time validation."""
    global _default_registry
    with _default_lock:
        if _default_registry is None:
            _default_registry = EvaluatorRegistry.with_defaults()
        return _default_registry


__all__ = [
    "ConditionSpec",
    "ConditionContext",
    "EvaluationOutcome",
    "ConditionEvaluator",
    "ExpressionEvaluator",
    "ComparisonEvaluator",
    "RegexEvaluator",
    "RangeEvaluator",
    "ContainsEvaluator",
    "NullCheckEvaluator",
    "ScriptEvaluator",
    "DefaultEvaluator",
    "CompositeEvaluator",
    "EvaluatorRegistry",
    "default_registry",
]
