"""Restricted expression evaluation.

Conditions, step preconditions and custom join rules are stored in definitions
as plain strings such as ``amount > 1000 and region == 'EU'`` or
``successCount * 1.0 / totalCount >= 0.5``. They are parsed with :mod:`ast` and
walked against a whitelist of node types, so a definition can never carry
executable code.

Supported:
    literals, names (looked up in the namespace, dotted names walk nested
    mappings), ``and``/``or``/``not``, comparisons including ``in``/``not in``,
    arithmetic, subscripts, list/tuple literals and the functions
    ``len``/``abs``/``min``/``max``/``round``/``str``/``int``/``float``.

Names that are absent from the namespace evaluate to ``None``; ``true``,
``false`` and ``null`` are accepted as aliases of the Python constants.
"""

from __future__ import annotations

import ast
import operator
from collections.abc import Mapping
from functools import lru_cache
from typing import Any


class SafeEvalError(ValueError):
    """Expression is malformed, uses a disallowed construct, or failed."""


_BIN_OPS: dict[type, Any] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_UNARY_OPS: dict[type, Any] = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_COMPARE_OPS: dict[type, Any] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_FUNCTIONS: dict[str, Any] = {
    "len": len,
    "abs": abs,
    "min": min,
    "max": max,
    "round": round,
    "str": str,
    "int": int,
    "float": float,
}

_ALIASES: dict[str, Any] = {"true": True, "false": False, "null": None, "None": None}

_ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.UnaryOp,
    ast.BinOp,
    ast.Compare,
    ast.Call,
    ast.Name,
    ast.Load,
    ast.Attribute,
    ast.Subscript,
    ast.Constant,
    ast.List,
    ast.Tuple,
    *_BIN_OPS,
    *_UNARY_OPS,
    *_COMPARE_OPS,
)


def _parse(expression: str) -> ast.Expression:
    if not isinstance(expression, str) or not expression.strip():
        raise SafeEvalError("Expression must be a non-empty string")
    return _parse_checked(expression.strip())


@lru_cache(maxsize=512)
def _parse_checked(expression: str) -> ast.Expression:
    try:
        tree = ast.parse(expression, mode="eval")
    except SyntaxError as e:
        raise SafeEvalError(f"Invalid expression {expression!r}: {e.msg}") from e

    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise SafeEvalError(
                f"Disallowed construct {type(node).__name__} in {expression!r}"
            )
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in _FUNCTIONS:
                raise SafeEvalError(f"Function calls are limited to {sorted(_FUNCTIONS)}")
            if node.keywords:
                raise SafeEvalError("Keyword arguments are not allowed")
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise SafeEvalError(f"Private attribute access is not allowed: {node.attr}")
    return tree


def validate_expression(expression: str) -> None:
    """Raise :class:`SafeEvalError` if *expression* would not be accepted."""
    _parse(expression)


def safe_eval(expression: str, namespace: Mapping[str, Any] | None = None) -> Any:
    """Evaluate *expression* against *namespace*.

    Raises:
        SafeEvalError: Parse failure, disallowed construct, or a runtime error
            inside the expression (e.g. comparing ``None`` with a number).
    """
    tree = _parse(expression)
    try:
        return _Evaluator(namespace or {}).visit(tree.body)
    except SafeEvalError:
        raise
    except (TypeError, ValueError, ZeroDivisionError, KeyError, IndexError) as e:
        raise SafeEvalError(f"Failed to evaluate {expression!r}: {e}") from e


def safe_eval_bool(expression: str, namespace: Mapping[str, Any] | None = None) -> bool:
    """Evaluate *expression* and coerce the result to ``bool``."""
    return bool(safe_eval(expression, namespace))


def lookup_path(namespace: Mapping[str, Any], path: str) -> Any:
    """Resolve ``a.b.c`` through nested mappings; missing segments give ``None``."""
    if path in namespace:
        return namespace[path]
    current: Any = namespace
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return None
    return current


class _Evaluator:
    def __init__(self, namespace: Mapping[str, Any]):
        self._ns = namespace

    def visit(self, node: ast.AST) -> Any:
        method = getattr(self, f"visit_{type(node).__name__}")
        return method(node)

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id in self._ns:
            return self._ns[node.id]
        if node.id in _ALIASES:
            return _ALIASES[node.id]
        return None

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        base = self.visit(node.value)
        if isinstance(base, Mapping):
            return base.get(node.attr)
        return None

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        base = self.visit(node.value)
        key = self.visit(node.slice)
        if base is None:
            return None
        if isinstance(base, Mapping):
            return base.get(key)
        return base[key]

    def visit_List(self, node: ast.List) -> list[Any]:
        return [self.visit(elt) for elt in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> tuple[Any, ...]:
        return tuple(self.visit(elt) for elt in node.elts)

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        if isinstance(node.op, ast.And):
            result: Any = True
            for value in node.values:
                result = self.visit(value)
                if not result:
                    return result
            return result
        result = False
        for value in node.values:
            result = self.visit(value)
            if result:
                return result
        return result

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        return _UNARY_OPS[type(node.op)](self.visit(node.operand))

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        return _BIN_OPS[type(node.op)](self.visit(node.left), self.visit(node.right))

    def visit_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            if not _COMPARE_OPS[type(op)](left, right):
                return False
            left = right
        return True

    def visit_Call(self, node: ast.Call) -> Any:
        func = _FUNCTIONS[node.func.id]  # type: ignore[attr-defined]
        return func(*(self.visit(arg) for arg in node.args))


__all__ = [
    "SafeEvalError",
    "safe_eval",
    "safe_eval_bool",
    "validate_expression",
    "lookup_path",
]
