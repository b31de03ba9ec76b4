"""Tests for stepflow.core.expressions — restricted expression evaluation."""

from __future__ import annotations

import pytest

from stepflow.core.expressions import (
    SafeEvalError,
    lookup_path,
    safe_eval,
    safe_eval_bool,
    validate_expression,
)


class TestSafeEval:
    def test_arithmetic_and_comparison(self):
        assert safe_eval("amount * 2 > 100", {"amount": 60}) is True
        assert safe_eval("amount * 2 > 100", {"amount": 40}) is False

    def test_boolean_operators(self):
        ns = {"amount": 1500, "region": "EU"}
        assert safe_eval_bool("amount > 1000 and region == 'EU'", ns)
        assert not safe_eval_bool("amount > 1000 and region == 'US'", ns)
        assert safe_eval_bool("amount < 10 or region in ['EU', 'UK']", ns)

    def test_missing_name_is_none(self):
        assert safe_eval("approver", {}) is None
        assert safe_eval_bool("approver == null", {})

    def test_aliases(self):
        assert safe_eval("true") is True
        assert safe_eval("false") is False
        assert safe_eval("null") is None

    def test_dotted_names_walk_mappings(self):
        ns = {"order": {"total": 250, "lines": [1, 2, 3]}}
        assert safe_eval("order.total", ns) == 250
        assert safe_eval("len(order.lines)", ns) == 3
        assert safe_eval("order['total'] >= 250", ns) is True

    def test_whitelisted_functions(self):
        assert safe_eval("max(a, b)", {"a": 3, "b": 7}) == 7
        assert safe_eval("round(x)", {"x": 2.6}) == 3

    def test_join_style_ratio(self):
        ns = {"successCount": 3, "totalCount": 4}
        assert safe_eval_bool("successCount * 1.0 / totalCount >= 0.5", ns)

    def test_runtime_error_is_wrapped(self):
        with pytest.raises(SafeEvalError, match="Failed to evaluate"):
            safe_eval("amount > 5", {"amount": None})

    def test_division_by_zero_is_wrapped(self):
        with pytest.raises(SafeEvalError):
            safe_eval("1 / total", {"total": 0})


class TestValidateExpression:
    @pytest.mark.parametrize(
        "expression",
        [
            "__import__('os').system('ls')",
            "open('/etc/passwd')",
            "[x for x in items]",
            "lambda: 1",
            "a if b else c",
            "obj.__class__",
        ],
    )
    def test_disallowed_constructs(self, expression):
        with pytest.raises(SafeEvalError):
            validate_expression(expression)

    def test_syntax_error(self):
        with pytest.raises(SafeEvalError, match="Invalid expression"):
            validate_expression("amount >")

    def test_empty_expression(self):
        with pytest.raises(SafeEvalError):
            validate_expression("   ")

    def test_keyword_arguments_rejected(self):
        with pytest.raises(SafeEvalError, match="Keyword"):
            validate_expression("round(x, ndigits=2)")

    def test_valid_expression_passes(self):
        validate_expression("days > 5 and not approved")

    def test_safe_eval_error_is_value_error(self):
        assert issubclass(SafeEvalError, ValueError)


class TestLookupPath:
    def test_flat_key_wins(self):
        assert lookup_path({"a.b": 1, "a": {"b": 2}}, "a.b") == 1

    def test_nested(self):
        assert lookup_path({"a": {"b": {"c": 3}}}, "a.b.c") == 3

    def test_missing_segment(self):
        assert lookup_path({"a": {"b": 1}}, "a.x") is None
        assert lookup_path({"a": 5}, "a.b") is None
