"""
Tests for the restricted expression language.

Covers:
- Whitelisted constructs parse; everything else is rejected up front
- Total evaluation (missing variables, bad types, division by zero)
- Guard semantics (only exactly True holds)
- Static type checking against a variable schema
- Referenced variable names
"""

import pytest

from signing_engines.expressions import (
    evaluate,
    evaluate_guard,
    parse_expression,
    referenced_names,
    type_check,
)
from signing_kernel.domain.workflow import VariableType
from signing_kernel.exceptions import ExpressionError


class TestParsing:
    """Only the documented subset of expression syntax is accepted."""

    @pytest.mark.parametrize("source", [
        "amount > 10000",
        "status == 'approved' and not flagged",
        "country in ['DE', 'FR']",
        "1 < score <= 10",
        "document.total * 2",
        "items[0]",
        "'high' if amount > 100 else 'low'",
        "len(signers) >= 2",
        "lower(region) == 'emea'",
        "max(1, 2, 3) == 3",
        "-amount",
        "true or null",
    ])
    def test_allowed_constructs(self, source):
        parse_expression(source)

    @pytest.mark.parametrize("source", [
        "__import__('os')",
        "open('/etc/passwd')",
        "amount.__class__",
        "_private",
        "lambda: 1",
        "[x for x in items]",
        "items[1:3]",
        "2 ** 10",
        "amount // 2",
        "min(*values)",
        "max(values, key=len)",
        "{'a': 1}",
        "amount = 5",
    ])
    def test_disallowed_constructs(self, source):
        with pytest.raises(ExpressionError):
            parse_expression(source)

    def test_empty_expression_is_rejected(self):
        with pytest.raises(ExpressionError) as exc_info:
            parse_expression("   ")

        assert exc_info.value.reason == "expression is empty"

    def test_overlong_expression_is_rejected(self):
        with pytest.raises(ExpressionError):
            parse_expression(" + ".join(["1"] * 1500))

    def test_syntax_error_carries_code(self):
        with pytest.raises(ExpressionError) as exc_info:
            parse_expression("amount >")

        assert exc_info.value.code == "INVALID_EXPRESSION"


class TestEvaluation:
    """Evaluation never raises once the expression parses."""

    def test_arithmetic_and_comparison(self):
        assert evaluate("amount * 2 + 1", {"amount": 5}) == 11
        assert evaluate("amount > 10000", {"amount": 12000}) is True
        assert evaluate("1 < score <= 10", {"score": 10}) is True
        assert evaluate("1 < score <= 10", {"score": 11}) is False

    def test_missing_variable_is_none(self):
        assert evaluate("missing", {}) is None
        assert evaluate("missing + 1", {}) is None

    def test_ordering_with_missing_is_false(self):
        assert evaluate("missing > 5", {}) is False
        assert evaluate("missing < 5", {}) is False

    def test_division_by_zero_is_none(self):
        assert evaluate("amount / 0", {"amount": 5}) is None
        assert evaluate("amount % 0", {"amount": 5}) is None

    def test_type_errors_are_none(self):
        assert evaluate("name - 1", {"name": "x"}) is None
        assert evaluate("name > 1", {"name": "x"}) is False
        assert evaluate("flag + 1", {"flag": True}) is None

    def test_nested_lookup(self):
        variables = {"document": {"total": 42, "lines": [{"qty": 3}]}}

        assert evaluate("document.total", variables) == 42
        assert evaluate("document['total']", variables) == 42
        assert evaluate("document.lines[0].qty", variables) == 3
        assert evaluate("document.lines[5].qty", variables) is None
        assert evaluate("document.missing.deeper", variables) is None

    def test_membership(self):
        assert evaluate("country in ['DE', 'FR']", {"country": "DE"}) is True
        assert evaluate("country not in ['DE', 'FR']", {"country": "US"}) is True
        assert evaluate("'x' in missing", {}) is False

    def test_functions(self):
        assert evaluate("abs(delta)", {"delta": -4}) == 4
        assert evaluate("len(signers)", {"signers": ["a", "b"]}) == 2
        assert evaluate("min(values)", {"values": [3, 1, 2]}) == 1
        assert evaluate("max(1, value)", {"value": 7}) == 7
        assert evaluate("upper(code)", {"code": "ab"}) == "AB"
        assert evaluate("lower(code)", {"code": 5}) is None
        assert evaluate("len(missing)", {}) is None
        assert evaluate("len(count)", {"count": 5}) is None

    def test_conditional_expression(self):
        source = "'high' if amount > 100 else 'low'"

        assert evaluate(source, {"amount": 500}) == "high"
        assert evaluate(source, {"amount": 5}) == "low"
        assert evaluate(source, {}) == "low"

    def test_boolean_short_circuit_returns_operand(self):
        assert evaluate("name or 'anonymous'", {"name": ""}) == "anonymous"
        assert evaluate("a and b", {"a": 1, "b": 2}) == 2

    def test_constant_aliases(self):
        assert evaluate("true", {}) is True
        assert evaluate("null", {}) is None
        assert evaluate("false", {"false": "shadowed"}) == "shadowed"


class TestGuards:
    """A guard holds only on exactly True."""

    def test_missing_guard_holds(self):
        assert evaluate_guard(None, {}) is True
        assert evaluate_guard("  ", {}) is True

    def test_truthy_non_boolean_does_not_hold(self):
        assert evaluate_guard("amount", {"amount": 5}) is False
        assert evaluate_guard("name", {"name": "x"}) is False

    def test_boolean_result_holds(self):
        assert evaluate_guard("amount > 10000", {"amount": 12000}) is True
        assert evaluate_guard("amount > 10000", {"amount": 100}) is False
        assert evaluate_guard("amount > 10000", {}) is False

    def test_unparseable_guard_raises(self):
        with pytest.raises(ExpressionError):
            evaluate_guard("amount >>> 1", {})


class TestTypeCheck:
    """Static checks against the declared variables."""

    SCHEMA = {
        "amount": VariableType.NUMBER,
        "count": VariableType.INTEGER,
        "name": VariableType.STRING,
        "approved": VariableType.BOOLEAN,
        "items": VariableType.LIST,
        "payload": VariableType.ANY,
    }

    def test_well_typed_guard(self):
        assert type_check("amount > 10000 and approved", self.SCHEMA, expect_boolean=True) == []
        assert type_check("count + amount > 1", self.SCHEMA, expect_boolean=True) == []
        assert type_check("payload.anything == 3", self.SCHEMA, expect_boolean=True) == []

    def test_unknown_variable(self):
        issues = type_check("amout > 5", self.SCHEMA)

        assert issues == ["unknown variable 'amout'"]

    def test_ordering_between_string_and_number(self):
        issues = type_check("name > 5", self.SCHEMA)

        assert any("ordering comparison" in issue for issue in issues)

    def test_arithmetic_between_incompatible_types(self):
        issues = type_check("name * amount", self.SCHEMA)

        assert issues == ["arithmetic between string and number"]

    def test_non_boolean_guard(self):
        issues = type_check("amount + 1", self.SCHEMA, expect_boolean=True)

        assert issues == ["guard evaluates to number, not boolean"]

    def test_membership_against_scalar(self):
        issues = type_check("1 in count", self.SCHEMA)

        assert any("membership test" in issue for issue in issues)

    def test_string_concatenation_is_string(self):
        assert type_check("name + 'x' == 'ax'", self.SCHEMA, expect_boolean=True) == []

    def test_parse_error_reported_not_raised(self):
        issues = type_check("amount >", self.SCHEMA)

        assert len(issues) == 1
        assert issues[0].startswith("syntax error")


class TestReferencedNames:

    def test_root_names_only(self):
        names = referenced_names("document.total > limit and len(items) > 0 and true")

        assert names == {"document", "limit", "items"}
