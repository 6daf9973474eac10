"""
signing_engines.expressions -- Restricted condition language.

Responsibility:
    Parse, type-check and evaluate the boolean/arithmetic expressions used
    by edge guards, condition nodes and script assignments.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import signing_kernel/domain types and exceptions.

Grammar (a subset of Python expression syntax, parsed with ``ast``):
    literals          1, 2.5, "text", True/False/None (also true/false/null)
    names             amount, document.amount, items[0], doc["total"]
    arithmetic        + - * / %, unary minus
    comparison        == != < <= > >=, in, not in (chained comparisons allowed)
    boolean           and, or, not
    conditional       a if cond else b
    collections       [1, 2], (1, 2)
    functions         abs, len, min, max, lower, upper

Invariants enforced:
    - Host-language evaluation is never used; the AST is interpreted by a
      tree walker that only knows the nodes above.
    - Evaluation is total: missing variables, type errors and division by
      zero produce ``None``; ordering comparisons with ``None`` are false.
    - A guard holds only when its expression evaluates to exactly ``True``.

Failure modes:
    - ExpressionError on syntax errors or disallowed constructs (at parse
      time, so definitions are rejected at registration).
"""

from __future__ import annotations

import ast
import operator
from collections.abc import Mapping
from functools import lru_cache
from typing import Any

from signing_kernel.domain.workflow import VariableType
from signing_kernel.exceptions import ExpressionError

MAX_EXPRESSION_LENGTH = 2000

_CONSTANT_NAMES = {"true": True, "false": False, "null": None, "True": True, "False": False, "None": None}

_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
}

_CMP_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
}


def _lower(value: Any) -> Any:
    return value.lower() if isinstance(value, str) else None


def _upper(value: Any) -> Any:
    return value.upper() if isinstance(value, str) else None


def _min(*args: Any) -> Any:
    values = args[0] if len(args) == 1 and isinstance(args[0], (list, tuple)) else args
    return min(values)


def _max(*args: Any) -> Any:
    values = args[0] if len(args) == 1 and isinstance(args[0], (list, tuple)) else args
    return max(values)


FUNCTIONS = {
    "abs": abs,
    "len": len,
    "min": _min,
    "max": _max,
    "lower": _lower,
    "upper": _upper,
}

_FUNCTION_RESULT_TYPES = {
    "abs": VariableType.NUMBER,
    "len": VariableType.INTEGER,
    "min": VariableType.ANY,
    "max": VariableType.ANY,
    "lower": VariableType.STRING,
    "upper": VariableType.STRING,
}


# =========================================================================
# Parsing
# =========================================================================


def _check_node(node: ast.AST, source: str) -> None:
    if isinstance(node, ast.Expression):
        _check_node(node.body, source)
    elif isinstance(node, ast.BoolOp):
        for value in node.values:
            _check_node(value, source)
    elif isinstance(node, ast.UnaryOp):
        if not isinstance(node.op, (ast.Not, ast.USub, ast.UAdd)):
            raise ExpressionError(source, f"operator {type(node.op).__name__} not allowed")
        _check_node(node.operand, source)
    elif isinstance(node, ast.BinOp):
        if type(node.op) not in _BIN_OPS:
            raise ExpressionError(source, f"operator {type(node.op).__name__} not allowed")
        _check_node(node.left, source)
        _check_node(node.right, source)
    elif isinstance(node, ast.Compare):
        for op in node.ops:
            if type(op) not in _CMP_OPS and not isinstance(op, (ast.In, ast.NotIn)):
                raise ExpressionError(source, f"comparison {type(op).__name__} not allowed")
        _check_node(node.left, source)
        for comparator in node.comparators:
            _check_node(comparator, source)
    elif isinstance(node, ast.IfExp):
        _check_node(node.test, source)
        _check_node(node.body, source)
        _check_node(node.orelse, source)
    elif isinstance(node, ast.Call):
        if not isinstance(node.func, ast.Name) or node.func.id not in FUNCTIONS:
            raise ExpressionError(source, "only abs, len, min, max, lower, upper may be called")
        if node.keywords:
            raise ExpressionError(source, "keyword arguments are not allowed")
        for arg in node.args:
            if isinstance(arg, ast.Starred):
                raise ExpressionError(source, "argument unpacking is not allowed")
            _check_node(arg, source)
    elif isinstance(node, ast.Attribute):
        if node.attr.startswith("_"):
            raise ExpressionError(source, f"attribute {node.attr!r} not allowed")
        _check_node(node.value, source)
    elif isinstance(node, ast.Subscript):
        if isinstance(node.slice, ast.Slice):
            raise ExpressionError(source, "slices are not allowed")
        _check_node(node.value, source)
        _check_node(node.slice, source)
    elif isinstance(node, ast.Name):
        if node.id.startswith("_"):
            raise ExpressionError(source, f"name {node.id!r} not allowed")
    elif isinstance(node, ast.Constant):
        if not isinstance(node.value, (str, int, float, bool, type(None))):
            raise ExpressionError(source, "unsupported literal")
    elif isinstance(node, (ast.List, ast.Tuple)):
        for element in node.elts:
            _check_node(element, source)
    else:
        raise ExpressionError(source, f"construct {type(node).__name__} not allowed")


@lru_cache(maxsize=1024)
def parse_expression(source: str) -> ast.Expression:
    """Parse and whitelist-check an expression.

    Raises:
        ExpressionError: syntax error or a construct outside the language.
    """
    if not isinstance(source, str) or not source.strip():
        raise ExpressionError(str(source), "expression is empty")
    if len(source) > MAX_EXPRESSION_LENGTH:
        raise ExpressionError(source[:50], "expression is too long")
    try:
        tree = ast.parse(source.strip(), mode="eval")
    except SyntaxError as exc:
        raise ExpressionError(source, f"syntax error: {exc.msg}") from exc
    _check_node(tree, source)
    return tree


def referenced_names(source: str) -> set[str]:
    """Root variable names an expression reads."""
    names: set[str] = set()
    for node in ast.walk(parse_expression(source)):
        if isinstance(node, ast.Name) and node.id not in _CONSTANT_NAMES and node.id not in FUNCTIONS:
            names.add(node.id)
    return names


# =========================================================================
# Evaluation
# =========================================================================


class _Missing:
    """Marker for an unresolved variable (behaves like None)."""


_MISSING = _Missing()


def _lookup(container: Any, key: Any) -> Any:
    if isinstance(container, Mapping):
        return container.get(key, _MISSING)
    if isinstance(container, (list, tuple)) and isinstance(key, int) and not isinstance(key, bool):
        if -len(container) <= key < len(container):
            return container[key]
    return _MISSING


def _value(result: Any) -> Any:
    return None if result is _MISSING else result


def _eval(node: ast.AST, variables: Mapping[str, Any]) -> Any:
    if isinstance(node, ast.Constant):
        return node.value

    if isinstance(node, ast.Name):
        if node.id in variables:
            return variables[node.id]
        if node.id in _CONSTANT_NAMES:
            return _CONSTANT_NAMES[node.id]
        return _MISSING

    if isinstance(node, ast.Attribute):
        return _lookup(_eval(node.value, variables), node.attr)

    if isinstance(node, ast.Subscript):
        return _lookup(_eval(node.value, variables), _value(_eval(node.slice, variables)))

    if isinstance(node, (ast.List, ast.Tuple)):
        return [_value(_eval(e, variables)) for e in node.elts]

    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            result: Any = True
            for value_node in node.values:
                result = _value(_eval(value_node, variables))
                if not result:
                    return result
            return result
        result = False
        for value_node in node.values:
            result = _value(_eval(value_node, variables))
            if result:
                return result
        return result

    if isinstance(node, ast.UnaryOp):
        operand = _value(_eval(node.operand, variables))
        if isinstance(node.op, ast.Not):
            return not operand
        if operand is None or isinstance(operand, bool) or not isinstance(operand, (int, float)):
            return None
        return -operand if isinstance(node.op, ast.USub) else operand

    if isinstance(node, ast.BinOp):
        left = _value(_eval(node.left, variables))
        right = _value(_eval(node.right, variables))
        if left is None or right is None or isinstance(left, bool) or isinstance(right, bool):
            return None
        try:
            return _BIN_OPS[type(node.op)](left, right)
        except (TypeError, ZeroDivisionError, ValueError, OverflowError):
            return None

    if isinstance(node, ast.Compare):
        left = _value(_eval(node.left, variables))
        for op, comparator in zip(node.ops, node.comparators):
            right = _value(_eval(comparator, variables))
            if not _compare(op, left, right):
                return False
            left = right
        return True

    if isinstance(node, ast.IfExp):
        test = _value(_eval(node.test, variables))
        return _eval(node.body if test is True else node.orelse, variables)

    if isinstance(node, ast.Call):
        args = [_value(_eval(a, variables)) for a in node.args]
        if any(a is None for a in args):
            return None
        try:
            return FUNCTIONS[node.func.id](*args)
        except (TypeError, ValueError):
            return None

    return None


def _compare(op: ast.cmpop, left: Any, right: Any) -> bool:
    if isinstance(op, (ast.In, ast.NotIn)):
        if right is None or not isinstance(right, (list, tuple, str, Mapping)):
            return False
        try:
            contained = left in right
        except TypeError:
            return False
        return contained if isinstance(op, ast.In) else not contained
    if left is None or right is None:
        return False
    try:
        return bool(_CMP_OPS[type(op)](left, right))
    except TypeError:
        return False


def evaluate(source: str, variables: Mapping[str, Any]) -> Any:
    """Evaluate an expression over workflow variables.

    Raises:
        ExpressionError: only when the source does not parse; evaluation
            itself never raises.
    """
    tree = parse_expression(source)
    return _value(_eval(tree.body, variables))


def evaluate_guard(source: str | None, variables: Mapping[str, Any]) -> bool:
    """A missing guard holds; otherwise the expression must be exactly True."""
    if source is None or not str(source).strip():
        return True
    return evaluate(source, variables) is True


# =========================================================================
# Static type checking
# =========================================================================

_NUMERIC = {VariableType.NUMBER, VariableType.INTEGER}


def _literal_type(value: Any) -> VariableType:
    if isinstance(value, bool):
        return VariableType.BOOLEAN
    if isinstance(value, int):
        return VariableType.INTEGER
    if isinstance(value, float):
        return VariableType.NUMBER
    if isinstance(value, str):
        return VariableType.STRING
    return VariableType.ANY


def _comparable(left: VariableType, right: VariableType) -> bool:
    if VariableType.ANY in (left, right):
        return True
    if left in _NUMERIC and right in _NUMERIC:
        return True
    return left == right


def _infer(node: ast.AST, schema: Mapping[str, VariableType], issues: list[str]) -> VariableType:
    if isinstance(node, ast.Constant):
        return _literal_type(node.value)

    if isinstance(node, ast.Name):
        if node.id in schema:
            return schema[node.id]
        if node.id in _CONSTANT_NAMES:
            return _literal_type(_CONSTANT_NAMES[node.id])
        issues.append(f"unknown variable {node.id!r}")
        return VariableType.ANY

    if isinstance(node, (ast.Attribute, ast.Subscript)):
        base = _infer(node.value, schema, issues)
        if base in (VariableType.STRING, VariableType.BOOLEAN) or base in _NUMERIC:
            issues.append(f"cannot index into a {base.value} value")
        return VariableType.ANY

    if isinstance(node, (ast.List, ast.Tuple)):
        for element in node.elts:
            _infer(element, schema, issues)
        return VariableType.LIST

    if isinstance(node, ast.BoolOp):
        for value in node.values:
            _infer(value, schema, issues)
        return VariableType.BOOLEAN

    if isinstance(node, ast.UnaryOp):
        operand = _infer(node.operand, schema, issues)
        if isinstance(node.op, ast.Not):
            return VariableType.BOOLEAN
        if operand not in _NUMERIC and operand is not VariableType.ANY:
            issues.append(f"unary minus on a {operand.value} value")
        return operand

    if isinstance(node, ast.BinOp):
        left = _infer(node.left, schema, issues)
        right = _infer(node.right, schema, issues)
        if VariableType.ANY in (left, right):
            return VariableType.ANY
        if isinstance(node.op, ast.Add) and left == right and left in (VariableType.STRING, VariableType.LIST):
            return left
        if left in _NUMERIC and right in _NUMERIC:
            if isinstance(node.op, ast.Div) or VariableType.NUMBER in (left, right):
                return VariableType.NUMBER
            return VariableType.INTEGER
        issues.append(f"arithmetic between {left.value} and {right.value}")
        return VariableType.ANY

    if isinstance(node, ast.Compare):
        left = _infer(node.left, schema, issues)
        for op, comparator in zip(node.ops, node.comparators):
            right = _infer(comparator, schema, issues)
            if isinstance(op, (ast.In, ast.NotIn)):
                if right not in (VariableType.LIST, VariableType.STRING, VariableType.OBJECT, VariableType.ANY):
                    issues.append(f"membership test against a {right.value} value")
            elif isinstance(op, (ast.Eq, ast.NotEq)):
                pass
            elif not _comparable(left, right) or VariableType.BOOLEAN in (left, right):
                issues.append(f"ordering comparison between {left.value} and {right.value}")
            left = right
        return VariableType.BOOLEAN

    if isinstance(node, ast.IfExp):
        _infer(node.test, schema, issues)
        body = _infer(node.body, schema, issues)
        orelse = _infer(node.orelse, schema, issues)
        return body if body == orelse else VariableType.ANY

    if isinstance(node, ast.Call):
        for arg in node.args:
            _infer(arg, schema, issues)
        return _FUNCTION_RESULT_TYPES[node.func.id]

    return VariableType.ANY


def type_check(
    source: str,
    schema: Mapping[str, VariableType],
    expect_boolean: bool = False,
) -> list[str]:
    """Static problems of an expression against a variable schema.

    Returns an empty list when the expression is well typed.  Parse errors
    are reported as a single problem rather than raised.
    """
    try:
        tree = parse_expression(source)
    except ExpressionError as exc:
        return [exc.reason]
    issues: list[str] = []
    result = _infer(tree.body, schema, issues)
    if expect_boolean and result not in (VariableType.BOOLEAN, VariableType.ANY):
        issues.append(f"guard evaluates to {result.value}, not boolean")
    return issues
