"""Restricted boolean expressions for conditions and filter transforms.

Expressions are parsed with :mod:`ast` and walked by a small interpreter; no
code is compiled or executed. Supported: literals, names, attribute and
subscript access (both read dictionary keys), comparisons including ``in``,
``and``/``or``/``not``, arithmetic, and a handful of builtins such as
``len``. JavaScript spellings (``&&``, ``||``, ``!``, ``===``, ``true``,
``null``) are accepted as well. ``{{stepId.field}}`` placeholders are bound
to their resolved value before evaluation.
"""

from __future__ import annotations

import ast
import operator
import re
from typing import Any, Callable, Dict, Mapping

from .errors import ExpressionError
from .templating import PLACEHOLDER, get_path

_CONSTANTS: Dict[str, Any] = {
    "true": True,
    "false": False,
    "null": None,
    "undefined": None,
    "True": True,
    "False": False,
    "None": None,
}

_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "any": any,
    "all": all,
    "lower": lambda value: str(value).lower(),
    "upper": lambda value: str(value).upper(),
}

_BINARY_OPS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_COMPARE_OPS: Dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda left, right: right is not None and left in right,
    ast.NotIn: lambda left, right: right is None or left not in right,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_STRING = re.compile(r"('(?:\\.|[^'\\])*'|\"(?:\\.|[^\"\\])*\")")
_JS_TOKENS = (
    (re.compile(r"===?"), "=="),
    (re.compile(r"!==?"), "!="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
)


def _normalise(expression: str) -> str:
    """Rewrite JavaScript operators outside string literals."""
    parts = _STRING.split(expression)
    for index in range(0, len(parts), 2):
        chunk = parts[index]
        for pattern, replacement in _JS_TOKENS:
            chunk = pattern.sub(replacement, chunk)
        parts[index] = chunk
    return "".join(parts).strip()


class _Evaluator:
    def __init__(self, names: Mapping[str, Any]):
        self.names = names

    def visit(self, node: ast.AST) -> Any:
        method = getattr(self, f"visit_{type(node).__name__}", None)
        if method is None:
            raise ExpressionError(f"Unsupported syntax: {type(node).__name__}")
        return method(node)

    def visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id in self.names:
            return self.names[node.id]
        if node.id in _CONSTANTS:
            return _CONSTANTS[node.id]
        return None

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        value = self.visit(node.value)
        if node.attr == "length" and isinstance(value, (list, tuple, str)):
            return len(value)
        return get_path(value, node.attr)

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        value = self.visit(node.value)
        key = self.visit(node.slice)
        if isinstance(value, Mapping):
            return value.get(key)
        if isinstance(value, (list, tuple, str)) and isinstance(key, int):
            return value[key] if -len(value) <= key < len(value) else None
        return None

    def visit_List(self, node: ast.List) -> Any:
        return [self.visit(item) for item in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> Any:
        return tuple(self.visit(item) for item in node.elts)

    def visit_Dict(self, node: ast.Dict) -> Any:
        return {
            self.visit(key): self.visit(value)
            for key, value in zip(node.keys, node.values)
            if key is not None
        }

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
        operand = self.visit(node.operand)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(node.op, ast.USub):
            return -operand
        if isinstance(node.op, ast.UAdd):
            return +operand
        raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        op = _BINARY_OPS.get(type(node.op))
        if op is None:
            raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")
        try:
            return op(self.visit(node.left), self.visit(node.right))
        except (TypeError, ZeroDivisionError) as exc:
            raise ExpressionError(str(exc)) from exc

    def visit_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op_node, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            op = _COMPARE_OPS.get(type(op_node))
            if op is None:
                raise ExpressionError(f"Unsupported comparison: {type(op_node).__name__}")
            try:
                outcome = op(left, right)
            except TypeError:
                # ordering against a missing value is simply false
                outcome = False
            if not outcome:
                return False
            left = right
        return True

    def visit_IfExp(self, node: ast.IfExp) -> Any:
        return self.visit(node.body) if self.visit(node.test) else self.visit(node.orelse)

    def visit_Call(self, node: ast.Call) -> Any:
        if not isinstance(node.func, ast.Name) or node.func.id not in _FUNCTIONS:
            raise ExpressionError("Only builtin helper functions may be called")
        if node.keywords:
            raise ExpressionError("Keyword arguments are not supported")
        args = [self.visit(arg) for arg in node.args]
        try:
            return _FUNCTIONS[node.func.id](*args)
        except (TypeError, ValueError) as exc:
            raise ExpressionError(f"{node.func.id}(): {exc}") from exc


def compile_expression(
    expression: str, scope: Mapping[str, Any]
) -> tuple[ast.Expression, Dict[str, Any]]:
    """Bind placeholders and parse ``expression``."""
    names: Dict[str, Any] = dict(scope)
    counter = 0

    def bind(match: re.Match[str]) -> str:
        nonlocal counter
        name = f"_ph{counter}"
        counter += 1
        names[name] = get_path(scope, match.group(1))
        return name

    source = _normalise(PLACEHOLDER.sub(bind, expression))
    if not source:
        raise ExpressionError("Expression is empty")
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as exc:
        raise ExpressionError(f"Invalid expression '{expression}': {exc.msg}") from exc
    return tree, names


def evaluate(expression: str, scope: Mapping[str, Any]) -> Any:
    """Evaluate ``expression`` against ``scope`` and return the raw value."""
    tree, names = compile_expression(expression, scope)
    return _Evaluator(names).visit(tree)


def evaluate_bool(expression: str, scope: Mapping[str, Any]) -> bool:
    return bool(evaluate(expression, scope))
