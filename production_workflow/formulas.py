"""Restricted arithmetic evaluator for production table row formulas.

Formulas are parsed into a Python AST and interpreted over a small whitelist
of node types; nothing is compiled or executed. Column names are referenced
through their normalized identifiers, e.g. ``"Raw Weight"`` becomes
``raw_weight`` and ``"Efficiency %"`` becomes ``efficiency``.
"""

from __future__ import annotations

import ast
import math
import operator
import re
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

_BINARY_OPERATORS: Dict[type, Callable[[float, float], float]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPERATORS: Dict[type, Callable[[float], float]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}

_FUNCTIONS: Dict[str, Callable[..., float]] = {
    "abs": abs,
    "min": min,
    "max": max,
    "round": round,
    "sqrt": math.sqrt,
}

_NON_IDENTIFIER = re.compile(r"[^0-9a-zA-Z]+")


class FormulaError(ValueError):
    """Raised when a formula cannot be parsed or evaluated."""


def normalize_column(name: str) -> str:
    """Turn a column caption into the identifier used inside formulas."""

    return _NON_IDENTIFIER.sub("_", name).strip("_").lower()


def coerce_number(value: Any) -> float:
    """Read a cell as a number; blanks and text count as zero."""

    if value is None or isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number) or math.isinf(number):
        return 0.0
    return number


@lru_cache(maxsize=256)
def _parse(expression: str) -> ast.Expression:
    try:
        tree = ast.parse(expression, mode="eval")
    except SyntaxError as exc:
        raise FormulaError(f"Invalid formula: {expression}") from exc
    for node in ast.walk(tree):
        FormulaEvaluator._check_node(node, expression)
    return tree


class FormulaEvaluator:
    """Evaluates whitelisted arithmetic expressions against row values."""

    @staticmethod
    def _check_node(node: ast.AST, expression: str) -> None:
        allowed = (
            ast.Expression,
            ast.BinOp,
            ast.UnaryOp,
            ast.Constant,
            ast.Name,
            ast.Load,
            ast.Call,
        ) + tuple(_BINARY_OPERATORS) + tuple(_UNARY_OPERATORS)
        if not isinstance(node, allowed):
            raise FormulaError(
                f"Unsupported element {type(node).__name__} in formula: {expression}"
            )
        if isinstance(node, ast.Constant) and (
            isinstance(node.value, bool) or not isinstance(node.value, (int, float))
        ):
            raise FormulaError(f"Only numeric constants are allowed: {expression}")
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in _FUNCTIONS:
                raise FormulaError(f"Unknown function in formula: {expression}")
            if node.keywords:
                raise FormulaError(f"Keyword arguments are not allowed: {expression}")

    @staticmethod
    def validate(expression: str) -> List[str]:
        """Parse ``expression`` and return the variable names it references."""

        tree = _parse(expression)
        names = []
        for node in ast.walk(tree):
            if isinstance(node, ast.Name) and node.id not in _FUNCTIONS:
                if node.id not in names:
                    names.append(node.id)
        return names

    @staticmethod
    def evaluate(expression: str, variables: Mapping[str, float]) -> float:
        tree = _parse(expression)
        try:
            result = FormulaEvaluator._eval(tree.body, variables)
        except ZeroDivisionError as exc:
            raise FormulaError(f"Division by zero in formula: {expression}") from exc
        except (OverflowError, ValueError, TypeError) as exc:
            raise FormulaError(f"Cannot evaluate formula {expression}: {exc}") from exc
        if isinstance(result, complex) or math.isnan(result) or math.isinf(result):
            raise FormulaError(f"Formula {expression} produced a non-finite value")
        return round(float(result), 2)

    @staticmethod
    def _eval(node: ast.AST, variables: Mapping[str, float]) -> float:
        if isinstance(node, ast.Constant):
            return float(node.value)
        if isinstance(node, ast.Name):
            return coerce_number(variables.get(node.id))
        if isinstance(node, ast.BinOp):
            left = FormulaEvaluator._eval(node.left, variables)
            right = FormulaEvaluator._eval(node.right, variables)
            return _BINARY_OPERATORS[type(node.op)](left, right)
        if isinstance(node, ast.UnaryOp):
            return _UNARY_OPERATORS[type(node.op)](
                FormulaEvaluator._eval(node.operand, variables)
            )
        if isinstance(node, ast.Call):
            args = [FormulaEvaluator._eval(arg, variables) for arg in node.args]
            return _FUNCTIONS[node.func.id](*args)
        raise FormulaError(f"Unsupported element {type(node).__name__}")


def calculate_row(
    data: Mapping[str, Any], formulas: Sequence[Tuple[str, str]]
) -> Tuple[Dict[str, Optional[float]], List[str]]:
    """Run a table's formulas over one row.

    Each formula sees the row's input cells plus the results of the formulas
    before it. A failing formula yields ``None`` and an error message.
    """

    variables: Dict[str, Any] = {
        normalize_column(name): value for name, value in data.items()
    }
    calculated: Dict[str, Optional[float]] = {}
    errors: List[str] = []
    for column, expression in formulas:
        try:
            value: Optional[float] = FormulaEvaluator.evaluate(expression, variables)
        except FormulaError as exc:
            value = None
            errors.append(f"{column}: {exc}")
        calculated[column] = value
        variables[normalize_column(column)] = value
    return calculated, errors


__all__ = [
    "FormulaError",
    "FormulaEvaluator",
    "normalize_column",
    "coerce_number",
    "calculate_row",
]
