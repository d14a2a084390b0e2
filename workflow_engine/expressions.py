"""
Restricted evaluator for ``expr`` blocks.

Expressions use Python operator syntax over context values. Values can be
referenced either as ``{{path.to.value}}`` placeholders or, for top-level
context keys, by bare name. The parsed AST is checked against the node and
name whitelists and then interpreted node by node; nothing is handed to
``eval``. Repetition and exponentiation are bounded so that one expression
cannot allocate without limit while the event loop waits on it.
"""

from __future__ import annotations

import ast
import operator
from typing import Any, Callable, Dict, Mapping, Set

from workflow_engine.context import MISSING, PLACEHOLDER_PATTERN, resolve_path
from workflow_engine.errors import ValidationError

DEFAULT_MAX_SEQUENCE_LENGTH = 100_000
DEFAULT_MAX_EXPONENT = 64
MAX_POWER_BITS = 8192


class ExpressionError(ValidationError):
    pass


SAFE_FUNCTIONS: Dict[str, Any] = {
    "len": len,
    "any": any,
    "all": all,
    "min": min,
    "max": max,
    "sum": sum,
    "abs": abs,
    "round": round,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "lower": lambda value: str(value).lower(),
    "upper": lambda value: str(value).upper(),
    "trim": lambda value: str(value).strip(),
}

BINARY_OPERATORS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

UNARY_OPERATORS: Dict[type, Callable[[Any], Any]] = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

COMPARATORS: Dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.Gt: operator.gt,
    ast.LtE: operator.le,
    ast.GtE: operator.ge,
    ast.In: lambda left, right: left in right,
    ast.NotIn: lambda left, right: left not in right,
}

EXPRESSION_NODES = (
    ast.Expression,
    ast.BoolOp,
    ast.BinOp,
    ast.UnaryOp,
    ast.Compare,
    ast.IfExp,
    ast.Call,
    ast.Name,
    ast.Constant,
    ast.Subscript,
    ast.Slice,
    ast.List,
    ast.Tuple,
    ast.Load,
    ast.And,
    ast.Or,
)

_SEQUENCE_TYPES = (str, list, tuple)


def check_expression_tree(tree: ast.Expression, variables: Set[str]) -> None:
    """Reject any node, operator or name the interpreter does not support."""
    callees = {id(node.func) for node in ast.walk(tree) if isinstance(node, ast.Call)}

    for node in ast.walk(tree):
        if isinstance(node, ast.operator):
            if type(node) not in BINARY_OPERATORS:
                raise ExpressionError(f"Operator '{type(node).__name__}' is not allowed")
        elif isinstance(node, ast.unaryop):
            if type(node) not in UNARY_OPERATORS:
                raise ExpressionError(f"Unary op '{type(node).__name__}' is not allowed")
        elif isinstance(node, ast.cmpop):
            if type(node) not in COMPARATORS:
                raise ExpressionError(f"Comparator '{type(node).__name__}' is not allowed")
        elif not isinstance(node, EXPRESSION_NODES):
            raise ExpressionError(f"Disallowed expression node: {type(node).__name__}")
        elif isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in SAFE_FUNCTIONS:
                raise ExpressionError("Only whitelisted helper functions can be called")
            if node.keywords:
                raise ExpressionError("Keyword arguments are not supported")
        elif isinstance(node, ast.Name) and id(node) not in callees and node.id not in variables:
            raise ExpressionError(f"Unknown variable '{node.id}' in expression")


class ExpressionInterpreter:
    """Walks a checked expression tree against bound variables."""

    def __init__(
        self,
        variables: Mapping[str, Any],
        max_sequence_length: int = DEFAULT_MAX_SEQUENCE_LENGTH,
        max_exponent: int = DEFAULT_MAX_EXPONENT,
    ):
        self.variables = variables
        self.max_sequence_length = max_sequence_length
        self.max_exponent = max_exponent

    def run(self, node: ast.AST) -> Any:
        method = getattr(self, f"_eval_{type(node).__name__}", None)
        if method is None:
            raise ExpressionError(f"Disallowed expression node: {type(node).__name__}")
        return method(node)

    def _eval_Expression(self, node: ast.Expression) -> Any:
        return self.run(node.body)

    def _eval_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def _eval_Name(self, node: ast.Name) -> Any:
        if node.id not in self.variables:
            raise ExpressionError(f"Helper '{node.id}' can only be called")
        return self.variables[node.id]

    def _eval_List(self, node: ast.List) -> Any:
        return [self.run(item) for item in node.elts]

    def _eval_Tuple(self, node: ast.Tuple) -> Any:
        return tuple(self.run(item) for item in node.elts)

    def _eval_BoolOp(self, node: ast.BoolOp) -> Any:
        value: Any = None
        for operand in node.values:
            value = self.run(operand)
            if isinstance(node.op, ast.And) and not value:
                return value
            if isinstance(node.op, ast.Or) and value:
                return value
        return value

    def _eval_UnaryOp(self, node: ast.UnaryOp) -> Any:
        return UNARY_OPERATORS[type(node.op)](self.run(node.operand))

    def _eval_BinOp(self, node: ast.BinOp) -> Any:
        left = self.run(node.left)
        right = self.run(node.right)
        if isinstance(node.op, ast.Mult):
            self._check_repetition(left, right)
        elif isinstance(node.op, ast.Pow):
            self._check_power(left, right)
        elif isinstance(node.op, ast.Mod) and isinstance(left, str):
            raise ExpressionError("String formatting with '%' is not supported")
        return BINARY_OPERATORS[type(node.op)](left, right)

    def _eval_Compare(self, node: ast.Compare) -> bool:
        left = self.run(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.run(comparator)
            if not COMPARATORS[type(op)](left, right):
                return False
            left = right
        return True

    def _eval_IfExp(self, node: ast.IfExp) -> Any:
        return self.run(node.body) if self.run(node.test) else self.run(node.orelse)

    def _eval_Call(self, node: ast.Call) -> Any:
        function = SAFE_FUNCTIONS[node.func.id]
        return function(*[self.run(arg) for arg in node.args])

    def _eval_Subscript(self, node: ast.Subscript) -> Any:
        return self.run(node.value)[self.run(node.slice)]

    def _eval_Slice(self, node: ast.Slice) -> slice:
        bounds = (node.lower, node.upper, node.step)
        return slice(*[None if bound is None else self.run(bound) for bound in bounds])

    def _check_repetition(self, left: Any, right: Any) -> None:
        if isinstance(left, _SEQUENCE_TYPES) and isinstance(right, int):
            sequence, count = left, right
        elif isinstance(right, _SEQUENCE_TYPES) and isinstance(left, int):
            sequence, count = right, left
        else:
            return
        size = len(sequence) * max(count, 0)
        if size > self.max_sequence_length:
            raise ExpressionError(
                f"Repetition would produce {size} items, limit is {self.max_sequence_length}"
            )

    def _check_power(self, base: Any, exponent: Any) -> None:
        if not isinstance(exponent, (int, float)):
            return
        if abs(exponent) > self.max_exponent:
            raise ExpressionError(f"Exponent {exponent} exceeds the limit of {self.max_exponent}")
        if isinstance(base, int) and isinstance(exponent, int) and exponent > 0:
            if base.bit_length() * exponent > MAX_POWER_BITS:
                raise ExpressionError("Power result is too large")


def _context_names(context: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        key: value
        for key, value in context.items()
        if isinstance(key, str) and key.isidentifier() and not key.startswith("_") and key not in SAFE_FUNCTIONS
    }


def evaluate_expression(
    expression: str,
    context: Mapping[str, Any],
    max_sequence_length: int = DEFAULT_MAX_SEQUENCE_LENGTH,
    max_exponent: int = DEFAULT_MAX_EXPONENT,
) -> Any:
    """Evaluate ``expression`` against ``context`` and return the raw result."""
    if not isinstance(expression, str) or not expression.strip():
        raise ExpressionError("Expression is empty")

    bindings: Dict[str, Any] = {}

    def _bind(match) -> str:
        value = resolve_path(context, match.group(1))
        if value is MISSING:
            raise ExpressionError(f"Unknown reference '{{{{{match.group(1).strip()}}}}}'")
        placeholder = f"__ref_{len(bindings)}"
        bindings[placeholder] = value
        return placeholder

    source = PLACEHOLDER_PATTERN.sub(_bind, expression).strip()
    variables = _context_names(context)
    variables.update(bindings)

    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as exc:
        raise ExpressionError(f"Invalid expression syntax: {exc.msg}") from exc

    check_expression_tree(tree, set(variables))
    interpreter = ExpressionInterpreter(variables, max_sequence_length, max_exponent)
    try:
        return interpreter.run(tree)
    except ExpressionError:
        raise
    except Exception as exc:
        raise ExpressionError(f"Expression failed: {exc}") from exc
