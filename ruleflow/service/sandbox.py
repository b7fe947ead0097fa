"""Restricted expression evaluation for conditions, transforms and code nodes.

Expressions are parsed with :mod:`ast` and walked against an allowlist of node
types. Nothing is compiled or passed to ``eval``: names resolve only from the
scope mapping the caller supplies, dot access is a mapping lookup (never
``getattr``), and only explicitly allowlisted callables can be invoked. The
evaluator therefore has no route to the filesystem, network or process.
"""
from __future__ import annotations

import ast
import operator
from collections.abc import Mapping, Sequence
from typing import Any, Callable, Dict, Optional

MAX_NESTING = 100
DEFAULT_MAX_EXPRESSION_LENGTH = 2000
# Operand bounds so that a single expression cannot stall a worker
MAX_EXPONENT = 256
MAX_REPEAT_LENGTH = 10_000
# Largest integer an expression may build, in bits
MAX_INT_BITS = 8192


class SandboxError(ValueError):
    """Raised when an expression is rejected or fails to evaluate."""


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _bounded_pow(base: Any, exponent: Any) -> Any:
    if isinstance(exponent, (int, float)) and abs(exponent) > MAX_EXPONENT:
        raise SandboxError("exponent too large")
    if _is_int(base) and _is_int(exponent) and exponent > 0:
        if abs(base).bit_length() * exponent > MAX_INT_BITS:
            raise SandboxError("integer result too large")
    return base ** exponent


def _bounded_mul(left: Any, right: Any) -> Any:
    if _is_int(left) and _is_int(right):
        if abs(left).bit_length() + abs(right).bit_length() > MAX_INT_BITS:
            raise SandboxError("integer result too large")
    for seq, count in ((left, right), (right, left)):
        if isinstance(seq, (str, bytes, list, tuple)) and isinstance(count, int):
            if count * max(len(seq), 1) > MAX_REPEAT_LENGTH:
                raise SandboxError("sequence repetition too large")
    return left * right


ARITHMETIC: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: _bounded_mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: _bounded_pow,
}

COMPARISONS: Dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda item, container: item in container,
    ast.NotIn: lambda item, container: item not in container,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_REJECTED_SYNTAX = (
    ast.Lambda,
    ast.ListComp,
    ast.SetComp,
    ast.DictComp,
    ast.GeneratorExp,
    ast.Await,
    ast.Yield,
    ast.YieldFrom,
    ast.NamedExpr,
    ast.Starred,
    ast.JoinedStr,
)

DEFAULT_CALLABLES: Dict[str, Any] = {
    "abs": abs,
    "min": min,
    "max": max,
    "round": round,
    "len": len,
    "sum": sum,
    "int": int,
    "float": float,
    "str": str,
    "bool": bool,
}

# Literal spellings authors coming from spreadsheets and JavaScript reach for
DEFAULT_CONSTANTS: Dict[str, Any] = {
    "true": True,
    "false": False,
    "null": None,
    "none": None,
}

_RUNTIME_ERRORS = (ArithmeticError, TypeError, ValueError, KeyError, IndexError)


class _Evaluator:
    """Walks one expression tree; dispatches on the node class name."""

    def __init__(self, names: Mapping[str, Any], callables: Mapping[str, Any] | None) -> None:
        self.names = names
        self.callables = callables or {}
        self.depth = 0

    def evaluate(self, node: ast.AST) -> Any:
        handler = getattr(self, f"_{type(node).__name__}", None)
        if handler is None:
            raise SandboxError(f"unsupported expression node: {type(node).__name__}")
        self.depth += 1
        if self.depth > MAX_NESTING:
            raise SandboxError("expression too deeply nested")
        try:
            return handler(node)
        finally:
            self.depth -= 1

    def _Expression(self, node: ast.Expression) -> Any:
        return self.evaluate(node.body)

    def _Constant(self, node: ast.Constant) -> Any:
        return node.value

    def _Name(self, node: ast.Name) -> Any:
        name = node.id
        if name.startswith("_"):
            raise SandboxError(f"name {name!r} is not accessible")
        if name in self.names:
            return self.names[name]
        if name in DEFAULT_CONSTANTS:
            return DEFAULT_CONSTANTS[name]
        raise SandboxError(f"unknown name {name}")

    def _Attribute(self, node: ast.Attribute) -> Any:
        if node.attr.startswith("_"):
            raise SandboxError(f"attribute {node.attr!r} is not accessible")
        owner = self.evaluate(node.value)
        if not isinstance(owner, Mapping):
            raise SandboxError("dot access is only allowed on mappings")
        if node.attr not in owner:
            raise SandboxError(f"unknown key {node.attr}")
        return owner[node.attr]

    def _BoolOp(self, node: ast.BoolOp) -> bool:
        # short-circuits like Python but always yields a bool
        stop_on = isinstance(node.op, ast.Or)
        for operand in node.values:
            if bool(self.evaluate(operand)) is stop_on:
                return stop_on
        return not stop_on

    def _UnaryOp(self, node: ast.UnaryOp) -> Any:
        value = self.evaluate(node.operand)
        if isinstance(node.op, ast.Not):
            return not bool(value)
        if isinstance(node.op, ast.USub):
            return -value
        if isinstance(node.op, ast.UAdd):
            return +value
        raise SandboxError("unsupported unary operator")

    def _BinOp(self, node: ast.BinOp) -> Any:
        apply = ARITHMETIC.get(type(node.op))
        if apply is None:
            raise SandboxError("unsupported binary operator")
        return apply(self.evaluate(node.left), self.evaluate(node.right))

    def _Compare(self, node: ast.Compare) -> bool:
        left = self.evaluate(node.left)
        for op_node, comparator in zip(node.ops, node.comparators):
            compare = COMPARISONS.get(type(op_node))
            if compare is None:
                raise SandboxError("unsupported comparator")
            right = self.evaluate(comparator)
            if not compare(left, right):
                return False
            left = right
        return True

    def _IfExp(self, node: ast.IfExp) -> Any:
        branch = node.body if self.evaluate(node.test) else node.orelse
        return self.evaluate(branch)

    def _Call(self, node: ast.Call) -> Any:
        if not isinstance(node.func, ast.Name):
            raise SandboxError("callable references must be simple names")
        func = self.callables.get(node.func.id)
        if func is None:
            raise SandboxError("callable is not permitted")
        if not callable(func):
            raise SandboxError("call target is not callable")
        if any(keyword.arg is None for keyword in node.keywords):
            raise SandboxError("keyword unpacking (**kwargs) not permitted")
        args = [self.evaluate(arg) for arg in node.args]
        kwargs = {keyword.arg: self.evaluate(keyword.value) for keyword in node.keywords}
        return func(*args, **kwargs)

    def _Subscript(self, node: ast.Subscript) -> Any:
        container = self.evaluate(node.value)
        key = self.evaluate(node.slice)
        if not isinstance(container, (Mapping, Sequence)):
            raise SandboxError("subscript targets must be sequences or mappings")
        try:
            return container[key]
        except (KeyError, IndexError, TypeError) as exc:
            raise SandboxError(f"invalid subscript access: {exc}") from exc

    def _Slice(self, node: ast.Slice) -> slice:
        bounds = (node.lower, node.upper, node.step)
        return slice(*(self.evaluate(part) if part is not None else None for part in bounds))

    def _Tuple(self, node: ast.Tuple) -> tuple:
        return tuple(self.evaluate(element) for element in node.elts)

    def _List(self, node: ast.List) -> list:
        return [self.evaluate(element) for element in node.elts]

    def _Dict(self, node: ast.Dict) -> dict:
        if any(key is None for key in node.keys):
            raise SandboxError("dict unpacking not permitted")
        return {self.evaluate(k): self.evaluate(v) for k, v in zip(node.keys, node.values)}


def check_expression_tree(tree: ast.AST) -> None:
    """Reject syntax that is never evaluable, before any evaluation starts."""

    if any(isinstance(node, _REJECTED_SYNTAX) for node in ast.walk(tree)):
        raise SandboxError("disallowed syntax in expression")


def safe_eval_expr(
    expr: str,
    names: Mapping[str, Any],
    allowed_callables: Mapping[str, Any] | None = None,
    *,
    max_length: int = DEFAULT_MAX_EXPRESSION_LENGTH,
) -> Any:
    """Evaluate ``expr`` against ``names``.

    Supports boolean operators, chained comparisons, ternaries, indexing and
    slicing, arithmetic, dot access into mappings and calls to the names in
    ``allowed_callables``. Lambdas, comprehensions, walrus, f-strings,
    attribute access on non-mappings and underscore names are rejected.
    """

    if not isinstance(expr, str):
        raise SandboxError("expression must be a string")
    if len(expr) > max_length:
        raise SandboxError(f"expression longer than {max_length} characters")
    try:
        tree = ast.parse(expr.strip(), mode="eval")
    except SyntaxError as exc:
        raise SandboxError("invalid expression") from exc

    check_expression_tree(tree)
    return _Evaluator(names, allowed_callables).evaluate(tree)


class ExpressionSandbox:
    """Evaluator handed to the expression gate and the code sub-executor."""

    def __init__(
        self,
        *,
        allowed_callables: Optional[Mapping[str, Any]] = None,
        max_expression_length: int = DEFAULT_MAX_EXPRESSION_LENGTH,
    ) -> None:
        self.allowed_callables: Dict[str, Any] = dict(
            DEFAULT_CALLABLES if allowed_callables is None else allowed_callables
        )
        self.max_expression_length = max_expression_length

    def eval_value(self, expr: str, scope: Mapping[str, Any]) -> Any:
        return self._guarded(
            safe_eval_expr,
            expr,
            scope,
            self.allowed_callables,
            max_length=self.max_expression_length,
        )

    def eval_boolean(self, expr: str, scope: Mapping[str, Any]) -> bool:
        value = self.eval_value(expr, scope)
        if value is None or isinstance(value, (bool, int, float, str, list, tuple, dict)):
            return bool(value)
        raise SandboxError(f"condition produced non-boolean {type(value).__name__}")

    def eval_node(self, node: ast.AST, scope: Mapping[str, Any]) -> Any:
        """Evaluate an already parsed and checked expression node."""
        return self._guarded(_Evaluator(scope, self.allowed_callables).evaluate, node)

    @staticmethod
    def _guarded(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except SandboxError:
            raise
        except _RUNTIME_ERRORS as exc:
            raise SandboxError(f"evaluation failed: {exc}") from exc
