"""Sub-executor interfaces and the restricted code interpreter.

Excel formula evaluation lives outside this package: anything implementing
:class:`ExcelExecutor` can be wired into the runtime. Code rules run through
:class:`SandboxCodeExecutor`, a small statement interpreter layered on the
expression sandbox rather than a host-language ``eval``.
"""
from __future__ import annotations

import ast
from typing import Any, Dict, List, Mapping, Optional, Protocol, Union

from ruleflow.logging import get_logger
from ruleflow.service.errors import CodeEvaluationError, ExcelEvaluationError
from ruleflow.service.sandbox import ExpressionSandbox, SandboxError, check_expression_tree
from ruleflow.storage.models import RuleVersion

logger = get_logger(__name__)

MAX_CODE_STATEMENTS = 200


class ExcelExecutor(Protocol):
    """Evaluates a workbook's output cells for the given input cells."""

    def execute(self, file_ref: str, inputs: Mapping[str, Any]) -> Dict[str, Any]: ...


class CodeExecutor(Protocol):
    def execute(
        self, code: Union[str, RuleVersion], inputs: Mapping[str, Any]
    ) -> Dict[str, Any]: ...


class UnconfiguredExcelExecutor:
    """Placeholder wired when no spreadsheet evaluator is installed."""

    def execute(self, file_ref: str, inputs: Mapping[str, Any]) -> Dict[str, Any]:
        logger.error("excel_evaluator_missing", file_ref=file_ref)
        raise ExcelEvaluationError(
            "no Excel evaluator is configured for this deployment"
        )


class SandboxCodeExecutor:
    """Runs code rules written as a short sequence of sandboxed statements.

    Supported statements are ``name = expr``, ``name += expr`` (and the other
    arithmetic augmented assignments), a bare expression and ``return expr``.
    Inputs are visible by name and as the ``inputs`` mapping. A ``return`` or
    trailing bare expression produces ``{"result": value}``; without one, every
    assigned name becomes an output.
    """

    def __init__(self, sandbox: ExpressionSandbox) -> None:
        self.sandbox = sandbox

    def execute(
        self, code: Union[str, RuleVersion], inputs: Mapping[str, Any]
    ) -> Dict[str, Any]:
        if isinstance(code, RuleVersion):
            return self._execute_version(code, inputs)
        return self.run_program(code, inputs)

    def _execute_version(
        self, version: RuleVersion, inputs: Mapping[str, Any]
    ) -> Dict[str, Any]:
        if version.code:
            return self.run_program(version.code, inputs)
        results: Dict[str, Any] = {}
        for key, column in (version.output_columns or {}).items():
            if isinstance(column, Mapping) and column.get("code"):
                outputs = self.run_program(column["code"], inputs)
                results[key] = outputs.get("result", outputs)
        if not results:
            raise CodeEvaluationError(f"version {version.id} has no code to run")
        return results

    def run_program(self, code: str, inputs: Mapping[str, Any]) -> Dict[str, Any]:
        body = self._parse(code)
        scope: Dict[str, Any] = dict(inputs)
        scope["inputs"] = dict(inputs)
        assigned: List[str] = []

        for index, stmt in enumerate(body):
            is_last = index == len(body) - 1
            if isinstance(stmt, ast.Assign):
                name = self._target_name(stmt.targets)
                scope[name] = self._eval(stmt.value, scope)
                if name not in assigned:
                    assigned.append(name)
            elif isinstance(stmt, ast.AugAssign):
                name = self._target_name([stmt.target])
                if name not in scope:
                    raise CodeEvaluationError(f"name {name!r} used before assignment")
                expr = ast.BinOp(
                    left=ast.Name(id=name, ctx=ast.Load()), op=stmt.op, right=stmt.value
                )
                scope[name] = self._eval(expr, scope)
                if name not in assigned:
                    assigned.append(name)
            elif isinstance(stmt, ast.Return):
                value = self._eval(stmt.value, scope) if stmt.value is not None else None
                return {"result": value}
            elif isinstance(stmt, ast.Expr) and is_last:
                return {"result": self._eval(stmt.value, scope)}
            elif isinstance(stmt, (ast.Expr, ast.Pass)):
                continue
            else:
                raise CodeEvaluationError(
                    f"unsupported statement {type(stmt).__name__} on line {stmt.lineno}"
                )

        return {name: scope[name] for name in assigned}

    def _parse(self, code: str) -> List[ast.stmt]:
        if not isinstance(code, str) or not code.strip():
            raise CodeEvaluationError("code is empty")
        if len(code) > self.sandbox.max_expression_length * 10:
            raise CodeEvaluationError("code is too long")
        try:
            tree = ast.parse(code.strip(), mode="exec")
        except SyntaxError as exc:
            raise CodeEvaluationError(f"invalid code: {exc.msg}") from exc
        if len(tree.body) > MAX_CODE_STATEMENTS:
            raise CodeEvaluationError("too many statements")
        try:
            check_expression_tree(tree)
        except SandboxError as exc:
            raise CodeEvaluationError(str(exc)) from exc
        return tree.body

    @staticmethod
    def _target_name(targets: List[ast.expr]) -> str:
        if len(targets) != 1 or not isinstance(targets[0], ast.Name):
            raise CodeEvaluationError("only single-name assignments are supported")
        name = targets[0].id
        if name.startswith("_") or name == "inputs":
            raise CodeEvaluationError(f"cannot assign to {name!r}")
        return name

    def _eval(self, node: ast.AST, scope: Dict[str, Any]) -> Any:
        try:
            return self.sandbox.eval_node(node, scope)
        except SandboxError as exc:
            raise CodeEvaluationError(str(exc)) from exc


def describe_executor(executor: Optional[object]) -> str:
    return type(executor).__name__ if executor is not None else "none"
