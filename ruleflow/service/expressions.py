from __future__ import annotations

from typing import Any, Optional, Tuple

from ruleflow.logging import get_logger
from ruleflow.service.sandbox import ExpressionSandbox, SandboxError
from ruleflow.storage.models import ExecutionContext

logger = get_logger(__name__)


class ExpressionGate:
    """Evaluates edge conditions and transforms without ever failing a run.

    Conditions and transforms are user-authored, so every evaluation error is
    logged and degraded: a failing condition reads as ``False`` and a failing
    transform writes nothing.
    """

    def __init__(self, sandbox: ExpressionSandbox) -> None:
        self.sandbox = sandbox

    def evaluate_condition(
        self, expr: Optional[str], context: ExecutionContext
    ) -> bool:
        if expr is None or not str(expr).strip():
            return True
        try:
            return self.sandbox.eval_boolean(expr, context.expression_scope())
        except (SandboxError, ArithmeticError, TypeError, ValueError) as exc:
            logger.warning("condition_evaluation_failed", expr=expr, error=str(exc))
            return False

    def evaluate_transform(
        self, expr: str, context: ExecutionContext
    ) -> Tuple[bool, Any]:
        """Return ``(True, value)`` on success and ``(False, None)`` otherwise."""

        try:
            return True, self.sandbox.eval_value(expr, context.expression_scope())
        except (SandboxError, ArithmeticError, TypeError, ValueError) as exc:
            logger.warning("transform_evaluation_failed", expr=expr, error=str(exc))
            return False, None
