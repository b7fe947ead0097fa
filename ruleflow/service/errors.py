from __future__ import annotations

from typing import Any, Dict, Optional, Sequence


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` that API clients can branch on:
    - validation_error (400)
    - not_found (404)
    - unresolved_reference, unsupported_node_type, node_execution_failed,
      rule_execution_failed, incomplete_execution, cycle_limit_exceeded (422)
    - cancelled (499)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Inputs or flow document failed validation (400)."""
    status_code = 400
    error_code = "validation_error"


class FlowValidationError(ValidationError):
    """The flow definition itself is malformed."""

    def __init__(self, message: str, errors: Sequence[str] | None = None) -> None:
        self.errors = list(errors or [])
        super().__init__(message, detail={"errors": self.errors})


class NodeConfigurationError(ValidationError):
    """A node is missing the payload its type and mode require."""

    def __init__(self, node_id: str, message: str) -> None:
        self.node_id = node_id
        super().__init__(message, detail={"node_id": node_id})


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class EngineError(ServiceError):
    """A flow run was aborted. ``node_id`` is set when a single node is to blame."""

    status_code = 422
    error_code = "unprocessable"

    def __init__(
        self,
        message: str,
        *,
        node_id: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.node_id = node_id
        payload = dict(detail or {})
        if node_id is not None:
            payload.setdefault("node_id", node_id)
        super().__init__(message, detail=payload)


class UnresolvedReferenceError(EngineError):
    """A reference-mode node points at a missing or incomplete rule version."""

    error_code = "unresolved_reference"

    def __init__(
        self,
        version_id: Optional[str],
        reason: str = "rule version not found",
        *,
        node_id: Optional[str] = None,
    ) -> None:
        self.version_id = version_id
        self.reason = reason
        super().__init__(
            f"unresolved reference to version {version_id!r}: {reason}",
            node_id=node_id,
            detail={"version_id": version_id, "reason": reason},
        )


class UnsupportedNodeTypeError(EngineError):
    error_code = "unsupported_node_type"

    def __init__(self, node_id: str, node_type: str) -> None:
        self.node_type = node_type
        super().__init__(
            f"unsupported node type {node_type!r} on node {node_id!r}",
            node_id=node_id,
            detail={"type": node_type},
        )


class NodeExecutionError(EngineError):
    """Wraps a sub-executor failure with the originating node id."""

    error_code = "node_execution_failed"

    def __init__(self, node_id: str, cause: BaseException) -> None:
        self.cause = cause
        super().__init__(
            f"node {node_id!r} failed: {cause}",
            node_id=node_id,
            detail={"cause": type(cause).__name__},
        )


class RuleExecutionError(EngineError):
    """An Excel or code rule version failed when executed directly."""

    error_code = "rule_execution_failed"

    def __init__(self, version_id: str, cause: BaseException) -> None:
        self.version_id = version_id
        self.cause = cause
        super().__init__(
            f"rule version {version_id!r} failed: {cause}",
            detail={"version_id": version_id, "cause": type(cause).__name__},
        )


class IncompleteExecutionError(EngineError):
    """No pending node could run: dependencies or conditions are unsatisfiable."""

    error_code = "incomplete_execution"

    def __init__(self, stuck_node_ids: Sequence[str]) -> None:
        self.stuck_node_ids = list(stuck_node_ids)
        super().__init__(
            f"flow stalled with unexecuted nodes: {', '.join(self.stuck_node_ids)}",
            detail={"stuck_node_ids": self.stuck_node_ids},
        )


class CycleLimitExceededError(EngineError):
    error_code = "cycle_limit_exceeded"

    def __init__(
        self,
        rounds: int,
        limit: int,
        node_ids: Sequence[str] | None = None,
    ) -> None:
        self.rounds = rounds
        self.limit = limit
        self.node_ids = list(node_ids or [])
        message = f"flow exceeded {limit} scheduling rounds"
        if self.node_ids:
            message = f"{message}; dependency cycle through {', '.join(self.node_ids)}"
        super().__init__(
            message,
            detail={"rounds": rounds, "limit": limit, "node_ids": self.node_ids},
        )


class FlowCancelledError(EngineError):
    """The caller cancelled an in-flight run; nothing was returned."""

    status_code = 499
    error_code = "cancelled"

    def __init__(self, message: str = "flow execution cancelled") -> None:
        super().__init__(message)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class SubExecutorError(Exception):
    """Raised by Excel/code sub-executors when evaluation fails."""


class ExcelEvaluationError(SubExecutorError):
    pass


class CodeEvaluationError(SubExecutorError):
    pass


__all__ = [
    "ServiceError",
    "ValidationError",
    "FlowValidationError",
    "NodeConfigurationError",
    "NotFoundError",
    "EngineError",
    "UnresolvedReferenceError",
    "UnsupportedNodeTypeError",
    "NodeExecutionError",
    "RuleExecutionError",
    "IncompleteExecutionError",
    "CycleLimitExceededError",
    "FlowCancelledError",
    "ServerError",
    "SubExecutorError",
    "ExcelEvaluationError",
    "CodeEvaluationError",
]
