from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ruleflow.api.schemas import Envelope, ErrorBody
from ruleflow.logging import get_correlation_id, get_logger, sanitize_error_message
from ruleflow.service.errors import EngineError, ServiceError
from ruleflow.service.fs import PathTraversalError
from ruleflow.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# Fallback error codes for responses that do not carry their own
_STATUS_TO_CODE = {
    400: "validation_error",
    404: "not_found",
    409: "conflict",
    422: "unprocessable",
    499: "cancelled",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    body = ErrorBody(
        code=code or _error_code_for_status(status_code),
        message=message,
        details=details,
    )
    envelope = Envelope(status="error", error=body)
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def _log_failure(request: Request, event: str, status_code: int, **fields: Any) -> None:
    log = logger.error if status_code >= 500 else logger.warning
    log(event, path=request.url.path, method=request.method, status_code=status_code, **fields)


def _engine_fields(exc: ServiceError) -> dict:
    # node and version ids make failed flow runs traceable from one log line
    if not isinstance(exc, EngineError):
        return {}
    fields = {"node_id": exc.node_id}
    version_id: Optional[str] = exc.detail.get("version_id")
    if version_id:
        fields["version_id"] = version_id
    return fields


def _envelope_detail(exc: HTTPException) -> Optional[dict]:
    """Return the ``error`` object of an envelope-shaped HTTPException detail."""
    detail = exc.detail
    if isinstance(detail, dict) and isinstance(detail.get("error"), dict):
        return detail["error"]
    return None


def register_exception_handlers(app: FastAPI) -> None:
    """Map engine, store and request errors onto the error envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        _log_failure(
            request,
            "service_error",
            exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            **_engine_fields(exc),
        )
        return _error_response(
            exc.status_code,
            sanitize_error_message(exc.message),
            exc.detail,
            code=exc.error_code,
        )

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        _log_failure(request, "store_constraint_violation", 409, message=exc.message)
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(PathTraversalError)
    async def handle_path_traversal(request: Request, exc: PathTraversalError):
        _log_failure(
            request,
            "path_traversal_rejected",
            400,
            error=str(exc),
            client_ip=request.client.host if request.client else None,
        )
        return _error_response(400, str(exc), code="validation_error")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        problems = [
            {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg")}
            for err in exc.errors()
        ]
        _log_failure(request, "request_validation_error", 400, errors=problems)
        return _error_response(400, "invalid request body", problems, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        error = _envelope_detail(exc)
        if error is None:
            message = str(exc.detail or "http error")
            _log_failure(request, "http_error", exc.status_code, message=message)
            return _error_response(exc.status_code, message)
        _log_failure(
            request,
            "http_error",
            exc.status_code,
            error_code=error.get("code"),
            message=error.get("message"),
        )
        return _error_response(
            exc.status_code,
            error.get("message", "http error"),
            error.get("details"),
            code=error.get("code"),
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
