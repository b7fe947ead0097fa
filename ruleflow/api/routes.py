from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, HTTPException, Request

from ruleflow.api.schemas import (
    CancelResponse,
    Envelope,
    ExecuteResponse,
    VersionSummary,
    validate_json_depth,
)
from ruleflow.logging import get_correlation_id, get_logger
from ruleflow.service.rules import ExecutionOutcome
from ruleflow.service.runtime import get_runtime
from ruleflow.storage.models import RuleVersion

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

# How often an in-flight execution checks whether its client went away
DISCONNECT_POLL_SECONDS = 0.5

# Registry for in-flight executions - maps request_id to cancel_event
# Used by POST /executions/{request_id}/cancel
_active_requests: Dict[str, asyncio.Event] = {}
_active_requests_lock = asyncio.Lock()


async def _register_cancel_event(request_id: str, cancel_event: asyncio.Event) -> bool:
    """Register ``cancel_event``; False if ``request_id`` is already in flight."""
    async with _active_requests_lock:
        if request_id in _active_requests:
            return False
        _active_requests[request_id] = cancel_event
        return True


async def _unregister_cancel_event(request_id: str, cancel_event: asyncio.Event) -> None:
    async with _active_requests_lock:
        if _active_requests.get(request_id) is cancel_event:
            del _active_requests[request_id]


async def _cancel_request(request_id: str) -> bool:
    """Cancel an active execution by request_id. Returns True if cancelled."""
    async with _active_requests_lock:
        cancel_event = _active_requests.get(request_id)
        if cancel_event and not cancel_event.is_set():
            cancel_event.set()
            return True
        return False


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _require_inputs(inputs: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not inputs:
        raise _http_error("validation_error", "input values are required", 400)
    try:
        validate_json_depth(inputs)
    except ValueError as exc:
        raise _http_error("validation_error", str(exc), 400) from exc
    return inputs


async def _watch_disconnect(request: Request, cancel_event: asyncio.Event) -> None:
    while not cancel_event.is_set():
        if await request.is_disconnected():
            logger.info("client_disconnected", path=request.url.path)
            cancel_event.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


async def _execute(request: Request, record: RuleVersion, inputs: Dict[str, Any]) -> Envelope:
    runtime = get_runtime()
    request_id = get_correlation_id() or record.id
    cancel_event = asyncio.Event()
    if not await _register_cancel_event(request_id, cancel_event):
        logger.warning("execution_request_id_in_use", request_id=request_id)
        raise _http_error(
            "conflict", "an execution with this request id is already running", 409
        )
    watcher = asyncio.create_task(_watch_disconnect(request, cancel_event))
    try:
        outcome: ExecutionOutcome = await runtime.rules.execute_version(
            record, inputs, cancel_event=cancel_event
        )
    finally:
        watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher
        await _unregister_cancel_event(request_id, cancel_event)

    logger.info(
        "execution_completed",
        version_id=record.id,
        type=record.type.value,
        rounds=outcome.rounds,
        duration_ms=round(outcome.duration_ms, 2),
    )
    data = ExecuteResponse(
        version=VersionSummary.from_record(outcome.version),
        results=outcome.results,
        rounds=outcome.rounds,
        duration_ms=outcome.duration_ms,
    )
    return Envelope(status="ok", data=data.model_dump(mode="json"), request_id=request_id)


@router.post("/categories/{category_id}/execute", response_model=Envelope, tags=["execution"])
async def execute_active_version(
    category_id: str,
    request: Request,
    inputs: Optional[Dict[str, Any]] = Body(default=None),
):
    """Execute the active version of a category."""
    payload = _require_inputs(inputs)
    record = get_runtime().rules.get_active(category_id)
    return await _execute(request, record, payload)


@router.post(
    "/categories/{category_id}/latest/execute", response_model=Envelope, tags=["execution"]
)
async def execute_latest_version(
    category_id: str,
    request: Request,
    inputs: Optional[Dict[str, Any]] = Body(default=None),
):
    payload = _require_inputs(inputs)
    record = get_runtime().rules.get_latest(category_id)
    return await _execute(request, record, payload)


@router.post(
    "/categories/{category_id}/versions/{version_id}/execute",
    response_model=Envelope,
    tags=["execution"],
)
async def execute_category_version(
    category_id: str,
    version_id: str,
    request: Request,
    inputs: Optional[Dict[str, Any]] = Body(default=None),
):
    payload = _require_inputs(inputs)
    record = get_runtime().rules.get_version(version_id, category_id=category_id)
    return await _execute(request, record, payload)


@router.post("/versions/{version_id}/execute", response_model=Envelope, tags=["execution"])
async def execute_version(
    version_id: str,
    request: Request,
    inputs: Optional[Dict[str, Any]] = Body(default=None),
):
    payload = _require_inputs(inputs)
    record = get_runtime().rules.get_version(version_id)
    return await _execute(request, record, payload)


@router.post("/executions/{request_id}/cancel", response_model=Envelope, tags=["execution"])
async def cancel_execution(request_id: str):
    """Cancel an in-flight execution started with ``X-Request-ID: request_id``.

    Returns:
        cancelled: True if the execution was found and signalled
    """
    cancelled = await _cancel_request(request_id)
    if cancelled:
        logger.info("execution_cancel_requested", request_id=request_id)
        message = "execution cancelled"
    else:
        logger.info("execution_cancel_not_found", request_id=request_id)
        message = "no in-flight execution with this request id"
    data = CancelResponse(request_id=request_id, cancelled=cancelled, message=message)
    return Envelope(status="ok", data=data.model_dump())
