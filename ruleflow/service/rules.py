from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, Mapping, Optional, Protocol, Union

from ruleflow.logging import bound_execution_context, get_logger
from ruleflow.service.dispatch import NodeDispatcher
from ruleflow.service.errors import (
    FlowCancelledError,
    NotFoundError,
    RuleExecutionError,
    ServiceError,
    ValidationError,
)
from ruleflow.service.flow_validation import validate_inputs
from ruleflow.service.scheduler import FlowEngine
from ruleflow.storage.models import InputField, RuleType, RuleVersion

logger = get_logger(__name__)


class RuleVersionStore(Protocol):
    def find_by_id(self, version_id: str) -> Optional[RuleVersion]: ...

    def find_active(self, category_id: str) -> Optional[RuleVersion]: ...

    def find_latest(self, category_id: str) -> Optional[RuleVersion]: ...


@dataclass
class ExecutionOutcome:
    version: RuleVersion
    results: Dict[str, Any]
    duration_ms: float
    rounds: Optional[int] = None


class RuleService:
    """Looks up rule versions and executes them whatever their type."""

    def __init__(
        self,
        repository: RuleVersionStore,
        dispatcher: NodeDispatcher,
        engine: FlowEngine,
    ) -> None:
        self.repository = repository
        self.dispatcher = dispatcher
        self.engine = engine

    def get_version(self, version_id: str, *, category_id: Optional[str] = None) -> RuleVersion:
        record = self.repository.find_by_id(version_id)
        if record is None or (category_id is not None and record.category_id != category_id):
            raise NotFoundError("version not found", detail={"version_id": version_id})
        return record

    def get_active(self, category_id: str) -> RuleVersion:
        record = self.repository.find_active(category_id)
        if record is None:
            raise NotFoundError(
                "no active version found for category", detail={"category_id": category_id}
            )
        return record

    def get_latest(self, category_id: str) -> RuleVersion:
        record = self.repository.find_latest(category_id)
        if record is None:
            raise NotFoundError(
                "no versions found for category", detail={"category_id": category_id}
            )
        return record

    async def execute_version(
        self,
        version: Union[str, RuleVersion],
        inputs: Mapping[str, Any],
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ExecutionOutcome:
        """Execute an Excel, code or flow version against ``inputs``.

        Flow versions run through the scheduler; Excel and code versions are
        validated against their declared input columns and dispatched directly.
        """

        record = self.get_version(version) if isinstance(version, str) else version
        if not isinstance(inputs, Mapping) or not inputs:
            raise ValidationError("input values are required")

        with bound_execution_context(version_id=record.id, category_id=record.category_id):
            logger.info("rule_execution_started", type=record.type.value)
            if record.type == RuleType.FLOW:
                run = await self.engine.execute_flow(
                    record.flow_definition(), inputs, cancel_event=cancel_event
                )
                return ExecutionOutcome(
                    version=record,
                    results=run.outputs,
                    duration_ms=run.duration_ms,
                    rounds=run.rounds,
                )
            return await self._execute_single(record, inputs, cancel_event)

    async def _execute_single(
        self,
        record: RuleVersion,
        inputs: Mapping[str, Any],
        cancel_event: Optional[asyncio.Event],
    ) -> ExecutionOutcome:
        started = time.monotonic()
        schema = {
            name: InputField.from_dict(column)
            for name, column in (record.input_columns or {}).items()
        }
        validate_inputs(schema, inputs)
        try:
            results = await _until_cancelled(
                self.dispatcher.execute_version(record, inputs), cancel_event
            )
        except ServiceError:
            raise
        except Exception as exc:
            logger.error(
                "rule_execution_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise RuleExecutionError(record.id, exc) from exc
        return ExecutionOutcome(
            version=record,
            results=results,
            duration_ms=(time.monotonic() - started) * 1000,
        )


async def _until_cancelled(call: Awaitable[Any], cancel_event: Optional[asyncio.Event]) -> Any:
    """Await ``call`` unless ``cancel_event`` fires first.

    On cancellation the call is cancelled and awaited before
    :class:`FlowCancelledError` is raised.
    """
    if cancel_event is None:
        return await call
    if cancel_event.is_set():
        if asyncio.iscoroutine(call):
            call.close()
        raise FlowCancelledError()

    task = asyncio.ensure_future(call)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
    if task.cancelled():
        logger.info("rule_execution_cancelled")
        raise FlowCancelledError()
    return task.result()
