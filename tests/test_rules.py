"""Tests for rule version lookup and direct execution."""

from __future__ import annotations

import asyncio

import pytest

from ruleflow.service.errors import (
    FlowCancelledError,
    NotFoundError,
    RuleExecutionError,
    UnresolvedReferenceError,
    ValidationError,
)
from ruleflow.service.runtime import Runtime
from ruleflow.storage.memory import MemoryStore
from ruleflow.storage.models import RuleType, RuleVersion


class FixedRateExcel:
    def execute(self, file_ref, inputs):
        if "broken" in file_ref:
            raise RuntimeError("formula error in C4")
        return {"premium": inputs["base"] * 1.1}


@pytest.fixture
def runtime():
    runtime = Runtime(store=MemoryStore(), excel_executor=FixedRateExcel())
    yield runtime
    runtime.close()


def _save(runtime, *args, **kwargs):
    return runtime.store.save_version(RuleVersion.new(*args, **kwargs))


def test_lookup_by_category(runtime):
    active = _save(runtime, "pricing", "1.0", RuleType.CODE, code="return 1", is_active=True)

    assert runtime.rules.get_active("pricing") is active
    assert runtime.rules.get_latest("pricing") is active
    assert runtime.rules.get_version(active.id, category_id="pricing") is active


def test_lookup_failures_are_not_found(runtime):
    record = _save(runtime, "pricing", "1.0", RuleType.CODE, code="return 1")

    with pytest.raises(NotFoundError):
        runtime.rules.get_active("pricing")
    with pytest.raises(NotFoundError):
        runtime.rules.get_latest("shipping")
    with pytest.raises(NotFoundError):
        runtime.rules.get_version(record.id, category_id="shipping")
    with pytest.raises(NotFoundError):
        runtime.rules.get_version("missing")


@pytest.mark.asyncio
async def test_code_version_executes_directly(runtime):
    record = _save(
        runtime,
        "pricing",
        "1.0",
        RuleType.CODE,
        code="fee = amount * 0.02\ntotal = amount + fee",
        input_columns={"amount": {"type": "number"}},
    )

    outcome = await runtime.rules.execute_version(record.id, {"amount": 100})

    assert outcome.results == {"fee": 2.0, "total": 102.0}
    assert outcome.rounds is None
    assert outcome.version is record


@pytest.mark.asyncio
async def test_excel_version_resolves_under_rules_root(runtime):
    record = _save(
        runtime, "insurance", "1.0", RuleType.EXCEL, file_path="insurance/premium.xlsx"
    )

    outcome = await runtime.rules.execute_version(record, {"base": 100})

    assert outcome.results == {"premium": pytest.approx(110.0)}


@pytest.mark.asyncio
async def test_sub_executor_failure_becomes_rule_execution_error(runtime):
    record = _save(runtime, "insurance", "1.0", RuleType.EXCEL, file_path="broken.xlsx")

    with pytest.raises(RuleExecutionError) as exc_info:
        await runtime.rules.execute_version(record, {"base": 1})

    assert exc_info.value.status_code == 422
    assert exc_info.value.detail["version_id"] == record.id
    assert isinstance(exc_info.value.cause, RuntimeError)


@pytest.mark.asyncio
async def test_excel_version_without_file_is_unresolved(runtime):
    record = _save(runtime, "insurance", "1.0", RuleType.EXCEL)

    with pytest.raises(UnresolvedReferenceError):
        await runtime.rules.execute_version(record, {"base": 1})


@pytest.mark.asyncio
async def test_inputs_are_required_and_typed(runtime):
    record = _save(
        runtime,
        "pricing",
        "1.0",
        RuleType.CODE,
        code="return amount",
        input_columns={"amount": {"type": "number"}},
    )

    with pytest.raises(ValidationError):
        await runtime.rules.execute_version(record, {})
    with pytest.raises(ValidationError) as exc_info:
        await runtime.rules.execute_version(record, {"amount": "ten"})

    assert exc_info.value.detail["errors"] == [
        "invalid type for input amount: expected number, got str"
    ]


@pytest.mark.asyncio
async def test_flow_version_reports_rounds(runtime):
    record = _save(
        runtime,
        "routing",
        "1.0",
        RuleType.FLOW,
        input_columns={"weight": {"type": "number"}},
        output_columns={"cost": {"path": "$.flow.cost"}},
        flow={
            "nodes": [
                {"id": "start", "type": "start"},
                {
                    "id": "price",
                    "type": "code",
                    "config": {
                        "code": "return weight * 3",
                        "input_mapping": {"weight": "$.flow.weight"},
                        "output_mapping": {"result": "$.flow.cost"},
                    },
                },
            ],
            "connections": [{"from": {"node": "start"}, "to": {"node": "price"}}],
        },
    )

    outcome = await runtime.rules.execute_version(record, {"weight": 2})

    assert outcome.results == {"cost": 6}
    assert outcome.rounds == 2


class SlowExcel:
    def __init__(self):
        self.started = asyncio.Event()
        self.cancelled = False

    async def execute(self, file_ref, inputs):
        self.started.set()
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return {"premium": 1}


@pytest.mark.asyncio
async def test_cancel_event_stops_direct_execution():
    excel = SlowExcel()
    runtime = Runtime(store=MemoryStore(), excel_executor=excel)
    try:
        record = _save(runtime, "insurance", "1.0", RuleType.EXCEL, file_path="slow.xlsx")
        cancel_event = asyncio.Event()

        async def cancel_once_started():
            await excel.started.wait()
            cancel_event.set()

        canceller = asyncio.create_task(cancel_once_started())
        with pytest.raises(FlowCancelledError) as exc_info:
            await asyncio.wait_for(
                runtime.rules.execute_version(record, {"base": 1}, cancel_event=cancel_event),
                timeout=5,
            )
        await canceller

        assert exc_info.value.status_code == 499
        assert excel.cancelled is True
    finally:
        runtime.close()


@pytest.mark.asyncio
async def test_preset_cancel_event_skips_direct_execution(runtime):
    record = _save(runtime, "pricing", "1.0", RuleType.CODE, code="return 1")
    cancel_event = asyncio.Event()
    cancel_event.set()

    with pytest.raises(FlowCancelledError):
        await runtime.rules.execute_version(record, {"amount": 1}, cancel_event=cancel_event)
