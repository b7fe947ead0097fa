"""Tests for round-barrier flow scheduling."""

from __future__ import annotations

import asyncio

import pytest

from ruleflow.service.binder import DataBinder
from ruleflow.service.dispatch import NodeDispatcher
from ruleflow.service.errors import (
    CycleLimitExceededError,
    FlowCancelledError,
    FlowValidationError,
    IncompleteExecutionError,
    NodeExecutionError,
    UnresolvedReferenceError,
    UnsupportedNodeTypeError,
    ValidationError,
)
from ruleflow.service.executors import SandboxCodeExecutor
from ruleflow.service.expressions import ExpressionGate
from ruleflow.service.sandbox import ExpressionSandbox
from ruleflow.service.scheduler import FlowEngine
from ruleflow.storage.memory import MemoryStore
from ruleflow.storage.models import NodeState, RuleType, RuleVersion


class DoublingExcel:
    """Async Excel stand-in computing ``result = x * 2``."""

    def __init__(self):
        self.calls = []

    async def execute(self, file_ref, inputs):
        self.calls.append(dict(inputs))
        await asyncio.sleep(0)
        return {"result": inputs["x"] * 2}


class RecordingCode:
    """Wraps the sandbox executor and records lifecycle events per program."""

    def __init__(self, delays=None):
        self.inner = SandboxCodeExecutor(ExpressionSandbox())
        self.delays = delays or {}
        self.events = []
        self.inputs = []

    async def execute(self, code, inputs):
        label = code if isinstance(code, str) else code.id
        self.events.append(("start", label))
        self.inputs.append((label, dict(inputs)))
        try:
            await asyncio.sleep(self.delays.get(label, 0.01))
        except asyncio.CancelledError:
            self.events.append(("cancelled", label))
            raise
        self.events.append(("end", label))
        return self.inner.execute(code, inputs)


def _engine(store=None, code=None, excel=None, tmp_path="/tmp", **kwargs):
    sandbox = ExpressionSandbox()
    gate = ExpressionGate(sandbox)
    dispatcher = NodeDispatcher(
        store or MemoryStore(),
        excel or DoublingExcel(),
        code or RecordingCode(),
        rules_root=tmp_path,
        workers=4,
    )
    return FlowEngine(dispatcher, DataBinder(gate), gate, **kwargs)


def _code(node_id, code, **config):
    return {"id": node_id, "type": "code", "config": {"code": code, **config}}


def _edge(source, target, **extra):
    return {"from": {"node": source}, "to": {"node": target}, **extra}


START = {"id": "start", "type": "start"}


async def test_start_excel_code_scenario(tmp_path):
    excel = DoublingExcel()
    code = RecordingCode()
    engine = _engine(code=code, excel=excel, tmp_path=tmp_path)
    document = {
        "input_columns": {"x": {"type": "number", "required": True}},
        "output_columns": {"total": {"path": "$.flow.total"}, "e1Result": {}},
        "flow": {
            "nodes": [
                START,
                {
                    "id": "E1",
                    "type": "excel",
                    "config": {
                        "excel_file": "e1.xlsx",
                        "input_mapping": {"x": "$.flow.x"},
                        "output_mapping": {"result": "$.flow.e1Result"},
                    },
                },
                _code(
                    "C1",
                    "return val + 1",
                    input_mapping={"val": "$.flow.e1Result"},
                    output_mapping={"result": "$.flow.total"},
                ),
            ],
            "connections": [_edge("start", "E1"), _edge("E1", "C1")],
        },
    }

    result = await engine.execute_flow(document, {"x": 10})

    assert excel.calls == [{"x": 10}]
    assert code.inputs == [("return val + 1", {"val": 20})]
    assert result.outputs == {"total": 21, "e1Result": 20}
    assert result.rounds == 3
    assert result.trace == [["start"], ["E1"], ["C1"]]
    assert set(result.node_states.values()) == {NodeState.COMMITTED}


async def test_dependent_node_starts_after_upstream_commits():
    code = RecordingCode()
    engine = _engine(code=code)
    document = {
        "nodes": [
            START,
            _code("a", "return 1"),
            _code("b", "return a.result + 1", input_mapping={"a": "$.flow.a"}),
        ],
        "connections": [_edge("start", "a"), _edge("a", "b")],
    }

    await engine.execute_flow(document, {"seed": 1})

    assert code.events.index(("end", "return 1")) < code.events.index(
        ("start", "return a.result + 1")
    )


async def test_independent_nodes_run_in_the_same_round():
    code = RecordingCode(delays={"return 1": 0.05, "return 2": 0.05})
    engine = _engine(code=code)
    document = {
        "output_columns": {"a": {"path": "$.flow.a.result"}, "b": {"path": "$.flow.b.result"}},
        "flow": {
            "nodes": [START, _code("a", "return 1"), _code("b", "return 2")],
            "connections": [_edge("start", "a"), _edge("start", "b")],
        },
    }

    result = await engine.execute_flow(document, {"seed": 1})

    assert result.trace == [["start"], ["a", "b"]]
    starts = [i for i, (kind, _) in enumerate(code.events) if kind == "start"]
    ends = [i for i, (kind, _) in enumerate(code.events) if kind == "end"]
    assert max(starts) < min(ends)
    assert result.outputs == {"a": 1, "b": 2}


async def test_condition_gates_the_target_node():
    engine = _engine()
    document = {
        "output_columns": {"label": {"path": "$.flow.big.result"}},
        "flow": {
            "nodes": [START, _code("big", "return 'big'")],
            "connections": [_edge("start", "big", condition="amount > 100")],
        },
    }

    result = await engine.execute_flow(document, {"amount": 150})
    assert result.outputs == {"label": "big"}

    with pytest.raises(IncompleteExecutionError) as exc_info:
        await engine.execute_flow(document, {"amount": 5})
    assert exc_info.value.stuck_node_ids == ["big"]


async def test_failing_condition_expression_counts_as_false():
    engine = _engine()
    document = {
        "nodes": [START, _code("a", "return 1")],
        "connections": [_edge("start", "a", condition="missing.field > 1")],
    }

    with pytest.raises(IncompleteExecutionError):
        await engine.execute_flow(document, {"seed": 1})


async def test_cycle_is_reported_instead_of_hanging():
    engine = _engine()
    document = {
        "nodes": [START, _code("a", "return 1"), _code("b", "return 2")],
        "connections": [_edge("start", "a"), _edge("a", "b"), _edge("b", "a")],
    }

    with pytest.raises(CycleLimitExceededError) as exc_info:
        await engine.execute_flow(document, {"seed": 1})

    assert sorted(exc_info.value.node_ids) == ["a", "b"]
    assert exc_info.value.limit == 6
    assert exc_info.value.rounds <= exc_info.value.limit


async def test_self_loop_is_a_cycle():
    engine = _engine()
    document = {"nodes": [_code("a", "return 1")], "connections": [_edge("a", "a")]}

    with pytest.raises(CycleLimitExceededError):
        await engine.execute_flow(document, {"seed": 1})


async def test_missing_reference_fails_without_outputs():
    engine = _engine()
    document = {
        "output_columns": {"total": {}},
        "flow": {
            "nodes": [
                START,
                {"id": "ref", "type": "code", "config": {"mode": "reference", "version_id": "nope"}},
            ],
            "connections": [_edge("start", "ref")],
        },
    }

    with pytest.raises(UnresolvedReferenceError) as exc_info:
        await engine.execute_flow(document, {"seed": 1})

    assert exc_info.value.node_id == "ref"
    assert exc_info.value.detail["version_id"] == "nope"


async def test_unsupported_node_type_aborts_run():
    engine = _engine()
    document = {"nodes": [START, {"id": "w", "type": "webhook"}], "connections": [_edge("start", "w")]}

    with pytest.raises(UnsupportedNodeTypeError) as exc_info:
        await engine.execute_flow(document, {"seed": 1})

    assert exc_info.value.node_id == "w"


async def test_first_failure_cancels_siblings():
    code = RecordingCode(delays={"return 1 / 0": 0, "return 2": 1.0})
    engine = _engine(code=code)
    document = {
        "nodes": [START, _code("a", "return 1 / 0"), _code("b", "return 2")],
        "connections": [_edge("start", "a"), _edge("start", "b")],
    }

    with pytest.raises(NodeExecutionError) as exc_info:
        await engine.execute_flow(document, {"seed": 1})

    assert exc_info.value.node_id == "a"
    assert ("cancelled", "return 2") in code.events
    assert ("end", "return 2") not in code.events


async def test_node_timeout_surfaces_as_node_execution_error():
    code = RecordingCode(delays={"return 1": 1.0})
    engine = _engine(code=code, node_timeout_seconds=0.05)
    document = {"nodes": [START, _code("slow", "return 1")], "connections": [_edge("start", "slow")]}

    with pytest.raises(NodeExecutionError) as exc_info:
        await engine.execute_flow(document, {"seed": 1})

    assert exc_info.value.node_id == "slow"
    assert isinstance(exc_info.value.cause, TimeoutError)


async def test_cancel_event_cancels_in_flight_nodes():
    code = RecordingCode(delays={"return 1": 1.0})
    engine = _engine(code=code)
    document = {"nodes": [START, _code("slow", "return 1")], "connections": [_edge("start", "slow")]}
    cancel_event = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, cancel_event.set)

    with pytest.raises(FlowCancelledError):
        await engine.execute_flow(document, {"seed": 1}, cancel_event=cancel_event)

    assert ("cancelled", "return 1") in code.events


async def test_cancelling_the_caller_cancels_node_tasks():
    code = RecordingCode(delays={"return 1": 1.0})
    engine = _engine(code=code)
    document = {"nodes": [START, _code("slow", "return 1")], "connections": [_edge("start", "slow")]}

    task = asyncio.create_task(engine.execute_flow(document, {"seed": 1}))
    await asyncio.sleep(0.05)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert ("cancelled", "return 1") in code.events


async def test_transform_failure_leaves_target_untouched():
    engine = _engine()
    document = {
        "variables": {"note": {"type": "string", "default": "unchanged"}},
        "output_columns": {"note": {}, "doubled": {}},
        "flow": {
            "nodes": [START, _code("a", "return 21"), _code("b", "return 0")],
            "connections": [
                _edge("start", "a"),
                {
                    "from": {"node": "a"},
                    "to": {"node": "b", "path": "$.flow.note"},
                    "transform": "a.result + 'x'",
                },
                {
                    "from": {"node": "a"},
                    "to": {"node": "b", "path": "$.flow.doubled"},
                    "transform": "a.result * 2",
                },
            ],
        },
    }

    result = await engine.execute_flow(document, {"seed": 1})

    assert result.outputs == {"note": "unchanged", "doubled": 42}


async def test_inputs_override_variable_defaults_and_missing_outputs_are_none():
    engine = _engine()
    document = {
        "variables": {"rate": {"default": 0.1}, "floor": {"default": 5}},
        "output_columns": {"rate": {}, "floor": {}, "absent": {"path": "$.flow.nothing.here"}},
        "flow": {"nodes": [START], "connections": []},
    }

    result = await engine.execute_flow(document, {"rate": 0.3})

    assert result.outputs == {"rate": 0.3, "floor": 5, "absent": None}


async def test_input_validation_happens_before_round_zero():
    code = RecordingCode()
    engine = _engine(code=code)
    document = {
        "input_columns": {"x": {"type": "number"}, "name": {"type": "string", "required": False}},
        "flow": {"nodes": [_code("a", "return 1")], "connections": []},
    }

    with pytest.raises(ValidationError) as exc_info:
        await engine.execute_flow(document, {"name": "n"})
    assert "missing required input: x" in exc_info.value.detail["errors"]

    with pytest.raises(ValidationError):
        await engine.execute_flow(document, {"x": "ten"})
    with pytest.raises(ValidationError):
        await engine.execute_flow(document, {"x": True})
    assert code.events == []


async def test_malformed_documents_are_rejected():
    engine = _engine()

    with pytest.raises(FlowValidationError):
        await engine.execute_flow({"nodes": [{"type": "code"}]}, {})
    with pytest.raises(FlowValidationError):
        await engine.execute_flow(
            {"nodes": [START, START], "connections": []}, {}
        )
    with pytest.raises(FlowValidationError):
        await engine.execute_flow({"nodes": [START], "connections": [_edge("start", "ghost")]}, {})


async def test_reference_node_runs_nested_flow_version():
    store = MemoryStore()
    store.save_version(
        RuleVersion.new(
            "tax",
            "1.0",
            RuleType.FLOW,
            id="inner-flow",
            input_columns={"amount": {"type": "number"}},
            output_columns={"tax": {"path": "$.flow.calc.result"}},
            flow={
                "nodes": [
                    {"id": "start", "type": "start"},
                    _code("calc", "return amount * 0.25", input_mapping={"amount": "$.flow.amount"}),
                ],
                "connections": [_edge("start", "calc")],
            },
        )
    )
    engine = _engine(store=store)
    document = {
        "output_columns": {"tax": {"path": "$.flow.taxes.tax"}},
        "flow": {
            "nodes": [
                START,
                {
                    "id": "taxes",
                    "type": "code",
                    "config": {
                        "mode": "reference",
                        "version_id": "inner-flow",
                        "input_mapping": {"amount": "$.flow.amount"},
                    },
                },
            ],
            "connections": [_edge("start", "taxes")],
        },
    }

    result = await engine.execute_flow(document, {"amount": 40})

    assert result.outputs == {"tax": 10.0}


async def test_reference_node_runs_code_version():
    store = MemoryStore()
    store.save_version(
        RuleVersion.new("fees", "2.0", RuleType.CODE, id="fee-code", code="return amount + 3")
    )
    engine = _engine(store=store)
    document = {
        "output_columns": {"fee": {"path": "$.flow.fee"}},
        "flow": {
            "nodes": [
                START,
                {
                    "id": "f",
                    "type": "code",
                    "config": {
                        "mode": "reference",
                        "version_id": "fee-code",
                        "input_mapping": {"amount": "amount"},
                        "output_mapping": {"result": "fee"},
                    },
                },
            ],
            "connections": [_edge("start", "f")],
        },
    }

    result = await engine.execute_flow(document, {"amount": 7})

    assert result.outputs == {"fee": 10}


async def test_node_runs_only_when_every_incoming_condition_holds():
    engine = _engine()
    document = {
        "nodes": [START, _code("a", "return 1"), _code("b", "return 2"), _code("c", "return 3")],
        "connections": [
            _edge("start", "a"),
            _edge("start", "b"),
            _edge("a", "c", condition="1 < 2"),
            _edge("b", "c", condition="1 > 2"),
        ],
    }

    with pytest.raises(IncompleteExecutionError) as exc_info:
        await engine.execute_flow(document, {"seed": 1})

    assert exc_info.value.stuck_node_ids == ["c"]


async def test_oversized_condition_arithmetic_fails_closed():
    engine = _engine()
    document = {
        "nodes": [START, _code("a", "return 1")],
        "connections": [_edge("start", "a", condition="((7 ** 256) ** 256) ** 256 > 0")],
    }

    with pytest.raises(IncompleteExecutionError) as exc_info:
        await engine.execute_flow(document, {"seed": 1})

    assert exc_info.value.stuck_node_ids == ["a"]


async def test_literal_connection_inputs_reach_the_node():
    engine = _engine()
    document = {
        "output_columns": {"tripled": {"path": "$.flow.c.result"}},
        "flow": {
            "nodes": [START, _code("c", "return x * 3")],
            "connections": [
                {"from": {"node": "start"}, "to": {"node": "c", "inputs": {"x": 5}}}
            ],
        },
    }

    result = await engine.execute_flow(document, {"seed": 1})

    assert result.outputs == {"tripled": 15}


async def test_node_can_clear_a_context_value():
    engine = _engine()
    document = {
        "output_columns": {"x": {"path": "$.flow.x"}},
        "flow": {
            "nodes": [START, _code("clear", "x = null", output_mapping={"x": "$.flow.x"})],
            "connections": [_edge("start", "clear")],
        },
    }

    result = await engine.execute_flow(document, {"x": 10})

    assert result.outputs == {"x": None}


async def test_output_mapping_into_a_list_input_replaces_it():
    engine = _engine()
    document = {
        "output_columns": {"total": {"path": "$.flow.items.total"}},
        "flow": {
            "nodes": [
                START,
                _code("sum", "return 5", output_mapping={"result": "$.flow.items.total"}),
            ],
            "connections": [_edge("start", "sum")],
        },
    }

    result = await engine.execute_flow(document, {"items": [1, 2]})

    assert result.outputs == {"total": 5}


async def test_same_round_siblings_see_pre_round_context_and_commit_by_id():
    code = RecordingCode()
    engine = _engine(code=code)
    document = {
        "output_columns": {"shared": {"path": "$.flow.shared"}},
        "flow": {
            "nodes": [
                START,
                _code(
                    "b",
                    "return 2",
                    input_mapping={"other": "$.flow.a.result"},
                    output_mapping={"result": "$.flow.shared"},
                ),
                _code(
                    "a",
                    "return 1",
                    input_mapping={"other": "$.flow.b.result"},
                    output_mapping={"result": "$.flow.shared"},
                ),
            ],
            "connections": [_edge("start", "b"), _edge("start", "a")],
        },
    }

    result = await engine.execute_flow(document, {"seed": 1})

    assert result.outputs == {"shared": 2}
    assert result.trace == [["start"], ["a", "b"]]
    assert dict(code.inputs) == {"return 1": {"other": None}, "return 2": {"other": None}}


def test_node_states_cover_the_run_lifecycle():
    assert [state.value for state in NodeState] == ["pending", "running", "committed", "failed"]
