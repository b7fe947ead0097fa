"""Round-barrier flow scheduler.

Each round computes the executable set (pending nodes whose upstream nodes
have all committed and whose incoming conditions all hold), prepares every
member's inputs, runs the members concurrently as asyncio tasks and, once all
of them have finished, commits their results in node-id order. No context
mutation happens while node tasks are in flight.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

from ruleflow.logging import get_logger, log_flow_trace
from ruleflow.service.binder import DataBinder
from ruleflow.service.dispatch import NodeDispatcher
from ruleflow.service.errors import (
    CycleLimitExceededError,
    FlowCancelledError,
    IncompleteExecutionError,
    NodeExecutionError,
    UnresolvedReferenceError,
    UnsupportedNodeTypeError,
    ValidationError,
)
from ruleflow.service.expressions import ExpressionGate
from ruleflow.service.flow_validation import (
    validate_flow_definition,
    validate_flow_document,
    validate_inputs,
)
from ruleflow.storage.models import (
    ExecutionContext,
    FlowDefinition,
    FlowNode,
    NodeState,
)

DEFAULT_NODE_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_ROUND_FACTOR = 2


@dataclass
class FlowRunResult:
    outputs: Dict[str, Any]
    rounds: int
    node_states: Dict[str, NodeState]
    duration_ms: float
    trace: List[List[str]] = field(default_factory=list)


@dataclass
class _RunState:
    definition: FlowDefinition
    context: ExecutionContext
    states: Dict[str, NodeState]
    upstream: Dict[str, List[str]]
    depth: int
    trace: List[List[str]] = field(default_factory=list)

    def pending(self) -> List[str]:
        return sorted(nid for nid, state in self.states.items() if state == NodeState.PENDING)


class FlowEngine:
    """Executes flow definitions against input values.

    Collaborators are injected at construction; the engine keeps no state
    between runs and each run owns its own :class:`ExecutionContext`.
    """

    def __init__(
        self,
        dispatcher: NodeDispatcher,
        binder: DataBinder,
        gate: ExpressionGate,
        *,
        node_timeout_seconds: Optional[float] = DEFAULT_NODE_TIMEOUT_SECONDS,
        max_round_factor: int = DEFAULT_MAX_ROUND_FACTOR,
    ) -> None:
        self.dispatcher = dispatcher
        self.binder = binder
        self.gate = gate
        self.node_timeout_seconds = node_timeout_seconds if node_timeout_seconds else None
        self.max_round_factor = max(1, max_round_factor)
        self.logger = get_logger(__name__)
        if dispatcher.flow_runner is None:
            dispatcher.bind_flow_runner(self._run_nested_flow)

    async def _run_nested_flow(
        self, definition: FlowDefinition, inputs: Mapping[str, Any], depth: int
    ) -> Dict[str, Any]:
        result = await self.execute_flow(definition, inputs, depth=depth)
        return result.outputs

    async def execute_flow(
        self,
        definition: Union[FlowDefinition, Mapping[str, Any]],
        inputs: Mapping[str, Any],
        *,
        cancel_event: Optional[asyncio.Event] = None,
        depth: int = 0,
    ) -> FlowRunResult:
        """Run ``definition`` to completion and map the final context to outputs.

        Raises a :class:`~ruleflow.service.errors.ServiceError` subclass on
        validation failure, node failure, stall or cancellation via
        ``cancel_event``. Cancelling the calling task cancels every in-flight
        node task and propagates ``asyncio.CancelledError``. No partial outputs
        are returned in any failure case.
        """

        started = time.monotonic()
        if not isinstance(definition, FlowDefinition):
            validate_flow_document(definition)
            definition = FlowDefinition.from_dict(definition)
        validate_flow_definition(definition)
        validate_inputs(definition.input_schema, inputs)

        run = _RunState(
            definition=definition,
            context=ExecutionContext.seed(inputs, definition.variables),
            states={node.id: NodeState.PENDING for node in definition.nodes},
            upstream={node.id: definition.upstream(node.id) for node in definition.nodes},
            depth=depth,
        )
        node_map = definition.node_map
        limit = self.max_round_factor * len(definition.nodes)
        rounds = 0
        self.logger.info(
            "flow_started", node_count=len(definition.nodes), depth=depth, round_limit=limit
        )

        while run.pending():
            self._raise_if_cancelled(cancel_event, rounds)
            # every round commits at least one node, so this only trips if that stops holding
            if rounds >= limit:
                self.logger.error("flow_round_limit_exceeded", rounds=rounds, limit=limit)
                raise CycleLimitExceededError(rounds, limit, run.pending())

            executable = self._executable_set(run)
            if not executable:
                self._raise_stalled(run, rounds, limit)

            self.logger.info("flow_round_started", round=rounds, nodes=executable)
            prepared = {
                node_id: self.binder.prepare_inputs(definition, node_map[node_id], run.context)
                for node_id in executable
            }
            results = await self._run_round(run, node_map, prepared, cancel_event, rounds)
            self._commit_round(run, node_map, results)
            run.trace.append(executable)
            rounds += 1

        outputs = self._map_outputs(definition, run.context)
        duration_ms = (time.monotonic() - started) * 1000
        log_flow_trace(run.trace, logger=self.logger)
        self.logger.info(
            "flow_completed", rounds=rounds, duration_ms=round(duration_ms, 2), depth=depth
        )
        return FlowRunResult(
            outputs=outputs,
            rounds=rounds,
            node_states=dict(run.states),
            duration_ms=duration_ms,
            trace=run.trace,
        )

    def _executable_set(self, run: _RunState) -> List[str]:
        """Pending nodes whose upstream nodes committed and whose conditions all hold.

        Every incoming condition must be true; one satisfied edge does not
        outvote a false one. A node gated by a false condition stays pending
        and ends the run as stuck unless a later commit makes it true.
        """
        executable: List[str] = []
        for node_id in run.pending():
            upstream = run.upstream[node_id]
            if any(run.states.get(up) != NodeState.COMMITTED for up in upstream):
                continue
            conditions_hold = all(
                self.gate.evaluate_condition(connection.condition, run.context)
                for connection in run.definition.incoming(node_id)
            )
            if conditions_hold:
                executable.append(node_id)
        return executable

    def _raise_stalled(self, run: _RunState, rounds: int, limit: int) -> None:
        stuck = run.pending()
        cycle = _find_cycle(stuck, run.upstream)
        if cycle:
            self.logger.error("flow_cycle_detected", nodes=cycle, rounds=rounds)
            raise CycleLimitExceededError(rounds, limit, cycle)
        self.logger.error("flow_stalled", stuck_nodes=stuck, rounds=rounds)
        raise IncompleteExecutionError(stuck)

    def _raise_if_cancelled(self, cancel_event: Optional[asyncio.Event], rounds: int) -> None:
        if cancel_event is not None and cancel_event.is_set():
            self.logger.info("flow_cancelled", round=rounds)
            raise FlowCancelledError()

    async def _run_node(self, node: FlowNode, inputs: Dict[str, Any], depth: int) -> Dict[str, Any]:
        call = self.dispatcher.dispatch(node, inputs, depth=depth)
        if self.node_timeout_seconds is None:
            return await call
        return await asyncio.wait_for(call, timeout=self.node_timeout_seconds)

    async def _run_round(
        self,
        run: _RunState,
        node_map: Dict[str, FlowNode],
        prepared: Dict[str, Dict[str, Any]],
        cancel_event: Optional[asyncio.Event],
        round_index: int,
    ) -> Dict[str, Dict[str, Any]]:
        tasks: Dict[str, asyncio.Task] = {}
        for node_id, inputs in prepared.items():
            run.states[node_id] = NodeState.RUNNING
            tasks[node_id] = asyncio.create_task(
                self._run_node(node_map[node_id], inputs, run.depth),
                name=f"flow-node:{node_id}",
            )
        owner = {task: node_id for node_id, task in tasks.items()}
        cancel_waiter = (
            asyncio.create_task(cancel_event.wait()) if cancel_event is not None else None
        )
        pending = set(tasks.values())
        results: Dict[str, Dict[str, Any]] = {}
        try:
            while pending:
                waiting = pending | ({cancel_waiter} if cancel_waiter else set())
                done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
                if cancel_waiter is not None and cancel_waiter in done:
                    self.logger.info("flow_cancelled", round=round_index)
                    raise FlowCancelledError()
                pending -= done

                failures = sorted(
                    (owner[task], _task_error(task))
                    for task in done
                    if _task_error(task) is not None
                )
                if failures:
                    node_id, exc = failures[0]
                    run.states[node_id] = NodeState.FAILED
                    self.logger.error(
                        "node_failed",
                        node_id=node_id,
                        round=round_index,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                    error = self._node_failure(node_id, exc)
                    if error is exc:
                        raise error
                    raise error from exc
                for task in done:
                    results[owner[task]] = task.result()
        except asyncio.CancelledError:
            self.logger.info("flow_cancelled", round=round_index, reason="task_cancelled")
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            unfinished = [task for task in tasks.values() if not task.done()]
            for task in unfinished:
                task.cancel()
            if unfinished:
                await asyncio.gather(*unfinished, return_exceptions=True)
        return results

    @staticmethod
    def _node_failure(node_id: str, exc: BaseException) -> Exception:
        if isinstance(exc, (UnresolvedReferenceError, UnsupportedNodeTypeError)):
            if exc.node_id is None:
                exc.node_id = node_id
                exc.detail.setdefault("node_id", node_id)
            return exc
        if isinstance(exc, ValidationError):
            exc.detail.setdefault("node_id", node_id)
            return exc
        if isinstance(exc, asyncio.TimeoutError):
            return NodeExecutionError(node_id, TimeoutError("node timed out"))
        return NodeExecutionError(node_id, exc)

    def _commit_round(
        self,
        run: _RunState,
        node_map: Dict[str, FlowNode],
        results: Dict[str, Dict[str, Any]],
    ) -> None:
        for node_id in sorted(results):
            try:
                self.binder.commit_outputs(
                    run.definition, node_map[node_id], results[node_id], run.context
                )
            except (ValueError, TypeError) as exc:
                run.states[node_id] = NodeState.FAILED
                self.logger.error("node_commit_failed", node_id=node_id, error=str(exc))
                raise NodeExecutionError(node_id, exc) from exc
            run.states[node_id] = NodeState.COMMITTED

    @staticmethod
    def _map_outputs(definition: FlowDefinition, context: ExecutionContext) -> Dict[str, Any]:
        return {
            name: context.resolve(column.path or f"$.flow.{name}")
            for name, column in definition.output_schema.items()
        }


def _task_error(task: asyncio.Task) -> Optional[BaseException]:
    if task.cancelled():
        return asyncio.CancelledError("node task was cancelled")
    return task.exception()


def _find_cycle(node_ids: List[str], upstream: Mapping[str, List[str]]) -> List[str]:
    """Return one dependency cycle among ``node_ids`` or an empty list."""

    candidates = set(node_ids)
    visiting: List[str] = []
    done: set[str] = set()

    def visit(node_id: str) -> List[str]:
        if node_id in visiting:
            return visiting[visiting.index(node_id):]
        if node_id in done:
            return []
        visiting.append(node_id)
        for parent in upstream.get(node_id, []):
            if parent in candidates:
                cycle = visit(parent)
                if cycle:
                    return cycle
        visiting.pop()
        done.add(node_id)
        return []

    for node_id in sorted(candidates):
        cycle = visit(node_id)
        if cycle:
            return list(reversed(cycle))
    return []
