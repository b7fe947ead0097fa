from __future__ import annotations

from typing import Any, Dict, Mapping

from ruleflow.logging import get_logger
from ruleflow.service.expressions import ExpressionGate
from ruleflow.service.paths import resolve_path
from ruleflow.storage.models import (
    Connection,
    ConnectionTarget,
    ExecutionContext,
    FlowDefinition,
    FlowNode,
)

logger = get_logger(__name__)

_ABSENT = object()


class DataBinder:
    """Moves values between the shared context and a node's inputs/outputs.

    Input precedence is deterministic: the node's own ``input_mapping`` is
    applied first, then the bindings of every incoming connection in
    connection-list order. Later writes to the same key win.
    """

    def __init__(self, gate: ExpressionGate) -> None:
        self.gate = gate

    def prepare_inputs(
        self,
        definition: FlowDefinition,
        node: FlowNode,
        context: ExecutionContext,
    ) -> Dict[str, Any]:
        inputs: Dict[str, Any] = {}
        for target_key, source_path in node.config.input_mapping.items():
            inputs[target_key] = context.resolve(source_path)

        for connection in definition.incoming(node.id):
            for index, target in enumerate(connection.targets):
                if target.node_id != node.id or not target.input_key:
                    continue
                inputs[target.input_key] = self._binding_value(
                    connection, index, target, context
                )
        return inputs

    @staticmethod
    def _binding_value(
        connection: Connection,
        index: int,
        target: ConnectionTarget,
        context: ExecutionContext,
    ) -> Any:
        if target.value_expr is not None and not isinstance(target.value_expr, str):
            # non-string binding values are literals
            return target.value_expr
        if target.value_expr:
            return context.resolve(target.value_expr)
        if target.path:
            return context.resolve(target.path)
        if not connection.sources:
            return None
        source = connection.sources[index] if index < len(connection.sources) else connection.sources[0]
        if source.output_key:
            return context.resolve(f"{source.node_id}.{source.output_key}")
        return context.resolve(source.node_id)

    def commit_outputs(
        self,
        definition: FlowDefinition,
        node: FlowNode,
        result: Mapping[str, Any],
        context: ExecutionContext,
    ) -> None:
        """Merge a node's result into the context and fire outgoing transforms."""

        context.commit_node_result(node.id, result)

        for source_path, target_path in node.config.output_mapping.items():
            value = resolve_path(source_path, result, _ABSENT)
            if value is _ABSENT:
                value = context.resolve(source_path)
            context.write(target_path, value)

        for connection in definition.outgoing(node.id):
            if not connection.transform:
                continue
            write_paths = [t.path for t in connection.targets if t.path]
            if not write_paths:
                logger.debug("transform_without_target", node_id=node.id)
                continue
            ok, value = self.gate.evaluate_transform(connection.transform, context)
            if not ok:
                continue
            for path in write_paths:
                context.write(path, value)
