from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ruleflow.service.paths import resolve_path, write_path


class RuleType(str, Enum):
    """Kinds of rule version an operator can publish."""

    EXCEL = "excel"
    CODE = "code"
    FLOW = "flow"


class NodeMode(str, Enum):
    INLINE = "inline"
    REFERENCE = "reference"


class NodeState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass(frozen=True)
class InputField:
    type: Optional[str] = None
    required: bool = True
    description: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: Any) -> "InputField":
        if isinstance(payload, str):
            return cls(type=payload)
        payload = payload or {}
        return cls(
            type=payload.get("type"),
            required=bool(payload.get("required", True)),
            description=payload.get("description"),
        )


@dataclass(frozen=True)
class OutputField:
    path: Optional[str] = None
    code: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: Any) -> "OutputField":
        if isinstance(payload, str):
            return cls(path=payload)
        payload = payload or {}
        return cls(path=payload.get("path"), code=payload.get("code"))


@dataclass(frozen=True)
class FlowVariable:
    type: Optional[str] = None
    default: Any = None

    @classmethod
    def from_dict(cls, payload: Any) -> "FlowVariable":
        payload = payload or {}
        return cls(type=payload.get("type"), default=payload.get("default"))


@dataclass(frozen=True)
class NodeConfig:
    mode: NodeMode = NodeMode.INLINE
    version_id: Optional[str] = None
    excel_file: Optional[str] = None
    code: Optional[str] = None
    input_mapping: Dict[str, str] = field(default_factory=dict)
    output_mapping: Dict[str, str] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Optional[Mapping[str, Any]]) -> "NodeConfig":
        payload = payload or {}
        return cls(
            mode=NodeMode(payload.get("mode") or NodeMode.INLINE.value),
            version_id=payload.get("version_id"),
            excel_file=payload.get("excel_file"),
            code=payload.get("code"),
            input_mapping=dict(payload.get("input_mapping") or {}),
            output_mapping=dict(payload.get("output_mapping") or {}),
            metadata=dict(payload.get("metadata") or {}),
        )


@dataclass(frozen=True)
class FlowNode:
    id: str
    type: str
    config: NodeConfig = field(default_factory=NodeConfig)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "FlowNode":
        return cls(
            id=str(payload["id"]),
            type=str(payload.get("type", "")),
            config=NodeConfig.from_dict(payload.get("config")),
        )


@dataclass(frozen=True)
class ConnectionSource:
    node_id: str
    output_key: Optional[str] = None


@dataclass(frozen=True)
class ConnectionTarget:
    node_id: str
    input_key: Optional[str] = None
    value_expr: Any = None
    path: Optional[str] = None


def _parse_sources(payload: Any) -> Tuple[ConnectionSource, ...]:
    if isinstance(payload, list):
        return tuple(
            ConnectionSource(node_id=str(item["node"]), output_key=item.get("output"))
            for item in payload
        )
    payload = payload or {}
    node_id = str(payload["node"])
    outputs = payload.get("outputs") or {}
    if outputs:
        return tuple(ConnectionSource(node_id=node_id, output_key=key) for key in outputs)
    return (ConnectionSource(node_id=node_id, output_key=payload.get("output")),)


def _parse_targets(payload: Any) -> Tuple[ConnectionTarget, ...]:
    if isinstance(payload, list):
        return tuple(
            ConnectionTarget(
                node_id=str(item["node"]),
                input_key=item.get("input"),
                value_expr=item.get("value"),
                path=item.get("path"),
            )
            for item in payload
        )
    payload = payload or {}
    node_id = str(payload["node"])
    inputs = payload.get("inputs") or {}
    if inputs:
        return tuple(
            ConnectionTarget(
                node_id=node_id,
                input_key=key,
                value_expr=expr,
                path=payload.get("path"),
            )
            for key, expr in inputs.items()
        )
    return (
        ConnectionTarget(
            node_id=node_id,
            input_key=payload.get("input"),
            value_expr=payload.get("value"),
            path=payload.get("path"),
        ),
    )


@dataclass(frozen=True)
class Connection:
    sources: Tuple[ConnectionSource, ...]
    targets: Tuple[ConnectionTarget, ...]
    condition: Optional[str] = None
    transform: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Connection":
        return cls(
            sources=_parse_sources(payload.get("from")),
            targets=_parse_targets(payload.get("to")),
            condition=payload.get("condition") or None,
            transform=payload.get("transform") or None,
        )

    @property
    def source_node_ids(self) -> List[str]:
        seen: List[str] = []
        for source in self.sources:
            if source.node_id not in seen:
                seen.append(source.node_id)
        return seen

    @property
    def target_node_ids(self) -> List[str]:
        seen: List[str] = []
        for target in self.targets:
            if target.node_id not in seen:
                seen.append(target.node_id)
        return seen


@dataclass(frozen=True)
class FlowDefinition:
    """Immutable flow graph plus its input/output/variable declarations."""

    nodes: Tuple[FlowNode, ...]
    connections: Tuple[Connection, ...] = ()
    input_schema: Dict[str, InputField] = field(default_factory=dict)
    output_schema: Dict[str, OutputField] = field(default_factory=dict)
    variables: Dict[str, FlowVariable] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "FlowDefinition":
        graph = payload.get("flow") if isinstance(payload.get("flow"), Mapping) else payload
        return cls(
            nodes=tuple(FlowNode.from_dict(n) for n in graph.get("nodes") or []),
            connections=tuple(
                Connection.from_dict(c) for c in graph.get("connections") or []
            ),
            input_schema={
                name: InputField.from_dict(column)
                for name, column in (payload.get("input_columns") or {}).items()
            },
            output_schema={
                name: OutputField.from_dict(column)
                for name, column in (payload.get("output_columns") or {}).items()
            },
            variables={
                name: FlowVariable.from_dict(column)
                for name, column in (payload.get("variables") or {}).items()
            },
        )

    @property
    def node_map(self) -> Dict[str, FlowNode]:
        return {node.id: node for node in self.nodes}

    def incoming(self, node_id: str) -> List[Connection]:
        """Connections whose targets include ``node_id``, in list order."""
        return [c for c in self.connections if node_id in c.target_node_ids]

    def outgoing(self, node_id: str) -> List[Connection]:
        return [c for c in self.connections if node_id in c.source_node_ids]

    def upstream(self, node_id: str) -> List[str]:
        upstream: List[str] = []
        for connection in self.incoming(node_id):
            for source_id in connection.source_node_ids:
                if source_id not in upstream:
                    upstream.append(source_id)
        return upstream


@dataclass
class RuleVersion:
    """Persisted rule version record: an Excel sheet, a code rule, or a flow."""

    id: str
    category_id: str
    version: str
    type: RuleType
    is_active: bool = False
    file_path: Optional[str] = None
    code: Optional[str] = None
    input_columns: Dict[str, Any] = field(default_factory=dict)
    output_columns: Dict[str, Any] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)
    flow: Dict[str, Any] | None = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def new(
        cls,
        category_id: str,
        version: str,
        type_: RuleType | str,
        **kwargs: Any,
    ) -> "RuleVersion":
        return cls(
            id=kwargs.pop("id", None) or str(uuid.uuid4()),
            category_id=category_id,
            version=version,
            type=RuleType(type_),
            **kwargs,
        )

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RuleVersion":
        created = payload.get("created_at")
        updated = payload.get("updated_at")
        return cls(
            id=str(payload["id"]),
            category_id=str(payload["category_id"]),
            version=str(payload["version"]),
            type=RuleType(payload["type"]),
            is_active=bool(payload.get("is_active", False)),
            file_path=payload.get("file_path"),
            code=payload.get("code"),
            input_columns=dict(payload.get("input_columns") or {}),
            output_columns=dict(payload.get("output_columns") or {}),
            variables=dict(payload.get("variables") or {}),
            flow=payload.get("flow"),
            created_at=datetime.fromisoformat(created) if created else datetime.utcnow(),
            updated_at=datetime.fromisoformat(updated) if updated else datetime.utcnow(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "category_id": self.category_id,
            "version": self.version,
            "type": self.type.value,
            "is_active": self.is_active,
            "file_path": self.file_path,
            "code": self.code,
            "input_columns": self.input_columns,
            "output_columns": self.output_columns,
            "variables": self.variables,
            "flow": self.flow,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    def flow_document(self) -> Dict[str, Any]:
        return {
            "input_columns": self.input_columns,
            "output_columns": self.output_columns,
            "variables": self.variables,
            "flow": self.flow or {},
        }

    def flow_definition(self) -> FlowDefinition:
        return FlowDefinition.from_dict(self.flow_document())


@dataclass
class ExecutionContext:
    """Mutable data space for one run; node results land under ``flow``."""

    flow: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def seed(
        cls,
        inputs: Mapping[str, Any],
        variables: Mapping[str, FlowVariable],
    ) -> "ExecutionContext":
        namespace: Dict[str, Any] = {
            name: copy.deepcopy(variable.default) for name, variable in variables.items()
        }
        namespace.update(copy.deepcopy(dict(inputs)))
        return cls(flow=namespace)

    def resolve(self, path: str) -> Any:
        return resolve_path(path, self.flow)

    def write(self, path: str, value: Any) -> None:
        write_path(path, self.flow, value)

    def commit_node_result(self, node_id: str, result: Mapping[str, Any]) -> None:
        self.flow[node_id] = dict(result)

    def expression_scope(self) -> Dict[str, Any]:
        scope: Dict[str, Any] = dict(self.flow)
        scope["flow"] = self.flow
        return scope
