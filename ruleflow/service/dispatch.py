from __future__ import annotations

import asyncio
import concurrent.futures
import inspect
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol

from ruleflow.logging import get_logger
from ruleflow.service.errors import (
    NodeConfigurationError,
    UnresolvedReferenceError,
    UnsupportedNodeTypeError,
)
from ruleflow.service.executors import CodeExecutor, ExcelExecutor
from ruleflow.service.fs import PathTraversalError, safe_join
from ruleflow.storage.models import FlowDefinition, FlowNode, NodeMode, RuleType, RuleVersion

# (definition, inputs, depth) -> outputs of a nested flow run
FlowRunner = Callable[[FlowDefinition, Mapping[str, Any], int], Awaitable[Dict[str, Any]]]

START_NODE_TYPE = "start"
RULE_NODE_TYPES = frozenset({RuleType.EXCEL.value, RuleType.CODE.value})


class VersionRepository(Protocol):
    def find_by_id(self, version_id: str) -> Optional[RuleVersion]: ...


def as_outputs(value: Any) -> Dict[str, Any]:
    """Normalise a sub-executor return value to a flat name -> value map."""

    if isinstance(value, Mapping):
        return dict(value)
    return {"result": value}


class NodeDispatcher:
    """Maps a node's type and mode to the sub-rule invocation that computes it.

    Holds no per-run state. Blocking collaborators (the version repository and
    sync sub-executors) run on a bounded thread pool so that sibling nodes of a
    round overlap; async collaborators are awaited directly.
    """

    DEFAULT_WORKERS = 8
    MAX_WORKERS = 16

    def __init__(
        self,
        repository: VersionRepository,
        excel_executor: ExcelExecutor,
        code_executor: CodeExecutor,
        *,
        rules_root: str | Path,
        max_reference_depth: int = 8,
        workers: int = DEFAULT_WORKERS,
        flow_runner: Optional[FlowRunner] = None,
    ) -> None:
        self.repository = repository
        self.excel_executor = excel_executor
        self.code_executor = code_executor
        self.rules_root = Path(rules_root)
        self.max_reference_depth = max_reference_depth
        self.flow_runner = flow_runner
        self.logger = get_logger(__name__)
        workers = min(max(1, workers), self.MAX_WORKERS)
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="ruleflow-node"
        )
        self._executor_shutdown = False

    def bind_flow_runner(self, runner: FlowRunner) -> None:
        self.flow_runner = runner

    def shutdown(self, wait: bool = True) -> None:
        if self._executor_shutdown:
            return
        self._executor_shutdown = True
        try:
            self._executor.shutdown(wait=wait, cancel_futures=not wait)
            self.logger.info("dispatcher_executor_shutdown", wait=wait)
        except Exception as exc:
            self.logger.warning("dispatcher_executor_shutdown_error", error=str(exc))

    async def dispatch(
        self, node: FlowNode, inputs: Mapping[str, Any], *, depth: int = 0
    ) -> Dict[str, Any]:
        """Run ``node`` against its prepared ``inputs`` and return its raw result."""

        if node.type == START_NODE_TYPE:
            return dict(inputs)
        if node.type not in RULE_NODE_TYPES:
            raise UnsupportedNodeTypeError(node.id, node.type)

        config = node.config
        if config.mode == NodeMode.REFERENCE:
            if not config.version_id:
                raise NodeConfigurationError(
                    node.id, f"reference node {node.id!r} has no version_id"
                )
            record = await self._call(self.repository.find_by_id, config.version_id)
            if record is None:
                self.logger.warning(
                    "reference_unresolved", node_id=node.id, version_id=config.version_id
                )
                raise UnresolvedReferenceError(config.version_id, node_id=node.id)
            try:
                return await self.execute_version(record, inputs, depth=depth + 1)
            except UnresolvedReferenceError as exc:
                if exc.node_id is None:
                    exc.node_id = node.id
                    exc.detail.setdefault("node_id", node.id)
                raise

        if node.type == RuleType.EXCEL.value:
            if not config.excel_file:
                raise NodeConfigurationError(
                    node.id, f"inline excel node {node.id!r} has no excel_file"
                )
            try:
                file_ref = self._resolve_file(config.excel_file)
            except PathTraversalError as exc:
                raise NodeConfigurationError(node.id, f"invalid excel_file: {exc}") from exc
            return as_outputs(
                await self._call(self.excel_executor.execute, file_ref, dict(inputs))
            )

        if not config.code:
            raise NodeConfigurationError(node.id, f"inline code node {node.id!r} has no code")
        return as_outputs(await self._call(self.code_executor.execute, config.code, dict(inputs)))

    async def execute_version(
        self, record: RuleVersion, inputs: Mapping[str, Any], *, depth: int = 0
    ) -> Dict[str, Any]:
        """Run a persisted rule version according to its own declared type."""

        if depth > self.max_reference_depth:
            raise UnresolvedReferenceError(
                record.id,
                f"reference chain deeper than {self.max_reference_depth}",
            )

        if record.type == RuleType.EXCEL:
            if not record.file_path:
                raise UnresolvedReferenceError(record.id, "version has no excel file")
            try:
                file_ref = self._resolve_file(record.file_path)
            except PathTraversalError as exc:
                raise UnresolvedReferenceError(record.id, f"invalid excel file: {exc}") from exc
            return as_outputs(
                await self._call(self.excel_executor.execute, file_ref, dict(inputs))
            )

        if record.type == RuleType.CODE:
            if not record.code and not _has_output_code(record):
                raise UnresolvedReferenceError(record.id, "version has no code")
            return as_outputs(await self._call(self.code_executor.execute, record, dict(inputs)))

        if not record.flow or not (record.flow.get("nodes") or []):
            raise UnresolvedReferenceError(record.id, "version has no flow graph")
        if self.flow_runner is None:
            raise UnresolvedReferenceError(record.id, "nested flows are not enabled")
        self.logger.info("nested_flow_started", version_id=record.id, depth=depth)
        return as_outputs(await self.flow_runner(record.flow_definition(), inputs, depth))

    def _resolve_file(self, file_ref: str) -> str:
        return str(safe_join(self.rules_root, file_ref))

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        if inspect.iscoroutinefunction(func):
            return await func(*args)
        if self._executor_shutdown:
            raise RuntimeError("dispatcher has been shut down")
        future = self._executor.submit(func, *args)
        result = await asyncio.wrap_future(future)
        if inspect.isawaitable(result):
            result = await result
        return result


def _has_output_code(record: RuleVersion) -> bool:
    return any(
        isinstance(column, Mapping) and column.get("code")
        for column in (record.output_columns or {}).values()
    )
