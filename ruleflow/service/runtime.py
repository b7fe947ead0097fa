from __future__ import annotations

import threading
from typing import Optional

from ruleflow.config import Settings, get_settings, reset_settings_cache
from ruleflow.logging import get_logger
from ruleflow.service.binder import DataBinder
from ruleflow.service.dispatch import NodeDispatcher
from ruleflow.service.executors import (
    CodeExecutor,
    ExcelExecutor,
    SandboxCodeExecutor,
    UnconfiguredExcelExecutor,
    describe_executor,
)
from ruleflow.service.expressions import ExpressionGate
from ruleflow.service.rules import RuleService
from ruleflow.service.sandbox import ExpressionSandbox
from ruleflow.service.scheduler import FlowEngine
from ruleflow.storage.memory import MemoryStore

logger = get_logger(__name__)


class Runtime:
    """Wires the engine's collaborators together for the FastAPI app.

    Every collaborator is passed explicitly to the component that needs it;
    tests can substitute the store or either sub-executor.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[MemoryStore] = None,
        excel_executor: Optional[ExcelExecutor] = None,
        code_executor: Optional[CodeExecutor] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        try:
            self.store = store or MemoryStore(seed_path=self.settings.versions_seed_path)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.sandbox = ExpressionSandbox(
            max_expression_length=self.settings.max_expression_length
        )
        self.gate = ExpressionGate(self.sandbox)
        self.excel_executor = excel_executor or UnconfiguredExcelExecutor()
        self.code_executor = code_executor or SandboxCodeExecutor(self.sandbox)
        self.dispatcher = NodeDispatcher(
            self.store,
            self.excel_executor,
            self.code_executor,
            rules_root=self.settings.rules_root,
            max_reference_depth=self.settings.max_reference_depth,
            workers=self.settings.executor_workers,
        )
        self.binder = DataBinder(self.gate)
        self.engine = FlowEngine(
            self.dispatcher,
            self.binder,
            self.gate,
            node_timeout_seconds=self.settings.node_timeout_seconds,
            max_round_factor=self.settings.max_round_factor,
        )
        self.rules = RuleService(self.store, self.dispatcher, self.engine)
        logger.info(
            "runtime_initialized",
            excel_executor=describe_executor(self.excel_executor),
            code_executor=describe_executor(self.code_executor),
            workers=self.settings.executor_workers,
        )

    def close(self) -> None:
        self.dispatcher.shutdown(wait=False)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the unlocked fast path serves an existing
    runtime, the locked slow path prevents two threads creating one each.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
