from __future__ import annotations

import logging
import os
import re
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, List, Optional, Sequence

import structlog

# Request id of the execute call being served; doubles as its cancel handle
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def configure_logging(
    level: Optional[str] = None,
    *,
    json_output: Optional[bool] = None,
    development_mode: Optional[bool] = None,
) -> None:
    """Configure structlog for the engine.

    Unset arguments fall back to ``LOG_LEVEL``, ``LOG_JSON`` and
    ``LOG_DEV_MODE``. Development mode (or ``json_output=False``) renders
    colored console lines; otherwise every event is one JSON object carrying
    an ISO timestamp, the level, the correlation id and any values bound with
    :func:`bound_execution_context`.
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", True)
    if development_mode is None:
        development_mode = _env_flag("LOG_DEV_MODE", False)

    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def bound_execution_context(**values: Any) -> Iterator[None]:
    """Attach ``values`` to every event logged inside the block.

    Used around a rule execution so that scheduler, dispatcher and nested
    flow events all carry the version being run.
    """
    with structlog.contextvars.bound_contextvars(**values):
        yield


def log_flow_trace(rounds: Sequence[Sequence[str]], logger: Optional[Any] = None) -> None:
    """Log which nodes ran in which round, plus the widest round."""
    log = logger or get_logger("ruleflow.flow")
    widest = max((len(nodes) for nodes in rounds), default=0)
    log.info(
        "flow_trace",
        rounds=[list(nodes) for nodes in rounds],
        round_count=len(rounds),
        max_parallelism=widest,
    )


# Workbook locations, interpreter frames and object addresses stay in the logs only
_REDACTIONS = [
    re.compile(r"(?:/[\w.\-]+){2,}\.(?:xlsx|xlsm|xls|csv|json)", re.IGNORECASE),
    re.compile(r"(?i)/(?:home|root|var|etc|usr|opt|tmp|srv)/\S+"),
    re.compile(r"(?i)\b[a-z]:\\\S+"),
    re.compile(r'File "[^"]+", line \d+'),
    re.compile(r"(?i)traceback \(most recent call last\)"),
    re.compile(r"\bat 0x[0-9a-fA-F]+"),
]
MAX_ERROR_MESSAGE_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip host details from an error message before it leaves the API."""
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _REDACTIONS:
        result = pattern.sub(replacement, result)
    if len(result) > MAX_ERROR_MESSAGE_LENGTH:
        result = result[: MAX_ERROR_MESSAGE_LENGTH - 3] + "..."
    return result
