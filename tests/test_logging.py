import structlog

from ruleflow.logging import (
    MAX_ERROR_MESSAGE_LENGTH,
    bound_execution_context,
    log_flow_trace,
    sanitize_error_message,
)


class CapturingLogger:
    def __init__(self):
        self.events = []

    def info(self, event, **fields):
        self.events.append((event, fields))


def test_sanitize_redacts_workbook_paths_and_frames():
    message = (
        'failed to open /srv/ruleflow/rules/pricing/rates.xlsx '
        'File "/app/engine.py", line 12 in <object at 0x7f3a9c>'
    )

    cleaned = sanitize_error_message(message)

    assert "rates.xlsx" not in cleaned
    assert "line 12" not in cleaned
    assert "0x7f3a9c" not in cleaned
    assert cleaned.startswith("failed to open [redacted]")


def test_sanitize_caps_length_and_handles_empty():
    assert len(sanitize_error_message("x" * 2000)) == MAX_ERROR_MESSAGE_LENGTH
    assert sanitize_error_message("") == "An error occurred"
    assert sanitize_error_message("node 'calc' failed: unknown name y") == (
        "node 'calc' failed: unknown name y"
    )


def test_flow_trace_summarizes_rounds():
    logger = CapturingLogger()

    log_flow_trace([["start"], ["a", "b", "c"], ["total"]], logger=logger)

    assert logger.events == [
        (
            "flow_trace",
            {
                "rounds": [["start"], ["a", "b", "c"], ["total"]],
                "round_count": 3,
                "max_parallelism": 3,
            },
        )
    ]


def test_execution_context_is_bound_only_inside_block():
    with bound_execution_context(version_id="v1"):
        assert structlog.contextvars.get_contextvars()["version_id"] == "v1"

    assert "version_id" not in structlog.contextvars.get_contextvars()
