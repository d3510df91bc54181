"""Tests for log formatters and context injection."""

import json
import logging
import sys

from vibler.errors import NotFoundError
from vibler.logging.context import (
    clear_log_context,
    get_log_context,
    log_context,
    set_log_context,
)
from vibler.logging.formatters import ConsoleFormatter, JSONFormatter
from vibler.logging.utilities import log_exception


def make_record(msg="hello", level=logging.INFO, **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="vibler.test",
        level=level,
        pathname="test.py",
        lineno=10,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestLogContext:
    """contextvars-backed request context."""

    def test_set_and_clear(self):
        set_log_context(request_id="req-1", method="POST")
        assert get_log_context()["request_id"] == "req-1"
        assert get_log_context()["method"] == "POST"

        set_log_context(endpoint="/api/icp")
        assert get_log_context()["request_id"] == "req-1"

        clear_log_context()
        assert all(value is None for value in get_log_context().values())

    def test_log_context_restores_previous_values(self):
        set_log_context(dependency="supabase")
        with log_context(dependency="openai", request_id="req-2"):
            assert get_log_context()["dependency"] == "openai"
            assert get_log_context()["request_id"] == "req-2"

        assert get_log_context()["dependency"] == "supabase"
        assert get_log_context()["request_id"] is None


class TestJSONFormatter:
    """One JSON object per line."""

    def test_basic_fields(self):
        output = json.loads(JSONFormatter().format(make_record("Circuit open")))
        assert output["level"] == "INFO"
        assert output["logger"] == "vibler.test"
        assert output["msg"] == "Circuit open"
        assert output["ts"].endswith("Z")

    def test_extra_fields(self):
        record = make_record(
            circuit_name="openai",
            circuit_state="open",
            failure_ratio=0.8,
            unknown_field="dropped",
        )
        output = json.loads(JSONFormatter().format(record))

        assert output["circuit_name"] == "openai"
        assert output["circuit_state"] == "open"
        assert output["failure_ratio"] == 0.8
        assert "unknown_field" not in output

    def test_context_injection(self):
        with log_context(request_id="req-7", endpoint="/api/funnel"):
            output = json.loads(JSONFormatter().format(make_record()))

        assert output["request_id"] == "req-7"
        assert output["endpoint"] == "/api/funnel"
        assert "dependency" not in output

    def test_explicit_extra_wins_over_context(self):
        with log_context(endpoint="/api/funnel"):
            output = json.loads(
                JSONFormatter().format(make_record(endpoint="/api/override"))
            )
        assert output["endpoint"] == "/api/override"

    def test_error_records_include_location_and_exception(self):
        try:
            raise ValueError("broken")
        except ValueError:
            record = make_record(level=logging.ERROR)
            record.exc_info = sys.exc_info()

        output = json.loads(JSONFormatter().format(record))
        assert output["file"] == "test.py:10"
        assert "ValueError: broken" in output["exception"]

    def test_non_serializable_values_are_stringified(self):
        record = make_record(error_context={"at": object()})
        output = json.loads(JSONFormatter().format(record))
        assert "object" in output["error_context"]["at"]


class TestConsoleFormatter:
    """Human-readable output."""

    def test_plain_message(self):
        line = ConsoleFormatter().format(make_record("Starting"))
        assert line.endswith("INFO - Starting")

    def test_includes_request_id_and_dependency(self):
        with log_context(request_id="abcdef0123456789", dependency="openai"):
            line = ConsoleFormatter().format(make_record("Retrying"))

        assert "[openai]" in line
        assert "[abcdef01] Retrying" in line


class TestLogException:
    """log_exception helper."""

    def test_classified_fields_extracted(self, caplog):
        logger = logging.getLogger("vibler.tests.utilities")
        with caplog.at_level(logging.WARNING, logger="vibler.tests.utilities"):
            log_exception(
                logger,
                NotFoundError("missing"),
                "Lookup failed",
                level=logging.WARNING,
                include_traceback=False,
            )

        record = caplog.records[0]
        assert record.error_kind == "not_found"
        assert record.error_code == "RECORD_NOT_FOUND"
        assert record.error_type == "NotFoundError"
        assert record.exc_info is None

    def test_long_messages_truncated(self, caplog):
        logger = logging.getLogger("vibler.tests.utilities")
        with caplog.at_level(logging.ERROR, logger="vibler.tests.utilities"):
            log_exception(logger, RuntimeError("x" * 1000), "Failed")

        record = caplog.records[0]
        assert len(record.error_message) == 503
        assert record.exc_info is not None
