"""Tests for the single-line JSON log formatter."""

from __future__ import annotations

import json
import logging
import sys

import pytest

from meter_api.middleware.json_formatter import JSONFormatter, configure_structured_logging


def _record(msg: str = "request completed", level: int = logging.INFO, exc_info=None, **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="meter_api.access",
        level=level,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )
    for name, value in extra.items():
        setattr(record, name, value)
    return record


@pytest.fixture
def formatter() -> JSONFormatter:
    return JSONFormatter()


class TestJSONFormatter:
    def test_base_fields(self, formatter: JSONFormatter) -> None:
        output = formatter.format(_record(level=logging.WARNING))
        data = json.loads(output)

        assert "\n" not in output
        assert data["level"] == "WARNING"
        assert data["logger"] == "meter_api.access"
        assert data["message"] == "request completed"
        assert data["timestamp"].endswith("+00:00")

    def test_request_context_copied(self, formatter: JSONFormatter) -> None:
        request = {"method": "POST", "path": "/v1/pdf/admit", "status_code": 429, "tier": "public"}
        data = json.loads(formatter.format(_record(request=request)))
        assert data["request"] == request
        assert "job" not in data

    def test_job_summary_copied(self, formatter: JSONFormatter) -> None:
        job = {"job": "expiry_watcher", "lock_acquired": True, "counts": {"disabled": 3}}
        data = json.loads(formatter.format(_record("expiry_watcher complete", job=job)))
        assert data["job"]["counts"] == {"disabled": 3}
        assert "request" not in data

    def test_exception_traceback(self, formatter: JSONFormatter) -> None:
        try:
            raise RuntimeError("ledger unavailable")
        except RuntimeError:
            exc_info = sys.exc_info()

        data = json.loads(formatter.format(_record("failed", logging.ERROR, exc_info=exc_info)))
        assert "Traceback" in data["exc_info"]
        assert "RuntimeError: ledger unavailable" in data["exc_info"]

    def test_non_serialisable_values_stringified(self, formatter: JSONFormatter) -> None:
        data = json.loads(formatter.format(_record(request={"started": object})))
        assert "object" in data["request"]["started"]


def test_configure_structured_logging_replaces_handlers() -> None:
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        configure_structured_logging(logging.DEBUG)
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JSONFormatter)
        assert root.level == logging.DEBUG
    finally:
        root.handlers = saved_handlers
        root.setLevel(saved_level)
