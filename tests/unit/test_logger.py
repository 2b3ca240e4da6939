"""Unit tests for the structlog helpers: secret masking, request id, timing."""

from __future__ import annotations

import pytest
import structlog
from structlog.testing import capture_logs

from newsportal.utils.logger import (
    REDACTED,
    PerformanceLogger,
    clear_request_id,
    redact_secrets,
    set_request_id,
)


class TestRedactSecrets:
    def test_credential_fields_masked(self) -> None:
        event = {"event": "x", "key": "a" * 64, "admin_token": "hunter2", "key_id": "01HXYZ"}
        result = redact_secrets(None, "info", event)

        assert result["key"] == REDACTED
        assert result["admin_token"] == REDACTED
        assert result["key_id"] == "01HXYZ"

    def test_none_left_alone(self) -> None:
        assert redact_secrets(None, "info", {"event": "x", "api_key": None})["api_key"] is None


class TestRequestId:
    def test_bound_then_cleared(self) -> None:
        set_request_id("req-1")
        assert structlog.contextvars.get_contextvars()["request_id"] == "req-1"

        clear_request_id()
        assert "request_id" not in structlog.contextvars.get_contextvars()


class TestPerformanceLogger:
    def test_slow_block_logged_as_warning(self) -> None:
        with capture_logs() as captured:
            with PerformanceLogger("task:backup", structlog.get_logger("timing"), slow_ms=-1.0):
                pass

        assert captured[0]["event"] == "task:backup completed"
        assert captured[0]["log_level"] == "warning"
        assert captured[0]["duration_ms"] >= 0

    def test_failure_logged_and_propagated(self) -> None:
        with capture_logs() as captured:
            with pytest.raises(RuntimeError):
                with PerformanceLogger("task:cleanup", structlog.get_logger("timing")):
                    raise RuntimeError("disk full")

        assert captured[0]["event"] == "task:cleanup failed"
        assert captured[0]["log_level"] == "error"
        assert captured[0]["error"] == "disk full"
