"""Structured logging for the news portal service.

Every module logs through ``get_logger(__name__)`` with key/value events.
The request id bound by the HTTP middleware rides along in structlog's
context variables, and secret-bearing fields are masked before rendering so
a plaintext API key or admin token never reaches the log stream.
"""

import logging
import sys
import time
from typing import Any, Optional

import structlog
from structlog.types import EventDict, Processor

REDACTED = "[redacted]"

# Field names whose values are credentials.
SECRET_FIELDS = frozenset({"key", "api_key", "admin_token", "encryption_key", "x-api-key"})


def redact_secrets(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    for name in SECRET_FIELDS.intersection(event_dict):
        if event_dict[name] is not None:
            event_dict[name] = REDACTED
    return event_dict


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog for the process.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL.
        json_output: JSON lines when True, coloured console output otherwise.
    """
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, log_level.upper())),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = "newsportal") -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def set_request_id(request_id: str) -> None:
    """Attach ``request_id`` to every log line until ``clear_request_id``."""
    structlog.contextvars.bind_contextvars(request_id=request_id)


def clear_request_id() -> None:
    structlog.contextvars.unbind_contextvars("request_id")


class PerformanceLogger:
    """Times a block; a run slower than ``slow_ms`` is logged as a warning.

    Used around scheduler tasks so a slow sweep or backup shows up in the
    logs without a metrics layer.
    """

    def __init__(
        self,
        operation: str,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
        slow_ms: float = 250.0,
    ):
        self.operation = operation
        self.logger = logger or get_logger()
        self.slow_ms = slow_ms
        self._started = 0.0

    def __enter__(self) -> "PerformanceLogger":
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        duration_ms = round((time.perf_counter() - self._started) * 1000, 2)
        if exc_type is not None:
            self.logger.error(
                f"{self.operation} failed",
                operation=self.operation,
                duration_ms=duration_ms,
                error=str(exc_val),
            )
            return

        log_method = self.logger.warning if duration_ms > self.slow_ms else self.logger.debug
        log_method(f"{self.operation} completed", operation=self.operation, duration_ms=duration_ms)


# Sensible defaults until main.py reconfigures from the environment
configure_logging()
