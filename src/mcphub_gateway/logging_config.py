"""Diagnostic logging for the gateway, in text or structured JSON form.

Stdout carries protocol traffic, so every handler installed here writes to
stderr.
"""

import logging
import sys
from contextvars import ContextVar
from typing import Optional

from pythonjsonlogger.json import JsonFormatter


# Token of the session currently in use; attached to JSON log records
session_id: ContextVar[Optional[str]] = ContextVar("session_id", default=None)


def bind_session_id(token: Optional[str]) -> None:
    """Record the active session token (or clear it with None)."""
    session_id.set(token)


class JSONFormatter(JsonFormatter):
    """JSON formatter that includes the session token and source location."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        token = session_id.get()
        if token:
            log_record['session_id'] = token

        log_record['timestamp'] = self.formatTime(record, self.datefmt)
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['module'] = record.module
        log_record['function'] = record.funcName
        log_record['line'] = record.lineno

        if record.exc_info:
            log_record['exception'] = self.formatException(record.exc_info)


def configure_logging(
    log_level: str = "INFO",
    log_format: str = "text",
    module_levels: Optional[dict[str, str]] = None
) -> None:
    """
    Configure gateway logging with JSON or text format on stderr.

    Args:
        log_level: Default log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: "json" for structured JSON logs, "text" for human-readable
        module_levels: Optional dict of module-specific log levels {"module.name": "DEBUG"}
    """
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(getattr(logging, log_level.upper()))

    console_handler = logging.StreamHandler(sys.stderr)

    if log_format.lower() == "json":
        formatter = JSONFormatter(
            fmt='%(timestamp)s %(level)s %(name)s %(message)s',
            datefmt='%Y-%m-%dT%H:%M:%S'
        )
    else:
        formatter = logging.Formatter(
            fmt='%(asctime)s [%(name)s] %(levelname)s: %(message)s',
            datefmt='%H:%M:%S'
        )

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # httpx logs every request at INFO; keep that out of the default output
    logging.getLogger("httpx").setLevel(logging.WARNING)

    if module_levels:
        for module_name, level in module_levels.items():
            logging.getLogger(module_name).setLevel(getattr(logging, level.upper()))

    logger = logging.getLogger(__name__)
    logger.debug(
        "Logging configured",
        extra={
            "log_level": log_level,
            "log_format": log_format,
            "module_levels": module_levels or {}
        }
    )
