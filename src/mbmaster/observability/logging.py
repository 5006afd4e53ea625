"""Structured logging for the Modbus master.

Provides:
- JSON-formatted logs for log aggregation systems
- Device and transaction context propagated through round trips
- Configurable log levels and formats

Usage:
    from mbmaster.observability.logging import configure_logging

    configure_logging(json_format=True, level="INFO")

    # Inside a round trip every record carries device_id and transaction_id
    logger = logging.getLogger(__name__)
    logger.info("Writing register")
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from mbmaster.config import settings

# Context variables for round-trip correlation
device_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("device_id", default="")
transaction_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "transaction_id", default=""
)

_CONTEXT_VARS: dict[str, contextvars.ContextVar[str]] = {
    "device_id": device_id_var,
    "transaction_id": transaction_id_var,
}

# Standard LogRecord attributes, never copied as extra fields
_STANDARD_ATTRS = {
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "exc_info",
    "exc_text",
    "thread",
    "threadName",
    "taskName",
    "message",
}


class JsonFormatter(logging.Formatter):
    """JSON log formatter with device and transaction context.

    Output format:
    {
        "timestamp": "2026-10-19T12:34:56.789Z",
        "level": "DEBUG",
        "logger": "mbmaster.session",
        "message": "Discarding foreign frame",
        "module": "session",
        "function": "_receive",
        "line": 42,
        "device_id": "10.0.0.5:502/1",
        "transaction_id": "17"
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for key, var in _CONTEXT_VARS.items():
            value = var.get()
            if value:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info),
            }

        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and not key.startswith("_"):
                try:
                    json.dumps(value)
                    log_data[key] = value
                except (TypeError, ValueError):
                    log_data[key] = str(value)

        return json.dumps(log_data, default=str, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """Human-readable formatter for development.

    Output format:
    2026-10-19 12:34:56 | INFO | mbmaster.transport | Connected | dev=plc-1 tx=17
    """

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True) -> None:
        super().__init__()
        self.use_colors = use_colors and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        """Format log record for console output."""
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        level = record.levelname

        if self.use_colors:
            color = self.COLORS.get(level, "")
            level = f"{color}{level}{self.RESET}"

        message = record.getMessage()

        context_parts = []
        device_id = device_id_var.get()
        if device_id:
            context_parts.append(f"dev={device_id}")
        transaction_id = transaction_id_var.get()
        if transaction_id:
            context_parts.append(f"tx={transaction_id}")

        context = f" | {' '.join(context_parts)}" if context_parts else ""

        result = f"{timestamp} | {level:8} | {record.name} | {message}{context}"

        if record.exc_info:
            result += "\n" + self.formatException(record.exc_info)

        return result


def configure_logging(
    json_format: bool | None = None,
    level: str | None = None,
    use_colors: bool = True,
) -> None:
    """Configure application-wide logging.

    Args:
        json_format: Use JSON format, defaults to settings.log_json
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL),
            defaults to settings.log_level
        use_colors: Use ANSI colors in console format
    """
    if json_format is None:
        json_format = settings.log_json
    if level is None:
        level = settings.log_level

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)

    if json_format:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(ConsoleFormatter(use_colors=use_colors))

    root_logger.addHandler(handler)


class LogContext:
    """Context manager for adding temporary log context.

    Usage:
        with LogContext(device_id="plc-1", transaction_id=17):
            logger.debug("Sending frame")  # Includes device_id and transaction_id
    """

    def __init__(self, **kwargs: Any) -> None:
        self.extra = kwargs
        self._tokens: dict[str, contextvars.Token[str]] = {}

    def __enter__(self) -> LogContext:
        for key, value in self.extra.items():
            var = _CONTEXT_VARS.get(key)
            if var is not None:
                self._tokens[key] = var.set(str(value))
        return self

    def __exit__(self, *args: Any) -> None:
        for key, token in self._tokens.items():
            _CONTEXT_VARS[key].reset(token)
        self._tokens.clear()
