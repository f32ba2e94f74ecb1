"""
Toolgate Structured Logging

Provides a configured logger for toolgate using stdlib logging with
structured context.

Usage:
    from toolgate.logging import get_logger

    logger = get_logger("toolgate.tools")
    logger.info("Tool executed", extra={"tool_name": "bash", "call_id": "tc-123"})

For machine-readable output:
    from toolgate.logging import configure_logging
    configure_logging(json_output=True, level="DEBUG")
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

# Keys lifted from LogRecord attributes (set via extra={}) into the output
CONTEXT_KEYS = (
    "tool_name",
    "call_id",
    "status",
    "script_path",
    "exit_code",
    "duration_ms",
    "event_type",
    "reason",
)


class ToolgateFormatter(logging.Formatter):
    """Structured log formatter for toolgate.

    Outputs either human-readable or JSON format depending on configuration.
    """

    def __init__(self, json_output: bool = False):
        super().__init__()
        self._json_output = json_output

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in CONTEXT_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if self._json_output:
            return json.dumps(log_data, default=str)

        extra_keys = {
            k: v for k, v in log_data.items()
            if k not in ("timestamp", "level", "logger", "message", "exception")
        }
        extra_str = ""
        if extra_keys:
            extra_str = " | " + " ".join(f"{k}={v}" for k, v in extra_keys.items())

        line = f"[{log_data['timestamp']}] {record.levelname:8s} {record.name}: {record.getMessage()}{extra_str}"
        if "exception" in log_data:
            line += "\n" + log_data["exception"]
        return line


def configure_logging(
    level: str | None = None,
    json_output: bool = False,
) -> None:
    """Configure toolgate logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
            Defaults to TOOLGATE_LOG_LEVEL, then WARNING so that the
            terminal stays readable during interactive sessions.
        json_output: If True, output JSON format.
    """
    level = level or os.environ.get("TOOLGATE_LOG_LEVEL", "WARNING")
    root_logger = logging.getLogger("toolgate")
    root_logger.setLevel(getattr(logging, level.upper(), logging.WARNING))

    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(ToolgateFormatter(json_output=json_output))
    root_logger.addHandler(handler)

    root_logger.propagate = False


def get_logger(name: str = "toolgate") -> logging.Logger:
    """Get a toolgate logger instance.

    Args:
        name: Logger name (usually module path like "toolgate.tools.dynamic").

    Returns:
        Configured Logger instance.
    """
    return logging.getLogger(name)


configure_logging()
