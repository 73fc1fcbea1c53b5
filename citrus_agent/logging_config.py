"""Structured JSON logging configuration."""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

# Extra fields promoted into the JSON line when present on a record
_EXTRA_FIELDS = (
    "agent_id",
    "command_type",
    "operation",
    "domain",
    "status",
    "state",
    "program",
    "exit_code",
    "revision",
    "url",
    "delay",
    "error",
)


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "message": record.getMessage(),
            "logger": record.name,
        }
        log_data["service"] = getattr(record, "service", record.name.split(".")[0])

        for field in _EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_data[field] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = "INFO") -> None:
    """Configure structured logging for the agent process.

    Args:
        log_level: Root log level (DEBUG, INFO, WARNING, ERROR)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for noisy_logger in ("asyncio", "aiohttp", "uvicorn.access"):
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)

    logging.getLogger("logging").info(
        "Logging configured",
        extra={"service": "logging", "status": log_level},
    )
