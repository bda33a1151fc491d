"""Structured logging utilities.

Context travels in ``extra`` keys prefixed with ``ctx_``; both formatters
promote them to first-class fields.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

# Third-party loggers that are too chatty at INFO
_NOISY_LOGGERS = ("httpx", "httpcore", "aiohttp.access", "aiosqlite")

_CTX_PREFIX = "ctx_"


def _context(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key[len(_CTX_PREFIX):]: value
        for key, value in record.__dict__.items()
        if key.startswith(_CTX_PREFIX)
    }


class JsonFormatter(logging.Formatter):
    """JSON formatter for structured logging, one object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_record: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)

        log_record.update(_context(record))

        return json.dumps(log_record, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable formatter for local runs: ``message key=value ...``."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-7s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = _context(record)
        if context:
            line += " " + " ".join(f"{k}={v}" for k, v in context.items())
        return line


def setup_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Configure application logging.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR).
        fmt: "json" for structured output, "text" for a readable console.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(TextFormatter() if fmt == "text" else JsonFormatter())
    root_logger.addHandler(console_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Logger name, typically __name__.

    Returns:
        Configured logger instance.
    """
    return logging.getLogger(name)
