"""
Structured logging for AI Orchestrator.

Outputs one JSON object per line so provider calls, fallbacks and
ledger writes can be traced per request.
"""

import json
import logging
import sys
from datetime import datetime, timezone

ROOT_LOGGER_NAME = "ai_orchestrator"


class JsonFormatter(logging.Formatter):
    """JSON formatter that copies every ``extra=`` field into the record."""

    # Standard LogRecord attributes to exclude
    STANDARD_ATTRS = {
        'name', 'msg', 'args', 'created', 'filename', 'funcName', 'levelname',
        'levelno', 'lineno', 'module', 'msecs', 'message', 'pathname', 'process',
        'processName', 'relativeCreated', 'thread', 'threadName', 'exc_info',
        'exc_text', 'stack_info', 'asctime', 'taskName'
    }

    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.module,
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in self.STANDARD_ATTRS and not key.startswith('_'):
                try:
                    json.dumps(value)
                    log_record[key] = value
                except (TypeError, ValueError):
                    log_record[key] = str(value)

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_record)


def configure_logging(level: int = logging.INFO, stream=None) -> logging.Logger:
    """Attach the JSON handler to the package root logger.

    Safe to call more than once; the handler is only installed once.
    """
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(level)
    if not any(getattr(h, "_ai_orchestrator", False) for h in root.handlers):
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(JsonFormatter())
        handler._ai_orchestrator = True
        root.addHandler(handler)
    return root


def get_logger(name: str) -> logging.Logger:
    """Return a logger below the package root logger."""
    if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
