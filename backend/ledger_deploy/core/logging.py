"""Logging utilities for ledger-deploy.

Deployment context (wave, path, txid, job) travels on records as ``ctx_*``
attributes; build them with :func:`log_context` and pass them as ``extra``.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any

import orjson

_DEFAULT_LEVEL = os.environ.get("LDEP_LOG_LEVEL", "INFO")
CONTEXT_PREFIX = "ctx_"


def log_context(**fields: Any) -> dict[str, Any]:
    """``extra`` mapping for a log call; ``None`` values are dropped."""
    return {f"{CONTEXT_PREFIX}{key}": value for key, value in fields.items() if value is not None}


def record_context(record: logging.LogRecord) -> dict[str, Any]:
    """Deployment context attached to ``record``, without the prefix."""
    return {
        key[len(CONTEXT_PREFIX) :]: value
        for key, value in record.__dict__.items()
        if key.startswith(CONTEXT_PREFIX)
    }


class JsonFormatter(logging.Formatter):
    """One JSON object per line, deployment context under ``context``."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        context = record_context(record)
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return orjson.dumps(payload, default=str).decode("utf-8")


class ConsoleFormatter(logging.Formatter):
    """Plain text with deployment context appended as ``key=value`` pairs."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = record_context(record)
        if not context:
            return line
        return line + " [" + " ".join(f"{key}={value}" for key, value in sorted(context.items())) + "]"


def configure_logging(level: str | int = _DEFAULT_LEVEL, use_json: bool = True) -> None:
    """Send every log line to stderr so CLI output on stdout stays clean."""
    logging.captureWarnings(True)
    root = logging.getLogger()
    root.setLevel(level)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter() if use_json else ConsoleFormatter())
    root.handlers = [handler]


def get_logger(name: str = "ledger_deploy") -> logging.Logger:
    """Return configured logger, configuring root on first call."""
    if not logging.getLogger().handlers:
        configure_logging()
    return logging.getLogger(name)


__all__ = [
    "ConsoleFormatter",
    "JsonFormatter",
    "configure_logging",
    "get_logger",
    "log_context",
    "record_context",
]
