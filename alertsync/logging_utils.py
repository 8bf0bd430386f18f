#!/usr/bin/env python3
"""
ALERTSYNC - Logging Utilities

Structured NDJSON logging plus a thread-local correlation ID shared by the
reconciler and the alerts API.

Key Features:
- NDJSON (newline-delimited JSON) format
- Opt-in via LOG_JSON_ENABLED environment variable
- Text format otherwise, with correlation ID in every line
- Correlation ID survives hand-off to worker threads (see CorrelationID.bind)

Usage:
    from alertsync.logging_utils import setup_json_logging, CorrelationID

    logger = setup_json_logging(service_name="reconciler", version="1.0.0")

    CorrelationID.set("cycle-3f2a9c")
    logger.info("Fetched alerts", extra={"alert_count": 12})

Environment Variables:
    LOG_JSON_ENABLED: Enable JSON logging (default: false)
    LOG_LEVEL: Logging level (default: INFO)
    POD_NAME: Kubernetes pod name for metadata
"""

import os
import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict


# Attributes every LogRecord carries; anything else came in via `extra=`.
_RESERVED_RECORD_KEYS = frozenset([
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
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "taskName",
    "exc_info",
    "exc_text",
    "stack_info",
    "correlation_id",
])

TEXT_LOG_FORMAT = "%(asctime)s - %(levelname)s - [%(correlation_id)s] - %(message)s"


class CorrelationID:
    """Thread-local correlation ID for a non-request context."""

    _storage = threading.local()

    @staticmethod
    def set(cid: str) -> None:
        CorrelationID._storage.id = cid

    @staticmethod
    def get() -> str:
        return getattr(CorrelationID._storage, "id", "system")

    @staticmethod
    def clear() -> None:
        CorrelationID._storage.id = "system"

    @staticmethod
    def bind(fn: Callable[..., Any]) -> Callable[..., Any]:
        """Wrap fn so it runs under the caller's correlation ID in any thread."""
        cid = CorrelationID.get()

        def _run(*args, **kwargs):
            CorrelationID.set(cid)
            try:
                return fn(*args, **kwargs)
            finally:
                CorrelationID.clear()

        return _run


class CorrelationIdFilter(logging.Filter):
    """Automatically adds correlation ID to all log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = CorrelationID.get()
        return True


class NDJSONFormatter(logging.Formatter):
    """
    Formatter that outputs one JSON object per line.

    Fields: timestamp, level, message, logger, module, function, line,
    thread, service, version, pod_name, correlation_id, error (when an
    exception is attached) and any `extra=` fields.
    """

    def __init__(self, service_name: str, version: str):
        super().__init__()
        self.service_name = service_name
        self.version = version
        self.pod_name = os.getenv("POD_NAME", "unknown")

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "thread": threading.get_ident(),
            "service": self.service_name,
            "version": self.version,
            "pod_name": self.pod_name,
            "correlation_id": getattr(record, "correlation_id", None) or "system",
        }

        if record.exc_info:
            log_entry["error"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info),
            }

        for key, value in record.__dict__.items():
            if key in _RESERVED_RECORD_KEYS:
                continue
            try:
                json.dumps(value)
                log_entry[key] = value
            except (TypeError, ValueError):
                log_entry[key] = str(value)

        try:
            return json.dumps(log_entry, default=str)
        except Exception as e:
            return json.dumps(
                {
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "level": "ERROR",
                    "message": f"Failed to serialize log record: {e}",
                    "service": self.service_name,
                    "correlation_id": "system",
                }
            )


def setup_json_logging(
    service_name: str,
    version: str,
    level: str = "INFO",
) -> logging.Logger:
    """
    Configure root logging for an alertsync service.

    Uses NDJSON when LOG_JSON_ENABLED is truthy, the text format otherwise.
    Idempotent: existing root handlers are replaced.

    Args:
        service_name: Name of the service (e.g., "reconciler", "api")
        version: Service version string
        level: Logging level, overridden by LOG_LEVEL

    Returns:
        The configured root logger
    """
    json_enabled = os.getenv("LOG_JSON_ENABLED", "false").lower() in (
        "true",
        "1",
        "yes",
        "on",
    )
    log_level = os.getenv("LOG_LEVEL", level).upper()

    logger = logging.getLogger()
    logger.handlers.clear()
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    handler = logging.StreamHandler()
    handler.setLevel(logger.level)
    # Handler-level filter so records from every named logger get the field.
    handler.addFilter(CorrelationIdFilter())

    if json_enabled:
        handler.setFormatter(NDJSONFormatter(service_name=service_name, version=version))
    else:
        handler.setFormatter(logging.Formatter(TEXT_LOG_FORMAT))

    logger.addHandler(handler)

    if json_enabled:
        logger.info(f"JSON logging enabled for service={service_name} version={version}")
    else:
        logger.info(f"Standard logging enabled for service={service_name}")

    return logger


def get_logger(name: str = __name__) -> logging.Logger:
    """Named logger inheriting the configuration from setup_json_logging()."""
    return logging.getLogger(name)
