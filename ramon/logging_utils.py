#!/usr/bin/env python3
"""
RAMON - Logging Utilities

Structured logging for the agent. Text logging is the default; NDJSON
(newline-delimited JSON) output is opt-in via LOG_JSON_ENABLED.

Every record carries a correlation ID. While a monitor evaluates an event
the correlation ID is the monitor name, so all log lines produced by one
rule evaluation (pattern match, variable pushes, notification submission)
can be grouped. Outside an evaluation it is "system".

Usage:
    from ramon.logging_utils import setup_json_logging, CorrelationID

    logger = setup_json_logging(service_name="agent", version="0.3.0")
    CorrelationID.set("ssh")
    logger.info("Match found", extra={"ip": "1.2.3.4"})

Environment Variables:
    LOG_JSON_ENABLED: Enable JSON logging (default: false)
    LOG_LEVEL: Logging level (default: INFO)
    POD_NAME: Instance name added to JSON records

Author: RAMON Team
Version: 0.3.0
"""

import os
import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict

TEXT_FORMAT = "%(asctime)s - %(levelname)s - [%(correlation_id)s] - %(message)s"

# LogRecord attributes that are not user-supplied `extra` fields.
RESERVED_ATTRS = frozenset([
    "name", "msg", "args", "created", "filename", "funcName", "levelname",
    "levelno", "lineno", "module", "msecs", "message", "pathname", "process",
    "processName", "relativeCreated", "thread", "threadName", "exc_info",
    "exc_text", "stack_info", "taskName", "correlation_id",
])


class CorrelationID:
    """Thread-local correlation ID (monitor name during an evaluation)."""
    _storage = threading.local()

    @staticmethod
    def set(cid):
        CorrelationID._storage.id = cid

    @staticmethod
    def get():
        return getattr(CorrelationID._storage, 'id', 'system')

    @staticmethod
    def clear():
        CorrelationID._storage.id = 'system'


class CorrelationIdFilter(logging.Filter):
    """Automatically adds correlation ID to all log records."""
    def filter(self, record):
        if not getattr(record, 'correlation_id', None):
            record.correlation_id = CorrelationID.get()
        return True


class NDJSONFormatter(logging.Formatter):
    """
    Formats each record as a single-line JSON object.

    Fields: timestamp, level, message, logger, module, function, line,
    thread, service, version, pod_name, correlation_id, error (when an
    exception is attached) and any `extra` fields.
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
            if key in RESERVED_ATTRS or key in log_entry:
                continue
            try:
                json.dumps(value)
                log_entry[key] = value
            except (TypeError, ValueError):
                log_entry[key] = str(value)

        return json.dumps(log_entry, default=str)


def setup_json_logging(
    service_name: str,
    version: str,
    level: str = "INFO",
) -> logging.Logger:
    """
    Configure the root logger for a RAMON process.

    Idempotent: existing root handlers are replaced. Returns the root logger.

    Example:
        >>> logger = setup_json_logging("agent", "0.3.0", "INFO")
        >>> logger.info("Agent started")
        2026-01-09 12:00:00 - INFO - [system] - Agent started
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
    # Filters on a handler see records propagated from child loggers.
    handler.addFilter(CorrelationIdFilter())

    if json_enabled:
        handler.setFormatter(NDJSONFormatter(service_name=service_name, version=version))
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    logger.addHandler(handler)

    mode = "JSON" if json_enabled else "Standard"
    logger.info(f"{mode} logging enabled for service={service_name} version={version}")

    return logger
