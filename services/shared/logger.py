"""
Structured JSON Logging for the Order Worker
============================================
One JSON object per line on stdout, so container log shippers (Loki, ELK,
CloudWatch) can filter on fields instead of grepping free text:

    {"timestamp":"2024-01-01T00:00:00Z","level":"WARNING","service":"order-worker",
     "logger":"order_worker.router","message":"Requeued for retry",
     "order_id":"3f0c...","retry_count":2,"delivery_tag":17}

Usage:
  from shared.logger import get_logger
  logger = get_logger(__name__)
  logger.info("Order processed", extra={"order_id": str(order_id)})
"""
from __future__ import annotations

import json
import logging
import os
import time
from typing import Any

# Standard logging.LogRecord fields we don't want in the output
_STDLIB_FIELDS = {
    "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
    "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
    "created", "msecs", "relativeCreated", "thread", "threadName",
    "processName", "process", "message", "taskName",
}

_configured = False


class _JsonFormatter(logging.Formatter):
    def __init__(self, service: str):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()

        log_obj: dict[str, Any] = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "message": record.message,
        }

        # Merge any extra fields passed via logger.info(..., extra={...})
        for key, value in record.__dict__.items():
            if key not in _STDLIB_FIELDS:
                log_obj[key] = value

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


def configure_logging(level: str | None = None, service: str | None = None) -> None:
    """
    Install the JSON formatter on the root logger.
    Explicit arguments win over LOG_LEVEL / SERVICE_NAME; calling again re-applies.
    """
    global _configured
    service = service or os.environ.get("SERVICE_NAME", "order-worker")
    level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()

    root = logging.getLogger()
    formatter = _JsonFormatter(service)
    if root.handlers:
        for h in root.handlers:
            h.setFormatter(formatter)
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(getattr(logging, level, logging.INFO))
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """
    Return a named logger, configuring JSON output from the environment on first use.
    Idempotent — safe to call at import time from every module.
    """
    if not _configured:
        configure_logging()
    return logging.getLogger(name)
