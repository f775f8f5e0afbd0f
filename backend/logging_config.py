"""
Census Sync - Structured JSON Logging

Provides structured logging for production environments.
Outputs JSON format for log aggregation (Datadog, CloudWatch, etc.)
"""

import logging
import json
import sys
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import traceback
from contextvars import ContextVar, Token


_RESERVED_ATTRS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "taskName"
}


class JSONFormatter(logging.Formatter):
    """
    Custom formatter that outputs JSON logs.
    Compatible with log aggregation services.
    """

    def __init__(self, service_name: str = "census-sync"):
        super().__init__()
        self.service_name = service_name
        self.environment = os.environ.get("ENVIRONMENT", "development")
        self.hostname = os.environ.get("HOSTNAME", "unknown")

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "environment": self.environment,
            "hostname": self.hostname,
        }

        log_data["location"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName,
        }

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info) if record.exc_info[0] else None,
            }

        # Anything passed through `extra=` (job_id, census_id, ...)
        extra_fields = {
            key: value for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS
        }
        if extra_fields:
            log_data["extra"] = extra_fields

        return json.dumps(log_data, default=str)


# Job context of the current asyncio task; each task gets a copy on creation
_job_context: ContextVar[Optional[Dict[str, Optional[str]]]] = ContextVar("job_context", default=None)


class JobContextFilter(logging.Filter):
    """
    Adds the running sync job context to log records.
    """

    def set_job_context(
        self,
        job_id: Optional[str] = None,
        org_id: Optional[str] = None,
        census_id: Optional[str] = None
    ) -> Token:
        return set_job_context(job_id, org_id, census_id)

    def clear_job_context(self, token: Optional[Token] = None):
        clear_job_context(token)

    def filter(self, record: logging.LogRecord) -> bool:
        context = _job_context.get() or {}
        record.job_id = context.get("job_id")
        record.org_id = context.get("org_id")
        record.census_id = getattr(record, "census_id", None) or context.get("census_id")
        return True


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    service_name: str = "census-sync"
) -> logging.Logger:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: Use JSON format (True for production)
        service_name: Service name for log aggregation

    Returns:
        Configured root logger
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))

    if json_format:
        handler.setFormatter(JSONFormatter(service_name=service_name))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        ))

    handler.addFilter(JobContextFilter())

    root_logger.addHandler(handler)

    # Suppress noisy loggers
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the specified name."""
    return logging.getLogger(name)


def set_job_context(
    job_id: Optional[str] = None,
    org_id: Optional[str] = None,
    census_id: Optional[str] = None
) -> Token:
    """Set sync job context for logging in the current task."""
    return _job_context.set({"job_id": job_id, "org_id": org_id, "census_id": census_id})


def clear_job_context(token: Optional[Token] = None):
    """Clear sync job context, restoring the previous one when a token is given."""
    if token is not None:
        _job_context.reset(token)
    else:
        _job_context.set(None)


def get_job_context() -> Dict[str, Optional[str]]:
    return dict(_job_context.get() or {})
