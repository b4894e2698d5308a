"""
Structured JSON logging for the enforcement analytics service.

This module provides a standardized JSON logging format compatible with
Grafana Loki and other log aggregation systems.

Standard fields:
- timestamp: ISO8601 format with timezone (UTC)
- level: Log level (info, error, warning, debug)
- service: Service name
- environment: Current environment (production, staging, local)
- trace_id: Unique request identifier for distributed tracing
- message: Log message
- context: Additional contextual data

Request fields (when available):
- request_path: Path of the HTTP request being served
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

# Context variables (safe for async)
trace_id_var: ContextVar[str] = ContextVar("trace_id", default="unknown")
request_path_var: ContextVar[Optional[str]] = ContextVar("request_path", default=None)


def get_trace_id() -> str:
    """Get the current trace ID from context."""
    return trace_id_var.get()


def set_trace_id(trace_id: str) -> None:
    """Set the trace ID in context."""
    trace_id_var.set(trace_id)


def get_request_path() -> Optional[str]:
    return request_path_var.get()


def set_request_context(trace_id: str, request_path: Optional[str] = None) -> None:
    """Set all request context variables at once."""
    set_trace_id(trace_id)
    request_path_var.set(request_path)


def trace_id_from_traceparent(traceparent: Optional[str]) -> Optional[str]:
    """
    Extract the trace id from a W3C ``traceparent`` header.

    Format: ``version-traceid-parentid-flags``; returns None when malformed.
    """
    if not traceparent:
        return None
    parts = traceparent.strip().split("-")
    if len(parts) != 4 or len(parts[1]) != 32:
        return None
    if parts[1] == "0" * 32:
        return None
    return parts[1]


class JsonFormatter(logging.Formatter):
    """
    Custom JSON formatter for structured logging.

    Outputs logs in a standardized format compatible with Grafana Loki.
    """

    def __init__(self, service: str = "enforcement-analytics", environment: str = "production"):
        super().__init__()
        self.service = service
        self.environment = environment

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "service": self.service,
            "environment": self.environment,
            "trace_id": get_trace_id(),
            "message": record.getMessage(),
        }

        request_path = get_request_path()
        if request_path is not None:
            log_data["request_path"] = request_path

        if record.name and record.name != "root":
            log_data["logger"] = record.name

        context = getattr(record, "context", None)
        if context:
            log_data["context"] = self._sanitize_context(context)

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else "Unknown",
                "message": str(record.exc_info[1]) if record.exc_info[1] else "",
                "traceback": self.formatException(record.exc_info),
            }

        # Source location for errors
        if record.levelno >= logging.ERROR:
            log_data["source"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        return json.dumps(log_data, default=str, ensure_ascii=False)

    def _sanitize_context(self, context: Any) -> Any:
        """Sanitize context data to ensure JSON serializable."""
        if isinstance(context, dict):
            return {k: self._sanitize_context(v) for k, v in context.items()}
        elif isinstance(context, (list, tuple)):
            return [self._sanitize_context(item) for item in context]
        elif isinstance(context, (str, int, float, bool, type(None))):
            return context
        elif hasattr(context, "model_dump"):  # Pydantic models
            return context.model_dump()
        else:
            return str(context)


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that automatically includes context data.

    Usage:
        logger = get_logger(__name__)
        logger.info("Corridors computed", context={"count": 12})
    """

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        """Process log message and add context."""
        context = kwargs.pop("context", None)

        extra = kwargs.get("extra", {})
        if context:
            extra["context"] = context
        kwargs["extra"] = extra

        return msg, kwargs


def setup_logging(
    service: str = "enforcement-analytics",
    environment: Optional[str] = None,
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
) -> None:
    """
    Configure structured JSON logging for the application.

    Args:
        service: Service name for log entries
        environment: Environment name (defaults to ENVIRONMENT env var)
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Path to log file (optional, defaults to stdout only)
        max_bytes: Max size of log file before rotation
        backup_count: Number of backup files to keep
    """
    env = environment or os.getenv("ENVIRONMENT", "production")
    level = getattr(logging, log_level.upper(), logging.INFO)

    formatter = JsonFormatter(service=service, environment=env)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    # Always add stdout handler (for Docker logs)
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    stdout_handler.setLevel(level)
    root_logger.addHandler(stdout_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        root_logger.addHandler(file_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str) -> ContextLogger:
    """
    Get a context-aware logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        ContextLogger instance with structured logging support
    """
    return ContextLogger(logging.getLogger(name), {})
