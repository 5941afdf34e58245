"""Structured logging for the deduplication core.

Application logs go through the standard ``logging`` module with a JSON
formatter. Merge audit events go through ``structlog`` so that every audit
line carries the same machine-readable shape.
"""

import json
import logging
import sys
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog


# Thread-local storage for context
_context = threading.local()

_RESERVED_ATTRS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "thread", "threadName", "getMessage", "exc_info", "exc_text",
    "stack_info", "taskName",
}

AUDIT_LOGGER_NAME = "scenescout.deduplication.audit"


class StructuredFormatter(logging.Formatter):
    """Formatter that renders log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "message": record.getMessage(),
        }

        if hasattr(_context, "data"):
            log_data.update(_context.data)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(
    format: str = "json",
    level: str = "INFO",
    log_file: Optional[str] = None
) -> None:
    """Configure logging for the deduplication core.

    Args:
        format: Log format ("json" or "text")
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path to write logs to
    """
    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    log_level = getattr(logging, level.upper(), logging.INFO)
    root_logger.setLevel(log_level)

    if format == "json":
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    configure_audit_logging()


def configure_audit_logging() -> None:
    """Route structlog audit events through the stdlib logging tree as JSON."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


def get_audit_logger(**initial_values: Any):
    """Return a structlog logger bound to the audit channel."""
    return structlog.get_logger(AUDIT_LOGGER_NAME, **initial_values)


def log_event(logger_name: str, event: str, **kwargs) -> None:
    """Log a structured event.

    Args:
        logger_name: Name of the logger to use
        event: Event name/type
        **kwargs: Additional fields to include in the log
    """
    logger = get_logger(logger_name)
    logger.info(event, extra=kwargs)


def log_error(
    logger_name: str,
    event: str,
    error: Exception,
    **kwargs
) -> None:
    """Log a structured error with traceback.

    Args:
        logger_name: Name of the logger to use
        event: Event name/type
        error: The exception that occurred
        **kwargs: Additional fields to include in the log
    """
    logger = get_logger(logger_name)
    kwargs["error_type"] = type(error).__name__
    logger.error(f"{event}: {error}", exc_info=error, extra=kwargs)


def log_performance(
    logger_name: str,
    operation: str,
    duration_ms: float,
    **kwargs
) -> None:
    """Log how long an operation took.

    Args:
        logger_name: Name of the logger to use
        operation: Operation name
        duration_ms: Duration in milliseconds
        **kwargs: Additional fields to include in the log
    """
    logger = get_logger(logger_name)
    kwargs["duration_ms"] = duration_ms
    logger.info(f"{operation} completed in {duration_ms:.2f}ms", extra=kwargs)


@contextmanager
def log_context(**kwargs):
    """Add fields to every JSON log line emitted within the block.

    Example:
        with log_context(batch_id="42"):
            logger.info("Scoring cluster")  # includes batch_id
    """
    if not hasattr(_context, "data"):
        _context.data = {}

    old_context = _context.data.copy()
    _context.data.update(kwargs)

    try:
        yield
    finally:
        _context.data = old_context


class Timer:
    """Context manager for timing operations.

    Example:
        with Timer() as timer:
            engine.calculate_similarity(a, b)
        log_performance(__name__, "similarity", timer.duration_ms)
    """

    def __init__(self):
        self.start_time = None
        self.end_time = None
        self.duration_ms = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.end_time = time.perf_counter()
        self.duration_ms = (self.end_time - self.start_time) * 1000
