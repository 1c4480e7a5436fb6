"""
Structured logging setup for the calendar presence sync service.
Provides JSON-formatted logs with consistent fields for production monitoring.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory

LOG_TRUNCATE_LIMIT = 5
LOG_TRUNCATE_MSG = "Too many messages, truncating log output"


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging with JSON output for production.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            _add_trace_context,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def _add_trace_context(logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Merge context bound with structlog.contextvars (job name, user id) into the entry."""
    return structlog.contextvars.merge_contextvars(logger, method_name, event_dict)


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


class LogLimiter:
    """
    Bounded warning logger for one batch pass.

    Emits the first ``limit`` warnings, then a single truncation marker,
    then nothing. Create a new instance per pass.
    """

    def __init__(self, logger, limit: int = LOG_TRUNCATE_LIMIT):
        self._logger = logger
        self._limit = limit
        self.count = 0

    def warning(self, event: str, **kwargs: Any) -> None:
        if self.count < self._limit:
            self._logger.warning(event, **kwargs)
        elif self.count == self._limit:
            self._logger.warning(LOG_TRUNCATE_MSG, suppressed_after=self._limit)
        self.count += 1


def log_job_summary(job: str, summary: dict[str, Any], error: str = None):
    """Log background job results with consistent fields."""
    logger = get_logger("jobs")

    log_data = {**summary, "job": job, "event_type": "job_run"}

    if error:
        log_data["error"] = error
        logger.error("Job run failed", **log_data)
    else:
        logger.info("Job run completed", **log_data)


def log_request(method: str, path: str, status_code: int, duration_ms: float, user_id: str = None):
    """Log HTTP requests with consistent fields."""
    logger = get_logger("http")

    log_data = {
        "method": method,
        "path": path,
        "status_code": status_code,
        "duration_ms": duration_ms,
        "event_type": "http_request",
    }

    if user_id:
        log_data["user_id"] = user_id

    if status_code >= 400:
        logger.warning("HTTP request failed", **log_data)
    else:
        logger.info("HTTP request completed", **log_data)
