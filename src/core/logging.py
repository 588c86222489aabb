"""
Structured Logging Configuration with structlog

Outputs JSON logs that are searchable in Azure Monitor, ELK, or CloudWatch.
Every log emitted while a fetch job runs carries job_id, coordinate_id and
the current pipeline stage.
"""

import sys
import logging
import structlog
from typing import Optional, Any, Dict
from datetime import datetime, timezone
from contextvars import ContextVar

from src.core.config import settings

# Context variables for job-scoped logging
job_id_var: ContextVar[Optional[str]] = ContextVar("job_id", default=None)
coordinate_id_var: ContextVar[Optional[str]] = ContextVar("coordinate_id", default=None)
stage_var: ContextVar[Optional[str]] = ContextVar("stage", default=None)


def add_app_context(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add application and job context to every log entry."""
    event_dict["version"] = settings.APP_VERSION

    job_id = job_id_var.get()
    if job_id:
        event_dict.setdefault("job_id", job_id)

    coordinate_id = coordinate_id_var.get()
    if coordinate_id:
        event_dict.setdefault("coordinate_id", coordinate_id)

    stage = stage_var.get()
    if stage:
        event_dict.setdefault("stage", stage)

    return event_dict


def add_timestamp(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add ISO format timestamp."""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def setup_logging(
    log_level: str = "INFO",
    json_format: bool = True,
):
    """
    Configure structured logging for the process.

    Called once by each composition root (API lifespan, worker process init).

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_format: If True, output JSON; if False, output colored console logs
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Silence noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    if json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            add_timestamp,
            add_app_context,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.UnicodeDecoder(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class LogContext:
    """
    Context manager for setting logging context.

    Usage:
        with LogContext(job_id="abc123", coordinate_id="c-1", stage="fetch"):
            logger.info("fetch_started")
    """

    def __init__(
        self,
        job_id: Optional[str] = None,
        coordinate_id: Optional[str] = None,
        stage: Optional[str] = None
    ):
        self.job_id = job_id
        self.coordinate_id = coordinate_id
        self.stage = stage
        self._tokens = []

    def __enter__(self):
        if self.job_id:
            self._tokens.append((job_id_var, job_id_var.set(self.job_id)))
        if self.coordinate_id:
            self._tokens.append((coordinate_id_var, coordinate_id_var.set(self.coordinate_id)))
        if self.stage:
            self._tokens.append((stage_var, stage_var.set(self.stage)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens = []
        return False


def set_job_context(
    job_id: Optional[str],
    coordinate_id: Optional[str] = None,
    stage: Optional[str] = None
):
    """Set the current job context for logging."""
    job_id_var.set(job_id)
    if coordinate_id:
        coordinate_id_var.set(coordinate_id)
    if stage:
        stage_var.set(stage)


def set_stage(stage: Optional[str]):
    """Update the current pipeline stage."""
    stage_var.set(stage)


def clear_job_context():
    """Clear the current job context."""
    job_id_var.set(None)
    coordinate_id_var.set(None)
    stage_var.set(None)
