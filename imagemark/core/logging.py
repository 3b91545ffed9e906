"""
Structured Logging Configuration with structlog

Outputs JSON logs that are searchable in ELK or CloudWatch.
Every log includes: image_id, version, stage, timestamp, and other context.
"""

import sys
import logging
import structlog
from typing import Optional, Any, Dict
from datetime import datetime, timezone
from contextvars import ContextVar

# Context variables for task-scoped logging
image_id_var: ContextVar[Optional[str]] = ContextVar("image_id", default=None)
stage_var: ContextVar[Optional[str]] = ContextVar("stage", default=None)

# Application version
APP_VERSION = "1.0.0"


def add_app_context(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add application context to every log entry."""
    event_dict["version"] = APP_VERSION

    image_id = image_id_var.get()
    if image_id:
        event_dict.setdefault("image_id", image_id)

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
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    return event_dict


def setup_logging(
    log_level: str = "INFO",
    json_format: bool = True
):
    """
    Configure structured logging for the application.

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
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.WARNING)

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
        with LogContext(image_id="abc123", stage="composite"):
            logger.info("composite_started")
    """

    def __init__(self, image_id: Optional[str] = None, stage: Optional[str] = None):
        self.image_id = image_id
        self.stage = stage
        self._image_id_token = None
        self._stage_token = None

    def __enter__(self):
        if self.image_id:
            self._image_id_token = image_id_var.set(self.image_id)
        if self.stage:
            self._stage_token = stage_var.set(self.stage)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._stage_token:
            stage_var.reset(self._stage_token)
        if self._image_id_token:
            image_id_var.reset(self._image_id_token)
        return False


def set_task_context(image_id: str, stage: Optional[str] = None):
    """Set the current task context for logging."""
    image_id_var.set(image_id)
    if stage:
        stage_var.set(stage)


def set_stage(stage: str):
    """Update only the current stage."""
    stage_var.set(stage)


def clear_task_context():
    """Clear the current task context."""
    image_id_var.set(None)
    stage_var.set(None)


# Example log output structure:
# {
#   "timestamp": "2024-05-20T10:00:00Z",
#   "level": "info",
#   "event": "task_completed",
#   "stage": "finalize",
#   "image_id": "550e8400-e29b-41d4-a716-446655440000",
#   "version": "1.0.0",
#   "processed_key": "processed/3q2-7wX....jpeg"
# }
