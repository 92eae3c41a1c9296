"""
Centralized logging configuration for the trust pipeline.
Provides structured JSON logging with a per-run context so every line emitted
while a post or comment is processed can be traced back to that run.
"""

import logging
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog
from structlog.types import FilteringBoundLogger

# Context of the pipeline run currently executing on this thread/task
run_context_ctx: ContextVar[Dict[str, str]] = ContextVar("pipeline_run_context", default={})


def get_run_context() -> Dict[str, str]:
    """Get the current pipeline run context."""
    return run_context_ctx.get()


def bind_run_context(content_id: str, content_type: str, run_id: Optional[str] = None) -> str:
    """
    Bind a pipeline run to the current context.

    Args:
        content_id: Id of the post or comment being processed
        content_type: Either "post" or "comment"
        run_id: Optional run id; a new UUID is generated when omitted

    Returns:
        The run id bound to the context
    """
    if run_id is None:
        run_id = str(uuid.uuid4())
    run_context_ctx.set({"run_id": run_id, "content_id": content_id, "content_type": content_type})
    return run_id


def clear_run_context() -> None:
    """Drop the pipeline run context."""
    run_context_ctx.set({})


def add_run_context(logger: FilteringBoundLogger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add the pipeline run context to log events."""
    for key, value in get_run_context().items():
        event_dict.setdefault(key, value)
    return event_dict


NOISY_LOGGERS = ("kafka", "anthropic", "httpx", "urllib3", "sqlalchemy.engine")


def setup_logging(log_level: str = "INFO", json_logs: bool = True) -> FilteringBoundLogger:
    """
    Configure structured logging for the pipeline and its worker.

    Client library loggers are held at WARNING or above.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_logs: Render JSON lines; a colored console renderer is used otherwise

    Returns:
        Configured logger instance
    """
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            add_run_context,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper()),
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, logging.getLogger().level))

    return structlog.get_logger()


def get_logger(name: str = None) -> FilteringBoundLogger:
    """Get a logger instance with optional name."""
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()
