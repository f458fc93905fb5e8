"""
Structured logging setup.

Every module gets its logger with `get_module_logger()`. Log lines are
rendered as indented JSON by default, or as colored one-liners when
APP__LOG_FORMAT=console. Each line carries the short module name
("services.execution_coordinator") and the current trace id.
"""

import inspect
import json
import logging
from typing import Any

import structlog

from agentic_sql.config import get_settings
from agentic_sql.utils.tracing import current_trace_id

_PROJECT_PREFIX = "agentic_sql."

_logging_configured = False


def _add_module(logger: Any, method_name: str, event_dict: structlog.types.EventDict) -> structlog.types.EventDict:
    """Shorten project logger names to their last two parts."""
    name = event_dict.get("logger", "unknown")
    if name.startswith(_PROJECT_PREFIX):
        name = ".".join(name.split(".")[-2:])
    event_dict["module"] = name
    return event_dict


def _add_trace_id(logger: Any, method_name: str, event_dict: structlog.types.EventDict) -> structlog.types.EventDict:
    """Fill in the context trace id when the call did not pass one."""
    if event_dict.get("trace_id") is None:
        trace_id = current_trace_id()
        if trace_id is not None:
            event_dict["trace_id"] = trace_id
    return event_dict


def _json_renderer(logger: Any, method_name: str, event_dict: structlog.types.EventDict) -> str:
    return json.dumps(event_dict, indent=2, ensure_ascii=False, default=str)


def _select_renderer(log_format: str) -> Any:
    if log_format == "console":
        return structlog.dev.ConsoleRenderer(colors=True)
    return _json_renderer


def configure_logging() -> None:
    """Configure stdlib logging and structlog once per process."""
    global _logging_configured

    if _logging_configured:
        return
    _logging_configured = True

    settings = get_settings()

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, settings.app.log_level.value),
        handlers=[logging.StreamHandler()]
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            _add_module,
            _add_trace_id,
            _select_renderer(settings.app.log_format),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a configured logger by name.

    Usage:
        logger = get_logger(__name__)
        logger.info("Chat turn finished", status="completed", trace_id=trace_id)

        # {
        #   "event": "Chat turn finished",
        #   "status": "completed",
        #   "trace_id": "abc-123",
        #   "logger": "agentic_sql.services.execution_coordinator",
        #   "level": "info",
        #   "timestamp": "2024-01-22T10:30:00Z",
        #   "module": "services.execution_coordinator"
        # }
    """
    return structlog.get_logger(name)


def get_module_logger() -> structlog.stdlib.BoundLogger:
    """Get a logger named after the calling module ('unknown' if the frame is unavailable)."""
    frame = inspect.currentframe()
    try:
        caller = frame.f_back if frame is not None else None
        module_name = caller.f_globals.get("__name__", "unknown") if caller is not None else "unknown"
    finally:
        del frame
    return get_logger(module_name)
