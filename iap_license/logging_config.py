"""Structured logging configuration using structlog.

Every log line carries:
- the service name and level
- the request id bound by the request middleware
- business context bound per request (function, order_id, product_id, token prefix)
"""

import logging
import os
import sys
from typing import Any

import structlog
from structlog.typing import EventDict, Processor

SERVICE_NAME = "iap-license"


def add_service_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Stamp every event with the service name."""
    event_dict["service"] = SERVICE_NAME
    return event_dict


def drop_debug_events(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Discard debug events unless LOG_LEVEL is DEBUG.

    Raises:
        structlog.DropEvent: For debug events outside debug mode
    """
    if method_name == "debug" and not is_debug_mode():
        raise structlog.DropEvent
    return event_dict


def is_debug_mode() -> bool:
    """Check if debug logging is enabled via LOG_LEVEL."""
    return os.getenv("LOG_LEVEL", "INFO").upper() == "DEBUG"


def configure_logging(
    log_level: str = "INFO",
    json_format: bool = True,
    include_timestamp: bool = True,
) -> None:
    """Configure structlog on top of the standard library logger.

    Args:
        log_level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Render JSON lines when True, colored console output otherwise
        include_timestamp: Add ISO8601 timestamps
    """
    # Unknown level names fall back to INFO
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=numeric_level,
    )

    # Shared processors run before the renderer picked below
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_service_context,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if include_timestamp:
        processors.append(structlog.processors.TimeStamper(fmt="iso", utc=True))

    if numeric_level > logging.DEBUG:
        processors.append(drop_debug_events)

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.plain_traceback,
            )
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger.

    Args:
        name: Logger name, normally the calling module's __name__

    Returns:
        Logger that renders through the processors set by configure_logging
    """
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind context variables included in every subsequent log line of this request.

    Example:
        bind_context(request_id="abc123", order_id="GPA.1234-5678-9012-34567")
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Remove context variables bound earlier in this request.

    Args:
        keys: Names passed to bind_context
    """
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    """Clear all context variables."""
    structlog.contextvars.clear_contextvars()
