"""Structured logging setup for PositionDesk.

Uses structlog for JSON-structured logging with component names,
correlation IDs, and timestamps in every log entry.
"""

import logging

import structlog


def configure_logging(json_output: bool = True, level: str = "INFO") -> None:
    """Configure structlog for the PositionDesk process.

    Args:
        json_output: If True (default), render logs as JSON.
                     If False, use console-friendly output for development.
        level: Minimum level name (DEBUG, INFO, WARNING, ERROR).
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(component: str, correlation_id: str | None = None) -> structlog.BoundLogger:
    """Get a logger bound with a component name and optional correlation_id.

    Args:
        component: Name of the component requesting the logger.
        correlation_id: Optional correlation ID, e.g. an order or view id.

    Returns:
        A structlog BoundLogger with component and correlation_id bound.
    """
    logger = structlog.get_logger()
    logger = logger.bind(component=component)
    if correlation_id:
        logger = logger.bind(correlation_id=correlation_id)
    return logger
