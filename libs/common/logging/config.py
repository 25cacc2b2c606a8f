"""Logging configuration shared by the payment services.

Example:
    >>> from libs.common.logging.config import configure_logging
    >>> logger = configure_logging(service_name="payment_webhook", log_level="INFO")
    >>> logger.info("Service started", extra={"context": {"port": 8000}})
"""

import logging
import sys
from collections.abc import Iterable

from libs.common.logging.context import get_event_id, get_trace_id
from libs.common.logging.formatter import JSONFormatter

# httpx logs every request line at INFO (store query URLs included) and the
# stripe SDK logs request and response bodies at DEBUG
QUIET_LOGGERS = ("httpx", "httpcore", "stripe")


class CorrelationFilter(logging.Filter):
    """Logging filter that stamps the trace id and gateway event id on records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = get_trace_id()
        record.event_id = get_event_id()
        return True


def configure_logging(
    service_name: str,
    log_level: str = "INFO",
    include_context: bool = True,
    quiet_loggers: Iterable[str] = QUIET_LOGGERS,
) -> logging.Logger:
    """Configure structured JSON logging for a service.

    Replaces any handlers on the root logger with a single stdout handler
    using JSONFormatter and CorrelationFilter. Call once at startup.

    Args:
        service_name: Name of the service (e.g., "payment_webhook")
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        include_context: Whether to include context dict in output
        quiet_loggers: Third-party loggers held at WARNING or above

    Returns:
        Configured root logger instance

    Raises:
        ValueError: If log_level is invalid
    """
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(JSONFormatter(service_name=service_name, include_context=include_context))
    handler.addFilter(CorrelationFilter())
    root_logger.addHandler(handler)

    for name in quiet_loggers:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    return root_logger


def log_with_context(
    logger: logging.Logger,
    level: str,
    message: str,
    **context_fields: object,
) -> None:
    """Log a message with additional context fields.

    Example:
        >>> log_with_context(logger, "INFO", "Order upserted", order_id="order-1")
        # Output includes: "context": {"order_id": "order-1"}
    """
    log_method = getattr(logger, level.lower())
    log_method(message, extra={"context": context_fields})
