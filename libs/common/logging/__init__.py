"""Structured logging for the payment services.

Usage:
    # At service startup
    from libs.common.logging import configure_logging
    configure_logging(service_name="payment_webhook", log_level="INFO")

    # While reconciling one gateway event
    from libs.common.logging import EventContext, log_with_context
    with EventContext(event.id):
        log_with_context(logger, "INFO", "Order upserted", order_id=order_id)
"""

from libs.common.logging.config import (
    CorrelationFilter,
    configure_logging,
    log_with_context,
)
from libs.common.logging.context import (
    TRACE_ID_HEADER,
    EventContext,
    clear_trace_id,
    generate_trace_id,
    get_event_id,
    get_or_create_trace_id,
    get_trace_id,
    set_trace_id,
)
from libs.common.logging.formatter import JSONFormatter

__all__ = [
    # Configuration
    "configure_logging",
    "log_with_context",
    "CorrelationFilter",
    # Correlation ids
    "generate_trace_id",
    "get_trace_id",
    "set_trace_id",
    "clear_trace_id",
    "get_or_create_trace_id",
    "get_event_id",
    "EventContext",
    "TRACE_ID_HEADER",
    # Formatter (for advanced usage)
    "JSONFormatter",
]
