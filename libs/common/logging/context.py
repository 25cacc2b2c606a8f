"""Correlation ids for webhook processing.

Two ids travel with every log record:

* ``trace_id``: one per inbound HTTP request, taken from the ``X-Trace-ID``
  header or generated.
* ``event_id``: the gateway event currently being reconciled. Redeliveries
  of the same gateway event share it, so every attempt can be grouped.

Both live in context variables so they survive ``asyncio.to_thread`` hops.

Example:
    >>> with EventContext("evt_123"):
    ...     get_event_id()
    'evt_123'
"""

import contextvars
import uuid
from types import TracebackType

_trace_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("trace_id", default=None)
_event_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("event_id", default=None)

# HTTP header name for trace ID propagation
TRACE_ID_HEADER = "X-Trace-ID"


def generate_trace_id() -> str:
    """Generate a new UUID4 trace ID."""
    return str(uuid.uuid4())


def get_trace_id() -> str | None:
    """Return the trace ID of the current request, if any."""
    return _trace_id_var.get()


def set_trace_id(trace_id: str) -> None:
    """Bind a trace ID to the current context.

    Raises:
        ValueError: If trace_id is empty
    """
    if not trace_id:
        raise ValueError("Trace ID cannot be empty")
    _trace_id_var.set(trace_id)


def clear_trace_id() -> None:
    _trace_id_var.set(None)


def get_or_create_trace_id() -> str:
    """Return the current trace ID, generating and binding one if unset."""
    trace_id = get_trace_id()
    if trace_id is None:
        trace_id = generate_trace_id()
        set_trace_id(trace_id)
    return trace_id


def get_event_id() -> str | None:
    """Return the gateway event id currently being processed, if any."""
    return _event_id_var.get()


class EventContext:
    """Context manager binding a gateway event id for the duration of a block.

    The previous value is restored on exit, so nested contexts (a handler
    replaying a related event) behave as expected.

    Args:
        event_id: Gateway event id (``evt_...``)
    """

    def __init__(self, event_id: str) -> None:
        self.event_id = event_id
        self._token: contextvars.Token[str | None] | None = None

    def __enter__(self) -> str:
        self._token = _event_id_var.set(self.event_id)
        return self.event_id

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._token is not None:
            _event_id_var.reset(self._token)
            self._token = None
