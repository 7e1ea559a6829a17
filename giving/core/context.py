"""
Delivery context for log and error correlation.

Each inbound webhook delivery runs as its own unit of work. The request id
ties together everything that happened for one HTTP call, the event id ties
together every delivery of the same gateway event.

Uses contextvars so concurrent deliveries (threads or tasks) never see
each other's values.
"""

from contextvars import ContextVar
from typing import Optional
import uuid

__all__ = [
    "generate_request_id",
    "set_request_id",
    "get_request_id",
    "set_event_id",
    "get_event_id",
    "clear_context",
    "get_context_dict",
]

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_event_id: ContextVar[Optional[str]] = ContextVar("event_id", default=None)


def generate_request_id() -> str:
    """
    Generate a new request ID.

    Format: req_{16 hex chars}
    """
    return f"req_{uuid.uuid4().hex[:16]}"


def set_request_id(request_id: str) -> None:
    _request_id.set(request_id)


def get_request_id() -> Optional[str]:
    return _request_id.get()


def set_event_id(event_id: Optional[str]) -> None:
    """Set the gateway event id being handled in the current context."""
    _event_id.set(event_id)


def get_event_id() -> Optional[str]:
    return _event_id.get()


def clear_context() -> None:
    """Clear all context variables at the end of a delivery."""
    _request_id.set(None)
    _event_id.set(None)


def get_context_dict() -> dict:
    """Get all context variables as dict, for enriching error reports."""
    return {
        "request_id": get_request_id(),
        "event_id": get_event_id(),
    }
