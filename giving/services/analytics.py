"""
Analytics sink for giving events.

Emission is fire-and-forget from the caller's point of view: handlers call
`emit_safely`, which never raises. A failed emission is parked in the
deferred-effect outbox instead of being dropped.
"""
from typing import Any, Optional, Protocol

from giving.core.logging_config import get_logger
from giving.db import SessionFactory
from giving.models.analytics import AnalyticsEvent

logger = get_logger(__name__)


class AnalyticsSink(Protocol):
    def emit(self, event_name: str, properties: dict[str, Any]) -> None: ...


class DatabaseAnalyticsSink:
    """Writes analytics events to the analytics_event table in their own transaction."""

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def emit(self, event_name: str, properties: dict[str, Any]) -> None:
        with self._session_factory() as session:
            session.add(
                AnalyticsEvent(
                    event_name=event_name,
                    tenant_id=properties.get("tenant_id"),
                    properties=properties,
                )
            )
            session.commit()


def contribution_succeeded_properties(contribution) -> dict[str, Any]:
    return {
        "contribution_id": contribution.id,
        "tenant_id": contribution.tenant_id,
        "fund_id": contribution.fund_id,
        "amount_cents": contribution.amount_cents,
        "is_recurring": contribution.is_recurring,
    }


def emit_safely(
    sink: AnalyticsSink,
    event_name: str,
    properties: dict[str, Any],
    outbox=None,
    source_event_id: Optional[str] = None,
) -> bool:
    """
    Emit without letting a failure escape.

    Returns True if the sink accepted the event. On failure the event is
    handed to the outbox (when one is given) for a later retry.
    """
    try:
        sink.emit(event_name, properties)
        return True
    except Exception as e:
        logger.warning("Analytics emit failed", analytics_event=event_name, error=str(e))
        if outbox is not None:
            outbox.defer_analytics(event_name, properties, source_event_id=source_event_id, error=str(e))
        return False
