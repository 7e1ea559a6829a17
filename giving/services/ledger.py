"""
Webhook Event Ledger

Durable record of every gateway event ever accepted, and the idempotency
gate for the pipeline.

Every method runs in its own short transaction so that ledger state is
committed independently of the handler's work: an event accepted before a
crash stays accepted, with processed_at = NULL marking it for another pass.

Usage:
    ledger = EventLedger(session_factory)

    acceptance = ledger.try_accept(event.id, event.type, event.payload)
    if isinstance(acceptance, AlreadyAccepted) and acceptance.processed:
        return  # acknowledged, nothing left to do

    ... handle the event ...
    ledger.mark_processed(event.id)
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Union

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import select

from giving.core.exceptions import TransientDependencyError
from giving.core.logging_config import get_logger
from giving.core.typing import col, rowcount, utc_now
from giving.db import SessionFactory
from giving.models.webhook_event import WebhookEventRecord

logger = get_logger(__name__)

MAX_ERROR_LENGTH = 1000


@dataclass(frozen=True)
class Accepted:
    """This delivery inserted the ledger row."""

    external_event_id: str


@dataclass(frozen=True)
class AlreadyAccepted:
    """Another delivery of the same event got there first."""

    external_event_id: str
    processed: bool


Acceptance = Union[Accepted, AlreadyAccepted]


class EventLedger:
    """Idempotency ledger keyed by the gateway's event id."""

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def try_accept(self, external_event_id: str, event_type: str, payload: dict[str, Any]) -> Acceptance:
        """
        Insert the event if absent.

        Relies on the UNIQUE constraint on external_event_id rather than a
        read-then-insert, so two racing deliveries can't both win: the loser's
        INSERT fails with IntegrityError and it reports AlreadyAccepted.

        Raises:
            TransientDependencyError: if the store is unavailable
        """
        with self._session_factory() as session:
            session.add(
                WebhookEventRecord(
                    external_event_id=external_event_id,
                    event_type=event_type,
                    payload=payload,
                )
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                processed = self._processed_at(session, external_event_id) is not None
                logger.info(
                    "Duplicate webhook event",
                    external_event_id=external_event_id,
                    already_processed=processed,
                )
                return AlreadyAccepted(external_event_id, processed=processed)
            except SQLAlchemyError as e:
                session.rollback()
                raise TransientDependencyError(f"Could not record event: {e}", dependency="store") from e

        logger.info("Webhook event accepted", external_event_id=external_event_id, event_type=event_type)
        return Accepted(external_event_id)

    def mark_processed(self, external_event_id: str) -> bool:
        """
        Set processed_at if it isn't set yet.

        Returns True if this call marked the event; False if it was already
        marked (e.g. by a concurrent redelivery that finished first).
        """
        now = utc_now()
        with self._session_factory() as session:
            result = session.execute(
                update(WebhookEventRecord)
                .where(col(WebhookEventRecord.external_event_id) == external_event_id)
                .where(col(WebhookEventRecord.processed_at).is_(None))
                .values(
                    processed_at=now,
                    attempts=WebhookEventRecord.attempts + 1,
                    last_error=None,
                )
            )
            session.commit()
        return rowcount(result) == 1

    def is_processed(self, external_event_id: str) -> bool:
        with self._session_factory() as session:
            return self._processed_at(session, external_event_id) is not None

    def record_failure(self, external_event_id: str, error: str) -> None:
        """Count a failed handling pass. processed_at stays NULL so the event is retried."""
        with self._session_factory() as session:
            session.execute(
                update(WebhookEventRecord)
                .where(col(WebhookEventRecord.external_event_id) == external_event_id)
                .values(
                    attempts=WebhookEventRecord.attempts + 1,
                    last_error=error[:MAX_ERROR_LENGTH],
                )
            )
            session.commit()

    def pending_events(
        self,
        older_than_minutes: int = 10,
        limit: int = 100,
        max_attempts: int | None = None,
    ) -> list[WebhookEventRecord]:
        """
        Accepted-but-unprocessed events received before the cutoff, oldest first.

        The age threshold keeps the sweep from racing deliveries that are
        still being handled. Rows that have already failed `max_attempts`
        times are left for a person to look at.
        """
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=older_than_minutes)
        with self._session_factory() as session:
            stmt = (
                select(WebhookEventRecord)
                .where(col(WebhookEventRecord.processed_at).is_(None))
                .where(col(WebhookEventRecord.received_at) < cutoff)
            )
            if max_attempts is not None:
                stmt = stmt.where(col(WebhookEventRecord.attempts) < max_attempts)
            stmt = stmt.order_by(col(WebhookEventRecord.received_at).asc()).limit(limit)
            return list(session.exec(stmt).all())

    @staticmethod
    def _processed_at(session, external_event_id: str) -> datetime | None:
        stmt = select(WebhookEventRecord.processed_at).where(
            col(WebhookEventRecord.external_event_id) == external_event_id
        )
        return session.exec(stmt).first()


__all__ = ["Accepted", "AlreadyAccepted", "Acceptance", "EventLedger"]
