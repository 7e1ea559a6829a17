"""
Deferred Effect Outbox

Persistent retry queue for secondary effects of webhook handling. Receipts,
analytics events and payment-failed notices must never fail the payment
state transition they follow, but they shouldn't be dropped either: when
one fails it is written here and a worker retries it with a bounded number
of attempts.

Usage:
    outbox = Outbox(session_factory, max_attempts=5)

    # From a handler, after the primary transition committed
    outbox.defer_receipt(contribution.id, source_event_id=event.id, error=str(e))

    # Worker loop
    runner = DeferredEffectRunner(outbox, session_factory, notifier, analytics, email_sender)
    runner.run_batch(limit=50)
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from giving.core.errors import capture_exception
from giving.core.exceptions import GivingWebhookError, ReceiptSendError
from giving.core.logging_config import get_logger
from giving.core.typing import col, utc_now
from giving.db import SessionFactory
from giving.models.contribution import Contribution
from giving.models.deferred_effect import DeferredEffect, EffectKind, EffectStatus
from giving.services.email import render_payment_failed_email

logger = get_logger(__name__)

MAX_ERROR_LENGTH = 1000


class Outbox:
    """Enqueue, claim, complete and fail deferred effects."""

    def __init__(self, session_factory: SessionFactory, max_attempts: int = 5):
        self._session_factory = session_factory
        self._max_attempts = max_attempts

    def defer(
        self,
        kind: EffectKind,
        payload: dict[str, Any],
        source_event_id: Optional[str] = None,
        error: Optional[str] = None,
        dedup_key: Optional[str] = None,
    ) -> Optional[DeferredEffect]:
        """
        Park an effect for retry.

        If `dedup_key` is given and a pending effect of the same kind already
        carries it, the existing effect is returned instead of a duplicate,
        with any new payload keys merged into it.

        Returns None if the outbox itself couldn't be written; that failure is
        reported but not raised, since the caller's primary work already
        committed.
        """
        try:
            with self._session_factory() as session:
                if dedup_key is not None:
                    existing = self._find_pending(session, kind, dedup_key)
                    if existing:
                        logger.debug("Effect already deferred", kind=kind.value, dedup_key=dedup_key)
                        merged = {**existing.payload, **payload}
                        if merged != existing.payload:
                            existing.payload = merged
                            existing.updated_at = utc_now()
                            session.add(existing)
                            session.commit()
                            session.refresh(existing)
                        return existing

                effect = DeferredEffect(
                    kind=kind,
                    payload={**payload, "dedup_key": dedup_key} if dedup_key else payload,
                    source_event_id=source_event_id,
                    max_attempts=self._max_attempts,
                    last_error=error[:MAX_ERROR_LENGTH] if error else None,
                )
                session.add(effect)
                session.commit()
                session.refresh(effect)
        except SQLAlchemyError as e:
            capture_exception(e, context={"operation": "defer_effect", "kind": kind.value})
            return None

        logger.info("Deferred effect", effect_id=effect.id, kind=kind.value, source_event_id=source_event_id)
        return effect

    def defer_receipt(
        self,
        contribution_id: str,
        source_event_id: Optional[str] = None,
        error: Optional[str] = None,
        held_claim: Optional[datetime] = None,
    ):
        payload: dict[str, Any] = {"contribution_id": contribution_id}
        if held_claim is not None:
            # The receipt flag is still set with this timestamp; the retry takes it over
            payload["held_claim"] = held_claim.isoformat()
        return self.defer(
            EffectKind.RECEIPT,
            payload,
            source_event_id=source_event_id,
            error=error,
            dedup_key=contribution_id,
        )

    def defer_analytics(
        self,
        event_name: str,
        properties: dict[str, Any],
        source_event_id: Optional[str] = None,
        error: Optional[str] = None,
    ):
        return self.defer(
            EffectKind.ANALYTICS,
            {"event_name": event_name, "properties": properties},
            source_event_id=source_event_id,
            error=error,
        )

    def defer_payment_failed_notice(
        self,
        to: str,
        first_name: str,
        source_event_id: Optional[str] = None,
        error: Optional[str] = None,
    ):
        return self.defer(
            EffectKind.PAYMENT_FAILED_NOTICE,
            {"to": to, "first_name": first_name},
            source_event_id=source_event_id,
            error=error,
            dedup_key=source_event_id,
        )

    def claim_next(self) -> Optional[DeferredEffect]:
        """
        Claim the oldest pending effect.

        Atomically updates the effect to IN_PROGRESS and increments the
        attempt count. FOR UPDATE SKIP LOCKED lets several workers run
        side by side on PostgreSQL.
        """
        with self._session_factory() as session:
            stmt = (
                select(DeferredEffect)
                .where(col(DeferredEffect.status) == EffectStatus.PENDING)
                .order_by(col(DeferredEffect.created_at).asc(), col(DeferredEffect.id).asc())
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            effect = session.exec(stmt).first()
            if not effect:
                return None

            now = utc_now()
            effect.status = EffectStatus.IN_PROGRESS
            effect.attempts += 1
            effect.started_at = now
            effect.updated_at = now
            session.add(effect)
            session.commit()
            session.refresh(effect)

        logger.info(
            "Claimed deferred effect",
            effect_id=effect.id,
            kind=effect.kind.value,
            attempt=effect.attempts,
            max_attempts=effect.max_attempts,
        )
        return effect

    def complete(self, effect_id: int) -> Optional[DeferredEffect]:
        with self._session_factory() as session:
            effect = session.get(DeferredEffect, effect_id)
            if not effect:
                logger.warning("Deferred effect not found for completion", effect_id=effect_id)
                return None

            now = utc_now()
            effect.status = EffectStatus.COMPLETED
            effect.completed_at = now
            effect.updated_at = now
            effect.last_error = None
            session.add(effect)
            session.commit()
            session.refresh(effect)

        logger.info("Completed deferred effect", effect_id=effect_id, kind=effect.kind.value)
        return effect

    def fail(self, effect_id: int, error: str) -> Optional[DeferredEffect]:
        """
        Record a failed attempt.

        Below max_attempts the effect returns to PENDING for another try;
        otherwise it is marked permanently FAILED.
        """
        with self._session_factory() as session:
            effect = session.get(DeferredEffect, effect_id)
            if not effect:
                logger.warning("Deferred effect not found for failure", effect_id=effect_id)
                return None

            now = utc_now()
            effect.last_error = error[:MAX_ERROR_LENGTH]
            effect.updated_at = now
            if effect.attempts >= effect.max_attempts:
                effect.status = EffectStatus.FAILED
                effect.completed_at = now
                logger.warning(
                    "Deferred effect permanently failed",
                    effect_id=effect_id,
                    kind=effect.kind.value,
                    attempts=effect.attempts,
                    error=error[:100],
                )
            else:
                effect.status = EffectStatus.PENDING
                effect.started_at = None
                logger.info(
                    "Deferred effect failed, will retry",
                    effect_id=effect_id,
                    attempt=effect.attempts,
                    max_attempts=effect.max_attempts,
                    error=error[:100],
                )
            session.add(effect)
            session.commit()
            session.refresh(effect)
        return effect

    def reset_stale(self, timeout_minutes: int = 30) -> int:
        """Return effects stuck IN_PROGRESS (worker crashed) to the queue."""
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=timeout_minutes)
        with self._session_factory() as session:
            stmt = select(DeferredEffect).where(
                col(DeferredEffect.status) == EffectStatus.IN_PROGRESS,
                col(DeferredEffect.started_at) < cutoff,
            )
            stale = list(session.exec(stmt).all())
            for effect in stale:
                effect.status = EffectStatus.PENDING
                effect.started_at = None
                effect.updated_at = utc_now()
                effect.last_error = f"Effect timed out after {timeout_minutes} minutes"
                session.add(effect)
            if stale:
                session.commit()
                logger.warning("Reset stale deferred effects", count=len(stale))
        return len(stale)

    def stats(self) -> dict[str, int]:
        """Counts per status: {"pending": N, "in_progress": N, ...}"""
        counts = {status.value: 0 for status in EffectStatus}
        with self._session_factory() as session:
            stmt = select(DeferredEffect.status, func.count()).group_by(DeferredEffect.status)
            for status, count in session.exec(stmt).all():
                counts[EffectStatus(status).value] = count
        return counts

    @staticmethod
    def _find_pending(session, kind: EffectKind, dedup_key: str) -> Optional[DeferredEffect]:
        stmt = select(DeferredEffect).where(
            col(DeferredEffect.kind) == kind,
            col(DeferredEffect.status).in_([EffectStatus.PENDING, EffectStatus.IN_PROGRESS]),
        )
        for effect in session.exec(stmt).all():
            if effect.payload.get("dedup_key") == dedup_key:
                return effect
        return None


class DeferredEffectRunner:
    """Executes claimed effects against the real collaborators."""

    def __init__(
        self,
        outbox: Outbox,
        session_factory: SessionFactory,
        notifier,
        analytics,
        email_sender,
        notice_from: str,
        update_payment_url: str,
    ):
        self._outbox = outbox
        self._session_factory = session_factory
        self._notifier = notifier
        self._analytics = analytics
        self._email_sender = email_sender
        self._notice_from = notice_from
        self._update_payment_url = update_payment_url

    def run_batch(self, limit: int = 50) -> dict[str, int]:
        """Claim and execute up to `limit` effects. Returns {"completed": N, "failed": N}."""
        completed = failed = 0
        for _ in range(limit):
            effect = self._outbox.claim_next()
            if effect is None:
                break
            try:
                self.execute(effect)
            except (GivingWebhookError, SQLAlchemyError) as e:
                self._outbox.fail(effect.id, str(e))
                failed += 1
            else:
                self._outbox.complete(effect.id)
                completed += 1
        return {"completed": completed, "failed": failed}

    def execute(self, effect: DeferredEffect) -> None:
        if effect.kind == EffectKind.RECEIPT:
            with self._session_factory() as session:
                contribution = session.get(Contribution, effect.payload["contribution_id"])
                if contribution is None:
                    logger.warning("Receipt effect for missing contribution", effect_id=effect.id)
                    return
                held_claim = effect.payload.get("held_claim")
                try:
                    self._notifier.send_if_needed(
                        session,
                        contribution,
                        held_claim=datetime.fromisoformat(held_claim) if held_claim else None,
                    )
                except ReceiptSendError as e:
                    if e.claimed_at is not None:
                        self._outbox.defer_receipt(effect.payload["contribution_id"], held_claim=e.claimed_at)
                    raise

        elif effect.kind == EffectKind.ANALYTICS:
            self._analytics.emit(effect.payload["event_name"], effect.payload["properties"])

        elif effect.kind == EffectKind.PAYMENT_FAILED_NOTICE:
            self._email_sender.send(
                to=effect.payload["to"],
                from_=self._notice_from,
                subject="Your recurring gift payment failed",
                html_body=render_payment_failed_email(effect.payload["first_name"], self._update_payment_url),
            )


__all__ = ["Outbox", "DeferredEffectRunner"]
