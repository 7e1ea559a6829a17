"""
Webhook Processor

Drives one gateway delivery from raw bytes to an accept/reject decision:

    RECEIVED -> SIGNATURE_VERIFIED -> ACCEPTED | DUPLICATE -> ROUTED -> HANDLED -> PROCESSED_MARKED
                                   \\-> REJECTED

The ledger row is written before the handler runs and only marked processed
after the handler (and its side effects) completed. A delivery that fails
part-way therefore leaves an unprocessed row behind, which the next
redelivery or the reprocessing sweep picks up.

Usage:
    processor = WebhookProcessor.from_settings(settings, new_session)
    result = processor.handle(raw_body, request.headers.get("Stripe-Signature"))
    return Response(status_code=result.http_status)
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from structlog.contextvars import bound_contextvars

from giving.core.config import Settings
from giving.core.context import set_event_id
from giving.core.errors import capture_exception, capture_message
from giving.core.exceptions import SignatureError, TransientDependencyError
from giving.core.logging_config import get_logger
from giving.db import SessionFactory
from giving.services.analytics import DatabaseAnalyticsSink
from giving.services.email import ResendEmailSender, recurring_gifts_url
from giving.services.gateway import StripeGateway
from giving.services.ledger import AlreadyAccepted, EventLedger
from giving.services.outbox import Outbox
from giving.services.receipts import ReceiptNotifier
from giving.services.signature import SignatureVerifier, VerifiedEvent
from giving.webhooks.events import EventKind, Fatal, Retryable
from giving.webhooks.handlers import build_handlers
from giving.webhooks.router import EventRouter

logger = get_logger(__name__)


class Outcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    REJECTED = "rejected"
    RETRY = "retry"
    FAILED = "failed"


# 2xx stops the gateway's redelivery, anything else asks for another attempt
HTTP_STATUS = {
    Outcome.PROCESSED: 200,
    Outcome.DUPLICATE: 200,
    Outcome.IGNORED: 200,
    Outcome.REJECTED: 400,
    Outcome.RETRY: 500,
    Outcome.FAILED: 422,
}


@dataclass(frozen=True)
class WebhookResult:
    outcome: Outcome
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    detail: Optional[str] = None

    @property
    def acknowledged(self) -> bool:
        return self.outcome in (Outcome.PROCESSED, Outcome.DUPLICATE, Outcome.IGNORED)

    @property
    def http_status(self) -> int:
        return HTTP_STATUS[self.outcome]


class WebhookProcessor:
    def __init__(
        self,
        verifier: SignatureVerifier,
        ledger: EventLedger,
        router: EventRouter,
        session_factory: SessionFactory,
    ):
        self.verifier = verifier
        self.ledger = ledger
        self.router = router
        self._session_factory = session_factory

    @classmethod
    def from_settings(cls, settings: Settings, session_factory: SessionFactory) -> "WebhookProcessor":
        """Wire the production collaborators (Stripe, Resend, database analytics, outbox)."""
        email_sender = ResendEmailSender(settings.RESEND_API_KEY)
        outbox = Outbox(session_factory, max_attempts=settings.OUTBOX_MAX_ATTEMPTS)
        notifier = ReceiptNotifier(
            email_sender,
            fallback_domain=settings.RECEIPT_FROM_DOMAIN,
            default_organization_name=settings.DEFAULT_ORGANIZATION_NAME,
        )
        handlers = build_handlers(
            gateway=StripeGateway(settings.STRIPE_SECRET_KEY),
            notifier=notifier,
            analytics=DatabaseAnalyticsSink(session_factory),
            outbox=outbox,
            email_sender=email_sender,
            notice_from=settings.NOTICE_FROM_EMAIL,
            update_payment_url=recurring_gifts_url(settings.APP_BASE_URL),
        )
        return cls(
            verifier=SignatureVerifier(
                settings.STRIPE_WEBHOOK_SECRET,
                tolerance_seconds=settings.STRIPE_SIGNATURE_TOLERANCE_SECONDS,
            ),
            ledger=EventLedger(session_factory),
            router=EventRouter(handlers),
            session_factory=session_factory,
        )

    def handle(self, raw_body: bytes, signature_header: Optional[str]) -> WebhookResult:
        """
        Process one delivery.

        Never raises for signature, duplicate, retryable or integrity
        failures; those come back as a WebhookResult. An unexpected handler
        exception is recorded on the ledger row and re-raised.
        """
        try:
            event = self.verifier.verify(raw_body, signature_header)
        except SignatureError as e:
            logger.warning("Webhook signature rejected", error=str(e))
            return WebhookResult(Outcome.REJECTED, detail=str(e))

        set_event_id(event.id)
        try:
            with bound_contextvars(event_id=event.id, event_type=event.type):
                try:
                    acceptance = self.ledger.try_accept(event.id, event.type, event.payload)
                except TransientDependencyError as e:
                    logger.warning("Ledger unavailable", error=str(e))
                    return WebhookResult(Outcome.RETRY, event.id, event.type, str(e))

                duplicate = isinstance(acceptance, AlreadyAccepted)
                if duplicate and acceptance.processed:
                    return WebhookResult(Outcome.DUPLICATE, event.id, event.type, "already processed")

                # An accepted-but-unprocessed duplicate means an earlier pass died part-way;
                # handlers are idempotent, so finish the job.
                return self._dispatch(event, duplicate=duplicate)
        finally:
            set_event_id(None)

    def reprocess_pending(
        self,
        older_than_minutes: int = 10,
        limit: int = 100,
        max_attempts: Optional[int] = 5,
    ) -> list[WebhookResult]:
        """
        Replay ledger rows that were accepted but never marked processed.

        Stored payloads were authenticated when first accepted, so no
        signature is checked here. Rows that have failed `max_attempts`
        times are skipped (None replays everything).
        """
        records = self.ledger.pending_events(
            older_than_minutes=older_than_minutes, limit=limit, max_attempts=max_attempts
        )
        if records:
            logger.info("Reprocessing pending webhook events", count=len(records))

        results = []
        for record in records:
            try:
                event = VerifiedEvent.from_payload(record.payload)
            except SignatureError as e:
                logger.error("Stored payload is unusable", external_event_id=record.external_event_id, error=str(e))
                results.append(WebhookResult(Outcome.FAILED, record.external_event_id, record.event_type, str(e)))
                continue

            set_event_id(event.id)
            try:
                with bound_contextvars(event_id=event.id, event_type=event.type):
                    results.append(self._dispatch(event, duplicate=False))
            except Exception as e:
                # Already recorded and reported by _dispatch; keep sweeping the rest
                results.append(WebhookResult(Outcome.FAILED, event.id, event.type, f"{type(e).__name__}: {e}"))
            finally:
                set_event_id(None)
        return results

    def _dispatch(self, event: VerifiedEvent, duplicate: bool) -> WebhookResult:
        kind = EventKind.from_type(event.type)
        handler = self.router.route(event.type)

        try:
            with self._session_factory() as session:
                result = handler.handle(session, event)
        except Exception as e:
            self._record_failure(event.id, f"{type(e).__name__}: {e}")
            capture_exception(e, context={"event_id": event.id, "event_type": event.type})
            raise

        if isinstance(result, Retryable):
            self._record_failure(event.id, result.reason)
            logger.warning("Webhook handling will be retried", reason=result.reason, dependency=result.dependency)
            return WebhookResult(Outcome.RETRY, event.id, event.type, result.reason)

        if isinstance(result, Fatal):
            self._record_failure(event.id, result.reason)
            capture_message(
                f"Webhook event could not be applied: {result.reason}",
                level="error",
                context={"event_id": event.id, "event_type": event.type},
                fingerprint=["webhook-fatal", event.type],
            )
            return WebhookResult(Outcome.FAILED, event.id, event.type, result.reason)

        try:
            self.ledger.mark_processed(event.id)
        except SQLAlchemyError as e:
            # Handler work is committed and idempotent; a redelivery will mark it
            logger.warning("Could not mark webhook event processed", error=str(e))
            return WebhookResult(Outcome.RETRY, event.id, event.type, str(e))

        if duplicate:
            outcome = Outcome.DUPLICATE
        elif kind is EventKind.UNKNOWN:
            outcome = Outcome.IGNORED
        else:
            outcome = Outcome.PROCESSED

        logger.info("Webhook event handled", outcome=outcome.value, changed=result.changed, note=result.note)
        return WebhookResult(outcome, event.id, event.type, result.note)

    def _record_failure(self, external_event_id: str, error: str) -> None:
        try:
            self.ledger.record_failure(external_event_id, error)
        except SQLAlchemyError as e:
            logger.error("Could not record webhook failure", error=str(e), original_error=error)
