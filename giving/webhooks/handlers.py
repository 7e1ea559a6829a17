"""
Handlers for the five gateway event kinds the pipeline understands.

Each handler is idempotent on its own, independent of the ledger: an event
can be accepted and then crash before it is marked processed, and the next
delivery must finish the job rather than skip it or do it twice. Status
changes are therefore conditional UPDATEs, and creating a recurring
contribution checks (and is backed by a UNIQUE constraint on) the payment id.

Secondary effects (receipts, analytics, failure notices) run after the
primary change has committed. Their failures are deferred to the outbox and
never turn a successful state transition into a failed event.
"""
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, select

from giving.core.exceptions import DataIntegrityError, ReceiptSendError, TransientDependencyError
from giving.core.logging_config import get_logger
from giving.core.typing import col, rowcount, utc_now
from giving.models.contribution import Contribution, PaymentStatus
from giving.models.organization import Person
from giving.services.analytics import AnalyticsSink, contribution_succeeded_properties, emit_safely
from giving.services.email import EmailSender, render_payment_failed_email
from giving.services.gateway import PaymentGateway
from giving.services.outbox import Outbox
from giving.services.receipts import ReceiptNotifier
from giving.services.signature import VerifiedEvent
from giving.webhooks.events import EventKind, Fatal, Handled, HandlerResult, Retryable

logger = get_logger(__name__)

CONTRIBUTION_SUCCEEDED = "contribution.succeeded"


class EventHandler:
    """Base handler: maps pipeline exceptions onto result variants."""

    kind: EventKind = EventKind.UNKNOWN

    def handle(self, session: Session, event: VerifiedEvent) -> HandlerResult:
        try:
            return self.apply(session, event)
        except DataIntegrityError as e:
            session.rollback()
            return Fatal(str(e))
        except TransientDependencyError as e:
            session.rollback()
            return Retryable(str(e), dependency=e.dependency)
        except OperationalError as e:
            session.rollback()
            return Retryable(f"Store unavailable: {e}", dependency="store")

    def apply(self, session: Session, event: VerifiedEvent) -> HandlerResult:
        raise NotImplementedError


class IgnoredEventHandler(EventHandler):
    """Acknowledges event types the pipeline doesn't know, without touching state."""

    def apply(self, session: Session, event: VerifiedEvent) -> HandlerResult:
        logger.info("Unhandled event type", event_type=event.type)
        return Handled(note=f"unhandled event type {event.type}")


class ContributionEffects:
    """Receipt and analytics side effects shared by the succeeded-payment handlers."""

    def __init__(self, notifier: ReceiptNotifier, analytics: AnalyticsSink, outbox: Outbox):
        self.notifier = notifier
        self.analytics = analytics
        self.outbox = outbox

    def send_receipt(self, session: Session, contribution: Contribution, event: VerifiedEvent) -> None:
        contribution_id = contribution.id
        try:
            self.notifier.send_if_needed(session, contribution)
        except ReceiptSendError as e:
            logger.warning("Receipt send failed, deferring", contribution_id=contribution_id, error=str(e))
            self.outbox.defer_receipt(
                contribution_id, source_event_id=event.id, error=str(e), held_claim=e.claimed_at
            )

    def record_success(self, contribution: Contribution, event: VerifiedEvent) -> None:
        emit_safely(
            self.analytics,
            CONTRIBUTION_SUCCEEDED,
            contribution_succeeded_properties(contribution),
            outbox=self.outbox,
            source_event_id=event.id,
        )


class PaymentSucceededHandler(EventHandler):
    """payment_intent.succeeded: promote a one-time gift to succeeded and send its receipt."""

    kind = EventKind.PAYMENT_SUCCEEDED

    def __init__(self, effects: ContributionEffects):
        self.effects = effects

    def apply(self, session: Session, event: VerifiedEvent) -> HandlerResult:
        intent = event.data_object
        payment_id = _id_of(intent.get("id"))
        if not payment_id:
            raise DataIntegrityError(f"{event.type} {event.id} has no payment intent id")

        # Subscription charges also raise payment_intent events; invoice.paid owns those
        if intent.get("invoice"):
            return Handled(note="invoice payment, recorded by invoice.paid")

        contribution = find_by_payment_id(session, payment_id)
        if contribution is None:
            raise DataIntegrityError(f"Contribution not found for payment intent {payment_id}")

        now = utc_now()
        result = session.execute(
            update(Contribution)
            .where(col(Contribution.id) == contribution.id)
            .where(col(Contribution.payment_status) != PaymentStatus.SUCCEEDED)
            .values(payment_status=PaymentStatus.SUCCEEDED, processed_at=now, updated_at=now)
        )
        session.commit()
        transitioned = rowcount(result) == 1
        session.refresh(contribution)

        if transitioned:
            logger.info(
                "Contribution succeeded",
                contribution_id=contribution.id,
                amount_cents=contribution.amount_cents,
                fund_id=contribution.fund_id,
            )

        # Only the transitioning pass reports, and it reports before the receipt step
        if transitioned:
            self.effects.record_success(contribution, event)
        self.effects.send_receipt(session, contribution, event)

        return Handled(changed=int(transitioned))


class PaymentFailedHandler(EventHandler):
    """payment_intent.payment_failed: mark a pending one-time gift failed. No donor email."""

    kind = EventKind.PAYMENT_FAILED

    def apply(self, session: Session, event: VerifiedEvent) -> HandlerResult:
        intent = event.data_object
        payment_id = _id_of(intent.get("id"))
        if not payment_id:
            raise DataIntegrityError(f"{event.type} {event.id} has no payment intent id")

        if intent.get("invoice"):
            return Handled(note="invoice payment, handled by invoice.payment_failed")

        contribution = find_by_payment_id(session, payment_id)
        if contribution is None:
            raise DataIntegrityError(f"Contribution not found for payment intent {payment_id}")

        # A late failure never downgrades a gift that already succeeded
        result = session.execute(
            update(Contribution)
            .where(col(Contribution.id) == contribution.id)
            .where(col(Contribution.payment_status) == PaymentStatus.PENDING)
            .values(payment_status=PaymentStatus.FAILED, updated_at=utc_now())
        )
        session.commit()

        changed = rowcount(result)
        if changed:
            logger.info("Contribution payment failed", contribution_id=contribution.id)
        else:
            logger.info(
                "Payment failure ignored for settled contribution",
                contribution_id=contribution.id,
                payment_status=contribution.payment_status.value,
            )
        return Handled(changed=changed)


class InvoicePaidHandler(EventHandler):
    """invoice.paid: record one cycle of a recurring gift and send its receipt."""

    kind = EventKind.INVOICE_PAID

    def __init__(self, gateway: PaymentGateway, effects: ContributionEffects):
        self.gateway = gateway
        self.effects = effects

    def apply(self, session: Session, event: VerifiedEvent) -> HandlerResult:
        invoice = event.data_object
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            return Handled(note="not a subscription invoice")

        payment_id = _id_of(invoice.get("payment_intent")) or _id_of(invoice.get("id"))
        if not payment_id:
            raise DataIntegrityError(f"{event.type} {event.id} has no payment reference")

        existing = find_by_payment_id(session, payment_id)
        if existing is not None:
            # Earlier delivery (or a sibling event) already created it; just make sure the receipt went out
            self.effects.send_receipt(session, existing, event)
            return Handled(note="contribution already recorded")

        metadata = self.gateway.retrieve_subscription(subscription_id)
        if not metadata.tenant_id or not metadata.fund_id:
            raise DataIntegrityError(f"Subscription {subscription_id} is missing tenant_id/fund_id metadata")

        now = utc_now()
        contribution = Contribution(
            tenant_id=metadata.tenant_id,
            person_id=metadata.person_id,
            fund_id=metadata.fund_id,
            amount_cents=int(invoice.get("amount_paid") or 0),
            payment_method="card",  # Recurring gifts always use the saved card
            payment_status=PaymentStatus.SUCCEEDED,
            external_payment_id=payment_id,
            is_recurring=True,
            subscription_id=subscription_id,
            processed_at=now,
        )
        session.add(contribution)
        try:
            session.commit()
        except IntegrityError as e:
            session.rollback()
            winner = find_by_payment_id(session, payment_id)
            if winner is None:
                raise DataIntegrityError(f"Could not record recurring contribution {payment_id}: {e}") from e
            logger.info("Recurring contribution created concurrently", contribution_id=winner.id)
            self.effects.send_receipt(session, winner, event)
            return Handled(note="contribution created by a concurrent delivery")

        session.refresh(contribution)
        logger.info(
            "Recurring contribution recorded",
            contribution_id=contribution.id,
            subscription_id=subscription_id,
            amount_cents=contribution.amount_cents,
        )

        self.effects.record_success(contribution, event)
        self.effects.send_receipt(session, contribution, event)
        return Handled(changed=1)


class InvoicePaymentFailedHandler(EventHandler):
    """invoice.payment_failed: ask the donor to update their payment method."""

    kind = EventKind.INVOICE_PAYMENT_FAILED

    def __init__(
        self,
        gateway: PaymentGateway,
        email_sender: EmailSender,
        outbox: Outbox,
        notice_from: str,
        update_payment_url: str,
    ):
        self.gateway = gateway
        self.email_sender = email_sender
        self.outbox = outbox
        self.notice_from = notice_from
        self.update_payment_url = update_payment_url

    def apply(self, session: Session, event: VerifiedEvent) -> HandlerResult:
        subscription_id = invoice_subscription_id(event.data_object)
        if not subscription_id:
            return Handled(note="not a subscription invoice")

        metadata = self.gateway.retrieve_subscription(subscription_id)
        person = session.get(Person, metadata.person_id) if metadata.person_id else None
        if person is None or not person.email:
            logger.info("No contactable donor for failed recurring payment", subscription_id=subscription_id)
            return Handled(note="no contactable donor")

        try:
            self.email_sender.send(
                to=person.email,
                from_=self.notice_from,
                subject="Your recurring gift payment failed",
                html_body=render_payment_failed_email(person.first_name, self.update_payment_url),
            )
        except TransientDependencyError as e:
            self.outbox.defer_payment_failed_notice(
                person.email, person.first_name, source_event_id=event.id, error=str(e)
            )
        return Handled()


class SubscriptionCancelledHandler(EventHandler):
    """customer.subscription.deleted: no anticipated cycle will be charged, so fail them."""

    kind = EventKind.SUBSCRIPTION_CANCELLED

    def apply(self, session: Session, event: VerifiedEvent) -> HandlerResult:
        subscription_id = _id_of(event.data_object.get("id"))
        if not subscription_id:
            raise DataIntegrityError(f"{event.type} {event.id} has no subscription id")

        result = session.execute(
            update(Contribution)
            .where(col(Contribution.subscription_id) == subscription_id)
            .where(col(Contribution.payment_status) == PaymentStatus.PENDING)
            .values(payment_status=PaymentStatus.FAILED, updated_at=utc_now())
        )
        session.commit()

        changed = rowcount(result)
        logger.info("Subscription cancelled", subscription_id=subscription_id, pending_failed=changed)
        return Handled(changed=changed)


def find_by_payment_id(session: Session, payment_id: str) -> Optional[Contribution]:
    stmt = select(Contribution).where(col(Contribution.external_payment_id) == payment_id)
    return session.exec(stmt).first()


def invoice_subscription_id(invoice: dict[str, Any]) -> Optional[str]:
    """Subscription behind an invoice, for both the classic and the `parent` invoice shapes."""
    subscription = _id_of(invoice.get("subscription"))
    if subscription:
        return subscription

    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return _id_of(details.get("subscription"))


def _id_of(value: Any) -> Optional[str]:
    # Stripe fields are either an id string or the expanded object
    if isinstance(value, dict):
        value = value.get("id")
    return value if isinstance(value, str) and value else None


def build_handlers(
    gateway: PaymentGateway,
    notifier: ReceiptNotifier,
    analytics: AnalyticsSink,
    outbox: Outbox,
    email_sender: EmailSender,
    notice_from: str,
    update_payment_url: str,
) -> dict[EventKind, EventHandler]:
    """One handler instance per known event kind."""
    effects = ContributionEffects(notifier, analytics, outbox)
    handlers: list[EventHandler] = [
        PaymentSucceededHandler(effects),
        PaymentFailedHandler(),
        InvoicePaidHandler(gateway, effects),
        InvoicePaymentFailedHandler(gateway, email_sender, outbox, notice_from, update_payment_url),
        SubscriptionCancelledHandler(),
    ]
    return {handler.kind: handler for handler in handlers}
