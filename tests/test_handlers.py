"""
Tests for the event handlers.

Tests cover:
1. PaymentSucceeded - promotion, receipt, analytics, redelivery, deferred effects
2. PaymentFailed - pending only, never downgrades a succeeded gift
3. InvoicePaid - recurring contribution creation, dedup, concurrent creation
4. InvoicePaymentFailed - donor notice and its deferral
5. SubscriptionCancelled - set-based, stable under repetition
6. Base handler exception mapping
"""

from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from giving.core.exceptions import TransientDependencyError
from giving.models.contribution import Contribution, PaymentStatus
from giving.models.deferred_effect import DeferredEffect, EffectKind
from giving.services.gateway import SubscriptionMetadata
from giving.services.receipts import ReceiptNotifier
from giving.services.signature import VerifiedEvent
from giving.webhooks.events import EventKind, Fatal, Handled, Retryable
from giving.webhooks.handlers import EventHandler, invoice_subscription_id


def _event(make_event, event_type, data_object, event_id="evt_1") -> VerifiedEvent:
    return VerifiedEvent.from_payload(make_event(event_type, data_object, event_id=event_id))


def _deferred(session: Session, kind: EffectKind) -> list[DeferredEffect]:
    return list(session.exec(select(DeferredEffect).where(DeferredEffect.kind == kind)).all())


def _contributions(session: Session) -> list[Contribution]:
    return list(session.exec(select(Contribution)).all())


def _recurring(session: Session, tenant, fund, subscription_id, status, payment_id) -> Contribution:
    contribution = Contribution(
        tenant_id=tenant.id,
        fund_id=fund.id,
        amount_cents=1000,
        payment_status=status,
        external_payment_id=payment_id,
        is_recurring=True,
        subscription_id=subscription_id,
    )
    session.add(contribution)
    session.commit()
    session.refresh(contribution)
    return contribution


class TestPaymentSucceeded:
    """Tests for payment_intent.succeeded."""

    def test_promotes_pending_contribution(
        self, test_session, handlers, pending_contribution, email_sender, analytics_sink, make_event
    ):
        """The pay_123 scenario: succeeded, one $25.00 receipt, receipt flag set."""
        handler = handlers[EventKind.PAYMENT_SUCCEEDED]
        event = _event(make_event, "payment_intent.succeeded", {"id": "pay_123", "amount": 2500})

        result = handler.handle(test_session, event)

        assert result == Handled(changed=1)
        test_session.refresh(pending_contribution)
        assert pending_contribution.payment_status == PaymentStatus.SUCCEEDED
        assert pending_contribution.processed_at is not None
        assert pending_contribution.receipt_sent_at is not None

        assert len(email_sender.sent) == 1
        receipt = email_sender.sent[0]
        assert receipt["to"] == "ada@example.com"
        assert receipt["from"] == "Grace Church <giving@grace.church>"
        assert "$25.00" in receipt["html"]
        assert "General Fund" in receipt["html"]

        analytics_sink.emit.assert_called_once()
        name, properties = analytics_sink.emit.call_args[0]
        assert name == "contribution.succeeded"
        assert properties["amount_cents"] == 2500
        assert properties["fund_id"] == "general"
        assert properties["is_recurring"] is False

    def test_redelivery_changes_nothing(
        self, test_session, handlers, pending_contribution, email_sender, analytics_sink, make_event
    ):
        """Second application: no transition, no second receipt, no second analytics record."""
        handler = handlers[EventKind.PAYMENT_SUCCEEDED]
        event = _event(make_event, "payment_intent.succeeded", {"id": "pay_123"})

        handler.handle(test_session, event)
        result = handler.handle(test_session, event)

        assert result == Handled(changed=0)
        assert len(email_sender.sent) == 1
        assert analytics_sink.emit.call_count == 1

    def test_promotes_previously_failed_contribution(
        self, test_session, handlers, pending_contribution, make_event
    ):
        """A retried card on the same intent can still succeed after a failure."""
        pending_contribution.payment_status = PaymentStatus.FAILED
        test_session.add(pending_contribution)
        test_session.commit()

        result = handlers[EventKind.PAYMENT_SUCCEEDED].handle(
            test_session, _event(make_event, "payment_intent.succeeded", {"id": "pay_123"})
        )

        assert result.changed == 1
        test_session.refresh(pending_contribution)
        assert pending_contribution.payment_status == PaymentStatus.SUCCEEDED

    def test_missing_contribution_is_fatal(self, test_session, handlers, email_sender, make_event):
        result = handlers[EventKind.PAYMENT_SUCCEEDED].handle(
            test_session, _event(make_event, "payment_intent.succeeded", {"id": "pay_missing"})
        )

        assert isinstance(result, Fatal)
        assert "pay_missing" in result.reason
        assert email_sender.sent == []

    def test_intent_without_id_is_fatal(self, test_session, handlers, make_event):
        result = handlers[EventKind.PAYMENT_SUCCEEDED].handle(
            test_session, _event(make_event, "payment_intent.succeeded", {})
        )

        assert isinstance(result, Fatal)

    def test_invoice_intents_are_left_to_invoice_paid(
        self, test_session, handlers, pending_contribution, email_sender, make_event
    ):
        pending_contribution.external_payment_id = "pi_sub"
        test_session.add(pending_contribution)
        test_session.commit()

        result = handlers[EventKind.PAYMENT_SUCCEEDED].handle(
            test_session,
            _event(make_event, "payment_intent.succeeded", {"id": "pi_sub", "invoice": "in_1"}),
        )

        assert result == Handled(changed=0, note="invoice payment, recorded by invoice.paid")
        test_session.refresh(pending_contribution)
        assert pending_contribution.payment_status == PaymentStatus.PENDING
        assert email_sender.sent == []

    def test_receipt_failure_is_deferred_not_fatal(
        self, test_session, handlers, pending_contribution, email_sender, make_event
    ):
        """The status transition stands; the receipt goes to the outbox with its claim released."""
        email_sender.fail_times = 1

        result = handlers[EventKind.PAYMENT_SUCCEEDED].handle(
            test_session, _event(make_event, "payment_intent.succeeded", {"id": "pay_123"})
        )

        assert result == Handled(changed=1)
        test_session.refresh(pending_contribution)
        assert pending_contribution.payment_status == PaymentStatus.SUCCEEDED
        assert pending_contribution.receipt_sent_at is None

        effects = _deferred(test_session, EffectKind.RECEIPT)
        assert len(effects) == 1
        assert effects[0].payload["contribution_id"] == pending_contribution.id
        assert effects[0].source_event_id == "evt_1"
        assert "email service down" in effects[0].last_error

    def test_analytics_failure_is_deferred(
        self, test_session, handlers, pending_contribution, analytics_sink, email_sender, make_event
    ):
        analytics_sink.emit.side_effect = RuntimeError("warehouse offline")

        result = handlers[EventKind.PAYMENT_SUCCEEDED].handle(
            test_session, _event(make_event, "payment_intent.succeeded", {"id": "pay_123"})
        )

        assert result == Handled(changed=1)
        assert len(email_sender.sent) == 1
        effects = _deferred(test_session, EffectKind.ANALYTICS)
        assert len(effects) == 1
        assert effects[0].payload["event_name"] == "contribution.succeeded"

    def test_success_reported_when_receipt_step_hits_store_outage(
        self, test_session, handlers, pending_contribution, analytics_sink, email_sender, make_event
    ):
        """The transition committed, so the retry that finishes the receipt must not lose the analytics record."""
        handler = handlers[EventKind.PAYMENT_SUCCEEDED]
        event = _event(make_event, "payment_intent.succeeded", {"id": "pay_123"})

        with patch.object(
            ReceiptNotifier, "send_if_needed", side_effect=OperationalError("UPDATE", {}, Exception("db gone"))
        ):
            first = handler.handle(test_session, event)

        assert isinstance(first, Retryable)
        assert first.dependency == "store"
        analytics_sink.emit.assert_called_once()

        retried = handler.handle(test_session, event)

        assert retried == Handled(changed=0)
        assert analytics_sink.emit.call_count == 1
        assert len(email_sender.sent) == 1

    def test_unreleased_receipt_claim_is_deferred_with_the_claim(
        self, test_session, handlers, pending_contribution, email_sender, make_event
    ):
        """Send fails and the claim can't be released: the outbox entry carries the claim so a retry can take it."""
        email_sender.fail_times = 1

        with patch.object(
            ReceiptNotifier, "_release", side_effect=OperationalError("UPDATE", {}, Exception("db gone"))
        ):
            result = handlers[EventKind.PAYMENT_SUCCEEDED].handle(
                test_session, _event(make_event, "payment_intent.succeeded", {"id": "pay_123"})
            )

        assert result == Handled(changed=1)
        test_session.refresh(pending_contribution)
        assert pending_contribution.receipt_sent_at is not None

        [effect] = _deferred(test_session, EffectKind.RECEIPT)
        assert effect.payload["contribution_id"] == pending_contribution.id
        assert effect.payload["held_claim"]

    def test_guest_contribution_receipt(
        self, test_session, handlers, sample_tenant, sample_fund, email_sender, make_event
    ):
        guest = Contribution(
            tenant_id=sample_tenant.id,
            fund_id=sample_fund.id,
            amount_cents=123456,
            external_payment_id="pay_guest",
            guest_name="Grace Hopper",
            guest_email="grace@example.com",
        )
        test_session.add(guest)
        test_session.commit()

        handlers[EventKind.PAYMENT_SUCCEEDED].handle(
            test_session, _event(make_event, "payment_intent.succeeded", {"id": "pay_guest"})
        )

        assert email_sender.sent[0]["to"] == "grace@example.com"
        assert "Grace Hopper" in email_sender.sent[0]["html"]
        assert "$1,234.56" in email_sender.sent[0]["html"]


class TestPaymentFailed:
    """Tests for payment_intent.payment_failed."""

    def test_marks_pending_contribution_failed(
        self, test_session, handlers, pending_contribution, email_sender, make_event
    ):
        result = handlers[EventKind.PAYMENT_FAILED].handle(
            test_session, _event(make_event, "payment_intent.payment_failed", {"id": "pay_123"})
        )

        assert result == Handled(changed=1)
        test_session.refresh(pending_contribution)
        assert pending_contribution.payment_status == PaymentStatus.FAILED
        # One-time failures don't email the donor
        assert email_sender.sent == []

    def test_never_downgrades_succeeded(self, test_session, handlers, pending_contribution, make_event):
        pending_contribution.payment_status = PaymentStatus.SUCCEEDED
        test_session.add(pending_contribution)
        test_session.commit()

        result = handlers[EventKind.PAYMENT_FAILED].handle(
            test_session, _event(make_event, "payment_intent.payment_failed", {"id": "pay_123"})
        )

        assert result == Handled(changed=0)
        test_session.refresh(pending_contribution)
        assert pending_contribution.payment_status == PaymentStatus.SUCCEEDED

    def test_repeated_failure_is_noop(self, test_session, handlers, pending_contribution, make_event):
        handler = handlers[EventKind.PAYMENT_FAILED]
        event = _event(make_event, "payment_intent.payment_failed", {"id": "pay_123"})

        handler.handle(test_session, event)
        result = handler.handle(test_session, event)

        assert result == Handled(changed=0)

    def test_missing_contribution_is_fatal(self, test_session, handlers, make_event):
        result = handlers[EventKind.PAYMENT_FAILED].handle(
            test_session, _event(make_event, "payment_intent.payment_failed", {"id": "pay_missing"})
        )

        assert isinstance(result, Fatal)

    def test_invoice_intents_are_skipped(self, test_session, handlers, pending_contribution, make_event):
        result = handlers[EventKind.PAYMENT_FAILED].handle(
            test_session,
            _event(make_event, "payment_intent.payment_failed", {"id": "pay_123", "invoice": "in_1"}),
        )

        assert result.changed == 0
        test_session.refresh(pending_contribution)
        assert pending_contribution.payment_status == PaymentStatus.PENDING


class TestInvoicePaid:
    """Tests for invoice.paid."""

    INVOICE = {"id": "in_1", "subscription": "sub_1", "payment_intent": "pi_inv_1", "amount_paid": 5000}

    def test_creates_recurring_contribution(
        self, test_session, handlers, gateway, email_sender, analytics_sink, make_event
    ):
        result = handlers[EventKind.INVOICE_PAID].handle(
            test_session, _event(make_event, "invoice.paid", dict(self.INVOICE))
        )

        assert result == Handled(changed=1)
        gateway.retrieve_subscription.assert_called_once_with("sub_1")

        [contribution] = _contributions(test_session)
        assert contribution.external_payment_id == "pi_inv_1"
        assert contribution.subscription_id == "sub_1"
        assert contribution.is_recurring is True
        assert contribution.payment_status == PaymentStatus.SUCCEEDED
        assert contribution.amount_cents == 5000
        assert contribution.payment_method == "card"
        assert contribution.person_id == "person-1"
        assert contribution.fund_id == "general"
        assert contribution.receipt_sent_at is not None

        assert len(email_sender.sent) == 1
        assert "$50.00" in email_sender.sent[0]["html"]
        analytics_sink.emit.assert_called_once()
        assert analytics_sink.emit.call_args[0][1]["is_recurring"] is True

    def test_redelivery_does_not_duplicate(self, test_session, handlers, gateway, email_sender, make_event):
        """Exactly one contribution per invoice payment id, and one receipt."""
        handler = handlers[EventKind.INVOICE_PAID]
        event = _event(make_event, "invoice.paid", dict(self.INVOICE))

        handler.handle(test_session, event)
        result = handler.handle(test_session, event)

        assert result == Handled(changed=0, note="contribution already recorded")
        assert len(_contributions(test_session)) == 1
        assert len(email_sender.sent) == 1
        assert gateway.retrieve_subscription.call_count == 1

    def test_falls_back_to_invoice_id(self, test_session, handlers, make_event):
        invoice = {"id": "in_2", "subscription": "sub_1", "amount_paid": 1500}

        handlers[EventKind.INVOICE_PAID].handle(test_session, _event(make_event, "invoice.paid", invoice))

        [contribution] = _contributions(test_session)
        assert contribution.external_payment_id == "in_2"

    def test_parent_subscription_details_shape(self, test_session, handlers, gateway, make_event):
        """Newer invoices carry the subscription under parent.subscription_details."""
        invoice = {
            "id": "in_3",
            "amount_paid": 2000,
            "parent": {"subscription_details": {"subscription": "sub_new"}},
        }

        result = handlers[EventKind.INVOICE_PAID].handle(test_session, _event(make_event, "invoice.paid", invoice))

        assert result.changed == 1
        gateway.retrieve_subscription.assert_called_once_with("sub_new")

    def test_non_subscription_invoice_is_skipped(self, test_session, handlers, gateway, make_event):
        result = handlers[EventKind.INVOICE_PAID].handle(
            test_session, _event(make_event, "invoice.paid", {"id": "in_4", "amount_paid": 100})
        )

        assert result == Handled(changed=0, note="not a subscription invoice")
        gateway.retrieve_subscription.assert_not_called()
        assert _contributions(test_session) == []

    def test_missing_metadata_is_fatal(self, test_session, handlers, gateway, make_event):
        gateway.retrieve_subscription.side_effect = None
        gateway.retrieve_subscription.return_value = SubscriptionMetadata(
            subscription_id="sub_1", tenant_id="tenant-1", person_id=None, fund_id=None
        )

        result = handlers[EventKind.INVOICE_PAID].handle(
            test_session, _event(make_event, "invoice.paid", dict(self.INVOICE))
        )

        assert isinstance(result, Fatal)
        assert "sub_1" in result.reason
        assert _contributions(test_session) == []

    def test_gateway_outage_is_retryable(self, test_session, handlers, gateway, make_event):
        gateway.retrieve_subscription.side_effect = TransientDependencyError("Stripe unavailable", dependency="gateway")

        result = handlers[EventKind.INVOICE_PAID].handle(
            test_session, _event(make_event, "invoice.paid", dict(self.INVOICE))
        )

        assert result == Retryable("Stripe unavailable", dependency="gateway")

    def test_concurrent_creator_wins(
        self, test_session, handlers, gateway, session_factory, sample_tenant, sample_person, sample_fund,
        email_sender, analytics_sink, make_event,
    ):
        """Losing the UNIQUE race reloads the winner's row instead of failing or duplicating."""

        def create_winner_then_return(subscription_id):
            with session_factory() as other:
                other.add(
                    Contribution(
                        tenant_id=sample_tenant.id,
                        person_id=sample_person.id,
                        fund_id=sample_fund.id,
                        amount_cents=5000,
                        payment_status=PaymentStatus.SUCCEEDED,
                        external_payment_id="pi_inv_1",
                        is_recurring=True,
                        subscription_id=subscription_id,
                    )
                )
                other.commit()
            return SubscriptionMetadata(subscription_id, sample_tenant.id, sample_person.id, sample_fund.id)

        gateway.retrieve_subscription.side_effect = create_winner_then_return

        result = handlers[EventKind.INVOICE_PAID].handle(
            test_session, _event(make_event, "invoice.paid", dict(self.INVOICE))
        )

        assert result == Handled(changed=0, note="contribution created by a concurrent delivery")
        assert len(_contributions(test_session)) == 1
        assert len(email_sender.sent) == 1
        analytics_sink.emit.assert_not_called()


class TestInvoicePaymentFailed:
    """Tests for invoice.payment_failed."""

    def test_emails_donor(self, test_session, handlers, email_sender, make_event):
        result = handlers[EventKind.INVOICE_PAYMENT_FAILED].handle(
            test_session, _event(make_event, "invoice.payment_failed", {"id": "in_1", "subscription": "sub_1"})
        )

        assert result == Handled()
        [notice] = email_sender.sent
        assert notice["to"] == "ada@example.com"
        assert notice["from"] == "Giving <noreply@church.app>"
        assert notice["subject"] == "Your recurring gift payment failed"
        assert "Hi Ada" in notice["html"]
        assert "http://localhost:3000/give/recurring" in notice["html"]

    def test_donor_without_person_is_acknowledged(self, test_session, handlers, gateway, email_sender, make_event):
        gateway.retrieve_subscription.side_effect = None
        gateway.retrieve_subscription.return_value = SubscriptionMetadata(
            subscription_id="sub_1", tenant_id="tenant-1", person_id=None, fund_id="general"
        )

        result = handlers[EventKind.INVOICE_PAYMENT_FAILED].handle(
            test_session, _event(make_event, "invoice.payment_failed", {"id": "in_1", "subscription": "sub_1"})
        )

        assert result == Handled(changed=0, note="no contactable donor")
        assert email_sender.sent == []

    def test_send_failure_is_deferred(self, test_session, handlers, email_sender, make_event):
        email_sender.fail_times = 1

        result = handlers[EventKind.INVOICE_PAYMENT_FAILED].handle(
            test_session,
            _event(make_event, "invoice.payment_failed", {"id": "in_1", "subscription": "sub_1"}, event_id="evt_f"),
        )

        assert result == Handled()
        [effect] = _deferred(test_session, EffectKind.PAYMENT_FAILED_NOTICE)
        assert effect.payload["to"] == "ada@example.com"
        assert effect.payload["first_name"] == "Ada"
        assert effect.source_event_id == "evt_f"

    def test_non_subscription_invoice_is_skipped(self, test_session, handlers, gateway, email_sender, make_event):
        result = handlers[EventKind.INVOICE_PAYMENT_FAILED].handle(
            test_session, _event(make_event, "invoice.payment_failed", {"id": "in_1"})
        )

        assert result.note == "not a subscription invoice"
        gateway.retrieve_subscription.assert_not_called()
        assert email_sender.sent == []


class TestSubscriptionCancelled:
    """Tests for customer.subscription.deleted."""

    def test_fails_pending_cycles_only(self, test_session, handlers, sample_tenant, sample_fund, make_event):
        pending = _recurring(test_session, sample_tenant, sample_fund, "sub_1", PaymentStatus.PENDING, "pi_a")
        succeeded = _recurring(test_session, sample_tenant, sample_fund, "sub_1", PaymentStatus.SUCCEEDED, "pi_b")
        other = _recurring(test_session, sample_tenant, sample_fund, "sub_2", PaymentStatus.PENDING, "pi_c")

        result = handlers[EventKind.SUBSCRIPTION_CANCELLED].handle(
            test_session, _event(make_event, "customer.subscription.deleted", {"id": "sub_1"})
        )

        assert result == Handled(changed=1)
        for contribution in (pending, succeeded, other):
            test_session.refresh(contribution)
        assert pending.payment_status == PaymentStatus.FAILED
        assert succeeded.payment_status == PaymentStatus.SUCCEEDED
        assert other.payment_status == PaymentStatus.PENDING

    def test_repeated_cancellation_is_stable(self, test_session, handlers, sample_tenant, sample_fund, make_event):
        _recurring(test_session, sample_tenant, sample_fund, "sub_1", PaymentStatus.PENDING, "pi_a")
        _recurring(test_session, sample_tenant, sample_fund, "sub_1", PaymentStatus.PENDING, "pi_b")
        handler = handlers[EventKind.SUBSCRIPTION_CANCELLED]
        event = _event(make_event, "customer.subscription.deleted", {"id": "sub_1"})

        first = handler.handle(test_session, event)
        statuses_after_first = sorted(c.payment_status.value for c in _contributions(test_session))
        second = handler.handle(test_session, event)
        statuses_after_second = sorted(c.payment_status.value for c in _contributions(test_session))

        assert first.changed == 2
        assert second.changed == 0
        assert statuses_after_first == statuses_after_second == ["failed", "failed"]

    def test_missing_subscription_id_is_fatal(self, test_session, handlers, make_event):
        result = handlers[EventKind.SUBSCRIPTION_CANCELLED].handle(
            test_session, _event(make_event, "customer.subscription.deleted", {})
        )

        assert isinstance(result, Fatal)


class TestBaseHandler:
    """Exception-to-result mapping in EventHandler.handle."""

    class _Raising(EventHandler):
        def __init__(self, exc):
            self.exc = exc

        def apply(self, session, event):
            raise self.exc

    def test_store_outage_is_retryable(self, make_event):
        session = MagicMock()
        handler = self._Raising(OperationalError("UPDATE", {}, Exception("server closed the connection")))

        result = handler.handle(session, _event(make_event, "invoice.paid", {}))

        assert isinstance(result, Retryable)
        assert result.dependency == "store"
        session.rollback.assert_called_once()

    def test_unexpected_errors_propagate(self, make_event):
        handler = self._Raising(KeyError("boom"))

        with pytest.raises(KeyError):
            handler.handle(MagicMock(), _event(make_event, "invoice.paid", {}))


class TestInvoiceSubscriptionId:
    @pytest.mark.parametrize(
        "invoice,expected",
        [
            ({"subscription": "sub_1"}, "sub_1"),
            ({"subscription": {"id": "sub_2", "object": "subscription"}}, "sub_2"),
            ({"parent": {"subscription_details": {"subscription": "sub_3"}}}, "sub_3"),
            ({"parent": None}, None),
            ({}, None),
        ],
    )
    def test_extracts_subscription(self, invoice, expected):
        assert invoice_subscription_id(invoice) == expected
