"""
Test fixtures for giving webhook tests.

Provides database session fixtures, sample giving records, fake
collaborators and a helper for signing Stripe-style payloads.
"""

import json
import time
from typing import Any, Callable, Generator, Optional
from unittest.mock import MagicMock

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import giving.models  # noqa: F401  (register tables)
from giving.core.exceptions import TransientDependencyError
from giving.models.contribution import Contribution, PaymentStatus
from giving.models.organization import Fund, Person, Tenant
from giving.services.gateway import SubscriptionMetadata
from giving.services.ledger import EventLedger
from giving.services.outbox import Outbox
from giving.services.receipts import ReceiptNotifier
from giving.services.signature import SignatureVerifier, compute_signature
from giving.webhooks.handlers import build_handlers
from giving.webhooks.processor import WebhookProcessor
from giving.webhooks.router import EventRouter

# Use in-memory SQLite for unit tests (fast, isolated)
TEST_DATABASE_URL = "sqlite:///:memory:"

WEBHOOK_SECRET = "whsec_test_secret"
NOTICE_FROM = "Giving <noreply@church.app>"
UPDATE_PAYMENT_URL = "http://localhost:3000/give/recurring"


@pytest.fixture(scope="function")
def test_engine():
    """Create a test database engine with in-memory SQLite."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def test_session(test_engine) -> Generator[Session, None, None]:
    """Provide a test database session."""
    with Session(test_engine) as session:
        yield session


@pytest.fixture
def session_factory(test_engine) -> Callable[[], Session]:
    """Factory handing out fresh sessions on the test engine, like giving.db.new_session."""
    return lambda: Session(test_engine)


# ============================================
# Giving records
# ============================================


@pytest.fixture
def sample_tenant(test_session: Session) -> Tenant:
    tenant = Tenant(id="tenant-1", name="Grace Church", domain="grace.church", tax_id="12-3456789")
    test_session.add(tenant)
    test_session.commit()
    test_session.refresh(tenant)
    return tenant


@pytest.fixture
def sample_person(test_session: Session, sample_tenant: Tenant) -> Person:
    person = Person(
        id="person-1",
        tenant_id=sample_tenant.id,
        first_name="Ada",
        last_name="Lovelace",
        email="ada@example.com",
    )
    test_session.add(person)
    test_session.commit()
    test_session.refresh(person)
    return person


@pytest.fixture
def sample_fund(test_session: Session, sample_tenant: Tenant) -> Fund:
    fund = Fund(id="general", tenant_id=sample_tenant.id, name="General Fund")
    test_session.add(fund)
    test_session.commit()
    test_session.refresh(fund)
    return fund


@pytest.fixture
def pending_contribution(
    test_session: Session, sample_tenant: Tenant, sample_person: Person, sample_fund: Fund
) -> Contribution:
    """A one-time $25.00 gift waiting for payment_intent.succeeded (payment id pay_123)."""
    contribution = Contribution(
        tenant_id=sample_tenant.id,
        person_id=sample_person.id,
        fund_id=sample_fund.id,
        amount_cents=2500,
        payment_status=PaymentStatus.PENDING,
        external_payment_id="pay_123",
    )
    test_session.add(contribution)
    test_session.commit()
    test_session.refresh(contribution)
    return contribution


# ============================================
# Collaborators
# ============================================


class FakeEmailSender:
    """Records sent emails. Fails the first `fail_times` sends with TransientDependencyError."""

    def __init__(self, fail_times: int = 0):
        self.sent: list[dict[str, str]] = []
        self.fail_times = fail_times
        self.attempts = 0

    def send(self, to: str, from_: str, subject: str, html_body: str) -> None:
        self.attempts += 1
        if self.fail_times > 0:
            self.fail_times -= 1
            raise TransientDependencyError("email service down", dependency="email")
        self.sent.append({"to": to, "from": from_, "subject": subject, "html": html_body})


@pytest.fixture
def email_sender() -> FakeEmailSender:
    return FakeEmailSender()


@pytest.fixture
def gateway(sample_tenant, sample_person, sample_fund) -> MagicMock:
    """Gateway whose subscriptions all belong to the sample person/fund."""
    mock = MagicMock()
    mock.retrieve_subscription.side_effect = lambda subscription_id: SubscriptionMetadata(
        subscription_id=subscription_id,
        tenant_id=sample_tenant.id,
        person_id=sample_person.id,
        fund_id=sample_fund.id,
        status="active",
    )
    return mock


@pytest.fixture
def analytics_sink() -> MagicMock:
    return MagicMock()


@pytest.fixture
def outbox(session_factory) -> Outbox:
    return Outbox(session_factory, max_attempts=3)


@pytest.fixture
def notifier(email_sender) -> ReceiptNotifier:
    return ReceiptNotifier(email_sender, fallback_domain="church.app", default_organization_name="Our Church")


@pytest.fixture
def handlers(gateway, notifier, analytics_sink, outbox, email_sender):
    return build_handlers(
        gateway=gateway,
        notifier=notifier,
        analytics=analytics_sink,
        outbox=outbox,
        email_sender=email_sender,
        notice_from=NOTICE_FROM,
        update_payment_url=UPDATE_PAYMENT_URL,
    )


@pytest.fixture
def ledger(session_factory) -> EventLedger:
    return EventLedger(session_factory)


@pytest.fixture
def processor(handlers, ledger, session_factory) -> WebhookProcessor:
    return WebhookProcessor(
        verifier=SignatureVerifier(WEBHOOK_SECRET),
        ledger=ledger,
        router=EventRouter(handlers),
        session_factory=session_factory,
    )


# ============================================
# Payload helpers
# ============================================


@pytest.fixture
def make_event() -> Callable[..., dict[str, Any]]:
    """Build a Stripe event envelope around a data object."""

    def _make(event_type: str, data_object: dict[str, Any], event_id: str = "evt_1") -> dict[str, Any]:
        return {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "data": {"object": data_object},
        }

    return _make


@pytest.fixture
def sign() -> Callable[..., tuple[bytes, str]]:
    """
    Serialize and sign a payload the way Stripe does.

    Returns (raw_body, Stripe-Signature header).
    """

    def _sign(
        payload: dict[str, Any] | bytes,
        secret: str = WEBHOOK_SECRET,
        timestamp: Optional[int] = None,
    ) -> tuple[bytes, str]:
        body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
        ts = str(timestamp if timestamp is not None else int(time.time()))
        signature = compute_signature(body, ts, secret.encode("utf-8"))
        return body, f"t={ts},v1={signature}"

    return _sign
