"""
Contribution Model

One row per donation/charge: either a one-time gift created as `pending`
by the checkout flow and promoted here, or one cycle of a recurring gift
created here when the gateway reports the invoice as paid.

Usage:
    from giving.models.contribution import Contribution, PaymentStatus

    contribution = Contribution(
        tenant_id=tenant.id,
        fund_id="general",
        amount_cents=2500,
        external_payment_id="pi_123",
    )
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Index
from sqlmodel import Field, SQLModel

from giving.core.typing import utc_now


class PaymentStatus(str, Enum):
    """Status of a contribution's payment."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Contribution(SQLModel, table=True):
    """
    A single gift.

    Attributes:
        id: UUID string; the first 8 characters are the receipt reference
        amount_cents: Integer cents, never a float
        external_payment_id: Stripe payment intent (or invoice) id used to
            correlate gateway events back to this row. Unique when set.
        subscription_id: Stripe subscription id for recurring gifts
        receipt_sent_at: Set exactly once, when the receipt is claimed
        processed_at: When the gateway confirmed the payment
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenant.id", index=True)
    person_id: Optional[str] = Field(default=None, foreign_key="person.id", index=True)
    fund_id: str = Field(foreign_key="fund.id")

    amount_cents: int
    payment_method: str = Field(default="card")
    payment_status: PaymentStatus = Field(default=PaymentStatus.PENDING, index=True)
    external_payment_id: Optional[str] = Field(default=None, unique=True, index=True, max_length=200)

    is_recurring: bool = Field(default=False)
    subscription_id: Optional[str] = Field(default=None, index=True)

    # Donors giving without a person record
    guest_name: Optional[str] = None
    guest_email: Optional[str] = None

    receipt_sent_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    __table_args__ = (
        # Cancellation sweep: subscription_id + payment_status
        Index("ix_contribution_subscription_status", "subscription_id", "payment_status"),
    )


__all__ = ["Contribution", "PaymentStatus"]
