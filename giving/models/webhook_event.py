"""
Model for the webhook event ledger.
"""
from typing import Optional
from datetime import datetime
from sqlmodel import Field, SQLModel, Column, JSON

from giving.core.typing import utc_now


class WebhookEventRecord(SQLModel, table=True):
    """
    One row per gateway event ever accepted.

    Stripe delivers at least once and may redeliver the same event
    concurrently, so the unique constraint on external_event_id is what
    decides which delivery gets to insert. A row with processed_at = NULL
    was accepted but never fully handled and is picked up again by
    redelivery or the reprocessing sweep.
    """
    __tablename__ = "webhook_event"

    id: Optional[int] = Field(default=None, primary_key=True)

    # Event identification
    external_event_id: str = Field(unique=True, index=True, max_length=200)  # Stripe event ID
    event_type: str = Field(index=True, max_length=100)  # e.g. "payment_intent.succeeded"

    # Verified event object, stored verbatim for replay/audit
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

    received_at: datetime = Field(default_factory=utc_now)
    processed_at: Optional[datetime] = Field(default=None, nullable=True, index=True)

    # Handling passes and most recent failure
    attempts: int = Field(default=0)
    last_error: Optional[str] = Field(default=None, nullable=True)
