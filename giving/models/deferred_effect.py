"""
Deferred Effect Model

Persistent outbox for secondary effects of webhook handling (receipts,
analytics, payment-failed notices) that failed on the first try. A failed
secondary effect never fails the primary state transition; it is parked
here and retried by the outbox worker.

Usage:
    from giving.models.deferred_effect import DeferredEffect, EffectKind, EffectStatus

    effect = DeferredEffect(kind=EffectKind.RECEIPT, payload={"contribution_id": "..."})
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Index
from sqlmodel import Column, Field, JSON, SQLModel

from giving.core.typing import utc_now


class EffectKind(str, Enum):
    RECEIPT = "receipt"
    ANALYTICS = "analytics"
    PAYMENT_FAILED_NOTICE = "payment_failed_notice"


class EffectStatus(str, Enum):
    """Status of a deferred effect."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class DeferredEffect(SQLModel, table=True):
    """
    A secondary effect waiting to be retried.

    Attributes:
        kind: What to do (see EffectKind)
        payload: Arguments for the effect, JSON-serializable
        source_event_id: Gateway event that produced the effect
        attempts: Number of execution attempts by the worker
        max_attempts: Attempts before the effect is marked FAILED
        last_error: Error message from most recent failure
    """

    __tablename__ = "deferred_effect"

    id: Optional[int] = Field(default=None, primary_key=True)
    kind: EffectKind = Field(index=True)
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    source_event_id: Optional[str] = Field(default=None, index=True)
    status: EffectStatus = Field(default=EffectStatus.PENDING, index=True)
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=5)
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    __table_args__ = (
        # Worker claim query: status + created_at
        Index("ix_deferred_effect_queue", "status", "created_at"),
    )


__all__ = ["DeferredEffect", "EffectKind", "EffectStatus"]
