"""
Event kinds and handler results.

The gateway's type strings are mapped onto a closed set of kinds, with an
explicit UNKNOWN for anything the pipeline doesn't understand yet. Handlers
report back with one of three result variants instead of raising for
control flow.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union


class EventKind(str, Enum):
    PAYMENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_FAILED = "payment_intent.payment_failed"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    SUBSCRIPTION_CANCELLED = "customer.subscription.deleted"
    UNKNOWN = "unknown"

    @classmethod
    def from_type(cls, event_type: Optional[str]) -> "EventKind":
        for kind in cls:
            if kind is not cls.UNKNOWN and kind.value == event_type:
                return kind
        return cls.UNKNOWN

    @classmethod
    def known(cls) -> list["EventKind"]:
        return [kind for kind in cls if kind is not cls.UNKNOWN]


@dataclass(frozen=True)
class Handled:
    """The event was applied (or needed nothing). `changed` counts rows mutated."""

    changed: int = 0
    note: Optional[str] = None


@dataclass(frozen=True)
class Retryable:
    """A dependency was unavailable; the same event should be tried again."""

    reason: str
    dependency: str = "unknown"


@dataclass(frozen=True)
class Fatal:
    """The event refers to data we don't have. Needs a human, not just a retry."""

    reason: str


HandlerResult = Union[Handled, Retryable, Fatal]

__all__ = ["EventKind", "Handled", "Retryable", "Fatal", "HandlerResult"]
