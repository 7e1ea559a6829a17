"""
Exception taxonomy for the payment-event pipeline.

Only conditions that must interrupt work are exceptions. Duplicate
deliveries and unknown event types are ordinary results (see
giving.services.ledger and giving.webhooks.router).
"""


class GivingWebhookError(Exception):
    """Base class for pipeline errors."""


class SignatureError(GivingWebhookError):
    """Inbound payload failed authentication. Reject without side effects."""


class DataIntegrityError(GivingWebhookError):
    """A record the gateway refers to does not exist on our side (or vice versa)."""


class TransientDependencyError(GivingWebhookError):
    """The store, gateway or email service is unavailable. Safe to retry."""

    def __init__(self, message: str, dependency: str = "unknown"):
        super().__init__(message)
        self.dependency = dependency


class ReceiptSendError(TransientDependencyError):
    """
    A receipt email failed after its flag was claimed.

    `claimed_at` is the claim still held on the contribution when the
    release couldn't be written, or None when the claim was released.
    Whoever retries must present it to take the claim back.
    """

    def __init__(self, message: str, dependency: str = "email", claimed_at=None):
        super().__init__(message, dependency=dependency)
        self.claimed_at = claimed_at
