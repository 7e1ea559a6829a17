"""
Stripe read API used while handling recurring-gift events.

The subscription's metadata (written at checkout) is the source of truth
for who a recurring charge belongs to: tenant_id, person_id and fund_id.
"""
from dataclasses import dataclass
from typing import Optional, Protocol

import stripe

from giving.core.exceptions import DataIntegrityError, TransientDependencyError
from giving.core.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SubscriptionMetadata:
    subscription_id: str
    tenant_id: Optional[str]
    person_id: Optional[str]
    fund_id: Optional[str]
    status: Optional[str] = None


class PaymentGateway(Protocol):
    def retrieve_subscription(self, subscription_id: str) -> SubscriptionMetadata: ...


class StripeGateway:
    """
    Stripe-backed PaymentGateway.

    The API key is passed per request instead of being assigned to the
    module-level `stripe.api_key`.
    """

    def __init__(self, api_key: str):
        self._api_key = api_key

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionMetadata:
        """
        Fetch a subscription and extract its giving metadata.

        Raises:
            DataIntegrityError: if Stripe has no such subscription
            TransientDependencyError: for network, rate-limit or API errors
        """
        if not self._api_key:
            raise TransientDependencyError("STRIPE_SECRET_KEY is not configured", dependency="gateway")

        try:
            subscription = stripe.Subscription.retrieve(subscription_id, api_key=self._api_key)
        except stripe.InvalidRequestError as e:
            if e.code == "resource_missing":
                raise DataIntegrityError(f"Subscription {subscription_id} not found at gateway") from e
            raise TransientDependencyError(f"Stripe rejected subscription lookup: {e}", dependency="gateway") from e
        except stripe.StripeError as e:
            logger.warning("Stripe subscription lookup failed", subscription_id=subscription_id, error=str(e))
            raise TransientDependencyError(f"Stripe unavailable: {e}", dependency="gateway") from e

        metadata = _field(subscription, "metadata") or {}
        return SubscriptionMetadata(
            subscription_id=subscription_id,
            tenant_id=_field(metadata, "tenant_id"),
            person_id=_field(metadata, "person_id"),
            fund_id=_field(metadata, "fund_id"),
            status=_field(subscription, "status"),
        )


def _field(obj, key: str):
    # StripeObject supports item access but not always dict methods
    return obj[key] if key in obj else None
