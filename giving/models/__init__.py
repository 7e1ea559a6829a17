from .organization import Tenant, Person, Fund
from .contribution import Contribution, PaymentStatus
from .webhook_event import WebhookEventRecord
from .analytics import AnalyticsEvent
from .deferred_effect import DeferredEffect, EffectKind, EffectStatus

__all__ = [
    "Tenant",
    "Person",
    "Fund",
    "Contribution",
    "PaymentStatus",
    "WebhookEventRecord",
    "AnalyticsEvent",
    "DeferredEffect",
    "EffectKind",
    "EffectStatus",
]
