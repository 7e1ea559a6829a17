from functools import lru_cache

from giving.core.config import settings
from giving.db import new_session
from giving.webhooks.processor import WebhookProcessor


@lru_cache(maxsize=1)
def get_processor() -> WebhookProcessor:
    """The production processor, wired once per process from settings."""
    return WebhookProcessor.from_settings(settings, new_session)
