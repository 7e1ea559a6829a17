"""
Analytics model for giving events recorded by the default analytics sink.
"""

from datetime import datetime
from typing import Optional
from sqlmodel import SQLModel, Field, Column, JSON

from giving.core.typing import utc_now


class AnalyticsEvent(SQLModel, table=True):
    """Track giving analytics events (e.g. "contribution.succeeded")."""

    __tablename__ = "analytics_event"

    id: Optional[int] = Field(default=None, primary_key=True)
    event_name: str = Field(index=True)
    tenant_id: Optional[str] = Field(default=None, index=True)

    # Event properties stored as JSON
    properties: Optional[dict] = Field(default=None, sa_column=Column(JSON))

    timestamp: datetime = Field(default_factory=utc_now, index=True)
