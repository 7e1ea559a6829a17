"""
Reference records owned by the wider giving application.

The webhook pipeline only reads these (to render receipts and to find the
donor behind a subscription); it never writes them.
"""

import uuid
from typing import Optional
from sqlmodel import Field, SQLModel


def _new_id() -> str:
    return str(uuid.uuid4())


class Tenant(SQLModel, table=True):
    """A church/organization receiving gifts."""

    id: str = Field(default_factory=_new_id, primary_key=True)
    name: str
    domain: Optional[str] = None  # Sender domain for receipts
    tax_id: Optional[str] = None


class Person(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    tenant_id: str = Field(foreign_key="tenant.id", index=True)
    first_name: str = ""
    last_name: str = ""
    email: Optional[str] = Field(default=None, index=True)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Fund(SQLModel, table=True):
    """A designation a gift goes to, e.g. "General Fund"."""

    id: str = Field(primary_key=True)
    tenant_id: str = Field(foreign_key="tenant.id", index=True)
    name: str
