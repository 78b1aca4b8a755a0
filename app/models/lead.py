"""Lead model — contact details captured by the lead-capture tool."""

import uuid

from sqlmodel import Field, SQLModel

from app.models.base import TimestampMixin, new_uuid


class Lead(TimestampMixin, SQLModel, table=True):
    __tablename__ = "leads"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    tenant_id: uuid.UUID = Field(foreign_key="tenants.id", nullable=False, index=True)
    bot_profile_id: uuid.UUID = Field(foreign_key="bot_profiles.id", nullable=False, index=True)
    conversation_id: uuid.UUID | None = Field(default=None, foreign_key="conversations.id", index=True)

    name: str = Field(max_length=255)
    phone: str = Field(default="", max_length=50)
    email: str | None = Field(default=None, max_length=255)
    company: str | None = Field(default=None, max_length=255)
    website: str | None = Field(default=None, max_length=500)
    budget: str | None = Field(default=None, max_length=255)
    timeline: str | None = Field(default=None, max_length=255)
    notes: str | None = Field(default=None, max_length=2000)

    source: str = Field(default="chat", max_length=50)
    trigger_keyword: str | None = Field(default=None, max_length=100)
