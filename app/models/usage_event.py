"""UsageEvent model — tracks LLM token consumption per assistant turn."""

import uuid

from sqlmodel import Field, SQLModel

from app.models.base import TimestampMixin, new_uuid


class UsageEvent(TimestampMixin, SQLModel, table=True):
    __tablename__ = "usage_events"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    tenant_id: uuid.UUID = Field(foreign_key="tenants.id", nullable=False, index=True)
    bot_profile_id: uuid.UUID = Field(foreign_key="bot_profiles.id", nullable=False, index=True)
    conversation_id: uuid.UUID | None = Field(default=None, foreign_key="conversations.id", index=True)
    message_id: uuid.UUID | None = Field(default=None, foreign_key="messages.id", index=True)

    model: str = Field(max_length=100, nullable=False)
    source: str = Field(default="playground", max_length=50)
    prompt_tokens: int = Field(default=0)
    completion_tokens: int = Field(default=0)
    total_tokens: int = Field(default=0)
    credits_charged: int = Field(default=0)
    tool_rounds: int = Field(default=0)
    is_stream: bool = Field(default=False)
    processing_time_ms: int | None = Field(default=None)
