"""Conversation model — a session between an end user (or channel) and a bot."""

import uuid
from datetime import datetime
from enum import StrEnum

from sqlmodel import Field, SQLModel

from app.models.base import TimestampMixin, json_text_field, new_uuid


class ConversationStatus(StrEnum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    ABANDONED = "abandoned"


class Conversation(TimestampMixin, SQLModel, table=True):
    __tablename__ = "conversations"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    bot_profile_id: uuid.UUID = Field(foreign_key="bot_profiles.id", nullable=False, index=True)

    source: str = Field(default="playground", max_length=50)
    external_user_id: str | None = Field(default=None, max_length=255)
    status: ConversationStatus = Field(default=ConversationStatus.ACTIVE)
    # Orthogonal to status: bot auto-responses are suppressed while set.
    is_paused: bool = Field(default=False)

    metadata_json: str = json_text_field()
    message_count: int = Field(default=0)
    ended_at: datetime | None = Field(default=None)
