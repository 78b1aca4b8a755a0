"""Message model — a single turn in a Conversation."""

import uuid
from enum import StrEnum

from sqlalchemy import Text
from sqlmodel import Column, Field, SQLModel

from app.models.base import TimestampMixin, json_text_field, new_uuid


class MessageRole(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class Message(TimestampMixin, SQLModel, table=True):
    __tablename__ = "messages"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    conversation_id: uuid.UUID = Field(foreign_key="conversations.id", nullable=False, index=True)

    role: MessageRole = Field(nullable=False)
    content: str = Field(sa_column=Column(Text, nullable=False))

    # Step-by-step tool-call / tool-result trace (JSON array)
    response_messages: str = json_text_field("[]")
    # Knowledge context summary (JSON object)
    context_used: str = json_text_field()

    processing_time_ms: int | None = Field(default=None)
    token_count: int | None = Field(default=None)
