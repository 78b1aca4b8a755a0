"""Tool usage bookkeeping — per-function call counters and failure log."""

import uuid
from datetime import datetime

from sqlalchemy import Text, UniqueConstraint
from sqlmodel import Column, Field, SQLModel

from app.models.base import TimestampMixin, json_text_field, new_uuid, utcnow


class ToolUsageMetric(TimestampMixin, SQLModel, table=True):
    __tablename__ = "tool_usage_metrics"
    __table_args__ = (UniqueConstraint("tool_id", "bot_profile_id", "function_name"),)

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    tool_id: str = Field(max_length=100, nullable=False, index=True)
    bot_profile_id: uuid.UUID = Field(nullable=False, index=True)
    function_name: str = Field(max_length=100, nullable=False)

    count: int = Field(default=0)
    last_used_at: datetime = Field(default_factory=utcnow)


class ToolExecutionError(TimestampMixin, SQLModel, table=True):
    __tablename__ = "tool_execution_errors"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    tool_id: str = Field(max_length=100, nullable=False, index=True)
    bot_profile_id: uuid.UUID | None = Field(default=None, index=True)
    function_name: str = Field(max_length=100, nullable=False)

    error_message: str = Field(sa_column=Column(Text, nullable=False))
    params_json: str = json_text_field()
