"""Tool and BotTool models — tool catalog and per-bot enablement."""

import uuid
from enum import StrEnum

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from app.models.base import TimestampMixin, json_text_field, new_uuid


class ToolType(StrEnum):
    CONTACT_FORM = "contact_form"
    CONVERSATION = "conversation"
    CALENDAR = "calendar"
    CUSTOM = "custom"


class Tool(TimestampMixin, SQLModel, table=True):
    __tablename__ = "tools"

    # Built-in tools use their registry slug ("lead-capture"); custom tools a UUID string.
    id: str = Field(primary_key=True, max_length=100)
    tenant_id: uuid.UUID | None = Field(default=None, foreign_key="tenants.id", index=True)

    name: str = Field(max_length=255, nullable=False)
    description: str = Field(default="", max_length=2000)
    type: ToolType = Field(nullable=False)
    is_active: bool = Field(default=True)

    # Custom tools only: {"execute": {"name", "description", "schema" | "parameters"}}
    functions: str = json_text_field()
    # Custom tools only: {"serverUrl", "secretToken", "timeout", "httpHeaders", ...}
    required_configs: str = json_text_field()


class BotTool(TimestampMixin, SQLModel, table=True):
    __tablename__ = "bot_tools"
    __table_args__ = (UniqueConstraint("bot_profile_id", "tool_id"),)

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    bot_profile_id: uuid.UUID = Field(foreign_key="bot_profiles.id", nullable=False, index=True)
    tool_id: str = Field(foreign_key="tools.id", nullable=False, index=True)

    is_enabled: bool = Field(default=True)
    config: str = json_text_field()
