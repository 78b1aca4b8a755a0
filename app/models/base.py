"""Shared base fields for all models."""

import json
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Text
from sqlmodel import Column, Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_uuid() -> uuid.UUID:
    return uuid.uuid4()


def json_text_field(default: str = "{}") -> Any:
    """A JSON document stored as TEXT (portable across Postgres and SQLite)."""
    return Field(default=default, sa_column=Column(Text, nullable=False, server_default=default))


def load_json(raw: str | None, default: Any = None) -> Any:
    """Decode a JSON text column, tolerating NULL and malformed values."""
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default


class TimestampMixin(SQLModel):
    """Created / updated timestamps injected into every table."""

    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, nullable=False)
