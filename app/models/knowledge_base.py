"""KnowledgeBase model — a retrieval corpus attached to a bot profile.

Ingestion happens elsewhere; the chat path only needs to know whether a
bot has any active knowledge base before it pays for a retrieval call.
"""

import uuid

from sqlmodel import Field, SQLModel

from app.models.base import TimestampMixin, new_uuid


class KnowledgeBase(TimestampMixin, SQLModel, table=True):
    __tablename__ = "knowledge_bases"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    tenant_id: uuid.UUID = Field(foreign_key="tenants.id", nullable=False, index=True)
    bot_profile_id: uuid.UUID = Field(foreign_key="bot_profiles.id", nullable=False, index=True)

    name: str = Field(max_length=255, nullable=False)
    document_count: int = Field(default=0)
    is_active: bool = Field(default=True)
