"""BotProfile model — configures an AI assistant per tenant."""

import uuid

from sqlmodel import Field, SQLModel

from app.models.base import TimestampMixin, new_uuid


class BotProfile(TimestampMixin, SQLModel, table=True):
    __tablename__ = "bot_profiles"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    tenant_id: uuid.UUID = Field(foreign_key="tenants.id", nullable=False, index=True)
    # Account that owns the bot; used as the acting user for unauthenticated channels.
    owner_user_id: uuid.UUID | None = Field(default=None, index=True)

    name: str = Field(max_length=255, nullable=False)
    description: str = Field(default="", max_length=1000)

    # LLM configuration
    default_model: str | None = Field(default=None, max_length=100)
    system_prompt: str = Field(default="")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1024, ge=1, le=128000)

    # Provider credentials, a Fernet-encrypted JSON blob.
    # Stores e.g. {"api_key": "sk-..."} as ciphertext.
    # NULL means "use platform default credentials".
    encrypted_credentials: str | None = Field(default=None)

    is_active: bool = Field(default=True)
