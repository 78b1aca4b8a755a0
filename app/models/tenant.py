"""Tenant model — top-level isolation boundary and billing owner."""

import uuid
from datetime import datetime
from enum import StrEnum

from sqlmodel import Field, SQLModel

from app.models.base import TimestampMixin, new_uuid


class SubscriptionStatus(StrEnum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    EXPIRED = "expired"


class Tenant(TimestampMixin, SQLModel, table=True):
    __tablename__ = "tenants"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    name: str = Field(max_length=255, nullable=False)
    slug: str = Field(max_length=100, unique=True, nullable=False, index=True)
    is_active: bool = Field(default=True)

    # Subscription / plan
    plan: str = Field(default="free", max_length=50)
    subscription_status: SubscriptionStatus | None = Field(default=None)
    current_period_start: datetime | None = Field(default=None)
    current_period_end: datetime | None = Field(default=None)
