"""Credit balance and ledger models."""

import uuid
from enum import StrEnum

from sqlmodel import Field, SQLModel

from app.models.base import TimestampMixin, json_text_field, new_uuid


class TransactionType(StrEnum):
    ALLOCATION = "allocation"
    PURCHASE = "purchase"
    USAGE = "usage"
    REFUND = "refund"


class CreditBalance(TimestampMixin, SQLModel, table=True):
    __tablename__ = "credit_balances"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    tenant_id: uuid.UUID = Field(foreign_key="tenants.id", nullable=False, unique=True, index=True)

    balance: int = Field(default=0)
    # Credits granted by the plan for each billing period
    plan_allocation: int = Field(default=0)


class CreditTransaction(TimestampMixin, SQLModel, table=True):
    __tablename__ = "credit_transactions"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    tenant_id: uuid.UUID = Field(foreign_key="tenants.id", nullable=False, index=True)

    amount: int = Field(nullable=False)  # negative for usage
    type: TransactionType = Field(nullable=False)
    description: str = Field(default="", max_length=500)
    from_plan_allocation: bool = Field(default=False)
    metadata_json: str = json_text_field()
