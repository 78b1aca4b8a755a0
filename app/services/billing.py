"""Subscription and credit checks for chat turns."""

from __future__ import annotations

import json
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any

from sqlalchemy import func, update
from sqlmodel import select

from app.core.config import get_settings
from app.core.database import async_session_factory
from app.core.pricing import calc_credits, get_credit_cost
from app.models.base import utcnow
from app.models.credit import CreditBalance, CreditTransaction, TransactionType
from app.models.tenant import Tenant

logger = logging.getLogger(__name__)

DEBIT_ATTEMPTS = 10


class BillingGate(ABC):
    @abstractmethod
    async def check_subscription(self, tenant_id: str) -> bool:
        ...

    @abstractmethod
    async def has_sufficient_credit(self, tenant_id: str, model_id: str) -> bool:
        ...

    @abstractmethod
    async def debit(
        self,
        tenant_id: str,
        model_id: str,
        token_count: int,
        context: dict[str, Any] | None = None,
    ) -> int:
        ...


class SqlBillingGate(BillingGate):
    """Billing against the tenants / credit_balances / credit_transactions tables.

    Usage is charged to the plan allocation for the current period first;
    whatever the allocation cannot cover comes from purchased credits. Each
    part is its own USAGE transaction tagged with ``from_plan_allocation``.
    """

    def __init__(self, tokens_per_unit: int | None = None) -> None:
        settings = get_settings()
        self.tokens_per_unit = tokens_per_unit or settings.tokens_per_credit_unit
        self.allowed_statuses = {s.lower() for s in settings.allowed_subscription_statuses}

    async def check_subscription(self, tenant_id: str) -> bool:
        try:
            async with async_session_factory() as session:
                tenant = await session.get(Tenant, uuid.UUID(tenant_id))
        except Exception:
            logger.exception("Subscription lookup failed for tenant %s", tenant_id)
            return False
        if tenant is None or tenant.subscription_status is None:
            return False
        return str(tenant.subscription_status).lower() in self.allowed_statuses

    async def has_sufficient_credit(self, tenant_id: str, model_id: str) -> bool:
        try:
            async with async_session_factory() as session:
                balance = await _get_balance(session, tenant_id)
        except Exception:
            logger.exception("Credit lookup failed for tenant %s", tenant_id)
            return False
        return (balance.balance if balance else 0) >= get_credit_cost(model_id)

    async def debit(
        self,
        tenant_id: str,
        model_id: str,
        token_count: int,
        context: dict[str, Any] | None = None,
    ) -> int:
        """Charge a finished turn. Never raises; returns the credits actually charged."""
        amount = calc_credits(model_id, token_count, self.tokens_per_unit)
        try:
            tenant_uuid = uuid.UUID(tenant_id)
            async with async_session_factory() as session:
                charged = await _take_credits(session, tenant_uuid, amount)
                if not charged:
                    return 0
                if charged < amount:
                    logger.warning(
                        "Tenant %s owed %d credits but only %d were left; debited the remainder",
                        tenant_id,
                        amount,
                        charged,
                    )

                tenant = await session.get(Tenant, tenant_uuid)
                plan_allocation = (
                    await session.execute(
                        select(CreditBalance.plan_allocation).where(
                            CreditBalance.tenant_id == tenant_uuid
                        )
                    )
                ).scalar_one()
                plan_used = await _plan_credits_used(session, tenant)
                from_plan = min(charged, max(0, plan_allocation - plan_used))
                from_purchased = charged - from_plan

                metadata = {**(context or {}), "modelId": model_id, "tokenCount": token_count}
                for part, is_plan in ((from_plan, True), (from_purchased, False)):
                    if part <= 0:
                        continue
                    session.add(CreditTransaction(
                        tenant_id=tenant_uuid,
                        amount=-part,
                        type=TransactionType.USAGE,
                        description=f"Model usage: {model_id}",
                        from_plan_allocation=is_plan,
                        metadata_json=json.dumps({**metadata, "fromPlanAllocation": is_plan}, default=str),
                    ))
                await session.commit()
        except Exception:
            logger.exception("Credit debit failed for tenant %s", tenant_id)
            return 0

        logger.info("Debited %d credits from tenant %s for %s", charged, tenant_id, model_id)
        return charged


async def _get_balance(session, tenant_id: str) -> CreditBalance | None:
    stmt = select(CreditBalance).where(CreditBalance.tenant_id == uuid.UUID(tenant_id))
    return (await session.execute(stmt)).scalars().first()


async def _take_credits(session, tenant_id: uuid.UUID, amount: int) -> int:
    """Decrement the balance by up to ``amount`` and return what was taken.

    Compare-and-set on the balance column: the UPDATE only matches while the
    balance is still the value it was computed from, so concurrent debits
    retry instead of overwriting each other.
    """
    for _ in range(DEBIT_ATTEMPTS):
        current = (
            await session.execute(
                select(CreditBalance.balance).where(CreditBalance.tenant_id == tenant_id)
            )
        ).scalar_one_or_none()
        if current is None:
            logger.error("No credit balance for tenant %s", tenant_id)
            return 0
        if current <= 0:
            logger.error("Tenant %s has no credits left to debit", tenant_id)
            return 0
        charge = min(amount, current)
        stmt = (
            update(CreditBalance)
            .where(CreditBalance.tenant_id == tenant_id, CreditBalance.balance == current)
            .values(balance=CreditBalance.balance - charge, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if (await session.execute(stmt)).rowcount == 1:
            return charge
        logger.debug("Balance for tenant %s changed concurrently, retrying debit", tenant_id)
    raise RuntimeError(f"Credit balance for tenant {tenant_id} kept changing during debit")


async def _plan_credits_used(session, tenant: Tenant | None) -> int:
    """Plan-allocated credits already spent in the tenant's current period."""
    if tenant is None:
        return 0
    stmt = select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(
        CreditTransaction.tenant_id == tenant.id,
        CreditTransaction.type == TransactionType.USAGE,
        CreditTransaction.from_plan_allocation == True,  # noqa: E712
    )
    if tenant.current_period_start is not None:
        stmt = stmt.where(CreditTransaction.created_at >= tenant.current_period_start)
    if tenant.current_period_end is not None:
        stmt = stmt.where(CreditTransaction.created_at <= tenant.current_period_end)
    total = (await session.execute(stmt)).scalar_one()
    return abs(int(total or 0))
