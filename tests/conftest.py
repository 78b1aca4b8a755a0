"""Shared test fixtures — async SQLite in-memory DB, seed helpers, fakes."""

import asyncio
import json
import uuid
from collections.abc import AsyncGenerator
from contextlib import ExitStack
from functools import partial
from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel

# Import all models so metadata is populated
import app.models  # noqa: F401
from app.core import cache
from app.models import (
    BotProfile,
    BotTool,
    Conversation,
    CreditBalance,
    KnowledgeBase,
    SubscriptionStatus,
    Tenant,
    Tool,
    ToolType,
)
from app.services.locking import LockStore
from app.services.scheduler import CompletionScheduler

# Every module that opens sessions through the module-level factory.
SESSION_FACTORY_USERS = [
    "app.services.billing",
    "app.services.conversation_store",
    "app.services.orchestrator",
    "app.services.tools.execution",
    "app.services.tools.lead_capture",
    "app.services.tools.pause_conversation",
]


@pytest.fixture(scope="session")
async def engine():
    eng = create_async_engine("sqlite+aiosqlite://", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture(scope="session")
def test_session_factory(engine):
    """Session factory bound to the test SQLite engine."""
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(test_session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with test_session_factory() as sess:
        yield sess
        await sess.rollback()


@pytest.fixture
def db(test_session_factory):
    """Point every service at the test database."""
    with ExitStack() as stack:
        for module in SESSION_FACTORY_USERS:
            stack.enter_context(patch(f"{module}.async_session_factory", test_session_factory))
        yield test_session_factory


@pytest.fixture
async def file_db(tmp_path):
    """Like ``db`` but on a file database with a connection per session.

    The in-memory engine shares one connection between sessions, so
    concurrent sessions see and roll back each other's uncommitted writes.
    Tests that race writers use this instead.
    """
    eng = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'botforge.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    async with eng.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    factory = sessionmaker(eng, class_=AsyncSession, expire_on_commit=False)
    with ExitStack() as stack:
        for module in SESSION_FACTORY_USERS:
            stack.enter_context(patch(f"{module}.async_session_factory", factory))
        yield factory
    await eng.dispose()


@pytest.fixture(autouse=True)
def _clear_cache():
    cache.clear()
    yield
    cache.clear()


# ── Seed helpers ─────────────────────────────────────────────


async def _seed_rows(
    factory,
    *,
    status: SubscriptionStatus | None = SubscriptionStatus.ACTIVE,
    balance: int = 100,
    plan_allocation: int = 0,
    system_prompt: str = "You are a helpful support assistant.",
    default_model: str | None = "gpt-4o-mini",
    knowledge_base: bool = False,
) -> dict:
    slug = f"t-{uuid.uuid4().hex[:8]}"
    async with factory() as s:
        tenant = Tenant(name="Acme", slug=slug, subscription_status=status)
        s.add(tenant)
        await s.flush()
        bot = BotProfile(
            tenant_id=tenant.id,
            owner_user_id=uuid.uuid4(),
            name="Support Bot",
            system_prompt=system_prompt,
            default_model=default_model,
        )
        s.add(bot)
        s.add(CreditBalance(tenant_id=tenant.id, balance=balance, plan_allocation=plan_allocation))
        await s.flush()
        if knowledge_base:
            s.add(KnowledgeBase(tenant_id=tenant.id, bot_profile_id=bot.id, name="Docs"))
        await s.commit()
        return {
            "tenant_id": str(tenant.id),
            "bot_id": str(bot.id),
            "owner_user_id": str(bot.owner_user_id),
        }


@pytest.fixture
def seed(test_session_factory):
    """Insert a tenant + bot (+ balance) and return their ids as strings."""
    return partial(_seed_rows, test_session_factory)


@pytest.fixture
def file_seed(file_db):
    """``seed`` against the ``file_db`` database."""
    return partial(_seed_rows, file_db)


@pytest.fixture
def attach_tool(test_session_factory):
    """Create (if needed) a Tool row and attach it to a bot."""

    async def _attach(
        bot_id: str,
        tool_id: str,
        *,
        type: ToolType = ToolType.CONTACT_FORM,
        name: str | None = None,
        functions: dict | None = None,
        required_configs: dict | None = None,
        config: dict | None = None,
        is_active: bool = True,
        is_enabled: bool = True,
    ) -> None:
        async with test_session_factory() as s:
            tool = await s.get(Tool, tool_id)
            if tool is None:
                s.add(Tool(
                    id=tool_id,
                    name=name or tool_id,
                    type=type,
                    is_active=is_active,
                    functions=json.dumps(functions or {}),
                    required_configs=json.dumps(required_configs or {}),
                ))
            s.add(BotTool(
                bot_profile_id=uuid.UUID(bot_id),
                tool_id=tool_id,
                is_enabled=is_enabled,
                config=json.dumps(config or {}),
            ))
            await s.commit()

    return _attach


@pytest.fixture
def make_conversation(test_session_factory):
    async def _make(bot_id: str, *, is_paused: bool = False) -> str:
        async with test_session_factory() as s:
            conversation = Conversation(bot_profile_id=uuid.UUID(bot_id), is_paused=is_paused)
            s.add(conversation)
            await s.commit()
            return str(conversation.id)

    return _make


# ── Fakes ────────────────────────────────────────────────────


class FakeLockStore(LockStore):
    """In-memory LockStore; TTLs are recorded but never expire."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.deleted: list[str] = []
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise ConnectionError("lock store down")

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        self._check()
        if key in self.values:
            return False
        self.values[key] = value
        self.ttls[key] = ttl_seconds
        return True

    async def exists(self, key: str) -> bool:
        self._check()
        return key in self.values

    async def delete(self, key: str) -> None:
        self._check()
        self.deleted.append(key)
        self.values.pop(key, None)

    async def delete_if_equals(self, key: str, value: str) -> bool:
        self._check()
        if self.values.get(key) != value:
            return False
        self.deleted.append(key)
        del self.values[key]
        return True


class YieldingLockStore(FakeLockStore):
    """FakeLockStore that suspends on every call, the way network I/O does."""

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        await asyncio.sleep(0)
        return await super().set_if_absent(key, value, ttl_seconds)

    async def exists(self, key: str) -> bool:
        await asyncio.sleep(0)
        return await super().exists(key)

    async def delete(self, key: str) -> None:
        await asyncio.sleep(0)
        await super().delete(key)

    async def delete_if_equals(self, key: str, value: str) -> bool:
        await asyncio.sleep(0)
        return await super().delete_if_equals(key, value)


@pytest.fixture
def lock_store() -> FakeLockStore:
    return FakeLockStore()


@pytest.fixture
def yielding_lock_store() -> YieldingLockStore:
    return YieldingLockStore()


class RecordingScheduler(CompletionScheduler):
    """Records schedule/cancel calls instead of running timers."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, float | None]] = []

    async def schedule_completion(self, conversation_id: str, delay_seconds: float) -> None:
        self.calls.append(("schedule", conversation_id, delay_seconds))

    async def cancel(self, conversation_id: str) -> None:
        self.calls.append(("cancel", conversation_id, None))

    def scheduled(self) -> list[str]:
        return [cid for op, cid, _ in self.calls if op == "schedule"]


@pytest.fixture
def scheduler() -> RecordingScheduler:
    return RecordingScheduler()
