"""Deferred conversation completion — in-process timers, ARQ jobs and the worker."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

from app.models import ConversationStatus, MessageRole
from app.models.base import utcnow
from app.services.conversation_store import SqlConversationStore
from app.services.scheduler import (
    COMPLETE_JOB,
    PENDING_KEY_PREFIX,
    ArqCompletionScheduler,
    LocalCompletionScheduler,
    complete_if_idle,
)
from app.workers.conversations import complete_conversation
from app.workers.main import WorkerSettings


async def test_local_scheduler_completes_after_delay(db, seed):
    ids = await seed()
    store = SqlConversationStore()
    cid = await store.create(ids["bot_id"])
    scheduler = LocalCompletionScheduler(store)

    await scheduler.schedule_completion(cid, 0.01)
    assert scheduler.pending(cid) is True
    await asyncio.sleep(0.1)

    conversation = await store.get(cid)
    assert conversation.status == ConversationStatus.COMPLETED
    assert conversation.ended_at is not None
    assert scheduler.pending(cid) is False


async def test_local_scheduler_cancel(db, seed):
    ids = await seed()
    store = SqlConversationStore()
    cid = await store.create(ids["bot_id"])
    scheduler = LocalCompletionScheduler(store)

    await scheduler.schedule_completion(cid, 0.05)
    await scheduler.cancel(cid)
    await asyncio.sleep(0.1)

    assert (await store.get(cid)).status == ConversationStatus.ACTIVE
    # Cancelling with nothing pending is a no-op
    await scheduler.cancel(cid)


async def test_rescheduling_replaces_pending_timer(db, seed):
    ids = await seed()
    store = SqlConversationStore()
    cid = await store.create(ids["bot_id"])
    scheduler = LocalCompletionScheduler(store)

    await scheduler.schedule_completion(cid, 0.05)
    await scheduler.schedule_completion(cid, 0.5)
    await asyncio.sleep(0.15)

    assert (await store.get(cid)).status == ConversationStatus.ACTIVE
    assert scheduler.pending(cid) is True
    await scheduler.cancel(cid)


async def test_newer_user_message_keeps_conversation_active(db, seed):
    ids = await seed()
    store = SqlConversationStore()
    cid = await store.create(ids["bot_id"])
    scheduled_at = utcnow() - timedelta(seconds=1)

    await store.append_message(cid, MessageRole.USER, "one more thing")

    assert await complete_if_idle(store, cid, scheduled_at) is False
    assert (await store.get(cid)).status == ConversationStatus.ACTIVE


async def test_worker_job_uses_injected_store(db, seed):
    ids = await seed()
    store = SqlConversationStore()
    cid = await store.create(ids["bot_id"])

    result = await complete_conversation(
        {"conversation_store": store}, cid, utcnow().isoformat()
    )

    assert result == {"conversation_id": cid, "completed": True}
    assert (await store.get(cid)).status == ConversationStatus.COMPLETED


def test_worker_settings():
    assert complete_conversation in WorkerSettings.functions
    assert WorkerSettings.allow_abort_jobs is True


# ── ARQ ─────────────────────────────────────────────────────


def _pool(pending_job_id=None):
    pool = MagicMock()
    pool.enqueue_job = AsyncMock(return_value=MagicMock())
    pool.set = AsyncMock()
    pool.getdel = AsyncMock(return_value=pending_job_id)
    return pool


async def test_arq_schedule_enqueues_deferred_job():
    pool = _pool()
    scheduler = ArqCompletionScheduler(pool=pool)

    await scheduler.schedule_completion("c1", 2.0)

    args, kwargs = pool.enqueue_job.call_args
    assert args[0] == COMPLETE_JOB
    assert args[1] == "c1"
    assert kwargs["_defer_by"] == 2.0
    assert kwargs["_job_id"].startswith(f"{COMPLETE_JOB}:c1:")
    pool.set.assert_awaited_once()
    key, job_id = pool.set.call_args.args
    assert key == PENDING_KEY_PREFIX + "c1"
    assert job_id == kwargs["_job_id"]


async def test_arq_cancel_aborts_pending_job():
    pool = _pool(pending_job_id=b"complete_conversation:c1:123")
    job = MagicMock()
    job.abort = AsyncMock(side_effect=asyncio.TimeoutError)

    with patch("app.services.scheduler.Job", return_value=job) as job_cls:
        await ArqCompletionScheduler(pool=pool, abort_timeout=0.1).cancel("c1")

    pool.getdel.assert_awaited_once_with(PENDING_KEY_PREFIX + "c1")
    job_cls.assert_called_once_with("complete_conversation:c1:123", pool)
    job.abort.assert_awaited_once_with(timeout=0.1)


async def test_arq_cancel_without_pending_job():
    pool = _pool(pending_job_id=None)

    with patch("app.services.scheduler.Job") as job_cls:
        await ArqCompletionScheduler(pool=pool).cancel("c1")

    job_cls.assert_not_called()


async def test_arq_duplicate_job_is_not_tracked():
    pool = _pool()
    pool.enqueue_job = AsyncMock(return_value=None)

    await ArqCompletionScheduler(pool=pool).schedule_completion("c1", 1.0)

    pool.set.assert_not_awaited()
