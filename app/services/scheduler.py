"""Deferred "mark conversation completed" transitions.

After an assistant turn the conversation stays ACTIVE for a short delay so
rapid follow-up messages land in the same turn. A new user turn cancels the
pending completion; the completion itself also re-checks for user messages
that arrived after it was scheduled, so a lost cancel cannot close a live
conversation.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime

from arq import ArqRedis, create_pool
from arq.jobs import Job

from app.core.config import get_settings
from app.models.base import utcnow
from app.models.conversation import ConversationStatus
from app.services.conversation_store import ConversationStore

logger = logging.getLogger(__name__)

COMPLETE_JOB = "complete_conversation"
PENDING_KEY_PREFIX = "conversation-completion:"


async def complete_if_idle(
    store: ConversationStore, conversation_id: str, scheduled_at: datetime
) -> bool:
    """Mark the conversation COMPLETED unless a user spoke since ``scheduled_at``."""
    if await store.has_user_message_since(conversation_id, scheduled_at):
        logger.info("Conversation %s has a newer user turn, leaving it active", conversation_id)
        return False
    await store.set_status(conversation_id, ConversationStatus.COMPLETED)
    logger.info("Conversation %s marked completed", conversation_id)
    return True


class CompletionScheduler(ABC):
    @abstractmethod
    async def schedule_completion(self, conversation_id: str, delay_seconds: float) -> None:
        ...

    @abstractmethod
    async def cancel(self, conversation_id: str) -> None:
        ...


class LocalCompletionScheduler(CompletionScheduler):
    """In-process timers. Pending completions are lost if the process exits."""

    def __init__(self, store: ConversationStore) -> None:
        self.store = store
        self._pending: dict[str, asyncio.Task] = {}

    async def schedule_completion(self, conversation_id: str, delay_seconds: float) -> None:
        await self.cancel(conversation_id)
        task = asyncio.create_task(self._complete_later(conversation_id, delay_seconds, utcnow()))
        self._pending[conversation_id] = task
        task.add_done_callback(lambda t: self._forget(conversation_id, t))

    async def cancel(self, conversation_id: str) -> None:
        task = self._pending.pop(conversation_id, None)
        if task is not None and not task.done():
            task.cancel()
            logger.debug("Cancelled pending completion for conversation %s", conversation_id)

    def pending(self, conversation_id: str) -> bool:
        task = self._pending.get(conversation_id)
        return task is not None and not task.done()

    def _forget(self, conversation_id: str, task: asyncio.Task) -> None:
        if self._pending.get(conversation_id) is task:
            del self._pending[conversation_id]

    async def _complete_later(
        self, conversation_id: str, delay_seconds: float, scheduled_at: datetime
    ) -> None:
        await asyncio.sleep(delay_seconds)
        try:
            await complete_if_idle(self.store, conversation_id, scheduled_at)
        except Exception:
            logger.exception("Failed to complete conversation %s", conversation_id)


class ArqCompletionScheduler(CompletionScheduler):
    """Deferred ARQ jobs, handled by ``app.workers.conversations``.

    The pending job id is kept in Redis so any process can cancel it.
    """

    def __init__(self, pool: ArqRedis | None = None, abort_timeout: float = 0.5) -> None:
        self._pool = pool
        self.abort_timeout = abort_timeout

    async def _get_pool(self) -> ArqRedis:
        if self._pool is None:
            from app.workers.main import parse_redis_settings

            self._pool = await create_pool(parse_redis_settings())
        return self._pool

    async def schedule_completion(self, conversation_id: str, delay_seconds: float) -> None:
        pool = await self._get_pool()
        await self.cancel(conversation_id)

        scheduled_at = utcnow()
        job_id = f"{COMPLETE_JOB}:{conversation_id}:{int(scheduled_at.timestamp() * 1000)}"
        job = await pool.enqueue_job(
            COMPLETE_JOB,
            conversation_id,
            scheduled_at.isoformat(),
            _job_id=job_id,
            _defer_by=delay_seconds,
        )
        if job is None:
            logger.debug("Completion job %s already queued", job_id)
            return
        await pool.set(
            PENDING_KEY_PREFIX + conversation_id,
            job_id,
            ex=max(60, int(delay_seconds) + 60),
        )
        logger.info(
            "Scheduled completion of conversation %s in %.1fs", conversation_id, delay_seconds
        )

    async def cancel(self, conversation_id: str) -> None:
        pool = await self._get_pool()
        raw = await pool.getdel(PENDING_KEY_PREFIX + conversation_id)
        if not raw:
            return
        job_id = raw.decode() if isinstance(raw, bytes) else raw
        try:
            await Job(job_id, pool).abort(timeout=self.abort_timeout)
        except asyncio.TimeoutError:
            # Abort is recorded; the worker drops the job when it comes due.
            pass
        logger.debug("Cancelled completion job %s", job_id)


def build_completion_scheduler(store: ConversationStore) -> CompletionScheduler:
    if get_settings().completion_scheduler == "local":
        return LocalCompletionScheduler(store)
    return ArqCompletionScheduler()
