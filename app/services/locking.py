"""Per-conversation mutual exclusion on a shared key-value store.

A lock is a Redis key with a TTL, set only if absent, whose value is a fresh
holder token. The TTL bounds how long a crashed holder can block a
conversation. Release is compare-and-delete on that token, so a holder whose
lock expired or was taken over cannot drop somebody else's lock.

Waiters poll for the key to disappear and race for it with SET NX; a waiter
that loses the race goes back to waiting. Once the wait budget is spent the
waiter deletes the key itself (forced takeover). Takeover favours liveness
over strict exclusion: a holder that is slow rather than dead can be
preempted, so it is logged separately from clean releases.

Store errors never fail a chat turn. The caller proceeds unlocked; ordering
is best effort, message storage order is the source of truth.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from redis.asyncio import Redis

from app.core.config import get_settings

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "conversation-lock:"

# DEL only while the key still holds the caller's token.
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class LockStore(ABC):
    """Key-value operations the lock manager needs."""

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        ...

    @abstractmethod
    async def exists(self, key: str) -> bool:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def delete_if_equals(self, key: str, value: str) -> bool:
        """Atomically delete ``key`` if it holds ``value``."""


class RedisLockStore(LockStore):
    """LockStore over ``redis.asyncio`` using SET NX EX and a Lua release."""

    def __init__(self, client: Redis) -> None:
        self._client = client

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        return bool(await self._client.set(key, value, nx=True, ex=ttl_seconds))

    async def exists(self, key: str) -> bool:
        return bool(await self._client.exists(key))

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def delete_if_equals(self, key: str, value: str) -> bool:
        return bool(await self._client.eval(_RELEASE_SCRIPT, 1, key, value))


def lock_key(conversation_id: str) -> str:
    return f"{LOCK_KEY_PREFIX}{conversation_id}"


class ConversationLockManager:
    """Acquire, wait for, and release conversation locks."""

    def __init__(
        self,
        store: LockStore,
        ttl_seconds: int | None = None,
        max_wait_seconds: float | None = None,
        poll_interval_seconds: float | None = None,
    ) -> None:
        settings = get_settings()
        self._store = store
        self.ttl_seconds = ttl_seconds or settings.lock_ttl_seconds
        self.max_wait_seconds = (
            settings.lock_wait_max_seconds if max_wait_seconds is None else max_wait_seconds
        )
        self.poll_interval_seconds = (
            settings.lock_poll_interval_seconds
            if poll_interval_seconds is None
            else poll_interval_seconds
        )

    async def _try_acquire(self, conversation_id: str) -> str | None:
        token = uuid.uuid4().hex
        if await self._store.set_if_absent(lock_key(conversation_id), token, self.ttl_seconds):
            logger.debug("Acquired lock for conversation %s", conversation_id)
            return token
        return None

    async def acquire(self, conversation_id: str) -> str | None:
        """Take the lock if nobody holds it. Never blocks.

        Returns the holder token, or None if the lock is held elsewhere or
        the store is unavailable.
        """
        try:
            return await self._try_acquire(conversation_id)
        except Exception:
            logger.warning(
                "Lock store unavailable, proceeding without lock for conversation %s",
                conversation_id,
                exc_info=True,
            )
            return None

    async def wait_until_free(
        self,
        conversation_id: str,
        max_wait_seconds: float | None = None,
        poll_interval_seconds: float | None = None,
    ) -> bool:
        """Poll until the lock key is gone.

        Returns True if the lock was released or expired on its own, False if
        the wait budget ran out and the key was force-deleted. Either way the
        key is absent when this returns (unless the store is failing).
        """
        max_wait = self.max_wait_seconds if max_wait_seconds is None else max_wait_seconds
        interval = (
            self.poll_interval_seconds if poll_interval_seconds is None else poll_interval_seconds
        )
        key = lock_key(conversation_id)
        deadline = time.monotonic() + max_wait

        try:
            while await self._store.exists(key):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    await self._store.delete(key)
                    logger.warning(
                        "Forced lock takeover for conversation %s after waiting %.1fs",
                        conversation_id,
                        max_wait,
                    )
                    return False
                await asyncio.sleep(min(interval, remaining))
        except Exception:
            logger.warning(
                "Lock store unavailable while waiting on conversation %s",
                conversation_id,
                exc_info=True,
            )
        return True

    async def obtain(self, conversation_id: str) -> str | None:
        """Wait for the lock and take it, retrying when another waiter wins.

        Returns the holder token. None means the caller proceeds unlocked:
        the store is failing, or the wait budget ran out and even the forced
        takeover lost the race.
        """
        deadline = time.monotonic() + self.max_wait_seconds
        while True:
            remaining = max(deadline - time.monotonic(), 0.0)
            freed = await self.wait_until_free(conversation_id, max_wait_seconds=remaining)
            try:
                token = await self._try_acquire(conversation_id)
            except Exception:
                logger.warning(
                    "Lock store unavailable, proceeding without lock for conversation %s",
                    conversation_id,
                    exc_info=True,
                )
                return None
            if token is not None:
                return token
            if not freed:
                logger.warning(
                    "Lost the lock race after takeover, proceeding unlocked for conversation %s",
                    conversation_id,
                )
                return None
            logger.debug("Lock race lost for conversation %s, waiting again", conversation_id)

    async def release(self, conversation_id: str, token: str | None) -> None:
        """Drop the lock if ``token`` still holds it. No-op without a token."""
        if token is None:
            return
        try:
            released = await self._store.delete_if_equals(lock_key(conversation_id), token)
        except Exception:
            logger.warning(
                "Failed to release lock for conversation %s", conversation_id, exc_info=True
            )
            return
        if released:
            logger.debug("Released lock for conversation %s", conversation_id)
        else:
            logger.info(
                "Lock for conversation %s expired or was taken over before release",
                conversation_id,
            )

    @asynccontextmanager
    async def held(self, conversation_id: str) -> AsyncIterator[str | None]:
        """Obtain the lock around a block and always release it."""
        token = await self.obtain(conversation_id)
        try:
            yield token
        finally:
            await self.release(conversation_id, token)
