"""Shared async Redis client."""

from __future__ import annotations

from redis.asyncio import Redis, from_url

from app.core.config import get_settings

_client: Redis | None = None


def get_redis() -> Redis:
    """Lazy-init a shared async Redis client."""
    global _client
    if _client is None:
        settings = get_settings()
        _client = from_url(settings.redis_url, decode_responses=True)
    return _client


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
