"""Lightweight in-memory TTL cache for hot lookups.

Used for bot configuration, which is read on every chat turn but changes
rarely. Entries carry their own expiry so callers can pick a TTL per key.
"""

import time
from collections.abc import Hashable
from typing import Any

_cache: dict[Hashable, tuple[float, Any]] = {}

# Default TTL in seconds
DEFAULT_TTL = 30.0


def get(key: Hashable) -> Any | None:
    """Return cached value if present and not expired, else None."""
    entry = _cache.get(key)
    if entry is None:
        return None
    expires_at, value = entry
    if time.monotonic() >= expires_at:
        _cache.pop(key, None)
        return None
    return value


def put(key: Hashable, value: Any, ttl: float = DEFAULT_TTL) -> None:
    """Store a value that expires ``ttl`` seconds from now."""
    _cache[key] = (time.monotonic() + ttl, value)


def clear() -> None:
    """Clear all cached entries."""
    _cache.clear()
