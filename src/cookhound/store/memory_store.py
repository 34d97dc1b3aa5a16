from __future__ import annotations

import fnmatch
import json
import time
from typing import Any, Callable


class MemoryStore:
    """
    In-process key-value store with per-key TTL.

    Used for local development and tests. Values are stored JSON-encoded so callers get
    fresh copies on every read, the same as with Redis.

    Notes:
    - Expired keys are dropped lazily on access.
    - Not shared between processes; the app and a separate worker will not see each other.
    """

    def __init__(self, *, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock or time.time
        self._data: dict[str, tuple[str, float | None]] = {}

    def _alive(self, key: str) -> str | None:
        item = self._data.get(key)
        if item is None:
            return None
        raw, expires_at = item
        if expires_at is not None and self._clock() >= expires_at:
            self._data.pop(key, None)
            return None
        return raw

    async def get(self, key: str) -> Any | None:
        raw = self._alive(key)
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any, ttl_seconds: int, *, only_if_exists: bool = False) -> bool:
        if only_if_exists and self._alive(key) is None:
            return False
        ttl = int(ttl_seconds)
        expires_at = self._clock() + ttl if ttl > 0 else None
        self._data[key] = (json.dumps(value), expires_at)
        return True

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self, pattern: str) -> list[str]:
        return sorted(k for k in list(self._data) if self._alive(k) is not None and fnmatch.fnmatchcase(k, pattern))

    async def ttl(self, key: str) -> int | None:
        if self._alive(key) is None:
            return None
        _, expires_at = self._data[key]
        if expires_at is None:
            return -1
        return max(0, int(expires_at - self._clock()))

    async def flush_all(self) -> None:
        self._data.clear()

    async def close(self) -> None:
        return None
