"""
Key-value backends for server-side state (sessions).

- RedisStore: production backend
- MemoryStore: in-process backend for local development and tests
"""

from __future__ import annotations

from cookhound.config import Settings, get_settings

from .interfaces import KeyValueStore
from .memory_store import MemoryStore

__all__ = ["KeyValueStore", "MemoryStore", "build_store"]


def build_store(settings: Settings | None = None) -> KeyValueStore:
    s = settings or get_settings()
    kind = str(s.session_store or "redis").strip().lower()
    if kind == "memory":
        return MemoryStore()
    from .redis_store import RedisStore

    return RedisStore(url=s.redis_connection_url(), password=s.redis_password_value())
