from __future__ import annotations

import asyncio
from typing import Any

from cookhound.session import SessionManager, Status, UserRole


def login_user(
    sessions: SessionManager,
    *,
    user_id: int,
    role: UserRole = UserRole.User,
    status: Status = Status.active,
) -> str:
    # MemoryStore is not bound to an event loop, so a private loop is fine here.
    return asyncio.run(sessions.create_session(user_id, user_role=role, status=status))


def cookie_header(session_id: str, *, name: str = "session") -> dict[str, str]:
    return {"cookie": f"{name}={session_id}"}


class FailingStore:
    """Key-value store whose every call fails like an unreachable Redis."""

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error or ConnectionError("connection refused")

    async def get(self, key: str) -> Any | None:
        raise self.error

    async def set(self, key: str, value: Any, ttl_seconds: int, *, only_if_exists: bool = False) -> bool:
        raise self.error

    async def delete(self, key: str) -> None:
        raise self.error

    async def keys(self, pattern: str) -> list[str]:
        raise self.error

    async def flush_all(self) -> None:
        raise self.error

    async def close(self) -> None:
        return None
