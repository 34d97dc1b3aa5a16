"""
Server-side sessions: Redis-backed records with sliding expiry and a per-user index.
"""

from __future__ import annotations

from cookhound.config import Settings, get_settings
from cookhound.store.interfaces import KeyValueStore

from .manager import SessionManager
from .models import LoginMethod, SessionRecord, Status, UserRole

__all__ = [
    "LoginMethod",
    "SessionManager",
    "SessionRecord",
    "Status",
    "UserRole",
    "build_session_manager",
]


def build_session_manager(store: KeyValueStore, settings: Settings | None = None) -> SessionManager:
    s = settings or get_settings()
    return SessionManager(
        store,
        ttl_seconds=int(s.session_ttl_seconds),
        activity_window_seconds=int(s.session_activity_window_seconds),
    )
