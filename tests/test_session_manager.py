from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from cookhound.errors import InfrastructureError, InfrastructureErrorCode, ValidationError
from cookhound.session import LoginMethod, SessionManager, Status, UserRole
from cookhound.store import MemoryStore
from tests._helpers.auth import FailingStore

TTL = 30 * 24 * 3600
WINDOW = 3600


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def epoch(self) -> float:
        return self.now.timestamp()

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class _PausingStore(MemoryStore):
    """Holds the next read of a `session:` key open until `release` is set."""

    def __init__(self, **kw) -> None:
        super().__init__(**kw)
        self.armed = False
        self.read_done = asyncio.Event()
        self.release = asyncio.Event()

    async def get(self, key: str):
        value = await super().get(key)
        if self.armed and key.startswith("session:"):
            self.armed = False
            self.read_done.set()
            await self.release.wait()
        return value


def _manager(clock: _Clock, store: MemoryStore | None = None) -> tuple[SessionManager, MemoryStore]:
    kv = store or MemoryStore(clock=clock.epoch)
    return SessionManager(kv, ttl_seconds=TTL, activity_window_seconds=WINDOW, clock=clock), kv


def test_create_then_validate_returns_identity() -> None:
    async def main() -> None:
        clock = _Clock()
        sm, store = _manager(clock)
        sid = await sm.create_session(
            7,
            user_role=UserRole.User,
            status=Status.active,
            ip_address="203.0.113.9",
            user_agent="pytest",
            login_method=LoginMethod.google,
        )
        assert len(sid) >= 40

        s = await sm.validate_session(sid)
        assert s is not None
        assert s.user_id == 7
        assert s.user_role == UserRole.User
        assert s.login_method == LoginMethod.google
        assert s.ip_address == "203.0.113.9"
        assert s.expires_at == clock.now + timedelta(seconds=TTL)

        assert await store.get("user_sessions:7") == [sid]
        assert await store.ttl(f"session:{sid}") == TTL

    asyncio.run(main())


def test_session_ids_are_unique() -> None:
    async def main() -> None:
        sm, _ = _manager(_Clock())
        ids = {await sm.create_session(1, user_role=UserRole.User, status=Status.active) for _ in range(50)}
        assert len(ids) == 50

    asyncio.run(main())


@pytest.mark.parametrize("bad", [0, -3, True, "7"])
def test_create_rejects_invalid_user_id(bad) -> None:
    sm, _ = _manager(_Clock())
    with pytest.raises(ValidationError):
        asyncio.run(sm.create_session(bad, user_role=UserRole.User, status=Status.active))


def test_validate_unknown_and_empty_id() -> None:
    sm, _ = _manager(_Clock())
    assert asyncio.run(sm.validate_session("nope")) is None
    with pytest.raises(ValidationError):
        asyncio.run(sm.validate_session(""))


def test_activity_window_skips_refresh_then_slides_expiry() -> None:
    async def main() -> None:
        clock = _Clock()
        sm, _ = _manager(clock)
        created = clock.now
        sid = await sm.create_session(7, user_role=UserRole.User, status=Status.active)

        clock.advance(WINDOW - 1)
        s = await sm.validate_session(sid)
        assert s is not None
        assert s.last_accessed_at == created
        assert s.expires_at == created + timedelta(seconds=TTL)

        clock.advance(2)
        s = await sm.validate_session(sid)
        assert s is not None
        assert s.last_accessed_at == clock.now
        assert s.expires_at == clock.now + timedelta(seconds=TTL)

        # persisted, not just returned
        again = await sm.validate_session(sid)
        assert again is not None
        assert again.expires_at == clock.now + timedelta(seconds=TTL)

    asyncio.run(main())


def test_expired_record_is_invalidated_on_touch() -> None:
    async def main() -> None:
        clock = _Clock()
        # Store clock stays put: the record outlives its own expires_at.
        frozen = clock.epoch()
        store = MemoryStore(clock=lambda: frozen)
        sm, _ = _manager(clock, store)
        sid = await sm.create_session(7, user_role=UserRole.User, status=Status.active)

        clock.advance(TTL + 1)
        assert await sm.validate_session(sid) is None
        assert await store.get(f"session:{sid}") is None
        assert await store.get("user_sessions:7") is None

    asyncio.run(main())


def test_multiple_sessions_per_user_and_invalidation() -> None:
    async def main() -> None:
        sm, store = _manager(_Clock())
        a = await sm.create_session(7, user_role=UserRole.User, status=Status.active)
        b = await sm.create_session(7, user_role=UserRole.User, status=Status.active)
        other = await sm.create_session(8, user_role=UserRole.Admin, status=Status.active)

        assert sorted(s.session_id for s in await sm.get_user_sessions(7)) == sorted([a, b])

        await sm.invalidate_session(a)
        assert [s.session_id for s in await sm.get_user_sessions(7)] == [b]
        assert await sm.validate_session(a) is None

        await sm.invalidate_all_user_sessions(7)
        assert await sm.get_user_sessions(7) == []
        assert await store.get("user_sessions:7") is None
        assert await sm.validate_session(b) is None

        assert (await sm.validate_session(other)) is not None

    asyncio.run(main())


def test_invalidating_last_session_drops_index() -> None:
    async def main() -> None:
        sm, store = _manager(_Clock())
        sid = await sm.create_session(7, user_role=UserRole.User, status=Status.active)
        await sm.invalidate_session(sid)
        assert await store.keys("*") == []

    asyncio.run(main())


def test_invalidate_unknown_is_noop() -> None:
    async def main() -> None:
        sm, _ = _manager(_Clock())
        await sm.invalidate_session("missing")
        await sm.invalidate_session("")
        await sm.invalidate_all_user_sessions(404)

    asyncio.run(main())


def test_get_user_sessions_prunes_stale_index_entries() -> None:
    async def main() -> None:
        sm, store = _manager(_Clock())
        a = await sm.create_session(7, user_role=UserRole.User, status=Status.active)
        b = await sm.create_session(7, user_role=UserRole.User, status=Status.active)
        await store.delete(f"session:{a}")

        assert [s.session_id for s in await sm.get_user_sessions(7)] == [b]
        assert await store.get("user_sessions:7") == [b]

        await store.delete(f"session:{b}")
        assert await sm.get_user_sessions(7) == []
        assert await store.get("user_sessions:7") is None

    asyncio.run(main())


@pytest.mark.parametrize("logout", ["single", "everywhere"])
def test_logout_during_refresh_is_not_undone(logout: str) -> None:
    async def main() -> None:
        clock = _Clock()
        store = _PausingStore(clock=clock.epoch)
        sm, _ = _manager(clock, store)
        sid = await sm.create_session(7, user_role=UserRole.User, status=Status.active)

        # outside the activity window, so validation will write a refresh
        clock.advance(2 * WINDOW)
        store.armed = True
        pending = asyncio.create_task(sm.validate_session(sid))
        await asyncio.wait_for(store.read_done.wait(), timeout=2)

        if logout == "single":
            await sm.invalidate_session(sid)
        else:
            await sm.invalidate_all_user_sessions(7)
        store.release.set()

        assert await pending is None
        assert await store.get(f"session:{sid}") is None
        assert await sm.validate_session(sid) is None
        assert await sm.get_user_sessions(7) == []

    asyncio.run(main())


def test_refresh_keeps_user_index_alive_past_original_ttl() -> None:
    async def main() -> None:
        clock = _Clock()
        sm, store = _manager(clock)
        sid = await sm.create_session(7, user_role=UserRole.User, status=Status.active)

        clock.advance(20 * 24 * 3600)
        assert await sm.validate_session(sid) is not None
        assert await store.ttl("user_sessions:7") == TTL

        # day 40: the index written at creation would be gone by now
        clock.advance(20 * 24 * 3600)
        assert await sm.validate_session(sid) is not None
        assert await store.get("user_sessions:7") == [sid]
        assert [s.session_id for s in await sm.get_user_sessions(7)] == [sid]

        await sm.invalidate_all_user_sessions(7)
        assert await sm.validate_session(sid) is None

    asyncio.run(main())


def test_refresh_restores_a_lost_index_entry() -> None:
    async def main() -> None:
        clock = _Clock()
        sm, store = _manager(clock)
        a = await sm.create_session(7, user_role=UserRole.User, status=Status.active)
        b = await sm.create_session(7, user_role=UserRole.User, status=Status.active)
        await store.set("user_sessions:7", [b], TTL)

        clock.advance(WINDOW)
        assert await sm.validate_session(a) is not None
        assert await store.get("user_sessions:7") == [b, a]

    asyncio.run(main())


def test_store_failures_surface_as_infrastructure_error() -> None:
    sm = SessionManager(FailingStore())
    with pytest.raises(InfrastructureError) as ei:
        asyncio.run(sm.validate_session("abc"))
    assert ei.value.code == InfrastructureErrorCode.REDIS_COMMAND_FAILED
    assert isinstance(ei.value.cause, ConnectionError)

    for call in (
        sm.create_session(7, user_role=UserRole.User, status=Status.active),
        sm.invalidate_session("abc"),
        sm.invalidate_all_user_sessions(7),
        sm.get_user_sessions(7),
    ):
        with pytest.raises(InfrastructureError):
            asyncio.run(call)
