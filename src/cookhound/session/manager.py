from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Callable

from cookhound.errors import InfrastructureError, InfrastructureErrorCode, ValidationError
from cookhound.ops.metrics import session_validations, sessions_created
from cookhound.store.interfaces import KeyValueStore
from cookhound.utils.log import get_logger

from .models import LoginMethod, SessionRecord, Status, UserRole, now_utc

log = get_logger("session-manager")

SESSION_KEY_PREFIX = "session"
USER_SESSIONS_KEY_PREFIX = "user_sessions"

ONE_HOUR_IN_SECONDS = 3600
ONE_MONTH_IN_SECONDS = 30 * 24 * ONE_HOUR_IN_SECONDS


def new_session_id() -> str:
    # 256 bits from the OS CSPRNG, url-safe so it can go straight into a cookie.
    return secrets.token_urlsafe(32)


class SessionManager:
    """
    Server-side sessions on top of a key-value backend.

    Keys:
    - session:<session_id>      -> SessionRecord (JSON), TTL = session TTL
    - user_sessions:<user_id>   -> [session_id, ...], TTL = session TTL, renewed on every refresh

    The user index is only load-bearing for cleanup. Its read-modify-write updates are not
    atomic; a lost update leaves a stale id that `get_user_sessions` drops on the next read.

    Every backend failure is re-raised as InfrastructureError. Treating "store unreachable"
    as "not logged in" (or as "logged in") is the caller's decision, not ours.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        ttl_seconds: int = ONE_MONTH_IN_SECONDS,
        activity_window_seconds: int = ONE_HOUR_IN_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._ttl = int(ttl_seconds)
        # Minimum time between two refreshes of one session (bounds write amplification).
        self._activity_window = timedelta(seconds=int(activity_window_seconds))
        self._clock = clock or now_utc

    @property
    def ttl_seconds(self) -> int:
        return self._ttl

    def _session_key(self, session_id: str) -> str:
        return f"{SESSION_KEY_PREFIX}:{session_id}"

    def _user_sessions_key(self, user_id: int) -> str:
        return f"{USER_SESSIONS_KEY_PREFIX}:{user_id}"

    async def _read_index(self, user_id: int) -> list[str]:
        raw = await self._store.get(self._user_sessions_key(user_id))
        if not isinstance(raw, list):
            return []
        return [str(x) for x in raw]

    async def _read_session(self, session_id: str) -> SessionRecord | None:
        raw = await self._store.get(self._session_key(session_id))
        if not raw:
            return None
        return SessionRecord.from_dict(raw)

    async def _touch_index(self, user_id: int, session_id: str) -> None:
        # The index must live as long as its longest-lived session, or logout-all misses it.
        ids = await self._read_index(user_id)
        if session_id not in ids:
            ids.append(session_id)
        await self._store.set(self._user_sessions_key(user_id), ids, self._ttl)

    async def create_session(
        self,
        user_id: int,
        *,
        user_role: UserRole,
        status: Status,
        ip_address: str | None = None,
        user_agent: str | None = None,
        login_method: LoginMethod = LoginMethod.manual,
    ) -> str:
        """
        Create a session for `user_id` and return its id.

        No check against existing sessions: one user may hold any number of them.
        """
        if isinstance(user_id, bool) or not isinstance(user_id, int) or user_id <= 0:
            raise ValidationError("user_id must be a positive integer")

        session_id = new_session_id()
        now = self._clock()
        session = SessionRecord(
            session_id=session_id,
            user_id=user_id,
            user_role=UserRole(user_role),
            status=Status(status),
            created_at=now,
            last_accessed_at=now,
            expires_at=now + timedelta(seconds=self._ttl),
            ip_address=ip_address,
            user_agent=user_agent,
            login_method=LoginMethod(login_method),
        )

        try:
            await self._store.set(self._session_key(session_id), session.to_dict(), self._ttl)
            await self._touch_index(user_id, session_id)
        except InfrastructureError:
            raise
        except Exception as ex:
            log.error("create_session_failed", user_id=user_id, error=str(ex))
            raise InfrastructureError(InfrastructureErrorCode.REDIS_COMMAND_FAILED, ex) from ex

        sessions_created.inc()
        log.debug("session_created", user_id=user_id, login_method=session.login_method.value)
        return session_id

    async def validate_session(self, session_id: str) -> SessionRecord | None:
        """
        Return the live session for `session_id`, or None.

        - expired sessions are invalidated on first touch (record and index entry)
        - sessions touched within the activity window are returned without a write
        - otherwise last_accessed_at/expires_at slide forward and the record is re-persisted
        """
        if not session_id:
            raise ValidationError("session_id is required")

        try:
            session = await self._read_session(session_id)
            if session is None:
                session_validations.labels(result="missing").inc()
                return None

            now = self._clock()
            if session.is_expired(now):
                await self.invalidate_session(session_id)
                session_validations.labels(result="expired").inc()
                return None

            if now - session.last_accessed_at >= self._activity_window:
                session.last_accessed_at = now
                session.expires_at = now + timedelta(seconds=self._ttl)
                # Conditional write: a logout between our read and this write must stay a logout.
                written = await self._store.set(
                    self._session_key(session_id), session.to_dict(), self._ttl, only_if_exists=True
                )
                if not written:
                    session_validations.labels(result="missing").inc()
                    return None
                await self._touch_index(session.user_id, session_id)
                log.debug("session_refreshed", user_id=session.user_id)

            session_validations.labels(result="valid").inc()
            return session
        except InfrastructureError:
            raise
        except Exception as ex:
            log.error("validate_session_failed", error=str(ex))
            raise InfrastructureError(InfrastructureErrorCode.REDIS_COMMAND_FAILED, ex) from ex

    async def invalidate_session(self, session_id: str) -> None:
        """
        Remove one session. Unknown or empty ids are a silent no-op.
        """
        if not session_id:
            return

        try:
            session = await self._read_session(session_id)
            if session is not None:
                user_key = self._user_sessions_key(session.user_id)
                updated = [sid for sid in await self._read_index(session.user_id) if sid != session_id]
                if updated:
                    await self._store.set(user_key, updated, self._ttl)
                else:
                    await self._store.delete(user_key)

            await self._store.delete(self._session_key(session_id))
        except InfrastructureError:
            raise
        except Exception as ex:
            log.error("invalidate_session_failed", error=str(ex))
            raise InfrastructureError(InfrastructureErrorCode.REDIS_COMMAND_FAILED, ex) from ex

        log.debug("session_invalidated", user_id=session.user_id if session else None)

    async def invalidate_all_user_sessions(self, user_id: int) -> None:
        try:
            session_ids = await self._read_index(user_id)
            if not session_ids:
                return

            for sid in session_ids:
                await self._store.delete(self._session_key(sid))

            await self._store.delete(self._user_sessions_key(user_id))
        except InfrastructureError:
            raise
        except Exception as ex:
            log.error("invalidate_all_user_sessions_failed", user_id=user_id, error=str(ex))
            raise InfrastructureError(InfrastructureErrorCode.REDIS_COMMAND_FAILED, ex) from ex

        log.info("user_sessions_invalidated", user_id=user_id, count=len(session_ids))

    async def get_user_sessions(self, user_id: int) -> list[SessionRecord]:
        """
        All live sessions of a user. Missing or expired entries are dropped from the index.
        """
        try:
            user_key = self._user_sessions_key(user_id)
            session_ids = await self._read_index(user_id)
            if not session_ids:
                return []

            sessions: list[SessionRecord] = []
            valid_ids: list[str] = []
            now = self._clock()

            # Sequential on purpose: users rarely hold more than a handful of sessions.
            for sid in session_ids:
                session = await self._read_session(sid)
                if session is not None and not session.is_expired(now):
                    sessions.append(session)
                    valid_ids.append(sid)

            if len(valid_ids) != len(session_ids):
                if valid_ids:
                    await self._store.set(user_key, valid_ids, self._ttl)
                else:
                    await self._store.delete(user_key)
                log.debug(
                    "user_sessions_index_pruned",
                    user_id=user_id,
                    dropped=len(session_ids) - len(valid_ids),
                )

            return sessions
        except InfrastructureError:
            raise
        except Exception as ex:
            log.error("get_user_sessions_failed", user_id=user_id, error=str(ex))
            raise InfrastructureError(InfrastructureErrorCode.REDIS_COMMAND_FAILED, ex) from ex

