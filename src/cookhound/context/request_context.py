"""
Request-scoped ambient state.

One `run()` call is one region: the state object is stored in a ContextVar, and asyncio
copies the current context into every task created inside the region, so nested
`create_task`/`gather` work sees the same object while concurrent requests (separate
tasks) never do. Leaving the region resets the variable; nothing leaks into the next
request handled by the same task.

This module must stay import-light: the logging setup reads from it.
"""

from __future__ import annotations

import inspect
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field, fields
from typing import TYPE_CHECKING, Any, Awaitable, Callable, TypeVar
from urllib.parse import urlsplit

if TYPE_CHECKING:
    from cookhound.session.manager import SessionManager
    from cookhound.session.models import UserRole

T = TypeVar("T")

PATH_UNKNOWN = "PATH UNKNOWN"
DEFAULT_LOCALE = "cs"
SUPPORTED_LOCALES = ("en", "cs")


@dataclass
class RequestContextState:
    request_id: str
    request_path: str | None = None
    request_method: str | None = None
    session_id: str | None = None
    user_id: int | None = None
    user_role: UserRole | None = None
    user_agent: str | None = None
    user_locale: str | None = None
    ip: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


_KNOWN_FIELDS = frozenset(f.name for f in fields(RequestContextState)) - {"extra"}

_CURRENT: ContextVar[RequestContextState | None] = ContextVar("request_context", default=None)


def current() -> RequestContextState | None:
    return _CURRENT.get()


def is_active() -> bool:
    return _CURRENT.get() is not None


def _header(request: Any, name: str) -> str | None:
    headers = getattr(request, "headers", None)
    if headers is None or not hasattr(headers, "get"):
        return None
    v = headers.get(name)
    return str(v).strip() if v else None


def _client_ip(request: Any) -> str | None:
    xff = _header(request, "x-forwarded-for")
    if xff:
        first = xff.split(",")[0].strip()
        if first:
            return first
    return _header(request, "x-real-ip")


def _request_path(request: Any) -> str:
    try:
        parts = urlsplit(str(request.url))
        if not parts.scheme or not parts.netloc:
            return PATH_UNKNOWN
        return parts.path + (f"?{parts.query}" if parts.query else "")
    except Exception:
        return PATH_UNKNOWN


def _locale(request: Any) -> str:
    raw = _header(request, "accept-language") or ""
    for part in raw.split(","):
        tag = part.split(";")[0].strip().lower()
        base = tag.split("-")[0]
        if base in SUPPORTED_LOCALES:
            return base
    return DEFAULT_LOCALE


async def _populate(
    state: RequestContextState,
    request: Any,
    sessions: SessionManager | None,
    cookie_name: str | None,
) -> None:
    from cookhound.session.cookie import parse_session
    from cookhound.session.models import UserRole

    state.request_method = str(getattr(request, "method", "") or "") or None
    state.user_agent = _header(request, "user-agent")
    state.ip = _client_ip(request)
    state.request_path = _request_path(request)
    state.user_locale = _locale(request)

    # Guest until a session proves otherwise; a failed lookup below keeps it that way.
    state.user_role = UserRole.Guest
    cookie = parse_session(request, cookie_name=cookie_name)
    if cookie is None or sessions is None:
        return
    session = await sessions.validate_session(cookie["id"])
    if session is not None:
        state.user_id = session.user_id
        state.user_role = session.user_role
        state.session_id = session.session_id


async def run(
    request: Any,
    fn: Callable[[], T | Awaitable[T]],
    *,
    sessions: SessionManager | None = None,
    cookie_name: str | None = None,
) -> T:
    """
    Establish a fresh context for `request`, populate it best-effort and run `fn` inside it.

    Population never raises: whatever was set before a failure stays, the rest is left
    empty. Downstream authorization must re-check identity rather than trust the context.
    Exceptions raised by `fn` itself propagate unchanged.
    """
    state = RequestContextState(request_id=str(uuid.uuid4()))
    token = _CURRENT.set(state)
    try:
        try:
            await _populate(state, request, sessions, cookie_name)
        except Exception:
            # Best-effort metadata; never fail the request over it.
            pass
        result = fn()
        if inspect.isawaitable(result):
            result = await result
        return result
    finally:
        _CURRENT.reset(token)


def get(key: str) -> Any | None:
    state = _CURRENT.get()
    if state is None:
        return None
    if key in _KNOWN_FIELDS:
        return getattr(state, key)
    return state.extra.get(key)


def set(key: str, value: Any) -> None:  # noqa: A001
    state = _CURRENT.get()
    if state is None:
        return
    if key in _KNOWN_FIELDS:
        setattr(state, key, value)
    else:
        state.extra[key] = value


def get_request_id() -> str | None:
    return get("request_id")


def get_request_path() -> str | None:
    return get("request_path")


def get_request_method() -> str | None:
    return get("request_method")


def get_user_agent() -> str | None:
    return get("user_agent")


def get_session_id() -> str | None:
    return get("session_id")


def get_user_role() -> UserRole | None:
    return get("user_role")


def get_user_id() -> int | None:
    return get("user_id")


def get_user_locale() -> str | None:
    return get("user_locale")


def get_ip() -> str | None:
    return get("ip")


def set_request_id(value: str) -> None:
    set("request_id", value)


def set_request_path(value: str) -> None:
    set("request_path", value)


def set_request_method(value: str) -> None:
    set("request_method", value)


def set_user_agent(value: str) -> None:
    set("user_agent", value)


def set_session_id(value: str) -> None:
    set("session_id", value)


def set_user_role(value: UserRole) -> None:
    set("user_role", value)


def set_user_id(value: int) -> None:
    set("user_id", value)


def set_user_locale(value: str) -> None:
    set("user_locale", value)


def set_ip(value: str) -> None:
    set("ip", value)
