from __future__ import annotations

from typing import Any

from fastapi import Response

from cookhound.config import get_settings


def _cookie_name(name: str | None) -> str:
    return str(name or get_settings().session_cookie_name or "session")


def parse_session(request: Any, *, cookie_name: str | None = None) -> dict[str, str] | None:
    """
    Return {"id": <session id>} from the session cookie, or None when absent/empty.
    """
    cookies = getattr(request, "cookies", None) or {}
    value = str(cookies.get(_cookie_name(cookie_name)) or "").strip()
    if not value:
        return None
    return {"id": value}


def set_session_cookie(response: Response, session_id: str, *, keep_logged_in: bool) -> None:
    """
    Attach the session cookie to `response`.

    Without "keep me logged in" the cookie is a browser-session cookie (no Max-Age);
    the server-side record still expires on its own TTL.
    """
    s = get_settings()
    response.set_cookie(
        _cookie_name(None),
        session_id,
        httponly=True,
        samesite="strict",
        secure=s.effective_cookie_secure(),
        max_age=int(s.session_cookie_max_age_days) * 86400 if keep_logged_in else None,
        path="/",
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(_cookie_name(None), path="/")
