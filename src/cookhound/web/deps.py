from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from cookhound.errors import InfrastructureError
from cookhound.queue.manager import QueueManager
from cookhound.session import SessionManager, SessionRecord, UserRole
from cookhound.session.cookie import parse_session
from cookhound.utils.log import get_logger

log = get_logger("auth")

_ROLE_RANK = {UserRole.Guest: 0, UserRole.User: 1, UserRole.Admin: 2}


def get_sessions(request: Request) -> SessionManager:
    sessions = getattr(request.app.state, "sessions", None)
    if sessions is None:
        raise HTTPException(status_code=500, detail="Session manager not initialized")
    return sessions


def get_queue(request: Request) -> QueueManager:
    queue = getattr(request.app.state, "queue", None)
    if queue is None:
        raise HTTPException(status_code=500, detail="Queue manager not initialized")
    return queue


async def current_session(request: Request, sessions: SessionManager = Depends(get_sessions)) -> SessionRecord:
    """
    Authenticated session for this request, re-validated (the request context is not trusted).

    A store outage fails closed: the request is treated as unauthenticated.
    """
    cookie = parse_session(request)
    if cookie is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        session = await sessions.validate_session(cookie["id"])
    except InfrastructureError as ex:
        log.error("session_validation_unavailable", code=ex.code.value, error=str(ex.cause or ex))
        raise HTTPException(status_code=401, detail="Not authenticated") from ex
    if session is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return session


def require_role(min_role: UserRole):
    async def _dep(session: SessionRecord = Depends(current_session)) -> SessionRecord:
        if _ROLE_RANK.get(session.user_role, 0) < _ROLE_RANK[min_role]:
            raise HTTPException(status_code=403, detail="Forbidden")
        return session

    return _dep
