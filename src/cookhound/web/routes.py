from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from cookhound.context import request_context
from cookhound.ops.metrics import REGISTRY
from cookhound.queue.manager import QueueManager
from cookhound.services.recipe_visits import register_recipe_visit
from cookhound.session import SessionManager, SessionRecord, UserRole
from cookhound.session.cookie import clear_session_cookie

from .deps import current_session, get_queue, get_sessions, require_role

router = APIRouter()


def _public_session(s: SessionRecord, *, current_id: str) -> dict[str, Any]:
    d = s.to_dict()
    d.pop("session_id", None)
    d["current"] = s.session_id == current_id
    return d


@router.get("/healthz")
async def healthz() -> dict[str, bool]:
    return {"ok": True}


@router.get("/metrics")
async def metrics() -> Response:
    return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)


@router.get("/auth/me")
async def me(session: SessionRecord = Depends(current_session)) -> dict[str, Any]:
    return {
        "user_id": session.user_id,
        "role": session.user_role.value,
        "status": session.status.value,
        "locale": request_context.get_user_locale(),
        "request_id": request_context.get_request_id(),
    }


@router.get("/auth/sessions")
async def list_sessions(
    session: SessionRecord = Depends(current_session),
    sessions: SessionManager = Depends(get_sessions),
) -> dict[str, Any]:
    items = await sessions.get_user_sessions(session.user_id)
    return {"items": [_public_session(s, current_id=session.session_id) for s in items]}


@router.post("/auth/logout")
async def logout(
    response: Response,
    session: SessionRecord = Depends(current_session),
    sessions: SessionManager = Depends(get_sessions),
) -> dict[str, bool]:
    await sessions.invalidate_session(session.session_id)
    clear_session_cookie(response)
    return {"ok": True}


@router.post("/auth/logout-all")
async def logout_all(
    response: Response,
    session: SessionRecord = Depends(current_session),
    sessions: SessionManager = Depends(get_sessions),
) -> dict[str, bool]:
    await sessions.invalidate_all_user_sessions(session.user_id)
    clear_session_cookie(response)
    return {"ok": True}


@router.post("/recipes/{recipe_id}/visits", status_code=202)
async def recipe_visit(recipe_id: int, queue: QueueManager = Depends(get_queue)) -> dict[str, bool]:
    # Anonymous visits count too; the user id (if any) comes from the request context.
    queued = await register_recipe_visit(queue, recipe_id)
    return {"queued": queued}


@router.get("/admin/queues")
async def admin_queues(
    _admin: SessionRecord = Depends(require_role(UserRole.Admin)),
    queue: QueueManager = Depends(get_queue),
) -> dict[str, Any]:
    out: list[dict[str, Any]] = []
    for name in queue.get_queue_names():
        q = queue.get_queue(name)
        if q is None:
            continue
        schedulers = await q.get_job_schedulers()
        out.append(
            {
                "name": name,
                "paused": await q.is_paused(),
                "counts": await q.get_job_counts(),
                "schedulers": [{"id": s.id, "pattern": s.pattern, "tz": s.tz, "next": s.next} for s in schedulers],
            }
        )
    return {
        "worker": queue.is_worker_process,
        "jobs": sorted(d.name for d in queue.get_job_definitions()),
        "queues": out,
    }


@router.delete("/admin/users/{user_id}/sessions")
async def admin_revoke_user_sessions(
    user_id: int,
    _admin: SessionRecord = Depends(require_role(UserRole.Admin)),
    sessions: SessionManager = Depends(get_sessions),
) -> dict[str, bool]:
    await sessions.invalidate_all_user_sessions(user_id)
    return {"ok": True}
