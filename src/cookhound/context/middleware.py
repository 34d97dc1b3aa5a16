from __future__ import annotations

import functools
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from fastapi import Request, Response

from cookhound.context import request_context
from cookhound.utils.log import get_logger

log = get_logger("request")

H = TypeVar("H", bound=Callable[..., Awaitable[Any]])


def _sessions_for(request: Request):
    return getattr(getattr(request.app, "state", None), "sessions", None)


async def request_context_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """
    Run the rest of request handling inside a request-context region:
    - request id, path, method, IP, user agent, locale
    - identity resolved from the session cookie (Guest when absent or invalid)
    - x-request-id echoed on the response
    """

    async def _handle() -> Response:
        started = time.perf_counter()
        log.info("request_started", method=request.method)
        resp = await call_next(request)
        rid = request_context.get_request_id()
        if rid:
            resp.headers.setdefault("x-request-id", rid)
        log.info(
            "request_finished",
            method=request.method,
            status=int(resp.status_code),
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        return resp

    return await request_context.run(request, _handle, sessions=_sessions_for(request))


def with_request_context(handler: H) -> H:
    """
    Ensure a route handler executes inside a request context.

    The first positional argument (or the `request` keyword) must be the Request. When a
    context is already active (middleware installed, or nested wrappers) this just delegates.
    """

    @functools.wraps(handler)
    async def wrapped(*args: Any, **kwargs: Any) -> Any:
        if request_context.is_active():
            return await handler(*args, **kwargs)
        request = kwargs.get("request")
        if request is None and args:
            request = args[0]
        return await request_context.run(
            request,
            lambda: handler(*args, **kwargs),
            sessions=_sessions_for(request) if request is not None else None,
        )

    return wrapped  # type: ignore[return-value]
