from __future__ import annotations

from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI

from cookhound import __version__
from cookhound.config import get_settings
from cookhound.context.middleware import request_context_middleware
from cookhound.errors import CookhoundError
from cookhound.queue.manager import QueueManager
from cookhound.session import build_session_manager
from cookhound.store import KeyValueStore, build_store
from cookhound.utils.log import get_logger

from .error_handlers import cookhound_error_handler, general_exception_handler
from .routes import router

log = get_logger("app")


def create_app(*, store: KeyValueStore | None = None, queue: QueueManager | None = None) -> FastAPI:
    """
    Build the HTTP app. The queue manager always runs in the app role here: requests may
    enqueue, only `cookhound.worker` consumes.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        s = get_settings()
        kv = store or build_store(s)
        qm = queue or QueueManager()
        app.state.store = kv
        app.state.sessions = build_session_manager(kv, s)
        app.state.queue = qm

        # Backend outages are logged by the connection listener; boot continues.
        await qm.initialize(False)
        log.info("app_started", env=str(s.env), session_store=str(s.session_store), queue_backend=str(s.queue_backend))
        yield
        await qm.shutdown()
        with suppress(Exception):
            await kv.close()
        log.info("app_stopped")

    app = FastAPI(title="cookhound", version=__version__, lifespan=lifespan)
    app.add_exception_handler(CookhoundError, cookhound_error_handler)
    app.add_exception_handler(Exception, general_exception_handler)
    app.middleware("http")(request_context_middleware)
    app.include_router(router)
    return app
