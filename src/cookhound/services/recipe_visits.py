from __future__ import annotations

from cookhound.context import request_context
from cookhound.jobs.names import JobNames
from cookhound.queue.manager import QueueManager
from cookhound.utils.log import get_logger

log = get_logger("recipe-visits")


async def register_recipe_visit(queue: QueueManager, recipe_id: int, user_id: int | None = None) -> bool:
    """
    Record a recipe page view in the background.

    Visit counting is telemetry: if enqueueing fails the page must still render, so the
    failure is logged and swallowed. Returns whether the job was enqueued.
    """
    uid = user_id if user_id is not None else request_context.get_user_id()
    try:
        await queue.add_job(JobNames.REGISTER_RECIPE_VISIT, {"recipe_id": int(recipe_id), "user_id": uid})
    except Exception as ex:
        log.warning("recipe_visit_enqueue_failed", recipe_id=recipe_id, error=str(ex))
        return False
    return True
