from __future__ import annotations

from cookhound.integrations import VisitCounter
from cookhound.queue.base_job import BaseJob
from cookhound.queue.interfaces import Job
from cookhound.utils.log import get_logger

from .names import JobNames, QueueNames

log = get_logger("recipe-visit-job")


class RegisterRecipeVisitJob(BaseJob):
    """
    data: {"recipe_id": int, "user_id": int | None}

    Bumps the view counter and, for signed-in users, the "last viewed" list.
    """

    job_name = JobNames.REGISTER_RECIPE_VISIT
    queue_name = QueueNames.RECIPES
    queue_options = {"default_job_options": {"attempts": 2, "backoff": {"type": "fixed", "delay": 1_000}}}

    def __init__(self, visits: VisitCounter) -> None:
        self._visits = visits

    async def handle(self, job: Job) -> None:
        data = dict(job.data or {})
        recipe_id = data.get("recipe_id")
        user_id = data.get("user_id")

        if not recipe_id:
            log.warning("recipe_visit_missing_recipe_id", job_id=job.id)
            return

        try:
            await self._visits.increment_view_count(int(recipe_id))
            if user_id:
                await self._visits.add_to_last_viewed(int(user_id), int(recipe_id))
        except Exception as ex:
            log.warning(
                "recipe_visit_failed", recipe_id=recipe_id, user_id=user_id, job_id=job.id, error=str(ex)
            )
            raise

        log.debug("recipe_visit_registered", recipe_id=recipe_id, user_id=user_id)
