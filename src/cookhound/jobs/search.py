from __future__ import annotations

from typing import Any

from cookhound.integrations import RecipeRepository, SearchIndex
from cookhound.queue.base_job import BaseJob
from cookhound.queue.interfaces import Job
from cookhound.utils.log import get_logger

from .names import JobNames, QueueNames

log = get_logger("recipe-reindex-job")

BATCH_SIZE = 250


class ReindexRecipesJob(BaseJob):
    """
    Rebuild the recipe search index from the repository, in id order and in batches.

    Regular writes already upsert single recipes; this is the nightly safety net, so a
    failing document is logged and skipped instead of failing the run.
    """

    job_name = JobNames.REINDEX_RECIPES
    queue_name = QueueNames.SEARCH
    concurrency = 1

    def __init__(self, recipes: RecipeRepository, index: SearchIndex, *, batch_size: int = BATCH_SIZE) -> None:
        self._recipes = recipes
        self._index = index
        self._batch_size = max(1, int(batch_size))

    async def handle(self, job: Job) -> dict[str, Any]:
        log.info("reindex_started", job_id=job.id)
        last_id = 0
        processed = 0
        failed = 0

        while True:
            batch = await self._recipes.list_after(last_id, self._batch_size)
            if not batch:
                break

            for doc in batch:
                try:
                    await self._index.upsert(doc)
                except Exception as ex:
                    failed += 1
                    log.error("reindex_upsert_failed", recipe_id=doc.get("id"), error=str(ex))

            processed += len(batch)
            last_id = int(batch[-1]["id"])

        log.info("reindex_finished", processed=processed, failed=failed)
        return {"processed": processed, "failed": failed}
