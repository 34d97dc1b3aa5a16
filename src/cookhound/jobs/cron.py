from __future__ import annotations

from cookhound.errors import InfrastructureError, InfrastructureErrorCode
from cookhound.queue.base_job import CronJobConfig
from cookhound.queue.manager import QueueManager
from cookhound.utils.log import get_logger

from .names import JobNames, QueueNames

log = get_logger("queue-crons")

CRON_JOBS: tuple[CronJobConfig, ...] = (
    CronJobConfig(
        name=JobNames.REINDEX_RECIPES,
        queue_name=QueueNames.SEARCH,
        cron="0 1 * * *",  # 01:00 UTC
        enabled=True,
    ),
)


async def schedule_recurring_jobs(
    manager: QueueManager, jobs: tuple[CronJobConfig, ...] | list[CronJobConfig] = CRON_JOBS
) -> None:
    """
    Register every recurring job. Call from the worker after `initialize(True)`.

    Any failure aborts worker start-up: without these schedules the search index would
    silently drift out of sync.
    """
    try:
        for config in jobs:
            await manager.schedule_cron_job(config)
    except Exception as ex:
        log.error("cron_scheduling_failed", error=str(ex), exc_info=True)
        raise InfrastructureError(InfrastructureErrorCode.CRON_SCHEDULER_FAILED, ex) from ex

    log.info("cron_jobs_scheduled", count=len(jobs))
