"""
Background jobs: named queues, consumers and repeat schedules.

One QueueConnection is shared by every queue/worker a QueueManager creates:
- redis: RedisQueueConnection (app and worker processes share state through Redis)
- local: LocalQueueConnection (in-process, dev/tests)
"""

from __future__ import annotations

from cookhound.config import Settings, get_settings

from .interfaces import Job, JobOptions, JobQueue, JobScheduler, QueueConnection, QueueWorker
from .local_queue import LocalQueueConnection

__all__ = [
    "Job",
    "JobOptions",
    "JobQueue",
    "JobScheduler",
    "LocalQueueConnection",
    "QueueConnection",
    "QueueWorker",
    "build_queue_connection",
]


def build_queue_connection(settings: Settings | None = None) -> QueueConnection:
    s = settings or get_settings()
    backend = str(s.queue_backend or "redis").strip().lower()
    if backend == "local":
        return LocalQueueConnection(
            poll_interval_ms=int(s.queue_poll_interval_ms),
            scheduler_interval_ms=int(s.queue_scheduler_interval_ms),
            close_timeout_sec=float(s.queue_close_timeout_sec),
        )
    from .redis_queue import RedisQueueConnection

    return RedisQueueConnection(
        url=s.redis_connection_url(),
        password=s.redis_password_value(),
        prefix=str(s.redis_queue_prefix),
        poll_interval_ms=int(s.queue_poll_interval_ms),
        scheduler_interval_ms=int(s.queue_scheduler_interval_ms),
        close_timeout_sec=float(s.queue_close_timeout_sec),
    )
