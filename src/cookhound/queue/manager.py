from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable

from cookhound.errors import (
    CookhoundError,
    InfrastructureError,
    InfrastructureErrorCode,
    JobNotRegisteredError,
    JobProcessingError,
    QueueConnectionMissingError,
    ValidationError,
)
from cookhound.ops.metrics import queue_job_seconds, queue_jobs_added, queue_jobs_finished, time_hist
from cookhound.utils.log import get_logger

from .base_job import CronJobConfig, JobDefinition
from .common import merge_job_options, queue_default_options
from .interfaces import Job, JobOptions, JobQueue, QueueConnection, QueueWorker

log = get_logger("queue-manager")

JobLoader = Callable[["QueueManager"], "Awaitable[None] | None"]


def _default_connection_factory() -> QueueConnection:
    from . import build_queue_connection

    return build_queue_connection()


def _default_job_loader(manager: "QueueManager") -> None:
    from cookhound.jobs import load_jobs

    load_jobs(manager)


class QueueManager:
    """
    Registry and lifecycle owner for background job queues.

    Two roles, fixed by `initialize(is_worker_process)`:
    - app: creates queues and enqueues
    - worker: additionally runs one consumer per queue

    Only the worker process may ever create consumers; an app process that did would run
    every job a second time next to the worker fleet.

    The registries below are mutated during startup only (initialize/register_job).
    """

    def __init__(
        self,
        *,
        connection_factory: Callable[[], QueueConnection] | None = None,
        job_loader: JobLoader | None = None,
    ) -> None:
        self._connection_factory = connection_factory or _default_connection_factory
        self._job_loader = job_loader or _default_job_loader
        self._connection: QueueConnection | None = None
        self._is_worker_process = False
        self._initialized = False

        self._queues: dict[str, JobQueue] = {}
        self._queue_options: dict[str, dict[str, Any]] = {}
        self._workers: dict[str, QueueWorker] = {}
        self._definitions: dict[str, JobDefinition] = {}

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def is_worker_process(self) -> bool:
        return self._is_worker_process

    @property
    def connection(self) -> QueueConnection | None:
        return self._connection

    # --- lifecycle ---

    async def initialize(self, is_worker_process: bool = False) -> None:
        """
        Connect the backend and fix the process role. A second call is a logged no-op.

        Call with True only from the worker entry point.
        """
        if self._initialized:
            log.warning("queue_manager_already_initialized")
            return

        conn = self._connection_factory()
        conn.on("error", lambda err: log.error("queue_connection_error", error=str(err)))
        conn.on("connect", lambda: log.info("queue_connection_ready", backend=conn.kind))
        self._connection = conn
        await conn.connect()

        self._is_worker_process = bool(is_worker_process)
        self._initialized = True

        if not self._definitions:
            await self._load_jobs()

        log.info(
            "queue_manager_initialized",
            worker=self._is_worker_process,
            backend=conn.kind,
            jobs=len(self._definitions),
        )

    async def _load_jobs(self) -> None:
        res = self._job_loader(self)
        if inspect.isawaitable(res):
            await res

    async def shutdown(self) -> None:
        """Close consumers, then queues, then the connection; one failure never stops the rest."""
        log.info("queue_manager_shutting_down")

        for name, worker in self._workers.items():
            try:
                await worker.close()
            except Exception as ex:
                log.error("queue_worker_close_failed", queue=name, error=str(ex))

        for name, queue in self._queues.items():
            try:
                await queue.close()
            except Exception as ex:
                log.error("queue_close_failed", queue=name, error=str(ex))

        if self._connection is not None:
            try:
                await self._connection.close()
            except Exception as ex:
                log.error("queue_connection_close_failed", error=str(ex))

        log.info("queue_manager_stopped")

    # --- registration ---

    def register_job(self, definition: JobDefinition) -> None:
        """
        Register a job type: ensure its queue and, in the worker role only, its consumer.

        Registering the same name twice is a logged no-op.
        """
        if definition.name in self._definitions:
            log.warning("queue_job_already_registered", job=definition.name)
            return

        queue = self._get_or_create_queue(
            definition.queue_name,
            queue_options=definition.queue_options,
            default_job_options=definition.default_job_options,
        )

        if self._is_worker_process:
            self._get_or_create_worker(queue, definition)

        self._definitions[definition.name] = definition
        log.info("queue_job_registered", job=definition.name, queue=definition.queue_name)

    def _get_or_create_queue(
        self,
        name: str,
        *,
        queue_options: dict[str, Any] | None = None,
        default_job_options: JobOptions | None = None,
    ) -> JobQueue:
        requested = {
            "queue_options": dict(queue_options or {}),
            "default_job_options": dict(default_job_options or {}),
        }
        existing = self._queues.get(name)
        if existing is not None:
            stored = self._queue_options.get(name) or {}
            if (queue_options or default_job_options) and requested != stored:
                # First registrant wins; a queue is created once.
                log.warning("queue_options_ignored", queue=name)
            return existing

        if self._connection is None:
            log.error("queue_connection_missing", queue=name)
            raise QueueConnectionMissingError(name)

        queue = self._connection.queue(
            name, default_job_options=queue_default_options(queue_options, default_job_options)
        )
        self._queues[name] = queue
        self._queue_options[name] = requested
        log.info("queue_created", queue=name)
        return queue

    def _get_or_create_worker(self, queue: JobQueue, definition: JobDefinition) -> QueueWorker:
        existing = self._workers.get(queue.name)
        if existing is not None:
            return existing

        if self._connection is None:
            log.error("queue_connection_missing", queue=queue.name)
            raise QueueConnectionMissingError(queue.name)

        worker = self._connection.worker(
            queue.name, self._process, concurrency=int(definition.concurrency or 1)
        )
        qname = queue.name
        worker.on("completed", lambda job, _result: log.debug("queue_job_completed", queue=qname, job_id=job.id))
        worker.on("completed", lambda *_: queue_jobs_finished.labels(queue=qname, outcome="completed").inc())
        worker.on("failed", lambda *_: queue_jobs_finished.labels(queue=qname, outcome="failed").inc())
        worker.on(
            "failed",
            lambda job, err: log.error(
                "queue_job_failed",
                queue=qname,
                job_id=getattr(job, "id", None),
                job_name=getattr(job, "name", None),
                attempt=getattr(job, "attempts_made", None),
                error=str(err),
            ),
        )
        worker.on("error", lambda err: log.error("queue_worker_error", queue=qname, error=str(err)))
        worker.on("stalled", lambda job_id: log.warning("queue_job_stalled", queue=qname, job_id=job_id))
        worker.start()

        self._workers[queue.name] = worker
        log.info("queue_worker_created", queue=queue.name, concurrency=worker.concurrency)
        return worker

    async def _process(self, job: Job) -> Any:
        # Resolved per job: one queue may carry several job types.
        definition = self._definitions.get(job.name)
        if definition is None:
            log.warning("queue_job_processor_missing", job_name=job.name, job_id=job.id)
            raise JobNotRegisteredError(job.name)

        try:
            with time_hist(queue_job_seconds.labels(job=definition.name)):
                return await definition.handler(job)
        except Exception as ex:
            log.error(
                "queue_job_processor_failed",
                job_name=definition.name,
                job_id=job.id,
                error=str(ex),
                exc_info=True,
            )
            raise JobProcessingError(definition.name, job.id) from ex

    # --- producer API ---

    async def add_job(self, name: str, data: Any = None, options: JobOptions | None = None) -> Job:
        """
        Enqueue `name`. Caller options override the definition's defaults.

        Raises JobNotRegisteredError when the name is unknown even after reloading the job
        catalogue; that is a deployment bug, not a transient condition.
        """
        if not self._initialized:
            await self.initialize(self._is_worker_process)

        definition = self._definitions.get(name)
        if definition is None:
            await self._load_jobs()
            definition = self._definitions.get(name)
            if definition is None:
                log.error("queue_job_not_registered", job_name=name)
                raise JobNotRegisteredError(name)

        queue = self._queues.get(definition.queue_name) or self._get_or_create_queue(definition.queue_name)
        opts = merge_job_options(definition.default_job_options, options)

        try:
            job = await queue.add(name, data if data is not None else {}, opts)
        except CookhoundError:
            raise
        except Exception as ex:
            log.error("queue_add_job_failed", job_name=name, error=str(ex))
            raise InfrastructureError(InfrastructureErrorCode.QUEUE_COMMAND_FAILED, ex) from ex

        queue_jobs_added.labels(queue=definition.queue_name, job=name).inc()
        log.debug("queue_job_added", job_name=name, job_id=job.id, queue=definition.queue_name)
        return job

    async def schedule_cron_job(self, config: CronJobConfig) -> Job:
        """
        Upsert the repeat schedule `cron:<name>`; re-scheduling replaces rather than duplicates.

        A disabled config is still scheduled, but its queue is paused.
        """
        if not config.queue_name:
            log.warning("queue_cron_queue_name_missing", job_name=config.name)
            raise ValidationError("queue name is required for cron jobs")

        if not self._initialized:
            await self.initialize(self._is_worker_process)

        queue = self._queues.get(config.queue_name) or self._get_or_create_queue(config.queue_name)
        opts = merge_job_options(
            {"repeat": {"pattern": config.cron, "tz": config.timezone}, "job_id": f"cron:{config.name}"},
            config.job_options,
        )

        try:
            job = await queue.add(config.name, config.data if config.data is not None else {}, opts)
            if not config.enabled:
                # Known but disabled: the schedule stays, nothing is dispatched.
                await queue.pause()
        except CookhoundError:
            raise
        except Exception as ex:
            log.error("queue_schedule_cron_failed", job_name=config.name, error=str(ex))
            raise InfrastructureError(InfrastructureErrorCode.QUEUE_COMMAND_FAILED, ex) from ex

        log.info("queue_cron_scheduled", job_name=config.name, cron=config.cron, enabled=config.enabled)
        return job

    async def remove_cron_job(self, name: str, queue_name: str) -> None:
        """Remove a cron schedule. Missing queue, schedules or match are logged, not raised."""
        queue = self._queues.get(queue_name)
        if queue is None:
            log.warning("queue_cron_remove_queue_not_found", queue=queue_name)
            return

        try:
            schedulers = await queue.get_job_schedulers()
            if not schedulers:
                log.warning("queue_cron_remove_no_schedulers", queue=queue_name)
                return

            target = next((s for s in schedulers if s.id == f"cron:{name}" or s.name == name), None)
            if target is None:
                log.warning("queue_cron_remove_not_found", job_name=name, queue=queue_name)
                return

            await queue.remove_job_scheduler(target.key)
        except Exception as ex:
            log.error("queue_remove_cron_failed", job_name=name, error=str(ex))
            raise InfrastructureError(InfrastructureErrorCode.QUEUE_COMMAND_FAILED, ex) from ex

        log.info("queue_cron_removed", job_name=name, queue=queue_name)

    # --- introspection ---

    def get_queue(self, name: str) -> JobQueue | None:
        return self._queues.get(name)

    def get_queue_names(self) -> list[str]:
        return list(self._queues.keys())

    def get_job_definitions(self) -> list[JobDefinition]:
        return list(self._definitions.values())
