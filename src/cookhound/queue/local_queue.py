from __future__ import annotations

import asyncio
import itertools
from collections import deque
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Callable

from cookhound.utils.log import get_logger

from .common import (
    EventEmitter,
    backoff_delay_ms,
    max_attempts,
    merge_job_options,
    next_cron_fire,
    now_ms,
    repeat_job_id,
    retention_limit,
    validate_cron,
)
from .interfaces import BASE_JOB_OPTIONS, EventListener, Job, JobOptions, JobScheduler, Processor

log = get_logger("queue.local")


@dataclass
class _Broker:
    jobs: dict[str, Job] = field(default_factory=dict)
    wait: deque[str] = field(default_factory=deque)
    delayed: dict[str, int] = field(default_factory=dict)  # job id -> due (epoch ms)
    active: set[str] = field(default_factory=set)
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    schedulers: dict[str, JobScheduler] = field(default_factory=dict)
    paused: bool = False
    wakeup: asyncio.Event = field(default_factory=asyncio.Event)
    ids: itertools.count = field(default_factory=lambda: itertools.count(1))


class LocalQueueConnection:
    """
    In-process queue backend.

    Same semantics as the Redis backend (dedupe, delays, retries with backoff, retention,
    repeat schedules, pause) but the state lives in this object, so producers and
    consumers must share it. Used for local development and tests.
    """

    kind = "local"

    def __init__(
        self,
        *,
        poll_interval_ms: int = 1_000,
        scheduler_interval_ms: int = 500,
        close_timeout_sec: float = 30.0,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self.poll_interval_s = max(0.001, min(int(poll_interval_ms), int(scheduler_interval_ms)) / 1000.0)
        self.close_timeout_sec = float(close_timeout_sec)
        self._clock = clock or now_ms
        self._brokers: dict[str, _Broker] = {}
        self._events = EventEmitter()
        self._connected = False

    def now_ms(self) -> int:
        return int(self._clock())

    def broker(self, name: str) -> _Broker:
        b = self._brokers.get(name)
        if b is None:
            b = _Broker()
            self._brokers[name] = b
        return b

    @property
    def connected(self) -> bool:
        return self._connected

    def on(self, event: str, listener: EventListener) -> None:
        self._events.on(event, listener)

    async def connect(self) -> None:
        self._connected = True
        await self._events.emit("connect")

    def queue(self, name: str, *, default_job_options: JobOptions | None = None) -> "LocalQueue":
        return LocalQueue(self, name, default_job_options=default_job_options)

    def worker(self, name: str, processor: Processor, *, concurrency: int = 1) -> "LocalWorker":
        return LocalWorker(self, name, processor, concurrency=concurrency)

    async def close(self) -> None:
        self._connected = False
        # Release anything parked on a wakeup so consumers notice the closed connection.
        for b in self._brokers.values():
            b.wakeup.set()
        await self._events.emit("close")


class LocalQueue:
    def __init__(
        self,
        connection: LocalQueueConnection,
        name: str,
        *,
        default_job_options: JobOptions | None = None,
    ) -> None:
        self.name = str(name)
        self._conn = connection
        self._defaults = merge_job_options(BASE_JOB_OPTIONS, default_job_options)
        self._closed = False

    @property
    def _b(self) -> _Broker:
        return self._conn.broker(self.name)

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError(f"queue is closed: {self.name}")
        if not self._conn.connected:
            raise RuntimeError("local queue connection is not connected")

    # --- producer API ---

    async def add(self, name: str, data: Any = None, opts: JobOptions | None = None) -> Job:
        self._ensure_open()
        o = merge_job_options(self._defaults, opts)
        repeat = o.pop("repeat", None)
        if repeat:
            return self._upsert_scheduler(name, data, o, dict(repeat))
        return self._enqueue(name, data, o)

    async def get_job(self, job_id: str) -> Job | None:
        return self._b.jobs.get(str(job_id))

    async def get_job_schedulers(self) -> list[JobScheduler]:
        return [self._b.schedulers[k] for k in sorted(self._b.schedulers)]

    async def remove_job_scheduler(self, key: str) -> bool:
        sched = self._b.schedulers.pop(str(key), None)
        if sched is None:
            return False
        if sched.next is not None:
            self._drop_delayed(repeat_job_id(sched.key, sched.next))
        log.info("queue_scheduler_removed", queue=self.name, scheduler=sched.key)
        return True

    async def pause(self) -> None:
        self._b.paused = True
        log.info("queue_paused", queue=self.name)

    async def resume(self) -> None:
        self._b.paused = False
        self._b.wakeup.set()
        log.info("queue_resumed", queue=self.name)

    async def is_paused(self) -> bool:
        return bool(self._b.paused)

    async def get_job_counts(self) -> dict[str, int]:
        b = self._b
        return {
            "wait": len(b.wait),
            "active": len(b.active),
            "delayed": len(b.delayed),
            "completed": len(b.completed),
            "failed": len(b.failed),
            "schedulers": len(b.schedulers),
        }

    async def close(self) -> None:
        self._closed = True

    # --- broker operations (shared with LocalWorker) ---

    def _enqueue(
        self,
        name: str,
        data: Any,
        opts: dict[str, Any],
        *,
        job_id: str | None = None,
        due: int | None = None,
        repeat_key: str | None = None,
    ) -> Job:
        b = self._b
        requested = opts.pop("job_id", None)
        jid = str(job_id or requested or "") or str(next(b.ids))
        existing = b.jobs.get(jid)
        if existing is not None:
            log.debug("queue_job_deduplicated", queue=self.name, job_id=jid)
            return existing

        now = self._conn.now_ms()
        job = Job(
            id=jid,
            name=str(name),
            queue_name=self.name,
            data=data,
            opts=opts,
            timestamp=now,
            repeat_key=repeat_key,
        )
        b.jobs[jid] = job
        delay = int(opts.get("delay") or 0)
        if due is None and delay > 0:
            due = now + delay
        if due is not None and due > now:
            b.delayed[jid] = int(due)
        else:
            b.wait.append(jid)
            b.wakeup.set()
        return job

    def _upsert_scheduler(self, name: str, data: Any, opts: dict[str, Any], repeat: dict[str, Any]) -> Job:
        pattern = str(repeat.get("pattern") or "")
        tz = repeat.get("tz") or None
        validate_cron(pattern, tz)

        key = str(opts.pop("job_id", None) or name)
        b = self._b
        prev = b.schedulers.get(key)
        if prev is not None and prev.next is not None:
            self._drop_delayed(repeat_job_id(key, prev.next))

        fire = next_cron_fire(pattern, tz, self._conn.now_ms())
        b.schedulers[key] = JobScheduler(
            key=key, name=str(name), pattern=pattern, tz=tz, next=fire, data=data, opts=dict(opts)
        )
        log.info("queue_scheduler_upserted", queue=self.name, scheduler=key, pattern=pattern, next_fire=fire)
        return self._enqueue(
            name, data, dict(opts), job_id=repeat_job_id(key, fire), due=fire, repeat_key=key
        )

    def _drop_delayed(self, job_id: str) -> None:
        b = self._b
        if b.delayed.pop(job_id, None) is not None:
            b.jobs.pop(job_id, None)

    def _schedule_next(self, job: Job) -> None:
        sched = self._b.schedulers.get(str(job.repeat_key))
        if sched is None or sched.next is None or repeat_job_id(sched.key, sched.next) != job.id:
            return
        fire = next_cron_fire(sched.pattern, sched.tz, sched.next)
        sched.next = fire
        self._enqueue(
            sched.name,
            sched.data,
            dict(sched.opts),
            job_id=repeat_job_id(sched.key, fire),
            due=fire,
            repeat_key=sched.key,
        )

    def promote_due(self) -> int:
        b = self._b
        now = self._conn.now_ms()
        due = sorted((ts, jid) for jid, ts in b.delayed.items() if ts <= now)
        for _, jid in due:
            b.delayed.pop(jid, None)
            job = b.jobs.get(jid)
            if job is None:
                continue
            b.wait.append(jid)
            if job.repeat_key:
                self._schedule_next(job)
        if due:
            b.wakeup.set()
        return len(due)

    def take(self) -> Job | None:
        b = self._b
        if b.paused:
            return None
        while b.wait:
            jid = b.wait.popleft()
            job = b.jobs.get(jid)
            if job is None:
                continue
            b.active.add(jid)
            job.processed_on = self._conn.now_ms()
            return job
        return None

    def requeue(self, job: Job) -> None:
        b = self._b
        b.active.discard(job.id)
        if job.id in b.jobs:
            b.wait.appendleft(job.id)
            b.wakeup.set()

    def complete(self, job: Job, result: Any) -> None:
        b = self._b
        b.active.discard(job.id)
        job.attempts_made += 1
        job.finished_on = self._conn.now_ms()
        job.return_value = result
        self._retain(b.completed, job.id, retention_limit(job.opts.get("remove_on_complete")))

    def fail(self, job: Job, error: BaseException) -> bool:
        """Record a failed attempt. Returns True when the job was scheduled for a retry."""
        b = self._b
        b.active.discard(job.id)
        job.attempts_made += 1
        job.failed_reason = str(error) or type(error).__name__
        if job.attempts_made < max_attempts(job.opts):
            delay = backoff_delay_ms(job.opts, job.attempts_made)
            if delay > 0:
                b.delayed[job.id] = self._conn.now_ms() + delay
            else:
                b.wait.append(job.id)
                b.wakeup.set()
            return True
        job.finished_on = self._conn.now_ms()
        self._retain(b.failed, job.id, retention_limit(job.opts.get("remove_on_fail")))
        return False

    def _retain(self, bucket: list[str], job_id: str, limit: int | None) -> None:
        if limit == 0:
            self._b.jobs.pop(job_id, None)
            return
        bucket.append(job_id)
        if limit is None:
            return
        while len(bucket) > limit:
            self._b.jobs.pop(bucket.pop(0), None)


class LocalWorker:
    def __init__(
        self,
        connection: LocalQueueConnection,
        name: str,
        processor: Processor,
        *,
        concurrency: int = 1,
    ) -> None:
        self.name = str(name)
        self.concurrency = max(1, int(concurrency or 1))
        self._conn = connection
        self._queue = LocalQueue(connection, name)
        self._processor = processor
        self._events = EventEmitter()
        self._slots: asyncio.Semaphore | None = None
        self._task: asyncio.Task | None = None
        self._inflight: set[asyncio.Task] = set()
        self._stopping = False

    def on(self, event: str, listener: EventListener) -> None:
        self._events.on(event, listener)

    def start(self) -> None:
        if self._task is not None:
            return
        self._stopping = False
        self._slots = asyncio.Semaphore(self.concurrency)
        self._task = asyncio.create_task(self._run(), name=f"queue.local.worker:{self.name}")
        log.info("queue_worker_started", queue=self.name, concurrency=self.concurrency)

    async def _run(self) -> None:
        assert self._slots is not None
        broker = self._conn.broker(self.name)
        while not self._stopping:
            try:
                if not self._conn.connected:
                    await asyncio.sleep(self._conn.poll_interval_s)
                    continue
                self._queue.promote_due()
                await self._slots.acquire()
                job = self._queue.take()
                if job is None:
                    self._slots.release()
                    broker.wakeup.clear()
                    with suppress(asyncio.TimeoutError):
                        await asyncio.wait_for(broker.wakeup.wait(), timeout=self._conn.poll_interval_s)
                    continue
                t = asyncio.create_task(self._process(job), name=f"queue.local.job:{self.name}:{job.id}")
                self._inflight.add(t)
                t.add_done_callback(self._inflight.discard)
            except asyncio.CancelledError:
                log.info("task stopped", task=f"queue.local.worker:{self.name}")
                return
            except Exception as ex:
                await self._events.emit("error", ex)
                await asyncio.sleep(self._conn.poll_interval_s)

    async def _process(self, job: Job) -> None:
        assert self._slots is not None
        try:
            result = await self._processor(job)
        except asyncio.CancelledError:
            # Closed mid-flight: hand the job back instead of losing it.
            self._queue.requeue(job)
            raise
        except Exception as ex:
            retried = self._queue.fail(job, ex)
            if retried:
                log.info("queue_job_retry_scheduled", queue=self.name, job_id=job.id, attempt=job.attempts_made)
            await self._events.emit("failed", job, ex)
        else:
            self._queue.complete(job, result)
            await self._events.emit("completed", job, result)
        finally:
            self._slots.release()

    async def close(self) -> None:
        self._stopping = True
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        if self._inflight:
            _done, pending = await asyncio.wait(set(self._inflight), timeout=self._conn.close_timeout_sec)
            for t in pending:
                t.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                log.warning("queue_worker_close_timeout", queue=self.name, cancelled=len(pending))
        log.info("queue_worker_closed", queue=self.name)
