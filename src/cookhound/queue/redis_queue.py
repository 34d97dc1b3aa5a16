from __future__ import annotations

import asyncio
import json
import os
import secrets
import socket
from contextlib import suppress
from typing import Any

import redis.asyncio as redis

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

log = get_logger("queue.redis")

# KEYS[1]=wait KEYS[2]=active KEYS[3]=paused
# ARGV[1]=lock key prefix ARGV[2]=token ARGV[3]=lock ttl ms
_CLAIM_LUA = """
if redis.call('EXISTS', KEYS[3]) == 1 then
  return nil
end
local job_id = redis.call('RPOPLPUSH', KEYS[1], KEYS[2])
if not job_id then
  return nil
end
redis.call('SET', ARGV[1] .. job_id, ARGV[2], 'PX', tonumber(ARGV[3]))
return job_id
"""

_RELEASE_LUA = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
  return redis.call("DEL", KEYS[1])
else
  return 0
end
"""

_REFRESH_LUA = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
  return redis.call("PEXPIRE", KEYS[1], ARGV[2])
else
  return 0
end
"""


def _encode_job(job: Job) -> dict[str, str]:
    return {k: json.dumps(v) for k, v in job.to_dict().items()}


def _decode_job(raw: dict[str, str] | None) -> Job | None:
    if not raw or "name" not in raw:
        return None
    return Job.from_dict({k: json.loads(v) for k, v in raw.items()})


def _worker_token(queue_name: str) -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{queue_name}:{secrets.token_hex(8)}"


class RedisQueueConnection:
    """
    Redis queue backend (redis.asyncio), one client shared by every queue and worker.

    Keys (all under `<prefix>:<queue>:`):
      - wait (list), active (list), delayed (zset, score = due ms)
      - job:<id> (hash, JSON-encoded fields), lock:<id> (string, PX)
      - schedulers (hash, key -> JSON), paused (flag)
      - completed / failed (zset, score = finished ms)
      - id (counter)
    """

    kind = "redis"

    def __init__(
        self,
        *,
        url: str,
        password: str | None = None,
        prefix: str = "ch",
        poll_interval_ms: int = 1_000,
        scheduler_interval_ms: int = 500,
        close_timeout_sec: float = 30.0,
        lock_ttl_ms: int = 30_000,
    ) -> None:
        self._url = str(url or "").strip()
        self._password = password
        self.prefix = str(prefix or "ch").strip().strip(":") or "ch"
        self.poll_interval_s = max(0.01, int(poll_interval_ms) / 1000.0)
        self.scheduler_interval_s = max(0.01, int(scheduler_interval_ms) / 1000.0)
        self.close_timeout_sec = float(close_timeout_sec)
        self.lock_ttl_ms = max(1_000, int(lock_ttl_ms))
        self._client: redis.Redis | None = None
        self._events = EventEmitter()

    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.Redis.from_url(self._url, password=self._password, decode_responses=True)
        return self._client

    def on(self, event: str, listener: EventListener) -> None:
        self._events.on(event, listener)

    async def connect(self) -> None:
        try:
            await self.client().ping()
        except redis.RedisError as ex:
            # Not raised: commands retry the connection on their own.
            await self._events.emit("error", ex)
            return
        await self._events.emit("connect")

    def queue(self, name: str, *, default_job_options: JobOptions | None = None) -> "RedisQueue":
        return RedisQueue(self, name, default_job_options=default_job_options)

    def worker(self, name: str, processor: Processor, *, concurrency: int = 1) -> "RedisWorker":
        return RedisWorker(self, name, processor, concurrency=concurrency)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
        self._client = None
        await self._events.emit("close")


class RedisQueue:
    def __init__(
        self,
        connection: RedisQueueConnection,
        name: str,
        *,
        default_job_options: JobOptions | None = None,
    ) -> None:
        self.name = str(name)
        self._conn = connection
        self._defaults = merge_job_options(BASE_JOB_OPTIONS, default_job_options)
        self._closed = False

    def _r(self) -> redis.Redis:
        if self._closed:
            raise RuntimeError(f"queue is closed: {self.name}")
        return self._conn.client()

    def _k(self, suffix: str) -> str:
        return f"{self._conn.prefix}:{self.name}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return self._k(f"job:{job_id}")

    def _lock_key(self, job_id: str) -> str:
        return self._k(f"lock:{job_id}")

    # --- producer API ---

    async def add(self, name: str, data: Any = None, opts: JobOptions | None = None) -> Job:
        o = merge_job_options(self._defaults, opts)
        repeat = o.pop("repeat", None)
        if repeat:
            return await self._upsert_scheduler(name, data, o, dict(repeat))
        return await self._enqueue(name, data, o)

    async def get_job(self, job_id: str) -> Job | None:
        return _decode_job(await self._r().hgetall(self._job_key(str(job_id))))

    async def get_job_schedulers(self) -> list[JobScheduler]:
        raw = await self._r().hgetall(self._k("schedulers"))
        return [JobScheduler.from_dict(json.loads(raw[k])) for k in sorted(raw or {})]

    async def remove_job_scheduler(self, key: str) -> bool:
        r = self._r()
        raw = await r.hget(self._k("schedulers"), str(key))
        if not raw:
            return False
        sched = JobScheduler.from_dict(json.loads(raw))
        await r.hdel(self._k("schedulers"), sched.key)
        if sched.next is not None:
            await self._drop_delayed(repeat_job_id(sched.key, sched.next))
        log.info("queue_scheduler_removed", queue=self.name, scheduler=sched.key)
        return True

    async def pause(self) -> None:
        await self._r().set(self._k("paused"), "1")
        log.info("queue_paused", queue=self.name)

    async def resume(self) -> None:
        await self._r().delete(self._k("paused"))
        log.info("queue_resumed", queue=self.name)

    async def is_paused(self) -> bool:
        return bool(await self._r().exists(self._k("paused")))

    async def get_job_counts(self) -> dict[str, int]:
        r = self._r()
        return {
            "wait": int(await r.llen(self._k("wait")) or 0),
            "active": int(await r.llen(self._k("active")) or 0),
            "delayed": int(await r.zcard(self._k("delayed")) or 0),
            "completed": int(await r.zcard(self._k("completed")) or 0),
            "failed": int(await r.zcard(self._k("failed")) or 0),
            "schedulers": int(await r.hlen(self._k("schedulers")) or 0),
        }

    async def close(self) -> None:
        # The client belongs to the connection.
        self._closed = True

    # --- broker operations (shared with RedisWorker) ---

    async def _enqueue(
        self,
        name: str,
        data: Any,
        opts: dict[str, Any],
        *,
        job_id: str | None = None,
        due: int | None = None,
        repeat_key: str | None = None,
    ) -> Job:
        r = self._r()
        requested = opts.pop("job_id", None)
        jid = str(job_id or requested or "") or str(await r.incr(self._k("id")))
        key = self._job_key(jid)
        if not await r.hsetnx(key, "id", json.dumps(jid)):
            existing = await self.get_job(jid)
            if existing is not None:
                log.debug("queue_job_deduplicated", queue=self.name, job_id=jid)
                return existing

        now = now_ms()
        job = Job(
            id=jid,
            name=str(name),
            queue_name=self.name,
            data=data,
            opts=opts,
            timestamp=now,
            repeat_key=repeat_key,
        )
        await r.hset(key, mapping=_encode_job(job))
        delay = int(opts.get("delay") or 0)
        if due is None and delay > 0:
            due = now + delay
        if due is not None and due > now:
            await r.zadd(self._k("delayed"), {jid: float(due)})
        else:
            await r.lpush(self._k("wait"), jid)
        return job

    async def _upsert_scheduler(
        self, name: str, data: Any, opts: dict[str, Any], repeat: dict[str, Any]
    ) -> Job:
        pattern = str(repeat.get("pattern") or "")
        tz = repeat.get("tz") or None
        validate_cron(pattern, tz)

        r = self._r()
        key = str(opts.pop("job_id", None) or name)
        prev_raw = await r.hget(self._k("schedulers"), key)
        if prev_raw:
            prev = JobScheduler.from_dict(json.loads(prev_raw))
            if prev.next is not None:
                await self._drop_delayed(repeat_job_id(key, prev.next))

        fire = next_cron_fire(pattern, tz, now_ms())
        sched = JobScheduler(key=key, name=str(name), pattern=pattern, tz=tz, next=fire, data=data, opts=dict(opts))
        await r.hset(self._k("schedulers"), key, json.dumps(sched.to_dict()))
        log.info("queue_scheduler_upserted", queue=self.name, scheduler=key, pattern=pattern, next_fire=fire)
        return await self._enqueue(
            name, data, dict(opts), job_id=repeat_job_id(key, fire), due=fire, repeat_key=key
        )

    async def _drop_delayed(self, job_id: str) -> None:
        r = self._r()
        if await r.zrem(self._k("delayed"), job_id):
            await r.delete(self._job_key(job_id))

    async def _schedule_next(self, job: Job) -> None:
        r = self._r()
        raw = await r.hget(self._k("schedulers"), str(job.repeat_key))
        if not raw:
            return
        sched = JobScheduler.from_dict(json.loads(raw))
        if sched.next is None or repeat_job_id(sched.key, sched.next) != job.id:
            return
        fire = next_cron_fire(sched.pattern, sched.tz, sched.next)
        sched.next = fire
        await r.hset(self._k("schedulers"), sched.key, json.dumps(sched.to_dict()))
        await self._enqueue(
            sched.name,
            sched.data,
            dict(sched.opts),
            job_id=repeat_job_id(sched.key, fire),
            due=fire,
            repeat_key=sched.key,
        )

    async def promote_due(self, *, batch: int = 50) -> int:
        """Move delayed jobs whose due time has passed to the wait list."""
        r = self._r()
        due = await r.zrangebyscore(self._k("delayed"), min="-inf", max=float(now_ms()), start=0, num=batch)
        moved = 0
        for raw_id in due or []:
            jid = str(raw_id)
            # ZREM decides which worker owns the promotion.
            if not await r.zrem(self._k("delayed"), jid):
                continue
            job = await self.get_job(jid)
            if job is None:
                continue
            await r.lpush(self._k("wait"), jid)
            moved += 1
            if job.repeat_key:
                await self._schedule_next(job)
        return moved

    async def claim(self, token: str) -> Job | None:
        r = self._r()
        jid = await r.eval(
            _CLAIM_LUA,
            3,
            self._k("wait"),
            self._k("active"),
            self._k("paused"),
            self._k("lock:"),
            token,
            str(int(self._conn.lock_ttl_ms)),
        )
        if not jid:
            return None
        jid = str(jid)
        job = await self.get_job(jid)
        if job is None:
            await r.lrem(self._k("active"), 1, jid)
            await self.release_lock(jid, token)
            return None
        job.processed_on = now_ms()
        await r.hset(self._job_key(jid), "processed_on", json.dumps(job.processed_on))
        return job

    async def refresh_lock(self, job_id: str, token: str) -> None:
        await self._r().eval(_REFRESH_LUA, 1, self._lock_key(job_id), token, str(int(self._conn.lock_ttl_ms)))

    async def release_lock(self, job_id: str, token: str) -> None:
        await self._r().eval(_RELEASE_LUA, 1, self._lock_key(job_id), token)

    async def requeue(self, job: Job, token: str) -> None:
        r = self._r()
        await r.lrem(self._k("active"), 1, job.id)
        await r.rpush(self._k("wait"), job.id)
        await self.release_lock(job.id, token)

    async def recover_stalled(self) -> list[str]:
        """Active jobs whose lock expired (crashed worker) go back to the front of the wait list."""
        r = self._r()
        stalled: list[str] = []
        for raw_id in await r.lrange(self._k("active"), 0, -1) or []:
            jid = str(raw_id)
            if await r.exists(self._lock_key(jid)):
                continue
            if await r.lrem(self._k("active"), 1, jid):
                await r.rpush(self._k("wait"), jid)
                stalled.append(jid)
        return stalled

    async def complete(self, job: Job, result: Any, token: str) -> None:
        r = self._r()
        job.attempts_made += 1
        job.finished_on = now_ms()
        job.return_value = result
        await r.lrem(self._k("active"), 1, job.id)
        await r.hset(self._job_key(job.id), mapping=_encode_job(job))
        await self._retain("completed", job, retention_limit(job.opts.get("remove_on_complete")))
        await self.release_lock(job.id, token)

    async def fail(self, job: Job, error: BaseException, token: str) -> bool:
        """Record a failed attempt. Returns True when the job was scheduled for a retry."""
        r = self._r()
        job.attempts_made += 1
        job.failed_reason = str(error) or type(error).__name__
        await r.lrem(self._k("active"), 1, job.id)
        retry = job.attempts_made < max_attempts(job.opts)
        if not retry:
            job.finished_on = now_ms()
        await r.hset(self._job_key(job.id), mapping=_encode_job(job))
        if retry:
            delay = backoff_delay_ms(job.opts, job.attempts_made)
            if delay > 0:
                await r.zadd(self._k("delayed"), {job.id: float(now_ms() + delay)})
            else:
                await r.lpush(self._k("wait"), job.id)
        else:
            await self._retain("failed", job, retention_limit(job.opts.get("remove_on_fail")))
        await self.release_lock(job.id, token)
        return retry

    async def _retain(self, bucket: str, job: Job, limit: int | None) -> None:
        r = self._r()
        if limit == 0:
            await r.delete(self._job_key(job.id))
            return
        await r.zadd(self._k(bucket), {job.id: float(job.finished_on or now_ms())})
        if limit is None:
            return
        stale = await r.zrange(self._k(bucket), 0, -(limit + 1))
        if stale:
            await r.zrem(self._k(bucket), *stale)
            await r.delete(*[self._job_key(str(x)) for x in stale])


class RedisWorker:
    def __init__(
        self,
        connection: RedisQueueConnection,
        name: str,
        processor: Processor,
        *,
        concurrency: int = 1,
    ) -> None:
        self.name = str(name)
        self.concurrency = max(1, int(concurrency or 1))
        self._conn = connection
        self._queue = RedisQueue(connection, name)
        self._processor = processor
        self._events = EventEmitter()
        self._slots: asyncio.Semaphore | None = None
        self._tasks: list[asyncio.Task] = []
        self._inflight: set[asyncio.Task] = set()
        self._stopping = False

    def on(self, event: str, listener: EventListener) -> None:
        self._events.on(event, listener)

    def start(self) -> None:
        if self._tasks:
            return
        self._stopping = False
        self._slots = asyncio.Semaphore(self.concurrency)
        self._tasks.append(asyncio.create_task(self._consume_loop(), name=f"queue.redis.consume:{self.name}"))
        self._tasks.append(asyncio.create_task(self._scheduler_loop(), name=f"queue.redis.scheduler:{self.name}"))
        log.info("queue_worker_started", queue=self.name, prefix=self._conn.prefix, concurrency=self.concurrency)

    async def _consume_loop(self) -> None:
        assert self._slots is not None
        while not self._stopping:
            try:
                await self._slots.acquire()
                token = _worker_token(self.name)
                try:
                    job = await self._queue.claim(token)
                except Exception:
                    self._slots.release()
                    raise
                if job is None:
                    self._slots.release()
                    await asyncio.sleep(self._conn.poll_interval_s)
                    continue
                t = asyncio.create_task(
                    self._process(job, token), name=f"queue.redis.job:{self.name}:{job.id}"
                )
                self._inflight.add(t)
                t.add_done_callback(self._inflight.discard)
            except asyncio.CancelledError:
                log.info("task stopped", task=f"queue.redis.consume:{self.name}")
                return
            except Exception as ex:
                await self._events.emit("error", ex)
                await asyncio.sleep(self._conn.poll_interval_s)

    async def _scheduler_loop(self) -> None:
        # Stalled checks run once per lock TTL.
        every = max(1, int(self._conn.lock_ttl_ms / 1000.0 / self._conn.scheduler_interval_s))
        tick = 0
        while not self._stopping:
            try:
                await self._queue.promote_due()
                if tick % every == 0:
                    for jid in await self._queue.recover_stalled():
                        await self._events.emit("stalled", jid)
                tick += 1
                await asyncio.sleep(self._conn.scheduler_interval_s)
            except asyncio.CancelledError:
                log.info("task stopped", task=f"queue.redis.scheduler:{self.name}")
                return
            except Exception as ex:
                await self._events.emit("error", ex)
                await asyncio.sleep(self._conn.scheduler_interval_s)

    async def _keep_lock(self, job_id: str, token: str) -> None:
        interval = max(0.5, self._conn.lock_ttl_ms / 3000.0)
        while True:
            await asyncio.sleep(interval)
            try:
                await self._queue.refresh_lock(job_id, token)
            except redis.RedisError as ex:
                # Keep trying; losing the lock only risks a stalled re-run.
                log.warning("queue_lock_refresh_failed", queue=self.name, job_id=job_id, error=str(ex))

    async def _process(self, job: Job, token: str) -> None:
        assert self._slots is not None
        refresher = asyncio.create_task(self._keep_lock(job.id, token))
        try:
            try:
                result = await self._processor(job)
            except asyncio.CancelledError:
                with suppress(Exception):
                    await self._queue.requeue(job, token)
                raise
            except Exception as ex:
                try:
                    retried = await self._queue.fail(job, ex, token)
                    if retried:
                        log.info(
                            "queue_job_retry_scheduled", queue=self.name, job_id=job.id, attempt=job.attempts_made
                        )
                except Exception as bookkeeping_ex:
                    await self._events.emit("error", bookkeeping_ex)
                await self._events.emit("failed", job, ex)
            else:
                try:
                    await self._queue.complete(job, result, token)
                except Exception as bookkeeping_ex:
                    await self._events.emit("error", bookkeeping_ex)
                await self._events.emit("completed", job, result)
        finally:
            refresher.cancel()
            await asyncio.gather(refresher, return_exceptions=True)
            self._slots.release()

    async def close(self) -> None:
        self._stopping = True
        for t in list(self._tasks):
            t.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        if self._inflight:
            _done, pending = await asyncio.wait(set(self._inflight), timeout=self._conn.close_timeout_sec)
            for t in pending:
                t.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                log.warning("queue_worker_close_timeout", queue=self.name, cancelled=len(pending))
        log.info("queue_worker_closed", queue=self.name)
