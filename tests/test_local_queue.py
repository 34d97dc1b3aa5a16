from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from cookhound.errors import ValidationError
from cookhound.queue.common import backoff_delay_ms, next_cron_fire, retention_limit
from tests._helpers.queue import ManualClock, local_connection, wait_until


def _ms(*args: int) -> int:
    return int(datetime(*args, tzinfo=timezone.utc).timestamp() * 1000)


def test_backoff_and_retention_rules() -> None:
    assert backoff_delay_ms({}, 1) == 0
    assert backoff_delay_ms({"backoff": 250}, 3) == 250
    assert backoff_delay_ms({"backoff": {"type": "fixed", "delay": 1000}}, 2) == 1000
    exp = {"backoff": {"type": "exponential", "delay": 5000}}
    assert [backoff_delay_ms(exp, n) for n in (1, 2, 3)] == [5000, 10000, 20000]

    assert retention_limit(True) == 0
    assert retention_limit(False) is None
    assert retention_limit(None) is None
    assert retention_limit(100) == 100


def test_next_cron_fire_respects_timezone() -> None:
    after = _ms(2026, 3, 1, 0, 30)
    assert next_cron_fire("0 1 * * *", None, after) == _ms(2026, 3, 1, 1, 0)
    # 01:00 in Prague (UTC+1 in March) is 00:00 UTC the next day
    assert next_cron_fire("0 1 * * *", "Europe/Prague", after) == _ms(2026, 3, 2, 0, 0)


def test_dedupe_delay_and_counts() -> None:
    clock = ManualClock()
    conn = local_connection(clock)

    async def main() -> None:
        await conn.connect()
        q = conn.queue("emails")
        a = await q.add("send", {"n": 1}, {"job_id": "fixed"})
        b = await q.add("send", {"n": 2}, {"job_id": "fixed"})
        assert a is b
        assert b.data == {"n": 1}

        await q.add("send", {"n": 3}, {"delay": 500})
        counts = await q.get_job_counts()
        assert counts["wait"] == 1
        assert counts["delayed"] == 1

        clock.advance(499)
        assert q.promote_due() == 0
        clock.advance(1)
        assert q.promote_due() == 1
        assert (await q.get_job_counts())["wait"] == 2

    asyncio.run(main())


def test_add_requires_connection() -> None:
    conn = local_connection()
    with pytest.raises(RuntimeError):
        asyncio.run(conn.queue("emails").add("send", {}))


def test_worker_retries_with_backoff_then_completes() -> None:
    clock = ManualClock()
    conn = local_connection(clock)
    calls: list[int] = []
    failed: list[str] = []

    async def processor(job):
        calls.append(job.attempts_made)
        if len(calls) == 1:
            raise RuntimeError("smtp down")
        return "sent"

    async def main() -> None:
        await conn.connect()
        q = conn.queue("emails", default_job_options={"remove_on_complete": False})
        w = conn.worker("emails", processor)
        w.on("failed", lambda job, err: failed.append(str(err)))
        w.start()

        job = await q.add("send", {}, {"attempts": 3, "backoff": {"type": "fixed", "delay": 1000}})
        await wait_until(lambda: failed == ["smtp down"])
        assert (await q.get_job_counts())["delayed"] == 1
        await asyncio.sleep(0.05)
        assert calls == [0]

        clock.advance(1000)
        await wait_until(lambda: len(calls) == 2)
        await wait_until(lambda: job.return_value == "sent")
        assert job.attempts_made == 2
        assert job.failed_reason == "smtp down"
        assert (await q.get_job_counts())["completed"] == 1
        await w.close()

    asyncio.run(main())


def test_exhausted_job_is_kept_per_remove_on_fail() -> None:
    conn = local_connection()
    done: list[str] = []

    async def processor(job):
        raise ValueError(f"bad {job.data['n']}")

    async def main() -> None:
        await conn.connect()
        q = conn.queue("emails", default_job_options={"remove_on_fail": 1})
        w = conn.worker("emails", processor)
        w.on("failed", lambda job, err: done.append(job.id))
        w.start()

        first = await q.add("send", {"n": 1})
        second = await q.add("send", {"n": 2})
        await wait_until(lambda: len(done) == 2)
        assert await q.get_job(first.id) is None
        kept = await q.get_job(second.id)
        assert kept is not None and kept.failed_reason == "bad 2"
        await w.close()

    asyncio.run(main())


def test_completed_jobs_are_dropped_by_default() -> None:
    conn = local_connection()
    results: list[object] = []

    async def processor(job):
        return job.data["n"] * 2

    async def main() -> None:
        await conn.connect()
        q = conn.queue("recipes")
        w = conn.worker("recipes", processor)
        w.on("completed", lambda job, result: results.append(result))
        w.start()
        job = await q.add("visit", {"n": 21})
        await wait_until(lambda: results == [42])
        assert await q.get_job(job.id) is None
        await w.close()

    asyncio.run(main())


def test_paused_queue_is_not_dispatched() -> None:
    conn = local_connection()
    seen: list[str] = []

    async def processor(job):
        seen.append(job.name)

    async def main() -> None:
        await conn.connect()
        q = conn.queue("search")
        await q.pause()
        w = conn.worker("search", processor)
        w.start()
        await q.add("reindex", {})
        await asyncio.sleep(0.1)
        assert seen == []
        assert await q.is_paused() is True

        await q.resume()
        await wait_until(lambda: seen == ["reindex"])
        await w.close()

    asyncio.run(main())


def test_concurrency_limit() -> None:
    conn = local_connection()
    running = 0
    peak = 0
    finished: list[str] = []

    async def processor(job):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.03)
        running -= 1
        finished.append(job.id)

    async def main() -> None:
        await conn.connect()
        q = conn.queue("recipes")
        w = conn.worker("recipes", processor, concurrency=2)
        w.start()
        for i in range(6):
            await q.add("visit", {"n": i})
        await wait_until(lambda: len(finished) == 6)
        assert peak == 2
        await w.close()

    asyncio.run(main())


def test_repeat_scheduler_upsert_fire_and_remove() -> None:
    clock = ManualClock(datetime(2026, 3, 1, 0, 59, tzinfo=timezone.utc))
    conn = local_connection(clock)

    async def main() -> None:
        await conn.connect()
        q = conn.queue("search")
        opts = {"repeat": {"pattern": "0 1 * * *"}, "job_id": "cron:reindex"}
        first = await q.add("reindex", {}, opts)
        again = await q.add("reindex", {}, opts)
        assert first.id == again.id == f"repeat:cron:reindex:{_ms(2026, 3, 1, 1, 0)}"

        schedulers = await q.get_job_schedulers()
        assert [(s.id, s.name, s.next) for s in schedulers] == [
            ("cron:reindex", "reindex", _ms(2026, 3, 1, 1, 0))
        ]
        assert (await q.get_job_counts())["delayed"] == 1

        clock.advance(60_000)
        assert q.promote_due() == 1
        counts = await q.get_job_counts()
        assert counts["wait"] == 1
        assert counts["delayed"] == 1
        assert (await q.get_job_schedulers())[0].next == _ms(2026, 3, 2, 1, 0)

        assert await q.remove_job_scheduler("cron:reindex") is True
        assert await q.remove_job_scheduler("cron:reindex") is False
        counts = await q.get_job_counts()
        assert counts["delayed"] == 0
        assert counts["schedulers"] == 0

    asyncio.run(main())


def test_invalid_repeat_pattern_is_rejected() -> None:
    conn = local_connection()

    async def main() -> None:
        await conn.connect()
        q = conn.queue("search")
        with pytest.raises(ValidationError):
            await q.add("reindex", {}, {"repeat": {"pattern": "every night"}})
        with pytest.raises(ValidationError):
            await q.add("reindex", {}, {"repeat": {"pattern": "0 1 * * *", "tz": "Mars/Olympus"}})

    asyncio.run(main())


def test_close_hands_back_unfinished_jobs() -> None:
    conn = local_connection(close_timeout_sec=0.05)
    started = asyncio.Event()

    async def processor(job):
        started.set()
        await asyncio.sleep(3600)

    async def main() -> None:
        await conn.connect()
        q = conn.queue("emails")
        w = conn.worker("emails", processor)
        w.start()
        await q.add("send", {})
        await asyncio.wait_for(started.wait(), timeout=2)
        await w.close()
        counts = await q.get_job_counts()
        assert counts["active"] == 0
        assert counts["wait"] == 1

    asyncio.run(main())
