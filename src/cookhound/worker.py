"""
Worker process entry point: the only place a QueueManager runs in the worker role.

initialize(True) -> schedule cron jobs -> wait for SIGINT/SIGTERM -> shutdown().
"""

from __future__ import annotations

import asyncio
import signal

from cookhound.jobs import JobDeps, load_jobs
from cookhound.jobs.cron import schedule_recurring_jobs
from cookhound.queue.manager import QueueManager
from cookhound.utils.log import get_logger

log = get_logger("worker")


async def run_worker(
    *,
    manager: QueueManager | None = None,
    deps: JobDeps | None = None,
    stop_event: asyncio.Event | None = None,
) -> None:
    qm = manager or QueueManager(job_loader=lambda m: load_jobs(m, deps))
    stop = stop_event or asyncio.Event()

    await qm.initialize(True)
    try:
        await schedule_recurring_jobs(qm)
    except Exception:
        await qm.shutdown()
        raise

    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # No loop signal support (Windows, non-main thread): rely on KeyboardInterrupt.
            log.warning("worker_signal_handler_unavailable", signal=sig.name)

    log.info("worker_started", queues=qm.get_queue_names())
    try:
        await stop.wait()
        log.info("worker_stop_requested")
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        await qm.shutdown()
        log.info("worker_stopped")


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
