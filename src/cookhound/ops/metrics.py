from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager, suppress

from prometheus_client import CollectorRegistry, Counter, Histogram

REGISTRY = CollectorRegistry()

# Background jobs are short (emails, counters, index batches).
JOB_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0, 900.0)

# Queue
queue_jobs_added = Counter(
    "cookhound_queue_jobs_added_total",
    "Jobs enqueued",
    labelnames=("queue", "job"),
    registry=REGISTRY,
)
queue_jobs_finished = Counter(
    "cookhound_queue_jobs_finished_total",
    "Job attempts finished by outcome",
    labelnames=("queue", "outcome"),
    registry=REGISTRY,
)
queue_job_seconds = Histogram(
    "cookhound_queue_job_seconds",
    "Job handler latency (seconds)",
    labelnames=("job",),
    registry=REGISTRY,
    buckets=JOB_BUCKETS,
)

# Sessions
sessions_created = Counter("cookhound_sessions_created_total", "Sessions created", registry=REGISTRY)
session_validations = Counter(
    "cookhound_session_validations_total",
    "Session validations by result",
    labelnames=("result",),
    registry=REGISTRY,
)


@contextmanager
def time_hist(h: Histogram) -> Iterator[Callable[[], float]]:
    """
    Time a block and observe into a histogram (or a labelled child).
    Usage:
        with time_hist(hist.labels(job="x")) as elapsed:
            ...
        dt = elapsed()
    """
    t0 = time.perf_counter()
    dt: float | None = None

    def elapsed() -> float:
        return float(dt or 0.0)

    try:
        yield elapsed
    finally:
        dt = max(0.0, time.perf_counter() - t0)
        with suppress(Exception):
            h.observe(dt)
