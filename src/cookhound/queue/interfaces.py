from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Literal, Protocol, TypedDict


class BackoffOptions(TypedDict):
    type: Literal["fixed", "exponential"]
    delay: int  # ms


class RepeatOptions(TypedDict, total=False):
    pattern: str  # cron expression
    tz: str | None


class JobOptions(TypedDict, total=False):
    attempts: int
    backoff: BackoffOptions | int
    delay: int  # ms
    job_id: str
    remove_on_complete: bool | int
    remove_on_fail: bool | int
    repeat: RepeatOptions


# Applied to every queue before queue- and job-level defaults.
BASE_JOB_OPTIONS: JobOptions = {"remove_on_complete": True, "remove_on_fail": 100}


@dataclass(slots=True)
class Job:
    """
    One unit of work as seen by producers and handlers.

    `attempts_made` counts finished attempts (0 while the first attempt runs).
    `repeat_key` is set on jobs produced by a repeat schedule.
    """

    id: str
    name: str
    queue_name: str
    data: Any = None
    opts: dict[str, Any] = field(default_factory=dict)
    timestamp: int = 0
    attempts_made: int = 0
    processed_on: int | None = None
    finished_on: int | None = None
    failed_reason: str | None = None
    return_value: Any = None
    repeat_key: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Job":
        return cls(
            id=str(d["id"]),
            name=str(d["name"]),
            queue_name=str(d["queue_name"]),
            data=d.get("data"),
            opts=dict(d.get("opts") or {}),
            timestamp=int(d.get("timestamp") or 0),
            attempts_made=int(d.get("attempts_made") or 0),
            processed_on=d.get("processed_on"),
            finished_on=d.get("finished_on"),
            failed_reason=d.get("failed_reason"),
            return_value=d.get("return_value"),
            repeat_key=d.get("repeat_key"),
        )


@dataclass(slots=True)
class JobScheduler:
    """A repeat schedule; produces one job per cron fire time."""

    key: str
    name: str
    pattern: str
    tz: str | None = None
    next: int | None = None  # epoch ms of the pending fire
    data: Any = None
    opts: dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return self.key

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "JobScheduler":
        return cls(
            key=str(d["key"]),
            name=str(d["name"]),
            pattern=str(d["pattern"]),
            tz=d.get("tz"),
            next=d.get("next"),
            data=d.get("data"),
            opts=dict(d.get("opts") or {}),
        )


Processor = Callable[[Job], Awaitable[Any]]
EventListener = Callable[..., Any]


class JobQueue(Protocol):
    """
    Producer side of one named queue.

    - `add` deduplicates on `job_id`; with a `repeat` option it upserts a scheduler keyed
      by `job_id` (or the job name) and returns the first scheduled job
    - absence is never an error: unknown jobs/schedulers give None/False
    """

    name: str

    async def add(self, name: str, data: Any = None, opts: JobOptions | None = None) -> Job: ...

    async def get_job(self, job_id: str) -> Job | None: ...
    async def get_job_schedulers(self) -> list[JobScheduler]: ...
    async def remove_job_scheduler(self, key: str) -> bool: ...

    async def pause(self) -> None: ...
    async def resume(self) -> None: ...
    async def is_paused(self) -> bool: ...

    async def get_job_counts(self) -> dict[str, int]: ...

    async def close(self) -> None: ...


class QueueWorker(Protocol):
    """
    Consumer side of one named queue.

    Events (listeners are for logging only):
      - completed(job, result)
      - failed(job, error)
      - error(error)
      - stalled(job_id)
    """

    name: str
    concurrency: int

    def on(self, event: str, listener: EventListener) -> None: ...
    def start(self) -> None: ...
    async def close(self) -> None: ...


class QueueConnection(Protocol):
    """
    Shared backend connection; queues and workers created from it share one client.

    Connection problems are reported to `error` listeners instead of being raised from
    `connect()`; the backend keeps retrying on its own.
    """

    kind: str

    def on(self, event: str, listener: EventListener) -> None: ...
    async def connect(self) -> None: ...

    def queue(self, name: str, *, default_job_options: JobOptions | None = None) -> JobQueue: ...
    def worker(self, name: str, processor: Processor, *, concurrency: int = 1) -> QueueWorker: ...

    async def close(self) -> None: ...
