from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar

from .interfaces import Job, JobOptions, Processor


@dataclass(frozen=True, slots=True)
class JobDefinition:
    """
    A registered (name -> queue, handler, options) binding.

    `queue_options` and `default_job_options` shape the queue itself only when this is the
    first definition registered on `queue_name`.
    """

    name: str
    queue_name: str
    handler: Processor
    concurrency: int | None = None
    default_job_options: JobOptions | None = None
    queue_options: dict[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class CronJobConfig:
    name: str
    queue_name: str
    cron: str
    data: Any = None
    timezone: str | None = None
    enabled: bool = True
    job_options: JobOptions | None = None


class BaseJob(ABC):
    """
    Base class for job types.

    Subclasses declare their identity and options as class attributes and implement
    `handle`. Queue-level options only apply if the subclass is the first job registered
    on its queue; jobs that need different queue options belong on a separate queue.
    """

    job_name: ClassVar[str] = ""
    queue_name: ClassVar[str] = "default"
    concurrency: ClassVar[int | None] = None
    default_job_options: ClassVar[JobOptions | None] = None
    queue_options: ClassVar[dict[str, Any] | None] = None

    @abstractmethod
    async def handle(self, job: Job) -> Any: ...

    def definition(self) -> JobDefinition:
        cls = type(self)
        if not cls.job_name or not cls.queue_name:
            raise TypeError(f"Job {cls.__name__} is missing job_name / queue_name declarations")
        return JobDefinition(
            name=cls.job_name,
            queue_name=cls.queue_name,
            handler=self.handle,
            concurrency=cls.concurrency,
            default_job_options=cls.default_job_options,
            queue_options=cls.queue_options,
        )
