"""
Job catalogue.

`load_jobs` registers every job that should exist in the system. Removing a line there
removes the job from the app. Order matters: the first job registered on a shared queue
supplies that queue's options.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from cookhound.integrations import (
    EmptyRecipeRepository,
    InMemoryVisitCounter,
    LoggingMailer,
    LoggingSearchIndex,
    Mailer,
    RecipeRepository,
    SearchIndex,
    VisitCounter,
)
from cookhound.queue.base_job import BaseJob

from .emails import SendContactFormJob, SendPasswordResetEmailJob, SendVerificationEmailJob
from .names import JobNames, QueueNames
from .recipes import RegisterRecipeVisitJob
from .search import ReindexRecipesJob

if TYPE_CHECKING:
    from cookhound.queue.manager import QueueManager

__all__ = ["JobDeps", "JobNames", "QueueNames", "build_jobs", "load_jobs"]


@dataclass
class JobDeps:
    mailer: Mailer = field(default_factory=LoggingMailer)
    search_index: SearchIndex = field(default_factory=LoggingSearchIndex)
    recipes: RecipeRepository = field(default_factory=EmptyRecipeRepository)
    visits: VisitCounter = field(default_factory=InMemoryVisitCounter)


def build_jobs(deps: JobDeps) -> list[BaseJob]:
    return [
        # emails
        SendVerificationEmailJob(deps.mailer),
        SendPasswordResetEmailJob(deps.mailer),
        SendContactFormJob(deps.mailer),
        # recipes
        RegisterRecipeVisitJob(deps.visits),
        # search
        ReindexRecipesJob(deps.recipes, deps.search_index),
    ]


def load_jobs(manager: "QueueManager", deps: JobDeps | None = None) -> None:
    for job in build_jobs(deps or JobDeps()):
        manager.register_job(job.definition())
