"""
Collaborators used by background jobs, as narrow protocols.

The defaults only log what they would do; real adapters (SMTP relay, search engine,
database) are passed to `load_jobs` by the process entry point.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from cookhound.utils.log import get_logger

log = get_logger("integrations")


@dataclass(frozen=True, slots=True)
class EmailAddress:
    address: str
    name: str = ""


@dataclass(frozen=True, slots=True)
class EmailMessage:
    sender: EmailAddress
    to: EmailAddress
    subject: str
    html: str
    text: str | None = None


class Mailer(Protocol):
    async def send(self, message: EmailMessage) -> None: ...


class SearchIndex(Protocol):
    async def upsert(self, document: dict[str, Any]) -> None: ...


class RecipeRepository(Protocol):
    async def list_after(self, last_id: int, limit: int) -> list[dict[str, Any]]:
        """Recipes with id > last_id ordered by id, at most `limit` of them."""
        ...


class VisitCounter(Protocol):
    async def increment_view_count(self, recipe_id: int) -> None: ...
    async def add_to_last_viewed(self, user_id: int, recipe_id: int) -> None: ...


class LoggingMailer:
    async def send(self, message: EmailMessage) -> None:
        log.info("mail_send_skipped", to=message.to.address, subject=message.subject)


class LoggingSearchIndex:
    async def upsert(self, document: dict[str, Any]) -> None:
        log.debug("search_upsert_skipped", recipe_id=document.get("id"))


class EmptyRecipeRepository:
    async def list_after(self, last_id: int, limit: int) -> list[dict[str, Any]]:
        return []


@dataclass
class InMemoryVisitCounter:
    views: dict[int, int] = field(default_factory=dict)
    last_viewed: dict[int, list[int]] = field(default_factory=dict)
    max_last_viewed: int = 10

    async def increment_view_count(self, recipe_id: int) -> None:
        self.views[recipe_id] = self.views.get(recipe_id, 0) + 1

    async def add_to_last_viewed(self, user_id: int, recipe_id: int) -> None:
        items = [r for r in self.last_viewed.get(user_id, []) if r != recipe_id]
        items.insert(0, recipe_id)
        self.last_viewed[user_id] = items[: self.max_last_viewed]
