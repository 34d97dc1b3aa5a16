"""
Pieces shared by the queue backends: option merging, retry backoff, cron fire times and
listener fan-out.
"""

from __future__ import annotations

import inspect
import time
from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from cookhound.errors import ValidationError
from cookhound.utils.log import get_logger

from .interfaces import BASE_JOB_OPTIONS, EventListener, JobOptions

log = get_logger("queue")


def now_ms() -> int:
    return int(time.time() * 1000)


def merge_job_options(*layers: JobOptions | dict[str, Any] | None) -> dict[str, Any]:
    """Later layers win; `None` layers are skipped."""
    out: dict[str, Any] = {}
    for layer in layers:
        if layer:
            out.update(layer)
    return out


def queue_default_options(
    queue_options: dict[str, Any] | None, default_job_options: JobOptions | None
) -> dict[str, Any]:
    return merge_job_options(
        BASE_JOB_OPTIONS,
        (queue_options or {}).get("default_job_options"),
        default_job_options,
    )


def max_attempts(opts: dict[str, Any]) -> int:
    try:
        return max(1, int(opts.get("attempts") or 1))
    except (TypeError, ValueError):
        return 1


def backoff_delay_ms(opts: dict[str, Any], attempts_made: int) -> int:
    """
    Delay before the next attempt after `attempts_made` failed attempts.

    - int: fixed delay in ms
    - {"type": "fixed", "delay": d}: d
    - {"type": "exponential", "delay": d}: d * 2^(attempts_made - 1)
    """
    backoff = opts.get("backoff")
    if backoff is None:
        return 0
    if isinstance(backoff, (int, float)):
        return max(0, int(backoff))
    kind = str(backoff.get("type") or "fixed").strip().lower()
    delay = max(0, int(backoff.get("delay") or 0))
    if kind == "exponential":
        return int(delay * (2 ** max(0, int(attempts_made) - 1)))
    return delay


def retention_limit(value: bool | int | None) -> int | None:
    """
    Translate remove_on_complete/remove_on_fail into "how many finished jobs to keep".

    True -> 0 (drop immediately), False/None -> None (keep all), N -> N.
    """
    if value is None or value is False:
        return None
    if value is True:
        return 0
    return max(0, int(value))


def validate_cron(pattern: str, tz: str | None = None) -> None:
    if not pattern or not croniter.is_valid(pattern):
        raise ValidationError(f"invalid cron pattern: {pattern!r}")
    if tz:
        try:
            ZoneInfo(tz)
        except (ZoneInfoNotFoundError, ValueError) as ex:
            raise ValidationError(f"unknown timezone: {tz!r}") from ex


def next_cron_fire(pattern: str, tz: str | None, after_ms: int) -> int:
    """Epoch ms of the first fire strictly after `after_ms`, evaluated in `tz` (UTC default)."""
    zone = ZoneInfo(tz) if tz else timezone.utc
    start = datetime.fromtimestamp(after_ms / 1000.0, tz=zone)
    nxt = croniter(pattern, start).get_next(datetime)
    return int(nxt.timestamp() * 1000)


def repeat_job_id(scheduler_key: str, fire_ms: int) -> str:
    return f"repeat:{scheduler_key}:{int(fire_ms)}"


class EventEmitter:
    """Tiny listener registry; a failing listener is logged and never breaks the caller."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[EventListener]] = {}

    def on(self, event: str, listener: EventListener) -> None:
        self._listeners.setdefault(str(event), []).append(listener)

    async def emit(self, event: str, *args: Any) -> None:
        for listener in list(self._listeners.get(str(event), [])):
            try:
                res = listener(*args)
                if inspect.isawaitable(res):
                    await res
            except Exception as ex:
                log.warning("queue_listener_failed", queue_event=str(event), error=str(ex))
