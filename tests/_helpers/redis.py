from __future__ import annotations

import os
import uuid

from cookhound.config import get_settings


def redis_url() -> str:
    return os.environ.get("REDIS_URL") or str(get_settings().redis_url or "")


def redis_available() -> bool:
    url = redis_url()
    if not url:
        return False
    try:
        import redis  # type: ignore

        client = redis.Redis.from_url(url, decode_responses=True)
        return bool(client.ping())
    except Exception:
        return False


def redis_client():
    url = redis_url()
    if not url:
        return None
    try:
        import redis  # type: ignore

        return redis.Redis.from_url(url, decode_responses=True)
    except Exception:
        return None


def unique_prefix() -> str:
    # Each test gets its own key space so runs never see each other's queues.
    return f"chtest-{uuid.uuid4().hex[:10]}"
