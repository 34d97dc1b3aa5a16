from __future__ import annotations

import asyncio
import json
from typing import Any

import redis.asyncio as redis

from cookhound.errors import InfrastructureError, InfrastructureErrorCode
from cookhound.utils.log import get_logger

log = get_logger("redis-store")


class RedisStore:
    """
    Redis-backed key-value store (JSON values, `SET ... EX` writes).

    The connection is created lazily and verified with PING on first use. A failed connect
    raises InfrastructureError(REDIS_CONNECTION_FAILED) and is retried on the next call.
    """

    def __init__(self, *, url: str, password: str | None = None) -> None:
        self._url = str(url or "").strip()
        self._password = password
        self._client: redis.Redis | None = None
        self._connected = False
        self._lock = asyncio.Lock()

    async def _redis(self) -> redis.Redis:
        if self._client is not None and self._connected:
            return self._client
        async with self._lock:
            if self._client is not None and self._connected:
                return self._client
            if self._client is None:
                self._client = redis.Redis.from_url(
                    self._url, password=self._password, decode_responses=True
                )
            try:
                await self._client.ping()
            except redis.RedisError as ex:
                # Do not log the URL (may contain credentials).
                log.error("redis_connect_failed", error=str(ex))
                raise InfrastructureError(InfrastructureErrorCode.REDIS_CONNECTION_FAILED, ex) from ex
            self._connected = True
            log.info("redis_connected")
            return self._client

    async def get(self, key: str) -> Any | None:
        r = await self._redis()
        raw = await r.get(key)
        return json.loads(raw) if raw else None

    async def set(self, key: str, value: Any, ttl_seconds: int, *, only_if_exists: bool = False) -> bool:
        r = await self._redis()
        ttl = int(ttl_seconds)
        # SET ... XX: a single command, so a concurrent DEL cannot be overwritten.
        res = await r.set(key, json.dumps(value), ex=ttl if ttl > 0 else None, xx=only_if_exists)
        return bool(res)

    async def delete(self, key: str) -> None:
        r = await self._redis()
        await r.delete(key)

    async def keys(self, pattern: str) -> list[str]:
        r = await self._redis()
        return sorted([str(k) async for k in r.scan_iter(match=pattern)])

    async def ttl(self, key: str) -> int | None:
        r = await self._redis()
        v = int(await r.ttl(key))
        return None if v == -2 else v

    async def flush_all(self) -> None:
        r = await self._redis()
        await r.flushall()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
        self._client = None
        self._connected = False
