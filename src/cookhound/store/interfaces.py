from __future__ import annotations

from typing import Any, Protocol


class KeyValueStore(Protocol):
    """
    Narrow key-value backend used by the session manager.

    Values are JSON-serializable records. Every method may raise a backend error;
    callers wrap those into InfrastructureError rather than passing them through raw.
    """

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any, ttl_seconds: int, *, only_if_exists: bool = False) -> bool:
        """Write `value`; with `only_if_exists` nothing is written unless the key is live. True if written."""
        ...

    async def delete(self, key: str) -> None: ...

    async def keys(self, pattern: str) -> list[str]: ...

    async def flush_all(self) -> None: ...

    async def close(self) -> None: ...
