"""
Distributed Cache Contract.

The refresh coordinator talks to a shared snapshot layer through this narrow
interface. A deployment without one passes ``None`` and the coordinator
falls back to durable-store-only refreshes.
"""

from typing import Any, Protocol, TypedDict


class SharedSnapshot(TypedDict):
    """Payload read back from the distributed layer."""

    value: Any
    version: int | None


class DistributedCache(Protocol):
    """Shared snapshot storage plus a per-cache mutual-exclusion lock."""

    async def read_snapshot(self, cache_name: str) -> SharedSnapshot | None:
        """Return the published snapshot for ``cache_name``, or None."""
        ...

    async def write_snapshot(self, cache_name: str, value: Any) -> None:
        """Publish ``value`` (JSON-serializable) as the shared snapshot."""
        ...

    async def acquire_lock(self, cache_name: str) -> str | None:
        """Try once to take the refresh lock. Returns a token, or None on contention."""
        ...

    async def release_lock(self, cache_name: str, token: str) -> None:
        """Release the lock if ``token`` still owns it."""
        ...
