"""
Process-Local Cache Snapshots.

A snapshot is an immutable, wholesale copy of cached state (flag definitions
or configuration entries) with an expiry and a provenance tag. Exactly one
snapshot is active per store; refreshes build a new one and swap it in with a
single attribute assignment, so readers never observe a half-built map.
"""

import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class SnapshotSource(str, Enum):
    """Where the active snapshot came from."""

    INIT = "init"
    PRIMARY = "primary"
    DISTRIBUTED = "distributed"


@dataclass(frozen=True)
class CacheSnapshot(Generic[T]):
    """
    Immutable cache snapshot.

    Attributes:
        entries: Read-only key -> record mapping.
        expires_at: Absolute monotonic-clock time after which the snapshot is stale.
        version: Epoch milliseconds of the load that produced the records.
        source: Provenance tag.
    """

    entries: Mapping[str, T] = field(default_factory=lambda: MappingProxyType({}))
    expires_at: float = 0.0
    version: int = 0
    source: SnapshotSource = SnapshotSource.INIT

    def get(self, key: str) -> T | None:
        return self.entries.get(key)

    def __len__(self) -> int:
        return len(self.entries)


class SnapshotStore(Generic[T]):
    """
    Holder of the single active snapshot for one cache.

    Usage:
        store = SnapshotStore(ttl_seconds=30)
        store.replace(records, version=..., source=SnapshotSource.PRIMARY)
        if store.is_stale():
            ...
    """

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._snapshot: CacheSnapshot[T] = CacheSnapshot()

    @property
    def snapshot(self) -> CacheSnapshot[T]:
        """The active snapshot. Never None; starts empty with source ``init``."""
        return self._snapshot

    def replace(
        self,
        entries: Mapping[str, T],
        version: int,
        source: SnapshotSource,
    ) -> CacheSnapshot[T]:
        """
        Atomically replace the active snapshot.

        The mapping is copied, so later mutation of ``entries`` by the caller
        cannot leak into the published snapshot.
        """
        snapshot: CacheSnapshot[T] = CacheSnapshot(
            entries=MappingProxyType(dict(entries)),
            expires_at=self.clock() + self.ttl_seconds,
            version=version,
            source=source,
        )
        self._snapshot = snapshot
        return snapshot

    def is_stale(self) -> bool:
        """True once the active snapshot has passed its expiry."""
        return self.clock() >= self._snapshot.expires_at

    def describe(self) -> dict[str, Any]:
        """Summary for health and debugging output."""
        snapshot = self._snapshot
        return {
            "entries": len(snapshot),
            "version": snapshot.version,
            "source": snapshot.source.value,
            "stale": self.is_stale(),
        }
