"""
Cache Refresh Coordinator.

Keeps one process-local snapshot fresh against the durable store while
avoiding duplicate loads, both inside this process and across processes that
share a distributed snapshot layer.

Refresh Algorithm:
    1. A refresh already in flight is joined, never duplicated
    2. Unless forced, adopt the shared snapshot if one is published
    3. Take the distributed lock; on contention re-try the shared snapshot,
       then load anyway rather than block
    4. Load the full set, swap the local snapshot, publish the shared one
    5. Release the lock in all cases; load errors propagate afterwards

Stale reads never wait: callers keep reading the old snapshot and call
``request_refresh()``, whose failure is only logged.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any, Generic, TypeVar

from switchboard.cache.base import DistributedCache
from switchboard.cache.snapshot import CacheSnapshot, SnapshotSource, SnapshotStore
from switchboard.core.metrics import cache_refresh_total

logger = logging.getLogger(__name__)

R = TypeVar("R")
V = TypeVar("V")


def _epoch_ms() -> int:
    return int(time.time() * 1000)


class RefreshCoordinator(Generic[R, V]):
    """
    Refresh orchestration for one named cache.

    Type parameters:
        R: Record type returned by the durable store loader.
        V: Value type held per key in the snapshot map.

    Usage:
        coordinator = RefreshCoordinator(
            name="feature-flags",
            loader=store.load_all_flag_definitions,
            build_map=lambda flags: {f.key: f for f in flags},
            parse=flag_definitions_adapter.validate_python,
            serialize=lambda flags: [f.model_dump(mode="json") for f in flags],
            ttl_seconds=30,
        )
        await coordinator.start()
        definition = coordinator.snapshot.get("checkout.v2")
    """

    def __init__(
        self,
        name: str,
        loader: Callable[[], Awaitable[Sequence[R]]],
        build_map: Callable[[Sequence[R]], Mapping[str, V]],
        parse: Callable[[Any], Sequence[R]],
        serialize: Callable[[Sequence[R]], Any],
        ttl_seconds: float,
        refresh_interval_seconds: float = 0,
        distributed: DistributedCache | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the coordinator.

        Args:
            name: Cache name, also the distributed snapshot and lock name.
            loader: Full-set load from the durable store.
            build_map: Turns loaded records into the key -> value snapshot map.
            parse: Validates a shared snapshot payload back into records.
            serialize: Turns records into a JSON-serializable payload.
            ttl_seconds: Lifetime of each local snapshot.
            refresh_interval_seconds: Background forced refresh period (0 disables).
            distributed: Shared snapshot layer, or None for store-only refreshes.
            clock: Monotonic clock used for expiry.
        """
        self.name = name
        self.loader = loader
        self.build_map = build_map
        self.parse = parse
        self.serialize = serialize
        self.refresh_interval_seconds = refresh_interval_seconds
        self.distributed = distributed
        self.store: SnapshotStore[V] = SnapshotStore(ttl_seconds=ttl_seconds, clock=clock)

        self._inflight: asyncio.Task[CacheSnapshot[V]] | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._interval_task: asyncio.Task[None] | None = None

    @property
    def snapshot(self) -> CacheSnapshot[V]:
        """The active snapshot (read without suspension)."""
        return self.store.snapshot

    def is_stale(self) -> bool:
        return self.store.is_stale()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """
        Populate the cache and start the background interval loop.

        Tries the shared snapshot first; otherwise performs a forced load,
        whose failure propagates to the caller.
        """
        if not await self._hydrate("startup"):
            await self.refresh(force=True, reason="startup")

        if self.refresh_interval_seconds > 0 and self._interval_task is None:
            self._interval_task = asyncio.create_task(self._interval_loop())
            logger.info(
                f"Started {self.name} refresh loop every {self.refresh_interval_seconds}s"
            )

    async def stop(self) -> None:
        """Cancel the interval loop and any pending fire-and-forget refreshes."""
        tasks = list(self._background)
        if self._interval_task is not None:
            tasks.append(self._interval_task)
            self._interval_task = None

        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()

    async def _interval_loop(self) -> None:
        while True:
            await asyncio.sleep(self.refresh_interval_seconds)
            try:
                await self.refresh(force=True, reason="interval")
            except Exception as e:
                logger.error(f"Failed to refresh {self.name} cache: {e}")

    # =========================================================================
    # Refresh
    # =========================================================================

    async def refresh(self, force: bool = False, reason: str = "scheduled") -> CacheSnapshot[V]:
        """
        Refresh the snapshot, joining a refresh already in flight.

        Args:
            force: Bypass the TTL check and the shared snapshot.
            reason: Free-form trigger label used in logs and metrics.

        Returns:
            The active snapshot after the refresh.

        Raises:
            Exception: Whatever the durable store loader raised.
        """
        if not force and not self.store.is_stale():
            return self.store.snapshot

        if self._inflight is None:
            self._inflight = asyncio.create_task(self._run_refresh(force, reason))

        # Shielded so a cancelled caller never aborts the shared refresh
        return await asyncio.shield(self._inflight)

    def request_refresh(self, reason: str = "stale-read") -> None:
        """
        Suggest a refresh without waiting for it.

        Errors are logged, never raised. Outside a running event loop the
        request is skipped; the next async caller will pick it up.
        """
        if self._inflight is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop; skipped {self.name} refresh ({reason})")
            return

        task = loop.create_task(self.refresh(force=False, reason=reason))
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background refresh of {self.name} cache failed: {error}")

    async def _run_refresh(self, force: bool, reason: str) -> CacheSnapshot[V]:
        try:
            if not force and await self._hydrate(reason):
                return self.store.snapshot

            token: str | None = None
            if self.distributed is not None:
                token = await self.distributed.acquire_lock(self.name)
                if token is None:
                    logger.debug(f"{self.name} refresh lock is held elsewhere ({reason})")
                    if await self._hydrate(f"{reason}-lock-contention"):
                        return self.store.snapshot

            try:
                records = await self.loader()
                snapshot = self.store.replace(
                    self.build_map(records),
                    version=_epoch_ms(),
                    source=SnapshotSource.PRIMARY,
                )
                logger.debug(
                    f"{self.name} cache refreshed from primary store "
                    f"({len(snapshot)} entries, reason={reason})"
                )
                cache_refresh_total.labels(cache=self.name, source="primary", outcome="success").inc()
                await self._publish(records)
                return snapshot
            except Exception as e:
                logger.error(f"Failed to refresh {self.name} cache ({reason}): {e}")
                cache_refresh_total.labels(cache=self.name, source="primary", outcome="error").inc()
                raise
            finally:
                if token is not None and self.distributed is not None:
                    await self.distributed.release_lock(self.name, token)
        finally:
            self._inflight = None

    # =========================================================================
    # Distributed Snapshot
    # =========================================================================

    async def _hydrate(self, reason: str) -> bool:
        """Adopt the shared snapshot if one is published and valid."""
        if self.distributed is None:
            return False

        try:
            shared = await self.distributed.read_snapshot(self.name)
            if not shared or not isinstance(shared.get("value"), list):
                return False

            records = self.parse(shared["value"])
            snapshot = self.store.replace(
                self.build_map(records),
                version=shared.get("version") or _epoch_ms(),
                source=SnapshotSource.DISTRIBUTED,
            )
        except Exception as e:
            logger.warning(f"Failed to hydrate {self.name} cache from distributed snapshot ({reason}): {e}")
            cache_refresh_total.labels(cache=self.name, source="distributed", outcome="error").inc()
            return False

        logger.debug(
            f"{self.name} cache hydrated from distributed snapshot "
            f"({len(snapshot)} entries, version={snapshot.version}, reason={reason})"
        )
        cache_refresh_total.labels(cache=self.name, source="distributed", outcome="success").inc()
        return True

    async def _publish(self, records: Sequence[R]) -> None:
        if self.distributed is None:
            return
        try:
            await self.distributed.write_snapshot(self.name, self.serialize(records))
        except Exception as e:
            logger.warning(f"Failed to publish {self.name} snapshot: {e}")
