"""
Redis Distributed Cache Layer.

This module implements the shared snapshot store and the refresh lock used by
the refresh coordinator, so many processes can share one durable-store load.

Caching Strategy:
    - Snapshot key format: "{key_prefix}:{cache_name}"
    - Lock key format: "{lock_prefix}:{cache_name}"
    - Snapshot TTL: Configurable safety net (default 300 seconds)
    - Lock: SET NX PX with a random token, released by compare-and-delete

Cache Structure:
    Snapshots are stored as JSON for easy serialization:
    {
        "value": [{"key": "checkout.v2", "enabled": true, ...}, ...],
        "version": 1718000000000,
        "cached_at": "2024-01-15T10:30:00+00:00"
    }
"""

import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any

import redis.asyncio as redis
from redis.asyncio import Redis

from switchboard.cache.base import SharedSnapshot
from switchboard.core.exceptions import CacheError

logger = logging.getLogger(__name__)

# Deletes the lock only while it still holds our token
_RELEASE_LOCK_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
else
    return 0
end
"""


class RedisSnapshotCache:
    """
    Async Redis implementation of the distributed cache contract.

    Every operation is best-effort: Redis failures are logged and reported as
    a miss (or a failed lock), never raised into the refresh path.

    Usage:
        cache = RedisSnapshotCache(url="redis://localhost:6379/0")
        await cache.connect()

        # Publish a freshly loaded snapshot
        await cache.write_snapshot("feature-flags", definitions)

        # Hydrate from another process's load
        shared = await cache.read_snapshot("feature-flags")
    """

    def __init__(
        self,
        url: str,
        key_prefix: str = "switchboard:runtime",
        lock_prefix: str = "switchboard:locks",
        snapshot_ttl_seconds: int = 300,
        lock_ttl_seconds: int = 45,
        client: Redis | None = None,
    ) -> None:
        """Initialize Redis cache (call connect() before use unless a client is given)."""
        self.url = url
        self.key_prefix = key_prefix
        self.lock_prefix = lock_prefix
        self.snapshot_ttl_seconds = snapshot_ttl_seconds
        self.lock_ttl_ms = lock_ttl_seconds * 1000
        self._client: Redis | None = client

    @property
    def client(self) -> Redis:
        """Get the Redis client, raising if not connected."""
        if self._client is None:
            raise CacheError("Redis client not connected. Call connect() first.")
        return self._client

    async def connect(self) -> None:
        """
        Establish connection to Redis.

        Called during application startup to verify Redis connectivity.

        Raises:
            CacheError: If connection fails.
        """
        try:
            self._client = redis.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=True,
            )
            # Verify connection
            await self._client.ping()
            logger.info("Redis connection established")
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise CacheError(f"Redis connection failed: {e}")

    async def disconnect(self) -> None:
        """Close Redis connection (call during shutdown)."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("Redis connection closed")

    # =========================================================================
    # Cache Key Generation
    # =========================================================================

    def _snapshot_key(self, cache_name: str) -> str:
        """Generate cache key for a shared snapshot."""
        return f"{self.key_prefix}:{cache_name}"

    def _lock_key(self, cache_name: str) -> str:
        """Generate key for a refresh lock."""
        return f"{self.lock_prefix}:{cache_name}"

    # =========================================================================
    # Snapshot Operations
    # =========================================================================

    async def read_snapshot(self, cache_name: str) -> SharedSnapshot | None:
        """
        Get the shared snapshot for a cache.

        Args:
            cache_name: Logical cache name (e.g. "feature-flags").

        Returns:
            {"value", "version"} if a snapshot exists, None otherwise.
        """
        try:
            key = self._snapshot_key(cache_name)
            data = await self.client.get(key)

            if not data:
                logger.debug(f"Cache MISS for {key}")
                return None

            payload = json.loads(data)
            if not isinstance(payload, dict) or "value" not in payload:
                logger.warning(f"Ignoring malformed snapshot under {key}")
                return None

            logger.debug(f"Cache HIT for {key}")
            return {"value": payload["value"], "version": payload.get("version")}

        except Exception as e:
            # Cache errors are non-fatal - log and continue
            logger.warning(f"Snapshot read failed for {cache_name}: {e}")
            return None

    async def write_snapshot(self, cache_name: str, value: Any) -> None:
        """
        Publish a snapshot for other processes.

        Args:
            cache_name: Logical cache name.
            value: JSON-serializable records.
        """
        try:
            key = self._snapshot_key(cache_name)

            # Structure the cache data
            cache_data = {
                "value": value,
                "version": int(time.time() * 1000),
                "cached_at": datetime.now(timezone.utc).isoformat(),
            }

            await self.client.setex(
                key,
                self.snapshot_ttl_seconds,
                json.dumps(cache_data),
            )
            logger.debug(f"Published snapshot for {key}")

        except Exception as e:
            # Cache errors are non-fatal
            logger.warning(f"Snapshot write failed for {cache_name}: {e}")

    # =========================================================================
    # Refresh Lock
    # =========================================================================

    async def acquire_lock(self, cache_name: str) -> str | None:
        """
        Try once to take the refresh lock for a cache.

        Returns:
            The lock token, or None when another holder owns it (or Redis failed).
        """
        token = str(uuid.uuid4())
        try:
            acquired = await self.client.set(
                self._lock_key(cache_name),
                token,
                nx=True,
                px=self.lock_ttl_ms,
            )
        except Exception as e:
            logger.warning(f"Lock acquire failed for {cache_name}: {e}")
            return None
        return token if acquired else None

    async def release_lock(self, cache_name: str, token: str) -> None:
        """Release the refresh lock if the token still owns it."""
        try:
            await self.client.eval(_RELEASE_LOCK_SCRIPT, 1, self._lock_key(cache_name), token)
        except Exception as e:
            logger.warning(f"Lock release failed for {cache_name}: {e}")

    # =========================================================================
    # Health Check
    # =========================================================================

    async def health_check(self) -> bool:
        """
        Check Redis connectivity.

        Returns:
            True if Redis is reachable, False otherwise.
        """
        try:
            await self.client.ping()
            return True
        except Exception:
            return False
