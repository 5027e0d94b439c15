"""
Composition Root.

Builds every collaborator from settings exactly once per process (or per
test) and exposes the public operations of the engine. The HTTP app keeps
the container on ``app.state``; the CLI builds its own.

Usage:
    container = build_container(get_settings())
    await container.start()
    result = container.evaluate("commerce.checkout-v2", {"tenant_id": "acme"})
    await container.stop()
"""

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine

from switchboard.cache.base import DistributedCache
from switchboard.cache.redis import RedisSnapshotCache
from switchboard.core.config import Settings
from switchboard.core.exceptions import CacheError
from switchboard.core.manifest import load_manifest
from switchboard.db.session import close_db, create_engine, create_session_factory, init_db
from switchboard.db.store import SqlAlchemyStore
from switchboard.schemas.evaluate import EvaluationContext
from switchboard.schemas.governance import OverrideChangeResult, SyncSummary, UserContext
from switchboard.schemas.runtime_config import Audience, ConfigValueView
from switchboard.services.evaluator import EvaluationResult, FlagEvaluator
from switchboard.services.flag_service import FeatureFlagService
from switchboard.services.governance import FeatureFlagGovernanceService, ManifestInput
from switchboard.services.runtime_config import RuntimeConfigService

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Owns the services and the connections they depend on."""

    settings: Settings
    flags: FeatureFlagService
    runtime_config: RuntimeConfigService
    governance: FeatureFlagGovernanceService
    distributed: DistributedCache | None = None
    engine: AsyncEngine | None = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self, bootstrap_sync: bool = True) -> None:
        """
        Connect collaborators, warm both caches, then run the bootstrap sync.

        Raises:
            Exception: If the database is unreachable or a cache cannot load.
        """
        if self.engine is not None:
            await init_db(self.engine)
            logger.info("Database connection established")

        if isinstance(self.distributed, RedisSnapshotCache):
            try:
                await self.distributed.connect()
            except CacheError as e:
                # Refreshes degrade to database-only loads
                logger.warning(f"Distributed cache unavailable at startup: {e}")

        await self.flags.start()
        await self.runtime_config.start()

        if bootstrap_sync:
            await self.governance.ensure_bootstrap_sync()

    async def stop(self) -> None:
        await self.flags.stop()
        await self.runtime_config.stop()

        if isinstance(self.distributed, RedisSnapshotCache):
            await self.distributed.disconnect()
        if self.engine is not None:
            await close_db(self.engine)
        logger.info("Service container stopped")

    # =========================================================================
    # Exposed Operations
    # =========================================================================

    def evaluate(
        self,
        flag_key: str,
        context: EvaluationContext | Mapping[str, Any] | None = None,
        include_definition: bool = False,
    ) -> EvaluationResult:
        return self.flags.evaluate(flag_key, context, include_definition=include_definition)

    def evaluate_all(
        self,
        context: EvaluationContext | Mapping[str, Any] | None = None,
        include_definition: bool = False,
    ) -> dict[str, EvaluationResult]:
        return self.flags.evaluate_all(context, include_definition=include_definition)

    def get_config_value(
        self,
        key: str,
        environment: str | None = None,
        audience: Audience | str = Audience.PUBLIC,
        include_sensitive: bool = False,
        default_value: Any = None,
    ) -> Any:
        return self.runtime_config.get_value(
            key,
            environment=environment,
            audience=audience,
            include_sensitive=include_sensitive,
            default_value=default_value,
        )

    def list_config_for_audience(
        self,
        environment: str | None = None,
        audience: Audience | str = Audience.PUBLIC,
        include_sensitive: bool = False,
    ) -> dict[str, ConfigValueView]:
        return self.runtime_config.list_for_audience(
            environment, audience=audience, include_sensitive=include_sensitive
        )

    async def sync_manifest(
        self,
        manifest: Sequence[ManifestInput] | None = None,
        actor: str | None = None,
        dry_run: bool = False,
    ) -> SyncSummary:
        return await self.governance.sync_definitions(actor=actor, dry_run=dry_run, manifest=manifest)

    async def apply_tenant_override(self, flag_key: str, tenant_id: str | None, **kwargs: Any) -> OverrideChangeResult:
        return await self.governance.apply_tenant_override(flag_key, tenant_id, **kwargs)

    async def remove_tenant_override(
        self,
        flag_key: str,
        tenant_id: str | None,
        environment: str | None = None,
        actor: str | None = None,
        user_context: UserContext | None = None,
    ) -> OverrideChangeResult:
        return await self.governance.remove_tenant_override(
            flag_key, tenant_id, environment=environment, actor=actor, user_context=user_context
        )


def build_distributed_cache(settings: Settings) -> RedisSnapshotCache | None:
    """Redis collaborator, or None when REDIS_ENABLED is off."""
    if not settings.REDIS_ENABLED:
        return None
    return RedisSnapshotCache(
        url=str(settings.REDIS_URL),
        key_prefix=settings.REDIS_KEY_PREFIX,
        lock_prefix=settings.REDIS_LOCK_PREFIX,
        snapshot_ttl_seconds=settings.REDIS_SNAPSHOT_TTL_SECONDS,
        lock_ttl_seconds=settings.REDIS_LOCK_TTL_SECONDS,
    )


def build_container(
    settings: Settings,
    store: Any = None,
    distributed: DistributedCache | None = None,
    manifest: Sequence[ManifestInput] | None = None,
) -> ServiceContainer:
    """
    Wire the engine from settings.

    Args:
        settings: Application settings.
        store: Durable store implementing the reader/writer contracts; a
            SQLAlchemy store over DATABASE_URL when omitted.
        distributed: Shared snapshot layer; built from REDIS_* settings when omitted.
        manifest: Governance manifest; loaded from FEATURE_FLAG_MANIFEST_PATH
            (or the built-in manifest) when omitted.

    Returns:
        An unstarted ServiceContainer.
    """
    engine: AsyncEngine | None = None
    if store is None:
        engine = create_engine(settings)
        store = SqlAlchemyStore(create_session_factory(engine))

    if distributed is None:
        distributed = build_distributed_cache(settings)

    if manifest is None:
        manifest = load_manifest(settings.FEATURE_FLAG_MANIFEST_PATH)

    default_environment = settings.default_environment

    flags = FeatureFlagService(
        reader=store,
        evaluator=FlagEvaluator(environment_aliases=settings.FEATURE_FLAG_ENVIRONMENT_ALIASES),
        default_environment=default_environment,
        ttl_seconds=settings.FEATURE_FLAG_CACHE_TTL_SECONDS,
        refresh_interval_seconds=settings.FEATURE_FLAG_REFRESH_INTERVAL_SECONDS,
        distributed=distributed,
    )
    runtime_config = RuntimeConfigService(
        reader=store,
        default_environment=default_environment,
        ttl_seconds=settings.RUNTIME_CONFIG_CACHE_TTL_SECONDS,
        refresh_interval_seconds=settings.RUNTIME_CONFIG_REFRESH_INTERVAL_SECONDS,
        distributed=distributed,
    )
    governance = FeatureFlagGovernanceService(
        store=store,
        flag_service=flags,
        manifest=manifest,
        default_actor=settings.FEATURE_FLAG_BOOTSTRAP_ACTOR,
        default_environment=default_environment,
        sync_on_bootstrap=settings.FEATURE_FLAG_SYNC_ON_BOOTSTRAP,
    )

    return ServiceContainer(
        settings=settings,
        flags=flags,
        runtime_config=runtime_config,
        governance=governance,
        distributed=distributed,
        engine=engine,
    )
