"""
SQLAlchemy Durable Store.

Implements the reader and writer contracts from ``switchboard.crud.base``
on top of the async session factory. Readers open one short-lived session
per full-set load; writers run inside ``transaction()``.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from switchboard.core.exceptions import UpstreamUnavailableError
from switchboard.crud.crud_config import crud_config
from switchboard.crud.crud_flag import crud_flag
from switchboard.db.session import session_scope
from switchboard.schemas.definitions import ConfigEntry, FlagDefinition, TenantOverride
from switchboard.schemas.governance import AuditEntry

logger = logging.getLogger(__name__)


class SqlAlchemyStore:
    """
    PostgreSQL-backed store for flags, overrides, audits and config entries.

    Usage:
        store = SqlAlchemyStore(create_session_factory(engine))
        flags = await store.load_all_flag_definitions()

        async with store.transaction() as tx:
            await store.upsert_override(tx, override)
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    # =========================================================================
    # Readers (cache loaders)
    # =========================================================================

    async def load_all_flag_definitions(self) -> list[FlagDefinition]:
        """
        Load every flag definition with its overrides.

        Raises:
            UpstreamUnavailableError: If the database cannot be queried.
        """
        try:
            async with self.session_factory() as db:
                return await crud_flag.get_all_with_overrides(db)
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Failed to load feature flags: {e}")
            raise UpstreamUnavailableError("database", message=f"Unable to load feature flags: {e}")

    async def load_all_config_entries(self) -> list[ConfigEntry]:
        """
        Load every configuration entry.

        Raises:
            UpstreamUnavailableError: If the database cannot be queried.
        """
        try:
            async with self.session_factory() as db:
                return await crud_config.get_all(db)
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Failed to load runtime configuration: {e}")
            raise UpstreamUnavailableError("database", message=f"Unable to load runtime configuration: {e}")

    # =========================================================================
    # Writer (governance)
    # =========================================================================

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[AsyncSession, None]:
        """One transaction; commits on clean exit, rolls back on exception."""
        async with session_scope(self.session_factory) as db:
            yield db

    async def load_all_with_overrides(self, tx: AsyncSession) -> list[FlagDefinition]:
        return await crud_flag.get_all_with_overrides(tx)

    async def find_by_key(self, tx: AsyncSession, key: str) -> FlagDefinition | None:
        return await crud_flag.get_by_key(tx, key)

    async def insert(self, tx: AsyncSession, definition: FlagDefinition) -> FlagDefinition:
        return await crud_flag.create(tx, definition)

    async def update(self, tx: AsyncSession, flag_id: str, definition: FlagDefinition) -> FlagDefinition:
        return await crud_flag.update(tx, flag_id, definition)

    async def upsert_override(self, tx: AsyncSession, override: TenantOverride) -> TenantOverride:
        return await crud_flag.upsert_override(tx, override)

    async def remove_override(
        self,
        tx: AsyncSession,
        flag_id: str,
        tenant_id: str,
        environment: str,
    ) -> bool:
        return await crud_flag.remove_override(tx, flag_id, tenant_id, environment)

    async def record_audit(self, tx: AsyncSession, entry: AuditEntry) -> None:
        await crud_flag.record_audit(tx, entry)
