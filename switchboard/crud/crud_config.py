"""
Configuration Entry CRUD Operations.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from switchboard.models.config_entry import ConfigurationEntry
from switchboard.schemas.definitions import ConfigEntry


def to_config_entry(row: ConfigurationEntry) -> ConfigEntry:
    return ConfigEntry(
        key=row.key,
        environment_scope=row.environment_scope,
        value_type=row.value_type,
        value=row.value,
        description=row.description or "",
        exposure_level=row.exposure_level,
        sensitive=row.sensitive,
        metadata=row.entry_metadata,
    )


class CRUDConfigEntry:
    """Read access to runtime configuration entries."""

    async def get_all(self, db: AsyncSession) -> list[ConfigEntry]:
        """
        Get every configuration entry across all scopes.

        Args:
            db: Database session.

        Returns:
            Entries ordered by key, then scope.
        """
        query = select(ConfigurationEntry).order_by(
            ConfigurationEntry.key,
            ConfigurationEntry.environment_scope,
        )
        result = await db.execute(query)
        return [to_config_entry(row) for row in result.scalars().all()]


crud_config = CRUDConfigEntry()
