"""
Durable Store Contracts.

The evaluation engine and the governance engine only see the durable store
through these narrow interfaces. ``switchboard.db.store.SqlAlchemyStore``
implements all three against PostgreSQL; the test suite uses in-memory fakes.

Design Principles:
    - Readers are full-set loads only (no delta API)
    - Every writer call takes the ambient transaction handle ``tx``
    - All operations are async for non-blocking I/O
"""

from contextlib import AbstractAsyncContextManager
from typing import Any, Protocol

from switchboard.schemas.definitions import ConfigEntry, FlagDefinition, TenantOverride
from switchboard.schemas.governance import AuditEntry


class FlagDefinitionReader(Protocol):
    """Loads every flag definition, each with its tenant overrides attached."""

    async def load_all_flag_definitions(self) -> list[FlagDefinition]:
        ...


class ConfigEntryReader(Protocol):
    """Loads every configuration entry across all environment scopes."""

    async def load_all_config_entries(self) -> list[ConfigEntry]:
        ...


class FlagDefinitionWriter(Protocol):
    """
    Transactional writer used by governance.

    Example:
        async with store.transaction() as tx:
            created = await store.insert(tx, definition)
            await store.record_audit(tx, entry)
        # committed here; any exception inside rolls everything back
    """

    def transaction(self) -> AbstractAsyncContextManager[Any]:
        """Open a transaction; commit on clean exit, roll back on exception."""
        ...

    async def load_all_with_overrides(self, tx: Any) -> list[FlagDefinition]:
        ...

    async def find_by_key(self, tx: Any, key: str) -> FlagDefinition | None:
        ...

    async def insert(self, tx: Any, definition: FlagDefinition) -> FlagDefinition:
        """Insert a definition and return it with its generated id."""
        ...

    async def update(self, tx: Any, flag_id: str, definition: FlagDefinition) -> FlagDefinition:
        ...

    async def upsert_override(self, tx: Any, override: TenantOverride) -> TenantOverride:
        """Insert or replace the override identified by (flag_id, tenant_id, environment)."""
        ...

    async def remove_override(
        self,
        tx: Any,
        flag_id: str,
        tenant_id: str,
        environment: str,
    ) -> bool:
        """Delete one override. Returns True if a row was removed."""
        ...

    async def record_audit(self, tx: Any, entry: AuditEntry) -> None:
        ...
