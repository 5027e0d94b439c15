"""
Feature Flag CRUD Operations.

This module provides data access for flag definitions, tenant overrides and
the governance audit trail. Methods take the session first and return
pydantic definitions, never ORM rows, so nothing outside this layer touches
lazy-loading state.

Key Operations:
    - get_all_with_overrides: Every flag with its tenant overrides (one pass)
    - get_by_key: One flag with its overrides
    - create / update: Write a normalised definition
    - upsert_override / remove_override: Tenant override rows
    - record_audit: Append an audit record
"""

import uuid
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from switchboard.models.flag import FeatureFlag, FeatureFlagAudit, FeatureFlagTenantState
from switchboard.schemas.definitions import FlagDefinition, OverrideState, TenantOverride
from switchboard.schemas.governance import AuditEntry


# =============================================================================
# Row <-> Schema Conversion
# =============================================================================

def to_override(state: FeatureFlagTenantState) -> TenantOverride:
    return TenantOverride(
        id=str(state.id),
        flag_id=str(state.flag_id),
        tenant_id=state.tenant_id,
        environment=state.environment,
        state=OverrideState(state.state),
        variant_key=state.variant_key,
        metadata=state.state_metadata or {},
        updated_by=state.updated_by,
    )


def to_definition(flag: FeatureFlag) -> FlagDefinition:
    """Convert a flag row (with tenant_states loaded) into a definition."""
    return FlagDefinition(
        id=str(flag.id),
        key=flag.key,
        name=flag.name,
        description=flag.description or "",
        enabled=flag.enabled,
        kill_switch=flag.kill_switch,
        rollout_strategy=flag.rollout_strategy,
        rollout_percentage=flag.rollout_percentage,
        segment_rules=flag.segment_rules,
        variants=flag.variants,
        environments=flag.environments,
        metadata=flag.flag_metadata,
        tenant_overrides=[to_override(state) for state in flag.tenant_states],
    )


def definition_columns(definition: FlagDefinition) -> dict[str, Any]:
    """Column values for a definition; segment rules are stored camelCase."""
    return {
        "key": definition.key,
        "name": definition.name or definition.key,
        "description": definition.description,
        "enabled": definition.enabled,
        "kill_switch": definition.kill_switch,
        "rollout_strategy": definition.rollout_strategy.value,
        "rollout_percentage": definition.rollout_percentage,
        "segment_rules": definition.segment_rules.model_dump(
            mode="json", by_alias=True, exclude_defaults=True
        ),
        "variants": [variant.model_dump(mode="json") for variant in definition.variants],
        "environments": list(definition.environments),
        "flag_metadata": dict(definition.metadata),
    }


class CRUDFeatureFlag:
    """
    CRUD operations for feature flags and their tenant overrides.

    Example:
        async with session_scope(factory) as db:
            flag = await crud_flag.get_by_key(db, "commerce.checkout-v2")
    """

    def _with_overrides(self):
        return select(FeatureFlag).options(selectinload(FeatureFlag.tenant_states))

    async def _get_row(self, db: AsyncSession, flag_id: str) -> FeatureFlag | None:
        query = self._with_overrides().where(FeatureFlag.id == uuid.UUID(flag_id))
        result = await db.execute(query)
        return result.scalar_one_or_none()

    async def get_all_with_overrides(self, db: AsyncSession) -> list[FlagDefinition]:
        """
        Get every flag with its overrides, ordered by key.

        Args:
            db: Database session.

        Returns:
            List of flag definitions.
        """
        query = self._with_overrides().order_by(FeatureFlag.key)
        result = await db.execute(query)
        return [to_definition(flag) for flag in result.scalars().all()]

    async def get_by_key(self, db: AsyncSession, key: str) -> FlagDefinition | None:
        """
        Get a flag by its unique key.

        Returns:
            The flag if found, None otherwise.
        """
        query = self._with_overrides().where(FeatureFlag.key == key)
        result = await db.execute(query)
        flag = result.scalar_one_or_none()
        return to_definition(flag) if flag else None

    async def create(self, db: AsyncSession, definition: FlagDefinition) -> FlagDefinition:
        """
        Insert a new flag.

        Returns:
            The stored definition with its generated id.
        """
        flag = FeatureFlag(**definition_columns(definition), tenant_states=[])
        db.add(flag)
        await db.flush()
        return to_definition(flag)

    async def update(
        self,
        db: AsyncSession,
        flag_id: str,
        definition: FlagDefinition,
    ) -> FlagDefinition:
        """
        Replace a flag's definition fields; overrides are untouched.

        Raises:
            LookupError: If the flag id does not exist.
        """
        flag = await self._get_row(db, flag_id)
        if flag is None:
            raise LookupError(f"Feature flag {flag_id} disappeared during update")

        for column, value in definition_columns(definition).items():
            setattr(flag, column, value)
        await db.flush()
        return to_definition(flag)

    # =========================================================================
    # Tenant Overrides
    # =========================================================================

    async def upsert_override(self, db: AsyncSession, override: TenantOverride) -> TenantOverride:
        """
        Insert or replace the override for (flag_id, tenant_id, environment).

        Raises:
            ValueError: If asked to store the "inherited" state.
        """
        if override.state == OverrideState.INHERITED:
            raise ValueError("Inherited overrides are removed, never stored")

        flag_uuid = uuid.UUID(override.flag_id)
        query = select(FeatureFlagTenantState).where(
            FeatureFlagTenantState.flag_id == flag_uuid,
            FeatureFlagTenantState.tenant_id == override.tenant_id,
            FeatureFlagTenantState.environment == override.environment,
        )
        state = (await db.execute(query)).scalar_one_or_none()

        if state is None:
            state = FeatureFlagTenantState(
                flag_id=flag_uuid,
                tenant_id=override.tenant_id,
                environment=override.environment,
            )
            db.add(state)

        state.state = override.state.value
        state.variant_key = override.variant_key
        state.state_metadata = dict(override.metadata)
        state.updated_by = override.updated_by
        await db.flush()
        return to_override(state)

    async def remove_override(
        self,
        db: AsyncSession,
        flag_id: str,
        tenant_id: str,
        environment: str,
    ) -> bool:
        """Delete one override. Returns True if a row was removed."""
        result = await db.execute(
            delete(FeatureFlagTenantState).where(
                FeatureFlagTenantState.flag_id == uuid.UUID(flag_id),
                FeatureFlagTenantState.tenant_id == tenant_id,
                FeatureFlagTenantState.environment == environment,
            )
        )
        return (result.rowcount or 0) > 0

    # =========================================================================
    # Audit Trail
    # =========================================================================

    async def record_audit(self, db: AsyncSession, entry: AuditEntry) -> None:
        """Append an audit record in the caller's transaction."""
        db.add(
            FeatureFlagAudit(
                flag_id=uuid.UUID(entry.flag_id),
                tenant_id=entry.tenant_id,
                environment=entry.environment,
                change_type=entry.change_type.value,
                payload=entry.payload,
                performed_by=entry.performed_by,
            )
        )
        await db.flush()


# Singleton instance for use throughout the application
crud_flag = CRUDFeatureFlag()
