"""
Feature Flag Governance.

Reconciles the declarative flag manifest into the durable store and gives
operators a way to force or clear per-tenant decisions.

Sync Algorithm:
    1. Normalise every manifest entry (defaults, ownership metadata, tenant defaults)
    2. Load every persisted definition with its overrides in one pass
    3. Plan: created / updated (field diff) / unchanged / orphaned, plus the
       tenant-default overrides that need creating or updating
    4. Dry run: return the plan's summary. Real run: apply the plan and its
       audit records inside one transaction, then force a flag refresh

Planning is a pure function of (manifest, persisted state), so a dry run
reports exactly what the following real run will do.
"""

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from switchboard.core.exceptions import ConflictError, NotFoundError, ValidationError
from switchboard.crud.base import FlagDefinitionWriter
from switchboard.schemas.definitions import (
    FlagDefinition,
    OverrideState,
    SegmentRules,
    TenantOverride,
)
from switchboard.schemas.governance import (
    AuditChangeType,
    AuditEntry,
    BootstrapSyncResult,
    FieldChange,
    ManifestFlag,
    ManifestTenantDefault,
    OverrideAction,
    OverrideChangeResult,
    RolloutView,
    SyncSummary,
    TenantFlagView,
    TenantSnapshot,
    TenantSnapshotSummary,
    UpdatedFlag,
    UserContext,
    build_user_context,
)
from switchboard.services.flag_service import FeatureFlagService
from switchboard.services.overrides import normalise_override_state, resolve_override

logger = logging.getLogger(__name__)

DEFAULT_ENVIRONMENTS = ["development", "staging", "production"]
OWNERSHIP_FIELDS = (
    "owner",
    "tags",
    "runbook",
    "docs",
    "escalation_channel",
    "jira_key",
    "experiment_id",
)
SCALAR_FIELDS = (
    "name",
    "description",
    "enabled",
    "kill_switch",
    "rollout_strategy",
    "rollout_percentage",
)
STRUCTURED_FIELDS = ("segment_rules", "variants", "environments", "metadata")

ManifestInput = ManifestFlag | Mapping[str, Any]


# =============================================================================
# Structural Comparison
# =============================================================================

def structurally_equal(left: Any, right: Any) -> bool:
    """
    Deep equality that ignores mapping key order.

    Sequences compare element-wise; booleans never equal numbers.
    """
    if isinstance(left, Mapping) and isinstance(right, Mapping):
        if set(left) != set(right):
            return False
        return all(structurally_equal(left[key], right[key]) for key in left)

    if isinstance(left, (list, tuple)) and isinstance(right, (list, tuple)):
        if len(left) != len(right):
            return False
        return all(structurally_equal(a, b) for a, b in zip(left, right))

    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right

    return left == right


def _drop_unset(values: Mapping[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


def canonical_field(definition: FlagDefinition, name: str) -> Any:
    """JSON-shaped value of one definition field, as compared and reported by diffs."""
    if name == "rollout_strategy":
        return definition.rollout_strategy.value
    if name == "segment_rules":
        return definition.segment_rules.model_dump(mode="json", by_alias=True, exclude_defaults=True)
    if name == "variants":
        return [variant.model_dump(mode="json") for variant in definition.variants]
    if name == "environments":
        return list(definition.environments)
    if name == "metadata":
        return dict(definition.metadata)
    return getattr(definition, name)


def compute_diff(existing: FlagDefinition, desired: FlagDefinition) -> dict[str, FieldChange]:
    """
    Field-by-field diff of two definitions.

    Returns:
        {field: FieldChange(previous, next)} for every differing field.
    """
    changes: dict[str, FieldChange] = {}
    for name in SCALAR_FIELDS:
        previous, current = canonical_field(existing, name), canonical_field(desired, name)
        if previous != current:
            changes[name] = FieldChange(previous=previous, next=current)

    for name in STRUCTURED_FIELDS:
        previous, current = canonical_field(existing, name), canonical_field(desired, name)
        if not structurally_equal(previous, current):
            changes[name] = FieldChange(previous=previous, next=current)

    return changes


def _override_differs(existing: TenantOverride, desired: TenantOverride) -> bool:
    return (
        existing.state != desired.state
        or existing.variant_key != desired.variant_key
        or not structurally_equal(existing.metadata, desired.metadata)
    )


def _find_exact_override(
    overrides: Iterable[TenantOverride],
    tenant_id: str,
    environment: str,
) -> TenantOverride | None:
    # Stored rows are unique per (tenant, environment); wildcards are not expanded here
    return next(
        (o for o in overrides if o.tenant_id == tenant_id and o.environment.lower() == environment.lower()),
        None,
    )


def _override_payload(override: TenantOverride | None) -> dict[str, Any] | None:
    if override is None:
        return None
    return override.model_dump(mode="json", include={"tenant_id", "environment", "state", "variant_key", "metadata"})


# =============================================================================
# Sync Plan
# =============================================================================

@dataclass
class NormalisedFlag:
    """A manifest entry after normalisation."""

    definition: FlagDefinition
    tenant_defaults: list[TenantOverride] = field(default_factory=list)


@dataclass
class PlannedOverride:
    flag_key: str
    override: TenantOverride
    previous: TenantOverride | None
    change_type: AuditChangeType


@dataclass
class SyncPlan:
    summary: SyncSummary
    flag_ids: dict[str, str] = field(default_factory=dict)
    creates: list[FlagDefinition] = field(default_factory=list)
    updates: list[tuple[FlagDefinition, FlagDefinition, dict[str, FieldChange]]] = field(default_factory=list)
    overrides: list[PlannedOverride] = field(default_factory=list)


class FeatureFlagGovernanceService:
    """
    Governance over persisted flag definitions and tenant overrides.

    Usage:
        governance = FeatureFlagGovernanceService(store, flag_service, manifest=DEFAULT_MANIFEST)
        preview = await governance.sync_definitions(actor="ops@acme", dry_run=True)
        summary = await governance.sync_definitions(actor="ops@acme")
    """

    def __init__(
        self,
        store: FlagDefinitionWriter,
        flag_service: FeatureFlagService,
        manifest: Sequence[ManifestInput] = (),
        default_actor: str = "system-bootstrap",
        default_environment: str = "production",
        sync_on_bootstrap: bool = True,
    ) -> None:
        self.store = store
        self.flag_service = flag_service
        self.manifest = list(manifest)
        self.default_actor = default_actor
        self.default_environment = default_environment.lower()
        self.sync_on_bootstrap = sync_on_bootstrap

    # =========================================================================
    # Normalisation
    # =========================================================================

    def normalise_definition(self, raw: ManifestInput) -> NormalisedFlag:
        """
        Normalise one manifest entry into a canonical definition.

        Raises:
            ValidationError: Missing key, malformed fields, or an invalid tenant default.
        """
        try:
            entry = raw if isinstance(raw, ManifestFlag) else ManifestFlag.model_validate(raw)
        except PydanticValidationError as e:
            key = raw.get("key") if isinstance(raw, Mapping) else None
            raise ValidationError(
                f'Feature flag manifest entry "{key}" is invalid: {e}',
                details={"key": key},
            )

        if not entry.key:
            raise ValidationError("Feature flag definition is missing a key.")

        metadata = dict(entry.metadata)
        for name in OWNERSHIP_FIELDS:
            if metadata.get(name) is None:
                metadata[name] = getattr(entry, name)

        try:
            definition = FlagDefinition(
                key=entry.key,
                name=entry.name or entry.key,
                description=entry.description or "",
                enabled=entry.enabled,
                kill_switch=entry.kill_switch,
                rollout_strategy=entry.rollout_strategy or "boolean",
                rollout_percentage=100 if entry.rollout_percentage is None else entry.rollout_percentage,
                segment_rules=entry.segment_rules or SegmentRules(),
                variants=entry.variants,
                environments=entry.environments or list(DEFAULT_ENVIRONMENTS),
                metadata=_drop_unset(metadata),
            )
        except PydanticValidationError as e:
            raise ValidationError(
                f'Feature flag manifest entry "{entry.key}" is invalid: {e}',
                details={"key": entry.key},
            )

        tenant_defaults = [
            self.normalise_tenant_default(entry.key, default) for default in entry.tenant_defaults
        ]
        return NormalisedFlag(definition=definition, tenant_defaults=tenant_defaults)

    def normalise_tenant_default(self, flag_key: str, default: ManifestTenantDefault) -> TenantOverride:
        """Turn a manifest tenant default into a managed override record."""
        if not default.tenant_id:
            raise ValidationError(
                f'Manifest tenant default for flag "{flag_key}" is missing tenant_id.',
                details={"key": flag_key},
            )

        try:
            state = normalise_override_state(default.state or "enabled")
        except ValueError as e:
            raise ValidationError(f'Manifest tenant default for flag "{flag_key}": {e}')

        if state is None or state == OverrideState.INHERITED:
            raise ValidationError(
                f'Manifest tenant default for flag "{flag_key}" must resolve to a concrete state.',
                details={"key": flag_key, "tenant_id": default.tenant_id},
            )

        metadata = _drop_unset({
            **default.metadata,
            "managed": True,
            "notes": default.notes or default.metadata.get("notes"),
        })
        return TenantOverride(
            tenant_id=default.tenant_id,
            environment=(default.environment or "production").lower(),
            state=state,
            variant_key=default.variant_key,
            metadata=metadata,
        )

    def normalise_manifest(self, manifest: Iterable[ManifestInput]) -> list[NormalisedFlag]:
        """
        Normalise a whole manifest.

        Raises:
            ValidationError: An entry is invalid.
            ConflictError: Two entries declare the same key.
        """
        normalised: list[NormalisedFlag] = []
        seen: set[str] = set()
        for raw in manifest:
            entry = self.normalise_definition(raw)
            key = entry.definition.key
            if key in seen:
                raise ConflictError(
                    "Feature flag",
                    message=f'Feature flag "{key}" is declared more than once in the manifest.',
                    details={"key": key},
                )
            seen.add(key)
            normalised.append(entry)
        return normalised

    # =========================================================================
    # Sync
    # =========================================================================

    def plan_sync(
        self,
        desired: Sequence[NormalisedFlag],
        existing: Sequence[FlagDefinition],
        actor: str,
        dry_run: bool,
    ) -> SyncPlan:
        """
        Compute everything a sync would do without touching the store.

        Args:
            desired: Normalised manifest.
            existing: Persisted definitions with their overrides.
            actor: Who is syncing.
            dry_run: Only recorded on the summary.

        Returns:
            SyncPlan with the summary and the writes to perform.
        """
        plan = SyncPlan(summary=SyncSummary(actor=actor, dry_run=dry_run, total=len(desired)))
        summary = plan.summary
        existing_by_key = {flag.key: flag for flag in existing}
        manifest_keys = {entry.definition.key for entry in desired}
        plan.flag_ids = {flag.key: flag.id for flag in existing if flag.id}

        summary.orphaned = [flag.key for flag in existing if flag.key not in manifest_keys]

        for entry in desired:
            definition = entry.definition
            current = existing_by_key.get(definition.key)

            if current is None:
                summary.created.append(definition.key)
                plan.creates.append(definition)
            else:
                changes = compute_diff(current, definition)
                if changes:
                    summary.updated.append(UpdatedFlag(key=definition.key, changes=changes))
                    plan.updates.append((current, definition, changes))
                else:
                    summary.unchanged.append(definition.key)

            current_overrides = current.tenant_overrides if current is not None else []
            for desired_override in entry.tenant_defaults:
                # A wildcard row that already yields the same decision needs no action
                effective = resolve_override(
                    current_overrides, desired_override.tenant_id, desired_override.environment
                )
                if effective is not None and not _override_differs(effective, desired_override):
                    continue

                match = _find_exact_override(
                    current_overrides, desired_override.tenant_id, desired_override.environment
                )

                action = OverrideAction(
                    flag_key=definition.key,
                    tenant_id=desired_override.tenant_id,
                    environment=desired_override.environment,
                    state=desired_override.state.value,
                )
                if match is None:
                    summary.overrides_created.append(action)
                    change_type = AuditChangeType.TENANT_OVERRIDE_CREATED
                else:
                    summary.overrides_updated.append(action)
                    change_type = AuditChangeType.TENANT_OVERRIDE_UPDATED
                plan.overrides.append(
                    PlannedOverride(
                        flag_key=definition.key,
                        override=desired_override,
                        previous=match,
                        change_type=change_type,
                    )
                )

        return plan

    async def sync_definitions(
        self,
        actor: str | None = None,
        dry_run: bool = False,
        manifest: Sequence[ManifestInput] | None = None,
    ) -> SyncSummary:
        """
        Reconcile the manifest into the durable store.

        Args:
            actor: Who is syncing (defaults to the bootstrap actor).
            dry_run: Plan only; no writes and no audit records.
            manifest: Entries to sync instead of the configured manifest.

        Returns:
            SyncSummary of created/updated/unchanged/orphaned flags and override actions.

        Raises:
            ValidationError: A manifest entry is invalid; nothing is written.
            ConflictError: A key is declared twice; nothing is written.
        """
        actor = actor or self.default_actor
        desired = self.normalise_manifest(self.manifest if manifest is None else manifest)

        async with self.store.transaction() as tx:
            existing = await self.store.load_all_with_overrides(tx)
            plan = self.plan_sync(desired, existing, actor, dry_run)
            if not dry_run:
                await self._apply_plan(tx, plan, actor)

        summary = plan.summary
        if dry_run:
            logger.info(
                f"Feature flag manifest dry-run planned by {actor}: "
                f"{len(summary.created)} created, {len(summary.updated)} updated, "
                f"{len(summary.unchanged)} unchanged, {len(summary.orphaned)} orphaned"
            )
            return summary

        await self._refresh_flags("governance-sync")
        logger.info(
            f"Feature flag manifest synchronised by {actor}: "
            f"{len(summary.created)} created, {len(summary.updated)} updated, "
            f"{len(summary.unchanged)} unchanged, {len(summary.orphaned)} orphaned, "
            f"{len(summary.overrides_created)} overrides created, "
            f"{len(summary.overrides_updated)} overrides updated"
        )
        if summary.orphaned:
            logger.warning(f"Flags missing from the manifest need review: {', '.join(summary.orphaned)}")
        return summary

    async def _apply_plan(self, tx: Any, plan: SyncPlan, actor: str) -> None:
        flag_ids = dict(plan.flag_ids)

        for definition in plan.creates:
            created = await self.store.insert(tx, definition)
            flag_ids[created.key] = created.id
            await self.store.record_audit(
                tx,
                AuditEntry(
                    flag_id=created.id,
                    change_type=AuditChangeType.DEFINITION_CREATED,
                    payload={
                        "before": None,
                        "after": definition.model_dump(mode="json", exclude={"id", "tenant_overrides"}),
                    },
                    performed_by=actor,
                ),
            )

        for current, definition, changes in plan.updates:
            updated = await self.store.update(tx, current.id, definition)
            await self.store.record_audit(
                tx,
                AuditEntry(
                    flag_id=updated.id,
                    change_type=AuditChangeType.DEFINITION_UPDATED,
                    payload={
                        "before": {name: change.previous for name, change in changes.items()},
                        "after": {name: change.next for name, change in changes.items()},
                    },
                    performed_by=actor,
                ),
            )

        for planned in plan.overrides:
            flag_id = flag_ids[planned.flag_key]
            stored = await self.store.upsert_override(
                tx,
                planned.override.model_copy(update={"flag_id": flag_id, "updated_by": actor}),
            )
            await self.store.record_audit(
                tx,
                AuditEntry(
                    flag_id=flag_id,
                    change_type=planned.change_type,
                    tenant_id=stored.tenant_id,
                    environment=stored.environment,
                    payload={
                        "before": _override_payload(planned.previous),
                        "after": _override_payload(stored),
                    },
                    performed_by=actor,
                ),
            )

    async def ensure_bootstrap_sync(self, actor: str | None = None, force: bool = False) -> BootstrapSyncResult:
        """Run a real sync at start-up unless disabled by configuration."""
        if not force and not self.sync_on_bootstrap:
            logger.info("Feature flag bootstrap sync disabled via configuration.")
            return BootstrapSyncResult(skipped=True)

        summary = await self.sync_definitions(actor=actor or self.default_actor, dry_run=False)
        return BootstrapSyncResult(skipped=False, summary=summary)

    # =========================================================================
    # Operator Overrides
    # =========================================================================

    async def apply_tenant_override(
        self,
        flag_key: str,
        tenant_id: str | None,
        environment: str | None = None,
        state: str | OverrideState | None = None,
        variant_key: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        notes: str | None = None,
        actor: str | None = None,
        user_context: UserContext | None = None,
    ) -> OverrideChangeResult:
        """
        Force a flag on or off for one tenant in one environment.

        An ``inherited`` state removes the override instead.

        Raises:
            ValidationError: Missing tenant id, missing or unknown state.
            NotFoundError: Unknown flag key.
        """
        if not tenant_id:
            raise ValidationError("tenant_id is required when applying an override.")

        try:
            normalised_state = normalise_override_state(state)
        except ValueError as e:
            raise ValidationError(str(e), details={"state": str(state)})
        if normalised_state is None:
            raise ValidationError("Override state is required.")

        if normalised_state == OverrideState.INHERITED:
            return await self.remove_tenant_override(
                flag_key, tenant_id, environment=environment, actor=actor, user_context=user_context
            )

        actor = actor or self.default_actor
        environment = (environment or self.default_environment).lower()

        async with self.store.transaction() as tx:
            flag = await self.store.find_by_key(tx, flag_key)
            if flag is None:
                raise NotFoundError(resource="Feature flag", identifier=flag_key)

            previous = _find_exact_override(flag.tenant_overrides, tenant_id, environment)
            stored = await self.store.upsert_override(
                tx,
                TenantOverride(
                    flag_id=flag.id,
                    tenant_id=tenant_id,
                    environment=environment,
                    state=normalised_state,
                    variant_key=variant_key,
                    metadata=_drop_unset({**(metadata or {}), "notes": notes}),
                    updated_by=actor,
                ),
            )
            await self.store.record_audit(
                tx,
                AuditEntry(
                    flag_id=flag.id,
                    change_type=AuditChangeType.TENANT_OVERRIDE_APPLIED,
                    tenant_id=tenant_id,
                    environment=environment,
                    payload={"before": _override_payload(previous), "after": _override_payload(stored)},
                    performed_by=actor,
                ),
            )

        logger.info(f"Applied {normalised_state.value} override on '{flag_key}' for {tenant_id}/{environment} by {actor}")
        await self._refresh_flags("tenant-override-applied")

        evaluation = self.flag_service.evaluate(
            flag_key,
            build_user_context(tenant_id, environment, user_context),
            include_definition=True,
        )
        return OverrideChangeResult(override=stored, evaluation=evaluation)

    async def remove_tenant_override(
        self,
        flag_key: str,
        tenant_id: str | None,
        environment: str | None = None,
        actor: str | None = None,
        user_context: UserContext | None = None,
    ) -> OverrideChangeResult:
        """
        Remove the override for one tenant in one environment.

        Raises:
            ValidationError: Missing tenant id.
            NotFoundError: Unknown flag key.
        """
        if not tenant_id:
            raise ValidationError("tenant_id is required when removing an override.")

        actor = actor or self.default_actor
        environment = (environment or self.default_environment).lower()

        async with self.store.transaction() as tx:
            flag = await self.store.find_by_key(tx, flag_key)
            if flag is None:
                raise NotFoundError(resource="Feature flag", identifier=flag_key)

            removed = await self.store.remove_override(tx, flag.id, tenant_id, environment)
            if removed:
                await self.store.record_audit(
                    tx,
                    AuditEntry(
                        flag_id=flag.id,
                        change_type=AuditChangeType.TENANT_OVERRIDE_REMOVED,
                        tenant_id=tenant_id,
                        environment=environment,
                        payload={"before": {"tenant_id": tenant_id, "environment": environment}, "after": None},
                        performed_by=actor,
                    ),
                )

        if removed:
            logger.info(f"Removed override on '{flag_key}' for {tenant_id}/{environment} by {actor}")
        await self._refresh_flags("tenant-override-removed")

        evaluation = self.flag_service.evaluate(
            flag_key,
            build_user_context(tenant_id, environment, user_context),
            include_definition=True,
        )
        return OverrideChangeResult(override=None, evaluation=evaluation)

    # =========================================================================
    # Tenant Snapshot
    # =========================================================================

    async def generate_tenant_snapshot(
        self,
        tenant_id: str | None = None,
        environment: str | None = None,
        include_inactive: bool = True,
        user_context: UserContext | None = None,
    ) -> TenantSnapshot:
        """
        Evaluate every persisted flag for one tenant.

        Args:
            tenant_id: Tenant to evaluate for (None evaluates without overrides).
            environment: Environment (defaults to the service default).
            include_inactive: Keep disabled flags in the listing.
            user_context: Optional user, role and attributes.

        Returns:
            TenantSnapshot with per-flag views and enabled/disabled/overridden counts.
        """
        environment = (environment or self.default_environment).lower()
        async with self.store.transaction() as tx:
            flags = await self.store.load_all_with_overrides(tx)

        evaluations = self.flag_service.evaluate_all(
            build_user_context(tenant_id, environment, user_context),
            include_definition=True,
        )

        items: list[TenantFlagView] = []
        for flag in flags:
            evaluation = evaluations.get(flag.key)
            if evaluation is None:
                # Persisted but not yet in the cached snapshot
                evaluation = self.flag_service.evaluate(flag.key, build_user_context(tenant_id, environment, user_context))

            if not include_inactive and not evaluation.enabled:
                continue

            fallback_override = (
                resolve_override(flag.tenant_overrides, tenant_id, environment) if tenant_id else None
            )
            items.append(
                TenantFlagView(
                    key=flag.key,
                    name=flag.name,
                    description=flag.description,
                    enabled=evaluation.enabled,
                    reason=evaluation.reason.value,
                    variant=evaluation.variant,
                    overridden=evaluation.overridden,
                    override=evaluation.override or fallback_override,
                    rollout=RolloutView(
                        strategy=flag.rollout_strategy.value,
                        percentage=flag.rollout_percentage,
                        segment_rules=canonical_field(flag, "segment_rules"),
                    ),
                    environments=flag.environments,
                    metadata=flag.metadata,
                    managed_tenant_defaults=[o for o in flag.tenant_overrides if o.metadata.get("managed")],
                    evaluated_at=evaluation.evaluated_at,
                )
            )

        summary = TenantSnapshotSummary(
            total=len(items),
            enabled=sum(1 for item in items if item.enabled),
            disabled=sum(1 for item in items if not item.enabled),
            overridden=sum(1 for item in items if item.overridden),
        )
        return TenantSnapshot(
            tenant_id=tenant_id,
            environment=environment,
            generated_at=datetime.now(timezone.utc),
            summary=summary,
            flags=items,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _refresh_flags(self, reason: str) -> None:
        """Force a flag refresh; the write already committed, so failure is only logged."""
        try:
            await self.flag_service.refresh(force=True, reason=reason)
        except Exception as e:
            logger.error(f"Flag refresh after {reason} failed; cache will catch up on its next refresh: {e}")
