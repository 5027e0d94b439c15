"""
Pydantic Schemas for Flag Governance.

Covers the declarative manifest (what operators want), the sync summary
(what a sync did or would do), audit entries, and the operator override
requests.

Manifest entries accept both snake_case and camelCase keys so JSON manifests
written for other tooling load unchanged.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from switchboard.schemas.definitions import FlagVariant, SegmentRules, TenantOverride
from switchboard.schemas.evaluate import EvaluationContext


# =============================================================================
# Manifest
# =============================================================================

class ManifestTenantDefault(BaseModel):
    """
    A tenant override declared in the manifest.

    ``state`` keeps the raw operator spelling; it is normalised (and
    rejected if it resolves to ``inherited``) during sync.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    tenant_id: str | None = None
    environment: str | None = None
    state: str | None = None
    variant_key: str | None = None
    notes: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ManifestFlag(BaseModel):
    """
    A flag as declared in the governance manifest.

    Ownership fields (owner, tags, runbook...) may be given at the top level
    or inside ``metadata``; values inside ``metadata`` win.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    key: str | None = None
    name: str | None = None
    description: str | None = None
    enabled: bool = True
    kill_switch: bool = False
    rollout_strategy: str | None = None
    rollout_percentage: int | None = None
    segment_rules: SegmentRules | None = None
    variants: list[FlagVariant] = Field(default_factory=list)
    environments: list[str] = Field(default_factory=list)
    owner: str | None = None
    tags: list[str] = Field(default_factory=list)
    runbook: str | None = None
    docs: str | None = None
    escalation_channel: str | None = None
    jira_key: str | None = None
    experiment_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    tenant_defaults: list[ManifestTenantDefault] = Field(default_factory=list)


# =============================================================================
# Audit Trail
# =============================================================================

class AuditChangeType(str, Enum):
    """Change types recorded in the append-only audit trail."""

    DEFINITION_CREATED = "definition-created"
    DEFINITION_UPDATED = "definition-updated"
    TENANT_OVERRIDE_CREATED = "tenant-override-created"
    TENANT_OVERRIDE_UPDATED = "tenant-override-updated"
    TENANT_OVERRIDE_APPLIED = "tenant-override-applied"
    TENANT_OVERRIDE_REMOVED = "tenant-override-removed"


class AuditEntry(BaseModel):
    """
    One audit record, written in the same transaction as the change.

    Attributes:
        flag_id: Flag the change applies to.
        change_type: What happened.
        payload: Before/after snapshot of the change.
        performed_by: Actor (operator id or "system-bootstrap").
    """

    flag_id: str
    change_type: AuditChangeType
    tenant_id: str | None = None
    environment: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    performed_by: str


# =============================================================================
# Sync Summary
# =============================================================================

class FieldChange(BaseModel):
    """Previous and next value of one changed definition field."""

    previous: Any = None
    next: Any = None


class UpdatedFlag(BaseModel):
    key: str
    changes: dict[str, FieldChange]


class OverrideAction(BaseModel):
    flag_key: str
    tenant_id: str
    environment: str
    state: str


class SyncSummary(BaseModel):
    """
    Result of a governance sync.

    A dry run produces exactly the summary the following real run will
    produce, given unchanged inputs.
    """

    actor: str
    dry_run: bool = False
    total: int = 0
    created: list[str] = Field(default_factory=list)
    updated: list[UpdatedFlag] = Field(default_factory=list)
    unchanged: list[str] = Field(default_factory=list)
    overrides_created: list[OverrideAction] = Field(default_factory=list)
    overrides_updated: list[OverrideAction] = Field(default_factory=list)
    orphaned: list[str] = Field(default_factory=list)

    def diff_view(self) -> dict[str, Any]:
        """The summary without run-specific fields, for comparing runs."""
        return self.model_dump(mode="json", exclude={"dry_run"})


class BootstrapSyncResult(BaseModel):
    skipped: bool
    summary: SyncSummary | None = None


# =============================================================================
# Operator Requests / Responses
# =============================================================================

class UserContext(BaseModel):
    """Optional subject details used for the post-change evaluation."""

    user_id: str | None = None
    role: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)


class SyncRequest(BaseModel):
    actor: str | None = None
    dry_run: bool = False


class ApplyOverrideRequest(BaseModel):
    """
    Request schema for applying a tenant override.

    Example:
        PUT /api/v1/governance/flags/checkout.v2/overrides
        {"tenant_id": "acme", "environment": "production", "state": "enabled"}
    """

    tenant_id: str | None = None
    environment: str | None = None
    state: str | None = Field(default=None, examples=["forced_on", "disabled", "inherited"])
    variant_key: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    notes: str | None = None
    actor: str | None = None
    user_context: UserContext = Field(default_factory=UserContext)


class RemoveOverrideRequest(BaseModel):
    tenant_id: str | None = None
    environment: str | None = None
    actor: str | None = None
    user_context: UserContext = Field(default_factory=UserContext)


class OverrideChangeResult(BaseModel):
    """Result of an override change: the stored override (if any) and a fresh evaluation."""

    override: TenantOverride | None = None
    evaluation: Any


# =============================================================================
# Tenant Snapshot
# =============================================================================

class RolloutView(BaseModel):
    strategy: str
    percentage: int
    segment_rules: dict[str, Any] = Field(default_factory=dict)


class TenantFlagView(BaseModel):
    key: str
    name: str
    description: str
    enabled: bool
    reason: str
    variant: str | None = None
    overridden: bool = False
    override: TenantOverride | None = None
    rollout: RolloutView
    environments: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    managed_tenant_defaults: list[TenantOverride] = Field(default_factory=list)
    evaluated_at: datetime


class TenantSnapshotSummary(BaseModel):
    total: int
    enabled: int
    disabled: int
    overridden: int


class TenantSnapshot(BaseModel):
    tenant_id: str | None
    environment: str
    generated_at: datetime
    summary: TenantSnapshotSummary
    flags: list[TenantFlagView]


def build_user_context(
    tenant_id: str | None,
    environment: str,
    user_context: UserContext | None,
) -> EvaluationContext:
    """Evaluation context used after an override change or for a tenant snapshot."""
    user_context = user_context or UserContext()
    return EvaluationContext(
        environment=environment,
        tenant_id=tenant_id,
        user_id=user_context.user_id,
        role=user_context.role,
        attributes=user_context.attributes,
    )
