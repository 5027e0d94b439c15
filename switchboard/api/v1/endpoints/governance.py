"""
Flag Governance Endpoints.

Operator tooling: manifest sync, tenant overrides and tenant snapshots.
Validation failures are returned with their message verbatim.

Endpoints:
    POST   /governance/sync                          - Sync the manifest (or dry-run)
    PUT    /governance/flags/{flag_key}/overrides    - Apply a tenant override
    DELETE /governance/flags/{flag_key}/overrides    - Remove a tenant override
    GET    /governance/tenants/{tenant_id}/snapshot  - Evaluate every flag for a tenant
"""

from fastapi import APIRouter, Query

from switchboard.api.deps import GovernanceDep
from switchboard.schemas.governance import (
    ApplyOverrideRequest,
    OverrideChangeResult,
    SyncRequest,
    SyncSummary,
    TenantSnapshot,
)

router = APIRouter(prefix="/governance", tags=["governance"])


@router.post(
    "/sync",
    response_model=SyncSummary,
    summary="Synchronise the flag manifest",
    description="""
    Reconcile the manifest into the database.

    With `dry_run` the full diff is computed and returned but nothing is
    written; the following real run returns the same summary.
    """,
)
async def sync_manifest(
    request: SyncRequest,
    governance: GovernanceDep,
) -> SyncSummary:
    return await governance.sync_definitions(actor=request.actor, dry_run=request.dry_run)


@router.put(
    "/flags/{flag_key}/overrides",
    response_model=OverrideChangeResult,
    summary="Apply a tenant override",
)
async def apply_override(
    flag_key: str,
    request: ApplyOverrideRequest,
    governance: GovernanceDep,
) -> OverrideChangeResult:
    """
    Force a flag on or off for a tenant.

    A state of "inherited" removes the override instead.
    """
    return await governance.apply_tenant_override(
        flag_key,
        request.tenant_id,
        environment=request.environment,
        state=request.state,
        variant_key=request.variant_key,
        metadata=request.metadata,
        notes=request.notes,
        actor=request.actor,
        user_context=request.user_context,
    )


@router.delete(
    "/flags/{flag_key}/overrides",
    response_model=OverrideChangeResult,
    summary="Remove a tenant override",
)
async def remove_override(
    flag_key: str,
    governance: GovernanceDep,
    tenant_id: str | None = Query(default=None),
    environment: str | None = Query(default=None),
    actor: str | None = Query(default=None),
) -> OverrideChangeResult:
    return await governance.remove_tenant_override(
        flag_key,
        tenant_id,
        environment=environment,
        actor=actor,
    )


@router.get(
    "/tenants/{tenant_id}/snapshot",
    response_model=TenantSnapshot,
    summary="Evaluate every flag for a tenant",
)
async def tenant_snapshot(
    tenant_id: str,
    governance: GovernanceDep,
    environment: str | None = Query(default=None),
    include_inactive: bool = Query(default=True),
) -> TenantSnapshot:
    return await governance.generate_tenant_snapshot(
        tenant_id=tenant_id,
        environment=environment,
        include_inactive=include_inactive,
    )
