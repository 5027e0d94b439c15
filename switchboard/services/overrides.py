"""
Tenant Override Resolution.

Finds the most specific override for a (tenant, environment) pair:

    1. Candidates: overrides for the requested environment, then overrides
       whose environment is a wildcard (all / global / *)
    2. Among candidates, an exact tenant match wins
    3. Otherwise a wildcard tenant ("*") entry
    4. Otherwise None (the flag's own rollout applies)

Overrides are never applied without a concrete tenant.
"""

from collections.abc import Iterable

from switchboard.schemas.definitions import OverrideState, TenantOverride

WILDCARD_TENANT = "*"
WILDCARD_ENVIRONMENTS = frozenset({"all", "global", "*"})

_FORCED_ON_SPELLINGS = frozenset({"enabled", "on", "true", "force_on", "forced_on"})
_FORCED_OFF_SPELLINGS = frozenset({"disabled", "off", "false", "force_off", "forced_off"})
_INHERITED_SPELLINGS = frozenset({"inherited", "default", "unset", "remove"})


def resolve_override(
    overrides: Iterable[TenantOverride],
    tenant_id: str | None,
    environment: str | None,
) -> TenantOverride | None:
    """
    Resolve the applicable override for a tenant in an environment.

    Args:
        overrides: Override records attached to one flag.
        tenant_id: Calling tenant; resolution is skipped when absent.
        environment: Requested environment (case-insensitive).

    Returns:
        The matching override, or None when the tenant inherits the flag rollout.
    """
    if not tenant_id:
        return None

    requested = (environment or "production").lower()
    overrides = list(overrides)
    env_matches = [o for o in overrides if (o.environment or "").lower() == requested]
    wildcard_env = [
        o for o in overrides
        if (o.environment or "").lower() in WILDCARD_ENVIRONMENTS
    ]
    candidates = env_matches + wildcard_env

    for override in candidates:
        if override.tenant_id == tenant_id:
            return override
    for override in candidates:
        if override.tenant_id == WILDCARD_TENANT:
            return override
    return None


def normalise_override_state(state: str | OverrideState | None) -> OverrideState | None:
    """
    Map operator spellings onto an OverrideState.

    Returns None for a missing state. Unknown spellings raise ValueError.
    """
    if state is None or state == "":
        return None
    if isinstance(state, OverrideState):
        return state

    lowered = str(state).strip().lower()
    if lowered in _FORCED_ON_SPELLINGS:
        return OverrideState.FORCED_ON
    if lowered in _FORCED_OFF_SPELLINGS:
        return OverrideState.FORCED_OFF
    if lowered in _INHERITED_SPELLINGS:
        return OverrideState.INHERITED
    raise ValueError(f'Unknown override state "{state}".')
