"""
Runtime Configuration Endpoints.

Endpoints:
    GET /runtime-config        - Every value visible to an audience
    GET /runtime-config/{key}  - One value
"""

from fastapi import APIRouter, Query

from switchboard.api.deps import RuntimeConfigDep
from switchboard.core.exceptions import NotFoundError, ValidationError
from switchboard.schemas.runtime_config import Audience, ConfigListResponse, ConfigValueResponse

router = APIRouter(prefix="/runtime-config", tags=["runtime-config"])

_MISSING = object()


def _check_sensitive_access(audience: Audience, include_sensitive: bool) -> None:
    if include_sensitive and audience != Audience.INTERNAL:
        raise ValidationError("include_sensitive is only allowed for the internal audience.")


@router.get(
    "",
    response_model=ConfigListResponse,
    summary="List runtime configuration for an audience",
)
async def list_runtime_config(
    config: RuntimeConfigDep,
    environment: str | None = Query(default=None, description="Defaults to the service environment"),
    audience: Audience = Query(default=Audience.PUBLIC),
    include_sensitive: bool = Query(default=False),
) -> ConfigListResponse:
    """
    List configuration values.

    Keys without an entry visible to the audience are omitted.
    """
    _check_sensitive_access(audience, include_sensitive)
    resolved_environment = (environment or config.default_environment).lower()
    return ConfigListResponse(
        environment=resolved_environment,
        audience=audience,
        entries=config.list_for_audience(
            resolved_environment, audience=audience, include_sensitive=include_sensitive
        ),
    )


@router.get(
    "/{key}",
    response_model=ConfigValueResponse,
    summary="Read one runtime configuration value",
)
async def get_runtime_config_value(
    key: str,
    config: RuntimeConfigDep,
    environment: str | None = Query(default=None),
    audience: Audience = Query(default=Audience.PUBLIC),
    include_sensitive: bool = Query(default=False),
) -> ConfigValueResponse:
    """
    Read one value, falling back from the environment scope to global.

    Raises:
        NotFoundError: If no entry is visible to the audience.
    """
    _check_sensitive_access(audience, include_sensitive)
    resolved_environment = (environment or config.default_environment).lower()
    value = config.get_value(
        key,
        environment=resolved_environment,
        audience=audience,
        include_sensitive=include_sensitive,
        default_value=_MISSING,
    )
    if value is _MISSING:
        raise NotFoundError(resource="Configuration entry", identifier=key)

    return ConfigValueResponse(
        key=key,
        environment=resolved_environment,
        audience=audience,
        value=value,
    )
