"""
API Dependencies.

This module provides FastAPI dependencies for service injection. Services
come from the ServiceContainer the application lifespan stores on
``app.state``, so tests swap the whole engine by building a container over
in-memory fakes.
"""

from typing import Annotated

from fastapi import Depends, Request

from switchboard.container import ServiceContainer
from switchboard.core.exceptions import UpstreamUnavailableError
from switchboard.services.flag_service import FeatureFlagService
from switchboard.services.governance import FeatureFlagGovernanceService
from switchboard.services.runtime_config import RuntimeConfigService


def get_container(request: Request) -> ServiceContainer:
    """Dependency to get the process's service container."""
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise UpstreamUnavailableError("service container", message="Service is still starting")
    return container


Container = Annotated[ServiceContainer, Depends(get_container)]


# =============================================================================
# Service Dependencies
# =============================================================================

def get_flag_service(container: Container) -> FeatureFlagService:
    """
    Dependency to get the FeatureFlagService.

    Usage:
        @router.post("/evaluate")
        async def evaluate(flags: FlagServiceDep):
            ...
    """
    return container.flags


def get_runtime_config_service(container: Container) -> RuntimeConfigService:
    return container.runtime_config


def get_governance_service(container: Container) -> FeatureFlagGovernanceService:
    return container.governance


FlagServiceDep = Annotated[FeatureFlagService, Depends(get_flag_service)]
RuntimeConfigDep = Annotated[RuntimeConfigService, Depends(get_runtime_config_service)]
GovernanceDep = Annotated[FeatureFlagGovernanceService, Depends(get_governance_service)]
