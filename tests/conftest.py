"""
Test configuration and fixtures.
"""

from datetime import datetime, timezone

import pytest

from fakes import FakeClock, InMemoryConfigStore, InMemoryDistributedCache, InMemoryFlagStore
from switchboard.schemas.definitions import (
    ConfigEntry,
    ExposureLevel,
    FlagDefinition,
    FlagVariant,
    OverrideState,
    RolloutStrategy,
    SegmentRules,
    TenantOverride,
    ValueType,
)
from switchboard.services.evaluator import FlagEvaluator
from switchboard.services.flag_service import FeatureFlagService
from switchboard.services.runtime_config import RuntimeConfigService

FIXED_NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def anyio_backend():
    """Use asyncio for async tests."""
    return "asyncio"


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def evaluator() -> FlagEvaluator:
    return FlagEvaluator(
        environment_aliases={"test": ["development"]},
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# =============================================================================
# Sample Data
# =============================================================================

@pytest.fixture
def sample_flags() -> list[FlagDefinition]:
    """
    A small flag catalogue.

    Buckets used by the tests (SHA-1 of "key:subject"):
        checkout.v2   user-123 -> 58, user-1 -> 39, user-3 -> 10
        admin.console user-1 -> 61, user-2 -> 19
    """
    return [
        FlagDefinition(
            key="checkout.v2",
            name="Checkout v2",
            rollout_strategy=RolloutStrategy.PERCENTAGE,
            rollout_percentage=45,
            environments=["staging", "production"],
            variants=[FlagVariant(key="control", weight=50), FlagVariant(key="express", weight=50)],
            tenant_overrides=[
                TenantOverride(tenant_id="acme", environment="production", state=OverrideState.FORCED_ON),
                TenantOverride(tenant_id="globex", environment="all", state=OverrideState.FORCED_OFF),
            ],
        ),
        FlagDefinition(
            key="admin.console",
            name="Admin console",
            rollout_strategy=RolloutStrategy.SEGMENT,
            segment_rules=SegmentRules(allowed_roles=["admin"], min_app_version="2.4.0"),
        ),
        FlagDefinition(
            key="legacy.sync",
            name="Legacy sync",
            enabled=False,
        ),
    ]


@pytest.fixture
def sample_config_entries() -> list[ConfigEntry]:
    return [
        ConfigEntry(
            key="support.contact-email",
            environment_scope="global",
            value="support@example.com",
            exposure_level=ExposureLevel.PUBLIC,
        ),
        ConfigEntry(
            key="checkout.max-items",
            environment_scope="production",
            value_type=ValueType.NUMBER,
            value="25",
            exposure_level=ExposureLevel.OPS,
        ),
        ConfigEntry(
            key="checkout.max-items",
            environment_scope="global",
            value_type=ValueType.NUMBER,
            value="10",
            exposure_level=ExposureLevel.PUBLIC,
        ),
        ConfigEntry(
            key="payments.webhook-secret",
            environment_scope="global",
            value="whsec_123",
            exposure_level=ExposureLevel.PRIVATE,
            sensitive=True,
        ),
        ConfigEntry(
            key="ops.banner",
            environment_scope="global",
            value_type=ValueType.JSON,
            value='{"message": "Maintenance at 02:00 UTC", "level": "info"}',
            exposure_level=ExposureLevel.OPS,
        ),
    ]


# =============================================================================
# Stores and Services
# =============================================================================

@pytest.fixture
def flag_store(sample_flags) -> InMemoryFlagStore:
    return InMemoryFlagStore(sample_flags)


@pytest.fixture
def config_store(sample_config_entries) -> InMemoryConfigStore:
    return InMemoryConfigStore(sample_config_entries)


@pytest.fixture
def distributed() -> InMemoryDistributedCache:
    return InMemoryDistributedCache()


@pytest.fixture
async def flag_service(flag_store, evaluator, clock):
    service = FeatureFlagService(
        reader=flag_store,
        evaluator=evaluator,
        default_environment="production",
        ttl_seconds=30,
        clock=clock,
    )
    await service.start()
    yield service
    await service.stop()


@pytest.fixture
async def config_service(config_store, clock):
    service = RuntimeConfigService(
        reader=config_store,
        default_environment="production",
        ttl_seconds=45,
        clock=clock,
    )
    await service.start()
    yield service
    await service.stop()
