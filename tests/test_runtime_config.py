"""
Tests for runtime configuration reads.
"""

import pytest
from prometheus_client import REGISTRY

from fakes import InMemoryConfigStore
from switchboard.cache.snapshot import SnapshotSource
from switchboard.schemas.definitions import ConfigEntry, ExposureLevel, ValueType
from switchboard.schemas.runtime_config import Audience
from switchboard.services.runtime_config import RuntimeConfigService, build_entry_map, convert_config_value


class TestConvertConfigValue:
    """Tests for value conversion by declared type."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("25", 25), ("-3", -3), ("3.5", 3.5), ("2.0", 2.0), ("abc", None), ("", None)],
    )
    def test_number(self, raw, expected):
        value = convert_config_value(ConfigEntry(key="n", value_type=ValueType.NUMBER, value=raw))
        assert value == expected
        assert type(value) is type(expected)

    @pytest.mark.parametrize(("raw", "expected"), [("true", True), ("1", True), ("false", False), ("yes", False)])
    def test_boolean(self, raw, expected):
        assert convert_config_value(ConfigEntry(key="b", value_type=ValueType.BOOLEAN, value=raw)) is expected

    def test_json(self):
        entry = ConfigEntry(key="j", value_type=ValueType.JSON, value='{"limits": [1, 2]}')
        assert convert_config_value(entry) == {"limits": [1, 2]}

    def test_malformed_json(self):
        entry = ConfigEntry(key="j", value_type=ValueType.JSON, value="{not json")
        assert convert_config_value(entry) is None

    def test_string_passthrough(self):
        assert convert_config_value(ConfigEntry(key="s", value="hello")) == "hello"


class TestBuildEntryMap:
    def test_environment_scopes_sort_before_global(self):
        entries = [
            ConfigEntry(key="k", environment_scope="global", value="g"),
            ConfigEntry(key="k", environment_scope="staging", value="s"),
            ConfigEntry(key="k", environment_scope="production", value="p"),
            ConfigEntry(key="other", value="o"),
        ]
        grouped = build_entry_map(entries)

        assert [entry.environment_scope for entry in grouped["k"]] == ["production", "staging", "global"]
        assert len(grouped["other"]) == 1


class TestGetValue:
    """Tests for single-value resolution."""

    async def test_global_fallback(self, config_service):
        value = config_service.get_value("support.contact-email", environment="production", audience="public")
        assert value == "support@example.com"

    async def test_environment_scope_wins_when_visible(self, config_service):
        assert config_service.get_value("checkout.max-items", environment="production", audience="ops") == 25

    async def test_invisible_environment_scope_falls_back_to_global(self, config_service):
        """The production entry is ops-only; public readers get the global value."""
        assert config_service.get_value("checkout.max-items", environment="production", audience="public") == 10

    async def test_other_environment_uses_global(self, config_service):
        assert config_service.get_value("checkout.max-items", environment="staging", audience="ops") == 10

    async def test_environment_defaults_to_service_environment(self, config_service):
        assert config_service.get_value("checkout.max-items", audience=Audience.OPS) == 25

    async def test_private_requires_include_sensitive(self, config_service):
        assert config_service.get_value("payments.webhook-secret", audience="internal") is None
        assert (
            config_service.get_value("payments.webhook-secret", audience="internal", include_sensitive=True)
            == "whsec_123"
        )

    async def test_private_never_visible_to_ops(self, config_service):
        value = config_service.get_value("payments.webhook-secret", audience="ops", include_sensitive=True)
        assert value is None

    async def test_default_value(self, config_service):
        assert config_service.get_value("missing.key", default_value="fallback") == "fallback"
        assert config_service.get_value("ops.banner", audience="public", default_value=0) == 0

    async def test_unknown_audience_is_public(self, config_service):
        assert config_service.get_value("ops.banner", audience="partners") is None
        assert config_service.get_value("support.contact-email", audience="partners") == "support@example.com"

    def test_sensitive_environment_entry_falls_back(self, clock):
        entries = [
            ConfigEntry(
                key="maps.api-key",
                environment_scope="production",
                value="live-key",
                exposure_level=ExposureLevel.PUBLIC,
                sensitive=True,
            ),
            ConfigEntry(key="maps.api-key", value="demo-key", exposure_level=ExposureLevel.PUBLIC),
        ]
        service = RuntimeConfigService(
            reader=InMemoryConfigStore(entries), default_environment="production", ttl_seconds=45, clock=clock
        )
        service.coordinator.store.replace(build_entry_map(entries), version=1, source=SnapshotSource.PRIMARY)

        assert service.get_value("maps.api-key") == "demo-key"
        assert service.get_value("maps.api-key", include_sensitive=True) == "live-key"

    async def test_read_counter(self, config_service):
        labels = {"config_key": "missing.key", "environment": "production", "audience": "public", "result": "missing"}
        before = REGISTRY.get_sample_value("switchboard_runtime_config_reads_total", labels) or 0

        config_service.get_value("missing.key")

        assert REGISTRY.get_sample_value("switchboard_runtime_config_reads_total", labels) == before + 1


class TestListForAudience:
    """Tests for audience listings."""

    async def test_public(self, config_service):
        listing = config_service.list_for_audience("production", audience="public")

        assert set(listing) == {"support.contact-email", "checkout.max-items"}
        assert listing["checkout.max-items"].value == 10
        assert listing["checkout.max-items"].environment_scope == "global"

    async def test_ops(self, config_service):
        listing = config_service.list_for_audience("production", audience="ops")

        assert set(listing) == {"support.contact-email", "checkout.max-items", "ops.banner"}
        assert listing["checkout.max-items"].value == 25
        assert listing["ops.banner"].value == {"message": "Maintenance at 02:00 UTC", "level": "info"}

    async def test_private_entry_omitted_for_ops(self, config_service):
        listing = config_service.list_for_audience("production", audience="ops", include_sensitive=True)
        assert "payments.webhook-secret" not in listing

    async def test_internal_with_sensitive(self, config_service):
        without = config_service.list_for_audience("production", audience="internal")
        with_sensitive = config_service.list_for_audience("production", audience="internal", include_sensitive=True)

        assert "payments.webhook-secret" not in without
        secret = with_sensitive["payments.webhook-secret"]
        assert secret.value == "whsec_123"
        assert secret.sensitive is True
        assert secret.exposure_level == ExposureLevel.PRIVATE


class TestConfigRefresh:
    async def test_refresh_picks_up_new_entries(self, config_service, config_store):
        config_store.entries.append(ConfigEntry(key="new.key", value="v", exposure_level=ExposureLevel.PUBLIC))
        assert config_service.get_value("new.key") is None

        await config_service.refresh()

        assert config_service.get_value("new.key") == "v"
        assert config_store.load_calls == 2
