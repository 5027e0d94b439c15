"""
Tests for the operator CLI.
"""

import json

import pytest

from fakes import InMemoryStore
from switchboard.cli import create_parser, filter_keys, main, mask_sensitive_values, run_snapshot, run_sync
from switchboard.container import build_container
from switchboard.core.config import Settings
from switchboard.core.exceptions import NotFoundError, ValidationError
from switchboard.core.manifest import load_manifest


@pytest.fixture
def store(sample_flags, sample_config_entries) -> InMemoryStore:
    return InMemoryStore(flags=sample_flags, entries=sample_config_entries)


@pytest.fixture
def container(store):
    settings = Settings(
        FEATURE_FLAG_DEFAULT_ENVIRONMENT="production",
        FEATURE_FLAG_REFRESH_INTERVAL_SECONDS=0,
        RUNTIME_CONFIG_REFRESH_INTERVAL_SECONDS=0,
    )
    return build_container(settings, store=store, distributed=None, manifest=load_manifest())


def snapshot_args(*extra: str):
    return create_parser().parse_args(["snapshot", *extra])


class TestParser:
    def test_snapshot_defaults(self):
        args = snapshot_args()

        assert args.audience == "ops"
        assert args.mask_sensitive is True
        assert args.include_flags is True
        assert args.include_configs is True
        assert args.flags == []
        assert args.format == "log"

    def test_repeatable_filters(self):
        args = snapshot_args("--flag", "a", "--flag", "b", "--config", "c", "--no-mask", "--no-flags")

        assert args.flags == ["a", "b"]
        assert args.configs == ["c"]
        assert args.mask_sensitive is False
        assert args.include_flags is False

    def test_sync(self):
        args = create_parser().parse_args(["sync", "--dry-run", "--actor", "release-bot"])
        assert args.dry_run is True
        assert args.actor == "release-bot"

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "snapshot" in capsys.readouterr().out


class TestHelpers:
    def test_mask_sensitive_values(self):
        entries = {"a": {"value": "secret", "sensitive": True}, "b": {"value": "plain", "sensitive": False}}

        masked = mask_sensitive_values(entries)

        assert masked["a"] == {"value": "***", "sensitive": True, "masked": True}
        assert masked["b"] == {"value": "plain", "sensitive": False}
        assert mask_sensitive_values(entries, enabled=False)["a"]["value"] == "secret"

    def test_filter_keys_is_case_insensitive(self):
        filtered, missing = filter_keys({"Checkout.V2": 1, "other": 2}, ["checkout.v2"], "Feature flag")

        assert filtered == {"Checkout.V2": 1}
        assert missing == []

    def test_filter_keys_reports_missing(self):
        filtered, missing = filter_keys({"a": 1}, ["a", "b"], "Runtime config")

        assert filtered == {"a": 1}
        assert missing == ["b"]

    def test_filter_keys_strict(self):
        with pytest.raises(NotFoundError, match="Runtime config keys not found: b"):
            filter_keys({"a": 1}, ["b"], "Runtime config", strict=True)

    def test_empty_filter_keeps_everything(self):
        assert filter_keys({"a": 1, "b": 2}, [], "Feature flag") == ({"a": 1, "b": 2}, [])


class TestSnapshotCommand:
    async def test_ops_snapshot(self, container):
        payload = await run_snapshot(snapshot_args(), container=container)

        assert payload["environment"] == "production"
        assert payload["audience"] == "ops"
        assert set(payload["feature_flags"]) == {"checkout.v2", "admin.console", "legacy.sync"}
        assert payload["feature_flags"]["checkout.v2"]["definition"]["key"] == "checkout.v2"
        assert set(payload["runtime_config"]) == {"support.contact-email", "checkout.max-items", "ops.banner"}
        assert payload["stats"] == {"feature_flag_count": 3, "runtime_config_count": 3}

    async def test_sensitive_values_are_masked(self, container):
        args = snapshot_args("--audience", "internal", "--include-sensitive", "--no-flags")

        payload = await run_snapshot(args, container=container)

        secret = payload["runtime_config"]["payments.webhook-secret"]
        assert secret["value"] == "***"
        assert secret["masked"] is True
        assert "feature_flags" not in payload

    async def test_unmasked(self, container):
        args = snapshot_args("--audience", "internal", "--include-sensitive", "--no-mask")

        payload = await run_snapshot(args, container=container)

        assert payload["runtime_config"]["payments.webhook-secret"]["value"] == "whsec_123"

    async def test_sensitive_requires_internal(self, container):
        with pytest.raises(ValidationError):
            await run_snapshot(snapshot_args("--include-sensitive"), container=container)

    async def test_strict_missing_flag(self, container):
        with pytest.raises(NotFoundError):
            await run_snapshot(snapshot_args("--flag", "nope", "--strict"), container=container)

    async def test_filtered_json_output(self, container, tmp_path, capsys):
        output = tmp_path / "out" / "snapshot.json"
        args = snapshot_args(
            "--flag", "CHECKOUT.V2", "--flag", "nope", "--config", "ops.banner",
            "--format", "json", "--output", str(output),
        )

        payload = await run_snapshot(args, container=container)

        assert list(payload["feature_flags"]) == ["checkout.v2"]
        assert payload["missing_flags"] == ["nope"]
        assert list(payload["runtime_config"]) == ["ops.banner"]
        assert json.loads(output.read_text(encoding="utf-8"))["missing_flags"] == ["nope"]
        assert json.loads(capsys.readouterr().out)["audience"] == "ops"


class TestSyncCommand:
    async def test_dry_run_writes_nothing(self, container, store, capsys):
        args = create_parser().parse_args(["sync", "--dry-run", "--actor", "release-bot"])

        payload = await run_sync(args, container=container)

        assert payload["dry_run"] is True
        assert payload["actor"] == "release-bot"
        assert len(payload["created"]) == 4
        assert sorted(payload["orphaned"]) == ["admin.console", "checkout.v2", "legacy.sync"]
        assert store.audits == []
        assert json.loads(capsys.readouterr().out)["dry_run"] is True

    async def test_real_sync(self, container, store):
        args = create_parser().parse_args(["sync"])

        payload = await run_sync(args, container=container)

        assert payload["actor"] == "system-bootstrap"
        assert store.by_key("commerce.checkout-v2") is not None
