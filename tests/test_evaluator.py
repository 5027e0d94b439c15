"""
Tests for the Flag Evaluator.

These tests verify the core flag evaluation logic, including:
    - Evaluation order (kill switch, toggle, environment, schedule, override)
    - Percentage, segment and schedule strategies
    - Variant selection
    - Version and timestamp parsing helpers
"""

from datetime import datetime, timedelta, timezone

import pytest
from prometheus_client import REGISTRY

from switchboard.schemas.definitions import (
    FlagDefinition,
    FlagVariant,
    OverrideState,
    RolloutStrategy,
    ScheduleWindow,
    SegmentRules,
    TenantOverride,
)
from switchboard.schemas.evaluate import EvaluationContext
from switchboard.services.evaluator import (
    EvaluationReason,
    FlagEvaluator,
    compare_versions,
    parse_timestamp,
)


def _checkout(**overrides) -> FlagDefinition:
    """45% percentage rollout. Buckets: user-123 -> 58, user-1 -> 39, user-3 -> 10."""
    values = {
        "key": "checkout.v2",
        "rollout_strategy": RolloutStrategy.PERCENTAGE,
        "rollout_percentage": 45,
        "variants": [FlagVariant(key="control", weight=50), FlagVariant(key="express", weight=50)],
    }
    values.update(overrides)
    return FlagDefinition(**values)


class TestEvaluationOrder:
    """Tests for the strict precedence of evaluation checks."""

    def test_kill_switch_beats_tenant_override(self, evaluator):
        flag = _checkout(
            kill_switch=True,
            tenant_overrides=[TenantOverride(tenant_id="acme", state=OverrideState.FORCED_ON)],
        )
        result = evaluator.evaluate_definition(flag, EvaluationContext(tenant_id="acme"), "production")

        assert result.enabled is False
        assert result.reason == EvaluationReason.KILL_SWITCH
        assert result.override is None
        assert result.variant is None

    def test_disabled_flag(self, evaluator):
        result = evaluator.evaluate_definition(
            FlagDefinition(key="legacy.sync", enabled=False), EvaluationContext(), "production"
        )
        assert result.enabled is False
        assert result.reason == EvaluationReason.DISABLED

    def test_disabled_beats_tenant_override(self, evaluator):
        flag = _checkout(
            enabled=False,
            tenant_overrides=[TenantOverride(tenant_id="acme", state=OverrideState.FORCED_ON)],
        )
        result = evaluator.evaluate_definition(flag, EvaluationContext(tenant_id="acme"), "production")
        assert result.reason == EvaluationReason.DISABLED

    def test_environment_not_allowed(self, evaluator):
        flag = _checkout(environments=["staging", "production"])
        result = evaluator.evaluate_definition(flag, EvaluationContext(user_id="user-1"), "development")

        assert result.enabled is False
        assert result.reason == EvaluationReason.ENVIRONMENT_NOT_ALLOWED

    def test_environment_match_is_case_insensitive(self, evaluator):
        flag = _checkout(environments=["Production"])
        result = evaluator.evaluate_definition(flag, EvaluationContext(user_id="user-1"), "PRODUCTION")
        assert result.enabled is True

    def test_environment_alias(self, evaluator):
        """The test environment also counts as development."""
        flag = FlagDefinition(key="dev.tools", environments=["development"])
        result = evaluator.evaluate_definition(flag, EvaluationContext(), "test")
        assert result.enabled is True

    def test_empty_environment_list_allows_everything(self, evaluator):
        result = evaluator.evaluate_definition(FlagDefinition(key="any.env"), EvaluationContext(), "sandbox")
        assert result.enabled is True
        assert result.reason == EvaluationReason.ENABLED

    def test_outside_schedule_beats_override(self, evaluator, fixed_now):
        flag = _checkout(
            segment_rules=SegmentRules(schedule=ScheduleWindow(start=(fixed_now + timedelta(days=1)).isoformat())),
            tenant_overrides=[TenantOverride(tenant_id="acme", state=OverrideState.FORCED_ON)],
        )
        result = evaluator.evaluate_definition(flag, EvaluationContext(tenant_id="acme"), "production")

        assert result.enabled is False
        assert result.reason == EvaluationReason.OUTSIDE_SCHEDULE

    def test_override_forced_on_skips_strategy(self, evaluator):
        """user-123 is outside the 45% rollout, the override wins anyway."""
        override = TenantOverride(tenant_id="acme", state=OverrideState.FORCED_ON, variant_key="express")
        flag = _checkout(tenant_overrides=[override])
        result = evaluator.evaluate_definition(
            flag, EvaluationContext(tenant_id="acme", user_id="user-123"), "production"
        )

        assert result.enabled is True
        assert result.reason == EvaluationReason.TENANT_OVERRIDE_ENABLED
        assert result.variant == "express"
        assert result.override == override
        assert result.overridden is True

    def test_override_forced_on_without_variant_selects_by_bucket(self, evaluator):
        flag = _checkout(tenant_overrides=[TenantOverride(tenant_id="acme", state=OverrideState.FORCED_ON)])
        result = evaluator.evaluate_definition(
            flag, EvaluationContext(tenant_id="acme", user_id="user-123"), "production"
        )
        # bucket 58 with 50/50 weights
        assert result.variant == "express"

    def test_override_forced_off(self, evaluator):
        """user-1 is inside the rollout, the override disables anyway."""
        flag = _checkout(tenant_overrides=[TenantOverride(tenant_id="acme", state=OverrideState.FORCED_OFF)])
        result = evaluator.evaluate_definition(
            flag, EvaluationContext(tenant_id="acme", user_id="user-1"), "production"
        )

        assert result.enabled is False
        assert result.reason == EvaluationReason.TENANT_OVERRIDE_DISABLED
        assert result.overridden is True

    def test_override_for_other_environment_is_ignored(self, evaluator):
        flag = _checkout(
            tenant_overrides=[TenantOverride(tenant_id="acme", environment="staging", state=OverrideState.FORCED_OFF)]
        )
        result = evaluator.evaluate_definition(
            flag, EvaluationContext(tenant_id="acme", user_id="user-1"), "production"
        )
        assert result.enabled is True
        assert result.override is None


class TestPercentageStrategy:
    """Tests for percentage rollouts."""

    def test_inside_rollout(self, evaluator):
        result = evaluator.evaluate_definition(_checkout(), EvaluationContext(user_id="user-1"), "production")

        assert result.enabled is True
        assert result.reason == EvaluationReason.ENABLED
        assert result.bucket == 39
        assert result.variant == "control"
        assert result.strategy == "percentage"

    def test_outside_rollout(self, evaluator):
        result = evaluator.evaluate_definition(_checkout(), EvaluationContext(user_id="user-123"), "production")

        assert result.enabled is False
        assert result.reason == EvaluationReason.PERCENTAGE_THRESHOLD
        assert result.bucket == 58
        assert result.variant is None

    def test_bucket_equal_to_percentage_is_included(self, evaluator):
        result = evaluator.evaluate_definition(
            _checkout(rollout_percentage=58), EvaluationContext(user_id="user-123"), "production"
        )
        assert result.enabled is True

    def test_zero_percent_excludes_everyone(self, evaluator):
        flag = _checkout(rollout_percentage=0)
        for i in range(200):
            result = evaluator.evaluate_definition(flag, EvaluationContext(user_id=f"user-{i}"), "production")
            assert result.enabled is False

    def test_hundred_percent_includes_everyone(self, evaluator):
        flag = _checkout(rollout_percentage=100)
        for i in range(200):
            result = evaluator.evaluate_definition(flag, EvaluationContext(user_id=f"user-{i}"), "production")
            assert result.enabled is True

    def test_anonymous_subject_only_in_full_rollout(self, evaluator):
        """Without an identifier the bucket is 100."""
        partial = evaluator.evaluate_definition(_checkout(rollout_percentage=99), EvaluationContext(), "production")
        full = evaluator.evaluate_definition(_checkout(rollout_percentage=100), EvaluationContext(), "production")

        assert partial.bucket == 100
        assert partial.enabled is False
        assert full.enabled is True

    def test_target_id_takes_precedence(self, evaluator):
        result = evaluator.evaluate_definition(
            _checkout(), EvaluationContext(target_id="user-1", user_id="user-123"), "production"
        )
        assert result.bucket == 39


class TestSegmentStrategy:
    """Tests for segment targeting. Buckets: admin.console user-1 -> 61, user-2 -> 19."""

    @staticmethod
    def _console(**rules) -> FlagDefinition:
        return FlagDefinition(
            key="admin.console",
            rollout_strategy=RolloutStrategy.SEGMENT,
            segment_rules=SegmentRules(**rules),
        )

    def test_role_and_version_match(self, evaluator):
        flag = self._console(allowed_roles=["admin"], min_app_version="2.4.0")
        result = evaluator.evaluate_definition(
            flag, EvaluationContext(role="admin", app_version="2.5.1"), "production"
        )
        assert result.enabled is True

    def test_role_missing(self, evaluator):
        flag = self._console(allowed_roles=["admin"])
        result = evaluator.evaluate_definition(flag, EvaluationContext(), "production")

        assert result.enabled is False
        assert result.reason == EvaluationReason.SEGMENT_MISMATCH

    def test_denied_role(self, evaluator):
        flag = self._console(denied_roles=["guest"])
        assert evaluator.evaluate_definition(flag, EvaluationContext(role="guest"), "production").enabled is False
        assert evaluator.evaluate_definition(flag, EvaluationContext(role="admin"), "production").enabled is True
        assert evaluator.evaluate_definition(flag, EvaluationContext(), "production").enabled is True

    def test_tenant_lists(self, evaluator):
        flag = self._console(allowed_tenants=["acme", "globex"], denied_tenants=["globex"])
        assert evaluator.evaluate_definition(flag, EvaluationContext(tenant_id="acme"), "production").enabled
        assert not evaluator.evaluate_definition(flag, EvaluationContext(tenant_id="globex"), "production").enabled
        assert not evaluator.evaluate_definition(flag, EvaluationContext(), "production").enabled

    def test_allowed_users(self, evaluator):
        flag = self._console(allowed_users=["user-2"])
        assert evaluator.evaluate_definition(flag, EvaluationContext(user_id="user-2"), "production").enabled
        assert not evaluator.evaluate_definition(flag, EvaluationContext(user_id="user-1"), "production").enabled

    def test_version_too_old(self, evaluator):
        flag = self._console(min_app_version="2.4.0")
        result = evaluator.evaluate_definition(flag, EvaluationContext(app_version="2.3.9"), "production")
        assert result.reason == EvaluationReason.SEGMENT_MISMATCH

    def test_version_from_attributes(self, evaluator):
        flag = self._console(min_app_version="2.4.0")
        camel = EvaluationContext(attributes={"appVersion": "2.4"})
        snake = EvaluationContext(attributes={"app_version": "2.3"})

        assert evaluator.evaluate_definition(flag, camel, "production").enabled is True
        assert evaluator.evaluate_definition(flag, snake, "production").enabled is False

    def test_missing_version_passes(self, evaluator):
        flag = self._console(min_app_version="2.4.0")
        assert evaluator.evaluate_definition(flag, EvaluationContext(), "production").enabled is True

    def test_embedded_percentage(self, evaluator):
        flag = self._console(percentage=20)
        assert evaluator.evaluate_definition(flag, EvaluationContext(user_id="user-2"), "production").enabled
        assert not evaluator.evaluate_definition(flag, EvaluationContext(user_id="user-1"), "production").enabled

    def test_allowed_attributes(self, evaluator):
        flag = self._console(allowed_attributes={"plan": ["premium", "enterprise"], "region": []})
        premium = EvaluationContext(attributes={"plan": "premium"})
        free = EvaluationContext(attributes={"plan": "free"})

        assert evaluator.evaluate_definition(flag, premium, "production").enabled is True
        assert evaluator.evaluate_definition(flag, free, "production").enabled is False
        assert evaluator.evaluate_definition(flag, EvaluationContext(), "production").enabled is False

    def test_camel_case_rules(self, evaluator):
        flag = FlagDefinition.model_validate({
            "key": "admin.console",
            "rollout_strategy": "segment",
            "segment_rules": {"allowedRoles": ["operator"], "minAppVersion": "3.0"},
        })
        ok = EvaluationContext(role="operator", app_version="3.0.0")
        assert evaluator.evaluate_definition(flag, ok, "production").enabled is True


class TestScheduleStrategy:
    """Tests for schedule windows. Buckets: learning.live user-1 -> 60, user-2 -> 5."""

    def test_schedule_percentage(self, evaluator, fixed_now):
        flag = FlagDefinition(
            key="learning.live",
            rollout_strategy=RolloutStrategy.SCHEDULE,
            rollout_percentage=50,
            segment_rules=SegmentRules(schedule=ScheduleWindow(start=(fixed_now - timedelta(days=30)).isoformat())),
        )
        inside = evaluator.evaluate_definition(flag, EvaluationContext(user_id="user-2"), "production")
        outside = evaluator.evaluate_definition(flag, EvaluationContext(user_id="user-1"), "production")

        assert inside.enabled is True
        assert outside.enabled is False
        assert outside.reason == EvaluationReason.SCHEDULE_THRESHOLD

    def test_window_end_is_exclusive(self, fixed_now):
        window = ScheduleWindow(start="2025-01-01T00:00:00Z", end=fixed_now.isoformat())
        assert FlagEvaluator.is_within_schedule(window, fixed_now) is False
        assert FlagEvaluator.is_within_schedule(window, fixed_now - timedelta(seconds=1)) is True

    def test_window_start_is_inclusive(self, fixed_now):
        window = ScheduleWindow(start=fixed_now.isoformat())
        assert FlagEvaluator.is_within_schedule(window, fixed_now) is True

    def test_open_window(self, fixed_now):
        assert FlagEvaluator.is_within_schedule(ScheduleWindow(), fixed_now) is True

    def test_malformed_bounds_are_ignored(self, fixed_now):
        window = ScheduleWindow(start="not-a-date", end="also-not-a-date")
        assert FlagEvaluator.is_within_schedule(window, fixed_now) is True


class TestVariantSelection:
    """Tests for cumulative-weight variant selection."""

    def test_cumulative_weights(self):
        variants = [FlagVariant(key="core", weight=80), FlagVariant(key="beta", weight=20)]
        assert FlagEvaluator.select_variant(variants, 58) == "core"
        assert FlagEvaluator.select_variant(variants, 80) == "core"
        assert FlagEvaluator.select_variant(variants, 81) == "beta"
        assert FlagEvaluator.select_variant(variants, 100) == "beta"

    def test_bucket_wraps_into_total_weight(self):
        variants = [FlagVariant(key="a", weight=1), FlagVariant(key="b", weight=1)]
        assert FlagEvaluator.select_variant(variants, 1) == "a"
        assert FlagEvaluator.select_variant(variants, 2) == "b"
        assert FlagEvaluator.select_variant(variants, 3) == "a"

    def test_zero_total_weight_selects_first(self):
        variants = [FlagVariant(key="first"), FlagVariant(key="second")]
        assert FlagEvaluator.select_variant(variants, 50) == "first"

    def test_no_variants(self):
        assert FlagEvaluator.select_variant([], 50) is None

    def test_variant_only_when_enabled(self, evaluator):
        """variants.flag user-1 -> bucket 28."""
        flag = FlagDefinition(
            key="variants.flag",
            variants=[FlagVariant(key="blue", weight=30), FlagVariant(key="green", weight=70)],
        )
        enabled = evaluator.evaluate_definition(flag, EvaluationContext(user_id="user-1"), "production")
        disabled = evaluator.evaluate_definition(
            flag.model_copy(update={"enabled": False}), EvaluationContext(user_id="user-1"), "production"
        )
        assert enabled.variant == "blue"
        assert disabled.variant is None


class TestEvaluationReason:
    """Tests for evaluation reason enum."""

    def test_all_reasons_have_string_values(self):
        for reason in EvaluationReason:
            assert isinstance(reason.value, str)
            assert len(reason.value) > 0

    def test_reason_values_are_kebab_case(self):
        for reason in EvaluationReason:
            assert reason.value == reason.value.lower()
            assert "_" not in reason.value


class TestEvaluationMetrics:
    def test_counter_is_incremented(self, evaluator):
        labels = {
            "flag_key": "metrics.flag",
            "result": "percentage-threshold",
            "strategy": "percentage",
            "environment": "production",
        }
        before = REGISTRY.get_sample_value("switchboard_feature_flag_evaluations_total", labels) or 0
        flag = FlagDefinition(key="metrics.flag", rollout_strategy=RolloutStrategy.PERCENTAGE, rollout_percentage=0)

        evaluator.evaluate_definition(flag, EvaluationContext(user_id="user-1"), "production")

        assert REGISTRY.get_sample_value("switchboard_feature_flag_evaluations_total", labels) == before + 1


class TestCompareVersions:
    @pytest.mark.parametrize(
        ("current", "minimum", "expected"),
        [
            ("2.4.0", "2.4.0", True),
            ("2.10.0", "2.9.9", True),
            ("2.4", "2.4.0", True),
            ("2.3.9", "2.4", False),
            ("3", "2.99.99", True),
            ("2.4.0-beta", "2.4.0", True),
            ("v2.4.0", "1.0.0", False),
            (None, "2.4.0", True),
            ("1.0.0", None, True),
        ],
    )
    def test_compare(self, current, minimum, expected):
        assert compare_versions(current, minimum) is expected


class TestParseTimestamp:
    def test_zulu_suffix(self):
        assert parse_timestamp("2024-11-01T00:00:00Z") == datetime(2024, 11, 1, tzinfo=timezone.utc)

    def test_naive_is_utc(self):
        assert parse_timestamp("2024-11-01T08:30:00") == datetime(2024, 11, 1, 8, 30, tzinfo=timezone.utc)

    def test_offset_is_kept(self):
        parsed = parse_timestamp("2024-11-01T10:00:00+02:00")
        assert parsed == datetime(2024, 11, 1, 8, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", [None, "", "yesterday"])
    def test_invalid(self, value):
        assert parse_timestamp(value) is None
