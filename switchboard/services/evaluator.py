"""
Flag Rule Evaluation.

This module contains the pure, synchronous decision logic for one flag
definition and one evaluation context. It performs no I/O.

Evaluation Order (each step can only tighten the decision):
    1. kill_switch          -> disabled, "kill-switch"
    2. enabled is False     -> disabled, "disabled"
    3. environment list     -> disabled, "environment-not-allowed"
    4. schedule window      -> disabled, "outside-schedule"
    5. tenant override      -> forced_off / forced_on, skips strategies
    6. rollout strategy     -> boolean / percentage / segment / schedule
    7. variant selection    -> cumulative weight over the same bucket
"""

import logging
import re
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from switchboard.core.metrics import feature_flag_evaluations_total
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
from switchboard.services.bucketing import compute_bucket, resolve_subject_identifier
from switchboard.services.overrides import resolve_override

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


class EvaluationReason(str, Enum):
    """Reasons for flag evaluation results."""

    # Flag passed every check
    ENABLED = "enabled"

    # Hard stop, wins over everything including tenant overrides
    KILL_SWITCH = "kill-switch"

    # Master toggle is off
    DISABLED = "disabled"

    # Current environment is not in the flag's environment list
    ENVIRONMENT_NOT_ALLOWED = "environment-not-allowed"

    # Current time is outside the segment schedule window
    OUTSIDE_SCHEDULE = "outside-schedule"

    # A tenant override decided the result
    TENANT_OVERRIDE_ENABLED = "tenant-override-enabled"
    TENANT_OVERRIDE_DISABLED = "tenant-override-disabled"

    # Strategy-specific rejections
    PERCENTAGE_THRESHOLD = "percentage-threshold"
    SEGMENT_MISMATCH = "segment-mismatch"
    SCHEDULE_THRESHOLD = "schedule-threshold"

    # Flag was not found in the active snapshot
    FLAG_NOT_FOUND = "flag-not-found"


class EvaluationResult(BaseModel):
    """
    Result of a flag evaluation. Produced fresh on every call, never cached.

    Attributes:
        key: The key of the evaluated flag.
        enabled: The decision.
        reason: Why this decision was returned.
        variant: Selected variant key, only when enabled.
        bucket: Subject bucket in [1, 100].
        strategy: Rollout strategy of the flag ("unknown" when not found).
        override: The tenant override that decided the result, if any.
        definition: The cached definition, when requested.
    """

    key: str
    enabled: bool
    reason: EvaluationReason
    variant: str | None = None
    bucket: int | None = None
    strategy: str = "unknown"
    environment: str | None = None
    evaluated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    override: TenantOverride | None = None
    definition: FlagDefinition | None = None

    @property
    def overridden(self) -> bool:
        """Whether a tenant override decided this result."""
        return self.override is not None


class FlagEvaluator:
    """
    Evaluates flag definitions against an evaluation context.

    Usage:
        evaluator = FlagEvaluator(environment_aliases={"test": ["development"]})
        result = evaluator.evaluate_definition(flag, context, "production")
        if result.enabled:
            show_new_checkout()
    """

    def __init__(
        self,
        environment_aliases: Mapping[str, Sequence[str]] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """
        Initialize the evaluator.

        Args:
            environment_aliases: Extra environments a given environment also
                counts as (e.g. "test" also matches flags live in "development").
            clock: Returns the current aware datetime; injectable for tests.
        """
        self.environment_aliases = {
            env.lower(): [alias.lower() for alias in aliases]
            for env, aliases in (environment_aliases or {}).items()
        }
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    # =========================================================================
    # Single Definition Evaluation
    # =========================================================================

    def evaluate_definition(
        self,
        flag: FlagDefinition,
        context: EvaluationContext,
        environment: str,
    ) -> EvaluationResult:
        """
        Evaluate one flag definition for one context.

        Args:
            flag: Cached flag definition.
            context: Caller context (every field optional).
            environment: Resolved evaluation environment.

        Returns:
            EvaluationResult with decision, reason, bucket and variant.
        """
        now = self.clock()
        bucket = compute_bucket(flag.key, resolve_subject_identifier(context))
        rules = flag.segment_rules
        applied_override: TenantOverride | None = None
        variant: str | None = None

        enabled = True
        reason = EvaluationReason.ENABLED

        if flag.kill_switch:
            enabled, reason = False, EvaluationReason.KILL_SWITCH
        elif not flag.enabled:
            enabled, reason = False, EvaluationReason.DISABLED
        elif not self.is_environment_allowed(flag.environments, environment):
            enabled, reason = False, EvaluationReason.ENVIRONMENT_NOT_ALLOWED
        elif rules.schedule is not None and not self.is_within_schedule(rules.schedule, now):
            enabled, reason = False, EvaluationReason.OUTSIDE_SCHEDULE
        else:
            override = resolve_override(flag.tenant_overrides, context.tenant_id, environment)
            if override is not None and override.state == OverrideState.FORCED_OFF:
                applied_override = override
                enabled, reason = False, EvaluationReason.TENANT_OVERRIDE_DISABLED
            elif override is not None and override.state == OverrideState.FORCED_ON:
                applied_override = override
                enabled, reason = True, EvaluationReason.TENANT_OVERRIDE_ENABLED
                variant = override.variant_key
            else:
                enabled, reason = self._evaluate_strategy(flag, context, bucket)

        if enabled and variant is None:
            variant = self.select_variant(flag.variants, bucket)

        feature_flag_evaluations_total.labels(
            flag_key=flag.key,
            result="enabled" if enabled else reason.value,
            strategy=flag.rollout_strategy.value,
            environment=environment,
        ).inc()

        return EvaluationResult(
            key=flag.key,
            enabled=enabled,
            reason=reason,
            variant=variant if enabled else None,
            bucket=bucket,
            strategy=flag.rollout_strategy.value,
            environment=environment,
            evaluated_at=now,
            override=applied_override,
        )

    def _evaluate_strategy(
        self,
        flag: FlagDefinition,
        context: EvaluationContext,
        bucket: int,
    ) -> tuple[bool, EvaluationReason]:
        """Apply the flag's rollout strategy once no override has matched."""
        strategy = flag.rollout_strategy

        if strategy == RolloutStrategy.PERCENTAGE:
            if bucket <= flag.rollout_percentage:
                return True, EvaluationReason.ENABLED
            return False, EvaluationReason.PERCENTAGE_THRESHOLD

        if strategy == RolloutStrategy.SEGMENT:
            if self.matches_segment_rules(flag.segment_rules, context, bucket):
                return True, EvaluationReason.ENABLED
            return False, EvaluationReason.SEGMENT_MISMATCH

        if strategy == RolloutStrategy.SCHEDULE:
            if bucket <= flag.rollout_percentage:
                return True, EvaluationReason.ENABLED
            return False, EvaluationReason.SCHEDULE_THRESHOLD

        return True, EvaluationReason.ENABLED

    # =========================================================================
    # Rule Helpers
    # =========================================================================

    def is_environment_allowed(self, flag_environments: Sequence[str], environment: str) -> bool:
        """Empty lists allow every environment; aliases count as matches."""
        if not flag_environments:
            return True

        allowed = {env.lower() for env in flag_environments}
        current = environment.lower()
        if current in allowed:
            return True
        return any(alias in allowed for alias in self.environment_aliases.get(current, []))

    @staticmethod
    def is_within_schedule(schedule: ScheduleWindow, now: datetime) -> bool:
        """Check ``now`` against the half-open window [start, end)."""
        start = parse_timestamp(schedule.start) or _EPOCH
        end = parse_timestamp(schedule.end)

        if now < start:
            return False
        if end is not None and now >= end:
            return False
        return True

    def matches_segment_rules(
        self,
        rules: SegmentRules,
        context: EvaluationContext,
        bucket: int,
    ) -> bool:
        """
        Evaluate a segment predicate. Every configured check must pass.

        Args:
            rules: Segment rules of the flag.
            context: Caller context.
            bucket: Subject bucket, used by the embedded percentage.

        Returns:
            True if the context belongs to the segment.
        """
        role = context.role
        if rules.allowed_roles and (not role or role not in rules.allowed_roles):
            return False
        if rules.denied_roles and role and role in rules.denied_roles:
            return False

        tenant_id = context.tenant_id
        if rules.allowed_tenants and (not tenant_id or tenant_id not in rules.allowed_tenants):
            return False
        if rules.denied_tenants and tenant_id and tenant_id in rules.denied_tenants:
            return False

        if rules.allowed_users and (not context.user_id or context.user_id not in rules.allowed_users):
            return False

        if rules.min_app_version:
            current_version = (
                context.app_version
                or context.attributes.get("appVersion")
                or context.attributes.get("app_version")
            )
            if not compare_versions(current_version, rules.min_app_version):
                return False

        if rules.percentage is not None and not bucket <= rules.percentage:
            return False

        for attribute, allowed_values in rules.allowed_attributes.items():
            if allowed_values and context.attributes.get(attribute) not in allowed_values:
                return False

        return True

    @staticmethod
    def select_variant(variants: Sequence[FlagVariant], bucket: int) -> str | None:
        """
        Select a variant by cumulative weight.

        The bucket is wrapped into the total weight range and mapped onto the
        first variant whose cumulative weight reaches it.

        Example:
            variants = [core(80), beta(20)]
            bucket 58 -> core, bucket 91 -> beta
        """
        if not variants:
            return None

        total_weight = sum(float(variant.weight or 0) for variant in variants)
        if total_weight <= 0:
            return variants[0].key

        normalised_bucket = ((bucket - 1) % total_weight) + 1
        running = 0.0
        for variant in variants:
            running += float(variant.weight or 0)
            if normalised_bucket <= running:
                return variant.key

        return variants[-1].key


# =============================================================================
# Parsing Helpers
# =============================================================================

def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp, returning None when absent or malformed."""
    if not value:
        return None

    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.debug(f"Ignoring malformed schedule timestamp {value!r}")
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _version_segments(version: Any) -> list[int]:
    segments = []
    for segment in str(version).split("."):
        match = _LEADING_INT.match(segment)
        segments.append(int(match.group(1)) if match else 0)
    return segments


def compare_versions(current: Any, minimum: Any) -> bool:
    """
    Return True when ``current`` >= ``minimum`` comparing dot segments numerically.

    A missing current or minimum version passes. Missing segments count as 0.
    """
    if not current or not minimum:
        return True

    current_segments = _version_segments(current)
    minimum_segments = _version_segments(minimum)
    length = max(len(current_segments), len(minimum_segments))

    for index in range(length):
        current_value = current_segments[index] if index < len(current_segments) else 0
        minimum_value = minimum_segments[index] if index < len(minimum_segments) else 0
        if current_value > minimum_value:
            return True
        if current_value < minimum_value:
            return False
    return True
