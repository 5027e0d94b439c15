"""
Feature Flag Evaluation Service.

This module is the public evaluation surface. It combines the cached flag
snapshot, the rule evaluator and the override resolver, and lazily asks the
refresh coordinator for a refresh when the snapshot goes stale.

Evaluation never raises and never waits on I/O: unknown flags resolve to a
``flag-not-found`` result and stale snapshots keep serving while a refresh
runs in the background.
"""

import logging
import time
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from switchboard.cache.base import DistributedCache
from switchboard.cache.coordinator import RefreshCoordinator
from switchboard.cache.snapshot import CacheSnapshot
from switchboard.core.metrics import feature_flag_evaluations_total
from switchboard.crud.base import FlagDefinitionReader
from switchboard.schemas.definitions import FlagDefinition, flag_definitions_adapter
from switchboard.schemas.evaluate import EvaluationContext
from switchboard.services.evaluator import EvaluationReason, EvaluationResult, FlagEvaluator

logger = logging.getLogger(__name__)

FLAG_CACHE_NAME = "feature-flags"

ContextInput = EvaluationContext | Mapping[str, Any] | None


def _index_flags(flags: Sequence[FlagDefinition]) -> dict[str, FlagDefinition]:
    return {flag.key: flag for flag in flags if flag.key}


def _serialize_flags(flags: Sequence[FlagDefinition]) -> list[dict[str, Any]]:
    return [flag.model_dump(mode="json") for flag in flags]


class FeatureFlagService:
    """
    Cached feature flag evaluation.

    Usage:
        service = FeatureFlagService(reader=store, evaluator=FlagEvaluator(),
                                     default_environment="production", ttl_seconds=30)
        await service.start()
        result = service.evaluate("checkout.v2", {"tenant_id": "acme", "user_id": "u-1"})
    """

    def __init__(
        self,
        reader: FlagDefinitionReader,
        evaluator: FlagEvaluator,
        default_environment: str,
        ttl_seconds: float,
        refresh_interval_seconds: float = 0,
        distributed: DistributedCache | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the service.

        Args:
            reader: Durable store reader for flag definitions.
            evaluator: Rule evaluator (holds environment aliases).
            default_environment: Used when a context names no environment.
            ttl_seconds: Lifetime of each local snapshot.
            refresh_interval_seconds: Background refresh period (0 disables).
            distributed: Shared snapshot layer, or None.
            clock: Monotonic clock for snapshot expiry.
        """
        self.evaluator = evaluator
        self.default_environment = default_environment.lower()
        self.coordinator: RefreshCoordinator[FlagDefinition, FlagDefinition] = RefreshCoordinator(
            name=FLAG_CACHE_NAME,
            loader=reader.load_all_flag_definitions,
            build_map=_index_flags,
            parse=flag_definitions_adapter.validate_python,
            serialize=_serialize_flags,
            ttl_seconds=ttl_seconds,
            refresh_interval_seconds=refresh_interval_seconds,
            distributed=distributed,
            clock=clock,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        await self.coordinator.start()
        logger.info(
            f"Feature flag cache ready ({len(self.coordinator.snapshot)} flags, "
            f"source={self.coordinator.snapshot.source.value})"
        )

    async def stop(self) -> None:
        await self.coordinator.stop()

    async def refresh(self, force: bool = True, reason: str = "manual") -> CacheSnapshot[FlagDefinition]:
        """Refresh the flag snapshot. Load failures propagate to the caller."""
        return await self.coordinator.refresh(force=force, reason=reason)

    # =========================================================================
    # Reads
    # =========================================================================

    def list_flags(self) -> list[FlagDefinition]:
        """All cached flag definitions."""
        return list(self.coordinator.snapshot.entries.values())

    def get_definition(self, flag_key: str) -> FlagDefinition | None:
        return self.coordinator.snapshot.get(flag_key)

    def resolve_context(self, context: ContextInput) -> EvaluationContext:
        """
        Coerce caller input into an EvaluationContext.

        A malformed context falls back to an empty one (least-privileged
        defaults) rather than failing the evaluation.
        """
        if context is None:
            return EvaluationContext()
        if isinstance(context, EvaluationContext):
            return context
        try:
            return EvaluationContext.model_validate(dict(context))
        except (PydanticValidationError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed evaluation context: {e}")
            return EvaluationContext()

    def resolve_environment(self, context: EvaluationContext) -> str:
        """A context without an environment is evaluated in the service default."""
        return (context.environment or self.default_environment).lower()

    # =========================================================================
    # Evaluation
    # =========================================================================

    def evaluate(
        self,
        flag_key: str,
        context: ContextInput = None,
        include_definition: bool = False,
    ) -> EvaluationResult:
        """
        Evaluate one flag for one context.

        Args:
            flag_key: The flag key to evaluate.
            context: Caller context (EvaluationContext or plain mapping).
            include_definition: Attach the cached definition to the result.

        Returns:
            EvaluationResult. Unknown keys give reason "flag-not-found".
        """
        self._refresh_if_stale(f"evaluate:{flag_key}")
        return self._evaluate_cached(
            self.coordinator.snapshot,
            flag_key,
            self.resolve_context(context),
            include_definition,
        )

    def evaluate_all(
        self,
        context: ContextInput = None,
        include_definition: bool = False,
    ) -> dict[str, EvaluationResult]:
        """Evaluate every cached flag against one snapshot."""
        self._refresh_if_stale("evaluate-all")
        snapshot = self.coordinator.snapshot
        resolved = self.resolve_context(context)
        return {
            key: self._evaluate_cached(snapshot, key, resolved, include_definition)
            for key in snapshot.entries
        }

    def _evaluate_cached(
        self,
        snapshot: CacheSnapshot[FlagDefinition],
        flag_key: str,
        context: EvaluationContext,
        include_definition: bool,
    ) -> EvaluationResult:
        environment = self.resolve_environment(context)
        flag = snapshot.get(flag_key)

        if flag is None:
            feature_flag_evaluations_total.labels(
                flag_key=flag_key,
                result="missing",
                strategy="unknown",
                environment=environment,
            ).inc()
            return EvaluationResult(
                key=flag_key,
                enabled=False,
                reason=EvaluationReason.FLAG_NOT_FOUND,
                strategy="unknown",
                environment=environment,
                evaluated_at=datetime.now(timezone.utc),
            )

        result = self.evaluator.evaluate_definition(flag, context, environment)
        if include_definition:
            result.definition = flag
        return result

    def _refresh_if_stale(self, reason: str) -> None:
        if self.coordinator.is_stale():
            self.coordinator.request_refresh(reason)
