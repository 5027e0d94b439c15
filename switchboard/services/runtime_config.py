"""
Runtime Configuration Service.

Serves environment-scoped configuration values from a cached snapshot kept
fresh by its own refresh coordinator.

Resolution Rules:
    - Try the requested environment scope, then "global"
    - Only entries whose exposure level the audience may see are candidates
    - Private or sensitive entries are skipped unless include_sensitive
    - Raw string values are converted by their declared value type
"""

import json
import logging
import time
from collections.abc import Callable, Sequence
from typing import Any

from switchboard.cache.base import DistributedCache
from switchboard.cache.coordinator import RefreshCoordinator
from switchboard.cache.snapshot import CacheSnapshot
from switchboard.core.metrics import runtime_config_reads_total
from switchboard.crud.base import ConfigEntryReader
from switchboard.schemas.definitions import (
    ConfigEntry,
    ExposureLevel,
    ValueType,
    config_entries_adapter,
)
from switchboard.schemas.runtime_config import AUDIENCE_EXPOSURE, Audience, ConfigValueView

logger = logging.getLogger(__name__)

CONFIG_CACHE_NAME = "runtime-config"
GLOBAL_SCOPE = "global"


def _scope_order(entry: ConfigEntry) -> tuple[int, str]:
    # Environment-specific scopes before global, then alphabetical
    return (1 if entry.environment_scope == GLOBAL_SCOPE else 0, entry.environment_scope)


def build_entry_map(entries: Sequence[ConfigEntry]) -> dict[str, tuple[ConfigEntry, ...]]:
    """Group entries by key, environment-specific scopes first."""
    grouped: dict[str, list[ConfigEntry]] = {}
    for entry in entries:
        if entry.key:
            grouped.setdefault(entry.key, []).append(entry)
    return {key: tuple(sorted(group, key=_scope_order)) for key, group in grouped.items()}


def convert_config_value(entry: ConfigEntry) -> Any:
    """
    Convert a raw value by its declared type.

    Returns None for numbers or JSON that do not parse.
    """
    raw = entry.value
    if entry.value_type == ValueType.NUMBER:
        try:
            number = float(raw)
        except (TypeError, ValueError):
            return None
        return int(number) if number.is_integer() and "." not in str(raw) else number
    if entry.value_type == ValueType.BOOLEAN:
        return raw is True or raw in ("true", "1")
    if entry.value_type == ValueType.JSON:
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            return None
    return raw


def _audience(audience: Audience | str) -> Audience:
    try:
        return Audience(audience)
    except ValueError:
        # Unknown audiences get the narrowest view
        return Audience.PUBLIC


class RuntimeConfigService:
    """
    Cached runtime configuration reads.

    Usage:
        config = RuntimeConfigService(reader=store, default_environment="production",
                                      ttl_seconds=45)
        await config.start()
        email = config.get_value("support.contact-email", audience="public")
    """

    def __init__(
        self,
        reader: ConfigEntryReader,
        default_environment: str,
        ttl_seconds: float,
        refresh_interval_seconds: float = 0,
        distributed: DistributedCache | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_environment = default_environment.lower()
        self.coordinator: RefreshCoordinator[ConfigEntry, tuple[ConfigEntry, ...]] = RefreshCoordinator(
            name=CONFIG_CACHE_NAME,
            loader=reader.load_all_config_entries,
            build_map=build_entry_map,
            parse=config_entries_adapter.validate_python,
            serialize=lambda entries: [entry.model_dump(mode="json") for entry in entries],
            ttl_seconds=ttl_seconds,
            refresh_interval_seconds=refresh_interval_seconds,
            distributed=distributed,
            clock=clock,
        )

    async def start(self) -> None:
        await self.coordinator.start()
        logger.info(f"Runtime configuration cache ready ({len(self.coordinator.snapshot)} keys)")

    async def stop(self) -> None:
        await self.coordinator.stop()

    async def refresh(
        self, force: bool = True, reason: str = "manual"
    ) -> CacheSnapshot[tuple[ConfigEntry, ...]]:
        return await self.coordinator.refresh(force=force, reason=reason)

    # =========================================================================
    # Reads
    # =========================================================================

    def get_value(
        self,
        key: str,
        environment: str | None = None,
        audience: Audience | str = Audience.PUBLIC,
        include_sensitive: bool = False,
        default_value: Any = None,
    ) -> Any:
        """
        Resolve one configuration value.

        Args:
            key: Configuration key.
            environment: Environment scope to try before "global".
            audience: Reader audience (public/ops/internal).
            include_sensitive: Allow private and sensitive entries.
            default_value: Returned when nothing visible matches.

        Returns:
            The converted value, or ``default_value``.
        """
        self._refresh_if_stale(f"get:{key}")
        environment = (environment or self.default_environment).lower()
        audience = _audience(audience)

        entries = self.coordinator.snapshot.get(key) or ()
        entry = self.find_entry(entries, environment, AUDIENCE_EXPOSURE[audience], include_sensitive)

        runtime_config_reads_total.labels(
            config_key=key,
            environment=environment,
            audience=audience.value,
            result="hit" if entry is not None else "missing",
        ).inc()

        if entry is None:
            return default_value
        return convert_config_value(entry)

    def list_for_audience(
        self,
        environment: str | None = None,
        audience: Audience | str = Audience.PUBLIC,
        include_sensitive: bool = False,
    ) -> dict[str, ConfigValueView]:
        """
        List every key visible to an audience in an environment.

        Keys with no visible entry are omitted entirely.
        """
        self._refresh_if_stale("list")
        environment = (environment or self.default_environment).lower()
        exposures = AUDIENCE_EXPOSURE[_audience(audience)]

        result: dict[str, ConfigValueView] = {}
        for key, entries in self.coordinator.snapshot.entries.items():
            entry = self.find_entry(entries, environment, exposures, include_sensitive)
            if entry is None:
                continue
            result[key] = ConfigValueView(
                value=convert_config_value(entry),
                sensitive=entry.sensitive,
                exposure_level=entry.exposure_level,
                environment_scope=entry.environment_scope,
                description=entry.description,
            )
        return result

    @staticmethod
    def find_entry(
        entries: Sequence[ConfigEntry],
        environment: str,
        exposures: frozenset[ExposureLevel],
        include_sensitive: bool,
    ) -> ConfigEntry | None:
        """Pick the first visible entry, exact scope first, then global."""
        for scope in (environment, GLOBAL_SCOPE):
            scoped = next(
                (
                    entry for entry in entries
                    if entry.environment_scope.lower() == scope and entry.exposure_level in exposures
                ),
                None,
            )
            if scoped is None:
                continue
            if not include_sensitive and (
                scoped.exposure_level == ExposureLevel.PRIVATE or scoped.sensitive
            ):
                continue
            return scoped
        return None

    def _refresh_if_stale(self, reason: str) -> None:
        if self.coordinator.is_stale():
            self.coordinator.request_refresh(reason)
