"""
Pydantic Schemas for Flag Definitions and Configuration Entries.

These are the canonical in-memory shapes of everything the evaluation engine
caches. They are produced by the durable store, published to (and validated
from) the distributed snapshot, and normalised from the governance manifest.

Key Design Decisions:
    - Segment rules accept both snake_case and camelCase keys
    - Unknown segment-rule keys are preserved so diffs never drop them
    - Snapshot payloads are validated with TypeAdapter before adoption
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel


# =============================================================================
# Enumerations
# =============================================================================

class RolloutStrategy(str, Enum):
    """Algorithms deciding who sees an enabled flag."""

    BOOLEAN = "boolean"
    PERCENTAGE = "percentage"
    SEGMENT = "segment"
    SCHEDULE = "schedule"


class OverrideState(str, Enum):
    """Tenant override decisions. INHERITED means "no override" and is never stored."""

    FORCED_ON = "forced_on"
    FORCED_OFF = "forced_off"
    INHERITED = "inherited"


class ValueType(str, Enum):
    """Declared type of a configuration entry's raw value."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    JSON = "json"


class ExposureLevel(str, Enum):
    """Who may read a configuration entry."""

    PUBLIC = "public"
    OPS = "ops"
    INTERNAL = "internal"
    PRIVATE = "private"


# =============================================================================
# Flag Definition Parts
# =============================================================================

class FlagVariant(BaseModel):
    """A weighted variant of an enabled flag."""

    key: str
    weight: float = 0


class ScheduleWindow(BaseModel):
    """
    Activation window for a flag.

    Bounds are ISO-8601 strings and are parsed leniently at evaluation time:
    an unparsable start behaves like "since forever", an unparsable end like
    "no end".
    """

    start: str | None = None
    end: str | None = None

    @field_validator("start", "end", mode="before")
    @classmethod
    def coerce_datetime(cls, v: Any) -> Any:
        """Accept datetime objects from Python manifests."""
        if isinstance(v, datetime):
            return v.isoformat()
        return v


class SegmentRules(BaseModel):
    """
    Targeting predicate for the segment strategy.

    All configured predicates must pass. An empty list or mapping means the
    predicate is not configured.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    allowed_roles: list[str] = Field(default_factory=list)
    denied_roles: list[str] = Field(default_factory=list)
    allowed_tenants: list[str] = Field(default_factory=list)
    denied_tenants: list[str] = Field(default_factory=list)
    allowed_users: list[str] = Field(default_factory=list)
    min_app_version: str | None = None
    allowed_attributes: dict[str, list[Any]] = Field(default_factory=dict)
    percentage: float | None = None
    schedule: ScheduleWindow | None = None


class TenantOverride(BaseModel):
    """
    A per-tenant, per-environment forced decision.

    ``tenant_id = "*"`` matches every tenant and ``environment`` of
    ``all``/``global``/``*`` matches every environment.
    """

    id: str | None = None
    flag_id: str | None = None
    tenant_id: str
    environment: str = "production"
    state: OverrideState
    variant_key: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    updated_by: str | None = None


class FlagDefinition(BaseModel):
    """
    A feature flag as seen by the evaluation engine.

    ``environments`` empty means the flag is live everywhere.
    """

    id: str | None = None
    key: str = Field(..., min_length=1)
    name: str = ""
    description: str = ""
    enabled: bool = True
    kill_switch: bool = False
    rollout_strategy: RolloutStrategy = RolloutStrategy.BOOLEAN
    rollout_percentage: int = Field(default=100, ge=0, le=100)
    segment_rules: SegmentRules = Field(default_factory=SegmentRules)
    variants: list[FlagVariant] = Field(default_factory=list)
    environments: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    tenant_overrides: list[TenantOverride] = Field(default_factory=list)

    @field_validator("segment_rules", mode="before")
    @classmethod
    def default_segment_rules(cls, v: Any) -> Any:
        """Treat a NULL column as "no rules"."""
        return {} if v is None else v

    @field_validator("variants", "environments", mode="before")
    @classmethod
    def default_lists(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("metadata", mode="before")
    @classmethod
    def default_metadata(cls, v: Any) -> Any:
        return {} if v is None else v


# =============================================================================
# Configuration Entries
# =============================================================================

class ConfigEntry(BaseModel):
    """
    A runtime configuration value scoped to one environment or ``global``.
    """

    key: str = Field(..., min_length=1)
    environment_scope: str = "global"
    value_type: ValueType = ValueType.STRING
    value: str
    description: str = ""
    exposure_level: ExposureLevel = ExposureLevel.INTERNAL
    sensitive: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def default_metadata(cls, v: Any) -> Any:
        return {} if v is None else v


# Adapters used to validate distributed snapshot payloads
flag_definitions_adapter = TypeAdapter(list[FlagDefinition])
config_entries_adapter = TypeAdapter(list[ConfigEntry])
