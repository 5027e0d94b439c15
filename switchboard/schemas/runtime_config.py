"""
Pydantic Schemas for Runtime Configuration Reads.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from switchboard.schemas.definitions import ExposureLevel


class Audience(str, Enum):
    """Who is reading configuration. Wider audiences see more exposure levels."""

    PUBLIC = "public"
    OPS = "ops"
    INTERNAL = "internal"


# Exposure levels visible to each audience
AUDIENCE_EXPOSURE: dict[Audience, frozenset[ExposureLevel]] = {
    Audience.PUBLIC: frozenset({ExposureLevel.PUBLIC}),
    Audience.OPS: frozenset({ExposureLevel.PUBLIC, ExposureLevel.OPS}),
    Audience.INTERNAL: frozenset(ExposureLevel),
}


class ConfigValueView(BaseModel):
    """
    One resolved configuration value as listed for an audience.

    Example:
        {
            "value": "support@example.com",
            "sensitive": false,
            "exposure_level": "public",
            "environment_scope": "global",
            "description": "Where customers send support requests"
        }
    """

    value: Any = None
    sensitive: bool = False
    exposure_level: ExposureLevel
    environment_scope: str
    description: str = ""


class ConfigValueResponse(BaseModel):
    key: str
    environment: str
    audience: Audience
    value: Any = None


class ConfigListResponse(BaseModel):
    environment: str
    audience: Audience
    entries: dict[str, ConfigValueView] = Field(default_factory=dict)
