"""
Feature Flag Manifest.

The manifest is the declarative source of truth for flag definitions and
managed tenant defaults. Governance sync reconciles it into the database.

A deployment may point ``FEATURE_FLAG_MANIFEST_PATH`` at a JSON file holding a
list of entries (or ``{"flags": [...]}``); otherwise the built-in manifest
below is used.
"""

import json
import logging
from pathlib import Path
from typing import Any

from switchboard.core.exceptions import ValidationError

logger = logging.getLogger(__name__)


DEFAULT_MANIFEST: list[dict[str, Any]] = [
    {
        "key": "commerce.checkout-v2",
        "name": "Checkout v2",
        "description": "New single-page checkout with saved payment methods.",
        "rollout_strategy": "percentage",
        "rollout_percentage": 25,
        "environments": ["development", "staging", "production"],
        "owner": "commerce-platform",
        "tags": ["commerce", "checkout"],
        "runbook": "https://runbooks.example.com/commerce/checkout-v2",
        "variants": [
            {"key": "control", "weight": 50},
            {"key": "express", "weight": 50},
        ],
    },
    {
        "key": "admin.operations-console",
        "name": "Operations console",
        "description": "Operator tooling for incidents and tenant support.",
        "rollout_strategy": "segment",
        "segment_rules": {
            "allowedRoles": ["admin", "operator"],
            "minAppVersion": "2.4.0",
        },
        "owner": "platform-operations",
        "tags": ["operations"],
        "escalation_channel": "#ops-console",
    },
    {
        "key": "learning.live-classrooms",
        "name": "Live classrooms",
        "description": "Real-time classroom sessions with chat and whiteboard.",
        "rollout_strategy": "schedule",
        "rollout_percentage": 50,
        "segment_rules": {
            "schedule": {"start": "2024-11-01T00:00:00Z"},
        },
        "owner": "learning-experience",
        "tags": ["learning", "realtime"],
        "tenant_defaults": [
            {
                "tenant_id": "pilot-academy",
                "environment": "production",
                "state": "enabled",
                "notes": "Pilot tenant for live classrooms.",
            },
        ],
    },
    {
        "key": "support.legacy-ticket-sync",
        "name": "Legacy ticket sync",
        "description": "Mirror support tickets into the legacy helpdesk.",
        "enabled": False,
        "kill_switch": True,
        "owner": "support-tooling",
        "tags": ["support", "deprecated"],
    },
]


def load_manifest(path: str | Path | None = None) -> list[dict[str, Any]]:
    """
    Load the flag manifest.

    Args:
        path: JSON manifest file; None returns the built-in manifest.

    Returns:
        List of raw manifest entries.

    Raises:
        ValidationError: If the file cannot be read or has the wrong shape.
    """
    if path is None:
        return [dict(entry) for entry in DEFAULT_MANIFEST]

    manifest_path = Path(path)
    try:
        payload = json.loads(manifest_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ValidationError(
            f"Unable to read feature flag manifest {manifest_path}: {e}",
            error_code="MANIFEST_UNREADABLE",
        )

    if isinstance(payload, dict):
        payload = payload.get("flags")
    if not isinstance(payload, list):
        raise ValidationError(
            f"Feature flag manifest {manifest_path} must be a list of flag entries.",
            error_code="MANIFEST_INVALID",
        )

    logger.info(f"Loaded {len(payload)} feature flag definitions from {manifest_path}")
    return payload
