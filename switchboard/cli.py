"""
Switchboard - Command Line Interface

Operator commands that run against the same engine as the HTTP service:

    python -m switchboard.cli snapshot --environment production --audience ops
    python -m switchboard.cli snapshot --audience internal --include-sensitive --format json
    python -m switchboard.cli snapshot --flag commerce.checkout-v2 --config support.contact-email --strict
    python -m switchboard.cli sync --dry-run --actor release-bot
"""

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from switchboard.container import ServiceContainer, build_container
from switchboard.core.config import get_settings
from switchboard.core.exceptions import NotFoundError, SwitchboardError, ValidationError
from switchboard.schemas.runtime_config import Audience

logger = logging.getLogger("switchboard.cli")

MASKED_VALUE = "***"
OUTPUT_FORMATS = ("log", "json")


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="switchboard",
        description="Switchboard - feature flag and runtime configuration tooling",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m switchboard.cli snapshot --environment staging
  python -m switchboard.cli snapshot --audience internal --include-sensitive --no-mask
  python -m switchboard.cli snapshot --flag commerce.checkout-v2 --strict --format json
  python -m switchboard.cli sync --dry-run
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # ============================================
    # SNAPSHOT - Evaluated flags and visible config
    # ============================================
    snapshot_parser = subparsers.add_parser(
        "snapshot",
        help="Print evaluated flags and runtime configuration for an audience",
    )
    snapshot_parser.add_argument(
        "--environment", default=None,
        help="Environment to evaluate in (default: service environment)",
    )
    snapshot_parser.add_argument(
        "--audience", choices=[a.value for a in Audience], default=Audience.OPS.value,
        help="Exposure audience (default: ops)",
    )
    snapshot_parser.add_argument(
        "--include-sensitive", action="store_true",
        help="Include sensitive and private values (internal audience only)",
    )
    snapshot_parser.add_argument(
        "--no-mask", dest="mask_sensitive", action="store_false",
        help="Show raw sensitive values instead of masking them",
    )
    snapshot_parser.add_argument(
        "--flag", dest="flags", action="append", default=[],
        help="Only include this flag key (repeatable)",
    )
    snapshot_parser.add_argument(
        "--config", dest="configs", action="append", default=[],
        help="Only include this config key (repeatable)",
    )
    snapshot_parser.add_argument(
        "--strict", action="store_true",
        help="Fail if any requested key is missing",
    )
    snapshot_parser.add_argument(
        "--no-flags", dest="include_flags", action="store_false",
        help="Skip feature flag evaluation",
    )
    snapshot_parser.add_argument(
        "--no-configs", dest="include_configs", action="store_false",
        help="Skip runtime configuration entries",
    )
    snapshot_parser.add_argument(
        "--format", choices=OUTPUT_FORMATS, default="log",
        help="Output format (default: log)",
    )
    snapshot_parser.add_argument(
        "--output", default=None,
        help="Also write the snapshot as JSON to this path",
    )

    # ============================================
    # SYNC - Manifest reconciliation
    # ============================================
    sync_parser = subparsers.add_parser(
        "sync",
        help="Synchronise the feature flag manifest into the database",
    )
    sync_parser.add_argument(
        "--dry-run", action="store_true",
        help="Compute and print the diff without writing",
    )
    sync_parser.add_argument(
        "--actor", default=None,
        help="Recorded as the author of audit entries",
    )

    return parser


# =============================================================================
# Snapshot Helpers
# =============================================================================

def mask_sensitive_values(entries: Mapping[str, Mapping[str, Any]], enabled: bool = True) -> dict[str, dict[str, Any]]:
    """Replace the value of every sensitive entry with a mask."""
    if not enabled:
        return {key: dict(entry) for key, entry in entries.items()}
    return {
        key: {**entry, "value": MASKED_VALUE, "masked": True} if entry.get("sensitive") else dict(entry)
        for key, entry in entries.items()
    }


def filter_keys(
    source: Mapping[str, Any],
    keys: Sequence[str],
    kind: str,
    strict: bool = False,
) -> tuple[dict[str, Any], list[str]]:
    """
    Keep only the requested keys (matched case-insensitively).

    Args:
        source: Evaluated flags or config views by key.
        keys: Requested keys; empty keeps everything.
        kind: Label used in the missing-keys message.
        strict: Raise instead of warning when a key is missing.

    Returns:
        Tuple of (filtered mapping, missing keys).

    Raises:
        NotFoundError: If strict and any key is missing.
    """
    if not keys:
        return dict(source), []

    requested = {key.lower(): key for key in keys}
    filtered: dict[str, Any] = {}
    found: set[str] = set()
    for key, value in source.items():
        original = requested.get(key.lower())
        if original is not None:
            filtered[key] = value
            found.add(original)

    missing = [key for key in keys if key not in found]
    if missing:
        message = f"{kind} keys not found: {', '.join(missing)}"
        if strict:
            raise NotFoundError(resource=kind, identifier=", ".join(missing), message=message)
        logger.warning(message)
    return filtered, missing


def build_snapshot(container: ServiceContainer, args: argparse.Namespace) -> dict[str, Any]:
    """
    Evaluate flags and list configuration for the requested audience.

    Raises:
        ValidationError: include_sensitive requested for a non-internal audience.
        NotFoundError: A requested key is missing and strict is set.
    """
    audience = Audience(args.audience)
    if args.include_sensitive and audience != Audience.INTERNAL:
        raise ValidationError("Sensitive values can only be included for the internal audience.")

    environment = (args.environment or container.settings.default_environment).lower()
    payload: dict[str, Any] = {
        "environment": environment,
        "audience": audience.value,
        "generated_at": datetime.now(timezone.utc).isoformat(),
    }

    if args.include_flags:
        evaluations = {
            key: result.model_dump(mode="json")
            for key, result in container.evaluate_all({"environment": environment}, include_definition=True).items()
        }
        payload["feature_flags"], payload["missing_flags"] = filter_keys(
            evaluations, args.flags, "Feature flag", strict=args.strict
        )

    if args.include_configs:
        views = {
            key: view.model_dump(mode="json")
            for key, view in container.list_config_for_audience(
                environment, audience=audience, include_sensitive=args.include_sensitive
            ).items()
        }
        filtered, payload["missing_configs"] = filter_keys(
            views, args.configs, "Runtime config", strict=args.strict
        )
        payload["runtime_config"] = mask_sensitive_values(filtered, args.mask_sensitive)

    payload["stats"] = {
        "feature_flag_count": len(payload.get("feature_flags", {})),
        "runtime_config_count": len(payload.get("runtime_config", {})),
    }
    return payload


def write_output_file(path: str, payload: Mapping[str, Any]) -> Path:
    """Write the payload as pretty JSON, creating parent directories."""
    resolved = Path(path).expanduser().resolve()
    resolved.parent.mkdir(parents=True, exist_ok=True)
    resolved.write_text(json.dumps(payload, indent=2, default=str) + "\n", encoding="utf-8")
    return resolved


def emit(payload: Mapping[str, Any], output_format: str, message: str) -> None:
    if output_format == "json":
        print(json.dumps(payload, indent=2, default=str))
    else:
        logger.info(f"{message}: {json.dumps(payload, default=str)}")


# =============================================================================
# Commands
# =============================================================================

async def run_snapshot(args: argparse.Namespace, container: ServiceContainer | None = None) -> dict[str, Any]:
    """Start the caches (without a manifest sync), build and emit a snapshot."""
    container = container or build_container(get_settings())
    await container.start(bootstrap_sync=False)
    try:
        payload = build_snapshot(container, args)
        emit(payload, args.format, "Runtime configuration snapshot generated")
        if args.output:
            written = write_output_file(args.output, payload)
            logger.info(f"Snapshot written to {written}")
        return payload
    finally:
        await container.stop()


async def run_sync(args: argparse.Namespace, container: ServiceContainer | None = None) -> dict[str, Any]:
    """Run a manifest sync (or dry run) and print the summary."""
    container = container or build_container(get_settings())
    await container.start(bootstrap_sync=False)
    try:
        summary = await container.sync_manifest(actor=args.actor, dry_run=args.dry_run)
        payload = summary.model_dump(mode="json")
        emit(payload, "json", "Manifest sync")
        return payload
    finally:
        await container.stop()


def main(argv: Sequence[str] | None = None) -> int:
    """Main CLI entry point. Returns the process exit code."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    settings = get_settings()
    logging.basicConfig(
        level=logging.DEBUG if settings.DEBUG else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        if args.command == "snapshot":
            asyncio.run(run_snapshot(args))
        elif args.command == "sync":
            asyncio.run(run_sync(args))
        else:
            parser.print_help()
    except KeyboardInterrupt:
        logger.warning("Stopped by user")
        return 130
    except SwitchboardError as e:
        logger.error(f"{e.kind.value}: {e.message}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
