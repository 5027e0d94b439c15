"""
Deterministic Bucketing.

Maps a (flag key, subject identifier) pair onto a stable bucket in [1, 100].

Key Algorithm:
    digest = SHA1(flag_key + ":" + identifier)
    bucket = int(first 8 hex chars of digest) % 100 + 1

This ensures:
    - Same subject always gets the same bucket for a given flag
    - Different flags shuffle subjects independently
    - Raising a rollout percentage only ever adds subjects
"""

import hashlib

from switchboard.schemas.evaluate import EvaluationContext

# Bucket returned when no subject identifier is available. It is only inside
# a percentage threshold of 100.
UNIDENTIFIED_BUCKET = 100


def compute_bucket(flag_key: str, identifier: str | None) -> int:
    """
    Compute the deterministic bucket for a subject on a flag.

    Args:
        flag_key: The flag's key.
        identifier: Subject identifier (user, session, tenant...), may be None.

    Returns:
        Integer from 1-100.

    Example:
        >>> compute_bucket("checkout.v2", "user-123")
        58
    """
    if not identifier:
        return UNIDENTIFIED_BUCKET

    digest = hashlib.sha1(f"{flag_key}:{identifier}".encode("utf-8")).hexdigest()
    return int(digest[:8], 16) % 100 + 1


def resolve_subject_identifier(context: EvaluationContext) -> str | None:
    """Pick the bucketing subject: target, user, session, tenant, account, trace."""
    return (
        context.target_id
        or context.user_id
        or context.session_id
        or context.tenant_id
        or context.account_id
        or context.trace_id
        or None
    )
