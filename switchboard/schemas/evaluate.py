"""
Pydantic Schemas for Flag Evaluation.

This module defines the evaluation context callers supply per request and the
request/response envelopes of the evaluation API.

Design Goals:
    - Every context field is optional; an empty context is valid
    - Simple request/response structure
    - Support for single and all-flags evaluation
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# =============================================================================
# Evaluation Context
# =============================================================================

class EvaluationContext(BaseModel):
    """
    Caller context for flag evaluation.

    The subject identifier used for bucketing is the first present of
    target_id, user_id, session_id, tenant_id, account_id, trace_id.

    Example:
        {
            "environment": "production",
            "tenant_id": "acme",
            "user_id": "user-12345",
            "role": "admin",
            "attributes": {"plan": "premium", "appVersion": "2.6.0"}
        }

    camelCase keys (tenantId, appVersion, ...) are accepted alongside snake_case.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    environment: str | None = Field(
        default=None,
        description="Environment to evaluate in (defaults to the service environment)",
        examples=["production", "staging"],
    )
    tenant_id: str | None = Field(default=None, description="Calling tenant")
    user_id: str | None = Field(default=None, description="Calling user")
    role: str | None = Field(default=None, description="Role of the calling user")
    session_id: str | None = Field(default=None)
    account_id: str | None = Field(default=None)
    trace_id: str | None = Field(default=None)
    target_id: str | None = Field(
        default=None,
        description="Explicit bucketing subject, takes precedence over user_id",
    )
    app_version: str | None = Field(
        default=None,
        description="Client version checked against segment minimum versions",
        examples=["2.5.1"],
    )
    attributes: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional attributes matched by segment attribute allow-lists",
    )


# =============================================================================
# Evaluation Requests
# =============================================================================

class EvaluateFlagRequest(BaseModel):
    """
    Request schema for evaluating a single feature flag.

    Example:
        POST /api/v1/evaluate
        {
            "flag_key": "commerce.checkout-v2",
            "context": {"tenant_id": "acme", "user_id": "user-12345"}
        }
    """

    flag_key: str = Field(
        ...,
        min_length=1,
        max_length=128,
        description="The flag key to evaluate",
        examples=["commerce.checkout-v2"],
    )
    context: EvaluationContext = Field(default_factory=EvaluationContext)
    include_definition: bool = Field(
        default=False,
        description="Attach the cached flag definition to the result",
    )


class EvaluateAllRequest(BaseModel):
    """
    Request schema for evaluating every cached flag for one context.

    Used by clients during bootstrap to get the full flag state.
    """

    context: EvaluationContext = Field(default_factory=EvaluationContext)
    include_definition: bool = Field(default=False)


class EvaluateAllResponse(BaseModel):
    """
    Response schema for evaluating all flags.

    Returns a map of flag_key -> evaluation result.
    """

    flags: dict[str, Any] = Field(description="Map of flag_key to evaluation result")
    environment: str = Field(description="Environment the flags were evaluated in")
    evaluated_at: datetime = Field(description="Timestamp of evaluation")
