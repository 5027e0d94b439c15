"""
Flag Evaluation Endpoints.

Endpoints:
    POST /evaluate       - Evaluate a single flag
    POST /evaluate/all   - Evaluate all flags for one context

Evaluation never fails for an unknown flag: the result carries
reason "flag-not-found" and enabled=false, and the caller's own default
policy decides what to do.
"""

from datetime import datetime, timezone

from fastapi import APIRouter

from switchboard.api.deps import FlagServiceDep
from switchboard.schemas.evaluate import EvaluateAllRequest, EvaluateAllResponse, EvaluateFlagRequest
from switchboard.services.evaluator import EvaluationResult

router = APIRouter(prefix="/evaluate", tags=["evaluate"])


@router.post(
    "",
    response_model=EvaluationResult,
    summary="Evaluate a single feature flag",
    description="""
    Evaluate a feature flag for one caller context.

    **Evaluation Order:**
    1. Kill switch → disabled
    2. Master toggle off → disabled
    3. Environment not allowed → disabled
    4. Outside schedule window → disabled
    5. Tenant override → forced on / forced off
    6. Rollout strategy (boolean / percentage / segment / schedule)
    7. Variant selection
    """,
)
async def evaluate_flag(
    request: EvaluateFlagRequest,
    flags: FlagServiceDep,
) -> EvaluationResult:
    """
    Evaluate a single feature flag.

    - **flag_key**: The flag to evaluate
    - **context**: Tenant, user, role, environment and attributes (all optional)
    - **include_definition**: Attach the cached definition
    """
    return flags.evaluate(
        request.flag_key,
        request.context,
        include_definition=request.include_definition,
    )


@router.post(
    "/all",
    response_model=EvaluateAllResponse,
    summary="Evaluate all flags for a context",
    description="""
    Evaluate every cached flag for one context.

    Used by clients during bootstrap to get the full flag state.
    """,
)
async def evaluate_all(
    request: EvaluateAllRequest,
    flags: FlagServiceDep,
) -> EvaluateAllResponse:
    results = flags.evaluate_all(request.context, include_definition=request.include_definition)
    return EvaluateAllResponse(
        flags={key: result.model_dump(mode="json") for key, result in results.items()},
        environment=flags.resolve_environment(request.context),
        evaluated_at=datetime.now(timezone.utc),
    )
