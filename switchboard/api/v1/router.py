"""
API v1 Router.

This module combines all v1 endpoint routers into a single router
that can be mounted on the main FastAPI application.
"""

from fastapi import APIRouter

from switchboard.api.v1.endpoints.evaluate import router as evaluate_router
from switchboard.api.v1.endpoints.governance import router as governance_router
from switchboard.api.v1.endpoints.runtime_config import router as runtime_config_router

# Create the main v1 router
api_router = APIRouter(prefix="/api/v1")

# Evaluation API
api_router.include_router(evaluate_router)
api_router.include_router(runtime_config_router)

# Operator tooling
api_router.include_router(governance_router)
