"""
Switchboard: Feature Flag and Runtime Configuration Service

This is the main FastAPI application entry point.

The application provides:
    - Evaluation API: Flag evaluation against the process-local snapshot
    - Runtime Config API: Audience-scoped configuration reads
    - Governance API: Manifest sync, tenant overrides and tenant snapshots

Startup/Shutdown:
    - Connects to PostgreSQL (via SQLAlchemy async)
    - Connects to Redis for shared snapshots and refresh locks (optional)
    - Warms both caches, then runs the bootstrap manifest sync
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from switchboard.api.v1.router import api_router
from switchboard.cache.redis import RedisSnapshotCache
from switchboard.container import ServiceContainer, build_container
from switchboard.core.config import Settings, get_settings
from switchboard.core.exceptions import ErrorKind, SwitchboardError

logger = logging.getLogger(__name__)

# HTTP status for each error kind
ERROR_KIND_STATUS: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.UPSTREAM_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=logging.DEBUG if settings.DEBUG else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def create_app(
    settings: Settings | None = None,
    container: ServiceContainer | None = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Application settings (defaults to environment settings).
        container: Pre-built service container. When omitted, the lifespan
            builds one from settings.

    Returns:
        Configured FastAPI application.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        Application lifespan manager.

        Handles startup and shutdown events:
            - Startup: Build the container, connect stores, warm caches
            - Shutdown: Stop refresh tasks and close all connections
        """
        logger.info(f"Starting {settings.APP_NAME} in {settings.APP_ENV} mode")

        services = container or build_container(settings)
        try:
            await services.start()
        except Exception as e:
            logger.error(f"Failed to initialize services: {e}")
            raise

        app.state.container = services

        yield  # Application runs here

        logger.info("Shutting down application")
        await services.stop()
        logger.info("Shutdown complete")

    app = FastAPI(
        title=settings.APP_NAME,
        description="""
        ## Feature Flag and Runtime Configuration Service

        Evaluates feature flags and serves runtime configuration from
        process-local snapshots kept fresh from PostgreSQL.

        ### Features
        - **Deterministic Bucketing**: Same subject always gets the same rollout decision
        - **Tenant Overrides**: Force a flag on or off per tenant and environment
        - **Shared Snapshots**: Instances share refreshed snapshots through Redis
        - **Governance**: Declarative manifest sync with audit trail
        """,
        version="0.1.0",
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        lifespan=lifespan,
    )

    # =========================================================================
    # Middleware
    # =========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # =========================================================================
    # Exception Handlers
    # =========================================================================

    @app.exception_handler(SwitchboardError)
    async def switchboard_exception_handler(
        request: Request,
        exc: SwitchboardError,
    ) -> JSONResponse:
        """Handle all Switchboard errors, mapped by kind."""
        return JSONResponse(
            status_code=ERROR_KIND_STATUS.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR),
            content=exc.to_dict(),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(
        request: Request,
        exc: Exception,
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception(f"Unhandled exception: {exc}")

        if settings.DEBUG:
            # Include error details in debug mode
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "error": {
                        "kind": ErrorKind.INTERNAL.value,
                        "code": "INTERNAL_ERROR",
                        "message": str(exc),
                        "type": type(exc).__name__,
                    }
                },
            )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": {
                    "kind": ErrorKind.INTERNAL.value,
                    "code": "INTERNAL_ERROR",
                    "message": "An unexpected error occurred",
                }
            },
        )

    # =========================================================================
    # Routes
    # =========================================================================

    app.include_router(api_router)

    @app.get(
        "/health",
        tags=["health"],
        summary="Health check",
        description="Report cache freshness and whether shared dependencies are reachable.",
    )
    async def health_check(request: Request) -> dict:
        """
        Health check endpoint.

        Stale caches are reported but do not make the service unhealthy:
        reads keep serving the last good snapshot.
        """
        services: ServiceContainer = request.app.state.container

        if isinstance(services.distributed, RedisSnapshotCache):
            redis_status = "healthy" if await services.distributed.health_check() else "unhealthy"
        elif services.distributed is None:
            redis_status = "disabled"
        else:
            redis_status = "healthy"

        return {
            "status": "unhealthy" if redis_status == "unhealthy" else "healthy",
            "service": settings.APP_NAME,
            "environment": settings.APP_ENV,
            "caches": {
                services.flags.coordinator.name: services.flags.coordinator.store.describe(),
                services.runtime_config.coordinator.name: services.runtime_config.coordinator.store.describe(),
            },
            "dependencies": {
                "redis": redis_status,
                "database": "healthy",  # Would fail at startup if unhealthy
            },
        }

    @app.get("/", tags=["root"])
    async def root() -> dict:
        """Root endpoint with API information."""
        return {
            "service": settings.APP_NAME,
            "version": "0.1.0",
            "documentation": "/docs" if settings.DEBUG else "Disabled in production",
            "health": "/health",
        }

    return app


configure_logging(get_settings())
app = create_app()


# =============================================================================
# Run with Uvicorn (for development)
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "switchboard.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info",
    )
