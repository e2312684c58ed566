"""FastAPI application entrypoint.

Configures CORS, includes routers, maps domain errors to HTTP responses and
exposes a healthcheck endpoint.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_settings
from .errors import AdChronoError
from .routers import analytics as analytics_router
from .routers import meta_sync as meta_sync_router
from .telemetry import init_sentry
from . import schemas

# Import models so Alembic can discover metadata
from . import models  # noqa: F401


def create_app() -> FastAPI:
    init_sentry()

    app = FastAPI(
        title="adchrono API",
        description="""
        adchrono reconstructs per-second advertising performance from
        periodic Meta Ads polls.

        This API provides endpoints for:
        - Triggering structure and insights syncs per tenant
        - Dense cumulative time series per campaign (second / minute / hour)
        - Window metrics and point-in-time structure snapshots

        ## Tenancy

        Every route is scoped by the `tenant_id` path segment; queries never
        see another tenant's rows.
        """,
        version="1.0.0",
    )

    settings = get_settings()
    allowed_origins = settings.cors_origins
    logger.info("[CORS] Allowed origins: %s", allowed_origins)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AdChronoError)
    async def adchrono_error_handler(request: Request, exc: AdChronoError):
        if exc.status_code >= 500:
            logger.error("[API] %s %s failed: %s", request.method, request.url.path, exc)
        else:
            logger.info("[API] %s %s rejected: %s", request.method, request.url.path, exc)
        body = schemas.ErrorResponse(detail=str(exc), error_type=type(exc).__name__)
        return JSONResponse(status_code=exc.status_code, content=body.model_dump())

    app.include_router(meta_sync_router.router)
    app.include_router(analytics_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
        description="""
        Simple health check endpoint to verify the API is running.

        This endpoint:
        - Does not touch the database or Redis
        - Can be used for load balancer health checks
        """
    )
    def health():
        return schemas.HealthResponse(status="ok")

    return app


app = create_app()
