from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.activity import router as activity_router
from app.api.analytics import router as analytics_router
from app.api.assignments import router as assignments_router
from app.api.health import router as health_router
from app.api.lessons import router as lessons_router
from app.api.metrics_endpoint import router as metrics_router
from app.core.config import SETTINGS
from app.core.errors import StorageError, ValidationError
from app.core.logging import setup_logging
from app.db.engine import lifespan_db
from app.db.redis import lifespan_redis
from app.middleware.metrics import MetricsMiddleware
from app.middleware.request_context import (
    RequestContextMiddleware,
    install_request_context_filter,
)
from app.services.registry import build_services

# Configure logging before anything else runs.
setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)
for _handler in logging.getLogger().handlers:
    install_request_context_filter(_handler)

logger = logging.getLogger(__name__)

# How long shutdown waits for detached analytics writes to finish.
TELEMETRY_DRAIN_TIMEOUT_S = 5.0


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Each backing service has its own startup/shutdown lifecycle.
    # Nesting tears them down in reverse order (LIFO), after the
    # telemetry drain below has stopped using them.
    async with lifespan_db() as session_factory:
        async with lifespan_redis() as redis_client:
            services = build_services(
                SETTINGS,
                session_factory=session_factory,
                redis_client=redis_client,
            )
            app.state.services = services
            app.state.session_factory = session_factory
            app.state.redis = redis_client
            try:
                yield
            finally:
                cancelled = await services.dispatcher.drain(TELEMETRY_DRAIN_TIMEOUT_S)
                if cancelled:
                    logger.warning("Shutdown dropped %d analytics writes", cancelled)


app = FastAPI(
    title="activity-analytics",
    lifespan=lifespan,
    docs_url="/docs" if SETTINGS.is_dev else None,
    redoc_url="/redoc" if SETTINGS.is_dev else None,
)


@app.exception_handler(ValidationError)
async def _validation_error(_request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": str(exc)},
    )


@app.exception_handler(StorageError)
async def _storage_error(_request: Request, exc: StorageError) -> JSONResponse:
    logger.error("Storage unavailable: %s", exc, exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "analytics storage unavailable"},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Middleware execution order: last-added runs first (outermost layer).
# RequestContext (outermost) → Metrics → CORS → route handler
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestContextMiddleware)

app.include_router(metrics_router)
app.include_router(health_router)
app.include_router(activity_router)
app.include_router(analytics_router)
app.include_router(assignments_router)
app.include_router(lessons_router)

logger.info(
    "activity-analytics started  env=%s log_level=%s port=%d docs=%s",
    SETTINGS.app_env,
    SETTINGS.log_level,
    SETTINGS.port,
    "on" if SETTINGS.is_dev else "off",
)
