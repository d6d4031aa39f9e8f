from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from eventlens.apps.api.errors import (
    eventlens_error_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from eventlens.apps.api.routes.analytics import router as analytics_router
from eventlens.apps.api.routes.auth import router as auth_router
from eventlens.apps.api.routes.health import router as health_router
from eventlens.apps.api.state import AppResources, build_resources
from eventlens.core.config import Settings, get_settings
from eventlens.core.errors import EventLensError
from eventlens.core.logging import configure_logging


logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    resources: AppResources | None = None,
) -> FastAPI:
    resolved = settings or (resources.settings if resources is not None else get_settings())
    configure_logging(resolved)
    # Resources are built eagerly so in-process ASGI clients work without a lifespan run.
    app_resources = resources or build_resources(resolved)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        logger.info("app_started name=%s environment=%s", resolved.app_name, resolved.environment)
        yield
        await app_resources.aclose()
        logger.info("app_stopped name=%s", resolved.app_name)

    app = FastAPI(title="EventLens API", version="0.1.0", lifespan=lifespan)
    app.state.resources = app_resources

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        response.headers.setdefault("X-Request-Id", request_id)
        logger.info(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        return response

    @app.exception_handler(EventLensError)
    async def _eventlens_error_handler(request: Request, exc: EventLensError):
        return await eventlens_error_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(health_router)
    app.include_router(auth_router)
    app.include_router(analytics_router)

    return app


app = create_app()
