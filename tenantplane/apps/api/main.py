from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantplane.apps.api.errors import (
    http_exception_handler,
    starlette_http_exception_handler,
    tenantplane_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from tenantplane.apps.api.response import API_VERSION, get_request_id
from tenantplane.apps.api.routes.credentials import router as credentials_router
from tenantplane.apps.api.routes.deploy import router as deploy_router
from tenantplane.apps.api.routes.events import router as events_router
from tenantplane.apps.api.routes.health import router as health_router
from tenantplane.apps.api.routes.ops import router as ops_router
from tenantplane.apps.api.routes.tenants import router as tenants_router
from tenantplane.apps.api.routes.webhooks import router as webhooks_router
from tenantplane.core.config import get_settings
from tenantplane.core.errors import TenantPlaneError
from tenantplane.core.logging import configure_logging
from tenantplane.services.control_plane import ControlPlane, build_control_plane


logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    owned = False
    if getattr(app.state, "control_plane", None) is None:
        # Imported lazily so tests that inject a control plane never build the default engine.
        from tenantplane.persistence.db import SessionLocal

        app.state.control_plane = build_control_plane(get_settings(), SessionLocal)
        owned = True
    logger.info("api_started")
    try:
        yield
    finally:
        if owned:
            await app.state.control_plane.aclose()


def create_app(control_plane: ControlPlane | None = None) -> FastAPI:
    configure_logging()
    app = FastAPI(title="Tenantplane API", version=API_VERSION, lifespan=_lifespan)
    app.state.control_plane = control_plane

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = get_request_id(request)
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.info(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(TenantPlaneError)
    async def _tenantplane_exception_handler(request: Request, exc: TenantPlaneError):
        return await tenantplane_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(tenants_router, prefix=f"/{API_VERSION}")
    app.include_router(deploy_router, prefix=f"/{API_VERSION}")
    app.include_router(credentials_router, prefix=f"/{API_VERSION}")
    app.include_router(events_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")
    # Payment providers post here; signatures replace bearer auth.
    app.include_router(webhooks_router, prefix=f"/{API_VERSION}")

    return app


app = create_app()
