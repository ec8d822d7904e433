from __future__ import annotations

from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
import time
import logging
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from togglecascade.apps.api.errors import (
    feature_toggle_exception_handler,
    http_exception_handler,
    tenant_predicate_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from togglecascade.apps.api.response import API_VERSION, REQUEST_ID_HEADER
from togglecascade.apps.api.routes.features import router as features_router
from togglecascade.apps.api.routes.health import router as health_router
from togglecascade.core.errors import FeatureToggleError
from togglecascade.core.logging import configure_logging
from togglecascade.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_LEGACY_SUNSET_DAYS = 90
_LEGACY_EXEMPT_PREFIXES = (
    f"/{API_VERSION}",
    "/docs",
    "/openapi.json",
    "/redoc",
)


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="togglecascade API", docs_url=None, redoc_url=None)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.debug(
            "request_completed path=%s status=%s latency_ms=%.1f",
            request.url.path,
            response.status_code,
            latency_ms,
        )
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        # Mark legacy routes with deprecation headers to guide clients to /v1.
        if not request.url.path.startswith(_LEGACY_EXEMPT_PREFIXES):
            sunset_at = datetime.now(timezone.utc) + timedelta(days=_LEGACY_SUNSET_DAYS)
            response.headers["Deprecation"] = "true"
            response.headers["Sunset"] = format_datetime(sunset_at)
            response.headers["Link"] = f'</{API_VERSION}/docs>; rel="successor-version"'
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(FeatureToggleError)
    async def _feature_toggle_exception_handler(request: Request, exc: FeatureToggleError):
        return await feature_toggle_exception_handler(request, exc)

    @app.exception_handler(TenantPredicateError)
    async def _tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError):
        return await tenant_predicate_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(features_router, prefix=f"/{API_VERSION}")

    # Retain unversioned legacy routes as deprecated compatibility aliases.
    app.include_router(health_router, include_in_schema=False)
    app.include_router(features_router, include_in_schema=False)

    @app.get(f"/{API_VERSION}/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get(f"/{API_VERSION}/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(
            openapi_url=f"/{API_VERSION}/openapi.json", title="togglecascade API v1"
        )

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url=f"/{API_VERSION}/docs")

    return app


app = create_app()
