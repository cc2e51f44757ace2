from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import HTMLResponse, JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from offboard.apps.api.errors import (
    http_exception_handler,
    offboard_exception_handler,
    tenant_predicate_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from offboard.apps.api.response import API_PREFIX, API_VERSION
from offboard.apps.api.routes.deletion import router as deletion_router
from offboard.apps.api.routes.deletion import tenants_router
from offboard.apps.api.routes.health import router as health_router
from offboard.core.errors import OffboardError
from offboard.core.logging import configure_logging
from offboard.persistence.guards import TenantPredicateError
from offboard.services.cache import RedisCacheStore
from offboard.services.deletion.context import DeletionContext, build_default_context


logger = logging.getLogger(__name__)


def create_app(context: DeletionContext | None = None) -> FastAPI:
    configure_logging()
    deletion_context = context or build_default_context()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # Only close clients this factory created.
        if context is None and isinstance(deletion_context.cache, RedisCacheStore):
            await deletion_context.cache.close()

    app = FastAPI(title="Tenant Offboard API", version=API_VERSION, lifespan=lifespan)
    app.state.deletion_context = deletion_context

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.info(
            "api_request method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(OffboardError)
    async def _offboard_exception_handler(request: Request, exc: OffboardError):
        return await offboard_exception_handler(request, exc)

    @app.exception_handler(TenantPredicateError)
    async def _tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError):
        return await tenant_predicate_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(deletion_router, prefix=API_PREFIX)
    app.include_router(tenants_router, prefix=API_PREFIX)
    app.include_router(health_router, prefix=API_PREFIX)
    # Unversioned liveness probe for load balancers.
    app.include_router(health_router, include_in_schema=False)

    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="Tenant Offboard API v1")

    return app


app = create_app()
