from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantadmin.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    tenant_predicate_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from tenantadmin.apps.api.response import API_VERSION, REQUEST_ID_HEADER
from tenantadmin.apps.api.routes.health import router as health_router
from tenantadmin.apps.api.routes.projects import router as projects_router
from tenantadmin.apps.api.routes.provisioning import router as provisioning_router
from tenantadmin.apps.api.routes.relationships import router as relationships_router
from tenantadmin.core.config import get_settings
from tenantadmin.core.errors import TenantAdminError
from tenantadmin.core.logging import configure_logging
from tenantadmin.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title=get_settings().app_name, version=API_VERSION)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
        started = time.monotonic()
        response = await call_next(request)
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        logger.debug(
            "%s %s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            (time.monotonic() - started) * 1000.0,
            request_id,
        )
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(TenantAdminError)
    async def _domain_exception_handler(request: Request, exc: TenantAdminError):
        return await domain_exception_handler(request, exc)

    @app.exception_handler(TenantPredicateError)
    async def _tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError):
        return await tenant_predicate_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    v1 = APIRouter(prefix=f"/{API_VERSION}")
    v1.include_router(health_router)
    v1.include_router(projects_router)
    v1.include_router(provisioning_router)
    v1.include_router(relationships_router)
    app.include_router(v1)
    return app


app = create_app()
