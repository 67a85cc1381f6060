from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantadmin.apps.api.response import error_response
from tenantadmin.core.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    DatabaseError,
    NotFoundError,
    RelationshipStoreError,
    TenantAdminError,
    WorkflowStateError,
)
from tenantadmin.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)


_STATUS_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Most specific first; the first isinstance match wins.
_DOMAIN_ERRORS: tuple[tuple[type[TenantAdminError], int, str], ...] = (
    (AuthenticationError, 401, "AUTH_UNAUTHORIZED"),
    (AuthorizationError, 403, "AUTH_FORBIDDEN"),
    (NotFoundError, 404, "NOT_FOUND"),
    (ConflictError, 409, "CONFLICT"),
    (WorkflowStateError, 409, "WORKFLOW_STATE_CONFLICT"),
    (RelationshipStoreError, 503, "RELATIONSHIP_STORE_UNAVAILABLE"),
    (DatabaseError, 503, "DATABASE_UNAVAILABLE"),
)


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # HTTPException detail is either {"code", "message", ...} or a plain string.
    fallback = _STATUS_CODES.get(status_code, "UNKNOWN_ERROR")
    if isinstance(detail, dict):
        code = str(detail.get("code") or fallback)
        message = str(detail.get("message") or "Request failed")
        extra = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, extra or None
    if isinstance(detail, str):
        return fallback, detail, None
    return fallback, "Request failed", None


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def domain_exception_handler(request: Request, exc: TenantAdminError) -> JSONResponse:
    for error_type, status_code, code in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            break
    else:
        status_code, code = 500, "INTERNAL_ERROR"
    if status_code >= 500:
        logger.warning("request failed path=%s code=%s error=%s", request.url.path, code, exc)
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    payload = error_response(request=request, code=code, message=str(exc) or code)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError) -> JSONResponse:
    # A missing tenant id at the repository layer is an authentication gap, not a server fault.
    payload = error_response(request=request, code="AUTH_UNAUTHORIZED", message=exc.message)
    return JSONResponse(content=payload, status_code=401)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled error path=%s", request.url.path)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)

