from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenantadmin.core.config import get_settings
from tenantadmin.core.errors import AuthenticationError
from tenantadmin.persistence.db import get_session
from tenantadmin.services.authz.gate import AuthorizationGate
from tenantadmin.services.auth.tokens import (
    decode_access_token,
    extract_identity,
    parse_uuid_claim,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request, closed on success or error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Authenticated caller; tenant_id is the only tenant a request may touch.
    subject_id: str
    tenant_id: str
    roles: list[str] = Field(default_factory=list)
    auth_method: str = "jwt"

    def has_role(self, role: str) -> bool:
        return role in self.roles


def _parse_bearer_token(header_value: str | None) -> str:
    if not header_value:
        raise AuthenticationError("Missing bearer token")
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthenticationError("Missing or invalid bearer token")
    return parts[1]


def _principal_from_dev_headers(request: Request) -> Principal:
    # Local development only; identifiers are validated exactly like token claims.
    roles = request.headers.get("X-Roles", "")
    return Principal(
        subject_id=parse_uuid_claim(request.headers.get("X-User-Id"), "user id"),
        tenant_id=parse_uuid_claim(request.headers.get("X-Tenant-Id"), "tenant id"),
        roles=[role.strip() for role in roles.split(",") if role.strip()],
        auth_method="dev_bypass",
    )


async def get_current_principal(request: Request) -> Principal:
    settings = get_settings()
    if settings.auth_dev_bypass and request.headers.get("X-User-Id"):
        return _principal_from_dev_headers(request)
    if not settings.auth_enabled:
        raise AuthenticationError("Authentication is disabled and no dev identity was supplied")
    token = _parse_bearer_token(request.headers.get(settings.auth_header))
    identity = extract_identity(decode_access_token(token))
    return Principal(
        subject_id=identity.subject_id,
        tenant_id=identity.tenant_id,
        roles=sorted(identity.roles),
    )


def get_authorization_gate() -> AuthorizationGate:
    # Overridable in tests; the store itself comes from settings.
    return AuthorizationGate()


def require_role(role: str):
    # Route-level RBAC on top of the relationship checks done by the gate.
    async def _dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if not principal.has_role(role):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"code": "AUTH_FORBIDDEN", "message": f"Role '{role}' required"},
            )
        return principal

    return _dependency
