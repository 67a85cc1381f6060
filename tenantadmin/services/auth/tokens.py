from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping
from uuid import UUID

import jwt

from tenantadmin.core.config import get_settings
from tenantadmin.core.errors import AuthenticationError


@dataclass(frozen=True)
class TokenIdentity:
    subject_id: str
    tenant_id: str
    roles: frozenset[str] = field(default_factory=frozenset)


def _csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def parse_uuid_claim(value: Any, label: str) -> str:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise AuthenticationError(f"Token is missing the {label} claim")
    try:
        return str(UUID(str(value).strip()))
    except ValueError as exc:
        raise AuthenticationError(f"Token {label} claim is not a valid UUID") from exc


def decode_access_token(token: str) -> dict[str, Any]:
    # Signature, expiry and (when configured) audience/issuer are all enforced by PyJWT.
    settings = get_settings()
    key = settings.auth_jwt_public_key or settings.auth_jwt_secret
    if not key:
        raise AuthenticationError("Token validation is not configured")
    options: dict[str, Any] = {"require": ["exp"]}
    if not settings.auth_jwt_audience:
        options["verify_aud"] = False
    try:
        return jwt.decode(
            token,
            key,
            algorithms=_csv(settings.auth_jwt_algorithms),
            audience=settings.auth_jwt_audience,
            issuer=settings.auth_jwt_issuer,
            options=options,
        )
    except jwt.PyJWTError as exc:
        raise AuthenticationError("Invalid or expired bearer token") from exc


def extract_roles(claims: Mapping[str, Any]) -> frozenset[str]:
    # Flat "roles" claim or the Keycloak-style realm_access.roles.
    roles: set[str] = set()
    flat = claims.get("roles")
    if isinstance(flat, str):
        roles.update(_csv(flat))
    elif isinstance(flat, (list, tuple)):
        roles.update(str(role) for role in flat)
    realm = claims.get("realm_access")
    if isinstance(realm, Mapping) and isinstance(realm.get("roles"), (list, tuple)):
        roles.update(str(role) for role in realm["roles"])
    return frozenset(roles)


def extract_identity(claims: Mapping[str, Any]) -> TokenIdentity:
    """Pull the user id, tenant id and roles out of validated claims.

    The user id comes from the first claim in ``AUTH_USER_ID_CLAIMS`` that is
    present; the tenant id from ``AUTH_TENANT_ID_CLAIM``. Both must be UUIDs.
    """
    settings = get_settings()
    user_value = None
    for claim in _csv(settings.auth_user_id_claims):
        if claims.get(claim):
            user_value = claims[claim]
            break
    return TokenIdentity(
        subject_id=parse_uuid_claim(user_value, "user id"),
        tenant_id=parse_uuid_claim(claims.get(settings.auth_tenant_id_claim), "tenant id"),
        roles=extract_roles(claims),
    )
