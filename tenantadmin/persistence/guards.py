from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import and_

from tenantadmin.core.config import get_settings


@dataclass(frozen=True)
class TenantPredicateError(RuntimeError):
    # Raised when a tenant-scoped query is built without a tenant id.
    message: str


def require_tenant_id(tenant_id: str | None) -> None:
    settings = get_settings()
    if not settings.authz_require_tenant_predicate:
        return
    if not tenant_id:
        raise TenantPredicateError("Tenant predicate required but tenant_id is missing")


def tenant_predicate(model, tenant_id: str) -> object:
    # Every tenant-scoped query goes through here so the guard cannot be skipped.
    require_tenant_id(tenant_id)
    return model.tenant_id == tenant_id


def visible_predicate(model, tenant_id: str, *, include_deleted: bool = False) -> object:
    # Default reads hide soft-deleted rows; include_deleted is the explicit override path.
    predicate = tenant_predicate(model, tenant_id)
    if include_deleted:
        return predicate
    return and_(predicate, model.is_deleted.is_(False))
