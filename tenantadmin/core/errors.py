from __future__ import annotations


class TenantAdminError(Exception):
    """Base error for tenantadmin."""


class AuthenticationError(TenantAdminError):
    """Missing or invalid subject/tenant identity on the request."""


class AuthorizationError(TenantAdminError):
    """Relationship check denied or could not be evaluated."""


class NotFoundError(TenantAdminError):
    """Entity absent or owned by another tenant; both look the same to callers."""


class ConflictError(TenantAdminError):
    """Concurrent modification of the same entity."""


class RelationshipStoreError(TenantAdminError):
    """Relationship backend I/O failure on write/remove."""


class WorkflowStateError(TenantAdminError):
    """Operation not allowed in the workflow's current state."""


class DatabaseError(TenantAdminError):
    """Database layer failure."""
