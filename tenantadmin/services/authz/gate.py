from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol, TypeVar
from uuid import UUID

from tenantadmin.core.errors import AuthenticationError, AuthorizationError
from tenantadmin.services.authz.relationships import (
    CheckOutcome,
    RelationshipStore,
    get_relationship_store,
)
from tenantadmin.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

T = TypeVar("T")

OWNER_RELATION = "owner"


class PrincipalLike(Protocol):
    # Minimal principal shape the gate needs.
    subject_id: str | None
    tenant_id: str | None


@dataclass(frozen=True)
class Identity:
    subject_id: str
    tenant_id: str


@dataclass(frozen=True)
class OwnerGrant:
    # Object type receiving the owner tuple; id is taken from the mutation result.
    object_type: str
    object_id: Callable[[object], str]


def _parse_uuid(value: str | None, label: str) -> str:
    if value is None or not str(value).strip():
        raise AuthenticationError(f"Missing {label} on authenticated principal")
    try:
        return str(UUID(str(value).strip()))
    except ValueError as exc:
        raise AuthenticationError(f"Invalid {label} on authenticated principal") from exc


def resolve_identity(principal: PrincipalLike | None) -> Identity:
    # Canonical UUID strings so tuple subjects and tenant columns compare equal.
    if principal is None:
        raise AuthenticationError("Authentication required")
    return Identity(
        subject_id=_parse_uuid(getattr(principal, "subject_id", None), "user id"),
        tenant_id=_parse_uuid(getattr(principal, "tenant_id", None), "tenant id"),
    )


class AuthorizationGate:
    """Guards a mutating use case with a relationship check.

    ``execute`` resolves the caller's identity, checks the required relation
    on the target resource, runs the mutation, and finally writes an owner
    tuple for whatever the mutation created. The mutation is responsible for
    committing its own transaction; the grant runs only after it returns.

    The grant is best effort: a failed write is logged and counted but the
    mutation result is still returned. An owner tuple may therefore be
    missing for a committed entity, and repair is an operator concern.
    """

    def __init__(self, store: RelationshipStore | None = None) -> None:
        self._store = store

    @property
    def store(self) -> RelationshipStore:
        return self._store or get_relationship_store()

    async def authorize(
        self,
        identity: Identity,
        relation: str,
        resource_type: str,
        resource_id: str,
    ) -> None:
        result = await self.store.check(identity.subject_id, relation, resource_type, resource_id)
        if result.allowed:
            return
        if result.outcome is CheckOutcome.EVALUATION_ERROR:
            increment_counter("authz_evaluation_errors_total")
            logger.warning(
                "authorization unavailable, failing closed subject=%s relation=%s object=%s:%s reason=%s",
                identity.subject_id,
                relation,
                resource_type,
                resource_id,
                result.reason,
            )
        else:
            increment_counter("authz_denied_total")
        raise AuthorizationError(f"Missing '{relation}' on {resource_type}")

    async def execute(
        self,
        principal: PrincipalLike | None,
        *,
        relation: str,
        resource_type: str,
        resource_id: str | None,
        mutation: Callable[[Identity], Awaitable[T]],
        grant: OwnerGrant | None = None,
    ) -> T:
        # resource_id=None checks the tenant-scoped collection (used for create).
        identity = resolve_identity(principal)
        target_id = resource_id if resource_id is not None else identity.tenant_id
        await self.authorize(identity, relation, resource_type, target_id)
        result = await mutation(identity)
        if grant is not None:
            await self._grant_owner(identity, grant.object_type, grant.object_id(result))
        return result

    async def _grant_owner(self, identity: Identity, object_type: str, object_id: str) -> None:
        try:
            await self.store.write(identity.subject_id, OWNER_RELATION, object_type, object_id)
        except Exception as exc:  # noqa: BLE001 - the mutation already committed
            increment_counter("authz_grant_failures_total")
            logger.error(
                "GrantFailure subject=%s relation=%s object=%s:%s error=%s",
                identity.subject_id,
                OWNER_RELATION,
                object_type,
                object_id,
                exc,
                exc_info=True,
            )
