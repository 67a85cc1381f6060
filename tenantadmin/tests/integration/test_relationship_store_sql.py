from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from tenantadmin.core.errors import RelationshipStoreError
from tenantadmin.domain.models import RelationshipTuple
from tenantadmin.persistence.db import SessionLocal
from tenantadmin.services.authz.relationships import CheckOutcome, SqlRelationshipStore
from tenantadmin.services.telemetry import counters_snapshot
from tenantadmin.tests.utils.auth import new_identity


async def _tuple_count() -> int:
    async with SessionLocal() as session:
        return int((await session.execute(select(func.count()).select_from(RelationshipTuple))).scalar_one())


class _BrokenSession:
    # Stands in for a session whose database connection is gone.
    async def __aenter__(self):
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    async def __aexit__(self, *exc_info) -> None:
        return None


@pytest.mark.asyncio
async def test_repeated_writes_keep_one_tuple() -> None:
    user_id, _tenant_id = new_identity()
    store = SqlRelationshipStore(SessionLocal)
    await store.write(user_id, "owner", "project", "p1")
    await store.write(user_id, "owner", "project", "p1")
    await asyncio.gather(*(store.write(user_id, "owner", "project", "p1") for _ in range(5)))
    assert await _tuple_count() == 1
    check = await store.check(user_id, "owner", "project", "p1")
    assert check.outcome is CheckOutcome.ALLOWED


@pytest.mark.asyncio
async def test_stronger_relations_imply_weaker_ones() -> None:
    owner, _tenant_id = new_identity()
    editor, _ = new_identity()
    store = SqlRelationshipStore(SessionLocal)
    await store.write(owner, "owner", "project", "p1")
    await store.write(editor, "editor", "project", "p1")

    assert (await store.check(owner, "viewer", "project", "p1")).allowed
    assert (await store.check(owner, "editor", "project", "p1")).allowed
    assert (await store.check(editor, "viewer", "project", "p1")).allowed
    assert (await store.check(editor, "owner", "project", "p1")).outcome is CheckOutcome.DENIED
    # Relations never leak across objects.
    assert (await store.check(owner, "viewer", "project", "p2")).outcome is CheckOutcome.DENIED


@pytest.mark.asyncio
async def test_tenant_admin_implies_create() -> None:
    user_id, tenant_id = new_identity()
    _other_user, other_tenant = new_identity()
    store = SqlRelationshipStore(SessionLocal)
    await store.write(user_id, "admin", "projects", tenant_id)
    assert (await store.check(user_id, "create", "projects", tenant_id)).allowed
    assert not (await store.check(user_id, "create", "projects", other_tenant)).allowed


@pytest.mark.asyncio
async def test_remove_is_idempotent_and_revokes() -> None:
    user_id, _tenant_id = new_identity()
    store = SqlRelationshipStore(SessionLocal)
    await store.write(user_id, "viewer", "project", "p1")
    await store.remove(user_id, "viewer", "project", "p1")
    await store.remove(user_id, "viewer", "project", "p1")
    assert await _tuple_count() == 0
    assert (await store.check(user_id, "viewer", "project", "p1")).outcome is CheckOutcome.DENIED


@pytest.mark.asyncio
async def test_list_tuples_is_ordered() -> None:
    owner, _ = new_identity()
    viewer, _ = new_identity()
    store = SqlRelationshipStore(SessionLocal)
    await store.write(viewer, "viewer", "project", "p1")
    await store.write(owner, "owner", "project", "p1")
    await store.write(owner, "owner", "project", "p2")
    tuples = await store.list_tuples("project", "p1")
    assert [(t.relation, t.subject_id) for t in tuples] == [("owner", owner), ("viewer", viewer)]


@pytest.mark.asyncio
async def test_unreachable_database_fails_closed() -> None:
    user_id, _tenant_id = new_identity()
    store = SqlRelationshipStore(_BrokenSession)
    result = await store.check(user_id, "viewer", "project", "p1")
    assert result.outcome is CheckOutcome.EVALUATION_ERROR
    assert not result.allowed
    assert counters_snapshot()["relationship_check_errors_total"] == 1
    with pytest.raises(RelationshipStoreError):
        await store.write(user_id, "viewer", "project", "p1")
