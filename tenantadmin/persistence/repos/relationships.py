from __future__ import annotations

from typing import Iterable
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from tenantadmin.domain.models import RelationshipTuple
from tenantadmin.persistence.db import dialect_name


async def tuple_exists(
    session: AsyncSession,
    *,
    subject_id: str,
    relations: Iterable[str],
    object_type: str,
    object_id: str,
) -> bool:
    # One query covers the relation and every relation that implies it.
    relation_list = list(relations)
    if not relation_list:
        return False
    result = await session.execute(
        select(RelationshipTuple.id)
        .where(
            RelationshipTuple.subject_id == subject_id,
            RelationshipTuple.relation.in_(relation_list),
            RelationshipTuple.object_type == object_type,
            RelationshipTuple.object_id == object_id,
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def insert_tuple(
    session: AsyncSession,
    *,
    subject_id: str,
    relation: str,
    object_type: str,
    object_id: str,
) -> bool:
    # Returns True when a row was inserted, False when the tuple already existed.
    values = {
        "id": uuid4().hex,
        "subject_id": subject_id,
        "relation": relation,
        "object_type": object_type,
        "object_id": object_id,
    }
    dialect = dialect_name(session)
    if dialect == "postgresql":
        stmt = pg_insert(RelationshipTuple).values(**values).on_conflict_do_nothing()
    elif dialect == "sqlite":
        stmt = sqlite_insert(RelationshipTuple).values(**values).on_conflict_do_nothing()
    else:
        exists = await tuple_exists(
            session,
            subject_id=subject_id,
            relations=[relation],
            object_type=object_type,
            object_id=object_id,
        )
        if exists:
            return False
        session.add(RelationshipTuple(**values))
        await session.flush()
        return True
    result = await session.execute(stmt)
    return (result.rowcount or 0) > 0


async def delete_tuple(
    session: AsyncSession,
    *,
    subject_id: str,
    relation: str,
    object_type: str,
    object_id: str,
) -> int:
    result = await session.execute(
        delete(RelationshipTuple).where(
            RelationshipTuple.subject_id == subject_id,
            RelationshipTuple.relation == relation,
            RelationshipTuple.object_type == object_type,
            RelationshipTuple.object_id == object_id,
        )
    )
    return int(result.rowcount or 0)


async def list_tuples(
    session: AsyncSession,
    *,
    object_type: str,
    object_id: str,
) -> list[RelationshipTuple]:
    # Stable ordering keeps admin listings deterministic.
    result = await session.execute(
        select(RelationshipTuple)
        .where(
            RelationshipTuple.object_type == object_type,
            RelationshipTuple.object_id == object_id,
        )
        .order_by(RelationshipTuple.relation, RelationshipTuple.subject_id)
    )
    return list(result.scalars().all())
