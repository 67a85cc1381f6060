"""Relationship store: (subject, relation, object) tuples and permission checks.

Two backends implement the same contract:

* ``SqlRelationshipStore`` keeps tuples in the service database.
* ``OpenFgaRelationshipStore`` talks to an OpenFGA server over HTTP.

``check`` never raises. A missing tuple is a ``denied`` result and any backend
failure is an ``evaluation_error`` result, which callers must treat as denied.
``write`` and ``remove`` are idempotent and raise ``RelationshipStoreError`` on
I/O failure so the caller can decide whether to retry or abort.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Protocol

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantadmin.core.config import get_settings
from tenantadmin.core.errors import RelationshipStoreError
from tenantadmin.persistence.repos import relationships as relationships_repo
from tenantadmin.services.resilience import RetryPolicy, default_retry_policy, retry_async
from tenantadmin.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)


# relation -> relations that imply it, per object type.
DEFAULT_RELATION_MODEL: dict[str, dict[str, tuple[str, ...]]] = {
    "project": {
        "viewer": ("editor",),
        "editor": ("owner",),
    },
    "projects": {
        "create": ("admin",),
    },
}


class CheckOutcome(str, Enum):
    ALLOWED = "allowed"
    DENIED = "denied"
    EVALUATION_ERROR = "evaluation_error"


@dataclass(frozen=True)
class CheckResult:
    outcome: CheckOutcome
    reason: str | None = None

    @property
    def allowed(self) -> bool:
        return self.outcome is CheckOutcome.ALLOWED


@dataclass(frozen=True)
class TupleKey:
    subject_id: str
    relation: str
    object_type: str
    object_id: str


class RelationshipStore(Protocol):
    async def check(self, subject_id: str, relation: str, object_type: str, object_id: str) -> CheckResult:
        ...

    async def write(self, subject_id: str, relation: str, object_type: str, object_id: str) -> None:
        ...

    async def remove(self, subject_id: str, relation: str, object_type: str, object_id: str) -> None:
        ...

    async def list_tuples(self, object_type: str, object_id: str) -> list[TupleKey]:
        ...


def implying_relations(
    object_type: str,
    relation: str,
    model: Mapping[str, Mapping[str, tuple[str, ...]]] | None = None,
) -> frozenset[str]:
    # Transitive closure of relations that satisfy `relation`; cycles terminate.
    model = DEFAULT_RELATION_MODEL if model is None else model
    rules = model.get(object_type, {})
    seen = {relation}
    frontier = [relation]
    while frontier:
        current = frontier.pop()
        for parent in rules.get(current, ()):
            if parent not in seen:
                seen.add(parent)
                frontier.append(parent)
    return frozenset(seen)


class SqlRelationshipStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | Callable[[], Any],
        *,
        model: Mapping[str, Mapping[str, tuple[str, ...]]] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._model = DEFAULT_RELATION_MODEL if model is None else model

    async def check(self, subject_id: str, relation: str, object_type: str, object_id: str) -> CheckResult:
        relations = implying_relations(object_type, relation, self._model)
        try:
            async with self._session_factory() as session:
                found = await relationships_repo.tuple_exists(
                    session,
                    subject_id=subject_id,
                    relations=relations,
                    object_type=object_type,
                    object_id=object_id,
                )
        except (SQLAlchemyError, OSError) as exc:
            logger.exception(
                "relationship check failed subject=%s relation=%s object=%s:%s",
                subject_id,
                relation,
                object_type,
                object_id,
            )
            increment_counter("relationship_check_errors_total")
            return CheckResult(CheckOutcome.EVALUATION_ERROR, reason=type(exc).__name__)
        outcome = CheckOutcome.ALLOWED if found else CheckOutcome.DENIED
        logger.debug(
            "relationship check subject=%s relation=%s object=%s:%s outcome=%s",
            subject_id,
            relation,
            object_type,
            object_id,
            outcome.value,
        )
        return CheckResult(outcome)

    async def write(self, subject_id: str, relation: str, object_type: str, object_id: str) -> None:
        try:
            async with self._session_factory() as session:
                inserted = await relationships_repo.insert_tuple(
                    session,
                    subject_id=subject_id,
                    relation=relation,
                    object_type=object_type,
                    object_id=object_id,
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise RelationshipStoreError(
                f"Failed to write {subject_id} {relation} {object_type}:{object_id}"
            ) from exc
        logger.info(
            "relationship written subject=%s relation=%s object=%s:%s new=%s",
            subject_id,
            relation,
            object_type,
            object_id,
            inserted,
        )

    async def remove(self, subject_id: str, relation: str, object_type: str, object_id: str) -> None:
        try:
            async with self._session_factory() as session:
                removed = await relationships_repo.delete_tuple(
                    session,
                    subject_id=subject_id,
                    relation=relation,
                    object_type=object_type,
                    object_id=object_id,
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise RelationshipStoreError(
                f"Failed to remove {subject_id} {relation} {object_type}:{object_id}"
            ) from exc
        logger.info(
            "relationship removed subject=%s relation=%s object=%s:%s rows=%s",
            subject_id,
            relation,
            object_type,
            object_id,
            removed,
        )

    async def list_tuples(self, object_type: str, object_id: str) -> list[TupleKey]:
        try:
            async with self._session_factory() as session:
                rows = await relationships_repo.list_tuples(
                    session, object_type=object_type, object_id=object_id
                )
        except SQLAlchemyError as exc:
            raise RelationshipStoreError(f"Failed to list tuples for {object_type}:{object_id}") from exc
        return [
            TupleKey(
                subject_id=row.subject_id,
                relation=row.relation,
                object_type=row.object_type,
                object_id=row.object_id,
            )
            for row in rows
        ]


_OPENFGA_DUPLICATE_WRITE = "already exists"
_OPENFGA_MISSING_DELETE = "does not exist"


def format_openfga_user(subject_id: str) -> str:
    # Bare identifiers are users; typed subjects (tenant:<id>) pass through.
    if ":" in subject_id:
        return subject_id
    return f"user:{subject_id}"


def parse_openfga_user(user: str) -> str:
    if user.startswith("user:"):
        return user[len("user:"):]
    return user


class OpenFgaRelationshipStore:
    def __init__(
        self,
        *,
        api_url: str,
        store_id: str,
        model_id: str | None = None,
        api_token: str | None = None,
        client: httpx.AsyncClient | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        self._base = f"{api_url.rstrip('/')}/stores/{store_id}"
        self._model_id = model_id
        headers = {"Authorization": f"Bearer {api_token}"} if api_token else None
        self._client = client or httpx.AsyncClient(headers=headers)
        self._policy = policy

    def _tuple_key(self, subject_id: str, relation: str, object_type: str, object_id: str) -> dict[str, str]:
        return {
            "user": format_openfga_user(subject_id),
            "relation": relation,
            "object": f"{object_type}:{object_id}",
        }

    def _body(self, payload: dict[str, Any]) -> dict[str, Any]:
        if self._model_id:
            payload["authorization_model_id"] = self._model_id
        return payload

    async def _post(self, path: str, payload: dict[str, Any]) -> httpx.Response:
        started = time.monotonic()
        success = False

        async def _call() -> httpx.Response:
            response = await self._client.post(f"{self._base}/{path}", json=payload)
            if response.status_code >= 500:
                response.raise_for_status()
            return response

        try:
            response = await retry_async(_call, policy=self._policy or default_retry_policy())
            success = response.status_code < 400
            return response
        finally:
            record_external_call(
                integration="openfga",
                latency_ms=(time.monotonic() - started) * 1000.0,
                success=success,
            )

    async def check(self, subject_id: str, relation: str, object_type: str, object_id: str) -> CheckResult:
        payload = self._body({"tuple_key": self._tuple_key(subject_id, relation, object_type, object_id)})
        try:
            response = await self._post("check", payload)
            response.raise_for_status()
            allowed = bool(response.json().get("allowed", False))
        except (httpx.HTTPError, ValueError, TimeoutError) as exc:
            logger.exception(
                "openfga check failed subject=%s relation=%s object=%s:%s",
                subject_id,
                relation,
                object_type,
                object_id,
            )
            increment_counter("relationship_check_errors_total")
            return CheckResult(CheckOutcome.EVALUATION_ERROR, reason=type(exc).__name__)
        return CheckResult(CheckOutcome.ALLOWED if allowed else CheckOutcome.DENIED)

    async def _mutate(self, kind: str, key: dict[str, str], tolerated: str) -> None:
        payload = self._body({kind: {"tuple_keys": [key]}})
        try:
            response = await self._post("write", payload)
        except (httpx.HTTPError, TimeoutError) as exc:
            raise RelationshipStoreError(f"OpenFGA {kind} failed for {key['object']}") from exc
        if response.status_code == 400 and tolerated in _error_message(response):
            # Duplicate write / missing delete are idempotent successes.
            return
        if response.status_code >= 400:
            raise RelationshipStoreError(
                f"OpenFGA {kind} rejected for {key['object']}: {response.status_code}"
            )

    async def write(self, subject_id: str, relation: str, object_type: str, object_id: str) -> None:
        key = self._tuple_key(subject_id, relation, object_type, object_id)
        await self._mutate("writes", key, _OPENFGA_DUPLICATE_WRITE)
        logger.info("openfga relationship written %s %s %s", key["user"], relation, key["object"])

    async def remove(self, subject_id: str, relation: str, object_type: str, object_id: str) -> None:
        key = self._tuple_key(subject_id, relation, object_type, object_id)
        await self._mutate("deletes", key, _OPENFGA_MISSING_DELETE)
        logger.info("openfga relationship removed %s %s %s", key["user"], relation, key["object"])

    async def list_tuples(self, object_type: str, object_id: str) -> list[TupleKey]:
        tuples: list[TupleKey] = []
        continuation: str | None = None
        while True:
            payload: dict[str, Any] = {"tuple_key": {"object": f"{object_type}:{object_id}"}}
            if continuation:
                payload["continuation_token"] = continuation
            try:
                response = await self._post("read", payload)
                response.raise_for_status()
                body = response.json()
            except (httpx.HTTPError, ValueError, TimeoutError) as exc:
                raise RelationshipStoreError(f"OpenFGA read failed for {object_type}:{object_id}") from exc
            for item in body.get("tuples", []):
                key = item.get("key", {})
                _type, _sep, obj_id = str(key.get("object", "")).partition(":")
                tuples.append(
                    TupleKey(
                        subject_id=parse_openfga_user(str(key.get("user", ""))),
                        relation=str(key.get("relation", "")),
                        object_type=_type,
                        object_id=obj_id,
                    )
                )
            continuation = body.get("continuation_token") or None
            if not continuation:
                return tuples

    async def aclose(self) -> None:
        await self._client.aclose()


def _error_message(response: httpx.Response) -> str:
    try:
        return str(response.json().get("message", ""))
    except ValueError:
        return response.text


_store: RelationshipStore | None = None


def build_relationship_store() -> RelationshipStore:
    settings = get_settings()
    backend = settings.relationship_backend.lower()
    if backend == "openfga":
        if not settings.openfga_store_id:
            raise ValueError("OPENFGA_STORE_ID is required when RELATIONSHIP_BACKEND=openfga")
        return OpenFgaRelationshipStore(
            api_url=settings.openfga_api_url,
            store_id=settings.openfga_store_id,
            model_id=settings.openfga_model_id,
            api_token=settings.openfga_api_token,
        )
    if backend == "sql":
        from tenantadmin.persistence.db import SessionLocal

        return SqlRelationshipStore(SessionLocal)
    raise ValueError(f"Unknown relationship backend: {settings.relationship_backend}")


def get_relationship_store() -> RelationshipStore:
    global _store
    if _store is None:
        _store = build_relationship_store()
    return _store


def set_relationship_store(store: RelationshipStore | None) -> None:
    # Tests swap in failing or recording stores; None resets to settings.
    global _store
    _store = store
