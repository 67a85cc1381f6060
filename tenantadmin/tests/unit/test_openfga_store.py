from __future__ import annotations

import json

import httpx
import pytest

from tenantadmin.core.errors import RelationshipStoreError
from tenantadmin.services.authz.relationships import CheckOutcome, OpenFgaRelationshipStore
from tenantadmin.services.resilience import RetryPolicy
from tenantadmin.services.telemetry import external_call_samples


_POLICY = RetryPolicy(timeout_ms=1000, max_attempts=2, backoff_ms=1)


def _store(handler) -> tuple[OpenFgaRelationshipStore, list[tuple[str, dict]]]:
    seen: list[tuple[str, dict]] = []

    def _record(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content or b"{}")
        seen.append((request.url.path, body))
        return handler(request, body)

    client = httpx.AsyncClient(transport=httpx.MockTransport(_record))
    store = OpenFgaRelationshipStore(
        api_url="http://fga.test",
        store_id="store1",
        model_id="model1",
        client=client,
        policy=_POLICY,
    )
    return store, seen


@pytest.mark.asyncio
async def test_check_maps_allowed_and_denied() -> None:
    def handler(request: httpx.Request, body: dict) -> httpx.Response:
        allowed = body["tuple_key"]["relation"] == "viewer"
        return httpx.Response(200, json={"allowed": allowed})

    store, seen = _store(handler)
    assert (await store.check("u1", "viewer", "project", "p1")).outcome is CheckOutcome.ALLOWED
    assert (await store.check("u1", "owner", "project", "p1")).outcome is CheckOutcome.DENIED
    path, body = seen[0]
    assert path == "/stores/store1/check"
    assert body["tuple_key"] == {"user": "user:u1", "relation": "viewer", "object": "project:p1"}
    assert body["authorization_model_id"] == "model1"
    assert [s.success for s in external_call_samples("openfga")] == [True, True]


@pytest.mark.asyncio
async def test_check_server_error_fails_closed() -> None:
    store, seen = _store(lambda request, body: httpx.Response(503, json={"message": "unavailable"}))
    result = await store.check("u1", "viewer", "project", "p1")
    assert result.outcome is CheckOutcome.EVALUATION_ERROR
    assert not result.allowed
    # Transient 5xx was retried per policy.
    assert len(seen) == 2
    assert [s.success for s in external_call_samples("openfga")] == [False]


@pytest.mark.asyncio
async def test_duplicate_write_and_missing_delete_are_idempotent() -> None:
    def handler(request: httpx.Request, body: dict) -> httpx.Response:
        if "writes" in body:
            return httpx.Response(400, json={"code": "write_failed_due_to_invalid_input", "message": "tuple already exists"})
        return httpx.Response(400, json={"code": "write_failed_due_to_invalid_input", "message": "tuple does not exist"})

    store, seen = _store(handler)
    await store.write("u1", "owner", "project", "p1")
    await store.remove("u1", "owner", "project", "p1")
    assert seen[0][1]["writes"]["tuple_keys"][0]["object"] == "project:p1"
    assert seen[1][1]["deletes"]["tuple_keys"][0]["user"] == "user:u1"


@pytest.mark.asyncio
async def test_typed_subjects_pass_through() -> None:
    store, seen = _store(lambda request, body: httpx.Response(200, json={}))
    await store.write("tenant:t1", "admin", "projects", "t1")
    assert seen[0][1]["writes"]["tuple_keys"][0]["user"] == "tenant:t1"


@pytest.mark.asyncio
async def test_rejected_write_raises() -> None:
    store, _seen = _store(lambda request, body: httpx.Response(400, json={"message": "invalid relation"}))
    with pytest.raises(RelationshipStoreError):
        await store.write("u1", "bogus", "project", "p1")


@pytest.mark.asyncio
async def test_unreachable_backend_raises_on_write() -> None:
    def handler(request: httpx.Request, body: dict) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    store, seen = _store(handler)
    with pytest.raises(RelationshipStoreError):
        await store.write("u1", "owner", "project", "p1")
    assert len(seen) == 2
    assert [s.success for s in external_call_samples("openfga")] == [False]


@pytest.mark.asyncio
async def test_list_tuples_follows_continuation() -> None:
    pages = {
        "": {
            "tuples": [{"key": {"user": "user:u1", "relation": "owner", "object": "project:p1"}}],
            "continuation_token": "next",
        },
        "next": {
            "tuples": [{"key": {"user": "user:u2", "relation": "viewer", "object": "project:p1"}}],
            "continuation_token": "",
        },
    }

    def handler(request: httpx.Request, body: dict) -> httpx.Response:
        return httpx.Response(200, json=pages[body.get("continuation_token", "")])

    store, _seen = _store(handler)
    tuples = await store.list_tuples("project", "p1")
    assert [(t.subject_id, t.relation) for t in tuples] == [("u1", "owner"), ("u2", "viewer")]
    assert all(t.object_type == "project" and t.object_id == "p1" for t in tuples)
