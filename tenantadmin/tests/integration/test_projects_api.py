from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select

from tenantadmin.apps.api.deps import get_authorization_gate
from tenantadmin.apps.api.main import create_app
from tenantadmin.domain.models import Project
from tenantadmin.persistence.db import SessionLocal
from tenantadmin.services.authz.gate import AuthorizationGate
from tenantadmin.services.authz.relationships import CheckOutcome, SqlRelationshipStore
from tenantadmin.services.telemetry import counters_snapshot
from tenantadmin.tests.utils.auth import auth_headers, make_token, new_identity
from tenantadmin.tests.utils.authz import ScriptedStore, grant, grant_project_creator


def _client(app=None) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app or create_app()), base_url="http://test")


async def _project_count() -> int:
    async with SessionLocal() as session:
        return int((await session.execute(select(func.count()).select_from(Project))).scalar_one())


async def _create_project(client: AsyncClient, headers: dict[str, str], name: str = "Apollo") -> dict:
    response = await client.post("/v1/projects", json={"name": name, "description": "lunar"}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["data"]


@pytest.mark.asyncio
async def test_create_requires_create_relation() -> None:
    user_id, tenant_id = new_identity()
    async with _client() as client:
        response = await client.post(
            "/v1/projects", json={"name": "Apollo"}, headers=auth_headers(user_id, tenant_id)
        )
    assert response.status_code == 403
    body = response.json()
    assert body["error"]["code"] == "AUTH_FORBIDDEN"
    assert body["meta"]["request_id"]
    assert await _project_count() == 0


@pytest.mark.asyncio
async def test_create_grants_owner_and_provisions_inline() -> None:
    user_id, tenant_id = new_identity()
    await grant_project_creator(user_id, tenant_id)
    headers = auth_headers(user_id, tenant_id)
    async with _client() as client:
        project = await _create_project(client, headers)
        status = await client.get(f"/v1/projects/{project['id']}/provisioning", headers=headers)

    assert project["tenant_id"] == tenant_id
    assert project["created_by"] == user_id
    assert project["last_updated_by"] == user_id
    assert project["version"] == 1
    assert (await SqlRelationshipStore(SessionLocal).check(user_id, "owner", "project", project["id"])).allowed

    assert status.status_code == 200
    data = status.json()["data"]
    assert data["state"] == "completed"
    assert [step["step"] for step in data["steps"]] == [
        "provision_resources",
        "configure_permissions",
        "send_notifications",
    ]
    assert data["steps"][0]["resource_ids"]["database"] == f"db_{project['id']}"


@pytest.mark.asyncio
async def test_tenant_admin_can_create() -> None:
    user_id, tenant_id = new_identity()
    await grant(user_id, "admin", "projects", tenant_id)
    async with _client() as client:
        await _create_project(client, auth_headers(user_id, tenant_id))
    assert await _project_count() == 1


@pytest.mark.asyncio
async def test_update_needs_editor_and_detects_conflicts() -> None:
    owner, tenant_id = new_identity()
    viewer, _ = new_identity()
    editor, _ = new_identity()
    await grant_project_creator(owner, tenant_id)
    async with _client() as client:
        project = await _create_project(client, auth_headers(owner, tenant_id))
        project_id = project["id"]
        await grant(viewer, "viewer", "project", project_id)
        await grant(editor, "editor", "project", project_id)

        denied = await client.patch(
            f"/v1/projects/{project_id}",
            json={"version": 1, "name": "Gemini"},
            headers=auth_headers(viewer, tenant_id),
        )
        assert denied.status_code == 403

        updated = await client.patch(
            f"/v1/projects/{project_id}",
            json={"version": 1, "name": "Gemini"},
            headers=auth_headers(editor, tenant_id),
        )
        assert updated.status_code == 200
        assert updated.json()["data"]["version"] == 2
        assert updated.json()["data"]["last_updated_by"] == editor

        stale = await client.patch(
            f"/v1/projects/{project_id}",
            json={"version": 1, "name": "Mercury"},
            headers=auth_headers(owner, tenant_id),
        )
        assert stale.status_code == 409
        assert stale.json()["error"]["code"] == "CONFLICT"

        fetched = await client.get(f"/v1/projects/{project_id}", headers=auth_headers(viewer, tenant_id))
        assert fetched.json()["data"]["name"] == "Gemini"


@pytest.mark.asyncio
async def test_delete_needs_owner_and_hides_project() -> None:
    owner, tenant_id = new_identity()
    editor, _ = new_identity()
    await grant_project_creator(owner, tenant_id)
    headers = auth_headers(owner, tenant_id)
    async with _client() as client:
        project_id = (await _create_project(client, headers))["id"]
        await grant(editor, "editor", "project", project_id)

        denied = await client.delete(f"/v1/projects/{project_id}", headers=auth_headers(editor, tenant_id))
        assert denied.status_code == 403

        deleted = await client.delete(f"/v1/projects/{project_id}", headers=headers)
        assert deleted.status_code == 200
        assert deleted.json()["data"]["is_deleted"] is True

        missing = await client.get(f"/v1/projects/{project_id}", headers=headers)
        assert missing.status_code == 404
        listed = await client.get("/v1/projects", headers=headers)
        assert listed.json()["data"] == []

        hidden = await client.get(f"/v1/projects/{project_id}?include_deleted=true", headers=headers)
        assert hidden.status_code == 200
        assert hidden.json()["data"]["is_deleted"] is True


@pytest.mark.asyncio
async def test_other_tenant_cannot_see_or_change_project() -> None:
    owner, tenant_id = new_identity()
    outsider, other_tenant = new_identity()
    await grant_project_creator(owner, tenant_id)
    async with _client() as client:
        project_id = (await _create_project(client, auth_headers(owner, tenant_id)))["id"]
        outsider_headers = auth_headers(outsider, other_tenant)

        fetched = await client.get(f"/v1/projects/{project_id}", headers=outsider_headers)
        assert fetched.status_code == 404
        listed = await client.get("/v1/projects", headers=outsider_headers)
        assert listed.json()["data"] == []

        # Even a stray cross-tenant tuple cannot reach the row.
        await grant(outsider, "owner", "project", project_id)
        patched = await client.patch(
            f"/v1/projects/{project_id}", json={"version": 1, "name": "stolen"}, headers=outsider_headers
        )
        assert patched.status_code == 404
        deleted = await client.delete(f"/v1/projects/{project_id}", headers=outsider_headers)
        assert deleted.status_code == 404


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {"name": "Apollo", "tenant_id": "00000000-0000-0000-0000-000000000000"},
        {"name": "Apollo", "created_by": "00000000-0000-0000-0000-000000000000"},
        {"name": ""},
        {"name": "x" * 201},
    ],
)
async def test_invalid_payloads_are_rejected(payload: dict) -> None:
    user_id, tenant_id = new_identity()
    await grant_project_creator(user_id, tenant_id)
    async with _client() as client:
        response = await client.post("/v1/projects", json=payload, headers=auth_headers(user_id, tenant_id))
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"
    assert await _project_count() == 0


@pytest.mark.asyncio
async def test_missing_or_malformed_identity_is_unauthorized() -> None:
    user_id, tenant_id = new_identity()
    await grant_project_creator(user_id, tenant_id)
    async with _client() as client:
        anonymous = await client.post("/v1/projects", json={"name": "Apollo"})
        assert anonymous.status_code == 401
        assert anonymous.json()["error"]["code"] == "AUTH_UNAUTHORIZED"

        bad_subject = make_token(user_id="alice", tenant_id=tenant_id)
        response = await client.post(
            "/v1/projects", json={"name": "Apollo"}, headers={"Authorization": f"Bearer {bad_subject}"}
        )
        assert response.status_code == 401

        no_tenant = make_token(user_id=user_id, tenant_id=None)
        response = await client.get("/v1/projects", headers={"Authorization": f"Bearer {no_tenant}"})
        assert response.status_code == 401
    assert await _project_count() == 0


@pytest.mark.asyncio
async def test_unavailable_relationship_store_denies() -> None:
    user_id, tenant_id = new_identity()
    app = create_app()
    app.dependency_overrides[get_authorization_gate] = lambda: AuthorizationGate(
        ScriptedStore(outcome=CheckOutcome.EVALUATION_ERROR)
    )
    async with _client(app) as client:
        response = await client.post(
            "/v1/projects", json={"name": "Apollo"}, headers=auth_headers(user_id, tenant_id)
        )
    assert response.status_code == 403
    assert await _project_count() == 0


@pytest.mark.asyncio
async def test_owner_grant_failure_still_creates_project() -> None:
    user_id, tenant_id = new_identity()
    app = create_app()
    app.dependency_overrides[get_authorization_gate] = lambda: AuthorizationGate(ScriptedStore(fail_writes=True))
    async with _client(app) as client:
        await _create_project(client, auth_headers(user_id, tenant_id))
    assert await _project_count() == 1
    assert counters_snapshot()["authz_grant_failures_total"] == 1


@pytest.mark.asyncio
async def test_writes_to_other_tenant_project_are_not_found() -> None:
    owner, tenant_id = new_identity()
    outsider, other_tenant = new_identity()
    await grant_project_creator(owner, tenant_id)
    async with _client() as client:
        project_id = (await _create_project(client, auth_headers(owner, tenant_id)))["id"]
        outsider_headers = auth_headers(outsider, other_tenant)

        patched = await client.patch(
            f"/v1/projects/{project_id}", json={"version": 1, "name": "stolen"}, headers=outsider_headers
        )
        deleted = await client.delete(f"/v1/projects/{project_id}", headers=outsider_headers)
        fetched = await client.get(f"/v1/projects/{project_id}", headers=auth_headers(owner, tenant_id))

    # Same answer as a read for an id outside the tenant.
    assert patched.status_code == 404
    assert patched.json()["error"]["code"] == "NOT_FOUND"
    assert deleted.status_code == 404
    assert fetched.json()["data"]["name"] == "Apollo"
    assert fetched.json()["data"]["is_deleted"] is False
