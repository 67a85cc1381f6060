from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from tenantadmin.apps.api.main import create_app
from tenantadmin.tests.utils.auth import auth_headers, new_identity
from tenantadmin.tests.utils.authz import grant_project_creator


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


async def _tenant_with_project(client: AsyncClient) -> tuple[str, str, dict[str, str]]:
    admin, tenant_id = new_identity()
    await grant_project_creator(admin, tenant_id)
    headers = auth_headers(admin, tenant_id, roles=["admin"])
    response = await client.post("/v1/projects", json={"name": "Apollo"}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["data"]["id"], tenant_id, headers


@pytest.mark.asyncio
async def test_admin_manages_project_relationships() -> None:
    async with _client() as client:
        project_id, tenant_id, headers = await _tenant_with_project(client)
        member, _ = new_identity()
        body = {"subject_id": member, "relation": "editor", "object_type": "project", "object_id": project_id}

        written = await client.post("/v1/relationships", json=body, headers=headers)
        assert written.status_code == 201
        again = await client.post("/v1/relationships", json=body, headers=headers)
        assert again.status_code == 201

        listed = await client.get(
            "/v1/relationships", params={"object_type": "project", "object_id": project_id}, headers=headers
        )
        assert listed.status_code == 200
        relations = [(t["subject_id"], t["relation"]) for t in listed.json()["data"]]
        assert relations.count((member, "editor")) == 1

        check = await client.post(
            "/v1/relationships/check", json={**body, "relation": "viewer"}, headers=headers
        )
        assert check.json()["data"] == {"allowed": True, "outcome": "allowed"}

        removed = await client.request("DELETE", "/v1/relationships", json=body, headers=headers)
        assert removed.status_code == 200
        check = await client.post("/v1/relationships/check", json=body, headers=headers)
        assert check.json()["data"] == {"allowed": False, "outcome": "denied"}

        # Granting editor through the API lets the member update the project.
        await client.post("/v1/relationships", json=body, headers=headers)
        patched = await client.patch(
            f"/v1/projects/{project_id}",
            json={"version": 1, "description": "edited"},
            headers=auth_headers(member, tenant_id),
        )
        assert patched.status_code == 200


@pytest.mark.asyncio
async def test_relationship_admin_requires_role() -> None:
    async with _client() as client:
        project_id, tenant_id, _headers = await _tenant_with_project(client)
        user, _ = new_identity()
        response = await client.post(
            "/v1/relationships",
            json={"subject_id": user, "relation": "owner", "object_type": "project", "object_id": project_id},
            headers=auth_headers(user, tenant_id),
        )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_unknown_relation_and_object_type_are_rejected() -> None:
    async with _client() as client:
        project_id, _tenant_id, headers = await _tenant_with_project(client)
        user, _ = new_identity()
        bad_relation = await client.post(
            "/v1/relationships",
            json={"subject_id": user, "relation": "janitor", "object_type": "project", "object_id": project_id},
            headers=headers,
        )
        assert bad_relation.status_code == 400
        assert bad_relation.json()["error"]["code"] == "INVALID_RELATION"

        bad_type = await client.post(
            "/v1/relationships",
            json={"subject_id": user, "relation": "owner", "object_type": "document", "object_id": project_id},
            headers=headers,
        )
        assert bad_type.status_code == 422


@pytest.mark.asyncio
async def test_admin_cannot_reach_other_tenant_objects() -> None:
    async with _client() as client:
        project_id, _tenant_id, _headers = await _tenant_with_project(client)
        _other_project, other_tenant, other_headers = await _tenant_with_project(client)
        user, _ = new_identity()

        foreign_project = await client.post(
            "/v1/relationships",
            json={"subject_id": user, "relation": "owner", "object_type": "project", "object_id": project_id},
            headers=other_headers,
        )
        assert foreign_project.status_code == 404

        _admin, first_tenant = new_identity()
        foreign_collection = await client.post(
            "/v1/relationships",
            json={"subject_id": user, "relation": "admin", "object_type": "projects", "object_id": first_tenant},
            headers=other_headers,
        )
        assert foreign_collection.status_code == 404

        own_collection = await client.post(
            "/v1/relationships",
            json={"subject_id": user, "relation": "admin", "object_type": "projects", "object_id": other_tenant},
            headers=other_headers,
        )
        assert own_collection.status_code == 201


@pytest.mark.asyncio
async def test_health_reports_database_and_queue() -> None:
    async with _client() as client:
        response = await client.get("/v1/health")
    assert response.status_code == 200
    data = response.json()["data"]
    assert data == {
        "status": "ok",
        "database": "ok",
        "queue_depth": 0,
        "relationship_backend": "sql",
    }
    assert response.headers["X-Request-Id"]
