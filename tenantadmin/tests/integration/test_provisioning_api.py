from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from tenantadmin.apps.api.main import create_app
from tenantadmin.services.authz.relationships import set_relationship_store
from tenantadmin.tests.utils.auth import auth_headers, new_identity
from tenantadmin.tests.utils.authz import ScriptedStore, grant, grant_project_creator


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


async def _owned_project(client: AsyncClient) -> tuple[str, str, str]:
    owner, tenant_id = new_identity()
    await grant_project_creator(owner, tenant_id)
    response = await client.post("/v1/projects", json={"name": "Apollo"}, headers=auth_headers(owner, tenant_id))
    assert response.status_code == 201, response.text
    return response.json()["data"]["id"], owner, tenant_id


@pytest.mark.asyncio
async def test_status_is_tenant_scoped() -> None:
    async with _client() as client:
        project_id, owner, tenant_id = await _owned_project(client)
        mine = await client.get(f"/v1/projects/{project_id}/provisioning", headers=auth_headers(owner, tenant_id))
        outsider, other_tenant = new_identity()
        theirs = await client.get(
            f"/v1/projects/{project_id}/provisioning", headers=auth_headers(outsider, other_tenant)
        )
    assert mine.status_code == 200
    assert mine.json()["data"]["state"] == "completed"
    assert mine.json()["data"]["run"] == 1
    assert theirs.status_code == 404


@pytest.mark.asyncio
async def test_signals_on_completed_workflow() -> None:
    async with _client() as client:
        project_id, owner, tenant_id = await _owned_project(client)
        viewer, _ = new_identity()
        await grant(viewer, "viewer", "project", project_id)

        denied = await client.post(
            f"/v1/projects/{project_id}/provisioning/configuration",
            json={"viewers": [viewer]},
            headers=auth_headers(viewer, tenant_id),
        )
        assert denied.status_code == 403

        ignored = await client.post(
            f"/v1/projects/{project_id}/provisioning/configuration",
            json={"viewers": [viewer]},
            headers=auth_headers(owner, tenant_id),
        )
        assert ignored.status_code == 202
        assert ignored.json()["data"] == {
            "project_id": project_id,
            "state": "completed",
            "applied": False,
            "run": None,
        }

        cancel = await client.post(
            f"/v1/projects/{project_id}/provisioning/cancel", headers=auth_headers(owner, tenant_id)
        )
        assert cancel.status_code == 409
        assert cancel.json()["error"]["code"] == "WORKFLOW_STATE_CONFLICT"

        retry = await client.post(
            f"/v1/projects/{project_id}/provisioning/retry", headers=auth_headers(owner, tenant_id)
        )
        assert retry.status_code == 409


@pytest.mark.asyncio
async def test_retry_after_failed_provisioning() -> None:
    # Permission writes fail during the first run, so provisioning ends failed.
    set_relationship_store(ScriptedStore(fail_writes=True))
    async with _client() as client:
        project_id, owner, tenant_id = await _owned_project(client)
        set_relationship_store(None)
        await grant(owner, "owner", "project", project_id)
        headers = auth_headers(owner, tenant_id)

        failed = await client.get(f"/v1/projects/{project_id}/provisioning", headers=headers)
        assert failed.json()["data"]["state"] == "failed"
        assert failed.json()["data"]["error_message"].startswith("configure_permissions:")

        retry = await client.post(f"/v1/projects/{project_id}/provisioning/retry", headers=headers)
        assert retry.status_code == 202
        assert retry.json()["data"]["run"] == 2

        status = await client.get(f"/v1/projects/{project_id}/provisioning", headers=headers)
    data = status.json()["data"]
    assert data["state"] == "completed"
    assert data["run"] == 2
    assert data["error_message"] is None
    assert all(step["success"] for step in data["steps"])


@pytest.mark.asyncio
async def test_cancel_requires_owner() -> None:
    async with _client() as client:
        project_id, _owner, tenant_id = await _owned_project(client)
        editor, _ = new_identity()
        await grant(editor, "editor", "project", project_id)
        response = await client.post(
            f"/v1/projects/{project_id}/provisioning/cancel", headers=auth_headers(editor, tenant_id)
        )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_signals_for_other_tenant_project_are_not_found() -> None:
    async with _client() as client:
        project_id, _owner, _tenant_id = await _owned_project(client)
        outsider, other_tenant = new_identity()
        headers = auth_headers(outsider, other_tenant)
        responses = [
            await client.post(
                f"/v1/projects/{project_id}/provisioning/configuration", json={"viewers": [outsider]}, headers=headers
            ),
            await client.post(f"/v1/projects/{project_id}/provisioning/cancel", headers=headers),
            await client.post(f"/v1/projects/{project_id}/provisioning/retry", headers=headers),
        ]
    assert [r.status_code for r in responses] == [404, 404, 404]
    assert {r.json()["error"]["code"] for r in responses} == {"NOT_FOUND"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {"editors": "bob"},
        {"editors": 5},
        {"viewers": ["not-a-user-id"]},
        {"owners": ["00000000-0000-0000-0000-000000000001"]},
    ],
)
async def test_configuration_payload_is_validated(payload: dict) -> None:
    async with _client() as client:
        project_id, owner, tenant_id = await _owned_project(client)
        response = await client.post(
            f"/v1/projects/{project_id}/provisioning/configuration",
            json=payload,
            headers=auth_headers(owner, tenant_id),
        )
        status = await client.get(f"/v1/projects/{project_id}/provisioning", headers=auth_headers(owner, tenant_id))
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"
    assert status.json()["data"]["config"] == {}
