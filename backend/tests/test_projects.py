# tests/test_projects.py — Project and workspace router tests
import pytest
from httpx import AsyncClient

from tests.conftest import get_auth_headers


@pytest.mark.asyncio
async def test_create_and_get_project(client: AsyncClient, admin_user):
    headers = get_auth_headers(admin_user)
    resp = await client.post("/api/v1/projects", json={"key": "WEB", "name": "Website"}, headers=headers)
    assert resp.status_code == 201
    project = resp.json()
    assert project["created_by"] == admin_user.id

    resp = await client.get(f"/api/v1/projects/{project['id']}", headers=headers)
    assert resp.json()["key"] == "WEB"


@pytest.mark.asyncio
async def test_duplicate_project_key(client: AsyncClient, admin_user):
    headers = get_auth_headers(admin_user)
    await client.post("/api/v1/projects", json={"key": "API", "name": "API"}, headers=headers)
    resp = await client.post("/api/v1/projects", json={"key": "API", "name": "Again"}, headers=headers)
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_developer_can_read_but_not_create(client: AsyncClient, developer_user, test_project):
    headers = get_auth_headers(developer_user)
    resp = await client.get("/api/v1/projects", headers=headers)
    assert resp.status_code == 200
    assert [p["key"] for p in resp.json()] == ["SB"]

    resp = await client.post("/api/v1/projects", json={"key": "NOPE", "name": "x"}, headers=headers)
    assert resp.status_code == 403
    assert resp.json()["missing"] == ["project.write"]


# ============================================================
# WORKSPACES
# ============================================================

@pytest.mark.asyncio
async def test_workspace_groups_projects(client: AsyncClient, admin_user, developer_user, test_project):
    headers = get_auth_headers(admin_user)
    resp = await client.post("/api/v1/workspaces", json={"key": "ENG", "name": "Engineering"}, headers=headers)
    assert resp.status_code == 201
    workspace = resp.json()
    assert workspace["created_by"] == admin_user.id

    resp = await client.post(
        "/api/v1/projects",
        json={"key": "APP", "name": "App", "workspace_id": workspace["id"]},
        headers=headers,
    )
    assert resp.status_code == 201
    assert resp.json()["workspace_id"] == workspace["id"]

    resp = await client.get(f"/api/v1/projects?workspace_id={workspace['id']}", headers=headers)
    assert [p["key"] for p in resp.json()] == ["APP"]

    resp = await client.get("/api/v1/workspaces", headers=get_auth_headers(developer_user))
    assert resp.status_code == 200
    assert [w["key"] for w in resp.json()] == ["ENG"]


@pytest.mark.asyncio
async def test_workspace_create_rules(client: AsyncClient, admin_user, developer_user):
    resp = await client.post(
        "/api/v1/workspaces", json={"key": "ENG", "name": "Engineering"}, headers=get_auth_headers(developer_user),
    )
    assert resp.status_code == 403
    assert resp.json()["missing"] == ["settings.admin"]

    headers = get_auth_headers(admin_user)
    await client.post("/api/v1/workspaces", json={"key": "ENG", "name": "Engineering"}, headers=headers)
    resp = await client.post("/api/v1/workspaces", json={"key": "ENG", "name": "Again"}, headers=headers)
    assert resp.status_code == 400

    resp = await client.post(
        "/api/v1/projects", json={"key": "ORP", "name": "Orphan", "workspace_id": "missing"}, headers=headers,
    )
    assert resp.status_code == 404
