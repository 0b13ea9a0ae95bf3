# tests/test_health.py — Health, root, middleware and error envelope tests
import pytest
from httpx import AsyncClient

from tests.conftest import get_auth_headers


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient):
    res = await client.get("/health")
    assert res.status_code == 200
    data = res.json()
    assert data["status"] == "healthy"
    assert data["database"] == "connected"


@pytest.mark.asyncio
async def test_root(client: AsyncClient):
    res = await client.get("/")
    assert res.status_code == 200
    assert res.json()["name"] == "SprintBoard"


@pytest.mark.asyncio
async def test_request_id_and_security_headers(client: AsyncClient):
    res = await client.get("/health", headers={"X-Request-ID": "req-123"})
    assert res.headers["X-Request-ID"] == "req-123"
    assert res.headers["X-Correlation-ID"] == "req-123"
    assert res.headers["X-Content-Type-Options"] == "nosniff"
    assert res.headers["X-Frame-Options"] == "DENY"


@pytest.mark.asyncio
async def test_error_envelope_carries_code_and_request_id(client: AsyncClient, developer_user):
    res = await client.get(
        "/api/v1/projects/missing",
        headers={**get_auth_headers(developer_user), "X-Request-ID": "req-404"},
    )
    assert res.status_code == 404
    body = res.json()
    assert body["error"] == "not_found"
    assert body["code"] == "SB-REQ-002"
    assert body["request_id"] == "req-404"


@pytest.mark.asyncio
async def test_validation_errors_are_sanitised(client: AsyncClient, admin_user):
    res = await client.post(
        "/api/v1/projects",
        json={"key": "lowercase", "name": ""},
        headers=get_auth_headers(admin_user),
    )
    assert res.status_code == 422
    assert all({"type", "loc", "msg"} <= set(err) for err in res.json()["detail"])
