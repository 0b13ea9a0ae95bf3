# tests/test_webhooks.py — Subscriptions and signed outbound delivery
import hmac
import hashlib
import json

import httpx
import pytest
from httpx import AsyncClient
from sqlalchemy import select

import webhooks
from errors import BadRequest
from models import WebhookSubscription
from tests.conftest import get_auth_headers


def test_sign_payload():
    body = b'{"event":"issue.created"}'
    expected = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()
    assert webhooks.sign_payload("s3cret", body) == f"sha256={expected}"


@pytest.mark.asyncio
async def test_subscribe_validates_url(db_session):
    with pytest.raises(BadRequest):
        await webhooks.subscribe(db_session, "ftp://example.com/hook", "issue.created")
    with pytest.raises(BadRequest):
        await webhooks.subscribe(db_session, "https://example.com/hook", "")


@pytest.mark.asyncio
async def test_publish_disabled_is_a_no_op(session_factory, db_session, monkeypatch):
    monkeypatch.setattr(webhooks, "WEBHOOK_OUTBOUND_ENABLED", False)
    await webhooks.subscribe(db_session, "https://example.com/hook", "issue.created")
    assert await webhooks.publish(session_factory, "issue.created", {"id": "I-1"}) == []


@pytest.mark.asyncio
async def test_publish_signs_and_records_outcomes(session_factory, db_session, monkeypatch):
    monkeypatch.setattr(webhooks, "WEBHOOK_OUTBOUND_ENABLED", True)
    good = await webhooks.subscribe(db_session, "https://good.example.com/hook", "issue.created")
    bad = await webhooks.subscribe(db_session, "https://bad.example.com/hook", "issue.created")
    await webhooks.subscribe(db_session, "https://other.example.com/hook", "issue.updated")

    received = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(request)
        if request.url.host == "bad.example.com":
            return httpx.Response(500)
        return httpx.Response(204)

    deliveries = await webhooks.publish(
        session_factory, "issue.created", {"id": "I-1"}, transport=httpx.MockTransport(handler),
    )

    assert len(received) == 2
    by_id = {d["subscription_id"]: d for d in deliveries}
    assert by_id[good.id]["success"] is True
    assert by_id[bad.id]["success"] is False

    request = next(r for r in received if r.url.host == "good.example.com")
    assert json.loads(request.content) == {"event": "issue.created", "data": {"id": "I-1"}}
    assert request.headers[webhooks.SIGNATURE_HEADER] == webhooks.sign_payload(good.secret, request.content)

    async with session_factory() as session:
        rows = {
            s.id: s for s in (await session.execute(select(WebhookSubscription))).scalars().all()
        }
    assert rows[bad.id].failure_count == 1
    assert rows[bad.id].last_error
    assert rows[good.id].last_delivered_at is not None


@pytest.mark.asyncio
async def test_webhook_endpoints(client: AsyncClient, admin_user, developer_user):
    headers = get_auth_headers(admin_user)
    resp = await client.post(
        "/api/v1/webhooks",
        json={"target_url": "https://hooks.example.com/sb", "event": "issue.created"},
        headers=headers,
    )
    assert resp.status_code == 201
    created = resp.json()
    assert len(created["secret"]) == 64

    resp = await client.get("/api/v1/webhooks", headers=headers)
    assert [w["id"] for w in resp.json()] == [created["id"]]
    assert "secret" not in resp.json()[0]

    resp = await client.get("/api/v1/webhooks", headers=get_auth_headers(developer_user))
    assert resp.status_code == 403

    resp = await client.delete(f"/api/v1/webhooks/{created['id']}", headers=headers)
    assert resp.status_code == 200
    resp = await client.delete(f"/api/v1/webhooks/{created['id']}", headers=headers)
    assert resp.status_code == 404
