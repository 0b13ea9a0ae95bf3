# tests/test_notifications.py — Dispatcher channels and the notification centre
import pytest
import pytest_asyncio
from httpx import AsyncClient
from sqlalchemy import select

import notification_dispatcher
from errors import BadRequest
from models import Issue, Notification
from notification_dispatcher import EmailAdapter, NotificationDispatcher
from tests.conftest import get_auth_headers


class FlakyAdapter:
    async def format(self, event_type, recipients, data, priority):
        return {}

    async def send(self, formatted):
        raise RuntimeError("provider timeout")


@pytest_asyncio.fixture
async def dispatcher(session_factory):
    return NotificationDispatcher(session_factory)


# ============================================================
# DISPATCHER
# ============================================================

@pytest.mark.asyncio
@pytest.mark.parametrize("event_type,recipients,channels", [
    ("", [{"user_id": "u"}], ["in-app"]),
    ("issue.created", [], ["in-app"]),
    ("issue.created", [{"user_id": "u"}], []),
])
async def test_dispatch_validates_payload(dispatcher, event_type, recipients, channels):
    with pytest.raises(BadRequest):
        await dispatcher.dispatch(event_type, recipients, channels)


@pytest.mark.asyncio
async def test_in_app_stores_notification(dispatcher, developer_user, session_factory):
    result = await dispatcher.dispatch(
        "issue.assigned", [{"user_id": developer_user.id}], ["in-app"], {"message": "You got SB-1"},
    )
    assert result["results"][0]["success"] is True

    async with session_factory() as session:
        rows = (await session.execute(
            select(Notification).where(Notification.user_id == developer_user.id)
        )).scalars().all()
    assert len(rows) == 1
    assert rows[0].title == "You got SB-1"
    assert rows[0].event_type == "issue.assigned"


@pytest.mark.asyncio
async def test_in_app_project_room_reaches_project_members(
    dispatcher, db_session, session_factory, test_project, admin_user, developer_user,
):
    db_session.add(Issue(
        project_id=test_project.id, title="Crash", reporter_id=admin_user.id, assignee_id=developer_user.id,
    ))
    await db_session.commit()

    result = await dispatcher.dispatch(
        "issue.created", [{"project_socket_room": f"project:{test_project.id}"}], ["in-app"],
    )
    assert sorted(result["results"][0]["details"]["sent_to"]) == sorted([admin_user.id, developer_user.id])


@pytest.mark.asyncio
async def test_unsupported_and_failing_channels_are_isolated(session_factory, developer_user):
    dispatcher = NotificationDispatcher(session_factory)
    dispatcher.adapters["flaky"] = FlakyAdapter()

    result = await dispatcher.dispatch(
        "issue.created", [{"user_id": developer_user.id}], ["pager", "flaky", "in-app"],
    )
    channels = {r["channel"]: r for r in result["results"]}
    assert channels["pager"] == {"channel": "pager", "success": False, "error": "unsupported_channel"}
    assert channels["flaky"]["error"] == "provider timeout"
    assert channels["in-app"]["success"] is True


@pytest.mark.asyncio
async def test_email_without_recipients_fails(dispatcher):
    result = await dispatcher.dispatch("issue.created", [{"user_id": "u"}], ["email"])
    assert result["results"][0] == {"channel": "email", "success": False, "error": "no_recipients_for_email"}


@pytest.mark.asyncio
async def test_email_without_smtp_host_is_logged(monkeypatch):
    monkeypatch.setattr(notification_dispatcher, "SMTP_HOST", "")
    adapter = EmailAdapter()
    formatted = await adapter.format("issue.created", [{"email": "a@example.com"}], {"k": 1}, "high")
    assert formatted["subject"] == "[SprintBoard] issue.created"
    assert await adapter.send(formatted) == {"provider": "log", "sent_to": ["a@example.com"]}


@pytest.mark.asyncio
async def test_teams_without_webhook_url_fails(dispatcher, monkeypatch):
    monkeypatch.setattr(notification_dispatcher, "TEAMS_WEBHOOK_URL", "")
    result = await dispatcher.dispatch("issue.created", [{"user_id": "u"}], ["teams"])
    assert result["results"][0]["error"] == "no_webhook_urls_for_teams"


# ============================================================
# ENDPOINTS
# ============================================================

@pytest.mark.asyncio
async def test_notification_centre(client: AsyncClient, dispatcher, developer_user):
    for message in ("first", "second"):
        await dispatcher.dispatch("issue.assigned", [{"user_id": developer_user.id}], ["in-app"], {"message": message})
    headers = get_auth_headers(developer_user)

    resp = await client.get("/api/v1/notifications/count", headers=headers)
    assert resp.json() == {"unread": 2}

    resp = await client.get("/api/v1/notifications", headers=headers)
    items = resp.json()
    assert len(items) == 2
    assert all(not n["is_read"] for n in items)

    resp = await client.post(f"/api/v1/notifications/{items[0]['id']}/read", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["is_read"] is True

    resp = await client.get("/api/v1/notifications?unread_only=true", headers=headers)
    assert len(resp.json()) == 1

    resp = await client.post("/api/v1/notifications/read-all", headers=headers)
    assert resp.json() == {"marked_read": 1}
    resp = await client.get("/api/v1/notifications/count", headers=headers)
    assert resp.json() == {"unread": 0}


@pytest.mark.asyncio
async def test_cannot_read_someone_elses_notification(client: AsyncClient, dispatcher, developer_user, viewer_user):
    await dispatcher.dispatch("issue.assigned", [{"user_id": developer_user.id}], ["in-app"])
    resp = await client.get("/api/v1/notifications", headers=get_auth_headers(developer_user))
    notif_id = resp.json()[0]["id"]

    resp = await client.post(f"/api/v1/notifications/{notif_id}/read", headers=get_auth_headers(viewer_user))
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_dispatch_endpoint_requires_settings_admin(client: AsyncClient, admin_user, developer_user):
    body = {"event_type": "release.shipped", "recipients": [{"user_id": developer_user.id}], "channels": ["in-app"]}
    resp = await client.post("/api/v1/notifications/dispatch", json=body, headers=get_auth_headers(developer_user))
    assert resp.status_code == 403

    resp = await client.post("/api/v1/notifications/dispatch", json=body, headers=get_auth_headers(admin_user))
    assert resp.status_code == 200
    assert resp.json()["results"][0]["success"] is True
