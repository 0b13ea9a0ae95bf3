"""
SprintBoard — Notification Dispatcher

Validates a notification request, then formats and delivers it per channel through
pluggable adapters. Each channel reports its own outcome; one failing channel never
stops the others.

Channels:
    in-app : stores Notification rows and pushes to realtime rooms
    email  : SMTP (SMTP_HOST) in a worker thread, logged only when unset
    teams  : JSON card POSTed to a Teams/Slack-compatible incoming webhook

Recipients are dicts; each adapter reads the keys it understands:
    {"user_id"}, {"user_socket_room"}, {"project_socket_room"}, {"email"}, {"teams_webhook_url"}
"""

import os
import json
import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import Any, Dict, List, Optional, Protocol

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from errors import BadRequest
from models import Issue, Notification
from realtime import manager

logger = logging.getLogger("sprintboard.notifications")

SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = int(os.getenv("SMTP_PORT", "25"))
SMTP_FROM = os.getenv("SMTP_FROM", "sprintboard@localhost")
TEAMS_WEBHOOK_URL = os.getenv("TEAMS_WEBHOOK_URL", "")
NOTIFY_HTTP_TIMEOUT = float(os.getenv("NOTIFY_HTTP_TIMEOUT", "10"))


class ChannelAdapter(Protocol):
    async def format(self, event_type: str, recipients: List[dict], data: dict, priority: str) -> dict:
        ...

    async def send(self, formatted: dict) -> dict:
        ...


def _title_for(event_type: str, data: dict) -> str:
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])[:200]
    return f"SprintBoard {event_type}"


# ============================================================
# ADAPTERS
# ============================================================

class InAppAdapter:
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def format(self, event_type, recipients, data, priority):
        rooms = [
            r.get("user_socket_room") or r.get("project_socket_room")
            for r in recipients
            if r.get("user_socket_room") or r.get("project_socket_room")
        ]
        return {
            "event_type": event_type,
            "title": _title_for(event_type, data),
            "body": json.dumps(data, default=str)[:2000],
            "priority": priority,
            "data": data,
            "user_ids": [r["user_id"] for r in recipients if r.get("user_id")],
            "rooms": rooms,
        }

    async def _project_members(self, session, project_id: str) -> List[str]:
        stmt = select(Issue.reporter_id, Issue.assignee_id).where(Issue.project_id == project_id)
        result = await session.execute(stmt)
        members = set()
        for reporter_id, assignee_id in result.all():
            members.update(uid for uid in (reporter_id, assignee_id) if uid)
        return sorted(members)

    async def send(self, formatted):
        async with self.session_factory() as session:
            user_ids = list(formatted["user_ids"])
            for room in formatted["rooms"]:
                kind, _, ref = room.partition(":")
                if kind == "project" and ref:
                    user_ids.extend(await self._project_members(session, ref))
                elif kind == "user" and ref:
                    user_ids.append(ref)
            user_ids = list(dict.fromkeys(user_ids))

            for user_id in user_ids:
                session.add(Notification(
                    user_id=user_id,
                    event_type=formatted["event_type"],
                    title=formatted["title"],
                    body=formatted["body"],
                    priority=formatted["priority"],
                    data=formatted["data"],
                ))
            await session.commit()

        pushed = 0
        for room in formatted["rooms"]:
            pushed += await manager.emit(room, "notify", {
                "type": formatted["event_type"],
                "priority": formatted["priority"],
                "data": formatted["data"],
            })
        return {"provider": "in-app", "sent_to": user_ids, "rooms": formatted["rooms"], "pushed": pushed}


class EmailAdapter:
    async def format(self, event_type, recipients, data, priority):
        return {
            "subject": f"[SprintBoard] {event_type}",
            "text": f"Event: {event_type}\nPriority: {priority}\n\n{json.dumps(data, indent=2, default=str)}",
            "to": [r["email"] for r in recipients if r.get("email")],
        }

    async def send(self, formatted):
        if not formatted["to"]:
            raise ValueError("no_recipients_for_email")
        if not SMTP_HOST:
            logger.info(f"Email (SMTP_HOST unset) to={formatted['to']} subject={formatted['subject']}")
            return {"provider": "log", "sent_to": formatted["to"]}

        def _send_sync() -> None:
            message = EmailMessage()
            message["Subject"] = formatted["subject"]
            message["From"] = SMTP_FROM
            message["To"] = ", ".join(formatted["to"])
            message.set_content(formatted["text"])
            with smtplib.SMTP(host=SMTP_HOST, port=SMTP_PORT, timeout=15) as smtp:
                smtp.send_message(message)

        await asyncio.to_thread(_send_sync)
        return {"provider": "smtp", "sent_to": formatted["to"]}


class TeamsAdapter:
    async def format(self, event_type, recipients, data, priority):
        urls = [r["teams_webhook_url"] for r in recipients if r.get("teams_webhook_url")]
        if not urls and TEAMS_WEBHOOK_URL:
            urls = [TEAMS_WEBHOOK_URL]
        return {
            "payload": {
                "text": f"SprintBoard {event_type} (priority: {priority})",
                "sections": [{"activityTitle": event_type, "text": json.dumps(data, default=str)[:1000]}],
            },
            "webhook_urls": urls,
        }

    async def send(self, formatted):
        if not formatted["webhook_urls"]:
            raise ValueError("no_webhook_urls_for_teams")
        sent = []
        async with httpx.AsyncClient(timeout=NOTIFY_HTTP_TIMEOUT) as client:
            for url in formatted["webhook_urls"]:
                resp = await client.post(url, json=formatted["payload"])
                resp.raise_for_status()
                sent.append(url)
        return {"provider": "teams-webhook", "sent_to": sent}


# ============================================================
# DISPATCHER
# ============================================================

class NotificationDispatcher:
    def __init__(self, session_factory: async_sessionmaker, adapters: Optional[Dict[str, ChannelAdapter]] = None):
        self.adapters = adapters if adapters is not None else {
            "in-app": InAppAdapter(session_factory),
            "email": EmailAdapter(),
            "teams": TeamsAdapter(),
        }

    @staticmethod
    def validate(event_type: Any, recipients: Any, channels: Any) -> None:
        errors = []
        if not event_type or not isinstance(event_type, str):
            errors.append("event_type required")
        if not isinstance(recipients, list) or not recipients:
            errors.append("recipients array required")
        if not isinstance(channels, list) or not channels:
            errors.append("channels array required")
        if errors:
            raise BadRequest("Invalid notification payload: " + "; ".join(errors))

    async def dispatch(
        self,
        event_type: str,
        recipients: List[dict],
        channels: List[str],
        data: Optional[dict] = None,
        priority: str = "normal",
    ) -> Dict[str, List[dict]]:
        self.validate(event_type, recipients, channels)
        data = data or {}

        results = []
        for channel in channels:
            adapter = self.adapters.get(channel)
            if adapter is None:
                results.append({"channel": channel, "success": False, "error": "unsupported_channel"})
                continue
            try:
                formatted = await adapter.format(event_type, recipients, data, priority)
                details = await adapter.send(formatted)
                results.append({"channel": channel, "success": True, "details": details})
            except Exception as e:
                logger.warning(f"Notification dispatch failed channel={channel} event={event_type}: {e}")
                results.append({"channel": channel, "success": False, "error": str(e) or "dispatch_failed"})
        return {"results": results}
