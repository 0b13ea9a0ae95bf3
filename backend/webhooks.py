# webhooks.py — Outbound webhook subscriptions and signed delivery
import os
import hmac
import json
import hashlib
import logging
import secrets
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from errors import BadRequest, NotFound
from models import WebhookSubscription, utcnow

logger = logging.getLogger("sprintboard.webhooks")

WEBHOOK_OUTBOUND_ENABLED = os.getenv("WEBHOOK_OUTBOUND_ENABLED", "false").lower() == "true"
WEBHOOK_TIMEOUT_SECONDS = float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "10"))
SIGNATURE_HEADER = "X-SprintBoard-Signature"


def sign_payload(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


# ============================================================
# SUBSCRIPTIONS
# ============================================================

async def subscribe(db: AsyncSession, target_url: str, event: str, created_by: Optional[str] = None) -> WebhookSubscription:
    if not target_url or not event:
        raise BadRequest("target_url and event required")
    if not target_url.startswith(("http://", "https://")):
        raise BadRequest("target_url must be an http(s) URL")
    subscription = WebhookSubscription(
        target_url=target_url,
        event=event,
        secret=secrets.token_hex(32),
        created_by=created_by,
    )
    db.add(subscription)
    await db.commit()
    logger.info(f"Webhook subscribed event={event} url={target_url}")
    return subscription


async def list_subscriptions(db: AsyncSession) -> List[WebhookSubscription]:
    result = await db.execute(select(WebhookSubscription).order_by(WebhookSubscription.created_at.desc()))
    return list(result.scalars().all())


async def delete_subscription(db: AsyncSession, subscription_id: str) -> None:
    result = await db.execute(select(WebhookSubscription).where(WebhookSubscription.id == subscription_id))
    subscription = result.scalar_one_or_none()
    if not subscription:
        raise NotFound("Webhook subscription not found")
    await db.delete(subscription)
    await db.commit()


# ============================================================
# DELIVERY
# ============================================================

async def publish(
    session_factory: async_sessionmaker,
    event: str,
    payload: Dict[str, Any],
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> List[Dict[str, Any]]:
    """POST an event to every active subscriber. Never raises; returns per-subscriber results."""
    if not WEBHOOK_OUTBOUND_ENABLED:
        logger.debug(f"Webhook outbound disabled, skipping {event}")
        return []

    deliveries = []
    try:
        async with session_factory() as session:
            result = await session.execute(
                select(WebhookSubscription).where(
                    WebhookSubscription.event == event,
                    WebhookSubscription.is_active == True,  # noqa: E712
                )
            )
            subscriptions = result.scalars().all()
            if not subscriptions:
                return []

            body = json.dumps({"event": event, "data": payload}, default=str).encode("utf-8")
            async with httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT_SECONDS, transport=transport) as client:
                for sub in subscriptions:
                    headers = {
                        "Content-Type": "application/json",
                        "X-SprintBoard-Event": event,
                        SIGNATURE_HEADER: sign_payload(sub.secret, body),
                    }
                    try:
                        resp = await client.post(sub.target_url, content=body, headers=headers)
                        resp.raise_for_status()
                        sub.last_delivered_at = utcnow()
                        sub.last_error = None
                        deliveries.append({"subscription_id": sub.id, "success": True, "status_code": resp.status_code})
                    except httpx.HTTPError as e:
                        sub.failure_count = (sub.failure_count or 0) + 1
                        sub.last_error = str(e)[:200]
                        logger.warning(f"Webhook delivery failed sub={sub.id[:8]} event={event}: {e}")
                        deliveries.append({"subscription_id": sub.id, "success": False, "error": str(e)[:200]})
            await session.commit()
    except Exception as e:
        logger.warning(f"Webhook publish failed for {event}: {e}")
    return deliveries
