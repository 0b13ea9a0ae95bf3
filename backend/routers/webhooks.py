# routers/webhooks.py — Outbound webhook subscriptions
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

import webhooks
from auth import require_permission, CurrentUser
from database import get_db_session

router = APIRouter(prefix="/api/v1/webhooks", tags=["Webhooks"])


class WebhookCreate(BaseModel):
    target_url: str = Field(..., min_length=8, max_length=2000)
    event: str = Field(..., min_length=1, max_length=100)


def _webhook_out(w, include_secret: bool = False) -> dict:
    out = {
        "id": w.id,
        "target_url": w.target_url,
        "event": w.event,
        "is_active": w.is_active,
        "failure_count": w.failure_count or 0,
        "last_error": w.last_error,
        "last_delivered_at": w.last_delivered_at.isoformat() if w.last_delivered_at else None,
        "created_at": w.created_at.isoformat() if w.created_at else None,
    }
    if include_secret:
        # Returned once, at creation
        out["secret"] = w.secret
    return out


@router.get("")
async def list_webhooks(
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(require_permission("settings.admin")),
):
    return [_webhook_out(w) for w in await webhooks.list_subscriptions(db)]


@router.post("", status_code=201)
async def create_webhook(
    data: WebhookCreate,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(require_permission("settings.admin")),
):
    """Subscribe a URL to an event; deliveries are signed with the returned secret"""
    subscription = await webhooks.subscribe(db, data.target_url, data.event, created_by=user.id)
    return _webhook_out(subscription, include_secret=True)


@router.delete("/{subscription_id}")
async def delete_webhook(
    subscription_id: str,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(require_permission("settings.admin")),
):
    await webhooks.delete_subscription(db, subscription_id)
    return {"ok": True, "id": subscription_id}
