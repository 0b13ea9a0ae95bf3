# routers/notifications.py — In-app notification centre and manual dispatch
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import select, func, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from auth import get_current_user, require_permission, CurrentUser
from database import get_db_session, get_session_factory
from errors import NotFound
from models import Notification, utcnow
from notification_dispatcher import NotificationDispatcher

router = APIRouter(prefix="/api/v1/notifications", tags=["Notifications"])


# --- Schemas ---

class NotificationOut(BaseModel):
    id: str
    event_type: str
    title: str
    body: str
    priority: str
    data: dict
    read_at: Optional[str] = None
    is_read: bool
    created_at: str


class DispatchRequest(BaseModel):
    event_type: str = Field(..., min_length=1)
    recipients: List[Dict[str, Any]]
    channels: List[str]
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: str = Field(default="normal", pattern=r'^(low|normal|high)$')


def _notif_out(n) -> dict:
    return NotificationOut(
        id=n.id, event_type=n.event_type, title=n.title, body=n.body,
        priority=n.priority, data=n.data or {},
        read_at=n.read_at.isoformat() if n.read_at else None,
        is_read=n.read_at is not None,
        created_at=n.created_at.isoformat(),
    ).model_dump()


# ============================================================
# LIST
# ============================================================

@router.get("")
async def list_notifications(
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    query = select(Notification).where(Notification.user_id == user.id)
    if unread_only:
        query = query.where(Notification.read_at.is_(None))
    query = query.order_by(Notification.created_at.desc()).offset(offset).limit(limit)
    result = await db.execute(query)
    return [_notif_out(n) for n in result.scalars().all()]


@router.get("/count")
async def notification_count(
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    stmt = select(func.count(Notification.id)).where(
        Notification.user_id == user.id,
        Notification.read_at.is_(None),
    )
    unread = (await db.execute(stmt)).scalar() or 0
    return {"unread": unread}


# ============================================================
# READ STATE
# ============================================================

@router.post("/{notification_id}/read")
async def mark_read(
    notification_id: str,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    result = await db.execute(
        select(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == user.id,
        )
    )
    notif = result.scalar_one_or_none()
    if not notif:
        raise NotFound("Notification not found")
    if notif.read_at is None:
        notif.read_at = utcnow()
        await db.commit()
    return _notif_out(notif)


@router.post("/read-all")
async def mark_all_read(
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    result = await db.execute(
        update(Notification)
        .where(Notification.user_id == user.id, Notification.read_at.is_(None))
        .values(read_at=utcnow())
    )
    await db.commit()
    return {"marked_read": result.rowcount}


# ============================================================
# DISPATCH
# ============================================================

@router.post("/dispatch")
async def dispatch_notification(
    data: DispatchRequest,
    session_factory: async_sessionmaker = Depends(get_session_factory),
    user: CurrentUser = Depends(require_permission("settings.admin")),
):
    """Send a notification through one or more channels"""
    dispatcher = NotificationDispatcher(session_factory)
    return await dispatcher.dispatch(
        data.event_type, data.recipients, data.channels, data.data, data.priority,
    )
