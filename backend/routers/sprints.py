# routers/sprints.py — Sprint planning: create, schedule, start, complete
from datetime import date
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import background
from audit import record_audit
from auth import require_permission, CurrentUser
from database import get_db_session, get_session_factory
from errors import BadRequest, NotFound
from models import Issue, Project, Sprint, SprintState, utcnow
from realtime import manager, project_room
from webhooks import publish

router = APIRouter(prefix="/api/v1/sprints", tags=["Sprints"])

# Issue statuses that count as finished when a sprint closes
DONE_STATUSES = ("done", "completed")


class SprintCreate(BaseModel):
    project_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=200)
    goal: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class SprintUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    goal: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class SprintComplete(BaseModel):
    move_incomplete: str = Field(default="backlog", pattern=r'^(backlog|next)$')


def _sprint_out(s: Sprint, issue_count: Optional[int] = None) -> dict:
    out = {
        "id": s.id,
        "project_id": s.project_id,
        "name": s.name,
        "goal": s.goal,
        "state": s.state.value if hasattr(s.state, "value") else str(s.state),
        "start_date": s.start_date.isoformat() if s.start_date else None,
        "end_date": s.end_date.isoformat() if s.end_date else None,
        "created_at": s.created_at.isoformat() if s.created_at else None,
    }
    if issue_count is not None:
        out["issue_count"] = issue_count
    return out


def _check_dates(start: Optional[date], end: Optional[date]) -> None:
    if start and end and end < start:
        raise BadRequest("end_date must not be before start_date")


async def get_sprint(sprint_id: str, db: AsyncSession) -> Sprint:
    result = await db.execute(select(Sprint).where(Sprint.id == sprint_id))
    sprint = result.scalar_one_or_none()
    if not sprint:
        raise NotFound("Sprint not found")
    return sprint


def _announce(
    session_factory: async_sessionmaker,
    request: Request,
    user: CurrentUser,
    action: str,
    sprint: Sprint,
    data: Dict[str, Any],
) -> None:
    """Audit, realtime and webhook fan-out for a committed sprint change"""
    background.spawn(
        record_audit(
            session_factory, action, actor_id=user.id, entity_type="sprint", entity_id=sprint.id,
            data=data, request_id=getattr(request.state, "request_id", None),
        ),
        f"audit:{action}",
    )
    payload = {"sprint_id": sprint.id, "project_id": sprint.project_id, **data}
    background.spawn(manager.emit(project_room(sprint.project_id), action, payload), f"emit:{action}")
    background.spawn(publish(session_factory, action, payload), f"webhook:{action}")


# ============================================================
# CRUD
# ============================================================

@router.post("", status_code=201)
async def create_sprint(
    data: SprintCreate,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    user: CurrentUser = Depends(require_permission("sprint.write")),
):
    result = await db.execute(select(Project.id).where(Project.id == data.project_id))
    if result.scalar_one_or_none() is None:
        raise NotFound("Project not found")
    _check_dates(data.start_date, data.end_date)

    sprint = Sprint(
        project_id=data.project_id,
        name=data.name,
        goal=data.goal,
        start_date=data.start_date,
        end_date=data.end_date,
        state=SprintState.PLANNED,
    )
    db.add(sprint)
    await db.commit()
    _announce(session_factory, request, user, "sprint.created", sprint, {"name": sprint.name})
    return _sprint_out(sprint)


@router.get("")
async def list_sprints(
    project_id: str = Query(..., min_length=1),
    state: Optional[str] = Query(None, pattern=r'^(planned|active|completed)$'),
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(require_permission("sprint.read")),
):
    stmt = select(Sprint).where(Sprint.project_id == project_id)
    if state:
        stmt = stmt.where(Sprint.state == SprintState(state))
    result = await db.execute(stmt.order_by(Sprint.created_at))
    return [_sprint_out(s) for s in result.scalars().all()]


@router.get("/{sprint_id}")
async def get_sprint_detail(
    sprint_id: str,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(require_permission("sprint.read")),
):
    sprint = await get_sprint(sprint_id, db)
    count = await db.execute(select(func.count()).select_from(Issue).where(Issue.sprint_id == sprint_id))
    return _sprint_out(sprint, issue_count=count.scalar() or 0)


@router.patch("/{sprint_id}")
async def update_sprint(
    sprint_id: str,
    data: SprintUpdate,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(require_permission("sprint.write")),
):
    sprint = await get_sprint(sprint_id, db)
    if sprint.state == SprintState.COMPLETED:
        raise BadRequest("Completed sprints cannot be edited")

    changes = data.model_dump(exclude_unset=True)
    _check_dates(changes.get("start_date", sprint.start_date), changes.get("end_date", sprint.end_date))
    for key, value in changes.items():
        if value is not None or key in ("goal", "start_date", "end_date"):
            setattr(sprint, key, value)
    await db.commit()
    return _sprint_out(sprint)


@router.delete("/{sprint_id}")
async def delete_sprint(
    sprint_id: str,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(require_permission("sprint.write")),
):
    """Delete a planned sprint; its issues return to the backlog"""
    sprint = await get_sprint(sprint_id, db)
    if sprint.state != SprintState.PLANNED:
        raise BadRequest("Only planned sprints can be deleted")

    result = await db.execute(
        update(Issue).where(Issue.sprint_id == sprint_id).values(sprint_id=None, updated_at=utcnow())
    )
    await db.delete(sprint)
    await db.commit()
    return {"ok": True, "sprint_id": sprint_id, "returned_to_backlog": result.rowcount}


# ============================================================
# LIFECYCLE
# ============================================================

@router.post("/{sprint_id}/start")
async def start_sprint(
    sprint_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    user: CurrentUser = Depends(require_permission("sprint.write")),
):
    sprint = await get_sprint(sprint_id, db)
    if sprint.state != SprintState.PLANNED:
        raise BadRequest("Sprint is not in planned state")

    sprint.state = SprintState.ACTIVE
    if sprint.start_date is None:
        sprint.start_date = utcnow().date()
    await db.commit()
    _announce(session_factory, request, user, "sprint.started", sprint, {})
    return _sprint_out(sprint)


@router.post("/{sprint_id}/complete")
async def complete_sprint(
    sprint_id: str,
    request: Request,
    data: Optional[SprintComplete] = None,
    db: AsyncSession = Depends(get_db_session),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    user: CurrentUser = Depends(require_permission("sprint.write")),
):
    """Close an active sprint; unfinished issues go to the backlog or the next planned sprint"""
    move_incomplete = data.move_incomplete if data else "backlog"
    sprint = await get_sprint(sprint_id, db)
    if sprint.state != SprintState.ACTIVE:
        raise BadRequest("Sprint is not active")

    target_id = None
    if move_incomplete == "next":
        result = await db.execute(
            select(Sprint)
            .where(
                Sprint.project_id == sprint.project_id,
                Sprint.state == SprintState.PLANNED,
                Sprint.id != sprint.id,
            )
            .order_by(Sprint.start_date.is_(None), Sprint.start_date, Sprint.created_at)
            .limit(1)
        )
        target = result.scalar_one_or_none()
        if target is None:
            raise BadRequest("No planned sprint to move unfinished issues into")
        target_id = target.id

    result = await db.execute(
        update(Issue)
        .where(Issue.sprint_id == sprint_id, Issue.status.notin_(DONE_STATUSES))
        .values(sprint_id=target_id, updated_at=utcnow())
    )
    moved = result.rowcount
    sprint.state = SprintState.COMPLETED
    if sprint.end_date is None:
        sprint.end_date = utcnow().date()
    await db.commit()

    summary = {"move_incomplete": move_incomplete, "moved": moved, "target_sprint_id": target_id}
    _announce(session_factory, request, user, "sprint.completed", sprint, summary)
    return {"sprint": _sprint_out(sprint), **summary}
