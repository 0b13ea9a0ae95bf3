# routers/issues.py — Issue endpoints; creation fires automation without awaiting it
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import background
from auth import require_permission, CurrentUser
from automation_engine import AutomationEvent, run_automation
from board_service import BoardService
from database import get_db_session, get_session_factory
from errors import BadRequest, NotFound
from models import Issue, IssuePriority, Project, Sprint, SprintState, User
from webhooks import publish

router = APIRouter(prefix="/api/v1/issues", tags=["Issues"])

PRIORITY_PATTERN = r'^(low|medium|high|critical)$'


class IssueCreate(BaseModel):
    project_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=300)
    description: Optional[str] = None
    priority: str = Field(default="medium", pattern=PRIORITY_PATTERN)
    assignee_id: Optional[str] = None
    sprint_id: Optional[str] = None


class IssueUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=300)
    description: Optional[str] = None
    priority: Optional[str] = Field(None, pattern=PRIORITY_PATTERN)
    status: Optional[str] = Field(None, min_length=1, max_length=50)
    assignee_id: Optional[str] = None
    sprint_id: Optional[str] = None


def issue_out(i: Issue) -> dict:
    return {
        "id": i.id,
        "project_id": i.project_id,
        "title": i.title,
        "description": i.description,
        "status": i.status,
        "priority": i.priority.value if hasattr(i.priority, "value") else str(i.priority),
        "reporter_id": i.reporter_id,
        "assignee_id": i.assignee_id,
        "sprint_id": i.sprint_id,
        "created_at": i.created_at.isoformat() if i.created_at else None,
        "updated_at": i.updated_at.isoformat() if i.updated_at else None,
    }


async def _get_issue(issue_id: str, db: AsyncSession) -> Issue:
    result = await db.execute(select(Issue).where(Issue.id == issue_id))
    issue = result.scalar_one_or_none()
    if not issue:
        raise NotFound("Issue not found")
    return issue


async def _require_user(user_id: Optional[str], db: AsyncSession) -> None:
    if user_id:
        result = await db.execute(select(User.id).where(User.id == user_id))
        if result.scalar_one_or_none() is None:
            raise NotFound("Assignee not found")


async def _require_open_sprint(sprint_id: Optional[str], project_id: str, db: AsyncSession) -> None:
    """A sprint an issue is planned into must exist in the same project and not be closed"""
    if not sprint_id:
        return
    result = await db.execute(select(Sprint).where(Sprint.id == sprint_id))
    sprint = result.scalar_one_or_none()
    if not sprint:
        raise NotFound("Sprint not found")
    if sprint.project_id != project_id:
        raise BadRequest("Sprint belongs to a different project")
    if sprint.state == SprintState.COMPLETED:
        raise BadRequest("Cannot plan issues into a completed sprint")


@router.post("", status_code=201)
async def create_issue(
    data: IssueCreate,
    db: AsyncSession = Depends(get_db_session),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    user: CurrentUser = Depends(require_permission("issue.write")),
):
    """Create an issue; automation and webhooks run in the background"""
    result = await db.execute(select(Project).where(Project.id == data.project_id))
    if not result.scalar_one_or_none():
        raise NotFound("Project not found")
    await _require_user(data.assignee_id, db)
    await _require_open_sprint(data.sprint_id, data.project_id, db)

    issue = Issue(
        project_id=data.project_id,
        title=data.title,
        description=data.description,
        priority=IssuePriority(data.priority),
        reporter_id=user.id,
        assignee_id=data.assignee_id,
        sprint_id=data.sprint_id,
    )
    db.add(issue)
    await db.commit()

    out = issue_out(issue)
    event = AutomationEvent(
        type="issue.created",
        data={"issue": out, "project_id": issue.project_id},
        actor={"id": user.id, "roles": user.roles},
    )
    background.spawn(run_automation(session_factory, event, issue.project_id), "automation:issue.created")
    background.spawn(publish(session_factory, "issue.created", out), "webhook:issue.created")
    return out


@router.get("")
async def list_issues(
    project_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    sprint_id: Optional[str] = Query(None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(require_permission("issue.read")),
):
    stmt = select(Issue)
    if project_id:
        stmt = stmt.where(Issue.project_id == project_id)
    if status:
        stmt = stmt.where(Issue.status == status)
    if sprint_id:
        stmt = stmt.where(Issue.sprint_id == sprint_id)
    stmt = stmt.order_by(Issue.created_at.desc()).offset(offset).limit(limit)
    result = await db.execute(stmt)
    return [issue_out(i) for i in result.scalars().all()]


@router.get("/{issue_id}")
async def get_issue(
    issue_id: str,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(require_permission("issue.read")),
):
    return issue_out(await _get_issue(issue_id, db))


@router.patch("/{issue_id}")
async def update_issue(
    issue_id: str,
    data: IssueUpdate,
    db: AsyncSession = Depends(get_db_session),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    user: CurrentUser = Depends(require_permission("issue.write")),
):
    issue = await _get_issue(issue_id, db)
    changes = data.model_dump(exclude_unset=True)
    if "assignee_id" in changes:
        await _require_user(changes["assignee_id"], db)
    if "sprint_id" in changes:
        await _require_open_sprint(changes["sprint_id"], issue.project_id, db)
    if "priority" in changes and changes["priority"] is not None:
        changes["priority"] = IssuePriority(changes["priority"])
    for key, value in changes.items():
        if value is not None or key in ("description", "assignee_id", "sprint_id"):
            setattr(issue, key, value)
    await db.commit()

    out = issue_out(issue)
    background.spawn(publish(session_factory, "issue.updated", out), "webhook:issue.updated")
    return out


@router.delete("/{issue_id}")
async def delete_issue(
    issue_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    user: CurrentUser = Depends(require_permission("issue.write")),
):
    """Delete an issue and remove it from every board of its project"""
    await _get_issue(issue_id, db)
    service = BoardService(
        db, session_factory=session_factory, actor_id=user.id,
        request_id=getattr(request.state, "request_id", None),
    )
    boards_changed = await service.delete_issue(issue_id)
    return {"ok": True, "issue_id": issue_id, "boards_updated": boards_changed}
