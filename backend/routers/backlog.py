# routers/backlog.py — Project backlog: issues not planned into any sprint
from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import require_permission, CurrentUser
from database import get_db_session
from errors import NotFound
from models import Issue, Project
from routers.issues import issue_out

router = APIRouter(prefix="/api/v1/backlog", tags=["Backlog"])


@router.get("")
async def get_backlog(
    project_id: str = Query(..., min_length=1),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(require_permission("issue.read")),
):
    result = await db.execute(select(Project.id).where(Project.id == project_id))
    if result.scalar_one_or_none() is None:
        raise NotFound("Project not found")

    stmt = (
        select(Issue)
        .where(Issue.project_id == project_id, Issue.sprint_id.is_(None))
        .order_by(Issue.created_at.desc())
        .offset(offset)
        .limit(limit)
    )
    result = await db.execute(stmt)
    return [issue_out(i) for i in result.scalars().all()]
