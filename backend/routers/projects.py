# routers/projects.py — Project endpoints
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import require_permission, CurrentUser
from database import get_db_session
from errors import BadRequest, NotFound
from models import Project, Workspace

router = APIRouter(prefix="/api/v1/projects", tags=["Projects"])


class ProjectCreate(BaseModel):
    key: str = Field(..., min_length=2, max_length=10, pattern=r'^[A-Z][A-Z0-9]+$')
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    workspace_id: Optional[str] = None


def _project_out(p: Project) -> dict:
    return {
        "id": p.id,
        "workspace_id": p.workspace_id,
        "key": p.key,
        "name": p.name,
        "description": p.description,
        "created_by": p.created_by,
        "created_at": p.created_at.isoformat() if p.created_at else None,
    }


@router.post("", status_code=201)
async def create_project(
    data: ProjectCreate,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(require_permission("project.write")),
):
    result = await db.execute(select(Project).where(Project.key == data.key))
    if result.scalar_one_or_none():
        raise BadRequest(f"Project key already in use: {data.key}")
    if data.workspace_id:
        result = await db.execute(select(Workspace.id).where(Workspace.id == data.workspace_id))
        if result.scalar_one_or_none() is None:
            raise NotFound("Workspace not found")

    project = Project(
        key=data.key, name=data.name, description=data.description,
        workspace_id=data.workspace_id, created_by=user.id,
    )
    db.add(project)
    await db.commit()
    return _project_out(project)


@router.get("")
async def list_projects(
    workspace_id: Optional[str] = Query(None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(require_permission("project.read")),
):
    stmt = select(Project)
    if workspace_id:
        stmt = stmt.where(Project.workspace_id == workspace_id)
    stmt = stmt.order_by(Project.created_at.desc()).offset(offset).limit(limit)
    result = await db.execute(stmt)
    return [_project_out(p) for p in result.scalars().all()]


@router.get("/{project_id}")
async def get_project(
    project_id: str,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(require_permission("project.read")),
):
    result = await db.execute(select(Project).where(Project.id == project_id))
    project = result.scalar_one_or_none()
    if not project:
        raise NotFound("Project not found")
    return _project_out(project)
