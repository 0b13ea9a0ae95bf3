# routers/workspaces.py — Workspaces group projects
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import background
from audit import record_audit
from auth import require_permission, CurrentUser
from database import get_db_session, get_session_factory
from errors import BadRequest
from models import Workspace

router = APIRouter(prefix="/api/v1/workspaces", tags=["Workspaces"])


class WorkspaceCreate(BaseModel):
    key: str = Field(..., min_length=2, max_length=10, pattern=r'^[A-Z][A-Z0-9]+$')
    name: str = Field(..., min_length=1, max_length=200)


def _workspace_out(w: Workspace) -> dict:
    return {
        "id": w.id,
        "key": w.key,
        "name": w.name,
        "created_by": w.created_by,
        "created_at": w.created_at.isoformat() if w.created_at else None,
    }


@router.post("", status_code=201)
async def create_workspace(
    data: WorkspaceCreate,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    user: CurrentUser = Depends(require_permission("settings.admin")),
):
    result = await db.execute(select(Workspace.id).where(Workspace.key == data.key))
    if result.scalar_one_or_none():
        raise BadRequest(f"Workspace key already in use: {data.key}")

    workspace = Workspace(key=data.key, name=data.name, created_by=user.id)
    db.add(workspace)
    await db.commit()
    background.spawn(
        record_audit(
            session_factory, "workspace.created", actor_id=user.id, entity_type="workspace",
            entity_id=workspace.id, data={"key": workspace.key},
            request_id=getattr(request.state, "request_id", None),
        ),
        "audit:workspace.created",
    )
    return _workspace_out(workspace)


@router.get("")
async def list_workspaces(
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(require_permission("project.read")),
):
    result = await db.execute(select(Workspace).order_by(Workspace.created_at.desc()))
    return [_workspace_out(w) for w in result.scalars().all()]
