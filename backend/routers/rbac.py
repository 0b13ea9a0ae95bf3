# routers/rbac.py — Role & permission administration
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, require_permission, CurrentUser
from database import get_db_session
from rbac import PermissionResolver, SqlPermissionStore, evaluate_policy, validate_permission_name

router = APIRouter(prefix="/api/v1/rbac", tags=["RBAC"])


class PermissionGrant(BaseModel):
    permission: str = Field(..., min_length=3)


class RoleAssignment(BaseModel):
    roles: List[str]


class PolicyRequest(BaseModel):
    policy: str = Field(..., min_length=1)


@router.get("/roles")
async def list_roles(
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(require_permission("rbac.manage")),
):
    """List roles with their permissions"""
    return await SqlPermissionStore(db).list_roles()


@router.get("/permissions")
async def list_permissions(
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(require_permission("rbac.manage")),
):
    return await SqlPermissionStore(db).list_permissions()


@router.post("/roles/{role_name}/permissions")
async def grant_permission(
    role_name: str,
    data: PermissionGrant,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(require_permission("rbac.manage")),
):
    """Grant a permission to a role (takes effect as tokens are reissued)"""
    validate_permission_name(data.permission)
    changed = await SqlPermissionStore(db).grant(role_name, data.permission)
    return {"role": role_name, "permission": data.permission, "granted": True, "changed": changed}


@router.delete("/roles/{role_name}/permissions/{permission}")
async def revoke_permission(
    role_name: str,
    permission: str,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(require_permission("rbac.manage")),
):
    changed = await SqlPermissionStore(db).revoke(role_name, permission)
    return {"role": role_name, "permission": permission, "granted": False, "changed": changed}


@router.put("/users/{user_id}/roles")
async def assign_roles(
    user_id: str,
    data: RoleAssignment,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(require_permission("rbac.manage")),
):
    """Replace a user's role set"""
    roles = await SqlPermissionStore(db).assign_roles(user_id, data.roles)
    return {"user_id": user_id, "roles": roles}


@router.post("/policies/evaluate")
async def evaluate(
    data: PolicyRequest,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    """Evaluate a perm:/role: policy for the calling user"""
    resolver = PermissionResolver(SqlPermissionStore(db))
    return {"policy": data.policy, **await evaluate_policy(user, data.policy, resolver)}
