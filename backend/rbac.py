# rbac.py — Role-based access control: permission store, resolver, gate
# Features:
# - Normalised role → permission store over SQLAlchemy
# - Effective permission resolution (token claims first, store second)
# - Literal set-containment authorization gate with exact missing list
# - Simple "perm:" / "role:" policy evaluation
# - Idempotent seeding of the default roles and permissions

import re
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Protocol, Set

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from errors import BadRequest, NotFound, StoreUnavailable, Unauthenticated
from models import Permission, Role, User, role_permissions

logger = logging.getLogger("sprintboard.rbac")

# <resource>.<action>, lowercase; no wildcard segments
PERMISSION_PATTERN = re.compile(r"^[a-z0-9_]+\.[a-z0-9_]+$")

# ============================================================
# DEFAULT ROLES & PERMISSIONS
# ============================================================

DEFAULT_PERMISSIONS = {
    "user.read": "Read user profiles",
    "user.write": "Create and modify users",
    "project.read": "Read projects",
    "project.write": "Create and modify projects",
    "issue.read": "Read issues",
    "issue.write": "Create, modify and delete issues",
    "board.read": "Read boards and their columns",
    "board.write": "Create boards, manage columns and move cards",
    "sprint.read": "Read sprints and the backlog",
    "sprint.write": "Plan, start and complete sprints",
    "settings.admin": "Manage automation rules and webhooks",
    "rbac.manage": "Manage roles and permission grants",
}

DEFAULT_ROLE_PERMISSIONS = {
    "org_admin": list(DEFAULT_PERMISSIONS),
    "project_admin": [
        "user.read", "project.read", "project.write",
        "issue.read", "issue.write", "board.read", "board.write",
        "sprint.read", "sprint.write",
    ],
    "scrum_master": [
        "project.read", "issue.read", "board.read", "board.write", "sprint.read", "sprint.write",
    ],
    "developer": ["project.read", "issue.read", "issue.write", "board.read", "board.write", "sprint.read"],
    "qa": ["project.read", "issue.read", "issue.write", "board.read", "sprint.read"],
    "viewer": ["project.read", "issue.read", "board.read", "sprint.read"],
}

DEFAULT_ROLE = "viewer"


def validate_permission_name(name: str) -> str:
    if not name or not PERMISSION_PATTERN.match(name):
        raise BadRequest(f"Invalid permission name: {name!r} (expected <resource>.<action>)")
    return name


# ============================================================
# PERMISSION STORE
# ============================================================

class PermissionStore(Protocol):
    async def permissions_for_roles(self, role_names: Iterable[str]) -> Set[str]:
        ...


class SqlPermissionStore:
    """Relational role → permission store"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _execute(self, stmt):
        try:
            return await self.db.execute(stmt)
        except (OperationalError, DBAPIError) as e:
            logger.error(f"Permission store query failed: {e}")
            raise StoreUnavailable() from e

    async def permissions_for_roles(self, role_names: Iterable[str]) -> Set[str]:
        names = set(role_names)
        if not names:
            return set()
        stmt = (
            select(Permission.name)
            .join(role_permissions, role_permissions.c.permission_id == Permission.id)
            .join(Role, Role.id == role_permissions.c.role_id)
            .where(Role.name.in_(names))
            .distinct()
        )
        result = await self._execute(stmt)
        return set(result.scalars().all())

    async def roles_for_user(self, user_id: str) -> List[str]:
        result = await self._execute(select(User).where(User.id == user_id))
        user = result.scalar_one_or_none()
        if not user:
            raise NotFound("User not found")
        return user.role_names

    async def _get_role(self, name: str) -> Role:
        result = await self._execute(select(Role).where(Role.name == name))
        role = result.scalar_one_or_none()
        if not role:
            raise NotFound(f"Role not found: {name}")
        return role

    async def _get_permission(self, name: str) -> Permission:
        result = await self._execute(select(Permission).where(Permission.name == name))
        perm = result.scalar_one_or_none()
        if not perm:
            raise NotFound(f"Permission not found: {name}")
        return perm

    async def list_roles(self) -> List[Dict]:
        result = await self._execute(select(Role).order_by(Role.name))
        return [
            {
                "id": r.id,
                "name": r.name,
                "description": r.description,
                "permissions": sorted(p.name for p in r.permissions),
            }
            for r in result.scalars().all()
        ]

    async def list_permissions(self) -> List[Dict]:
        result = await self._execute(select(Permission).order_by(Permission.name))
        return [
            {"id": p.id, "name": p.name, "description": p.description}
            for p in result.scalars().all()
        ]

    async def grant(self, role_name: str, permission_name: str) -> bool:
        """Grant a permission to a role. Returns False if it was already granted."""
        role = await self._get_role(role_name)
        perm = await self._get_permission(permission_name)
        if any(p.id == perm.id for p in role.permissions):
            return False
        role.permissions.append(perm)
        await self.db.commit()
        logger.info(f"Granted {permission_name} to role {role_name}")
        return True

    async def revoke(self, role_name: str, permission_name: str) -> bool:
        """Revoke a permission from a role. Returns False if it was not granted."""
        role = await self._get_role(role_name)
        perm = await self._get_permission(permission_name)
        kept = [p for p in role.permissions if p.id != perm.id]
        if len(kept) == len(role.permissions):
            return False
        role.permissions = kept
        await self.db.commit()
        logger.info(f"Revoked {permission_name} from role {role_name}")
        return True

    async def assign_roles(self, user_id: str, role_names: List[str]) -> List[str]:
        """Replace a user's role set"""
        result = await self._execute(select(User).where(User.id == user_id))
        user = result.scalar_one_or_none()
        if not user:
            raise NotFound("User not found")

        roles = []
        for name in dict.fromkeys(role_names):
            result = await self._execute(select(Role).where(Role.name == name))
            role = result.scalar_one_or_none()
            if not role:
                raise BadRequest(f"Unknown role: {name}")
            roles.append(role)

        user.roles = roles
        await self.db.commit()
        return user.role_names


# ============================================================
# RESOLVER & GATE
# ============================================================

class Principal(Protocol):
    roles: List[str]
    permissions: List[str]


@dataclass(frozen=True)
class AuthorizationDecision:
    allowed: bool
    missing: List[str] = field(default_factory=list)


class PermissionResolver:
    """Computes a user's effective permission set"""

    def __init__(self, store: PermissionStore):
        self.store = store

    async def resolve(self, user: Principal) -> Set[str]:
        # Pre-resolved sets (signed token claims) are trusted as-is
        if user.permissions:
            return set(user.permissions)
        if not user.roles:
            return set()
        return set(await self.store.permissions_for_roles(user.roles))


def missing_permissions(required: Iterable[str], effective: Set[str]) -> List[str]:
    missing = []
    for perm in required:
        if perm not in effective and perm not in missing:
            missing.append(perm)
    return missing


class AuthorizationGate:
    """Per-request allow/deny decision against a required permission list"""

    def __init__(self, resolver: PermissionResolver):
        self.resolver = resolver

    async def authorize(self, user: Optional[Principal], required: Iterable[str]) -> AuthorizationDecision:
        if user is None:
            raise Unauthenticated()
        effective = await self.resolver.resolve(user)
        missing = missing_permissions(required, effective)
        if missing:
            return AuthorizationDecision(allowed=False, missing=missing)
        return AuthorizationDecision(allowed=True)


# ============================================================
# POLICIES
# ============================================================

async def evaluate_policy(user: Principal, policy: str, resolver: PermissionResolver) -> Dict:
    """Evaluate a "perm:<name>" or "role:<name>" policy string"""
    if policy.startswith("perm:"):
        perm = policy[len("perm:"):]
        effective = await resolver.resolve(user)
        allowed = perm in effective
        return {"allowed": allowed, "reason": None if allowed else "missing_permission"}
    if policy.startswith("role:"):
        role = policy[len("role:"):]
        allowed = role in (user.roles or [])
        return {"allowed": allowed, "reason": None if allowed else "missing_role"}
    return {"allowed": False, "reason": "unknown_policy"}


# ============================================================
# SEEDING
# ============================================================

async def seed_defaults(db: AsyncSession) -> None:
    """Insert default permissions, roles and grants that are not present yet"""
    result = await db.execute(select(Permission))
    perms = {p.name: p for p in result.scalars().all()}
    for name, description in DEFAULT_PERMISSIONS.items():
        if name not in perms:
            perms[name] = Permission(name=name, description=description)
            db.add(perms[name])

    result = await db.execute(select(Role))
    roles = {r.name: r for r in result.scalars().all()}
    for role_name, grants in DEFAULT_ROLE_PERMISSIONS.items():
        role = roles.get(role_name)
        if role is None:
            role = Role(name=role_name, permissions=[perms[p] for p in grants])
            db.add(role)
            roles[role_name] = role

    await db.commit()
    logger.info(f"Seeded {len(perms)} permissions across {len(roles)} roles")
