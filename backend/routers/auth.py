# routers/auth.py — Authentication endpoints with token revocation
from fastapi import APIRouter, Depends, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    AuthService, UserRegister, UserLogin, TokenResponse, RefreshRequest,
    get_current_user, CurrentUser, ACCESS_TOKEN_EXPIRE_MINUTES,
)
from database import get_db_session
from errors import Unauthenticated
from models import AuditLog, User, utcnow
from rbac import SqlPermissionStore

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])


async def _build_token_response(user_obj: User, db: AsyncSession) -> TokenResponse:
    """Resolve permissions once and embed them in the signed tokens"""
    permissions = await SqlPermissionStore(db).permissions_for_roles(user_obj.role_names)
    token_data = AuthService.token_claims(user_obj, sorted(permissions))

    return TokenResponse(
        access_token=AuthService.create_access_token(token_data),
        refresh_token=AuthService.create_refresh_token({"sub": user_obj.id}),
        expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user={
            "id": user_obj.id,
            "email": user_obj.email,
            "display_name": user_obj.display_name or "",
            "roles": token_data["roles"],
            "permissions": token_data["permissions"],
        },
    )


@router.post("/register", response_model=TokenResponse, status_code=201)
async def register(
    user_data: UserRegister,
    db: AsyncSession = Depends(get_db_session),
):
    """Register a new user account"""
    user = await AuthService.register_user(user_data, db)
    return await _build_token_response(user, db)


@router.post("/login", response_model=TokenResponse)
async def login(
    credentials: UserLogin,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
):
    """Authenticate and receive tokens"""
    user = await AuthService.authenticate_user(
        credentials.email, credentials.password, db, request
    )
    if not user:
        raise Unauthenticated("Invalid credentials")
    return await _build_token_response(user, db)


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(
    refresh_req: RefreshRequest,
    db: AsyncSession = Depends(get_db_session),
):
    """Exchange a refresh token; permissions are re-resolved from current roles"""
    payload = AuthService.verify_token(refresh_req.refresh_token)

    if payload.get("type") != "refresh":
        raise Unauthenticated("Invalid token type. Expected refresh token.")

    jti = payload.get("jti")
    if jti and await AuthService.is_token_revoked(jti, db):
        raise Unauthenticated("Refresh token has been revoked")

    result = await db.execute(select(User).where(User.id == payload.get("sub")))
    user = result.scalar_one_or_none()
    if not user or not user.is_active:
        raise Unauthenticated("User not found or inactive")

    return await _build_token_response(user, db)


@router.post("/logout")
async def logout(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Logout and revoke current token"""
    if user.jti:
        await AuthService.revoke_token(user.jti, user.id, user.token_expires_at or utcnow(), db)
    db.add(AuditLog(actor_id=user.id, action="auth.user.logout", entity_type="user", entity_id=user.id))
    await db.commit()
    return {"status": "logged_out", "message": "Session terminated"}


@router.get("/me")
async def get_current_user_info(user: CurrentUser = Depends(get_current_user)):
    """Get current authenticated user information"""
    return {
        "id": user.id,
        "email": user.email,
        "display_name": user.display_name,
        "roles": user.roles,
        "permissions": user.permissions,
    }
