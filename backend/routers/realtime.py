# routers/realtime.py — Live board updates over WebSocket
import json
import logging
from datetime import datetime, timezone
from typing import Optional, Tuple

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from auth import AuthService, CurrentUser, get_current_user
from database import get_session_factory
from errors import Unauthenticated
from models import Board, User
from rbac import AuthorizationGate, PermissionResolver, SqlPermissionStore
from realtime import board_room, manager

router = APIRouter(tags=["Realtime"])
logger = logging.getLogger("sprintboard.ws")


class _TokenPrincipal:
    def __init__(self, roles, permissions):
        self.roles = roles
        self.permissions = permissions


async def _admit(
    session_factory: async_sessionmaker, token: str, board_id: str
) -> Tuple[Optional[str], Optional[Tuple[int, str]]]:
    """Check token, user, board.read and board; returns (user_id, None) or (None, (code, reason))"""
    try:
        payload = AuthService.verify_token(token)
    except Unauthenticated:
        return None, (4001, "Authentication failed")
    if payload.get("type") != "access":
        return None, (4001, "Invalid token type")

    # Short-lived session: the socket must not hold a pooled connection while open
    async with session_factory() as db:
        result = await db.execute(select(User).where(User.id == payload.get("sub")))
        user = result.scalar_one_or_none()
        if not user or not user.is_active:
            return None, (4001, "User not found or inactive")

        gate = AuthorizationGate(PermissionResolver(SqlPermissionStore(db)))
        decision = await gate.authorize(
            _TokenPrincipal(user.role_names, payload.get("permissions") or []), ["board.read"]
        )
        if not decision.allowed:
            return None, (4003, "Missing permission: board.read")

        result = await db.execute(select(Board.id).where(Board.id == board_id))
        if result.scalar_one_or_none() is None:
            return None, (4004, "Board not found")
        return user.id, None


@router.websocket("/ws/boards/{board_id}")
async def board_socket(
    websocket: WebSocket,
    board_id: str,
    token: str = Query(...),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Join the board:<id> room; receives board and card events"""
    user_id, refusal = await _admit(session_factory, token, board_id)
    if refusal:
        code, reason = refusal
        await websocket.close(code=code, reason=reason)
        return

    room = board_room(board_id)
    await manager.join(room, websocket)
    try:
        await websocket.send_json({
            "type": "connected",
            "room": room,
            "user_id": user_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except ValueError:
                continue
            if not isinstance(data, dict):
                continue
            if data.get("type") == "ping":
                await websocket.send_json({"type": "pong", "timestamp": datetime.now(timezone.utc).isoformat()})
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error room={room}: {e}")
    finally:
        manager.leave(room, websocket)


@router.get("/api/v1/realtime/stats")
async def realtime_stats(user: CurrentUser = Depends(get_current_user)):
    return manager.get_stats()
