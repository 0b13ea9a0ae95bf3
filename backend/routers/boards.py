# routers/boards.py — Boards, columns and drag-and-drop endpoints
from typing import Optional, List

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from auth import require_permission, CurrentUser
from board_positions import ColumnOrder, PositionDocument
from board_service import BoardService
from database import get_db_session, get_session_factory

router = APIRouter(prefix="/api/v1/boards", tags=["Boards"])


# ============================================================
# SCHEMAS
# ============================================================

class BoardCreate(BaseModel):
    project_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=200)
    type: str = Field(default="scrum", pattern=r'^(scrum|kanban)$')
    use_default_columns: bool = True


class ColumnCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    order: Optional[int] = None


class ColumnReorder(BaseModel):
    columns: List[ColumnOrder] = Field(..., min_length=1)


class MoveIssue(BaseModel):
    issue_id: str = Field(..., min_length=1)
    to_column_id: str = Field(..., min_length=1)
    from_column_id: Optional[str] = None
    position: int = 0


class ReorderIssue(BaseModel):
    column_id: str = Field(..., min_length=1)
    issue_id: str = Field(..., min_length=1)
    position: int = 0


# ============================================================
# HELPERS
# ============================================================

def _board_out(board, doc: PositionDocument) -> dict:
    return {
        "id": board.id,
        "project_id": board.project_id,
        "name": board.name,
        "type": board.type.value if hasattr(board.type, "value") else str(board.type),
        "version": board.version,
        "columns": [c.model_dump() for c in doc.sorted_columns()],
        "issue_positions": doc.issue_positions,
        "created_at": board.created_at.isoformat() if board.created_at else None,
    }


def get_board_service(
    request: Request,
    user: CurrentUser,
    db: AsyncSession,
    session_factory: async_sessionmaker,
) -> BoardService:
    return BoardService(
        db,
        session_factory=session_factory,
        actor_id=user.id,
        request_id=getattr(request.state, "request_id", None),
    )


# ============================================================
# BOARDS
# ============================================================

@router.post("", status_code=201)
async def create_board(
    data: BoardCreate,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    user: CurrentUser = Depends(require_permission("board.write")),
):
    """Create a board with its position document"""
    service = get_board_service(request, user, db, session_factory)
    board, doc = await service.create_board(
        data.project_id, data.name, data.type,
        use_default_columns=data.use_default_columns, created_by=user.id,
    )
    return _board_out(board, doc)


@router.get("")
async def list_boards(
    project_id: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(require_permission("board.read")),
):
    """List boards, optionally for one project"""
    boards = await BoardService(db).list_boards(project_id)
    return [_board_out(b, PositionDocument.from_json(b.position_document)) for b in boards]


@router.get("/{board_id}")
async def get_board(
    board_id: str,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(require_permission("board.read")),
):
    board, doc = await BoardService(db).get_board(board_id)
    return _board_out(board, doc)


# ============================================================
# COLUMNS
# ============================================================

@router.get("/{board_id}/columns")
async def list_columns(
    board_id: str,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(require_permission("board.read")),
):
    """Columns sorted by order"""
    columns = await BoardService(db).list_columns(board_id)
    return [c.model_dump() for c in columns]


@router.post("/{board_id}/columns", status_code=201)
async def create_column(
    board_id: str,
    data: ColumnCreate,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    user: CurrentUser = Depends(require_permission("board.write")),
):
    service = get_board_service(request, user, db, session_factory)
    column = await service.create_column(board_id, data.name, data.order)
    return column.model_dump()


@router.patch("/{board_id}/columns/order")
async def reorder_columns(
    board_id: str,
    data: ColumnReorder,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    user: CurrentUser = Depends(require_permission("board.write")),
):
    """Apply column order updates all-or-nothing"""
    service = get_board_service(request, user, db, session_factory)
    columns = await service.reorder_columns(board_id, data.columns)
    return {"ok": True, "columns": [c.model_dump() for c in columns]}


@router.delete("/{board_id}/columns/{column_id}")
async def delete_column(
    board_id: str,
    column_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    user: CurrentUser = Depends(require_permission("board.write")),
):
    """Delete a column; its issues become unplaced"""
    service = get_board_service(request, user, db, session_factory)
    return await service.delete_column(board_id, column_id)


# ============================================================
# DRAG & DROP
# ============================================================

@router.post("/{board_id}/dnd/move")
async def move_issue(
    board_id: str,
    data: MoveIssue,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    user: CurrentUser = Depends(require_permission("board.write")),
):
    """Move an issue to a column and sync its status"""
    service = get_board_service(request, user, db, session_factory)
    return await service.move_issue(
        board_id, data.issue_id, data.to_column_id,
        from_column_id=data.from_column_id, position=data.position,
    )


@router.post("/{board_id}/dnd/reorder")
async def reorder_issue(
    board_id: str,
    data: ReorderIssue,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    user: CurrentUser = Depends(require_permission("board.write")),
):
    """Reorder an issue within its column"""
    service = get_board_service(request, user, db, session_factory)
    return await service.reorder_issue(board_id, data.column_id, data.issue_id, data.position)
