# board_service.py — Boards, columns and drag-and-drop over the position document
# Every document mutation is a compare-and-swap on boards.version:
#   read (document, version) -> apply pure operation -> UPDATE ... WHERE version = read version
# A zero-row update means another writer got there first; the loop re-reads and retries.

import os
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import background
from audit import record_audit
from board_positions import (
    BoardColumn, PositionDocument, default_document, status_for_column,
)
from errors import BadRequest, Conflict, NotFound
from models import Board, BoardType, Issue, Project, utcnow
from realtime import board_room, manager
from telemetry import get_tracer

logger = logging.getLogger("sprintboard.boards")
tracer = get_tracer("sprintboard.boards")

BOARD_CAS_RETRIES = int(os.getenv("BOARD_CAS_RETRIES", "5"))
DEFAULT_COLUMNS = ["To Do", "In Progress", "Done"]

# pure operation: document -> (new document, result)
DocumentOperation = Callable[[PositionDocument], Tuple[PositionDocument, Any]]


class BoardService:
    def __init__(
        self,
        db: AsyncSession,
        session_factory: Optional[async_sessionmaker] = None,
        actor_id: Optional[str] = None,
        request_id: Optional[str] = None,
    ):
        self.db = db
        self.session_factory = session_factory
        self.actor_id = actor_id
        self.request_id = request_id

    # ============================================================
    # LOADING & COMPARE-AND-SWAP
    # ============================================================

    async def _load(self, board_id: str) -> Board:
        if not board_id:
            raise BadRequest("board_id is required")
        stmt = (
            select(Board)
            .where(Board.id == board_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        board = result.scalar_one_or_none()
        if not board:
            raise NotFound("Board not found")
        return board

    async def _compare_and_swap(self, board_id: str, expected_version: int, doc: PositionDocument) -> bool:
        stmt = (
            update(Board)
            .where(Board.id == board_id, Board.version == expected_version)
            .values(
                position_document=doc.to_json(),
                version=expected_version + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def _mutate(
        self,
        board_id: str,
        operation: DocumentOperation,
        in_transaction: Optional[Callable[[Board, PositionDocument, Any], Any]] = None,
    ) -> Tuple[Board, PositionDocument, Any]:
        with tracer.start_as_current_span("board.compare_and_swap") as span:
            span.set_attribute("board.id", board_id)
            for attempt in range(1, BOARD_CAS_RETRIES + 1):
                span.set_attribute("board.cas.attempts", attempt)
                board = await self._load(board_id)
                doc = PositionDocument.from_json(board.position_document)
                new_doc, outcome = operation(doc)

                if await self._compare_and_swap(board_id, board.version, new_doc):
                    if in_transaction is not None:
                        await in_transaction(board, new_doc, outcome)
                    await self.db.commit()
                    board = await self._load(board_id)
                    return board, new_doc, outcome

                await self.db.rollback()
                logger.info(f"Board {board_id[:8]} version conflict (attempt {attempt}/{BOARD_CAS_RETRIES})")

        logger.warning(f"Board {board_id[:8]} update abandoned after {BOARD_CAS_RETRIES} conflicts")
        raise Conflict()

    def _after(self, board_id: str, action: str, data: Dict[str, Any]) -> None:
        """Best-effort audit and realtime fan-out for a committed board change"""
        if self.session_factory is not None:
            background.spawn(
                record_audit(
                    self.session_factory, action,
                    actor_id=self.actor_id, entity_type="board", entity_id=board_id,
                    data=data, request_id=self.request_id,
                ),
                f"audit:{action}",
            )
        background.spawn(
            manager.emit(board_room(board_id), action, {"board_id": board_id, **data}),
            f"emit:{action}",
        )

    # ============================================================
    # BOARDS
    # ============================================================

    async def create_board(
        self,
        project_id: str,
        name: str,
        board_type: str = BoardType.SCRUM.value,
        use_default_columns: bool = True,
        created_by: Optional[str] = None,
    ) -> Tuple[Board, PositionDocument]:
        if not project_id:
            raise BadRequest("project_id is required")
        if not name or not name.strip():
            raise BadRequest("Board name is required")
        try:
            board_type = BoardType(board_type)
        except ValueError:
            raise BadRequest(f"Unknown board type: {board_type}")
        result = await self.db.execute(select(Project).where(Project.id == project_id))
        if not result.scalar_one_or_none():
            raise NotFound("Project not found")

        doc = default_document(DEFAULT_COLUMNS) if use_default_columns else PositionDocument()
        board = Board(
            project_id=project_id,
            name=name.strip(),
            type=board_type,
            position_document=doc.to_json(),
            version=1,
            created_by=created_by,
        )
        self.db.add(board)
        await self.db.commit()
        self._after(board.id, "board.created", {"name": board.name, "project_id": project_id})
        return board, doc

    async def get_board(self, board_id: str) -> Tuple[Board, PositionDocument]:
        board = await self._load(board_id)
        return board, PositionDocument.from_json(board.position_document)

    async def list_boards(self, project_id: Optional[str] = None) -> List[Board]:
        stmt = select(Board)
        if project_id:
            stmt = stmt.where(Board.project_id == project_id)
        result = await self.db.execute(stmt.order_by(Board.created_at))
        return list(result.scalars().all())

    # ============================================================
    # COLUMNS
    # ============================================================

    async def list_columns(self, board_id: str) -> List[BoardColumn]:
        _, doc = await self.get_board(board_id)
        return doc.sorted_columns()

    async def create_column(self, board_id: str, name: str, order: Optional[int] = None) -> BoardColumn:
        _, _, column = await self._mutate(board_id, lambda doc: doc.add_column(name, order))
        self._after(board_id, "board.column.created", {"column": column.model_dump()})
        return column

    async def reorder_columns(self, board_id: str, updates: List[Any]) -> List[BoardColumn]:
        _, doc, _ = await self._mutate(board_id, lambda d: (d.apply_column_order(updates), None))
        columns = doc.sorted_columns()
        self._after(board_id, "board.columns.reordered", {"columns": [c.model_dump() for c in columns]})
        return columns

    async def delete_column(self, board_id: str, column_id: str) -> Dict[str, Any]:
        def operation(doc: PositionDocument):
            return doc.remove_column(column_id), list(doc.issue_positions.get(column_id, []))

        _, _, unplaced = await self._mutate(board_id, operation)
        self._after(board_id, "board.column.deleted", {"column_id": column_id, "unplaced": unplaced})
        return {"ok": True, "column_id": column_id, "unplaced_issue_ids": unplaced}

    # ============================================================
    # DRAG & DROP
    # ============================================================

    async def _require_issue(self, issue_id: str) -> Issue:
        result = await self.db.execute(select(Issue).where(Issue.id == issue_id))
        issue = result.scalar_one_or_none()
        if not issue:
            raise NotFound("Issue not found")
        return issue

    async def move_issue(
        self,
        board_id: str,
        issue_id: str,
        to_column_id: str,
        from_column_id: Optional[str] = None,
        position: int = 0,
    ) -> Dict[str, Any]:
        if not board_id or not issue_id or not to_column_id:
            raise BadRequest("board_id, issue_id and to_column_id are required")
        await self._load(board_id)
        await self._require_issue(issue_id)

        def operation(doc: PositionDocument):
            return doc.move_issue(issue_id, to_column_id, from_column_id, position)

        async def sync_status(board: Board, doc: PositionDocument, used_position: int):
            status = status_for_column(doc.require_column(to_column_id).name)
            if status:
                await self.db.execute(
                    update(Issue)
                    .where(Issue.id == issue_id)
                    .values(status=status, updated_at=utcnow())
                )

        _, doc, used_position = await self._mutate(board_id, operation, sync_status)
        moved = {
            "ok": True,
            "board_id": board_id,
            "issue_id": issue_id,
            "from_column_id": from_column_id,
            "to_column_id": to_column_id,
            "position": used_position,
            "status": status_for_column(doc.require_column(to_column_id).name),
        }
        self._after(board_id, "issue.moved", {k: v for k, v in moved.items() if k != "ok"})
        return moved

    async def reorder_issue(self, board_id: str, column_id: str, issue_id: str, position: int) -> Dict[str, Any]:
        if not board_id or not column_id or not issue_id:
            raise BadRequest("board_id, column_id and issue_id are required")
        await self._load(board_id)
        await self._require_issue(issue_id)

        _, _, used_position = await self._mutate(
            board_id, lambda doc: doc.reorder_issue(column_id, issue_id, position)
        )
        reordered = {
            "ok": True,
            "board_id": board_id,
            "column_id": column_id,
            "issue_id": issue_id,
            "position": used_position,
        }
        self._after(board_id, "issue.reordered", {k: v for k, v in reordered.items() if k != "ok"})
        return reordered

    async def delete_issue(self, issue_id: str) -> int:
        """Delete an issue and drop it from every board of its project in one transaction.

        Each affected board gets its own compare-and-swap, but nothing is committed until
        the issue row is deleted too. A lost race on any board rolls back the whole
        attempt and starts over. Returns the number of boards changed.
        """
        issue = await self._require_issue(issue_id)
        project_id = issue.project_id

        with tracer.start_as_current_span("board.compare_and_swap") as span:
            span.set_attribute("issue.id", issue_id)
            for attempt in range(1, BOARD_CAS_RETRIES + 1):
                span.set_attribute("board.cas.attempts", attempt)
                changed: List[str] = []
                swapped = True
                result = await self.db.execute(
                    select(Board)
                    .where(Board.project_id == project_id)
                    .execution_options(populate_existing=True)
                )
                for board in result.scalars().all():
                    doc, removed = PositionDocument.from_json(board.position_document).unplace_issue(issue_id)
                    if not removed:
                        continue
                    if not await self._compare_and_swap(board.id, board.version, doc):
                        swapped = False
                        break
                    changed.append(board.id)

                if swapped:
                    await self.db.delete(await self._require_issue(issue_id))
                    await self.db.commit()
                    for board_id in changed:
                        self._after(board_id, "issue.unplaced", {"issue_id": issue_id})
                    return len(changed)

                await self.db.rollback()
                logger.info(f"Issue {issue_id[:8]} delete hit a board conflict (attempt {attempt}/{BOARD_CAS_RETRIES})")

        logger.warning(f"Issue {issue_id[:8]} delete abandoned after {BOARD_CAS_RETRIES} conflicts")
        raise Conflict()
