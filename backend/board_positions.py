"""
SprintBoard — Board Position Model

A board's layout is a single JSON document:

    {"columns": [{"id", "name", "order"}, ...],
     "issuePositions": {column_id: [issue_id, ...]}}

Every operation here is pure: it returns a new document and leaves the input
untouched, so callers can apply it inside a compare-and-swap loop and simply
discard the result when the write loses a race.

Invariant kept by every mutation: an issue id appears in at most one column list.
"""

import re
import uuid
from typing import Dict, Iterable, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from errors import BadRequest, NotFound

_WHITESPACE = re.compile(r"\s+")


class BoardColumn(BaseModel):
    id: str
    name: str
    order: int


class ColumnOrder(BaseModel):
    id: str
    order: int


def clamp_position(position: int, length: int) -> int:
    return max(0, min(int(position), length))


def status_for_column(name: Optional[str]) -> Optional[str]:
    """Issue status derived from a column name: "In Progress" -> "in_progress"."""
    if not name:
        return None
    return _WHITESPACE.sub("_", name.lower())


class PositionDocument(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    columns: List[BoardColumn] = Field(default_factory=list)
    issue_positions: Dict[str, List[str]] = Field(default_factory=dict, alias="issuePositions")

    @classmethod
    def from_json(cls, raw: Optional[dict]) -> "PositionDocument":
        return cls.model_validate(raw or {})

    def to_json(self) -> dict:
        return self.model_dump(by_alias=True)

    # --- Queries ---

    def sorted_columns(self) -> List[BoardColumn]:
        # sorted() is stable, so equal orders keep list order
        return sorted(self.columns, key=lambda c: c.order)

    def find_column(self, column_id: str) -> Optional[BoardColumn]:
        for column in self.columns:
            if column.id == column_id:
                return column
        return None

    def require_column(self, column_id: str) -> BoardColumn:
        column = self.find_column(column_id)
        if column is None:
            raise NotFound(f"Column not found: {column_id}")
        return column

    def column_of(self, issue_id: str) -> Optional[str]:
        for column_id, issue_ids in self.issue_positions.items():
            if issue_id in issue_ids:
                return column_id
        return None

    # --- Column operations ---

    def add_column(self, name: str, order: Optional[int] = None) -> Tuple["PositionDocument", BoardColumn]:
        if not name or not name.strip():
            raise BadRequest("Column name is required")
        if order is None:
            order = max((c.order for c in self.columns), default=0) + 1
        column = BoardColumn(id=str(uuid.uuid4()), name=name.strip(), order=order)
        doc = self.model_copy(deep=True)
        doc.columns.append(column)
        return doc, column

    def apply_column_order(self, updates: Iterable[Union[ColumnOrder, dict]]) -> "PositionDocument":
        updates = [u if isinstance(u, ColumnOrder) else ColumnOrder.model_validate(u) for u in updates]
        known = {c.id for c in self.columns}
        for update in updates:
            if update.id not in known:
                raise BadRequest(f"Unknown column id: {update.id}")

        new_orders = {u.id: u.order for u in updates}
        doc = self.model_copy(deep=True)
        for column in doc.columns:
            if column.id in new_orders:
                column.order = new_orders[column.id]
        return doc

    def remove_column(self, column_id: str) -> "PositionDocument":
        self.require_column(column_id)
        doc = self.model_copy(deep=True)
        doc.columns = [c for c in doc.columns if c.id != column_id]
        # Issues in the removed column become unplaced, never reassigned
        doc.issue_positions.pop(column_id, None)
        return doc

    # --- Issue placement ---

    def _remove_everywhere(self, issue_id: str) -> None:
        for column_id, issue_ids in self.issue_positions.items():
            if issue_id in issue_ids:
                self.issue_positions[column_id] = [i for i in issue_ids if i != issue_id]

    def move_issue(
        self,
        issue_id: str,
        to_column_id: str,
        from_column_id: Optional[str] = None,
        position: int = 0,
    ) -> Tuple["PositionDocument", int]:
        """Move an issue into a column at a clamped position. Returns (doc, position used)."""
        if not issue_id or not to_column_id:
            raise BadRequest("issue_id and to_column_id are required")
        self.require_column(to_column_id)

        doc = self.model_copy(deep=True)
        if from_column_id in doc.issue_positions:
            source = doc.issue_positions[from_column_id]
            doc.issue_positions[from_column_id] = [i for i in source if i != issue_id]
        doc._remove_everywhere(issue_id)

        destination = doc.issue_positions.setdefault(to_column_id, [])
        insert_at = clamp_position(position, len(destination))
        destination.insert(insert_at, issue_id)
        return doc, insert_at

    def reorder_issue(self, column_id: str, issue_id: str, position: int) -> Tuple["PositionDocument", int]:
        """Reposition an issue inside one column. Returns (doc, position used)."""
        if not column_id or not issue_id:
            raise BadRequest("column_id and issue_id are required")
        self.require_column(column_id)
        current = self.column_of(issue_id)
        if current is not None and current != column_id:
            raise BadRequest(f"Issue {issue_id} is placed in column {current}, move it instead")

        doc = self.model_copy(deep=True)
        issue_ids = [i for i in doc.issue_positions.get(column_id, []) if i != issue_id]
        insert_at = clamp_position(position, len(issue_ids))
        issue_ids.insert(insert_at, issue_id)
        doc.issue_positions[column_id] = issue_ids
        return doc, insert_at

    def unplace_issue(self, issue_id: str) -> Tuple["PositionDocument", bool]:
        if self.column_of(issue_id) is None:
            return self, False
        doc = self.model_copy(deep=True)
        doc._remove_everywhere(issue_id)
        return doc, True


def default_document(column_names: List[str]) -> PositionDocument:
    doc = PositionDocument()
    for name in column_names:
        doc, _ = doc.add_column(name)
    return doc
