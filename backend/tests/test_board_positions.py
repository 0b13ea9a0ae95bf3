# tests/test_board_positions.py — Pure position document operations
import pytest

from board_positions import (
    PositionDocument, clamp_position, default_document, status_for_column,
)
from errors import BadRequest, NotFound


def board(*names):
    doc = default_document(list(names))
    ids = {c.name: c.id for c in doc.columns}
    return doc, ids


def placed_everywhere(doc, issue_id):
    return [cid for cid, issues in doc.issue_positions.items() if issue_id in issues]


# ============================================================
# DOCUMENT
# ============================================================

def test_default_document_orders_columns():
    doc, ids = board("To Do", "In Progress", "Done")
    assert [c.name for c in doc.sorted_columns()] == ["To Do", "In Progress", "Done"]
    assert [c.order for c in doc.sorted_columns()] == [1, 2, 3]
    assert doc.issue_positions == {}


def test_json_uses_wire_key():
    doc, _ = board("To Do")
    raw = doc.to_json()
    assert "issuePositions" in raw
    assert PositionDocument.from_json(raw) == doc
    assert PositionDocument.from_json(None).columns == []


def test_sorted_columns_is_stable_for_equal_orders():
    doc = PositionDocument.from_json({
        "columns": [
            {"id": "a", "name": "A", "order": 2},
            {"id": "b", "name": "B", "order": 1},
            {"id": "c", "name": "C", "order": 2},
        ],
        "issuePositions": {},
    })
    assert [c.id for c in doc.sorted_columns()] == ["b", "a", "c"]


@pytest.mark.parametrize("name,status", [
    ("In Progress", "in_progress"),
    ("Done", "done"),
    ("Code  Review", "code_review"),
    ("", None),
])
def test_status_for_column(name, status):
    assert status_for_column(name) == status


@pytest.mark.parametrize("position,length,expected", [(-3, 2, 0), (0, 2, 0), (1, 2, 1), (2, 2, 2), (99, 2, 2)])
def test_clamp_position(position, length, expected):
    assert clamp_position(position, length) == expected


# ============================================================
# COLUMNS
# ============================================================

def test_add_column_appends_after_highest_order():
    doc, _ = board("To Do", "Done")
    new_doc, column = doc.add_column("QA")
    assert column.order == 3
    assert len(doc.columns) == 2
    assert new_doc.find_column(column.id).name == "QA"


def test_add_column_requires_name():
    doc, _ = board("To Do")
    with pytest.raises(BadRequest):
        doc.add_column("   ")


def test_apply_column_order():
    doc, ids = board("To Do", "In Progress", "Done")
    new_doc = doc.apply_column_order([
        {"id": ids["Done"], "order": 0},
        {"id": ids["To Do"], "order": 5},
    ])
    assert [c.name for c in new_doc.sorted_columns()] == ["Done", "In Progress", "To Do"]


def test_apply_column_order_is_all_or_nothing():
    doc, ids = board("To Do", "Done")
    before = doc.to_json()
    with pytest.raises(BadRequest) as exc:
        doc.apply_column_order([{"id": ids["Done"], "order": 0}, {"id": "nope", "order": 1}])
    assert exc.value.detail == "Unknown column id: nope"
    assert doc.to_json() == before


def test_remove_column_unplaces_its_issues():
    doc, ids = board("To Do", "Done")
    doc, _ = doc.move_issue("I-1", ids["Done"])
    doc, _ = doc.move_issue("I-2", ids["To Do"])

    new_doc = doc.remove_column(ids["Done"])
    assert new_doc.find_column(ids["Done"]) is None
    assert new_doc.column_of("I-1") is None
    # Issues are not reassigned to another column
    assert new_doc.issue_positions == {ids["To Do"]: ["I-2"]}


def test_remove_unknown_column():
    doc, _ = board("To Do")
    with pytest.raises(NotFound):
        doc.remove_column("nope")


# ============================================================
# MOVE
# ============================================================

def test_move_into_empty_column():
    doc, ids = board("To Do", "In Progress", "Done")
    new_doc, position = doc.move_issue("I-1", ids["In Progress"], position=5)
    assert position == 0
    assert new_doc.issue_positions[ids["In Progress"]] == ["I-1"]
    assert doc.issue_positions == {}


def test_move_between_columns_at_position():
    doc, ids = board("To Do", "Done")
    doc, _ = doc.move_issue("A", ids["Done"])
    doc, _ = doc.move_issue("B", ids["Done"], position=1)
    doc, _ = doc.move_issue("X", ids["To Do"])

    doc, position = doc.move_issue("X", ids["Done"], from_column_id=ids["To Do"], position=1)
    assert position == 1
    assert doc.issue_positions[ids["Done"]] == ["A", "X", "B"]
    assert doc.issue_positions[ids["To Do"]] == []


def test_move_clamps_negative_position():
    doc, ids = board("To Do")
    doc, _ = doc.move_issue("A", ids["To Do"])
    doc, position = doc.move_issue("B", ids["To Do"], position=-4)
    assert position == 0
    assert doc.issue_positions[ids["To Do"]] == ["B", "A"]


def test_move_with_stale_from_column_keeps_single_placement():
    """The issue is removed from wherever it actually sits, not only from_column_id"""
    doc, ids = board("To Do", "In Progress", "Done")
    doc, _ = doc.move_issue("A", ids["In Progress"])
    doc, _ = doc.move_issue("A", ids["Done"], from_column_id=ids["To Do"])
    assert placed_everywhere(doc, "A") == [ids["Done"]]


def test_move_is_idempotent():
    doc, ids = board("To Do", "Done")
    once, _ = doc.move_issue("A", ids["Done"], position=0)
    twice, _ = once.move_issue("A", ids["Done"], from_column_id=ids["Done"], position=0)
    assert once.to_json() == twice.to_json()


def test_move_to_unknown_column():
    doc, _ = board("To Do")
    with pytest.raises(NotFound):
        doc.move_issue("A", "nope")


def test_move_from_deleted_column_still_lands():
    doc, ids = board("To Do", "Done")
    doc, _ = doc.move_issue("A", ids["To Do"])
    doc = doc.remove_column(ids["To Do"])

    doc, position = doc.move_issue("A", ids["Done"], from_column_id=ids["To Do"], position=0)
    assert position == 0
    assert doc.issue_positions == {ids["Done"]: ["A"]}

    doc, _ = doc.move_issue("B", ids["Done"], from_column_id="never-existed", position=5)
    assert doc.issue_positions[ids["Done"]] == ["A", "B"]
    assert "never-existed" not in doc.issue_positions


def test_move_requires_ids():
    doc, ids = board("To Do")
    with pytest.raises(BadRequest):
        doc.move_issue("", ids["To Do"])


# ============================================================
# REORDER & UNPLACE
# ============================================================

def test_reorder_within_column():
    doc, ids = board("To Do")
    for issue_id in ("A", "B", "C"):
        doc, _ = doc.move_issue(issue_id, ids["To Do"], position=99)
    assert doc.issue_positions[ids["To Do"]] == ["A", "B", "C"]

    doc, position = doc.reorder_issue(ids["To Do"], "A", 2)
    assert position == 2
    assert doc.issue_positions[ids["To Do"]] == ["B", "C", "A"]

    doc, position = doc.reorder_issue(ids["To Do"], "A", 50)
    assert position == 2
    assert doc.issue_positions[ids["To Do"]] == ["B", "C", "A"]


def test_reorder_rejects_issue_in_other_column():
    doc, ids = board("To Do", "Done")
    doc, _ = doc.move_issue("A", ids["Done"])
    with pytest.raises(BadRequest):
        doc.reorder_issue(ids["To Do"], "A", 0)


def test_reorder_places_unplaced_issue():
    doc, ids = board("To Do")
    doc, position = doc.reorder_issue(ids["To Do"], "A", 3)
    assert position == 0
    assert doc.issue_positions[ids["To Do"]] == ["A"]


def test_unplace_issue():
    doc, ids = board("To Do")
    doc, _ = doc.move_issue("A", ids["To Do"])
    new_doc, changed = doc.unplace_issue("A")
    assert changed is True
    assert new_doc.column_of("A") is None

    same, changed = new_doc.unplace_issue("A")
    assert changed is False
    assert same is new_doc


# ============================================================
# REFERENCE BOARD
# ============================================================

def reference_board():
    return PositionDocument.from_json({
        "columns": [
            {"id": "c1", "name": "To Do", "order": 1},
            {"id": "c2", "name": "Done", "order": 2},
        ],
        "issuePositions": {"c1": ["i1"]},
    })


def test_move_to_done_column():
    doc, position = reference_board().move_issue("i1", "c2", from_column_id="c1", position=0)
    assert doc.issue_positions == {"c1": [], "c2": ["i1"]}
    assert position == 0
    assert status_for_column(doc.find_column("c2").name) == "done"


def test_reorder_columns_swaps_listing():
    doc = reference_board().apply_column_order([{"id": "c2", "order": 1}, {"id": "c1", "order": 2}])
    assert [c.name for c in doc.sorted_columns()] == ["Done", "To Do"]


def test_delete_column_leaves_issues_unplaced():
    doc = PositionDocument.from_json({
        "columns": [
            {"id": "c1", "name": "To Do", "order": 1},
            {"id": "c2", "name": "Done", "order": 2},
        ],
        "issuePositions": {"c1": ["i1", "i2"], "c2": ["i3"]},
    }).remove_column("c1")
    for issue_ids in doc.issue_positions.values():
        assert "i1" not in issue_ids and "i2" not in issue_ids
    assert doc.issue_positions == {"c2": ["i3"]}


def test_single_placement_holds_across_a_sequence():
    doc, ids = board("To Do", "In Progress", "Done")
    steps = [
        ("move", "A", "To Do", 0), ("move", "B", "To Do", 0), ("move", "A", "Done", 3),
        ("reorder", "B", "To Do", 5), ("move", "B", "In Progress", -1), ("move", "A", "To Do", 1),
        ("reorder", "A", "To Do", 0), ("move", "C", "Done", 0),
    ]
    for kind, issue_id, column, position in steps:
        if kind == "move":
            doc, _ = doc.move_issue(issue_id, ids[column], position=position)
        else:
            doc, _ = doc.reorder_issue(ids[column], issue_id, position)
        for i in ("A", "B", "C"):
            assert len(placed_everywhere(doc, i)) <= 1
    assert doc.column_of("A") == ids["To Do"]
    assert doc.column_of("B") == ids["In Progress"]
    assert doc.column_of("C") == ids["Done"]
