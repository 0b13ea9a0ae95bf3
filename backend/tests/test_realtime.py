# tests/test_realtime.py — Room manager fan-out and the board socket endpoint
import json

import pytest
import pytest_asyncio
from fastapi import WebSocketDisconnect

from board_service import BoardService
from realtime import RoomManager, board_room, manager, project_room
from routers.realtime import board_socket
from tests.conftest import get_auth_headers


class FakeSocket:
    def __init__(self, fail=False):
        self.accepted = False
        self.sent = []
        self.fail = fail

    async def accept(self):
        self.accepted = True

    async def send_json(self, message):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(message)


def test_room_names():
    assert board_room("b1") == "board:b1"
    assert project_room("p1") == "project:p1"


@pytest.mark.asyncio
async def test_emit_reaches_room_members_only():
    manager = RoomManager()
    a, b, other = FakeSocket(), FakeSocket(), FakeSocket()
    await manager.join("board:1", a)
    await manager.join("board:1", b)
    await manager.join("board:2", other)

    delivered = await manager.emit("board:1", "issue.moved", {"issue_id": "I-1"})
    assert delivered == 2
    assert a.accepted and a.sent[0]["event"] == "issue.moved"
    assert a.sent[0]["data"] == {"issue_id": "I-1"}
    assert other.sent == []


@pytest.mark.asyncio
async def test_emit_drops_broken_sockets():
    manager = RoomManager()
    good, broken = FakeSocket(), FakeSocket(fail=True)
    await manager.join("board:1", good)
    await manager.join("board:1", broken)

    assert await manager.emit("board:1", "board.created", {}) == 1
    assert manager.room_size("board:1") == 1
    assert manager.get_stats() == {"rooms": 1, "total_connections": 1}


@pytest.mark.asyncio
async def test_emit_to_empty_room():
    assert await RoomManager().emit("board:none", "x", {}) == 0


@pytest.mark.asyncio
async def test_stats_endpoint(client, viewer_user):
    resp = await client.get("/api/v1/realtime/stats")
    assert resp.status_code == 401

    resp = await client.get("/api/v1/realtime/stats", headers=get_auth_headers(viewer_user))
    assert resp.status_code == 200
    assert set(resp.json()) == {"rooms", "total_connections"}


# ============================================================
# BOARD SOCKET
# ============================================================

class ScriptedSocket:
    """Replays client frames, then disconnects (or fails with `error`)"""

    def __init__(self, frames, events=None, error=None):
        self.frames = list(frames)
        self.events = events if events is not None else []
        self.error = error
        self.sent = []
        self.closed = None

    async def accept(self):
        self.events.append("accepted")

    async def send_json(self, message):
        self.sent.append(message)

    async def receive_text(self):
        if self.frames:
            return self.frames.pop(0)
        if self.error is not None:
            raise self.error
        raise WebSocketDisconnect(code=1000)

    async def close(self, code=1000, reason=None):
        self.closed = (code, reason)


class TrackingFactory:
    def __init__(self, factory, events):
        self.factory = factory
        self.events = events

    def __call__(self):
        factory, events = self.factory, self.events

        class _Session:
            async def __aenter__(self):
                self.session = factory()
                return await self.session.__aenter__()

            async def __aexit__(self, *exc):
                events.append("session_closed")
                return await self.session.__aexit__(*exc)

        return _Session()


def token_for(user):
    return get_auth_headers(user)["Authorization"].split(" ", 1)[1]


@pytest_asyncio.fixture
async def board(db_session, test_project):
    row, _ = await BoardService(db_session).create_board(test_project.id, "Live")
    return row


@pytest.mark.asyncio
async def test_socket_ignores_bad_frames_and_answers_ping(board, developer_user, session_factory):
    socket = ScriptedSocket(["not json", "[1, 2]", json.dumps({"type": "ping"})])
    await board_socket(socket, board.id, token=token_for(developer_user), session_factory=session_factory)

    assert [m["type"] for m in socket.sent] == ["connected", "pong"]
    assert manager.room_size(board_room(board.id)) == 0


@pytest.mark.asyncio
async def test_socket_leaves_room_on_unexpected_error(board, developer_user, session_factory):
    socket = ScriptedSocket([], error=RuntimeError("transport reset"))
    await board_socket(socket, board.id, token=token_for(developer_user), session_factory=session_factory)
    assert manager.room_size(board_room(board.id)) == 0


@pytest.mark.asyncio
async def test_socket_releases_session_before_joining(board, developer_user, session_factory):
    events = []
    socket = ScriptedSocket([], events=events)
    await board_socket(
        socket, board.id, token=token_for(developer_user),
        session_factory=TrackingFactory(session_factory, events),
    )
    assert events == ["session_closed", "accepted"]


@pytest.mark.asyncio
async def test_socket_refusals(board, developer_user, session_factory):
    socket = ScriptedSocket([])
    await board_socket(socket, board.id, token="garbage", session_factory=session_factory)
    assert socket.closed[0] == 4001

    socket = ScriptedSocket([])
    await board_socket(socket, "no-such-board", token=token_for(developer_user), session_factory=session_factory)
    assert socket.closed == (4004, "Board not found")
    assert socket.sent == []
