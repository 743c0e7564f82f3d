"""
Tests for the WebSocket connection registry.

Tests cover:
- Connect / disconnect bookkeeping in Redis
- Connection limit enforcement per team
- Channel broadcasts delivered at most once per connection
- Per-user and per-channel join / leave
- Dead connection cleanup during broadcast
- Redis relay publishing
"""

from __future__ import annotations

import json
import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from kb_fanout.core.connections import REDIS_RELAY_CHANNEL, ConnectionManager


def _redis_mock(count: str = "0") -> AsyncMock:
    redis_mock = AsyncMock()
    redis_mock.get = AsyncMock(return_value=count)
    redis_mock.incr = AsyncMock(return_value=1)
    redis_mock.expire = AsyncMock()
    redis_mock.sadd = AsyncMock()
    redis_mock.decr = AsyncMock()
    redis_mock.srem = AsyncMock()
    redis_mock.publish = AsyncMock()
    redis_mock.pubsub = MagicMock(return_value=AsyncMock())
    return redis_mock


def _ws() -> AsyncMock:
    ws = AsyncMock(spec_set=["accept", "send_text", "close", "receive_text"])
    ws.accept = AsyncMock()
    ws.send_text = AsyncMock()
    ws.close = AsyncMock()
    return ws


def _sent(ws) -> list[dict]:
    return [json.loads(call.args[0]) for call in ws.send_text.await_args_list]


class TestConnectionManager:
    @pytest.fixture
    def redis_mock(self):
        redis_mock = _redis_mock()
        with patch("kb_fanout.core.connections.get_redis") as mock_get:
            mock_get.return_value = redis_mock
            yield redis_mock

    @pytest.fixture
    def mgr(self, redis_mock):
        return ConnectionManager(relay=False)

    async def test_connect_and_disconnect(self, mgr, redis_mock):
        team_id, user_id = uuid.uuid4(), uuid.uuid4()
        ws = _ws()

        info = await mgr.connect(ws, user_id, team_id, [f"user-{user_id}"])
        assert info is not None
        ws.accept.assert_awaited_once()
        assert str(user_id) in mgr.connections
        redis_mock.incr.assert_awaited_once()
        redis_mock.sadd.assert_awaited_once()

        await mgr.disconnect(info)
        assert str(user_id) not in mgr.connections
        redis_mock.decr.assert_awaited_once()
        redis_mock.srem.assert_awaited_once()

    async def test_user_stays_registered_while_other_tab_open(self, mgr, redis_mock):
        team_id, user_id = uuid.uuid4(), uuid.uuid4()
        first = await mgr.connect(_ws(), user_id, team_id)
        await mgr.connect(_ws(), user_id, team_id)

        await mgr.disconnect(first)
        redis_mock.srem.assert_not_awaited()

    async def test_connection_limit(self, redis_mock):
        redis_mock.get = AsyncMock(return_value="2")
        mgr = ConnectionManager(max_connections_per_team=2, relay=False)
        ws = _ws()

        assert await mgr.connect(ws, uuid.uuid4(), uuid.uuid4()) is None
        ws.accept.assert_not_awaited()

    async def test_broadcast_delivers_once_per_connection(self, mgr):
        team_id = uuid.uuid4()
        ws_a, ws_b, ws_c = _ws(), _ws(), _ws()
        await mgr.connect(ws_a, uuid.uuid4(), team_id, ["team-t", "collection-c"])
        await mgr.connect(ws_b, uuid.uuid4(), team_id, ["collection-c"])
        await mgr.connect(ws_c, uuid.uuid4(), team_id, ["collection-other"])

        await mgr.broadcast(["team-t", "collection-c"], {"type": "documents.update"})

        assert _sent(ws_a) == [{"type": "documents.update"}]
        assert _sent(ws_b) == [{"type": "documents.update"}]
        assert _sent(ws_c) == []

    async def test_send_to_user_reaches_every_tab(self, mgr):
        team_id, user_id = uuid.uuid4(), uuid.uuid4()
        ws_a, ws_b = _ws(), _ws()
        await mgr.connect(ws_a, user_id, team_id)
        await mgr.connect(ws_b, user_id, team_id)

        await mgr.send_to_user(user_id, {"type": "join", "channel": "collection-c"})
        assert len(_sent(ws_a)) == 1
        assert len(_sent(ws_b)) == 1

    async def test_join_and_leave_for_user(self, mgr):
        team_id, user_id = uuid.uuid4(), uuid.uuid4()
        info = await mgr.connect(_ws(), user_id, team_id)

        await mgr.join(user_id, "collection-c")
        assert "collection-c" in info.channels
        await mgr.leave(user_id, "collection-c")
        assert "collection-c" not in info.channels

    async def test_channel_members_join_and_leave(self, mgr):
        team_id = uuid.uuid4()
        on_team = await mgr.connect(_ws(), uuid.uuid4(), team_id, ["team-t"])
        elsewhere = await mgr.connect(_ws(), uuid.uuid4(), team_id, ["team-other"])

        await mgr.join_channel_members("team-t", "collection-c")
        assert "collection-c" in on_team.channels
        assert "collection-c" not in elsewhere.channels

        await mgr.leave_channel_members("team-t", "collection-c")
        assert "collection-c" not in on_team.channels

    async def test_dead_connection_removed_during_broadcast(self, mgr):
        team_id, user_id = uuid.uuid4(), uuid.uuid4()
        ws = _ws()
        ws.send_text = AsyncMock(side_effect=RuntimeError("socket closed"))
        await mgr.connect(ws, user_id, team_id, ["team-t"])

        await mgr.broadcast(["team-t"], {"type": "teams.update"})
        assert str(user_id) not in mgr.connections

    async def test_unknown_op_is_ignored(self, mgr):
        await mgr.apply({"op": "bogus"})


class TestRedisRelay:
    async def test_operations_are_published(self):
        redis_mock = _redis_mock()
        mgr = ConnectionManager(relay=True)
        with patch("kb_fanout.core.connections.get_redis") as mock_get:
            mock_get.return_value = redis_mock
            await mgr.broadcast(["team-t"], {"type": "teams.update"})

        redis_mock.publish.assert_awaited_once()
        channel, payload = redis_mock.publish.await_args.args
        assert channel == REDIS_RELAY_CHANNEL
        assert json.loads(payload) == {
            "op": "broadcast",
            "channels": ["team-t"],
            "message": {"type": "teams.update"},
        }

    async def test_relayed_envelope_applies_locally(self):
        redis_mock = _redis_mock()
        mgr = ConnectionManager(relay=True)
        with patch("kb_fanout.core.connections.get_redis") as mock_get:
            mock_get.return_value = redis_mock
            user_id = uuid.uuid4()
            info = await mgr.connect(_ws(), user_id, uuid.uuid4())
            await mgr.apply({"op": "join", "user_id": str(user_id), "channel": "group-g"})

        assert "group-g" in info.channels
