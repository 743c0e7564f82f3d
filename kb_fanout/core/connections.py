"""
WebSocket connection registry.

Features:
- Per-connection channel sets (user-, team-, collection-, document-, group-)
- Redis Pub/Sub relay so every process delivers to its own local sockets
- Connection registry tracking active users per team in Redis
- Connection limit enforcement per team
- Dead connection cleanup during broadcast
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Iterable
from uuid import UUID

import structlog
from fastapi import WebSocket

from kb_fanout.core.redis import get_redis

log = structlog.get_logger()

# Redis keys
REDIS_RELAY_CHANNEL = "kb:realtime:relay"
REDIS_WS_CONN_KEY_PREFIX = "kb:ws:connections:"
REDIS_WS_REGISTRY_PREFIX = "kb:ws:registry:"  # Set: active user ids per team
DEFAULT_MAX_CONNECTIONS_PER_TEAM = 500


class ConnectionInfo:
    """Tracks a single WebSocket connection's metadata."""

    __slots__ = ("websocket", "user_id", "team_id", "channels")

    def __init__(
        self,
        websocket: WebSocket,
        user_id: UUID,
        team_id: UUID,
        channels: Iterable[str] = (),
    ):
        self.websocket = websocket
        self.user_id = user_id
        self.team_id = team_id
        self.channels: set[str] = set(channels)


class ConnectionManager:
    """
    Implements the ConnectionRegistry protocol over WebSockets.

    With `relay` enabled every operation is published to Redis and applied
    by each process's listener to its local connections. Without it,
    operations apply to local connections directly (single process).
    """

    def __init__(
        self,
        max_connections_per_team: int = DEFAULT_MAX_CONNECTIONS_PER_TEAM,
        relay: bool = True,
    ) -> None:
        self._max_connections = max_connections_per_team
        self._relay = relay
        # user_id_str -> list[ConnectionInfo]
        self._connections: dict[str, list[ConnectionInfo]] = {}
        self._listener: asyncio.Task | None = None

    @property
    def connections(self) -> dict[str, list[ConnectionInfo]]:
        return self._connections

    def connections_on(self, channel: str) -> list[ConnectionInfo]:
        return [c for conns in self._connections.values() for c in conns if channel in c.channels]

    # --- Lifecycle ---

    async def start(self) -> None:
        if self._relay and self._listener is None:
            self._listener = asyncio.create_task(self._listen_redis())

    async def stop(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None

    async def connect(
        self,
        websocket: WebSocket,
        user_id: UUID,
        team_id: UUID,
        channels: Iterable[str] = (),
    ) -> ConnectionInfo | None:
        """
        Accept a WebSocket connection and register it.

        Returns ConnectionInfo on success, None if the team's connection
        limit is exceeded.
        """
        current = await self._get_connection_count(team_id)
        if current >= self._max_connections:
            return None

        await websocket.accept()

        info = ConnectionInfo(websocket, user_id, team_id, channels)
        self._connections.setdefault(str(user_id), []).append(info)
        await self._register_connection(team_id, user_id)

        log.info(
            "connections.connected",
            user_id=str(user_id),
            team_id=str(team_id),
            channels=len(info.channels),
        )
        return info

    async def disconnect(self, info: ConnectionInfo) -> None:
        """Remove a connection and clean up."""
        user_str = str(info.user_id)
        conns = self._connections.get(user_str)
        if conns is not None:
            if info in conns:
                conns.remove(info)
            if not conns:
                del self._connections[user_str]

        await self._unregister_connection(info.team_id, info.user_id)
        log.info("connections.disconnected", user_id=user_str, team_id=str(info.team_id))

    # --- ConnectionRegistry ---

    async def broadcast(self, channels: list[str], message: dict[str, Any]) -> None:
        await self._submit({"op": "broadcast", "channels": list(channels), "message": message})

    async def send_to_user(self, user_id: UUID, message: dict[str, Any]) -> None:
        await self._submit({"op": "user", "user_id": str(user_id), "message": message})

    async def join(self, user_id: UUID, channel: str) -> None:
        await self._submit({"op": "join", "user_id": str(user_id), "channel": channel})

    async def leave(self, user_id: UUID, channel: str) -> None:
        await self._submit({"op": "leave", "user_id": str(user_id), "channel": channel})

    async def join_channel_members(self, channel: str, new_channel: str) -> None:
        await self._submit({"op": "join_members", "channel": channel, "target": new_channel})

    async def leave_channel_members(self, channel: str, old_channel: str) -> None:
        await self._submit({"op": "leave_members", "channel": channel, "target": old_channel})

    # --- Local application ---

    async def _submit(self, envelope: dict[str, Any]) -> None:
        if self._relay:
            redis = await get_redis()
            await redis.publish(REDIS_RELAY_CHANNEL, json.dumps(envelope))
        else:
            await self.apply(envelope)

    async def apply(self, envelope: dict[str, Any]) -> None:
        """Apply one relayed operation to this process's connections."""
        op = envelope.get("op")
        if op == "broadcast":
            await self._deliver(self._matching(envelope["channels"]), envelope["message"])
        elif op == "user":
            await self._deliver(list(self._connections.get(envelope["user_id"], [])), envelope["message"])
        elif op == "join":
            for conn in self._connections.get(envelope["user_id"], []):
                conn.channels.add(envelope["channel"])
        elif op == "leave":
            for conn in self._connections.get(envelope["user_id"], []):
                conn.channels.discard(envelope["channel"])
        elif op == "join_members":
            for conn in self.connections_on(envelope["channel"]):
                conn.channels.add(envelope["target"])
        elif op == "leave_members":
            for conn in self.connections_on(envelope["channel"]):
                conn.channels.discard(envelope["target"])
        else:
            log.warning("connections.unknown_op", op=op)

    def _matching(self, channels: Iterable[str]) -> list[ConnectionInfo]:
        wanted = set(channels)
        # Each connection at most once, however many of its channels match
        return [
            conn
            for conns in self._connections.values()
            for conn in conns
            if conn.channels & wanted
        ]

    async def _deliver(self, targets: list[ConnectionInfo], message: dict[str, Any]) -> None:
        if not targets:
            return
        msg_text = json.dumps(message)

        dead_connections = []
        for conn_info in targets:
            try:
                await conn_info.websocket.send_text(msg_text)
            except Exception:
                dead_connections.append(conn_info)

        for dead in dead_connections:
            await self.disconnect(dead)

    # --- Redis Pub/Sub Listener ---

    async def _listen_redis(self) -> None:
        """Apply operations published by any process to local connections."""
        redis = await get_redis()
        pubsub = redis.pubsub()
        await pubsub.subscribe(REDIS_RELAY_CHANNEL)

        try:
            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue
                try:
                    await self.apply(json.loads(message["data"]))
                except Exception:
                    log.exception("connections.relay_failed")
        except asyncio.CancelledError:
            log.info("connections.relay_cancelled")
            raise
        finally:
            await pubsub.unsubscribe(REDIS_RELAY_CHANNEL)
            await pubsub.close()

    # --- Connection Registry (Redis) ---

    async def _get_connection_count(self, team_id: UUID) -> int:
        redis = await get_redis()
        val = await redis.get(f"{REDIS_WS_CONN_KEY_PREFIX}{team_id}")
        return int(val) if val else 0

    async def _register_connection(self, team_id: UUID, user_id: UUID) -> None:
        redis = await get_redis()
        conn_key = f"{REDIS_WS_CONN_KEY_PREFIX}{team_id}"
        await redis.incr(conn_key)
        await redis.expire(conn_key, 3600)

        registry_key = f"{REDIS_WS_REGISTRY_PREFIX}{team_id}"
        await redis.sadd(registry_key, str(user_id))
        await redis.expire(registry_key, 3600)

    async def _unregister_connection(self, team_id: UUID, user_id: UUID) -> None:
        redis = await get_redis()
        await redis.decr(f"{REDIS_WS_CONN_KEY_PREFIX}{team_id}")

        # Keep the user in the registry while they have other connections
        if str(user_id) not in self._connections:
            await redis.srem(f"{REDIS_WS_REGISTRY_PREFIX}{team_id}", str(user_id))

    async def get_active_users(self, team_id: UUID) -> set[str]:
        """User ids with at least one live connection in the team."""
        redis = await get_redis()
        return await redis.smembers(f"{REDIS_WS_REGISTRY_PREFIX}{team_id}")
