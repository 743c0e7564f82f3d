"""
Realtime WebSocket endpoint.

Authentication happens upstream; the authenticating proxy forwards the
verified user id. On connect the socket listens to its user, team, group
and readable collection channels. Clients then ask to join document
channels as they navigate, and the server tells them to join or leave
collection channels as grants change.
"""

from __future__ import annotations

import json
import uuid
from typing import Any

import structlog
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from kb_fanout.core.connections import ConnectionInfo
from kb_fanout.schemas.entities import User
from kb_fanout.services.channels import (
    collection_channel,
    document_channel,
    group_channel,
    team_channel,
    user_channel,
)
from kb_fanout.services.container import Services

log = structlog.get_logger()

router = APIRouter()


async def initial_channels(services: Services, user: User) -> list[str]:
    channels = [team_channel(user.team_id), user_channel(user.id)]
    for group_id in await services.entities.user_group_ids(user.id):
        channels.append(group_channel(group_id))
    for collection_id in await services.permissions.collection_ids(user):
        channels.append(collection_channel(collection_id))
    return channels


def _parse_id(value: Any) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


async def handle_client_frame(services: Services, info: ConnectionInfo, frame: dict[str, Any]) -> None:
    """Apply one client request. Joins are granted only after a live permission check."""
    frame_type = frame.get("type")

    if frame_type == "ping":
        await info.websocket.send_text(json.dumps({"type": "pong"}))
        return

    if frame_type not in ("join", "leave"):
        return

    # Re-read: the user may have been suspended since connecting
    user = await services.entities.get_user(info.user_id)
    if user is None:
        return

    collection_id = frame.get("collectionId")
    document_id = frame.get("documentId")

    if frame_type == "leave":
        if collection_id:
            info.channels.discard(collection_channel(collection_id))
        if document_id:
            info.channels.discard(document_channel(document_id))
        return

    collection_id = _parse_id(collection_id) if collection_id else None
    document_id = _parse_id(document_id) if document_id else None

    if collection_id:
        collection = await services.entities.get_collection(collection_id)
        if await services.permissions.can_read(user, collection):
            info.channels.add(collection_channel(collection.id))

    if document_id:
        document = await services.entities.get_document(document_id)
        if await services.permissions.can_read(user, document):
            await services.views.touch(user.id, document.id, bool(frame.get("isEditing")))
            info.channels.add(document_channel(document.id))


@router.websocket("/realtime")
async def realtime(websocket: WebSocket, user_id: uuid.UUID = Query(...)):
    services: Services = websocket.app.state.services

    user = await services.entities.get_user(user_id)
    if user is None or user.is_suspended:
        await websocket.close(code=4001, reason="unauthorized")
        return

    channels = await initial_channels(services, user)
    info = await services.registry.connect(websocket, user.id, user.team_id, channels)
    if info is None:
        await websocket.close(code=4008, reason="connection_limit")
        return

    try:
        while True:
            text = await websocket.receive_text()
            try:
                frame = json.loads(text)
            except ValueError:
                continue
            if isinstance(frame, dict):
                await handle_client_frame(services, info, frame)
    except WebSocketDisconnect:
        pass
    finally:
        await services.registry.disconnect(info)
