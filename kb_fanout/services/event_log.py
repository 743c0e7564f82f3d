"""
Event log: append-only record of domain mutations.

Rows are inserted once and never updated or deleted.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from kb_fanout.models.event import Event
from kb_fanout.schemas.events import EventIn, EventRecord

log = structlog.get_logger()

MAX_LIST_EVENTS = 1000


async def record_event(session: AsyncSession, event_in: EventIn) -> EventRecord:
    """Persist an event in the caller's transaction and return its record."""
    event = Event(
        name=event_in.name.value,
        team_id=event_in.team_id,
        actor_id=event_in.actor_id,
        document_id=event_in.document_id,
        collection_id=event_in.collection_id,
        group_id=event_in.group_id,
        model_id=event_in.model_id,
        user_id=event_in.user_id,
        data=event_in.data,
        ip=event_in.ip,
    )
    session.add(event)
    await session.flush()

    log.debug("event_log.recorded", event_id=str(event.id), name=event.name)
    return to_record(event)


def to_record(event: Event) -> EventRecord:
    return EventRecord.model_validate(event)


async def get_event(session: AsyncSession, event_id: uuid.UUID) -> Optional[EventRecord]:
    event = await session.get(Event, event_id)
    return to_record(event) if event else None


async def list_events(
    session: AsyncSession,
    *,
    team_id: Optional[uuid.UUID] = None,
    document_id: Optional[uuid.UUID] = None,
    collection_id: Optional[uuid.UUID] = None,
    name: Optional[str] = None,
    since: Optional[datetime] = None,
    limit: int = 100,
) -> list[EventRecord]:
    """Events matching the filters in creation order, ties ordered by id."""
    stmt = select(Event)
    if team_id is not None:
        stmt = stmt.where(Event.team_id == team_id)
    if document_id is not None:
        stmt = stmt.where(Event.document_id == document_id)
    if collection_id is not None:
        stmt = stmt.where(Event.collection_id == collection_id)
    if name is not None:
        stmt = stmt.where(Event.name == name)
    if since is not None:
        stmt = stmt.where(Event.created_at > since)

    stmt = stmt.order_by(Event.created_at, Event.id).limit(min(limit, MAX_LIST_EVENTS))
    result = await session.execute(stmt)
    return [to_record(e) for e in result.scalars().all()]
