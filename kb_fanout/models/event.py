"""Event model (append-only audit log of domain mutations)."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import JSONType, UUIDMixin, utcnow


class Event(UUIDMixin, SQLModel, table=True):
    __tablename__ = "events"
    __table_args__ = (
        sa.Index("ix_events_document_created", "document_id", "created_at"),
    )

    name: str = Field(nullable=False, index=True)  # e.g., documents.publish
    team_id: uuid.UUID = Field(nullable=False, index=True)
    actor_id: Optional[uuid.UUID] = Field(default=None)
    document_id: Optional[uuid.UUID] = Field(default=None)
    collection_id: Optional[uuid.UUID] = Field(default=None, index=True)
    group_id: Optional[uuid.UUID] = Field(default=None)
    model_id: Optional[uuid.UUID] = Field(default=None)
    user_id: Optional[uuid.UUID] = Field(default=None)
    data: dict = Field(default_factory=dict, sa_type=JSONType, nullable=False)
    ip: Optional[str] = None
    created_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        index=True,
        sa_type=sa.DateTime(timezone=True),
    )
