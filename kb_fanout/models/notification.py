"""Notification send record, used to bound email volume per document."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import UUIDMixin, utcnow


class Notification(UUIDMixin, SQLModel, table=True):
    __tablename__ = "notifications"
    __table_args__ = (
        sa.Index("ix_notifications_dedup", "user_id", "document_id", "event", "emailed_at"),
    )

    actor_id: Optional[uuid.UUID] = Field(default=None)
    user_id: uuid.UUID = Field(nullable=False)
    team_id: uuid.UUID = Field(nullable=False)
    document_id: Optional[uuid.UUID] = Field(default=None)
    collection_id: Optional[uuid.UUID] = Field(default=None)
    event: str = Field(nullable=False)
    emailed_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_type=sa.DateTime(timezone=True),
    )
