"""Subscription model: a user's opt-in (or opt-out) for one document."""

import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import TimestampMixin, UUIDMixin


class Subscription(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "subscriptions"
    __table_args__ = (
        sa.Index("ix_subscriptions_user_document_event", "user_id", "document_id", "event"),
    )

    user_id: uuid.UUID = Field(nullable=False, index=True)
    document_id: uuid.UUID = Field(nullable=False, index=True)
    event: str = Field(nullable=False)  # documents.update
    # Rows are never deleted; unsubscribe flips this off
    enabled: bool = Field(default=True, nullable=False)
