"""Notification setting model: team-wide opt-in to an event kind."""

import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import TimestampMixin, UUIDMixin


class NotificationSetting(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "notification_settings"
    __table_args__ = (
        sa.UniqueConstraint("user_id", "event", name="uq_notification_settings_user_event"),
    )

    user_id: uuid.UUID = Field(nullable=False, index=True)
    team_id: uuid.UUID = Field(nullable=False, index=True)
    event: str = Field(nullable=False)  # documents.publish | documents.update | collections.create
