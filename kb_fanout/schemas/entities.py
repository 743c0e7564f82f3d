"""
Read-only snapshots of entities owned by the knowledge base's storage layer.

The fan-out subsystem never writes these; it looks them up by id through an
EntityStore at processing time.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps as UTC so they compare with aware ones."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Snapshot(BaseModel):
    @field_validator("*")
    @classmethod
    def _aware_timestamps(cls, value):
        if isinstance(value, datetime):
            return as_utc(value)
        return value


class UserRole(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"
    VIEWER = "viewer"


class CollectionPermission(str, Enum):
    READ = "read"
    READ_WRITE = "read_write"


class MembershipPermission(str, Enum):
    READ = "read"
    READ_WRITE = "read_write"
    ADMIN = "admin"


class Team(Snapshot):
    id: uuid.UUID
    name: str
    url: str = ""


class User(Snapshot):
    id: uuid.UUID
    team_id: uuid.UUID
    name: str
    email: Optional[str] = None
    role: UserRole = UserRole.MEMBER
    avatar_url: Optional[str] = None
    suspended_at: Optional[datetime] = None
    last_active_at: Optional[datetime] = None

    @property
    def is_suspended(self) -> bool:
        return self.suspended_at is not None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class Collection(Snapshot):
    id: uuid.UUID
    team_id: uuid.UUID
    name: str
    # None means private: only explicit members and groups can see it
    permission: Optional[CollectionPermission] = None
    created_by_id: uuid.UUID
    index: Optional[str] = None
    deleted_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_private(self) -> bool:
        return self.permission is None


class Document(Snapshot):
    id: uuid.UUID
    team_id: uuid.UUID
    collection_id: Optional[uuid.UUID] = None
    title: str = ""
    created_by_id: uuid.UUID
    last_modified_by_id: uuid.UUID
    collaborator_ids: list[uuid.UUID] = Field(default_factory=list)
    import_id: Optional[uuid.UUID] = None
    published_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    updated_at: datetime

    @property
    def is_published(self) -> bool:
        return self.published_at is not None


class Group(Snapshot):
    id: uuid.UUID
    team_id: uuid.UUID
    name: str
    deleted_at: Optional[datetime] = None


class GroupUser(Snapshot):
    group_id: uuid.UUID
    user_id: uuid.UUID


class UserMembership(Snapshot):
    """Direct grant of a user on a collection or a document."""

    id: uuid.UUID
    user_id: uuid.UUID
    collection_id: Optional[uuid.UUID] = None
    document_id: Optional[uuid.UUID] = None
    permission: MembershipPermission = MembershipPermission.READ


class GroupMembership(Snapshot):
    """Grant of a group on a collection."""

    id: uuid.UUID
    group_id: uuid.UUID
    collection_id: Optional[uuid.UUID] = None
    document_id: Optional[uuid.UUID] = None
    permission: MembershipPermission = MembershipPermission.READ


class Comment(Snapshot):
    id: uuid.UUID
    document_id: uuid.UUID
    created_by_id: uuid.UUID
    parent_comment_id: Optional[uuid.UUID] = None
    data: dict = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Pin(Snapshot):
    id: uuid.UUID
    team_id: uuid.UUID
    document_id: uuid.UUID
    collection_id: Optional[uuid.UUID] = None
    index: Optional[str] = None


class Star(Snapshot):
    id: uuid.UUID
    user_id: uuid.UUID
    document_id: Optional[uuid.UUID] = None
    collection_id: Optional[uuid.UUID] = None
    index: Optional[str] = None


class FileOperation(Snapshot):
    id: uuid.UUID
    team_id: uuid.UUID
    user_id: uuid.UUID
    type: str  # import | export
    state: str  # creating | uploading | complete | error | expired
    name: Optional[str] = None
    collection_id: Optional[uuid.UUID] = None


class InAppNotification(Snapshot):
    """Notification shown in the product's inbox, distinct from email sends."""

    id: uuid.UUID
    user_id: uuid.UUID
    actor_id: Optional[uuid.UUID] = None
    event: str
    document_id: Optional[uuid.UUID] = None
    collection_id: Optional[uuid.UUID] = None
    viewed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class View(Snapshot):
    user_id: uuid.UUID
    document_id: uuid.UUID
    count: int = 1
    last_editing_at: Optional[datetime] = None
    updated_at: datetime
