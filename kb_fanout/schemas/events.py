"""
Domain event schemas.

EventName is the closed set of mutation kinds. Every member must have a
fan-out handler (see services.channels); adding a member without one fails
at import time.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class EventName(str, Enum):
    DOCUMENTS_CREATE = "documents.create"
    DOCUMENTS_PUBLISH = "documents.publish"
    DOCUMENTS_UNPUBLISH = "documents.unpublish"
    DOCUMENTS_UPDATE = "documents.update"
    DOCUMENTS_ARCHIVE = "documents.archive"
    DOCUMENTS_UNARCHIVE = "documents.unarchive"
    DOCUMENTS_DELETE = "documents.delete"
    DOCUMENTS_RESTORE = "documents.restore"
    DOCUMENTS_PERMANENT_DELETE = "documents.permanent_delete"
    DOCUMENTS_MOVE = "documents.move"
    DOCUMENTS_ADD_USER = "documents.add_user"
    DOCUMENTS_REMOVE_USER = "documents.remove_user"
    REVISIONS_CREATE = "revisions.create"
    COLLECTIONS_CREATE = "collections.create"
    COLLECTIONS_UPDATE = "collections.update"
    COLLECTIONS_DELETE = "collections.delete"
    COLLECTIONS_MOVE = "collections.move"
    COLLECTIONS_ADD_USER = "collections.add_user"
    COLLECTIONS_REMOVE_USER = "collections.remove_user"
    COLLECTIONS_ADD_GROUP = "collections.add_group"
    COLLECTIONS_REMOVE_GROUP = "collections.remove_group"
    COMMENTS_CREATE = "comments.create"
    COMMENTS_UPDATE = "comments.update"
    COMMENTS_DELETE = "comments.delete"
    GROUPS_CREATE = "groups.create"
    GROUPS_UPDATE = "groups.update"
    GROUPS_DELETE = "groups.delete"
    GROUPS_ADD_USER = "groups.add_user"
    GROUPS_REMOVE_USER = "groups.remove_user"
    PINS_CREATE = "pins.create"
    PINS_UPDATE = "pins.update"
    PINS_DELETE = "pins.delete"
    STARS_CREATE = "stars.create"
    STARS_UPDATE = "stars.update"
    STARS_DELETE = "stars.delete"
    SUBSCRIPTIONS_CREATE = "subscriptions.create"
    SUBSCRIPTIONS_DELETE = "subscriptions.delete"
    NOTIFICATIONS_CREATE = "notifications.create"
    NOTIFICATIONS_UPDATE = "notifications.update"
    FILE_OPERATIONS_CREATE = "fileOperations.create"
    FILE_OPERATIONS_UPDATE = "fileOperations.update"
    TEAMS_UPDATE = "teams.update"
    USERS_UPDATE = "users.update"
    USERS_DEMOTE = "users.demote"
    USER_MEMBERSHIPS_UPDATE = "userMemberships.update"


class ControlAction(str, Enum):
    JOIN = "join"
    LEAVE = "leave"


class EventIn(BaseModel):
    """What a mutation call site hands to emit()."""

    name: EventName
    team_id: uuid.UUID
    actor_id: Optional[uuid.UUID] = None
    document_id: Optional[uuid.UUID] = None
    collection_id: Optional[uuid.UUID] = None
    group_id: Optional[uuid.UUID] = None
    model_id: Optional[uuid.UUID] = None
    user_id: Optional[uuid.UUID] = None
    data: dict[str, Any] = Field(default_factory=dict)
    ip: Optional[str] = None


class EventRecord(EventIn):
    """A persisted event. Frozen: events are never mutated after creation."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: uuid.UUID
    created_at: datetime

    @property
    def entity_key(self) -> str:
        """Key under which events must be processed in order."""
        if self.document_id:
            return f"document:{self.document_id}"
        if self.collection_id:
            return f"collection:{self.collection_id}"
        if self.group_id:
            return f"group:{self.group_id}"
        if self.user_id:
            return f"user:{self.user_id}"
        return f"team:{self.team_id}"
