"""
In-memory entity and view stores.

Used for local development and tests. Production deployments inject stores
that read the knowledge base's relational schema; the interface is the
same, including None for anything missing.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Iterable, Optional

from kb_fanout.schemas.entities import (
    Collection,
    Comment,
    Document,
    FileOperation,
    Group,
    GroupMembership,
    GroupUser,
    InAppNotification,
    Pin,
    Star,
    Team,
    User,
    UserMembership,
    View,
)


class InMemoryDirectory:
    """Dictionary-backed EntityStore."""

    def __init__(self) -> None:
        self.teams: dict[uuid.UUID, Team] = {}
        self.users: dict[uuid.UUID, User] = {}
        self.collections: dict[uuid.UUID, Collection] = {}
        self.documents: dict[uuid.UUID, Document] = {}
        self.groups: dict[uuid.UUID, Group] = {}
        self.group_user_rows: list[GroupUser] = []
        self.user_memberships: dict[uuid.UUID, UserMembership] = {}
        self.group_membership_rows: dict[uuid.UUID, GroupMembership] = {}
        self.comments: dict[uuid.UUID, Comment] = {}
        self.pins: dict[uuid.UUID, Pin] = {}
        self.stars: dict[uuid.UUID, Star] = {}
        self.file_operations: dict[uuid.UUID, FileOperation] = {}
        self.notifications: dict[uuid.UUID, InAppNotification] = {}

    # --- Writers (dev and test seeding) ---

    def add(self, *entities) -> None:
        for entity in entities:
            if isinstance(entity, Team):
                self.teams[entity.id] = entity
            elif isinstance(entity, User):
                self.users[entity.id] = entity
            elif isinstance(entity, Collection):
                self.collections[entity.id] = entity
            elif isinstance(entity, Document):
                self.documents[entity.id] = entity
            elif isinstance(entity, Group):
                self.groups[entity.id] = entity
            elif isinstance(entity, GroupUser):
                self.group_user_rows.append(entity)
            elif isinstance(entity, UserMembership):
                self.user_memberships[entity.id] = entity
            elif isinstance(entity, GroupMembership):
                self.group_membership_rows[entity.id] = entity
            elif isinstance(entity, Comment):
                self.comments[entity.id] = entity
            elif isinstance(entity, Pin):
                self.pins[entity.id] = entity
            elif isinstance(entity, Star):
                self.stars[entity.id] = entity
            elif isinstance(entity, FileOperation):
                self.file_operations[entity.id] = entity
            elif isinstance(entity, InAppNotification):
                self.notifications[entity.id] = entity
            else:
                raise TypeError(f"Unsupported entity: {type(entity).__name__}")

    def remove_group_user(self, group_id: uuid.UUID, user_id: uuid.UUID) -> None:
        self.group_user_rows = [
            gu for gu in self.group_user_rows
            if not (gu.group_id == group_id and gu.user_id == user_id)
        ]

    def remove_user_membership(self, membership_id: uuid.UUID) -> None:
        self.user_memberships.pop(membership_id, None)

    def remove_group_membership(self, membership_id: uuid.UUID) -> None:
        self.group_membership_rows.pop(membership_id, None)

    # --- EntityStore ---

    async def get_user(self, user_id: uuid.UUID) -> Optional[User]:
        return self.users.get(user_id)

    async def get_team(self, team_id: uuid.UUID) -> Optional[Team]:
        return self.teams.get(team_id)

    async def get_collection(
        self, collection_id: uuid.UUID, include_deleted: bool = False
    ) -> Optional[Collection]:
        collection = self.collections.get(collection_id)
        if collection and collection.deleted_at and not include_deleted:
            return None
        return collection

    async def get_document(
        self, document_id: uuid.UUID, include_deleted: bool = False
    ) -> Optional[Document]:
        document = self.documents.get(document_id)
        if document and document.deleted_at and not include_deleted:
            return None
        return document

    async def get_group(
        self, group_id: uuid.UUID, include_deleted: bool = False
    ) -> Optional[Group]:
        group = self.groups.get(group_id)
        if group and group.deleted_at and not include_deleted:
            return None
        return group

    async def get_comment(
        self, comment_id: uuid.UUID, include_deleted: bool = False
    ) -> Optional[Comment]:
        return self.comments.get(comment_id)

    async def get_pin(self, pin_id: uuid.UUID) -> Optional[Pin]:
        return self.pins.get(pin_id)

    async def get_star(self, star_id: uuid.UUID) -> Optional[Star]:
        return self.stars.get(star_id)

    async def get_file_operation(self, file_operation_id: uuid.UUID) -> Optional[FileOperation]:
        return self.file_operations.get(file_operation_id)

    async def get_notification(self, notification_id: uuid.UUID) -> Optional[InAppNotification]:
        return self.notifications.get(notification_id)

    async def get_user_membership(self, membership_id: uuid.UUID) -> Optional[UserMembership]:
        return self.user_memberships.get(membership_id)

    async def get_group_membership(self, membership_id: uuid.UUID) -> Optional[GroupMembership]:
        return self.group_membership_rows.get(membership_id)

    async def get_group_user(self, group_id: uuid.UUID, user_id: uuid.UUID) -> Optional[GroupUser]:
        for gu in self.group_user_rows:
            if gu.group_id == group_id and gu.user_id == user_id:
                return gu
        return None

    async def list_documents(self, document_ids: Iterable[uuid.UUID]) -> list[Document]:
        return [self.documents[d] for d in document_ids if d in self.documents]

    async def document_memberships(self, document_id: uuid.UUID) -> list[UserMembership]:
        return [m for m in self.user_memberships.values() if m.document_id == document_id]

    async def collection_memberships(self, collection_id: uuid.UUID) -> list[UserMembership]:
        return [m for m in self.user_memberships.values() if m.collection_id == collection_id]

    async def collection_group_memberships(self, collection_id: uuid.UUID) -> list[GroupMembership]:
        return [
            m for m in self.group_membership_rows.values()
            if m.collection_id == collection_id
        ]

    async def group_memberships(self, group_id: uuid.UUID) -> list[GroupMembership]:
        return [m for m in self.group_membership_rows.values() if m.group_id == group_id]

    async def group_users(self, group_id: uuid.UUID) -> list[GroupUser]:
        return [gu for gu in self.group_user_rows if gu.group_id == group_id]

    async def user_group_ids(self, user_id: uuid.UUID) -> list[uuid.UUID]:
        return [
            gu.group_id for gu in self.group_user_rows
            if gu.user_id == user_id and gu.group_id in self.groups
            and self.groups[gu.group_id].deleted_at is None
        ]

    async def team_collections(self, team_id: uuid.UUID) -> list[Collection]:
        return [
            c for c in self.collections.values()
            if c.team_id == team_id and c.deleted_at is None
        ]


class InMemoryViewStore:
    """Dictionary-backed ViewStore."""

    def __init__(self) -> None:
        self._views: dict[tuple[uuid.UUID, uuid.UUID], View] = {}

    def set(self, user_id: uuid.UUID, document_id: uuid.UUID, at: datetime) -> None:
        self._views[(user_id, document_id)] = View(
            user_id=user_id, document_id=document_id, updated_at=at
        )

    async def last_viewed_at(
        self, user_id: uuid.UUID, document_id: uuid.UUID
    ) -> Optional[datetime]:
        view = self._views.get((user_id, document_id))
        return view.updated_at if view else None

    async def touch(
        self, user_id: uuid.UUID, document_id: uuid.UUID, is_editing: bool = False
    ) -> None:
        now = datetime.now(timezone.utc)
        view = self._views.get((user_id, document_id))
        if view is None:
            view = View(user_id=user_id, document_id=document_id, count=0, updated_at=now)
        self._views[(user_id, document_id)] = view.model_copy(
            update={
                "count": view.count + 1,
                "updated_at": now,
                "last_editing_at": now if is_editing else view.last_editing_at,
            }
        )
