"""
Collaborator interfaces consumed by the fan-out subsystem.

The storage layer, permission rules, view tracking, mail delivery and the
realtime transport all live elsewhere; processors only see these protocols
so tests can substitute deterministic fakes.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Iterable, Optional, Protocol, Union

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
)

Entity = Union[Collection, Document, Group, Team]


class EntityStore(Protocol):
    """Point lookups by id. Missing (soft or hard deleted) rows return None."""

    async def get_user(self, user_id: uuid.UUID) -> Optional[User]: ...

    async def get_team(self, team_id: uuid.UUID) -> Optional[Team]: ...

    async def get_collection(
        self, collection_id: uuid.UUID, include_deleted: bool = False
    ) -> Optional[Collection]: ...

    async def get_document(
        self, document_id: uuid.UUID, include_deleted: bool = False
    ) -> Optional[Document]: ...

    async def get_group(
        self, group_id: uuid.UUID, include_deleted: bool = False
    ) -> Optional[Group]: ...

    async def get_comment(
        self, comment_id: uuid.UUID, include_deleted: bool = False
    ) -> Optional[Comment]: ...

    async def get_pin(self, pin_id: uuid.UUID) -> Optional[Pin]: ...

    async def get_star(self, star_id: uuid.UUID) -> Optional[Star]: ...

    async def get_file_operation(self, file_operation_id: uuid.UUID) -> Optional[FileOperation]: ...

    async def get_notification(self, notification_id: uuid.UUID) -> Optional[InAppNotification]: ...

    async def get_user_membership(self, membership_id: uuid.UUID) -> Optional[UserMembership]: ...

    async def get_group_membership(self, membership_id: uuid.UUID) -> Optional[GroupMembership]: ...

    async def get_group_user(self, group_id: uuid.UUID, user_id: uuid.UUID) -> Optional[GroupUser]: ...

    async def list_documents(self, document_ids: Iterable[uuid.UUID]) -> list[Document]: ...

    async def document_memberships(self, document_id: uuid.UUID) -> list[UserMembership]: ...

    async def collection_memberships(self, collection_id: uuid.UUID) -> list[UserMembership]: ...

    async def collection_group_memberships(self, collection_id: uuid.UUID) -> list[GroupMembership]: ...

    async def group_memberships(self, group_id: uuid.UUID) -> list[GroupMembership]: ...

    async def group_users(self, group_id: uuid.UUID) -> list[GroupUser]: ...

    async def user_group_ids(self, user_id: uuid.UUID) -> list[uuid.UUID]: ...

    async def team_collections(self, team_id: uuid.UUID) -> list[Collection]: ...


class PermissionOracle(Protocol):
    """Answers access questions against grants as they are right now."""

    async def can_read(self, user: User, entity: Optional[Entity]) -> bool: ...

    async def can_manage(self, user: User, entity: Optional[Entity]) -> bool: ...

    async def can_subscribe(self, user: User, document: Optional[Document]) -> bool: ...

    async def collection_ids(self, user: User) -> list[uuid.UUID]: ...


class ViewStore(Protocol):
    """Read-state: when did a user last view a document."""

    async def last_viewed_at(
        self, user_id: uuid.UUID, document_id: uuid.UUID
    ) -> Optional[datetime]: ...

    async def touch(
        self, user_id: uuid.UUID, document_id: uuid.UUID, is_editing: bool = False
    ) -> None: ...


class Mailer(Protocol):
    """Fire-and-forget hand-off to the mail delivery worker."""

    async def schedule(self, template: str, to: str, data: dict[str, Any]) -> None: ...


class ConnectionRegistry(Protocol):
    """Realtime transport primitives: channel broadcast and membership."""

    async def broadcast(self, channels: list[str], message: dict[str, Any]) -> None: ...

    async def send_to_user(self, user_id: uuid.UUID, message: dict[str, Any]) -> None: ...

    async def join(self, user_id: uuid.UUID, channel: str) -> None: ...

    async def leave(self, user_id: uuid.UUID, channel: str) -> None: ...

    async def join_channel_members(self, channel: str, new_channel: str) -> None: ...

    async def leave_channel_members(self, channel: str, old_channel: str) -> None: ...
