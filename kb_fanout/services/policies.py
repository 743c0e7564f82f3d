"""
Access policy evaluated against live entity-store state.

Implements the PermissionOracle protocol. Every call re-reads memberships;
results are never cached because grants may change between an event being
emitted and its delivery.
"""

from __future__ import annotations

import uuid
from typing import Optional

from kb_fanout.schemas.entities import (
    Collection,
    Document,
    Group,
    MembershipPermission,
    Team,
    User,
)
from kb_fanout.services.interfaces import Entity, EntityStore

_READ_PERMISSIONS = {
    MembershipPermission.READ,
    MembershipPermission.READ_WRITE,
    MembershipPermission.ADMIN,
}


def _team_id(entity: Entity) -> uuid.UUID:
    return entity.id if isinstance(entity, Team) else entity.team_id


class PolicyOracle:
    """PermissionOracle backed by an EntityStore."""

    def __init__(self, entities: EntityStore) -> None:
        self._entities = entities

    async def can_read(self, user: User, entity: Optional[Entity]) -> bool:
        if entity is None or user.team_id != _team_id(entity):
            return False
        if isinstance(entity, Collection):
            return await self._can_read_collection(user, entity)
        if isinstance(entity, Document):
            return await self._can_read_document(user, entity)
        if isinstance(entity, Group):
            return entity.deleted_at is None
        if isinstance(entity, Team):
            return True
        return False

    async def can_manage(self, user: User, entity: Optional[Entity]) -> bool:
        if entity is None or user.team_id != _team_id(entity) or user.is_suspended:
            return False
        if user.is_admin:
            return True
        if isinstance(entity, Collection):
            permissions = await self._collection_permissions(user, entity)
            return MembershipPermission.ADMIN in permissions
        if isinstance(entity, Document):
            for membership in await self._entities.document_memberships(entity.id):
                if membership.user_id == user.id and membership.permission == MembershipPermission.ADMIN:
                    return True
            if entity.collection_id is None:
                return entity.created_by_id == user.id
            collection = await self._entities.get_collection(entity.collection_id)
            return await self.can_manage(user, collection)
        return False

    async def can_subscribe(self, user: User, document: Optional[Document]) -> bool:
        if document is None or user.is_suspended:
            return False
        return await self.can_read(user, document)

    async def collection_ids(self, user: User) -> list[uuid.UUID]:
        """Ids of every collection in the user's team they can read right now."""
        ids = []
        for collection in await self._entities.team_collections(user.team_id):
            if await self._can_read_collection(user, collection):
                ids.append(collection.id)
        return ids

    # --- Helpers ---

    async def _can_read_collection(self, user: User, collection: Collection) -> bool:
        if collection.deleted_at is not None:
            return False
        if not collection.is_private:
            return True
        permissions = await self._collection_permissions(user, collection)
        return bool(permissions & _READ_PERMISSIONS)

    async def _collection_permissions(
        self, user: User, collection: Collection
    ) -> set[MembershipPermission]:
        """Union of direct and group grants the user holds on a collection."""
        permissions: set[MembershipPermission] = set()
        for membership in await self._entities.collection_memberships(collection.id):
            if membership.user_id == user.id:
                permissions.add(membership.permission)

        group_ids = set(await self._entities.user_group_ids(user.id))
        if group_ids:
            for membership in await self._entities.collection_group_memberships(collection.id):
                if membership.group_id in group_ids:
                    permissions.add(membership.permission)
        return permissions

    async def _can_read_document(self, user: User, document: Document) -> bool:
        if document.deleted_at is not None:
            return False

        # Direct grants are not implied by collection access, check them first
        for membership in await self._entities.document_memberships(document.id):
            if membership.user_id == user.id and membership.permission in _READ_PERMISSIONS:
                return True

        if document.collection_id is None:
            return document.created_by_id == user.id

        # Unpublished drafts are private to the people writing them
        if not document.is_published and user.id != document.created_by_id \
                and user.id not in document.collaborator_ids:
            return False

        collection = await self._entities.get_collection(document.collection_id)
        if collection is None:
            return False
        return await self._can_read_collection(user, collection)
