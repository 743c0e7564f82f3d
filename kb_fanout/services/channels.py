"""
Channel topology: which realtime channels hear about an event.

For each event kind the resolver produces a FanoutPlan, an ordered list of
broadcasts (payload + channels) and join/leave control instructions.
Membership is re-derived from the entity store and permission oracle on
every call. Anything that has vanished yields an empty plan, never an
error, so events racing a deletion cannot take the dispatcher down.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

import structlog

from kb_fanout.core.errors import NotFound
from kb_fanout.models.subscription import Subscription
from kb_fanout.schemas.entities import Document
from kb_fanout.schemas.events import ControlAction, EventName, EventRecord
from kb_fanout.services import presenters
from kb_fanout.services.interfaces import EntityStore, PermissionOracle

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Channel names
# ---------------------------------------------------------------------------


def user_channel(user_id: uuid.UUID) -> str:
    return f"user-{user_id}"


def team_channel(team_id: uuid.UUID) -> str:
    return f"team-{team_id}"


def collection_channel(collection_id: uuid.UUID) -> str:
    return f"collection-{collection_id}"


def document_channel(document_id: uuid.UUID) -> str:
    return f"document-{document_id}"


def group_channel(group_id: uuid.UUID) -> str:
    return f"group-{group_id}"


def unique(channels: Iterable[str]) -> tuple[str, ...]:
    """De-duplicate while keeping first-seen order."""
    return tuple(dict.fromkeys(channels))


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Broadcast:
    channels: tuple[str, ...]
    name: str
    payload: dict[str, Any]


@dataclass(frozen=True)
class Control:
    """Tell connections to start or stop listening to `channel`.

    Exactly one of `user_id` (all of that user's connections) or
    `target_channel` (every connection currently on that channel) is set.
    """

    action: ControlAction
    channel: str
    event: str
    user_id: Optional[uuid.UUID] = None
    target_channel: Optional[str] = None

    def __post_init__(self) -> None:
        if (self.user_id is None) == (self.target_channel is None):
            raise ValueError("control needs exactly one of user_id or target_channel")

    @property
    def message(self) -> dict[str, Any]:
        return {"type": self.action.value, "channel": self.channel, "event": self.event}


@dataclass
class FanoutPlan:
    steps: list[Union[Broadcast, Control]] = field(default_factory=list)

    def broadcast(self, channels: Iterable[str], name: str, payload: dict[str, Any]) -> None:
        channels = unique(channels)
        if channels:
            self.steps.append(Broadcast(channels, name, payload))

    def join(
        self,
        channel: str,
        event: str,
        *,
        user_id: Optional[uuid.UUID] = None,
        target_channel: Optional[str] = None,
    ) -> None:
        self.steps.append(
            Control(ControlAction.JOIN, channel, event, user_id=user_id, target_channel=target_channel)
        )

    def leave(
        self,
        channel: str,
        event: str,
        *,
        user_id: Optional[uuid.UUID] = None,
        target_channel: Optional[str] = None,
    ) -> None:
        self.steps.append(
            Control(ControlAction.LEAVE, channel, event, user_id=user_id, target_channel=target_channel)
        )

    @property
    def broadcasts(self) -> list[Broadcast]:
        return [s for s in self.steps if isinstance(s, Broadcast)]

    @property
    def controls(self) -> list[Control]:
        return [s for s in self.steps if isinstance(s, Control)]

    @property
    def topics(self) -> tuple[str, ...]:
        return unique(c for b in self.broadcasts for c in b.channels)

    def __bool__(self) -> bool:
        return bool(self.steps)


# ---------------------------------------------------------------------------
# Handler registry
# ---------------------------------------------------------------------------

Handler = Callable[["ChannelTopologyResolver", EventRecord], Awaitable[FanoutPlan]]
SubscriptionLookup = Callable[[uuid.UUID], Awaitable[Optional[Subscription]]]


def handles(*names: EventName):
    def decorator(func):
        func._handles = names
        return func
    return decorator


def _register_handlers(cls):
    """Map every EventName to exactly one handler; fail loudly on gaps."""
    handlers: dict[EventName, Handler] = {}
    for attr in vars(cls).values():
        for name in getattr(attr, "_handles", ()):
            if name in handlers:
                raise RuntimeError(f"Duplicate fan-out handler for {name.value}")
            handlers[name] = attr

    missing = sorted(n.value for n in set(EventName) - set(handlers))
    if missing:
        raise RuntimeError(f"No fan-out handler for event kinds: {', '.join(missing)}")

    cls._handlers = handlers
    return cls


def _require(entity, kind: str, entity_id):
    if entity is None:
        raise NotFound(kind, entity_id)
    return entity


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


@_register_handlers
class ChannelTopologyResolver:
    """Maps an event and the entities it references to a FanoutPlan."""

    _handlers: dict[EventName, Handler]

    def __init__(
        self,
        entities: EntityStore,
        permissions: PermissionOracle,
        subscription_lookup: Optional[SubscriptionLookup] = None,
    ) -> None:
        self._entities = entities
        self._permissions = permissions
        self._subscription_lookup = subscription_lookup

    async def resolve(self, event: EventRecord) -> FanoutPlan:
        handler = self._handlers[event.name]
        try:
            return await handler(self, event)
        except NotFound as exc:
            log.info(
                "channels.entity_missing",
                event_name=event.name.value,
                event_id=str(event.id),
                kind=exc.kind,
                entity_id=str(exc.entity_id),
            )
            return FanoutPlan()

    async def topics_for(self, event: EventRecord) -> tuple[str, ...]:
        """Ordered, de-duplicated channel set an event is broadcast to."""
        return (await self.resolve(event)).topics

    async def document_channels(self, event: EventRecord, document: Document) -> list[str]:
        """Actor echo, the collection if published, plus direct members."""
        channels = []
        if event.actor_id:
            channels.append(user_channel(event.actor_id))
        if document.is_published and document.collection_id:
            channels.append(collection_channel(document.collection_id))
        for membership in await self._entities.document_memberships(document.id):
            channels.append(user_channel(membership.user_id))
        return list(unique(channels))

    async def _lost_read(self, user_id: uuid.UUID, collection_id: uuid.UUID) -> bool:
        """True if the user can no longer read the collection by any path."""
        user = await self._entities.get_user(user_id)
        if user is None:
            return False
        collection = await self._entities.get_collection(collection_id)
        return not await self._permissions.can_read(user, collection)

    # --- Documents ---

    @handles(
        EventName.DOCUMENTS_CREATE,
        EventName.DOCUMENTS_PUBLISH,
        EventName.DOCUMENTS_UNPUBLISH,
        EventName.DOCUMENTS_RESTORE,
        EventName.DOCUMENTS_UNARCHIVE,
    )
    async def _document_entities(self, event: EventRecord) -> FanoutPlan:
        plan = FanoutPlan()
        document = _require(
            await self._entities.get_document(event.document_id, include_deleted=True),
            "document", event.document_id,
        )
        # Bulk imports announce themselves once the import finishes
        if event.name == EventName.DOCUMENTS_CREATE and document.import_id:
            return plan

        channels = await self.document_channels(event, document)
        plan.broadcast(channels, "entities", {
            "event": event.name.value,
            "fetchIfMissing": True,
            "documentIds": [{"id": str(document.id), "updatedAt": document.updated_at.isoformat()}],
            "collectionIds": [{"id": str(document.collection_id)}] if document.collection_id else [],
        })
        return plan

    @handles(
        EventName.DOCUMENTS_UPDATE,
        EventName.DOCUMENTS_ARCHIVE,
        EventName.DOCUMENTS_DELETE,
        EventName.REVISIONS_CREATE,
    )
    async def _document_changed(self, event: EventRecord) -> FanoutPlan:
        plan = FanoutPlan()
        document = _require(
            await self._entities.get_document(event.document_id, include_deleted=True),
            "document", event.document_id,
        )
        channels = await self.document_channels(event, document)
        plan.broadcast(channels, event.name.value, presenters.present_document(document))
        return plan

    @handles(EventName.DOCUMENTS_PERMANENT_DELETE)
    async def _document_permanently_deleted(self, event: EventRecord) -> FanoutPlan:
        # The row is gone; only the containing collection holds state to drop
        plan = FanoutPlan()
        if event.collection_id:
            plan.broadcast(
                [collection_channel(event.collection_id)],
                event.name.value,
                {"modelId": str(event.document_id)},
            )
        return plan

    @handles(EventName.DOCUMENTS_MOVE)
    async def _documents_moved(self, event: EventRecord) -> FanoutPlan:
        plan = FanoutPlan()
        document_ids = [uuid.UUID(str(d)) for d in event.data.get("documentIds", [])]
        for document in await self._entities.list_documents(document_ids):
            if not document.collection_id:
                continue
            plan.broadcast([collection_channel(document.collection_id)], "entities", {
                "event": event.name.value,
                "documentIds": [{"id": str(document.id), "updatedAt": document.updated_at.isoformat()}],
            })
        for collection_id in event.data.get("collectionIds", []):
            plan.broadcast([collection_channel(collection_id)], "entities", {
                "event": event.name.value,
                "collectionIds": [{"id": str(collection_id)}],
            })
        return plan

    @handles(EventName.DOCUMENTS_ADD_USER)
    async def _document_user_added(self, event: EventRecord) -> FanoutPlan:
        plan = FanoutPlan()
        document = _require(await self._entities.get_document(event.document_id), "document", event.document_id)
        membership = _require(
            await self._entities.get_user_membership(event.model_id), "membership", event.model_id
        )
        # The new member's channel is included because their grant is direct
        channels = await self.document_channels(event, document)
        plan.broadcast(channels, event.name.value, presenters.present_membership(membership))
        return plan

    @handles(EventName.DOCUMENTS_REMOVE_USER)
    async def _document_user_removed(self, event: EventRecord) -> FanoutPlan:
        plan = FanoutPlan()
        document = _require(await self._entities.get_document(event.document_id), "document", event.document_id)
        channels = await self.document_channels(event, document)
        if event.user_id:
            channels.append(user_channel(event.user_id))
        plan.broadcast(channels, event.name.value, {
            "id": str(event.model_id) if event.model_id else None,
            "userId": str(event.user_id) if event.user_id else None,
            "documentId": str(event.document_id),
        })
        return plan

    # --- Collections ---

    @handles(EventName.COLLECTIONS_CREATE)
    async def _collection_created(self, event: EventRecord) -> FanoutPlan:
        plan = FanoutPlan()
        collection = _require(
            await self._entities.get_collection(event.collection_id, include_deleted=True),
            "collection", event.collection_id,
        )
        channel = collection_channel(collection.id)
        payload = presenters.present_collection(collection)

        if collection.is_private:
            # Nobody else can see it yet: only the creator's clients hear about it
            plan.broadcast([user_channel(collection.created_by_id)], event.name.value, payload)
            plan.join(channel, event.name.value, user_id=collection.created_by_id)
        else:
            team = team_channel(collection.team_id)
            plan.broadcast([team], event.name.value, payload)
            plan.join(channel, event.name.value, target_channel=team)
        return plan

    @handles(EventName.COLLECTIONS_UPDATE, EventName.COLLECTIONS_DELETE)
    async def _collection_changed(self, event: EventRecord) -> FanoutPlan:
        plan = FanoutPlan()
        collection = _require(
            await self._entities.get_collection(event.collection_id, include_deleted=True),
            "collection", event.collection_id,
        )
        channel = (
            collection_channel(collection.id)
            if not collection.is_private
            else team_channel(collection.team_id)
        )
        if event.name == EventName.COLLECTIONS_DELETE:
            payload = {"modelId": str(collection.id)}
        else:
            payload = presenters.present_collection(collection)
        plan.broadcast([channel], event.name.value, payload)
        return plan

    @handles(EventName.COLLECTIONS_MOVE)
    async def _collection_moved(self, event: EventRecord) -> FanoutPlan:
        plan = FanoutPlan()
        plan.broadcast([collection_channel(event.collection_id)], "collections.update_index", {
            "collectionId": str(event.collection_id),
            "index": event.data.get("index"),
        })
        return plan

    @handles(EventName.COLLECTIONS_ADD_USER)
    async def _collection_user_added(self, event: EventRecord) -> FanoutPlan:
        plan = FanoutPlan()
        membership = _require(
            await self._entities.get_user_membership(event.model_id), "membership", event.model_id
        )
        payload = presenters.present_membership(membership)
        # The added user is not on the collection channel yet
        plan.broadcast([user_channel(membership.user_id)], event.name.value, payload)
        plan.broadcast([collection_channel(membership.collection_id)], event.name.value, payload)
        plan.join(collection_channel(membership.collection_id), event.name.value, user_id=membership.user_id)
        return plan

    @handles(EventName.COLLECTIONS_REMOVE_USER)
    async def _collection_user_removed(self, event: EventRecord) -> FanoutPlan:
        plan = FanoutPlan()
        user = _require(await self._entities.get_user(event.user_id), "user", event.user_id)
        channel = collection_channel(event.collection_id)
        plan.broadcast([channel], event.name.value, {
            "userId": str(event.user_id),
            "collectionId": str(event.collection_id),
            "id": str(event.model_id) if event.model_id else None,
        })

        collection = await self._entities.get_collection(event.collection_id)
        if not await self._permissions.can_read(user, collection):
            plan.leave(channel, event.name.value, user_id=user.id)
        return plan

    @handles(EventName.COLLECTIONS_ADD_GROUP)
    async def _collection_group_added(self, event: EventRecord) -> FanoutPlan:
        plan = FanoutPlan()
        membership_id = event.data.get("membershipId") or event.model_id
        membership = _require(
            await self._entities.get_group_membership(uuid.UUID(str(membership_id))),
            "group_membership", membership_id,
        )
        payload = presenters.present_group_membership(membership)
        group = group_channel(membership.group_id)
        plan.broadcast([group], event.name.value, payload)
        plan.broadcast([collection_channel(membership.collection_id)], event.name.value, payload)
        plan.join(collection_channel(membership.collection_id), event.name.value, target_channel=group)
        return plan

    @handles(EventName.COLLECTIONS_REMOVE_GROUP)
    async def _collection_group_removed(self, event: EventRecord) -> FanoutPlan:
        plan = FanoutPlan()
        group_id = event.group_id or event.model_id
        channel = collection_channel(event.collection_id)
        # Everyone with access hears it, including members of the group itself
        plan.broadcast([channel], event.name.value, {
            "groupId": str(group_id),
            "collectionId": str(event.collection_id),
            "id": event.data.get("membershipId"),
        })

        for group_user in await self._entities.group_users(group_id):
            if await self._lost_read(group_user.user_id, event.collection_id):
                plan.leave(channel, event.name.value, user_id=group_user.user_id)
        return plan

    # --- Groups ---

    @handles(EventName.GROUPS_CREATE, EventName.GROUPS_UPDATE)
    async def _group_changed(self, event: EventRecord) -> FanoutPlan:
        plan = FanoutPlan()
        group_id = event.group_id or event.model_id
        group = _require(await self._entities.get_group(group_id, include_deleted=True), "group", group_id)
        members = await self._entities.group_users(group.id)
        plan.broadcast(
            [team_channel(group.team_id)],
            event.name.value,
            presenters.present_group(group, member_count=len(members)),
        )
        return plan

    @handles(EventName.GROUPS_ADD_USER)
    async def _group_user_added(self, event: EventRecord) -> FanoutPlan:
        plan = FanoutPlan()
        group_id = event.group_id or event.model_id
        group_user = _require(
            await self._entities.get_group_user(group_id, event.user_id), "group_user", event.user_id
        )
        user = user_channel(event.user_id)
        plan.broadcast([team_channel(event.team_id)], event.name.value, presenters.present_group_user(group_user))
        plan.join(group_channel(group_id), event.name.value, user_id=event.user_id)

        for membership in await self._entities.group_memberships(group_id):
            if not membership.collection_id:
                continue
            plan.broadcast(
                [user],
                EventName.COLLECTIONS_ADD_GROUP.value,
                presenters.present_group_membership(membership),
            )
            plan.join(collection_channel(membership.collection_id), event.name.value, user_id=event.user_id)
        return plan

    @handles(EventName.GROUPS_REMOVE_USER)
    async def _group_user_removed(self, event: EventRecord) -> FanoutPlan:
        plan = FanoutPlan()
        group_id = event.group_id or event.model_id
        plan.broadcast([team_channel(event.team_id)], event.name.value, {
            "event": event.name.value,
            "userId": str(event.user_id),
            "groupId": str(group_id),
        })
        plan.leave(group_channel(group_id), event.name.value, user_id=event.user_id)

        if await self._entities.get_user(event.user_id) is None:
            return plan

        for membership in await self._entities.group_memberships(group_id):
            if not membership.collection_id:
                continue
            plan.broadcast(
                [user_channel(event.user_id)],
                EventName.COLLECTIONS_REMOVE_GROUP.value,
                presenters.present_group_membership(membership),
            )
            # Direct membership or another group may still grant access
            if await self._lost_read(event.user_id, membership.collection_id):
                plan.leave(
                    collection_channel(membership.collection_id),
                    event.name.value,
                    user_id=event.user_id,
                )
        return plan

    @handles(EventName.GROUPS_DELETE)
    async def _group_deleted(self, event: EventRecord) -> FanoutPlan:
        plan = FanoutPlan()
        group_id = event.group_id or event.model_id
        plan.broadcast([team_channel(event.team_id)], event.name.value, {"modelId": str(group_id)})
        plan.leave(group_channel(group_id), event.name.value, target_channel=group_channel(group_id))

        memberships = [
            m for m in await self._entities.group_memberships(group_id) if m.collection_id
        ]
        group_users = await self._entities.group_users(group_id)
        for membership in memberships:
            payload = presenters.present_group_membership(membership)
            for group_user in group_users:
                plan.broadcast(
                    [user_channel(group_user.user_id)],
                    EventName.COLLECTIONS_REMOVE_GROUP.value,
                    payload,
                )
                if await self._lost_read(group_user.user_id, membership.collection_id):
                    plan.leave(
                        collection_channel(membership.collection_id),
                        event.name.value,
                        user_id=group_user.user_id,
                    )
        return plan

    # --- Comments ---

    @handles(EventName.COMMENTS_CREATE, EventName.COMMENTS_UPDATE, EventName.COMMENTS_DELETE)
    async def _comment_changed(self, event: EventRecord) -> FanoutPlan:
        plan = FanoutPlan()
        include_deleted = event.name == EventName.COMMENTS_DELETE
        comment = _require(
            await self._entities.get_comment(event.model_id, include_deleted=include_deleted),
            "comment", event.model_id,
        )
        document = _require(
            await self._entities.get_document(comment.document_id, include_deleted=True),
            "document", comment.document_id,
        )
        channels = await self.document_channels(event, document)
        if include_deleted:
            payload = {"modelId": str(event.model_id)}
        else:
            payload = presenters.present_comment(comment)
        plan.broadcast(channels, event.name.value, payload)
        return plan

    # --- Pins, stars ---

    @handles(EventName.PINS_CREATE, EventName.PINS_UPDATE)
    async def _pin_changed(self, event: EventRecord) -> FanoutPlan:
        plan = FanoutPlan()
        pin = _require(await self._entities.get_pin(event.model_id), "pin", event.model_id)
        channel = collection_channel(pin.collection_id) if pin.collection_id else team_channel(pin.team_id)
        plan.broadcast([channel], event.name.value, presenters.present_pin(pin))
        return plan

    @handles(EventName.PINS_DELETE)
    async def _pin_deleted(self, event: EventRecord) -> FanoutPlan:
        plan = FanoutPlan()
        channel = (
            collection_channel(event.collection_id)
            if event.collection_id
            else team_channel(event.team_id)
        )
        plan.broadcast([channel], event.name.value, {"modelId": str(event.model_id)})
        return plan

    @handles(EventName.STARS_CREATE, EventName.STARS_UPDATE)
    async def _star_changed(self, event: EventRecord) -> FanoutPlan:
        plan = FanoutPlan()
        star = _require(await self._entities.get_star(event.model_id), "star", event.model_id)
        plan.broadcast([user_channel(star.user_id)], event.name.value, presenters.present_star(star))
        return plan

    @handles(EventName.STARS_DELETE)
    async def _star_deleted(self, event: EventRecord) -> FanoutPlan:
        plan = FanoutPlan()
        plan.broadcast([user_channel(event.user_id)], event.name.value, {"modelId": str(event.model_id)})
        return plan

    # --- Subscriptions, notifications, file operations ---

    @handles(EventName.SUBSCRIPTIONS_CREATE)
    async def _subscription_created(self, event: EventRecord) -> FanoutPlan:
        plan = FanoutPlan()
        subscription = None
        if self._subscription_lookup is not None:
            subscription = await self._subscription_lookup(event.model_id)
        subscription = _require(subscription, "subscription", event.model_id)
        plan.broadcast(
            [user_channel(subscription.user_id)],
            event.name.value,
            presenters.present_subscription(subscription),
        )
        return plan

    @handles(EventName.SUBSCRIPTIONS_DELETE)
    async def _subscription_deleted(self, event: EventRecord) -> FanoutPlan:
        plan = FanoutPlan()
        plan.broadcast([user_channel(event.user_id)], event.name.value, {"modelId": str(event.model_id)})
        return plan

    @handles(EventName.NOTIFICATIONS_CREATE, EventName.NOTIFICATIONS_UPDATE)
    async def _notification_changed(self, event: EventRecord) -> FanoutPlan:
        plan = FanoutPlan()
        notification = _require(
            await self._entities.get_notification(event.model_id), "notification", event.model_id
        )
        plan.broadcast(
            [user_channel(notification.user_id)],
            event.name.value,
            presenters.present_notification(notification),
        )
        return plan

    @handles(EventName.FILE_OPERATIONS_CREATE, EventName.FILE_OPERATIONS_UPDATE)
    async def _file_operation_changed(self, event: EventRecord) -> FanoutPlan:
        plan = FanoutPlan()
        file_operation = _require(
            await self._entities.get_file_operation(event.model_id), "file_operation", event.model_id
        )
        plan.broadcast(
            [user_channel(event.actor_id or file_operation.user_id)],
            event.name.value,
            presenters.present_file_operation(file_operation),
        )
        return plan

    # --- Teams, users ---

    @handles(EventName.TEAMS_UPDATE)
    async def _team_updated(self, event: EventRecord) -> FanoutPlan:
        plan = FanoutPlan()
        team = _require(await self._entities.get_team(event.team_id), "team", event.team_id)
        plan.broadcast([team_channel(team.id)], event.name.value, presenters.present_team(team))
        return plan

    @handles(EventName.USERS_UPDATE)
    async def _user_updated(self, event: EventRecord) -> FanoutPlan:
        plan = FanoutPlan()
        user = _require(await self._entities.get_user(event.user_id), "user", event.user_id)
        plan.broadcast(
            [user_channel(user.id)],
            event.name.value,
            presenters.present_user(user, include_details=True),
        )
        plan.broadcast([team_channel(user.team_id)], event.name.value, presenters.present_user(user))
        return plan

    @handles(EventName.USERS_DEMOTE)
    async def _user_demoted(self, event: EventRecord) -> FanoutPlan:
        plan = FanoutPlan()
        plan.broadcast([user_channel(event.user_id)], event.name.value, {"id": str(event.user_id)})
        return plan

    @handles(EventName.USER_MEMBERSHIPS_UPDATE)
    async def _user_membership_updated(self, event: EventRecord) -> FanoutPlan:
        plan = FanoutPlan()
        plan.broadcast(
            [user_channel(event.user_id)],
            event.name.value,
            {"id": str(event.model_id), **event.data},
        )
        return plan
