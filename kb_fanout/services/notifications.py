"""
Notification recipients and email scheduling.

Handles:
- Recipient resolution: opt-in settings, subscription gating for
  update-class events, live access re-check, "already seen" suppression
- Send-record dedup window per (user, document, event)
- documents.publish / revisions.create / collections.create processing
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from kb_fanout.core.config import Settings
from kb_fanout.core.database import session_scope
from kb_fanout.core.errors import DeliveryFailure
from kb_fanout.models.notification import Notification
from kb_fanout.models.notification_setting import NotificationSetting
from kb_fanout.schemas.entities import Collection, Document, User, as_utc
from kb_fanout.schemas.events import EventName, EventRecord
from kb_fanout.services.interfaces import EntityStore, Mailer, PermissionOracle, ViewStore
from kb_fanout.services.subscriptions import SubscriptionService

log = structlog.get_logger()

DOCUMENT_EMAIL_TEMPLATE = "DocumentNotificationEmail"
COLLECTION_EMAIL_TEMPLATE = "CollectionNotificationEmail"


# ---------------------------------------------------------------------------
# Settings and send records
# ---------------------------------------------------------------------------


async def enable_notification(session: AsyncSession, user: User, event: str) -> NotificationSetting:
    """Opt a user in to emails for an event kind. Idempotent."""
    result = await session.execute(
        select(NotificationSetting).where(
            NotificationSetting.user_id == user.id,
            NotificationSetting.event == event,
        )
    )
    setting = result.scalars().first()
    if setting is None:
        setting = NotificationSetting(user_id=user.id, team_id=user.team_id, event=event)
        session.add(setting)
        await session.flush()
    return setting


async def disable_notification(session: AsyncSession, user: User, event: str) -> None:
    result = await session.execute(
        select(NotificationSetting).where(
            NotificationSetting.user_id == user.id,
            NotificationSetting.event == event,
        )
    )
    for setting in result.scalars().all():
        await session.delete(setting)
    await session.flush()


async def settings_for_event(
    session: AsyncSession,
    team_id: uuid.UUID,
    event: str,
    exclude_user_id: Optional[uuid.UUID] = None,
) -> list[NotificationSetting]:
    stmt = select(NotificationSetting).where(
        NotificationSetting.team_id == team_id,
        NotificationSetting.event == event,
    )
    if exclude_user_id is not None:
        stmt = stmt.where(NotificationSetting.user_id != exclude_user_id)
    result = await session.execute(stmt.order_by(NotificationSetting.created_at))
    return list(result.scalars().all())


async def recently_sent(
    session: AsyncSession,
    user_id: uuid.UUID,
    document_id: uuid.UUID,
    event: str,
    window: timedelta,
    now: Optional[datetime] = None,
) -> bool:
    cutoff = (now or datetime.now(timezone.utc)) - window
    result = await session.execute(
        select(Notification.id)
        .where(
            Notification.user_id == user_id,
            Notification.document_id == document_id,
            Notification.event == event,
            Notification.emailed_at > cutoff,
        )
        .limit(1)
    )
    return result.first() is not None


# ---------------------------------------------------------------------------
# Recipient resolution
# ---------------------------------------------------------------------------


@dataclass
class Resolution:
    recipients: list[User] = field(default_factory=list)
    # (user_id, error) for candidates skipped because a lookup failed
    failures: list[tuple[uuid.UUID, Exception]] = field(default_factory=list)


class NotificationRecipientResolver:
    """Computes who should be emailed about a document change."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        entities: EntityStore,
        permissions: PermissionOracle,
        views: ViewStore,
        subscriptions: SubscriptionService,
        gated_events: Iterable[str] = (EventName.DOCUMENTS_UPDATE.value,),
    ) -> None:
        self._session_factory = session_factory
        self._entities = entities
        self._permissions = permissions
        self._views = views
        self._subscriptions = subscriptions
        self._gated_events = set(gated_events)

    async def recipients_for(self, document: Document, event_kind: str) -> list[User]:
        return (await self.resolve(document, event_kind)).recipients

    async def resolve(self, document: Document, event_kind: str) -> Resolution:
        async with self._session_factory() as session:
            settings = await settings_for_event(
                session, document.team_id, event_kind, exclude_user_id=document.last_modified_by_id
            )
        # One candidate per user however many rows upstream produced
        candidate_ids = list(dict.fromkeys(s.user_id for s in settings))

        if event_kind in self._gated_events:
            subscribed = await self._subscriptions.subscribed_user_ids(
                document.id, event_kind, candidate_ids
            )
            candidate_ids = [u for u in candidate_ids if u in subscribed]

        resolution = Resolution()
        if not candidate_ids:
            return resolution

        collection = None
        if document.collection_id is not None:
            collection = await self._entities.get_collection(document.collection_id)

        for user_id in candidate_ids:
            try:
                user = await self._entities.get_user(user_id)
                if user is None:
                    continue
                if await self._should_notify(document, collection, user):
                    resolution.recipients.append(user)
            except Exception as exc:
                log.warning(
                    "notifications.candidate_lookup_failed",
                    user_id=str(user_id),
                    document_id=str(document.id),
                    error=repr(exc),
                )
                resolution.failures.append((user_id, exc))
        return resolution

    async def _should_notify(
        self, document: Document, collection: Optional[Collection], user: User
    ) -> bool:
        # Suspended users and users with no email address
        if user.is_suspended or not user.email:
            return False

        # Being subscribed doesn't mean they can still read the collection
        if not await self._permissions.can_read(user, collection):
            return False

        last_viewed_at = await self._views.last_viewed_at(user.id, document.id)
        # Stores may hand back naive UTC timestamps
        if last_viewed_at is not None and as_utc(last_viewed_at) > as_utc(document.updated_at):
            log.info(
                "notifications.suppressed_viewed",
                user_id=str(user.id),
                document_id=str(document.id),
            )
            return False

        return True


# ---------------------------------------------------------------------------
# Processor
# ---------------------------------------------------------------------------


class NotificationsProcessor:
    """Schedules notification emails for publish, revision and collection events."""

    applicable_events = frozenset({
        EventName.DOCUMENTS_PUBLISH,
        EventName.REVISIONS_CREATE,
        EventName.COLLECTIONS_CREATE,
    })

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        entities: EntityStore,
        subscriptions: SubscriptionService,
        resolver: NotificationRecipientResolver,
        mailer: Mailer,
        settings: Settings,
    ) -> None:
        self._session_factory = session_factory
        self._entities = entities
        self._subscriptions = subscriptions
        self._resolver = resolver
        self._mailer = mailer
        self._settings = settings

    @property
    def dedup_window(self) -> timedelta:
        return timedelta(hours=self._settings.notification_dedup_hours)

    def unsubscribe_url(self, user: User, event_kind: str) -> str:
        return f"{self._settings.public_url}/api/notifications.unsubscribe?userId={user.id}&eventType={event_kind}"

    async def perform(self, event: EventRecord) -> None:
        if event.name in (EventName.DOCUMENTS_PUBLISH, EventName.REVISIONS_CREATE):
            await self.document_updated(event)
        elif event.name == EventName.COLLECTIONS_CREATE:
            await self.collection_created(event)

    async def document_updated(self, event: EventRecord) -> int:
        """Returns the number of emails scheduled."""
        # Never notify while batch importing
        if event.data.get("source") == "import":
            return 0

        document = await self._entities.get_document(event.document_id)
        team = await self._entities.get_team(event.team_id)
        collection = None
        if document is not None and document.collection_id is not None:
            collection = await self._entities.get_collection(document.collection_id)
        if document is None or team is None or collection is None:
            log.info("notifications.entity_missing", event_id=str(event.id), event_name=event.name.value)
            return 0

        await self._subscriptions.ensure_subscriptions(
            document, EventName.DOCUMENTS_UPDATE.value, ip=event.ip
        )

        is_publish = event.name == EventName.DOCUMENTS_PUBLISH
        event_kind = (
            EventName.DOCUMENTS_PUBLISH.value if is_publish else EventName.DOCUMENTS_UPDATE.value
        )
        recipients = await self._resolver.recipients_for(document, event_kind)
        actor = await self._entities.get_user(document.last_modified_by_id)

        scheduled = 0
        for user in recipients:
            async with session_scope(self._session_factory) as session:
                if await recently_sent(session, user.id, document.id, event_kind, self.dedup_window):
                    log.info(
                        "notifications.suppressed_recent",
                        user_id=str(user.id),
                        document_id=str(document.id),
                    )
                    continue

                try:
                    await self._mailer.schedule(
                        DOCUMENT_EMAIL_TEMPLATE,
                        user.email,
                        {
                            "eventName": "published" if is_publish else "updated",
                            "documentId": str(document.id),
                            "teamUrl": team.url,
                            "actorName": actor.name if actor else "",
                            "collectionName": collection.name,
                            "unsubscribeUrl": self.unsubscribe_url(user, event_kind),
                        },
                    )
                except DeliveryFailure as exc:
                    log.error(
                        "notifications.delivery_failed",
                        user_id=str(user.id),
                        document_id=str(document.id),
                        error=str(exc),
                    )
                    continue

                session.add(
                    Notification(
                        actor_id=document.last_modified_by_id,
                        user_id=user.id,
                        team_id=document.team_id,
                        document_id=document.id,
                        collection_id=document.collection_id,
                        event=event_kind,
                    )
                )
                scheduled += 1

        log.info(
            "notifications.document_processed",
            event_name=event.name.value,
            document_id=str(document.id),
            recipients=len(recipients),
            scheduled=scheduled,
        )
        return scheduled

    async def collection_created(self, event: EventRecord) -> int:
        collection = await self._entities.get_collection(event.collection_id)
        # Private collections are invisible to the team, nothing to announce
        if collection is None or collection.is_private:
            return 0

        async with self._session_factory() as session:
            settings = await settings_for_event(
                session,
                collection.team_id,
                EventName.COLLECTIONS_CREATE.value,
                exclude_user_id=collection.created_by_id,
            )

        scheduled = 0
        for user_id in dict.fromkeys(s.user_id for s in settings):
            try:
                user = await self._entities.get_user(user_id)
            except Exception as exc:
                log.warning(
                    "notifications.candidate_lookup_failed",
                    user_id=str(user_id),
                    collection_id=str(collection.id),
                    error=repr(exc),
                )
                continue
            if user is None or user.is_suspended or not user.email:
                continue
            try:
                await self._mailer.schedule(
                    COLLECTION_EMAIL_TEMPLATE,
                    user.email,
                    {
                        "eventName": "created",
                        "collectionId": str(collection.id),
                        "unsubscribeUrl": self.unsubscribe_url(user, EventName.COLLECTIONS_CREATE.value),
                    },
                )
            except DeliveryFailure as exc:
                log.error("notifications.delivery_failed", user_id=str(user.id), error=str(exc))
                continue
            scheduled += 1
        return scheduled
