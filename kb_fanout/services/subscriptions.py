"""
Subscription lifecycle: creation on collaboration, explicit opt-in/out.

Handles:
- Automatic subscriptions for document collaborators (never resubscribing
  someone who opted out)
- Explicit subscribe / resubscribe and soft unsubscribe
- Follow-on subscriptions.create / subscriptions.delete events
"""

from __future__ import annotations

import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Iterable, Optional

import sqlalchemy as sa
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from kb_fanout.core.database import session_scope
from kb_fanout.models.subscription import Subscription
from kb_fanout.schemas.entities import Document, User
from kb_fanout.schemas.events import EventIn, EventName
from kb_fanout.services.interfaces import EntityStore, PermissionOracle

log = structlog.get_logger()

DEFAULT_SUBSCRIPTION_EVENT = EventName.DOCUMENTS_UPDATE.value

Emit = Callable[[EventIn], Awaitable[object]]


def _advisory_key(document_id: uuid.UUID) -> int:
    """Signed 64-bit key for pg_advisory_xact_lock."""
    return (document_id.int & 0xFFFFFFFFFFFFFFFF) - (1 << 63)


async def find_subscription(
    session: AsyncSession,
    user_id: uuid.UUID,
    document_id: uuid.UUID,
    event: str,
    *,
    for_update: bool = False,
) -> Optional[Subscription]:
    """Any row for the tuple, enabled rows first."""
    stmt = (
        select(Subscription)
        .where(
            Subscription.user_id == user_id,
            Subscription.document_id == document_id,
            Subscription.event == event,
        )
        .order_by(Subscription.enabled.desc(), Subscription.created_at)
        .limit(1)
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalars().first()


class SubscriptionService:
    """Creates, disables and re-enables per-user document subscriptions."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        entities: EntityStore,
        permissions: PermissionOracle,
        emit: Optional[Emit] = None,
    ) -> None:
        self._session_factory = session_factory
        self._entities = entities
        self._permissions = permissions
        self._emit = emit
        self._locks: dict[uuid.UUID, asyncio.Lock] = {}
        self._lock_users: dict[uuid.UUID, int] = {}

    def bind_emitter(self, emit: Emit) -> None:
        self._emit = emit

    @asynccontextmanager
    async def _locked_session(self, document_id: uuid.UUID) -> AsyncIterator[AsyncSession]:
        """Transaction that serialises check-then-create for one document.

        The asyncio lock covers this process and is held until commit; the
        advisory lock covers other processes sharing the PostgreSQL database
        and is released by the commit itself.
        """
        lock = self._locks.setdefault(document_id, asyncio.Lock())
        self._lock_users[document_id] = self._lock_users.get(document_id, 0) + 1
        try:
            async with lock:
                async with session_scope(self._session_factory) as session:
                    if session.bind is not None and session.bind.dialect.name == "postgresql":
                        await session.execute(
                            sa.text("SELECT pg_advisory_xact_lock(:key)"),
                            {"key": _advisory_key(document_id)},
                        )
                    yield session
        finally:
            # Drop the entry once no task holds or waits on it
            remaining = self._lock_users[document_id] - 1
            if remaining:
                self._lock_users[document_id] = remaining
            else:
                del self._lock_users[document_id]
                del self._locks[document_id]

    # --- Queries ---

    async def get(self, subscription_id: uuid.UUID) -> Optional[Subscription]:
        async with self._session_factory() as session:
            return await session.get(Subscription, subscription_id)

    async def list_for_document(
        self,
        document_id: uuid.UUID,
        event: str = DEFAULT_SUBSCRIPTION_EVENT,
        enabled_only: bool = True,
    ) -> list[Subscription]:
        async with self._session_factory() as session:
            stmt = select(Subscription).where(
                Subscription.document_id == document_id,
                Subscription.event == event,
            )
            if enabled_only:
                stmt = stmt.where(Subscription.enabled.is_(True))
            result = await session.execute(stmt.order_by(Subscription.created_at))
            return list(result.scalars().all())

    async def subscribed_user_ids(
        self,
        document_id: uuid.UUID,
        event: str,
        user_ids: Iterable[uuid.UUID],
    ) -> set[uuid.UUID]:
        """Which of `user_ids` hold an enabled subscription."""
        user_ids = list(user_ids)
        if not user_ids:
            return set()
        async with self._session_factory() as session:
            result = await session.execute(
                select(Subscription.user_id).where(
                    Subscription.document_id == document_id,
                    Subscription.event == event,
                    Subscription.enabled.is_(True),
                    Subscription.user_id.in_(user_ids),
                )
            )
            return {row[0] for row in result.all()}

    # --- Lifecycle ---

    async def ensure_subscriptions(
        self,
        document: Document,
        event: str = DEFAULT_SUBSCRIPTION_EVENT,
        collaborator_ids: Optional[Iterable[uuid.UUID]] = None,
        *,
        ip: Optional[str] = None,
    ) -> list[Subscription]:
        """Subscribe every collaborator who may subscribe and has no row yet.

        Any existing row, including a disabled one, blocks creation: a user
        who unsubscribed is never silently resubscribed by collaborating.
        """
        created: list[Subscription] = []

        async with self._locked_session(document.id) as session:
            if collaborator_ids is None:
                # Re-read inside the lock so concurrent edits see the same set
                current = await self._entities.get_document(document.id)
                collaborator_ids = (current or document).collaborator_ids

            for user_id in dict.fromkeys(collaborator_ids):
                user = await self._entities.get_user(user_id)
                if user is None or not await self._permissions.can_subscribe(user, document):
                    continue

                existing = await find_subscription(
                    session, user.id, document.id, event, for_update=True
                )
                if existing is not None:
                    continue

                subscription = Subscription(
                    user_id=user.id, document_id=document.id, event=event, enabled=True
                )
                session.add(subscription)
                await session.flush()
                created.append(subscription)

        for subscription in created:
            log.info(
                "subscriptions.created",
                user_id=str(subscription.user_id),
                document_id=str(subscription.document_id),
                subscription_event=event,
            )
            await self._emit_change(EventName.SUBSCRIPTIONS_CREATE, document, subscription, ip)
        return created

    async def subscribe(
        self,
        user: User,
        document: Document,
        event: str = DEFAULT_SUBSCRIPTION_EVENT,
        *,
        ip: Optional[str] = None,
    ) -> Optional[Subscription]:
        """Explicit opt-in. Re-enables a previously disabled subscription.

        Returns None if the user may not subscribe to the document.
        """
        if not await self._permissions.can_subscribe(user, document):
            log.info("subscriptions.denied", user_id=str(user.id), document_id=str(document.id))
            return None

        changed = False
        async with self._locked_session(document.id) as session:
            subscription = await find_subscription(
                session, user.id, document.id, event, for_update=True
            )
            if subscription is None:
                subscription = Subscription(
                    user_id=user.id, document_id=document.id, event=event, enabled=True
                )
                session.add(subscription)
                changed = True
            elif not subscription.enabled:
                subscription.enabled = True
                session.add(subscription)
                changed = True
            await session.flush()

        if changed:
            await self._emit_change(EventName.SUBSCRIPTIONS_CREATE, document, subscription, ip)
        return subscription

    async def unsubscribe(
        self,
        user: User,
        document: Document,
        event: str = DEFAULT_SUBSCRIPTION_EVENT,
        *,
        ip: Optional[str] = None,
    ) -> Optional[Subscription]:
        """Soft-disable. The row stays so the opt-out is remembered."""
        changed = False
        async with self._locked_session(document.id) as session:
            result = await session.execute(
                select(Subscription).where(
                    Subscription.user_id == user.id,
                    Subscription.document_id == document.id,
                    Subscription.event == event,
                ).with_for_update()
            )
            rows = list(result.scalars().all())
            for row in rows:
                if row.enabled:
                    row.enabled = False
                    session.add(row)
                    changed = True
            await session.flush()

        if not rows:
            return None
        subscription = rows[0]
        if changed:
            await self._emit_change(EventName.SUBSCRIPTIONS_DELETE, document, subscription, ip)
        return subscription

    async def _emit_change(
        self,
        name: EventName,
        document: Document,
        subscription: Subscription,
        ip: Optional[str],
    ) -> None:
        if self._emit is None:
            return
        await self._emit(
            EventIn(
                name=name,
                team_id=document.team_id,
                actor_id=subscription.user_id,
                user_id=subscription.user_id,
                document_id=document.id,
                model_id=subscription.id,
                data={"event": subscription.event},
                ip=ip,
            )
        )
