"""
Service wiring.

Builds the processor graph once per process. Collaborators owned by other
parts of the system (entity store, view store, mailer, connection registry)
can be injected; anything omitted gets the local default.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from kb_fanout.core.config import Settings
from kb_fanout.core.connections import ConnectionManager
from kb_fanout.core.database import create_engine, create_session_factory
from kb_fanout.services.channels import ChannelTopologyResolver
from kb_fanout.services.directory import InMemoryDirectory, InMemoryViewStore
from kb_fanout.services.dispatcher import FanoutDispatcher
from kb_fanout.services.interfaces import (
    ConnectionRegistry,
    EntityStore,
    Mailer,
    PermissionOracle,
    ViewStore,
)
from kb_fanout.services.mailer import ArqMailer
from kb_fanout.services.notifications import NotificationRecipientResolver, NotificationsProcessor
from kb_fanout.services.policies import PolicyOracle
from kb_fanout.services.subscriptions import SubscriptionService
from kb_fanout.services.worker import EventBus, EventWorker


@dataclass
class Services:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    entities: EntityStore
    views: ViewStore
    permissions: PermissionOracle
    registry: ConnectionRegistry
    mailer: Mailer
    bus: EventBus
    worker: EventWorker
    resolver: ChannelTopologyResolver
    dispatcher: FanoutDispatcher
    subscriptions: SubscriptionService
    recipients: NotificationRecipientResolver
    notifications: NotificationsProcessor


def build_services(
    settings: Settings,
    *,
    engine: Optional[AsyncEngine] = None,
    entities: Optional[EntityStore] = None,
    views: Optional[ViewStore] = None,
    permissions: Optional[PermissionOracle] = None,
    registry: Optional[ConnectionRegistry] = None,
    mailer: Optional[Mailer] = None,
) -> Services:
    engine = engine or create_engine(settings.database_url)
    session_factory = create_session_factory(engine)

    entities = entities or InMemoryDirectory()
    views = views or InMemoryViewStore()
    permissions = permissions or PolicyOracle(entities)
    registry = registry or ConnectionManager(settings.max_connections_per_team)
    mailer = mailer or ArqMailer(settings.redis_url, settings.mail_queue_name)

    bus = EventBus(session_factory)
    subscriptions = SubscriptionService(session_factory, entities, permissions, emit=bus.emit)
    resolver = ChannelTopologyResolver(entities, permissions, subscription_lookup=subscriptions.get)
    dispatcher = FanoutDispatcher(registry, resolver)
    recipients = NotificationRecipientResolver(
        session_factory,
        entities,
        permissions,
        views,
        subscriptions,
        gated_events=settings.subscription_gated_events,
    )
    notifications = NotificationsProcessor(
        session_factory, entities, subscriptions, recipients, mailer, settings
    )

    worker = EventWorker(bus, concurrency=settings.worker_concurrency)
    worker.register("websockets", dispatcher.perform)
    worker.register("notifications", notifications.perform, notifications.applicable_events)

    return Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        entities=entities,
        views=views,
        permissions=permissions,
        registry=registry,
        mailer=mailer,
        bus=bus,
        worker=worker,
        resolver=resolver,
        dispatcher=dispatcher,
        subscriptions=subscriptions,
        recipients=recipients,
        notifications=notifications,
    )
