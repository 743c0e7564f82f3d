"""Tests for the subscription lifecycle."""

from __future__ import annotations

import asyncio
import uuid

import pytest

from kb_fanout.schemas.events import EventName
from kb_fanout.services.subscriptions import SubscriptionService


@pytest.fixture
def emitted():
    return []


@pytest.fixture
def subscriptions(session_factory, directory, permissions, emitted):
    async def emit(event_in):
        emitted.append(event_in)

    return SubscriptionService(session_factory, directory, permissions, emit=emit)


async def test_collaborators_are_subscribed(subscriptions, world, emitted):
    created = await subscriptions.ensure_subscriptions(world.doc)

    assert {s.user_id for s in created} == {world.alice.id, world.bob.id}
    assert all(s.enabled for s in created)
    assert [e.name for e in emitted] == [EventName.SUBSCRIPTIONS_CREATE] * 2
    assert {e.user_id for e in emitted} == {world.alice.id, world.bob.id}
    assert {e.model_id for e in emitted} == {s.id for s in created}


async def test_ensure_is_idempotent(subscriptions, world, emitted):
    await subscriptions.ensure_subscriptions(world.doc)
    again = await subscriptions.ensure_subscriptions(world.doc)

    assert again == []
    assert len(await subscriptions.list_for_document(world.doc.id)) == 2
    assert len(emitted) == 2


async def test_concurrent_ensure_creates_one_row_per_user(subscriptions, world):
    await asyncio.gather(*(subscriptions.ensure_subscriptions(world.doc) for _ in range(5)))

    rows = await subscriptions.list_for_document(world.doc.id, enabled_only=False)
    assert sorted(str(s.user_id) for s in rows) == sorted([str(world.alice.id), str(world.bob.id)])


async def test_duplicate_collaborator_ids_collapse(subscriptions, world):
    created = await subscriptions.ensure_subscriptions(
        world.doc, collaborator_ids=[world.bob.id, world.bob.id, world.bob.id]
    )
    assert len(created) == 1


async def test_unsubscribed_user_is_never_resubscribed(subscriptions, world, emitted):
    await subscriptions.ensure_subscriptions(world.doc)
    disabled = await subscriptions.unsubscribe(world.bob, world.doc)
    assert disabled is not None and disabled.enabled is False
    assert emitted[-1].name == EventName.SUBSCRIPTIONS_DELETE

    created = await subscriptions.ensure_subscriptions(world.doc)
    assert created == []

    rows = await subscriptions.list_for_document(world.doc.id, enabled_only=False)
    bob_rows = [s for s in rows if s.user_id == world.bob.id]
    assert len(bob_rows) == 1
    assert bob_rows[0].enabled is False


async def test_explicit_subscribe_reenables(subscriptions, world):
    await subscriptions.ensure_subscriptions(world.doc)
    await subscriptions.unsubscribe(world.bob, world.doc)

    subscription = await subscriptions.subscribe(world.bob, world.doc)
    assert subscription.enabled is True
    assert await subscriptions.subscribed_user_ids(
        world.doc.id, EventName.DOCUMENTS_UPDATE.value, [world.bob.id, world.carol.id]
    ) == {world.bob.id}


async def test_subscribe_without_access_is_refused(subscriptions, world):
    # Carol has no grant on the private collection
    assert await subscriptions.subscribe(world.carol, world.secret) is None


async def test_suspended_collaborator_is_skipped(subscriptions, directory, world):
    directory.add(world.bob.model_copy(update={"suspended_at": world.doc.updated_at}))
    created = await subscriptions.ensure_subscriptions(world.doc)
    assert [s.user_id for s in created] == [world.alice.id]


async def test_unsubscribe_without_row(subscriptions, world, emitted):
    assert await subscriptions.unsubscribe(world.carol, world.doc) is None
    assert emitted == []


async def test_get_by_id(subscriptions, world):
    [first, *_] = await subscriptions.ensure_subscriptions(world.doc)
    loaded = await subscriptions.get(first.id)
    assert loaded is not None
    assert loaded.document_id == world.doc.id


async def test_document_locks_are_dropped_after_use(subscriptions, world):
    documents = [world.doc.model_copy(update={"id": uuid.uuid4()}) for _ in range(20)]
    for document in documents:
        await subscriptions.ensure_subscriptions(document)
    await asyncio.gather(
        *(subscriptions.ensure_subscriptions(world.doc) for _ in range(5)),
        subscriptions.unsubscribe(world.bob, world.doc),
    )

    assert subscriptions._locks == {}
    assert subscriptions._lock_users == {}
