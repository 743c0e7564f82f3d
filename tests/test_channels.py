"""
Tests for channel topology resolution.

Tests cover:
- Document channel sets (actor echo, published collection, direct members)
- Collection creation for private and shared collections
- Membership removals only emitting leave when access is actually lost
- Group removal and deletion cascades
- Vanished entities producing empty plans
- Every event kind having exactly one handler
"""

from __future__ import annotations

import uuid

import pytest

from kb_fanout.schemas.entities import (
    Collection,
    Group,
    GroupMembership,
    GroupUser,
    MembershipPermission,
    Star,
    UserMembership,
)
from kb_fanout.schemas.events import ControlAction, EventName
from kb_fanout.services.channels import (
    ChannelTopologyResolver,
    FanoutPlan,
    _register_handlers,
    collection_channel,
    group_channel,
    handles,
    team_channel,
    unique,
    user_channel,
)

from .conftest import make_event


@pytest.fixture
def resolver(directory, permissions):
    return ChannelTopologyResolver(directory, permissions)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestChannelHelpers:
    def test_channel_names(self):
        uid = uuid.uuid4()
        assert user_channel(uid) == f"user-{uid}"
        assert team_channel(uid) == f"team-{uid}"
        assert collection_channel(uid) == f"collection-{uid}"
        assert group_channel(uid) == f"group-{uid}"

    def test_unique_keeps_first_seen_order(self):
        assert unique(["b", "a", "b", "c", "a"]) == ("b", "a", "c")

    def test_empty_broadcast_is_not_a_step(self):
        plan = FanoutPlan()
        plan.broadcast([], "documents.update", {})
        assert not plan

    def test_control_needs_exactly_one_target(self):
        plan = FanoutPlan()
        with pytest.raises(ValueError):
            plan.join("collection-x", "collections.create")
        with pytest.raises(ValueError):
            plan.leave("group-x", "groups.delete", user_id=uuid.uuid4(), target_channel="group-x")

        plan.join("collection-x", "collections.create", target_channel="team-x")
        assert [c.action for c in plan.controls] == [ControlAction.JOIN]


# ---------------------------------------------------------------------------
# Exhaustiveness
# ---------------------------------------------------------------------------


class TestHandlerRegistry:
    def test_every_event_kind_has_a_handler(self):
        assert set(ChannelTopologyResolver._handlers) == set(EventName)

    def test_missing_handler_fails_at_class_creation(self):
        with pytest.raises(RuntimeError, match="No fan-out handler"):

            @_register_handlers
            class Partial:
                @handles(EventName.TEAMS_UPDATE)
                async def _team(self, event):
                    return FanoutPlan()

    def test_duplicate_handler_fails_at_class_creation(self):
        with pytest.raises(RuntimeError, match="Duplicate"):

            @_register_handlers
            class Twice:
                @handles(*EventName)
                async def _all(self, event):
                    return FanoutPlan()

                @handles(EventName.TEAMS_UPDATE)
                async def _team(self, event):
                    return FanoutPlan()


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


class TestDocumentEvents:
    async def test_published_document_reaches_actor_and_collection(self, resolver, world):
        event = make_event(
            EventName.DOCUMENTS_UPDATE,
            world.team.id,
            actor_id=world.alice.id,
            document_id=world.doc.id,
            collection_id=world.public.id,
        )
        topics = await resolver.topics_for(event)
        assert topics == (user_channel(world.alice.id), collection_channel(world.public.id))

    async def test_direct_members_are_included(self, resolver, directory, world):
        directory.add(
            UserMembership(id=uuid.uuid4(), user_id=world.carol.id, document_id=world.doc.id)
        )
        event = make_event(
            EventName.DOCUMENTS_UPDATE,
            world.team.id,
            actor_id=world.alice.id,
            document_id=world.doc.id,
        )
        topics = await resolver.topics_for(event)
        assert user_channel(world.carol.id) in topics
        assert len(topics) == len(set(topics))

    async def test_actor_who_is_also_member_appears_once(self, resolver, directory, world):
        directory.add(
            UserMembership(id=uuid.uuid4(), user_id=world.alice.id, document_id=world.doc.id)
        )
        event = make_event(
            EventName.DOCUMENTS_UPDATE,
            world.team.id,
            actor_id=world.alice.id,
            document_id=world.doc.id,
        )
        topics = await resolver.topics_for(event)
        assert topics.count(user_channel(world.alice.id)) == 1

    async def test_unpublished_document_skips_collection(self, resolver, world):
        event = make_event(
            EventName.DOCUMENTS_UPDATE,
            world.team.id,
            actor_id=world.alice.id,
            document_id=world.draft.id,
        )
        assert await resolver.topics_for(event) == (user_channel(world.alice.id),)

    async def test_publish_sends_entities_hint(self, resolver, world):
        event = make_event(
            EventName.DOCUMENTS_PUBLISH,
            world.team.id,
            actor_id=world.alice.id,
            document_id=world.doc.id,
        )
        plan = await resolver.resolve(event)
        [broadcast] = plan.broadcasts
        assert broadcast.name == "entities"
        assert broadcast.payload["event"] == "documents.publish"
        assert broadcast.payload["documentIds"][0]["id"] == str(world.doc.id)
        assert broadcast.payload["collectionIds"] == [{"id": str(world.public.id)}]

    async def test_imported_document_create_is_silent(self, resolver, directory, world):
        directory.add(world.doc.model_copy(update={"import_id": uuid.uuid4()}))
        event = make_event(
            EventName.DOCUMENTS_CREATE,
            world.team.id,
            actor_id=world.alice.id,
            document_id=world.doc.id,
        )
        assert not await resolver.resolve(event)

    async def test_deleted_document_still_fans_out(self, resolver, directory, world):
        directory.add(world.doc.model_copy(update={"deleted_at": world.doc.updated_at}))
        event = make_event(
            EventName.DOCUMENTS_DELETE,
            world.team.id,
            actor_id=world.alice.id,
            document_id=world.doc.id,
        )
        topics = await resolver.topics_for(event)
        assert collection_channel(world.public.id) in topics

    async def test_permanent_delete_targets_collection_only(self, resolver, world):
        document_id = uuid.uuid4()
        event = make_event(
            EventName.DOCUMENTS_PERMANENT_DELETE,
            world.team.id,
            actor_id=world.alice.id,
            document_id=document_id,
            collection_id=world.public.id,
        )
        plan = await resolver.resolve(event)
        [broadcast] = plan.broadcasts
        assert broadcast.channels == (collection_channel(world.public.id),)
        assert broadcast.payload == {"modelId": str(document_id)}

    async def test_missing_document_yields_empty_plan(self, resolver, world):
        event = make_event(
            EventName.DOCUMENTS_UPDATE,
            world.team.id,
            actor_id=world.alice.id,
            document_id=uuid.uuid4(),
        )
        plan = await resolver.resolve(event)
        assert not plan
        assert plan.topics == ()

    async def test_move_announces_each_collection(self, resolver, world):
        event = make_event(
            EventName.DOCUMENTS_MOVE,
            world.team.id,
            actor_id=world.alice.id,
            data={
                "documentIds": [str(world.doc.id)],
                "collectionIds": [str(world.public.id), str(world.private.id)],
            },
        )
        topics = await resolver.topics_for(event)
        assert set(topics) == {
            collection_channel(world.public.id),
            collection_channel(world.private.id),
        }


# ---------------------------------------------------------------------------
# Collections
# ---------------------------------------------------------------------------


class TestCollectionEvents:
    async def test_private_collection_create_reaches_creator_only(self, resolver, world):
        event = make_event(
            EventName.COLLECTIONS_CREATE,
            world.team.id,
            actor_id=world.alice.id,
            collection_id=world.private.id,
        )
        plan = await resolver.resolve(event)

        assert plan.topics == (user_channel(world.alice.id),)
        [control] = plan.controls
        assert control.action == ControlAction.JOIN
        assert control.channel == collection_channel(world.private.id)
        assert control.user_id == world.alice.id
        assert control.target_channel is None

    async def test_shared_collection_create_joins_team(self, resolver, world):
        event = make_event(
            EventName.COLLECTIONS_CREATE,
            world.team.id,
            actor_id=world.alice.id,
            collection_id=world.public.id,
        )
        plan = await resolver.resolve(event)

        assert plan.topics == (team_channel(world.team.id),)
        [control] = plan.controls
        assert control.action == ControlAction.JOIN
        assert control.target_channel == team_channel(world.team.id)

    async def test_add_user_joins_new_member(self, resolver, directory, world):
        membership = UserMembership(
            id=uuid.uuid4(), user_id=world.bob.id, collection_id=world.private.id
        )
        directory.add(membership)
        event = make_event(
            EventName.COLLECTIONS_ADD_USER,
            world.team.id,
            actor_id=world.alice.id,
            collection_id=world.private.id,
            user_id=world.bob.id,
            model_id=membership.id,
        )
        plan = await resolver.resolve(event)

        assert plan.topics == (user_channel(world.bob.id), collection_channel(world.private.id))
        [control] = plan.controls
        assert (control.action, control.user_id) == (ControlAction.JOIN, world.bob.id)

    async def test_remove_user_without_other_access_leaves(self, resolver, world):
        # Membership already removed by the time the event is processed
        event = make_event(
            EventName.COLLECTIONS_REMOVE_USER,
            world.team.id,
            actor_id=world.alice.id,
            collection_id=world.private.id,
            user_id=world.bob.id,
        )
        plan = await resolver.resolve(event)
        [control] = plan.controls
        assert control.action == ControlAction.LEAVE
        assert control.user_id == world.bob.id
        assert control.channel == collection_channel(world.private.id)

    async def test_remove_user_with_group_access_stays(self, resolver, directory, world):
        group = Group(id=uuid.uuid4(), team_id=world.team.id, name="Leads")
        directory.add(
            group,
            GroupUser(group_id=group.id, user_id=world.bob.id),
            GroupMembership(id=uuid.uuid4(), group_id=group.id, collection_id=world.private.id),
        )
        event = make_event(
            EventName.COLLECTIONS_REMOVE_USER,
            world.team.id,
            actor_id=world.alice.id,
            collection_id=world.private.id,
            user_id=world.bob.id,
        )
        plan = await resolver.resolve(event)
        assert plan.controls == []
        assert plan.topics == (collection_channel(world.private.id),)

    async def test_remove_user_from_shared_collection_stays(self, resolver, world):
        event = make_event(
            EventName.COLLECTIONS_REMOVE_USER,
            world.team.id,
            actor_id=world.alice.id,
            collection_id=world.public.id,
            user_id=world.bob.id,
        )
        plan = await resolver.resolve(event)
        assert plan.controls == []

    async def test_remove_group_leaves_only_users_who_lost_access(
        self, resolver, directory, world
    ):
        group = Group(id=uuid.uuid4(), team_id=world.team.id, name="Leads")
        directory.add(
            group,
            GroupUser(group_id=group.id, user_id=world.bob.id),
            GroupUser(group_id=group.id, user_id=world.carol.id),
            # Carol keeps a direct grant
            UserMembership(
                id=uuid.uuid4(),
                user_id=world.carol.id,
                collection_id=world.private.id,
                permission=MembershipPermission.READ_WRITE,
            ),
        )
        event = make_event(
            EventName.COLLECTIONS_REMOVE_GROUP,
            world.team.id,
            actor_id=world.alice.id,
            collection_id=world.private.id,
            group_id=group.id,
        )
        plan = await resolver.resolve(event)

        assert plan.topics == (collection_channel(world.private.id),)
        assert [(c.action, c.user_id) for c in plan.controls] == [
            (ControlAction.LEAVE, world.bob.id)
        ]

    async def test_add_group_joins_group_channel_members(self, resolver, directory, world):
        group = Group(id=uuid.uuid4(), team_id=world.team.id, name="Leads")
        membership = GroupMembership(
            id=uuid.uuid4(), group_id=group.id, collection_id=world.private.id
        )
        directory.add(group, membership)
        event = make_event(
            EventName.COLLECTIONS_ADD_GROUP,
            world.team.id,
            actor_id=world.alice.id,
            collection_id=world.private.id,
            group_id=group.id,
            data={"membershipId": str(membership.id)},
        )
        plan = await resolver.resolve(event)
        [control] = plan.controls
        assert control.action == ControlAction.JOIN
        assert control.target_channel == group_channel(group.id)
        assert control.channel == collection_channel(world.private.id)

    async def test_private_collection_update_goes_to_team(self, resolver, world):
        event = make_event(
            EventName.COLLECTIONS_UPDATE,
            world.team.id,
            actor_id=world.alice.id,
            collection_id=world.private.id,
        )
        assert await resolver.topics_for(event) == (team_channel(world.team.id),)

    async def test_deleted_collection_is_still_announced(self, resolver, directory, world):
        directory.add(
            Collection(**{**world.public.model_dump(), "deleted_at": world.doc.updated_at})
        )
        event = make_event(
            EventName.COLLECTIONS_DELETE,
            world.team.id,
            actor_id=world.alice.id,
            collection_id=world.public.id,
        )
        plan = await resolver.resolve(event)
        [broadcast] = plan.broadcasts
        assert broadcast.payload == {"modelId": str(world.public.id)}


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------


class TestGroupEvents:
    @pytest.fixture
    def group(self, directory, world):
        group = Group(id=uuid.uuid4(), team_id=world.team.id, name="Leads")
        directory.add(
            group,
            GroupMembership(id=uuid.uuid4(), group_id=group.id, collection_id=world.private.id),
        )
        return group

    async def test_add_user_joins_group_and_its_collections(self, resolver, directory, world, group):
        directory.add(GroupUser(group_id=group.id, user_id=world.bob.id))
        event = make_event(
            EventName.GROUPS_ADD_USER,
            world.team.id,
            actor_id=world.alice.id,
            group_id=group.id,
            user_id=world.bob.id,
        )
        plan = await resolver.resolve(event)
        joined = [(c.action, c.channel, c.user_id) for c in plan.controls]
        assert joined == [
            (ControlAction.JOIN, group_channel(group.id), world.bob.id),
            (ControlAction.JOIN, collection_channel(world.private.id), world.bob.id),
        ]

    async def test_remove_user_leaves_group_and_lost_collections(self, resolver, world, group):
        event = make_event(
            EventName.GROUPS_REMOVE_USER,
            world.team.id,
            actor_id=world.alice.id,
            group_id=group.id,
            user_id=world.bob.id,
        )
        plan = await resolver.resolve(event)
        left = [(c.action, c.channel) for c in plan.controls]
        assert left == [
            (ControlAction.LEAVE, group_channel(group.id)),
            (ControlAction.LEAVE, collection_channel(world.private.id)),
        ]

    async def test_remove_user_keeps_collection_with_direct_grant(
        self, resolver, directory, world, group
    ):
        directory.add(
            UserMembership(id=uuid.uuid4(), user_id=world.bob.id, collection_id=world.private.id)
        )
        event = make_event(
            EventName.GROUPS_REMOVE_USER,
            world.team.id,
            actor_id=world.alice.id,
            group_id=group.id,
            user_id=world.bob.id,
        )
        plan = await resolver.resolve(event)
        assert [c.channel for c in plan.controls] == [group_channel(group.id)]

    async def test_delete_empties_group_channel_and_cascades(
        self, resolver, directory, world, group
    ):
        directory.add(
            GroupUser(group_id=group.id, user_id=world.bob.id),
            GroupUser(group_id=group.id, user_id=world.carol.id),
        )
        directory.add(group.model_copy(update={"deleted_at": world.doc.updated_at}))
        event = make_event(
            EventName.GROUPS_DELETE,
            world.team.id,
            actor_id=world.alice.id,
            group_id=group.id,
        )
        plan = await resolver.resolve(event)

        first = plan.controls[0]
        assert first.action == ControlAction.LEAVE
        assert first.target_channel == group_channel(group.id)

        collection_leaves = {c.user_id for c in plan.controls[1:]}
        assert collection_leaves == {world.bob.id, world.carol.id}


# ---------------------------------------------------------------------------
# Personal events
# ---------------------------------------------------------------------------


class TestPersonalEvents:
    async def test_star_goes_to_owner(self, resolver, directory, world):
        star = Star(id=uuid.uuid4(), user_id=world.bob.id, document_id=world.doc.id)
        directory.add(star)
        event = make_event(
            EventName.STARS_CREATE, world.team.id, actor_id=world.bob.id, model_id=star.id
        )
        assert await resolver.topics_for(event) == (user_channel(world.bob.id),)

    async def test_subscription_created_uses_lookup(self, directory, permissions, world):
        subscription_id = uuid.uuid4()

        class Row:
            id = subscription_id
            user_id = world.bob.id
            document_id = world.doc.id
            event = "documents.update"
            enabled = True
            created_at = world.doc.updated_at

        async def lookup(sid):
            return Row() if sid == subscription_id else None

        resolver = ChannelTopologyResolver(directory, permissions, subscription_lookup=lookup)
        event = make_event(
            EventName.SUBSCRIPTIONS_CREATE,
            world.team.id,
            actor_id=world.bob.id,
            user_id=world.bob.id,
            document_id=world.doc.id,
            model_id=subscription_id,
        )
        plan = await resolver.resolve(event)
        [broadcast] = plan.broadcasts
        assert broadcast.channels == (user_channel(world.bob.id),)
        assert broadcast.payload["id"] == str(subscription_id)

    async def test_user_update_splits_private_and_public_views(self, resolver, world):
        event = make_event(
            EventName.USERS_UPDATE, world.team.id, actor_id=world.bob.id, user_id=world.bob.id
        )
        plan = await resolver.resolve(event)
        mine, team = plan.broadcasts
        assert mine.channels == (user_channel(world.bob.id),)
        assert team.channels == (team_channel(world.team.id),)
        assert "email" in mine.payload
        assert "email" not in team.payload
