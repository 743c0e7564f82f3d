"""
Shared fixtures: a SQLite-backed database, a seeded in-memory directory and
recording fakes for the connection registry and the mailer.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest

from kb_fanout.core.config import Settings
from kb_fanout.core.database import create_engine, create_session_factory, init_db
from kb_fanout.core.errors import DeliveryFailure
from kb_fanout.schemas.entities import (
    Collection,
    CollectionPermission,
    Document,
    Team,
    User,
    UserRole,
)
from kb_fanout.schemas.events import EventName, EventRecord
from kb_fanout.services.directory import InMemoryDirectory, InMemoryViewStore
from kb_fanout.services.policies import PolicyOracle


def utc(minutes_ago: int = 0) -> datetime:
    return datetime.now(timezone.utc) - timedelta(minutes=minutes_ago)


def make_event(name: EventName, team_id: uuid.UUID, **fields: Any) -> EventRecord:
    return EventRecord(id=uuid.uuid4(), created_at=utc(), name=name, team_id=team_id, **fields)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class RecordingRegistry:
    """ConnectionRegistry that records every call in order."""

    def __init__(self) -> None:
        self.calls: list[tuple] = []

    async def broadcast(self, channels, message):
        self.calls.append(("broadcast", list(channels), message))

    async def send_to_user(self, user_id, message):
        self.calls.append(("send_to_user", user_id, message))

    async def join(self, user_id, channel):
        self.calls.append(("join", user_id, channel))

    async def leave(self, user_id, channel):
        self.calls.append(("leave", user_id, channel))

    async def join_channel_members(self, channel, new_channel):
        self.calls.append(("join_channel_members", channel, new_channel))

    async def leave_channel_members(self, channel, old_channel):
        self.calls.append(("leave_channel_members", channel, old_channel))

    def ops(self) -> list[str]:
        return [c[0] for c in self.calls]


class FakeMailer:
    """Mailer that records scheduled emails; addresses in `failing` raise."""

    def __init__(self, failing: Optional[set[str]] = None) -> None:
        self.sent: list[tuple[str, str, dict]] = []
        self.failing = failing or set()

    async def schedule(self, template, to, data):
        if to in self.failing:
            raise DeliveryFailure(f"queue unavailable for {to}")
        self.sent.append((template, to, data))

    @property
    def recipients(self) -> list[str]:
        return [to for _, to, _ in self.sent]


# ---------------------------------------------------------------------------
# Seeded world
# ---------------------------------------------------------------------------


@dataclass
class World:
    team: Team
    alice: User  # author of everything
    bob: User
    carol: User
    admin: User
    public: Collection
    private: Collection
    doc: Document  # published, in the public collection
    draft: Document  # unpublished, in the public collection
    secret: Document  # published, in the private collection


def _user(team: Team, name: str, **fields: Any) -> User:
    return User(
        id=uuid.uuid4(),
        team_id=team.id,
        name=name.title(),
        email=f"{name}@example.com",
        **fields,
    )


@pytest.fixture
def world() -> World:
    team = Team(id=uuid.uuid4(), name="Acme", url="https://acme.example.com")
    alice = _user(team, "alice")
    bob = _user(team, "bob")
    carol = _user(team, "carol")
    admin = _user(team, "admin", role=UserRole.ADMIN)

    public = Collection(
        id=uuid.uuid4(),
        team_id=team.id,
        name="Engineering",
        permission=CollectionPermission.READ_WRITE,
        created_by_id=alice.id,
    )
    private = Collection(
        id=uuid.uuid4(), team_id=team.id, name="Leadership", created_by_id=alice.id
    )

    doc = Document(
        id=uuid.uuid4(),
        team_id=team.id,
        collection_id=public.id,
        title="Runbook",
        created_by_id=alice.id,
        last_modified_by_id=alice.id,
        collaborator_ids=[alice.id, bob.id],
        published_at=utc(60),
        updated_at=utc(5),
    )
    draft = Document(
        id=uuid.uuid4(),
        team_id=team.id,
        collection_id=public.id,
        title="Draft",
        created_by_id=alice.id,
        last_modified_by_id=alice.id,
        collaborator_ids=[alice.id],
        updated_at=utc(5),
    )
    secret = Document(
        id=uuid.uuid4(),
        team_id=team.id,
        collection_id=private.id,
        title="Roadmap",
        created_by_id=alice.id,
        last_modified_by_id=alice.id,
        collaborator_ids=[alice.id],
        published_at=utc(60),
        updated_at=utc(5),
    )
    return World(team, alice, bob, carol, admin, public, private, doc, draft, secret)


@pytest.fixture
def directory(world: World) -> InMemoryDirectory:
    d = InMemoryDirectory()
    d.add(
        world.team,
        world.alice,
        world.bob,
        world.carol,
        world.admin,
        world.public,
        world.private,
        world.doc,
        world.draft,
        world.secret,
    )
    return d


@pytest.fixture
def permissions(directory: InMemoryDirectory) -> PolicyOracle:
    return PolicyOracle(directory)


@pytest.fixture
def views() -> InMemoryViewStore:
    return InMemoryViewStore()


@pytest.fixture
def registry() -> RecordingRegistry:
    return RecordingRegistry()


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite://",
        public_url="https://kb.example.com",
        log_format="text",
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
async def engine(tmp_path):
    eng = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)
