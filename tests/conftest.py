"""
Pytest configuration for Autofeed tests

Every test gets a fresh SQLite database (AUTOFEED_DB_PATH under tmp_path) and
clean telemetry. Redis is replaced by fakeredis and the completion service by
FakeCompletion, so nothing touches the network.
"""

from __future__ import annotations

import json
from datetime import timedelta

import fakeredis
import pytest

from autofeed.config import FeedConfig
from autofeed.infrastructure.database import db_transaction, init_database, reset_pool
from autofeed.observability import telemetry
from autofeed.storage.models import Message, Room, RoomKind, User, utc_now
from autofeed.storage.repository import MessageRepository, RoomRepository, UserRepository


@pytest.fixture(autouse=True)
def database(tmp_path, monkeypatch):
    """Fresh schema per test; the pool is rebuilt against the temp path."""
    db_path = tmp_path / "autofeed.db"
    monkeypatch.setenv("AUTOFEED_DB_PATH", str(db_path))
    reset_pool()
    init_database()
    telemetry.reset()
    yield db_path
    reset_pool()


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def config():
    return FeedConfig()


class Seeder:
    """Creates users, rooms and messages directly through the repositories."""

    def user(self, name: str = "alice", active: bool = True) -> User:
        return UserRepository.create(name, active=active)

    def room(
        self,
        name: str = "general",
        kind: RoomKind = RoomKind.OPEN,
        members: tuple[User, ...] | list[User] = (),
        active: bool = True,
    ) -> Room:
        with db_transaction() as conn:
            room = RoomRepository.create(conn, name=name, kind=kind, active=active)
            for member in members:
                RoomRepository.add_membership(conn, room.id, member.id)
        return room

    def thread(self, parent: Message, name: str | None = None, active: bool = True) -> Room:
        with db_transaction() as conn:
            return RoomRepository.create(
                conn,
                name=name or f"thread-{parent.id}",
                kind=RoomKind.THREAD,
                parent_message_id=parent.id,
                active=active,
            )

    def message(
        self,
        room: Room,
        user: User,
        body: str = "hello",
        minutes_ago: float = 0,
        **kwargs,
    ) -> Message:
        with db_transaction() as conn:
            return MessageRepository.create(
                conn,
                room_id=room.id,
                creator_id=user.id,
                body=body,
                created_at=utc_now() - timedelta(minutes=minutes_ago),
                **kwargs,
            )

    def messages(self, room: Room, users: list[User], count: int, start_minutes_ago: float = 60):
        """``count`` messages alternating between ``users``, one minute apart, oldest first."""
        return [
            self.message(
                room,
                users[i % len(users)],
                body=f"message {i}",
                minutes_ago=start_minutes_ago - i,
            )
            for i in range(count)
        ]

    def react(self, message: Message, user: User, content: str = "🔥") -> None:
        with db_transaction() as conn:
            MessageRepository.add_reaction(conn, message.id, user.id, content)

    def mark_in_feed(self, *messages: Message) -> None:
        with db_transaction() as conn:
            MessageRepository.mark_in_feed(conn, [m.id for m in messages])


@pytest.fixture
def seed():
    return Seeder()


class FakeCompletion:
    """
    Stand-in for ``autofeed.llm.gateway.complete``.

    Responses are consumed in order: dicts are returned as JSON, strings as-is,
    exceptions are raised. Every call is recorded with its keyword arguments.
    """

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls: list[dict] = []

    def __call__(self, prompt: str, **kwargs) -> str:
        self.calls.append({"prompt": prompt, **kwargs})
        if not self.responses:
            raise AssertionError("Unexpected completion call")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if isinstance(response, dict | list):
            return json.dumps(response)
        return response

    @property
    def prompts(self) -> list[str]:
        return [call["prompt"] for call in self.calls]


@pytest.fixture
def fake_completion():
    """Factory: ``fake_completion(response, ...)`` builds a FakeCompletion."""
    return FakeCompletion
