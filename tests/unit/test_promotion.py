"""
Tests for manual promotion: related-message detection, context expansion,
and the promoted feed card it produces.
"""

from __future__ import annotations

import pytest

from autofeed.errors import InvalidStateError, NotFoundError
from autofeed.feed.promotion import (
    DETAILS_SCHEMA,
    RELATED_SCHEMA,
    ConversationDetector,
    promote_message,
)
from autofeed.feed.room_creator import RoomCreator
from autofeed.llm.gateway import CompletionAPIError
from autofeed.storage.models import FeedCardType, RoomKind
from autofeed.storage.repository import MessageRepository


def _details(title="Usage pricing", preview=None, **extra):
    return {"title": title, "summary": "They tried usage pricing.", "preview_message_id": preview, **extra}


@pytest.fixture
def people(seed):
    return seed.user("alice"), seed.user("bob"), seed.user("carol")


@pytest.fixture
def room(seed):
    return seed.room("general")


class TestConversationDetector:
    def test_detects_related_messages(self, config, seed, room, people, fake_completion):
        alice, bob, carol = people
        question = seed.message(room, alice, "should we try usage pricing?", minutes_ago=30)
        seed.message(room, carol, "lunch anyone?", minutes_ago=25)
        answer = seed.message(room, bob, "yes, churn is high", minutes_ago=20)
        completion = fake_completion(
            {"related_message_ids": [answer.id, question.id, 77_777], "reasoning": "q and a"},
            _details(preview=question.id),
        )

        conversation = ConversationDetector(config, completion).detect(answer.id)

        assert conversation.message_ids == [question.id, answer.id]
        assert conversation.title == "Usage pricing"
        assert conversation.preview_message_id == question.id
        assert conversation.participants == ["alice", "bob"]
        related_call, details_call = completion.calls
        assert related_call["response_format"] == RELATED_SCHEMA
        assert details_call["response_format"] == DETAILS_SCHEMA
        assert "lunch anyone?" in related_call["prompt"]
        assert "lunch anyone?" not in details_call["prompt"]

    def test_promoted_message_always_included(self, config, seed, room, people, fake_completion):
        first = seed.message(room, people[0], "idea", minutes_ago=10)
        promoted = seed.message(room, people[1], "great idea", minutes_ago=5)
        completion = fake_completion({"related_message_ids": [first.id]}, _details())

        conversation = ConversationDetector(config, completion).detect(promoted.id)

        assert conversation.message_ids == [first.id, promoted.id]

    def test_context_expands_around_related_messages(self, config, seed, room, people, fake_completion):
        alice, bob, _ = people
        origin = seed.message(room, alice, "kickoff", minutes_ago=20 * 60)
        middle = seed.message(room, bob, "follow-up", minutes_ago=11 * 60)
        promoted = seed.message(room, alice, "conclusion", minutes_ago=0)
        completion = fake_completion(
            {"related_message_ids": [middle.id, promoted.id]},
            {"related_message_ids": [origin.id, middle.id, promoted.id]},
            _details(),
        )

        conversation = ConversationDetector(config, completion).detect(promoted.id)

        assert conversation.message_ids == [origin.id, middle.id, promoted.id]
        assert "kickoff" not in completion.prompts[0]
        assert "kickoff" in completion.prompts[1]
        assert len(completion.calls) == 3

    def test_thread_reply_includes_parent(self, config, seed, room, people, fake_completion):
        parent = seed.message(room, people[0], "parent post", minutes_ago=30)
        reply = seed.message(seed.thread(parent), people[1], "reply", minutes_ago=10)
        completion = fake_completion({"related_message_ids": [parent.id]}, _details())

        conversation = ConversationDetector(config, completion).detect(reply.id)

        assert conversation.message_ids == [parent.id, reply.id]
        assert "parent post" in completion.prompts[0]

    def test_missing_message(self, config, fake_completion):
        with pytest.raises(NotFoundError):
            ConversationDetector(config, fake_completion()).detect(12_345)

    def test_completion_errors_propagate(self, config, seed, room, people, fake_completion):
        message = seed.message(room, people[0])
        completion = fake_completion(CompletionAPIError("rate limited"))

        with pytest.raises(CompletionAPIError):
            ConversationDetector(config, completion).detect(message.id)


class TestPromoteMessage:
    def test_creates_promoted_card(self, config, seed, room, people, fake_completion):
        alice, bob, carol = people
        question = seed.message(room, alice, "pricing?", minutes_ago=15)
        answer = seed.message(room, bob, "usage based", minutes_ago=10)
        completion = fake_completion(
            {"related_message_ids": [question.id, answer.id]},
            _details(preview=answer.id, key_insight="Usage pricing wins"),
        )

        result = promote_message(answer.id, carol.id, config, complete_fn=completion)

        assert result.created
        card = result.feed_card
        assert card.type == FeedCardType.PROMOTED
        assert card.promoted_by == carol.id
        assert result.room.name == "Usage pricing wins"
        preview = next(
            m for m in MessageRepository.in_room(result.room.id, limit=10) if m.id == card.preview_message_id
        )
        assert preview.original_message_id == answer.id

    def test_messages_in_feed_rooms_cannot_be_promoted(self, config, seed, room, people, fake_completion):
        msgs = seed.messages(room, list(people[:2]), 2)
        created = RoomCreator().create_conversation_room(
            [m.id for m in msgs], "Topic", "", FeedCardType.AUTOMATED
        )
        copy = MessageRepository.in_room(created.room.id, limit=1)[0]

        with pytest.raises(InvalidStateError, match="Cannot promote a message from a conversation room"):
            promote_message(copy.id, people[2].id, config, complete_fn=fake_completion())

    def test_direct_room_messages_are_rejected(self, config, seed, people, fake_completion):
        dm = seed.room("dm", kind=RoomKind.DIRECT)
        message = seed.message(dm, people[0], "private")
        completion = fake_completion({"related_message_ids": [message.id]}, _details())

        with pytest.raises(InvalidStateError):
            promote_message(message.id, people[1].id, config, complete_fn=completion)

    def test_missing_message(self, config, fake_completion):
        with pytest.raises(NotFoundError, match="Message 999 not found"):
            promote_message(999, 1, config, complete_fn=fake_completion())
