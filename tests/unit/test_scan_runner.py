"""
Tests for ScanRunner routing: create, continue, skip, and per-candidate
failure isolation. Deduplication decisions are stubbed so routing is tested
on its own.
"""

from __future__ import annotations

import pytest

from autofeed.feed.fingerprint import message_fingerprint
from autofeed.feed.room_creator import RoomCreator
from autofeed.feed.scan_runner import ScanRunner
from autofeed.feed.types import Conversation, DedupAction, DedupResult, ScanSource
from autofeed.storage.models import FeedCardType
from autofeed.storage.repository import FeedCardRepository, MessageRepository


class StubDeduplicator:
    def __init__(self, action=DedupAction.NEW_TOPIC, card=None, reason="stub"):
        self.action = action
        self.card = card
        self.reason = reason
        self.calls = []

    def check(self, conversation, source_room_id=None):
        self.calls.append((conversation.message_ids, source_room_id))
        return DedupResult(
            self.action, self.reason, message_fingerprint(conversation.message_ids), card=self.card
        )


@pytest.fixture
def people(seed):
    return [seed.user("alice"), seed.user("bob")]


@pytest.fixture
def room(seed):
    return seed.room("general")


def _conv(messages, title="Topic"):
    return Conversation(message_ids=[m.id for m in messages], title=title, summary="A summary.")


class TestRouting:
    def test_new_topic_creates_card(self, seed, room, people):
        msgs = seed.messages(room, people, 3)
        dedup = StubDeduplicator()

        summary = ScanRunner([_conv(msgs)], ScanSource.ROOM, dedup, room=room).run()

        assert len(summary.created) == 1
        card = FeedCardRepository.get(summary.created[0])
        assert card.type == FeedCardType.AUTOMATED
        assert dedup.calls == [([m.id for m in msgs], room.id)]

    def test_skip_decision(self, seed, room, people):
        msgs = seed.messages(room, people, 2)

        summary = ScanRunner([_conv(msgs)], ScanSource.ROOM, StubDeduplicator(DedupAction.SKIP), room=room).run()

        assert summary.skipped == 1
        assert summary.created == []

    def test_continuation_extends_card(self, seed, room, people):
        msgs = seed.messages(room, people, 4)
        card = RoomCreator().create_conversation_room(
            [m.id for m in msgs[:2]], "Topic", "", FeedCardType.AUTOMATED
        ).feed_card
        dedup = StubDeduplicator(DedupAction.CONTINUATION, card=card)

        summary = ScanRunner([_conv(msgs)], ScanSource.ROOM, dedup, room=room).run()

        assert summary.continued == [card.id]
        assert len(MessageRepository.in_room(card.room_id, limit=10)) == 4

    def test_single_message_needs_continuation(self, seed, room, people):
        message = seed.message(room, people[0])

        summary = ScanRunner([_conv([message])], ScanSource.ROOM, StubDeduplicator(), room=room).run()

        assert summary.skipped == 1
        assert FeedCardRepository.get_by_fingerprint(message_fingerprint([message.id])) is None

    def test_single_message_continuation(self, seed, room, people):
        msgs = seed.messages(room, people, 3)
        card = RoomCreator().create_conversation_room(
            [m.id for m in msgs[:2]], "Topic", "", FeedCardType.AUTOMATED
        ).feed_card
        dedup = StubDeduplicator(DedupAction.CONTINUATION, card=card)

        summary = ScanRunner([_conv([msgs[2]])], ScanSource.ROOM, dedup, room=room).run()

        assert summary.continued == [card.id]

    def test_room_mismatch_is_skipped_before_dedup(self, seed, room, people):
        other = seed.room("other")
        msgs = seed.messages(other, people, 2)
        dedup = StubDeduplicator()

        summary = ScanRunner([_conv(msgs)], ScanSource.ROOM, dedup, room=room).run()

        assert summary.skipped == 1
        assert dedup.calls == []


class TestCreation:
    def test_in_feed_messages_are_filtered_out(self, seed, room, people):
        msgs = seed.messages(room, people, 3)
        seed.mark_in_feed(msgs[0])

        summary = ScanRunner([_conv(msgs)], ScanSource.GLOBAL, StubDeduplicator()).run()

        card = FeedCardRepository.get(summary.created[0])
        assert card.message_fingerprint == message_fingerprint([msgs[1].id, msgs[2].id])

    def test_all_in_feed_is_skipped(self, seed, room, people):
        msgs = seed.messages(room, people, 2)
        seed.mark_in_feed(*msgs)

        summary = ScanRunner([_conv(msgs)], ScanSource.GLOBAL, StubDeduplicator()).run()

        assert summary.skipped == 1
        assert summary.created == []

    def test_one_failure_does_not_stop_the_batch(self, seed, room, people):
        stray = seed.message(seed.room("other"), people[1])
        mixed = [seed.message(room, people[0]), stray]
        good = seed.messages(room, people, 2, start_minutes_ago=30)

        summary = ScanRunner(
            [_conv(mixed, "Broken"), _conv(good, "Good")], ScanSource.GLOBAL, StubDeduplicator()
        ).run()

        assert summary.failed == 1
        assert len(summary.created) == 1
        assert summary.total == 2

    def test_empty_batch(self):
        summary = ScanRunner([], ScanSource.GLOBAL, StubDeduplicator()).run()
        assert summary.total == 0
