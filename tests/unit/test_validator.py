"""Tests for source-room resolution of candidate conversations."""

from __future__ import annotations

import pytest

from autofeed.errors import InvalidStateError
from autofeed.feed import validator
from autofeed.storage.models import Room, RoomKind


def _room(room_id: int, kind: RoomKind = RoomKind.OPEN, parent_message_id: int | None = None):
    return Room(id=room_id, name=f"room-{room_id}", kind=kind, parent_message_id=parent_message_id)


class TestAnalyzeRooms:
    def test_single_room_is_its_own_source(self):
        general = _room(1)
        result = validator.analyze_rooms([general, general], {})
        assert result.valid
        assert result.source_room == general

    def test_two_unrelated_rooms_are_rejected(self):
        result = validator.analyze_rooms([_room(1), _room(2)], {})
        assert not result.valid
        assert result.reason == validator.SAME_ROOM_REASON

    def test_thread_resolves_to_parent_room(self):
        general = _room(1)
        thread = _room(5, RoomKind.THREAD, parent_message_id=100)
        result = validator.analyze_rooms([general, thread], {thread.id: general})
        assert result.valid
        assert result.source_room == general

    def test_threads_with_different_parent_rooms_are_rejected(self):
        t1 = _room(5, RoomKind.THREAD, parent_message_id=100)
        t2 = _room(6, RoomKind.THREAD, parent_message_id=200)
        result = validator.analyze_rooms([t1, t2], {t1.id: _room(1), t2.id: _room(2)})
        assert not result.valid
        assert result.reason == validator.THREAD_PARENTS_REASON

    def test_thread_without_parent_is_rejected(self):
        thread = _room(5, RoomKind.THREAD, parent_message_id=100)
        result = validator.analyze_rooms([thread], {thread.id: None})
        assert not result.valid
        assert result.reason == validator.NO_PARENT_REASON

    def test_top_level_room_must_match_thread_parent(self):
        thread = _room(5, RoomKind.THREAD, parent_message_id=100)
        result = validator.analyze_rooms([_room(2), thread], {thread.id: _room(1)})
        assert not result.valid
        assert "doesn't match parent room 1" in result.reason

    def test_scanned_room_mismatch_is_invalid(self):
        result = validator.analyze_rooms([_room(2)], {}, scanned_room=_room(1))
        assert not result.valid
        assert result.source_room.id == 2

    def test_no_rooms_is_invalid(self):
        assert not validator.analyze_rooms([], {}).valid


class TestAnalyzeMessages:
    def test_empty_message_list(self):
        result = validator.analyze([])
        assert not result.valid
        assert result.reason == "No messages provided"

    def test_thread_reply_resolves_through_parent_message(self, seed):
        alice, bob = seed.user("alice"), seed.user("bob")
        general = seed.room("general")
        parent = seed.message(general, alice, "kicking off")
        thread = seed.thread(parent)
        reply = seed.message(thread, bob, "reply")

        result = validator.analyze([parent, reply])

        assert result.valid
        assert result.source_room.id == general.id

    def test_validate_raises_with_reason(self, seed):
        alice = seed.user()
        m1 = seed.message(seed.room("one"), alice)
        m2 = seed.message(seed.room("two"), alice)

        with pytest.raises(InvalidStateError, match="same room or related threads"):
            validator.validate([m1, m2])
