"""
Conversation validator: resolve the single source room of a message set.

Thread rooms are attributed to the room holding their parent message. A set
is valid when every message resolves to the same top-level room (and, when a
room-scoped scan is running, that room is the scanned one).

``analyze`` never raises; ``validate`` raises InvalidStateError for callers
that want an exception.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable, Mapping, Sequence

from autofeed.errors import InvalidStateError
from autofeed.feed.types import ValidationResult
from autofeed.storage.models import Message, Room
from autofeed.storage.repository import RoomRepository

SAME_ROOM_REASON = "Messages must be from the same room or related threads"
THREAD_PARENTS_REASON = "Messages from threads with different parent rooms cannot be combined"
NO_PARENT_REASON = "Thread rooms have no parent message, cannot determine source room"


def analyze_rooms(
    rooms: Iterable[Room],
    parent_room_of: Mapping[int, Room | None],
    scanned_room: Room | None = None,
) -> ValidationResult:
    """
    Resolve the source room for a set of rooms.

    Args:
        rooms: Rooms the messages live in (duplicates allowed)
        parent_room_of: Thread room id -> room of its parent message (None if gone)
        scanned_room: Room a room-scoped scan is running against, if any
    """
    unique: dict[int, Room] = {room.id: room for room in rooms}
    if not unique:
        return ValidationResult.invalid("Messages must have associated rooms")

    thread_rooms = [room for room in unique.values() if room.is_thread]
    other_rooms = [room for room in unique.values() if not room.is_thread]

    if not thread_rooms:
        if len(other_rooms) > 1:
            return ValidationResult.invalid(SAME_ROOM_REASON)
        source_room = other_rooms[0]
    else:
        parents: dict[int, Room] = {}
        for thread in thread_rooms:
            parent = parent_room_of.get(thread.id)
            if parent is not None:
                parents[parent.id] = parent

        if len(parents) > 1:
            return ValidationResult.invalid(THREAD_PARENTS_REASON)
        if not parents:
            return ValidationResult.invalid(NO_PARENT_REASON)

        source_room = next(iter(parents.values()))
        for room in other_rooms:
            if room.id != source_room.id:
                return ValidationResult.invalid(
                    f"Messages from non-thread room {room.id} that doesn't match "
                    f"parent room {source_room.id} cannot be combined"
                )

    if scanned_room is not None and source_room.id != scanned_room.id:
        return ValidationResult(
            valid=False,
            source_room=source_room,
            reason=f"Threads belong to room {source_room.id} but scanning room {scanned_room.id}",
        )

    return ValidationResult.ok(source_room)


def analyze(
    messages: Sequence[Message],
    scanned_room: Room | None = None,
    conn: sqlite3.Connection | None = None,
) -> ValidationResult:
    """Load the rooms behind ``messages`` and resolve their source room."""
    if not messages:
        return ValidationResult.invalid("No messages provided")

    rooms = RoomRepository.get_many({m.room_id for m in messages}, conn)
    if not rooms:
        return ValidationResult.invalid("Messages must have associated rooms")

    parent_room_of = RoomRepository.parent_rooms(rooms.values(), conn)
    return analyze_rooms(rooms.values(), parent_room_of, scanned_room)


def validate(
    messages: Sequence[Message],
    scanned_room: Room | None = None,
    conn: sqlite3.Connection | None = None,
) -> Room:
    """
    Resolve the source room or raise.

    Raises:
        InvalidStateError: With the validator's reason
    """
    result = analyze(messages, scanned_room, conn)
    if not result.valid or result.source_room is None:
        raise InvalidStateError(result.reason or "Invalid conversation")
    return result.source_room
