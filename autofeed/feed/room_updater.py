"""
Room Updater - extend an existing feed card with newly detected messages.
"""

from __future__ import annotations

from collections.abc import Iterable

from autofeed.errors import InvalidStateError, NotFoundError
from autofeed.feed import validator
from autofeed.feed.room_creator import _load_messages, _normalize_ids
from autofeed.feed.types import UpdateResult
from autofeed.infrastructure.database import db_transaction, retry_on_db_lock
from autofeed.observability.logging import get_logger
from autofeed.observability.telemetry import counter, log_event
from autofeed.storage.models import FeedCard
from autofeed.storage.repository import FeedCardRepository, MessageRepository, RoomRepository

logger = get_logger(__name__)


class RoomUpdater:
    @retry_on_db_lock()
    def update_continuation(
        self,
        feed_card: FeedCard,
        new_message_ids: Iterable[int],
        updated_summary: str | None = None,
    ) -> UpdateResult:
        """
        Copy the genuinely new subset of ``new_message_ids`` into the card's room.

        Ids already copied into this card's room, or into any sibling derived
        room of the same source room, are skipped. When nothing new remains the
        card summary is still updated if one is given.

        Raises:
            InvalidStateError: Empty ids, or new messages from another source room
            NotFoundError: Card, its room, or a message is missing
        """
        ids = _normalize_ids(new_message_ids)
        if not ids:
            raise InvalidStateError("Message IDs cannot be empty")

        messages = _load_messages(ids)

        with db_transaction() as conn:
            conn.execute("BEGIN IMMEDIATE")

            card = FeedCardRepository.get(feed_card.id, conn)
            if card is None:
                raise NotFoundError(f"Feed card {feed_card.id} not found")
            room = RoomRepository.get(card.room_id, conn)
            if room is None or room.source_room_id is None:
                raise NotFoundError(f"Derived room for feed card {card.id} not found")

            sibling_rooms = RoomRepository.derived_room_ids(room.source_room_id, conn)
            already_copied = MessageRepository.copied_original_ids(conn, sibling_rooms, ids)
            new_messages = [m for m in messages if m.id not in already_copied]
            skipped = [i for i in ids if i in already_copied]

            if not new_messages:
                if updated_summary:
                    FeedCardRepository.touch(conn, card.id, updated_summary)
                logger.info(
                    "No new messages for feed card %s (skipped %s)%s",
                    card.id,
                    skipped,
                    ", summary updated" if updated_summary else "",
                )
                counter("room_updater.nothing_new")
                refreshed = FeedCardRepository.get(card.id, conn)
                return UpdateResult(room=room, feed_card=refreshed or card, copied_ids=[], skipped_ids=skipped)

            source_room = validator.validate(new_messages, conn=conn)
            if source_room.id != room.source_room_id:
                raise InvalidStateError(
                    f"Messages from room {source_room.id} cannot extend feed card {card.id} "
                    f"sourced from room {room.source_room_id}"
                )

            MessageRepository.copy_into(conn, room.id, new_messages)
            FeedCardRepository.touch(conn, card.id, updated_summary)
            RoomRepository.touch(conn, room.id)
            copied = [m.id for m in new_messages]
            MessageRepository.mark_in_feed(conn, copied)
            refreshed = FeedCardRepository.get(card.id, conn)

        counter("room_updater.continued")
        log_event(
            "feed_card.continued",
            card_id=card.id,
            room_id=room.id,
            copied=copied,
            skipped=skipped,
        )
        return UpdateResult(
            room=room, feed_card=refreshed or card, copied_ids=copied, skipped_ids=skipped
        )
