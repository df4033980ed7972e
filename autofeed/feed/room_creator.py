"""
Room Creator - materialize a derived room and its feed card from an explicit
message-id set.

Creation is idempotent on the message fingerprint: repeating a call with the
same ids returns the original (room, card) pair. The room, membership grants,
message copies, card and in_feed flags are written in one transaction that
takes the write lock before the fingerprint is re-checked, so concurrent
creators of the same set cannot both succeed.
"""

from __future__ import annotations

from collections.abc import Iterable

from autofeed.errors import InvalidStateError, NotFoundError
from autofeed.feed import validator
from autofeed.feed.fingerprint import message_fingerprint
from autofeed.feed.types import CreationResult
from autofeed.infrastructure.database import db_transaction, retry_on_db_lock
from autofeed.observability.logging import get_logger
from autofeed.observability.telemetry import counter, log_event
from autofeed.storage.models import FeedCard, FeedCardType, Message, Room, RoomKind
from autofeed.storage.repository import FeedCardRepository, MessageRepository, RoomRepository

logger = get_logger(__name__)


def _normalize_ids(message_ids: Iterable[int]) -> list[int]:
    return list(dict.fromkeys(int(i) for i in message_ids))


def _load_messages(ids: list[int]) -> list[Message]:
    messages = [m for m in MessageRepository.get_many(ids) if m.active]
    if len(messages) != len(ids):
        missing = sorted(set(ids) - {m.id for m in messages})
        raise NotFoundError(f"One or more messages not found: {missing}")
    return messages


class RoomCreator:
    def create_conversation_room(
        self,
        message_ids: Iterable[int],
        title: str,
        summary: str,
        card_type: FeedCardType | str,
        promoted_by: int | None = None,
        key_insight: str | None = None,
        preview_message_id: int | None = None,
    ) -> CreationResult:
        """
        Create (or return the existing) derived room + feed card for ``message_ids``.

        Raises:
            InvalidStateError: Empty ids, missing title, bad type, or messages
                that do not resolve to one source room
            NotFoundError: One or more messages do not exist
        """
        ids = _normalize_ids(message_ids)
        if not ids:
            raise InvalidStateError("Message IDs cannot be empty")
        if not title or not title.strip():
            raise InvalidStateError("Title is required")
        try:
            card_type = FeedCardType(card_type)
        except ValueError:
            raise InvalidStateError("Type must be 'automated' or 'promoted'") from None

        messages = _load_messages(ids)
        source_room = validator.validate(messages)
        if not source_room.is_scannable:
            raise InvalidStateError(
                f"Messages from room {source_room.id} ({source_room.kind.value}) cannot be promoted"
            )

        fingerprint = message_fingerprint(ids)
        existing = self._existing(fingerprint)
        if existing is not None:
            return existing

        return self._materialize(
            messages=messages,
            source_room=source_room,
            fingerprint=fingerprint,
            title=title.strip(),
            summary=summary or "",
            card_type=card_type,
            promoted_by=promoted_by,
            key_insight=key_insight,
            preview_message_id=preview_message_id,
        )

    def _existing(self, fingerprint: str, conn=None) -> CreationResult | None:
        card = FeedCardRepository.get_by_fingerprint(fingerprint, conn)
        if card is None:
            return None
        room = RoomRepository.get(card.room_id, conn)
        if room is None:
            raise NotFoundError(f"Feed card {card.id} points at missing room {card.room_id}")
        logger.info("Feed card %s already exists for fingerprint %s", card.id, fingerprint[:12])
        counter("room_creator.existing")
        return CreationResult(room=room, feed_card=card, created=False)

    @retry_on_db_lock()
    def _materialize(
        self,
        messages: list[Message],
        source_room: Room,
        fingerprint: str,
        title: str,
        summary: str,
        card_type: FeedCardType,
        promoted_by: int | None,
        key_insight: str | None,
        preview_message_id: int | None,
    ) -> CreationResult:
        with db_transaction() as conn:
            conn.execute("BEGIN IMMEDIATE")

            existing = self._existing(fingerprint, conn)
            if existing is not None:
                return existing

            room = RoomRepository.create(
                conn,
                name=(key_insight or "").strip() or title,
                kind=RoomKind.DERIVED,
                creator_id=promoted_by or messages[0].creator_id,
                source_room_id=source_room.id,
            )
            granted = RoomRepository.copy_memberships(conn, source_room.id, room.id)
            MessageRepository.copy_into(conn, room.id, messages)

            preview_copy_id = None
            if preview_message_id is not None:
                original = next((m for m in messages if m.id == preview_message_id), None)
                preview_copy_id = MessageRepository.find_copy(
                    conn,
                    room.id,
                    preview_message_id,
                    original.client_message_id if original else None,
                )
                if preview_copy_id is None:
                    logger.warning(
                        "Preview message %s not found among copies in room %s",
                        preview_message_id,
                        room.id,
                    )

            card: FeedCard = FeedCardRepository.create(
                conn,
                room_id=room.id,
                title=title,
                summary=summary,
                card_type=card_type,
                fingerprint=fingerprint,
                promoted_by=promoted_by,
                preview_message_id=preview_copy_id,
            )
            MessageRepository.mark_in_feed(conn, (m.id for m in messages))

        counter("room_creator.created")
        log_event(
            "feed_card.created",
            card_id=card.id,
            room_id=room.id,
            source_room_id=source_room.id,
            type=card_type.value,
            messages=len(messages),
            memberships=granted,
        )
        return CreationResult(room=room, feed_card=card, created=True)
