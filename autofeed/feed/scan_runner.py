"""
Scan Runner - turn detected conversations into feed actions.

Each candidate is resolved to its source room, checked by the deduplicator,
and then created, continued or skipped. A failure on one candidate is logged
and counted without affecting the others.
"""

from __future__ import annotations

from collections.abc import Sequence

from autofeed.feed import validator
from autofeed.feed.deduplicator import Deduplicator
from autofeed.feed.fingerprint import message_fingerprint
from autofeed.feed.room_creator import RoomCreator
from autofeed.feed.room_updater import RoomUpdater
from autofeed.feed.types import Conversation, DedupAction, ScanRunSummary, ScanSource
from autofeed.observability.logging import get_logger
from autofeed.observability.telemetry import counter, log_event
from autofeed.storage.models import FeedCard, FeedCardType, Room
from autofeed.storage.repository import FeedCardRepository, MessageRepository

logger = get_logger(__name__)


class ScanRunner:
    def __init__(
        self,
        conversations: Sequence[Conversation],
        source: ScanSource | str,
        deduplicator: Deduplicator,
        room: Room | None = None,
        creator: RoomCreator | None = None,
        updater: RoomUpdater | None = None,
    ):
        self.conversations = list(conversations)
        self.source = ScanSource(source)
        self.room = room
        self.deduplicator = deduplicator
        self.creator = creator or RoomCreator()
        self.updater = updater or RoomUpdater()

    def run(self) -> ScanRunSummary:
        summary = ScanRunSummary()
        if not self.conversations:
            return summary

        logger.info(
            "Processing %d conversation(s) (source=%s, room=%s)",
            len(self.conversations),
            self.source.value,
            self.room.id if self.room else None,
        )

        for conversation in self.conversations:
            try:
                self._process(conversation, summary)
            except Exception as e:
                summary.failed += 1
                counter("scan_runner.failed")
                logger.error(
                    "Error processing conversation %r (messages=%s, source=%s, room=%s): %s - %s",
                    conversation.title,
                    conversation.message_ids,
                    self.source.value,
                    self.room.id if self.room else None,
                    type(e).__name__,
                    e,
                    exc_info=True,
                )

        log_event(
            "scan_runner.completed",
            source=self.source.value,
            room_id=self.room.id if self.room else None,
            created=len(summary.created),
            continued=len(summary.continued),
            skipped=summary.skipped,
            failed=summary.failed,
        )
        return summary

    def _process(self, conversation: Conversation, summary: ScanRunSummary) -> None:
        source_room_id = self._source_room_id(conversation.message_ids)

        if self.room is not None and source_room_id is not None and source_room_id != self.room.id:
            logger.info(
                "Skipping conversation %r: source room %s does not match scanned room %s",
                conversation.title,
                source_room_id,
                self.room.id,
            )
            summary.skipped += 1
            return

        result = self.deduplicator.check(conversation, source_room_id=source_room_id)

        if len(conversation.message_ids) == 1:
            if result.action == DedupAction.CONTINUATION and result.card is not None:
                self._continue(conversation, result.card, summary)
            else:
                logger.info(
                    "Single message %s is not a continuation (%s), skipping",
                    conversation.message_ids[0],
                    result.reason,
                )
                summary.skipped += 1
            return

        if result.action == DedupAction.SKIP:
            logger.info("Skipping conversation %r: %s", conversation.title, result.reason)
            summary.skipped += 1
        elif result.action == DedupAction.CONTINUATION and result.card is not None:
            self._continue(conversation, result.card, summary)
        else:
            self._create(conversation, summary)

    def _create(self, conversation: Conversation, summary: ScanRunSummary) -> None:
        # In-feed messages were context for the model, not material for a new card
        unfed = {m.id for m in MessageRepository.get_many(conversation.message_ids) if not m.in_feed}
        ids = [i for i in conversation.message_ids if i in unfed]
        if not ids:
            logger.info("Skipping conversation %r: all messages already in feed", conversation.title)
            summary.skipped += 1
            return
        if len(ids) < len(conversation.message_ids):
            logger.info(
                "Filtered out %d already-in-feed message(s) from %r",
                len(conversation.message_ids) - len(ids),
                conversation.title,
            )

        if FeedCardRepository.get_by_fingerprint(message_fingerprint(ids)) is not None:
            logger.info("Fingerprint match for %r, skipping creation", conversation.title)
            summary.skipped += 1
            return

        result = self.creator.create_conversation_room(
            message_ids=ids,
            title=conversation.title,
            summary=conversation.summary,
            card_type=FeedCardType.AUTOMATED,
            key_insight=conversation.key_insight,
            preview_message_id=conversation.preview_message_id,
        )
        if result.created:
            summary.created.append(result.feed_card.id)
            counter("scan_runner.created")
            logger.info(
                "Created feed card %s: %r (preview=%s)",
                result.feed_card.id,
                conversation.title,
                result.feed_card.preview_message_id,
            )
        else:
            summary.skipped += 1

    def _continue(self, conversation: Conversation, card: FeedCard, summary: ScanRunSummary) -> None:
        # The full id list goes through; the updater drops what is already copied
        result = self.updater.update_continuation(card, conversation.message_ids)
        if result.copied_ids:
            summary.continued.append(card.id)
            counter("scan_runner.continued")
            logger.info("Extended feed card %s with messages %s", card.id, result.copied_ids)
        else:
            summary.skipped += 1

    def _source_room_id(self, message_ids: list[int]) -> int | None:
        messages = MessageRepository.get_many(message_ids)
        if not messages:
            return None
        analysis = validator.analyze(messages)
        if not analysis.valid or analysis.source_room is None:
            logger.warning("Cannot determine source room for %s: %s", message_ids, analysis.reason)
            return None
        return analysis.source_room.id
