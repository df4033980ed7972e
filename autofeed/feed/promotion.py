"""
Manual promotion - a moderator picks one message, the completion service
finds the conversation around it, and the Room Creator turns that into a
``promoted`` feed card.

Unlike the automated scan path, errors here are not swallowed: the caller
gets NotFoundError, InvalidStateError or a CompletionError.
"""

from __future__ import annotations

from datetime import timedelta

from pydantic import BaseModel, ConfigDict, Field, field_validator

from autofeed.config import FeedConfig
from autofeed.errors import InvalidStateError, NotFoundError
from autofeed.feed.room_creator import RoomCreator
from autofeed.feed.transcript import (
    build_transcript,
    chronological,
    format_message,
    truncate_summary,
)
from autofeed.feed.types import Conversation, CreationResult
from autofeed.llm.gateway import CompleteFn, complete, parse_structured
from autofeed.llm.prompts import render_prompt
from autofeed.observability.logging import get_logger
from autofeed.observability.telemetry import counter, log_event
from autofeed.storage.models import FeedCardType, Message, Room
from autofeed.storage.repository import MessageRepository, RoomRepository

logger = get_logger(__name__)


class RelatedMessages(BaseModel):
    model_config = ConfigDict(extra="ignore")

    related_message_ids: list[int] = Field(default_factory=list)
    conversation_flow: str = ""
    reasoning: str = ""


class PromotionDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: str
    summary: str = ""
    key_insight: str | None = None
    preview_message_id: int | None = None

    @field_validator("preview_message_id", mode="before")
    @classmethod
    def _lenient_preview(cls, v):
        try:
            return int(v) if v is not None else None
        except (TypeError, ValueError):
            return None


RELATED_SCHEMA = RelatedMessages.model_json_schema()
DETAILS_SCHEMA = PromotionDetails.model_json_schema()


class ConversationDetector:
    """Find the whole conversation around a promoted message."""

    def __init__(self, config: FeedConfig, complete_fn: CompleteFn = complete):
        self.config = config
        self.complete_fn = complete_fn

    def detect(self, promoted_message_id: int) -> Conversation:
        """
        Raises:
            NotFoundError: Promoted message missing or inactive
            CompletionError: Completion call or response parsing failed
        """
        promoted = MessageRepository.get(promoted_message_id)
        if promoted is None or not promoted.active:
            raise NotFoundError(f"Promoted message {promoted_message_id} not found")
        room = RoomRepository.get(promoted.room_id)
        if room is None:
            raise NotFoundError(f"Room {promoted.room_id} for message {promoted.id} not found")

        context = self._initial_context(promoted, room)
        related = self._related_ids(promoted, room, context)

        for _ in range(self.config.promotion_max_expansions):
            expanded = self._expand(promoted, room, context, related)
            if expanded is None:
                break
            context = expanded
            related = self._related_ids(promoted, room, context)

        conversation = self._details(promoted, related, context)
        log_event(
            "promotion.detected",
            message_id=promoted.id,
            room_id=room.id,
            related=len(conversation.message_ids),
            context=len(context),
        )
        return conversation

    # ------------------------------------------------------------------
    # Context windows
    # ------------------------------------------------------------------

    def _window(self, room: Room, start, end) -> list[Message]:
        messages = MessageRepository.in_room_between(
            room.id, start, end, self.config.promotion_max_context_messages
        )
        if room.is_thread and room.parent_message_id:
            parent = MessageRepository.get(room.parent_message_id)
            if parent is not None and parent.active:
                messages.insert(0, parent)
        return messages

    def _initial_context(self, promoted: Message, room: Room) -> list[Message]:
        hours = timedelta(hours=self.config.promotion_context_hours)
        start, end = promoted.created_at - hours, promoted.created_at + hours
        messages = self._window(room, start, end)

        thread = RoomRepository.thread_for_message(promoted.id)
        remaining = self.config.promotion_max_context_messages - len(messages)
        if thread is not None and remaining > 0:
            messages += MessageRepository.in_room_between(thread.id, start, end, remaining)

        return chronological(messages + [promoted])

    def _expand(
        self, promoted: Message, room: Room, context: list[Message], related: list[int]
    ) -> list[Message] | None:
        related_messages = [m for m in context if m.id in set(related)]
        if not related_messages:
            return None

        hours = timedelta(hours=self.config.promotion_context_hours)
        new_start = min(m.created_at for m in related_messages) - hours
        new_end = max(m.created_at for m in related_messages) + hours
        current_start = min(m.created_at for m in context)
        current_end = max(m.created_at for m in context)
        if new_start >= current_start and new_end <= current_end:
            return None

        expanded = chronological(self._window(room, new_start, new_end) + [promoted])
        if not {m.id for m in expanded} - {m.id for m in context}:
            return None

        logger.info(
            "Expanded promotion context for message %s: %d -> %d messages",
            promoted.id,
            len(context),
            len(expanded),
        )
        counter("promotion.context_expanded")
        return expanded

    # ------------------------------------------------------------------
    # Completion calls
    # ------------------------------------------------------------------

    def _rooms_for(self, messages: list[Message]) -> dict[int, Room]:
        return RoomRepository.get_many({m.room_id for m in messages})

    def _related_ids(self, promoted: Message, room: Room, context: list[Message]) -> list[int]:
        rooms = self._rooms_for(context)
        prompt = render_prompt(
            "promotion_related",
            promoted=format_message(promoted, room),
            context_hours=self.config.promotion_context_hours,
            room_name=room.name,
            messages=build_transcript(context, rooms),
        )
        text = self.complete_fn(prompt, response_format=RELATED_SCHEMA)
        response = parse_structured(text, RelatedMessages)

        available = {m.id for m in context}
        detected = set(response.related_message_ids) | {promoted.id}
        dropped = sorted(i for i in detected if i not in available)
        if dropped:
            logger.warning("Dropping related ids outside the promotion context: %s", dropped)
        logger.info("Related messages for %s: %s", promoted.id, response.reasoning)
        return sorted(i for i in detected if i in available)

    def _details(
        self, promoted: Message, related: list[int], context: list[Message]
    ) -> Conversation:
        wanted = set(related)
        messages = [m for m in context if m.id in wanted]
        prompt = render_prompt(
            "promotion_details",
            messages=build_transcript(messages, self._rooms_for(messages), with_location=False),
            summary_max_chars=self.config.summary_max_chars,
        )
        text = self.complete_fn(prompt, response_format=DETAILS_SCHEMA)
        details = parse_structured(text, PromotionDetails)

        ids = [m.id for m in messages]
        preview = details.preview_message_id
        return Conversation(
            message_ids=ids,
            title=details.title.strip(),
            summary=truncate_summary(details.summary, self.config.summary_max_chars),
            key_insight=(details.key_insight or "").strip() or None,
            participants=sorted({m.creator_name or str(m.creator_id) for m in messages}),
            preview_message_id=preview if preview in ids else None,
        )


def promote_message(
    message_id: int,
    promoted_by: int,
    config: FeedConfig,
    complete_fn: CompleteFn = complete,
    creator: RoomCreator | None = None,
) -> CreationResult:
    """
    Detect the conversation around ``message_id`` and create a promoted feed card.

    Raises:
        NotFoundError: Message missing
        InvalidStateError: Message lives in a derived feed room
        CompletionError: Detection failed
    """
    message = MessageRepository.get(message_id)
    if message is None:
        raise NotFoundError(f"Message {message_id} not found")
    room = RoomRepository.get(message.room_id)
    if room is None:
        raise NotFoundError(f"Room {message.room_id} for message {message_id} not found")
    if room.is_derived or message.is_copy:
        raise InvalidStateError("Cannot promote a message from a conversation room")

    conversation = ConversationDetector(config, complete_fn).detect(message_id)
    result = (creator or RoomCreator()).create_conversation_room(
        message_ids=conversation.message_ids,
        title=conversation.title,
        summary=conversation.summary,
        card_type=FeedCardType.PROMOTED,
        promoted_by=promoted_by,
        key_insight=conversation.key_insight,
        preview_message_id=conversation.preview_message_id,
    )
    counter("promotion.promoted")
    logger.info(
        "Promoted message %s by user %s into feed card %s (created=%s)",
        message_id,
        promoted_by,
        result.feed_card.id,
        result.created,
    )
    return result
