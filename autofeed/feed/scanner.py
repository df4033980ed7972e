"""
Scanner - gather a bounded message window and ask the completion service to
segment it into candidate conversations.

Room-scoped scans read one room plus its recently active threads: a recent
lookback, a not-yet-in-feed backlog to fill the budget, and a small block of
older context-only messages that can inform the model but never be claimed.
Global scans read every not-in-feed message from eligible rooms inside the
lookback. Direct and derived rooms, and threads under them, are never read.

The model's answer is untrusted: ids outside the window are dropped, size and
participant minimums are re-checked, each candidate must resolve to one
source room, and summaries are hard-capped. A completion or parse failure
yields no conversations.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from autofeed.config import LLM_LONG_TIMEOUT_SECONDS, FeedConfig
from autofeed.feed.transcript import build_transcript, chronological, truncate_summary
from autofeed.feed.types import Conversation
from autofeed.feed.validator import analyze_rooms
from autofeed.llm.gateway import CompleteFn, CompletionError, complete, parse_structured
from autofeed.llm.prompts import render_prompt
from autofeed.observability.logging import get_logger
from autofeed.observability.telemetry import counter, log_event, time_block
from autofeed.storage.models import Message, Room, utc_now
from autofeed.storage.repository import MessageRepository, RoomRepository

logger = get_logger(__name__)


class DetectedConversation(BaseModel):
    """One conversation as returned by the model."""

    model_config = ConfigDict(extra="ignore")

    message_ids: list[int] = Field(default_factory=list)
    title: str = ""
    summary: str = ""
    participants: list[str] = Field(default_factory=list)
    topic_tags: list[str] = Field(default_factory=list)
    key_insight: str | None = None
    preview_message_id: int | None = None

    @field_validator("preview_message_id", mode="before")
    @classmethod
    def _lenient_preview(cls, v: Any) -> Any:
        try:
            return int(v) if v is not None else None
        except (TypeError, ValueError):
            return None


class DetectionResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    conversations: list[DetectedConversation] = Field(default_factory=list)


DETECTION_SCHEMA = DetectionResponse.model_json_schema()


@dataclass
class ScanWindow:
    messages: list[Message] = field(default_factory=list)
    rooms: dict[int, Room] = field(default_factory=dict)
    parent_room_of: dict[int, Room | None] = field(default_factory=dict)
    context_only_ids: set[int] = field(default_factory=set)

    @property
    def claimable_ids(self) -> set[int]:
        return {m.id for m in self.messages if m.id not in self.context_only_ids}


class Scanner:
    def __init__(self, config: FeedConfig, complete_fn: CompleteFn = complete):
        self.config = config
        self.complete_fn = complete_fn

    def scan(self, room: Room | None = None) -> list[Conversation]:
        """Detect candidate conversations in ``room``, or globally when ``room`` is None."""
        if not self.config.automated_scans_enabled:
            return []

        window = self.fetch_room_window(room) if room is not None else self.fetch_global_window()
        if not window.messages:
            logger.info("Nothing to scan (room=%s)", room.id if room else "global")
            return []

        self._log_window(window, room)
        with time_block("scanner.detect"):
            conversations = self._detect(window, room)

        limit = self.config.max_conversations_per_scan
        if limit > 0 and len(conversations) > limit:
            logger.info("Capping conversations at %d (received %d)", limit, len(conversations))
            conversations = conversations[:limit]

        counter("scanner.conversations", len(conversations))
        return conversations

    # ------------------------------------------------------------------
    # Windows
    # ------------------------------------------------------------------

    def fetch_room_window(self, room: Room) -> ScanWindow:
        if not room.is_scannable:
            logger.info("Room %s is not eligible for scanning", room.id)
            return ScanWindow()

        cfg = self.config
        now = utc_now()
        lookback_start = now - timedelta(hours=cfg.room_scan_lookback_hours)
        backlog_floor = now - timedelta(days=cfg.backlog_days)

        room_ids = [room.id] + RoomRepository.active_thread_ids_since(
            room.id, lookback_start, cfg.room_scan_thread_limit
        )

        messages = MessageRepository.recent_in_rooms(
            room_ids, lookback_start, cfg.room_scan_message_limit
        )
        remaining = cfg.room_scan_message_limit - len(messages)
        if remaining > 0:
            messages += MessageRepository.backlog_in_rooms(
                room_ids,
                before=lookback_start,
                not_before=backlog_floor,
                limit=remaining + cfg.room_scan_context_backfill,
            )

        messages = chronological(messages)
        context: list[Message] = []
        if cfg.room_scan_context_backfill > 0 and messages:
            context = MessageRepository.context_before(
                room_ids,
                before=messages[0].created_at,
                not_before=backlog_floor,
                limit=cfg.room_scan_context_backfill,
            )

        seen = {m.id for m in messages}
        context = [m for m in context if m.id not in seen]
        return self._window(chronological(context + messages), {m.id for m in context})

    def fetch_global_window(self) -> ScanWindow:
        since = utc_now() - timedelta(hours=self.config.lookback_hours)
        messages = MessageRepository.unfed_since(since, self.config.global_scan_message_limit)
        return self._window(messages, set())

    def _window(self, messages: list[Message], context_only_ids: set[int]) -> ScanWindow:
        rooms = RoomRepository.get_many({m.room_id for m in messages})
        return ScanWindow(
            messages=messages,
            rooms=rooms,
            parent_room_of=RoomRepository.parent_rooms(rooms.values()),
            context_only_ids=context_only_ids,
        )

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def build_prompt(self, window: ScanWindow, room: Room | None) -> str:
        if room is not None:
            scope_line = (
                f"MESSAGES from #{room.name} and its threads "
                f"(recent {self.config.room_scan_lookback_hours} hours plus earlier backlog):"
            )
            continuation_rule = (
                "single valuable messages ARE allowed; they will be checked against existing cards."
            )
        else:
            scope_line = (
                f"RECENT MESSAGES (last {self.config.lookback_hours} hours, across all rooms):"
            )
            continuation_rule = "not applicable; every conversation needs 2+ participants."

        return render_prompt(
            "conversation_detection",
            scope_line=scope_line,
            messages=build_transcript(window.messages, window.rooms, window.context_only_ids),
            continuation_rule=continuation_rule,
            summary_max_chars=self.config.summary_max_chars,
        )

    def _detect(self, window: ScanWindow, room: Room | None) -> list[Conversation]:
        prompt = self.build_prompt(window, room)
        try:
            text = self.complete_fn(
                prompt,
                model=self.config.scan_model or None,
                response_format=DETECTION_SCHEMA,
                timeout=LLM_LONG_TIMEOUT_SECONDS,
            )
            response = parse_structured(text, DetectionResponse)
        except CompletionError as e:
            counter("scanner.completion_error")
            logger.error(
                "Conversation detection failed (room=%s): %s - %s",
                room.id if room else "global",
                type(e).__name__,
                e,
            )
            return []

        logger.info("Model proposed %d conversation(s)", len(response.conversations))
        detected: list[Conversation] = []
        for candidate in response.conversations:
            conversation = self._filter(candidate, window, room)
            if conversation is not None:
                detected.append(conversation)
        return detected

    def _filter(
        self, candidate: DetectedConversation, window: ScanWindow, room: Room | None
    ) -> Conversation | None:
        min_messages = 1 if room is not None else 2
        proposed = list(dict.fromkeys(candidate.message_ids))
        claimable = window.claimable_ids
        valid_ids = [i for i in proposed if i in claimable]

        if len(valid_ids) < len(proposed):
            counter("scanner.hallucinated_ids")
            logger.warning(
                "Dropping message ids outside the scan window: %s",
                [i for i in proposed if i not in claimable],
            )
        if len(valid_ids) < min_messages:
            return None

        by_id = {m.id: m for m in window.messages}
        selected = chronological([by_id[i] for i in valid_ids])

        if room is None and len({m.creator_id for m in selected}) < 2:
            logger.info("Skipping single-participant conversation %r", candidate.title)
            return None

        analysis = analyze_rooms(
            [window.rooms[m.room_id] for m in selected if m.room_id in window.rooms],
            window.parent_room_of,
            room,
        )
        if not analysis.valid:
            counter("scanner.invalid_conversation")
            logger.info("Skipping conversation %r: %s", candidate.title, analysis.reason)
            return None

        title = candidate.title.strip()
        if not title:
            logger.info("Skipping conversation without a title: %s", valid_ids)
            return None

        ordered_ids = [m.id for m in selected]
        preview = candidate.preview_message_id
        log_event(
            "scanner.detected",
            title=title,
            messages=len(ordered_ids),
            source_room_id=analysis.source_room.id if analysis.source_room else None,
        )
        return Conversation(
            message_ids=ordered_ids,
            title=title,
            summary=truncate_summary(candidate.summary, self.config.summary_max_chars),
            key_insight=(candidate.key_insight or "").strip() or None,
            participants=candidate.participants,
            topic_tags=candidate.topic_tags,
            preview_message_id=preview if preview in ordered_ids else None,
        )

    def _log_window(self, window: ScanWindow, room: Room | None) -> None:
        if room is None:
            logger.info(
                "Scanning %d non-feed messages from the last %d hours",
                len(window.messages),
                self.config.lookback_hours,
            )
            return
        logger.info(
            "Scanning %d messages from room %s (%s): %d context-only, %d already in feed",
            len(window.messages),
            room.id,
            room.name,
            len(window.context_only_ids),
            sum(1 for m in window.messages if m.in_feed),
        )
