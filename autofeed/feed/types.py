"""
Result types passed between feed pipeline stages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from autofeed.storage.models import FeedCard, Room


class TrackerStatus(str, Enum):
    IGNORED = "ignored"
    COOLDOWN = "cooldown"
    LOCKED = "locked"
    MESSAGE_THRESHOLD = "message_threshold"
    QUALITY_THRESHOLD = "quality_threshold"
    MONITORING = "monitoring"


@dataclass(frozen=True)
class TrackerDecision:
    trigger: bool
    status: TrackerStatus
    room_id: int | None = None
    message_count: int = 0
    participant_count: int = 0

    @classmethod
    def ignored(cls, room_id: int | None = None) -> TrackerDecision:
        return cls(trigger=False, status=TrackerStatus.IGNORED, room_id=room_id)


@dataclass(frozen=True)
class RoomActivity:
    """Snapshot of a room's activity counters."""

    room_id: int
    message_count: int = 0
    participant_count: int = 0
    last_scan_at: float | None = None
    locked: bool = False


@dataclass
class Conversation:
    """A candidate conversation proposed by detection. Never persisted as-is."""

    message_ids: list[int]
    title: str
    summary: str = ""
    key_insight: str | None = None
    participants: list[str] = field(default_factory=list)
    topic_tags: list[str] = field(default_factory=list)
    preview_message_id: int | None = None


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    source_room: Room | None = None
    reason: str | None = None

    @classmethod
    def ok(cls, room: Room) -> ValidationResult:
        return cls(valid=True, source_room=room)

    @classmethod
    def invalid(cls, reason: str) -> ValidationResult:
        return cls(valid=False, reason=reason)


class DedupAction(str, Enum):
    SKIP = "skip"
    NEW_TOPIC = "new_topic"
    CONTINUATION = "continuation"


@dataclass(frozen=True)
class DedupResult:
    action: DedupAction
    reason: str
    fingerprint: str
    card: FeedCard | None = None
    similarity_score: float | None = None
    reasoning: str | None = None

    @classmethod
    def new_topic(cls, fingerprint: str, reason: str, reasoning: str | None = None) -> DedupResult:
        return cls(DedupAction.NEW_TOPIC, reason, fingerprint, reasoning=reasoning)


class ScanSource(str, Enum):
    ROOM = "room"
    GLOBAL = "global"


@dataclass(frozen=True)
class CreationResult:
    room: Room
    feed_card: FeedCard
    created: bool


@dataclass(frozen=True)
class UpdateResult:
    room: Room
    feed_card: FeedCard
    copied_ids: list[int]
    skipped_ids: list[int]


@dataclass
class ScanRunSummary:
    created: list[int] = field(default_factory=list)
    continued: list[int] = field(default_factory=list)
    skipped: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return len(self.created) + len(self.continued) + self.skipped + self.failed
