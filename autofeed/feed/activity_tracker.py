"""
Activity Tracker - cheap per-room trigger decision for expensive scans.

Per-room state lives only in Redis under ``autofeed:activity:{room_id}:*``:

    messages       message counter (INCR)
    participants   set of author ids (SADD)
    last_message   epoch seconds of the latest recorded message
    last_scan      epoch seconds of the last completed scan (drives cooldown)
    scan_lock      SET NX EX lock; at most one scan in flight per room

Every key carries the state TTL. ``record`` runs inline with message creation,
so it never raises: any store or lookup failure is logged and reported as
``TrackerStatus.IGNORED``.
"""

from __future__ import annotations

import time
from collections.abc import Callable

import redis

from autofeed.config import ACTIVITY_KEY_NAMESPACE, FeedConfig
from autofeed.feed.types import RoomActivity, TrackerDecision, TrackerStatus
from autofeed.infrastructure.redis_store import get_redis
from autofeed.infrastructure.retry import RetryPolicy
from autofeed.observability.logging import get_logger
from autofeed.observability.telemetry import counter, log_event
from autofeed.storage.models import Message, Room
from autofeed.storage.repository import RoomRepository

logger = get_logger(__name__)

_COUNTER_SUFFIXES = ("messages", "participants", "last_message", "scan_lock")


class ActivityTracker:
    def __init__(
        self,
        config: FeedConfig,
        client: redis.Redis | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self._client = client
        self.clock = clock
        self._policy = RetryPolicy(stage="activity_tracker")

    @property
    def client(self) -> redis.Redis:
        return self._client if self._client is not None else get_redis()

    def key(self, room_id: int, suffix: str) -> str:
        return f"{ACTIVITY_KEY_NAMESPACE}:{room_id}:{suffix}"

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record(self, message: Message) -> TrackerDecision:
        """
        Count ``message`` toward its room and decide whether to trigger a scan.

        Thread replies count toward the room holding the thread's parent message.
        """
        if not self.config.automated_scans_enabled:
            return TrackerDecision.ignored()

        try:
            room = self._canonical_room(message)
            if room is None:
                return TrackerDecision.ignored()

            # Not retried: a reply lost after EXEC would count the message twice
            self._increment(room.id, message.creator_id)
            activity = self._policy.execute(self._load, room.id)
            decision = self._evaluate(activity)

            if decision.trigger and not self._policy.execute(self._acquire_lock, room.id):
                decision = TrackerDecision(
                    trigger=False,
                    status=TrackerStatus.LOCKED,
                    room_id=room.id,
                    message_count=activity.message_count,
                    participant_count=activity.participant_count,
                )
        except Exception as e:
            counter("activity_tracker.record_error")
            logger.warning(
                "Activity tracking failed for message %s in room %s: %s",
                message.id,
                message.room_id,
                e,
            )
            return TrackerDecision.ignored(message.room_id)

        counter(f"activity_tracker.{decision.status.value}")
        if decision.trigger:
            log_event(
                "activity_tracker.triggered",
                room_id=decision.room_id,
                status=decision.status.value,
                messages=decision.message_count,
                participants=decision.participant_count,
            )
        return decision

    def _canonical_room(self, message: Message) -> Room | None:
        if message.is_copy:
            return None

        room = RoomRepository.get(message.room_id)
        if room is None:
            return None
        if room.is_thread:
            if not room.active:
                return None
            room = RoomRepository.parent_room(room)
            if room is None:
                return None

        return room if room.is_scannable else None

    def _increment(self, room_id: int, participant_id: int) -> None:
        ttl = self.config.state_ttl_seconds
        messages_key = self.key(room_id, "messages")
        participants_key = self.key(room_id, "participants")

        pipe = self.client.pipeline(transaction=True)
        pipe.incr(messages_key)
        pipe.expire(messages_key, ttl)
        pipe.sadd(participants_key, str(participant_id))
        pipe.expire(participants_key, ttl)
        pipe.set(self.key(room_id, "last_message"), repr(self.clock()), ex=ttl)
        pipe.execute()

    def _load(self, room_id: int) -> RoomActivity:
        pipe = self.client.pipeline(transaction=False)
        pipe.get(self.key(room_id, "messages"))
        pipe.scard(self.key(room_id, "participants"))
        pipe.get(self.key(room_id, "last_scan"))
        pipe.exists(self.key(room_id, "scan_lock"))
        count, participants, last_scan, locked = pipe.execute()
        return RoomActivity(
            room_id=room_id,
            message_count=int(count or 0),
            participant_count=int(participants or 0),
            last_scan_at=float(last_scan) if last_scan else None,
            locked=bool(locked),
        )

    def _evaluate(self, activity: RoomActivity) -> TrackerDecision:
        def decide(trigger: bool, status: TrackerStatus) -> TrackerDecision:
            return TrackerDecision(
                trigger=trigger,
                status=status,
                room_id=activity.room_id,
                message_count=activity.message_count,
                participant_count=activity.participant_count,
            )

        if self._cooldown_remaining(activity) > 0:
            return decide(False, TrackerStatus.COOLDOWN)
        if activity.locked:
            return decide(False, TrackerStatus.LOCKED)
        if activity.message_count >= self.config.activity_message_threshold:
            return decide(True, TrackerStatus.MESSAGE_THRESHOLD)
        if (
            activity.message_count >= self.config.activity_quality_message_threshold
            and activity.participant_count >= self.config.activity_quality_participant_threshold
        ):
            return decide(True, TrackerStatus.QUALITY_THRESHOLD)
        return decide(False, TrackerStatus.MONITORING)

    def _cooldown_remaining(self, activity: RoomActivity) -> float:
        if activity.last_scan_at is None:
            return 0.0
        return max(0.0, activity.last_scan_at + self.config.cooldown_seconds - self.clock())

    def _acquire_lock(self, room_id: int) -> bool:
        acquired = self.client.set(
            self.key(room_id, "scan_lock"),
            repr(self.clock()),
            nx=True,
            ex=self.config.state_ttl_seconds,
        )
        return bool(acquired)

    # ------------------------------------------------------------------
    # Scan lifecycle
    # ------------------------------------------------------------------

    def mark_scanned(self, room_id: int) -> None:
        """
        Clear counters and lock, and start the cooldown window.

        Raises:
            TransientStoreError: If Redis stays unreachable
        """
        self._policy.execute(self._mark_scanned, room_id)
        logger.info("Marked room %s as scanned", room_id)

    def _mark_scanned(self, room_id: int) -> None:
        ttl = max(self.config.state_ttl_seconds, self.config.cooldown_seconds)
        pipe = self.client.pipeline(transaction=True)
        pipe.delete(*(self.key(room_id, suffix) for suffix in _COUNTER_SUFFIXES))
        pipe.set(self.key(room_id, "last_scan"), repr(self.clock()), ex=ttl)
        pipe.execute()

    def reset(self, room_id: int) -> None:
        """
        Clear counters and lock without starting a cooldown.

        Raises:
            TransientStoreError: If Redis stays unreachable
        """
        self._policy.execute(
            self.client.delete, *(self.key(room_id, suffix) for suffix in _COUNTER_SUFFIXES)
        )
        logger.info("Reset activity state for room %s", room_id)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def activity(self, room_id: int) -> RoomActivity:
        return self._policy.execute(self._load, room_id)

    def should_scan(self, room_id: int) -> TrackerDecision:
        """Evaluate the trigger rules for ``room_id`` without recording or locking."""
        try:
            return self._evaluate(self.activity(room_id))
        except Exception as e:
            logger.warning("Could not evaluate activity for room %s: %s", room_id, e)
            return TrackerDecision.ignored(room_id)

    def cooldown_remaining_seconds(self, room_id: int) -> int:
        try:
            return int(round(self._cooldown_remaining(self.activity(room_id))))
        except Exception as e:
            logger.warning("Could not read cooldown for room %s: %s", room_id, e)
            return 0

    def active_room_ids(self) -> list[int]:
        """Rooms with live message counters, found by scanning the key space."""
        pattern = f"{ACTIVITY_KEY_NAMESPACE}:*:messages"
        room_ids: set[int] = set()
        for key in self._policy.execute(lambda: list(self.client.scan_iter(match=pattern))):
            if isinstance(key, bytes):
                key = key.decode()
            try:
                room_ids.add(int(key.split(":")[-2]))
            except (ValueError, IndexError):
                logger.warning("Ignoring unexpected activity key %s", key)
        return sorted(room_ids)
