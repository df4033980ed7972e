"""
Scan jobs and the message-created hook.

``handle_message_created`` runs inline with every message write and only
talks to the tracker and the queue. The scan jobs run on the worker.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import redis

from autofeed.config import FeedConfig
from autofeed.feed.activity_tracker import ActivityTracker
from autofeed.feed.deduplicator import Deduplicator
from autofeed.feed.room_creator import RoomCreator
from autofeed.feed.room_updater import RoomUpdater
from autofeed.feed.scan_runner import ScanRunner
from autofeed.feed.scanner import Scanner
from autofeed.feed.types import ScanRunSummary, ScanSource, TrackerDecision
from autofeed.infrastructure.task_queue import ScanQueue
from autofeed.llm.gateway import CompleteFn, complete
from autofeed.observability.logging import get_logger
from autofeed.observability.telemetry import counter, time_block
from autofeed.storage.models import Message
from autofeed.storage.repository import RoomRepository

logger = get_logger(__name__)


@dataclass
class FeedServices:
    """Pipeline components sharing one config, Redis client and completion function."""

    config: FeedConfig
    tracker: ActivityTracker
    scanner: Scanner
    deduplicator: Deduplicator
    creator: RoomCreator = field(default_factory=RoomCreator)
    updater: RoomUpdater = field(default_factory=RoomUpdater)

    @classmethod
    def build(
        cls,
        config: FeedConfig,
        client: redis.Redis | None = None,
        complete_fn: CompleteFn = complete,
    ) -> FeedServices:
        return cls(
            config=config,
            tracker=ActivityTracker(config, client),
            scanner=Scanner(config, complete_fn),
            deduplicator=Deduplicator(config, complete_fn),
        )


def handle_message_created(
    message: Message, tracker: ActivityTracker, queue: ScanQueue
) -> TrackerDecision:
    """
    Record ``message`` and enqueue a room scan when the tracker triggers.

    Never raises. If the job cannot be enqueued the room's lock and counters
    are reset so the next message can trigger again.
    """
    decision = tracker.record(message)
    if not decision.trigger or decision.room_id is None:
        return decision

    try:
        job = queue.enqueue_room_scan(decision.room_id, decision.status.value)
        logger.info(
            "Enqueued scan job %s for room %s (%s)",
            job.id,
            decision.room_id,
            decision.status.value,
        )
    except Exception as e:
        counter("jobs.enqueue_failed")
        logger.error(
            "Failed to enqueue scan for room %s (message %s): %s",
            decision.room_id,
            message.id,
            e,
        )
        try:
            tracker.reset(decision.room_id)
        except Exception as reset_error:
            logger.error(
                "Failed to reset activity for room %s after enqueue failure: %s",
                decision.room_id,
                reset_error,
            )
    return decision


def run_room_scan(
    room_id: int, trigger_status: str | None, services: FeedServices
) -> ScanRunSummary | None:
    """
    Scan one room and apply the results, then start its cooldown.

    Returns None when scans are disabled or the room no longer exists.
    Any failure resets the room's activity state and re-raises.
    """
    if not services.config.automated_scans_enabled:
        return None

    tracker = services.tracker
    try:
        room = RoomRepository.get(room_id)
        if room is None:
            logger.warning("Room %s not found, resetting activity", room_id)
            tracker.reset(room_id)
            return None

        logger.info(
            "Starting scan for room %s (trigger: %s)", room.id, trigger_status or "threshold"
        )
        with time_block("jobs.room_scan"):
            conversations = services.scanner.scan(room)
            if conversations:
                summary = ScanRunner(
                    conversations,
                    ScanSource.ROOM,
                    services.deduplicator,
                    room=room,
                    creator=services.creator,
                    updater=services.updater,
                ).run()
            else:
                logger.info("No conversations detected for room %s", room.id)
                summary = ScanRunSummary()

        tracker.mark_scanned(room.id)
        return summary
    except Exception as e:
        logger.error("Error scanning room %s: %s - %s", room_id, type(e).__name__, e)
        counter("jobs.room_scan_failed")
        try:
            tracker.reset(room_id)
        except Exception as reset_error:
            logger.error("Failed to reset activity for room %s: %s", room_id, reset_error)
        raise


def run_scheduled_scan(services: FeedServices) -> ScanRunSummary | None:
    """
    Global fallback scan over every eligible room.

    Afterwards every room with live activity counters is marked scanned,
    whether or not the scan succeeded.
    """
    if not services.config.automated_scans_enabled:
        return None

    logger.info("Starting scheduled scan")
    try:
        with time_block("jobs.scheduled_scan"):
            conversations = services.scanner.scan()
            if not conversations:
                logger.info("No conversations detected in scheduled scan")
                return ScanRunSummary()
            return ScanRunner(
                conversations,
                ScanSource.GLOBAL,
                services.deduplicator,
                creator=services.creator,
                updater=services.updater,
            ).run()
    finally:
        _mark_tracked_rooms_scanned(services.tracker)
        logger.info("Scheduled scan complete")


def _mark_tracked_rooms_scanned(tracker: ActivityTracker) -> None:
    try:
        room_ids = tracker.active_room_ids()
    except Exception as e:
        logger.error("Could not list tracked rooms after scheduled scan: %s", e)
        return
    for room_id in room_ids:
        try:
            tracker.mark_scanned(room_id)
        except Exception as e:
            logger.error("Failed to mark room %s scanned: %s", room_id, e)
