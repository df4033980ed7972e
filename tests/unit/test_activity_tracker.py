"""
Tests for the Redis-backed activity tracker.

fakeredis stands in for the shared store; the tracker clock is injected so
cooldown windows can be crossed without sleeping.
"""

from __future__ import annotations

import dataclasses
from concurrent.futures import ThreadPoolExecutor

import pytest
import redis

from autofeed.feed.activity_tracker import ActivityTracker
from autofeed.feed.types import TrackerStatus
from autofeed.storage.models import RoomKind


class Clock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class LostReplyRedis:
    """Commits the next MULTI/EXEC, then drops its reply with a connection error."""

    def __init__(self, client):
        self.client = client
        self.drop_next = True

    def pipeline(self, transaction=True):
        pipe = self.client.pipeline(transaction=transaction)
        if not transaction:
            return pipe
        original = pipe.execute

        def execute(*args, **kwargs):
            result = original(*args, **kwargs)
            if self.drop_next:
                self.drop_next = False
                raise redis.ConnectionError("reply lost")
            return result

        pipe.execute = execute
        return pipe

    def __getattr__(self, name):
        return getattr(self.client, name)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def tracker(config, redis_client, clock):
    return ActivityTracker(config, redis_client, clock=clock)


@pytest.fixture
def people(seed):
    return [seed.user(name) for name in ("alice", "bob", "carol", "dave")]


class TestRecord:
    def test_below_thresholds_is_monitoring(self, tracker, seed, people):
        room = seed.room()
        decision = tracker.record(seed.message(room, people[0]))

        assert decision.status == TrackerStatus.MONITORING
        assert not decision.trigger
        assert decision.message_count == 1
        assert decision.participant_count == 1

    def test_message_threshold_triggers_once(self, tracker, seed, people, config):
        room = seed.room()
        decisions = [
            tracker.record(seed.message(room, people[0], f"m{i}"))
            for i in range(config.activity_message_threshold)
        ]

        assert [d.trigger for d in decisions].count(True) == 1
        assert decisions[-1].status == TrackerStatus.MESSAGE_THRESHOLD
        assert decisions[-1].room_id == room.id

        following = tracker.record(seed.message(room, people[0], "one more"))
        assert following.status == TrackerStatus.LOCKED
        assert not following.trigger

    def test_quality_threshold_needs_participants(self, tracker, seed, people, config):
        room = seed.room()
        decisions = [
            tracker.record(seed.message(room, people[i % 3], f"m{i}"))
            for i in range(config.activity_quality_message_threshold)
        ]

        assert decisions[-1].status == TrackerStatus.QUALITY_THRESHOLD
        assert decisions[-1].trigger
        assert decisions[-1].participant_count == 3

    def test_quality_threshold_not_met_with_two_participants(self, tracker, seed, people, config):
        room = seed.room()
        for i in range(config.activity_quality_message_threshold):
            decision = tracker.record(seed.message(room, people[i % 2], f"m{i}"))
        assert decision.status == TrackerStatus.MONITORING

    def test_thread_reply_counts_toward_parent_room(self, tracker, seed, people, redis_client):
        room = seed.room()
        parent = seed.message(room, people[0], "parent")
        thread = seed.thread(parent)

        decision = tracker.record(seed.message(thread, people[1], "reply"))

        assert decision.room_id == room.id
        assert redis_client.get(tracker.key(room.id, "messages")) == "1"
        assert redis_client.get(tracker.key(thread.id, "messages")) is None

    @pytest.mark.parametrize("kind", [RoomKind.DIRECT, RoomKind.DERIVED])
    def test_ignored_room_kinds(self, tracker, seed, people, kind):
        room = seed.room(kind=kind)
        decision = tracker.record(seed.message(room, people[0]))
        assert decision.status == TrackerStatus.IGNORED

    def test_inactive_room_is_ignored(self, tracker, seed, people):
        room = seed.room(active=False)
        assert tracker.record(seed.message(room, people[0])).status == TrackerStatus.IGNORED

    def test_copies_are_ignored(self, tracker, seed, people):
        room = seed.room()
        original = seed.message(room, people[0])
        copy = seed.message(room, people[0], original_message_id=original.id)
        assert tracker.record(copy).status == TrackerStatus.IGNORED

    def test_disabled_scans_are_ignored(self, config, redis_client, seed, people):
        tracker = ActivityTracker(dataclasses.replace(config, automated_scans_enabled=False), redis_client)
        decision = tracker.record(seed.message(seed.room(), people[0]))
        assert decision.status == TrackerStatus.IGNORED

    def test_store_failure_is_swallowed(self, config, seed, people):
        class BrokenRedis:
            def pipeline(self, *args, **kwargs):
                raise redis.ConnectionError("connection refused")

        tracker = ActivityTracker(config, BrokenRedis())
        decision = tracker.record(seed.message(seed.room(), people[0]))
        assert decision.status == TrackerStatus.IGNORED
        assert not decision.trigger

    def test_lost_reply_does_not_double_count(self, config, redis_client, seed, people):
        client = LostReplyRedis(redis_client)
        tracker = ActivityTracker(config, client)
        room = seed.room()

        first = tracker.record(seed.message(room, people[0]))
        assert first.status == TrackerStatus.IGNORED
        assert redis_client.get(tracker.key(room.id, "messages")) == "1"

        second = tracker.record(seed.message(room, people[1]))
        assert second.message_count == 2
        assert second.participant_count == 2

    def test_keys_carry_ttl(self, tracker, seed, people, redis_client, config):
        room = seed.room()
        tracker.record(seed.message(room, people[0]))
        for suffix in ("messages", "participants", "last_message"):
            ttl = redis_client.ttl(tracker.key(room.id, suffix))
            assert 0 < ttl <= config.state_ttl_seconds


class TestScanLifecycle:
    def test_mark_scanned_starts_cooldown(self, tracker, seed, people, config, clock):
        room = seed.room()
        for i in range(config.activity_message_threshold):
            tracker.record(seed.message(room, people[0], f"m{i}"))

        tracker.mark_scanned(room.id)
        activity = tracker.activity(room.id)
        assert activity.message_count == 0
        assert not activity.locked

        decision = tracker.record(seed.message(room, people[0], "during cooldown"))
        assert decision.status == TrackerStatus.COOLDOWN
        assert tracker.cooldown_remaining_seconds(room.id) == config.cooldown_seconds

    def test_cooldown_expires(self, tracker, seed, people, config, clock):
        room = seed.room()
        tracker.mark_scanned(room.id)

        clock.now += config.cooldown_seconds + 1

        assert tracker.cooldown_remaining_seconds(room.id) == 0
        decision = tracker.record(seed.message(room, people[0]))
        assert decision.status == TrackerStatus.MONITORING

    def test_reset_clears_without_cooldown(self, tracker, seed, people, config):
        room = seed.room()
        for i in range(config.activity_message_threshold):
            tracker.record(seed.message(room, people[0], f"m{i}"))

        tracker.reset(room.id)

        assert tracker.activity(room.id).message_count == 0
        assert tracker.should_scan(room.id).status == TrackerStatus.MONITORING

    def test_should_scan_does_not_record(self, tracker, seed, people):
        room = seed.room()
        tracker.record(seed.message(room, people[0]))
        tracker.should_scan(room.id)
        assert tracker.activity(room.id).message_count == 1

    def test_active_room_ids(self, tracker, seed, people):
        first, second = seed.room("one"), seed.room("two")
        tracker.record(seed.message(first, people[0]))
        tracker.record(seed.message(second, people[1]))
        assert tracker.active_room_ids() == sorted([first.id, second.id])


def test_concurrent_records_acquire_one_lock(config, redis_client, seed, people):
    tracker = ActivityTracker(dataclasses.replace(config, activity_message_threshold=1), redis_client)
    room = seed.room()
    messages = [seed.message(room, people[i % 4], f"m{i}") for i in range(12)]

    with ThreadPoolExecutor(max_workers=6) as pool:
        decisions = list(pool.map(tracker.record, messages))

    assert sum(1 for d in decisions if d.trigger) == 1
    assert all(
        d.status == TrackerStatus.LOCKED for d in decisions if not d.trigger
    )
