from __future__ import annotations

import dataclasses

import pytest

from autofeed.feed.jobs import FeedServices, handle_message_created, run_room_scan, run_scheduled_scan
from autofeed.feed.types import TrackerStatus
from autofeed.infrastructure.task_queue import ROOM_SCAN, ScanQueue
from autofeed.storage.repository import FeedCardRepository


class BrokenQueue:
    def enqueue_room_scan(self, room_id, trigger_status):
        raise ConnectionError("queue unavailable")


class ExplodingScanner:
    def scan(self, room=None):
        raise RuntimeError("scanner blew up")


@pytest.fixture
def eager_config(config):
    return dataclasses.replace(config, activity_message_threshold=2)


@pytest.fixture
def queue(redis_client):
    return ScanQueue(redis_client, name="test:jobs")


@pytest.fixture
def people(seed):
    return [seed.user("alice"), seed.user("bob")]


def _services(config, redis_client, completion):
    return FeedServices.build(config, redis_client, complete_fn=completion)


class TestHandleMessageCreated:
    def test_trigger_enqueues_room_scan(self, eager_config, redis_client, queue, seed, people, fake_completion):
        tracker = _services(eager_config, redis_client, fake_completion()).tracker
        room = seed.room()

        first = handle_message_created(seed.message(room, people[0]), tracker, queue)
        second = handle_message_created(seed.message(room, people[1]), tracker, queue)

        assert not first.trigger
        assert second.trigger
        job = queue.dequeue()
        assert job.type == ROOM_SCAN
        assert job.args == {"room_id": room.id, "trigger_status": "message_threshold"}

    def test_enqueue_failure_resets_room(self, eager_config, redis_client, seed, people, fake_completion):
        tracker = _services(eager_config, redis_client, fake_completion()).tracker
        room = seed.room()

        handle_message_created(seed.message(room, people[0]), tracker, BrokenQueue())
        decision = handle_message_created(seed.message(room, people[1]), tracker, BrokenQueue())

        assert decision.trigger
        activity = tracker.activity(room.id)
        assert activity.message_count == 0
        assert not activity.locked

    def test_non_trigger_does_not_enqueue(self, config, redis_client, queue, seed, people, fake_completion):
        tracker = _services(config, redis_client, fake_completion()).tracker

        decision = handle_message_created(seed.message(seed.room(), people[0]), tracker, queue)

        assert decision.status == TrackerStatus.MONITORING
        assert queue.pending_count() == 0


class TestRunRoomScan:
    def test_scan_creates_card_and_starts_cooldown(self, config, redis_client, seed, people, fake_completion):
        room = seed.room()
        msgs = seed.messages(room, people, 3)
        completion = fake_completion(
            {"conversations": [{"message_ids": [m.id for m in msgs], "title": "Roadmap", "summary": "Plans."}]}
        )
        services = _services(config, redis_client, completion)

        summary = run_room_scan(room.id, "manual", services)

        assert len(summary.created) == 1
        assert FeedCardRepository.get(summary.created[0]).title == "Roadmap"
        assert services.tracker.cooldown_remaining_seconds(room.id) > 0

    def test_no_conversations_still_marks_scanned(self, config, redis_client, seed, people, fake_completion):
        room = seed.room()
        seed.messages(room, people, 2)
        services = _services(config, redis_client, fake_completion({"conversations": []}))

        summary = run_room_scan(room.id, None, services)

        assert summary.total == 0
        assert services.tracker.cooldown_remaining_seconds(room.id) > 0

    def test_missing_room_resets_activity(self, eager_config, redis_client, seed, people, fake_completion):
        services = _services(eager_config, redis_client, fake_completion())
        room = seed.room()
        services.tracker.record(seed.message(room, people[0]))

        assert run_room_scan(room.id + 100, "manual", services) is None
        assert services.tracker.activity(room.id + 100).message_count == 0

    def test_failure_resets_and_reraises(self, eager_config, redis_client, seed, people, fake_completion):
        services = _services(eager_config, redis_client, fake_completion())
        services.scanner = ExplodingScanner()
        room = seed.room()
        for person in people:
            services.tracker.record(seed.message(room, person))
        assert services.tracker.activity(room.id).locked

        with pytest.raises(RuntimeError, match="scanner blew up"):
            run_room_scan(room.id, "message_threshold", services)

        activity = services.tracker.activity(room.id)
        assert not activity.locked
        assert activity.last_scan_at is None

    def test_disabled(self, config, redis_client, seed, fake_completion):
        disabled = dataclasses.replace(config, automated_scans_enabled=False)
        services = _services(disabled, redis_client, fake_completion())
        assert run_room_scan(seed.room().id, "manual", services) is None


class TestRunScheduledScan:
    def test_global_scan_and_marks_tracked_rooms(self, config, redis_client, seed, people, fake_completion):
        room = seed.room()
        msgs = seed.messages(room, people, 2)
        completion = fake_completion(
            {"conversations": [{"message_ids": [m.id for m in msgs], "title": "Launch", "summary": "Ship it."}]}
        )
        services = _services(config, redis_client, completion)
        services.tracker.record(msgs[0])

        summary = run_scheduled_scan(services)

        assert len(summary.created) == 1
        assert services.tracker.activity(room.id).message_count == 0
        assert services.tracker.cooldown_remaining_seconds(room.id) > 0

    def test_rooms_marked_even_when_scan_fails(self, config, redis_client, seed, people, fake_completion):
        services = _services(config, redis_client, fake_completion())
        services.scanner = ExplodingScanner()
        room = seed.room()
        services.tracker.record(seed.message(room, people[0]))

        with pytest.raises(RuntimeError):
            run_scheduled_scan(services)

        assert services.tracker.cooldown_remaining_seconds(room.id) > 0
