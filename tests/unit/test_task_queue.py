from __future__ import annotations

import json

import pytest

from autofeed.infrastructure.task_queue import ROOM_SCAN, SCHEDULED_SCAN, Job, ScanQueue


@pytest.fixture
def queue(redis_client):
    return ScanQueue(redis_client, name="test:jobs")


class TestScanQueue:
    def test_jobs_are_delivered_in_fifo_order(self, queue):
        queue.enqueue_room_scan(1, "message_threshold")
        queue.enqueue_room_scan(2, "quality_threshold")

        first, second = queue.dequeue(), queue.dequeue()

        assert first.type == ROOM_SCAN
        assert first.args == {"room_id": 1, "trigger_status": "message_threshold"}
        assert second.args["room_id"] == 2
        assert queue.dequeue() is None

    def test_dequeued_job_waits_in_processing_until_acked(self, queue, redis_client):
        queue.enqueue_scheduled_scan()
        job = queue.dequeue()

        assert job.type == SCHEDULED_SCAN
        assert redis_client.llen(queue.processing_name) == 1

        queue.ack(job)
        assert redis_client.llen(queue.processing_name) == 0

    def test_requeue_stale_returns_unacked_jobs(self, queue):
        queue.enqueue_room_scan(7, "message_threshold")
        claimed = queue.dequeue()

        assert queue.requeue_stale() == 1
        assert queue.pending_count() == 1
        assert queue.dequeue().id == claimed.id

    def test_live_consumer_keeps_in_flight_job(self, queue, redis_client):
        other = ScanQueue(redis_client, name=queue.name)
        queue.enqueue_room_scan(7, "message_threshold")
        job = queue.dequeue()

        assert other.requeue_stale() == 0
        assert other.pending_count() == 0

        queue.ack(job)
        assert redis_client.llen(queue.processing_name) == 0

    def test_dead_consumer_jobs_are_reclaimed(self, queue, redis_client):
        other = ScanQueue(redis_client, name=queue.name)
        queue.enqueue_room_scan(7, "message_threshold")
        claimed = queue.dequeue()
        redis_client.delete(f"{queue.name}:consumer:{queue.consumer}")

        assert other.requeue_stale() == 1
        assert other.dequeue().id == claimed.id
        assert redis_client.llen(queue.processing_name) == 0

    def test_dequeue_refreshes_heartbeat(self, redis_client):
        queue = ScanQueue(redis_client, name="test:jobs", consumer="w1", consumer_ttl=60)
        queue.dequeue()
        assert 0 < redis_client.ttl("test:jobs:consumer:w1") <= 60

    def test_own_list_can_be_skipped(self, queue):
        queue.enqueue_room_scan(7, "message_threshold")
        queue.dequeue()

        assert queue.requeue_stale(include_own=False) == 0
        assert queue.requeue_stale() == 1

    def test_malformed_payload_is_dropped(self, queue, redis_client):
        redis_client.lpush(queue.name, "not json")

        assert queue.dequeue() is None
        assert redis_client.llen(queue.processing_name) == 0

    def test_unknown_job_type_is_dropped(self, queue, redis_client):
        redis_client.lpush(queue.name, json.dumps({"type": "mystery"}))
        assert queue.dequeue() is None


class TestJobPayload:
    def test_round_trip_keeps_identity(self):
        job = Job(ROOM_SCAN, {"room_id": 3, "trigger_status": "manual"})
        parsed = Job.from_payload(job.to_payload())
        assert (parsed.id, parsed.type, parsed.args) == (job.id, job.type, job.args)

    def test_invalid_json_raises_value_error(self):
        with pytest.raises(ValueError, match="Malformed"):
            Job.from_payload("{")
