"""
Redis-list task queue with at-least-once delivery.

Producers LPUSH a JSON payload onto the pending list. Each consumer atomically
moves one payload into its own processing list (BLMOVE), runs it, then removes
it with ack(). A consumer refreshes a heartbeat key while it polls; when the
heartbeat expires (the worker crashed or was killed), requeue_stale() run by
any consumer moves that consumer's payloads back to pending. A job can
therefore run more than once, so every job handler must be idempotent.
"""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

import redis

from autofeed.config import QUEUE_CONSUMER_TTL_SECONDS, QUEUE_NAME
from autofeed.infrastructure.retry import RetryPolicy
from autofeed.observability.logging import get_logger
from autofeed.observability.telemetry import counter

logger = get_logger(__name__)

ROOM_SCAN = "room_scan"
SCHEDULED_SCAN = "scheduled_scan"
JOB_TYPES = (ROOM_SCAN, SCHEDULED_SCAN)


@dataclass
class Job:
    type: str
    args: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    enqueued_at: float = field(default_factory=time.time)
    raw: str | None = None

    def to_payload(self) -> str:
        return json.dumps(
            {"id": self.id, "type": self.type, "args": self.args, "enqueued_at": self.enqueued_at}
        )

    @classmethod
    def from_payload(cls, raw: str) -> Job:
        """Parse a queued payload; raises ValueError on malformed input."""
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"Malformed job payload: {e}") from e
        if not isinstance(data, dict) or data.get("type") not in JOB_TYPES:
            raise ValueError(f"Unknown job payload: {raw[:200]}")
        return cls(
            type=data["type"],
            args=data.get("args") or {},
            id=data.get("id") or uuid.uuid4().hex,
            enqueued_at=float(data.get("enqueued_at") or 0.0),
            raw=raw,
        )


class ScanQueue:
    """Queue of room-scoped and scheduled scan jobs."""

    def __init__(
        self,
        client: redis.Redis,
        name: str = QUEUE_NAME,
        consumer: str | None = None,
        consumer_ttl: int = QUEUE_CONSUMER_TTL_SECONDS,
    ):
        self.client = client
        self.name = name
        self.consumer = consumer or uuid.uuid4().hex[:12]
        self.consumer_ttl = consumer_ttl
        self.processing_name = self._processing_key(self.consumer)
        self._policy = RetryPolicy(stage="queue")

    def _processing_key(self, consumer: str) -> str:
        return f"{self.name}:processing:{consumer}"

    def _heartbeat_key(self, consumer: str) -> str:
        return f"{self.name}:consumer:{consumer}"

    def heartbeat(self) -> None:
        """Mark this consumer alive for ``consumer_ttl`` seconds."""
        self._policy.execute(
            self.client.set,
            self._heartbeat_key(self.consumer),
            repr(time.time()),
            ex=self.consumer_ttl,
        )

    def enqueue_room_scan(self, room_id: int, trigger_status: str) -> Job:
        return self.enqueue(Job(ROOM_SCAN, {"room_id": room_id, "trigger_status": trigger_status}))

    def enqueue_scheduled_scan(self) -> Job:
        return self.enqueue(Job(SCHEDULED_SCAN))

    def enqueue(self, job: Job) -> Job:
        """
        Push a job onto the pending list.

        Raises:
            TransientStoreError: If Redis stays unreachable
        """
        payload = job.to_payload()
        self._policy.execute(self.client.lpush, self.name, payload)
        job.raw = payload
        counter(f"queue.enqueued.{job.type}")
        logger.debug("Enqueued %s job %s args=%s", job.type, job.id, job.args)
        return job

    def dequeue(self, timeout: float = 0) -> Job | None:
        """
        Claim the oldest pending job, waiting up to ``timeout`` seconds.

        A timeout of 0 returns immediately. Malformed payloads are dropped
        from the processing list and logged.
        """
        self.heartbeat()
        if timeout > 0:
            raw = self._policy.execute(
                self.client.blmove, self.name, self.processing_name, timeout, "RIGHT", "LEFT"
            )
        else:
            raw = self._policy.execute(
                self.client.lmove, self.name, self.processing_name, "RIGHT", "LEFT"
            )
        if raw is None:
            return None

        try:
            return Job.from_payload(raw)
        except ValueError as e:
            logger.error("Dropping malformed job payload: %s", e)
            counter("queue.malformed")
            self.client.lrem(self.processing_name, 1, raw)
            return None

    def ack(self, job: Job) -> None:
        """Remove a finished job from this consumer's processing list."""
        if job.raw is None:
            return
        self._policy.execute(self.client.lrem, self.processing_name, 1, job.raw)

    def requeue_stale(self, include_own: bool = True) -> int:
        """
        Move unacknowledged payloads back to pending; returns the count.

        Reclaims the lists of consumers whose heartbeat has expired and, with
        ``include_own``, this consumer's own list (left over from a previous
        run under the same name). Live consumers keep their in-flight jobs.
        """
        prefix = self._processing_key("")
        keys = self._policy.execute(lambda: list(self.client.scan_iter(match=f"{prefix}*")))
        moved = 0
        for key in keys:
            if isinstance(key, bytes):
                key = key.decode()
            consumer = key[len(prefix):]
            if consumer == self.consumer:
                if not include_own:
                    continue
            elif self._policy.execute(self.client.exists, self._heartbeat_key(consumer)):
                continue
            while self._policy.execute(self.client.lmove, key, self.name, "RIGHT", "RIGHT"):
                moved += 1
        if moved:
            logger.warning("Requeued %d unacknowledged job(s) onto %s", moved, self.name)
            counter("queue.requeued", moved)
        return moved

    def pending_count(self) -> int:
        return int(self.client.llen(self.name))
