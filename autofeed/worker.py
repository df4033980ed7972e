"""
Scan worker - consumes the scan queue and drives the scheduled fallback scan.

Run with ``autofeed worker``. Several workers may share one queue: each job
is claimed by exactly one of them, and an NX lock on SCHEDULE_LOCK_KEY lets
only one worker per interval enqueue the scheduled scan. The worker holding
that lock also returns jobs stranded by dead workers to the queue.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

import redis

from autofeed.config import QUEUE_POLL_TIMEOUT, SCHEDULE_LOCK_KEY
from autofeed.feed.jobs import FeedServices, run_room_scan, run_scheduled_scan
from autofeed.infrastructure.retry import RetryPolicy
from autofeed.infrastructure.task_queue import ROOM_SCAN, SCHEDULED_SCAN, Job, ScanQueue
from autofeed.observability.logging import get_logger
from autofeed.observability.telemetry import counter, log_event

logger = get_logger(__name__)


class ScanWorker:
    def __init__(
        self,
        services: FeedServices,
        queue: ScanQueue,
        client: redis.Redis,
        clock: Callable[[], float] = time.time,
    ):
        self.services = services
        self.queue = queue
        self.client = client
        self.clock = clock
        self.stop_event = threading.Event()
        self._policy = RetryPolicy(stage="worker")

    @property
    def schedule_interval_seconds(self) -> int:
        return max(self.services.config.fallback_scan_interval_minutes, 1) * 60

    def maybe_schedule(self) -> bool:
        """Enqueue the scheduled scan if no worker has done so this interval."""
        if not self.services.config.automated_scans_enabled:
            return False
        acquired = self._policy.execute(
            self.client.set,
            SCHEDULE_LOCK_KEY,
            repr(self.clock()),
            nx=True,
            ex=self.schedule_interval_seconds,
        )
        if not acquired:
            return False
        job = self.queue.enqueue_scheduled_scan()
        logger.info("Enqueued scheduled scan %s", job.id)
        self.queue.requeue_stale(include_own=False)
        return True

    def process(self, job: Job) -> None:
        """Run one job. Failures are logged; the job is acknowledged either way."""
        started = time.perf_counter()
        try:
            if job.type == ROOM_SCAN:
                run_room_scan(
                    int(job.args["room_id"]), job.args.get("trigger_status"), self.services
                )
            elif job.type == SCHEDULED_SCAN:
                run_scheduled_scan(self.services)
            else:
                logger.warning("Ignoring job %s of unknown type %s", job.id, job.type)
        except Exception as e:
            counter(f"worker.failed.{job.type}")
            logger.error(
                "Job %s (%s, args=%s) failed: %s - %s",
                job.id,
                job.type,
                job.args,
                type(e).__name__,
                e,
                exc_info=True,
            )
        else:
            counter(f"worker.completed.{job.type}")
        finally:
            self.queue.ack(job)
            log_event(
                "worker.job_finished",
                job_id=job.id,
                type=job.type,
                duration_ms=round((time.perf_counter() - started) * 1000, 1),
            )

    def run_once(self, timeout: float = QUEUE_POLL_TIMEOUT) -> bool:
        """Schedule if due, then process at most one job. Returns True if a job ran."""
        self.maybe_schedule()
        job = self.queue.dequeue(timeout=timeout)
        if job is None:
            return False
        self.process(job)
        return True

    def run(self, timeout: float = QUEUE_POLL_TIMEOUT) -> None:
        """Loop until ``stop()`` is called."""
        requeued = self.queue.requeue_stale()
        logger.info(
            "Starting scan worker %s on %s (requeued=%d, scheduled every %d min)",
            self.queue.consumer,
            self.queue.name,
            requeued,
            self.schedule_interval_seconds // 60,
        )
        while not self.stop_event.is_set():
            try:
                self.run_once(timeout)
            except Exception as e:
                # Store outages: back off and keep the worker alive
                counter("worker.loop_error")
                logger.error("Worker loop error: %s - %s", type(e).__name__, e)
                self.stop_event.wait(QUEUE_POLL_TIMEOUT)
        logger.info("Scan worker stopped")

    def stop(self) -> None:
        self.stop_event.set()
