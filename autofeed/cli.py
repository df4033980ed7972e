"""
Autofeed command line.

    autofeed init-db
    autofeed scan [--room ROOM_ID] [--dry-run]
    autofeed promote MESSAGE_ID --by USER_ID
    autofeed worker
    autofeed tracker-status ROOM_ID
"""

from __future__ import annotations

import argparse
import signal
import sys

from dotenv import load_dotenv

from autofeed.config import FeedConfig
from autofeed.errors import AutofeedError
from autofeed.llm.gateway import CompletionError
from autofeed.observability.logging import get_logger
from autofeed.observability.telemetry import get_latency_stats

logger = get_logger(__name__)


def _print_summary(summary) -> None:
    if summary is None:
        print("Automated scans are disabled (AUTOFEED_AUTOMATED_SCANS_ENABLED)")
        return
    print(f"Created:   {summary.created}")
    print(f"Continued: {summary.continued}")
    print(f"Skipped:   {summary.skipped}")
    print(f"Failed:    {summary.failed}")


def cmd_init_db(args, config: FeedConfig) -> int:
    from autofeed.infrastructure.database import init_database

    path = init_database()
    print(f"Initialized database at {path}")
    return 0


def cmd_scan(args, config: FeedConfig) -> int:
    from autofeed.feed.jobs import FeedServices, run_room_scan, run_scheduled_scan
    from autofeed.feed.scanner import Scanner
    from autofeed.storage.repository import RoomRepository

    room = None
    if args.room is not None:
        room = RoomRepository.get(args.room)
        if room is None:
            print(f"Room {args.room} not found", file=sys.stderr)
            return 1

    if args.dry_run:
        conversations = Scanner(config).scan(room)
        print(f"Detected {len(conversations)} conversation(s)")
        for conversation in conversations:
            print(f"- {conversation.title} {conversation.message_ids}")
            if conversation.summary:
                print(f"    {conversation.summary}")
        return 0

    services = FeedServices.build(config)
    if room is not None:
        summary = run_room_scan(room.id, "manual", services)
    else:
        summary = run_scheduled_scan(services)
    _print_summary(summary)
    stats = get_latency_stats("scanner.detect_ms")
    if stats["count"]:
        print(f"Detection took {stats['max']:.1f}s")
    return 0


def cmd_promote(args, config: FeedConfig) -> int:
    from autofeed.feed.promotion import promote_message

    result = promote_message(args.message_id, args.promoted_by, config)
    card = result.feed_card
    status = "Created" if result.created else "Already promoted as"
    print(f"{status} feed card {card.id} in room {result.room.id}: {card.title}")
    return 0


def cmd_worker(args, config: FeedConfig) -> int:
    from autofeed.feed.jobs import FeedServices
    from autofeed.infrastructure.redis_store import get_redis
    from autofeed.infrastructure.task_queue import ScanQueue
    from autofeed.worker import ScanWorker

    client = get_redis()
    worker = ScanWorker(FeedServices.build(config, client), ScanQueue(client), client)

    def _shutdown(signum, frame):
        logger.info("Received signal %s, stopping after the current job", signum)
        worker.stop()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
    worker.run()
    return 0


def cmd_tracker_status(args, config: FeedConfig) -> int:
    from autofeed.feed.activity_tracker import ActivityTracker

    tracker = ActivityTracker(config)
    activity = tracker.activity(args.room_id)
    decision = tracker.should_scan(args.room_id)
    print(f"Room {args.room_id}")
    print(f"  messages:     {activity.message_count}")
    print(f"  participants: {activity.participant_count}")
    print(f"  locked:       {activity.locked}")
    print(f"  cooldown:     {tracker.cooldown_remaining_seconds(args.room_id)}s remaining")
    print(f"  status:       {decision.status.value} (trigger={decision.trigger})")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="autofeed", description="Automated conversation detection and feed promotion"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="Create the database schema (idempotent)")
    p.set_defaults(func=cmd_init_db)

    p = sub.add_parser("scan", help="Run a room-scoped or global scan now")
    p.add_argument("--room", type=int, help="Scan one room instead of all rooms")
    p.add_argument(
        "--dry-run", action="store_true", help="Print detected conversations without writing"
    )
    p.set_defaults(func=cmd_scan)

    p = sub.add_parser("promote", help="Promote the conversation around a message")
    p.add_argument("message_id", type=int)
    p.add_argument("--by", dest="promoted_by", type=int, required=True, help="Moderator user id")
    p.set_defaults(func=cmd_promote)

    p = sub.add_parser("worker", help="Consume scan jobs and run the scheduled scan")
    p.set_defaults(func=cmd_worker)

    p = sub.add_parser("tracker-status", help="Show activity counters for a room")
    p.add_argument("room_id", type=int)
    p.set_defaults(func=cmd_tracker_status)

    return parser


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    config = FeedConfig.from_env()
    try:
        return args.func(args, config)
    except (AutofeedError, CompletionError, FileNotFoundError) as e:
        logger.error("%s failed: %s - %s", args.command, type(e).__name__, e)
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
