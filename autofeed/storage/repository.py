"""
Repositories for rooms, messages and feed cards.

Follows the patterns in autofeed/infrastructure/database.py. Read methods
accept an optional ``conn`` so they can run inside a caller's transaction;
write methods always take the caller's connection so the Room Creator and
Room Updater control atomicity.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime

from autofeed.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from autofeed.observability.logging import get_logger
from autofeed.storage.models import (
    FeedCard,
    FeedCardType,
    Message,
    Reaction,
    Room,
    RoomKind,
    User,
    to_db_time,
    utc_now,
)

logger = get_logger(__name__)

_MESSAGE_COLUMNS = """
    m.id, m.room_id, m.creator_id, m.body, m.client_message_id, m.attachment_name,
    m.link_previews, m.original_message_id, m.in_feed, m.active, m.created_at,
    m.updated_at, u.name AS creator_name
"""

_CARD_COLUMNS = """
    c.id, c.room_id, c.title, c.summary, c.type, c.promoted_by, c.preview_message_id,
    c.message_fingerprint, c.created_at, c.updated_at, r.source_room_id
"""

# Rooms whose messages never reach the feed: direct rooms and derived feed rooms.
_EXCLUDED_ROOM_CLAUSE = "r.kind NOT IN ('direct', 'derived') AND r.source_room_id IS NULL"

# Thread rooms inherit eligibility from the room holding their parent message.
_THREAD_PARENT_CLAUSE = """(
    r.parent_message_id IS NULL OR EXISTS (
        SELECT 1 FROM messages pm JOIN rooms pr ON pr.id = pm.room_id
        WHERE pm.id = r.parent_message_id AND pr.active = 1
          AND pr.kind NOT IN ('direct', 'derived') AND pr.source_room_id IS NULL
    )
)"""


@contextmanager
def _use(conn: sqlite3.Connection | None) -> Iterator[sqlite3.Connection]:
    if conn is not None:
        yield conn
        return
    with get_db_connection() as pooled:
        yield pooled


def _placeholders(values: Iterable[object]) -> str:
    return ",".join("?" for _ in values)


class UserRepository:
    @staticmethod
    @retry_on_db_lock()
    def create(name: str, active: bool = True) -> User:
        with db_transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO users (name, active) VALUES (?, ?)", (name, int(active))
            )
            return User(id=cursor.lastrowid, name=name, active=active)


class RoomRepository:
    """Room lookups and the derived-room writes used by the feed pipeline."""

    @staticmethod
    def get(room_id: int, conn: sqlite3.Connection | None = None) -> Room | None:
        with _use(conn) as c:
            row = c.execute("SELECT * FROM rooms WHERE id = ?", (room_id,)).fetchone()
        return Room.from_db_row(dict(row)) if row else None

    @staticmethod
    def get_many(room_ids: Iterable[int], conn: sqlite3.Connection | None = None) -> dict[int, Room]:
        ids = sorted(set(room_ids))
        if not ids:
            return {}
        with _use(conn) as c:
            rows = c.execute(
                f"SELECT * FROM rooms WHERE id IN ({_placeholders(ids)})", ids
            ).fetchall()
        return {row["id"]: Room.from_db_row(dict(row)) for row in rows}

    @staticmethod
    def parent_rooms(
        thread_rooms: Iterable[Room], conn: sqlite3.Connection | None = None
    ) -> dict[int, Room | None]:
        """
        Map each thread room id to the room holding its parent message.

        Threads whose parent message (or its room) is gone map to None.
        """
        threads = [room for room in thread_rooms if room.is_thread]
        parent_ids = sorted({t.parent_message_id for t in threads if t.parent_message_id})
        resolved: dict[int, Room] = {}
        if parent_ids:
            with _use(conn) as c:
                rows = c.execute(
                    f"""
                    SELECT m.id AS via_message_id, r.id, r.name, r.kind, r.active, r.creator_id,
                           r.parent_message_id, r.source_room_id, r.created_at, r.updated_at
                    FROM messages m JOIN rooms r ON r.id = m.room_id
                    WHERE m.id IN ({_placeholders(parent_ids)})
                    """,
                    parent_ids,
                ).fetchall()
            for row in rows:
                data = dict(row)
                resolved[data.pop("via_message_id")] = Room.from_db_row(data)
        return {
            t.id: resolved.get(t.parent_message_id) if t.parent_message_id else None
            for t in threads
        }

    @staticmethod
    def parent_room(thread_room: Room, conn: sqlite3.Connection | None = None) -> Room | None:
        return RoomRepository.parent_rooms([thread_room], conn).get(thread_room.id)

    @staticmethod
    def thread_for_message(message_id: int, conn: sqlite3.Connection | None = None) -> Room | None:
        with _use(conn) as c:
            row = c.execute(
                "SELECT * FROM rooms WHERE kind = 'thread' AND active = 1 AND parent_message_id = ?",
                (message_id,),
            ).fetchone()
        return Room.from_db_row(dict(row)) if row else None

    @staticmethod
    def active_thread_ids_since(room_id: int, since: datetime, limit: int) -> list[int]:
        """Active thread rooms under ``room_id`` with activity since ``since``, newest first."""
        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT t.id
                FROM rooms t
                JOIN messages parent ON parent.id = t.parent_message_id
                JOIN messages m ON m.room_id = t.id AND m.active = 1
                WHERE t.kind = 'thread' AND t.active = 1
                  AND parent.room_id = ?
                  AND m.created_at >= ?
                GROUP BY t.id
                ORDER BY MAX(m.created_at) DESC
                LIMIT ?
                """,
                (room_id, to_db_time(since), limit),
            ).fetchall()
        return [row["id"] for row in rows]

    @staticmethod
    def derived_room_ids(source_room_id: int, conn: sqlite3.Connection | None = None) -> list[int]:
        with _use(conn) as c:
            rows = c.execute(
                "SELECT id FROM rooms WHERE kind = 'derived' AND source_room_id = ?",
                (source_room_id,),
            ).fetchall()
        return [row["id"] for row in rows]

    @staticmethod
    def create(
        conn: sqlite3.Connection,
        name: str,
        kind: RoomKind,
        creator_id: int | None = None,
        parent_message_id: int | None = None,
        source_room_id: int | None = None,
        active: bool = True,
    ) -> Room:
        now = to_db_time(utc_now())
        cursor = conn.execute(
            """
            INSERT INTO rooms (name, kind, active, creator_id, parent_message_id,
                               source_room_id, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                name,
                RoomKind(kind).value,
                int(active),
                creator_id,
                parent_message_id,
                source_room_id,
                now,
                now,
            ),
        )
        room = RoomRepository.get(cursor.lastrowid, conn)
        assert room is not None
        return room

    @staticmethod
    def touch(conn: sqlite3.Connection, room_id: int) -> None:
        conn.execute(
            "UPDATE rooms SET updated_at = ? WHERE id = ?", (to_db_time(utc_now()), room_id)
        )

    @staticmethod
    def add_membership(
        conn: sqlite3.Connection, room_id: int, user_id: int, involvement: str = "mentions"
    ) -> None:
        conn.execute(
            """
            INSERT INTO memberships (room_id, user_id, involvement, active, created_at)
            VALUES (?, ?, ?, 1, ?)
            ON CONFLICT(room_id, user_id) DO UPDATE SET active = 1
            """,
            (room_id, user_id, involvement, to_db_time(utc_now())),
        )

    @staticmethod
    def copy_memberships(conn: sqlite3.Connection, source_room_id: int, target_room_id: int) -> int:
        """
        Grant the derived room to every active member of the source room.

        Returns:
            Number of membership rows inserted or reactivated
        """
        cursor = conn.execute(
            """
            INSERT INTO memberships (room_id, user_id, involvement, active, created_at)
            SELECT ?, ms.user_id, ms.involvement, 1, ?
            FROM memberships ms JOIN users u ON u.id = ms.user_id
            WHERE ms.room_id = ? AND ms.active = 1 AND u.active = 1
            ON CONFLICT(room_id, user_id) DO UPDATE SET active = 1
            """,
            (target_room_id, to_db_time(utc_now()), source_room_id),
        )
        return cursor.rowcount

    @staticmethod
    def member_ids(room_id: int, conn: sqlite3.Connection | None = None) -> list[int]:
        with _use(conn) as c:
            rows = c.execute(
                "SELECT user_id FROM memberships WHERE room_id = ? AND active = 1 ORDER BY user_id",
                (room_id,),
            ).fetchall()
        return [row["user_id"] for row in rows]


class MessageRepository:
    """Message reads for scanning and the faithful-copy writes for feed rooms."""

    @staticmethod
    def _hydrate(conn: sqlite3.Connection, rows: list[sqlite3.Row]) -> list[Message]:
        messages = [Message.from_db_row(dict(row)) for row in rows]
        if not messages:
            return messages
        ids = [m.id for m in messages]
        reaction_rows = conn.execute(
            f"""
            SELECT message_id, creator_id, content, created_at FROM reactions
            WHERE message_id IN ({_placeholders(ids)})
            ORDER BY created_at, id
            """,
            ids,
        ).fetchall()
        by_message: dict[int, list[Reaction]] = {}
        for row in reaction_rows:
            by_message.setdefault(row["message_id"], []).append(
                Reaction(
                    creator_id=row["creator_id"],
                    content=row["content"],
                    created_at=row["created_at"],
                )
            )
        for message in messages:
            message.reactions = by_message.get(message.id, [])
        return messages

    @staticmethod
    def _select(
        where: str,
        params: list[object],
        order: str = "m.created_at ASC, m.id ASC",
        limit: int | None = None,
        conn: sqlite3.Connection | None = None,
        join_rooms: bool = False,
    ) -> list[Message]:
        sql = f"SELECT {_MESSAGE_COLUMNS} FROM messages m JOIN users u ON u.id = m.creator_id"
        if join_rooms:
            sql += " JOIN rooms r ON r.id = m.room_id"
        sql += f" WHERE {where} ORDER BY {order}"
        if limit is not None:
            sql += " LIMIT ?"
            params = [*params, limit]
        with _use(conn) as c:
            rows = c.execute(sql, params).fetchall()
            return MessageRepository._hydrate(c, rows)

    @staticmethod
    def get(message_id: int, conn: sqlite3.Connection | None = None) -> Message | None:
        found = MessageRepository._select("m.id = ?", [message_id], conn=conn)
        return found[0] if found else None

    @staticmethod
    def get_many(message_ids: Iterable[int], conn: sqlite3.Connection | None = None) -> list[Message]:
        """Load messages by id in chronological order; missing ids are simply absent."""
        ids = sorted(set(message_ids))
        if not ids:
            return []
        return MessageRepository._select(f"m.id IN ({_placeholders(ids)})", list(ids), conn=conn)

    @staticmethod
    def recent_in_rooms(room_ids: list[int], since: datetime, limit: int) -> list[Message]:
        """Active messages at or after ``since``, newest first."""
        return MessageRepository._select(
            f"m.active = 1 AND m.room_id IN ({_placeholders(room_ids)}) AND m.created_at >= ?",
            [*room_ids, to_db_time(since)],
            order="m.created_at DESC, m.id DESC",
            limit=limit,
        )

    @staticmethod
    def backlog_in_rooms(
        room_ids: list[int], before: datetime, not_before: datetime, limit: int
    ) -> list[Message]:
        """Active, not-in-feed messages in ``[not_before, before)``, newest first."""
        return MessageRepository._select(
            f"""m.active = 1 AND m.in_feed = 0 AND m.room_id IN ({_placeholders(room_ids)})
                AND m.created_at < ? AND m.created_at >= ?""",
            [*room_ids, to_db_time(before), to_db_time(not_before)],
            order="m.created_at DESC, m.id DESC",
            limit=limit,
        )

    @staticmethod
    def context_before(
        room_ids: list[int], before: datetime, not_before: datetime, limit: int
    ) -> list[Message]:
        """Active messages in ``[not_before, before)`` regardless of feed state, newest first."""
        return MessageRepository._select(
            f"""m.active = 1 AND m.room_id IN ({_placeholders(room_ids)})
                AND m.created_at < ? AND m.created_at >= ?""",
            [*room_ids, to_db_time(before), to_db_time(not_before)],
            order="m.created_at DESC, m.id DESC",
            limit=limit,
        )

    @staticmethod
    def unfed_since(since: datetime, limit: int) -> list[Message]:
        """Global scan window: not-in-feed messages from feed-eligible rooms, oldest first."""
        return MessageRepository._select(
            f"m.active = 1 AND m.in_feed = 0 AND r.active = 1 AND {_EXCLUDED_ROOM_CLAUSE}"
            f" AND {_THREAD_PARENT_CLAUSE}"
            " AND m.created_at >= ?",
            [to_db_time(since)],
            limit=limit,
            join_rooms=True,
        )

    @staticmethod
    def in_room_between(
        room_id: int, start: datetime, end: datetime, limit: int
    ) -> list[Message]:
        return MessageRepository._select(
            "m.active = 1 AND m.room_id = ? AND m.created_at >= ? AND m.created_at <= ?",
            [room_id, to_db_time(start), to_db_time(end)],
            limit=limit,
        )

    @staticmethod
    def in_room(room_id: int, limit: int) -> list[Message]:
        return MessageRepository._select(
            "m.active = 1 AND m.room_id = ?", [room_id], limit=limit
        )

    @staticmethod
    def copied_original_ids(
        conn: sqlite3.Connection, room_ids: Iterable[int], original_ids: Iterable[int]
    ) -> set[int]:
        """Subset of ``original_ids`` already copied into any of ``room_ids``."""
        rooms = sorted(set(room_ids))
        originals = sorted(set(original_ids))
        if not rooms or not originals:
            return set()
        rows = conn.execute(
            f"""
            SELECT DISTINCT original_message_id FROM messages
            WHERE room_id IN ({_placeholders(rooms)})
              AND original_message_id IN ({_placeholders(originals)})
            """,
            [*rooms, *originals],
        ).fetchall()
        return {row["original_message_id"] for row in rows}

    @staticmethod
    def create(
        conn: sqlite3.Connection,
        room_id: int,
        creator_id: int,
        body: str,
        created_at: datetime | None = None,
        client_message_id: str | None = None,
        attachment_name: str | None = None,
        link_previews: list[dict[str, str]] | None = None,
        original_message_id: int | None = None,
    ) -> Message:
        created = to_db_time(created_at or utc_now())
        cursor = conn.execute(
            """
            INSERT INTO messages (room_id, creator_id, body, client_message_id, attachment_name,
                                  link_previews, original_message_id, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                room_id,
                creator_id,
                body,
                client_message_id,
                attachment_name,
                json.dumps(link_previews or []),
                original_message_id,
                created,
                created,
            ),
        )
        message = MessageRepository.get(cursor.lastrowid, conn)
        assert message is not None
        return message

    @staticmethod
    def add_reaction(
        conn: sqlite3.Connection, message_id: int, creator_id: int, content: str
    ) -> None:
        conn.execute(
            "INSERT INTO reactions (message_id, creator_id, content, created_at) VALUES (?, ?, ?, ?)",
            (message_id, creator_id, content, to_db_time(utc_now())),
        )

    @staticmethod
    def copy_into(
        conn: sqlite3.Connection, target_room_id: int, messages: Iterable[Message]
    ) -> dict[int, int]:
        """
        Copy messages into a derived room, preserving content, timestamps and reactions.

        Returns:
            Mapping of original message id to copy id
        """
        copies: dict[int, int] = {}
        for message in messages:
            cursor = conn.execute(
                """
                INSERT INTO messages (room_id, creator_id, body, client_message_id,
                                      attachment_name, link_previews, original_message_id,
                                      in_feed, active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 0, 1, ?, ?)
                """,
                (
                    target_room_id,
                    message.creator_id,
                    message.body,
                    message.client_message_id,
                    message.attachment_name,
                    json.dumps([p.model_dump() for p in message.link_previews]),
                    message.id,
                    to_db_time(message.created_at),
                    to_db_time(message.updated_at),
                ),
            )
            copy_id = cursor.lastrowid
            for reaction in message.reactions:
                conn.execute(
                    """
                    INSERT INTO reactions (message_id, creator_id, content, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (
                        copy_id,
                        reaction.creator_id,
                        reaction.content,
                        to_db_time(reaction.created_at or message.created_at),
                    ),
                )
            copies[message.id] = copy_id
        return copies

    @staticmethod
    def mark_in_feed(conn: sqlite3.Connection, message_ids: Iterable[int]) -> None:
        ids = sorted(set(message_ids))
        if not ids:
            return
        conn.execute(
            f"UPDATE messages SET in_feed = 1 WHERE id IN ({_placeholders(ids)})", ids
        )

    @staticmethod
    def find_copy(
        conn: sqlite3.Connection,
        room_id: int,
        original_id: int,
        client_message_id: str | None = None,
    ) -> int | None:
        """Locate the copy of ``original_id`` in ``room_id``, falling back to the client id."""
        row = conn.execute(
            "SELECT id FROM messages WHERE room_id = ? AND original_message_id = ?",
            (room_id, original_id),
        ).fetchone()
        if row:
            return row["id"]
        if client_message_id:
            row = conn.execute(
                "SELECT id FROM messages WHERE room_id = ? AND client_message_id = ? LIMIT 1",
                (room_id, client_message_id),
            ).fetchone()
            if row:
                return row["id"]
        return None


class FeedCardRepository:
    @staticmethod
    def _select_one(where: str, params: list[object], conn: sqlite3.Connection | None) -> FeedCard | None:
        with _use(conn) as c:
            row = c.execute(
                f"SELECT {_CARD_COLUMNS} FROM feed_cards c JOIN rooms r ON r.id = c.room_id"
                f" WHERE {where}",
                params,
            ).fetchone()
        return FeedCard.from_db_row(dict(row)) if row else None

    @staticmethod
    def get(card_id: int, conn: sqlite3.Connection | None = None) -> FeedCard | None:
        return FeedCardRepository._select_one("c.id = ?", [card_id], conn)

    @staticmethod
    def get_by_fingerprint(fingerprint: str, conn: sqlite3.Connection | None = None) -> FeedCard | None:
        return FeedCardRepository._select_one("c.message_fingerprint = ?", [fingerprint], conn)

    @staticmethod
    def recent(since: datetime, limit: int, source_room_id: int | None = None) -> list[FeedCard]:
        """Cards updated since ``since``, most recently updated first."""
        where = "c.updated_at >= ?"
        params: list[object] = [to_db_time(since)]
        if source_room_id is not None:
            where += " AND r.source_room_id = ?"
            params.append(source_room_id)
        with get_db_connection() as conn:
            rows = conn.execute(
                f"SELECT {_CARD_COLUMNS} FROM feed_cards c JOIN rooms r ON r.id = c.room_id"
                f" WHERE {where} ORDER BY c.updated_at DESC, c.id DESC LIMIT ?",
                [*params, limit],
            ).fetchall()
        return [FeedCard.from_db_row(dict(row)) for row in rows]

    @staticmethod
    def message_counts(card_ids: Iterable[int]) -> dict[int, int]:
        ids = sorted(set(card_ids))
        if not ids:
            return {}
        with get_db_connection() as conn:
            rows = conn.execute(
                f"""
                SELECT c.id AS card_id, COUNT(m.id) AS total
                FROM feed_cards c LEFT JOIN messages m ON m.room_id = c.room_id
                WHERE c.id IN ({_placeholders(ids)})
                GROUP BY c.id
                """,
                ids,
            ).fetchall()
        return {row["card_id"]: row["total"] for row in rows}

    @staticmethod
    def create(
        conn: sqlite3.Connection,
        room_id: int,
        title: str,
        summary: str,
        card_type: FeedCardType,
        fingerprint: str,
        promoted_by: int | None = None,
        preview_message_id: int | None = None,
    ) -> FeedCard:
        now = to_db_time(utc_now())
        cursor = conn.execute(
            """
            INSERT INTO feed_cards (room_id, title, summary, type, promoted_by,
                                    preview_message_id, message_fingerprint,
                                    created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                room_id,
                title,
                summary,
                FeedCardType(card_type).value,
                promoted_by,
                preview_message_id,
                fingerprint,
                now,
                now,
            ),
        )
        card = FeedCardRepository.get(cursor.lastrowid, conn)
        assert card is not None
        logger.info("Created feed card %s for room %s (%s)", card.id, room_id, card.type)
        return card

    @staticmethod
    def touch(conn: sqlite3.Connection, card_id: int, summary: str | None = None) -> None:
        now = to_db_time(utc_now())
        if summary:
            conn.execute(
                "UPDATE feed_cards SET summary = ?, updated_at = ? WHERE id = ?",
                (summary, now, card_id),
            )
        else:
            conn.execute("UPDATE feed_cards SET updated_at = ? WHERE id = ?", (now, card_id))
