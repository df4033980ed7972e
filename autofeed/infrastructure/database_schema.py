"""
Database schema for Autofeed.

The chat tables (users, rooms, memberships, messages, reactions) mirror the
subset of the chat system's schema the feed pipeline reads and writes;
feed_cards is owned by the pipeline.

Timestamps are stored as fixed-width UTC text ("%Y-%m-%d %H:%M:%S.%f") so
string comparison matches chronological order.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

from autofeed.observability.logging import get_logger

logger = get_logger(__name__)

EXPECTED_TABLES = ("users", "rooms", "memberships", "messages", "reactions", "feed_cards")


def init_database(db_path: Path) -> None:
    """
    Initialize database with schema (idempotent)

    Safe to run multiple times - uses CREATE TABLE IF NOT EXISTS.

    Side Effects:
    - Creates the parent directory if needed
    - Creates tables and indexes that don't exist yet
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                active INTEGER NOT NULL DEFAULT 1
            );

            CREATE TABLE IF NOT EXISTS rooms (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                kind TEXT NOT NULL
                    CHECK (kind IN ('open', 'closed', 'thread', 'direct', 'derived')),
                active INTEGER NOT NULL DEFAULT 1,
                creator_id INTEGER REFERENCES users(id),
                parent_message_id INTEGER,
                source_room_id INTEGER REFERENCES rooms(id),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS memberships (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                room_id INTEGER NOT NULL REFERENCES rooms(id),
                user_id INTEGER NOT NULL REFERENCES users(id),
                involvement TEXT NOT NULL DEFAULT 'mentions',
                active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                UNIQUE(room_id, user_id)
            );

            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                room_id INTEGER NOT NULL REFERENCES rooms(id),
                creator_id INTEGER NOT NULL REFERENCES users(id),
                body TEXT NOT NULL DEFAULT '',
                client_message_id TEXT,
                attachment_name TEXT,
                link_previews TEXT NOT NULL DEFAULT '[]',
                original_message_id INTEGER REFERENCES messages(id),
                in_feed INTEGER NOT NULL DEFAULT 0,
                active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE(room_id, original_message_id)
            );

            CREATE TABLE IF NOT EXISTS reactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                message_id INTEGER NOT NULL REFERENCES messages(id),
                creator_id INTEGER NOT NULL REFERENCES users(id),
                content TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS feed_cards (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                room_id INTEGER NOT NULL UNIQUE REFERENCES rooms(id),
                title TEXT NOT NULL,
                summary TEXT NOT NULL DEFAULT '',
                type TEXT NOT NULL CHECK (type IN ('automated', 'promoted')),
                promoted_by INTEGER REFERENCES users(id),
                preview_message_id INTEGER REFERENCES messages(id),
                message_fingerprint TEXT UNIQUE,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_rooms_parent_message ON rooms(parent_message_id);
            CREATE INDEX IF NOT EXISTS idx_rooms_source_room ON rooms(source_room_id);
            CREATE INDEX IF NOT EXISTS idx_messages_room_created ON messages(room_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_messages_feed_created ON messages(in_feed, created_at);
            CREATE INDEX IF NOT EXISTS idx_messages_original ON messages(original_message_id);
            CREATE INDEX IF NOT EXISTS idx_messages_client_id ON messages(client_message_id);
            CREATE INDEX IF NOT EXISTS idx_reactions_message ON reactions(message_id);
            CREATE INDEX IF NOT EXISTS idx_feed_cards_updated ON feed_cards(updated_at);
        """)
        conn.commit()
    finally:
        conn.close()

    logger.info("Database schema initialized at %s", db_path)


def validate_schema(conn: sqlite3.Connection) -> bool:
    """
    Validate database has expected tables

    Raises:
        ValueError: If tables are missing
    """
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    present = {row[0] for row in rows}
    missing = [name for name in EXPECTED_TABLES if name not in present]
    if missing:
        raise ValueError(f"Database schema is missing tables: {', '.join(missing)}")
    return True
