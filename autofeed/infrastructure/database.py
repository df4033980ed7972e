"""Centralized database configuration

Autofeed keeps users, rooms, messages and feed cards in ONE SQLite database
(autofeed/data/autofeed.db by default, AUTOFEED_DB_PATH to override). All
access goes through get_db_connection() / db_transaction().

Provides:
- Connection pooling (reuses connections across worker threads)
- Single source of truth for the database path
- Retry decorator for transient "database is locked" errors
- Transaction context manager (commit on success, rollback on error)
"""

from __future__ import annotations

import atexit
import os
import random
import sqlite3
import time
from collections.abc import Callable, Generator
from contextlib import contextmanager
from functools import lru_cache, wraps
from pathlib import Path
from queue import Empty, Full, Queue
from threading import Lock
from typing import Any, TypeVar

from autofeed.config import (
    DB_CONNECT_TIMEOUT,
    DB_POOL_SIZE,
    DB_POOL_TIMEOUT,
    DB_RETRY_BASE_DELAY,
    DB_RETRY_JITTER,
    DB_RETRY_MAX,
    DB_RETRY_MAX_DELAY,
    DB_TEMP_CONN_MAX,
)
from autofeed.observability.logging import get_logger
from autofeed.observability.telemetry import counter, log_event

F = TypeVar("F", bound=Callable[..., Any])

DB_PATH = Path(__file__).parent.parent / "data" / "autofeed.db"

logger = get_logger(__name__)


def retry_on_db_lock(
    max_retries: int = DB_RETRY_MAX,
    base_delay: float = DB_RETRY_BASE_DELAY,
    max_delay: float = DB_RETRY_MAX_DELAY,
) -> Callable[[F], F]:
    """
    Decorator to retry database operations on SQLITE_BUSY errors

    Concurrent workers can hit "database is locked" while another connection
    holds the write lock. Retries with exponential backoff plus jitter.

    Usage:
        @retry_on_db_lock()
        def my_database_operation():
            with db_transaction() as conn:
                conn.execute("INSERT INTO ...")

    Side Effects:
        - Sleeps between retries
        - Logs a warning per retry and an error when retries are exhausted
    """

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)

                except sqlite3.OperationalError as e:
                    message = str(e).lower()
                    if "locked" not in message and "busy" not in message:
                        raise

                    if attempt >= max_retries:
                        logger.error(
                            "Database lock retry exhausted after %d attempts: %s",
                            max_retries,
                            e,
                        )
                        raise

                    delay = min(base_delay * (2**attempt), max_delay)
                    sleep_time = delay + random.uniform(0, delay * DB_RETRY_JITTER)

                    logger.warning(
                        "Database locked (attempt %d/%d), retrying in %.2fs: %s",
                        attempt + 1,
                        max_retries,
                        sleep_time,
                        e,
                    )
                    counter("database.lock_retry")
                    time.sleep(sleep_time)

            raise AssertionError("unreachable")

        return wrapper  # type: ignore[return-value]

    return decorator


class DatabaseConnectionPool:
    """
    Thread-safe connection pool for SQLite

    Connections run in WAL mode with foreign keys enabled and sqlite3.Row rows.
    When the pool is exhausted a bounded number of temporary connections is
    handed out and closed on return.
    """

    def __init__(self, db_path: Path, pool_size: int = DB_POOL_SIZE):
        self.db_path = db_path
        self.pool_size = pool_size
        self.pool: Queue[sqlite3.Connection] = Queue(maxsize=pool_size)
        self.lock = Lock()
        self.closed = False
        self.temp_conn_max = DB_TEMP_CONN_MAX
        self._temporary: set[int] = set()
        self._initialize_pool()

        atexit.register(self.close_all)

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=DB_CONNECT_TIMEOUT,
            check_same_thread=False,
        )

        try:
            result = conn.execute("PRAGMA quick_check(1)").fetchone()
        except sqlite3.DatabaseError as e:
            conn.close()
            logger.critical("Database corruption or error during integrity check: %s", e)
            counter("database.corruption_detected")
            raise RuntimeError(f"Database corruption detected: {e}") from e
        if result[0] != "ok":
            conn.close()
            logger.critical("Database corruption detected: %s", result[0])
            counter("database.corruption_detected")
            raise RuntimeError(f"Database corruption detected: {result[0]}")

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        return conn

    def _initialize_pool(self) -> None:
        for _ in range(self.pool_size):
            try:
                self.pool.put(self._create_connection())
            except (sqlite3.Error, RuntimeError) as e:
                logger.warning("Failed to create pooled connection: %s", e)

    @property
    def temp_conn_count(self) -> int:
        return len(self._temporary)

    def get_connection(self) -> sqlite3.Connection:
        """
        Get connection from pool (or a temporary one if the pool is exhausted)

        Raises:
            RuntimeError: If pool closed or temporary connection limit exceeded
        """
        if self.closed:
            raise RuntimeError("Connection pool has been closed")

        try:
            return self.pool.get(block=True, timeout=DB_POOL_TIMEOUT)
        except Empty:
            pass

        with self.lock:
            if len(self._temporary) >= self.temp_conn_max:
                logger.critical(
                    "Temporary connection limit reached: %d/%d (pool_size=%d)",
                    len(self._temporary),
                    self.temp_conn_max,
                    self.pool_size,
                )
                raise RuntimeError(
                    "Database connection pool exhausted and temporary "
                    f"connection limit reached. pool_size={self.pool_size}, "
                    f"temp_conn_max={self.temp_conn_max}."
                ) from None

            conn = self._create_connection()
            self._temporary.add(id(conn))
            temp_count = len(self._temporary)

        logger.error(
            "Connection pool exhausted (pool_size=%d). Creating temporary connection %d/%d.",
            self.pool_size,
            temp_count,
            self.temp_conn_max,
        )
        log_event(
            "database.pool_exhausted",
            pool_size=self.pool_size,
            temp_conn_count=temp_count,
            severity="error",
        )
        return conn

    def return_connection(self, conn: sqlite3.Connection) -> None:
        with self.lock:
            is_temp = id(conn) in self._temporary
            self._temporary.discard(id(conn))

        if self.closed or is_temp:
            conn.close()
            return

        try:
            self.pool.put_nowait(conn)
        except Full:
            logger.warning("Failed to return connection to pool (pool full), closing")
            conn.close()

    def close_all(self) -> None:
        self.closed = True
        while not self.pool.empty():
            try:
                self.pool.get_nowait().close()
            except Empty:
                break


@lru_cache(maxsize=1)
def get_pool() -> DatabaseConnectionPool:
    """
    Get or create global connection pool

    Thread-safe singleton via @lru_cache.
    """
    return DatabaseConnectionPool(get_db_path(), pool_size=DB_POOL_SIZE)


def reset_pool() -> None:
    """Close the global pool so the next call opens a fresh one (tests, path changes)."""
    if get_pool.cache_info().currsize:
        get_pool().close_all()
    get_pool.cache_clear()


def get_db_path() -> Path:
    """
    Get database path (environment-aware)

    Checks AUTOFEED_DB_PATH environment variable first,
    falls back to default location.
    """
    if env_path := os.getenv("AUTOFEED_DB_PATH"):
        return Path(env_path)

    return DB_PATH


@contextmanager
def get_db_connection() -> Generator[sqlite3.Connection, None, None]:
    """
    Get pooled database connection (context manager)

    Usage:
        with get_db_connection() as conn:
            rows = conn.execute("SELECT * FROM rooms").fetchall()

    Raises:
        FileNotFoundError: If database doesn't exist
    """
    db_path = get_db_path()

    if not db_path.exists():
        raise FileNotFoundError(f"Database not found: {db_path}\nRun: autofeed init-db")

    pool = get_pool()
    conn = pool.get_connection()
    try:
        yield conn
    finally:
        pool.return_connection(conn)


@contextmanager
def db_transaction() -> Generator[sqlite3.Connection, None, None]:
    """
    Context manager for database transactions

    Automatically commits on success, rolls back on error.

    Usage:
        with db_transaction() as conn:
            conn.execute("INSERT INTO rooms ...")
            conn.execute("INSERT INTO feed_cards ...")
    """
    with get_db_connection() as conn:
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise


def init_database() -> Path:
    """
    Initialize database with schema (idempotent)

    Returns:
        Path of the initialized database
    """
    from autofeed.infrastructure.database_schema import init_database as _init_database

    db_path = get_db_path()
    _init_database(db_path)
    return db_path
