"""Durable key-value stores holding relay state blobs.

Every backend offers the same three calls (``get``/``put``/``delete``) over
string keys and string values with an optional time-to-live. Missing and
expired keys read as ``None``; failures of the backend itself are raised as
``StoreError`` so callers can tell "nothing stored" from "store unavailable".
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

import psycopg

from feedrelay.storage.postgres_schema import ensure_postgres_schema

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """The backing store could not be read or written."""
    pass


class KVStore:
    name: str = "base"

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class MemoryKVStore(KVStore):
    """Process-local store; used by tests and the ``memory`` backend."""

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and expires_at <= self._clock():
                del self._data[key]
                return None
            return value

    def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        with self._lock:
            self._data[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self):
        with self._lock:
            return sorted(self._data)


class SQLiteKVStore(KVStore):
    """Single-file store for workers running on one host."""

    name = "sqlite"

    def __init__(self, db_path: str = "state/relay_state.db", clock: Callable[[], float] = time.time):
        self.db_path = db_path
        self.max_retries = 3
        self.retry_delay = 1.0
        self._clock = clock
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.init_database()

    @contextmanager
    def get_connection(self):
        conn = None
        for attempt in range(self.max_retries):
            try:
                conn = sqlite3.connect(self.db_path, timeout=30.0)
                conn.execute("PRAGMA journal_mode=WAL;")
                conn.execute("PRAGMA synchronous=NORMAL;")
                break
            except sqlite3.Error as e:
                if conn is not None:
                    conn.close()
                    conn = None
                if "database is locked" in str(e) and attempt < self.max_retries - 1:
                    logger.warning(f"State database locked, retrying in {self.retry_delay}s (attempt {attempt + 1})")
                    time.sleep(self.retry_delay)
                    continue
                raise StoreError(f"State database connection failed: {e}") from e
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"State database error: {e}") from e
        finally:
            conn.close()

    def init_database(self) -> None:
        with self.get_connection() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv_entries (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    expires_at REAL,
                    updated_at REAL NOT NULL
                )
                """
            )

    def get(self, key: str) -> Optional[str]:
        now = self._clock()
        with self.get_connection() as conn:
            row = conn.execute("SELECT value, expires_at FROM kv_entries WHERE key = ?", (key,)).fetchone()
            if row is None:
                return None
            value, expires_at = row
            if expires_at is not None and expires_at <= now:
                conn.execute("DELETE FROM kv_entries WHERE key = ? AND expires_at <= ?", (key, now))
                return None
            return value

    def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        now = self._clock()
        expires_at = now + ttl_seconds if ttl_seconds else None
        with self.get_connection() as conn:
            conn.execute(
                """
                INSERT INTO kv_entries (key, value, expires_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                  value = excluded.value,
                  expires_at = excluded.expires_at,
                  updated_at = excluded.updated_at
                """,
                (key, value, expires_at, now),
            )

    def delete(self, key: str) -> None:
        with self.get_connection() as conn:
            conn.execute("DELETE FROM kv_entries WHERE key = ?", (key,))

    def purge_expired(self) -> int:
        with self.get_connection() as conn:
            cur = conn.execute(
                "DELETE FROM kv_entries WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (self._clock(),),
            )
            return cur.rowcount or 0


class PostgresKVStore(KVStore):
    """Shared store for workers on several hosts (psycopg + SQL)."""

    name = "postgres"

    def __init__(self, pg_dsn: str):
        self.pg_dsn = pg_dsn

    def get(self, key: str) -> Optional[str]:
        try:
            with psycopg.connect(self.pg_dsn) as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        SELECT value FROM kv_entries
                        WHERE key = %s AND (expires_at IS NULL OR expires_at > now())
                        """,
                        (key,),
                    )
                    row = cur.fetchone()
        except psycopg.Error as e:
            raise StoreError(f"Postgres read failed for {key}: {e}") from e
        return row[0] if row else None

    def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds) if ttl_seconds else None
        try:
            with psycopg.connect(self.pg_dsn, autocommit=True) as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        INSERT INTO kv_entries (key, value, expires_at)
                        VALUES (%s, %s, %s)
                        ON CONFLICT (key) DO UPDATE SET
                          value = EXCLUDED.value,
                          expires_at = EXCLUDED.expires_at,
                          updated_at = now()
                        """,
                        (key, value, expires_at),
                    )
        except psycopg.Error as e:
            raise StoreError(f"Postgres write failed for {key}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            with psycopg.connect(self.pg_dsn, autocommit=True) as conn:
                with conn.cursor() as cur:
                    cur.execute("DELETE FROM kv_entries WHERE key = %s", (key,))
        except psycopg.Error as e:
            raise StoreError(f"Postgres delete failed for {key}: {e}") from e


def make_store(config) -> KVStore:
    """Build the backend named by ``config.store_backend``."""
    backend = config.store_backend
    if backend == "postgres":
        try:
            ensure_postgres_schema(config.pg_dsn)
        except psycopg.Error as e:
            raise StoreError(f"Postgres schema setup failed: {e}") from e
        logger.info("Postgres state store initialized")
        return PostgresKVStore(config.pg_dsn)
    if backend == "memory":
        logger.warning("Using in-memory state store; delivery history will not survive a restart")
        return MemoryKVStore()
    store = SQLiteKVStore(config.sqlite_path)
    purged = store.purge_expired()
    logger.info(f"SQLite state store at {config.sqlite_path} (purged {purged} expired keys)")
    return store
