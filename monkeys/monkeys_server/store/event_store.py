"""
Hot event store for the Infinite Monkeys server.

This module manages the SQLite database that holds the most recent
generated characters. It is the single source of truth for record ids:
ids are allocated by SQLite inside the same transaction as the insert,
so a failed append never consumes an id.

Invariants:
    - Ids are strictly increasing and never reused (AUTOINCREMENT keeps
      the sequence even when every row has been archived)
    - Stored characters are exactly one character and never CR, LF or TAB
    - All writes are single transactions; readers never see a partially
      deleted range
    - Only the Archiver deletes rows, and only rows already archived

How to change safely:
    - Schema migrations must be backward compatible
    - Keep append() free of any await between insert and commit
    - Never delete rows outside delete_up_to()

Table schema:
    output:
        - id INTEGER PRIMARY KEY AUTOINCREMENT
        - char TEXT
        - ts INTEGER (Unix ms)
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..archive.archiver import ArchiveTrigger

logger = logging.getLogger(__name__)

_CONTROL_WHITESPACE = str.maketrans({"\r": " ", "\n": " ", "\t": " "})


class StoreUnavailable(Exception):
    """The storage engine cannot commit or read records."""

    pass


@dataclass(frozen=True)
class Record:
    """One committed character event.

    Attributes:
        id: Commit-order identifier assigned by the store
        char: The generated character
        ts: Commit timestamp (Unix ms)
    """

    id: int
    char: str
    ts: int

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {"id": self.id, "char": self.char, "ts": self.ts}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Record:
        """Create from dictionary."""
        return cls(id=int(data["id"]), char=data["char"], ts=int(data["ts"]))


def sanitize_char(ch: Any) -> str:
    """Normalize input to exactly one storable character.

    CR, LF and TAB become a plain space. Empty or non-string input
    becomes a space. Longer input keeps only its first character.
    """
    if not ch or not isinstance(ch, str):
        return " "
    cleaned = ch.translate(_CONTROL_WHITESPACE)
    return cleaned[0] if cleaned else " "


def now_ms() -> int:
    return int(time.time() * 1000)


class EventStore:
    """SQLite-backed append-only store of recent records.

    Thread safety:
        Each database connection is created per-operation. Operations
        are serialized by an asyncio lock, and conflicting writes are
        additionally isolated by SQLite transactions.

    Example:
        >>> store = EventStore("/var/lib/monkeys/monkeys.db")
        >>> await store.initialize()
        >>> record = await store.append("a")
        >>> await store.recent(10)
        [Record(id=1, char='a', ts=...)]
    """

    def __init__(
        self,
        db_path: str | Path,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        archive_trigger: ArchiveTrigger | None = None,
    ) -> None:
        """Initialize the event store.

        Args:
            db_path: SQLite database file
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            archive_trigger: Trigger notified after every successful append
        """
        self.db_path = Path(db_path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.archive_trigger = archive_trigger
        self._lock = asyncio.Lock()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection for a single operation."""
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            # Appends must survive a crash once acknowledged
            conn.execute("PRAGMA synchronous = FULL")

            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS output (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                char TEXT NOT NULL,
                ts INTEGER NOT NULL
            );
        """)

    async def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        async with self._lock:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            try:
                with self._get_connection() as conn:
                    self._create_schema(conn)
            except sqlite3.Error as e:
                raise StoreUnavailable(f"Cannot initialize store at {self.db_path}: {e}") from e
            logger.info(f"Initialized event store: {self.db_path}")

    async def append(self, char: Any, ts: int | None = None) -> Record:
        """Commit one character and return the stored record.

        Args:
            char: Character to store (sanitized before commit)
            ts: Commit timestamp in Unix ms (defaults to now)

        Returns:
            The committed Record with its assigned id

        Raises:
            StoreUnavailable: If the write could not be committed
        """
        safe_char = sanitize_char(char)
        if ts is None:
            ts = now_ms()

        async with self._lock:
            try:
                with self._get_connection() as conn:
                    conn.execute("BEGIN IMMEDIATE")
                    try:
                        cursor = conn.execute(
                            "INSERT INTO output (char, ts) VALUES (?, ?)",
                            (safe_char, ts),
                        )
                        record_id = cursor.lastrowid
                        conn.execute("COMMIT")
                    except Exception:
                        conn.execute("ROLLBACK")
                        raise
            except sqlite3.Error as e:
                logger.error(f"Event store append failed: {e}", exc_info=True)
                raise StoreUnavailable(f"Append failed: {e}") from e

        record = Record(id=record_id, char=safe_char, ts=ts)

        if self.archive_trigger is not None:
            self.archive_trigger.submit()

        return record

    async def recent(self, limit: int) -> list[Record]:
        """Get the newest records in ascending id order.

        Args:
            limit: Maximum records to return (<= 0 returns nothing)

        Returns:
            Up to `limit` most recent records, oldest first
        """
        if limit <= 0:
            return []

        rows = await self._fetch(
            "SELECT id, char, ts FROM output ORDER BY id DESC LIMIT ?",
            (limit,),
        )
        return [self._row_to_record(row) for row in reversed(rows)]

    async def oldest(self, limit: int) -> list[Record]:
        """Get the oldest records in ascending id order.

        Args:
            limit: Maximum records to return (<= 0 returns nothing)

        Returns:
            Up to `limit` oldest records
        """
        if limit <= 0:
            return []

        rows = await self._fetch(
            "SELECT id, char, ts FROM output ORDER BY id ASC LIMIT ?",
            (limit,),
        )
        return [self._row_to_record(row) for row in rows]

    async def count_and_range(self) -> tuple[int, int | None, int | None]:
        """Get the hot record count and id range.

        Returns:
            Tuple of (count, min_id, max_id); ids are None when empty
        """
        rows = await self._fetch(
            "SELECT COUNT(*) AS cnt, MIN(id) AS min_id, MAX(id) AS max_id FROM output"
        )
        row = rows[0]
        return row["cnt"], row["min_id"], row["max_id"]

    async def delete_up_to(self, record_id: int) -> int:
        """Delete every record with id <= record_id.

        Deleting an already removed range is a no-op, so this is safe
        to retry.

        Args:
            record_id: Highest id to remove

        Returns:
            Number of rows removed

        Raises:
            StoreUnavailable: If the delete could not be committed
        """
        async with self._lock:
            try:
                with self._get_connection() as conn:
                    conn.execute("BEGIN IMMEDIATE")
                    try:
                        cursor = conn.execute("DELETE FROM output WHERE id <= ?", (record_id,))
                        conn.execute("COMMIT")
                        return cursor.rowcount
                    except Exception:
                        conn.execute("ROLLBACK")
                        raise
            except sqlite3.Error as e:
                logger.error(f"Event store delete failed: {e}", exc_info=True)
                raise StoreUnavailable(f"Delete up to {record_id} failed: {e}") from e

    async def _fetch(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        async with self._lock:
            try:
                with self._get_connection() as conn:
                    return conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StoreUnavailable(f"Read failed: {e}") from e

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> Record:
        return Record(id=row["id"], char=row["char"], ts=row["ts"])
