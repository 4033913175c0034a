"""
Hot tier SQLite store for TierDB.

This module manages the SQLite database that holds every partition that has
not been released yet (OPEN, SEALED, ARCHIVING, and COLD within its grace
period):
- One table per partition, holding rows in insertion order
- applied_writes: idempotency keys of committed sub-batches
- batches: the ingestion batch ledger (see ingest.ledger)

Invariants:
    - A sub-batch's rows and its idempotency key commit in one transaction
    - Row payloads are stored as canonical JSON, identical to the cold tier
    - seq is the per-partition insertion sequence (1-based, never reused)
    - drop_partition is idempotent

How to change safely:
    - Schema migrations must be backward compatible
    - Use transactions for all write operations
    - Busy/locked errors surface as TransientStorageError so callers retry

Table schema:
    p_<hash> (one per partition):
        - seq INTEGER PRIMARY KEY
        - key INTEGER NOT NULL
        - payload_json TEXT NOT NULL
        - INDEX on (key, seq)

    applied_writes:
        - write_key TEXT PRIMARY KEY ("<batch_id>:<offset>" or "stream:<...>")
        - batch_id TEXT
        - start_offset INTEGER
        - end_offset INTEGER
        - partition_id TEXT
        - applied_at INTEGER (Unix ms)
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import sqlite3
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..errors import TransientStorageError
from ..registry.types import KeyRange

logger = logging.getLogger(__name__)


def canonical_json(payload: dict[str, Any]) -> str:
    """Serialize a payload the same way in every tier."""
    return json.dumps(
        payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False
    )


@dataclass(frozen=True)
class Row:
    """A stored record.

    Attributes:
        partition_id: Partition holding the row
        seq: Insertion sequence within the partition
        key: Record ordering key
        payload: Record body
    """

    partition_id: str
    seq: int
    key: int
    payload: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "partition_id": self.partition_id,
            "seq": self.seq,
            "key": self.key,
            "payload": self.payload,
        }


def table_name(partition_id: str) -> str:
    """Deterministic, injection-safe table name for a partition."""
    return "p_" + hashlib.sha256(partition_id.encode("utf-8")).hexdigest()[:24]


class HotStore:
    """SQLite store for hot partitions.

    Thread safety:
        Each database connection is created per-operation.
        SQLite handles concurrent access via WAL mode.

    Example:
        >>> store = HotStore("/var/lib/tierdb/hot.db")
        >>> await store.initialize()
        >>> await store.create_partition("default.0")
        >>> await store.insert_rows("default.0", [(5, '{"v":1}')], write_key="b1:0")
    """

    def __init__(
        self,
        db_path: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the hot store.

        Args:
            db_path: SQLite database file
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.db_path = Path(db_path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._rows_written = 0
        self._rows_read = 0

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        except sqlite3.OperationalError as e:
            if "locked" in str(e) or "busy" in str(e):
                raise TransientStorageError(str(e), operation="hot_store") from e
            raise
        finally:
            conn.close()

    async def initialize(self) -> None:
        """Create the shared tables if they don't exist."""
        with self._get_connection() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS applied_writes (
                    write_key TEXT PRIMARY KEY,
                    batch_id TEXT,
                    start_offset INTEGER,
                    end_offset INTEGER,
                    partition_id TEXT NOT NULL,
                    applied_at INTEGER NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_applied_writes_batch
                    ON applied_writes(batch_id, end_offset);
            """)

    async def create_partition(self, partition_id: str) -> None:
        """Create the table backing a partition (idempotent)."""
        table = table_name(partition_id)
        with self._get_connection() as conn:
            conn.executescript(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    key INTEGER NOT NULL,
                    payload_json TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_{table}_key ON {table}(key, seq);
            """)

    async def has_partition(self, partition_id: str) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._table_exists, partition_id)

    def _table_exists(self, partition_id: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
                (table_name(partition_id),),
            )
            return cursor.fetchone() is not None

    async def drop_partition(self, partition_id: str) -> None:
        """Drop a partition's table (idempotent)."""
        with self._get_connection() as conn:
            conn.execute(f"DROP TABLE IF EXISTS {table_name(partition_id)}")
        logger.info("Released hot partition", extra={"partition_id": partition_id})

    async def is_applied(self, write_key: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT 1 FROM applied_writes WHERE write_key = ?", (write_key,)
            )
            return cursor.fetchone() is not None

    async def applied_watermark(self, batch_id: str) -> int:
        """Highest record offset of a batch already committed (0 if none)."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT MAX(end_offset) FROM applied_writes WHERE batch_id = ?",
                (batch_id,),
            )
            row = cursor.fetchone()
            return int(row[0]) if row and row[0] is not None else 0

    async def insert_rows(
        self,
        partition_id: str,
        rows: Sequence[tuple[int, str]],
        write_key: str | None = None,
        batch_id: str | None = None,
        start_offset: int | None = None,
        end_offset: int | None = None,
    ) -> int:
        """Append rows to a partition atomically with their idempotency key.

        Args:
            partition_id: Target partition
            rows: (key, canonical payload JSON) pairs in key order
            write_key: Idempotency key for this write
            batch_id: Owning batch, for watermark queries
            start_offset: First batch offset covered by this write
            end_offset: Offset after the last record covered by this write

        Returns:
            Rows inserted (0 if write_key was already applied)
        """
        table = table_name(partition_id)
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                if write_key is not None:
                    cursor = conn.execute(
                        "SELECT 1 FROM applied_writes WHERE write_key = ?", (write_key,)
                    )
                    if cursor.fetchone() is not None:
                        conn.execute("ROLLBACK")
                        logger.debug(
                            "Skipping applied write",
                            extra={"write_key": write_key, "partition_id": partition_id},
                        )
                        return 0

                conn.executemany(
                    f"INSERT INTO {table} (key, payload_json) VALUES (?, ?)", rows
                )
                if write_key is not None:
                    conn.execute(
                        """
                        INSERT INTO applied_writes
                        (write_key, batch_id, start_offset, end_offset, partition_id, applied_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (
                            write_key,
                            batch_id,
                            start_offset,
                            end_offset,
                            partition_id,
                            int(time.time() * 1000),
                        ),
                    )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        self._rows_written += len(rows)
        return len(rows)

    async def read_rows(
        self,
        partition_id: str,
        key_range: KeyRange | None = None,
    ) -> list[Row]:
        """Read a partition's rows ordered by (key, seq).

        The scan runs in the default executor so that large partitions do not
        stall the event loop and callers can time it out.

        Args:
            partition_id: Partition to read
            key_range: Optional clip range

        Returns:
            Rows, empty if the partition table does not exist
        """
        loop = asyncio.get_running_loop()
        rows = await loop.run_in_executor(None, self._select_rows, partition_id, key_range)
        self._rows_read += len(rows)
        return rows

    def _select_rows(self, partition_id: str, key_range: KeyRange | None) -> list[Row]:
        table = table_name(partition_id)
        sql = f"SELECT seq, key, payload_json FROM {table}"
        params: tuple[int, ...] = ()
        if key_range is not None:
            sql += " WHERE key >= ? AND key < ?"
            params = (key_range.low, key_range.high)
        sql += " ORDER BY key, seq"

        with self._get_connection() as conn:
            try:
                cursor = conn.execute(sql, params)
            except sqlite3.OperationalError as e:
                if "no such table" in str(e):
                    return []
                raise
            return [
                Row(
                    partition_id=partition_id,
                    seq=r["seq"],
                    key=r["key"],
                    payload=json.loads(r["payload_json"]),
                )
                for r in cursor
            ]

    async def count(self, partition_id: str) -> tuple[int, int]:
        """Rows and payload bytes stored for a partition."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._count_rows, partition_id)

    def _count_rows(self, partition_id: str) -> tuple[int, int]:
        table = table_name(partition_id)
        with self._get_connection() as conn:
            try:
                cursor = conn.execute(
                    f"SELECT COUNT(*), COALESCE(SUM(LENGTH(CAST(payload_json AS BLOB))), 0) FROM {table}"
                )
            except sqlite3.OperationalError as e:
                if "no such table" in str(e):
                    return 0, 0
                raise
            row = cursor.fetchone()
            return int(row[0]), int(row[1])

    async def max_key(self, partition_id: str) -> int | None:
        with self._get_connection() as conn:
            cursor = conn.execute(f"SELECT MAX(key) FROM {table_name(partition_id)}")
            row = cursor.fetchone()
            return row[0] if row else None

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "db_path": str(self.db_path),
            "rows_written": self._rows_written,
            "rows_read": self._rows_read,
        }
