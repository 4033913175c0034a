"""
Batch ledger for idempotent bulk ingestion.

Records the status of every submitted batch_id so that re-submission is
answered from the ledger instead of re-applying rows.

Invariants:
    - A batch moves PENDING -> APPLIED or PENDING -> REJECTED, never back
    - rows_applied of an APPLIED batch is final

Table schema:
    batches:
        - batch_id TEXT PRIMARY KEY
        - lineage TEXT
        - source TEXT
        - status TEXT (PENDING, APPLIED, REJECTED)
        - record_count INTEGER
        - rows_applied INTEGER
        - reason TEXT
        - created_at INTEGER (Unix ms)
        - updated_at INTEGER (Unix ms)
"""

from __future__ import annotations

import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from .types import BatchStatus


@dataclass(frozen=True)
class LedgerEntry:
    batch_id: str
    lineage: str
    source: str
    status: BatchStatus
    record_count: int
    rows_applied: int
    reason: str | None


class BatchLedger:
    """SQLite-backed batch status table."""

    def __init__(self, db_path: str, busy_timeout_ms: int = 5000) -> None:
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms

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
            yield conn
        finally:
            conn.close()

    async def initialize(self) -> None:
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS batches (
                    batch_id TEXT PRIMARY KEY,
                    lineage TEXT NOT NULL,
                    source TEXT NOT NULL,
                    status TEXT NOT NULL,
                    record_count INTEGER NOT NULL,
                    rows_applied INTEGER NOT NULL DEFAULT 0,
                    reason TEXT,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
            """)

    async def get(self, batch_id: str) -> LedgerEntry | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM batches WHERE batch_id = ?", (batch_id,)
            ).fetchone()
        if row is None:
            return None
        return LedgerEntry(
            batch_id=row["batch_id"],
            lineage=row["lineage"],
            source=row["source"],
            status=BatchStatus(row["status"]),
            record_count=row["record_count"],
            rows_applied=row["rows_applied"],
            reason=row["reason"],
        )

    async def begin(self, batch_id: str, lineage: str, source: str, record_count: int) -> None:
        """Record a batch as PENDING (no-op if it is already known)."""
        now = int(time.time() * 1000)
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO batches
                (batch_id, lineage, source, status, record_count, rows_applied, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (batch_id, lineage, source, BatchStatus.PENDING.value, record_count, now, now),
            )

    async def finish(
        self,
        batch_id: str,
        status: BatchStatus,
        rows_applied: int = 0,
        reason: str | None = None,
    ) -> None:
        """Move a PENDING batch to its final status."""
        with self._get_connection() as conn:
            conn.execute(
                """
                UPDATE batches SET status = ?, rows_applied = ?, reason = ?, updated_at = ?
                WHERE batch_id = ? AND status = ?
                """,
                (
                    status.value,
                    rows_applied,
                    reason,
                    int(time.time() * 1000),
                    batch_id,
                    BatchStatus.PENDING.value,
                ),
            )

    async def list_pending(self) -> list[str]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT batch_id FROM batches WHERE status = ? ORDER BY created_at",
                (BatchStatus.PENDING.value,),
            ).fetchall()
        return [r["batch_id"] for r in rows]
