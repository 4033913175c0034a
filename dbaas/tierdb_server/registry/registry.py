"""
Partition Registry for TierDB.

The PartitionRegistry is the single authority over partition metadata.
It provides:
- Opening partitions with contiguity checks per lineage
- Compare-and-swap state transitions (seal, archive, retire)
- Write accounting for OPEN partitions
- Manifest storage, atomically with the COLD transition
- Range lookup across hot and cold partitions
- A change feed for caches that track partition versions

Invariants:
    - Within a lineage, key ranges are disjoint and contiguous
    - At most one partition per lineage is OPEN, and it is the last one
    - Every mutation increments the partition's version
    - State only moves forward: OPEN -> SEALED -> ARCHIVING -> COLD -> RETIRED
    - A manifest exists iff the partition is COLD or RETIRED

Thread-safety:
    - Mutations are serialized by an internal RLock
    - Reads are lock-free: they see a copy-on-write dict of immutable
      Partition values that is swapped in whole after each mutation
    - Listeners run after the lock is released

How to change safely:
    - New transitions must go through _transition() so that the version
      bump, persistence, and change feed stay consistent
    - Never hold the lock while calling into another component
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Any

from ..errors import (
    AlreadySealedError,
    PartitionConflictError,
    PartitionNotFoundError,
)
from .types import ArchiveManifest, KeyRange, Partition, PartitionState

logger = logging.getLogger(__name__)

PartitionListener = Callable[[Partition], None]


def _partition_id(lineage: str, low: int) -> str:
    safe_lineage = "".join(c for c in lineage if c.isalnum() or c in "-_")
    return f"{safe_lineage}.{low}"


class PartitionRegistry:
    """Authoritative, persisted catalogue of partitions.

    Example:
        >>> registry = PartitionRegistry("/var/lib/tierdb/registry.db")
        >>> p = registry.open_partition("default", KeyRange(0, 1000))
        >>> registry.seal(p.id)
        >>> registry.begin_archive(p.id)
    """

    def __init__(
        self,
        db_path: str | None = None,
        clock: Callable[[], float] = time.time,
        busy_timeout_ms: int = 5000,
        wal_mode: bool = True,
    ) -> None:
        """Initialize the registry.

        Args:
            db_path: SQLite file for persistence (None keeps metadata in memory)
            clock: Source of Unix timestamps
            busy_timeout_ms: SQLite busy timeout
            wal_mode: Enable SQLite WAL mode
        """
        self._db_path = Path(db_path) if db_path else None
        self._clock = clock
        self._busy_timeout_ms = busy_timeout_ms
        self._wal_mode = wal_mode
        self._lock = threading.RLock()
        self._partitions: dict[str, Partition] = {}
        self._manifests: dict[str, ArchiveManifest] = {}
        self._listeners: list[PartitionListener] = []
        self._transitions = 0

        if self._db_path is not None:
            with self._get_connection() as conn:
                self._create_schema(conn)
                self._load(conn)

    # ── persistence ─────────────────────────────────────────────────

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        assert self._db_path is not None
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self._db_path),
            timeout=self._busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self._busy_timeout_ms}")
            if self._wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS partitions (
                id TEXT PRIMARY KEY,
                lineage TEXT NOT NULL,
                low INTEGER NOT NULL,
                high INTEGER NOT NULL,
                state TEXT NOT NULL,
                row_count INTEGER NOT NULL DEFAULT 0,
                byte_size INTEGER NOT NULL DEFAULT 0,
                created_at REAL NOT NULL,
                sealed_at REAL,
                archived_at REAL,
                retired_at REAL,
                archive_failed INTEGER NOT NULL DEFAULT 0,
                version INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_partitions_lineage
                ON partitions(lineage, low);

            CREATE TABLE IF NOT EXISTS manifests (
                partition_id TEXT PRIMARY KEY,
                manifest_json TEXT NOT NULL
            );
        """)

    def _load(self, conn: sqlite3.Connection) -> None:
        for row in conn.execute("SELECT * FROM partitions"):
            partition = Partition(
                id=row["id"],
                lineage=row["lineage"],
                key_range=KeyRange(row["low"], row["high"]),
                state=PartitionState(row["state"]),
                row_count=row["row_count"],
                byte_size=row["byte_size"],
                created_at=row["created_at"],
                sealed_at=row["sealed_at"],
                archived_at=row["archived_at"],
                retired_at=row["retired_at"],
                archive_failed=bool(row["archive_failed"]),
                version=row["version"],
            )
            self._partitions[partition.id] = partition

        for row in conn.execute("SELECT manifest_json FROM manifests"):
            manifest = ArchiveManifest.from_dict(json.loads(row["manifest_json"]))
            self._manifests[manifest.partition_id] = manifest

        if self._partitions:
            logger.info(
                "Loaded partition registry",
                extra={
                    "partitions": len(self._partitions),
                    "manifests": len(self._manifests),
                },
            )

    def _persist(self, partition: Partition, manifest: ArchiveManifest | None = None) -> None:
        if self._db_path is None:
            return
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO partitions
                    (id, lineage, low, high, state, row_count, byte_size, created_at,
                     sealed_at, archived_at, retired_at, archive_failed, version)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        partition.id,
                        partition.lineage,
                        partition.key_range.low,
                        partition.key_range.high,
                        partition.state.value,
                        partition.row_count,
                        partition.byte_size,
                        partition.created_at,
                        partition.sealed_at,
                        partition.archived_at,
                        partition.retired_at,
                        int(partition.archive_failed),
                        partition.version,
                    ),
                )
                if manifest is not None:
                    conn.execute(
                        "INSERT OR REPLACE INTO manifests (partition_id, manifest_json) VALUES (?, ?)",
                        (manifest.partition_id, json.dumps(manifest.to_dict(), sort_keys=True)),
                    )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    # ── change feed ─────────────────────────────────────────────────

    def subscribe(self, listener: PartitionListener) -> Callable[[], None]:
        """Register a callback invoked with every new partition snapshot.

        Returns:
            A function that removes the listener.
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, partition: Partition) -> None:
        for listener in list(self._listeners):
            try:
                listener(partition)
            except Exception:
                logger.error(
                    "Partition listener failed",
                    extra={"partition_id": partition.id},
                    exc_info=True,
                )

    # ── mutations ───────────────────────────────────────────────────

    def _commit(self, partition: Partition, manifest: ArchiveManifest | None = None) -> None:
        """Persist, then publish a new snapshot. Caller holds the lock."""
        self._persist(partition, manifest)
        partitions = dict(self._partitions)
        partitions[partition.id] = partition
        if manifest is not None:
            manifests = dict(self._manifests)
            manifests[manifest.partition_id] = manifest
            self._manifests = manifests
        self._partitions = partitions
        self._transitions += 1

    def _transition(
        self,
        partition_id: str,
        expected: PartitionState,
        manifest: ArchiveManifest | None = None,
        compute: Callable[[Partition], dict[str, Any]] | None = None,
        **changes: Any,
    ) -> Partition:
        with self._lock:
            current = self._require(partition_id)
            if current.state != expected:
                error_cls = (
                    AlreadySealedError
                    if expected == PartitionState.OPEN and "sealed_at" in changes
                    else PartitionConflictError
                )
                raise error_cls(
                    f"Partition {partition_id} is {current.state.value}, expected {expected.value}",
                    partition_id=partition_id,
                    expected=expected.value,
                    actual=current.state.value,
                )
            if compute is not None:
                changes.update(compute(current))
            updated = replace(current, version=current.version + 1, **changes)
            self._commit(updated, manifest)

        self._notify(updated)
        return updated

    def open_partition(self, lineage: str, key_range: KeyRange) -> Partition:
        """Open a new partition at the end of a lineage.

        Args:
            lineage: Stream the partition belongs to
            key_range: Keys the partition owns

        Returns:
            The new OPEN partition

        Raises:
            PartitionConflictError: If the lineage already has an OPEN
                partition or the range does not continue the lineage
        """
        with self._lock:
            last = self.last_partition(lineage)
            if last is not None:
                if last.state == PartitionState.OPEN:
                    raise PartitionConflictError(
                        f"Lineage '{lineage}' already has OPEN partition {last.id}",
                        partition_id=last.id,
                        expected="not OPEN",
                        actual=last.state.value,
                    )
                if key_range.low != last.key_range.high:
                    raise PartitionConflictError(
                        f"Range {key_range} does not continue lineage '{lineage}' "
                        f"(previous partition ends at {last.key_range.high})",
                        partition_id=last.id,
                    )

            partition = Partition(
                id=_partition_id(lineage, key_range.low),
                lineage=lineage,
                key_range=key_range,
                state=PartitionState.OPEN,
                created_at=self._clock(),
            )
            if partition.id in self._partitions:
                raise PartitionConflictError(
                    f"Partition {partition.id} already exists",
                    partition_id=partition.id,
                )
            self._commit(partition)

        logger.info(
            "Opened partition",
            extra={"partition_id": partition.id, "lineage": lineage, "key_range": str(key_range)},
        )
        self._notify(partition)
        return partition

    def seal(self, partition_id: str, split_at: int | None = None) -> Partition:
        """Close an OPEN partition to further writes.

        Args:
            partition_id: Partition to seal
            split_at: Optional new exclusive upper bound; keys from split_at
                onward are left for a successor partition

        Raises:
            AlreadySealedError: If the partition is not OPEN
            ValueError: If split_at is outside (low, high]
        """
        def narrow(current: Partition) -> dict[str, Any]:
            key_range = current.key_range
            if split_at is None:
                return {}
            if not key_range.low < split_at <= key_range.high:
                raise ValueError(f"split_at {split_at} outside {key_range}")
            return {"key_range": KeyRange(key_range.low, split_at)}

        partition = self._transition(
            partition_id,
            PartitionState.OPEN,
            compute=narrow,
            state=PartitionState.SEALED,
            sealed_at=self._clock(),
        )
        logger.info(
            "Sealed partition",
            extra={
                "partition_id": partition_id,
                "key_range": str(partition.key_range),
                "row_count": partition.row_count,
            },
        )
        return partition

    def begin_archive(self, partition_id: str) -> Partition:
        """SEALED -> ARCHIVING."""
        return self._transition(
            partition_id, PartitionState.SEALED, state=PartitionState.ARCHIVING
        )

    def complete_archive(self, partition_id: str, manifest: ArchiveManifest) -> Partition:
        """ARCHIVING -> COLD, recording the manifest in the same write."""
        if manifest.partition_id != partition_id:
            raise ValueError(
                f"Manifest belongs to {manifest.partition_id}, not {partition_id}"
            )
        partition = self._transition(
            partition_id,
            PartitionState.ARCHIVING,
            manifest=manifest,
            state=PartitionState.COLD,
            archived_at=self._clock(),
            archive_failed=False,
        )
        logger.info(
            "Partition archived",
            extra={
                "partition_id": partition_id,
                "storage_uri": manifest.storage_uri,
                "checksum": manifest.checksum,
            },
        )
        return partition

    def retire(self, partition_id: str) -> Partition:
        """COLD -> RETIRED. The manifest is retained."""
        partition = self._transition(
            partition_id,
            PartitionState.COLD,
            state=PartitionState.RETIRED,
            retired_at=self._clock(),
        )
        logger.info("Retired partition", extra={"partition_id": partition_id})
        return partition

    def mark_archive_failed(self, partition_id: str) -> Partition:
        """Flag an ARCHIVING partition as failed verification."""
        return self._transition(partition_id, PartitionState.ARCHIVING, archive_failed=True)

    def clear_archive_failure(self, partition_id: str) -> Partition:
        """Clear the failure flag so the pipeline can run again."""
        return self._transition(partition_id, PartitionState.ARCHIVING, archive_failed=False)

    def record_write(self, partition_id: str, rows: int, byte_size: int) -> Partition:
        """Add rows written to an OPEN partition to its accounting."""
        return self._transition(
            partition_id,
            PartitionState.OPEN,
            compute=lambda p: {
                "row_count": p.row_count + rows,
                "byte_size": p.byte_size + byte_size,
            },
        )

    def set_accounting(self, partition_id: str, rows: int, byte_size: int) -> Partition:
        """Overwrite accounting after a crash, from the hot store's counts."""
        with self._lock:
            current = self._require(partition_id)
            if current.row_count == rows and current.byte_size == byte_size:
                return current
            updated = replace(
                current, row_count=rows, byte_size=byte_size, version=current.version + 1
            )
            self._commit(updated)

        logger.warning(
            "Reconciled partition accounting",
            extra={
                "partition_id": partition_id,
                "row_count": rows,
                "previous_row_count": current.row_count,
            },
        )
        self._notify(updated)
        return updated

    # ── reads ───────────────────────────────────────────────────────

    def _require(self, partition_id: str) -> Partition:
        partition = self._partitions.get(partition_id)
        if partition is None:
            raise PartitionNotFoundError(partition_id)
        return partition

    def get(self, partition_id: str) -> Partition:
        """Current snapshot of a partition.

        Raises:
            PartitionNotFoundError: If the id is unknown
        """
        return self._require(partition_id)

    def get_manifest(self, partition_id: str) -> ArchiveManifest | None:
        return self._manifests.get(partition_id)

    def list_partitions(
        self,
        state: PartitionState | None = None,
        lineage: str | None = None,
    ) -> list[Partition]:
        """List partitions ordered by (lineage, low)."""
        partitions = [
            p
            for p in self._partitions.values()
            if (state is None or p.state == state) and (lineage is None or p.lineage == lineage)
        ]
        return sorted(partitions, key=lambda p: (p.lineage, p.key_range.low))

    def lineages(self) -> list[str]:
        return sorted({p.lineage for p in self._partitions.values()})

    def last_partition(self, lineage: str) -> Partition | None:
        """Partition with the highest range in a lineage."""
        candidates = [p for p in self._partitions.values() if p.lineage == lineage]
        if not candidates:
            return None
        return max(candidates, key=lambda p: p.key_range.low)

    def first_partition(self, lineage: str) -> Partition | None:
        candidates = [p for p in self._partitions.values() if p.lineage == lineage]
        if not candidates:
            return None
        return min(candidates, key=lambda p: p.key_range.low)

    def open_partition_for(self, lineage: str) -> Partition | None:
        last = self.last_partition(lineage)
        if last is not None and last.state == PartitionState.OPEN:
            return last
        return None

    def find(self, lineage: str, key: int) -> Partition | None:
        """Partition of a lineage whose range contains key."""
        for p in self._partitions.values():
            if p.lineage == lineage and p.key_range.contains(key):
                return p
        return None

    def lookup(self, key_range: KeyRange, lineage: str | None = None) -> list[Partition]:
        """Partitions overlapping a range, ordered by low.

        RETIRED partitions are included; they are served from their manifest.
        """
        partitions = [
            p
            for p in self._partitions.values()
            if p.key_range.overlaps(key_range) and (lineage is None or p.lineage == lineage)
        ]
        return sorted(partitions, key=lambda p: (p.key_range.low, p.lineage))

    def check_invariants(self) -> list[str]:
        """Check range and state invariants.

        Returns:
            Human-readable violations (empty when consistent)
        """
        violations: list[str] = []
        for lineage in self.lineages():
            parts = self.list_partitions(lineage=lineage)
            open_parts = [p for p in parts if p.state == PartitionState.OPEN]
            if len(open_parts) > 1:
                violations.append(
                    f"{lineage}: {len(open_parts)} OPEN partitions"
                )
            if open_parts and open_parts[-1] is not parts[-1]:
                violations.append(f"{lineage}: OPEN partition is not the last one")
            for prev, nxt in zip(parts, parts[1:]):
                if prev.key_range.high != nxt.key_range.low:
                    violations.append(
                        f"{lineage}: gap or overlap between {prev.id} {prev.key_range} "
                        f"and {nxt.id} {nxt.key_range}"
                    )
            for p in parts:
                has_manifest = p.id in self._manifests
                archived = p.state in (PartitionState.COLD, PartitionState.RETIRED)
                if has_manifest != archived:
                    violations.append(f"{p.id}: state {p.state.value} with manifest={has_manifest}")
        return violations

    @property
    def stats(self) -> dict[str, Any]:
        """Registry statistics."""
        by_state: dict[str, int] = {s.value: 0 for s in PartitionState}
        for p in self._partitions.values():
            by_state[p.state.value] += 1
        return {
            "partitions": len(self._partitions),
            "manifests": len(self._manifests),
            "transitions": self._transitions,
            "by_state": by_state,
        }
