"""
Archival pipeline for TierDB.

Moves a sealed partition from the hot store into cold storage as a
verified Parquet object.

Pipeline steps (each idempotent):
    1. Extract: read every row of the partition from the hot store
    2. Transform: apply projection/filter, encode to Parquet, checksum
    3. Write: put the object at a deterministic key (overwrite on rerun)
    4. Verify: read it back, compare checksum and row count
    5. Record: store the manifest and move the partition to COLD
    6. Release (later, after the grace period): drop hot rows, retire

Archive format:
    <prefix>/lineage=<lineage>/partition=<id>/data.parquet

Invariants:
    - Steps 1-3 retry TransientStorageError with bounded backoff
    - A checksum mismatch is never retried automatically: the partition
      stays ARCHIVING with archive_failed set, an alert is raised, and no
      manifest is recorded
    - Running the pipeline twice yields one object and one manifest

How to change safely:
    - Archive format changes must keep the object key deterministic
    - Never record a manifest before verification succeeds
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from ..alerts import Alert, AlertChannel
from ..config import ArchiveConfig
from ..errors import ChecksumMismatchError, PartitionConflictError
from ..hot import HotStore
from ..registry import ArchiveManifest, Partition, PartitionRegistry, PartitionState
from ..retry import retry_transient
from .codec import FORMAT, ArchivePolicy, compute_checksum, count_rows, encode_rows
from .cold_storage import ColdStorage

logger = logging.getLogger(__name__)

T = TypeVar("T")


def object_key(prefix: str, partition: Partition) -> str:
    """Deterministic cold storage key of a partition."""
    safe_lineage = "".join(c for c in partition.lineage if c.isalnum() or c in "-_")
    return f"{prefix}/lineage={safe_lineage}/partition={partition.id}/data.parquet"


@dataclass(frozen=True)
class ArchiveResult:
    """Outcome of an archive() call.

    Attributes:
        partition_id: Archived partition
        manifest: The partition's manifest
        already_archived: True when the partition was COLD before the call
    """

    partition_id: str
    manifest: ArchiveManifest
    already_archived: bool = False


class ArchivalPipeline:
    """Extract, transform, write, verify, and record one partition.

    Example:
        >>> pipeline = ArchivalPipeline(registry, hot_store, storage, alerts, ArchiveConfig())
        >>> result = await pipeline.archive("default.0")
        >>> result.manifest.checksum
        'sha256:...'
    """

    def __init__(
        self,
        registry: PartitionRegistry,
        hot_store: HotStore,
        cold_storage: ColdStorage,
        alerts: AlertChannel,
        config: ArchiveConfig | None = None,
        prefix: str = "partitions",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.registry = registry
        self.hot_store = hot_store
        self.cold_storage = cold_storage
        self.alerts = alerts
        self.config = config or ArchiveConfig()
        self.prefix = prefix.rstrip("/")
        self.policy = ArchivePolicy(self.config.projection, self.config.row_filter)
        self._clock = clock

        self._archived = 0
        self._checksum_failures = 0
        self._released = 0

    async def _retry(self, operation: Callable[[], Awaitable[T]], name: str) -> T:
        return await retry_transient(
            operation,
            name,
            attempts=self.config.retry_attempts,
            base_delay=self.config.retry_base_delay,
            max_delay=self.config.retry_max_delay,
        )

    async def archive(self, partition_id: str) -> ArchiveResult:
        """Archive a SEALED (or resumed ARCHIVING) partition.

        Args:
            partition_id: Partition to archive

        Returns:
            ArchiveResult with the partition's manifest

        Raises:
            ChecksumMismatchError: If verification fails
            PartitionConflictError: If the partition is OPEN or flagged failed
            TransientStorageError: If a step keeps failing after retries
        """
        partition = self.registry.get(partition_id)
        existing = self._existing(partition)
        if existing is not None:
            return existing

        if partition.state == PartitionState.OPEN:
            raise PartitionConflictError(
                f"Partition {partition_id} must be sealed before archival",
                partition_id=partition_id,
                expected=PartitionState.SEALED.value,
                actual=partition.state.value,
            )
        if partition.state == PartitionState.SEALED:
            try:
                partition = self.registry.begin_archive(partition_id)
            except PartitionConflictError:
                # Another caller moved it first; act on what it is now.
                partition = self.registry.get(partition_id)
                existing = self._existing(partition)
                if existing is not None:
                    return existing
        if partition.archive_failed:
            raise PartitionConflictError(
                f"Partition {partition_id} failed verification; re-trigger required",
                partition_id=partition_id,
            )

        start = time.monotonic()
        logger.info("Archiving partition", extra={"partition_id": partition_id})

        # 1. Extract
        rows = await self._retry(
            lambda: self.hot_store.read_rows(partition_id), f"extract {partition_id}"
        )

        # 2. Transform
        loop = asyncio.get_running_loop()
        kept = self.policy.apply(rows)
        data = await loop.run_in_executor(None, encode_rows, kept, self.config.compression)
        checksum = await loop.run_in_executor(None, compute_checksum, data)

        # 3. Write
        key = object_key(self.prefix, partition)
        await self._retry(lambda: self.cold_storage.put(key, data), f"write {partition_id}")

        # 4. Verify
        stored = await self._retry(lambda: self.cold_storage.get(key), f"verify {partition_id}")
        actual = await loop.run_in_executor(None, compute_checksum, stored)
        if actual == checksum:
            stored_rows = await loop.run_in_executor(None, count_rows, stored)
            if stored_rows != len(kept):
                actual = f"{actual} ({stored_rows} rows, expected {len(kept)})"
        if actual != checksum:
            self._fail_verification(partition_id, checksum, actual, key)

        # 5. Record
        manifest = ArchiveManifest(
            partition_id=partition_id,
            storage_uri=key,
            format=FORMAT,
            checksum=checksum,
            row_count=len(kept),
            byte_size=len(data),
            created_at=self._clock(),
        )
        try:
            self.registry.complete_archive(partition_id, manifest)
        except PartitionConflictError:
            existing = self._existing(self.registry.get(partition_id))
            if existing is None:
                raise
            return existing

        self._archived += 1
        logger.info(
            "Archived partition",
            extra={
                "partition_id": partition_id,
                "rows": len(kept),
                "bytes": len(data),
                "storage_key": key,
                "duration_ms": int((time.monotonic() - start) * 1000),
            },
        )
        return ArchiveResult(partition_id=partition_id, manifest=manifest)

    def _existing(self, partition: Partition) -> ArchiveResult | None:
        if partition.state not in (PartitionState.COLD, PartitionState.RETIRED):
            return None
        manifest = self.registry.get_manifest(partition.id)
        if manifest is None:
            return None
        return ArchiveResult(partition_id=partition.id, manifest=manifest, already_archived=True)

    def _fail_verification(self, partition_id: str, expected: str, actual: str, key: str) -> None:
        self._checksum_failures += 1
        error = ChecksumMismatchError(
            partition_id, expected, actual, storage_uri=self.cold_storage.uri(key)
        )
        self.registry.mark_archive_failed(partition_id)
        self.alerts.raise_alert(Alert.from_error(error))
        logger.error(
            "Archive verification failed",
            extra={"partition_id": partition_id, "expected": expected, "actual": actual},
        )
        raise error

    async def retrigger(self, partition_id: str) -> ArchiveResult:
        """Operator action: clear a verification failure and rerun."""
        partition = self.registry.get(partition_id)
        if partition.state == PartitionState.ARCHIVING and partition.archive_failed:
            self.registry.clear_archive_failure(partition_id)
            logger.info("Re-triggered archival", extra={"partition_id": partition_id})
        return await self.archive(partition_id)

    async def release(self, partition_id: str) -> Partition:
        """Drop a COLD partition's hot rows, then retire it.

        Raises:
            PartitionConflictError: If the partition is not COLD
        """
        partition = self.registry.get(partition_id)
        if partition.state == PartitionState.RETIRED:
            return partition
        if partition.state != PartitionState.COLD:
            raise PartitionConflictError(
                f"Partition {partition_id} is {partition.state.value}, expected COLD",
                partition_id=partition_id,
                expected=PartitionState.COLD.value,
                actual=partition.state.value,
            )
        await self._retry(
            lambda: self.hot_store.drop_partition(partition_id), f"release {partition_id}"
        )
        partition = self.registry.retire(partition_id)
        self._released += 1
        return partition

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "archived": self._archived,
            "checksum_failures": self._checksum_failures,
            "released": self._released,
        }
