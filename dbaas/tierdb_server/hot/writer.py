"""
Partition writer: the single write path into OPEN partitions.

Both the bulk loader and the streaming buffer append through this class.
It routes sorted rows to the lineage's OPEN partition, rolls the lineage
over when a key runs past the partition's range or the partition reaches
its size threshold, and keeps registry accounting in step with the hot
store.

Invariants:
    - Writes and seals of a lineage's OPEN partition are serialized by one
      asyncio.Lock per lineage (there is only ever one OPEN partition per
      lineage, so this is the per-partition serialization point)
    - A rollover seals the OPEN partition and opens its successor under the
      same lock, so the lineage never has zero or two OPEN partitions
    - Runs of equal keys are never split across partitions
    - Keys below the lineage's first partition or inside a closed partition
      are rejected

How to change safely:
    - Never call into the archival pipeline or router while holding a lock
    - Keep write keys deterministic: the loader resumes from them
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from ..errors import IngestionValidationError, PartitionConflictError
from ..registry import KeyRange, Partition, PartitionRegistry, PartitionState
from .hot_store import HotStore

logger = logging.getLogger(__name__)


def align_down(key: int, span: int) -> int:
    return (key // span) * span


def align_up(key: int, span: int) -> int:
    """Smallest multiple of span strictly greater than key."""
    return (key // span + 1) * span


@dataclass
class AppendResult:
    """Outcome of one append call.

    Attributes:
        rows_written: Rows newly committed
        rows_skipped: Rows whose write key was already applied
        partitions: Partitions that received rows
    """

    rows_written: int = 0
    rows_skipped: int = 0
    partitions: list[str] | None = None


class PartitionWriter:
    """Serialized writer for OPEN partitions.

    Example:
        >>> writer = PartitionWriter(registry, hot_store, size_threshold=1000, partition_span=3600_000)
        >>> async with writer.lock("default"):
        ...     await writer.append_locked("default", [(5, '{"v":1}')], write_key_prefix="b1")
    """

    def __init__(
        self,
        registry: PartitionRegistry,
        hot_store: HotStore,
        size_threshold: int,
        partition_span: int,
    ) -> None:
        self.registry = registry
        self.hot_store = hot_store
        self.size_threshold = size_threshold
        self.partition_span = partition_span
        self._locks: dict[str, asyncio.Lock] = {}
        self._rollovers = 0

    def lock(self, lineage: str) -> asyncio.Lock:
        """Write lock of a lineage's OPEN partition."""
        lock = self._locks.get(lineage)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[lineage] = lock
        return lock

    def validate_key(self, lineage: str, key: int) -> str | None:
        """Check that a key may still be written to a lineage.

        Returns:
            A reason string if the key is not writable, else None
        """
        first = self.registry.first_partition(lineage)
        if first is None:
            return None
        if key < first.key_range.low:
            return f"key {key} is below lineage '{lineage}' domain start {first.key_range.low}"
        owner = self.registry.find(lineage, key)
        if owner is not None and owner.state != PartitionState.OPEN:
            return f"key {key} falls in {owner.state.value} partition {owner.id}"
        return None

    async def append(
        self,
        lineage: str,
        entries: Sequence[tuple[int, str]],
        write_key_prefix: str | None = None,
        base_offset: int = 0,
    ) -> AppendResult:
        """Acquire the lineage lock and append. See append_locked."""
        async with self.lock(lineage):
            return await self.append_locked(lineage, entries, write_key_prefix, base_offset)

    async def append_locked(
        self,
        lineage: str,
        entries: Sequence[tuple[int, str]],
        write_key_prefix: str | None = None,
        base_offset: int = 0,
    ) -> AppendResult:
        """Append key-sorted rows to a lineage. Caller holds lock(lineage).

        Args:
            lineage: Target lineage
            entries: (key, canonical payload JSON) pairs sorted by key
            write_key_prefix: When set, each committed segment gets the
                idempotency key "<prefix>:<offset>"
            base_offset: Offset of entries[0] within the caller's batch

        Returns:
            AppendResult with written/skipped counts

        Raises:
            IngestionValidationError: If a key is no longer writable
            TransientStorageError: If the hot store is busy
        """
        result = AppendResult(partitions=[])
        n = len(entries)
        i = 0
        while i < n:
            key = entries[i][0]
            reason = self.validate_key(lineage, key)
            if reason is not None:
                raise IngestionValidationError(reason, errors=[reason])

            partition = await self._partition_for(lineage, key)
            end = i
            while end < n and entries[end][0] < partition.key_range.high:
                end += 1

            cut = min(end, i + max(self.size_threshold - partition.row_count, 0))
            # Back off to the start of an equal-key run straddling the cut.
            while i < cut < end and entries[cut - 1][0] == entries[cut][0]:
                cut -= 1

            if cut == i:
                max_key = await self.hot_store.max_key(partition.id)
                if partition.row_count == 0 or (max_key is not None and key <= max_key):
                    # A lone oversized run, or a late key that can only go here.
                    cut = i + 1
                    while cut < end and entries[cut][0] == key:
                        cut += 1
                    if partition.row_count + (cut - i) > self.size_threshold:
                        logger.warning(
                            "Partition exceeds size threshold",
                            extra={"partition_id": partition.id, "key": key},
                        )
                else:
                    await self._rollover_locked(lineage, split_at=key)
                    continue

            segment = entries[i:cut]
            write_key = f"{write_key_prefix}:{base_offset + i}" if write_key_prefix else None
            inserted = await self.hot_store.insert_rows(
                partition.id,
                segment,
                write_key=write_key,
                batch_id=write_key_prefix,
                start_offset=base_offset + i,
                end_offset=base_offset + cut,
            )
            if inserted:
                byte_size = sum(len(payload.encode("utf-8")) for _, payload in segment)
                self.registry.record_write(partition.id, inserted, byte_size)
                result.rows_written += inserted
            else:
                result.rows_skipped += len(segment)
            if partition.id not in result.partitions:
                result.partitions.append(partition.id)
            i = cut

        return result

    async def _partition_for(self, lineage: str, key: int) -> Partition:
        """OPEN partition that may take key, rolling over if needed."""
        partition = self.registry.open_partition_for(lineage)
        if partition is None:
            last = self.registry.last_partition(lineage)
            if last is None:
                low = align_down(key, self.partition_span)
            else:
                low = last.key_range.high
            partition = self.registry.open_partition(
                lineage, KeyRange(low, max(align_up(key, self.partition_span), low + 1))
            )
            await self.hot_store.create_partition(partition.id)

        if key >= partition.key_range.high:
            self.registry.seal(partition.id)
            self._rollovers += 1
            successor = self.registry.open_partition(
                lineage,
                KeyRange(partition.key_range.high, align_up(key, self.partition_span)),
            )
            await self.hot_store.create_partition(successor.id)
            return successor
        return partition

    async def rollover(
        self,
        lineage: str,
        split_at: int | None = None,
        partition_id: str | None = None,
    ) -> Partition | None:
        """Seal a lineage's OPEN partition and open its successor.

        Args:
            lineage: Lineage to roll over
            split_at: New upper bound of the sealed partition. Defaults to
                just past its highest stored key, so the successor takes the
                rest of the window.
            partition_id: Only roll over if this is still the OPEN partition

        Returns:
            The sealed partition, or None if there was nothing to roll over
        """
        async with self.lock(lineage):
            current = self.registry.open_partition_for(lineage)
            if current is None or (partition_id is not None and current.id != partition_id):
                return None
            return await self._rollover_locked(lineage, split_at)

    async def _rollover_locked(self, lineage: str, split_at: int | None = None) -> Partition | None:
        partition = self.registry.open_partition_for(lineage)
        if partition is None:
            return None

        key_range = partition.key_range
        max_key = await self.hot_store.max_key(partition.id)
        if split_at is None:
            if max_key is not None and max_key + 1 < key_range.high:
                split_at = max_key + 1
        elif split_at <= key_range.low or (max_key is not None and split_at <= max_key):
            raise PartitionConflictError(
                f"Cannot split {partition.id} at {split_at}: "
                f"rows up to key {max_key} must stay in {key_range}",
                partition_id=partition.id,
            )

        sealed = self.registry.seal(partition.id, split_at=split_at)
        succ_low = sealed.key_range.high
        succ_high = (
            key_range.high if key_range.high > succ_low else align_up(succ_low, self.partition_span)
        )
        successor = self.registry.open_partition(lineage, KeyRange(succ_low, succ_high))
        await self.hot_store.create_partition(successor.id)
        self._rollovers += 1
        return sealed

    @property
    def stats(self) -> dict[str, Any]:
        return {"lineages": len(self._locks), "rollovers": self._rollovers}
