"""
Query federation router for TierDB.

Splits a key-range query into one sub-query per overlapping partition,
runs them concurrently against whichever tier holds each partition, and
merges the results in order.

Tier selection:
    OPEN, SEALED, ARCHIVING -> hot store (no read gap while archiving)
    COLD, RETIRED           -> the manifest's cold object

Invariants:
    - Results are ordered by (order_by value, key, seq), or (key, seq)
    - A sub-query that misses the deadline is cancelled and reported in
      failed_partitions with partial=True; the query itself never fails
      because of a deadline
    - Hot rows go through the archive policy so both tiers return the
      same row set
    - A partition released between lookup and read is re-read from cold

How to change safely:
    - Keep the merge key total: (value, key, seq) breaks every tie
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from ..archive import ArchivePolicy, ColdStorage, decode_rows
from ..config import QueryConfig
from ..errors import ColdObjectNotFoundError, QueryTimeoutError, TransientStorageError
from ..hot import HotStore, Row
from ..predicate import Predicate
from ..registry import KeyRange, Partition, PartitionRegistry

logger = logging.getLogger(__name__)

SUBQUERY_ATTEMPTS = 2


@dataclass
class QueryResult:
    """Merged query output.

    Attributes:
        rows: Matching rows in merge order
        partial: True when at least one sub-query did not complete
        failed_partitions: Partitions whose sub-query timed out or failed
        partitions_scanned: Partitions that contributed (or were tried)
    """

    rows: list[Row] = field(default_factory=list)
    partial: bool = False
    failed_partitions: list[str] = field(default_factory=list)
    partitions_scanned: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "rows": [r.to_dict() for r in self.rows],
            "partial": self.partial,
            "failed_partitions": self.failed_partitions,
            "partitions_scanned": self.partitions_scanned,
        }


class _SortKey:
    """Orders possibly-missing payload values: present values first."""

    __slots__ = ("missing", "value", "key", "seq")

    def __init__(self, row: Row, field_name: str) -> None:
        value = row.key if field_name == "key" else row.payload.get(field_name)
        self.missing = value is None
        self.value = value
        self.key = row.key
        self.seq = row.seq

    def _tuple(self) -> tuple[Any, ...]:
        return (self.missing, self.value if not self.missing else 0, self.key, self.seq)

    def __lt__(self, other: _SortKey) -> bool:
        try:
            return self._tuple() < other._tuple()
        except TypeError:
            # Mixed value types fall back to comparing type names.
            return (self.missing, type(self.value).__name__, self.key, self.seq) < (
                other.missing,
                type(other.value).__name__,
                other.key,
                other.seq,
            )


class QueryRouter:
    """Federates range queries across hot and cold partitions.

    Example:
        >>> router = QueryRouter(registry, hot_store, cold_storage)
        >>> result = await router.query(KeyRange(0, 10_000), predicate={"status": "ok"}, timeout=2.0)
        >>> result.partial
        False
    """

    def __init__(
        self,
        registry: PartitionRegistry,
        hot_store: HotStore,
        cold_storage: ColdStorage,
        policy: ArchivePolicy | None = None,
        config: QueryConfig | None = None,
    ) -> None:
        self.registry = registry
        self.hot_store = hot_store
        self.cold_storage = cold_storage
        self.policy = policy or ArchivePolicy()
        self.config = config or QueryConfig()
        self._semaphore = asyncio.Semaphore(self.config.max_parallel_subqueries)

        self._queries = 0
        self._partial_queries = 0
        self._hot_reads = 0
        self._cold_reads = 0

    async def query(
        self,
        key_range: KeyRange,
        predicate: dict[str, Any] | Predicate | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        timeout: float | None = None,
        lineage: str | None = None,
    ) -> QueryResult:
        """Run a federated range query.

        Args:
            key_range: Keys to read
            predicate: Dict filter (see predicate module)
            order_by: Payload field (or "key") to order by
            descending: Reverse the ordering
            limit: Maximum rows returned
            timeout: Deadline in seconds (config default when None)
            lineage: Restrict to one lineage

        Returns:
            QueryResult; partial=True if any sub-query missed the deadline

        Raises:
            ValueError: If the predicate is malformed
        """
        pred = predicate if isinstance(predicate, Predicate) else Predicate(predicate)
        timeout = self.config.default_timeout if timeout is None else timeout
        self._queries += 1

        # Conditions on "key" narrow the partitions consulted.
        bounds = pred.key_range()
        if bounds is not None:
            narrowed = key_range.intersect(bounds)
            if narrowed is None:
                return QueryResult()
            key_range = narrowed

        partitions = self.registry.lookup(key_range, lineage=lineage)
        result = QueryResult(partitions_scanned=len(partitions))
        if not partitions:
            return result

        start = time.monotonic()
        tasks: dict[asyncio.Task[list[Row]], Partition] = {}
        for partition in partitions:
            clip = partition.key_range.intersect(key_range)
            if clip is None:
                continue
            task = asyncio.create_task(self._subquery(partition, clip, pred))
            tasks[task] = partition

        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        per_partition: list[list[Row]] = []
        for task, partition in tasks.items():
            if task in pending:
                error = QueryTimeoutError(partition.id, timeout=timeout)
                logger.warning(error.message, extra={"partition_id": partition.id})
                result.failed_partitions.append(partition.id)
                continue
            exc = task.exception()
            if exc is not None:
                logger.warning(
                    "Sub-query failed",
                    extra={"partition_id": partition.id, "error": str(exc)},
                )
                result.failed_partitions.append(partition.id)
                continue
            per_partition.append(task.result())

        result.partial = bool(result.failed_partitions)
        if result.partial:
            self._partial_queries += 1
        result.rows = self._merge(per_partition, order_by, descending, limit)
        logger.debug(
            "Federated query",
            extra={
                "key_range": str(key_range),
                "partitions": len(tasks),
                "rows": len(result.rows),
                "partial": result.partial,
                "duration_ms": int((time.monotonic() - start) * 1000),
            },
        )
        return result

    async def _subquery(self, partition: Partition, clip: KeyRange, pred: Predicate) -> list[Row]:
        async with self._semaphore:
            for attempt in range(1, SUBQUERY_ATTEMPTS + 1):
                try:
                    return await self._read_partition(partition, clip, pred)
                except TransientStorageError:
                    if attempt == SUBQUERY_ATTEMPTS:
                        raise
                    logger.debug(
                        "Retrying sub-query", extra={"partition_id": partition.id}
                    )
        return []

    async def _read_partition(self, partition: Partition, clip: KeyRange, pred: Predicate) -> list[Row]:
        if partition.state.is_hot:
            rows = await self.hot_store.read_rows(partition.id, clip)
            if rows or await self.hot_store.has_partition(partition.id):
                self._hot_reads += 1
                return [
                    r for r in self.policy.apply(rows) if not pred or pred.matches(r.key, r.payload)
                ]
            # Hot copy is gone: the partition was released after lookup.
            partition = self.registry.get(partition.id)
            if partition.state.is_hot:
                return []
        return await self._read_cold(partition, clip, pred)

    async def _read_cold(self, partition: Partition, clip: KeyRange, pred: Predicate) -> list[Row]:
        manifest = self.registry.get_manifest(partition.id)
        if manifest is None:
            raise ColdObjectNotFoundError(f"manifest of {partition.id}")
        data = await self.cold_storage.get(manifest.storage_uri)
        loop = asyncio.get_running_loop()
        rows = await loop.run_in_executor(None, decode_rows, data, clip, pred)
        self._cold_reads += 1
        return rows

    def _merge(
        self,
        per_partition: list[list[Row]],
        order_by: str | None,
        descending: bool,
        limit: int | None,
    ) -> list[Row]:
        if order_by is None:
            runs: list[Iterable[Row]] = [
                reversed(rows) if descending else rows for rows in per_partition
            ]
            merged = heapq.merge(*runs, key=lambda r: (r.key, r.seq), reverse=descending)
        else:
            runs = [
                sorted(rows, key=lambda r: _SortKey(r, order_by), reverse=descending)
                for rows in per_partition
            ]
            merged = heapq.merge(*runs, key=lambda r: _SortKey(r, order_by), reverse=descending)
        if limit is not None:
            return list(itertools.islice(merged, limit))
        return list(merged)

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "queries": self._queries,
            "partial_queries": self._partial_queries,
            "hot_reads": self._hot_reads,
            "cold_reads": self._cold_reads,
        }
