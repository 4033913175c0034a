"""
Engine facade for TierDB.

Wires every component from one ServerConfig and exposes the external
boundaries:
- Ingestion: submit_batch(), push_event()
- Query: query(), get_rollup()
- Lifecycle trigger: tick(), rollover()
- Operator actions: retrigger_archive(), list_partitions()

Invariants:
    - start() must complete before any boundary is used
    - On start, OPEN partition accounting is reconciled from the hot store
      so a crash between a write and its accounting is repaired

How to change safely:
    - Components talk to each other only through the registry and storage
      interfaces; keep new wiring here, not inside components
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

from .alerts import AlertChannel, LoggingAlertChannel
from .archive import ArchivalPipeline, ArchivePolicy, ArchiveResult, ColdStorage, InMemoryColdStorage, S3ColdStorage
from .config import ColdBackend, ServerConfig
from .hot import HotStore, PartitionWriter
from .ingest import (
    BatchLedger,
    BulkLoader,
    IngestionBatch,
    PushResult,
    Record,
    StreamBuffer,
    StreamEvent,
    SubmitResult,
)
from .lifecycle import LifecycleController, TickResult
from .query import QueryResult, QueryRouter
from .registry import ArchiveManifest, KeyRange, Partition, PartitionRegistry, PartitionState
from .rollup import AggregateRollup, RollupCache, RollupDefinition

logger = logging.getLogger(__name__)


def create_cold_storage(config: ServerConfig) -> ColdStorage:
    """Factory function to create cold storage from configuration.

    Raises:
        ValueError: If backend is not supported
    """
    if config.cold_backend == ColdBackend.S3:
        return S3ColdStorage(config.s3)
    elif config.cold_backend == ColdBackend.MEMORY:
        return InMemoryColdStorage()
    else:
        raise ValueError(f"Unsupported cold backend: {config.cold_backend}")


class Engine:
    """The tiered data lifecycle engine.

    Example:
        >>> engine = Engine(ServerConfig.from_env())
        >>> await engine.start()
        >>> await engine.submit_batch("b-1", "daily.csv", [Record(5, {"v": 1})])
        >>> await engine.tick()
        >>> result = await engine.query(0, 100)
    """

    def __init__(
        self,
        config: ServerConfig,
        cold_storage: ColdStorage | None = None,
        alerts: AlertChannel | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.clock = clock
        data_dir = Path(config.storage.data_dir)
        storage = config.storage

        self.alerts = alerts or LoggingAlertChannel()
        self.cold_storage = cold_storage or create_cold_storage(config)
        self.registry = PartitionRegistry(
            str(data_dir / storage.registry_db_name),
            clock=clock,
            busy_timeout_ms=storage.busy_timeout_ms,
            wal_mode=storage.wal_mode,
        )
        self.hot_store = HotStore(
            str(data_dir / storage.hot_db_name),
            wal_mode=storage.wal_mode,
            busy_timeout_ms=storage.busy_timeout_ms,
        )
        self.ledger = BatchLedger(
            str(data_dir / storage.hot_db_name), busy_timeout_ms=storage.busy_timeout_ms
        )
        self.writer = PartitionWriter(
            self.registry,
            self.hot_store,
            size_threshold=config.lifecycle.size_threshold,
            partition_span=config.lifecycle.partition_span,
        )
        ingest = config.ingest
        self.loader = BulkLoader(
            self.writer,
            self.hot_store,
            self.ledger,
            subbatch_size=ingest.batch_subbatch_size,
            retry_attempts=ingest.retry_attempts,
            retry_base_delay=ingest.retry_base_delay,
            retry_max_delay=ingest.retry_max_delay,
        )
        self.stream_buffer = StreamBuffer(
            self.writer,
            capacity=ingest.streaming_queue_capacity,
            full_policy=ingest.streaming_full_policy,
            block_timeout=ingest.streaming_block_timeout,
            drain_batch_size=ingest.batch_subbatch_size,
            drain_interval=ingest.streaming_drain_interval,
            retry_attempts=ingest.retry_attempts,
            retry_base_delay=ingest.retry_base_delay,
            retry_max_delay=ingest.retry_max_delay,
        )
        self.pipeline = ArchivalPipeline(
            self.registry,
            self.hot_store,
            self.cold_storage,
            self.alerts,
            config.archive,
            prefix=config.s3.archive_prefix,
            clock=clock,
        )
        self.controller = LifecycleController(
            self.registry,
            self.writer,
            self.pipeline,
            self.alerts,
            config.lifecycle,
            clock=clock,
        )
        self.router = QueryRouter(
            self.registry,
            self.hot_store,
            self.cold_storage,
            policy=ArchivePolicy(config.archive.projection, config.archive.row_filter),
            config=config.query,
        )
        self.rollups = RollupCache(self.registry, self.router, config.rollup, clock=clock)
        self._started = False

    async def start(self) -> None:
        """Create storage, connect cold storage, and reconcile accounting."""
        if self._started:
            return
        await self.hot_store.initialize()
        await self.ledger.initialize()
        await self.cold_storage.connect()
        await self.reconcile()
        self._started = True
        logger.info("Engine started", extra={"registry": self.registry.stats})

    async def reconcile(self) -> None:
        """Reset OPEN partition accounting from the hot store's counts."""
        for partition in self.registry.list_partitions(state=PartitionState.OPEN):
            await self.hot_store.create_partition(partition.id)
            rows, byte_size = await self.hot_store.count(partition.id)
            self.registry.set_accounting(partition.id, rows, byte_size)
        pending = await self.ledger.list_pending()
        if pending:
            logger.warning(
                "Batches left PENDING by a previous run; re-submit to resume",
                extra={"batch_ids": pending},
            )

    async def close(self) -> None:
        self.stream_buffer.stop()
        await self.controller.stop()
        await self.rollups.close()
        await self.cold_storage.close()
        self._started = False
        logger.info("Engine stopped")

    # ── ingestion boundary ──────────────────────────────────────────

    async def submit_batch(
        self,
        batch_id: str,
        source: str,
        records: Iterable[Record | dict[str, Any]],
        lineage: str = "default",
    ) -> SubmitResult:
        """Apply a batch of records exactly once."""
        batch = IngestionBatch(
            batch_id=batch_id,
            source_descriptor=source,
            records=[r if isinstance(r, Record) else Record.from_dict(r) for r in records],
            lineage=lineage,
        )
        return await self.loader.submit(batch)

    async def push_event(
        self,
        key: int,
        payload: dict[str, Any],
        sequence_no: int,
        event_id: str | None = None,
        lineage: str = "default",
    ) -> PushResult:
        """Queue one streaming event."""
        kwargs: dict[str, Any] = {}
        if event_id is not None:
            kwargs["event_id"] = event_id
        event = StreamEvent(
            partition_key=key, payload=payload, sequence_no=sequence_no, lineage=lineage, **kwargs
        )
        return await self.stream_buffer.push(event)

    async def flush_stream(self) -> int:
        return await self.stream_buffer.flush()

    # ── query boundary ──────────────────────────────────────────────

    async def query(
        self,
        low: int,
        high: int,
        predicate: dict[str, Any] | None = None,
        deadline: float | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        lineage: str | None = None,
    ) -> QueryResult:
        """Federated query over [low, high); deadline is in seconds."""
        return await self.router.query(
            KeyRange(low, high),
            predicate=predicate,
            order_by=order_by,
            descending=descending,
            limit=limit,
            timeout=deadline,
            lineage=lineage,
        )

    def register_rollup(self, definition: RollupDefinition) -> None:
        self.rollups.register(definition)

    async def get_rollup(self, dimension_key: Any, metric: str) -> AggregateRollup:
        return await self.rollups.get(dimension_key, metric)

    # ── lifecycle boundary ──────────────────────────────────────────

    async def tick(self) -> TickResult:
        return await self.controller.tick()

    async def rollover(self, lineage: str = "default") -> Partition | None:
        """Explicitly seal a lineage's OPEN partition and open its successor."""
        return await self.writer.rollover(lineage)

    async def retrigger_archive(self, partition_id: str) -> ArchiveResult:
        return await self.pipeline.retrigger(partition_id)

    def list_partitions(
        self, state: PartitionState | None = None, lineage: str | None = None
    ) -> list[Partition]:
        return self.registry.list_partitions(state=state, lineage=lineage)

    def get_manifest(self, partition_id: str) -> ArchiveManifest | None:
        return self.registry.get_manifest(partition_id)

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "registry": self.registry.stats,
            "hot_store": self.hot_store.stats,
            "writer": self.writer.stats,
            "loader": self.loader.stats,
            "stream": self.stream_buffer.stats,
            "archive": self.pipeline.stats,
            "lifecycle": self.controller.stats,
            "query": self.router.stats,
            "rollups": self.rollups.stats,
        }
