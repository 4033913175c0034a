"""
Unit tests for the query federation router.

Tests cover:
- Identical results before and after archival and release
- Merge ordering, descending order, and limits
- Predicate filtering on both tiers
- Key conditions narrowing the partitions consulted
- Deadline handling with partial results, for cold and hot reads
- Retry of a transient cold read
"""

import threading
import time
from pathlib import Path

import pytest

from dbaas.tierdb_server.alerts import InMemoryAlertChannel
from dbaas.tierdb_server.archive import ArchivalPipeline, InMemoryColdStorage
from dbaas.tierdb_server.config import ArchiveConfig, QueryConfig
from dbaas.tierdb_server.hot import HotStore, PartitionWriter, canonical_json
from dbaas.tierdb_server.query import QueryRouter
from dbaas.tierdb_server.registry import KeyRange, PartitionRegistry


def payload(key):
    return canonical_json({"k": key, "region": "eu" if key % 2 else "us", "score": key % 7})


class TestQueryRouter:
    """Tests for QueryRouter."""

    @pytest.fixture
    def registry(self):
        return PartitionRegistry()

    @pytest.fixture
    def cold(self):
        return InMemoryColdStorage()

    @pytest.fixture
    async def writer(self, data_dir, registry):
        store = HotStore(str(Path(data_dir) / "hot.db"), wal_mode=False)
        await store.initialize()
        return PartitionWriter(registry, store, size_threshold=10, partition_span=1000)

    @pytest.fixture
    def pipeline(self, registry, writer, cold):
        return ArchivalPipeline(
            registry,
            writer.hot_store,
            cold,
            InMemoryAlertChannel(),
            ArchiveConfig(retry_attempts=2, retry_base_delay=0.001),
        )

    @pytest.fixture
    def router(self, registry, writer, cold):
        return QueryRouter(registry, writer.hot_store, cold, config=QueryConfig(default_timeout=5.0))

    @pytest.fixture
    async def loaded(self, writer, registry):
        """Three partitions: two sealed, one OPEN."""
        await writer.append("default", [(k, payload(k)) for k in range(25)])
        return registry.list_partitions()

    async def archive_sealed(self, registry, pipeline, release=False):
        for p in registry.list_partitions():
            if p.state.value == "SEALED":
                await pipeline.archive(p.id)
                if release:
                    await pipeline.release(p.id)

    @pytest.mark.asyncio
    async def test_query_hot_partitions(self, router, loaded):
        result = await router.query(KeyRange(5, 15))

        assert [r.key for r in result.rows] == list(range(5, 15))
        assert result.partial is False
        assert result.partitions_scanned == 2

    @pytest.mark.asyncio
    async def test_results_identical_across_tiers(self, router, registry, pipeline, loaded):
        before = await router.query(KeyRange(0, 1000))
        await self.archive_sealed(registry, pipeline)
        archived = await router.query(KeyRange(0, 1000))
        for p in registry.list_partitions():
            if p.state.value == "COLD":
                await pipeline.release(p.id)
        released = await router.query(KeyRange(0, 1000))

        assert before.rows == archived.rows == released.rows
        assert len(released.rows) == 25
        assert router.stats["cold_reads"] >= 2

    @pytest.mark.asyncio
    async def test_predicate_on_both_tiers(self, router, registry, pipeline, loaded):
        await self.archive_sealed(registry, pipeline, release=True)

        result = await router.query(KeyRange(0, 1000), predicate={"region": "eu", "key": {"<": 20}})

        assert [r.key for r in result.rows] == [k for k in range(20) if k % 2]

    @pytest.mark.asyncio
    async def test_key_conditions_narrow_partitions(self, router, loaded):
        exact = await router.query(KeyRange(0, 1000), predicate={"key": 7})
        span = await router.query(KeyRange(0, 1000), predicate={"key": {">=": 5, "<": 12}})
        disjoint = await router.query(KeyRange(0, 10), predicate={"key": {">=": 50}})

        assert [r.key for r in exact.rows] == [7]
        assert exact.partitions_scanned == 1
        assert [r.key for r in span.rows] == list(range(5, 12))
        assert span.partitions_scanned == 2
        assert disjoint.rows == []
        assert disjoint.partitions_scanned == 0

    @pytest.mark.asyncio
    async def test_order_by_field_descending_with_limit(self, router, registry, pipeline, loaded):
        await self.archive_sealed(registry, pipeline)

        result = await router.query(
            KeyRange(0, 1000), order_by="score", descending=True, limit=4
        )

        expected = sorted(range(25), key=lambda k: (k % 7, k), reverse=True)[:4]
        assert [r.key for r in result.rows] == expected

    @pytest.mark.asyncio
    async def test_descending_key_order(self, router, loaded):
        result = await router.query(KeyRange(0, 1000), descending=True, limit=3)

        assert [r.key for r in result.rows] == [24, 23, 22]

    @pytest.mark.asyncio
    async def test_deadline_returns_partial(self, router, registry, pipeline, cold, loaded):
        await self.archive_sealed(registry, pipeline, release=True)
        cold.get_delay = 1.0

        result = await router.query(KeyRange(0, 1000), timeout=0.05)

        assert result.partial is True
        assert len(result.failed_partitions) == 2
        assert [r.key for r in result.rows] == list(range(20, 25))

    @pytest.mark.asyncio
    async def test_deadline_cuts_off_slow_hot_read(self, router, registry, writer, loaded, monkeypatch):
        open_id = registry.open_partition_for("default").id
        release = threading.Event()
        select_rows = writer.hot_store._select_rows

        def slow_select(partition_id, key_range):
            if partition_id == open_id:
                release.wait(timeout=5.0)
            return select_rows(partition_id, key_range)

        monkeypatch.setattr(writer.hot_store, "_select_rows", slow_select)
        started = time.monotonic()
        try:
            result = await router.query(KeyRange(0, 1000), timeout=0.05)
        finally:
            release.set()

        assert time.monotonic() - started < 1.0
        assert result.partial is True
        assert result.failed_partitions == [open_id]
        assert [r.key for r in result.rows] == list(range(20))

    @pytest.mark.asyncio
    async def test_transient_cold_read_retried(self, router, registry, pipeline, cold, loaded):
        await self.archive_sealed(registry, pipeline, release=True)
        cold.fail_gets = 1

        result = await router.query(KeyRange(0, 10))

        assert result.partial is False
        assert len(result.rows) == 10

    @pytest.mark.asyncio
    async def test_empty_range(self, router, loaded):
        result = await router.query(KeyRange(5000, 6000))

        assert result.rows == []
        assert result.partitions_scanned == 0

    @pytest.mark.asyncio
    async def test_lineage_filter(self, router, writer):
        await writer.append("orders", [(1, payload(1))])
        await writer.append("clicks", [(1, payload(1)), (2, payload(2))])

        result = await router.query(KeyRange(0, 10), lineage="clicks")
        both = await router.query(KeyRange(0, 10))

        assert len(result.rows) == 2
        assert len(both.rows) == 3
