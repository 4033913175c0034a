"""
Unit tests for the lifecycle controller.

Tests cover:
- Age- and size-driven sealing
- Archival concurrency limit and ordering
- Resumption of orphaned ARCHIVING partitions
- Retirement after the grace period
- Checksum failures held for an operator
"""

from pathlib import Path

import pytest

from dbaas.tierdb_server.alerts import InMemoryAlertChannel
from dbaas.tierdb_server.archive import ArchivalPipeline, InMemoryColdStorage
from dbaas.tierdb_server.config import ArchiveConfig, LifecycleConfig
from dbaas.tierdb_server.hot import HotStore, PartitionWriter
from dbaas.tierdb_server.lifecycle import LifecycleController
from dbaas.tierdb_server.registry import KeyRange, PartitionRegistry, PartitionState


def entries(*keys):
    return [(k, "{}") for k in keys]


class TestLifecycleController:
    """Tests for LifecycleController."""

    @pytest.fixture
    def registry(self, clock):
        return PartitionRegistry(clock=clock)

    @pytest.fixture
    def cold(self):
        return InMemoryColdStorage()

    @pytest.fixture
    def alerts(self):
        return InMemoryAlertChannel()

    @pytest.fixture
    async def writer(self, data_dir, registry):
        store = HotStore(str(Path(data_dir) / "hot.db"), wal_mode=False)
        await store.initialize()
        return PartitionWriter(registry, store, size_threshold=5, partition_span=100)

    @pytest.fixture
    def controller(self, registry, writer, cold, alerts, clock):
        pipeline = ArchivalPipeline(
            registry,
            writer.hot_store,
            cold,
            alerts,
            ArchiveConfig(retry_attempts=2, retry_base_delay=0.001, retry_max_delay=0.01),
            clock=clock,
        )
        config = LifecycleConfig(
            age_threshold=60.0,
            size_threshold=5,
            max_concurrent_archivals=1,
            retention_after_retire=10.0,
            partition_span=100,
        )
        return LifecycleController(registry, writer, pipeline, alerts, config, clock=clock)

    @pytest.mark.asyncio
    async def test_young_partition_left_open(self, controller, writer, registry):
        await writer.append("default", entries(1, 2))

        result = await controller.tick()

        assert result.sealed == []
        assert registry.open_partition_for("default").row_count == 2

    @pytest.mark.asyncio
    async def test_aged_partition_sealed_and_archived(self, controller, writer, registry, clock):
        await writer.append("default", entries(1, 2))
        first = registry.open_partition_for("default")
        clock.advance(61)

        result = await controller.tick()
        await controller.wait_for_archivals()

        assert result.sealed == [first.id]
        assert result.archivals_started == [first.id]
        assert registry.get(first.id).state == PartitionState.COLD
        successor = registry.open_partition_for("default")
        assert successor.key_range.low == registry.get(first.id).key_range.high
        assert registry.check_invariants() == []

    @pytest.mark.asyncio
    async def test_empty_partition_not_sealed_by_age(self, controller, writer, registry, clock):
        await writer.append("default", entries(1))
        await writer.rollover("default")
        clock.advance(61)

        result = await controller.tick()

        assert result.sealed == []

    @pytest.mark.asyncio
    async def test_full_partition_sealed(self, controller, writer, registry):
        await writer.append("default", entries(1, 2, 3, 4, 5))
        full = registry.open_partition_for("default")

        result = await controller.tick()

        assert result.sealed == [full.id]

    @pytest.mark.asyncio
    async def test_concurrency_limit(self, controller, writer, registry, clock):
        for key in (1, 2, 3):
            await writer.append("default", entries(key))
            await writer.rollover("default")

        first = await controller.tick()
        assert len(first.archivals_started) == 1
        assert len(controller.in_flight) <= 1
        await controller.wait_for_archivals()

        second = await controller.tick()
        await controller.wait_for_archivals()
        third = await controller.tick()
        await controller.wait_for_archivals()

        started = first.archivals_started + second.archivals_started + third.archivals_started
        assert started == [p.id for p in registry.list_partitions(state=PartitionState.COLD)]
        assert len(started) == 3

    @pytest.mark.asyncio
    async def test_orphaned_archiving_resumed(self, controller, writer, registry):
        await writer.append("default", entries(1))
        sealed = await writer.rollover("default")
        registry.begin_archive(sealed.id)

        result = await controller.tick()
        await controller.wait_for_archivals()

        assert result.archivals_resumed == [sealed.id]
        assert registry.get(sealed.id).state == PartitionState.COLD

    @pytest.mark.asyncio
    async def test_retire_after_grace_period(self, controller, writer, registry, clock):
        await writer.append("default", entries(1))
        sealed = await writer.rollover("default")
        await controller.tick()
        await controller.wait_for_archivals()

        assert (await controller.tick()).retired == []
        clock.advance(11)
        result = await controller.tick()

        assert result.retired == [sealed.id]
        assert registry.get(sealed.id).state == PartitionState.RETIRED
        assert not await writer.hot_store.has_partition(sealed.id)

    @pytest.mark.asyncio
    async def test_checksum_failure_waits_for_operator(
        self, controller, writer, registry, cold, alerts
    ):
        cold.corrupt_puts = True
        await writer.append("default", entries(1))
        sealed = await writer.rollover("default")

        await controller.tick()
        await controller.wait_for_archivals()
        again = await controller.tick()

        partition = registry.get(sealed.id)
        assert partition.state == PartitionState.ARCHIVING
        assert partition.archive_failed
        assert again.archivals_resumed == []
        assert alerts.codes() == ["CHECKSUM_MISMATCH"]

    @pytest.mark.asyncio
    async def test_transient_failure_resumed_next_tick(self, controller, writer, registry, cold):
        cold.fail_puts = 2
        await writer.append("default", entries(1))
        sealed = await writer.rollover("default")

        await controller.tick()
        await controller.wait_for_archivals()
        assert registry.get(sealed.id).state == PartitionState.ARCHIVING

        result = await controller.tick()
        await controller.wait_for_archivals()

        assert result.archivals_resumed == [sealed.id]
        assert registry.get(sealed.id).state == PartitionState.COLD

    @pytest.mark.asyncio
    async def test_duplicate_ticks_are_safe(self, controller, writer, registry, clock):
        await writer.append("default", entries(1))
        await writer.rollover("default")
        clock.advance(61)

        results = [await controller.tick(), await controller.tick()]
        await controller.wait_for_archivals()

        started = results[0].archivals_started + results[1].archivals_started
        assert len(started) == 1
        assert registry.check_invariants() == []

    @pytest.mark.asyncio
    async def test_independent_lineages(self, controller, writer, registry, clock):
        await writer.append("orders", entries(1))
        await writer.append("clicks", entries(1))
        registry.open_partition("audit", KeyRange(0, 100))
        clock.advance(61)

        result = await controller.tick()

        assert sorted(result.sealed) == ["clicks.0", "orders.0"]
