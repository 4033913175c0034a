"""
Integration tests for the engine with SQLite and in-memory cold storage.

Tests cover:
- Partition ranges stay disjoint and contiguous under mixed ingestion
- Full seal -> archive -> retire with identical query results
- Exactly-once batches across a crash and restart
- Streaming backpressure in reject and block modes
- Checksum corruption held for an operator
- Rollup staleness through the engine
- The lifecycle CLI against an engine's data directory
"""

import asyncio

import pytest

from dbaas.tierdb_server.alerts import InMemoryAlertChannel
from dbaas.tierdb_server.archive import InMemoryColdStorage
from dbaas.tierdb_server.config import (
    ArchiveConfig,
    ColdBackend,
    FullQueuePolicy,
    IngestConfig,
    LifecycleConfig,
    RefreshMode,
    RollupConfig,
    ServerConfig,
    StorageConfig,
)
from dbaas.tierdb_server.engine import Engine
from dbaas.tierdb_server.errors import TransientStorageError
from dbaas.tierdb_server.ingest import BatchStatus, Record
from dbaas.tierdb_server.registry import PartitionState
from dbaas.tierdb_server.rollup import RollupDefinition
from dbaas.tierdb_server.tools import LifecycleCLI


def make_config(data_dir, **overrides):
    defaults = {
        "cold_backend": ColdBackend.MEMORY,
        "lifecycle": LifecycleConfig(
            age_threshold=60.0,
            size_threshold=10,
            max_concurrent_archivals=2,
            retention_after_retire=30.0,
            partition_span=1000,
        ),
        "ingest": IngestConfig(
            batch_subbatch_size=8,
            streaming_queue_capacity=4,
            retry_attempts=2,
            retry_base_delay=0.001,
            retry_max_delay=0.01,
        ),
        "archive": ArchiveConfig(retry_attempts=2, retry_base_delay=0.001, retry_max_delay=0.01),
        "storage": StorageConfig(data_dir=data_dir, wal_mode=False),
    }
    defaults.update(overrides)
    return ServerConfig(**defaults)


def records(keys, **extra):
    return [Record(k, {"k": k, "region": "eu" if k % 2 else "us", **extra}) for k in keys]


class TestEngine:
    """End-to-end behaviour of one engine instance."""

    @pytest.fixture
    def cold(self):
        return InMemoryColdStorage()

    @pytest.fixture
    def alerts(self):
        return InMemoryAlertChannel()

    @pytest.fixture
    async def engine(self, data_dir, cold, alerts, clock):
        engine = Engine(make_config(data_dir), cold_storage=cold, alerts=alerts, clock=clock)
        await engine.start()
        yield engine
        await engine.close()

    async def settle(self, engine):
        result = await engine.tick()
        await engine.controller.wait_for_archivals()
        return result

    @pytest.mark.asyncio
    async def test_ranges_disjoint_and_contiguous(self, engine, clock):
        await engine.submit_batch("b1", "day1.csv", records(range(0, 25)))
        for key in range(25, 31):
            assert (await engine.push_event(key, {"k": key}, sequence_no=1)).accepted
            await engine.flush_stream()
        await engine.submit_batch("b2", "day2.csv", records(range(31, 45)), lineage="clicks")
        clock.advance(61)
        await self.settle(engine)

        assert engine.registry.check_invariants() == []
        default = sorted(engine.list_partitions(lineage="default"), key=lambda p: p.key_range.low)
        for left, right in zip(default, default[1:]):
            assert left.key_range.high == right.key_range.low
        assert all(p.row_count <= 10 for p in default)

    @pytest.mark.asyncio
    async def test_seal_archive_retire_keeps_results(self, engine, clock):
        await engine.submit_batch("b1", "day1.csv", records(range(30)))
        before = await engine.query(0, 1000)

        await self.settle(engine)
        cold = engine.list_partitions(state=PartitionState.COLD)
        archived = await engine.query(0, 1000)
        clock.advance(31)
        retired = (await self.settle(engine)).retired
        after = await engine.query(0, 1000)

        assert len(cold) == 2
        assert sorted(retired) == sorted(p.id for p in cold)
        assert before.rows == archived.rows == after.rows
        assert [r.key for r in after.rows] == list(range(30))
        for partition_id in retired:
            assert not await engine.hot_store.has_partition(partition_id)
            assert engine.get_manifest(partition_id).row_count == 10

    @pytest.mark.asyncio
    async def test_archival_is_idempotent(self, engine, cold):
        await engine.submit_batch("b1", "day1.csv", records(range(15)))
        await self.settle(engine)
        cold_partition = engine.list_partitions(state=PartitionState.COLD)[0]
        manifest = engine.get_manifest(cold_partition.id)
        puts = cold.put_count

        again = await engine.retrigger_archive(cold_partition.id)

        assert again.already_archived is True
        assert again.manifest == manifest
        assert cold.put_count == puts

    @pytest.mark.asyncio
    async def test_duplicate_batch_is_noop(self, engine):
        first = await engine.submit_batch("b1", "day1.csv", records(range(5)))
        second = await engine.submit_batch("b1", "day1.csv", records(range(5)))

        assert first.status == BatchStatus.APPLIED
        assert second.duplicate is True
        assert len((await engine.query(0, 1000)).rows) == 5

    @pytest.mark.asyncio
    async def test_non_object_record_rejects_batch(self, engine):
        result = await engine.submit_batch("b1", "day1.json", [{"key": 1, "payload": {}}, 5])

        assert result.status == BatchStatus.REJECTED
        assert "record 1" in result.reason
        assert (await engine.ledger.get("b1")).status == BatchStatus.REJECTED
        assert (await engine.query(0, 1000)).rows == []

    @pytest.mark.asyncio
    async def test_query_predicate_and_order(self, engine):
        await engine.submit_batch("b1", "day1.csv", records(range(25)))
        await self.settle(engine)

        result = await engine.query(
            0, 1000, predicate={"region": "eu"}, descending=True, limit=3
        )

        assert [r.key for r in result.rows] == [23, 21, 19]

    @pytest.mark.asyncio
    async def test_stream_reject_when_full(self, engine):
        results = [
            await engine.push_event(7, {"v": seq}, sequence_no=seq) for seq in range(6)
        ]

        assert [r.accepted for r in results] == [True] * 4 + [False] * 2
        assert results[-1].reason.startswith("BackpressureExceeded")
        assert await engine.flush_stream() == 4

    @pytest.mark.asyncio
    async def test_checksum_corruption_held(self, engine, cold, alerts):
        cold.corrupt_puts = True
        await engine.submit_batch("b1", "day1.csv", records(range(12)))

        await self.settle(engine)
        again = await self.settle(engine)

        failed = engine.list_partitions(state=PartitionState.ARCHIVING)
        assert len(failed) == 1
        assert failed[0].archive_failed
        assert engine.get_manifest(failed[0].id) is None
        assert again.archivals_resumed == []
        assert "CHECKSUM_MISMATCH" in alerts.codes()
        assert len((await engine.query(0, 1000)).rows) == 12

        cold.corrupt_puts = False
        result = await engine.retrigger_archive(failed[0].id)

        assert engine.registry.get(failed[0].id).state == PartitionState.COLD
        assert result.manifest.row_count == 10

    @pytest.mark.asyncio
    async def test_rollup_through_engine(self, engine, clock):
        engine.register_rollup(
            RollupDefinition("orders", "count", dimension_field="region")
        )
        await engine.submit_batch("b1", "day1.csv", records(range(4)))

        first = await engine.get_rollup("eu", "orders")
        await engine.submit_batch("b2", "day1.csv", records(range(4, 8)))
        cached = await engine.get_rollup("eu", "orders")
        clock.advance(engine.config.rollup.staleness_bound + 1)
        refreshed = await engine.get_rollup("eu", "orders")

        assert first.value == cached.value == 2
        assert refreshed.value == 4

    @pytest.mark.asyncio
    async def test_stats(self, engine):
        await engine.submit_batch("b1", "day1.csv", records(range(3)))

        stats = engine.stats

        assert stats["loader"]["batches_applied"] == 1
        assert stats["registry"]["partitions"] >= 1


class TestEngineRestart:
    """State that must survive a process restart."""

    @pytest.mark.asyncio
    async def test_crash_mid_batch_then_resubmit(self, data_dir, clock, monkeypatch):
        cold = InMemoryColdStorage()
        engine = Engine(make_config(data_dir), cold_storage=cold, clock=clock)
        await engine.start()

        original = engine.hot_store.insert_rows
        calls = {"n": 0}

        async def failing_insert(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] >= 3:
                raise TransientStorageError("disk I/O error", operation="hot_store")
            return await original(*args, **kwargs)

        monkeypatch.setattr(engine.hot_store, "insert_rows", failing_insert)
        with pytest.raises(TransientStorageError):
            await engine.submit_batch("b1", "day1.csv", records(range(30)))
        await engine.close()

        restarted = Engine(make_config(data_dir), cold_storage=cold, clock=clock)
        await restarted.start()
        try:
            assert await restarted.ledger.list_pending() == ["b1"]
            result = await restarted.submit_batch("b1", "day1.csv", records(range(30)))
            keys = [r.key for r in (await restarted.query(0, 1000)).rows]

            assert result.status == BatchStatus.APPLIED
            assert keys == list(range(30))
            assert restarted.registry.check_invariants() == []
        finally:
            await restarted.close()

    @pytest.mark.asyncio
    async def test_reconcile_restores_open_accounting(self, data_dir, clock):
        cold = InMemoryColdStorage()
        engine = Engine(make_config(data_dir), cold_storage=cold, clock=clock)
        await engine.start()
        await engine.submit_batch("b1", "day1.csv", records(range(14)))
        open_id = engine.registry.open_partition_for("default").id
        engine.registry.set_accounting(open_id, 0, 0)
        await engine.close()

        restarted = Engine(make_config(data_dir), cold_storage=cold, clock=clock)
        await restarted.start()
        try:
            partition = restarted.registry.get(open_id)
            assert partition.state == PartitionState.OPEN
            assert partition.row_count == 4
            assert len(restarted.list_partitions(state=PartitionState.SEALED)) == 1
        finally:
            await restarted.close()


class TestBlockingBackpressure:
    @pytest.fixture
    async def engine(self, data_dir, clock):
        config = make_config(
            data_dir,
            ingest=IngestConfig(
                streaming_queue_capacity=2,
                streaming_full_policy=FullQueuePolicy.BLOCK,
                streaming_block_timeout=0.05,
                streaming_drain_interval=0.01,
            ),
        )
        engine = Engine(config, cold_storage=InMemoryColdStorage(), clock=clock)
        await engine.start()
        yield engine
        await engine.close()

    @pytest.mark.asyncio
    async def test_block_times_out_without_drain(self, engine):
        for seq in range(2):
            assert (await engine.push_event(1, {"v": seq}, sequence_no=seq)).accepted

        blocked = await engine.push_event(1, {"v": 2}, sequence_no=2)

        assert blocked.accepted is False
        assert blocked.reason.startswith("BackpressureExceeded")

    @pytest.mark.asyncio
    async def test_block_waits_for_drain(self, engine):
        drain = asyncio.create_task(engine.stream_buffer.run())
        try:
            results = [
                await engine.push_event(1, {"v": seq}, sequence_no=seq) for seq in range(6)
            ]
        finally:
            engine.stream_buffer.stop()
            await drain
        await engine.flush_stream()

        assert all(r.accepted for r in results)
        assert [r.payload["v"] for r in (await engine.query(0, 1000)).rows] == list(range(6))


class TestAsyncRollupRefresh:
    @pytest.mark.asyncio
    async def test_stale_value_then_background_refresh(self, data_dir, clock):
        config = make_config(
            data_dir, rollup=RollupConfig(staleness_bound=10.0, refresh_mode=RefreshMode.ASYNC)
        )
        engine = Engine(config, cold_storage=InMemoryColdStorage(), clock=clock)
        await engine.start()
        try:
            engine.register_rollup(
                RollupDefinition("amount", "sum", field="k", dimension_field="region")
            )
            await engine.submit_batch("b1", "day1.csv", records([1, 3]))
            assert (await engine.get_rollup("eu", "amount")).value == 4

            await engine.submit_batch("b2", "day1.csv", records([5]))
            clock.advance(11)
            stale = await engine.get_rollup("eu", "amount")
            await engine.rollups.wait_for_refreshes()
            fresh = await engine.get_rollup("eu", "amount")

            assert stale.stale is True
            assert stale.value == 4
            assert fresh.value == 9
        finally:
            await engine.close()


class TestLargeBatch:
    @pytest.mark.asyncio
    async def test_million_record_batch(self, data_dir, clock):
        config = make_config(
            data_dir,
            lifecycle=LifecycleConfig(size_threshold=250_000, partition_span=10_000_000),
            ingest=IngestConfig(batch_subbatch_size=50_000),
        )
        engine = Engine(config, cold_storage=InMemoryColdStorage(), clock=clock)
        await engine.start()
        try:
            batch = [Record(k, {"v": k}) for k in range(1_000_000)]

            result = await engine.submit_batch("big", "bulk.parquet", batch)

            partitions = engine.list_partitions()
            counts = [await engine.hot_store.count(p.id) for p in partitions]
            assert result.rows_applied == 1_000_000
            assert sum(rows for rows, _ in counts) == 1_000_000
            assert all(p.row_count <= 250_000 for p in partitions)
            assert engine.registry.check_invariants() == []
        finally:
            await engine.close()


class TestLifecycleCLI:
    @pytest.mark.asyncio
    async def test_inspect_engine_state(self, data_dir, clock):
        config = make_config(data_dir)
        engine = Engine(config, cold_storage=InMemoryColdStorage(), clock=clock)
        await engine.start()
        await engine.submit_batch("b1", "day1.csv", records(range(12)))
        await engine.tick()
        await engine.controller.wait_for_archivals()
        cold_id = engine.list_partitions(state=PartitionState.COLD)[0].id
        await engine.close()

        cli = LifecycleCLI(config)

        assert cli.check() == []
        assert [p["id"] for p in cli.partitions(state="cold")] == [cold_id]
        assert cli.manifest(cold_id)["format"] == "parquet"
        assert cli.manifest(engine.registry.open_partition_for("default").id) is None

    @pytest.mark.asyncio
    async def test_tick_command(self, data_dir, clock):
        config = make_config(data_dir)
        engine = Engine(config, cold_storage=InMemoryColdStorage(), clock=clock)
        await engine.start()
        await engine.submit_batch("b1", "day1.csv", records(range(12)))
        await engine.close()

        result = await LifecycleCLI(config).tick()

        assert len(result["archivals_started"]) == 1
        assert len(LifecycleCLI(config).partitions(state="COLD")) == 1
