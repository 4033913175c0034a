"""
Unit tests for the partition writer.

Tests cover:
- First partition placement on aligned windows
- Size-driven rollover at key boundaries
- Equal-key runs kept in one partition
- Range-driven rollover
- Rejection of keys in closed ranges
- Explicit rollover
"""

import tempfile
from pathlib import Path

import pytest

from dbaas.tierdb_server.errors import IngestionValidationError, PartitionConflictError
from dbaas.tierdb_server.hot import HotStore, PartitionWriter, align_down, align_up
from dbaas.tierdb_server.registry import KeyRange, PartitionRegistry, PartitionState


def entries(*keys):
    return [(k, f'{{"k":{k}}}') for k in keys]


def test_alignment():
    assert align_down(150, 100) == 100
    assert align_down(-1, 100) == -100
    assert align_up(150, 100) == 200
    assert align_up(200, 100) == 300


class TestPartitionWriter:
    """Tests for PartitionWriter."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def registry(self):
        return PartitionRegistry()

    @pytest.fixture
    async def writer(self, data_dir, registry):
        store = HotStore(str(Path(data_dir) / "hot.db"), wal_mode=False)
        await store.initialize()
        return PartitionWriter(registry, store, size_threshold=3, partition_span=100)

    def ranges(self, registry):
        return [
            (p.key_range.low, p.key_range.high, p.state, p.row_count)
            for p in registry.list_partitions(lineage="default")
        ]

    @pytest.mark.asyncio
    async def test_first_partition_is_aligned(self, writer, registry):
        result = await writer.append("default", entries(105, 107))

        assert result.rows_written == 2
        assert self.ranges(registry) == [(100, 200, PartitionState.OPEN, 2)]

    @pytest.mark.asyncio
    async def test_size_rollover_splits_at_next_key(self, writer, registry):
        """A full partition is sealed just below the next key."""
        await writer.append("default", entries(1, 2, 3, 4, 5, 6, 7))

        assert self.ranges(registry) == [
            (0, 4, PartitionState.SEALED, 3),
            (4, 7, PartitionState.SEALED, 3),
            (7, 100, PartitionState.OPEN, 1),
        ]
        assert registry.check_invariants() == []

    @pytest.mark.asyncio
    async def test_equal_key_run_not_split(self, writer, registry):
        """A run of equal keys lands in one partition even if oversized."""
        await writer.append("default", entries(1, 2, 2, 2, 2))

        assert self.ranges(registry) == [
            (0, 2, PartitionState.SEALED, 1),
            (2, 100, PartitionState.OPEN, 4),
        ]

    @pytest.mark.asyncio
    async def test_key_past_range_rolls_over(self, writer, registry):
        await writer.append("default", entries(5))
        await writer.append("default", entries(150))

        assert self.ranges(registry) == [
            (0, 100, PartitionState.SEALED, 1),
            (100, 200, PartitionState.OPEN, 1),
        ]

    @pytest.mark.asyncio
    async def test_key_far_past_range_keeps_contiguity(self, writer, registry):
        await writer.append("default", entries(5))
        await writer.append("default", entries(950))

        (first, second) = registry.list_partitions(lineage="default")
        assert first.key_range == KeyRange(0, 100)
        assert second.key_range == KeyRange(100, 1000)

    @pytest.mark.asyncio
    async def test_late_key_into_full_open_partition(self, writer, registry):
        """A key below the stored maximum can only go to the OPEN partition."""
        await writer.append("default", entries(5, 6, 7))
        result = await writer.append("default", entries(3))

        assert result.rows_written == 1
        assert self.ranges(registry) == [(0, 100, PartitionState.OPEN, 4)]

    @pytest.mark.asyncio
    async def test_key_in_sealed_partition_rejected(self, writer, registry):
        await writer.append("default", entries(1, 2, 3, 4))

        with pytest.raises(IngestionValidationError):
            await writer.append("default", entries(2))

    @pytest.mark.asyncio
    async def test_key_below_domain_rejected(self, writer):
        await writer.append("default", entries(5))

        assert writer.validate_key("default", -1) is not None
        assert writer.validate_key("default", 50) is None
        with pytest.raises(IngestionValidationError):
            await writer.append("default", entries(-1))

    @pytest.mark.asyncio
    async def test_write_keys_are_idempotent(self, writer, registry):
        first = await writer.append("default", entries(1, 2), write_key_prefix="b1")
        again = await writer.append("default", entries(1, 2), write_key_prefix="b1")

        assert first.rows_written == 2
        assert again.rows_written == 0
        assert again.rows_skipped == 2
        assert registry.open_partition_for("default").row_count == 2

    @pytest.mark.asyncio
    async def test_byte_accounting(self, writer, registry):
        await writer.append("default", [(1, '{"v":"é"}')])

        partition = registry.open_partition_for("default")
        assert partition.byte_size == len('{"v":"é"}'.encode("utf-8"))

    @pytest.mark.asyncio
    async def test_rollover_splits_after_max_key(self, writer, registry):
        await writer.append("default", entries(5, 6))
        sealed = await writer.rollover("default")

        assert sealed.key_range == KeyRange(0, 7)
        assert registry.open_partition_for("default").key_range == KeyRange(7, 100)

    @pytest.mark.asyncio
    async def test_rollover_empty_partition(self, writer, registry):
        await writer.append("default", entries(5))
        await writer.rollover("default")
        sealed = await writer.rollover("default")

        assert sealed.key_range == KeyRange(6, 100)
        assert registry.open_partition_for("default").key_range == KeyRange(100, 200)

    @pytest.mark.asyncio
    async def test_rollover_without_partition(self, writer):
        assert await writer.rollover("nothing") is None

    @pytest.mark.asyncio
    async def test_rollover_skips_stale_partition_id(self, writer, registry):
        """A rollover aimed at a partition that is no longer OPEN is a no-op."""
        await writer.append("default", entries(5))
        first = registry.open_partition_for("default")
        await writer.rollover("default")

        assert await writer.rollover("default", partition_id=first.id) is None
        assert writer.stats["rollovers"] == 1

    @pytest.mark.asyncio
    async def test_rollover_split_below_stored_rows_rejected(self, writer, registry):
        await writer.append("default", entries(5, 20))

        with pytest.raises(PartitionConflictError):
            await writer.rollover("default", split_at=10)
        assert registry.open_partition_for("default").key_range == KeyRange(0, 100)
