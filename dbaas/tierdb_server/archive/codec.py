"""
Columnar encoding of archived partitions.

Archived partitions are Parquet files with a fixed schema:
    partition_id: string
    seq: int64
    key: int64
    payload: string (canonical JSON)

Invariants:
    - Identical rows encode to identical bytes (fixed schema, fixed row
      order, no wall-clock metadata)
    - Checksums are "sha256:<hex>" over the encoded bytes
    - Decoding returns rows ordered by (key, seq), the hot tier's order
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Sequence
from typing import Any

import pyarrow as pa
import pyarrow.compute as pc
import pyarrow.parquet as pq

from ..hot.hot_store import Row, canonical_json
from ..predicate import Predicate, project
from ..registry.types import KeyRange

FORMAT = "parquet"

ARCHIVE_SCHEMA = pa.schema(
    [
        ("partition_id", pa.string()),
        ("seq", pa.int64()),
        ("key", pa.int64()),
        ("payload", pa.string()),
    ]
)


def compute_checksum(data: bytes) -> str:
    """SHA-256 checksum in the manifest format."""
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def encode_rows(rows: Sequence[Row], compression: str = "snappy") -> bytes:
    """Encode rows to Parquet bytes.

    Args:
        rows: Rows ordered by (key, seq)
        compression: Parquet codec name, or "none"

    Returns:
        Parquet file contents
    """
    table = pa.Table.from_arrays(
        [
            pa.array([r.partition_id for r in rows], type=pa.string()),
            pa.array([r.seq for r in rows], type=pa.int64()),
            pa.array([r.key for r in rows], type=pa.int64()),
            pa.array([canonical_json(r.payload) for r in rows], type=pa.string()),
        ],
        schema=ARCHIVE_SCHEMA,
    )
    sink = pa.BufferOutputStream()
    pq.write_table(
        table,
        sink,
        compression=None if compression == "none" else compression,
        write_statistics=True,
    )
    return sink.getvalue().to_pybytes()


def decode_table(data: bytes) -> pa.Table:
    return pq.read_table(pa.BufferReader(data))


def count_rows(data: bytes) -> int:
    """Row count from the Parquet footer."""
    return pq.ParquetFile(pa.BufferReader(data)).metadata.num_rows


def decode_rows(
    data: bytes,
    key_range: KeyRange | None = None,
    predicate: Predicate | None = None,
) -> list[Row]:
    """Decode Parquet bytes to rows, clipped and filtered.

    Key conditions are evaluated on the columnar key array before payloads
    are parsed; payload conditions are evaluated per row.
    """
    table = decode_table(data)
    mask = None
    if key_range is not None:
        keys = table.column("key")
        mask = pc.and_(
            pc.greater_equal(keys, key_range.low), pc.less(keys, key_range.high)
        )
    if predicate:
        key_mask = predicate.key_mask(table)
        if key_mask is not None:
            mask = pc.and_(mask, key_mask) if mask is not None else key_mask
    if mask is not None:
        table = table.filter(mask)

    rows = []
    for record in table.to_pylist():
        payload = json.loads(record["payload"])
        if predicate and not predicate.matches(record["key"], payload):
            continue
        rows.append(
            Row(
                partition_id=record["partition_id"],
                seq=record["seq"],
                key=record["key"],
                payload=payload,
            )
        )
    rows.sort(key=lambda r: (r.key, r.seq))
    return rows


class ArchivePolicy:
    """Projection and row filter applied before rows reach cold storage.

    The router applies the same policy to hot rows so that both tiers
    return the same row set for a partition.
    """

    def __init__(
        self,
        projection: tuple[str, ...] | None = None,
        row_filter: dict[str, Any] | None = None,
    ) -> None:
        self.projection = projection
        self.row_filter = Predicate(row_filter)

    def apply(self, rows: Sequence[Row]) -> list[Row]:
        if self.projection is None and not self.row_filter:
            return list(rows)
        kept = []
        for row in rows:
            if self.row_filter and not self.row_filter.matches(row.key, row.payload):
                continue
            kept.append(
                Row(
                    partition_id=row.partition_id,
                    seq=row.seq,
                    key=row.key,
                    payload=project(row.payload, self.projection),
                )
            )
        return kept
