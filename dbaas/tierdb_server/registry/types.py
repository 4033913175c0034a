"""
Partition metadata types.

Partition values are immutable snapshots: every registry mutation builds a
new value with dataclasses.replace() and swaps it in, so a reader holding a
Partition never observes a half-applied transition.

Invariants:
    - KeyRange is half-open [low, high) and never empty
    - Partition.version increases by one on every registry mutation
    - ArchiveManifest is created only after a verified cold write
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any


class PartitionState(Enum):
    """Lifecycle state of a partition.

    Transitions only move forward:
    OPEN -> SEALED -> ARCHIVING -> COLD -> RETIRED
    """

    OPEN = "OPEN"
    SEALED = "SEALED"
    ARCHIVING = "ARCHIVING"
    COLD = "COLD"
    RETIRED = "RETIRED"

    @property
    def is_hot(self) -> bool:
        """Whether the partition's rows are served from the hot store."""
        return self in (PartitionState.OPEN, PartitionState.SEALED, PartitionState.ARCHIVING)


@dataclass(frozen=True, order=True)
class KeyRange:
    """Half-open integer key interval [low, high)."""

    low: int
    high: int

    def __post_init__(self) -> None:
        if self.high <= self.low:
            raise ValueError(f"Empty key range [{self.low}, {self.high})")

    def contains(self, key: int) -> bool:
        return self.low <= key < self.high

    def overlaps(self, other: KeyRange) -> bool:
        return self.low < other.high and other.low < self.high

    def intersect(self, other: KeyRange) -> KeyRange | None:
        low = max(self.low, other.low)
        high = min(self.high, other.high)
        if high <= low:
            return None
        return KeyRange(low, high)

    def to_dict(self) -> dict[str, int]:
        return {"low": self.low, "high": self.high}

    def __str__(self) -> str:
        return f"[{self.low}, {self.high})"


@dataclass(frozen=True)
class Partition:
    """Registry snapshot of one partition.

    Attributes:
        id: Partition identifier (stable, unique)
        lineage: Name of the stream the partition belongs to
        key_range: Keys owned by the partition
        state: Lifecycle state
        row_count: Rows written while OPEN
        byte_size: Encoded payload bytes written while OPEN
        created_at: Unix seconds when opened
        sealed_at: Unix seconds when sealed
        archived_at: Unix seconds when the manifest was recorded
        retired_at: Unix seconds when the hot copy was released
        archive_failed: Set when verification failed; blocks automatic retries
        version: Mutation counter
    """

    id: str
    lineage: str
    key_range: KeyRange
    state: PartitionState
    row_count: int = 0
    byte_size: int = 0
    created_at: float = 0.0
    sealed_at: float | None = None
    archived_at: float | None = None
    retired_at: float | None = None
    archive_failed: bool = False
    version: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "lineage": self.lineage,
            "key_range": self.key_range.to_dict(),
            "state": self.state.value,
            "row_count": self.row_count,
            "byte_size": self.byte_size,
            "created_at": self.created_at,
            "sealed_at": self.sealed_at,
            "archived_at": self.archived_at,
            "retired_at": self.retired_at,
            "archive_failed": self.archive_failed,
            "version": self.version,
        }


@dataclass(frozen=True)
class ArchiveManifest:
    """Proof that a partition was durably and verifiably archived.

    Attributes:
        partition_id: Archived partition
        storage_uri: Object key in cold storage
        format: Encoding of the object ("parquet")
        checksum: "sha256:<hex>" over the object bytes
        row_count: Rows in the object
        byte_size: Object size in bytes
        created_at: Unix seconds when recorded
    """

    partition_id: str
    storage_uri: str
    format: str
    checksum: str
    row_count: int
    byte_size: int
    created_at: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArchiveManifest:
        return cls(
            partition_id=data["partition_id"],
            storage_uri=data["storage_uri"],
            format=data["format"],
            checksum=data["checksum"],
            row_count=int(data["row_count"]),
            byte_size=int(data["byte_size"]),
            created_at=float(data["created_at"]),
        )
