"""
Partition registry for TierDB.

This module owns partition metadata:
- KeyRange, Partition, PartitionState, ArchiveManifest value types
- PartitionRegistry: CAS state transitions, lookup, and persistence

Invariants:
    - Only the registry mutates partition state
    - Ranges within a lineage are disjoint and contiguous
"""

from .registry import PartitionListener, PartitionRegistry
from .types import ArchiveManifest, KeyRange, Partition, PartitionState

__all__ = [
    "ArchiveManifest",
    "KeyRange",
    "Partition",
    "PartitionListener",
    "PartitionRegistry",
    "PartitionState",
]
