"""
Hot tier for TierDB.

- HotStore: SQLite tables for unreleased partitions plus idempotency keys
- PartitionWriter: serialized write and rollover path into OPEN partitions
"""

from .hot_store import HotStore, Row, canonical_json, table_name
from .writer import AppendResult, PartitionWriter, align_down, align_up

__all__ = [
    "AppendResult",
    "HotStore",
    "PartitionWriter",
    "Row",
    "align_down",
    "align_up",
    "canonical_json",
    "table_name",
]
