"""
Archival to cold storage for TierDB.

This module provides:
- ColdStorage interface with S3 and in-memory backends
- Parquet codec and checksums for archived partitions
- ArchivalPipeline: extract, transform, write, verify, record, release

Invariants:
    - A manifest is recorded only after the cold object is verified
    - Object keys are deterministic, so reruns overwrite instead of duplicating
"""

from .codec import ArchivePolicy, compute_checksum, decode_rows, encode_rows
from .cold_storage import ColdStorage, InMemoryColdStorage, S3ColdStorage
from .pipeline import ArchivalPipeline, ArchiveResult, object_key

__all__ = [
    "ArchivalPipeline",
    "ArchivePolicy",
    "ArchiveResult",
    "ColdStorage",
    "InMemoryColdStorage",
    "S3ColdStorage",
    "compute_checksum",
    "decode_rows",
    "encode_rows",
    "object_key",
]
