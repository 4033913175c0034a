"""
TierDB Server - Tiered data lifecycle engine.

This package moves keyed records through a hot/cold lifecycle:
- Records arrive as idempotent bulk batches or as a buffered stream
- They land in OPEN key-range partitions in a local SQLite hot store
- Sealed partitions are archived to columnar Parquet objects in S3,
  verified by checksum, and recorded with a manifest
- Queries federate across both tiers; rollups cache aggregates with a
  bounded staleness

Architecture:
    ┌────────────┐   ┌──────────────┐
    │ BulkLoader │   │ StreamBuffer │
    └─────┬──────┘   └──────┬───────┘
          └────────┬────────┘
                   ▼
          ┌─────────────────┐      ┌───────────────────┐
          │ PartitionWriter │─────▶│ PartitionRegistry │◀────┐
          └────────┬────────┘      └─────────┬─────────┘     │
                   ▼                         │               │
          ┌─────────────────┐      ┌─────────▼─────────┐     │
          │ HotStore(SQLite)│─────▶│ ArchivalPipeline  │     │
          └────────┬────────┘      └─────────┬─────────┘     │
                   │                         ▼               │
                   │               ┌───────────────────┐     │
                   │               │  S3 (Parquet)     │     │
                   │               └─────────┬─────────┘     │
                   └──────────┬──────────────┘               │
                              ▼                              │
                     ┌─────────────────┐     ┌─────────────┐ │
                     │   QueryRouter   │◀────│ RollupCache │─┘
                     └─────────────────┘     └─────────────┘

Invariants:
    - Partitions of a lineage are disjoint and contiguous in key space
    - Partition state only moves forward:
      OPEN -> SEALED -> ARCHIVING -> COLD -> RETIRED
    - A partition is COLD only after its archive passed verification
    - A hot copy is released only after the partition is COLD
    - A batch is applied at most once per batch_id

How to change safely:
    - Every state transition goes through PartitionRegistry
    - Keep the archive object format readable by older manifests

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
