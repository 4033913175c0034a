"""
Aggregate rollups for TierDB.

RollupCache serves registered metrics per dimension key within a
configured staleness bound, refreshing incrementally per partition.
"""

from .cache import AggregateRollup, RollupCache, RollupDefinition

__all__ = ["AggregateRollup", "RollupCache", "RollupDefinition"]
