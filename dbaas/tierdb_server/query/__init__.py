"""
Query federation for TierDB.

QueryRouter fans a key-range query out to hot and cold partitions and
merges the results with a deadline.
"""

from .router import QueryResult, QueryRouter

__all__ = ["QueryResult", "QueryRouter"]
