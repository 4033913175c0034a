"""
Aggregate rollup cache for TierDB.

Serves pre-aggregated metrics per dimension key with a bounded staleness.
A refresh re-queries, through the query router, only the partitions whose
registry version changed since the entry was last computed, and combines
per-partition partial aggregates.

Invariants:
    - In sync mode every returned value satisfies now - as_of <= staleness_bound
      at the start of the call's refresh
    - In async mode a value older than the bound is returned with stale=True
      while a background refresh runs
    - At most one refresh per (metric, dimension key) is in flight;
      concurrent readers join it
    - as_of is the time the refresh started, never later
    - A refresh that could not read every changed partition keeps the
      previous as_of and is returned with stale=True

How to change safely:
    - Partial aggregates must stay mergeable (count/sum/min/max)
    - A partition with a partial sub-query result keeps its old partial and
      old version so the next refresh retries it
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from ..config import RefreshMode, RollupConfig
from ..errors import TierDbError
from ..query import QueryRouter
from ..registry import KeyRange, PartitionRegistry

logger = logging.getLogger(__name__)

AGGREGATES = ("count", "sum", "min", "max", "avg")

FULL_RANGE = KeyRange(-(2**63), 2**63 - 1)


@dataclass(frozen=True)
class RollupDefinition:
    """A registered metric.

    Attributes:
        metric_name: Metric identifier
        aggregate: One of count, sum, min, max, avg
        field: Payload field aggregated (None for count of rows)
        dimension_field: Payload field whose value is the dimension key
            (None: a single dimension, queried with any key)
        key_range: Keys the metric covers (all keys when None)
        predicate: Extra dict filter on rows
        lineage: Restrict to one lineage
    """

    metric_name: str
    aggregate: str
    field: str | None = None
    dimension_field: str | None = None
    key_range: KeyRange | None = None
    predicate: dict[str, Any] | None = None
    lineage: str | None = None

    def __post_init__(self) -> None:
        if self.aggregate not in AGGREGATES:
            raise ValueError(f"Unsupported aggregate {self.aggregate!r}; expected one of {AGGREGATES}")
        if self.aggregate != "count" and not self.field:
            raise ValueError(f"Aggregate {self.aggregate!r} requires a field")


@dataclass(frozen=True)
class AggregateRollup:
    """A cached metric value.

    Attributes:
        dimension_key: Dimension the value is for
        metric_name: Metric identifier
        value: Aggregate value (None when no rows matched min/max/avg)
        as_of_timestamp: Unix seconds when the computing refresh started
        staleness_bound: Configured bound in seconds
        stale: True when served past the bound (async refresh mode only)
    """

    dimension_key: Any
    metric_name: str
    value: float | int | None
    as_of_timestamp: float
    staleness_bound: float
    stale: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "dimension_key": self.dimension_key,
            "metric_name": self.metric_name,
            "value": self.value,
            "as_of_timestamp": self.as_of_timestamp,
            "staleness_bound": self.staleness_bound,
            "stale": self.stale,
        }


@dataclass
class Partial:
    """Mergeable aggregate over one partition."""

    count: int = 0
    total: float = 0
    minimum: Any = None
    maximum: Any = None

    def add(self, value: Any) -> None:
        self.count += 1
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            self.total += value
        if self.minimum is None or value < self.minimum:
            self.minimum = value
        if self.maximum is None or value > self.maximum:
            self.maximum = value


def combine(aggregate: str, partials: list[Partial]) -> float | int | None:
    count = sum(p.count for p in partials)
    if aggregate == "count":
        return count
    if aggregate == "sum":
        return sum(p.total for p in partials)
    if aggregate == "avg":
        return sum(p.total for p in partials) / count if count else None
    values = [p.minimum if aggregate == "min" else p.maximum for p in partials if p.count]
    if not values:
        return None
    return min(values) if aggregate == "min" else max(values)


@dataclass
class _Entry:
    partials: dict[str, Partial] = field(default_factory=dict)
    versions: dict[str, int] = field(default_factory=dict)
    value: float | int | None = None
    as_of: float | None = None
    invalidated: bool = False
    incomplete: bool = False
    refreshing: asyncio.Future[None] | None = None


class RollupCache:
    """Bounded-staleness metric cache over the query router.

    Example:
        >>> cache = RollupCache(registry, router, RollupConfig(staleness_bound=60))
        >>> cache.register(RollupDefinition("orders", "sum", field="amount", dimension_field="region"))
        >>> rollup = await cache.get("eu", "orders")
    """

    def __init__(
        self,
        registry: PartitionRegistry,
        router: QueryRouter,
        config: RollupConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.registry = registry
        self.router = router
        self.config = config or RollupConfig()
        self._clock = clock
        self._definitions: dict[str, RollupDefinition] = {}
        self._entries: dict[tuple[str, Any], _Entry] = {}
        self._background: set[asyncio.Task[None]] = set()

        self._hits = 0
        self._refreshes = 0
        self._joined = 0
        self._partitions_recomputed = 0

    def register(self, definition: RollupDefinition) -> None:
        self._definitions[definition.metric_name] = definition
        for key in [k for k in self._entries if k[0] == definition.metric_name]:
            del self._entries[key]
        logger.info(
            "Registered rollup",
            extra={"metric": definition.metric_name, "aggregate": definition.aggregate},
        )

    def definitions(self) -> list[RollupDefinition]:
        return list(self._definitions.values())

    def invalidate(self, metric: str | None = None, dimension_key: Any = None) -> None:
        """Force the next read of matching entries to refresh."""
        for (entry_metric, entry_dim), entry in self._entries.items():
            if metric is not None and entry_metric != metric:
                continue
            if dimension_key is not None and entry_dim != dimension_key:
                continue
            entry.invalidated = True

    async def get(self, dimension_key: Any, metric: str) -> AggregateRollup:
        """Current value of a metric for a dimension key.

        Raises:
            TierDbError: If the metric is not registered
        """
        definition = self._definitions.get(metric)
        if definition is None:
            raise TierDbError(f"Unknown rollup metric: {metric}", code="UNKNOWN_ROLLUP")

        entry = self._entries.setdefault((metric, dimension_key), _Entry())
        now = self._clock()
        fresh = (
            entry.as_of is not None
            and not entry.invalidated
            and not entry.incomplete
            and now - entry.as_of <= self.config.staleness_bound
        )
        if fresh:
            self._hits += 1
            return self._rollup(definition, dimension_key, entry, stale=False)

        if self.config.refresh_mode == RefreshMode.ASYNC and entry.as_of is not None:
            if entry.refreshing is None:
                task = asyncio.create_task(self._refresh_logged(definition, dimension_key, entry))
                self._background.add(task)
                task.add_done_callback(self._background.discard)
            return self._rollup(definition, dimension_key, entry, stale=True)

        await self._refresh(definition, dimension_key, entry)
        return self._rollup(definition, dimension_key, entry, stale=entry.incomplete)

    def _rollup(
        self, definition: RollupDefinition, dimension_key: Any, entry: _Entry, stale: bool
    ) -> AggregateRollup:
        return AggregateRollup(
            dimension_key=dimension_key,
            metric_name=definition.metric_name,
            value=entry.value,
            as_of_timestamp=entry.as_of or 0.0,
            staleness_bound=self.config.staleness_bound,
            stale=stale,
        )

    async def _refresh_logged(
        self, definition: RollupDefinition, dimension_key: Any, entry: _Entry
    ) -> None:
        try:
            await self._refresh(definition, dimension_key, entry)
        except Exception:
            logger.error(
                "Background rollup refresh failed",
                extra={"metric": definition.metric_name, "dimension_key": str(dimension_key)},
                exc_info=True,
            )

    async def _refresh(self, definition: RollupDefinition, dimension_key: Any, entry: _Entry) -> None:
        if entry.refreshing is not None:
            self._joined += 1
            await asyncio.shield(entry.refreshing)
            return

        loop = asyncio.get_running_loop()
        entry.refreshing = loop.create_future()
        try:
            await self._recompute(definition, dimension_key, entry)
            entry.refreshing.set_result(None)
        except asyncio.CancelledError:
            entry.refreshing.cancel()
            raise
        except Exception as e:
            entry.refreshing.set_exception(e)
            # Joiners observe the exception; mark it retrieved for this path.
            entry.refreshing.exception()
            raise
        finally:
            entry.refreshing = None

    async def _recompute(self, definition: RollupDefinition, dimension_key: Any, entry: _Entry) -> None:
        started = self._clock()
        entry.invalidated = False
        key_range = definition.key_range or FULL_RANGE
        predicate = dict(definition.predicate or {})
        if definition.dimension_field is not None:
            predicate[definition.dimension_field] = dimension_key

        partitions = self.registry.lookup(key_range, lineage=definition.lineage)
        current = {p.id for p in partitions}
        for stale_id in [pid for pid in entry.partials if pid not in current]:
            del entry.partials[stale_id]
            entry.versions.pop(stale_id, None)

        changed = [p for p in partitions if entry.versions.get(p.id) != p.version]
        skipped = 0
        for partition in changed:
            clip = partition.key_range.intersect(key_range)
            if clip is None:
                continue
            result = await self.router.query(clip, predicate=predicate, lineage=partition.lineage)
            if result.partial:
                logger.warning(
                    "Partial rollup input; partition will be retried",
                    extra={"metric": definition.metric_name, "partition_id": partition.id},
                )
                skipped += 1
                continue
            partial = Partial()
            for row in result.rows:
                if definition.field is None:
                    partial.add(0)
                    continue
                value = row.payload.get(definition.field)
                if value is None:
                    continue
                if definition.aggregate in ("sum", "avg") and (
                    isinstance(value, bool) or not isinstance(value, (int, float))
                ):
                    continue
                partial.add(value)
            entry.partials[partition.id] = partial
            entry.versions[partition.id] = partition.version
            self._partitions_recomputed += 1

        entry.value = combine(definition.aggregate, list(entry.partials.values()))
        entry.incomplete = skipped > 0
        if not skipped:
            entry.as_of = started
        self._refreshes += 1
        logger.debug(
            "Refreshed rollup",
            extra={
                "metric": definition.metric_name,
                "dimension_key": str(dimension_key),
                "partitions_changed": len(changed),
                "partitions_skipped": skipped,
                "partitions_total": len(partitions),
            },
        )

    async def close(self) -> None:
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)

    async def wait_for_refreshes(self) -> None:
        await asyncio.gather(*list(self._background), return_exceptions=True)

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "metrics": len(self._definitions),
            "entries": len(self._entries),
            "hits": self._hits,
            "refreshes": self._refreshes,
            "joined_refreshes": self._joined,
            "partitions_recomputed": self._partitions_recomputed,
        }
