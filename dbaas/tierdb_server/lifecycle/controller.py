"""
Partition lifecycle controller for TierDB.

tick() is the lifecycle trigger invoked by an external scheduler. Each
tick, in order:
    1. Seals non-empty OPEN partitions older than age_threshold, and OPEN
       partitions at or over size_threshold (the successor opens atomically)
    2. Resumes orphaned ARCHIVING partitions (crash recovery)
    3. Starts archivals of the oldest SEALED partitions, up to
       max_concurrent_archivals in flight
    4. Releases and retires COLD partitions whose grace period has passed

Invariants:
    - Every action is a registry compare-and-swap, so concurrent or
      duplicate ticks degrade to no-ops
    - At most max_concurrent_archivals pipelines run at once
    - A failed release is retried on every later tick

How to change safely:
    - Never await a pipeline inside tick(); archivals run as tasks
    - Keep the step order: sealing first lets one tick seal and archive
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from ..alerts import Alert, AlertChannel
from ..archive import ArchivalPipeline
from ..config import LifecycleConfig
from ..errors import (
    ChecksumMismatchError,
    PartitionConflictError,
    TierDbError,
    TransientStorageError,
)
from ..hot import PartitionWriter
from ..registry import PartitionRegistry, PartitionState

logger = logging.getLogger(__name__)


@dataclass
class TickResult:
    """Partition ids touched by one tick."""

    sealed: list[str] = field(default_factory=list)
    archivals_started: list[str] = field(default_factory=list)
    archivals_resumed: list[str] = field(default_factory=list)
    retired: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "sealed": self.sealed,
            "archivals_started": self.archivals_started,
            "archivals_resumed": self.archivals_resumed,
            "retired": self.retired,
        }


class LifecycleController:
    """Drives partitions through seal, archive, and retire.

    Example:
        >>> controller = LifecycleController(registry, writer, pipeline, alerts, LifecycleConfig())
        >>> result = await controller.tick()
        >>> await controller.wait_for_archivals()
    """

    def __init__(
        self,
        registry: PartitionRegistry,
        writer: PartitionWriter,
        pipeline: ArchivalPipeline,
        alerts: AlertChannel,
        config: LifecycleConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.registry = registry
        self.writer = writer
        self.pipeline = pipeline
        self.alerts = alerts
        self.config = config or LifecycleConfig()
        self._clock = clock
        self._in_flight: dict[str, asyncio.Task[None]] = {}
        self._running = False

        self._ticks = 0
        self._archival_failures = 0
        self._release_failures = 0

    async def tick(self) -> TickResult:
        """Run one lifecycle pass. Safe to call concurrently."""
        self._ticks += 1
        result = TickResult()
        await self._seal_due(result)
        self._resume_orphans(result)
        self._start_archivals(result)
        await self._retire_due(result)

        if result.sealed or result.archivals_started or result.archivals_resumed or result.retired:
            logger.info("Lifecycle tick", extra=result.to_dict())
        return result

    async def _seal_due(self, result: TickResult) -> None:
        now = self._clock()
        for partition in self.registry.list_partitions(state=PartitionState.OPEN):
            aged = partition.row_count > 0 and now - partition.created_at >= self.config.age_threshold
            full = partition.row_count >= self.config.size_threshold
            if not (aged or full):
                continue
            try:
                sealed = await self.writer.rollover(partition.lineage, partition_id=partition.id)
            except PartitionConflictError:
                logger.debug("Seal lost a race", extra={"partition_id": partition.id})
                continue
            if sealed is not None:
                result.sealed.append(sealed.id)

    def _resume_orphans(self, result: TickResult) -> None:
        for partition in self.registry.list_partitions(state=PartitionState.ARCHIVING):
            if partition.archive_failed or partition.id in self._in_flight:
                continue
            if len(self._in_flight) >= self.config.max_concurrent_archivals:
                return
            self._launch(partition.id)
            result.archivals_resumed.append(partition.id)

    def _start_archivals(self, result: TickResult) -> None:
        sealed = sorted(
            self.registry.list_partitions(state=PartitionState.SEALED),
            key=lambda p: (p.sealed_at or 0.0, p.key_range.low),
        )
        for partition in sealed:
            if len(self._in_flight) >= self.config.max_concurrent_archivals:
                return
            try:
                self.registry.begin_archive(partition.id)
            except PartitionConflictError:
                continue
            self._launch(partition.id)
            result.archivals_started.append(partition.id)

    def _launch(self, partition_id: str) -> None:
        task = asyncio.create_task(self._run_archival(partition_id))
        self._in_flight[partition_id] = task

    async def _run_archival(self, partition_id: str) -> None:
        try:
            await self.pipeline.archive(partition_id)
        except ChecksumMismatchError:
            # Alert already raised by the pipeline; waits for an operator.
            self._archival_failures += 1
        except TransientStorageError:
            self._archival_failures += 1
            logger.warning(
                "Archival interrupted; will resume on a later tick",
                extra={"partition_id": partition_id},
                exc_info=True,
            )
        except PartitionConflictError as e:
            self._archival_failures += 1
            self.alerts.raise_alert(Alert.from_error(e, stage="archive"))
        except Exception:
            self._archival_failures += 1
            logger.error(
                "Archival failed", extra={"partition_id": partition_id}, exc_info=True
            )
        finally:
            self._in_flight.pop(partition_id, None)

    async def _retire_due(self, result: TickResult) -> None:
        now = self._clock()
        for partition in self.registry.list_partitions(state=PartitionState.COLD):
            archived_at = partition.archived_at or 0.0
            if now < archived_at + self.config.retention_after_retire:
                continue
            try:
                await self.pipeline.release(partition.id)
            except PartitionConflictError:
                continue
            except TierDbError:
                self._release_failures += 1
                logger.warning(
                    "Release failed; retrying next tick",
                    extra={"partition_id": partition.id},
                    exc_info=True,
                )
                continue
            result.retired.append(partition.id)

    async def wait_for_archivals(self) -> None:
        """Wait until every in-flight archival has finished."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    @property
    def in_flight(self) -> list[str]:
        return sorted(self._in_flight)

    async def run(self, interval_seconds: float) -> None:
        """Call tick() on an interval until stop() is called."""
        self._running = True
        logger.info("Lifecycle tick loop started", extra={"interval": interval_seconds})
        while self._running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error("Lifecycle tick failed", exc_info=True)
            await asyncio.sleep(interval_seconds)

    async def stop(self) -> None:
        """Stop the tick loop and cancel in-flight archivals."""
        self._running = False
        tasks = list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "ticks": self._ticks,
            "in_flight": len(self._in_flight),
            "archival_failures": self._archival_failures,
            "release_failures": self._release_failures,
        }
