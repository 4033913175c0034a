"""
Streaming merge buffer for TierDB.

Accepts single events, buffers them per lineage in bounded queues, and
drains them in (partition_key, sequence_no) order through the same
PartitionWriter path as the bulk loader.

Invariants:
    - Every push is answered: accepted, or dropped with a reason
    - A full queue never loses an event silently; the producer is told
    - An accepted event is never dropped by a failed drain; the batch is
      held and written before the queue is read again
    - Events with sequence_no <= the last applied one for their key are
      discarded and counted as duplicates
    - Events are written in (partition_key, sequence_no) order per drain

How to change safely:
    - Keep the drain on the writer path so accounting stays consistent
    - The sequence watermark is in memory; queued events do not survive a
      restart and producers re-send from their own checkpoint
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any

from ..config import FullQueuePolicy
from ..errors import BackpressureExceeded, IngestionValidationError, TransientStorageError
from ..hot import PartitionWriter, canonical_json
from ..retry import retry_transient
from .loader import validate_record
from .types import PushResult, Record, StreamEvent

logger = logging.getLogger(__name__)


@dataclass
class _PendingWrite:
    """A dequeued drain batch not yet fully committed."""

    prefix: str
    entries: list[tuple[int, str]]


class StreamBuffer:
    """Bounded per-lineage event queues with ordered drain.

    Example:
        >>> buffer = StreamBuffer(writer, capacity=10_000)
        >>> result = await buffer.push(StreamEvent(partition_key=5, payload={}, sequence_no=1))
        >>> await buffer.flush()
    """

    def __init__(
        self,
        writer: PartitionWriter,
        capacity: int = 10_000,
        full_policy: FullQueuePolicy = FullQueuePolicy.REJECT,
        block_timeout: float = 5.0,
        drain_batch_size: int = 10_000,
        drain_interval: float = 0.5,
        retry_attempts: int = 5,
        retry_base_delay: float = 0.1,
        retry_max_delay: float = 5.0,
    ) -> None:
        self.writer = writer
        self.capacity = capacity
        self.full_policy = full_policy
        self.block_timeout = block_timeout
        self.drain_batch_size = drain_batch_size
        self.drain_interval = drain_interval
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay

        self._queues: dict[str, asyncio.Queue[StreamEvent]] = {}
        self._last_applied: dict[str, dict[int, int]] = {}
        self._pending: dict[str, _PendingWrite] = {}
        self._running = False

        self._accepted = 0
        self._dropped = 0
        self._duplicates = 0
        self._applied = 0
        self._rejected_late = 0
        self._failed = 0

    def _queue(self, lineage: str) -> asyncio.Queue[StreamEvent]:
        queue = self._queues.get(lineage)
        if queue is None:
            queue = asyncio.Queue(maxsize=self.capacity)
            self._queues[lineage] = queue
        return queue

    async def push(self, event: StreamEvent) -> PushResult:
        """Queue an event for the next drain.

        Returns:
            PushResult; dropped results carry the reason (backpressure or
            validation)
        """
        reason = validate_record(Record(key=event.partition_key, payload=event.payload))
        if reason is None:
            reason = self.writer.validate_key(event.lineage, event.partition_key)
        if reason is not None:
            self._dropped += 1
            return PushResult.dropped(f"{IngestionValidationError.__name__}: {reason}")

        queue = self._queue(event.lineage)
        try:
            if self.full_policy == FullQueuePolicy.BLOCK:
                await asyncio.wait_for(queue.put(event), timeout=self.block_timeout)
            else:
                queue.put_nowait(event)
        except (asyncio.QueueFull, asyncio.TimeoutError):
            self._dropped += 1
            error = BackpressureExceeded(event.lineage, self.capacity)
            logger.debug(
                "Dropped stream event",
                extra={"lineage": event.lineage, "event_id": event.event_id},
            )
            return PushResult.dropped(f"{type(error).__name__}: {error.message}")

        self._accepted += 1
        return PushResult(accepted=True)

    def queue_depth(self, lineage: str = "default") -> int:
        """Events waiting in a lineage's queue or held from a failed drain."""
        queue = self._queues.get(lineage)
        depth = queue.qsize() if queue else 0
        held = self._pending.get(lineage)
        return depth + (len(held.entries) if held else 0)

    async def drain(self, lineage: str) -> int:
        """Write up to one drain batch of a lineage's queued events.

        Events held by a failed drain are written first, resuming after the
        segments that already committed. Only then is the queue read again.

        Returns:
            Events written
        """
        write = self._pending.pop(lineage, None)
        if write is None:
            write = self._take(lineage)
            if write is None:
                return 0

        try:
            async with self.writer.lock(lineage):
                written = await retry_transient(
                    lambda: self._write_locked(lineage, write),
                    f"drain stream {lineage}",
                    attempts=self.retry_attempts,
                    base_delay=self.retry_base_delay,
                    max_delay=self.retry_max_delay,
                )
        except asyncio.CancelledError:
            self._pending[lineage] = write
            raise
        except TransientStorageError:
            self._pending[lineage] = write
            self._failed += 1
            logger.error(
                "Stream drain failed after retries, events held for the next drain",
                extra={"lineage": lineage, "events": len(write.entries)},
                exc_info=True,
            )
            raise

        self._applied += written
        self._prune(lineage)
        return written

    def _take(self, lineage: str) -> _PendingWrite | None:
        """Dequeue one drain batch, drop duplicates and order the rest."""
        queue = self._queues.get(lineage)
        if queue is None or queue.empty():
            return None

        events: list[StreamEvent] = []
        while len(events) < self.drain_batch_size and not queue.empty():
            events.append(queue.get_nowait())
            queue.task_done()
        events.sort(key=lambda e: (e.partition_key, e.sequence_no))

        # Watermarks advance here; held events are written before anything newer.
        last_applied = self._last_applied.setdefault(lineage, {})
        entries: list[tuple[int, str]] = []
        for event in events:
            last = last_applied.get(event.partition_key)
            if last is not None and event.sequence_no <= last:
                self._duplicates += 1
                continue
            last_applied[event.partition_key] = event.sequence_no
            entries.append((event.partition_key, canonical_json(event.payload)))

        if not entries:
            return None
        return _PendingWrite(prefix=f"stream:{lineage}:{uuid.uuid4().hex}", entries=entries)

    async def _write_locked(self, lineage: str, write: _PendingWrite) -> int:
        """Write the uncommitted tail of a drain batch. Caller holds the lineage lock."""
        offset = await self.writer.hot_store.applied_watermark(write.prefix)

        writable = []
        for key, payload in write.entries[offset:]:
            # A seal may have closed the key's range since the event was queued.
            reason = self.writer.validate_key(lineage, key)
            if reason is not None:
                self._rejected_late += 1
                logger.warning(
                    "Discarded late stream event",
                    extra={"lineage": lineage, "key": key, "reason": reason},
                )
                continue
            writable.append((key, payload))
        write.entries[offset:] = writable

        await self.writer.append_locked(
            lineage, write.entries[offset:], write_key_prefix=write.prefix, base_offset=offset
        )
        return len(write.entries)

    def _prune(self, lineage: str) -> None:
        """Forget sequence watermarks for keys that can no longer be written."""
        open_partition = self.writer.registry.open_partition_for(lineage)
        if open_partition is None:
            return
        low = open_partition.key_range.low
        last_applied = self._last_applied.get(lineage, {})
        for key in [k for k in last_applied if k < low]:
            del last_applied[key]

    async def flush(self) -> int:
        """Drain every lineage until its queue is empty."""
        total = 0
        for lineage in list(self._queues):
            while self.queue_depth(lineage):
                total += await self.drain(lineage)
        return total

    async def run(self) -> None:
        """Drain on an interval until stop() is called."""
        self._running = True
        logger.info("Stream buffer drain loop started", extra={"interval": self.drain_interval})
        while self._running:
            try:
                await self.flush()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error("Stream drain failed", exc_info=True)
            await asyncio.sleep(self.drain_interval)

    def stop(self) -> None:
        self._running = False

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "accepted": self._accepted,
            "dropped": self._dropped,
            "duplicates": self._duplicates,
            "applied": self._applied,
            "rejected_late": self._rejected_late,
            "failed": self._failed,
            "queued": sum(self.queue_depth(lineage) for lineage in self._queues),
        }
