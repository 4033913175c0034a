"""
Bulk ingestion loader for TierDB.

The loader applies file-derived batches into hot partitions:
- Validates every record before any write
- Sorts records by key and applies them in fixed-size sub-batches
- Commits each sub-batch atomically with its idempotency key
- Retries a failing sub-batch alone with exponential backoff
- Resumes a PENDING batch from its applied watermark

Invariants:
    - A batch is APPLIED exactly once; re-submission returns the original result
    - A REJECTED batch wrote no rows
    - Applied offsets of a batch are contiguous from 0, so the highest
      committed offset is the resume point

How to change safely:
    - Keep the sort stable and deterministic: resumption depends on the
      same record landing at the same offset every time
    - Do not validate after the first write; rejection must be all-or-nothing
"""

from __future__ import annotations

import logging
import math
from typing import Any

from ..errors import IngestionValidationError, TransientStorageError
from ..hot import HotStore, PartitionWriter, canonical_json
from ..retry import retry_transient
from .ledger import BatchLedger
from .types import BatchStatus, IngestionBatch, Record, SubmitResult

logger = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 10


def _has_non_finite(value: Any) -> bool:
    if isinstance(value, float):
        return not math.isfinite(value)
    if isinstance(value, dict):
        return any(_has_non_finite(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(_has_non_finite(v) for v in value)
    return False


def validate_record(record: Record) -> str | None:
    """Shape checks that do not depend on partition state."""
    if record.key is None and not isinstance(record.payload, dict):
        return f"record must be an object with key and payload, got {type(record.payload).__name__}"
    if isinstance(record.key, bool) or not isinstance(record.key, int):
        return f"key must be an integer, got {type(record.key).__name__}"
    if not isinstance(record.payload, dict):
        return f"payload must be an object, got {type(record.payload).__name__}"
    if _has_non_finite(record.payload):
        return "payload contains a non-finite number"
    try:
        canonical_json(record.payload)
    except (TypeError, ValueError) as e:
        return f"payload is not JSON-serializable: {e}"
    return None


class BulkLoader:
    """Idempotent, resumable batch loader.

    Example:
        >>> loader = BulkLoader(writer, hot_store, ledger, subbatch_size=10_000)
        >>> result = await loader.submit(IngestionBatch("b-1", "daily.csv", records))
        >>> result.rows_applied
    """

    def __init__(
        self,
        writer: PartitionWriter,
        hot_store: HotStore,
        ledger: BatchLedger,
        subbatch_size: int = 10_000,
        retry_attempts: int = 5,
        retry_base_delay: float = 0.1,
        retry_max_delay: float = 5.0,
    ) -> None:
        self.writer = writer
        self.hot_store = hot_store
        self.ledger = ledger
        self.subbatch_size = subbatch_size
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay

        self._batches_applied = 0
        self._batches_rejected = 0
        self._batches_duplicate = 0
        self._rows_applied = 0

    async def submit(self, batch: IngestionBatch) -> SubmitResult:
        """Apply a batch exactly once.

        Args:
            batch: Batch to apply

        Returns:
            SubmitResult; REJECTED results carry the validation reason

        Raises:
            TransientStorageError: If a sub-batch keeps failing; the batch
                stays PENDING and a later submit resumes it
        """
        existing = await self.ledger.get(batch.batch_id)
        if existing is not None and existing.status != BatchStatus.PENDING:
            self._batches_duplicate += 1
            logger.info(
                "Duplicate batch submission",
                extra={"batch_id": batch.batch_id, "status": existing.status.value},
            )
            return SubmitResult(
                batch_id=batch.batch_id,
                status=existing.status,
                rows_applied=existing.rows_applied,
                reason=existing.reason,
                duplicate=True,
            )

        lineage = batch.lineage
        async with self.writer.lock(lineage):
            watermark = await self.hot_store.applied_watermark(batch.batch_id)
            order = sorted(range(len(batch.records)), key=lambda i: _sort_key(batch.records[i]))

            errors = self._validate(batch, order, watermark)
            if errors:
                return await self._reject(batch, errors)

            await self.ledger.begin(batch.batch_id, lineage, batch.source_descriptor, len(batch.records))
            entries = [
                (batch.records[i].key, canonical_json(batch.records[i].payload)) for i in order
            ]
            if watermark:
                logger.info(
                    "Resuming pending batch",
                    extra={"batch_id": batch.batch_id, "watermark": watermark, "records": len(entries)},
                )

            try:
                await self._apply(batch.batch_id, lineage, entries)
            except TransientStorageError:
                logger.error(
                    "Batch left PENDING after retries were exhausted",
                    extra={"batch_id": batch.batch_id},
                    exc_info=True,
                )
                raise

        await self.ledger.finish(batch.batch_id, BatchStatus.APPLIED, rows_applied=len(entries))
        self._batches_applied += 1
        self._rows_applied += len(entries) - watermark
        logger.info(
            "Applied batch",
            extra={
                "batch_id": batch.batch_id,
                "source": batch.source_descriptor,
                "lineage": lineage,
                "rows": len(entries),
            },
        )
        return SubmitResult(
            batch_id=batch.batch_id, status=BatchStatus.APPLIED, rows_applied=len(entries)
        )

    def _validate(self, batch: IngestionBatch, order: list[int], watermark: int) -> list[str]:
        errors: list[str] = []
        for index, record in enumerate(batch.records):
            reason = validate_record(record)
            if reason is not None:
                errors.append(f"record {index}: {reason}")
        if errors:
            return errors

        # Records below the watermark were written before a crash.
        for position in order[watermark:]:
            reason = self.writer.validate_key(batch.lineage, batch.records[position].key)
            if reason is not None:
                errors.append(f"record {position}: {reason}")
        return errors

    async def _reject(self, batch: IngestionBatch, errors: list[str]) -> SubmitResult:
        reported = errors[:MAX_REPORTED_ERRORS]
        error = IngestionValidationError(
            f"Batch {batch.batch_id} rejected: {len(errors)} invalid record(s); first: {errors[0]}",
            batch_id=batch.batch_id,
            errors=reported,
        )
        await self.ledger.begin(batch.batch_id, batch.lineage, batch.source_descriptor, len(batch.records))
        await self.ledger.finish(batch.batch_id, BatchStatus.REJECTED, reason=error.message)
        self._batches_rejected += 1
        logger.warning(
            "Rejected batch",
            extra={"batch_id": batch.batch_id, "errors": reported, "error_count": len(errors)},
        )
        return SubmitResult(
            batch_id=batch.batch_id, status=BatchStatus.REJECTED, reason=error.message
        )

    async def _apply(self, batch_id: str, lineage: str, entries: list[tuple[int, str]]) -> None:
        """Write entries in sub-batches. Caller holds the lineage lock."""
        total = len(entries)
        start = await self.hot_store.applied_watermark(batch_id)
        while start < total:
            end = min(start + self.subbatch_size, total)

            async def write_subbatch(end: int = end) -> None:
                # Resume from what actually committed before a failed attempt.
                offset = await self.hot_store.applied_watermark(batch_id)
                if offset >= end:
                    return
                await self.writer.append_locked(
                    lineage, entries[offset:end], write_key_prefix=batch_id, base_offset=offset
                )

            await retry_transient(
                write_subbatch,
                f"apply sub-batch {batch_id}:{start}",
                attempts=self.retry_attempts,
                base_delay=self.retry_base_delay,
                max_delay=self.retry_max_delay,
            )
            start = end

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "batches_applied": self._batches_applied,
            "batches_rejected": self._batches_rejected,
            "batches_duplicate": self._batches_duplicate,
            "rows_applied": self._rows_applied,
        }


def _sort_key(record: Record) -> int:
    # Invalid keys sort first; the batch is rejected before they are used.
    return record.key if isinstance(record.key, int) else -math.inf  # type: ignore[return-value]
