"""
Ingestion paths for TierDB.

- BulkLoader: idempotent, resumable file-derived batches
- StreamBuffer: bounded per-lineage queues of single events
- BatchLedger: status of every submitted batch_id

Both paths write through hot.PartitionWriter.
"""

from .ledger import BatchLedger, LedgerEntry
from .loader import BulkLoader, validate_record
from .stream_buffer import StreamBuffer
from .types import (
    BatchStatus,
    IngestionBatch,
    PushResult,
    Record,
    StreamEvent,
    SubmitResult,
)

__all__ = [
    "BatchLedger",
    "BatchStatus",
    "BulkLoader",
    "IngestionBatch",
    "LedgerEntry",
    "PushResult",
    "Record",
    "StreamBuffer",
    "StreamEvent",
    "SubmitResult",
    "validate_record",
]
