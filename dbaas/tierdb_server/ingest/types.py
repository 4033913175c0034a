"""
Ingestion data types.

Invariants:
    - batch_id is the idempotency key of an IngestionBatch
    - sequence_no is strictly increasing per (lineage, partition_key)
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class BatchStatus(Enum):
    """Lifecycle of an ingestion batch."""

    PENDING = "PENDING"
    APPLIED = "APPLIED"
    REJECTED = "REJECTED"


@dataclass(frozen=True)
class Record:
    """One incoming record.

    Attributes:
        key: Integer ordering key (normally epoch milliseconds)
        payload: JSON-serializable body
    """

    key: int
    payload: dict[str, Any]

    @classmethod
    def from_dict(cls, data: Any) -> Record:
        """Build a record from decoded JSON.

        Input that is not an object becomes a keyless record carrying the raw
        value, so batch validation rejects it with the other bad records.
        """
        if not isinstance(data, dict):
            return cls(key=None, payload=data)  # type: ignore[arg-type]
        return cls(key=data.get("key"), payload=data.get("payload"))  # type: ignore[arg-type]


@dataclass
class IngestionBatch:
    """A bulk file-derived batch of records.

    Attributes:
        batch_id: Idempotency key
        source_descriptor: Where the batch came from (file name, URI)
        records: Records in source order
        lineage: Target lineage
        status: Current ledger status
    """

    batch_id: str
    source_descriptor: str
    records: list[Record]
    lineage: str = "default"
    status: BatchStatus = BatchStatus.PENDING


@dataclass(frozen=True)
class SubmitResult:
    """Outcome of submitting a batch.

    Attributes:
        batch_id: Submitted batch
        status: APPLIED, REJECTED, or PENDING (resumable)
        rows_applied: Rows the batch contributed in total
        reason: Rejection or failure reason
        duplicate: True when the batch was already APPLIED or REJECTED
    """

    batch_id: str
    status: BatchStatus
    rows_applied: int = 0
    reason: str | None = None
    duplicate: bool = False

    @property
    def accepted(self) -> bool:
        return self.status == BatchStatus.APPLIED

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "accepted": self.accepted,
            "status": self.status.value,
            "rows_applied": self.rows_applied,
            "rejected": self.reason if self.status == BatchStatus.REJECTED else None,
            "reason": self.reason,
            "duplicate": self.duplicate,
        }


@dataclass(frozen=True)
class StreamEvent:
    """A single streaming event.

    Attributes:
        partition_key: Record key the event writes
        payload: JSON-serializable body
        sequence_no: Producer sequence, strictly increasing per key
        lineage: Target lineage
        event_id: Unique event identifier
    """

    partition_key: int
    payload: dict[str, Any]
    sequence_no: int
    lineage: str = "default"
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass(frozen=True)
class PushResult:
    """Outcome of pushing a stream event.

    Attributes:
        accepted: True when the event was queued
        reason: Why the event was dropped
    """

    accepted: bool
    reason: str | None = None

    @classmethod
    def dropped(cls, reason: str) -> PushResult:
        return cls(accepted=False, reason=reason)

    def to_dict(self) -> dict[str, Any]:
        return {"accepted": self.accepted, "dropped": None if self.accepted else self.reason}
