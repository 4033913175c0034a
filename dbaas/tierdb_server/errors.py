"""
Error types for the TierDB lifecycle engine.

This module defines the error taxonomy shared by every component:
- TierDbError: Base exception
- TransientStorageError: Network/timeout failures, retried with backoff
- ChecksumMismatchError: Cold object failed verification (fatal)
- PartitionConflictError: State transition rejected by compare-and-swap
- IngestionValidationError: Malformed record or batch
- QueryTimeoutError: Sub-query deadline exceeded
- BackpressureExceeded: Streaming buffer is full

Invariants:
    - All errors inherit from TierDbError
    - Errors carry a stable code for programmatic handling
    - Transient errors are absorbed by the component that sees them;
      correctness-threatening errors reach the alert channel
"""

from __future__ import annotations

from typing import Any


class TierDbError(Exception):
    """Base exception for all TierDB errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "TIERDB_ERROR"
        self.details = details or {}


class ConfigurationError(TierDbError):
    """Configuration is missing or inconsistent."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="CONFIGURATION_ERROR")


class TransientStorageError(TierDbError):
    """A storage call failed in a way that may succeed on retry.

    Raised when:
    - The object store or hot store times out
    - A connection is reset
    - The hot store reports a busy/locked database
    """

    def __init__(self, message: str, operation: str | None = None) -> None:
        super().__init__(
            message,
            code="TRANSIENT_STORAGE_ERROR",
            details={"operation": operation},
        )
        self.operation = operation


class ChecksumMismatchError(TierDbError):
    """Cold object checksum does not match the checksum taken at extraction.

    Fatal for the archival attempt. Never retried automatically.
    """

    def __init__(
        self,
        partition_id: str,
        expected: str,
        actual: str,
        storage_uri: str | None = None,
    ) -> None:
        super().__init__(
            f"Checksum mismatch for partition {partition_id}: "
            f"expected {expected}, got {actual}",
            code="CHECKSUM_MISMATCH",
            details={
                "partition_id": partition_id,
                "expected": expected,
                "actual": actual,
                "storage_uri": storage_uri,
            },
        )
        self.partition_id = partition_id
        self.expected = expected
        self.actual = actual
        self.storage_uri = storage_uri


class PartitionConflictError(TierDbError):
    """A partition state transition found the partition in an unexpected state."""

    def __init__(
        self,
        message: str,
        partition_id: str | None = None,
        expected: str | None = None,
        actual: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code="PARTITION_CONFLICT",
            details={"partition_id": partition_id, "expected": expected, "actual": actual},
        )
        self.partition_id = partition_id
        self.expected = expected
        self.actual = actual


class AlreadySealedError(PartitionConflictError):
    """Seal requested for a partition that is no longer OPEN."""

    pass


class PartitionNotFoundError(TierDbError):
    """Partition id is unknown to the registry or hot store."""

    def __init__(self, partition_id: str) -> None:
        super().__init__(
            f"Partition not found: {partition_id}",
            code="PARTITION_NOT_FOUND",
            details={"partition_id": partition_id},
        )
        self.partition_id = partition_id


class ColdObjectNotFoundError(TierDbError):
    """Cold storage has no object at the requested key."""

    def __init__(self, storage_uri: str) -> None:
        super().__init__(
            f"Cold object not found: {storage_uri}",
            code="COLD_OBJECT_NOT_FOUND",
            details={"storage_uri": storage_uri},
        )
        self.storage_uri = storage_uri


class IngestionValidationError(TierDbError):
    """A record or batch failed validation.

    Attributes:
        errors: Individual validation errors (one per bad record)
    """

    def __init__(
        self,
        message: str,
        batch_id: str | None = None,
        errors: list[str] | None = None,
    ) -> None:
        super().__init__(
            message,
            code="INGESTION_VALIDATION_ERROR",
            details={"batch_id": batch_id, "errors": errors or []},
        )
        self.batch_id = batch_id
        self.errors = errors or []


class QueryTimeoutError(TierDbError):
    """A sub-query did not finish before the caller's deadline."""

    def __init__(self, partition_id: str, timeout: float | None = None) -> None:
        super().__init__(
            f"Sub-query for partition {partition_id} exceeded its deadline",
            code="QUERY_TIMEOUT",
            details={"partition_id": partition_id, "timeout": timeout},
        )
        self.partition_id = partition_id


class BackpressureExceeded(TierDbError):
    """Streaming buffer is at capacity."""

    def __init__(self, lineage: str, capacity: int) -> None:
        super().__init__(
            f"Streaming buffer for lineage '{lineage}' is full (capacity {capacity})",
            code="BACKPRESSURE_EXCEEDED",
            details={"lineage": lineage, "capacity": capacity},
        )
        self.lineage = lineage
        self.capacity = capacity
