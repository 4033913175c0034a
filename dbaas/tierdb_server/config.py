"""
Configuration management for the TierDB lifecycle engine.

All configuration is done via environment variables. This module provides
typed, frozen configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Lifecycle policy (ages, sizes, concurrency) is configuration, never
      hardcoded in components
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep env variable names stable; deprecate with a logged warning
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class ColdBackend(Enum):
    """Supported cold storage backends."""

    S3 = "s3"
    MEMORY = "memory"


class FullQueuePolicy(Enum):
    """What the streaming buffer does when a queue is at capacity."""

    REJECT = "reject"
    BLOCK = "block"


class RefreshMode(Enum):
    """How the rollup cache refreshes a stale entry."""

    SYNC = "sync"
    ASYNC = "async"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes", "on")


def _env_list(name: str) -> tuple[str, ...] | None:
    raw = os.getenv(name)
    if not raw:
        return None
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _env_json(name: str) -> dict[str, Any] | None:
    raw = os.getenv(name)
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"{name} is not valid JSON: {e}")
    if not isinstance(value, dict):
        raise ConfigurationError(f"{name} must be a JSON object")
    return value


@dataclass(frozen=True)
class LifecycleConfig:
    """Partition lifecycle policy.

    Attributes:
        age_threshold: Seconds after creation before an OPEN partition is sealed
        size_threshold: Maximum rows per partition; reaching it forces a rollover
        max_concurrent_archivals: Upper bound on archival pipelines in flight
        retention_after_retire: Seconds a COLD partition keeps its hot copy
            before it is retired (grace period for in-flight queries)
        partition_span: Width of a new partition's key range (key units,
            normally milliseconds)
    """

    age_threshold: float = 86400.0
    size_threshold: int = 1_000_000
    max_concurrent_archivals: int = 2
    retention_after_retire: float = 3600.0
    partition_span: int = 86_400_000

    @classmethod
    def from_env(cls) -> LifecycleConfig:
        """Load configuration from environment variables."""
        return cls(
            age_threshold=float(os.getenv("TIERDB_AGE_THRESHOLD", "86400")),
            size_threshold=int(os.getenv("TIERDB_SIZE_THRESHOLD", "1000000")),
            max_concurrent_archivals=int(os.getenv("TIERDB_MAX_CONCURRENT_ARCHIVALS", "2")),
            retention_after_retire=float(os.getenv("TIERDB_RETENTION_AFTER_RETIRE", "3600")),
            partition_span=int(os.getenv("TIERDB_PARTITION_SPAN", "86400000")),
        )


@dataclass(frozen=True)
class IngestConfig:
    """Bulk loader and streaming buffer configuration.

    Attributes:
        batch_subbatch_size: Rows per sub-batch write (bounds memory and lock time)
        streaming_queue_capacity: Capacity of each per-lineage streaming queue
        streaming_full_policy: reject (signal busy) or block when full
        streaming_block_timeout: Seconds a blocking push waits before dropping
        streaming_drain_interval: Seconds between background drains
        retry_attempts: Attempts per sub-batch on transient failures
        retry_base_delay: First backoff delay in seconds
        retry_max_delay: Backoff ceiling in seconds
    """

    batch_subbatch_size: int = 10_000
    streaming_queue_capacity: int = 10_000
    streaming_full_policy: FullQueuePolicy = FullQueuePolicy.REJECT
    streaming_block_timeout: float = 5.0
    streaming_drain_interval: float = 0.5
    retry_attempts: int = 5
    retry_base_delay: float = 0.1
    retry_max_delay: float = 5.0

    @classmethod
    def from_env(cls) -> IngestConfig:
        """Load configuration from environment variables."""
        policy = os.getenv("TIERDB_STREAMING_FULL_POLICY", "reject").lower()
        try:
            full_policy = FullQueuePolicy(policy)
        except ValueError:
            raise ConfigurationError(
                f"Invalid TIERDB_STREAMING_FULL_POLICY '{policy}'. Must be one of: reject, block"
            )
        return cls(
            batch_subbatch_size=int(os.getenv("TIERDB_BATCH_SUBBATCH_SIZE", "10000")),
            streaming_queue_capacity=int(os.getenv("TIERDB_STREAMING_QUEUE_CAPACITY", "10000")),
            streaming_full_policy=full_policy,
            streaming_block_timeout=float(os.getenv("TIERDB_STREAMING_BLOCK_TIMEOUT", "5.0")),
            streaming_drain_interval=float(os.getenv("TIERDB_STREAMING_DRAIN_INTERVAL", "0.5")),
            retry_attempts=int(os.getenv("TIERDB_INGEST_RETRY_ATTEMPTS", "5")),
            retry_base_delay=float(os.getenv("TIERDB_INGEST_RETRY_BASE_DELAY", "0.1")),
            retry_max_delay=float(os.getenv("TIERDB_INGEST_RETRY_MAX_DELAY", "5.0")),
        )


@dataclass(frozen=True)
class ArchiveConfig:
    """Archival pipeline configuration.

    Attributes:
        compression: Parquet compression codec (snappy, zstd, gzip, none)
        projection: Payload fields kept in cold storage (None keeps all)
        row_filter: Dict predicate of rows kept in cold storage (None keeps all)
        retry_attempts: Attempts per retriable step (extract, transform, write)
        retry_base_delay: First backoff delay in seconds
        retry_max_delay: Backoff ceiling in seconds
    """

    compression: str = "snappy"
    projection: tuple[str, ...] | None = None
    row_filter: dict[str, Any] | None = None
    retry_attempts: int = 5
    retry_base_delay: float = 0.2
    retry_max_delay: float = 10.0

    @classmethod
    def from_env(cls) -> ArchiveConfig:
        """Load configuration from environment variables."""
        return cls(
            compression=os.getenv("TIERDB_ARCHIVE_COMPRESSION", "snappy"),
            projection=_env_list("TIERDB_ARCHIVE_PROJECTION"),
            row_filter=_env_json("TIERDB_ARCHIVE_FILTER"),
            retry_attempts=int(os.getenv("TIERDB_ARCHIVE_RETRY_ATTEMPTS", "5")),
            retry_base_delay=float(os.getenv("TIERDB_ARCHIVE_RETRY_BASE_DELAY", "0.2")),
            retry_max_delay=float(os.getenv("TIERDB_ARCHIVE_RETRY_MAX_DELAY", "10.0")),
        )


@dataclass(frozen=True)
class QueryConfig:
    """Query federation configuration.

    Attributes:
        default_timeout: Deadline in seconds applied when the caller gives none
        max_parallel_subqueries: Concurrent sub-queries per federated query
    """

    default_timeout: float = 30.0
    max_parallel_subqueries: int = 16

    @classmethod
    def from_env(cls) -> QueryConfig:
        """Load configuration from environment variables."""
        return cls(
            default_timeout=float(os.getenv("TIERDB_QUERY_TIMEOUT", "30.0")),
            max_parallel_subqueries=int(os.getenv("TIERDB_QUERY_MAX_PARALLEL", "16")),
        )


@dataclass(frozen=True)
class RollupConfig:
    """Aggregate rollup cache configuration.

    Attributes:
        staleness_bound: Maximum age in seconds of a value served as fresh
        refresh_mode: sync (caller waits) or async (stale value + flag)
    """

    staleness_bound: float = 300.0
    refresh_mode: RefreshMode = RefreshMode.SYNC

    @classmethod
    def from_env(cls) -> RollupConfig:
        """Load configuration from environment variables."""
        mode = os.getenv("TIERDB_ROLLUP_REFRESH_MODE", "sync").lower()
        try:
            refresh_mode = RefreshMode(mode)
        except ValueError:
            raise ConfigurationError(
                f"Invalid TIERDB_ROLLUP_REFRESH_MODE '{mode}'. Must be one of: sync, async"
            )
        return cls(
            staleness_bound=float(os.getenv("TIERDB_STALENESS_BOUND", "300")),
            refresh_mode=refresh_mode,
        )


@dataclass(frozen=True)
class S3Config:
    """S3 configuration for cold storage.

    Attributes:
        bucket: S3 bucket name
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO)
        archive_prefix: Prefix for archived partition objects
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
    """

    bucket: str = "tierdb-cold"
    region: str = "us-east-1"
    endpoint_url: str | None = None
    archive_prefix: str = "partitions"
    access_key_id: str | None = None
    secret_access_key: str | None = None

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            bucket=os.getenv("S3_BUCKET", "tierdb-cold"),
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            archive_prefix=os.getenv("S3_ARCHIVE_PREFIX", "partitions"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration for the hot tier and registry metadata.

    Attributes:
        data_dir: Directory for SQLite databases
        hot_db_name: File name of the hot store database
        registry_db_name: File name of the registry/ledger database
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    data_dir: str = "/var/lib/tierdb"
    hot_db_name: str = "hot.db"
    registry_db_name: str = "registry.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("TIERDB_DATA_DIR", "/var/lib/tierdb"),
            hot_db_name=os.getenv("TIERDB_HOT_DB", "hot.db"),
            registry_db_name=os.getenv("TIERDB_REGISTRY_DB", "registry.db"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class HttpConfig:
    """HTTP API configuration."""

    host: str = "0.0.0.0"
    port: int = 8081
    enabled: bool = True

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("TIERDB_HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("TIERDB_HTTP_PORT", "8081")),
            enabled=_env_bool("TIERDB_HTTP_ENABLED", "true"),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Observability and logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
        tick_interval_seconds: Interval of the built-in tick loop (0 disables
            it; an external scheduler then drives tick())
    """

    log_level: str = "INFO"
    log_format: str = "json"
    tick_interval_seconds: float = 0.0

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
            tick_interval_seconds=float(os.getenv("TIERDB_TICK_INTERVAL_SECONDS", "0")),
        )


@dataclass
class ServerConfig:
    """Complete engine configuration.

    Aggregates all configuration sections and provides validation.

    Attributes:
        cold_backend: Which cold storage backend to use
        lifecycle: Partition lifecycle policy
        ingest: Loader and streaming buffer configuration
        archive: Archival pipeline configuration
        query: Query federation configuration
        rollup: Rollup cache configuration
        s3: S3 configuration
        storage: Local storage configuration
        http: HTTP API configuration
        observability: Observability configuration
    """

    cold_backend: ColdBackend = ColdBackend.S3
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    ingest: IngestConfig = field(default_factory=IngestConfig)
    archive: ArchiveConfig = field(default_factory=ArchiveConfig)
    query: QueryConfig = field(default_factory=QueryConfig)
    rollup: RollupConfig = field(default_factory=RollupConfig)
    s3: S3Config = field(default_factory=S3Config)
    storage: StorageConfig = field(default_factory=StorageConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ConfigurationError: If configuration is missing or invalid.
        """
        backend_str = os.getenv("TIERDB_COLD_BACKEND", "s3").lower()
        try:
            cold_backend = ColdBackend(backend_str)
        except ValueError:
            raise ConfigurationError(
                f"Invalid TIERDB_COLD_BACKEND '{backend_str}'. Must be one of: s3, memory"
            )

        config = cls(
            cold_backend=cold_backend,
            lifecycle=LifecycleConfig.from_env(),
            ingest=IngestConfig.from_env(),
            archive=ArchiveConfig.from_env(),
            query=QueryConfig.from_env(),
            rollup=RollupConfig.from_env(),
            s3=S3Config.from_env(),
            storage=StorageConfig.from_env(),
            http=HttpConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ConfigurationError: If configuration is invalid.
        """
        if self.lifecycle.size_threshold <= 0:
            raise ConfigurationError("TIERDB_SIZE_THRESHOLD must be positive")
        if self.lifecycle.partition_span <= 0:
            raise ConfigurationError("TIERDB_PARTITION_SPAN must be positive")
        if self.lifecycle.max_concurrent_archivals <= 0:
            raise ConfigurationError("TIERDB_MAX_CONCURRENT_ARCHIVALS must be positive")
        if self.ingest.batch_subbatch_size <= 0:
            raise ConfigurationError("TIERDB_BATCH_SUBBATCH_SIZE must be positive")
        if self.ingest.streaming_queue_capacity <= 0:
            raise ConfigurationError("TIERDB_STREAMING_QUEUE_CAPACITY must be positive")
        if self.rollup.staleness_bound < 0:
            raise ConfigurationError("TIERDB_STALENESS_BOUND must not be negative")

        if self.cold_backend == ColdBackend.S3 and not self.s3.bucket:
            raise ConfigurationError("S3_BUCKET is required when TIERDB_COLD_BACKEND=s3")

        if self.cold_backend == ColdBackend.MEMORY:
            logger.warning(
                "Cold backend is in-memory: archived partitions are lost on exit"
            )

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Engine configuration loaded",
            extra={
                "cold_backend": self.cold_backend.value,
                "s3_bucket": self.s3.bucket if self.cold_backend == ColdBackend.S3 else None,
                "data_dir": self.storage.data_dir,
                "age_threshold": self.lifecycle.age_threshold,
                "size_threshold": self.lifecycle.size_threshold,
                "max_concurrent_archivals": self.lifecycle.max_concurrent_archivals,
                "retention_after_retire": self.lifecycle.retention_after_retire,
                "staleness_bound": self.rollup.staleness_bound,
                "streaming_queue_capacity": self.ingest.streaming_queue_capacity,
                "batch_subbatch_size": self.ingest.batch_subbatch_size,
                "log_level": self.observability.log_level,
            },
        )
