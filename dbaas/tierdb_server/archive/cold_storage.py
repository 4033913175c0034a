"""
Cold object storage backends for TierDB.

The archival pipeline and the query router consume cold storage only
through the ColdStorage interface:
- put(key, data): store bytes at a key (overwrite allowed)
- get(key): fetch bytes, ColdObjectNotFoundError if absent
- delete(key): remove an object (idempotent)
- list(prefix): keys under a prefix

Implementations:
- S3ColdStorage: aiobotocore S3 client (production, MinIO for local dev)
- InMemoryColdStorage: dict-backed store with fault injection (tests)

Invariants:
    - Reads after a successful put of the same key return the same bytes
    - Network and timeout failures surface as TransientStorageError
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

from ..config import S3Config
from ..errors import ColdObjectNotFoundError, TransientStorageError

logger = logging.getLogger(__name__)


class ColdStorage(ABC):
    """Interface for cold object storage.

    Consistency contract:
        - Strong read-after-write consistency per object
        - put() returns only after the object is durably stored
    """

    async def connect(self) -> None:
        """Open connections. Must be called before other operations."""

    async def close(self) -> None:
        """Release connections."""

    @abstractmethod
    async def put(self, key: str, data: bytes) -> None:
        """Store an object.

        Raises:
            TransientStorageError: If the write fails and may succeed on retry
        """
        ...

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """Fetch an object.

        Raises:
            ColdObjectNotFoundError: If no object exists at key
            TransientStorageError: If the read fails and may succeed on retry
        """
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete an object. Deleting a missing key is not an error."""
        ...

    @abstractmethod
    async def list(self, prefix: str = "") -> list[str]:
        """Keys under a prefix, sorted."""
        ...

    def uri(self, key: str) -> str:
        """Human-readable location of a key."""
        return key


class S3ColdStorage(ColdStorage):
    """S3-backed cold storage.

    Example:
        >>> storage = S3ColdStorage(S3Config(bucket="tierdb-cold"))
        >>> await storage.connect()
        >>> await storage.put("partitions/x/data.parquet", data)
    """

    def __init__(self, config: S3Config) -> None:
        self.config = config
        self._session: Any = None
        self._s3_ctx: Any = None
        self._s3_client: Any = None

    async def connect(self) -> None:
        """Initialize the S3 client."""
        self._session = get_session()

        client_kwargs: dict[str, Any] = {"region_name": self.config.region}
        if self.config.endpoint_url:
            client_kwargs["endpoint_url"] = self.config.endpoint_url
        if self.config.access_key_id:
            client_kwargs["aws_access_key_id"] = self.config.access_key_id
            client_kwargs["aws_secret_access_key"] = self.config.secret_access_key

        self._s3_ctx = self._session.create_client("s3", **client_kwargs)
        self._s3_client = await self._s3_ctx.__aenter__()
        logger.info(
            "Connected to S3 cold storage",
            extra={"bucket": self.config.bucket, "endpoint": self.config.endpoint_url},
        )

    async def close(self) -> None:
        """Close the S3 client."""
        if self._s3_client:
            await self._s3_ctx.__aexit__(None, None, None)
            self._s3_client = None

    def _client(self) -> Any:
        if self._s3_client is None:
            raise TransientStorageError("S3 client is not connected", operation="s3")
        return self._s3_client

    async def put(self, key: str, data: bytes) -> None:
        try:
            await self._client().put_object(
                Bucket=self.config.bucket,
                Key=key,
                Body=data,
                ContentType="application/vnd.apache.parquet",
            )
        except (ClientError, BotoCoreError, asyncio.TimeoutError) as e:
            raise TransientStorageError(f"S3 put {key} failed: {e}", operation="put") from e

    async def get(self, key: str) -> bytes:
        try:
            response = await self._client().get_object(Bucket=self.config.bucket, Key=key)
            async with response["Body"] as stream:
                return await stream.read()
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                raise ColdObjectNotFoundError(self.uri(key)) from e
            raise TransientStorageError(f"S3 get {key} failed: {e}", operation="get") from e
        except (BotoCoreError, asyncio.TimeoutError) as e:
            raise TransientStorageError(f"S3 get {key} failed: {e}", operation="get") from e

    async def delete(self, key: str) -> None:
        try:
            await self._client().delete_object(Bucket=self.config.bucket, Key=key)
        except (ClientError, BotoCoreError, asyncio.TimeoutError) as e:
            raise TransientStorageError(f"S3 delete {key} failed: {e}", operation="delete") from e

    async def list(self, prefix: str = "") -> list[str]:
        keys: list[str] = []
        try:
            paginator = self._client().get_paginator("list_objects_v2")
            async for page in paginator.paginate(Bucket=self.config.bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    keys.append(obj["Key"])
        except (ClientError, BotoCoreError, asyncio.TimeoutError) as e:
            raise TransientStorageError(f"S3 list {prefix} failed: {e}", operation="list") from e
        return sorted(keys)

    def uri(self, key: str) -> str:
        return f"s3://{self.config.bucket}/{key}"


class InMemoryColdStorage(ColdStorage):
    """In-memory cold storage for tests and local development.

    Fault injection:
        - fail_puts / fail_gets: raise TransientStorageError on the next N calls
        - corrupt_puts: flip a byte of every stored object (checksum tests)
        - get_delay: seconds every get() sleeps (deadline tests)

    Example:
        >>> storage = InMemoryColdStorage()
        >>> storage.fail_puts = 2
        >>> await storage.put("k", b"data")  # raises twice before succeeding
    """

    def __init__(self) -> None:
        self._objects: dict[str, bytes] = {}
        self.fail_puts = 0
        self.fail_gets = 0
        self.corrupt_puts = False
        self.get_delay = 0.0
        self.put_count = 0
        self.get_count = 0

    async def put(self, key: str, data: bytes) -> None:
        if self.fail_puts > 0:
            self.fail_puts -= 1
            raise TransientStorageError(f"Injected put failure for {key}", operation="put")
        if self.corrupt_puts and data:
            data = bytes([data[0] ^ 0xFF]) + data[1:]
        self._objects[key] = data
        self.put_count += 1

    async def get(self, key: str) -> bytes:
        if self.get_delay:
            await asyncio.sleep(self.get_delay)
        if self.fail_gets > 0:
            self.fail_gets -= 1
            raise TransientStorageError(f"Injected get failure for {key}", operation="get")
        self.get_count += 1
        try:
            return self._objects[key]
        except KeyError:
            raise ColdObjectNotFoundError(self.uri(key))

    async def delete(self, key: str) -> None:
        self._objects.pop(key, None)

    async def list(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._objects if k.startswith(prefix))

    def uri(self, key: str) -> str:
        return f"memory://{key}"
