"""
Integration tests for the HTTP API over a real engine.

Tests cover:
- Batch submission and duplicate detection
- Event push with backpressure status codes
- Query, tick, partition listing, manifests
- Error mapping to status codes
"""

import pytest
from aiohttp.test_utils import TestClient, TestServer

from dbaas.tierdb_server.alerts import InMemoryAlertChannel
from dbaas.tierdb_server.api import create_http_app
from dbaas.tierdb_server.archive import InMemoryColdStorage
from dbaas.tierdb_server.config import (
    ColdBackend,
    IngestConfig,
    LifecycleConfig,
    ServerConfig,
    StorageConfig,
)
from dbaas.tierdb_server.engine import Engine
from dbaas.tierdb_server.rollup import RollupDefinition


class TestHttpApi:
    """Tests for the REST endpoints."""

    @pytest.fixture
    async def engine(self, data_dir, clock):
        config = ServerConfig(
            cold_backend=ColdBackend.MEMORY,
            lifecycle=LifecycleConfig(size_threshold=5, partition_span=1000),
            ingest=IngestConfig(streaming_queue_capacity=2),
            storage=StorageConfig(data_dir=data_dir, wal_mode=False),
        )
        engine = Engine(
            config, cold_storage=InMemoryColdStorage(), alerts=InMemoryAlertChannel(), clock=clock
        )
        await engine.start()
        yield engine
        await engine.close()

    @pytest.fixture
    async def client(self, engine):
        client = TestClient(TestServer(create_http_app(engine)))
        await client.start_server()
        yield client
        await client.close()

    async def submit(self, client, batch_id, keys):
        return await client.post(
            "/v1/batches",
            json={
                "batch_id": batch_id,
                "source": "test.csv",
                "records": [{"key": k, "payload": {"k": k, "region": "eu"}} for k in keys],
            },
        )

    @pytest.mark.asyncio
    async def test_submit_batch(self, client):
        response = await self.submit(client, "b1", range(8))
        body = await response.json()

        assert response.status == 200
        assert body["accepted"] is True
        assert body["rows_applied"] == 8

        duplicate = await (await self.submit(client, "b1", range(8))).json()
        assert duplicate["duplicate"] is True

    @pytest.mark.asyncio
    async def test_rejected_batch(self, client):
        response = await client.post(
            "/v1/batches",
            json={"batch_id": "bad", "records": [{"key": "x", "payload": {}}]},
        )
        body = await response.json()

        assert response.status == 400
        assert body["accepted"] is False
        assert "record 0" in body["rejected"]

        scalar = await client.post("/v1/batches", json={"batch_id": "bad2", "records": [5]})
        assert scalar.status == 400
        assert "record 0" in (await scalar.json())["rejected"]

    @pytest.mark.asyncio
    async def test_missing_fields(self, client):
        response = await client.post("/v1/batches", json={"records": []})
        assert response.status == 400

        response = await client.post("/v1/batches", data="not json")
        assert response.status == 400

    @pytest.mark.asyncio
    async def test_push_event_backpressure(self, client):
        statuses = []
        for seq in range(3):
            response = await client.post(
                "/v1/events", json={"key": 5, "payload": {"v": seq}, "sequence_no": seq}
            )
            statuses.append(response.status)

        assert statuses == [202, 202, 429]

    @pytest.mark.asyncio
    async def test_push_invalid_event(self, client):
        response = await client.post(
            "/v1/events", json={"key": 5, "payload": [1], "sequence_no": 1}
        )
        assert response.status == 400

    @pytest.mark.asyncio
    async def test_query_and_lifecycle(self, client, engine):
        await self.submit(client, "b1", range(12))

        tick = await (await client.post("/v1/tick")).json()
        await engine.controller.wait_for_archivals()
        query = await (
            await client.post("/v1/query", json={"low": 0, "high": 1000, "limit": 20})
        ).json()
        cold = await (await client.get("/v1/partitions", params={"state": "cold"})).json()

        assert tick["archivals_started"]
        assert [r["key"] for r in query["rows"]] == list(range(12))
        assert query["partial"] is False
        assert cold["partitions"]

        partition_id = cold["partitions"][0]["id"]
        manifest = await client.get(f"/v1/partitions/{partition_id}/manifest")
        assert manifest.status == 200
        assert (await manifest.json())["format"] == "parquet"

    @pytest.mark.asyncio
    async def test_rollup_endpoint(self, client, engine):
        engine.register_rollup(RollupDefinition("rows", "count", dimension_field="region"))
        await self.submit(client, "b1", range(3))

        body = await (await client.get("/v1/rollups/rows/eu")).json()
        assert body["value"] == 3

        missing = await client.get("/v1/rollups/unknown/eu")
        assert missing.status == 404
        assert (await missing.json())["error_code"] == "UNKNOWN_ROLLUP"

    @pytest.mark.asyncio
    async def test_error_mapping(self, client):
        unknown = await client.post("/v1/partitions/missing.0/archive")
        assert unknown.status == 404
        assert (await unknown.json())["error_code"] == "PARTITION_NOT_FOUND"

        bad_state = await client.get("/v1/partitions", params={"state": "melted"})
        assert bad_state.status == 400

        bad_range = await client.post("/v1/query", json={"low": 10, "high": 5})
        assert bad_range.status == 400

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/v1/health")
        body = await response.json()

        assert response.status == 200
        assert body["healthy"] is True
        assert "registry" in body["stats"]
