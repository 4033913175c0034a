"""
Unit tests for the server orchestrator and logging setup.
"""

import asyncio
import logging

import json_log_formatter
import pytest

from dbaas.tierdb_server.config import (
    ColdBackend,
    HttpConfig,
    ObservabilityConfig,
    ServerConfig,
    StorageConfig,
)
from dbaas.tierdb_server.ingest import Record
from dbaas.tierdb_server.main import Server, setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


class TestSetupLogging:
    def test_json_format(self, restore_root_logger):
        setup_logging(ServerConfig(observability=ObservabilityConfig(log_level="debug")))

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, json_log_formatter.VerboseJSONFormatter)
        assert logging.getLogger("botocore").level == logging.WARNING

    def test_text_format(self, restore_root_logger):
        setup_logging(ServerConfig(observability=ObservabilityConfig(log_format="text")))

        formatter = logging.getLogger().handlers[0].formatter
        assert not isinstance(formatter, json_log_formatter.JSONFormatter)


class TestServer:
    @pytest.fixture
    def config(self, data_dir):
        return ServerConfig(
            cold_backend=ColdBackend.MEMORY,
            storage=StorageConfig(data_dir=data_dir, wal_mode=False),
            http=HttpConfig(enabled=False),
            observability=ObservabilityConfig(tick_interval_seconds=0.01),
        )

    @pytest.mark.asyncio
    async def test_start_and_shutdown(self, config):
        server = Server(config)
        running = asyncio.create_task(server.start())
        while not server._running and not running.done():
            await asyncio.sleep(0.01)

        assert len(server._tasks) == 2
        server.request_shutdown()
        await running
        await server.stop()

        assert server._tasks == []

    @pytest.mark.asyncio
    async def test_shutdown_drains_stream(self, config):
        server = Server(config)
        running = asyncio.create_task(server.start())
        while not server._running and not running.done():
            await asyncio.sleep(0.01)
        await server.engine.submit_batch("b1", "f.csv", [Record(1, {"v": 1})])
        await server.engine.push_event(2, {"v": 2}, sequence_no=1)

        server.request_shutdown()
        await running
        engine = server.engine
        await server.stop()

        assert engine.stream_buffer.stats["queued"] == 0
        assert engine.stream_buffer.stats["applied"] == 1
