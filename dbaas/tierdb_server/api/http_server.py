"""
HTTP server for TierDB.

This module exposes the engine's ingestion, query, and lifecycle
boundaries as a JSON REST API. It's useful for:
- Manual testing and debugging
- Pushing batches and events from non-Python producers
- Driving tick() from an external scheduler (cron, k8s CronJob)

Invariants:
    - JSON request/response format
    - TierDbError subclasses map to a stable (status, error_code) pair
    - Unexpected errors return 500 with error_code INTERNAL

How to change safely:
    - Add new error classes to STATUS_BY_ERROR before the base classes
    - Version the API if breaking changes are needed
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

from aiohttp import web

from ..config import HttpConfig
from ..errors import (
    BackpressureExceeded,
    ColdObjectNotFoundError,
    IngestionValidationError,
    PartitionConflictError,
    PartitionNotFoundError,
    TierDbError,
    TransientStorageError,
)
from ..registry import PartitionState

logger = logging.getLogger(__name__)

STATUS_BY_ERROR: tuple[tuple[type[TierDbError], int], ...] = (
    (IngestionValidationError, 400),
    (PartitionNotFoundError, 404),
    (ColdObjectNotFoundError, 404),
    (PartitionConflictError, 409),
    (BackpressureExceeded, 429),
    (TransientStorageError, 503),
)

STATUS_BY_CODE = {"UNKNOWN_ROLLUP": 404}


def error_status(error: TierDbError) -> int:
    """HTTP status for a TierDB error."""
    for error_type, status in STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status
    return STATUS_BY_CODE.get(error.code, 500)


def create_http_app(engine: Any, config: HttpConfig | None = None) -> web.Application:
    """Create an HTTP application for TierDB.

    Args:
        engine: Started Engine instance
        config: HTTP server configuration

    Returns:
        aiohttp Application instance
    """
    config = config or HttpConfig()
    app = web.Application()

    app.router.add_post("/v1/batches", lambda r: handle_submit_batch(r, engine))
    app.router.add_post("/v1/events", lambda r: handle_push_event(r, engine))
    app.router.add_post("/v1/query", lambda r: handle_query(r, engine))
    app.router.add_get("/v1/rollups/{metric}/{dimension_key}", lambda r: handle_rollup(r, engine))
    app.router.add_post("/v1/tick", lambda r: handle_tick(r, engine))
    app.router.add_get("/v1/partitions", lambda r: handle_list_partitions(r, engine))
    app.router.add_get(
        "/v1/partitions/{partition_id}/manifest", lambda r: handle_manifest(r, engine)
    )
    app.router.add_post(
        "/v1/partitions/{partition_id}/archive", lambda r: handle_retrigger(r, engine)
    )
    app.router.add_get("/v1/health", lambda r: handle_health(r, engine))

    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except TierDbError as e:
            status = error_status(e)
            if status >= 500:
                logger.warning(f"HTTP handler storage error: {e}", extra={"path": request.path})
            return web.json_response(
                {"error": e.message, "error_code": e.code, "details": e.details},
                status=status,
            )
        except ValueError as e:
            return web.json_response({"error": str(e), "error_code": "INVALID_ARGUMENT"}, status=400)
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            return web.json_response(
                {"error": str(e), "error_code": "INTERNAL"},
                status=500,
            )

    app.middlewares.append(error_middleware)
    return app


async def read_json(request: web.Request) -> dict[str, Any]:
    """Parse a JSON object body.

    Raises:
        web.HTTPBadRequest: If the body is not a JSON object
    """
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "Invalid JSON body"}),
            content_type="application/json",
        )
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "JSON body must be an object"}),
            content_type="application/json",
        )
    return body


def require(body: dict[str, Any], name: str) -> Any:
    if name not in body:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": f"{name} is required"}),
            content_type="application/json",
        )
    return body[name]


async def handle_submit_batch(request: web.Request, engine: Any) -> web.Response:
    """Handle POST /v1/batches - Submit a bulk batch."""
    body = await read_json(request)
    records = require(body, "records")
    if not isinstance(records, list):
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "records must be a list"}),
            content_type="application/json",
        )

    result = await engine.submit_batch(
        batch_id=str(require(body, "batch_id")),
        source=str(body.get("source", "http")),
        records=records,
        lineage=body.get("lineage", "default"),
    )
    return web.json_response(result.to_dict(), status=200 if result.accepted else 400)


async def handle_push_event(request: web.Request, engine: Any) -> web.Response:
    """Handle POST /v1/events - Push one streaming event."""
    body = await read_json(request)
    result = await engine.push_event(
        key=require(body, "key"),
        payload=require(body, "payload"),
        sequence_no=int(body.get("sequence_no", 0)),
        event_id=body.get("event_id"),
        lineage=body.get("lineage", "default"),
    )
    if result.accepted:
        status = 202
    elif (result.reason or "").startswith(BackpressureExceeded.__name__):
        status = 429
    else:
        status = 400
    return web.json_response(result.to_dict(), status=status)


async def handle_query(request: web.Request, engine: Any) -> web.Response:
    """Handle POST /v1/query - Federated range query."""
    body = await read_json(request)
    limit = body.get("limit")
    deadline = body.get("deadline")
    result = await engine.query(
        low=int(require(body, "low")),
        high=int(require(body, "high")),
        predicate=body.get("predicate"),
        deadline=float(deadline) if deadline is not None else None,
        order_by=body.get("order_by"),
        descending=bool(body.get("descending", False)),
        limit=int(limit) if limit is not None else None,
        lineage=body.get("lineage"),
    )
    return web.json_response(result.to_dict())


async def handle_rollup(request: web.Request, engine: Any) -> web.Response:
    """Handle GET /v1/rollups/{metric}/{dimension_key} - Read a cached metric.

    Dimension keys arrive as path strings; integer-looking keys are
    matched as integers.
    """
    raw = request.match_info["dimension_key"]
    dimension_key: Any = int(raw) if raw.lstrip("-").isdigit() else raw
    rollup = await engine.get_rollup(dimension_key, request.match_info["metric"])
    return web.json_response(rollup.to_dict())


async def handle_tick(request: web.Request, engine: Any) -> web.Response:
    """Handle POST /v1/tick - Run one lifecycle tick."""
    result = await engine.tick()
    return web.json_response(result.to_dict())


async def handle_list_partitions(request: web.Request, engine: Any) -> web.Response:
    """Handle GET /v1/partitions - List partitions, optionally by state/lineage."""
    state = request.query.get("state")
    partitions = engine.list_partitions(
        state=PartitionState(state.upper()) if state else None,
        lineage=request.query.get("lineage"),
    )
    return web.json_response({"partitions": [p.to_dict() for p in partitions]})


async def handle_manifest(request: web.Request, engine: Any) -> web.Response:
    """Handle GET /v1/partitions/{partition_id}/manifest."""
    partition_id = request.match_info["partition_id"]
    manifest = engine.get_manifest(partition_id)
    if manifest is None:
        return web.json_response(
            {"error": f"No manifest for {partition_id}", "error_code": "NOT_FOUND"},
            status=404,
        )
    return web.json_response(manifest.to_dict())


async def handle_retrigger(request: web.Request, engine: Any) -> web.Response:
    """Handle POST /v1/partitions/{partition_id}/archive - Retrigger archival."""
    result = await engine.retrigger_archive(request.match_info["partition_id"])
    return web.json_response(
        {
            "partition_id": result.partition_id,
            "manifest": result.manifest.to_dict(),
            "already_archived": result.already_archived,
        }
    )


async def handle_health(request: web.Request, engine: Any) -> web.Response:
    """Handle GET /v1/health - Health check with component stats."""
    return web.json_response({"healthy": True, "stats": engine.stats})


async def run_http_server(engine: Any, config: HttpConfig | None = None) -> None:
    """Run the HTTP server until cancelled.

    Args:
        engine: Started Engine instance
        config: HTTP server configuration
    """
    config = config or HttpConfig()
    app = create_http_app(engine, config)

    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, config.host, config.port)
    await site.start()

    logger.info(f"HTTP server running on http://{config.host}:{config.port}")

    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await runner.cleanup()
