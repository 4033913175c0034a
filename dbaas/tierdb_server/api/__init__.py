"""
API module for TierDB server.

This module provides the external interface: a JSON REST API over the
engine's ingestion, query, and lifecycle boundaries.

Invariants:
    - Handlers hold no state; everything goes through the Engine

How to change safely:
    - Add new routes, don't change the payload shape of existing ones
"""

from .http_server import create_http_app, run_http_server

__all__ = [
    "create_http_app",
    "run_http_server",
]
