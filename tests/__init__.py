"""
TierDB Test Suite.

This package contains:
- unit/: Unit tests (SQLite in a temp dir, in-memory cold storage)
- integration/: Engine-level and HTTP API tests over the same backends
"""
