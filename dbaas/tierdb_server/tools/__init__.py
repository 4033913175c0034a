"""
CLI tools for TierDB administration.

This module provides command-line tools for:
- lifecycle: Inspect partitions and manifests, check registry invariants,
  retrigger failed archivals, and run a lifecycle tick

Invariants:
    - Inspection commands work offline (no running server required)
    - Operations are idempotent where possible
"""

from .lifecycle_cli import LifecycleCLI

__all__ = ["LifecycleCLI"]
