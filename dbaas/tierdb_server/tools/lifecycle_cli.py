"""
Lifecycle CLI tool for TierDB.

This tool inspects and operates on partition lifecycle state:
- partitions: List partitions, optionally filtered by state or lineage
- manifest: Show a partition's archive manifest
- check: Verify registry invariants (disjoint, contiguous ranges)
- retrigger: Re-run archival of a partition whose verification failed
- tick: Run one lifecycle tick

Usage:
    tierdb-lifecycle partitions --state SEALED
    tierdb-lifecycle manifest default.0
    tierdb-lifecycle check
    tierdb-lifecycle retrigger default.0

Invariants:
    - Read-only commands open the registry only (no cold storage access)
    - Invariant violations and failed retriggers cause a non-zero exit code
    - Output is JSON (sorted keys) for CI parsing

How to change safely:
    - Add new commands, don't modify existing ones
    - Keep output format stable
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any

from ..config import ServerConfig
from ..engine import Engine
from ..errors import TierDbError
from ..registry import PartitionRegistry, PartitionState

logger = logging.getLogger(__name__)


class LifecycleCLI:
    """CLI operations over one engine configuration.

    Example:
        >>> cli = LifecycleCLI(ServerConfig.from_env())
        >>> cli.partitions(state="SEALED")
        >>> await cli.retrigger("default.0")
    """

    def __init__(self, config: ServerConfig) -> None:
        self.config = config
        self._registry: PartitionRegistry | None = None

    @property
    def registry(self) -> PartitionRegistry:
        if self._registry is None:
            storage = self.config.storage
            self._registry = PartitionRegistry(
                str(Path(storage.data_dir) / storage.registry_db_name),
                busy_timeout_ms=storage.busy_timeout_ms,
                wal_mode=storage.wal_mode,
            )
        return self._registry

    def partitions(self, state: str | None = None, lineage: str | None = None) -> list[dict[str, Any]]:
        parsed = PartitionState(state.upper()) if state else None
        return [p.to_dict() for p in self.registry.list_partitions(state=parsed, lineage=lineage)]

    def manifest(self, partition_id: str) -> dict[str, Any] | None:
        self.registry.get(partition_id)
        manifest = self.registry.get_manifest(partition_id)
        return manifest.to_dict() if manifest else None

    def check(self) -> list[str]:
        return self.registry.check_invariants()

    async def retrigger(self, partition_id: str) -> dict[str, Any]:
        """Clear a failed archival and run it again.

        Raises:
            ChecksumMismatchError: If verification fails again
            PartitionConflictError: If the partition is not archivable
        """
        engine = Engine(self.config)
        await engine.start()
        try:
            result = await engine.retrigger_archive(partition_id)
        finally:
            await engine.close()
        return {
            "partition_id": result.partition_id,
            "manifest": result.manifest.to_dict(),
            "already_archived": result.already_archived,
        }

    async def tick(self) -> dict[str, Any]:
        engine = Engine(self.config)
        await engine.start()
        try:
            result = await engine.tick()
            await engine.controller.wait_for_archivals()
        finally:
            await engine.close()
        return result.to_dict()


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


def main() -> None:
    """Main entry point for lifecycle CLI."""
    parser = argparse.ArgumentParser(description="TierDB partition lifecycle tools")
    parser.add_argument("--data-dir", help="Override TIERDB_DATA_DIR")
    subparsers = parser.add_subparsers(dest="command", required=True)

    partitions_parser = subparsers.add_parser("partitions", help="List partitions")
    partitions_parser.add_argument(
        "--state", choices=[s.value for s in PartitionState], type=str.upper
    )
    partitions_parser.add_argument("--lineage", help="Restrict to one lineage")

    manifest_parser = subparsers.add_parser("manifest", help="Show a partition's manifest")
    manifest_parser.add_argument("partition_id")

    subparsers.add_parser("check", help="Verify registry invariants")

    retrigger_parser = subparsers.add_parser("retrigger", help="Retrigger a failed archival")
    retrigger_parser.add_argument("partition_id")

    subparsers.add_parser("tick", help="Run one lifecycle tick")

    args = parser.parse_args()
    logging.basicConfig(level=logging.WARNING)

    try:
        config = ServerConfig.from_env()
    except (TierDbError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)
    if args.data_dir:
        config.storage = replace(config.storage, data_dir=args.data_dir)

    cli = LifecycleCLI(config)

    try:
        if args.command == "partitions":
            _print(cli.partitions(state=args.state, lineage=args.lineage))
        elif args.command == "manifest":
            manifest = cli.manifest(args.partition_id)
            if manifest is None:
                print(f"No manifest for {args.partition_id}", file=sys.stderr)
                sys.exit(1)
            _print(manifest)
        elif args.command == "check":
            violations = cli.check()
            if violations:
                print(f"Registry check failed with {len(violations)} violation(s):")
                for violation in violations:
                    print(f"  - {violation}")
                sys.exit(1)
            print("Registry is consistent")
        elif args.command == "retrigger":
            _print(asyncio.run(cli.retrigger(args.partition_id)))
        elif args.command == "tick":
            _print(asyncio.run(cli.tick()))
    except TierDbError as e:
        print(f"{e.code}: {e.message}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
