"""
Administrative CLI for Voxtier.

Runs hierarchy and membership maintenance as the system principal:
- ensure-admin: create the initial training director if missing
- assign-mentor / assign-director: set hierarchy pointers
- backfill: insert any missing conversation membership rows
- verify: compare materialized membership with the live hierarchy

Usage:
    voxtier-admin [--data-dir PATH] <command> [options]

Invariants:
    - Every command runs as SYSTEM_ACTOR through the data service
    - ensure-admin and backfill are idempotent
    - verify never modifies data

How to change safely:
    - Add commands as new subparsers; keep existing flags stable
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from ..config import ServerConfig, StorageConfig
from ..objects.object_store import InMemoryObjectStore
from ..store.acl import SYSTEM_ACTOR
from ..store.canonical_store import IntegrityViolationError, StoreUnavailableError
from ..store.service import DataService

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="voxtier-admin",
        description="Voxtier hierarchy and membership administration",
    )
    parser.add_argument("--data-dir", help="Directory holding the database (default: $DATA_DIR)")
    parser.add_argument("--db-filename", help="Database file name (default: $DB_FILENAME)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    sub = parser.add_subparsers(dest="command", required=True)

    ensure = sub.add_parser("ensure-admin", help="Create the initial training director")
    ensure.add_argument("--id", required=True, help="Identity provider user id")
    ensure.add_argument("--name", default="Training Director", help="Display name")

    mentor = sub.add_parser("assign-mentor", help="Assign a mentor to a client")
    mentor.add_argument("--client", required=True, help="Client profile id")
    mentor.add_argument("--mentor", help="Mentor profile id (omit to clear)")

    director = sub.add_parser("assign-director", help="Assign a training director to a mentor")
    director.add_argument("--mentor", required=True, help="Mentor profile id")
    director.add_argument("--director", help="Director profile id (omit to clear)")

    sub.add_parser("backfill", help="Insert missing conversation membership rows")

    verify = sub.add_parser("verify", help="Check membership against the hierarchy")
    verify.add_argument("--conversation", help="Only check this conversation")

    return parser


def _build_service(args: argparse.Namespace) -> DataService:
    config = ServerConfig.from_env()
    storage = config.storage
    if args.data_dir or args.db_filename:
        storage = StorageConfig(
            data_dir=args.data_dir or storage.data_dir,
            db_filename=args.db_filename or storage.db_filename,
            wal_mode=storage.wal_mode,
            busy_timeout_ms=storage.busy_timeout_ms,
            cache_size_pages=storage.cache_size_pages,
        )
    config.storage = storage
    return DataService.from_config(config, objects=InMemoryObjectStore())


async def run_command(args: argparse.Namespace, service: DataService) -> int:
    """Execute one parsed command. Returns the process exit code."""
    await service.store.initialize()

    if args.command == "ensure-admin":
        profile = await service.ensure_admin(SYSTEM_ACTOR, args.id, args.name)
        print(f"Training director present: {profile.id} ({profile.full_name})")
        return 0

    if args.command == "assign-mentor":
        profile = await service.assign_mentor(SYSTEM_ACTOR, args.client, args.mentor)
        print(f"Client {profile.id} mentor: {profile.mentor_id or 'none'}")
        return 0

    if args.command == "assign-director":
        profile = await service.assign_director(SYSTEM_ACTOR, args.mentor, args.director)
        print(f"Mentor {profile.id} director: {profile.director_id or 'none'}")
        return 0

    if args.command == "backfill":
        inserted = await service.backfill_membership(SYSTEM_ACTOR)
        print(f"Membership rows inserted: {inserted}")
        return 0

    if args.command == "verify":
        reports = await service.verify_membership(SYSTEM_ACTOR, args.conversation)
        drifted = [r for r in reports if not r.consistent]
        for report in drifted:
            missing = ", ".join(sorted(report.missing)) or "-"
            extra = ", ".join(sorted(report.extra)) or "-"
            print(f"DRIFT {report.conversation_id}: missing [{missing}] extra [{extra}]")
        print(f"Checked {len(reports)} conversations, {len(drifted)} inconsistent")
        return 1 if drifted else 0

    raise ValueError(f"Unknown command: {args.command}")


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the admin tool."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    try:
        service = _build_service(args)
        code = asyncio.run(run_command(args, service))
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)
    except IntegrityViolationError as e:
        print(f"Rejected: {e}", file=sys.stderr)
        sys.exit(1)
    except StoreUnavailableError as e:
        print(f"Store unavailable, retry later: {e}", file=sys.stderr)
        sys.exit(75)

    sys.exit(code)


if __name__ == "__main__":
    main()
