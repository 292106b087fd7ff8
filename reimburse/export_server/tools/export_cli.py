"""
Export CLI tool.

Exports reimbursement records from a local record store into a ZIP archive
in a folder, and marks the exported records as claimed once the archive
has been written.

Usage:
    reimburse-export --data-dir <path> --out-dir <path> [options]
    reimburse-export --data-dir <path> --out-dir <path> --record-id <id>
    reimburse-export --data-dir <path> --out-dir <path> --select <id> --select <id> [--claim]
    reimburse-export --data-dir <path> --out-dir <path> --all [--claim]
    reimburse-export --data-dir <path> --dry-run

Invariants:
    - Records are marked claimed only after the archive file exists
    - --select and --all leave record status alone unless --claim is given
    - --dry-run never writes anything
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from ..collect import FileCollector
from ..delivery import LocalShareChannel
from ..export import ExportCoordinator, ExportResult, JobState
from ..store import ClaimStatus, RecordStore, Reimbursement

logger = logging.getLogger(__name__)


async def select_records(store: RecordStore, args: argparse.Namespace) -> list[Reimbursement]:
    """Records named by --select or --all, unknown ids skipped."""
    if args.all:
        return await store.list_records()
    return await store.get_records(args.select)


async def dry_run(store: RecordStore, args: argparse.Namespace) -> int:
    """Print what an export would contain."""
    if args.record_id:
        record = await store.get_record(args.record_id)
        if record is None:
            print(f"Record not found: {args.record_id}", file=sys.stderr)
            return 1
        records = [record]
    elif args.select or args.all:
        records = await select_records(store, args)
    else:
        records = await store.list_records(status=ClaimStatus.UNCLAIMED)

    bundle = FileCollector().collect(records, single=bool(args.record_id))
    if bundle.is_empty:
        print("Nothing to export")
        return 0

    print(f"Archive: {bundle.archive_name}")
    for entry in bundle.entries:
        print(f"  {entry.name} ({entry.byte_length} bytes)")
    return 0


async def run_export(args: argparse.Namespace) -> int:
    """Run the export and return a process exit code."""
    store = RecordStore(args.data_dir, db_name=args.db_name, wal_mode=False)
    await store.initialize()

    if args.dry_run:
        return await dry_run(store, args)

    coordinator = ExportCoordinator(
        store=store,
        channel=LocalShareChannel(args.out_dir),
        legacy_zero_timestamps=args.legacy_zero_timestamps,
    )

    result: ExportResult | None
    if args.record_id:
        if await store.get_record(args.record_id) is None:
            print(f"Record not found: {args.record_id}", file=sys.stderr)
            return 1
        result = await coordinator.export_record(args.record_id)
    elif args.select or args.all:
        records = await select_records(store, args)
        result = await coordinator.export_selection(
            [r.record_id for r in records], claim=args.claim
        )
    else:
        result = await coordinator.export_claim()

    if result is None or result.state is JobState.IDLE:
        print("Nothing to export")
        return 0

    if result.state in (JobState.COMMITTED, JobState.DELIVERED):
        print("Export completed successfully")
        print(f"  Records: {len(result.record_ids)}")
        print(f"  Entries: {result.entry_count}")
        print(f"  Archive size: {result.archive_size} bytes")
        if result.commit:
            print(f"  Marked claimed: {result.commit.updated}")
        else:
            print("  Record status left unchanged")
        return 0

    if result.state is JobState.COMMIT_FAILED:
        error = result.commit.error if result.commit else "unknown error"
        print(f"Archive written but status update failed: {error}", file=sys.stderr)
        return 2

    print(f"Export failed: {result.error or result.state.value}", file=sys.stderr)
    return 1


def main() -> None:
    """CLI entry point for the export tool."""
    parser = argparse.ArgumentParser(
        description="Export reimbursement records to a ZIP archive and mark them claimed"
    )
    parser.add_argument("--data-dir", required=True, help="Directory holding the record store")
    parser.add_argument("--db-name", default="records.db", help="Record store file name")
    parser.add_argument("--out-dir", help="Directory to write the archive to")

    which = parser.add_mutually_exclusive_group()
    which.add_argument("--record-id", help="Export a single record instead of all unclaimed")
    which.add_argument(
        "--select",
        action="append",
        metavar="RECORD_ID",
        help="Export these records as one batch (repeatable)",
    )
    which.add_argument(
        "--all", action="store_true", help="Export every record regardless of status"
    )
    parser.add_argument(
        "--claim",
        action="store_true",
        help="With --select or --all, mark the exported records claimed",
    )

    parser.add_argument(
        "--legacy-zero-timestamps",
        action="store_true",
        help="Write zero ZIP date/time fields instead of 1980-01-01",
    )
    parser.add_argument("--dry-run", action="store_true", help="List entries without writing")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    args = parser.parse_args()
    if not args.dry_run and not args.out_dir:
        parser.error("--out-dir is required unless --dry-run is given")
    if args.claim and not (args.select or args.all):
        parser.error("--claim only applies to --select or --all")

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    sys.exit(asyncio.run(run_export(args)))


if __name__ == "__main__":
    main()
