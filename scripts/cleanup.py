#!/usr/bin/env python3
"""
Audit, plan and clean up the file store. Dry run unless --execute is given.
"""

import argparse
import asyncio
import sys
from pathlib import Path

import dotenv
dotenv.load_dotenv()

sys.path.insert(0, str(Path(__file__).parent.parent))

from pydantic import ValidationError

from recordvault.core.config import StorageConfig
from recordvault.core.errors import MigrationError, StoreError
from recordvault.service import StorageService
from recordvault.util.formatting import format_bytes


def print_progress(progress):
    if progress.current_file:
        print(f"  [{progress.phase}] {progress.processed_files}/{progress.total_files} {progress.current_file}")


async def run(args) -> int:
    config = StorageConfig.from_env()
    if args.storage:
        config.root = Path(args.storage)

    service = StorageService(config)
    options = service.default_cleanup_options(
        dry_run=not args.execute,
        create_backup=not args.no_backup,
        verify_before_delete=not args.no_verify,
        migrate_before_cleanup=not args.no_migrate,
        **({"batch_size": args.batch_size} if args.batch_size else {}),
        **({"backup_name": args.backup_name} if args.backup_name else {}),
    )

    results, _ = await service.audit_all()
    plan = service.create_cleanup_plan(results)

    validation = service.cleanup.validate_cleanup_plan(plan)
    for warning in validation.warnings:
        print(f"WARNING: {warning}")
    if not validation.valid:
        for issue in validation.issues:
            print(f"ERROR: {issue}")
        if options.dry_run is False:
            return 1

    estimate = service.cleanup.estimate_cleanup_time(plan)
    print(f"Plan: {len(plan.files_to_migrate)} to migrate, {len(plan.files_to_delete)} to remove, "
          f"{format_bytes(plan.estimated_space_freed)} to free (~{estimate['estimated_minutes']} min)")

    execution = await service.execute_cleanup_plan(plan, options, print_progress if args.verbose else None)
    report = service.cleanup.generate_cleanup_report(plan, execution)

    if args.output:
        Path(args.output).write_text(report, encoding="utf-8")
        print(f"Cleanup report written to {args.output}")
    else:
        print(report)

    if options.dry_run:
        print("DRY RUN - nothing was migrated, copied or deleted. Re-run with --execute to apply.")
    return 0 if execution.success else 1


def main():
    parser = argparse.ArgumentParser(
        description="Migrate, back up and remove disconnected documents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                          # Dry run: show what would happen
  %(prog)s --execute                # Migrate, back up, then delete
  %(prog)s --execute --no-migrate   # Skip migration into the system of record

Backups are written to <storage>/audit-backups/<name>/ with a manifest.json.
        """
    )
    parser.add_argument("--storage", help="Storage root (default: STORAGE_PATH)")
    parser.add_argument("--execute", action="store_true", help="Actually perform the cleanup")
    parser.add_argument("--no-backup", action="store_true", help="Do not back up files before deletion")
    parser.add_argument("--no-verify", action="store_true", help="Skip checksum verification before deletion")
    parser.add_argument("--no-migrate", action="store_true", help="Skip migration into the system of record")
    parser.add_argument("--batch-size", type=int, help="Files per batch (default: CLEANUP_BATCH_SIZE)")
    parser.add_argument("--backup-name", help="Backup directory name")
    parser.add_argument("--output", "-o", help="Write the cleanup report to a file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show per-file progress")
    args = parser.parse_args()

    try:
        return asyncio.run(run(args))
    except ValidationError as e:
        print(f"ERROR: Invalid cleanup options: {e}")
        return 1
    except (StoreError, MigrationError, ValueError) as e:
        print(f"ERROR: Cleanup failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
