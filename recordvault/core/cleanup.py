"""
Cleanup orchestration - turns audit results into a plan and executes it safely.

Execution runs in phases: planning, migration, backup, cleanup, verification and complete
(or failed). Deletion never starts before migration and backup have succeeded. Each file
is re-checksummed when it is backed up and again right before it is deleted; a file
modified after the audit is skipped and reported as an error while the rest of the run
carries on.
"""

import asyncio
import math
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import psutil

from .audit import AuditResult
from .backup import BackupResult, BackupWriter
from .classifiers import BACKUP_AND_REMOVE, KEEP, MIGRATE, REMOVE
from .db import SystemOfRecord
from .errors import ChecksumMismatch, MigrationError
from .migration import MigrationResult, RecordMigrator
from .store import RecordStore, _calculate_checksum, utc_now
from ..schemas import CleanupOptions
from ..util.formatting import format_bytes
from ..util.logging import StructuredLogger, audit_event, get_logger

PLANNING = "planning"
MIGRATION = "migration"
BACKUP = "backup"
CLEANUP = "cleanup"
VERIFICATION = "verification"
COMPLETE = "complete"
FAILED = "failed"

LARGE_BACKUP_BYTES = 1024 * 1024 * 1024


@dataclass
class CleanupPlan:
    """Disjoint partition of audit results by recommendation."""
    files_to_migrate: List[AuditResult] = field(default_factory=list)
    files_to_backup_and_remove: List[AuditResult] = field(default_factory=list)
    files_to_remove: List[AuditResult] = field(default_factory=list)
    files_to_keep: List[AuditResult] = field(default_factory=list)
    estimated_space_freed: int = 0
    migration_required: bool = False

    @property
    def files_to_delete(self) -> List[AuditResult]:
        return self.files_to_backup_and_remove + self.files_to_remove

    def to_dict(self) -> Dict[str, Any]:
        return {
            "files_to_migrate": [r.to_dict() for r in self.files_to_migrate],
            "files_to_backup_and_remove": [r.to_dict() for r in self.files_to_backup_and_remove],
            "files_to_remove": [r.to_dict() for r in self.files_to_remove],
            "files_to_keep": [r.to_dict() for r in self.files_to_keep],
            "estimated_space_freed": self.estimated_space_freed,
            "migration_required": self.migration_required,
        }


@dataclass
class CleanupResult:
    success: bool = False
    files_removed: List[str] = field(default_factory=list)
    files_backed_up: List[str] = field(default_factory=list)
    space_freed: int = 0
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "files_removed": self.files_removed,
            "files_backed_up": self.files_backed_up,
            "space_freed": self.space_freed,
            "errors": self.errors,
            "warnings": self.warnings,
        }


@dataclass
class VerificationResult:
    success: bool
    files_still_exist: List[str] = field(default_factory=list)
    backups_verified: List[str] = field(default_factory=list)
    backups_missing: List[str] = field(default_factory=list)
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "files_still_exist": self.files_still_exist,
            "backups_verified": self.backups_verified,
            "backups_missing": self.backups_missing,
            "message": self.message,
        }


@dataclass
class CleanupProgress:
    phase: str
    total_files: int
    processed_files: int = 0
    current_file: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase,
            "total_files": self.total_files,
            "processed_files": self.processed_files,
            "current_file": self.current_file,
            "errors": self.errors,
            "warnings": self.warnings,
        }


@dataclass
class CleanupExecution:
    success: bool
    phase: str
    progress: CleanupProgress
    cleanup_result: CleanupResult
    migration_result: Optional[MigrationResult] = None
    backup_result: Optional[BackupResult] = None
    verification_result: Optional[VerificationResult] = None
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "phase": self.phase,
            "dry_run": self.dry_run,
            "progress": self.progress.to_dict(),
            "cleanup_result": self.cleanup_result.to_dict(),
            "migration_result": self.migration_result.to_dict() if self.migration_result else None,
            "backup_result": self.backup_result.to_dict() if self.backup_result else None,
            "verification_result": self.verification_result.to_dict() if self.verification_result else None,
        }


@dataclass
class PlanValidation:
    valid: bool
    issues: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


ProgressCallback = Callable[[CleanupProgress], None]


class CleanupOrchestrator:
    """Plans and executes the retirement of audited files."""

    def __init__(self, store: RecordStore, backup_writer: BackupWriter = None,
                 migrator: RecordMigrator = None, system_of_record: SystemOfRecord = None,
                 clock: Callable[[], datetime] = utc_now, logger: StructuredLogger = None,
                 sleep: Callable[[float], Any] = asyncio.sleep):
        self.store = store
        self.backup_writer = backup_writer or BackupWriter(store.root, clock=clock)
        self.migrator = migrator
        self.system_of_record = system_of_record or (migrator.system_of_record if migrator else None)
        self.clock = clock
        self.logger = logger or get_logger("cleanup")
        self.sleep = sleep

    # Planning

    def create_cleanup_plan(self, results: List[AuditResult]) -> CleanupPlan:
        """Partition results by recommendation."""
        plan = CleanupPlan()

        for result in results:
            recommendation = result.migration_recommendation
            if recommendation == MIGRATE:
                plan.files_to_migrate.append(result)
            elif recommendation == BACKUP_AND_REMOVE:
                plan.files_to_backup_and_remove.append(result)
                plan.estimated_space_freed += result.size
            elif recommendation == REMOVE:
                plan.files_to_remove.append(result)
                plan.estimated_space_freed += result.size
            elif recommendation == KEEP:
                plan.files_to_keep.append(result)
            else:
                raise ValueError(f"Unknown migration recommendation: {recommendation}")

        plan.migration_required = bool(plan.files_to_migrate)

        self.logger.log_cleanup_phase(PLANNING, "success", {
            "migrate": len(plan.files_to_migrate),
            "backup_and_remove": len(plan.files_to_backup_and_remove),
            "remove": len(plan.files_to_remove),
            "keep": len(plan.files_to_keep),
        })
        return plan

    def validate_cleanup_plan(self, plan: CleanupPlan) -> PlanValidation:
        """Check preconditions. Issues make the plan invalid; warnings do not."""
        issues = []
        warnings = []

        if plan.migration_required:
            if self.system_of_record is None or not self.system_of_record.test_connection():
                issues.append("Database connection required for migration but not available")

        for result in plan.files_to_delete:
            if result.category == "config":
                warnings.append(f"Configuration file {result.file_name} will be removed - ensure the system can recreate it")
            if result.category == "users" and result.status == "connected":
                warnings.append(f"User file {result.file_name} marked for removal but appears to be active")

        backup_size = sum(r.size for r in plan.files_to_delete)
        if backup_size > 0:
            try:
                free = psutil.disk_usage(str(self.store.root)).free
            except OSError:
                warnings.append("Could not verify available disk space for backups")
            else:
                if backup_size > free:
                    warnings.append(
                        f"Backup needs {format_bytes(backup_size)} but only {format_bytes(free)} is free"
                    )
            if backup_size > LARGE_BACKUP_BYTES:
                warnings.append("Large backup size may require significant disk space")

        return PlanValidation(valid=not issues, issues=issues, warnings=warnings)

    def estimate_cleanup_time(self, plan: CleanupPlan) -> Dict[str, Any]:
        """Rough minutes per phase: 10 migrations, 20 backups, 50 deletions, 100 checks per minute."""
        breakdown = {MIGRATION: 0, BACKUP: 0, CLEANUP: 0, VERIFICATION: 0}
        to_delete = len(plan.files_to_delete)

        if plan.migration_required:
            breakdown[MIGRATION] = max(1, math.ceil(len(plan.files_to_migrate) / 10))
        if to_delete:
            breakdown[BACKUP] = max(1, math.ceil(to_delete / 20))
            breakdown[CLEANUP] = max(1, math.ceil(to_delete / 50))
            breakdown[VERIFICATION] = max(1, math.ceil(to_delete / 100))

        return {"estimated_minutes": sum(breakdown.values()), "breakdown": breakdown}

    # Execution

    def _report(self, progress: CleanupProgress, callback: Optional[ProgressCallback]):
        if callback is not None:
            callback(progress)

    def _verify_file_sync(self, result: AuditResult):
        """Raise FileNotFoundError if gone, ChecksumMismatch if changed since the audit."""
        data = Path(result.file_path).read_bytes()
        checksum = _calculate_checksum(data)
        if checksum != result.checksum:
            raise ChecksumMismatch(result.file_path, result.checksum, checksum)

    def _skip_changed(self, cleanup_result: CleanupResult, file_path: str):
        cleanup_result.errors.append(f"File {file_path} has changed since audit, skipping deletion")

    async def _delete_file(self, result: AuditResult, planned: Set[Path]):
        await asyncio.to_thread(Path(result.file_path).unlink)
        # A metadata index that is itself slated for deletion keeps its audited bytes
        update_metadata = self.store.metadata_index_file(result.category) not in planned
        await self.store.forget(result.category, result.file_id, update_metadata=update_metadata)
        audit_event("cleanup.delete", {"category": result.category, "file_name": result.file_name},
                    {"status": result.status, "reason": result.reason, "size": result.size},
                    event_logger=self.logger)

    async def _process_files(self, files: List[AuditResult], options: CleanupOptions,
                             cleanup_result: CleanupResult, progress: CleanupProgress,
                             callback: Optional[ProgressCallback]):
        planned = {Path(r.file_path) for r in files}

        for start in range(0, len(files), options.batch_size):
            batch = files[start:start + options.batch_size]

            for result in batch:
                progress.current_file = result.file_name
                try:
                    if options.verify_before_delete:
                        await asyncio.to_thread(self._verify_file_sync, result)
                    if not options.dry_run:
                        await self._delete_file(result, planned)
                    cleanup_result.files_removed.append(result.file_path)
                    cleanup_result.space_freed += result.size
                except FileNotFoundError:
                    message = f"File {result.file_path} no longer exists, skipping"
                    cleanup_result.warnings.append(message)
                    self.logger.warning(message)
                except ChecksumMismatch:
                    self._skip_changed(cleanup_result, result.file_path)
                except OSError as e:
                    cleanup_result.errors.append(f"Failed to remove {result.file_path}: {e}")

                progress.processed_files += 1
                self._report(progress, callback)

            if start + options.batch_size < len(files):
                await self.sleep(options.batch_pause)

    def _verify_cleanup_sync(self, cleanup_result: CleanupResult) -> VerificationResult:
        verification = VerificationResult(success=False)

        for path in cleanup_result.files_removed:
            if Path(path).exists():
                verification.files_still_exist.append(path)

        for path in cleanup_result.files_backed_up:
            try:
                Path(path).read_bytes()
            except OSError:
                verification.backups_missing.append(path)
            else:
                verification.backups_verified.append(path)

        verification.success = not verification.files_still_exist and not verification.backups_missing
        if verification.success:
            verification.message = (
                f"Cleanup verification successful: {len(cleanup_result.files_removed)} files removed, "
                f"{len(verification.backups_verified)} backups verified"
            )
        else:
            verification.message = (
                f"Cleanup verification failed: {len(verification.files_still_exist)} files still exist, "
                f"{len(verification.backups_missing)} backups missing"
            )
        return verification

    def _finish(self, phase: str, progress: CleanupProgress, cleanup_result: CleanupResult,
                callback: Optional[ProgressCallback], dry_run: bool, **results) -> CleanupExecution:
        progress.phase = phase
        self._report(progress, callback)

        success = phase == COMPLETE and not progress.errors and not cleanup_result.errors
        if phase == COMPLETE:
            cleanup_result.success = not cleanup_result.errors

        self.logger.log_cleanup_phase(phase, "success" if success else "failed", {
            "files_removed": len(cleanup_result.files_removed),
            "space_freed": cleanup_result.space_freed,
            "errors": len(progress.errors) + len(cleanup_result.errors),
            "dry_run": dry_run,
        })
        return CleanupExecution(
            success=success,
            phase=phase,
            progress=progress,
            cleanup_result=cleanup_result,
            dry_run=dry_run,
            **results,
        )

    async def execute_cleanup_plan(self, plan: CleanupPlan, options: CleanupOptions = None,
                                   progress_callback: ProgressCallback = None) -> CleanupExecution:
        """
        Execute a cleanup plan.

        In dry-run mode nothing is migrated, copied or deleted, but the returned counts and
        space freed are what a real run over the same unchanged files would report.
        """
        if options is None:
            options = CleanupOptions()
        elif isinstance(options, dict):
            options = CleanupOptions.model_validate(options)

        files_to_delete = plan.files_to_delete
        progress = CleanupProgress(
            phase=PLANNING,
            total_files=len(plan.files_to_migrate) + len(files_to_delete),
        )
        cleanup_result = CleanupResult()
        results: Dict[str, Any] = {}
        self._report(progress, progress_callback)

        # Migration
        if plan.migration_required and options.migrate_before_cleanup and not options.dry_run:
            progress.phase = MIGRATION
            self._report(progress, progress_callback)
            self.logger.log_cleanup_phase(MIGRATION)
            try:
                if self.migrator is None:
                    raise MigrationError("No migrator configured")
                results["migration_result"] = await self.migrator.migrate_files(plan.files_to_migrate)
            except MigrationError as e:
                progress.errors.append(f"Migration failed: {e}")
                return self._finish(FAILED, progress, cleanup_result, progress_callback, options.dry_run, **results)

            if not results["migration_result"].success:
                progress.errors.extend(results["migration_result"].errors)
                return self._finish(FAILED, progress, cleanup_result, progress_callback, options.dry_run, **results)
        progress.processed_files += len(plan.files_to_migrate)

        # Backup
        if options.create_backup and files_to_delete:
            progress.phase = BACKUP
            self._report(progress, progress_callback)
            self.logger.log_cleanup_phase(BACKUP)

            if options.dry_run:
                cleanup_result.files_backed_up = [r.file_path for r in files_to_delete]
            else:
                name = options.backup_name or f"cleanup-{self.clock().strftime('%Y-%m-%dT%H-%M-%S')}"
                backup_result = await self.backup_writer.create_backup(files_to_delete, name)
                results["backup_result"] = backup_result
                cleanup_result.files_backed_up = list(backup_result.files_backed_up)
                if not backup_result.success:
                    progress.errors.extend(backup_result.errors)
                    return self._finish(FAILED, progress, cleanup_result, progress_callback, options.dry_run, **results)

                check = await self.backup_writer.verify_backup(backup_result.backup_path)
                unreadable = check["missing"] + check["mismatched"]
                if unreadable:
                    progress.errors.extend(f"Backup copy unreadable or changed: {path}" for path in unreadable)
                    return self._finish(FAILED, progress, cleanup_result, progress_callback, options.dry_run, **results)

                # Files edited since the audit were not backed up and are never deleted
                if backup_result.files_changed:
                    changed = set(backup_result.files_changed)
                    for path in backup_result.files_changed:
                        self._skip_changed(cleanup_result, path)
                    files_to_delete = [r for r in files_to_delete if r.file_path not in changed]
                    progress.processed_files += len(changed)

        # Cleanup
        progress.phase = CLEANUP
        self._report(progress, progress_callback)
        self.logger.log_cleanup_phase(CLEANUP, "started", {"files": len(files_to_delete), "dry_run": options.dry_run})
        await self._process_files(files_to_delete, options, cleanup_result, progress, progress_callback)
        progress.current_file = None

        # Verification
        if not options.dry_run:
            progress.phase = VERIFICATION
            self._report(progress, progress_callback)
            verification = await asyncio.to_thread(self._verify_cleanup_sync, cleanup_result)
            results["verification_result"] = verification
            # An unreadable backup copy fails the run even though deletions went through
            if verification.backups_missing:
                progress.errors.append(verification.message)
            elif not verification.success:
                progress.warnings.append(verification.message)

        progress.warnings.extend(cleanup_result.warnings)
        return self._finish(COMPLETE, progress, cleanup_result, progress_callback, options.dry_run, **results)

    async def perform_safe_cleanup(self, results: List[AuditResult],
                                   options: CleanupOptions = None) -> Tuple[CleanupExecution, str]:
        """Plan, validate, execute and report in one call."""
        plan = self.create_cleanup_plan(results)
        validation = self.validate_cleanup_plan(plan)
        options = options if options is not None else CleanupOptions()
        if isinstance(options, dict):
            options = CleanupOptions.model_validate(options)

        if not validation.valid and not options.dry_run:
            progress = CleanupProgress(phase=PLANNING, total_files=0, errors=list(validation.issues),
                                       warnings=list(validation.warnings))
            execution = self._finish(FAILED, progress, CleanupResult(), None, options.dry_run)
        else:
            execution = await self.execute_cleanup_plan(plan, options)
            execution.progress.warnings.extend(validation.warnings)

        return execution, self.generate_cleanup_report(plan, execution)

    def generate_cleanup_report(self, plan: CleanupPlan, execution: CleanupExecution) -> str:
        """Render a plan and its execution as a markdown report."""
        lines = [
            "# File System Cleanup Report",
            "",
            f"**Generated:** {self.clock().isoformat()}",
            f"**Status:** {'SUCCESS' if execution.success else 'FAILED'}",
            f"**Mode:** {'DRY RUN' if execution.dry_run else 'LIVE'}",
            "",
            "## Cleanup Plan",
            "",
            f"- **Files to Migrate:** {len(plan.files_to_migrate)}",
            f"- **Files to Backup and Remove:** {len(plan.files_to_backup_and_remove)}",
            f"- **Files to Remove:** {len(plan.files_to_remove)}",
            f"- **Files to Keep:** {len(plan.files_to_keep)}",
            f"- **Estimated Space to Free:** {format_bytes(plan.estimated_space_freed)}",
            "",
            "## Execution Results",
            "",
        ]

        migration = execution.migration_result
        if migration is not None:
            lines.extend([
                "### Migration",
                f"- **Clients Migrated:** {migration.clients_migrated}",
                f"- **Calculations Migrated:** {migration.calculations_migrated}",
                f"- **Files Processed:** {migration.files_processed}",
                f"- **Files Skipped:** {migration.files_skipped}",
            ])
            if migration.errors:
                lines.append(f"- **Errors:** {len(migration.errors)}")
            lines.append("")

        cleanup = execution.cleanup_result
        lines.extend([
            "### Cleanup",
            f"- **Files Removed:** {len(cleanup.files_removed)}",
            f"- **Files Backed Up:** {len(cleanup.files_backed_up)}",
            f"- **Space Freed:** {format_bytes(cleanup.space_freed)}",
        ])
        if cleanup.errors:
            lines.append(f"- **Errors:** {len(cleanup.errors)}")
        lines.append("")

        verification = execution.verification_result
        if verification is not None:
            lines.extend([
                "### Verification",
                f"- **Result:** {verification.message}",
                "",
            ])

        errors = execution.progress.errors + cleanup.errors
        if errors:
            lines.extend(["## Errors", ""])
            lines.extend(f"- {error}" for error in errors)
            lines.append("")

        if execution.progress.warnings:
            lines.extend(["## Warnings", ""])
            lines.extend(f"- {warning}" for warning in execution.progress.warnings)
            lines.append("")

        return "\n".join(lines)
