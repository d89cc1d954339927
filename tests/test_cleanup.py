"""
Tests for cleanup planning and phased execution.
"""

import asyncio
import json
from datetime import timedelta
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from recordvault.core.audit import AuditEngine
from recordvault.core.backup import BackupResult, BackupWriter
from recordvault.core.cleanup import (
    BACKUP, CLEANUP, COMPLETE, FAILED, MIGRATION, PLANNING, VERIFICATION,
    CleanupOrchestrator,
)
from recordvault.core.errors import MigrationError
from recordvault.core.migration import MigrationResult, RecordMigrator
from recordvault.schemas import CleanupOptions
from recordvault.search.index import SearchIndex

from conftest import FIXED_NOW, write_json

LIVE = {"dryRun": False, "backupName": "b1", "batchPause": 0}


def snapshot(root):
    return {str(p.relative_to(root)): p.read_bytes() for p in sorted(root.rglob("*")) if p.is_file()}


class FakeSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture
def populated(storage_root):
    old = (FIXED_NOW - timedelta(days=400)).isoformat()
    write_json(storage_root, "clients", "111", {"companyNumber": "111", "companyName": "Acme"})
    write_json(storage_root, "config", "settings", {"theme": "dark"})
    write_json(storage_root, "config", "empty", {})
    write_json(storage_root, "users", "ghost", {"nickname": "x"})
    write_json(storage_root, "events", "old", [{"date": old}])
    return storage_root


@pytest.fixture
def results(store, system_of_record, populated):
    engine = AuditEngine(store, system_of_record, clock=lambda: FIXED_NOW)
    audited, _ = asyncio.run(engine.audit_all())
    return audited


@pytest.fixture
def sleeper():
    return FakeSleep()


@pytest.fixture
def orchestrator(store, system_of_record, storage_root, sleeper):
    return CleanupOrchestrator(
        store,
        backup_writer=BackupWriter(storage_root, clock=lambda: FIXED_NOW),
        migrator=RecordMigrator(store, system_of_record),
        clock=lambda: FIXED_NOW,
        sleep=sleeper,
    )


class TestPlanning:
    """Test plan creation, validation and estimates."""

    def test_plan_partitions_results(self, orchestrator, results):
        plan = orchestrator.create_cleanup_plan(results)

        assert [r.file_id for r in plan.files_to_migrate] == ["111"]
        assert sorted(r.file_id for r in plan.files_to_backup_and_remove) == ["ghost", "old"]
        assert [r.file_id for r in plan.files_to_remove] == ["empty"]
        assert [r.file_id for r in plan.files_to_keep] == ["settings"]
        assert plan.migration_required is True
        assert plan.estimated_space_freed == sum(r.size for r in plan.files_to_delete)

    def test_unknown_recommendation(self, orchestrator, results):
        results[0].migration_recommendation = "shred"
        with pytest.raises(ValueError, match="shred"):
            orchestrator.create_cleanup_plan(results)

    def test_validate_warns_about_config_and_space(self, orchestrator, results):
        plan = orchestrator.create_cleanup_plan(results)

        with patch("recordvault.core.cleanup.psutil.disk_usage", return_value=MagicMock(free=1)):
            validation = orchestrator.validate_cleanup_plan(plan)

        assert validation.valid is True
        assert any("Configuration file empty.json" in w for w in validation.warnings)
        assert any(w.endswith("but only 1 Bytes is free") for w in validation.warnings)

    def test_validate_disk_usage_error_is_warning(self, orchestrator, results):
        plan = orchestrator.create_cleanup_plan(results)

        with patch("recordvault.core.cleanup.psutil.disk_usage", side_effect=OSError("no fs")):
            validation = orchestrator.validate_cleanup_plan(plan)

        assert validation.valid is True
        assert "Could not verify available disk space for backups" in validation.warnings

    def test_validate_requires_system_of_record_for_migration(self, store, results):
        plan = CleanupOrchestrator(store).create_cleanup_plan(results)
        validation = CleanupOrchestrator(store).validate_cleanup_plan(plan)

        assert validation.valid is False
        assert validation.issues == ["Database connection required for migration but not available"]

    def test_estimate(self, orchestrator, results):
        estimate = orchestrator.estimate_cleanup_time(orchestrator.create_cleanup_plan(results))

        assert estimate["breakdown"] == {MIGRATION: 1, BACKUP: 1, CLEANUP: 1, VERIFICATION: 1}
        assert estimate["estimated_minutes"] == 4

    def test_estimate_empty_plan(self, orchestrator):
        assert orchestrator.estimate_cleanup_time(orchestrator.create_cleanup_plan([]))["estimated_minutes"] == 0


class TestDryRun:
    """A dry run reports what a live run would do without touching anything."""

    def test_no_mutation(self, orchestrator, results, populated, system_of_record):
        before = snapshot(populated)
        plan = orchestrator.create_cleanup_plan(results)

        execution = asyncio.run(orchestrator.execute_cleanup_plan(plan))

        assert snapshot(populated) == before
        assert system_of_record.count_clients() == 0
        assert execution.success is True
        assert execution.dry_run is True
        assert execution.verification_result is None

    def test_counts_match_live_run(self, store, system_of_record, populated, sleeper):
        engine = AuditEngine(store, system_of_record, clock=lambda: FIXED_NOW)
        audited, _ = asyncio.run(engine.audit_all())

        def run(options):
            orchestrator = CleanupOrchestrator(
                store, migrator=RecordMigrator(store, system_of_record), clock=lambda: FIXED_NOW, sleep=sleeper,
            )
            plan = orchestrator.create_cleanup_plan(audited)
            return asyncio.run(orchestrator.execute_cleanup_plan(plan, options)).cleanup_result

        dry = run({"dryRun": True})
        live = run(LIVE)

        assert sorted(dry.files_removed) == sorted(live.files_removed)
        assert dry.space_freed == live.space_freed
        assert len(dry.files_backed_up) == len(live.files_backed_up) == 3


class TestLiveRun:
    """Test a full migrate, backup, delete and verify run."""

    def test_full_run(self, orchestrator, results, populated, system_of_record):
        plan = orchestrator.create_cleanup_plan(results)

        execution = asyncio.run(orchestrator.execute_cleanup_plan(plan, LIVE))

        assert execution.success is True
        assert execution.phase == COMPLETE
        assert execution.migration_result.clients_migrated == 1
        assert system_of_record.get_client_by_number("111")["name"] == "Acme"
        assert not (populated / "config" / "empty.json").exists()
        assert not (populated / "users" / "ghost.json").exists()
        assert not (populated / "events" / "old.json").exists()
        assert (populated / "clients" / "111.json").exists()
        assert (populated / "config" / "settings.json").exists()
        assert (populated / "audit-backups" / "b1" / "users" / "ghost.json").exists()
        assert execution.verification_result.success is True
        assert execution.cleanup_result.space_freed == plan.estimated_space_freed

    def test_progress_phases_in_order(self, orchestrator, results):
        phases = []
        plan = orchestrator.create_cleanup_plan(results)

        asyncio.run(orchestrator.execute_cleanup_plan(plan, LIVE, lambda p: phases.append(p.phase)))

        ordered = list(dict.fromkeys(phases))
        assert ordered == [PLANNING, MIGRATION, BACKUP, CLEANUP, VERIFICATION, COMPLETE]

    def test_changed_file_is_skipped_and_the_rest_deleted(self, orchestrator, results, populated):
        ghost = populated / "users" / "ghost.json"
        ghost.write_text('{"nickname": "changed"}')
        plan = orchestrator.create_cleanup_plan(results)

        execution = asyncio.run(orchestrator.execute_cleanup_plan(plan, LIVE))

        assert execution.phase == COMPLETE
        assert execution.success is False
        assert ghost.exists()
        assert not (populated / "events" / "old.json").exists()
        assert not (populated / "config" / "empty.json").exists()
        assert execution.cleanup_result.errors == [f"File {ghost} has changed since audit, skipping deletion"]
        assert execution.backup_result.files_changed == [str(ghost)]
        assert not (populated / "audit-backups" / "b1" / "users" / "ghost.json").exists()
        assert execution.verification_result.success is True
        assert execution.progress.processed_files == execution.progress.total_files

    def test_changed_file_is_not_deleted_without_backup(self, orchestrator, results, populated):
        (populated / "users" / "ghost.json").write_text('{"nickname": "changed"}')
        plan = orchestrator.create_cleanup_plan(results)

        execution = asyncio.run(orchestrator.execute_cleanup_plan(plan, {**LIVE, "createBackup": False}))

        assert execution.success is False
        assert (populated / "users" / "ghost.json").exists()
        assert not (populated / "config" / "empty.json").exists()
        assert any("has changed since audit" in e for e in execution.cleanup_result.errors)

    def test_metadata_index_removed_with_its_records(self, store, system_of_record, orchestrator, storage_root):
        asyncio.run(store.write("users", "ghost", {"nickname": "x"}))
        audited, _ = asyncio.run(AuditEngine(store, system_of_record, clock=lambda: FIXED_NOW).audit_all())
        plan = orchestrator.create_cleanup_plan(audited)
        assert {Path(r.file_path) for r in plan.files_to_delete} == {
            storage_root / "users" / "ghost.json",
            storage_root / "indexes" / "users.json",
        }

        execution = asyncio.run(orchestrator.execute_cleanup_plan(plan, LIVE))

        assert execution.success is True
        assert execution.cleanup_result.errors == []
        assert not (storage_root / "indexes" / "users.json").exists()
        assert not (storage_root / "users" / "ghost.json").exists()

    def test_same_named_index_files_are_backed_up_separately(self, store, system_of_record, orchestrator,
                                                             storage_root):
        asyncio.run(store.write("clients", "c1", {"name": "Acme"}))
        asyncio.run(SearchIndex(store).rebuild("clients"))
        audited, _ = asyncio.run(AuditEngine(store, system_of_record, clock=lambda: FIXED_NOW).audit_all())
        plan = orchestrator.create_cleanup_plan(audited)

        execution = asyncio.run(orchestrator.execute_cleanup_plan(plan, LIVE))

        assert execution.success is True
        backup_dir = storage_root / "audit-backups" / "b1"
        manifest = json.loads((backup_dir / "manifest.json").read_text())
        assert sorted(f["fileName"] for f in manifest["files"] if f["category"] == "indexes") == [
            "clients.json", "search/clients.json",
        ]
        assert (backup_dir / "indexes" / "clients.json").exists()
        assert (backup_dir / "indexes" / "search" / "clients.json").exists()
        assert not (storage_root / "indexes" / "search" / "clients.json").exists()

    def test_missing_file_is_a_warning(self, orchestrator, results, populated):
        (populated / "config" / "empty.json").unlink()
        plan = orchestrator.create_cleanup_plan(results)

        execution = asyncio.run(orchestrator.execute_cleanup_plan(plan, {**LIVE, "createBackup": False}))

        assert execution.success is True
        assert any("no longer exists" in w for w in execution.cleanup_result.warnings)
        assert len(execution.cleanup_result.files_removed) == 2

    def test_backup_failure_aborts_before_deletion(self, orchestrator, results, populated):
        orchestrator.backup_writer.create_backup = AsyncMock(
            return_value=BackupResult(success=False, backup_path="x", errors=["disk full"])
        )
        plan = orchestrator.create_cleanup_plan(results)

        execution = asyncio.run(orchestrator.execute_cleanup_plan(plan, LIVE))

        assert execution.phase == FAILED
        assert execution.success is False
        assert "disk full" in execution.progress.errors
        assert (populated / "users" / "ghost.json").exists()
        assert (populated / "config" / "empty.json").exists()

    def test_lost_backup_copy_fails_run(self, orchestrator, results, populated):
        copy = populated / "audit-backups" / "b1" / "users" / "ghost.json"

        def lose_copy(progress):
            if progress.phase == CLEANUP and copy.exists():
                copy.unlink()

        plan = orchestrator.create_cleanup_plan(results)
        execution = asyncio.run(orchestrator.execute_cleanup_plan(plan, LIVE, lose_copy))

        assert execution.success is False
        assert execution.verification_result.backups_missing == [str(copy)]
        assert not (populated / "users" / "ghost.json").exists()

    def test_migration_error_aborts(self, store, results, populated):
        migrator = MagicMock()
        migrator.migrate_files = AsyncMock(side_effect=MigrationError("down"))
        orchestrator = CleanupOrchestrator(store, migrator=migrator, clock=lambda: FIXED_NOW)

        execution = asyncio.run(orchestrator.execute_cleanup_plan(orchestrator.create_cleanup_plan(results), LIVE))

        assert execution.phase == FAILED
        assert execution.progress.errors == ["Migration failed: down"]
        assert (populated / "users" / "ghost.json").exists()

    def test_unsuccessful_migration_aborts(self, store, results, populated):
        migrator = MagicMock()
        migrator.migrate_files = AsyncMock(return_value=MigrationResult(errors=["bad row"]))
        orchestrator = CleanupOrchestrator(store, migrator=migrator, clock=lambda: FIXED_NOW)

        execution = asyncio.run(orchestrator.execute_cleanup_plan(orchestrator.create_cleanup_plan(results), LIVE))

        assert execution.phase == FAILED
        assert "bad row" in execution.progress.errors
        assert not (populated / "audit-backups").exists()

    def test_batches_pause_between(self, orchestrator, results, sleeper):
        plan = orchestrator.create_cleanup_plan(results)
        options = CleanupOptions(dry_run=True, batch_size=1, batch_pause=0.5)

        asyncio.run(orchestrator.execute_cleanup_plan(plan, options))

        assert sleeper.calls == [0.5, 0.5]


class TestSafeCleanupAndReport:

    def test_invalid_plan_fails_without_executing(self, store, results, populated):
        orchestrator = CleanupOrchestrator(store, clock=lambda: FIXED_NOW)

        execution, report = asyncio.run(orchestrator.perform_safe_cleanup(results, CleanupOptions(dry_run=False)))

        assert execution.phase == FAILED
        assert (populated / "config" / "empty.json").exists()
        assert "**Status:** FAILED" in report
        assert "Database connection required" in report

    def test_dry_run_report(self, orchestrator, results):
        execution, report = asyncio.run(orchestrator.perform_safe_cleanup(results))

        assert execution.success is True
        assert report.startswith("# File System Cleanup Report")
        assert "**Mode:** DRY RUN" in report
        assert "- **Files to Backup and Remove:** 2" in report
        assert "- **Files Removed:** 3" in report

    def test_execution_to_dict(self, orchestrator, results):
        plan = orchestrator.create_cleanup_plan(results)
        execution = asyncio.run(orchestrator.execute_cleanup_plan(plan, LIVE))

        data = execution.to_dict()
        assert data["phase"] == COMPLETE
        assert data["migration_result"]["clients_migrated"] == 1
        assert data["backup_result"]["success"] is True
