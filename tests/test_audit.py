"""
Tests for the audit engine and its category classifiers.
"""

import asyncio
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from recordvault.core.audit import AuditEngine, AuditResult, AuditSummary
from recordvault.core.classifiers import (
    ClassificationContext,
    ClientClassifier,
    EventClassifier,
    GenericClassifier,
    TaxCalculationClassifier,
)

from conftest import FIXED_NOW, write_json


def context(system_of_record=None):
    return ClassificationContext(system_of_record=system_of_record, now=FIXED_NOW)


class TestClientClassifier:
    """Test client classification against the system of record."""

    def test_valid_client_is_migrated(self, system_of_record):
        result = ClientClassifier().classify("123", {"companyNumber": "123", "companyName": "Acme"},
                                            context(system_of_record))
        assert (result.status, result.recommendation) == ("connected", "migrate")

    def test_already_migrated_client(self, system_of_record):
        system_of_record.insert_client("123", "Acme", {})

        result = ClientClassifier().classify("123", {"companyNumber": "123", "companyName": "Acme"},
                                            context(system_of_record))
        assert (result.status, result.recommendation) == ("disconnected", "backup_and_remove")

    def test_lookup_falls_back_to_file_id(self, system_of_record):
        system_of_record.insert_client("555", "Acme", {})

        result = ClientClassifier().classify("555", {"name": "Acme"}, context(system_of_record))
        assert result.status == "disconnected"

    def test_missing_company_number(self, system_of_record):
        result = ClientClassifier().classify("x", {"companyName": "Acme"}, context(system_of_record))
        assert (result.status, result.reason) == ("orphaned", "Missing required company number")

    def test_missing_name(self, system_of_record):
        result = ClientClassifier().classify("x", {"company_number": "9"}, context(system_of_record))
        assert (result.status, result.reason) == ("orphaned", "Missing required company name")


class TestTaxCalculationClassifier:

    def test_valid_calculation(self, system_of_record):
        system_of_record.insert_client("123", "Acme", {})
        result = TaxCalculationClassifier().classify("c1", {"id": "c1", "clientId": "123"}, context(system_of_record))
        assert (result.status, result.recommendation) == ("connected", "migrate")

    def test_unknown_client(self, system_of_record):
        result = TaxCalculationClassifier().classify("c1", {"id": "c1", "clientId": "404"}, context(system_of_record))
        assert result.status == "orphaned"

    def test_missing_client_reference(self, system_of_record):
        result = TaxCalculationClassifier().classify("c1", {"id": "c1"}, context(system_of_record))
        assert result.reason == "Missing required client reference"

    def test_already_migrated(self, system_of_record):
        system_of_record.insert_client("123", "Acme", {})
        system_of_record.insert_calculation("c1", "123", {})
        result = TaxCalculationClassifier().classify("c1", {"id": "c1", "clientId": "123"}, context(system_of_record))
        assert result.status == "disconnected"


class TestEventClassifier:
    """Test the 365 day window for time-sensitive documents."""

    def test_recent_event_kept(self):
        recent = (FIXED_NOW - timedelta(days=30)).isoformat()
        result = EventClassifier().classify("e", [{"date": recent}], context())
        assert result.recommendation == "keep"

    def test_object_with_events_key(self):
        future = (FIXED_NOW + timedelta(days=30)).isoformat()
        result = EventClassifier().classify("e", {"events": [{"start": future}]}, context())
        assert result.status == "connected"

    def test_old_events_backed_up(self):
        old = (FIXED_NOW - timedelta(days=400)).isoformat()
        result = EventClassifier().classify("e", [{"date": old}], context())
        assert (result.status, result.recommendation) == ("disconnected", "backup_and_remove")


class TestGenericClassifier:

    def test_non_empty_kept(self):
        assert GenericClassifier().classify("x", {"a": 1}, context()).recommendation == "keep"

    def test_empty_removed(self):
        assert GenericClassifier().classify("x", {}, context()).recommendation == "remove"


class TestAuditEngine:
    """Test whole-store audits."""

    @pytest.fixture
    def populated(self, storage_root):
        write_json(storage_root, "clients", "111", {"companyNumber": "111", "companyName": "Acme"})
        write_json(storage_root, "clients", "222", {"companyName": "No Number"})
        write_json(storage_root, "config", "settings", {"theme": "dark"})
        write_json(storage_root, "config", "empty", {})
        write_json(storage_root, "users", "u1", {"email": "a@b.c"})
        write_json(storage_root, "widgets", "w1", [1, 2])
        (storage_root / "tasks").mkdir(parents=True)
        (storage_root / "tasks" / "broken.json").write_text("{oops")
        return storage_root

    def test_audit_all_classifies_every_file(self, store, system_of_record, populated):
        engine = AuditEngine(store, system_of_record, clock=lambda: FIXED_NOW)
        results, summary = asyncio.run(engine.audit_all())

        by_name = {(r.category, r.file_id): r for r in results}
        assert by_name[("clients", "111")].migration_recommendation == "migrate"
        assert by_name[("clients", "222")].status == "orphaned"
        assert by_name[("config", "empty")].migration_recommendation == "remove"
        assert by_name[("users", "u1")].status == "connected"
        assert by_name[("widgets", "w1")].migration_recommendation == "keep"
        assert by_name[("tasks", "broken")].status == "corrupted"
        assert by_name[("tasks", "broken")].migration_recommendation == "backup_and_remove"
        assert summary.total_files == 7

    def test_summary_invariants(self, store, system_of_record, populated):
        engine = AuditEngine(store, system_of_record, clock=lambda: FIXED_NOW)
        results, summary = asyncio.run(engine.audit_all())

        statuses = (summary.connected_files + summary.disconnected_files
                    + summary.orphaned_files + summary.corrupted_files)
        assert statuses == summary.total_files == len(results)
        assert sum(summary.recommendations.values()) == len(results)
        assert summary.total_size == sum(r.size for r in results)

    def test_checksum_and_size_recorded(self, store, populated):
        engine = AuditEngine(store)
        results = asyncio.run(engine.audit_category("users"))

        raw = (populated / "users" / "u1.json").read_bytes()
        assert results[0].size == len(raw)
        assert len(results[0].checksum) == 64

    def test_has_backup(self, store, populated):
        write_json(populated / "audit-backups" / "older", "users", "u1", {"email": "a@b.c"})

        results = asyncio.run(AuditEngine(store).audit_category("users"))
        assert results[0].has_backup is True

    def test_registered_classifier_is_used(self, store, populated):
        custom = MagicMock()
        custom.classify.return_value = MagicMock(status="orphaned", reason="custom", recommendation="remove")

        engine = AuditEngine(store)
        engine.register_classifier("widgets", custom)
        results = asyncio.run(engine.audit_category("widgets"))

        assert results[0].reason == "custom"
        custom.classify.assert_called_once()

    def test_vanished_file_is_skipped_with_warning(self, store, populated):
        engine = AuditEngine(store)
        original = engine._audit_file_sync

        def flaky(category, path, now):
            if path.stem == "u1":
                raise FileNotFoundError(path)
            return original(category, path, now)

        with patch.object(engine, "_audit_file_sync", side_effect=flaky):
            results, summary = asyncio.run(engine.audit_all())

        assert all(r.file_id != "u1" for r in results)
        assert any("u1" in w for w in summary.warnings)

    def test_audit_does_not_mutate_store(self, store, populated):
        before = sorted(p.relative_to(populated) for p in populated.rglob("*"))
        asyncio.run(AuditEngine(store).audit_all())
        after = sorted(p.relative_to(populated) for p in populated.rglob("*"))
        assert before == after

    def test_report_handles_empty_store(self, store):
        engine = AuditEngine(store, clock=lambda: FIXED_NOW)
        results, summary = asyncio.run(engine.audit_all())

        report = engine.generate_report(results, summary)
        assert "**Total Files Analyzed:** 0" in report
        assert "0.0%" in report

    def test_report_lists_files_needing_attention(self, store, system_of_record, populated):
        engine = AuditEngine(store, system_of_record, clock=lambda: FIXED_NOW)
        results, summary = asyncio.run(engine.audit_all())

        report = engine.generate_report(results, summary)
        assert "## Files Requiring Attention" in report
        assert "broken.json (tasks)" in report


class TestAuditResultSerialization:

    def test_round_trip(self):
        result = AuditResult(
            category="clients", file_path="/s/clients/1.json", file_name="1.json", status="connected",
            reason="ok", size=10, last_modified=FIXED_NOW, checksum="ab" * 32, has_backup=False,
            migration_recommendation="migrate",
        )
        assert AuditResult.from_dict(result.to_dict()) == result

    def test_summary_from_no_results(self):
        summary = AuditSummary.from_results([], ["clients"])
        assert summary.total_files == 0
        assert summary.categories["clients"]["total"] == 0
