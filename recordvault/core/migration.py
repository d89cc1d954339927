"""
Migration of file-backed clients and tax calculations into the system of record.
"""

import asyncio
import json
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .audit import AuditResult
from .db import SqliteSystemOfRecord
from .errors import MigrationError
from .store import RecordStore
from ..util.logging import StructuredLogger, get_logger

CLIENT_CATEGORY = "clients"
CALCULATION_CATEGORY = "tax-calculations"


@dataclass
class MigrationResult:
    clients_migrated: int = 0
    calculations_migrated: int = 0
    files_processed: int = 0
    files_skipped: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "clients_migrated": self.clients_migrated,
            "calculations_migrated": self.calculations_migrated,
            "files_processed": self.files_processed,
            "files_skipped": self.files_skipped,
            "errors": self.errors,
        }


def client_number(data: Dict[str, Any]) -> Optional[str]:
    value = data.get("companyNumber") or data.get("company_number")
    return str(value) if value else None


def client_name(data: Dict[str, Any]) -> Optional[str]:
    return data.get("companyName") or data.get("company_name") or data.get("name")


class RecordMigrator:
    """Copies valid client and calculation documents into a SQLite system of record."""

    def __init__(self, store: RecordStore, system_of_record: SqliteSystemOfRecord,
                 logger: StructuredLogger = None):
        self.store = store
        self.system_of_record = system_of_record
        self.logger = logger or get_logger("migration")

    def _ensure_available(self):
        if self.system_of_record is None or not self.system_of_record.test_connection():
            raise MigrationError("System of record is not available")

    def _migrate_client(self, data: Any, result: MigrationResult):
        if not isinstance(data, dict) or not client_number(data) or not client_name(data):
            result.files_skipped += 1
            return
        if self.system_of_record.insert_client(client_number(data), client_name(data), data):
            result.clients_migrated += 1
        else:
            result.files_skipped += 1

    def _migrate_calculation(self, data: Any, result: MigrationResult):
        if not isinstance(data, dict) or not data.get("id"):
            result.files_skipped += 1
            return
        client_id = data.get("clientId") or data.get("client_id")
        if not client_id or not self.system_of_record.get_client_by_number(str(client_id)):
            result.files_skipped += 1
            return
        if self.system_of_record.insert_calculation(str(data["id"]), str(client_id), data):
            result.calculations_migrated += 1
        else:
            result.files_skipped += 1

    def _migrate_path(self, category: str, path: Path, result: MigrationResult):
        result.files_processed += 1
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except FileNotFoundError:
            result.files_skipped += 1
            return
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            result.errors.append(f"Failed to parse {path}: {e}")
            return

        try:
            if category == CLIENT_CATEGORY:
                self._migrate_client(data, result)
            elif category == CALCULATION_CATEGORY:
                self._migrate_calculation(data, result)
            else:
                result.files_skipped += 1
        except sqlite3.Error as e:
            result.errors.append(f"Failed to migrate {path}: {e}")

    async def migrate_files(self, files: List[AuditResult]) -> MigrationResult:
        """Migrate the given audited files. Clients go first so calculations can reference them."""
        self._ensure_available()
        result = MigrationResult()

        ordered = sorted(files, key=lambda f: 0 if f.category == CLIENT_CATEGORY else 1)
        for audit_result in ordered:
            await asyncio.to_thread(self._migrate_path, audit_result.category, Path(audit_result.file_path), result)

        self.logger.log_operation("migration.files", "success" if result.success else "failed", {
            "clients": result.clients_migrated,
            "calculations": result.calculations_migrated,
            "skipped": result.files_skipped,
        })
        return result

    async def migrate_all(self) -> MigrationResult:
        """Migrate every client, then every tax calculation, found in the store."""
        self._ensure_available()
        result = MigrationResult()

        for category in (CLIENT_CATEGORY, CALCULATION_CATEGORY):
            async for path in self.store.list_files(category):
                await asyncio.to_thread(self._migrate_path, category, path, result)

        self.logger.log_operation("migration.all", "success" if result.success else "failed", result.to_dict())
        return result
