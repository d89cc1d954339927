"""
Audit backups - copies of audited files taken before anything is deleted.

Layout: <root>/audit-backups/<backup-name>/manifest.json plus one directory per category
holding the copied files at their path within the category (search/clients.json for
indexes/search/clients.json). The manifest is written (atomically) before any file is
copied, so a partially written backup still describes what it was meant to contain.
"""

import asyncio
import json
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .audit import BACKUP_DIRECTORY, AuditResult
from .errors import BackupError, RestoreError
from .store import _calculate_checksum, utc_now, write_atomic
from ..util.logging import StructuredLogger, get_logger

MANIFEST_NAME = "manifest.json"


def backup_file_name(result: AuditResult, root=None) -> str:
    """Path of an audited file relative to its category directory, in posix form."""
    if root is not None:
        try:
            return Path(result.file_path).relative_to(Path(root) / result.category).as_posix()
        except ValueError:
            pass
    return result.file_name


@dataclass
class BackupManifest:
    """What a backup contains, with per-file checksums from the audit."""
    timestamp: datetime
    total_files: int
    files: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_results(cls, results: List[AuditResult], timestamp: datetime, root=None) -> 'BackupManifest':
        return cls(
            timestamp=timestamp,
            total_files=len(results),
            files=[{
                "category": r.category,
                "fileName": backup_file_name(r, root),
                "status": r.status,
                "reason": r.reason,
                "size": r.size,
                "checksum": r.checksum,
            } for r in results],
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert manifest to dictionary for JSON serialization."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "totalFiles": self.total_files,
            "files": self.files,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupManifest':
        """Create manifest from dictionary (for restoration)."""
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            total_files=data["totalFiles"],
            files=list(data.get("files", [])),
        )


@dataclass
class BackupResult:
    success: bool
    backup_path: Optional[str] = None
    files_backed_up: List[str] = field(default_factory=list)
    files_changed: List[str] = field(default_factory=list)  # edited since the audit, not copied
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "backup_path": self.backup_path,
            "files_backed_up": self.files_backed_up,
            "files_changed": self.files_changed,
            "errors": self.errors,
        }


class BackupWriter:
    """Creates, verifies and restores audit backups under the store root."""

    def __init__(self, root, clock: Callable[[], datetime] = utc_now, logger: StructuredLogger = None):
        self.root = Path(root)
        self.backup_root = self.root / BACKUP_DIRECTORY
        self.clock = clock
        self.logger = logger or get_logger("backup")

    def default_backup_name(self) -> str:
        return f"audit-backup-{self.clock().strftime('%Y-%m-%dT%H-%M-%S-%f')}"

    def _changed_since_audit(self, audit_result: AuditResult) -> bool:
        try:
            data = Path(audit_result.file_path).read_bytes()
        except OSError:
            # Left to the copy, which reports it as a backup failure
            return False
        return _calculate_checksum(data) != audit_result.checksum

    def _create_backup_sync(self, files: List[AuditResult], name: str) -> BackupResult:
        backup_dir = self.backup_root / name
        result = BackupResult(success=False, backup_path=str(backup_dir))

        unchanged = []
        for audit_result in files:
            if self._changed_since_audit(audit_result):
                result.files_changed.append(audit_result.file_path)
            else:
                unchanged.append(audit_result)

        try:
            backup_dir.mkdir(parents=True, exist_ok=True)
            manifest = BackupManifest.from_results(unchanged, self.clock(), self.root)
            write_atomic(backup_dir / MANIFEST_NAME, json.dumps(manifest.to_dict(), indent=2).encode("utf-8"))
        except OSError as e:
            result.errors.append(f"Backup failed: {e}")
            return result

        for audit_result in unchanged:
            try:
                target = backup_dir / audit_result.category / backup_file_name(audit_result, self.root)
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(audit_result.file_path, target)
                result.files_backed_up.append(str(target))
            except OSError as e:
                result.errors.append(f"Failed to backup {audit_result.file_path}: {e}")

        result.success = not result.errors
        return result

    async def create_backup(self, files: List[AuditResult], name: str = None) -> BackupResult:
        """
        Write the manifest, then copy each file. Any copy failure marks the backup failed.

        Files whose checksum no longer matches their audit result are left out of both the
        manifest and the copy, and listed in files_changed.
        """
        name = name or self.default_backup_name()
        result = await asyncio.to_thread(self._create_backup_sync, files, name)

        details = None
        if result.errors or result.files_changed:
            details = {"errors": len(result.errors), "changed": len(result.files_changed)}
        self.logger.log_backup(
            result.backup_path,
            len(result.files_backed_up),
            status="success" if result.success else "failed",
            details=details,
        )
        return result

    def load_manifest(self, backup_path) -> BackupManifest:
        manifest_file = Path(backup_path) / MANIFEST_NAME
        if not manifest_file.exists():
            raise BackupError(f"Manifest not found in {backup_path}")
        try:
            return BackupManifest.from_dict(json.loads(manifest_file.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            raise BackupError(f"Invalid backup manifest: {e}")

    def _verify_backup_sync(self, backup_path: Path) -> Dict[str, List[str]]:
        manifest = self.load_manifest(backup_path)
        verification = {"verified": [], "missing": [], "mismatched": []}

        for entry in manifest.files:
            copy = backup_path / entry["category"] / entry["fileName"]
            if not copy.is_file():
                verification["missing"].append(str(copy))
                continue
            try:
                data = copy.read_bytes()
            except OSError:
                verification["missing"].append(str(copy))
                continue
            if entry.get("checksum") and _calculate_checksum(data) != entry["checksum"]:
                verification["mismatched"].append(str(copy))
            else:
                verification["verified"].append(str(copy))

        return verification

    async def verify_backup(self, backup_path) -> Dict[str, List[str]]:
        """Check every manifest entry has a readable copy whose checksum matches."""
        return await asyncio.to_thread(self._verify_backup_sync, Path(backup_path))

    def list_backups(self) -> List[str]:
        if not self.backup_root.is_dir():
            return []
        return sorted(
            entry.name for entry in self.backup_root.iterdir()
            if entry.is_dir() and (entry / MANIFEST_NAME).exists()
        )

    def _restore_backup_sync(self, backup_path: Path, dry_run: bool, overwrite: bool) -> Dict[str, Any]:
        try:
            manifest = self.load_manifest(backup_path)
        except BackupError as e:
            raise RestoreError(str(e))

        statistics = {
            "files_restored": 0,
            "files_skipped": 0,
            "warnings": [],
            "dry_run": dry_run,
        }

        for entry in manifest.files:
            source = backup_path / entry["category"] / entry["fileName"]
            target = self.root / entry["category"] / entry["fileName"]

            if not source.is_file():
                statistics["warnings"].append(f"Backup copy missing: {source}")
                statistics["files_skipped"] += 1
                continue

            if target.exists() and not overwrite:
                statistics["warnings"].append(f"Target exists, not overwritten: {target}")
                statistics["files_skipped"] += 1
                continue

            if not dry_run:
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, target)
            statistics["files_restored"] += 1

        return statistics

    async def restore_backup(self, backup_path, dry_run: bool = False, overwrite: bool = False) -> Dict[str, Any]:
        """Copy every file listed in a backup manifest back into the store."""
        statistics = await asyncio.to_thread(self._restore_backup_sync, Path(backup_path), dry_run, overwrite)
        self.logger.log_operation("backup.restore", "success", {
            "backup_path": str(backup_path),
            "files_restored": statistics["files_restored"],
            "dry_run": dry_run,
        })
        return statistics
