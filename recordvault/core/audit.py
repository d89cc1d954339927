"""
File audit - classifies every on-disk document and recommends what to do with it.

An audit never mutates the store. Its results feed the cleanup planner.
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .classifiers import (
    BACKUP_AND_REMOVE,
    CORRUPTED,
    RECOMMENDATIONS,
    STATUSES,
    Classification,
    ClassificationContext,
    Classifier,
    GenericClassifier,
    default_registry,
)
from .db import SystemOfRecord
from .store import RecordStore, _calculate_checksum, utc_now
from ..util.formatting import format_bytes, format_percentage
from ..util.logging import StructuredLogger, get_logger

BACKUP_DIRECTORY = "audit-backups"


@dataclass
class AuditResult:
    """Classification of a single document file."""
    category: str
    file_path: str
    file_name: str
    status: str  # connected|disconnected|orphaned|corrupted
    reason: str
    size: int
    last_modified: datetime
    checksum: str
    has_backup: bool
    migration_recommendation: str  # migrate|backup_and_remove|remove|keep

    @property
    def file_id(self) -> str:
        return Path(self.file_name).stem

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "file_path": self.file_path,
            "file_name": self.file_name,
            "status": self.status,
            "reason": self.reason,
            "size": self.size,
            "last_modified": self.last_modified.isoformat(),
            "checksum": self.checksum,
            "has_backup": self.has_backup,
            "migration_recommendation": self.migration_recommendation,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditResult':
        data = dict(data)
        data['last_modified'] = datetime.fromisoformat(data['last_modified'])
        return cls(**data)


def _empty_counts(keys: List[str]) -> Dict[str, int]:
    return {key: 0 for key in keys}


@dataclass
class AuditSummary:
    """Aggregate counts over a set of audit results."""
    total_files: int = 0
    connected_files: int = 0
    disconnected_files: int = 0
    orphaned_files: int = 0
    corrupted_files: int = 0
    total_size: int = 0
    categories: Dict[str, Dict[str, int]] = field(default_factory=dict)
    recommendations: Dict[str, int] = field(default_factory=lambda: _empty_counts(RECOMMENDATIONS))
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def from_results(cls, results: List[AuditResult], categories: List[str] = None,
                     warnings: List[str] = None) -> 'AuditSummary':
        """Derive every count from the results so the totals always agree."""
        summary = cls(warnings=list(warnings or []))

        for category in categories or []:
            summary.categories[category] = {"total": 0, **_empty_counts(STATUSES)}

        for result in results:
            summary.total_files += 1
            summary.total_size += result.size
            summary.recommendations[result.migration_recommendation] += 1

            counts = summary.categories.setdefault(result.category, {"total": 0, **_empty_counts(STATUSES)})
            counts["total"] += 1
            counts[result.status] += 1

        summary.connected_files = sum(c["connected"] for c in summary.categories.values())
        summary.disconnected_files = sum(c["disconnected"] for c in summary.categories.values())
        summary.orphaned_files = sum(c["orphaned"] for c in summary.categories.values())
        summary.corrupted_files = sum(c["corrupted"] for c in summary.categories.values())
        return summary

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_files": self.total_files,
            "connected_files": self.connected_files,
            "disconnected_files": self.disconnected_files,
            "orphaned_files": self.orphaned_files,
            "corrupted_files": self.corrupted_files,
            "total_size": self.total_size,
            "categories": self.categories,
            "recommendations": self.recommendations,
            "warnings": self.warnings,
        }


class AuditEngine:
    """Walks the store and classifies each document with its category's classifier."""

    def __init__(self, store: RecordStore, system_of_record: Optional[SystemOfRecord] = None,
                 classifiers: Dict[str, Classifier] = None, categories: List[str] = None,
                 clock: Callable[[], datetime] = utc_now, logger: StructuredLogger = None):
        self.store = store
        self.system_of_record = system_of_record
        self.classifiers = default_registry() if classifiers is None else dict(classifiers)
        self.fallback = GenericClassifier()
        self.categories = categories
        self.clock = clock
        self.logger = logger or get_logger("audit")
        self.backup_root = store.root / BACKUP_DIRECTORY

    def register_classifier(self, category: str, classifier: Classifier):
        self.classifiers[category] = classifier

    def classifier_for(self, category: str) -> Classifier:
        return self.classifiers.get(category, self.fallback)

    def audit_categories(self) -> List[str]:
        """Configured categories plus any found on disk, and the generated indexes."""
        categories = set(self.categories or []) | set(self.store.list_categories())
        categories.add("indexes")
        return sorted(categories)

    def _has_backup(self, category: str, relative_name: str) -> bool:
        """True when any backup holds a copy at the same path within the category."""
        if not self.backup_root.is_dir():
            return False
        return any(
            (backup_dir / category / relative_name).is_file()
            for backup_dir in self.backup_root.iterdir()
        )

    def _audit_file_sync(self, category: str, path: Path, now: datetime) -> AuditResult:
        raw = path.read_bytes()
        stat = path.stat()
        file_id = path.stem
        checksum = _calculate_checksum(raw)

        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            classification = Classification(CORRUPTED, f"Invalid JSON: {e}", BACKUP_AND_REMOVE)
        else:
            context = ClassificationContext(system_of_record=self.system_of_record, now=now)
            classification = self.classifier_for(category).classify(file_id, data, context)

        return AuditResult(
            category=category,
            file_path=str(path),
            file_name=path.name,
            status=classification.status,
            reason=classification.reason,
            size=stat.st_size,
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            checksum=checksum,
            has_backup=self._has_backup(category, path.relative_to(self.store.root / category).as_posix()),
            migration_recommendation=classification.recommendation,
        )

    async def _audit_category(self, category: str, warnings: List[str]) -> List[AuditResult]:
        results = []
        now = self.clock()

        async for path in self.store.list_files(category):
            try:
                result = await asyncio.to_thread(self._audit_file_sync, category, path, now)
            except FileNotFoundError:
                message = f"File vanished during audit, skipped: {path}"
                warnings.append(message)
                self.logger.warning(message)
                continue

            self.logger.log_audit_finding(category, result.file_name, result.status,
                                          result.migration_recommendation, result.reason)
            results.append(result)

        return results

    async def audit_category(self, category: str) -> List[AuditResult]:
        """Classify every document in one category."""
        return await self._audit_category(category, [])

    async def audit_all(self) -> Tuple[List[AuditResult], AuditSummary]:
        """Classify every document in every category and summarize."""
        self.logger.log_operation("audit.started", "running")
        results: List[AuditResult] = []
        warnings: List[str] = []
        categories = self.audit_categories()

        for category in categories:
            results.extend(await self._audit_category(category, warnings))

        summary = AuditSummary.from_results(results, categories, warnings)
        self.logger.log_audit_summary(summary.total_files, summary.total_size, {
            "connected": summary.connected_files,
            "disconnected": summary.disconnected_files,
            "orphaned": summary.orphaned_files,
            "corrupted": summary.corrupted_files,
        })
        return results, summary

    async def audit_summary(self) -> AuditSummary:
        _, summary = await self.audit_all()
        return summary

    def generate_report(self, results: List[AuditResult], summary: AuditSummary) -> str:
        """Render an audit as a markdown report."""
        total = summary.total_files
        lines = [
            "# File System Audit Report",
            "",
            f"**Generated:** {self.clock().isoformat()}",
            f"**Total Files Analyzed:** {total}",
            f"**Total Storage Size:** {format_bytes(summary.total_size)}",
            "",
            "## Summary",
            "",
            f"- **Connected Files:** {summary.connected_files} ({format_percentage(summary.connected_files, total)})",
            f"- **Disconnected Files:** {summary.disconnected_files} ({format_percentage(summary.disconnected_files, total)})",
            f"- **Orphaned Files:** {summary.orphaned_files} ({format_percentage(summary.orphaned_files, total)})",
            f"- **Corrupted Files:** {summary.corrupted_files} ({format_percentage(summary.corrupted_files, total)})",
            "",
            "## Migration Recommendations",
            "",
            f"- **Migrate:** {summary.recommendations.get('migrate', 0)} files",
            f"- **Backup and Remove:** {summary.recommendations.get('backup_and_remove', 0)} files",
            f"- **Remove:** {summary.recommendations.get('remove', 0)} files",
            f"- **Keep:** {summary.recommendations.get('keep', 0)} files",
            "",
            "## Category Breakdown",
            "",
        ]

        for category, counts in sorted(summary.categories.items()):
            if counts["total"] == 0:
                continue
            lines.extend([
                f"### {category}",
                f"- Total: {counts['total']}",
                f"- Connected: {counts['connected']}",
                f"- Disconnected: {counts['disconnected']}",
                f"- Orphaned: {counts['orphaned']}",
                f"- Corrupted: {counts['corrupted']}",
                "",
            ])

        attention = [r for r in results if r.status != "connected" or r.migration_recommendation != "keep"]
        if attention:
            lines.extend(["## Files Requiring Attention", ""])
            for result in attention:
                lines.extend([
                    f"### {result.file_name} ({result.category})",
                    f"- **Status:** {result.status}",
                    f"- **Reason:** {result.reason}",
                    f"- **Recommendation:** {result.migration_recommendation}",
                    f"- **Size:** {format_bytes(result.size)}",
                    f"- **Last Modified:** {result.last_modified.isoformat()}",
                    f"- **Path:** {result.file_path}",
                    "",
                ])

        if summary.warnings:
            lines.extend(["## Warnings", ""])
            lines.extend(f"- {warning}" for warning in summary.warnings)
            lines.append("")

        return "\n".join(lines)
