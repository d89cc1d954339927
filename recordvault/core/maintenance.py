"""
Housekeeping of non-document files: stale logs, temp files, old .bak copies and empty
directories left behind under the storage root.
"""

import asyncio
import fnmatch
import os
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .errors import MaintenanceError
from .store import utc_now
from ..util.formatting import format_bytes
from ..util.logging import StructuredLogger, get_logger

DEFAULT_MAX_AGE_SEC = 30 * 24 * 60 * 60
DEFAULT_MAX_SIZE = 100 * 1024 * 1024
DEFAULT_KEEP_COUNT = 10

OLD_FILE_PATTERNS = ["*.log", "*.tmp", "*.bak"]
LARGE_FILE_PATTERNS = ["*.log", "*.tmp"]
EXCESS_FILE_PATTERNS = ["*.bak", "*.snapshot"]


@dataclass
class MaintenanceReport:
    """Comprehensive maintenance operation report."""
    operation: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    issues_found: int = 0
    issues_resolved: int = 0
    actions_taken: List[str] = None
    recommendations: List[str] = None
    errors: List[str] = None
    metadata: Dict[str, Any] = None

    def __post_init__(self):
        if self.actions_taken is None:
            self.actions_taken = []
        if self.recommendations is None:
            self.recommendations = []
        if self.errors is None:
            self.errors = []
        if self.metadata is None:
            self.metadata = {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert report to dictionary for serialization."""
        data = {
            "operation": self.operation,
            "started_at": self.started_at.isoformat(),
            "issues_found": self.issues_found,
            "issues_resolved": self.issues_resolved,
            "actions_taken": self.actions_taken,
            "recommendations": self.recommendations,
            "errors": self.errors,
            "metadata": self.metadata
        }
        if self.completed_at:
            data["completed_at"] = self.completed_at.isoformat()
        return data


def matches_patterns(path: Path, patterns: List[str]) -> bool:
    return any(fnmatch.fnmatch(path.name, pattern) for pattern in patterns)


def _files(directory: Path) -> List[Path]:
    result = []
    for dirpath, _, filenames in os.walk(directory):
        for filename in filenames:
            result.append(Path(dirpath) / filename)
    return sorted(result)


def _directories(directory: Path) -> List[Path]:
    result = []
    for dirpath, dirnames, _ in os.walk(directory):
        for dirname in dirnames:
            result.append(Path(dirpath) / dirname)
    return result


class Housekeeper:
    """Age, size and count based file cleanup under a directory."""

    def __init__(self, clock: Callable[[], datetime] = utc_now, wall_time: Callable[[], float] = time.time,
                 logger: StructuredLogger = None):
        self.clock = clock
        self.wall_time = wall_time
        self.logger = logger or get_logger("maintenance")

    def _delete_matching(self, report: MaintenanceReport, candidates: List[Path], label: str):
        freed = 0
        for path in candidates:
            try:
                size = path.stat().st_size
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                report.errors.append(f"Failed to delete {path}: {e}")
                continue
            freed += size
            report.issues_resolved += 1
            report.actions_taken.append(f"Deleted {label} file: {path}")

        report.metadata["bytes_freed"] = freed
        if report.issues_resolved:
            self.logger.info(f"Cleaned up {report.issues_resolved} {label} files, freed {format_bytes(freed)}")

    def _finish(self, report: MaintenanceReport) -> MaintenanceReport:
        report.completed_at = self.clock()
        status = "success" if not report.errors else "completed_with_errors"
        self.logger.log_operation(f"maintenance.{report.operation}", status, {
            "issues_found": report.issues_found,
            "issues_resolved": report.issues_resolved,
        })
        return report

    def _cleanup_old_files_sync(self, directory: Path, max_age_sec: float, patterns: List[str]) -> MaintenanceReport:
        report = MaintenanceReport(operation="cleanup_old_files", started_at=self.clock())
        if not directory.is_dir():
            return self._finish(report)

        now = self.wall_time()
        candidates = []
        for path in _files(directory):
            if not matches_patterns(path, patterns):
                continue
            try:
                if now - path.stat().st_mtime > max_age_sec:
                    candidates.append(path)
            except FileNotFoundError:
                continue

        report.issues_found = len(candidates)
        self._delete_matching(report, candidates, "old")
        return self._finish(report)

    async def cleanup_old_files(self, directory, max_age_sec: float = DEFAULT_MAX_AGE_SEC,
                                patterns: List[str] = None) -> MaintenanceReport:
        """Delete files matching patterns whose modification time is older than max_age_sec."""
        return await asyncio.to_thread(self._cleanup_old_files_sync, Path(directory), max_age_sec,
                                       patterns or OLD_FILE_PATTERNS)

    def _cleanup_large_files_sync(self, directory: Path, max_size: int, patterns: List[str]) -> MaintenanceReport:
        report = MaintenanceReport(operation="cleanup_large_files", started_at=self.clock())
        if not directory.is_dir():
            return self._finish(report)

        candidates = []
        for path in _files(directory):
            if not matches_patterns(path, patterns):
                continue
            try:
                if path.stat().st_size > max_size:
                    candidates.append(path)
            except FileNotFoundError:
                continue

        report.issues_found = len(candidates)
        self._delete_matching(report, candidates, "large")
        return self._finish(report)

    async def cleanup_large_files(self, directory, max_size: int = DEFAULT_MAX_SIZE,
                                  patterns: List[str] = None) -> MaintenanceReport:
        """Delete files matching patterns that are bigger than max_size bytes."""
        return await asyncio.to_thread(self._cleanup_large_files_sync, Path(directory), max_size,
                                       patterns or LARGE_FILE_PATTERNS)

    def _cleanup_excess_files_sync(self, directory: Path, keep_count: int, patterns: List[str]) -> MaintenanceReport:
        report = MaintenanceReport(operation="cleanup_excess_files", started_at=self.clock())
        if not directory.is_dir():
            return self._finish(report)

        matching = [p for p in _files(directory) if matches_patterns(p, patterns)]
        if len(matching) > keep_count:
            matching.sort(key=lambda p: p.stat().st_mtime, reverse=True)
            excess = matching[keep_count:]
            report.issues_found = len(excess)
            self._delete_matching(report, excess, "excess")

        return self._finish(report)

    async def cleanup_excess_files(self, directory, keep_count: int = DEFAULT_KEEP_COUNT,
                                   patterns: List[str] = None) -> MaintenanceReport:
        """Keep only the newest keep_count files matching patterns."""
        if keep_count < 0:
            raise MaintenanceError(f"keep_count must be >= 0: {keep_count}")
        return await asyncio.to_thread(self._cleanup_excess_files_sync, Path(directory), keep_count,
                                       patterns or EXCESS_FILE_PATTERNS)

    def _cleanup_empty_directories_sync(self, directory: Path) -> MaintenanceReport:
        report = MaintenanceReport(operation="cleanup_empty_directories", started_at=self.clock())
        if not directory.is_dir():
            return self._finish(report)

        # Deepest first so emptied parents are removed in the same pass
        for path in sorted(_directories(directory), key=lambda p: len(p.parts), reverse=True):
            try:
                if not any(path.iterdir()):
                    report.issues_found += 1
                    path.rmdir()
                    report.issues_resolved += 1
                    report.actions_taken.append(f"Removed empty directory: {path}")
            except OSError as e:
                self.logger.debug(f"Could not delete directory {path}: {e}")

        return self._finish(report)

    async def cleanup_empty_directories(self, directory) -> MaintenanceReport:
        return await asyncio.to_thread(self._cleanup_empty_directories_sync, Path(directory))

    async def perform_full_cleanup(self, directory, max_age_sec: float = DEFAULT_MAX_AGE_SEC,
                                   max_size: int = DEFAULT_MAX_SIZE,
                                   keep_count: int = DEFAULT_KEEP_COUNT) -> MaintenanceReport:
        """Run every housekeeping step and fold the results into one report."""
        report = MaintenanceReport(operation="full_cleanup", started_at=self.clock())
        self.logger.info(f"Starting full cleanup of {directory}")

        steps = [
            await self.cleanup_old_files(directory, max_age_sec),
            await self.cleanup_large_files(directory, max_size),
            await self.cleanup_excess_files(directory, keep_count),
            await self.cleanup_empty_directories(directory),
        ]
        for step in steps:
            report.issues_found += step.issues_found
            report.issues_resolved += step.issues_resolved
            report.actions_taken.extend(step.actions_taken)
            report.errors.extend(step.errors)
            report.metadata[step.operation] = step.issues_resolved

        if report.errors:
            report.recommendations.append("Check file permissions under the storage root")
        return self._finish(report)

    def _get_cleanup_stats_sync(self, directory: Path) -> Dict[str, int]:
        stats = {
            "total_files": 0,
            "total_size": 0,
            "old_files": 0,
            "large_files": 0,
            "empty_directories": 0,
        }
        if not directory.is_dir():
            return stats

        now = self.wall_time()
        for path in _files(directory):
            try:
                stat = path.stat()
            except FileNotFoundError:
                continue
            stats["total_files"] += 1
            stats["total_size"] += stat.st_size
            if now - stat.st_mtime > DEFAULT_MAX_AGE_SEC:
                stats["old_files"] += 1
            if stat.st_size > DEFAULT_MAX_SIZE:
                stats["large_files"] += 1

        for path in _directories(directory):
            try:
                if not any(path.iterdir()):
                    stats["empty_directories"] += 1
            except OSError:
                continue

        return stats

    async def get_cleanup_stats(self, directory) -> Dict[str, int]:
        """Count files, size, old and large files, and empty directories under directory."""
        return await asyncio.to_thread(self._get_cleanup_stats_sync, Path(directory))
