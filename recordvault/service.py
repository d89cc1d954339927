"""
StorageService - the operations other parts of the application call.

Wires the store, audit, backup, cleanup, compression, housekeeping and indexing components
from a StorageConfig.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .core.audit import AuditEngine, AuditResult, AuditSummary
from .core.backup import BackupResult, BackupWriter
from .core.cache import CacheLayer
from .core.cleanup import CleanupExecution, CleanupOrchestrator, CleanupPlan, ProgressCallback
from .core.compression import CompressionCodec
from .core.config import StorageConfig
from .core.db import SqliteSystemOfRecord, SystemOfRecord
from .core.maintenance import Housekeeper
from .core.migration import RecordMigrator
from .core.monitoring import UsageMonitor
from .core.store import RecordStore
from .schemas import CleanupOptions
from .search.filters import FilterEngine
from .search.index import SearchIndex
from .search.indexing import IndexingOrchestrator
from .util.logging import StructuredLogger, get_logger


class StorageService:
    """Façade over every storage engine component."""

    def __init__(self, config: StorageConfig, system_of_record: SystemOfRecord = None,
                 logger: StructuredLogger = None):
        self.config = config
        self.logger = logger or get_logger("service")

        issues = config.validate()
        if issues:
            raise ValueError(f"Storage configuration invalid: {issues}")

        self.store = RecordStore(config.root, bulk_read_concurrency=config.bulk_read_concurrency)
        self.system_of_record = system_of_record or SqliteSystemOfRecord(config.system_of_record_path)

        self.search_index = SearchIndex(self.store, field_weights=config.field_weights)
        self.store.attach_search_index(self.search_index)
        self.filter_engine = FilterEngine(unknown_operator_policy=config.unknown_filter_operator_policy)
        self.cache = CacheLayer(default_ttl=config.cache_ttl_sec)
        self.indexing = IndexingOrchestrator(self.store, self.search_index, self.filter_engine, self.cache)

        self.audit_engine = AuditEngine(self.store, self.system_of_record, categories=config.categories)
        self.backup_writer = BackupWriter(self.store.root)
        self.migrator = RecordMigrator(self.store, self.system_of_record)
        self.cleanup = CleanupOrchestrator(self.store, self.backup_writer, self.migrator, self.system_of_record)
        self.codec = CompressionCodec(threshold=config.compression_threshold)
        self.housekeeper = Housekeeper()
        self.monitor = UsageMonitor(self.store)

    @classmethod
    def from_env(cls) -> "StorageService":
        return cls(StorageConfig.from_env())

    def default_cleanup_options(self, **overrides) -> CleanupOptions:
        """Cleanup options with batch settings taken from the config."""
        options = {
            "batch_size": self.config.cleanup_batch_size,
            "batch_pause": self.config.cleanup_batch_pause_sec,
        }
        options.update(overrides)
        return CleanupOptions(**options)

    # Audit

    async def audit_all(self) -> Tuple[List[AuditResult], AuditSummary]:
        return await self.audit_engine.audit_all()

    async def audit_summary(self) -> AuditSummary:
        return await self.audit_engine.audit_summary()

    def generate_report(self, results: List[AuditResult], summary: AuditSummary) -> str:
        return self.audit_engine.generate_report(results, summary)

    # Cleanup

    def create_cleanup_plan(self, results: List[AuditResult]) -> CleanupPlan:
        return self.cleanup.create_cleanup_plan(results)

    async def execute_cleanup_plan(self, plan: CleanupPlan, options: CleanupOptions = None,
                                   progress_callback: Optional[ProgressCallback] = None) -> CleanupExecution:
        execution = await self.cleanup.execute_cleanup_plan(
            plan, options if options is not None else self.default_cleanup_options(), progress_callback
        )
        if not execution.dry_run:
            self.cache.clear()
        return execution

    async def create_backup(self, files: List[AuditResult], name: str = None) -> BackupResult:
        return await self.backup_writer.create_backup(files, name)

    # Housekeeping and compression

    async def get_cleanup_stats(self, path=None) -> Dict[str, int]:
        return await self.housekeeper.get_cleanup_stats(Path(path) if path else self.store.root)

    async def get_compression_stats(self, path=None) -> Dict[str, Any]:
        return await self.codec.get_compression_stats(Path(path) if path else self.store.root)
