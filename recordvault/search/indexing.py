"""
Indexing orchestration - search, filtering and index maintenance behind one façade.

Combined searches are memoized in a CacheLayer. Store writes and deletes drop the cached
searches, and anything that changes an index clears the whole cache.
"""

import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .filters import CriterionLike, FilterEngine, SortLike, _coerce
from .index import SearchIndex
from .types import SearchResults
from ..core.cache import CacheLayer, cache_key
from ..core.config import get_health_check_interval
from ..core.errors import StoreError
from ..core.heartbeat import Heartbeat
from ..core.maintenance import MaintenanceReport
from ..core.store import RecordStore, utc_now
from ..schemas import FilterCriterion, SortCriterion
from ..util.logging import StructuredLogger, get_logger

SEARCH_CATEGORIES = ["clients", "services", "tasks"]
QUEUE_BATCH_SIZE = 100
HEALTH_CHECK_TASK = "index_health_check"

HEALTH_RECOMMENDATIONS = {
    "needs_rebuild": [
        "Rebuild the search index",
        "Check for recent data changes",
    ],
    "corrupted": [
        "Rebuild the search index immediately",
        "Check file system integrity",
        "Review recent system errors",
    ],
    "healthy": [
        "Consider optimizing the index for better performance",
    ],
}

# Reported in indexing stats
HEALTH_LABELS = {"healthy": "healthy", "needs_rebuild": "stale", "corrupted": "corrupted"}


class IndexingOrchestrator:
    """Combines SearchIndex, FilterEngine and CacheLayer over a RecordStore."""

    def __init__(self, store: RecordStore, search_index: SearchIndex = None,
                 filter_engine: FilterEngine = None, cache: CacheLayer = None,
                 heartbeat: Heartbeat = None, clock: Callable[[], datetime] = utc_now,
                 logger: StructuredLogger = None):
        self.store = store
        self.search_index = search_index or SearchIndex(store)
        self.filter_engine = filter_engine or FilterEngine()
        self.cache = cache or CacheLayer()
        self.heartbeat = heartbeat
        self.clock = clock
        self.logger = logger or get_logger("indexing")
        self.last_health_report: Optional[Dict[str, Dict[str, Any]]] = None
        self._queue: List[Tuple[str, str, Any]] = []
        self._processing = False
        store.add_change_listener(self._on_record_changed)

    def _on_record_changed(self, category: str, record_id: str):
        self.cache.invalidate("combined_search:")

    # Index lifecycle

    async def rebuild_all_indexes(self, categories: List[str] = None) -> Dict[str, int]:
        """Rebuild each category index. A failing category is logged and skipped."""
        categories = categories or self.store.list_categories()
        rebuilt = {}

        for category in categories:
            try:
                rebuilt[category] = await self.search_index.rebuild(category)
            except (StoreError, OSError) as e:
                self.logger.log_index_operation("rebuild", category, {"error": str(e)}, status="failed")

        self.cache.clear()
        self.logger.log_operation("indexing.rebuild_all", "success", {"categories": len(rebuilt)})
        return rebuilt

    async def optimize_all_indexes(self) -> Dict[str, int]:
        optimized = {}
        for category in self.search_index.categories():
            try:
                optimized[category] = await asyncio.to_thread(self.search_index.optimize, category)
            except OSError as e:
                self.logger.log_index_operation("optimize", category, {"error": str(e)}, status="failed")
        return optimized

    async def load_indexes(self, categories: List[str] = None) -> Dict[str, bool]:
        """Load persisted indexes; corrupt ones are rebuilt from the store."""
        loaded = {}
        for category in categories or self.store.list_categories():
            try:
                loaded[category] = await asyncio.to_thread(self.search_index.load, category)
            except StoreError as e:
                self.logger.warning(f"Rebuilding corrupted index for {category}: {e}")
                await self.search_index.rebuild(category)
                loaded[category] = True
        return loaded

    # Queries

    async def _load_documents(self, category: str, ids: Sequence[str]) -> Dict[str, Any]:
        contents = await self.store.bulk_read(category, list(ids))
        return {record_id: content for record_id, content in contents.items() if content is not None}

    async def _search_uncached(self, query: str, categories: List[str], filters: List[FilterCriterion],
                               sort: List[SortCriterion], limit: int, offset: int, fuzzy: bool) -> SearchResults:
        results = []

        if query:
            hits = []
            for category in categories:
                hits.extend(self.search_index.search(category, query, fuzzy=fuzzy, limit=None))
            # Scores are comparable across categories; sort is stable within equal scores
            hits.sort(key=lambda hit: -hit.score)

            documents: Dict[str, Dict[str, Any]] = {}
            for category in categories:
                ids = [hit.id for hit in hits if hit.category == category]
                documents[category] = await self._load_documents(category, ids)

            for hit in hits:
                if hit.id in documents[hit.category]:
                    results.append({
                        "id": hit.id,
                        "category": hit.category,
                        "data": documents[hit.category][hit.id],
                        "score": hit.score,
                        "matched_fields": hit.matched_fields,
                    })
        else:
            for category in categories:
                ids = await self.store.collect_ids(category)
                for record_id, data in (await self._load_documents(category, ids)).items():
                    results.append({
                        "id": record_id,
                        "category": category,
                        "data": data,
                        "score": 1.0,
                        "matched_fields": [],
                    })

        if filters:
            kept = self.filter_engine.filter_items([r["data"] for r in results], filters)
            kept_ids = {id(item) for item in kept}
            results = [r for r in results if id(r["data"]) in kept_ids]

        if sort:
            by_data = {id(r["data"]): r for r in results}
            ordered = self.filter_engine.sort_items([r["data"] for r in results], sort)
            results = [by_data[id(item)] for item in ordered]

        total = len(results)
        return SearchResults(
            results=results[offset:offset + limit],
            total=total,
            offset=offset,
            limit=limit,
            has_more=offset + limit < total,
        )

    async def combined_search(self, query: str = "", categories: List[str] = None,
                              filters: Sequence[CriterionLike] = None, sort: Sequence[SortLike] = None,
                              limit: int = 50, offset: int = 0, fuzzy: bool = False) -> SearchResults:
        """
        Full-text search (or a full scan when query is empty) followed by filters, sort and paging.

        Results are cached for the cache's TTL keyed on every argument.
        """
        if limit < 1 or offset < 0:
            raise ValueError(f"Invalid paging: limit={limit}, offset={offset}")

        categories = list(categories or SEARCH_CATEGORIES)
        filters = [_coerce(f, FilterCriterion) for f in filters or []]
        sort = [_coerce(s, SortCriterion) for s in sort or []]

        key = cache_key(
            "combined_search", query, categories,
            filters=[f.model_dump() for f in filters],
            sort=[s.model_dump() for s in sort],
            limit=limit, offset=offset, fuzzy=fuzzy,
        )
        return await self.cache.get_or_compute(
            key, lambda: self._search_uncached(query, categories, filters, sort, limit, offset, fuzzy)
        )

    async def search_clients(self, query: str = "", status: str = None, type: str = None,
                             limit: int = 50, offset: int = 0, fuzzy: bool = False) -> SearchResults:
        filters = []
        if status:
            filters.append(FilterCriterion(field="status", operator="eq", value=status))
        if type:
            filters.append(FilterCriterion(field="type", operator="eq", value=type))
        return await self.combined_search(query, ["clients"], filters, limit=limit, offset=offset, fuzzy=fuzzy)

    async def search_tasks(self, query: str = "", status: str = None, priority: str = None,
                           assignee: str = None, overdue: bool = False,
                           limit: int = 50, offset: int = 0) -> SearchResults:
        filters = []
        if status:
            filters.append(FilterCriterion(field="status", operator="eq", value=status))
        if priority:
            filters.append(FilterCriterion(field="priority", operator="eq", value=priority))
        if assignee:
            filters.append(FilterCriterion(field="assignee", operator="eq", value=assignee))
        if overdue:
            filters.append(FilterCriterion(field="dueDate", operator="lt", value=self.clock()))
            filters.append(FilterCriterion(field="status", operator="ne", value="COMPLETED"))

        sort = [SortCriterion(field="priority", direction="desc"), SortCriterion(field="dueDate")]
        return await self.combined_search(query, ["tasks"], filters, sort, limit=limit, offset=offset)

    async def search_services(self, query: str = "", client_id: str = None, frequency: str = None,
                              status: str = None, min_fee: float = None, max_fee: float = None,
                              limit: int = 50, offset: int = 0) -> SearchResults:
        filters = []
        if client_id:
            filters.append(FilterCriterion(field="clientId", operator="eq", value=client_id))
        if frequency:
            filters.append(FilterCriterion(field="frequency", operator="eq", value=frequency))
        if status:
            filters.append(FilterCriterion(field="status", operator="eq", value=status))
        if min_fee is not None:
            filters.append(FilterCriterion(field="fee", operator="gte", value=min_fee))
        if max_fee is not None:
            filters.append(FilterCriterion(field="fee", operator="lte", value=max_fee))

        sort = [SortCriterion(field="fee", direction="desc"), SortCriterion(field="kind")]
        return await self.combined_search(query, ["services"], filters, sort, limit=limit, offset=offset)

    # Health and stats

    async def check_index_health(self, categories: List[str] = None) -> Dict[str, Dict[str, Any]]:
        """Health, issues and recommendations per category index."""
        categories = categories or sorted(set(self.search_index.categories()) | set(self.store.list_categories()))
        report = {}

        for category in categories:
            checksums = await self.store.collect_checksums(category)
            health = self.search_index.health(category, checksums)
            report[category] = {
                "status": health.status,
                "issues": health.issues,
                "recommendations": list(HEALTH_RECOMMENDATIONS[health.status]),
            }

        self.last_health_report = report
        return report

    async def get_indexing_stats(self) -> Dict[str, Any]:
        search_stats = self.search_index.stats()
        health = await self.check_index_health()

        index_sizes = {}
        for category in search_stats["categories"]:
            path = self.search_index.index_file(category)
            index_sizes[category] = path.stat().st_size if path.exists() else 0

        return {
            "total_documents": sum(c["documents"] for c in search_stats["categories"].values()),
            "total_terms": search_stats["total_terms"],
            "index_sizes": index_sizes,
            "last_updated": {c: s["last_rebuild"] for c, s in search_stats["categories"].items()},
            "health": {c: HEALTH_LABELS[h["status"]] for c, h in health.items()},
            "queue_length": len(self._queue),
            "cache": self.cache.stats(),
        }

    async def perform_maintenance(self) -> MaintenanceReport:
        """Rebuild unhealthy indexes, optimize healthy ones, then drain one queue batch."""
        report = MaintenanceReport(operation="index_maintenance", started_at=self.clock())

        for category, health in (await self.check_index_health()).items():
            try:
                if health["status"] in ("corrupted", "needs_rebuild"):
                    report.issues_found += 1
                    await self.search_index.rebuild(category)
                    report.issues_resolved += 1
                    report.actions_taken.append(f"Rebuilt index for {category}: {', '.join(health['issues'])}")
                else:
                    removed = await asyncio.to_thread(self.search_index.optimize, category)
                    if removed:
                        report.actions_taken.append(f"Optimized index for {category} ({removed} entries removed)")
            except (StoreError, OSError) as e:
                report.errors.append(f"Maintenance failed for {category}: {e}")

        if self._queue:
            processed = await self.process_indexing_queue()
            report.metadata["queue_processed"] = processed

        self.cache.clear()
        report.completed_at = self.clock()

        self.logger.log_operation("indexing.maintenance", "success" if not report.errors else "failed", {
            "issues_found": report.issues_found,
            "issues_resolved": report.issues_resolved,
        })
        return report

    # Background queue

    def queue_for_indexing(self, category: str, record_id: str, content: Any):
        self._queue.append((category, record_id, content))

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    async def process_indexing_queue(self) -> int:
        """Index up to one batch from the queue. A failed batch goes back to the front."""
        if self._processing or not self._queue:
            return 0

        self._processing = True
        batch = self._queue[:QUEUE_BATCH_SIZE]
        del self._queue[:QUEUE_BATCH_SIZE]

        try:
            for category, record_id, content in batch:
                self.search_index.index(category, record_id, content, last_modified=self.clock())
            for category in sorted({item[0] for item in batch}):
                await asyncio.to_thread(self.search_index.save, category)
        except (StoreError, OSError, TypeError, ValueError) as e:
            self.logger.error(f"Failed to process indexing batch: {e}")
            self._queue[:0] = batch
            return 0
        finally:
            self._processing = False

        self.cache.clear()
        self.logger.debug(f"Processed indexing batch: {len(batch)} items")
        return len(batch)

    # Health checks

    def _run_health_check(self):
        report = asyncio.run(self.check_index_health())
        unhealthy = [c for c, h in report.items() if h["status"] != "healthy"]
        self.cache.cleanup()
        if unhealthy:
            self.logger.warning(f"Unhealthy search indexes: {unhealthy}")

    def start_health_checks(self, interval_sec: float = None):
        """Run check_index_health periodically on the heartbeat thread."""
        if self.heartbeat is None:
            self.heartbeat = Heartbeat(logger=self.logger)
        self.heartbeat.register_task(HEALTH_CHECK_TASK, interval_sec or get_health_check_interval(),
                                     self._run_health_check)
        if not self.heartbeat.running:
            self.heartbeat.start()

    def stop_health_checks(self):
        if self.heartbeat is None:
            return
        self.heartbeat.unregister_task(HEALTH_CHECK_TASK)
        if not self.heartbeat.list_tasks():
            self.heartbeat.stop()
