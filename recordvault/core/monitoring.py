"""
Usage metrics and fallback data for external collaborators, kept under monitoring/.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .errors import RecordNotFound, StoreError
from .store import RecordStore, utc_now
from ..util.logging import StructuredLogger, get_logger

MONITORING_CATEGORY = "monitoring"
USAGE_METRICS_ID = "usage-metrics"
FALLBACK_DATA_ID = "fallback-data"
USAGE_RETENTION_DAYS = 30
DEFAULT_FALLBACK_MINUTES = 60


class UsageMonitor:
    """Records per-kind request counts and caches the last good response of each kind."""

    def __init__(self, store: RecordStore, clock: Callable[[], datetime] = utc_now,
                 logger: StructuredLogger = None):
        self.store = store
        self.clock = clock
        self.logger = logger or get_logger("monitoring")

    async def _load(self, record_id: str) -> List[Dict[str, Any]]:
        try:
            data = await self.store.read(MONITORING_CATEGORY, record_id)
        except RecordNotFound:
            return []
        except StoreError as e:
            self.logger.warning(f"Discarding unreadable {record_id}: {e}")
            return []
        return data if isinstance(data, list) else []

    async def get_usage_metrics(self) -> List[Dict[str, Any]]:
        return await self._load(USAGE_METRICS_ID)

    async def record_usage(self, kind: str, response_time: float, success: bool) -> Dict[str, Any]:
        """Count one request of the given kind and return its updated metrics."""
        metrics = await self.get_usage_metrics()
        now = self.clock()

        entry = next((m for m in metrics if m.get("kind") == kind), None)
        if entry is None:
            entry = {
                "kind": kind,
                "requestCount": 0,
                "errorCount": 0,
                "lastRequestTime": None,
                "averageResponseTime": 0.0,
                "dailyUsage": [],
            }
            metrics.append(entry)

        entry["requestCount"] += 1
        entry["lastRequestTime"] = now.isoformat()
        if not success:
            entry["errorCount"] += 1
        # Running average over every request so far
        count = entry["requestCount"]
        entry["averageResponseTime"] = entry["averageResponseTime"] + (response_time - entry["averageResponseTime"]) / count

        today = now.date().isoformat()
        daily = next((d for d in entry["dailyUsage"] if d["date"] == today), None)
        if daily is None:
            daily = {"date": today, "requests": 0, "errors": 0}
            entry["dailyUsage"].append(daily)
        daily["requests"] += 1
        if not success:
            daily["errors"] += 1

        cutoff = (now - timedelta(days=USAGE_RETENTION_DAYS)).date().isoformat()
        entry["dailyUsage"] = sorted(
            (d for d in entry["dailyUsage"] if d["date"] >= cutoff),
            key=lambda d: d["date"],
        )

        await self.store.write(MONITORING_CATEGORY, USAGE_METRICS_ID, metrics)
        return entry

    async def get_usage_statistics(self, kind: str = None) -> List[Dict[str, Any]]:
        metrics = await self.get_usage_metrics()
        if kind is not None:
            return [m for m in metrics if m.get("kind") == kind]
        return metrics

    async def get_usage_summary(self) -> Dict[str, Any]:
        """Totals across kinds plus an overall health verdict from the error rate."""
        metrics = await self.get_usage_metrics()
        total_requests = sum(m["requestCount"] for m in metrics)
        total_errors = sum(m["errorCount"] for m in metrics)
        error_rate = total_errors / total_requests if total_requests else 0.0

        if error_rate > 0.1:
            health = "critical"
        elif error_rate > 0.05:
            health = "degraded"
        else:
            health = "healthy"

        return {
            "overall_health": health,
            "total_requests": total_requests,
            "total_errors": total_errors,
            "error_rate": round(error_rate, 4),
            "average_response_time": (
                sum(m["averageResponseTime"] for m in metrics) / len(metrics) if metrics else 0.0
            ),
        }

    # Fallback data

    async def get_fallback_data(self) -> List[Dict[str, Any]]:
        return await self._load(FALLBACK_DATA_ID)

    async def store_fallback_data(self, kind: str, data: Any,
                                  expiration_minutes: float = DEFAULT_FALLBACK_MINUTES):
        """Remember the last successful response of a kind until it expires."""
        fallback = [f for f in await self.get_fallback_data() if f.get("kind") != kind]
        now = self.clock()
        fallback.append({
            "kind": kind,
            "lastSuccessfulResponse": data,
            "cachedAt": now.isoformat(),
            "expiresAt": (now + timedelta(minutes=expiration_minutes)).isoformat(),
        })
        await self.store.write(MONITORING_CATEGORY, FALLBACK_DATA_ID, fallback)

    async def get_fallback_response(self, kind: str) -> Optional[Any]:
        """Return cached data for a kind, or None when missing or expired."""
        cached = next((f for f in await self.get_fallback_data() if f.get("kind") == kind), None)
        if cached is None:
            return None

        if self.clock() > datetime.fromisoformat(cached["expiresAt"]):
            self.logger.warning(f"Fallback data expired for {kind}")
            return None
        return cached["lastSuccessfulResponse"]

    async def cleanup_expired_fallback_data(self) -> int:
        """Drop expired fallback entries. Returns how many were removed."""
        fallback = await self.get_fallback_data()
        now = self.clock()
        valid = [f for f in fallback if datetime.fromisoformat(f["expiresAt"]) >= now]
        removed = len(fallback) - len(valid)

        if removed:
            await self.store.write(MONITORING_CATEGORY, FALLBACK_DATA_ID, valid)
            self.logger.info(f"Cleaned up {removed} expired fallback entries")
        return removed
