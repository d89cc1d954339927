"""
Storage engine configuration.

Values are read from the environment once at import time. Components never read these
module globals directly; they receive a StorageConfig (see StorageConfig.from_env) so
tests and embedding applications can construct engines with explicit settings.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List

# Storage root configuration
STORAGE_PATH = os.getenv("STORAGE_PATH", "./storage")
SYSTEM_OF_RECORD_PATH = os.getenv("SYSTEM_OF_RECORD_PATH", "./data/records.db")

DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# Cache configuration
CACHE_TTL_SEC = int(os.getenv("CACHE_TTL_SEC", "300"))

# Cleanup configuration
CLEANUP_BATCH_SIZE = int(os.getenv("CLEANUP_BATCH_SIZE", "50"))
CLEANUP_BATCH_PAUSE_SEC = float(os.getenv("CLEANUP_BATCH_PAUSE_SEC", "0.1"))

# Index health checks
HEALTH_CHECK_INTERVAL_SEC = int(os.getenv("HEALTH_CHECK_INTERVAL_SEC", "300"))

# Compression
COMPRESSION_THRESHOLD = float(os.getenv("COMPRESSION_THRESHOLD", "0.9"))

# Filtering
UNKNOWN_FILTER_OPERATOR_POLICY = os.getenv("UNKNOWN_FILTER_OPERATOR_POLICY", "pass")  # pass|reject

# Reads/writes in flight for bulk reads
BULK_READ_CONCURRENCY = int(os.getenv("BULK_READ_CONCURRENCY", "10"))

DEFAULT_FIELD_WEIGHTS: Dict[str, float] = {
    "name": 3.0,
    "title": 3.0,
    "companyName": 3.0,
    "identifier": 2.5,
    "registeredNumber": 2.5,
    "companyNumber": 2.5,
    "id": 2.0,
    "email": 2.0,
    "mainEmail": 2.0,
    "description": 1.5,
    "tags": 1.5,
}

DEFAULT_CATEGORIES: List[str] = [
    "clients",
    "tasks",
    "services",
    "config",
    "calendar",
    "events",
    "tax-calculations",
    "templates",
    "service-templates",
    "task-templates",
    "users",
]

# Directories under the storage root that are owned by the engine, not categories
RESERVED_DIRECTORIES = ["indexes", "audit-backups", "monitoring", "snapshots", ".locks"]


@dataclass
class StorageConfig:
    """Settings threaded into every engine component."""
    root: Path
    system_of_record_path: Path
    cache_ttl_sec: int = 300
    cleanup_batch_size: int = 50
    cleanup_batch_pause_sec: float = 0.1
    health_check_interval_sec: int = 300
    compression_threshold: float = 0.9
    unknown_filter_operator_policy: str = "pass"
    bulk_read_concurrency: int = 10
    field_weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_FIELD_WEIGHTS))
    categories: List[str] = field(default_factory=lambda: list(DEFAULT_CATEGORIES))

    @classmethod
    def from_env(cls) -> "StorageConfig":
        """Build a config from the environment-derived module settings."""
        return cls(
            root=Path(STORAGE_PATH),
            system_of_record_path=Path(SYSTEM_OF_RECORD_PATH),
            cache_ttl_sec=CACHE_TTL_SEC,
            cleanup_batch_size=CLEANUP_BATCH_SIZE,
            cleanup_batch_pause_sec=CLEANUP_BATCH_PAUSE_SEC,
            health_check_interval_sec=HEALTH_CHECK_INTERVAL_SEC,
            compression_threshold=COMPRESSION_THRESHOLD,
            unknown_filter_operator_policy=UNKNOWN_FILTER_OPERATOR_POLICY,
            bulk_read_concurrency=BULK_READ_CONCURRENCY,
        )

    def validate(self) -> List[str]:
        """Return a list of configuration issues (empty when valid)."""
        return validate_storage_config(self)


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def get_health_check_interval():
    """Get index health check interval in seconds."""
    return HEALTH_CHECK_INTERVAL_SEC


def validate_storage_config(config: StorageConfig = None) -> List[str]:
    """Validate storage configuration and return any issues."""
    config = config or StorageConfig.from_env()
    issues = []

    if config.cache_ttl_sec < 0:
        issues.append("CACHE_TTL_SEC must be >= 0")

    if config.cleanup_batch_size < 1:
        issues.append("CLEANUP_BATCH_SIZE must be >= 1")

    if config.cleanup_batch_pause_sec < 0:
        issues.append("CLEANUP_BATCH_PAUSE_SEC must be >= 0")

    if config.health_check_interval_sec < 1:
        issues.append("HEALTH_CHECK_INTERVAL_SEC must be >= 1")

    if not 0 < config.compression_threshold <= 1:
        issues.append("COMPRESSION_THRESHOLD must be in (0, 1]")

    if config.unknown_filter_operator_policy not in ["pass", "reject"]:
        issues.append(f"Invalid UNKNOWN_FILTER_OPERATOR_POLICY: {config.unknown_filter_operator_policy}")

    if config.bulk_read_concurrency < 1:
        issues.append("BULK_READ_CONCURRENCY must be >= 1")

    return issues
