"""
Tests for configuration validation.
"""

from pathlib import Path

import pytest

from recordvault.core.config import (
    DEFAULT_CATEGORIES,
    StorageConfig,
    debug_enabled,
    validate_storage_config,
)


@pytest.fixture
def config(tmp_path):
    return StorageConfig(root=tmp_path / "storage", system_of_record_path=tmp_path / "records.db")


class TestStorageConfig:
    """Test StorageConfig defaults and validation."""

    def test_defaults_are_valid(self, config):
        assert config.validate() == []
        assert config.categories == DEFAULT_CATEGORIES
        assert config.field_weights["name"] == 3.0

    def test_defaults_not_shared(self, config, tmp_path):
        config.categories.append("extra")
        other = StorageConfig(root=tmp_path, system_of_record_path=tmp_path / "db")
        assert "extra" not in other.categories

    @pytest.mark.parametrize("field,value,message", [
        ("cache_ttl_sec", -1, "CACHE_TTL_SEC must be >= 0"),
        ("cleanup_batch_size", 0, "CLEANUP_BATCH_SIZE must be >= 1"),
        ("cleanup_batch_pause_sec", -0.5, "CLEANUP_BATCH_PAUSE_SEC must be >= 0"),
        ("health_check_interval_sec", 0, "HEALTH_CHECK_INTERVAL_SEC must be >= 1"),
        ("compression_threshold", 0, "COMPRESSION_THRESHOLD must be in (0, 1]"),
        ("unknown_filter_operator_policy", "maybe", "Invalid UNKNOWN_FILTER_OPERATOR_POLICY: maybe"),
        ("bulk_read_concurrency", 0, "BULK_READ_CONCURRENCY must be >= 1"),
    ])
    def test_invalid_values(self, config, field, value, message):
        setattr(config, field, value)
        assert validate_storage_config(config) == [message]

    def test_from_env_uses_module_settings(self):
        config = StorageConfig.from_env()
        assert isinstance(config.root, Path)
        assert config.unknown_filter_operator_policy in ("pass", "reject")


class TestDebug:

    def test_debug_enabled(self, monkeypatch):
        monkeypatch.setenv("DEBUG", "true")
        assert debug_enabled() is True

        monkeypatch.setenv("DEBUG", "false")
        assert debug_enabled() is False
