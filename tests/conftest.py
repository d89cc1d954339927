"""
Shared fixtures for the storage engine tests.
"""

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from recordvault.core.db import SqliteSystemOfRecord
from recordvault.core.store import RecordStore

FIXED_NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def write_json(root: Path, category: str, name: str, content) -> Path:
    """Place a document on disk without going through the store."""
    path = Path(root) / category / f"{name}.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(content, indent=2), encoding="utf-8")
    return path


@pytest.fixture
def storage_root(tmp_path):
    return tmp_path / "storage"


@pytest.fixture
def store(storage_root):
    return RecordStore(storage_root, clock=lambda: FIXED_NOW)


@pytest.fixture
def system_of_record(tmp_path):
    return SqliteSystemOfRecord(tmp_path / "records.db")
