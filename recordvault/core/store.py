"""
Record store - atomic JSON document persistence keyed by (category, id).

Every document lives at <root>/<category>/<id>.json (clients may be nested one level
deeper in portfolio folders). Writes go to a temp file in the same directory and are
renamed into place, so readers never observe a partial document. A per-category metadata
index at <root>/indexes/<category>.json records size, checksum and modification time.
"""

import asyncio
import hashlib
import json
import os
import shutil
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional

from .config import RESERVED_DIRECTORIES
from .errors import RecordNotFound, StoreError
from ..util.logging import StructuredLogger, get_logger

SKIP_DIRECTORIES = {".locks", "snapshots", ".git", "node_modules"}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _calculate_checksum(data: bytes) -> str:
    """Calculate SHA-256 checksum of data."""
    return hashlib.sha256(data).hexdigest()


def serialize_content(content: Any) -> bytes:
    """Serialize a document the way it is written to disk."""
    return json.dumps(content, indent=2, ensure_ascii=False).encode("utf-8")


def validate_record_id(record_id: str):
    """Reject ids that would escape their category directory."""
    if not isinstance(record_id, str) or not record_id.strip():
        raise ValueError("record id cannot be empty")
    if "/" in record_id or "\\" in record_id or ".." in record_id or "\x00" in record_id:
        raise ValueError(f"record id contains illegal characters: {record_id!r}")


@dataclass
class StoredRecord:
    """A document as held on disk."""
    category: str
    id: str
    content: Any
    size_bytes: int
    last_modified: datetime
    checksum: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "id": self.id,
            "content": self.content,
            "size_bytes": self.size_bytes,
            "last_modified": self.last_modified.isoformat(),
            "checksum": self.checksum,
        }


class RecordStore:
    """File-backed store of JSON documents grouped by category."""

    def __init__(self, root, logger: StructuredLogger = None, clock: Callable[[], datetime] = utc_now,
                 bulk_read_concurrency: int = 10):
        self.root = Path(root)
        self.index_path = self.root / "indexes"
        self.snapshot_path = self.root / "snapshots"
        self.logger = logger or get_logger("store")
        self.clock = clock
        self.bulk_read_concurrency = bulk_read_concurrency
        self.search_index = None
        self._change_listeners: List[Callable[[str, str], None]] = []
        self._index_lock = threading.Lock()

        self.root.mkdir(parents=True, exist_ok=True)

    def attach_search_index(self, search_index):
        """Keep a search index current on every write and delete."""
        self.search_index = search_index

    def add_change_listener(self, listener: Callable[[str, str], None]):
        """Call listener(category, record_id) after every write, delete and forget."""
        self._change_listeners.append(listener)

    def _notify_change(self, category: str, record_id: str):
        for listener in self._change_listeners:
            listener(category, record_id)

    # Paths

    def category_path(self, category: str) -> Path:
        validate_record_id(category)
        return self.root / category

    def record_path(self, category: str, record_id: str) -> Path:
        validate_record_id(record_id)
        return self.category_path(category) / f"{record_id}.json"

    def metadata_index_file(self, category: str) -> Path:
        return self.index_path / f"{category}.json"

    def _locate(self, category: str, record_id: str) -> Optional[Path]:
        direct = self.record_path(category, record_id)
        if direct.is_file():
            return direct

        # Nested portfolio folders
        category_dir = self.category_path(category)
        if category_dir.is_dir():
            for candidate in self._walk(category_dir):
                if candidate.stem == record_id:
                    return candidate
        return None

    def _walk(self, directory: Path) -> Iterable[Path]:
        for dirpath, dirnames, filenames in os.walk(directory):
            dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRECTORIES)
            for filename in sorted(filenames):
                if is_record_file(filename):
                    yield Path(dirpath) / filename

    # Reads

    def _read_sync(self, category: str, record_id: str) -> StoredRecord:
        path = self._locate(category, record_id)
        if path is None:
            raise RecordNotFound(category, record_id)

        try:
            raw = path.read_bytes()
            mtime = path.stat().st_mtime
        except FileNotFoundError:
            raise RecordNotFound(category, record_id)

        try:
            content = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise StoreError(f"Unreadable document {category}/{record_id}: {e}")

        return StoredRecord(
            category=category,
            id=record_id,
            content=content,
            size_bytes=len(raw),
            last_modified=datetime.fromtimestamp(mtime, tz=timezone.utc),
            checksum=_calculate_checksum(raw),
        )

    async def read(self, category: str, record_id: str) -> Any:
        """Return the parsed content of a document. Raises RecordNotFound."""
        record = await asyncio.to_thread(self._read_sync, category, record_id)
        return record.content

    async def stat(self, category: str, record_id: str) -> StoredRecord:
        """Return the document along with size, checksum and modification time."""
        return await asyncio.to_thread(self._read_sync, category, record_id)

    async def exists(self, category: str, record_id: str) -> bool:
        return await asyncio.to_thread(lambda: self._locate(category, record_id) is not None)

    async def bulk_read(self, category: str, ids: List[str]) -> Dict[str, Optional[Any]]:
        """
        Read many documents with bounded concurrency.

        Ids that are missing or unreadable map to None.
        """
        semaphore = asyncio.Semaphore(self.bulk_read_concurrency)
        results: Dict[str, Optional[Any]] = {}

        async def read_one(record_id: str):
            async with semaphore:
                try:
                    results[record_id] = await self.read(category, record_id)
                except StoreError as e:
                    self.logger.warning(f"Bulk read skipped {category}/{record_id}: {e}")
                    results[record_id] = None

        await asyncio.gather(*(read_one(record_id) for record_id in ids))
        return {record_id: results.get(record_id) for record_id in ids}

    # Writes

    def _write_sync(self, category: str, record_id: str, content: Any) -> StoredRecord:
        path = self.record_path(category, record_id)
        existing = self._locate(category, record_id)
        if existing is not None:
            path = existing
        path.parent.mkdir(parents=True, exist_ok=True)

        data = serialize_content(content)
        write_atomic(path, data)

        now = self.clock()
        record = StoredRecord(
            category=category,
            id=record_id,
            content=content,
            size_bytes=len(data),
            last_modified=now,
            checksum=_calculate_checksum(data),
        )
        self._update_metadata_index(category, record_id, record)
        return record

    async def write(self, category: str, record_id: str, content: Any) -> StoredRecord:
        """Atomically write a document, then refresh the metadata and search indexes."""
        record = await asyncio.to_thread(self._write_sync, category, record_id, content)

        if self.search_index is not None:
            self.search_index.index(category, record_id, content, last_modified=record.last_modified,
                                    checksum=record.checksum)
        self._notify_change(category, record_id)

        self.logger.log_record_operation("write", category, record_id, details={"size": record.size_bytes})
        return record

    async def bulk_write(self, category: str, items: Dict[str, Any]) -> List[StoredRecord]:
        """Write several documents in the same category."""
        records = []
        for record_id, content in items.items():
            records.append(await self.write(category, record_id, content))
        return records

    def _delete_sync(self, category: str, record_id: str) -> bool:
        path = self._locate(category, record_id)
        if path is None:
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        self._remove_from_metadata_index(category, record_id)
        return True

    async def delete(self, category: str, record_id: str) -> bool:
        """Delete a document. Deleting a missing document is a no-op returning False."""
        deleted = await asyncio.to_thread(self._delete_sync, category, record_id)

        if self.search_index is not None:
            self.search_index.remove(category, record_id)
        self._notify_change(category, record_id)

        if deleted:
            self.logger.log_record_operation("delete", category, record_id)
        return deleted

    async def forget(self, category: str, record_id: str, update_metadata: bool = True):
        """
        Drop index entries for a document that was removed outside delete().

        With update_metadata=False the metadata index file is left as it is on disk.
        """
        if update_metadata:
            await asyncio.to_thread(self._remove_from_metadata_index, category, record_id)
        if self.search_index is not None:
            self.search_index.remove(category, record_id)
        self._notify_change(category, record_id)

    # Listing

    async def list_files(self, category: str) -> AsyncIterator[Path]:
        """
        Lazily yield every document path in a category, recursing into subfolders.

        Each call starts a fresh walk; directories are scanned one at a time.
        """
        category_dir = self.category_path(category)
        pending = [category_dir]

        while pending:
            directory = pending.pop()
            try:
                entries = await asyncio.to_thread(lambda d=directory: sorted(os.scandir(d), key=lambda e: e.name))
            except FileNotFoundError:
                continue

            subdirectories = []
            for entry in entries:
                if entry.is_dir(follow_symlinks=False):
                    if entry.name not in SKIP_DIRECTORIES:
                        subdirectories.append(Path(entry.path))
                elif is_record_file(entry.name):
                    yield Path(entry.path)

            pending.extend(reversed(subdirectories))

    async def list_ids(self, category: str) -> AsyncIterator[str]:
        """Lazily yield the id of every document in a category."""
        async for path in self.list_files(category):
            yield path.stem

    async def collect_ids(self, category: str) -> List[str]:
        return [record_id async for record_id in self.list_ids(category)]

    async def collect_checksums(self, category: str) -> Dict[str, str]:
        """Map each document id in a category to the checksum of its bytes on disk."""
        checksums = {}
        async for path in self.list_files(category):
            try:
                data = await asyncio.to_thread(path.read_bytes)
            except FileNotFoundError:
                continue
            checksums[path.stem] = _calculate_checksum(data)
        return checksums

    def list_categories(self) -> List[str]:
        """Return every category directory currently present under the root."""
        if not self.root.is_dir():
            return []
        return sorted(
            entry.name for entry in self.root.iterdir()
            if entry.is_dir() and entry.name not in RESERVED_DIRECTORIES and entry.name not in SKIP_DIRECTORIES
        )

    async def search_files(self, category: str, predicate: Callable[[Any], bool]) -> List[Any]:
        """Return the content of every readable document matching predicate."""
        matches = []
        async for record_id in self.list_ids(category):
            try:
                content = await self.read(category, record_id)
            except StoreError as e:
                self.logger.warning(f"Search skipped {category}/{record_id}: {e}")
                continue
            if predicate(content):
                matches.append(content)
        return matches

    # Metadata index

    def _load_metadata_index(self, category: str) -> Dict[str, Any]:
        index_file = self.metadata_index_file(category)
        if not index_file.exists():
            return {}
        try:
            return json.loads(index_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            self.logger.warning(f"Metadata index for {category} is corrupt, starting fresh")
            return {}

    def _update_metadata_index(self, category: str, record_id: str, record: StoredRecord):
        with self._index_lock:
            index = self._load_metadata_index(category)
            index[record_id] = {
                "lastModified": record.last_modified.isoformat(),
                "size": record.size_bytes,
                "checksum": record.checksum,
            }
            self.index_path.mkdir(parents=True, exist_ok=True)
            write_atomic(self.metadata_index_file(category), serialize_content(index))

    def _remove_from_metadata_index(self, category: str, record_id: str):
        with self._index_lock:
            index = self._load_metadata_index(category)
            if record_id in index:
                del index[record_id]
                write_atomic(self.metadata_index_file(category), serialize_content(index))

    def get_metadata(self, category: str) -> Dict[str, Any]:
        """Return the metadata index of a category."""
        with self._index_lock:
            return self._load_metadata_index(category)

    async def verify_integrity(self, category: str, record_id: str) -> bool:
        """Compare a document's current checksum with the one recorded at write time."""
        entry = self.get_metadata(category).get(record_id)
        if entry is None:
            return True
        record = await self.stat(category, record_id)
        if record.checksum != entry["checksum"]:
            self.logger.warning(f"Data integrity check failed for {category}/{record_id}")
            return False
        return True

    # Snapshots

    def _create_snapshot_sync(self) -> Path:
        timestamp = self.clock().strftime("%Y%m%dT%H%M%S%f")
        snapshot_dir = self.snapshot_path / f"snapshot_{timestamp}"
        snapshot_dir.mkdir(parents=True, exist_ok=True)

        for entry in self.root.iterdir():
            if entry.name in SKIP_DIRECTORIES:
                continue
            if entry.is_dir():
                shutil.copytree(entry, snapshot_dir / entry.name)
            else:
                shutil.copy2(entry, snapshot_dir / entry.name)

        files = [p for p in snapshot_dir.rglob("*") if p.is_file()]
        digest = hashlib.sha256()
        for path in sorted(files):
            digest.update(path.read_bytes())

        meta = {
            "timestamp": self.clock().isoformat(),
            "totalFiles": len(files),
            "checksum": digest.hexdigest(),
        }
        (snapshot_dir / "snapshot.meta.json").write_text(json.dumps(meta, indent=2), encoding="utf-8")
        return snapshot_dir

    async def create_snapshot(self) -> Path:
        """Copy the entire store (minus snapshots and locks) into snapshots/."""
        snapshot_dir = await asyncio.to_thread(self._create_snapshot_sync)
        self.logger.log_operation("store.snapshot", "success", {"path": str(snapshot_dir)})
        return snapshot_dir

    def list_snapshots(self) -> List[str]:
        if not self.snapshot_path.is_dir():
            return []
        return sorted(
            entry.name for entry in self.snapshot_path.iterdir()
            if entry.is_dir() and entry.name.startswith("snapshot_")
        )

    def _restore_snapshot_sync(self, snapshot_name: str):
        snapshot_dir = self.snapshot_path / snapshot_name
        if not snapshot_dir.is_dir():
            raise StoreError(f"Snapshot not found: {snapshot_name}")

        for entry in self.root.iterdir():
            if entry.name in SKIP_DIRECTORIES:
                continue
            if entry.is_dir():
                shutil.rmtree(entry)
            else:
                entry.unlink()

        for entry in snapshot_dir.iterdir():
            if entry.name == "snapshot.meta.json":
                continue
            if entry.is_dir():
                shutil.copytree(entry, self.root / entry.name)
            else:
                shutil.copy2(entry, self.root / entry.name)

    async def restore_snapshot(self, snapshot_name: str):
        """Replace the live store with the contents of a snapshot."""
        await asyncio.to_thread(self._restore_snapshot_sync, snapshot_name)
        self.logger.log_operation("store.restore_snapshot", "success", {"snapshot": snapshot_name})

    def cleanup_old_snapshots(self, keep: int = 5) -> List[str]:
        """Delete all but the newest `keep` snapshots, returning the names removed."""
        snapshots = self.list_snapshots()
        removed = snapshots[:-keep] if keep > 0 else snapshots
        for name in removed:
            shutil.rmtree(self.snapshot_path / name)
        if removed:
            self.logger.log_operation("store.cleanup_snapshots", "success", {"removed": len(removed)})
        return removed

    # Statistics

    async def get_storage_stats(self) -> Dict[str, Any]:
        """Summarize file counts per category and total size on disk."""
        stats = {
            "storage_path": str(self.root),
            "snapshot_path": str(self.snapshot_path),
            "categories": {},
            "total_files": 0,
            "total_size": 0,
            "last_snapshot": None,
        }

        for category in self.list_categories():
            count = 0
            async for _ in self.list_files(category):
                count += 1
            stats["categories"][category] = count
            stats["total_files"] += count

        stats["total_size"] = await asyncio.to_thread(directory_size, self.root)

        snapshots = self.list_snapshots()
        if snapshots:
            stats["last_snapshot"] = snapshots[-1]

        return stats


def is_record_file(filename: str) -> bool:
    """True for document files; index files and temp files are excluded."""
    return filename.endswith(".json") and filename != "index.json" and not filename.endswith(".tmp")


def write_atomic(path: Path, data: bytes):
    """Write bytes to path via a same-directory temp file and rename."""
    path = Path(path)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def directory_size(path: Path) -> int:
    total = 0
    for dirpath, _, filenames in os.walk(path):
        for filename in filenames:
            try:
                total += os.path.getsize(os.path.join(dirpath, filename))
            except OSError:
                continue
    return total
