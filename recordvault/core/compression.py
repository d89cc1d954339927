"""
Gzip codec for cold documents, backups and whole directories.
"""

import asyncio
import fnmatch
import gzip
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import CompressionError
from ..util.formatting import format_bytes
from ..util.logging import StructuredLogger, get_logger

DEFAULT_EXTENSIONS = [".json", ".txt", ".log"]
DEFAULT_EXCLUDE_PATTERNS = ["node_modules", ".git", "compressed"]


@dataclass
class DirectoryCompressionResult:
    files_considered: int = 0
    files_compressed: int = 0
    bytes_saved: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "files_considered": self.files_considered,
            "files_compressed": self.files_compressed,
            "bytes_saved": self.bytes_saved,
            "errors": self.errors,
        }


class CompressionCodec:
    """Lossless gzip compression of bytes, JSON values and files."""

    def __init__(self, threshold: float = 0.9, level: int = 9, logger: StructuredLogger = None):
        if not 0 < threshold <= 1:
            raise ValueError(f"threshold must be in (0, 1]: {threshold}")
        self.threshold = threshold
        self.level = level
        self.logger = logger or get_logger("compression")

    def compress(self, data: bytes) -> bytes:
        # mtime=0 keeps output deterministic for identical input
        return gzip.compress(data, compresslevel=self.level, mtime=0)

    def decompress(self, data: bytes) -> bytes:
        try:
            return gzip.decompress(data)
        except (OSError, EOFError) as e:
            raise CompressionError(f"Failed to decompress data: {e}")

    def compress_json(self, value: Any) -> bytes:
        return self.compress(json.dumps(value, ensure_ascii=False).encode("utf-8"))

    def decompress_json(self, data: bytes) -> Any:
        try:
            return json.loads(self.decompress(data).decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CompressionError(f"Decompressed data is not JSON: {e}")

    def _compress_file_sync(self, path: Path) -> Path:
        path = Path(path)
        if not path.is_file():
            raise CompressionError(f"File not found: {path}")
        target = path.with_name(path.name + ".gz")
        original = path.read_bytes()
        compressed = self.compress(original)
        target.write_bytes(compressed)

        if original:
            reduction = (len(original) - len(compressed)) / len(original) * 100
            self.logger.debug(f"Compressed file: {path} ({reduction:.2f}% reduction)")
        return target

    async def compress_file(self, path) -> Path:
        """Write <path>.gz next to path and return its location. The original is kept."""
        return await asyncio.to_thread(self._compress_file_sync, Path(path))

    def _decompress_file_sync(self, path: Path, output: Optional[Path]) -> Path:
        path = Path(path)
        if not path.is_file():
            raise CompressionError(f"File not found: {path}")
        if output is None:
            output = path.with_suffix("") if path.suffix == ".gz" else path.with_name(path.name + ".out")
        output = Path(output)
        output.write_bytes(self.decompress(path.read_bytes()))
        return output

    async def decompress_file(self, path, output=None) -> Path:
        """Decompress a .gz file, by default next to it without the .gz suffix."""
        return await asyncio.to_thread(self._decompress_file_sync, Path(path), output)

    def _should_compress(self, path: Path, root: Path, extensions: List[str], min_size: int,
                         exclude_patterns: List[str]) -> bool:
        if path.name.endswith(".gz"):
            return False

        parts = path.relative_to(root).parts
        for pattern in exclude_patterns:
            if any(fnmatch.fnmatch(part, pattern) for part in parts):
                return False

        if path.suffix not in extensions:
            return False

        try:
            return path.stat().st_size >= min_size
        except OSError:
            return False

    def _compress_directory_sync(self, directory: Path, extensions: List[str], min_size: int,
                                 exclude_patterns: List[str], threshold: float) -> DirectoryCompressionResult:
        result = DirectoryCompressionResult()

        for path in sorted(p for p in Path(directory).rglob("*") if p.is_file()):
            if not self._should_compress(path, directory, extensions, min_size, exclude_patterns):
                continue
            result.files_considered += 1

            target = path.with_name(path.name + ".gz")
            try:
                original = path.read_bytes()
                compressed = self.compress(original)
                if len(compressed) < len(original) * threshold:
                    target.write_bytes(compressed)
                    path.unlink()
                    result.files_compressed += 1
                    result.bytes_saved += len(original) - len(compressed)
            except OSError as e:
                if target.exists() and path.exists():
                    target.unlink()
                result.errors.append(f"Failed to compress {path}: {e}")
                self.logger.warning(f"Failed to compress {path}: {e}")

        return result

    async def compress_directory(self, directory, extensions: List[str] = None, min_size: int = 1024,
                                 exclude_patterns: List[str] = None, threshold: float = None) -> DirectoryCompressionResult:
        """
        Compress every eligible file under directory in place.

        A file is replaced by its .gz only when the compressed form is smaller than
        threshold x original size (the codec threshold unless one is given); otherwise the
        original is left untouched. Exclude patterns are names or globs matched against each
        path component.
        """
        directory = Path(directory)
        if not directory.is_dir():
            raise CompressionError(f"Directory not found: {directory}")
        if threshold is not None and not 0 < threshold <= 1:
            raise ValueError(f"threshold must be in (0, 1]: {threshold}")

        result = await asyncio.to_thread(
            self._compress_directory_sync,
            directory,
            extensions or DEFAULT_EXTENSIONS,
            min_size,
            DEFAULT_EXCLUDE_PATTERNS if exclude_patterns is None else exclude_patterns,
            self.threshold if threshold is None else threshold,
        )

        self.logger.log_operation("compression.directory", "success", {
            "path": str(directory),
            "files_compressed": result.files_compressed,
            "saved": format_bytes(result.bytes_saved),
        })
        return result

    def _stats_sync(self, directory: Path) -> Dict[str, Any]:
        stats = {
            "total_files": 0,
            "compressed_files": 0,
            "original_size": 0,
            "compressed_size": 0,
            "compression_ratio": 0.0,
        }
        if not directory.is_dir():
            return stats

        for dirpath, _, filenames in os.walk(directory):
            for filename in filenames:
                size = os.path.getsize(os.path.join(dirpath, filename))
                if filename.endswith(".gz"):
                    stats["compressed_files"] += 1
                    stats["compressed_size"] += size
                else:
                    stats["total_files"] += 1
                    stats["original_size"] += size

        if stats["original_size"] > 0:
            ratio = (stats["original_size"] - stats["compressed_size"]) / stats["original_size"] * 100
            stats["compression_ratio"] = round(ratio, 2)
        return stats

    async def get_compression_stats(self, directory) -> Dict[str, Any]:
        """Count plain vs .gz files under directory and their sizes."""
        return await asyncio.to_thread(self._stats_sync, Path(directory))
