"""
Exception types raised by the storage engine.

Per-file problems during audits and cleanups are reported in structured results rather
than raised; these exceptions cover contract violations and whole-operation failures.
"""


class StoreError(Exception):
    """Custom exception for record store operations."""
    pass


class RecordNotFound(StoreError):
    """Raised when a (category, id) pair has no document on disk."""

    def __init__(self, category: str, record_id: str):
        super().__init__(f"Record not found: {category}/{record_id}")
        self.category = category
        self.record_id = record_id


class ChecksumMismatch(StoreError):
    """Raised when a file's content no longer matches its audited checksum."""

    def __init__(self, path: str, expected: str, actual: str):
        super().__init__(f"Checksum mismatch for {path}: expected {expected[:12]}, got {actual[:12]}")
        self.path = path
        self.expected = expected
        self.actual = actual


class BackupError(Exception):
    """Custom exception for backup operations."""
    pass


class RestoreError(Exception):
    """Custom exception for restore operations."""
    pass


class MigrationError(Exception):
    """Custom exception for system-of-record migration."""
    pass


class CompressionError(Exception):
    """Custom exception for compression operations."""
    pass


class MaintenanceError(Exception):
    """Custom exception for housekeeping operations."""
    pass
