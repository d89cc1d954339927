"""
Structured logging for storage, index, audit and cleanup operations.
"""

import logging
from typing import Any, Dict, List

from ..core.config import debug_enabled

class StructuredLogger:
    """Structured logger for record store, search index, audit and cleanup operations."""

    def __init__(self, name: str = "recordvault"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.DEBUG if debug_enabled() else logging.INFO)

        # Child loggers propagate to the package logger, which owns the handler
        if not self.logger.handlers and "." not in name:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        if status in ("failed", "error"):
            self.logger.error(message)
        elif status in ("warning", "skipped"):
            self.logger.warning(message)
        else:
            self.logger.info(message)

    def log_record_operation(self, operation: str, category: str, record_id: str, status: str = "success", details: Dict[str, Any] = None):
        """Log a record store operation."""
        log_details = {"category": category, "record_id": record_id}
        if details:
            log_details.update(details)

        self.log_operation(f"store.{operation}", status, log_details)

    def log_index_operation(self, operation: str, category: str, details: Dict[str, Any] = None, status: str = "success"):
        """Log a search index operation."""
        log_details = {"category": category}
        if details:
            log_details.update(details)

        self.log_operation(f"index.{operation}", status, log_details)

    def log_audit_finding(self, category: str, file_name: str, status: str, recommendation: str, reason: str = ""):
        """Log a single audit classification."""
        log_details = {
            "category": category,
            "file_name": file_name,
            "classification": status,
            "recommendation": recommendation,
        }
        if reason:
            log_details["reason"] = reason[:100]

        self.logger.debug(f"Operation: audit.finding, Status: classified, Details: {log_details}")

    def log_audit_summary(self, total_files: int, total_size: int, details: Dict[str, Any] = None):
        """Log audit completion."""
        log_details = {"total_files": total_files, "total_size": total_size}
        if details:
            log_details.update(details)

        self.log_operation("audit.completed", "success", log_details)

    def log_cleanup_phase(self, phase: str, status: str = "started", details: Dict[str, Any] = None):
        """Log a cleanup phase transition."""
        self.log_operation(f"cleanup.{phase}", status, details)

    def log_backup(self, backup_path: str, files_backed_up: int, status: str = "success", details: Dict[str, Any] = None):
        """Log backup creation."""
        log_details = {"backup_path": backup_path, "files_backed_up": files_backed_up}
        if details:
            log_details.update(details)

        self.log_operation("backup.created", status, log_details)

    def log_heartbeat_task(self, task_name: str, start_time: float, end_time: float, status: str = "success", details: Dict[str, Any] = None):
        """Log heartbeat task execution."""
        duration_ms = round((end_time - start_time) * 1000, 2)
        log_details = {"duration_ms": duration_ms}
        if details:
            log_details.update(details)
        elif status == "success":
            log_details["message"] = f"Heartbeat task '{task_name}' completed in {duration_ms}ms"
        elif status == "failed":
            log_details["message"] = f"Heartbeat task '{task_name}' failed after {duration_ms}ms"

        self.log_operation(f"heartbeat.{task_name}", status, log_details)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)

# Global logger instance
logger = StructuredLogger()


def get_logger(name: str = None) -> StructuredLogger:
    """Return the shared logger, or a named child logger."""
    if name is None:
        return logger
    return StructuredLogger(f"recordvault.{name}")


def audit_event(event_type: str, identifiers: Dict[str, Any], payload: Dict[str, Any] = None,
                sensitive_fields: List[str] = None, event_logger: StructuredLogger = None):
    """General audit event logging with privacy controls, through event_logger when given."""
    if sensitive_fields is None:
        sensitive_fields = ['content', 'data', 'password', 'secret', 'token']

    log_details = identifiers.copy() if identifiers else {}

    if payload:
        log_details["payload"] = sanitize_payload(payload, sensitive_fields=sensitive_fields)

    (event_logger or logger).log_operation(event_type.replace(".", "_"), "audit", log_details)


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Sanitize payloads for audit logging."""
    if sensitive_fields is None:
        sensitive_fields = ['content', 'data', 'password', 'secret', 'token']

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, str):
        return payload[:100] + "..." if len(payload) > 100 else payload
    elif isinstance(payload, list):
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    else:
        return payload
