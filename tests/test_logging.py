"""
Tests for structured logging and payload redaction.
"""

import logging
from unittest.mock import MagicMock, patch

import pytest

from recordvault.util.logging import StructuredLogger, audit_event, get_logger, sanitize_payload


@pytest.fixture
def structured():
    logger = StructuredLogger("recordvault.test")
    logger.logger = MagicMock()
    return logger


class TestStructuredLogger:
    """Test message format and level routing."""

    def test_success_logs_info(self, structured):
        structured.log_operation("store.write", "success", {"category": "clients"})
        structured.logger.info.assert_called_once_with(
            "Operation: store.write, Status: success, Details: {'category': 'clients'}"
        )

    def test_failed_logs_error(self, structured):
        structured.log_operation("backup.created", "failed")
        structured.logger.error.assert_called_once_with("Operation: backup.created, Status: failed")

    def test_skipped_logs_warning(self, structured):
        structured.log_operation("index.rebuild", "skipped")
        structured.logger.warning.assert_called_once()

    def test_record_operation_details(self, structured):
        structured.log_record_operation("delete", "clients", "123")
        message = structured.logger.info.call_args[0][0]
        assert message.startswith("Operation: store.delete, Status: success")
        assert "'record_id': '123'" in message

    def test_audit_finding_truncates_reason(self, structured):
        structured.log_audit_finding("clients", "1.json", "orphaned", "backup_and_remove", reason="x" * 300)
        message = structured.logger.debug.call_args[0][0]
        assert "x" * 100 in message
        assert "x" * 101 not in message

    def test_heartbeat_task_duration(self, structured):
        structured.log_heartbeat_task("index_health_check", 1.0, 1.25)
        message = structured.logger.info.call_args[0][0]
        assert "'duration_ms': 250.0" in message
        assert "completed in 250.0ms" in message

    def test_named_loggers(self):
        assert get_logger("store").logger.name == "recordvault.store"
        assert get_logger() is get_logger()

    def test_debug_level_from_env(self, monkeypatch):
        monkeypatch.setenv("DEBUG", "true")
        assert StructuredLogger("recordvault.debugtest").logger.level == logging.DEBUG
        monkeypatch.setenv("DEBUG", "false")
        assert StructuredLogger("recordvault.debugtest").logger.level == logging.INFO


class TestRedaction:
    """Test payload sanitization for audit events."""

    def test_sensitive_fields_redacted(self):
        payload = {"name": "Acme", "password": "hunter2", "nested": {"token": "abc"}}
        assert sanitize_payload(payload) == {
            "name": "Acme", "password": "[REDACTED]", "nested": {"token": "[REDACTED]"},
        }

    def test_reveal_sensitive(self):
        assert sanitize_payload({"secret": "s"}, reveal_sensitive=True) == {"secret": "s"}

    def test_long_strings_truncated(self):
        assert sanitize_payload("a" * 150) == "a" * 100 + "..."

    def test_audit_event(self):
        with patch("recordvault.util.logging.logger") as mock_logger:
            audit_event("cleanup.delete", {"category": "users"}, {"data": {"email": "x"}, "size": 3})

        mock_logger.log_operation.assert_called_once_with(
            "cleanup_delete", "audit", {"category": "users", "payload": {"data": "[REDACTED]", "size": 3}}
        )

    def test_audit_event_uses_given_logger(self):
        event_logger = MagicMock()
        with patch("recordvault.util.logging.logger") as shared:
            audit_event("cleanup.delete", {"category": "users"}, event_logger=event_logger)

        event_logger.log_operation.assert_called_once_with("cleanup_delete", "audit", {"category": "users"})
        shared.log_operation.assert_not_called()


class TestHandlers:
    """Each line is emitted once, by the package logger's handler."""

    def test_child_loggers_have_no_handler(self):
        child = get_logger("handlers")
        assert child.logger.handlers == []
        assert child.logger.propagate is True

    def test_package_logger_has_one_handler(self):
        StructuredLogger()
        StructuredLogger()
        assert len(logging.getLogger("recordvault").handlers) == 1
