"""
Tests for the heartbeat task scheduler.
"""

import threading
from unittest.mock import MagicMock

import pytest

from recordvault.core.heartbeat import Heartbeat


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def heartbeat(clock):
    hb = Heartbeat(logger=MagicMock(), clock=clock)
    yield hb
    hb.stop()


class TestHeartbeatRegistration:
    """Test task registration functionality."""

    def test_register_task_valid(self, heartbeat):
        heartbeat.register_task("test_task", 30, lambda: None)
        assert heartbeat.list_tasks() == ["test_task"]

    def test_register_task_invalid_func(self, heartbeat):
        with pytest.raises(ValueError, match="Task function must be callable"):
            heartbeat.register_task("bad_task", 30, "not_callable")

    def test_register_task_invalid_interval(self, heartbeat):
        with pytest.raises(ValueError, match="Interval must be >= 1 second"):
            heartbeat.register_task("bad_task", 0, lambda: None)

    def test_register_duplicate_task_replaces(self, heartbeat):
        heartbeat.register_task("duplicate", 30, lambda: None)
        heartbeat.register_task("duplicate", 60, lambda: None)

        assert heartbeat.list_tasks() == ["duplicate"]
        assert heartbeat.get_status()["tasks"]["duplicate"]["interval_sec"] == 60

    def test_unregister_task(self, heartbeat):
        heartbeat.register_task("test_task", 30, lambda: None)

        assert heartbeat.unregister_task("test_task") is True
        assert heartbeat.unregister_task("test_task") is False
        assert heartbeat.list_tasks() == []


class TestTaskExecution:
    """Test due-task selection and failure isolation."""

    def test_runs_on_first_pass_then_waits_for_interval(self, heartbeat, clock):
        calls = []
        heartbeat.register_task("t", 10, lambda: calls.append(clock.now))

        assert heartbeat.run_pending() == ["t"]
        clock.now += 5
        assert heartbeat.run_pending() == []
        clock.now += 5
        assert heartbeat.run_pending() == ["t"]
        assert calls == [100.0, 110.0]

    def test_reset_task_forces_run(self, heartbeat, clock):
        heartbeat.register_task("t", 60, lambda: None)
        heartbeat.run_pending()

        heartbeat.reset_task("t")
        assert heartbeat.run_pending() == ["t"]

    def test_failing_task_does_not_stop_others(self, heartbeat):
        ran = []

        def broken():
            raise RuntimeError("boom")

        heartbeat.register_task("broken", 10, broken)
        heartbeat.register_task("ok", 10, lambda: ran.append(True))

        assert heartbeat.run_pending() == ["broken", "ok"]
        assert ran == [True]
        assert heartbeat.get_status()["tasks"]["broken"]["failures"] == 1
        heartbeat.logger.log_heartbeat_task.assert_any_call(
            "broken", 100.0, 100.0, status="failed", details={"error": "boom"}
        )

    def test_status_next_run(self, heartbeat):
        heartbeat.register_task("t", 10, lambda: None)
        assert heartbeat.get_status()["tasks"]["t"]["next_run"] is None

        heartbeat.run_pending()
        assert heartbeat.get_status()["tasks"]["t"]["next_run"] == 110.0


class TestLifecycle:
    """Test the background thread."""

    def test_start_runs_tasks_and_stop_joins(self):
        fired = threading.Event()
        heartbeat = Heartbeat(logger=MagicMock(), tick=0.01)
        heartbeat.register_task("signal", 60, fired.set)

        heartbeat.start()
        try:
            assert fired.wait(2.0)
            assert heartbeat.get_status()["status"] == "running"
        finally:
            heartbeat.stop()

        assert heartbeat.running is False
        assert heartbeat.get_status()["status"] == "stopped"

    def test_start_twice_raises(self):
        heartbeat = Heartbeat(logger=MagicMock(), tick=0.01)
        heartbeat.start()
        try:
            with pytest.raises(RuntimeError, match="already running"):
                heartbeat.start()
        finally:
            heartbeat.stop()

    def test_stop_when_not_running(self, heartbeat):
        heartbeat.stop()
        assert heartbeat.get_status()["uptime_sec"] == 0.0
