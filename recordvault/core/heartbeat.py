"""
Heartbeat - periodic background tasks (index health checks, cache cleanup).

Tasks run on a single daemon thread. A failing task is logged and never stops the loop or
the other tasks.
"""

import threading
import time
from typing import Any, Callable, Dict, List, Optional

from ..util.logging import StructuredLogger, get_logger

TICK_SEC = 0.1


class Heartbeat:
    """Cooperative scheduler for registered periodic tasks."""

    def __init__(self, logger: StructuredLogger = None, clock: Callable[[], float] = time.monotonic,
                 tick: float = TICK_SEC):
        self.tasks: Dict[str, Dict[str, Any]] = {}  # task_name -> {func, interval, last_run, failures}
        self.logger = logger or get_logger("heartbeat")
        self.clock = clock
        self.tick = tick
        self._lock = threading.Lock()
        self._shutdown_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._started_at: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def register_task(self, name: str, interval_sec: float, func: Callable):
        """
        Register a task to be executed periodically.

        Args:
            name: Unique task identifier
            interval_sec: How often to run this task in seconds
            func: Function to call (should be fast and not block)
        """
        if not callable(func):
            raise ValueError(f"Task function must be callable: {func}")

        if interval_sec < 1:
            raise ValueError(f"Interval must be >= 1 second: {interval_sec}")

        with self._lock:
            self.tasks[name] = {
                "func": func,
                "interval": interval_sec,
                "last_run": None,
                "failures": 0,
            }
        self.logger.info(f"Registered heartbeat task '{name}' (every {interval_sec}s)")

    def unregister_task(self, name: str) -> bool:
        """Remove a task from the registry."""
        with self._lock:
            removed = self.tasks.pop(name, None) is not None
        if removed:
            self.logger.info(f"Unregistered heartbeat task '{name}'")
        return removed

    def list_tasks(self) -> List[str]:
        with self._lock:
            return list(self.tasks.keys())

    def reset_task(self, name: str):
        """Reset a task's last_run time to force immediate execution."""
        with self._lock:
            if name in self.tasks:
                self.tasks[name]["last_run"] = None

    def _should_run(self, task_info: Dict[str, Any], now: float) -> bool:
        if task_info["last_run"] is None:
            return True
        return now - task_info["last_run"] >= task_info["interval"]

    def _run_task(self, name: str, task_info: Dict[str, Any]):
        start_time = self.clock()
        try:
            task_info["func"]()
        except Exception as e:
            # Isolate failures so one task cannot stop the loop
            end_time = self.clock()
            task_info["failures"] += 1
            self.logger.log_heartbeat_task(name, start_time, end_time, status="failed", details={"error": str(e)})
        else:
            end_time = self.clock()
            self.logger.log_heartbeat_task(name, start_time, end_time)
        task_info["last_run"] = end_time

    def run_pending(self) -> List[str]:
        """Run every task that is due. Returns the names of the tasks that ran."""
        now = self.clock()
        with self._lock:
            due = [(name, info) for name, info in self.tasks.items() if self._should_run(info, now)]

        for name, task_info in due:
            self._run_task(name, task_info)
        return [name for name, _ in due]

    def _loop(self):
        while not self._shutdown_event.is_set():
            self.run_pending()
            self._shutdown_event.wait(self.tick)

    def start(self):
        """Start the heartbeat loop on a background thread."""
        if self.running:
            raise RuntimeError("Heartbeat already running")

        self._shutdown_event.clear()
        self._started_at = self.clock()
        self._thread = threading.Thread(target=self._loop, name="recordvault-heartbeat", daemon=True)
        self._thread.start()
        self.logger.info(f"Starting heartbeat loop with tasks: {self.list_tasks()}")

    def stop(self, timeout: float = 5.0):
        """Stop the heartbeat loop and wait for the thread. Safe to call when not running."""
        if self._thread is None:
            return

        self._shutdown_event.set()
        self._thread.join(timeout)
        self._thread = None
        self._started_at = None
        self.logger.info("Heartbeat stopped")

    def get_status(self) -> Dict[str, Any]:
        """Return current heartbeat status for monitoring."""
        with self._lock:
            tasks = {
                name: {
                    "interval_sec": info["interval"],
                    "last_run": info["last_run"],
                    "next_run": info["last_run"] + info["interval"] if info["last_run"] is not None else None,
                    "failures": info["failures"],
                }
                for name, info in self.tasks.items()
            }
        return {
            "status": "running" if self.running else "stopped",
            "tasks": tasks,
            "uptime_sec": self.clock() - self._started_at if self._started_at is not None else 0.0,
        }
