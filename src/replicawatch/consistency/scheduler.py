"""
Periodic background tasks for the health check and the reconciler.

Each PeriodicTask owns one daemon thread. Ticks run back to back on that
thread, so a slow tick delays the next one instead of overlapping it.
Exceptions raised by a tick are logged and the loop carries on.
"""

import logging
from threading import Event, Thread
from typing import Any, Callable, List, Optional

from .cluster_health import ClusterHealthService
from .reconciler import SyncStatusReconciler

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Run a callable every ``interval`` seconds on a daemon thread.

    Example:
        task = PeriodicTask("health", 30, service.check_health)
        task.start()
        ...
        task.stop()
    """

    def __init__(
        self,
        name: str,
        interval: float,
        func: Callable[[], Any],
        run_immediately: bool = True
    ):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.name = name
        self.interval = interval
        self.func = func
        self.run_immediately = run_immediately

        self._stop_event = Event()
        self._thread: Optional[Thread] = None
        self.runs = 0
        self.failures = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            logger.warning(f"Task {self.name} already running")
            return

        self._stop_event.clear()
        self._thread = Thread(target=self._loop, name=f"replicawatch-{self.name}", daemon=True)
        self._thread.start()
        logger.info(f"Started task {self.name} (every {self.interval:g}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal the loop to exit and wait for the current tick to finish."""
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout)
        self._thread = None
        logger.info(f"Stopped task {self.name}")

    def run_once(self) -> None:
        """Run one tick on the calling thread."""
        try:
            self.func()
            self.runs += 1
        except Exception as e:
            self.failures += 1
            logger.error(f"Task {self.name} failed: {e}", exc_info=True)

    def _loop(self) -> None:
        if self.run_immediately:
            self.run_once()
        while not self._stop_event.wait(self.interval):
            self.run_once()


class MonitorScheduler:
    """
    Drives the health check and the sync-status sweep on independent intervals.

    The health task runs first so the isolation window is populated before
    the first sweep reads it.
    """

    def __init__(
        self,
        health_service: ClusterHealthService,
        reconciler: SyncStatusReconciler,
        health_interval: float = 30.0,
        reconcile_interval: float = 30.0
    ):
        self.health_service = health_service
        self.reconciler = reconciler
        self.tasks: List[PeriodicTask] = [
            PeriodicTask("health-check", health_interval, health_service.check_health),
            PeriodicTask("reconcile", reconcile_interval, reconciler.run),
        ]

    def start(self) -> None:
        # synchronous first check, so the first sweep sees a real window
        self.tasks[0].run_once()
        self.tasks[0].run_immediately = False
        for task in self.tasks:
            task.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        for task in self.tasks:
            task.stop(timeout)

    @property
    def is_running(self) -> bool:
        return any(task.is_running for task in self.tasks)

    def __enter__(self) -> 'MonitorScheduler':
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()
