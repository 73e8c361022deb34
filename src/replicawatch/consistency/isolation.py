"""
Isolation Tracker - Cluster-wide isolation window

Tracks a single logical isolation window: the period during which at least
one peer instance could not be reached. Records written while the window is
open are at risk of a future conflict even before the store reports one.

State machine:
    Connected --(unreachable > 0)--> Isolated     open window, started_at = now
    Isolated  --(unreachable > 0)--> Isolated     refresh peer ids only
    Isolated  --(unreachable == 0)--> Connected   close window, move to history
    Connected --(unreachable == 0)--> Connected   no-op

started_at is set once per continuous unhealthy period and never moves
while the window is open.

Optional debounce: with failure_threshold=N the window opens only after N
consecutive unhealthy cycles. The default of 1 opens on the first one.

Thread Safety:
    All public methods are thread-safe using a lock, like PartitionHandler.
    The tracker is owned by exactly one ClusterHealthService.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..records import Record
from ..utils import format_timestamp, utcnow

logger = logging.getLogger(__name__)


@dataclass
class IsolationWindow:
    """
    An isolation window.

    Attributes:
        started_at: When isolation began (None when no window is open)
        isolated_peer_ids: Peers unreachable in the latest cycle
        ended_at: When connectivity was restored (set on windows in history)
    """
    started_at: Optional[datetime] = None
    isolated_peer_ids: List[str] = field(default_factory=list)
    ended_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.started_at is not None and self.ended_at is None

    def duration(self, now: Optional[datetime] = None) -> Optional[timedelta]:
        """
        Window length; measured up to ``now`` while still open.

        Returns:
            timedelta, or None if the window never started
        """
        if self.started_at is None:
            return None
        end = self.ended_at or now or utcnow()
        return end - self.started_at

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        duration = self.duration()
        return {
            "is_open": self.is_open,
            "started_at": format_timestamp(self.started_at),
            "ended_at": format_timestamp(self.ended_at),
            "isolated_peer_ids": list(self.isolated_peer_ids),
            "duration_seconds": duration.total_seconds() if duration else 0.0,
        }


class IsolationTracker:
    """
    Maintains the isolation window from per-cycle reachability counts.

    Example:
        tracker = IsolationTracker()
        tracker.update(1, ["peer2"])        # window opens
        tracker.is_record_isolated(record)  # True if written since then
        tracker.update(0)                   # window closes
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = utcnow,
        failure_threshold: int = 1,
        history_limit: int = 50
    ):
        """
        Initialize isolation tracker.

        Args:
            clock: Source of the current time (aware UTC)
            failure_threshold: Consecutive unhealthy cycles before a window opens
            history_limit: Closed windows to keep for statistics
        """
        if failure_threshold < 1:
            raise ValueError(f"failure_threshold must be >= 1, got {failure_threshold}")

        self._clock = clock
        self.failure_threshold = failure_threshold
        self.history_limit = history_limit

        self._window = IsolationWindow()
        self._history: List[IsolationWindow] = []
        self._consecutive_failures = 0

        self._lock = Lock()

    def update(self, unreachable_count: int, isolated_peer_ids: Iterable[str] = ()) -> None:
        """
        Apply one cycle's reachability result.

        Args:
            unreachable_count: Number of unreachable peers in this cycle
            isolated_peer_ids: Ids of those peers
        """
        peer_ids = sorted(isolated_peer_ids)

        with self._lock:
            if unreachable_count > 0:
                if self._window.is_open:
                    self._window.isolated_peer_ids = peer_ids
                    logger.debug(
                        f"Cluster isolation continuing since {self._window.started_at.isoformat()}: "
                        f"{peer_ids}"
                    )
                    return

                self._consecutive_failures += 1
                if self._consecutive_failures < self.failure_threshold:
                    logger.debug(
                        f"Unreachable peers {peer_ids}: "
                        f"{self._consecutive_failures}/{self.failure_threshold} cycles"
                    )
                    return

                self._window = IsolationWindow(started_at=self._clock(), isolated_peer_ids=peer_ids)
                logger.warning(
                    f"Cluster isolation detected at {self._window.started_at.isoformat()}: "
                    f"unreachable peers {peer_ids}"
                )
                return

            self._consecutive_failures = 0
            if not self._window.is_open:
                return

            closed = replace(self._window, ended_at=self._clock())
            self._history.append(closed)
            if len(self._history) > self.history_limit:
                self._history = self._history[-self.history_limit:]
            self._window = IsolationWindow()

            logger.info(
                f"Cluster isolation ended (duration: {closed.duration().total_seconds():.1f}s, "
                f"peers: {closed.isolated_peer_ids})"
            )

    def get_window(self) -> IsolationWindow:
        """
        Snapshot of the current window.

        The returned copy keeps its started_at after the tracker closes the
        window, so callers that need a historical answer should capture it
        first and pass it to is_record_isolated.
        """
        with self._lock:
            return replace(self._window, isolated_peer_ids=list(self._window.isolated_peer_ids))

    def is_isolated(self) -> bool:
        with self._lock:
            return self._window.is_open

    def is_record_isolated(self, record: Record, window: Optional[IsolationWindow] = None) -> bool:
        """
        Check whether a record was modified during isolation.

        Args:
            record: Record to check
            window: Previously captured window; defaults to the current one

        Returns:
            True iff the window has a start and
            record.last_modified_at >= started_at
        """
        if window is None:
            window = self.get_window()

        if window.started_at is None or record.last_modified_at is None:
            return False
        return record.last_modified_at >= window.started_at

    def get_history(self) -> List[IsolationWindow]:
        """Closed windows, oldest first."""
        with self._lock:
            return list(self._history)

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get isolation statistics.

        Returns:
            Dictionary with the current window and history metrics
        """
        with self._lock:
            durations = [w.duration().total_seconds() for w in self._history]
            return {
                "is_isolated": self._window.is_open,
                "current_window": self._window.to_dict(),
                "consecutive_failures": self._consecutive_failures,
                "failure_threshold": self.failure_threshold,
                "historical_windows": len(self._history),
                "average_duration_seconds": sum(durations) / len(durations) if durations else 0.0,
                "longest_duration_seconds": max(durations) if durations else 0.0,
            }
