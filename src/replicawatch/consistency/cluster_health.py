"""
Cluster Health Service - Orchestration facade for health and isolation

Drives InstanceMonitor and IsolationTracker, caches the latest snapshot and
answers "is the cluster isolated / healthy" cheaply for the rest of the
application. It owns the one IsolationTracker of the process; construct it
once at startup and pass it to whatever needs isolation queries.

Ordering: within a check, the instance status is fully computed before the
tracker is updated, so every transition sees a consistent snapshot.

Failure handling: check_health() never raises. Any internal error yields a
fallback snapshot that shows only the local instance with network health
"unknown", so dashboards always receive a well-formed snapshot.

Overlap: a check_health() call made while another is in flight does not
poll again; it returns the cached snapshot.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..errors import ReplicaWatchError
from ..records import RecordKind
from ..store import DocumentStore
from ..utils import format_timestamp, utcnow
from .instance_monitor import (
    ACTIVE,
    InstanceMonitor,
    InstanceStatus,
    PeerInstance,
)
from .isolation import IsolationTracker, IsolationWindow

logger = logging.getLogger(__name__)


@dataclass
class HealthSummary:
    """Aggregate counts for a snapshot."""
    total: int
    healthy: int
    unhealthy: int
    network_health: str
    replication_health: int
    isolated: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "healthy": self.healthy,
            "unhealthy": self.unhealthy,
            "network_health": self.network_health,
            "replication_health": self.replication_health,
            "isolated": list(self.isolated),
        }


@dataclass
class HealthSnapshot:
    """
    Result of one health check.

    Attributes:
        timestamp: When the check ran
        current_instance: Local instance id
        instances: Per-instance detail, local first
        summary: Aggregate counts and labels
        isolation: Isolation window as of this check
        fallback: True if the check failed and this is the local-only fallback
    """
    timestamp: datetime
    current_instance: str
    instances: List[PeerInstance]
    summary: HealthSummary
    isolation: IsolationWindow
    fallback: bool = False

    @property
    def is_unknown(self) -> bool:
        return self.summary.network_health == "unknown"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": format_timestamp(self.timestamp),
            "current_instance": self.current_instance,
            "instances": [i.to_dict() for i in self.instances],
            "summary": self.summary.to_dict(),
            "isolation": self.isolation.to_dict(),
            "fallback": self.fallback,
        }


@dataclass
class IsolationStatus:
    """Answer to "is the cluster currently isolated?"."""
    isolated: bool
    reason: Optional[str] = None
    peers: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"isolated": self.isolated, "reason": self.reason, "peers": list(self.peers)}


class ClusterHealthService:
    """
    Periodic health check owner and isolation query facade.

    Example:
        service = ClusterHealthService(monitor, store=store)
        snapshot = service.check_health()
        if service.is_isolated().isolated:
            warning = service.get_isolation_warning()
    """

    def __init__(
        self,
        monitor: InstanceMonitor,
        tracker: Optional[IsolationTracker] = None,
        store: Optional[DocumentStore] = None,
        tracked_kinds: Optional[Iterable[RecordKind]] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Initialize cluster health service.

        Args:
            monitor: InstanceMonitor to poll
            tracker: IsolationTracker to own (a new one if omitted)
            store: Document store, used to count records written during isolation
            tracked_kinds: Kinds counted by count_isolated_records (default: all)
            clock: Source of the current time
        """
        self.monitor = monitor
        self.tracker = tracker or IsolationTracker(clock=clock)
        self.store = store
        self.tracked_kinds = list(tracked_kinds) if tracked_kinds else list(RecordKind)
        self._clock = clock

        self._last_snapshot: Optional[HealthSnapshot] = None
        self._snapshot_lock = Lock()
        self._check_lock = Lock()

    @property
    def instance_id(self) -> str:
        return self.monitor.instance_id

    def check_health(self) -> HealthSnapshot:
        """
        Poll instance status, update the isolation window, cache and return
        the snapshot. Never raises.
        """
        if not self._check_lock.acquire(blocking=False):
            logger.debug("Health check already in flight, returning cached snapshot")
            cached = self.get_cached_health()
            return cached if cached is not None else self._fallback_snapshot()

        try:
            try:
                snapshot = self._run_check()
            except Exception as e:
                logger.error(f"Error checking cluster health: {e}", exc_info=True)
                snapshot = self._fallback_snapshot()

            with self._snapshot_lock:
                self._last_snapshot = snapshot
            return snapshot
        finally:
            self._check_lock.release()

    def _run_check(self) -> HealthSnapshot:
        status: InstanceStatus = self.monitor.get_instance_status()
        network = self.monitor.get_network_summary(status)

        if status.degraded:
            logger.warning("Replication status unavailable; isolation window left unchanged")
        else:
            self.tracker.update(status.unreachable_instances, status.unreachable_peer_ids)

        summary = HealthSummary(
            total=status.total_instances,
            healthy=status.active_instances,
            unhealthy=status.unreachable_instances,
            network_health=network.network_health,
            replication_health=round(network.replication_health * 100),
            isolated=status.unreachable_peer_ids,
        )
        return HealthSnapshot(
            timestamp=self._clock(),
            current_instance=status.current_instance,
            instances=status.instances,
            summary=summary,
            isolation=self.tracker.get_window(),
        )

    def _fallback_snapshot(self) -> HealthSnapshot:
        local = PeerInstance(
            id=self.instance_id,
            location=self.monitor.instance_location,
            status=ACTIVE,
            last_seen=self._clock(),
            is_current_instance=True,
        )
        return HealthSnapshot(
            timestamp=self._clock(),
            current_instance=self.instance_id,
            instances=[local],
            summary=HealthSummary(
                total=1, healthy=1, unhealthy=0, network_health="unknown", replication_health=0
            ),
            isolation=self.tracker.get_window(),
            fallback=True,
        )

    def get_cached_health(self) -> Optional[HealthSnapshot]:
        """Latest snapshot, or None if no check has run yet."""
        with self._snapshot_lock:
            return self._last_snapshot

    def is_isolated(self) -> IsolationStatus:
        """
        Whether some peers are unreachable, based on the cached snapshot.

        Unknown state is reported as isolated with a reason rather than as
        healthy.
        """
        snapshot = self.get_cached_health()
        if snapshot is None:
            return IsolationStatus(isolated=True, reason="health check not performed")
        if snapshot.is_unknown:
            return IsolationStatus(
                isolated=True, reason="cluster state unknown: replication status unavailable"
            )

        unhealthy = snapshot.summary.unhealthy
        if unhealthy == 0:
            return IsolationStatus(isolated=False)
        return IsolationStatus(
            isolated=True,
            reason=f"{unhealthy} instance(s) unreachable",
            peers=list(snapshot.summary.isolated),
        )

    def get_isolation_info(self) -> Dict[str, Any]:
        """Current isolation window, for downtime display."""
        window = self.tracker.get_window()
        duration = window.duration(self._clock()) if window.is_open else None
        return {
            "is_isolated": window.is_open,
            "isolation_start_time": format_timestamp(window.started_at),
            "isolated_instances": list(window.isolated_peer_ids),
            "duration_ms": int(duration.total_seconds() * 1000) if duration else 0,
        }

    def get_isolation_warning(self) -> Optional[Dict[str, Any]]:
        """
        Warning to show before admin actions while isolated.

        Returns:
            Warning dictionary, or None when the cluster is fully connected
        """
        status = self.is_isolated()
        if not status.isolated:
            return None

        window = self.tracker.get_window()
        return {
            "severity": "warning",
            "title": "Instance Isolation Detected",
            "message": (
                f"{status.reason}. Changes made now may create conflicts "
                f"when instances reconnect."
            ),
            "isolated_instances": list(status.peers),
            "isolated_since": format_timestamp(window.started_at),
            "recommendations": [
                "Consider waiting for all instances to reconnect",
                "If urgent, document changes made during isolation",
                "Monitor for conflicts after reconnection",
            ],
        }

    def count_isolated_records(self) -> Optional[int]:
        """
        Number of tracked records modified since the window opened.

        Returns:
            0 when no window is open, None when the count cannot be computed
        """
        window = self.tracker.get_window()
        if not window.is_open:
            return 0
        if self.store is None:
            return None
        try:
            return len(self.store.query_modified_since(window.started_at, self.tracked_kinds))
        except ReplicaWatchError as e:
            logger.warning(f"Could not count records modified during isolation: {e}")
            return None
