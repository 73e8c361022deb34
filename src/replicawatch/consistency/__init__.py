"""
ReplicaWatch Consistency Module - Isolation and conflict monitoring

Watches a multi-master identity store whose instances replicate to each other
and may be partitioned for long periods.

Key Components:
    - InstanceMonitor: Peer reachability from the replication status feed
    - IsolationTracker: The cluster-wide isolation window
    - ClusterHealthService: Periodic health check and isolation queries
    - ConflictDetector: Conflict classification and two-phase resolution
    - SyncStatusReconciler: Keeps each record's sync_status label current
    - MonitorScheduler: Background threads driving the above

Usage:
    from replicawatch.consistency import ClusterHealthService, InstanceMonitor

    health = ClusterHealthService(InstanceMonitor(source, "node1"), store=store)
    snapshot = health.check_health()
    if health.is_isolated().isolated:
        print(health.get_isolation_warning())
"""

from .instance_monitor import (
    InstanceMonitor,
    InstanceStatus,
    NetworkSummary,
    PeerInstance,
    ReplicationLink,
)
from .isolation import IsolationTracker, IsolationWindow
from .cluster_health import ClusterHealthService, HealthSnapshot, IsolationStatus
from .conflict_detector import (
    ConflictAnalysis,
    ConflictDetector,
    ConflictReport,
    ConflictType,
    ResolutionResult,
    RevisionSet,
)
from .reconciler import ReconcileResult, ReconcileSummary, SyncStatusReconciler
from .scheduler import MonitorScheduler, PeriodicTask

__all__ = [
    "InstanceMonitor",
    "InstanceStatus",
    "NetworkSummary",
    "PeerInstance",
    "ReplicationLink",
    "IsolationTracker",
    "IsolationWindow",
    "ClusterHealthService",
    "HealthSnapshot",
    "IsolationStatus",
    "ConflictAnalysis",
    "ConflictDetector",
    "ConflictReport",
    "ConflictType",
    "ResolutionResult",
    "RevisionSet",
    "ReconcileResult",
    "ReconcileSummary",
    "SyncStatusReconciler",
    "MonitorScheduler",
    "PeriodicTask",
]
