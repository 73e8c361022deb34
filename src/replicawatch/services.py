"""
Object graph wiring.

build_services() is called once per process. It creates the single
ClusterHealthService, which owns the only IsolationTracker; the reconciler
gets a read-only reference to that tracker.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .config import Settings
from .consistency.cluster_health import ClusterHealthService
from .consistency.conflict_detector import ConflictDetector
from .consistency.instance_monitor import InstanceMonitor
from .consistency.isolation import IsolationTracker
from .consistency.reconciler import SyncStatusReconciler
from .consistency.scheduler import MonitorScheduler
from .replication import ReplicationMonitorClient, ReplicationStatusSource
from .store import CouchDBStore, DocumentStore
from .utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything a command or a long-running monitor needs."""
    settings: Settings
    store: DocumentStore
    source: ReplicationStatusSource
    monitor: InstanceMonitor
    health: ClusterHealthService
    detector: ConflictDetector
    reconciler: SyncStatusReconciler

    @property
    def tracker(self) -> IsolationTracker:
        return self.health.tracker

    def scheduler(self) -> MonitorScheduler:
        return MonitorScheduler(
            self.health,
            self.reconciler,
            health_interval=self.settings.health_check_interval,
            reconcile_interval=self.settings.reconcile_interval,
        )


def build_services(
    settings: Settings,
    store: Optional[DocumentStore] = None,
    source: Optional[ReplicationStatusSource] = None,
    clock: Callable[[], datetime] = utcnow,
) -> Services:
    """
    Wire the monitoring components from settings.

    Args:
        settings: Resolved settings
        store: Override the CouchDB store (tests, alternative backends)
        source: Override the replication-monitor client
        clock: Source of the current time for every component

    Returns:
        Services container
    """
    if store is None:
        store = CouchDBStore(
            settings.couchdb_url,
            settings.couchdb_database,
            user=settings.couchdb_user,
            password=settings.couchdb_password,
            timeout=settings.status_timeout,
        )
    if source is None:
        source = ReplicationMonitorClient(
            settings.replication_monitor_url,
            settings.couchdb_database,
            timeout=settings.status_timeout,
        )

    monitor = InstanceMonitor(source, settings.instance_id, settings.instance_location)
    tracker = IsolationTracker(clock=clock, failure_threshold=settings.isolation_failure_threshold)
    health = ClusterHealthService(
        monitor, tracker=tracker, store=store, tracked_kinds=settings.tracked_kinds, clock=clock
    )
    detector = ConflictDetector(store, settings.instance_id, clock=clock)
    reconciler = SyncStatusReconciler(detector, health.tracker, settings.tracked_kinds, clock=clock)

    logger.debug(
        f"Services built for instance {settings.instance_id} "
        f"(store: {settings.couchdb_url}/{settings.couchdb_database})"
    )
    return Services(
        settings=settings,
        store=store,
        source=source,
        monitor=monitor,
        health=health,
        detector=detector,
        reconciler=reconciler,
    )
