"""
Sync Status Reconciler - Keeps each record's cached sync_status current

sync_status is a denormalized label for dashboards. It is re-derived on a
schedule from two sources of truth:

    conflict   the store lists competing revisions for the record
    isolated   no conflict, and last_modified_at >= isolation window start
    synced     neither
    error      the conflict state could not be read

Writes touch only sync_status and instance_metadata.version. last_modified_at
is left alone: stamping it would make the record look freshly modified and
flip it back to "isolated" on the next sweep.

A write that loses a race (StaleRevisionError) is skipped; the next sweep
sees the newer revision and tries again.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..errors import RecordNotFoundError, ReplicaWatchError, StaleRevisionError
from ..records import Record, RecordKind, SyncStatus
from ..utils import format_timestamp, utcnow
from .conflict_detector import ConflictDetector
from .isolation import IsolationTracker, IsolationWindow

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """
    Outcome for one record.

    Attributes:
        record_id: Record id
        previous_status: Label stored before this pass
        current_status: Label derived in this pass
        updated: True if a new revision was written
        stale: True if the write lost a race and was skipped
        error: Message when the record could not be read
    """
    record_id: str
    previous_status: Optional[SyncStatus]
    current_status: SyncStatus
    updated: bool = False
    stale: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "previous_status": self.previous_status.value if self.previous_status else None,
            "current_status": self.current_status.value,
            "updated": self.updated,
            "stale": self.stale,
            "error": self.error,
        }


@dataclass
class ReconcileSummary:
    """Totals for one sweep."""
    started_at: datetime
    finished_at: Optional[datetime] = None
    checked: int = 0
    updated: int = 0
    stale: int = 0
    errors: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)

    def add(self, result: ReconcileResult) -> None:
        self.checked += 1
        if result.updated:
            self.updated += 1
        if result.stale:
            self.stale += 1
        if result.error:
            self.errors += 1
        key = result.current_status.value
        self.by_status[key] = self.by_status.get(key, 0) + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": format_timestamp(self.started_at),
            "finished_at": format_timestamp(self.finished_at),
            "checked": self.checked,
            "updated": self.updated,
            "stale": self.stale,
            "errors": self.errors,
            "by_status": dict(self.by_status),
        }


class SyncStatusReconciler:
    """
    Recomputes and persists sync_status for tracked records.

    Example:
        reconciler = SyncStatusReconciler(detector, health.tracker, [RecordKind.ACCOUNT])
        summary = reconciler.run()
        print(f"{summary.updated} of {summary.checked} records relabelled")
    """

    def __init__(
        self,
        detector: ConflictDetector,
        tracker: IsolationTracker,
        tracked_kinds: Optional[Iterable[RecordKind]] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Initialize reconciler.

        Args:
            detector: ConflictDetector; its store is also used for writes
            tracker: The process-wide IsolationTracker (read only)
            tracked_kinds: Record kinds to sweep (default: accounts and clients)
            clock: Source of the current time
        """
        self.detector = detector
        self.store = detector.store
        self.tracker = tracker
        self.tracked_kinds = (
            list(tracked_kinds) if tracked_kinds else [RecordKind.ACCOUNT, RecordKind.CLIENT]
        )
        self._clock = clock
        self._run_lock = Lock()

    def compute_status(
        self,
        record: Record,
        conflict_ids: List[str],
        window: Optional[IsolationWindow] = None
    ) -> SyncStatus:
        """Derive the label for a freshly read record. Conflict wins over isolation."""
        if conflict_ids:
            return SyncStatus.CONFLICT
        if self.tracker.is_record_isolated(record, window):
            return SyncStatus.ISOLATED
        return SyncStatus.SYNCED

    def reconcile_one(
        self,
        record_id: str,
        window: Optional[IsolationWindow] = None
    ) -> ReconcileResult:
        """
        Re-read one record, recompute its label and write it if it changed.

        Args:
            record_id: Record to reconcile
            window: Isolation window captured by the caller (default: current)

        Raises:
            RecordNotFoundError: If the record does not exist
            TransientIOError: If the store is unreachable on read
        """
        if window is None:
            window = self.tracker.get_window()

        record, conflict_ids = self.detector.get_conflict_ids(record_id)
        previous = record.sync_status
        status = self.compute_status(record, conflict_ids, window)

        result = ReconcileResult(record_id=record_id, previous_status=previous, current_status=status)
        if status == previous:
            return result

        record.sync_status = status
        record.instance_metadata = replace(
            record.instance_metadata, version=record.instance_metadata.version + 1
        )
        try:
            self.store.put(record)
        except StaleRevisionError:
            logger.info(f"Record {record_id} changed while reconciling; retrying next cycle")
            result.stale = True
            return result

        result.updated = True
        logger.debug(f"Record {record_id} sync_status {previous} -> {status}")
        return result

    def run(self) -> Optional[ReconcileSummary]:
        """
        Sweep every tracked record.

        Per-record read and write failures are counted and logged; a failure
        to list records propagates.

        Returns:
            ReconcileSummary, or None if a sweep is already running
        """
        if not self._run_lock.acquire(blocking=False):
            logger.debug("Reconcile sweep already in progress, skipping")
            return None

        try:
            # one window for the whole sweep
            window = self.tracker.get_window()
            summary = ReconcileSummary(started_at=self._clock())

            for record in self.store.list_records(self.tracked_kinds):
                try:
                    result = self.reconcile_one(record.id, window)
                except RecordNotFoundError:
                    logger.debug(f"Record {record.id} deleted during sweep")
                    continue
                except ReplicaWatchError as e:
                    logger.warning(f"Could not reconcile record {record.id}: {e}")
                    result = ReconcileResult(
                        record_id=record.id,
                        previous_status=record.sync_status,
                        current_status=SyncStatus.ERROR,
                        error=str(e),
                    )
                summary.add(result)

            summary.finished_at = self._clock()
            if summary.updated or summary.errors:
                logger.info(
                    f"Reconciled {summary.checked} records: {summary.updated} updated, "
                    f"{summary.stale} stale, {summary.errors} errors"
                )
            return summary
        finally:
            self._run_lock.release()

    def get_sync_stats(self) -> Dict[str, Any]:
        """Stored sync_status counts per kind, as last written."""
        counts: Dict[str, Counter] = {kind.value: Counter() for kind in self.tracked_kinds}
        for record in self.store.list_records(self.tracked_kinds):
            counts.setdefault(record.kind.value, Counter())[record.sync_status.value] += 1

        totals: Counter = Counter()
        for per_kind in counts.values():
            totals.update(per_kind)
        return {
            "total": sum(totals.values()),
            "by_status": {status.value: totals.get(status.value, 0) for status in SyncStatus},
            "by_kind": {kind: dict(per_kind) for kind, per_kind in counts.items()},
        }
