"""
Conflict Detection and Resolution for replicated records

When two instances modify the same record before replication converges, the
store keeps every branch and reports the losers in the record's conflict
list. This module reads those branches, classifies the conflict, proposes a
resolution and, on operator command, commits a winner.

Classification:
    revision_conflict: every revision carries the same domain data; only
                       bookkeeping (instance_metadata, updated_at, ...)
                       differs. Safe to collapse.
    data_conflict:     at least one domain field differs, or a competing
                       revision could not be read. Needs a human pick.

Resolution is two-phase and not atomic:
    1. Write the winner's content (or, for resolve_merge(), the winner
       overlaid with merged fields) on top of the winning revision with a
       bumped version and a conflict_resolution stamp.
    2. Delete each losing revision individually. Failures are logged and
       collected; the caller gets PartialResolutionError and can retry the
       deletion step alone with retire_revisions().

"At most one winner" is enforced by the store's revision checks, not by a
lock here: a resolve against a stale revision fails with StaleRevisionError.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..errors import (
    NoConflictError,
    PartialResolutionError,
    RecordNotFoundError,
    ReplicaWatchError,
    StaleRevisionError,
)
from ..records import (
    BOOKKEEPING_KEYS,
    ConflictResolutionStamp,
    Record,
    RecordKind,
    record_from_document,
)
from ..store import DocumentStore
from ..utils import format_timestamp, utcnow

logger = logging.getLogger(__name__)

SENSITIVE_FIELDS = frozenset({
    "password_hash",
    "client_secret",
    "authorization_code",
    "access_token",
    "refresh_token",
    "id_token",
})


class ConflictType(Enum):
    """Conflict classification."""
    NO_CONFLICT = "no_conflict"
    REVISION_CONFLICT = "revision_conflict"
    DATA_CONFLICT = "data_conflict"

    def __str__(self) -> str:
        return self.value


@dataclass
class RevisionSet:
    """
    All live revisions of one record.

    Attributes:
        record_id: Record id
        current: The store's winning revision
        conflicting: Fetched conflicting revisions
        conflicting_revision_ids: The store's conflict list, verbatim
        missing_revision_ids: Conflict revisions that could not be fetched
    """
    record_id: str
    current: Record
    conflicting: List[Record] = field(default_factory=list)
    conflicting_revision_ids: List[str] = field(default_factory=list)
    missing_revision_ids: List[str] = field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return len(self.conflicting_revision_ids) > 0

    @property
    def kind(self) -> RecordKind:
        return self.current.kind

    def all_revisions(self) -> List[Record]:
        return [self.current] + list(self.conflicting)

    def live_revision_ids(self) -> List[str]:
        return [self.current.revision] + list(self.conflicting_revision_ids)


@dataclass
class ConflictAnalysis:
    """Derived classification of a RevisionSet. Never persisted."""
    conflict_type: ConflictType
    conflict_count: int
    instances_involved: List[str] = field(default_factory=list)
    differing_fields: List[str] = field(default_factory=list)
    unverified_revision_ids: List[str] = field(default_factory=list)

    @property
    def has_data_differences(self) -> bool:
        return len(self.differing_fields) > 0

    @property
    def requires_manual_resolution(self) -> bool:
        # Revisions we could not read cannot be proven identical.
        return self.has_data_differences or len(self.unverified_revision_ids) > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.conflict_type.value,
            "conflict_count": self.conflict_count,
            "instances_involved": list(self.instances_involved),
            "has_data_differences": self.has_data_differences,
            "differing_fields": list(self.differing_fields),
            "unverified_revision_ids": list(self.unverified_revision_ids),
            "requires_manual_resolution": self.requires_manual_resolution,
        }


@dataclass
class ResolutionSuggestion:
    """
    Proposed resolutions for a conflict.

    Attributes:
        keep_revision_id: Revision with the latest last_modified_at
        keep_modified_by: Instance that wrote it
        keep_modified_at: When it was written
        merged_collections: Set-union of every collection-valued field across
                            all revisions, as a merge alternative
    """
    keep_revision_id: Optional[str]
    keep_modified_by: Optional[str] = None
    keep_modified_at: Optional[datetime] = None
    merged_collections: Dict[str, List[Any]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "keep_most_recent": {
                "revision": self.keep_revision_id,
                "modified_by": self.keep_modified_by,
                "modified_at": format_timestamp(self.keep_modified_at),
            },
            "merge_collections": {k: list(v) for k, v in self.merged_collections.items()},
        }


@dataclass
class ConflictReport:
    """Everything an operator needs to decide on one conflicted record."""
    record_id: str
    kind: RecordKind
    analysis: ConflictAnalysis
    revisions: List[Record]
    suggestion: ResolutionSuggestion
    detected_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        revisions = []
        for index, revision in enumerate(self.revisions):
            content = {
                key: ("***" if key in SENSITIVE_FIELDS and value else value)
                for key, value in revision.domain_fields().items()
            }
            revisions.append({
                "revision": revision.revision,
                "is_current": index == 0,
                "instance_metadata": revision.instance_metadata.to_dict(),
                "data": content,
            })
        return {
            "record_id": self.record_id,
            "kind": self.kind.value,
            "analysis": self.analysis.to_dict(),
            "revisions": revisions,
            "suggested_resolution": self.suggestion.to_dict(),
            "detected_at": format_timestamp(self.detected_at),
        }


@dataclass
class ResolutionResult:
    """
    Outcome of a resolve or retire call.

    Attributes:
        record_id: Record id
        winning_revision_id: Revision chosen by the operator
        new_revision_id: Revision written in phase 1 (None for retire-only calls)
        retired_revision_ids: Losing revisions now gone
        failed_revision_ids: Losing revisions that could not be deleted
        skipped_revision_ids: Requested losers that were no longer live
    """
    record_id: str
    winning_revision_id: str
    new_revision_id: Optional[str] = None
    retired_revision_ids: List[str] = field(default_factory=list)
    failed_revision_ids: List[str] = field(default_factory=list)
    skipped_revision_ids: List[str] = field(default_factory=list)

    @property
    def fully_resolved(self) -> bool:
        return not self.failed_revision_ids

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "winning_revision_id": self.winning_revision_id,
            "new_revision_id": self.new_revision_id,
            "retired_revision_ids": list(self.retired_revision_ids),
            "failed_revision_ids": list(self.failed_revision_ids),
            "skipped_revision_ids": list(self.skipped_revision_ids),
            "fully_resolved": self.fully_resolved,
        }


class ConflictDetector:
    """
    Detects, classifies and resolves record conflicts.

    Read paths propagate store errors; only the best-effort deletions of
    phase 2 are caught and logged.

    Example:
        detector = ConflictDetector(store, instance_id="node1")
        for report in detector.get_all_conflicts():
            if report.analysis.conflict_type is ConflictType.REVISION_CONFLICT:
                losers = [r.revision for r in report.revisions[1:]]
                detector.resolve(report.record_id, report.revisions[0].revision, losers)
    """

    def __init__(
        self,
        store: DocumentStore,
        instance_id: str,
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = store
        self.instance_id = instance_id
        self._clock = clock

    # ==================== Reading ====================

    def _build_revision_set(self, current: Record, conflict_ids: List[str]) -> RevisionSet:
        revision_set = RevisionSet(
            record_id=current.id,
            current=current,
            conflicting_revision_ids=list(conflict_ids),
        )
        for revision in conflict_ids:
            try:
                revision_set.conflicting.append(self.store.get_revision(current.id, revision))
            except RecordNotFoundError:
                logger.warning(f"Could not retrieve conflict revision {revision} for {current.id}")
                revision_set.missing_revision_ids.append(revision)
        return revision_set

    def get_conflict_ids(self, record_id: str) -> Tuple[Record, List[str]]:
        """Fresh read of a record and its conflict list, without fetching branches."""
        return self.store.get_with_conflicts(record_id)

    def get_revision_set(self, record_id: str) -> RevisionSet:
        """
        Fetch the current revision and every competing one.

        Raises:
            RecordNotFoundError: If the record does not exist
            TransientIOError: If the store is unreachable
        """
        current, conflict_ids = self.store.get_with_conflicts(record_id)
        return self._build_revision_set(current, conflict_ids)

    def _report(self, revision_set: RevisionSet) -> ConflictReport:
        return ConflictReport(
            record_id=revision_set.record_id,
            kind=revision_set.kind,
            analysis=self.analyze(revision_set),
            revisions=revision_set.all_revisions(),
            suggestion=self.suggest_resolution(revision_set),
            detected_at=self._clock(),
        )

    def get_conflict(self, record_id: str) -> ConflictReport:
        """Report for a single record (analysis type no_conflict if clean)."""
        return self._report(self.get_revision_set(record_id))

    def get_all_conflicts(self, kinds: Optional[Iterable[RecordKind]] = None) -> List[ConflictReport]:
        """
        Report every record that carries a non-empty conflict list.

        Args:
            kinds: Restrict to these record kinds (default: all)
        """
        reports = []
        for current, conflict_ids in self.store.list_conflicted(kinds):
            reports.append(self._report(self._build_revision_set(current, conflict_ids)))

        if reports:
            logger.info(f"Found {len(reports)} conflicted records")
        return reports

    # ==================== Analysis ====================

    def analyze(self, revision_set: RevisionSet) -> ConflictAnalysis:
        """
        Classify a revision set.

        Compares the current revision's domain fields against each
        conflicting revision; bookkeeping fields are never compared.
        """
        if not revision_set.has_conflicts:
            return ConflictAnalysis(conflict_type=ConflictType.NO_CONFLICT, conflict_count=0)

        instances = {
            r.last_modified_by for r in revision_set.all_revisions() if r.last_modified_by
        }

        base = revision_set.current.domain_fields()
        differing = set()
        for other in revision_set.conflicting:
            data = other.domain_fields()
            for key in set(base) | set(data):
                if key not in base or key not in data or base[key] != data[key]:
                    differing.add(key)

        # unread revisions cannot be proven identical
        if differing or revision_set.missing_revision_ids:
            conflict_type = ConflictType.DATA_CONFLICT
        else:
            conflict_type = ConflictType.REVISION_CONFLICT
        return ConflictAnalysis(
            conflict_type=conflict_type,
            conflict_count=len(revision_set.conflicting_revision_ids),
            instances_involved=sorted(instances),
            differing_fields=sorted(differing),
            unverified_revision_ids=list(revision_set.missing_revision_ids),
        )

    def suggest_resolution(self, revision_set: RevisionSet) -> ResolutionSuggestion:
        """
        Recommend the most recently modified revision, plus a union merge of
        collection-valued fields (groups, roles, scopes, ...).

        Ties and missing timestamps favor the store's current winner.
        """
        revisions = revision_set.all_revisions()

        newest = revisions[0]
        for revision in revisions[1:]:
            if revision.last_modified_at is None:
                continue
            if newest.last_modified_at is None or revision.last_modified_at > newest.last_modified_at:
                newest = revision

        merged: Dict[str, List[Any]] = {}
        for revision in revisions:
            for key, value in revision.domain_fields().items():
                if not isinstance(value, list):
                    continue
                bucket = merged.setdefault(key, [])
                for item in value:
                    if item not in bucket:
                        bucket.append(item)

        return ResolutionSuggestion(
            keep_revision_id=newest.revision,
            keep_modified_by=newest.last_modified_by,
            keep_modified_at=newest.last_modified_at,
            merged_collections=merged,
        )

    def get_conflict_stats(self) -> Dict[str, Any]:
        """Counts of conflicts by kind and instance."""
        reports = self.get_all_conflicts()
        by_kind: Counter = Counter()
        by_instance: Counter = Counter()
        manual = 0
        for report in reports:
            by_kind[report.kind.value] += 1
            for instance in report.analysis.instances_involved:
                by_instance[instance] += 1
            if report.analysis.requires_manual_resolution:
                manual += 1
        return {
            "total": len(reports),
            "by_kind": dict(by_kind),
            "by_instance": dict(by_instance),
            "requires_manual_resolution": manual,
        }

    # ==================== Resolution ====================

    def resolve(
        self,
        record_id: str,
        winning_revision_id: str,
        losing_revision_ids: Optional[List[str]] = None
    ) -> ResolutionResult:
        """
        Commit a winner and retire losing revisions.

        Args:
            record_id: Conflicted record
            winning_revision_id: Revision whose content survives
            losing_revision_ids: Revisions to delete (default: every other live revision)

        Returns:
            ResolutionResult with every loser retired

        Raises:
            NoConflictError: Nothing to resolve (e.g. another admin already did)
            StaleRevisionError: Winner is not a live revision, no listed loser is
                live any more, or the write lost a race
            PartialResolutionError: Winner written, some deletions failed
        """
        return self._commit(record_id, winning_revision_id, losing_revision_ids)

    def resolve_merge(
        self,
        record_id: str,
        merged_fields: Dict[str, Any],
        winning_revision_id: Optional[str] = None,
        losing_revision_ids: Optional[List[str]] = None
    ) -> ResolutionResult:
        """
        Commit merged content and retire losing revisions.

        merged_fields (typically ResolutionSuggestion.merged_collections) are
        written over the base revision's domain fields. The stamp records
        resolved_via="merge" and the merged values.

        Args:
            record_id: Conflicted record
            merged_fields: Domain fields to write
            winning_revision_id: Revision the merge is written onto (default: current winner)
            losing_revision_ids: Revisions to delete (default: every other live revision)

        Raises:
            ValueError: merged_fields is empty or names a bookkeeping key
            InvalidDocumentError: A merged value has the wrong shape for its field
            NoConflictError, StaleRevisionError, PartialResolutionError: As for resolve()
        """
        if not merged_fields:
            raise ValueError("merged_fields must name at least one field")
        reserved = sorted(set(merged_fields) & BOOKKEEPING_KEYS)
        if reserved:
            raise ValueError(f"Cannot merge bookkeeping fields: {', '.join(reserved)}")
        return self._commit(record_id, winning_revision_id, losing_revision_ids, merged_fields)

    def _commit(
        self,
        record_id: str,
        winning_revision_id: Optional[str],
        losing_revision_ids: Optional[List[str]],
        merged_fields: Optional[Dict[str, Any]] = None
    ) -> ResolutionResult:
        current, conflict_ids = self.store.get_with_conflicts(record_id)
        if not conflict_ids:
            raise NoConflictError(record_id)

        if winning_revision_id is None:
            winning_revision_id = current.revision
        live = [current.revision] + list(conflict_ids)
        if winning_revision_id not in live:
            raise StaleRevisionError(
                record_id, winning_revision_id,
                f"Revision {winning_revision_id} is not a live revision of {record_id}; "
                f"re-fetch the conflict and retry",
            )

        if winning_revision_id == current.revision:
            winner = current
        else:
            try:
                winner = self.store.get_revision(record_id, winning_revision_id)
            except RecordNotFoundError as e:
                raise StaleRevisionError(record_id, winning_revision_id) from e

        if losing_revision_ids is None:
            losing_revision_ids = [rev for rev in live if rev != winning_revision_id]

        losers: List[str] = []
        skipped: List[str] = []
        for revision in losing_revision_ids:
            if revision == winning_revision_id:
                logger.warning(f"Ignoring winning revision {revision} listed as a loser for {record_id}")
            elif revision not in live:
                skipped.append(revision)
            elif revision not in losers:
                losers.append(revision)

        # a winner write that retires nothing would leave the conflict in place
        if not losers:
            raise StaleRevisionError(
                record_id, winning_revision_id,
                f"None of the losing revisions given for {record_id} is live; "
                f"re-fetch the conflict and retry",
            )

        if merged_fields:
            doc = winner.to_document()
            doc.update(merged_fields)
            winner = record_from_document(doc)

        # Phase 1: winner
        now = self._clock()
        metadata = winner.instance_metadata
        winner.instance_metadata = replace(
            metadata,
            last_modified_by=self.instance_id,
            last_modified_at=now,
            version=metadata.version + 1,
        )
        winner.updated_at = now
        winner.conflict_resolution = ConflictResolutionStamp(
            resolved_at=now,
            resolved_by=self.instance_id,
            winning_revision_id=winning_revision_id,
            retired_revision_ids=list(losers),
            resolved_via="merge" if merged_fields else "winner",
            merged_fields=dict(merged_fields or {}),
        )
        new_revision = self.store.put(winner)
        logger.info(f"Committed winner {winning_revision_id} for {record_id} as {new_revision}")

        # Phase 2: losers
        result = ResolutionResult(
            record_id=record_id,
            winning_revision_id=winning_revision_id,
            new_revision_id=new_revision,
            skipped_revision_ids=skipped,
        )
        self._retire(record_id, losers, result)

        if not result.fully_resolved:
            raise PartialResolutionError(result)
        logger.info(f"Resolved conflict for {record_id}: retired {len(result.retired_revision_ids)} revisions")
        return result

    def retire_revisions(self, record_id: str, revision_ids: List[str]) -> ResolutionResult:
        """
        Retry the deletion phase alone, e.g. after PartialResolutionError.

        Only revisions still present in the store's conflict list are deleted.

        Raises:
            NoConflictError: The record has no conflicts left
            PartialResolutionError: Some deletions failed again
        """
        current, conflict_ids = self.store.get_with_conflicts(record_id)
        if not conflict_ids:
            raise NoConflictError(record_id)

        targets = [rev for rev in revision_ids if rev in conflict_ids]
        result = ResolutionResult(
            record_id=record_id,
            winning_revision_id=current.revision,
            skipped_revision_ids=[rev for rev in revision_ids if rev not in conflict_ids],
        )
        self._retire(record_id, targets, result)

        if not result.fully_resolved:
            raise PartialResolutionError(result)
        return result

    def _retire(self, record_id: str, revisions: List[str], result: ResolutionResult) -> None:
        for revision in revisions:
            try:
                self.store.delete(record_id, revision)
                result.retired_revision_ids.append(revision)
                logger.debug(f"Deleted conflicting revision {revision} for {record_id}")
            except RecordNotFoundError:
                # already compacted or removed by another admin
                result.retired_revision_ids.append(revision)
                logger.info(f"Conflicting revision {revision} for {record_id} already gone")
            except ReplicaWatchError as e:
                result.failed_revision_ids.append(revision)
                logger.warning(f"Could not delete conflicting revision {revision} for {record_id}: {e}")
