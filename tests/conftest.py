"""Pytest fixtures and in-memory fakes for replicawatch tests"""
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from replicawatch.errors import RecordNotFoundError, StaleRevisionError, TransientIOError
from replicawatch.records import Record, RecordKind, record_from_document
from replicawatch.replication import ReplicationStatus, ReplicationStatusSource
from replicawatch.store import ConflictedRecord, DocumentStore

T0 = datetime(2024, 5, 1, 10, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock: call it for the time, advance() to move it."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, microseconds: int = 0) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, microseconds=microseconds)
        return self.now


def account_doc(
    record_id: str,
    modified_by: str = "node1",
    modified_at: Optional[datetime] = T0,
    version: int = 1,
    sync_status: str = "synced",
    **fields: Any
) -> Dict[str, Any]:
    """Raw account document as another writer would store it."""
    doc: Dict[str, Any] = {
        "_id": record_id,
        "type": "user",
        "username": record_id.split(":")[-1],
        "email": f"{record_id.split(':')[-1]}@example.com",
        "groups": [],
        "roles": ["user"],
        "enabled": True,
        "sync_status": sync_status,
        "instance_metadata": {
            "created_by": modified_by,
            "created_at": T0.isoformat(),
            "last_modified_by": modified_by,
            "last_modified_at": modified_at.isoformat().replace("+00:00", "Z") if modified_at else None,
            "version": version,
        },
    }
    doc.update(fields)
    return doc


class FakeDocumentStore(DocumentStore):
    """
    In-memory multi-revision store.

    Each record keeps every revision it ever had plus a list of live leaves.
    The winner is the live leaf with the highest generation, as in CouchDB.
    """

    def __init__(self):
        self.revisions: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.leaves: Dict[str, List[str]] = {}
        self.failing_deletes: Set[str] = set()
        self.missing_revisions: Set[str] = set()
        self.unavailable = False
        self.before_put: Optional[Callable[[Record], None]] = None
        self.put_log: List[Record] = []
        self.delete_log: List[str] = []
        self._counter = 0

    # ---- test helpers ----

    def _next_revision(self, generation: int) -> str:
        self._counter += 1
        return f"{generation}-{self._counter:04x}"

    def add(self, doc: Dict[str, Any], revision: Optional[str] = None) -> str:
        """Insert a document as a new live leaf and return its revision."""
        record_id = doc["_id"]
        revision = revision or self._next_revision(1)
        stored = dict(doc, _rev=revision)
        self.revisions.setdefault(record_id, {})[revision] = stored
        self.leaves.setdefault(record_id, []).append(revision)
        return revision

    def _winner(self, record_id: str) -> str:
        leaves = self.leaves.get(record_id)
        if not leaves:
            raise RecordNotFoundError(record_id)
        return max(leaves, key=lambda rev: (int(rev.split("-")[0]), rev))

    def _check(self) -> None:
        if self.unavailable:
            raise TransientIOError("store unavailable")

    # ---- DocumentStore ----

    def _load(self, record_id: str) -> ConflictedRecord:
        winner = self._winner(record_id)
        conflicts = sorted(rev for rev in self.leaves[record_id] if rev != winner)
        return record_from_document(self.revisions[record_id][winner]), conflicts

    def get(self, record_id: str) -> Record:
        self._check()
        return self._load(record_id)[0]

    def get_with_conflicts(self, record_id: str) -> ConflictedRecord:
        self._check()
        return self._load(record_id)

    def get_revision(self, record_id: str, revision: str) -> Record:
        self._check()
        if revision in self.missing_revisions or revision not in self.revisions.get(record_id, {}):
            raise RecordNotFoundError(record_id, revision)
        return record_from_document(self.revisions[record_id][revision])

    def put(self, record: Record) -> str:
        self._check()
        if self.before_put is not None:
            hook, self.before_put = self.before_put, None
            hook(record)

        leaves = self.leaves.get(record.id, [])
        if leaves and record.revision not in leaves:
            raise StaleRevisionError(record.id, record.revision)

        generation = int(record.revision.split("-")[0]) + 1 if record.revision else 1
        new_revision = self._next_revision(generation)
        doc = record.to_document()
        doc["_rev"] = new_revision
        self.revisions.setdefault(record.id, {})[new_revision] = doc
        self.leaves[record.id] = [rev for rev in leaves if rev != record.revision] + [new_revision]
        self.put_log.append(record)
        return new_revision

    def delete(self, record_id: str, revision: str) -> None:
        self._check()
        if revision in self.failing_deletes:
            raise TransientIOError(f"delete of {revision} timed out")
        leaves = self.leaves.get(record_id, [])
        if revision not in leaves:
            if revision in self.revisions.get(record_id, {}):
                raise StaleRevisionError(record_id, revision)
            raise RecordNotFoundError(record_id, revision)
        leaves.remove(revision)
        self.delete_log.append(revision)

    def _current(self, kinds: Iterable[RecordKind]) -> List[Record]:
        wanted = set(kinds)
        records = []
        for record_id in sorted(self.leaves):
            if not self.leaves[record_id]:
                continue
            record = self._load(record_id)[0]
            if record.kind in wanted:
                records.append(record)
        return records

    def query_modified_since(self, since: datetime, kinds: Iterable[RecordKind]) -> List[Record]:
        self._check()
        return [
            r for r in self._current(kinds)
            if r.last_modified_at is not None and r.last_modified_at >= since
        ]

    def list_records(self, kinds: Iterable[RecordKind]) -> List[Record]:
        self._check()
        return self._current(kinds)

    def list_conflicted(self, kinds: Optional[Iterable[RecordKind]] = None) -> List[ConflictedRecord]:
        self._check()
        result = []
        for record in self._current(kinds if kinds is not None else list(RecordKind)):
            current, conflicts = self._load(record.id)
            if conflicts:
                result.append((current, conflicts))
        return result


def link(link_id: str, state: str = "running", errors: Optional[List[str]] = None) -> ReplicationStatus:
    """ReplicationStatus for a push-/pull- named job between bare databases."""
    return ReplicationStatus(
        id=link_id,
        source="zombieauth",
        target="zombieauth",
        state=state,
        docs_read=10,
        docs_written=10,
        last_activity=T0,
        recent_errors=list(errors or []),
    )


class FakeStatusSource(ReplicationStatusSource):
    """Replication feed with scripted peer reachability."""

    def __init__(self, instance_id: str = "node1"):
        self.instance_id = instance_id
        self.links: List[ReplicationStatus] = []
        self.error: Optional[Exception] = None
        self.calls = 0

    def set_peers(self, **peers: bool) -> None:
        """set_peers(node2=True, node3=False): push and pull links per peer."""
        self.error = None
        self.links = []
        for peer, reachable in sorted(peers.items()):
            state = "running" if reachable else "retrying"
            errors = [] if reachable else ["econnrefused"]
            self.links.append(link(f"push-{self.instance_id}-to-{peer}", state, errors))
            self.links.append(link(f"pull-{peer}-to-{self.instance_id}", state, errors))

    def fail(self, error: Optional[Exception] = None) -> None:
        self.error = error or TransientIOError("replication monitor unreachable")

    def list_links(self) -> List[ReplicationStatus]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.links)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return FakeDocumentStore()


@pytest.fixture
def source():
    return FakeStatusSource("node1")


@pytest.fixture
def settings():
    from replicawatch.config import Settings
    return Settings(instance_id="node1", instance_location="node1.cluster.local")


@pytest.fixture
def services(settings, store, source, clock):
    """Fully wired services over the in-memory fakes."""
    from replicawatch.services import build_services
    return build_services(settings, store=store, source=source, clock=clock)
