"""
Unit tests for ConflictDetector

Tests cover:
- Conflict detection and revision sets
- Classification (revision_conflict vs data_conflict)
- Resolution suggestions
- Two-phase resolution: winner write, loser retirement
- Partial failures, stale winners, idempotence
- Merge resolutions
"""

import sys
from datetime import timedelta
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from replicawatch.consistency.conflict_detector import ConflictDetector, ConflictType
from replicawatch.errors import (
    InvalidDocumentError,
    NoConflictError,
    PartialResolutionError,
    RecordNotFoundError,
    StaleRevisionError,
)
from replicawatch.records import RecordKind

from conftest import T0, account_doc


@pytest.fixture
def detector(store, clock):
    return ConflictDetector(store, "node1", clock=clock)


def revision_conflict(store):
    """Two revisions that differ only in bookkeeping."""
    store.add(account_doc("user:alice", "node1", T0, version=2), "2-aaa")
    store.add(account_doc("user:alice", "node2", T0 + timedelta(seconds=5), version=3), "2-bbb")


def data_conflict(store):
    """Two revisions with different email and groups."""
    store.add(account_doc("user:bob", "node1", T0, email="bob@one.example", groups=["a"]), "2-aaa")
    store.add(
        account_doc("user:bob", "node2", T0 + timedelta(seconds=5), email="bob@two.example", groups=["b"]),
        "2-bbb",
    )


class TestDetection:
    """Reading conflicts from the store."""

    def test_no_conflict(self, detector, store):
        store.add(account_doc("user:carol"))

        report = detector.get_conflict("user:carol")

        assert report.analysis.conflict_type == ConflictType.NO_CONFLICT
        assert report.analysis.conflict_count == 0
        assert detector.get_all_conflicts() == []

    def test_revision_set(self, detector, store):
        revision_conflict(store)

        revision_set = detector.get_revision_set("user:alice")

        assert revision_set.current.revision == "2-bbb"
        assert revision_set.conflicting_revision_ids == ["2-aaa"]
        assert [r.revision for r in revision_set.conflicting] == ["2-aaa"]
        assert revision_set.live_revision_ids() == ["2-bbb", "2-aaa"]

    def test_missing_record(self, detector):
        with pytest.raises(RecordNotFoundError):
            detector.get_conflict("user:ghost")

    def test_get_all_conflicts_filters_kind(self, detector, store):
        data_conflict(store)
        store.add({"_id": "client:web", "type": "client", "name": "Web"}, "1-aaa")
        store.add({"_id": "client:web", "type": "client", "name": "Web!"}, "1-bbb")

        accounts = detector.get_all_conflicts([RecordKind.ACCOUNT])
        everything = detector.get_all_conflicts()

        assert [r.record_id for r in accounts] == ["user:bob"]
        assert sorted(r.record_id for r in everything) == ["client:web", "user:bob"]


class TestAnalysis:
    """Classification of revision sets."""

    def test_identical_content_is_revision_conflict(self, detector, store):
        revision_conflict(store)

        analysis = detector.get_conflict("user:alice").analysis

        assert analysis.conflict_type == ConflictType.REVISION_CONFLICT
        assert analysis.conflict_count == 1
        assert analysis.differing_fields == []
        assert analysis.instances_involved == ["node1", "node2"]
        assert not analysis.requires_manual_resolution

    def test_different_content_is_data_conflict(self, detector, store):
        data_conflict(store)

        analysis = detector.get_conflict("user:bob").analysis

        assert analysis.conflict_type == ConflictType.DATA_CONFLICT
        assert analysis.differing_fields == ["email", "groups"]
        assert analysis.requires_manual_resolution

    def test_unknown_field_on_one_side_differs(self, detector, store):
        store.add(account_doc("user:dave"), "2-aaa")
        store.add(account_doc("user:dave", nickname="D"), "2-bbb")

        analysis = detector.get_conflict("user:dave").analysis

        assert analysis.differing_fields == ["nickname"]

    def test_unreadable_revision_needs_manual_resolution(self, detector, store):
        revision_conflict(store)
        store.missing_revisions.add("2-aaa")

        report = detector.get_conflict("user:alice")

        assert report.analysis.conflict_type == ConflictType.DATA_CONFLICT
        assert report.analysis.unverified_revision_ids == ["2-aaa"]
        assert report.analysis.requires_manual_resolution

    def test_report_redacts_secrets(self, detector, store):
        store.add(account_doc("user:erin", password_hash="h1"), "2-aaa")
        store.add(account_doc("user:erin", password_hash="h2"), "2-bbb")

        data = detector.get_conflict("user:erin").to_dict()

        assert data["analysis"]["differing_fields"] == ["password_hash"]
        assert all(r["data"]["password_hash"] == "***" for r in data["revisions"])
        assert data["revisions"][0]["is_current"]


class TestSuggestion:
    """Suggested resolutions."""

    def test_keeps_most_recent_and_merges_collections(self, detector, store):
        data_conflict(store)
        store.add(
            account_doc("user:bob", "node3", T0 + timedelta(seconds=9), email="bob@three.example", groups=["a", "c"]),
            "1-ccc",
        )

        suggestion = detector.get_conflict("user:bob").suggestion

        assert suggestion.keep_revision_id == "1-ccc"
        assert suggestion.keep_modified_by == "node3"
        assert suggestion.merged_collections["groups"] == ["b", "a", "c"]

    def test_tie_favors_current(self, detector, store):
        store.add(account_doc("user:frank", "node2", T0, email="x@example.com"), "2-aaa")
        store.add(account_doc("user:frank", "node1", T0, email="y@example.com"), "2-bbb")

        suggestion = detector.get_conflict("user:frank").suggestion

        assert suggestion.keep_revision_id == "2-bbb"


class TestResolve:
    """Two-phase resolution."""

    def test_revision_conflict_resolved(self, detector, store, clock):
        revision_conflict(store)

        result = detector.resolve("user:alice", "2-bbb", ["2-aaa"])

        assert result.fully_resolved
        assert result.retired_revision_ids == ["2-aaa"]
        _, conflicts = store.get_with_conflicts("user:alice")
        assert conflicts == []

        winner = store.get("user:alice")
        assert winner.revision == result.new_revision_id
        assert winner.instance_metadata.version == 4
        assert winner.last_modified_by == "node1"
        assert winner.last_modified_at == clock.now
        assert winner.conflict_resolution.winning_revision_id == "2-bbb"
        assert winner.conflict_resolution.retired_revision_ids == ["2-aaa"]

    def test_non_current_winner_content_survives(self, detector, store):
        data_conflict(store)

        detector.resolve("user:bob", "2-aaa")

        record = store.get("user:bob")
        assert record.email == "bob@one.example"
        assert record.groups == ["a"]
        assert store.get_with_conflicts("user:bob")[1] == []

    def test_default_losers_are_all_other_revisions(self, detector, store):
        data_conflict(store)
        store.add(account_doc("user:bob", "node3"), "1-ccc")

        result = detector.resolve("user:bob", "2-bbb")

        assert sorted(result.retired_revision_ids) == ["1-ccc", "2-aaa"]

    def test_resolve_twice_raises_no_conflict(self, detector, store):
        revision_conflict(store)
        detector.resolve("user:alice", "2-bbb", ["2-aaa"])
        puts = len(store.put_log)

        with pytest.raises(NoConflictError):
            detector.resolve("user:alice", "2-bbb", ["2-aaa"])

        assert len(store.put_log) == puts
        assert store.get_with_conflicts("user:alice")[1] == []

    def test_winner_not_live_is_stale(self, detector, store):
        revision_conflict(store)

        with pytest.raises(StaleRevisionError):
            detector.resolve("user:alice", "1-old", ["2-aaa"])
        assert store.put_log == []

    def test_lost_write_race_is_stale(self, detector, store):
        revision_conflict(store)

        def concurrent_edit(record):
            other = store.get("user:alice")
            store.put(other)

        store.before_put = concurrent_edit

        with pytest.raises(StaleRevisionError):
            detector.resolve("user:alice", "2-bbb", ["2-aaa"])
        assert store.delete_log == []

    def test_unknown_losers_are_skipped(self, detector, store):
        revision_conflict(store)

        result = detector.resolve("user:alice", "2-bbb", ["2-aaa", "9-zzz", "2-bbb"])

        assert result.retired_revision_ids == ["2-aaa"]
        assert result.skipped_revision_ids == ["9-zzz"]

    def test_no_live_losers_writes_nothing(self, detector, store):
        revision_conflict(store)

        with pytest.raises(StaleRevisionError):
            detector.resolve("user:alice", "2-bbb", [])
        with pytest.raises(StaleRevisionError):
            detector.resolve("user:alice", "2-bbb", ["9-zzz"])

        assert store.put_log == []
        assert store.get_with_conflicts("user:alice")[1] == ["2-aaa"]

    def test_winner_resolution_is_stamped(self, detector, store):
        revision_conflict(store)

        detector.resolve("user:alice", "2-bbb")

        stamp = store.get("user:alice").conflict_resolution
        assert stamp.resolved_via == "winner"
        assert stamp.merged_fields == {}

    def test_partial_failure(self, detector, store):
        data_conflict(store)
        store.add(account_doc("user:bob", "node3"), "1-ccc")
        store.failing_deletes.add("1-ccc")

        with pytest.raises(PartialResolutionError) as exc_info:
            detector.resolve("user:bob", "2-bbb")

        result = exc_info.value.result
        assert not result.fully_resolved
        assert result.retired_revision_ids == ["2-aaa"]
        assert result.failed_revision_ids == ["1-ccc"]
        assert result.new_revision_id is not None
        assert store.get_with_conflicts("user:bob")[1] == ["1-ccc"]

    def test_retire_after_partial_failure(self, detector, store):
        data_conflict(store)
        store.add(account_doc("user:bob", "node3"), "1-ccc")
        store.failing_deletes.add("1-ccc")
        with pytest.raises(PartialResolutionError):
            detector.resolve("user:bob", "2-bbb")
        store.failing_deletes.clear()

        result = detector.retire_revisions("user:bob", ["1-ccc"])

        assert result.retired_revision_ids == ["1-ccc"]
        assert store.get_with_conflicts("user:bob")[1] == []

    def test_retire_without_conflicts(self, detector, store):
        store.add(account_doc("user:carol"))

        with pytest.raises(NoConflictError):
            detector.retire_revisions("user:carol", ["1-zzz"])


class TestMergeResolve:
    """Resolution by merging collection fields."""

    def test_merge_onto_current_winner(self, detector, store, clock):
        data_conflict(store)
        merged = detector.get_conflict("user:bob").suggestion.merged_collections

        result = detector.resolve_merge("user:bob", merged)

        assert result.fully_resolved
        assert result.winning_revision_id == "2-bbb"
        assert result.retired_revision_ids == ["2-aaa"]
        record = store.get("user:bob")
        assert record.groups == ["b", "a"]
        assert record.email == "bob@two.example"
        assert record.last_modified_at == clock.now
        assert record.conflict_resolution.resolved_via == "merge"
        assert record.conflict_resolution.merged_fields["groups"] == ["b", "a"]
        assert store.get_with_conflicts("user:bob")[1] == []

    def test_merge_onto_chosen_revision(self, detector, store):
        data_conflict(store)

        detector.resolve_merge("user:bob", {"groups": ["a", "b"]}, winning_revision_id="2-aaa")

        record = store.get("user:bob")
        assert record.email == "bob@one.example"
        assert record.groups == ["a", "b"]

    def test_bookkeeping_fields_rejected(self, detector, store):
        data_conflict(store)

        with pytest.raises(ValueError):
            detector.resolve_merge("user:bob", {"sync_status": "synced"})
        with pytest.raises(ValueError):
            detector.resolve_merge("user:bob", {})
        assert store.put_log == []

    def test_wrong_shape_rejected(self, detector, store):
        data_conflict(store)

        with pytest.raises(InvalidDocumentError):
            detector.resolve_merge("user:bob", {"groups": "a,b"})
        assert store.put_log == []

    def test_merge_partial_failure(self, detector, store):
        data_conflict(store)
        store.failing_deletes.add("2-aaa")

        with pytest.raises(PartialResolutionError) as exc_info:
            detector.resolve_merge("user:bob", {"groups": ["a", "b"]})

        assert exc_info.value.result.failed_revision_ids == ["2-aaa"]
        assert store.get("user:bob").groups == ["a", "b"]


class TestStats:
    """Conflict statistics."""

    def test_counts(self, detector, store):
        revision_conflict(store)
        data_conflict(store)

        stats = detector.get_conflict_stats()

        assert stats["total"] == 2
        assert stats["by_kind"] == {"account": 2}
        assert stats["by_instance"] == {"node1": 2, "node2": 2}
        assert stats["requires_manual_resolution"] == 1
