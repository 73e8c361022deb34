"""
Tests for ClusterHealthService

Covers the end-to-end scenarios: all peers reachable, a peer dropping out,
a peer coming back, plus fallback snapshots and overlapping checks.
"""

import sys
import threading
from datetime import timedelta
from pathlib import Path
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from replicawatch.consistency.cluster_health import ClusterHealthService
from replicawatch.consistency.instance_monitor import InstanceMonitor
from replicawatch.consistency.isolation import IsolationTracker
from replicawatch.errors import TransientIOError
from replicawatch.records import RecordKind, record_from_document

from conftest import account_doc


@pytest.fixture
def health(source, store, clock):
    monitor = InstanceMonitor(source, "node1", "node1.cluster.local")
    return ClusterHealthService(
        monitor, tracker=IsolationTracker(clock=clock), store=store,
        tracked_kinds=[RecordKind.ACCOUNT], clock=clock,
    )


class TestScenarios:
    """Peers reachable, peer lost, peer recovered."""

    def test_all_links_running(self, health, source):
        source.set_peers(peer2=True, peer3=True)

        snapshot = health.check_health()

        assert snapshot.summary.total == 3
        assert snapshot.summary.unhealthy == 0
        assert snapshot.summary.network_health == "healthy"
        assert snapshot.summary.replication_health == 100
        assert not health.is_isolated().isolated
        assert not snapshot.isolation.is_open

    def test_peer_starts_retrying(self, health, source, clock):
        source.set_peers(peer2=True, peer3=True)
        health.check_health()

        clock.advance(30)
        source.set_peers(peer2=False, peer3=True)
        snapshot = health.check_health()

        assert snapshot.isolation.is_open
        assert snapshot.isolation.isolated_peer_ids == ["peer2"]
        assert snapshot.isolation.started_at == clock.now
        status = health.is_isolated()
        assert status.isolated
        assert status.peers == ["peer2"]

        clock.advance(1)
        saved = record_from_document(account_doc("user:alice", modified_at=clock.now))
        assert health.tracker.is_record_isolated(saved)

    def test_peer_recovers(self, health, source, clock):
        before = record_from_document(account_doc("user:alice", modified_at=clock.now))
        clock.advance(10)
        source.set_peers(peer2=False)
        health.check_health()
        assert health.tracker.is_isolated()

        clock.advance(60)
        source.set_peers(peer2=True)
        snapshot = health.check_health()

        assert not snapshot.isolation.is_open
        assert not health.is_isolated().isolated
        assert not health.tracker.is_record_isolated(before)
        assert len(health.tracker.get_history()) == 1


class TestDegradedAndFallback:
    """Unobservable feed and internal failures."""

    def test_no_check_yet_reports_unknown(self, health):
        status = health.is_isolated()

        assert status.isolated
        assert "not performed" in status.reason

    def test_feed_down_leaves_window_alone(self, health, source, clock):
        source.set_peers(peer2=False)
        health.check_health()
        started = health.tracker.get_window().started_at

        clock.advance(30)
        source.fail(TransientIOError("monitor down"))
        snapshot = health.check_health()

        assert snapshot.summary.network_health == "unknown"
        assert health.tracker.get_window().started_at == started
        assert health.is_isolated().isolated
        assert "unknown" in health.is_isolated().reason

    def test_feed_down_does_not_open_window(self, health, source):
        source.fail()

        health.check_health()

        assert not health.tracker.is_isolated()

    def test_internal_error_returns_fallback(self, source, clock):
        monitor = InstanceMonitor(source, "node1")
        monitor.get_network_summary = MagicMock(side_effect=RuntimeError("boom"))
        service = ClusterHealthService(monitor, clock=clock)

        snapshot = service.check_health()

        assert snapshot.fallback
        assert snapshot.summary.network_health == "unknown"
        assert [i.id for i in snapshot.instances] == ["node1"]
        assert service.get_cached_health() is snapshot

    def test_to_dict(self, health, source):
        source.set_peers(peer2=True)

        data = health.check_health().to_dict()

        assert data["current_instance"] == "node1"
        assert data["summary"]["network_health"] == "healthy"
        assert data["instances"][1]["links"][0]["state"] == "running"


class TestSingleFlight:
    """Overlapping check_health calls."""

    def test_overlapping_call_returns_cached(self, source, clock):
        source.set_peers(peer2=True)
        entered = threading.Event()
        release = threading.Event()
        original = source.list_links

        def slow_list_links():
            entered.set()
            release.wait(5)
            return original()

        monitor = InstanceMonitor(source, "node1")
        service = ClusterHealthService(monitor, clock=clock)
        service.check_health()
        first = service.get_cached_health()
        calls_before = source.calls

        source.list_links = slow_list_links
        worker = threading.Thread(target=service.check_health)
        worker.start()
        assert entered.wait(5)

        overlapping = service.check_health()
        release.set()
        worker.join(5)

        assert overlapping is first
        assert source.calls == calls_before + 1


class TestIsolationQueries:
    """Warnings, window info and at-risk record counts."""

    def test_connected_has_no_warning(self, health, source):
        source.set_peers(peer2=True)
        health.check_health()

        assert health.get_isolation_warning() is None
        assert health.count_isolated_records() == 0
        assert health.get_isolation_info()["is_isolated"] is False

    def test_warning_and_info_while_isolated(self, health, source, clock):
        source.set_peers(peer2=False)
        health.check_health()
        clock.advance(42)

        warning = health.get_isolation_warning()
        info = health.get_isolation_info()

        assert warning["isolated_instances"] == ["peer2"]
        assert "conflicts" in warning["message"]
        assert info["duration_ms"] == 42000

    def test_count_isolated_records(self, health, source, store, clock):
        store.add(account_doc("user:old", modified_at=clock.now - timedelta(seconds=1)))
        source.set_peers(peer2=False)
        health.check_health()
        store.add(account_doc("user:new", modified_at=clock.now))
        store.add({"_id": "client:web", "type": "client", "instance_metadata": {
            "last_modified_at": clock.now.isoformat()}})

        assert health.count_isolated_records() == 1

    def test_count_when_store_down(self, health, source, store):
        source.set_peers(peer2=False)
        health.check_health()
        store.unavailable = True

        assert health.count_isolated_records() is None
