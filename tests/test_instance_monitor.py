"""
Unit tests for InstanceMonitor

Tests cover:
- Peer identification from job ids and from URLs
- Link health and peer reachability
- Degraded (feed unreachable) results
- Network health labels
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from replicawatch.consistency.instance_monitor import (
    ACTIVE,
    INBOUND,
    OUTBOUND,
    UNREACHABLE,
    InstanceMonitor,
    network_health_label,
)
from replicawatch.replication import ReplicationStatus

from conftest import FakeStatusSource, link


@pytest.fixture
def monitor(source):
    return InstanceMonitor(source, "node1", "node1.cluster.local")


class TestPeerIdentification:
    """Tests for build_link."""

    def test_push_link_is_outbound(self, monitor):
        built = monitor.build_link(link("push-node1-to-node2"))

        assert built.peer_id == "node2"
        assert built.direction == OUTBOUND
        assert built.docs_transferred == 10

    def test_pull_link_is_inbound(self, monitor):
        built = monitor.build_link(link("pull-node3-to-node1"))

        assert built.peer_id == "node3"
        assert built.direction == INBOUND

    def test_hyphenated_instance_ids(self):
        monitor = InstanceMonitor(FakeStatusSource(), "east-1")

        built = monitor.build_link(link("push-east-1-to-west-2"))

        assert built.peer_id == "west-2"

    def test_peer_from_source_url(self, monitor):
        status = ReplicationStatus(
            id="a1b2c3",
            source="http://whiteforest.holz.ygg:5984/zombieauth",
            target="zombieauth",
            state="running",
        )

        built = monitor.build_link(status)

        assert built.peer_id == "whiteforest"
        assert built.peer_location == "whiteforest.holz.ygg"
        assert built.direction == INBOUND

    def test_peer_from_target_url(self, monitor):
        status = ReplicationStatus(
            id="d4e5", source="http://localhost:5984/zombieauth",
            target="https://admin:pw@node4.cluster:6984/zombieauth", state="running",
        )

        built = monitor.build_link(status)

        assert built.peer_id == "node4"
        assert built.direction == OUTBOUND

    def test_unidentifiable(self, monitor):
        status = ReplicationStatus(id="x", source="zombieauth", target="backup", state="running")
        assert monitor.build_link(status) is None

    def test_state_reasons(self, monitor):
        assert monitor.build_link(link("push-node1-to-node2")).state_reason == "connected"
        retrying = monitor.build_link(link("push-node1-to-node2", "retrying", ["econnrefused"]))
        assert retrying.state_reason == "connection failed: econnrefused"
        assert not retrying.is_healthy
        failed = monitor.build_link(link("push-node1-to-node2", "failed"))
        assert failed.state_reason == "failed"
        odd = monitor.build_link(link("push-node1-to-node2", "paused"))
        assert odd.state_reason == "status: paused"
        assert not odd.is_healthy


class TestInstanceStatus:
    """Tests for get_instance_status."""

    def test_all_reachable(self, monitor, source):
        source.set_peers(node2=True, node3=True)

        status = monitor.get_instance_status()

        assert [i.id for i in status.instances] == ["node1", "node2", "node3"]
        assert status.instances[0].is_current_instance
        assert status.active_instances == 3
        assert status.unreachable_instances == 0
        assert not status.degraded
        assert len(status.instances[1].links) == 2

    def test_one_unreachable(self, monitor, source):
        source.set_peers(node2=True, node3=False)

        status = monitor.get_instance_status()

        assert status.unreachable_instances == 1
        assert status.unreachable_peer_ids == ["node3"]
        assert status.instances[2].status == UNREACHABLE

    def test_one_healthy_link_makes_peer_active(self, monitor, source):
        source.links = [
            link("push-node1-to-node2", "retrying"),
            link("pull-node2-to-node1", "running"),
        ]

        status = monitor.get_instance_status()

        assert status.instances[1].status == ACTIVE

    def test_links_to_self_ignored(self, monitor, source):
        source.links = [link("pull-node2-to-node1"), link("push-node1-to-node1")]

        status = monitor.get_instance_status()

        assert [i.id for i in status.instances] == ["node1", "node2"]

    def test_malformed_address_skips_only_that_link(self, monitor, source):
        source.links = [
            ReplicationStatus(
                id="r1", source="http://[broken/zombieauth", target="zombieauth", state="running"
            ),
            link("push-node1-to-node2"),
        ]

        status = monitor.get_instance_status()

        assert [i.id for i in status.instances] == ["node1", "node2"]
        assert status.instances[1].status == ACTIVE
        assert not status.degraded

    def test_no_replications_is_local_only(self, monitor, source):
        status = monitor.get_instance_status()

        assert status.total_instances == 1
        assert not status.degraded

    def test_feed_unreachable_is_degraded(self, monitor, source):
        source.fail()

        status = monitor.get_instance_status()

        assert status.degraded
        assert status.total_instances == 1
        assert status.unreachable_instances == 0
        assert status.instances[0].status == ACTIVE

    def test_unexpected_error_is_degraded(self, monitor, source):
        source.fail(RuntimeError("boom"))

        assert monitor.get_instance_status().degraded


class TestNetworkSummary:
    """Tests for get_network_summary and network_health_label."""

    def test_labels(self):
        assert network_health_label(3, 0) == "healthy"
        assert network_health_label(2, 1) == "degraded"
        assert network_health_label(1, 1) == "critical"
        assert network_health_label(1, 0, degraded=True) == "unknown"

    def test_summary(self, monitor, source):
        source.set_peers(node2=True, node3=False)

        summary = monitor.get_network_summary()

        assert summary.network_health == "degraded"
        assert summary.total_links == 4
        assert summary.healthy_links == 2
        assert summary.replication_health == pytest.approx(0.5)

    def test_summary_reuses_status(self, monitor, source):
        source.set_peers(node2=True)
        status = monitor.get_instance_status()

        monitor.get_network_summary(status)

        assert source.calls == 1

    def test_degraded_summary(self, monitor, source):
        source.fail()

        summary = monitor.get_network_summary()

        assert summary.network_health == "unknown"
        assert summary.replication_health == 1.0
