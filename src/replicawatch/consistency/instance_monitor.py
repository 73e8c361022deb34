"""
Instance Monitor - Peer reachability from replication status

Turns the flat list of replication jobs into a view of peer instances: which
peers exist, whether each is reachable, and the health of every link to and
from it.

Peer identification, in order:
    1. Job id pattern: push-<local>-to-<peer> (outbound) or
       pull-<peer>-to-<local> (inbound)
    2. Non-local hostname of the source (inbound) or target (outbound);
       the peer id is its first DNS label (whiteforest.holz.ygg -> whiteforest)

Link health: running/completed are healthy. retrying means the last attempt
could not reach the peer and is unhealthy, as are error/failed and any state
this module does not recognise.

Pattern: never raise to the caller. If the feed cannot be read the result
is a degraded, local-only view with zero unreachable peers, since "cannot
observe" is not the same as "everyone is down".
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from ..replication import ReplicationStatus, ReplicationStatusSource
from ..utils import format_timestamp, utcnow

logger = logging.getLogger(__name__)

HEALTHY_STATES = frozenset({"running", "completed"})

INBOUND = "inbound"
OUTBOUND = "outbound"

ACTIVE = "active"
UNREACHABLE = "unreachable"

_LINK_ID_PATTERN = re.compile(r"^(push|pull)-(.+)-to-(.+)$")
_LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1", "")


@dataclass
class ReplicationLink:
    """One directional replication channel between the local instance and a peer."""
    id: str
    peer_id: str
    peer_location: str
    direction: str
    state: str
    state_reason: str
    docs_transferred: int = 0
    changes_pending: int = 0
    last_activity: Optional[datetime] = None
    recent_errors: List[str] = field(default_factory=list)

    @property
    def is_healthy(self) -> bool:
        return self.state in HEALTHY_STATES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "peer_id": self.peer_id,
            "direction": self.direction,
            "state": self.state,
            "state_reason": self.state_reason,
            "docs_transferred": self.docs_transferred,
            "changes_pending": self.changes_pending,
            "last_activity": format_timestamp(self.last_activity),
            "recent_errors": list(self.recent_errors),
        }


@dataclass
class PeerInstance:
    """Aggregate of all links touching one instance."""
    id: str
    location: str
    status: str
    last_seen: Optional[datetime] = None
    is_current_instance: bool = False
    links: List[ReplicationLink] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "location": self.location,
            "status": self.status,
            "last_seen": format_timestamp(self.last_seen),
            "is_current_instance": self.is_current_instance,
            "links": [link.to_dict() for link in self.links],
        }


@dataclass
class InstanceStatus:
    """
    Result of one poll of the replication feed.

    Attributes:
        current_instance: Local instance id
        instances: Local instance first, then peers sorted by id
        degraded: True when the feed could not be observed
    """
    current_instance: str
    instances: List[PeerInstance]
    degraded: bool = False

    @property
    def total_instances(self) -> int:
        return len(self.instances)

    @property
    def active_instances(self) -> int:
        return sum(1 for i in self.instances if i.status == ACTIVE)

    @property
    def unreachable_instances(self) -> int:
        return sum(1 for i in self.instances if i.status == UNREACHABLE)

    @property
    def unreachable_peer_ids(self) -> List[str]:
        return [i.id for i in self.instances if i.status == UNREACHABLE]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_instance": self.current_instance,
            "total_instances": self.total_instances,
            "active_instances": self.active_instances,
            "unreachable_instances": self.unreachable_instances,
            "degraded": self.degraded,
            "instances": [i.to_dict() for i in self.instances],
        }


@dataclass
class NetworkSummary:
    """Aggregate health figures derived from an InstanceStatus."""
    network_health: str
    total_instances: int
    active_instances: int
    unreachable_instances: int
    total_links: int
    healthy_links: int

    @property
    def replication_health(self) -> float:
        """Fraction of healthy links (1.0 when there are none)."""
        if self.total_links == 0:
            return 1.0
        return self.healthy_links / self.total_links

    def to_dict(self) -> Dict[str, Any]:
        return {
            "network_health": self.network_health,
            "total_instances": self.total_instances,
            "active_instances": self.active_instances,
            "unreachable_instances": self.unreachable_instances,
            "total_links": self.total_links,
            "healthy_links": self.healthy_links,
            "replication_health": self.replication_health,
        }


def network_health_label(active: int, unreachable: int, degraded: bool = False) -> str:
    """
    Label the network from peer counts.

    Returns:
        "unknown" if the feed could not be observed, "healthy" with zero
        unreachable peers, "degraded" when active peers outnumber unreachable
        ones, "critical" otherwise
    """
    if degraded:
        return "unknown"
    if unreachable == 0:
        return "healthy"
    if active > unreachable:
        return "degraded"
    return "critical"


class InstanceMonitor:
    """
    Derives peer instance status from replication jobs.

    Example:
        monitor = InstanceMonitor(ReplicationMonitorClient(url, "zombieauth"), "node1")
        status = monitor.get_instance_status()
        for peer in status.instances:
            print(peer.id, peer.status)
    """

    def __init__(
        self,
        source: ReplicationStatusSource,
        instance_id: str,
        instance_location: str = "unknown"
    ):
        self.source = source
        self.instance_id = instance_id
        self.instance_location = instance_location

    def _local_instance(self) -> PeerInstance:
        return PeerInstance(
            id=self.instance_id,
            location=self.instance_location,
            status=ACTIVE,
            last_seen=utcnow(),
            is_current_instance=True,
        )

    def get_instance_status(self) -> InstanceStatus:
        """
        Poll the feed and classify every peer.

        Returns:
            InstanceStatus; degraded and local-only if the feed failed
        """
        try:
            statuses = self.source.list_links()
        except Exception as e:
            logger.warning(f"Cannot observe replication status, reporting local instance only: {e}")
            return InstanceStatus(
                current_instance=self.instance_id,
                instances=[self._local_instance()],
                degraded=True,
            )

        peers: Dict[str, PeerInstance] = {}
        for status in statuses:
            try:
                link = self.build_link(status)
            except ValueError as e:
                logger.warning(f"Skipping replication {status.id} with malformed address: {e}")
                continue
            if link is None:
                logger.debug(f"Could not identify peer for replication {status.id}")
                continue
            if link.peer_id == self.instance_id:
                logger.debug(f"Replication {status.id} points at the local instance, ignoring")
                continue

            peer = peers.get(link.peer_id)
            if peer is None:
                peer = PeerInstance(id=link.peer_id, location=link.peer_location, status=UNREACHABLE)
                peers[link.peer_id] = peer
            peer.links.append(link)

            if link.is_healthy:
                peer.status = ACTIVE
            if link.last_activity and (peer.last_seen is None or link.last_activity > peer.last_seen):
                peer.last_seen = link.last_activity

        instances = [self._local_instance()] + [peers[pid] for pid in sorted(peers)]
        result = InstanceStatus(current_instance=self.instance_id, instances=instances)

        logger.debug(
            f"Instance status: {result.active_instances} active, "
            f"{result.unreachable_instances} unreachable of {result.total_instances}"
        )
        return result

    def build_link(self, status: ReplicationStatus) -> Optional[ReplicationLink]:
        """
        Build a ReplicationLink from a feed entry.

        Returns:
            The link, or None if no peer could be identified
        """
        identified = self._peer_from_id(status.id) or self._peer_from_urls(status.source, status.target)
        if identified is None:
            return None
        peer_id, peer_location, direction = identified

        return ReplicationLink(
            id=status.id,
            peer_id=peer_id,
            peer_location=peer_location,
            direction=direction,
            state=status.state,
            state_reason=self._state_reason(status),
            docs_transferred=status.docs_written if direction == OUTBOUND else status.docs_read,
            changes_pending=status.changes_pending,
            last_activity=status.last_activity,
            recent_errors=list(status.recent_errors),
        )

    def _peer_from_id(self, link_id: str) -> Optional[Tuple[str, str, str]]:
        match = _LINK_ID_PATTERN.match(link_id or "")
        if not match:
            return None
        verb, left, right = match.groups()
        if verb == "push" and left == self.instance_id:
            return right, right, OUTBOUND
        if verb == "pull" and right == self.instance_id:
            return left, left, INBOUND
        return None

    @staticmethod
    def _remote_host(address: str) -> Optional[str]:
        if "://" not in (address or ""):
            # bare database name, i.e. local
            return None
        host = urlparse(address).hostname or ""
        if host in _LOCAL_HOSTS or "localhost" in host:
            return None
        return host

    def _peer_from_urls(self, source: str, target: str) -> Optional[Tuple[str, str, str]]:
        source_host = self._remote_host(source)
        if source_host:
            return source_host.split(".")[0], source_host, INBOUND
        target_host = self._remote_host(target)
        if target_host:
            return target_host.split(".")[0], target_host, OUTBOUND
        return None

    @staticmethod
    def _state_reason(status: ReplicationStatus) -> str:
        first_error = status.recent_errors[0][:40] if status.recent_errors else None
        if status.state == "running":
            return "connected"
        if status.state == "completed":
            return "completed"
        if status.state == "retrying":
            return f"connection failed: {first_error}" if first_error else "connection failed"
        if status.state in ("error", "failed"):
            return first_error or "failed"
        return f"status: {status.state}"

    def get_network_summary(self, status: Optional[InstanceStatus] = None) -> NetworkSummary:
        """
        Summarize network health.

        Args:
            status: Reuse an existing poll result instead of polling again
        """
        status = status or self.get_instance_status()
        links = [link for instance in status.instances for link in instance.links]
        return NetworkSummary(
            network_health=network_health_label(
                status.active_instances, status.unreachable_instances, status.degraded
            ),
            total_instances=status.total_instances,
            active_instances=status.active_instances,
            unreachable_instances=status.unreachable_instances,
            total_links=len(links),
            healthy_links=sum(1 for link in links if link.is_healthy),
        )
