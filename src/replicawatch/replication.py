"""
Replication status feed.

The store replicates on its own; this module only reads what the
replication-monitor service reports about each configured replication job.
Entries are polled, never pushed.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from .errors import TransientIOError
from .utils import format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)


@dataclass
class ReplicationStatus:
    """
    One replication job as reported by the status feed.

    Attributes:
        id: Replication job id (e.g. "push-node1-to-node2")
        source: Source database URL or local database name
        target: Target database URL or local database name
        state: running | retrying | completed | error | failed (or anything else)
        docs_read: Documents read from the source
        docs_written: Documents written to the target
        changes_pending: Changes not yet replicated
        last_activity: Time of last successful activity
        recent_errors: Most recent error reasons, newest first
    """
    id: str
    source: str
    target: str
    state: str
    docs_read: int = 0
    docs_written: int = 0
    changes_pending: int = 0
    last_activity: Optional[datetime] = None
    recent_errors: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ReplicationStatus':
        """Create from a replication-monitor JSON entry."""
        stats = data.get("stats") or {}
        errors = []
        for entry in data.get("recent_errors") or []:
            if isinstance(entry, dict):
                errors.append(str(entry.get("reason", "")))
            else:
                errors.append(str(entry))
        try:
            last_activity = parse_timestamp(data.get("last_activity"))
        except ValueError:
            logger.debug(f"Ignoring unparseable last_activity for replication {data.get('id')}")
            last_activity = None
        return cls(
            id=str(data.get("id", "")),
            source=str(data.get("source", "")),
            target=str(data.get("target", "")),
            state=str(data.get("status") or data.get("state") or "unknown"),
            docs_read=int(stats.get("docs_read") or 0),
            docs_written=int(stats.get("docs_written") or 0),
            changes_pending=int(stats.get("changes_pending") or 0),
            last_activity=last_activity,
            recent_errors=errors,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "state": self.state,
            "docs_read": self.docs_read,
            "docs_written": self.docs_written,
            "changes_pending": self.changes_pending,
            "last_activity": format_timestamp(self.last_activity),
            "recent_errors": list(self.recent_errors),
        }


class ReplicationStatusSource(ABC):
    """Anything that can list the current replication jobs."""

    @abstractmethod
    def list_links(self) -> List[ReplicationStatus]:
        """
        Return the current replication jobs.

        Raises:
            TransientIOError: If the feed cannot be reached
        """
        pass


class ReplicationMonitorClient(ReplicationStatusSource):
    """
    HTTP client for the replication-monitor service.

    GET {base_url}/replication/status/{database} returns
    ``{"replications": [...]}``. A short timeout keeps an unreachable
    monitor from stalling the health check.
    """

    def __init__(
        self,
        base_url: str,
        database: str,
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.database = database
        self.timeout = timeout
        self._session = session or requests.Session()

    def list_links(self) -> List[ReplicationStatus]:
        url = f"{self.base_url}/replication/status/{quote(self.database, safe='')}"
        try:
            response = self._session.get(url, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as e:
            raise TransientIOError(f"Replication monitor unreachable at {url}: {e}") from e
        except ValueError as e:
            raise TransientIOError(f"Replication monitor returned invalid JSON: {e}") from e

        entries = payload.get("replications") if isinstance(payload, dict) else None
        if not isinstance(entries, list):
            raise TransientIOError("Replication monitor response has no 'replications' list")

        links = [ReplicationStatus.from_dict(entry) for entry in entries if isinstance(entry, dict)]
        logger.debug(f"Found {len(links)} replications from replication monitor")
        return links
