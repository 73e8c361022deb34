"""
ReplicaWatch - Isolation and conflict monitoring for a multi-master identity store

Tracks which peer instances are reachable, remembers when the cluster became
partitioned, finds records with competing revisions and lets an operator
commit a winner.
"""

__version__ = "0.1.0"
__license__ = "MIT"

from .errors import (
    ReplicaWatchError,
    ConfigurationError,
    TransientIOError,
    RecordNotFoundError,
    InvalidDocumentError,
    StaleRevisionError,
    NoConflictError,
    PartialResolutionError,
)
from .records import RecordKind, SyncStatus, Record, record_from_document
from .config import Settings, load_settings
from .store import DocumentStore, CouchDBStore
from .replication import ReplicationStatus, ReplicationStatusSource, ReplicationMonitorClient
from .services import Services, build_services

__all__ = [
    "ReplicaWatchError",
    "ConfigurationError",
    "TransientIOError",
    "RecordNotFoundError",
    "InvalidDocumentError",
    "StaleRevisionError",
    "NoConflictError",
    "PartialResolutionError",
    "RecordKind",
    "SyncStatus",
    "Record",
    "record_from_document",
    "Settings",
    "load_settings",
    "DocumentStore",
    "CouchDBStore",
    "ReplicationStatus",
    "ReplicationStatusSource",
    "ReplicationMonitorClient",
    "Services",
    "build_services",
]
