"""
Exception taxonomy for replicawatch.

TransientIOError: the document store or the replication-status feed could not
                  be reached. Polling components retry on the next cycle.
StaleRevisionError: an optimistic write lost a race. Re-fetch and retry.
NoConflictError: resolve was called on a record with nothing to resolve.
PartialResolutionError: the winner was written but some losing revisions
                        could not be retired.
"""

from typing import Any, Optional


class ReplicaWatchError(Exception):
    """Base exception for replicawatch errors"""
    pass


class ConfigurationError(ReplicaWatchError):
    """Invalid or missing configuration value"""
    pass


class TransientIOError(ReplicaWatchError):
    """Store or status feed unreachable (connection error, timeout, 5xx)"""
    pass


class RecordNotFoundError(ReplicaWatchError):
    """Requested record or revision does not exist"""

    def __init__(self, record_id: str, revision: Optional[str] = None):
        self.record_id = record_id
        self.revision = revision
        if revision:
            message = f"Revision {revision} of record {record_id} not found"
        else:
            message = f"Record {record_id} not found"
        super().__init__(message)


class InvalidDocumentError(ReplicaWatchError):
    """Document read from the store does not match any known record shape"""
    pass


class StaleRevisionError(ReplicaWatchError):
    """Write was based on a revision that is no longer current"""

    def __init__(self, record_id: str, revision: Optional[str] = None, message: Optional[str] = None):
        self.record_id = record_id
        self.revision = revision
        super().__init__(
            message or f"Revision {revision} of record {record_id} is stale; re-fetch and retry"
        )


class NoConflictError(ReplicaWatchError):
    """Record has no conflicting revisions (it may already have been resolved)"""

    def __init__(self, record_id: str):
        self.record_id = record_id
        super().__init__(f"Record {record_id} has no conflicts; it may already be resolved")


class PartialResolutionError(ReplicaWatchError):
    """
    Winner committed but one or more losing revisions could not be deleted.

    Attributes:
        result: The ResolutionResult describing what was retired and what failed
    """

    def __init__(self, result: Any):
        self.result = result
        failed = ", ".join(result.failed_revision_ids)
        super().__init__(
            f"Resolved record {result.record_id} with residual conflicts; "
            f"could not retire: {failed}"
        )
