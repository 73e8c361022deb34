"""
Document Store - Interface to the replicated record store

Provides an abstract interface over the multi-master document store and a
CouchDB implementation speaking its HTTP API. The store, not this package,
assigns revisions and surfaces conflicts; this layer only reads them and
translates HTTP failures into the replicawatch error taxonomy:

    404             -> RecordNotFoundError
    409             -> StaleRevisionError
    5xx / network   -> TransientIOError
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple
from urllib.parse import quote

import requests

from .errors import (
    InvalidDocumentError,
    RecordNotFoundError,
    ReplicaWatchError,
    StaleRevisionError,
    TransientIOError,
)
from .records import DOCUMENT_TYPE_ALIASES, Record, RecordKind, record_from_document

logger = logging.getLogger(__name__)

# (record, conflicting revision ids) as reported by the store
ConflictedRecord = Tuple[Record, List[str]]


def document_types_for(kinds: Iterable[RecordKind]) -> List[str]:
    """All stored ``type`` values (including legacy aliases) for the given kinds."""
    wanted = set(kinds)
    return sorted(name for name, kind in DOCUMENT_TYPE_ALIASES.items() if kind in wanted)


class DocumentStore(ABC):
    """
    Abstract base class for the replicated document store.

    All methods may block on network I/O.
    """

    @abstractmethod
    def get(self, record_id: str) -> Record:
        """
        Fetch the current (winning) revision of a record.

        Raises:
            RecordNotFoundError: If the record does not exist
            TransientIOError: If the store is unreachable
        """
        pass

    @abstractmethod
    def get_with_conflicts(self, record_id: str) -> ConflictedRecord:
        """
        Fetch the current revision together with the store's conflict list.

        Returns:
            (record, conflicting revision ids); the list is empty when the
            store reports no conflict
        """
        pass

    @abstractmethod
    def get_revision(self, record_id: str, revision: str) -> Record:
        """Fetch a specific (possibly non-winning) revision."""
        pass

    @abstractmethod
    def put(self, record: Record) -> str:
        """
        Optimistically write a record on top of ``record.revision``.

        Returns:
            The new revision id

        Raises:
            StaleRevisionError: If ``record.revision`` is not a current leaf
        """
        pass

    @abstractmethod
    def delete(self, record_id: str, revision: str) -> None:
        """Delete (tombstone) one revision branch of a record."""
        pass

    @abstractmethod
    def query_modified_since(self, since: datetime, kinds: Iterable[RecordKind]) -> List[Record]:
        """Records of the given kinds with ``last_modified_at >= since``."""
        pass

    @abstractmethod
    def list_records(self, kinds: Iterable[RecordKind]) -> List[Record]:
        """All current records of the given kinds."""
        pass

    @abstractmethod
    def list_conflicted(self, kinds: Optional[Iterable[RecordKind]] = None) -> List[ConflictedRecord]:
        """Every record carrying a non-empty conflict list."""
        pass


CONFLICTS_DESIGN_DOC = {
    "_id": "_design/replicawatch",
    "language": "javascript",
    "views": {
        "conflicts": {
            "map": (
                "function(doc) {"
                " if (doc._conflicts && doc._conflicts.length > 0) {"
                " emit([doc.type, doc._id], doc._conflicts.length); } }"
            )
        }
    },
}


class CouchDBStore(DocumentStore):
    """
    CouchDB-backed document store.

    Uses ``requests.Session`` with a per-call timeout so a stalled node
    surfaces as TransientIOError instead of hanging the caller.

    Example:
        store = CouchDBStore("http://localhost:5984", "zombieauth",
                             user="admin", password="secret")
        store.ensure_design_documents()
        record, conflicts = store.get_with_conflicts("user:1234")
    """

    PAGE_SIZE = 500

    def __init__(
        self,
        base_url: str,
        database: str,
        user: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize CouchDB store

        Args:
            base_url: CouchDB node URL (e.g. http://localhost:5984)
            database: Database name
            user: Basic-auth username
            password: Basic-auth password
            timeout: Seconds per HTTP call
            session: Optional pre-configured requests session
        """
        self.base_url = base_url.rstrip("/")
        self.database = database
        self.timeout = timeout
        self._session = session or requests.Session()
        if user and password:
            self._session.auth = (user, password)

    def _url(self, path: str = "") -> str:
        url = f"{self.base_url}/{quote(self.database, safe='')}"
        return f"{url}/{path}" if path else url

    def _request(
        self,
        method: str,
        path: str,
        record_id: Optional[str] = None,
        revision: Optional[str] = None,
        **kwargs: Any,
    ) -> Any:
        url = self._url(path)
        try:
            response = self._session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise TransientIOError(f"CouchDB request {method} {path} failed: {e}") from e

        if response.status_code == 404:
            raise RecordNotFoundError(record_id or path, revision)
        if response.status_code == 409:
            raise StaleRevisionError(record_id or path, revision)
        if response.status_code >= 500:
            raise TransientIOError(
                f"CouchDB returned {response.status_code} for {method} {path}"
            )
        if response.status_code >= 400:
            raise ReplicaWatchError(
                f"CouchDB rejected {method} {path}: {response.status_code} {response.text[:200]}"
            )

        try:
            return response.json()
        except ValueError as e:
            raise TransientIOError(f"CouchDB returned invalid JSON for {method} {path}") from e

    @staticmethod
    def _doc_path(record_id: str) -> str:
        return quote(record_id, safe="")

    def ensure_design_documents(self) -> None:
        """Create the conflict view if it does not exist yet."""
        try:
            self._request(
                "PUT", CONFLICTS_DESIGN_DOC["_id"], json=CONFLICTS_DESIGN_DOC
            )
            logger.info("Created conflict detection view")
        except StaleRevisionError:
            logger.debug("Conflict detection view already exists")

    def get(self, record_id: str) -> Record:
        doc = self._request("GET", self._doc_path(record_id), record_id=record_id)
        return record_from_document(doc)

    def get_with_conflicts(self, record_id: str) -> ConflictedRecord:
        doc = self._request(
            "GET", self._doc_path(record_id), record_id=record_id,
            params={"conflicts": "true"},
        )
        return record_from_document(doc), list(doc.get("_conflicts") or [])

    def get_revision(self, record_id: str, revision: str) -> Record:
        doc = self._request(
            "GET", self._doc_path(record_id), record_id=record_id, revision=revision,
            params={"rev": revision},
        )
        return record_from_document(doc)

    def put(self, record: Record) -> str:
        result = self._request(
            "PUT", self._doc_path(record.id), record_id=record.id, revision=record.revision,
            json=record.to_document(),
        )
        return result["rev"]

    def delete(self, record_id: str, revision: str) -> None:
        self._request(
            "DELETE", self._doc_path(record_id), record_id=record_id, revision=revision,
            params={"rev": revision},
        )

    def _find(self, selector: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
        """Page through a Mango query using bookmarks."""
        bookmark = None
        while True:
            body: Dict[str, Any] = {"selector": selector, "limit": self.PAGE_SIZE}
            if bookmark:
                body["bookmark"] = bookmark
            result = self._request("POST", "_find", json=body)
            docs = result.get("docs") or []
            yield from docs
            bookmark = result.get("bookmark")
            if len(docs) < self.PAGE_SIZE or not bookmark:
                return

    def _parse_all(self, docs: Iterable[Dict[str, Any]]) -> List[Record]:
        records = []
        for doc in docs:
            try:
                records.append(record_from_document(doc))
            except InvalidDocumentError as e:
                logger.warning(f"Skipping invalid document {doc.get('_id')}: {e}")
        return records

    def query_modified_since(self, since: datetime, kinds: Iterable[RecordKind]) -> List[Record]:
        # Writers disagree on ISO suffixes (Z vs +00:00), so query on the
        # second-resolution prefix and filter exactly on parsed datetimes.
        lower_bound = since.strftime("%Y-%m-%dT%H:%M:%S")
        selector = {
            "type": {"$in": document_types_for(kinds)},
            "instance_metadata.last_modified_at": {"$gte": lower_bound},
        }
        records = self._parse_all(self._find(selector))
        return [
            r for r in records
            if r.last_modified_at is not None and r.last_modified_at >= since
        ]

    def list_records(self, kinds: Iterable[RecordKind]) -> List[Record]:
        selector = {"type": {"$in": document_types_for(kinds)}}
        return self._parse_all(self._find(selector))

    def list_conflicted(self, kinds: Optional[Iterable[RecordKind]] = None) -> List[ConflictedRecord]:
        result = self._request(
            "GET", "_design/replicawatch/_view/conflicts",
            params={"include_docs": "true", "conflicts": "true"},
        )
        wanted = set(kinds) if kinds is not None else None

        conflicted = []
        for row in result.get("rows") or []:
            doc = row.get("doc")
            if not doc:
                continue
            try:
                record = record_from_document(doc)
            except InvalidDocumentError as e:
                logger.warning(f"Skipping invalid conflicted document {row.get('id')}: {e}")
                continue
            if wanted is not None and record.kind not in wanted:
                continue
            conflicted.append((record, list(doc.get("_conflicts") or [])))
        return conflicted
