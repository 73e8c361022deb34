"""
Typed record models for the replicated identity store.

Every document in the store carries a ``type`` discriminator, a set of domain
fields, and bookkeeping (revision, ``instance_metadata``, ``sync_status``).
Documents are validated once, at the store boundary, by
``record_from_document``; the rest of the package only sees typed records.

Kinds:
    account      - an identity account (stored with type "user" by older writers)
    client       - an OAuth client
    session      - an authorization session
    audit_event  - an admin/audit activity entry (older writers use "activity")
"""

import typing
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Type

from .errors import InvalidDocumentError
from .utils import format_timestamp, parse_timestamp


class RecordKind(Enum):
    """Record kinds tracked by the consistency monitor."""
    ACCOUNT = "account"
    CLIENT = "client"
    SESSION = "session"
    AUDIT_EVENT = "audit_event"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def from_string(cls, value: str) -> 'RecordKind':
        """
        Convert a kind name or document type alias to RecordKind.

        Raises:
            ValueError: If the value names no known kind
        """
        normalized = value.strip().lower().replace("-", "_")
        kind = DOCUMENT_TYPE_ALIASES.get(normalized)
        if kind is None:
            valid = ", ".join(k.value for k in cls)
            raise ValueError(f"Invalid record kind: '{value}'. Must be one of: {valid}")
        return kind


DOCUMENT_TYPE_ALIASES: Dict[str, RecordKind] = {
    "account": RecordKind.ACCOUNT,
    "user": RecordKind.ACCOUNT,
    "client": RecordKind.CLIENT,
    "session": RecordKind.SESSION,
    "audit_event": RecordKind.AUDIT_EVENT,
    "activity": RecordKind.AUDIT_EVENT,
}


class SyncStatus(Enum):
    """
    Cached consistency label written onto each record.

    CONFLICT: the store holds competing revisions (highest priority)
    ISOLATED: no conflict, but modified while a peer was unreachable
    SYNCED: neither of the above
    ERROR: conflict state could not be read
    """
    SYNCED = "synced"
    ISOLATED = "isolated"
    CONFLICT = "conflict"
    ERROR = "error"

    def __str__(self) -> str:
        return self.value


# Keys managed by the store or by this package rather than by record owners.
BOOKKEEPING_KEYS = frozenset({
    "_id",
    "_rev",
    "_conflicts",
    "type",
    "instance_metadata",
    "updated_at",
    "sync_status",
    "conflict_resolution",
})


@dataclass
class InstanceMetadata:
    """
    Per-record provenance used for conflict analysis.

    Attributes:
        created_by: Instance that created the record
        created_at: Creation time
        last_modified_by: Instance that last wrote the record
        last_modified_at: Time of the last write
        version: Monotonic write counter, starts at 1
    """
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    last_modified_by: Optional[str] = None
    last_modified_at: Optional[datetime] = None
    version: int = 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "created_by": self.created_by,
            "created_at": format_timestamp(self.created_at),
            "last_modified_by": self.last_modified_by,
            "last_modified_at": format_timestamp(self.last_modified_at),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'InstanceMetadata':
        """Create InstanceMetadata from a stored dictionary."""
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise InvalidDocumentError(f"instance_metadata must be an object, got {type(data).__name__}")
        try:
            version = int(data.get("version") or 1)
            return cls(
                created_by=data.get("created_by"),
                created_at=parse_timestamp(data.get("created_at")),
                last_modified_by=data.get("last_modified_by"),
                last_modified_at=parse_timestamp(data.get("last_modified_at")),
                version=version,
            )
        except (TypeError, ValueError) as e:
            raise InvalidDocumentError(f"Malformed instance_metadata: {e}") from e


@dataclass
class ConflictResolutionStamp:
    """Audit trail left on a record by a committed conflict resolution."""
    resolved_at: datetime
    resolved_by: str
    winning_revision_id: str
    retired_revision_ids: List[str] = field(default_factory=list)
    resolved_via: str = "winner"
    merged_fields: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "resolved_at": format_timestamp(self.resolved_at),
            "resolved_by": self.resolved_by,
            "resolved_via": self.resolved_via,
            "winning_revision_id": self.winning_revision_id,
            "retired_revision_ids": list(self.retired_revision_ids),
        }
        if self.merged_fields:
            data["merged_fields"] = dict(self.merged_fields)
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['ConflictResolutionStamp']:
        if not data:
            return None
        try:
            return cls(
                resolved_at=parse_timestamp(data["resolved_at"]),
                resolved_by=data["resolved_by"],
                winning_revision_id=data["winning_revision_id"],
                retired_revision_ids=list(data.get("retired_revision_ids") or []),
                resolved_via=data.get("resolved_via") or "winner",
                merged_fields=dict(data.get("merged_fields") or {}),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidDocumentError(f"Malformed conflict_resolution: {e}") from e


@dataclass
class Record:
    """
    Base class for all record kinds.

    Subclasses declare their domain fields as dataclass fields; everything
    declared here is bookkeeping and is ignored when comparing revisions.
    Unknown document keys are preserved in ``extra`` and count as domain data.
    """
    id: str
    revision: Optional[str] = None
    document_type: Optional[str] = None
    sync_status: SyncStatus = SyncStatus.SYNCED
    instance_metadata: InstanceMetadata = field(default_factory=InstanceMetadata)
    updated_at: Optional[datetime] = None
    conflict_resolution: Optional[ConflictResolutionStamp] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    kind: ClassVar[RecordKind]

    @classmethod
    def domain_field_names(cls) -> List[str]:
        base = {f.name for f in fields(Record)}
        return [f.name for f in fields(cls) if f.name not in base]

    def domain_fields(self) -> Dict[str, Any]:
        """Domain content of this revision, including unknown keys."""
        data = {name: getattr(self, name) for name in self.domain_field_names()}
        data.update(self.extra)
        return data

    def to_document(self) -> Dict[str, Any]:
        """Convert to a store document."""
        doc: Dict[str, Any] = {"_id": self.id}
        if self.revision:
            doc["_rev"] = self.revision
        doc["type"] = self.document_type or self.kind.value
        doc.update(self.domain_fields())
        doc["sync_status"] = self.sync_status.value
        doc["updated_at"] = format_timestamp(self.updated_at)
        doc["instance_metadata"] = self.instance_metadata.to_dict()
        if self.conflict_resolution:
            doc["conflict_resolution"] = self.conflict_resolution.to_dict()
        return doc

    @property
    def last_modified_at(self) -> Optional[datetime]:
        return self.instance_metadata.last_modified_at

    @property
    def last_modified_by(self) -> Optional[str]:
        return self.instance_metadata.last_modified_by


@dataclass
class AccountRecord(Record):
    """Identity account. ``password_hash`` is opaque to this package."""
    username: Optional[str] = None
    email: Optional[str] = None
    password_hash: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    groups: List[str] = field(default_factory=list)
    roles: List[str] = field(default_factory=list)
    enabled: bool = True
    email_verified: bool = False
    created_at: Optional[str] = None
    last_login: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    kind: ClassVar[RecordKind] = RecordKind.ACCOUNT


@dataclass
class ClientRecord(Record):
    """OAuth client registration."""
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    redirect_uris: List[str] = field(default_factory=list)
    scopes: List[str] = field(default_factory=list)
    grant_types: List[str] = field(default_factory=list)
    response_types: List[str] = field(default_factory=list)
    enabled: bool = True
    confidential: bool = True
    created_at: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    kind: ClassVar[RecordKind] = RecordKind.CLIENT


@dataclass
class SessionRecord(Record):
    """Authorization session."""
    user_id: Optional[str] = None
    client_id: Optional[str] = None
    redirect_uri: Optional[str] = None
    scopes: List[str] = field(default_factory=list)
    authorization_code: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    nonce: Optional[str] = None
    active: bool = True
    created_at: Optional[str] = None
    expires_at: Optional[str] = None
    last_accessed_at: Optional[str] = None

    kind: ClassVar[RecordKind] = RecordKind.SESSION


@dataclass
class AuditEventRecord(Record):
    """Audit trail entry (login, user_created, conflict_resolved, ...)."""
    timestamp: Optional[str] = None
    action: Optional[str] = None
    username: Optional[str] = None
    target_user_id: Optional[str] = None
    target_username: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    admin_user_id: Optional[str] = None
    admin_username: Optional[str] = None
    details: Any = None

    kind: ClassVar[RecordKind] = RecordKind.AUDIT_EVENT


RECORD_CLASSES: Dict[RecordKind, Type[Record]] = {
    RecordKind.ACCOUNT: AccountRecord,
    RecordKind.CLIENT: ClientRecord,
    RecordKind.SESSION: SessionRecord,
    RecordKind.AUDIT_EVENT: AuditEventRecord,
}


def _matches(value: Any, annotation: Any) -> bool:
    """Shallow check of a JSON value against a dataclass field annotation."""
    if annotation is Any:
        return True
    origin = typing.get_origin(annotation)
    if origin is typing.Union:
        return any(_matches(value, arg) for arg in typing.get_args(annotation))
    if origin is list:
        return isinstance(value, list)
    if origin is dict:
        return isinstance(value, dict)
    if annotation is type(None):
        return value is None
    if annotation is bool:
        return isinstance(value, bool)
    return isinstance(value, annotation)


def record_from_document(doc: Dict[str, Any]) -> Record:
    """
    Validate a raw store document and build the matching typed record.

    Args:
        doc: Document as returned by the store (``_id``, ``_rev``, ``type``, ...)

    Returns:
        Concrete Record subclass instance

    Raises:
        InvalidDocumentError: Missing id, unknown type, or a field of the wrong shape
    """
    if not isinstance(doc, dict):
        raise InvalidDocumentError(f"Document must be an object, got {type(doc).__name__}")

    record_id = doc.get("_id")
    if not record_id or not isinstance(record_id, str):
        raise InvalidDocumentError("Document is missing a string _id")

    doc_type = doc.get("type")
    if not isinstance(doc_type, str) or doc_type.lower() not in DOCUMENT_TYPE_ALIASES:
        raise InvalidDocumentError(f"Document {record_id} has unknown type: {doc_type!r}")
    cls = RECORD_CLASSES[DOCUMENT_TYPE_ALIASES[doc_type.lower()]]

    try:
        sync_status = SyncStatus(doc.get("sync_status") or SyncStatus.SYNCED.value)
    except ValueError as e:
        raise InvalidDocumentError(f"Document {record_id} has invalid sync_status") from e

    try:
        updated_at = parse_timestamp(doc.get("updated_at"))
    except ValueError as e:
        raise InvalidDocumentError(f"Document {record_id} has invalid updated_at") from e

    kwargs: Dict[str, Any] = {
        "id": record_id,
        "revision": doc.get("_rev"),
        "document_type": doc_type,
        "sync_status": sync_status,
        "instance_metadata": InstanceMetadata.from_dict(doc.get("instance_metadata")),
        "updated_at": updated_at,
        "conflict_resolution": ConflictResolutionStamp.from_dict(doc.get("conflict_resolution")),
    }

    domain_names = set(cls.domain_field_names())
    hints = typing.get_type_hints(cls)
    for name in domain_names:
        if name not in doc or doc[name] is None:
            continue
        value = doc[name]
        if not _matches(value, hints[name]):
            raise InvalidDocumentError(
                f"Document {record_id} field '{name}' has unexpected type {type(value).__name__}"
            )
        kwargs[name] = value

    kwargs["extra"] = {
        key: value for key, value in doc.items()
        if key not in BOOKKEEPING_KEYS and key not in domain_names
    }
    return cls(**kwargs)
