# models.py
# Description: Core data types shared by the record store, the pending queue and the sync coordinator.
#
# Imports
import enum
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Union
#
# Third-Party Imports
#
# Local Imports
#
########################################################################################################################
#
# Functions:


class IdKind(str, enum.Enum):
    """Namespace tag of a record id. The tag, not the shape of the value, decides the kind."""
    TEMPORARY = "tmp"
    PERMANENT = "srv"


@dataclass(frozen=True)
class RecordId:
    """
    Identifier of a local record.

    A temporary id is generated on the client for records the remote store has never
    seen; a permanent id is whatever the server assigned. Both carry their kind
    explicitly, so `RecordId.temporary()` can never compare equal to a server id,
    and the server ids `5` and `"5"` are the same permanent id.
    """
    kind: IdKind
    value: str

    def __post_init__(self):
        if not isinstance(self.kind, IdKind):
            raise TypeError(f"RecordId kind must be an IdKind, got {type(self.kind).__name__}.")
        if self.value is None or isinstance(self.value, bool) or str(self.value) == "":
            raise ValueError("RecordId value cannot be empty.")
        object.__setattr__(self, "value", str(self.value))

    @classmethod
    def temporary(cls) -> "RecordId":
        return cls(IdKind.TEMPORARY, uuid.uuid4().hex)

    @classmethod
    def permanent(cls, value: Union[str, int]) -> "RecordId":
        return cls(IdKind.PERMANENT, value)

    @classmethod
    def from_key(cls, key: str) -> "RecordId":
        """Parses a storage key such as 'srv:42' back into a RecordId."""
        prefix, sep, value = str(key).partition(":")
        if not sep:
            raise ValueError(f"Malformed record key '{key}': missing namespace tag.")
        return cls(IdKind(prefix), value)

    @property
    def is_temporary(self) -> bool:
        return self.kind is IdKind.TEMPORARY

    @property
    def key(self) -> str:
        return f"{self.kind.value}:{self.value}"

    def __str__(self) -> str:
        return self.key


class SyncState(str, enum.Enum):
    SYNCED = "synced"
    PENDING_CREATE = "pending_create"
    PENDING_UPDATE = "pending_update"
    PENDING_DELETE = "pending_delete"

    @property
    def is_pending(self) -> bool:
        return self is not SyncState.SYNCED


class OperationKind(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


# Record state that corresponds to an outstanding operation of a given kind
STATE_FOR_OPERATION = {
    OperationKind.CREATE: SyncState.PENDING_CREATE,
    OperationKind.UPDATE: SyncState.PENDING_UPDATE,
    OperationKind.DELETE: SyncState.PENDING_DELETE,
}


@dataclass
class Record:
    """A locally cached entity: an id, its named fields and its synchronization state."""
    id: RecordId
    fields: Dict[str, Any] = field(default_factory=dict)
    sync_state: SyncState = SyncState.SYNCED
    # Only meaningful while sync_state is PENDING_UPDATE
    changed_fields: Set[str] = field(default_factory=set)
    created_at: Optional[str] = None
    last_modified: Optional[str] = None
    version: int = 0

    @property
    def is_synced(self) -> bool:
        return self.sync_state is SyncState.SYNCED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id.value,
            "id_kind": self.id.kind.value,
            "fields": dict(self.fields),
            "sync_state": self.sync_state.value,
            "changed_fields": sorted(self.changed_fields),
            "created_at": self.created_at,
            "last_modified": self.last_modified,
            "version": self.version,
        }


@dataclass
class PendingOperation:
    """An unconfirmed local mutation waiting to be applied to the remote store."""
    op_id: str
    record_id: RecordId
    kind: OperationKind
    payload: Dict[str, Any] = field(default_factory=dict)
    changed_fields: Set[str] = field(default_factory=set)
    created_at: Optional[str] = None
    attempt_count: int = 0
    last_error: Optional[str] = None
    revision: int = 1
    in_flight: bool = False


class SyncStatus(str, enum.Enum):
    COMPLETED = "completed"
    OFFLINE = "offline"
    ALREADY_RUNNING = "already_running"


class CoordinatorState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class SyncError:
    """One remote failure recorded during a reconciliation run."""
    message: str
    transient: bool
    record_id: Optional[RecordId] = None
    op_id: Optional[str] = None
    kind: Optional[OperationKind] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id.key if self.record_id else None,
            "op_id": self.op_id,
            "kind": self.kind.value if self.kind else None,
            "message": self.message,
            "transient": self.transient,
        }


@dataclass
class MergeStats:
    updated: int = 0
    added: int = 0
    removed: int = 0
    unchanged: int = 0
    preserved: int = 0


@dataclass
class SyncReport:
    status: SyncStatus
    succeeded: int = 0
    failed: int = 0
    # creates given up locally after a delete, without remote confirmation
    cancelled: int = 0
    errors: List[SyncError] = field(default_factory=list)
    merged: bool = False
    merge_stats: Optional[MergeStats] = None
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "errors": [e.to_dict() for e in self.errors],
            "merged": self.merged,
            "merge_stats": vars(self.merge_stats) if self.merge_stats else None,
            "duration_ms": self.duration_ms,
        }

#
# End of models.py
########################################################################################################################
