"""Data structures for the local store, sync queue and sync sessions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from ..errors import ValidationError


class CollectionName(str, Enum):
    """Named partitions of the local store."""
    CHECKLISTS = "checklists"
    TEMPLATES = "templates"
    VEHICLES = "vehicles"
    SETTINGS = "settings"

    @classmethod
    def parse(cls, value: Union[str, "CollectionName"]) -> "CollectionName":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            known = ", ".join(member.value for member in cls)
            raise ValidationError(f"Unknown collection '{value}' (expected one of: {known})") from None


# Collections whose local copy is a snapshot of server truth.
SNAPSHOT_COLLECTIONS = (CollectionName.TEMPLATES, CollectionName.VEHICLES)


class Operation(str, Enum):
    """Mutation recorded by a queue entry."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class QueueStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"


@dataclass
class Record:
    """A domain item stored under a collection and id."""

    id: str
    collection: CollectionName
    payload: Any = field(default_factory=dict)
    synced: bool = False
    revision: int = 0  # Bumped on every put
    updated_at: Optional[str] = None
    from_remote: bool = False  # Pulled from the remote authority, never enqueued

    def __post_init__(self) -> None:
        self.collection = CollectionName.parse(self.collection)
        if not isinstance(self.id, str) or not self.id.strip():
            raise ValidationError("Record id must be a non-empty string")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "collection": self.collection.value,
            "payload": self.payload,
            "synced": self.synced,
            "revision": self.revision,
            "updated_at": self.updated_at,
            "from_remote": self.from_remote,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Record":
        return cls(
            id=str(data["id"]),
            collection=CollectionName.parse(data["collection"]),
            payload=data.get("payload", {}),
            synced=bool(data.get("synced", False)),
            revision=int(data.get("revision", 0)),
            updated_at=data.get("updated_at"),
            from_remote=bool(data.get("from_remote", False)),
        )


@dataclass
class QueueEntry:
    """A pending mutation awaiting acknowledgment by the remote authority."""

    id: int
    collection: CollectionName
    record_id: str
    operation: Operation
    status: QueueStatus
    timestamp: str  # ISO-8601 enqueue time
    synced_at: Optional[str] = None
    last_error: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status is QueueStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "collection": self.collection.value,
            "record_id": self.record_id,
            "operation": self.operation.value,
            "status": self.status.value,
            "timestamp": self.timestamp,
            "synced_at": self.synced_at,
            "last_error": self.last_error,
        }


class SyncEventType(str, Enum):
    START = "start"
    PROGRESS = "progress"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class SyncEvent:
    """Lifecycle notification emitted by the orchestrator."""

    type: SyncEventType
    message: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "message": self.message, "data": dict(self.data)}


class SyncState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"


@dataclass
class SyncSession:
    """Orchestrator-owned session state. Not persisted."""

    state: SyncState = SyncState.IDLE
    retry_count: int = 0
    last_sync_time: Optional[datetime] = None

    @property
    def is_syncing(self) -> bool:
        return self.state is SyncState.SYNCING


@dataclass
class FullSyncResult:
    """Outcome of pulling snapshot collections from the remote authority."""

    fetched: Dict[str, int] = field(default_factory=dict)
    pruned: Dict[str, int] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    skipped: bool = False
    interrupted: bool = False
    message: str = ""

    @property
    def success(self) -> bool:
        return not (self.skipped or self.interrupted or self.errors)

    @property
    def partial(self) -> bool:
        return bool(self.errors) and bool(self.fetched)

    @property
    def collections(self) -> List[str]:
        return sorted(set(self.fetched) | set(self.errors))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "partial": self.partial,
            "skipped": self.skipped,
            "interrupted": self.interrupted,
            "fetched": dict(self.fetched),
            "pruned": dict(self.pruned),
            "errors": dict(self.errors),
            "message": self.message,
        }


__all__ = [
    "CollectionName",
    "SNAPSHOT_COLLECTIONS",
    "Operation",
    "QueueStatus",
    "Record",
    "QueueEntry",
    "SyncEventType",
    "SyncEvent",
    "SyncState",
    "SyncSession",
    "FullSyncResult",
]
