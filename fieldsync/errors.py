"""Error taxonomy shared by the sync subsystem."""

from __future__ import annotations

from typing import Optional


class FieldSyncError(Exception):
    """Base exception for FieldSync."""


class ValidationError(FieldSyncError):
    """Caller supplied input the subsystem refuses to accept."""


class StoreError(FieldSyncError):
    """The durable store failed (engine unavailable, corruption, quota)."""


class NotSerializable(StoreError, ValidationError):
    """A record payload does not survive a JSON round-trip unchanged."""


class QueueError(StoreError):
    """Sync queue operation failed."""


class NetworkError(FieldSyncError):
    """Transient failure talking to the remote authority."""


class GatewayTimeout(NetworkError):
    """A remote call exceeded its deadline."""


class RemoteRejected(FieldSyncError):
    """The remote authority permanently refused a record."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SyncError(FieldSyncError):
    """Orchestrator-level failure surfaced to collaborators."""


class SyncInterrupted(SyncError):
    """A sync session was cancelled by an offline transition."""


class TenantWipeError(FieldSyncError):
    """The tenant data wipe did not complete."""


__all__ = [
    "FieldSyncError",
    "ValidationError",
    "StoreError",
    "NotSerializable",
    "QueueError",
    "NetworkError",
    "GatewayTimeout",
    "RemoteRejected",
    "SyncError",
    "SyncInterrupted",
    "TenantWipeError",
]
