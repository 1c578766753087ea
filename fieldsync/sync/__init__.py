"""Offline-first sync subsystem: store, queue, orchestrator and tenant isolation."""

from __future__ import annotations

from .models import (
    CollectionName,
    FullSyncResult,
    Operation,
    QueueEntry,
    QueueStatus,
    Record,
    SyncEvent,
    SyncEventType,
    SyncSession,
    SyncState,
)
from .events import EventBus
from .scheduler import AsyncioScheduler, Scheduler, backoff_delay
from .store import LocalStore, SettingsArea, StoreSettings
from .queue import SyncQueue
from .writer import RecordWriter
from .connectivity import ConnectivityEvent, ConnectivityMonitor, ConnectivitySettings, HttpProbe
from .gateway import GatewaySettings, HttpGateway, RemoteGateway
from .orchestrator import SyncOrchestrator, SyncSettings
from .tenant import SessionCache, TenantDataManager, TenantSettings

__all__ = [
    # Models
    "CollectionName",
    "FullSyncResult",
    "Operation",
    "QueueEntry",
    "QueueStatus",
    "Record",
    "SyncEvent",
    "SyncEventType",
    "SyncSession",
    "SyncState",
    # Plumbing
    "EventBus",
    "AsyncioScheduler",
    "Scheduler",
    "backoff_delay",
    # Data plane
    "LocalStore",
    "SettingsArea",
    "StoreSettings",
    "SyncQueue",
    "RecordWriter",
    # Control plane
    "ConnectivityEvent",
    "ConnectivityMonitor",
    "ConnectivitySettings",
    "HttpProbe",
    "GatewaySettings",
    "HttpGateway",
    "RemoteGateway",
    "SyncOrchestrator",
    "SyncSettings",
    "SessionCache",
    "TenantDataManager",
    "TenantSettings",
]
