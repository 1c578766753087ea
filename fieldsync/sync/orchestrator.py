"""Sync lifecycle: queue draining, retry/backoff, full resync and cancellation."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
import logging
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Set,
    TypeVar,
)

from ..errors import (
    GatewayTimeout,
    NetworkError,
    RemoteRejected,
    StoreError,
    SyncInterrupted,
    ValidationError,
)
from .connectivity import ConnectivityEvent, ConnectivityMonitor
from .events import EventBus, Handler, Unsubscribe
from .gateway import RemoteGateway
from .models import (
    SNAPSHOT_COLLECTIONS,
    CollectionName,
    FullSyncResult,
    Operation,
    QueueEntry,
    SyncEvent,
    SyncEventType,
    SyncSession,
    SyncState,
)
from .queue import SyncQueue
from .scheduler import AsyncioScheduler, Scheduler, TimerHandle, backoff_delay
from .store import LocalStore, SettingsArea, utcnow

if TYPE_CHECKING:
    from ..configuration import ConfigurationBundle

logger = logging.getLogger("fieldsync.sync.orchestrator")

T = TypeVar("T")
Clock = Callable[[], datetime]

LAST_SYNC_TIME_KEY = "last_sync_time"
LAST_SYNC_TYPE_KEY = "last_sync_type"
LAST_FULL_SYNC_TIME_KEY = "last_full_sync_time"
LAST_PUSH_TIME_KEY = "last_push_time"

ORPHAN_NOTE = "template or vehicle no longer exists"


@dataclass
class SyncSettings:
    base_delay: float = 1.0
    max_delay: float = 30.0
    max_consecutive_failures: int = 3
    force_wait_timeout: float = 60.0
    request_timeout: float = 10.0
    full_sync_collections: List[CollectionName] = field(
        default_factory=lambda: list(SNAPSHOT_COLLECTIONS)
    )
    refresh_on_reconnect: bool = False
    full_refresh_after_hours: float = 24.0
    incremental_refresh_after_minutes: float = 15.0

    @classmethod
    def from_bundle(cls, bundle: "ConfigurationBundle") -> "SyncSettings":
        merged = bundle.merged or {}
        raw = merged.get("sync", {}) or {}
        gateway = merged.get("gateway", {}) or {}
        defaults = cls()

        collections: List[CollectionName] = []
        for name in raw.get("full_sync_collections") or []:
            try:
                collection = CollectionName.parse(name)
            except ValidationError:
                logger.warning("Ignoring unknown full sync collection '%s'", name)
                continue
            if collection not in collections:
                collections.append(collection)

        failures = raw.get("max_consecutive_failures", defaults.max_consecutive_failures)
        if not isinstance(failures, int) or isinstance(failures, bool) or failures < 1:
            failures = defaults.max_consecutive_failures

        return cls(
            base_delay=_positive(raw.get("base_delay"), defaults.base_delay),
            max_delay=_positive(raw.get("max_delay"), defaults.max_delay),
            max_consecutive_failures=failures,
            force_wait_timeout=_positive(raw.get("force_wait_timeout"), defaults.force_wait_timeout),
            request_timeout=_positive(gateway.get("request_timeout"), defaults.request_timeout),
            full_sync_collections=collections or list(SNAPSHOT_COLLECTIONS),
            refresh_on_reconnect=bool(raw.get("refresh_on_reconnect", False)),
            full_refresh_after_hours=_positive(
                raw.get("full_refresh_after_hours"), defaults.full_refresh_after_hours
            ),
            incremental_refresh_after_minutes=_positive(
                raw.get("incremental_refresh_after_minutes"),
                defaults.incremental_refresh_after_minutes,
            ),
        )


def _positive(value: Any, default: float) -> float:
    if isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


def _parse_time(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        logger.warning("Ignoring malformed sync timestamp %r", value)
        return None


def _reference(payload: Any, kind: str) -> Optional[str]:
    """``<kind>_id`` or ``<kind>.id`` from a checklist payload."""
    if not isinstance(payload, dict):
        return None
    value = payload.get(f"{kind}_id")
    if value is None and isinstance(payload.get(kind), dict):
        value = payload[kind].get("id")
    return str(value) if value is not None else None


class SyncOrchestrator:
    """Owns the sync session and reconciles the local store with the remote.

    At most one session (queue drain or full sync) runs at a time. The
    ``lock`` is shared with the tenant data manager so a wipe and a session
    never overlap.
    """

    def __init__(
        self,
        store: LocalStore,
        queue: SyncQueue,
        gateway: RemoteGateway,
        monitor: Optional[ConnectivityMonitor] = None,
        *,
        settings: Optional[SyncSettings] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Optional[Clock] = None,
        lock: Optional[asyncio.Lock] = None,
        settings_area: Optional[SettingsArea] = None,
    ) -> None:
        self.store = store
        self.queue = queue
        self.gateway = gateway
        self.monitor = monitor
        self.settings = settings or SyncSettings()
        self.scheduler: Scheduler = scheduler or AsyncioScheduler()
        self.settings_area = settings_area if settings_area is not None else SettingsArea(store)
        self.lock = lock or asyncio.Lock()
        self.events: EventBus[SyncEvent] = EventBus("sync")
        self.session = SyncSession()
        self.local_only = False

        self._clock = clock or utcnow
        self._idle = asyncio.Event()
        self._idle.set()
        self._task: Optional[asyncio.Future] = None
        self._interrupted = False
        self._retry_handle: Optional[TimerHandle] = None
        self._retry_due: Optional[datetime] = None
        self._unsubscribe_monitor: Optional[Unsubscribe] = None

    # Lifecycle -----------------------------------------------------------

    async def init(self) -> None:
        if self.monitor is not None and self._unsubscribe_monitor is None:
            self._unsubscribe_monitor = self.monitor.subscribe(self._on_connectivity)
        stamps = [
            _parse_time(await self.settings_area.get(key))
            for key in (LAST_SYNC_TIME_KEY, LAST_PUSH_TIME_KEY)
        ]
        self.session.last_sync_time = max((stamp for stamp in stamps if stamp), default=None)
        logger.info(
            "Sync orchestrator ready (last sync: %s)",
            self.session.last_sync_time.isoformat() if self.session.last_sync_time else "never",
        )

    async def destroy(self) -> None:
        self._cancel_retry()
        if self._unsubscribe_monitor is not None:
            self._unsubscribe_monitor()
            self._unsubscribe_monitor = None
        if self._task is not None and not self._task.done():
            self._interrupted = True
            self._task.cancel()
            await self._idle.wait()
        logger.info("Sync orchestrator stopped")

    async def reset_session(self) -> None:
        """Drop retry and local-only state left over from a previous tenant."""

        async with self.lock:
            self._cancel_retry()
            self.session.retry_count = 0
            self.session.last_sync_time = None
            self.local_only = False
        logger.info("Sync session reset")

    def subscribe(self, handler: Handler) -> Unsubscribe:
        return self.events.subscribe(handler)

    # Queue draining ------------------------------------------------------

    def is_online(self) -> bool:
        return self.monitor.is_online if self.monitor is not None else True

    @property
    def busy(self) -> bool:
        return self.session.is_syncing or self.lock.locked()

    async def check_and_sync(self) -> bool:
        """Drain the pending queue through the gateway.

        Returns False without error when offline, already syncing, blocked by
        a tenant wipe, or in local-only mode.
        """

        if not self.is_online():
            logger.debug("Sync skipped: offline")
            return False
        if self.local_only:
            logger.info("Sync skipped: local-only mode")
            return False
        if self.busy:
            logger.debug("Sync skipped: a session or wipe is already running")
            return False
        self._cancel_retry()

        result = await self._run_exclusive(self._drain, interrupted=False)
        return bool(result)

    async def force_sync_now(self) -> bool:
        """Run a sync pass even if one is in flight, by waiting for it first."""

        if self.local_only:
            logger.info("Leaving local-only mode on explicit sync request")
            self.local_only = False
        if self.busy:
            try:
                await asyncio.wait_for(self._wait_until_idle(), timeout=self.settings.force_wait_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "Forced sync gave up waiting after %.0fs for the running session",
                    self.settings.force_wait_timeout,
                )
                return False
        return await self.check_and_sync()

    async def _wait_until_idle(self) -> None:
        while self.busy:
            if self.session.is_syncing:
                await self._idle.wait()
            else:
                async with self.lock:
                    pass

    async def _drain(self) -> bool:
        entries = await self.queue.pending()
        total = len(entries)
        logger.info("Sync started with %d pending entr(y/ies)", total)
        self._emit(SyncEventType.START, f"Syncing {total} pending item(s)", {"total": total})

        synced = 0
        rejected = 0
        for current, entry in enumerate(entries, start=1):
            if self._interrupted or not self.is_online():
                raise SyncInterrupted("Connection lost during sync")
            try:
                await self._process(entry)
            except RemoteRejected as exc:
                rejected += 1
                await self.queue.mark_synced(entry.id, error=str(exc))
                logger.warning(
                    "Remote rejected %s/%s (entry %d): %s",
                    entry.collection.value,
                    entry.record_id,
                    entry.id,
                    exc,
                )
                self._emit(
                    SyncEventType.ERROR,
                    f"Item {entry.record_id} was rejected by the server",
                    {
                        "entry_id": entry.id,
                        "record_id": entry.record_id,
                        "collection": entry.collection.value,
                        "status_code": exc.status_code,
                        "rejected": True,
                    },
                )
            except NetworkError as exc:
                self._record_failure(exc, entry)
                return False
            else:
                synced += 1
            self._emit(
                SyncEventType.PROGRESS,
                f"Synced {current} of {total}",
                {"current": current, "total": total},
            )

        self.session.retry_count = 0
        self.session.last_sync_time = self._clock()
        await self.settings_area.set(LAST_PUSH_TIME_KEY, self.session.last_sync_time.isoformat())
        logger.info("Sync complete: %d synced, %d rejected", synced, rejected)
        self._emit(
            SyncEventType.COMPLETE,
            "Sync complete" if total else "Nothing to sync",
            {"total": total, "synced": synced, "rejected": rejected},
        )
        return True

    async def _process(self, entry: QueueEntry) -> bool:
        """Send the current record for ``entry``. Returns whether a call was made."""

        record = await self.store.get(entry.collection, entry.record_id)
        if entry.operation is Operation.DELETE or record is None or record.synced:
            logger.debug(
                "Acknowledging entry %d for %s/%s without a remote call",
                entry.id,
                entry.collection.value,
                entry.record_id,
            )
            await self.queue.mark_synced(entry.id)
            return False

        logger.info("Submitting %s/%s (entry %d)", entry.collection.value, record.id, entry.id)
        try:
            await asyncio.wait_for(
                self.gateway.submit(entry.collection, record),
                timeout=self.settings.request_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise GatewayTimeout(
                f"Submitting {record.id} took longer than {self.settings.request_timeout:.0f}s"
            ) from exc

        if not await self.store.mark_synced(entry.collection, record.id, record.revision):
            logger.debug("%s/%s changed while in flight; left unsynced", entry.collection.value, record.id)
        await self.queue.mark_synced(entry.id)
        return True

    def _record_failure(self, exc: NetworkError, entry: Optional[QueueEntry] = None) -> None:
        self.session.retry_count += 1
        attempts = self.session.retry_count
        data: Dict[str, Any] = {"retry_count": attempts, "cause": str(exc)}
        if entry is not None:
            data["entry_id"] = entry.id
            data["record_id"] = entry.record_id

        if attempts >= self.settings.max_consecutive_failures:
            self.local_only = True
            logger.warning(
                "Sync failed %d times in a row (%s); switching to local-only mode",
                attempts,
                exc,
            )
            data["local_only"] = True
            self._emit(
                SyncEventType.ERROR,
                "Sync keeps failing; changes are kept on this device until the next manual sync",
                data,
            )
            return

        delay = backoff_delay(attempts, self.settings.base_delay, self.settings.max_delay)
        logger.warning("Sync failed (%s); retry %d in %.1fs", exc, attempts, delay)
        data["retry_in"] = delay
        self._emit(SyncEventType.ERROR, f"Sync failed, retrying in {delay:.0f}s", data)
        self._schedule_retry(delay)

    def _schedule_retry(self, delay: float) -> None:
        self._cancel_retry()
        self._retry_due = self._clock() + timedelta(seconds=delay)
        self._retry_handle = self.scheduler.call_later(delay, self._retry)

    async def _retry(self) -> None:
        self._retry_handle = None
        self._retry_due = None
        await self.check_and_sync()

    def _cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
        self._retry_handle = None
        self._retry_due = None

    # Session exclusivity -------------------------------------------------

    async def _run_exclusive(self, body: Callable[[], Awaitable[T]], interrupted: Any) -> Any:
        """Run ``body`` as the single active session.

        An offline edge cancels the session task; the caller then receives
        ``interrupted`` instead of an exception.
        """

        self.session.state = SyncState.SYNCING
        self._idle.clear()
        self._interrupted = False
        try:
            async with self.lock:
                self._task = asyncio.ensure_future(body())
                try:
                    return await self._task
                except asyncio.CancelledError:
                    if not self._interrupted:
                        raise
                except SyncInterrupted:
                    pass
                except (StoreError, ValidationError) as exc:
                    logger.exception("Sync aborted by a local failure")
                    self._emit(SyncEventType.ERROR, f"Sync aborted: {exc}", {"fatal": True})
                    raise
                logger.warning("Sync interrupted: connection lost")
                self._emit(
                    SyncEventType.ERROR,
                    "Sync interrupted: connection lost",
                    {"interrupted": True},
                )
                return interrupted
        finally:
            self._task = None
            self._interrupted = False
            self.session.state = SyncState.IDLE
            self._idle.set()

    # Full resync ---------------------------------------------------------

    async def perform_full_sync(self, is_first_access: bool = False) -> FullSyncResult:
        """Pull snapshot collections from the remote authority into the store.

        Each collection is fetched independently; one failing does not stop
        the others. A first-access pull fetches everything and prunes remote
        copies the server no longer lists.
        """

        if not self.is_online():
            return FullSyncResult(skipped=True, message="Offline")
        if self.busy:
            return FullSyncResult(skipped=True, message="A sync is already running")

        interrupted = FullSyncResult(interrupted=True, message="Full sync interrupted: connection lost")
        return await self._run_exclusive(lambda: self._pull(is_first_access), interrupted=interrupted)

    async def _pull(self, is_first_access: bool) -> FullSyncResult:
        since = None if is_first_access else await self.settings_area.get(LAST_SYNC_TIME_KEY)
        names = [collection.value for collection in self.settings.full_sync_collections]
        logger.info(
            "Full sync started (%s) for %s",
            "first access" if is_first_access else f"since {since or 'ever'}",
            ", ".join(names),
        )
        self._emit(
            SyncEventType.START,
            "Downloading reference data",
            {"collections": names, "first_access": is_first_access},
        )

        result = FullSyncResult()
        for collection in self.settings.full_sync_collections:
            if self._interrupted or not self.is_online():
                raise SyncInterrupted("Connection lost during full sync")
            try:
                records = await asyncio.wait_for(
                    self.gateway.fetch_collection(collection, since=since),
                    timeout=self.settings.request_timeout,
                )
            except asyncio.TimeoutError:
                result.errors[collection.value] = "timed out"
                logger.warning("Fetching %s timed out", collection.value)
                continue
            except (NetworkError, RemoteRejected) as exc:
                result.errors[collection.value] = str(exc)
                logger.warning("Fetching %s failed: %s", collection.value, exc)
                continue

            seen = set()
            async with self.store.transaction() as conn:
                for record in records:
                    await self.store.upsert(
                        conn,
                        collection,
                        replace(record, collection=collection, synced=True, from_remote=True),
                    )
                    seen.add(record.id)
            result.fetched[collection.value] = len(records)
            if is_first_access:
                result.pruned[collection.value] = await self._prune(collection, seen)

        if is_first_access and not result.errors:
            dropped = await self._drop_orphaned_checklists()
            if dropped:
                result.pruned[CollectionName.CHECKLISTS.value] = len(dropped)
                self._emit(
                    SyncEventType.PROGRESS,
                    f"Removed {len(dropped)} checklist(s) whose template or vehicle is gone",
                    {"removed": dropped},
                )

        if result.success:
            self.session.retry_count = 0

        if result.fetched:
            now = self._clock()
            await self.settings_area.set(LAST_SYNC_TIME_KEY, now.isoformat())
            await self.settings_area.set(
                LAST_SYNC_TYPE_KEY, "full" if is_first_access else "incremental"
            )
            if is_first_access:
                await self.settings_area.set(LAST_FULL_SYNC_TIME_KEY, now.isoformat())
            self.session.last_sync_time = now

        if result.errors and not result.fetched:
            result.message = "Full sync failed"
            self._emit(SyncEventType.ERROR, result.message, result.to_dict())
        else:
            result.message = "Full sync partially complete" if result.errors else "Full sync complete"
            self._emit(SyncEventType.COMPLETE, result.message, result.to_dict())
        logger.info("%s: %s", result.message, result.fetched)
        return result

    async def _prune(self, collection: CollectionName, keep: Set[str]) -> int:
        """Drop remote-sourced records the server snapshot no longer lists."""

        removed = 0
        for record in await self.store.get_all(collection):
            if record.from_remote and record.id not in keep:
                if await self.store.delete(collection, record.id):
                    removed += 1
        if removed:
            logger.info("Pruned %d stale %s record(s)", removed, collection.value)
        return removed

    async def _drop_orphaned_checklists(self) -> List[str]:
        """Delete checklists that point at a template or vehicle no longer stored.

        Checklists already accepted by the server are kept. Pending queue
        entries of a dropped checklist are acknowledged with a note.
        """

        known = {
            "template": {record.id for record in await self.store.get_all(CollectionName.TEMPLATES)},
            "vehicle": {record.id for record in await self.store.get_all(CollectionName.VEHICLES)},
        }
        dropped: List[str] = []
        for record in await self.store.get_all(CollectionName.CHECKLISTS):
            if record.synced and not record.from_remote:
                continue
            refs = {kind: _reference(record.payload, kind) for kind in known}
            if all(ref is None or ref in known[kind] for kind, ref in refs.items()):
                continue
            await self.store.delete(CollectionName.CHECKLISTS, record.id)
            for entry in await self.queue.entries_for(CollectionName.CHECKLISTS, record.id):
                if entry.is_pending:
                    await self.queue.mark_synced(entry.id, error=ORPHAN_NOTE)
            logger.info("Removed checklist %s: %s", record.id, ORPHAN_NOTE)
            dropped.append(record.id)
        return dropped

    async def refresh_if_stale(self) -> Optional[FullSyncResult]:
        """Re-pull reference data when the last pull is old enough.

        Skipped while local changes are still pending.
        """

        if await self.queue.pending_count():
            logger.debug("Refresh skipped: pending local changes")
            return None
        now = self._clock()
        last_sync = _parse_time(await self.settings_area.get(LAST_SYNC_TIME_KEY))
        last_full = _parse_time(await self.settings_area.get(LAST_FULL_SYNC_TIME_KEY))

        full_window = timedelta(hours=self.settings.full_refresh_after_hours)
        incremental_window = timedelta(minutes=self.settings.incremental_refresh_after_minutes)

        if last_sync is None or last_full is None or now - last_full > full_window:
            return await self.perform_full_sync(is_first_access=True)
        if now - last_sync > incremental_window:
            return await self.perform_full_sync(is_first_access=False)
        return None

    # Connectivity --------------------------------------------------------

    def _on_connectivity(self, event: ConnectivityEvent) -> Optional[Awaitable[None]]:
        if event is ConnectivityEvent.OFFLINE:
            self._cancel_retry()
            if self._task is not None and not self._task.done():
                logger.info("Connection lost; cancelling the running sync")
                self._interrupted = True
                self._task.cancel()
            return None

        if self.local_only:
            logger.info("Connection restored; leaving local-only mode")
            self.local_only = False
        return self._on_reconnect()

    async def _on_reconnect(self) -> None:
        await self.check_and_sync()
        if self.settings.refresh_on_reconnect:
            await self.refresh_if_stale()

    # Reporting -----------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        next_retry_in: Optional[float] = None
        if self._retry_due is not None:
            next_retry_in = max(0.0, (self._retry_due - self._clock()).total_seconds())
        return {
            "state": self.session.state.value,
            "online": self.is_online(),
            "retry_count": self.session.retry_count,
            "last_sync_time": (
                self.session.last_sync_time.isoformat() if self.session.last_sync_time else None
            ),
            "local_only": self.local_only,
            "next_retry_in": next_retry_in,
        }

    def _emit(self, kind: SyncEventType, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        self.events.emit(SyncEvent(type=kind, message=message, data=data or {}))


__all__ = [
    "LAST_FULL_SYNC_TIME_KEY",
    "LAST_PUSH_TIME_KEY",
    "LAST_SYNC_TIME_KEY",
    "LAST_SYNC_TYPE_KEY",
    "SyncOrchestrator",
    "SyncSettings",
]
