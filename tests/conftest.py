"""Shared fixtures and in-memory fakes for the sync subsystem tests."""

from __future__ import annotations

import asyncio
from copy import deepcopy
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest

from fieldsync.errors import RemoteRejected
from fieldsync.service import FieldSyncService
from fieldsync.sync.connectivity import ConnectivityEvent, ConnectivityMonitor, ConnectivitySettings
from fieldsync.sync.events import EventBus
from fieldsync.sync.gateway import RemoteGateway, inline_data_url
from fieldsync.sync.models import CollectionName, Record, SyncEvent
from fieldsync.sync.orchestrator import SyncOrchestrator, SyncSettings
from fieldsync.sync.queue import SyncQueue
from fieldsync.sync.store import LocalStore, SettingsArea
from fieldsync.sync.writer import RecordWriter

FIXED_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class ManualTimer:
    def __init__(self, delay: float, callback) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Records requested delays; timers fire only when a test says so."""

    def __init__(self) -> None:
        self.timers: List[ManualTimer] = []

    def call_later(self, delay: float, callback) -> ManualTimer:
        timer = ManualTimer(delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def delays(self) -> List[float]:
        return [timer.delay for timer in self.timers]

    @property
    def active(self) -> List[ManualTimer]:
        return [timer for timer in self.timers if not timer.cancelled and not timer.fired]

    async def fire_next(self) -> None:
        timer = self.active[0]
        timer.fired = True
        await timer.callback()


class FakeMonitor:
    """Connectivity stand-in that fires edges on demand."""

    def __init__(self, online: bool = True) -> None:
        self.is_online = online
        self.events: EventBus[ConnectivityEvent] = EventBus("fake-connectivity")

    def subscribe(self, handler):
        return self.events.subscribe(handler)

    def go_offline(self) -> None:
        self.is_online = False
        self.events.emit(ConnectivityEvent.OFFLINE)

    def go_online(self) -> None:
        self.is_online = True
        self.events.emit(ConnectivityEvent.ONLINE)


class FakeGateway(RemoteGateway):
    """In-memory remote authority."""

    def __init__(self) -> None:
        self.submitted: List[Tuple[str, str, Any]] = []
        self.remote: Dict[str, Dict[str, Any]] = {}
        self.snapshots: Dict[str, List[Dict[str, Any]]] = {}
        self.fetch_calls: List[Tuple[str, Optional[str]]] = []
        self.fail_submit: List[Exception] = []
        self.fail_fetch: Dict[str, Exception] = {}
        self.reject_ids: Set[str] = set()
        self.block: Optional[asyncio.Event] = None
        self.started = asyncio.Event()
        self.closed = False

    async def submit(self, collection, record: Record) -> Dict[str, Any]:
        name = CollectionName.parse(collection)
        self.started.set()
        if self.block is not None:
            await self.block.wait()
        if self.fail_submit:
            raise self.fail_submit.pop(0)
        if record.id in self.reject_ids:
            raise RemoteRejected("checklist is missing required answers", status_code=422)
        self.submitted.append((name.value, record.id, deepcopy(record.payload)))
        self.remote.setdefault(name.value, {})[record.id] = deepcopy(record.payload)
        return {"id": record.id}

    async def fetch_collection(self, name, since: Optional[str] = None) -> List[Record]:
        collection = CollectionName.parse(name)
        self.fetch_calls.append((collection.value, since))
        if collection.value in self.fail_fetch:
            raise self.fail_fetch[collection.value]
        return [
            Record(
                id=str(item["id"]),
                collection=collection,
                payload=item,
                synced=True,
                from_remote=True,
            )
            for item in self.snapshots.get(collection.value, [])
        ]

    async def upload_binary_attachment(
        self,
        data: bytes,
        content_type: str = "application/octet-stream",
        filename: str = "attachment",
    ) -> str:
        return inline_data_url(data, content_type)

    async def aclose(self) -> None:
        self.closed = True


class EventRecorder:
    def __init__(self) -> None:
        self.events: List[SyncEvent] = []

    def __call__(self, event: SyncEvent) -> None:
        self.events.append(event)

    def of_type(self, kind: str) -> List[SyncEvent]:
        return [event for event in self.events if event.type.value == kind]

    @property
    def types(self) -> List[str]:
        return [event.type.value for event in self.events]


def checklist(record_id: str, **payload: Any) -> Record:
    return Record(id=record_id, collection=CollectionName.CHECKLISTS, payload=payload or {"answers": []})


async def wait_for(predicate, timeout: float = 1.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def store(tmp_path, clock):
    store = LocalStore(tmp_path / "state" / "fieldsync.db", clock=clock)
    await store.init()
    yield store
    await store.close()


@pytest.fixture
def queue(store) -> SyncQueue:
    return SyncQueue(store)


@pytest.fixture
def settings_area(store) -> SettingsArea:
    return SettingsArea(store)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def monitor() -> FakeMonitor:
    return FakeMonitor(online=True)


@pytest.fixture
def writer(store, queue, monitor) -> RecordWriter:
    return RecordWriter(store, queue, is_online=lambda: monitor.is_online)


@pytest.fixture
def sync_settings() -> SyncSettings:
    return SyncSettings(max_consecutive_failures=10)


@pytest.fixture
async def orchestrator(store, queue, gateway, monitor, scheduler, clock, settings_area, sync_settings):
    orchestrator = SyncOrchestrator(
        store,
        queue,
        gateway,
        monitor,
        settings=sync_settings,
        scheduler=scheduler,
        clock=clock,
        settings_area=settings_area,
    )
    await orchestrator.init()
    yield orchestrator
    await orchestrator.destroy()


@pytest.fixture
def recorder(orchestrator) -> EventRecorder:
    recorder = EventRecorder()
    orchestrator.subscribe(recorder)
    return recorder


@pytest.fixture
async def service(tmp_path, gateway, clock):
    async def probe() -> bool:
        return True

    monitor = ConnectivityMonitor(
        probe=probe,
        settings=ConnectivitySettings(debounce=0.01, probe_interval=60.0),
    )
    service = FieldSyncService(
        LocalStore(tmp_path / "service" / "fieldsync.db", clock=clock),
        gateway,
        monitor,
        scheduler=ManualScheduler(),
        clock=clock,
    )
    yield service
    if service.started:
        await service.stop()
