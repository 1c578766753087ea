"""Tests for reference-data pulls and staleness-driven refresh."""

from __future__ import annotations

import asyncio

from fieldsync.errors import NetworkError, RemoteRejected
from fieldsync.sync.models import QueueStatus, Record
from fieldsync.sync.orchestrator import (
    LAST_FULL_SYNC_TIME_KEY,
    ORPHAN_NOTE,
    LAST_SYNC_TIME_KEY,
    LAST_SYNC_TYPE_KEY,
)

from conftest import FIXED_NOW, checklist, wait_for


def _snapshots(gateway) -> None:
    gateway.snapshots = {
        "templates": [{"id": "T1", "name": "Daily"}, {"id": "T2", "name": "Weekly"}],
        "vehicles": [{"id": "V1", "plate": "ABC-1234"}],
    }


async def test_first_access_pulls_everything_and_prunes_stale_copies(orchestrator, gateway, store, settings_area, recorder):
    _snapshots(gateway)
    await store.put("templates", Record(id="T-old", collection="templates", from_remote=True, synced=True))
    await store.put("templates", Record(id="draft", collection="templates"))

    result = await orchestrator.perform_full_sync(is_first_access=True)

    assert result.success
    assert result.fetched == {"templates": 2, "vehicles": 1}
    assert result.pruned == {"templates": 1, "vehicles": 0}
    assert gateway.fetch_calls == [("templates", None), ("vehicles", None)]
    assert await store.get("templates", "T-old") is None
    assert await store.get("templates", "draft") is not None
    vehicle = await store.get("vehicles", "V1")
    assert vehicle.synced and vehicle.from_remote
    assert await settings_area.get(LAST_SYNC_TYPE_KEY) == "full"
    assert await settings_area.get(LAST_FULL_SYNC_TIME_KEY) == FIXED_NOW.isoformat()
    assert recorder.types == ["start", "complete"]
    assert recorder.of_type("complete")[0].data["fetched"] == result.fetched


async def test_incremental_pull_passes_last_sync_time(orchestrator, gateway, settings_area, store):
    _snapshots(gateway)
    await settings_area.set(LAST_SYNC_TIME_KEY, "2024-05-01T11:00:00+00:00")
    await store.put("templates", Record(id="T-old", collection="templates", from_remote=True, synced=True))

    result = await orchestrator.perform_full_sync()

    assert result.success
    assert result.pruned == {}
    assert {since for _, since in gateway.fetch_calls} == {"2024-05-01T11:00:00+00:00"}
    assert await store.get("templates", "T-old") is not None
    assert await settings_area.get(LAST_SYNC_TYPE_KEY) == "incremental"
    assert await settings_area.get(LAST_SYNC_TIME_KEY) == FIXED_NOW.isoformat()
    assert await settings_area.get(LAST_FULL_SYNC_TIME_KEY) is None


async def test_one_failing_collection_does_not_stop_the_others(orchestrator, gateway, store, recorder):
    _snapshots(gateway)
    gateway.fail_fetch["templates"] = NetworkError("502 from upstream")

    result = await orchestrator.perform_full_sync(is_first_access=True)

    assert result.partial
    assert not result.success
    assert result.fetched == {"vehicles": 1}
    assert "502" in result.errors["templates"]
    assert await store.get("vehicles", "V1") is not None
    assert recorder.of_type("complete")[0].message == "Full sync partially complete"


async def test_total_failure_reports_error_and_keeps_last_sync_time(orchestrator, gateway, settings_area, recorder):
    gateway.fail_fetch["templates"] = NetworkError("down")
    gateway.fail_fetch["vehicles"] = RemoteRejected("unknown tenant", status_code=404)

    result = await orchestrator.perform_full_sync(is_first_access=True)

    assert not result.success
    assert not result.partial
    assert set(result.errors) == {"templates", "vehicles"}
    assert await settings_area.get(LAST_SYNC_TIME_KEY) is None
    assert recorder.types == ["start", "error"]


async def test_slow_collection_times_out(orchestrator, gateway, monkeypatch):
    _snapshots(gateway)
    orchestrator.settings.request_timeout = 0.02
    original_fetch = gateway.fetch_collection

    async def slow_fetch(name, since=None):
        if str(getattr(name, "value", name)) == "templates":
            await asyncio.sleep(1.0)
        return await original_fetch(name, since=since)

    monkeypatch.setattr(gateway, "fetch_collection", slow_fetch)

    result = await orchestrator.perform_full_sync()

    assert result.errors == {"templates": "timed out"}
    assert result.fetched == {"vehicles": 1}


async def test_full_sync_is_skipped_offline_or_while_busy(orchestrator, gateway, monitor):
    monitor.is_online = False
    offline = await orchestrator.perform_full_sync()
    monitor.is_online = True

    async with orchestrator.lock:
        busy = await orchestrator.perform_full_sync()

    assert offline.skipped and offline.message == "Offline"
    assert busy.skipped
    assert gateway.fetch_calls == []


async def test_going_offline_interrupts_a_pull(orchestrator, gateway, monitor, recorder, settings_area, monkeypatch):
    started = asyncio.Event()

    async def hanging_fetch(name, since=None):
        started.set()
        await asyncio.Event().wait()

    monkeypatch.setattr(gateway, "fetch_collection", hanging_fetch)

    pull = asyncio.ensure_future(orchestrator.perform_full_sync())
    await started.wait()
    monitor.go_offline()
    result = await asyncio.wait_for(pull, timeout=1.0)

    assert result.interrupted
    assert not result.success
    assert recorder.of_type("error")[-1].data == {"interrupted": True}
    assert await settings_area.get(LAST_SYNC_TIME_KEY) is None


async def test_refresh_follows_staleness_windows(orchestrator, gateway, clock):
    _snapshots(gateway)

    first = await orchestrator.refresh_if_stale()
    assert first is not None and first.success
    assert gateway.fetch_calls[0] == ("templates", None)

    clock.advance(minutes=10)
    assert await orchestrator.refresh_if_stale() is None

    clock.advance(minutes=10)
    gateway.fetch_calls.clear()
    incremental = await orchestrator.refresh_if_stale()
    assert incremental is not None
    assert gateway.fetch_calls[0] == ("templates", FIXED_NOW.isoformat())

    clock.advance(hours=25)
    gateway.fetch_calls.clear()
    await orchestrator.refresh_if_stale()
    assert gateway.fetch_calls[0] == ("templates", None)


async def test_incremental_refresh_does_not_reset_the_full_window(orchestrator, gateway, settings_area, clock):
    _snapshots(gateway)
    await orchestrator.refresh_if_stale()

    clock.advance(minutes=20)
    await orchestrator.refresh_if_stale()
    clock.advance(minutes=20)
    gateway.fetch_calls.clear()
    await orchestrator.refresh_if_stale()

    assert gateway.fetch_calls[0][1] is not None
    assert await settings_area.get(LAST_FULL_SYNC_TIME_KEY) == FIXED_NOW.isoformat()


async def test_refresh_waits_for_pending_changes(orchestrator, gateway, writer):
    await writer.save("checklists", checklist("C1"))

    assert await orchestrator.refresh_if_stale() is None
    assert gateway.fetch_calls == []


async def test_reconnect_drains_then_refreshes_when_enabled(orchestrator, gateway, writer, monitor):
    _snapshots(gateway)
    orchestrator.settings.refresh_on_reconnect = True
    monitor.is_online = False
    await writer.save("checklists", checklist("C1"))

    monitor.go_online()
    await wait_for(lambda: gateway.fetch_calls and gateway.submitted)

    assert gateway.submitted[0][1] == "C1"
    assert gateway.fetch_calls[0] == ("templates", None)


async def test_first_access_drops_checklists_with_missing_references(orchestrator, gateway, store, writer, queue, recorder):
    _snapshots(gateway)
    await store.put(
        "checklists",
        Record(id="stale", collection="checklists", payload={"template_id": "T9", "vehicle_id": "V1"}, synced=True, from_remote=True),
    )
    await store.put(
        "checklists",
        Record(id="accepted", collection="checklists", payload={"template_id": "T9"}, synced=True),
    )
    await writer.save("checklists", checklist("draft", template={"id": "T1"}, vehicle={"id": "V7"}))
    await writer.save("checklists", checklist("valid", template_id="T2", vehicle_id="V1"))
    await writer.save("checklists", checklist("loose"))

    result = await orchestrator.perform_full_sync(is_first_access=True)

    assert result.pruned["checklists"] == 2
    assert await store.get("checklists", "stale") is None
    assert await store.get("checklists", "draft") is None
    for kept in ("accepted", "valid", "loose"):
        assert await store.get("checklists", kept) is not None
    [entry] = await queue.entries_for("checklists", "draft")
    assert entry.status is QueueStatus.SYNCED
    assert entry.last_error == ORPHAN_NOTE
    assert [entry.record_id for entry in await queue.pending()] == ["valid", "loose"]
    progress = recorder.of_type("progress")[0]
    assert sorted(progress.data["removed"]) == ["draft", "stale"]
    assert recorder.types == ["start", "progress", "complete"]


async def test_checklists_are_kept_when_reference_data_is_incomplete(orchestrator, gateway, writer, store):
    _snapshots(gateway)
    gateway.fail_fetch["vehicles"] = NetworkError("timeout upstream")
    await writer.save("checklists", checklist("draft", template_id="T1", vehicle_id="V7"))

    result = await orchestrator.perform_full_sync(is_first_access=True)

    assert result.partial
    assert "checklists" not in result.pruned
    assert await store.get("checklists", "draft") is not None


async def test_successful_pull_resets_retry_count(orchestrator, gateway):
    _snapshots(gateway)
    orchestrator.session.retry_count = 2

    result = await orchestrator.perform_full_sync(is_first_access=True)

    assert result.success
    assert orchestrator.session.retry_count == 0
