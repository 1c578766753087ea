"""Tests for queue draining, backoff, single-flight and cancellation."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from fieldsync.configuration import default_configuration
from fieldsync.errors import NetworkError, StoreError
from fieldsync.sync.models import CollectionName, QueueStatus, SyncState
from fieldsync.sync.orchestrator import LAST_PUSH_TIME_KEY, SyncOrchestrator, SyncSettings

from conftest import checklist, wait_for


async def test_empty_queue_completes_immediately(orchestrator, recorder, gateway):
    assert await orchestrator.check_and_sync() is True

    assert recorder.types == ["start", "complete"]
    assert recorder.of_type("complete")[0].data == {"total": 0, "synced": 0, "rejected": 0}
    assert gateway.submitted == []


async def test_sync_is_idempotent(orchestrator, writer, gateway, store):
    await writer.save("checklists", checklist("C1"))

    assert await orchestrator.check_and_sync() is True
    assert await orchestrator.check_and_sync() is True

    assert [item[1] for item in gateway.submitted] == ["C1"]
    assert (await store.get("checklists", "C1")).synced is True


async def test_offline_writes_converge_to_latest_payload(orchestrator, writer, gateway, queue, monitor):
    monitor.is_online = False
    await writer.save("checklists", checklist("C1", step=1))
    await writer.save("checklists", checklist("C1", step=2))
    assert await orchestrator.check_and_sync() is False

    monitor.is_online = True
    assert await orchestrator.check_and_sync() is True

    assert gateway.remote["checklists"]["C1"] == {"step": 2}
    assert len(gateway.submitted) == 1
    entries = await queue.entries_for("checklists", "C1")
    assert [entry.status for entry in entries] == [QueueStatus.SYNCED, QueueStatus.SYNCED]


async def test_progress_reports_current_and_total(orchestrator, recorder, writer):
    await writer.save("checklists", checklist("C1"))
    await writer.save("checklists", checklist("C2"))

    await orchestrator.check_and_sync()

    assert [event.data for event in recorder.of_type("progress")] == [
        {"current": 1, "total": 2},
        {"current": 2, "total": 2},
    ]
    assert recorder.of_type("complete")[0].data["total"] == 2


async def test_concurrent_calls_are_single_flight(orchestrator, writer, gateway):
    await writer.save("checklists", checklist("C1"))
    gateway.block = asyncio.Event()

    first = asyncio.ensure_future(orchestrator.check_and_sync())
    await gateway.started.wait()

    assert orchestrator.session.state is SyncState.SYNCING
    assert await orchestrator.check_and_sync() is False

    gateway.block.set()
    assert await first is True
    assert len(gateway.submitted) == 1
    assert orchestrator.session.state is SyncState.IDLE


@pytest.mark.parametrize("failures", [1, 2, 3, 5, 6])
async def test_backoff_delay_after_consecutive_failures(orchestrator, writer, gateway, scheduler, failures):
    await writer.save("checklists", checklist("C1"))
    gateway.fail_submit = [NetworkError("server unreachable") for _ in range(failures)]

    for _ in range(failures):
        assert await orchestrator.check_and_sync() is False

    assert orchestrator.session.retry_count == failures
    assert scheduler.delays[-1] == min(1.0 * 2 ** failures, 30.0)
    assert len(scheduler.active) == 1

    await scheduler.fire_next()

    assert orchestrator.session.retry_count == 0
    assert [item[1] for item in gateway.submitted] == ["C1"]


async def test_failed_batch_keeps_earlier_successes(orchestrator, writer, gateway, queue, recorder):
    await writer.save("checklists", checklist("C1"))
    await writer.save("checklists", checklist("C2"))
    await writer.save("checklists", checklist("C3"))

    original_submit = gateway.submit
    calls = []

    async def flaky_submit(collection, record):
        calls.append(record.id)
        if record.id == "C2":
            raise NetworkError("connection reset")
        return await original_submit(collection, record)

    gateway.submit = flaky_submit
    assert await orchestrator.check_and_sync() is False

    assert calls == ["C1", "C2"]
    assert [entry.record_id for entry in await queue.pending()] == ["C2", "C3"]
    error = recorder.of_type("error")[-1]
    assert error.data["retry_count"] == 1
    assert "connection reset" in error.data["cause"]


async def test_repeated_failures_degrade_to_local_only(store, queue, gateway, monitor, scheduler, clock, settings_area, writer):
    orchestrator = SyncOrchestrator(
        store,
        queue,
        gateway,
        monitor,
        settings=SyncSettings(max_consecutive_failures=3),
        scheduler=scheduler,
        clock=clock,
        settings_area=settings_area,
    )
    await orchestrator.init()
    await writer.save("checklists", checklist("C1"))
    gateway.fail_submit = [NetworkError("down") for _ in range(3)]

    for _ in range(3):
        await orchestrator.check_and_sync()

    assert orchestrator.local_only is True
    assert scheduler.delays == [2.0, 4.0]
    assert scheduler.active == []
    assert await orchestrator.check_and_sync() is False

    assert await orchestrator.force_sync_now() is True
    assert orchestrator.local_only is False
    assert [item[1] for item in gateway.submitted] == ["C1"]
    await orchestrator.destroy()


async def test_online_edge_leaves_local_only_and_syncs(orchestrator, writer, gateway, monitor):
    await writer.save("checklists", checklist("C1"))
    orchestrator.local_only = True
    monitor.is_online = False

    monitor.go_online()
    await wait_for(lambda: gateway.submitted)

    assert orchestrator.local_only is False


async def test_offline_edge_cancels_in_flight_sync(orchestrator, recorder, writer, gateway, monitor, store, queue):
    await writer.save("checklists", checklist("C1"))
    gateway.block = asyncio.Event()

    session = asyncio.ensure_future(orchestrator.check_and_sync())
    await gateway.started.wait()
    monitor.go_offline()

    assert await asyncio.wait_for(session, timeout=1.0) is False
    assert orchestrator.session.state is SyncState.IDLE
    assert gateway.submitted == []
    assert (await store.get("checklists", "C1")).synced is False
    assert await queue.pending_count() == 1
    assert recorder.of_type("error")[-1].data == {"interrupted": True}


async def test_rejected_record_is_acknowledged_but_left_unsynced(orchestrator, recorder, writer, gateway, store, queue):
    gateway.reject_ids = {"C1"}
    await writer.save("checklists", checklist("C1"))
    await writer.save("checklists", checklist("C2"))

    assert await orchestrator.check_and_sync() is True

    assert await queue.pending() == []
    rejected_entry = (await queue.entries_for("checklists", "C1"))[0]
    assert "missing required answers" in rejected_entry.last_error
    assert (await store.get("checklists", "C1")).synced is False
    assert (await store.get("checklists", "C2")).synced is True
    assert recorder.of_type("error")[0].data["status_code"] == 422
    assert recorder.of_type("complete")[0].data == {"total": 2, "synced": 1, "rejected": 1}


async def test_entries_for_missing_records_are_acknowledged_locally(orchestrator, queue, gateway):
    await queue.enqueue("checklists", "ghost", "update")

    assert await orchestrator.check_and_sync() is True

    assert gateway.submitted == []
    assert await queue.pending_count() == 0


async def test_delete_entries_do_not_reach_the_gateway(orchestrator, writer, gateway, queue):
    await writer.save("checklists", checklist("C1"))
    await orchestrator.check_and_sync()
    await writer.remove("checklists", "C1")

    assert await orchestrator.check_and_sync() is True

    assert len(gateway.submitted) == 1
    assert await queue.pending_count() == 0


async def test_rewrite_during_submission_stays_pending(orchestrator, writer, gateway, store, queue):
    await writer.save("checklists", checklist("C1", step=1))
    gateway.block = asyncio.Event()

    session = asyncio.ensure_future(orchestrator.check_and_sync())
    await gateway.started.wait()
    await writer.save("checklists", checklist("C1", step=2))
    gateway.block.set()
    assert await session is True

    assert (await store.get("checklists", "C1")).synced is False
    assert await queue.pending_count() == 1

    gateway.block = None
    assert await orchestrator.check_and_sync() is True
    assert gateway.remote["checklists"]["C1"] == {"step": 2}
    assert (await store.get("checklists", "C1")).synced is True


async def test_force_sync_waits_for_running_session(orchestrator, writer, gateway):
    await writer.save("checklists", checklist("C1"))
    gateway.block = asyncio.Event()

    first = asyncio.ensure_future(orchestrator.check_and_sync())
    await gateway.started.wait()
    forced = asyncio.ensure_future(orchestrator.force_sync_now())
    await asyncio.sleep(0.01)
    assert not forced.done()

    await writer.save("checklists", checklist("C2"))
    gateway.block.set()

    assert await first is True
    assert await asyncio.wait_for(forced, timeout=1.0) is True
    assert [item[1] for item in gateway.submitted] == ["C1", "C2"]


async def test_force_sync_gives_up_after_timeout(orchestrator, gateway, writer):
    orchestrator.settings.force_wait_timeout = 0.02
    await writer.save("checklists", checklist("C1"))
    gateway.block = asyncio.Event()

    first = asyncio.ensure_future(orchestrator.check_and_sync())
    await gateway.started.wait()

    assert await orchestrator.force_sync_now() is False

    gateway.block.set()
    await first


async def test_sync_waits_out_a_tenant_wipe(orchestrator, writer, gateway):
    await writer.save("checklists", checklist("C1"))

    async with orchestrator.lock:
        assert await orchestrator.check_and_sync() is False

    assert gateway.submitted == []


async def test_offline_returns_false_without_events(orchestrator, recorder, monitor):
    monitor.is_online = False

    assert await orchestrator.check_and_sync() is False
    assert recorder.events == []


async def test_store_failure_is_reported_and_raised(orchestrator, recorder, queue, monkeypatch):
    async def broken_pending():
        raise StoreError("database disk image is malformed")

    monkeypatch.setattr(queue, "pending", broken_pending)

    with pytest.raises(StoreError):
        await orchestrator.check_and_sync()

    assert recorder.of_type("error")[0].data == {"fatal": True}
    assert orchestrator.session.state is SyncState.IDLE


async def test_destroy_cancels_retry_and_unsubscribes(orchestrator, writer, gateway, scheduler, monitor):
    await writer.save("checklists", checklist("C1"))
    gateway.fail_submit = [NetworkError("down")]
    await orchestrator.check_and_sync()
    timer = scheduler.active[0]

    await orchestrator.destroy()

    assert timer.cancelled is True
    assert monitor.events.subscriber_count == 0


async def test_status_snapshot(orchestrator, writer, gateway, clock):
    await writer.save("checklists", checklist("C1"))
    gateway.fail_submit = [NetworkError("down")]
    await orchestrator.check_and_sync()

    status = orchestrator.status()

    assert status["state"] == "idle"
    assert status["retry_count"] == 1
    assert status["next_retry_in"] == 2.0
    assert status["local_only"] is False


def test_sync_settings_from_bundle(tmp_path):
    bundle = default_configuration(tmp_path)
    bundle.merged["sync"]["full_sync_collections"] = ["vehicles", "bogus", "vehicles"]
    bundle.merged["sync"]["max_consecutive_failures"] = 0
    bundle.merged["gateway"]["request_timeout"] = 4

    settings = SyncSettings.from_bundle(bundle)

    assert settings.full_sync_collections == [CollectionName.VEHICLES]
    assert settings.max_consecutive_failures == 3
    assert settings.request_timeout == 4.0
    assert settings.base_delay == 1.0
    assert settings.max_delay == 30.0


async def test_reset_session_forgets_retry_state(orchestrator, writer, gateway, scheduler):
    await writer.save("checklists", checklist("C1"))
    gateway.fail_submit = [NetworkError("down")]
    await orchestrator.check_and_sync()
    orchestrator.local_only = True

    await orchestrator.reset_session()

    assert scheduler.active == []
    assert orchestrator.session.retry_count == 0
    assert orchestrator.session.last_sync_time is None
    assert orchestrator.local_only is False
    assert orchestrator.status()["next_retry_in"] is None


async def test_drain_time_is_restored_after_restart(orchestrator, store, queue, gateway, settings_area, clock):
    assert await orchestrator.check_and_sync() is True
    assert await settings_area.get(LAST_PUSH_TIME_KEY) == clock.now.isoformat()

    clock.advance(hours=1)
    restarted = SyncOrchestrator(store, queue, gateway, clock=clock, settings_area=settings_area)
    await restarted.init()

    assert restarted.session.last_sync_time == clock.now - timedelta(hours=1)
