"""Tests for the sync queue."""

from __future__ import annotations

import pytest

from fieldsync.errors import QueueError, StoreError
from fieldsync.sync.models import Operation, QueueStatus


async def test_enqueue_assigns_increasing_ids(queue):
    first = await queue.enqueue("checklists", "C1", "create")
    second = await queue.enqueue("checklists", "C1", Operation.UPDATE)

    assert second.id > first.id
    assert first.status is QueueStatus.PENDING
    assert second.operation is Operation.UPDATE


async def test_pending_is_ordered_and_counted(queue):
    await queue.enqueue("checklists", "C1", "create")
    await queue.enqueue("checklists", "C2", "create")
    await queue.enqueue("checklists", "C1", "update")

    pending = await queue.pending()

    assert [(e.record_id, e.operation.value) for e in pending] == [
        ("C1", "create"),
        ("C2", "create"),
        ("C1", "update"),
    ]
    assert await queue.pending_count() == 3


async def test_mark_synced_flips_status_and_keeps_entry(queue):
    entry = await queue.enqueue("checklists", "C1", "create")

    updated = await queue.mark_synced(entry.id)

    assert updated.status is QueueStatus.SYNCED
    assert updated.synced_at is not None
    assert updated.last_error is None
    assert await queue.pending() == []
    assert [e.id for e in await queue.all()] == [entry.id]


async def test_mark_synced_records_rejection_note(queue):
    entry = await queue.enqueue("checklists", "C1", "create")

    updated = await queue.mark_synced(entry.id, error="HTTP 422")

    assert updated.last_error == "HTTP 422"


async def test_mark_synced_unknown_entry_raises(queue):
    with pytest.raises(QueueError) as excinfo:
        await queue.mark_synced(999)

    assert isinstance(excinfo.value, StoreError)


async def test_entries_for_record(queue):
    await queue.enqueue("checklists", "C1", "create")
    await queue.enqueue("checklists", "C2", "create")
    await queue.enqueue("checklists", "C1", "update")

    entries = await queue.entries_for("checklists", "C1")

    assert [e.operation for e in entries] == [Operation.CREATE, Operation.UPDATE]


async def test_clear_removes_everything(queue):
    await queue.enqueue("checklists", "C1", "create")
    synced = await queue.enqueue("checklists", "C2", "create")
    await queue.mark_synced(synced.id)

    assert await queue.clear() == 2
    assert await queue.all() == []
