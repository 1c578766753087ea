"""The single write path that couples record writes to sync queue entries."""

from __future__ import annotations

from dataclasses import replace
import logging
from typing import Callable, Optional, Tuple, Union

from .models import CollectionName, Operation, QueueEntry, Record
from .queue import SyncQueue
from .store import LocalStore

logger = logging.getLogger("fieldsync.sync.writer")


class RecordWriter:
    """Entry point for collaborators that write domain records.

    Checklist writes, and any write made while offline, always produce
    exactly one queue entry in the same transaction as the record itself.
    """

    def __init__(
        self,
        store: LocalStore,
        queue: SyncQueue,
        is_online: Optional[Callable[[], bool]] = None,
    ) -> None:
        self.store = store
        self.queue = queue
        self._is_online = is_online or (lambda: True)

    def _needs_queue(self, collection: CollectionName, record: Optional[Record] = None) -> bool:
        if record is not None and record.from_remote:
            return False
        return collection is CollectionName.CHECKLISTS or not self._is_online()

    async def save(
        self,
        collection: Union[str, CollectionName],
        record: Record,
    ) -> Tuple[Record, Optional[QueueEntry]]:
        name = CollectionName.parse(collection)
        if self._needs_queue(name, record):
            return await self.write_and_enqueue(name, record)
        return await self.store.put(name, record), None

    async def write_and_enqueue(
        self,
        collection: Union[str, CollectionName],
        record: Record,
    ) -> Tuple[Record, QueueEntry]:
        """Upsert ``record`` as unsynced and append its queue entry atomically."""
        name = CollectionName.parse(collection)
        unsynced = replace(record, collection=name, synced=False, from_remote=False)
        existing = await self.store.get(name, record.id)
        operation = Operation.UPDATE if existing is not None else Operation.CREATE

        async with self.store.transaction() as conn:
            stored = await self.store.upsert(conn, name, unsynced)
            entry = await self.queue.append(conn, name, record.id, operation)

        logger.info("Saved %s/%s and queued %s (entry %d)", name.value, record.id, operation.value, entry.id)
        return stored, entry

    async def remove(
        self,
        collection: Union[str, CollectionName],
        record_id: str,
    ) -> Tuple[bool, Optional[QueueEntry]]:
        name = CollectionName.parse(collection)
        if not self._needs_queue(name):
            return await self.store.delete(name, record_id), None

        async with self.store.transaction() as conn:
            removed = await self.store.remove(conn, name, record_id)
            entry = await self.queue.append(conn, name, record_id, Operation.DELETE)
        logger.info("Deleted %s/%s and queued delete (entry %d)", name.value, record_id, entry.id)
        return removed, entry


__all__ = ["RecordWriter"]
