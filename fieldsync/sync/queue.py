"""Ordered, status-tracked log of mutations awaiting remote acknowledgment."""

from __future__ import annotations

import logging
from typing import Any, Iterable, List, Optional, Union

import aiosqlite

from ..errors import QueueError
from .models import CollectionName, Operation, QueueEntry, QueueStatus
from .store import LocalStore, engine_errors

logger = logging.getLogger("fieldsync.sync.queue")

_COLUMNS = "id, collection, record_id, operation, status, timestamp, synced_at, last_error"


class SyncQueue:
    """Queue entries live in the store's database and are never deleted
    outside a tenant wipe; acknowledgment only flips their status."""

    def __init__(self, store: LocalStore) -> None:
        self.store = store

    async def enqueue(
        self,
        collection: Union[str, CollectionName],
        record_id: str,
        operation: Union[str, Operation],
    ) -> QueueEntry:
        async with self.store.transaction() as conn:
            return await self.append(conn, collection, record_id, operation)

    async def append(
        self,
        conn: aiosqlite.Connection,
        collection: Union[str, CollectionName],
        record_id: str,
        operation: Union[str, Operation],
    ) -> QueueEntry:
        """Enqueue inside an open store ``transaction()``."""
        name = CollectionName.parse(collection)
        op = Operation(operation)
        timestamp = self.store.now()
        with engine_errors(f"enqueue {name.value}/{record_id}"):
            cursor = await conn.execute(
                """
                INSERT INTO sync_queue (collection, record_id, operation, status, timestamp)
                VALUES (?, ?, ?, ?, ?)
                """,
                (name.value, record_id, op.value, QueueStatus.PENDING.value, timestamp),
            )
            entry_id = cursor.lastrowid
            await cursor.close()
        logger.debug("Queued %s %s/%s as entry %s", op.value, name.value, record_id, entry_id)
        return QueueEntry(
            id=int(entry_id),
            collection=name,
            record_id=record_id,
            operation=op,
            status=QueueStatus.PENDING,
            timestamp=timestamp,
        )

    async def pending(self) -> List[QueueEntry]:
        """Entries awaiting acknowledgment, in enqueue order."""
        return await self._select(
            f"SELECT {_COLUMNS} FROM sync_queue WHERE status = ? ORDER BY timestamp, id",
            (QueueStatus.PENDING.value,),
        )

    async def pending_count(self) -> int:
        conn = await self.store.connection()
        with engine_errors("pending_count"):
            async with conn.execute(
                "SELECT COUNT(*) FROM sync_queue WHERE status = ?",
                (QueueStatus.PENDING.value,),
            ) as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def get(self, entry_id: int) -> Optional[QueueEntry]:
        entries = await self._select(
            f"SELECT {_COLUMNS} FROM sync_queue WHERE id = ?", (entry_id,)
        )
        return entries[0] if entries else None

    async def entries_for(
        self,
        collection: Union[str, CollectionName],
        record_id: str,
    ) -> List[QueueEntry]:
        name = CollectionName.parse(collection)
        return await self._select(
            f"SELECT {_COLUMNS} FROM sync_queue WHERE collection = ? AND record_id = ? "
            "ORDER BY timestamp, id",
            (name.value, record_id),
        )

    async def all(self) -> List[QueueEntry]:
        return await self._select(f"SELECT {_COLUMNS} FROM sync_queue ORDER BY id", ())

    async def mark_synced(self, entry_id: int, error: Optional[str] = None) -> QueueEntry:
        """Flip an entry to synced. ``error`` records why the remote refused it."""
        synced_at = self.store.now()
        async with self.store.transaction() as conn:
            with engine_errors(f"mark_synced entry {entry_id}"):
                cursor = await conn.execute(
                    "UPDATE sync_queue SET status = ?, synced_at = ?, last_error = ? WHERE id = ?",
                    (QueueStatus.SYNCED.value, synced_at, error, entry_id),
                )
                updated = cursor.rowcount
                await cursor.close()
        if not updated:
            raise QueueError(f"Queue entry {entry_id} not found")
        entry = await self.get(entry_id)
        if entry is None:  # pragma: no cover - row vanished between statements
            raise QueueError(f"Queue entry {entry_id} not found")
        return entry

    async def clear(self) -> int:
        """Drop every entry. Reserved for the tenant data manager."""
        async with self.store.transaction() as conn:
            with engine_errors("clear sync queue"):
                cursor = await conn.execute("DELETE FROM sync_queue")
                removed = cursor.rowcount
                await cursor.close()
        logger.info("Cleared %d sync queue entr(y/ies)", removed)
        return removed

    async def _select(self, sql: str, params: Iterable[Any]) -> List[QueueEntry]:
        conn = await self.store.connection()
        with engine_errors("read sync queue"):
            async with conn.execute(sql, tuple(params)) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_entry(row) for row in rows]


def _row_to_entry(row: Iterable[Any]) -> QueueEntry:
    entry_id, collection, record_id, operation, status, timestamp, synced_at, last_error = row
    return QueueEntry(
        id=int(entry_id),
        collection=CollectionName(collection),
        record_id=record_id,
        operation=Operation(operation),
        status=QueueStatus(status),
        timestamp=timestamp,
        synced_at=synced_at,
        last_error=last_error,
    )


__all__ = ["SyncQueue"]
