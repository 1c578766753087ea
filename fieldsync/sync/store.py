"""Durable, collection-oriented record store backed by SQLite."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import sqlite3
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Union,
)

import aiosqlite

from ..errors import NotSerializable, StoreError
from .models import CollectionName, Record

if TYPE_CHECKING:
    from ..configuration import ConfigurationBundle

logger = logging.getLogger("fieldsync.sync.store")

DEFAULT_STORE_PATH = "state/fieldsync.db"
SCHEMA_VERSION = 1

SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    collection TEXT NOT NULL,
    id TEXT NOT NULL,
    payload TEXT NOT NULL,
    synced INTEGER NOT NULL DEFAULT 0,
    revision INTEGER NOT NULL DEFAULT 1,
    updated_at TEXT NOT NULL,
    from_remote INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (collection, id)
);

CREATE TABLE IF NOT EXISTS sync_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    collection TEXT NOT NULL,
    record_id TEXT NOT NULL,
    operation TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    timestamp TEXT NOT NULL,
    synced_at TEXT,
    last_error TEXT
);

CREATE INDEX IF NOT EXISTS idx_sync_queue_status ON sync_queue(status);
CREATE INDEX IF NOT EXISTS idx_sync_queue_record ON sync_queue(collection, record_id);

CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StoreSettings:
    """Where the store keeps its database file."""

    path: Path

    @classmethod
    def from_bundle(cls, bundle: "ConfigurationBundle") -> "StoreSettings":
        raw = bundle.merged.get("store", {}) if bundle.merged else {}
        configured = str(raw.get("path") or DEFAULT_STORE_PATH)
        path = Path(configured).expanduser()
        if not path.is_absolute():
            path = bundle.data_dir / path
        return cls(path=path)


@contextmanager
def engine_errors(action: str) -> Iterator[None]:
    """Surface SQLite failures as ``StoreError`` with the cause chained."""

    try:
        yield
    except sqlite3.Error as exc:
        raise StoreError(f"{action} failed: {exc}") from exc


def serialize_payload(payload: Any) -> str:
    """Encode a payload as JSON, refusing anything that would not round-trip."""

    try:
        encoded = json.dumps(payload, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise NotSerializable(f"Payload is not serializable: {exc}") from exc
    if json.loads(encoded) != payload:
        raise NotSerializable(
            "Payload does not round-trip losslessly through JSON "
            "(tuples, sets or non-string keys?)"
        )
    return encoded


class LocalStore:
    """Upsert-only record store with named collections.

    Every write runs under a single writer lock so a multi-statement
    ``transaction()`` cannot be committed halfway by a concurrent write.
    """

    def __init__(self, db_path: Path, clock: Optional[Clock] = None) -> None:
        self.db_path = Path(db_path)
        self._clock = clock or utcnow
        self._conn: Optional[aiosqlite.Connection] = None
        self._init_future: Optional[asyncio.Future] = None
        self._write_lock = asyncio.Lock()

    @property
    def is_ready(self) -> bool:
        return self._conn is not None

    def now(self) -> str:
        return self._clock().isoformat()

    async def init(self) -> bool:
        """Open the database and create tables. Safe to call concurrently."""

        if self._conn is not None:
            return True
        if self._init_future is None:
            self._init_future = asyncio.ensure_future(self._open())
        future = self._init_future
        try:
            await asyncio.shield(future)
        except Exception:
            if self._init_future is future:
                self._init_future = None
            raise
        return True

    async def _open(self) -> None:
        logger.info("Opening local store at %s", self.db_path)
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreError(f"Unable to create store directory: {exc}") from exc

        conn: Optional[aiosqlite.Connection] = None
        try:
            conn = await aiosqlite.connect(str(self.db_path))
            await conn.executescript(SCHEMA)
            await conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
            await conn.commit()
        except sqlite3.Error as exc:
            if conn is not None:
                await conn.close()
            raise StoreError(f"Unable to open local store at {self.db_path}: {exc}") from exc
        self._conn = conn
        logger.debug("Local store ready (schema v%d)", SCHEMA_VERSION)

    async def close(self) -> None:
        """Close the database connection."""
        if self._init_future is not None and not self._init_future.done():
            try:
                await self._init_future
            except Exception as exc:
                logger.debug("Store init failed before close: %s", exc)
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
        self._init_future = None

    async def connection(self) -> aiosqlite.Connection:
        """Return the open connection, initializing on first use."""
        if self._conn is None:
            await self.init()
        if self._conn is None:  # pragma: no cover - init raises instead
            raise StoreError("Local store is not available")
        return self._conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Group several writes into one commit."""
        conn = await self.connection()
        async with self._write_lock:
            try:
                yield conn
            except BaseException:
                with engine_errors("rollback"):
                    await conn.rollback()
                raise
            else:
                with engine_errors("commit"):
                    await conn.commit()

    # Records -------------------------------------------------------------

    async def put(self, collection: Union[str, CollectionName], record: Record) -> Record:
        """Upsert ``record`` by id and return the stored copy."""
        async with self.transaction() as conn:
            return await self.upsert(conn, collection, record)

    async def upsert(
        self,
        conn: aiosqlite.Connection,
        collection: Union[str, CollectionName],
        record: Record,
    ) -> Record:
        """Upsert inside an open ``transaction()``."""
        name = CollectionName.parse(collection)
        if record.collection is not name:
            record = replace(record, collection=name)
        encoded = serialize_payload(record.payload)
        updated_at = self.now()

        with engine_errors(f"put {name.value}/{record.id}"):
            await conn.execute(
                """
                INSERT INTO records (collection, id, payload, synced, revision, updated_at, from_remote)
                VALUES (?, ?, ?, ?, 1, ?, ?)
                ON CONFLICT(collection, id) DO UPDATE SET
                    payload = excluded.payload,
                    synced = excluded.synced,
                    revision = records.revision + 1,
                    updated_at = excluded.updated_at,
                    from_remote = excluded.from_remote
                """,
                (
                    name.value,
                    record.id,
                    encoded,
                    int(record.synced),
                    updated_at,
                    int(record.from_remote),
                ),
            )
            async with conn.execute(
                "SELECT revision FROM records WHERE collection = ? AND id = ?",
                (name.value, record.id),
            ) as cursor:
                row = await cursor.fetchone()

        revision = int(row[0]) if row else 1
        logger.debug("Stored %s/%s (rev %d)", name.value, record.id, revision)
        return replace(record, revision=revision, updated_at=updated_at)

    async def get(self, collection: Union[str, CollectionName], record_id: str) -> Optional[Record]:
        name = CollectionName.parse(collection)
        conn = await self.connection()
        with engine_errors(f"get {name.value}/{record_id}"):
            async with conn.execute(
                """
                SELECT id, collection, payload, synced, revision, updated_at, from_remote
                FROM records WHERE collection = ? AND id = ?
                """,
                (name.value, record_id),
            ) as cursor:
                row = await cursor.fetchone()
        return _row_to_record(row) if row else None

    async def get_all(self, collection: Union[str, CollectionName]) -> List[Record]:
        """All records of a collection, oldest write first."""
        name = CollectionName.parse(collection)
        conn = await self.connection()
        with engine_errors(f"get_all {name.value}"):
            async with conn.execute(
                """
                SELECT id, collection, payload, synced, revision, updated_at, from_remote
                FROM records WHERE collection = ?
                ORDER BY updated_at, id
                """,
                (name.value,),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_record(row) for row in rows]

    async def count(self, collection: Union[str, CollectionName]) -> int:
        name = CollectionName.parse(collection)
        conn = await self.connection()
        with engine_errors(f"count {name.value}"):
            async with conn.execute(
                "SELECT COUNT(*) FROM records WHERE collection = ?", (name.value,)
            ) as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def delete(self, collection: Union[str, CollectionName], record_id: str) -> bool:
        """Remove a record. Returns whether it existed."""
        async with self.transaction() as conn:
            return await self.remove(conn, collection, record_id)

    async def remove(
        self,
        conn: aiosqlite.Connection,
        collection: Union[str, CollectionName],
        record_id: str,
    ) -> bool:
        """Delete inside an open ``transaction()``."""
        name = CollectionName.parse(collection)
        with engine_errors(f"delete {name.value}/{record_id}"):
            cursor = await conn.execute(
                "DELETE FROM records WHERE collection = ? AND id = ?",
                (name.value, record_id),
            )
            removed = cursor.rowcount > 0
            await cursor.close()
        return removed

    async def mark_synced(
        self,
        collection: Union[str, CollectionName],
        record_id: str,
        revision: int,
    ) -> bool:
        """Flag a record as acknowledged if it is still at ``revision``.

        Returns False when the record was rewritten (or deleted) meanwhile;
        the newer write carries its own queue entry.
        """
        name = CollectionName.parse(collection)
        async with self.transaction() as conn:
            with engine_errors(f"mark_synced {name.value}/{record_id}"):
                cursor = await conn.execute(
                    """
                    UPDATE records SET synced = 1
                    WHERE collection = ? AND id = ? AND revision = ?
                    """,
                    (name.value, record_id, revision),
                )
                updated = cursor.rowcount > 0
                await cursor.close()
        return updated

    async def clear_all(self) -> int:
        """Wipe every collection.

        Bulk deletion is reserved for the tenant data manager.
        """
        async with self.transaction() as conn:
            with engine_errors("clear_all"):
                cursor = await conn.execute("DELETE FROM records")
                removed = cursor.rowcount
                await cursor.close()
        logger.info("Cleared %d record(s) from all collections", removed)
        return removed


def _row_to_record(row: Iterable[Any]) -> Record:
    record_id, collection, payload, synced, revision, updated_at, from_remote = row
    return Record(
        id=record_id,
        collection=CollectionName(collection),
        payload=json.loads(payload),
        synced=bool(synced),
        revision=int(revision),
        updated_at=updated_at,
        from_remote=bool(from_remote),
    )


class SettingsArea:
    """Small tenant-agnostic key/value area stored beside the collections."""

    def __init__(self, store: LocalStore) -> None:
        self.store = store

    async def get(self, key: str, default: Any = None) -> Any:
        conn = await self.store.connection()
        with engine_errors(f"settings get {key}"):
            async with conn.execute("SELECT value FROM kv WHERE key = ?", (key,)) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return default
        return json.loads(row[0])

    async def set(self, key: str, value: Any) -> None:
        encoded = serialize_payload(value)
        async with self.store.transaction() as conn:
            with engine_errors(f"settings set {key}"):
                await conn.execute(
                    "INSERT INTO kv (key, value) VALUES (?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    (key, encoded),
                )

    async def delete(self, key: str) -> None:
        async with self.store.transaction() as conn:
            with engine_errors(f"settings delete {key}"):
                await conn.execute("DELETE FROM kv WHERE key = ?", (key,))

    async def items(self) -> Dict[str, Any]:
        conn = await self.store.connection()
        with engine_errors("settings items"):
            async with conn.execute("SELECT key, value FROM kv ORDER BY key") as cursor:
                rows = await cursor.fetchall()
        return {key: json.loads(value) for key, value in rows}

    async def clear(self, preserve: Iterable[str] = ()) -> int:
        """Remove every key except those in ``preserve``."""
        keep = sorted(set(preserve))
        async with self.store.transaction() as conn:
            with engine_errors("settings clear"):
                if keep:
                    placeholders = ", ".join("?" for _ in keep)
                    cursor = await conn.execute(
                        f"DELETE FROM kv WHERE key NOT IN ({placeholders})", keep
                    )
                else:
                    cursor = await conn.execute("DELETE FROM kv")
                removed = cursor.rowcount
                await cursor.close()
        return removed


__all__ = [
    "LocalStore",
    "SettingsArea",
    "StoreSettings",
    "serialize_payload",
    "engine_errors",
    "utcnow",
]
