"""SQLite-backed local store.

Holds the durable state of every entity, file blobs, the local change log and
the per-group sync cursors. All writes go through :meth:`LocalStore.transaction`,
which serializes writers on one in-process lock and commits or rolls back a
single SQLite transaction.
"""

import asyncio
import json
import logging
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from ..errors import StorageUnavailable
from ..models import (
    ChangeLogEntry,
    ChangeType,
    EntityType,
    Group,
    StoredEntity,
    SyncCursor,
)
from ..utils.checksum import content_md5
from ..utils.datetime import (
    from_microseconds,
    now_utc,
    parse_iso,
    to_iso_string,
    to_microseconds,
)


logger = logging.getLogger(__name__)

ORIGIN_LOCAL = "local"
ORIGIN_REMOTE = "remote"

Observer = Callable[[str, EntityType, str], None]


def _row_to_entry(row: sqlite3.Row) -> ChangeLogEntry:
    return ChangeLogEntry(
        change_id=row["change_id"],
        device_id=row["device_id"],
        device_name=row["device_name"],
        timestamp=from_microseconds(row["ts_us"]),
        change_type=ChangeType(row["change_type"]),
        entity_type=EntityType(row["entity_type"]),
        entity_id=row["entity_id"],
        entity_name=row["entity_name"],
        member_id=row["member_id"],
        checksum=row["checksum"],
        description=row["description"],
        metadata=json.loads(row["metadata_json"]) if row["metadata_json"] else {},
    )


def _row_to_entity(row: sqlite3.Row) -> StoredEntity:
    return StoredEntity(
        group_id=row["group_id"],
        entity_type=EntityType(row["entity_type"]),
        entity_id=row["entity_id"],
        name=row["name"],
        payload=json.loads(row["payload"]),
        checksum=row["checksum"],
        updated_at=parse_iso(row["updated_at"]),
    )


class StoreTransaction:
    """Write operations bound to one open SQLite transaction."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.touched: List[Tuple[str, EntityType, str]] = []

    def _execute(self, sql: str, params: Tuple = ()) -> sqlite3.Cursor:
        try:
            return self.conn.execute(sql, params)
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Local store write failed: {e}") from e

    def save_group(self, group: Group):
        self._execute(
            """
            INSERT INTO groups (group_id, name, folder_id, cloud_enabled, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(group_id) DO UPDATE SET
                name = excluded.name,
                folder_id = excluded.folder_id,
                cloud_enabled = excluded.cloud_enabled
            """,
            (group.group_id, group.name, group.folder_id, int(group.cloud_enabled),
             to_iso_string(group.created_at)),
        )

    def upsert_entity(self, entity: StoredEntity):
        self._execute(
            """
            INSERT INTO entities (group_id, entity_type, entity_id, name, payload, checksum, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(group_id, entity_type, entity_id) DO UPDATE SET
                name = excluded.name,
                payload = excluded.payload,
                checksum = excluded.checksum,
                updated_at = excluded.updated_at
            """,
            (entity.group_id, entity.entity_type.value, entity.entity_id, entity.name,
             json.dumps(entity.payload, sort_keys=True), entity.checksum,
             to_iso_string(entity.updated_at)),
        )
        self.touched.append((entity.group_id, entity.entity_type, entity.entity_id))

    def delete_entity(self, group_id: str, entity_type: EntityType, entity_id: str) -> bool:
        cursor = self._execute(
            "DELETE FROM entities WHERE group_id = ? AND entity_type = ? AND entity_id = ?",
            (group_id, entity_type.value, entity_id),
        )
        if entity_type == EntityType.SONG_FILE:
            self._execute("DELETE FROM blobs WHERE group_id = ? AND entity_id = ?", (group_id, entity_id))
        self.touched.append((group_id, entity_type, entity_id))
        return cursor.rowcount > 0

    def put_blob(self, group_id: str, entity_id: str, data: bytes) -> str:
        md5 = content_md5(data)
        self._execute(
            """
            INSERT INTO blobs (group_id, entity_id, content, md5, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(group_id, entity_id) DO UPDATE SET
                content = excluded.content,
                md5 = excluded.md5,
                updated_at = excluded.updated_at
            """,
            (group_id, entity_id, sqlite3.Binary(data), md5, to_iso_string(now_utc())),
        )
        return md5

    def insert_change(self, group_id: str, entry: ChangeLogEntry, origin: str = ORIGIN_LOCAL) -> bool:
        """Insert a change log row; returns False if ``change_id`` was already stored."""
        cursor = self._execute(
            """
            INSERT OR IGNORE INTO change_log (
                change_id, group_id, device_id, device_name, ts_us, change_type,
                entity_type, entity_id, entity_name, member_id, checksum,
                description, metadata_json, origin, recorded_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (entry.change_id, group_id, entry.device_id, entry.device_name,
             to_microseconds(entry.timestamp), entry.change_type.value,
             entry.entity_type.value, entry.entity_id, entry.entity_name,
             entry.member_id, entry.checksum, entry.description,
             json.dumps(entry.metadata), origin, to_iso_string(now_utc())),
        )
        return cursor.rowcount > 0

    def last_local_timestamp_us(self, group_id: str, device_id: str) -> Optional[int]:
        row = self._execute(
            "SELECT MAX(ts_us) FROM change_log WHERE group_id = ? AND device_id = ?",
            (group_id, device_id),
        ).fetchone()
        return row[0] if row else None

    def save_cursor(self, cursor: SyncCursor):
        self._execute(
            """
            INSERT INTO sync_cursors (
                group_id, local_change_id, remote_change_id,
                remote_log_version, manifest_version, last_sync_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(group_id) DO UPDATE SET
                local_change_id = excluded.local_change_id,
                remote_change_id = excluded.remote_change_id,
                remote_log_version = excluded.remote_log_version,
                manifest_version = excluded.manifest_version,
                last_sync_at = excluded.last_sync_at
            """,
            (cursor.group_id, cursor.local_change_id, cursor.remote_change_id,
             cursor.remote_log_version, cursor.manifest_version,
             to_iso_string(cursor.last_sync_at)),
        )

    def delete_changes_before(self, group_id: str, before_us: int, origin: Optional[str] = None) -> int:
        sql = "DELETE FROM change_log WHERE group_id = ? AND ts_us < ?"
        params: Tuple = (group_id, before_us)
        if origin:
            sql += " AND origin = ?"
            params += (origin,)
        return self._execute(sql, params).rowcount


class LocalStore:
    """Persistent storage for groups, entities, blobs, changes and cursors."""

    def __init__(self, db_path: Path):
        """Initialize the store.

        Args:
            db_path: Path of the SQLite database file
        """
        self.db_path = Path(db_path)
        self.logger = logging.getLogger(__name__)
        self._write_lock = asyncio.Lock()
        self._observers: List[Observer] = []

        self._init_database()

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Cannot open local store at {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        return conn

    def _init_database(self):
        """Initialize the SQLite database with required tables."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = self._connect()
            try:
                conn.executescript("""
                    CREATE TABLE IF NOT EXISTS groups (
                        group_id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        folder_id TEXT,
                        cloud_enabled INTEGER DEFAULT 0,
                        created_at TEXT NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS entities (
                        group_id TEXT NOT NULL,
                        entity_type TEXT NOT NULL,
                        entity_id TEXT NOT NULL,
                        name TEXT NOT NULL,
                        payload TEXT NOT NULL,  -- JSON serialized entity state
                        checksum TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        PRIMARY KEY (group_id, entity_type, entity_id)
                    );

                    CREATE TABLE IF NOT EXISTS blobs (
                        group_id TEXT NOT NULL,
                        entity_id TEXT NOT NULL,
                        content BLOB NOT NULL,
                        md5 TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        PRIMARY KEY (group_id, entity_id)
                    );

                    CREATE TABLE IF NOT EXISTS change_log (
                        change_id TEXT PRIMARY KEY,
                        group_id TEXT NOT NULL,
                        device_id TEXT NOT NULL,
                        device_name TEXT NOT NULL,
                        ts_us INTEGER NOT NULL,
                        change_type TEXT NOT NULL,
                        entity_type TEXT NOT NULL,
                        entity_id TEXT NOT NULL,
                        entity_name TEXT NOT NULL,
                        member_id TEXT,
                        checksum TEXT NOT NULL,
                        description TEXT NOT NULL,
                        metadata_json TEXT,
                        origin TEXT NOT NULL,
                        recorded_at TEXT NOT NULL
                    );

                    CREATE INDEX IF NOT EXISTS idx_change_log_order
                    ON change_log(group_id, origin, ts_us, change_id);

                    CREATE INDEX IF NOT EXISTS idx_change_log_entity
                    ON change_log(group_id, entity_id);

                    CREATE TABLE IF NOT EXISTS sync_cursors (
                        group_id TEXT PRIMARY KEY,
                        local_change_id TEXT,
                        remote_change_id TEXT,
                        remote_log_version INTEGER DEFAULT 0,
                        manifest_version INTEGER DEFAULT 0,
                        last_sync_at TEXT
                    );
                """)
                conn.commit()
            finally:
                conn.close()
            self.logger.debug(f"Initialized local store at {self.db_path}")
        except (sqlite3.Error, OSError) as e:
            raise StorageUnavailable(f"Failed to initialize local store: {e}") from e

    def _query(self, sql: str, params: Tuple = ()) -> List[sqlite3.Row]:
        conn = self._connect()
        try:
            return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Local store read failed: {e}") from e
        finally:
            conn.close()

    # Observers

    def subscribe(self, callback: Observer) -> Callable[[], None]:
        """Register a callback notified after each committed entity write.

        Returns:
            A function that removes the subscription
        """
        self._observers.append(callback)

        def unsubscribe():
            if callback in self._observers:
                self._observers.remove(callback)

        return unsubscribe

    def _notify(self, touched: List[Tuple[str, EntityType, str]]):
        for group_id, entity_type, entity_id in touched:
            for callback in list(self._observers):
                try:
                    callback(group_id, entity_type, entity_id)
                except Exception as e:
                    self.logger.warning(f"Store observer failed for {entity_type.value}:{entity_id}: {e}")

    # Writes

    @asynccontextmanager
    async def transaction(self):
        """Serialize a batch of writes into one atomic SQLite transaction.

        Yields:
            StoreTransaction bound to the open connection
        """
        async with self._write_lock:
            conn = self._connect()
            txn = StoreTransaction(conn)
            try:
                yield txn
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StorageUnavailable(f"Local store commit failed: {e}") from e
            except BaseException:
                conn.rollback()
                raise
            finally:
                conn.close()
        self._notify(txn.touched)

    async def save_group(self, group: Group):
        async with self.transaction() as txn:
            txn.save_group(group)

    async def upsert_entity(self, entity: StoredEntity):
        async with self.transaction() as txn:
            txn.upsert_entity(entity)

    async def delete_entity(self, group_id: str, entity_type: EntityType, entity_id: str) -> bool:
        async with self.transaction() as txn:
            return txn.delete_entity(group_id, entity_type, entity_id)

    async def put_blob(self, group_id: str, entity_id: str, data: bytes) -> str:
        async with self.transaction() as txn:
            return txn.put_blob(group_id, entity_id, data)

    async def save_cursor(self, cursor: SyncCursor):
        async with self.transaction() as txn:
            txn.save_cursor(cursor)

    # Reads

    async def get_group(self, group_id: str) -> Optional[Group]:
        rows = self._query("SELECT * FROM groups WHERE group_id = ?", (group_id,))
        if not rows:
            return None
        row = rows[0]
        return Group(
            group_id=row["group_id"],
            name=row["name"],
            folder_id=row["folder_id"],
            cloud_enabled=bool(row["cloud_enabled"]),
            created_at=parse_iso(row["created_at"]),
        )

    async def list_groups(self) -> List[Group]:
        rows = self._query("SELECT group_id FROM groups ORDER BY created_at")
        groups = []
        for row in rows:
            group = await self.get_group(row["group_id"])
            if group:
                groups.append(group)
        return groups

    async def get_entity(self, group_id: str, entity_type: EntityType, entity_id: str) -> Optional[StoredEntity]:
        rows = self._query(
            "SELECT * FROM entities WHERE group_id = ? AND entity_type = ? AND entity_id = ?",
            (group_id, entity_type.value, entity_id),
        )
        return _row_to_entity(rows[0]) if rows else None

    async def list_entities(self, group_id: str, entity_type: Optional[EntityType] = None) -> List[StoredEntity]:
        if entity_type:
            rows = self._query(
                "SELECT * FROM entities WHERE group_id = ? AND entity_type = ? ORDER BY entity_id",
                (group_id, entity_type.value),
            )
        else:
            rows = self._query(
                "SELECT * FROM entities WHERE group_id = ? ORDER BY entity_type, entity_id",
                (group_id,),
            )
        return [_row_to_entity(row) for row in rows]

    async def get_blob(self, group_id: str, entity_id: str) -> Optional[bytes]:
        rows = self._query(
            "SELECT content FROM blobs WHERE group_id = ? AND entity_id = ?",
            (group_id, entity_id),
        )
        return bytes(rows[0]["content"]) if rows else None

    async def get_cursor(self, group_id: str) -> SyncCursor:
        rows = self._query("SELECT * FROM sync_cursors WHERE group_id = ?", (group_id,))
        if not rows:
            return SyncCursor(group_id=group_id)
        row = rows[0]
        return SyncCursor(
            group_id=group_id,
            local_change_id=row["local_change_id"],
            remote_change_id=row["remote_change_id"],
            remote_log_version=row["remote_log_version"] or 0,
            manifest_version=row["manifest_version"] or 0,
            last_sync_at=parse_iso(row["last_sync_at"]),
        )

    async def get_change(self, change_id: str) -> Optional[ChangeLogEntry]:
        rows = self._query("SELECT * FROM change_log WHERE change_id = ?", (change_id,))
        return _row_to_entry(rows[0]) if rows else None

    async def known_change_ids(self, group_id: str, change_ids: List[str]) -> set:
        """Subset of ``change_ids`` already present in the local change log."""
        known = set()
        ids = list(change_ids)
        for start in range(0, len(ids), 500):
            chunk = ids[start:start + 500]
            placeholders = ",".join("?" for _ in chunk)
            rows = self._query(
                f"SELECT change_id FROM change_log WHERE group_id = ? AND change_id IN ({placeholders})",
                (group_id, *chunk),
            )
            known.update(row["change_id"] for row in rows)
        return known

    def iter_changes(self, group_id: str, after: Optional[Tuple[int, str]] = None,
                     origin: Optional[str] = ORIGIN_LOCAL, batch_size: int = 200) -> Iterator[ChangeLogEntry]:
        """Iterate change log rows in (timestamp, change_id) order.

        Rows are read in keyset-paginated batches so the iterator never holds a
        connection open between batches.
        """
        position = after
        while True:
            clauses = ["group_id = ?"]
            params: List[Any] = [group_id]
            if origin:
                clauses.append("origin = ?")
                params.append(origin)
            if position is not None:
                clauses.append("(ts_us > ? OR (ts_us = ? AND change_id > ?))")
                params.extend([position[0], position[0], position[1]])
            params.append(batch_size)
            rows = self._query(
                f"SELECT * FROM change_log WHERE {' AND '.join(clauses)} "
                f"ORDER BY ts_us, change_id LIMIT ?",
                tuple(params),
            )
            for row in rows:
                yield _row_to_entry(row)
            if len(rows) < batch_size:
                return
            last = rows[-1]
            position = (last["ts_us"], last["change_id"])

    def change_position(self, change_id: str) -> Optional[Tuple[int, str]]:
        """(ts_us, change_id) of a stored change, or None if unknown."""
        rows = self._query("SELECT ts_us, change_id FROM change_log WHERE change_id = ?", (change_id,))
        if not rows:
            return None
        return (rows[0]["ts_us"], rows[0]["change_id"])

    async def entity_changes(self, group_id: str, entity_id: str) -> List[ChangeLogEntry]:
        rows = self._query(
            "SELECT * FROM change_log WHERE group_id = ? AND entity_id = ? ORDER BY ts_us, change_id",
            (group_id, entity_id),
        )
        return [_row_to_entry(row) for row in rows]

    async def device_activity(self, group_id: str) -> List[Dict[str, Any]]:
        rows = self._query(
            """
            SELECT device_id, device_name, MAX(ts_us) AS last_ts, COUNT(*) AS changes
            FROM change_log WHERE group_id = ?
            GROUP BY device_id ORDER BY last_ts DESC
            """,
            (group_id,),
        )
        return [
            {
                "device_id": row["device_id"],
                "device_name": row["device_name"],
                "last_change_at": from_microseconds(row["last_ts"]),
                "change_count": row["changes"],
            }
            for row in rows
        ]

    async def count_changes(self, group_id: str, after: Optional[Tuple[int, str]] = None,
                            origin: str = ORIGIN_LOCAL) -> int:
        sql = "SELECT COUNT(*) AS n FROM change_log WHERE group_id = ? AND origin = ?"
        params: Tuple = (group_id, origin)
        if after is not None:
            sql += " AND (ts_us > ? OR (ts_us = ? AND change_id > ?))"
            params += (after[0], after[0], after[1])
        return self._query(sql, params)[0]["n"]

    async def latest_change_timestamp(self, group_id: str) -> Optional[int]:
        rows = self._query("SELECT MAX(ts_us) AS ts FROM change_log WHERE group_id = ?", (group_id,))
        return rows[0]["ts"] if rows else None
