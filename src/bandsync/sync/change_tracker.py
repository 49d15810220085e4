"""Local change tracking.

Every local mutation is recorded as an append-only, checksummed
:class:`ChangeLogEntry`. The sync manager reads the log through
:meth:`ChangeTracker.get_changes_since` to find out what changed since the
last sync without diffing entity state.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ..models import (
    ChangeLogEntry,
    ChangeType,
    EntityType,
    StoredEntity,
)
from ..store.local_store import ORIGIN_LOCAL, ORIGIN_REMOTE, LocalStore, StoreTransaction
from ..utils.checksum import TOMBSTONE_CHECKSUM, entity_checksum
from ..utils.datetime import from_microseconds, now_utc, to_microseconds


logger = logging.getLogger(__name__)

ACTION_WORDS = {
    ChangeType.CREATE: "added",
    ChangeType.UPDATE: "updated",
    ChangeType.DELETE: "deleted",
    ChangeType.MOVE: "moved",
}

ENTITY_WORDS = {
    EntityType.SONG: "song",
    EntityType.SETLIST: "setlist",
    EntityType.ANNOTATION: "annotation",
    EntityType.GROUP: "group",
    EntityType.MEMBER: "member",
    EntityType.SONG_FILE: "file",
    EntityType.SETLIST_ITEM: "setlist item",
}


def describe_change(change_type: ChangeType, entity_type: EntityType, entity_name: str) -> str:
    """Human-readable description, e.g. ``updated song 'Blue'``."""
    return f"{ACTION_WORDS[change_type]} {ENTITY_WORDS[entity_type]} '{entity_name}'"


class ChangeSequence:
    """Lazy, restartable view of local changes after a cursor.

    Each iteration re-reads the log from the store, so iterating twice with
    no intervening writes yields the same entries.
    """

    def __init__(self, store: LocalStore, group_id: str, last_known_change_id: Optional[str] = None):
        self.store = store
        self.group_id = group_id
        self.last_known_change_id = last_known_change_id

    def _start_position(self) -> Optional[Tuple[int, str]]:
        if not self.last_known_change_id:
            return None
        # Unknown cursor (first sync or pruned log): replay everything
        return self.store.change_position(self.last_known_change_id)

    def __iter__(self) -> Iterator[ChangeLogEntry]:
        return self.store.iter_changes(self.group_id, after=self._start_position(), origin=ORIGIN_LOCAL)

    def to_list(self) -> List[ChangeLogEntry]:
        return list(iter(self))


class ChangeTracker:
    """Records local mutations for synchronization."""

    def __init__(self, store: LocalStore, device_id: str, device_name: str):
        """Initialize the tracker.

        Args:
            store: Local store shared with the sync manager
            device_id: Stable id of this device
            device_name: Human-readable device name
        """
        self.store = store
        self.device_id = device_id
        self.device_name = device_name
        self.logger = logging.getLogger(__name__)

    def _next_timestamp(self, txn: StoreTransaction, group_id: str, device_id: str) -> datetime:
        """Current time, bumped past the device's latest entry to keep order strict."""
        now_us = to_microseconds(now_utc())
        last_us = txn.last_local_timestamp_us(group_id, device_id)
        if last_us is not None and now_us <= last_us:
            now_us = last_us + 1
        return from_microseconds(now_us)

    def _build_entry(self, txn: StoreTransaction, group_id: str, change_type: ChangeType,
                     entity_type: EntityType, entity_id: str, entity_name: str, checksum: str,
                     member_id: Optional[str], description: Optional[str],
                     metadata: Optional[Dict[str, str]], device_id: Optional[str],
                     device_name: Optional[str]) -> ChangeLogEntry:
        author_id = device_id or self.device_id
        return ChangeLogEntry(
            change_id=str(uuid.uuid4()),
            device_id=author_id,
            device_name=device_name or self.device_name,
            timestamp=self._next_timestamp(txn, group_id, author_id),
            change_type=change_type,
            entity_type=entity_type,
            entity_id=entity_id,
            entity_name=entity_name,
            member_id=member_id,
            checksum=checksum,
            description=description or describe_change(change_type, entity_type, entity_name),
            metadata={str(k): str(v) for k, v in (metadata or {}).items()},
        )

    async def record_change(self, group_id: str, change_type: ChangeType, entity_type: EntityType,
                            entity_id: str, entity_name: str, checksum: str,
                            member_id: Optional[str] = None, description: Optional[str] = None,
                            metadata: Optional[Dict[str, str]] = None,
                            device_id: Optional[str] = None,
                            device_name: Optional[str] = None) -> ChangeLogEntry:
        """Append a change to the local log.

        Args:
            group_id: Group the entity belongs to
            change_type: Kind of mutation
            entity_type: Kind of entity
            entity_id: Id of the mutated entity
            entity_name: Display name of the entity
            checksum: Content hash of the entity state after the change
            member_id: Member the change belongs to, if any
            description: Override for the generated description
            metadata: Extra string key/value pairs
            device_id: Author device, defaults to this device
            device_name: Author device name, defaults to this device

        Returns:
            The recorded entry

        Raises:
            StorageUnavailable: If the store could not durably record the entry
        """
        async with self.store.transaction() as txn:
            entry = self._build_entry(txn, group_id, change_type, entity_type, entity_id,
                                      entity_name, checksum, member_id, description, metadata,
                                      device_id, device_name)
            txn.insert_change(group_id, entry, ORIGIN_LOCAL)

        self.logger.debug(f"Recorded change: {entry.description}")
        return entry

    async def record_entity_change(self, group_id: str, change_type: ChangeType,
                                   entity_type: EntityType, entity_id: str, entity_name: str,
                                   payload: Optional[Dict[str, Any]] = None,
                                   member_id: Optional[str] = None,
                                   description: Optional[str] = None,
                                   metadata: Optional[Dict[str, str]] = None,
                                   blob: Optional[bytes] = None) -> ChangeLogEntry:
        """Write entity state and record the change in one transaction.

        ``payload`` is ignored for DELETE changes, which remove the entity.
        """
        if change_type != ChangeType.DELETE and payload is None:
            raise ValueError(f"{change_type.value} of {entity_type.value}:{entity_id} needs a payload")

        checksum = TOMBSTONE_CHECKSUM if change_type == ChangeType.DELETE else entity_checksum(payload)

        async with self.store.transaction() as txn:
            if change_type == ChangeType.DELETE:
                txn.delete_entity(group_id, entity_type, entity_id)
            else:
                txn.upsert_entity(StoredEntity(
                    group_id=group_id,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    name=entity_name,
                    payload=payload,
                    checksum=checksum,
                ))
                if blob is not None:
                    txn.put_blob(group_id, entity_id, blob)

            entry = self._build_entry(txn, group_id, change_type, entity_type, entity_id,
                                      entity_name, checksum, member_id, description, metadata,
                                      None, None)
            txn.insert_change(group_id, entry, ORIGIN_LOCAL)

        self.logger.debug(f"Recorded change: {entry.description}")
        return entry

    def record_remote_changes(self, txn: StoreTransaction, group_id: str,
                              entries: List[ChangeLogEntry]) -> int:
        """Store applied remote entries inside an open store transaction.

        Entries that are already known are skipped.

        Returns:
            Number of entries inserted
        """
        inserted = 0
        for entry in entries:
            if txn.insert_change(group_id, entry, ORIGIN_REMOTE):
                inserted += 1
                self.logger.debug(f"Applied remote change: {entry.description}")
        return inserted

    async def record_remote_change(self, group_id: str, entry: ChangeLogEntry) -> bool:
        """Store an applied remote entry; returns False if it was already known."""
        async with self.store.transaction() as txn:
            inserted = self.record_remote_changes(txn, group_id, [entry])
        return inserted == 1

    def get_changes_since(self, group_id: str, last_known_change_id: Optional[str] = None) -> ChangeSequence:
        """Local changes strictly after ``last_known_change_id`` in log order.

        An unknown or missing cursor yields the full local log.
        """
        return ChangeSequence(self.store, group_id, last_known_change_id)

    async def pending_count(self, group_id: str) -> int:
        """Number of local changes not yet covered by the sync cursor."""
        cursor = await self.store.get_cursor(group_id)
        position = self.store.change_position(cursor.local_change_id) if cursor.local_change_id else None
        return await self.store.count_changes(group_id, after=position, origin=ORIGIN_LOCAL)

    async def entity_history(self, group_id: str, entity_id: str) -> List[ChangeLogEntry]:
        """All known changes (local and remote) to one entity, oldest first."""
        return await self.store.entity_changes(group_id, entity_id)

    async def active_devices(self, group_id: str) -> List[Dict[str, Any]]:
        """Devices that contributed changes to the group, most recent first."""
        return await self.store.device_activity(group_id)

    async def latest_change_timestamp(self, group_id: str) -> Optional[datetime]:
        value = await self.store.latest_change_timestamp(group_id)
        return from_microseconds(value) if value is not None else None

    async def clear_synced_before(self, group_id: str, before: datetime) -> int:
        """Delete log entries older than ``before`` that the sync cursor has passed.

        Local entries after the local cursor are kept regardless of age so
        unsynced work is never dropped.
        """
        cursor = await self.store.get_cursor(group_id)
        cutoff_us = to_microseconds(before)

        local_limit = 0
        if cursor.local_change_id:
            position = self.store.change_position(cursor.local_change_id)
            if position:
                local_limit = min(cutoff_us, position[0])

        async with self.store.transaction() as txn:
            removed = txn.delete_changes_before(group_id, local_limit, ORIGIN_LOCAL)
            removed += txn.delete_changes_before(group_id, cutoff_us, ORIGIN_REMOTE)

        self.logger.info(f"Cleared {removed} old changes for group {group_id}")
        return removed
