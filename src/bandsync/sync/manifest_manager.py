"""Remote manifest and change log management.

The remote folder of a group looks like::

    {folder}/group-manifest.json
    {folder}/sync/change-log.json
    {folder}/entities/{entityType}/{entityId}/{checksum}.json
    {folder}/files/{entityId}
    {folder}/devices/{deviceId}.json

plus a transport-wide ``share-codes/{CODE}.json`` index. The manifest and the
change log are only ever written with a conditional put against the version
tag that was read, so concurrent writers re-fetch and retry instead of
overwriting each other.
"""

import asyncio
import json
import logging
import random
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from ..errors import (
    ConcurrentChange,
    ManifestConflict,
    ManifestCorrupt,
    ManifestNotFound,
    PreconditionFailed,
    RemoteFileNotFound,
)
from ..models import (
    ChangeLog,
    ChangeLogEntry,
    DeviceInfo,
    EntityType,
    GroupManifest,
    ShareCode,
)
from ..transport.base import CloudTransport, RetryHandler
from ..utils.checksum import canonical_json, content_md5
from ..utils.datetime import now_utc


logger = logging.getLogger(__name__)

MANIFEST_FILE = "group-manifest.json"
CHANGE_LOG_FILE = "sync/change-log.json"
SHARE_CODE_DIR = "share-codes"

ManifestMutator = Callable[[GroupManifest], GroupManifest]


def _encode(document: Dict[str, Any]) -> bytes:
    return json.dumps(document, indent=2, sort_keys=True).encode("utf-8")


def _decode(data: bytes, path: str) -> Dict[str, Any]:
    try:
        document = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ManifestCorrupt(f"Cannot parse {path}: {e}") from e
    if not isinstance(document, dict):
        raise ManifestCorrupt(f"Unexpected document type in {path}: {type(document).__name__}")
    return document


class ManifestManager:
    """Reads and writes group manifests and change logs on the remote."""

    def __init__(self, transport: CloudTransport, retry_handler: Optional[RetryHandler] = None,
                 max_manifest_retries: int = 5):
        """Initialize the manager.

        Args:
            transport: Remote folder transport
            retry_handler: Retry policy for transient transport failures
            max_manifest_retries: Optimistic write attempts before ManifestConflict
        """
        self.transport = transport
        self.retry_handler = retry_handler or RetryHandler()
        self.max_manifest_retries = max_manifest_retries
        self.folders: Dict[str, str] = {}
        self.logger = logging.getLogger(__name__)

    # Paths

    def register_folder(self, group_id: str, folder_id: str):
        """Map a group to the remote folder it lives in."""
        self.folders[group_id] = folder_id.strip("/")

    def forget_folder(self, group_id: str):
        self.folders.pop(group_id, None)

    def folder_for(self, group_id: str) -> str:
        return self.folders.get(group_id, f"groups/{group_id}")

    def manifest_path(self, group_id: str) -> str:
        return f"{self.folder_for(group_id)}/{MANIFEST_FILE}"

    def change_log_path(self, group_id: str) -> str:
        return f"{self.folder_for(group_id)}/{CHANGE_LOG_FILE}"

    def snapshot_path(self, group_id: str, entity_type: EntityType, entity_id: str, checksum: str) -> str:
        return f"{self.folder_for(group_id)}/entities/{entity_type.value}/{entity_id}/{checksum}.json"

    def blob_path(self, group_id: str, entity_id: str) -> str:
        return f"{self.folder_for(group_id)}/files/{entity_id}"

    def device_path(self, group_id: str, device_id: str) -> str:
        return f"{self.folder_for(group_id)}/devices/{device_id}.json"

    # Transport helpers

    async def _get(self, path: str):
        return await self.retry_handler.execute_with_retry(self.transport.get_with_info, path)

    async def _put(self, path: str, data: bytes, **conditions):
        return await self.retry_handler.execute_with_retry(self.transport.put, path, data, **conditions)

    async def _backoff(self, attempt: int):
        # Small randomized pause so two racing writers do not collide in lockstep
        await asyncio.sleep(random.uniform(0, 0.05 * attempt))

    # Manifest

    async def _fetch_manifest_with_tag(self, group_id: str) -> Tuple[GroupManifest, str]:
        path = self.manifest_path(group_id)
        try:
            data, info = await self._get(path)
        except RemoteFileNotFound:
            raise ManifestNotFound(f"No manifest for group {group_id} at {path}") from None

        document = _decode(data, path)
        try:
            manifest = GroupManifest.from_dict(document)
        except (KeyError, ValueError, TypeError) as e:
            raise ManifestCorrupt(f"Invalid manifest at {path}: {e}") from e
        return manifest, info.version_tag

    async def fetch_manifest(self, group_id: str) -> GroupManifest:
        """Download and parse the group manifest.

        Raises:
            ManifestNotFound: If the manifest does not exist
            ManifestCorrupt: If it cannot be parsed
        """
        manifest, _ = await self._fetch_manifest_with_tag(group_id)
        return manifest

    async def create_manifest(self, manifest: GroupManifest) -> GroupManifest:
        """Write a new manifest; fails if one already exists.

        Raises:
            ManifestConflict: If the group already has a manifest
        """
        path = self.manifest_path(manifest.group_id)
        try:
            await self._put(path, _encode(manifest.to_dict()), if_none_match=True)
        except PreconditionFailed:
            raise ManifestConflict(f"Manifest already exists for group {manifest.group_id}") from None
        self.logger.info(f"Created manifest for group {manifest.group_id} (version {manifest.version})")
        return manifest

    async def update_manifest(self, group_id: str, mutator: ManifestMutator) -> GroupManifest:
        """Fetch-modify-write the manifest with a version check.

        The mutator receives a private copy of the current manifest. The
        written manifest always has ``version = old.version + 1``.

        Raises:
            ManifestConflict: If concurrent writers won every attempt
        """
        for attempt in range(1, self.max_manifest_retries + 1):
            current, tag = await self._fetch_manifest_with_tag(group_id)
            working = current.copy()
            updated = mutator(working) or working
            updated.group_id = current.group_id
            updated.version = current.version + 1
            updated.last_modified = now_utc()

            try:
                await self._put(self.manifest_path(group_id), _encode(updated.to_dict()), if_match=tag)
            except PreconditionFailed:
                self.logger.warning(
                    f"Manifest for group {group_id} changed during update "
                    f"(attempt {attempt}/{self.max_manifest_retries}), retrying"
                )
                await self._backoff(attempt)
                continue

            self.logger.info(f"Manifest for group {group_id} updated to version {updated.version}")
            return updated

        raise ManifestConflict(
            f"Gave up updating manifest for group {group_id} after {self.max_manifest_retries} attempts"
        )

    # Change log

    async def _fetch_change_log_with_tag(self, group_id: str) -> Tuple[ChangeLog, Optional[str]]:
        path = self.change_log_path(group_id)
        try:
            data, info = await self._get(path)
        except RemoteFileNotFound:
            return ChangeLog(), None

        document = _decode(data, path)
        try:
            return ChangeLog.from_dict(document), info.version_tag
        except (KeyError, ValueError, TypeError) as e:
            raise ManifestCorrupt(f"Invalid change log at {path}: {e}") from e

    async def fetch_change_log(self, group_id: str) -> ChangeLog:
        """Download the group's change log; an absent log is empty."""
        log, _ = await self._fetch_change_log_with_tag(group_id)
        return log

    async def fetch_changes_since(self, group_id: str, last_change_id: Optional[str]) -> List[ChangeLogEntry]:
        """Remote entries after ``last_change_id`` in log order (all if unknown)."""
        log = await self.fetch_change_log(group_id)
        return log.since(last_change_id)

    async def append_changes(self, group_id: str, entries: List[ChangeLogEntry],
                             base_change_ids: Optional[Set[str]] = None) -> ChangeLog:
        """Append entries to the remote change log, deduplicating by change id.

        Uses the same fetch-modify-conditional-write loop as manifest updates.
        When ``base_change_ids`` (the log the caller compared against) is
        given, every fetched log is checked for entries from other devices
        that are not in it and touch an entity being appended.

        Returns:
            The change log as written (or as found, if nothing was new)

        Raises:
            ConcurrentChange: If another device changed a pushed entity since the base log
            ManifestConflict: If concurrent writers won every attempt
        """
        path = self.change_log_path(group_id)
        own_devices = {entry.device_id for entry in entries}

        for attempt in range(1, self.max_manifest_retries + 1):
            log, tag = await self._fetch_change_log_with_tag(group_id)
            if base_change_ids is not None:
                present = log.change_ids()
                pushed_keys = {entry.entity_key for entry in entries if entry.change_id not in present}
                contested = {
                    entry.entity_key for entry in log.changes
                    if entry.change_id not in base_change_ids
                    and entry.device_id not in own_devices
                    and entry.entity_key in pushed_keys
                }
                if contested:
                    self.logger.warning(
                        f"Change log for group {group_id} gained concurrent edits to "
                        f"{len(contested)} pushed entities, not appending"
                    )
                    raise ConcurrentChange(group_id, contested)

            added = log.append(entries)
            if not added:
                return log

            log.version += 1
            conditions = {"if_match": tag} if tag is not None else {"if_none_match": True}
            try:
                await self._put(path, _encode(log.to_dict()), **conditions)
            except PreconditionFailed:
                self.logger.warning(
                    f"Change log for group {group_id} changed during append "
                    f"(attempt {attempt}/{self.max_manifest_retries}), retrying"
                )
                await self._backoff(attempt)
                continue

            self.logger.info(f"Appended {len(added)} changes to group {group_id} (log version {log.version})")
            return log

        raise ManifestConflict(
            f"Gave up appending to change log of group {group_id} after {self.max_manifest_retries} attempts"
        )

    # Devices

    async def publish_device(self, group_id: str, device: DeviceInfo):
        await self._put(self.device_path(group_id, device.device_id), _encode(device.to_dict()))

    async def fetch_devices(self, group_id: str, online_window: timedelta) -> List[DeviceInfo]:
        """All device records of a group; online means seen within ``online_window``."""
        prefix = f"{self.folder_for(group_id)}/devices"
        now = now_utc()
        devices = []
        for info in await self.retry_handler.execute_with_retry(self.transport.list, prefix):
            if not info.path.endswith(".json"):
                continue
            try:
                data, _ = await self._get(info.path)
                device = DeviceInfo.from_dict(_decode(data, info.path))
            except (ManifestCorrupt, KeyError, ValueError) as e:
                self.logger.warning(f"Skipping unreadable device record {info.path}: {e}")
                continue
            except RemoteFileNotFound:
                continue
            device.is_online = now - device.last_seen <= online_window
            devices.append(device)
        return sorted(devices, key=lambda d: d.last_seen, reverse=True)

    # Entity snapshots and blobs

    async def put_snapshot(self, group_id: str, entity_type: EntityType, entity_id: str,
                           checksum: str, payload: Dict[str, Any]) -> bool:
        """Upload an entity snapshot unless the content-addressed copy exists."""
        path = self.snapshot_path(group_id, entity_type, entity_id, checksum)
        if await self.retry_handler.execute_with_retry(self.transport.exists, path):
            return False
        await self._put(path, canonical_json(payload).encode("utf-8"))
        return True

    async def get_snapshot(self, group_id: str, entity_type: EntityType, entity_id: str,
                           checksum: str) -> Dict[str, Any]:
        path = self.snapshot_path(group_id, entity_type, entity_id, checksum)
        data, _ = await self._get(path)
        return _decode(data, path)

    async def blob_needs_upload(self, group_id: str, entity_id: str, data: bytes) -> bool:
        info = await self.retry_handler.execute_with_retry(self.transport.stat, self.blob_path(group_id, entity_id))
        return info is None or info.md5 != content_md5(data)

    async def put_blob(self, group_id: str, entity_id: str, data: bytes):
        await self._put(self.blob_path(group_id, entity_id), data)

    async def get_blob(self, group_id: str, entity_id: str) -> bytes:
        data, _ = await self._get(self.blob_path(group_id, entity_id))
        return data

    # Share codes

    async def write_share_code(self, share: ShareCode):
        await self._put(f"{SHARE_CODE_DIR}/{share.code}.json", _encode(share.to_dict()))

    async def read_share_code(self, code: str) -> Optional[ShareCode]:
        path = f"{SHARE_CODE_DIR}/{code}.json"
        try:
            data, _ = await self._get(path)
        except RemoteFileNotFound:
            return None
        try:
            return ShareCode.from_dict(_decode(data, path))
        except (KeyError, ValueError) as e:
            raise ManifestCorrupt(f"Invalid share code record {path}: {e}") from e
