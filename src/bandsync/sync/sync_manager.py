"""Cloud sync orchestration.

:class:`CloudSyncManager` drives complete synchronization cycles for a group:
pull remote changes, classify entities touched on both sides, apply what is
safe to apply, push local changes, and only then advance the sync cursors.
A cycle that fails part way leaves the cursors untouched, so the next cycle
reprocesses the same changes; re-applying an already applied change is a
no-op because its checksum already matches the local state.
"""

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from .. import __version__
from ..config import ConfigModel
from ..errors import (
    AuthenticationRequired,
    BandSyncError,
    CloudSyncDisabled,
    ConcurrentChange,
    IncompatibleVersion,
    ManifestConflict,
    OfflineError,
    RemoteFileNotFound,
    ShareCodeError,
    UnknownGroup,
)
from ..models import (
    ChangeLogEntry,
    ChangeType,
    ConflictType,
    DeviceInfo,
    EntityType,
    EntityWrite,
    Group,
    GroupManifest,
    GroupOperationResult,
    GroupSyncSettings,
    Member,
    MemberRole,
    Permissions,
    ResolutionAction,
    ResolutionResult,
    StoredEntity,
    SyncConflict,
    SyncCursor,
    SyncResult,
    SyncStatus,
)
from ..store.local_store import LocalStore
from ..sync_config import SyncSettings
from ..transport.base import CloudTransport, RetryHandler
from ..transport.local_folder import LocalFolderTransport
from ..utils.datetime import now_utc
from .change_tracker import ChangeTracker
from .conflict_resolver import ConflictResolver, EntityKey, effective_latest, group_by_entity
from .manifest_manager import ManifestManager
from .share_codes import generate_share_code, parse_share_input


logger = logging.getLogger(__name__)

# Called with (group_id, message) at each step of a sync cycle
ProgressCallback = Callable[[str, str], None]

# Failures that another cycle cannot fix
LOOP_STOPPING_ERRORS = {UnknownGroup.__name__, CloudSyncDisabled.__name__}


def parse_version(text: str) -> Tuple[int, ...]:
    """Parse ``1.2.3`` style versions; non-numeric suffixes are ignored."""
    parts = []
    for piece in str(text).split("."):
        digits = ""
        for char in piece:
            if not char.isdigit():
                break
            digits += char
        parts.append(int(digits or 0))
    while len(parts) < 3:
        parts.append(0)
    return tuple(parts)


class CloudSyncManager:
    """Coordinates synchronization of local groups with their cloud folders.

    This class provides a unified interface for:
    - Running sync cycles (at most one in flight per group)
    - Enabling cloud sync for a local group and sharing it
    - Joining a shared group from a share code
    - Unlinking a group from its cloud folder
    - Applying user resolutions for surfaced conflicts
    - Periodic background sync
    """

    def __init__(self, store: LocalStore, transport: CloudTransport, device_id: str, device_name: str,
                 settings: Optional[SyncSettings] = None, tracker: Optional[ChangeTracker] = None,
                 manifest_manager: Optional[ManifestManager] = None,
                 resolver: Optional[ConflictResolver] = None, app_version: str = __version__,
                 progress_callback: Optional[ProgressCallback] = None):
        """Initialize the sync manager.

        Args:
            store: Local store shared with the change tracker
            transport: Cloud transport for group folders
            device_id: Stable id of this device
            device_name: Human-readable device name
            settings: Sync settings; defaults apply when omitted
            tracker: Change tracker override
            manifest_manager: Manifest manager override
            resolver: Conflict resolver override
            app_version: Installed client version
            progress_callback: Receives a short message at each sync step
        """
        self.store = store
        self.transport = transport
        self.device_id = device_id
        self.device_name = device_name
        self.settings = settings or SyncSettings()
        self.app_version = app_version

        retry_handler = RetryHandler(self.settings.max_retry_attempts, self.settings.initial_retry_delay_seconds)
        self.retry_handler = retry_handler
        self.tracker = tracker or ChangeTracker(store, device_id, device_name)
        self.manifests = manifest_manager or ManifestManager(
            transport, retry_handler, self.settings.max_manifest_retries
        )
        self.resolver = resolver or ConflictResolver(device_id, device_name)

        self.active_syncs: Dict[str, asyncio.Future] = {}
        self.sync_states: Dict[str, SyncStatus] = {}
        self.last_results: Dict[str, SyncResult] = {}
        self.pending_conflicts: Dict[str, Dict[str, SyncConflict]] = {}
        self.continuous_tasks: Dict[str, asyncio.Task] = {}
        self.progress_callback = progress_callback
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config: ConfigModel, settings: Optional[SyncSettings] = None) -> "CloudSyncManager":
        """Build a manager backed by the configured database and cloud folder."""
        store = LocalStore(config.database_path)
        transport = LocalFolderTransport(config.cloud_folder, create=True)
        return cls(store, transport, config.device_id, config.device_name, settings)

    # Helpers

    async def _prepare_group(self, group_id: str) -> Group:
        group = await self.store.get_group(group_id)
        if group is None:
            raise UnknownGroup(f"Unknown group: {group_id}")
        if group.folder_id:
            self.manifests.register_folder(group_id, group.folder_id)
        return group

    def _device_info(self) -> DeviceInfo:
        return DeviceInfo(
            device_id=self.device_id,
            device_name=self.device_name,
            app_version=self.app_version,
            last_seen=now_utc(),
            is_online=True,
        )

    def _check_compatibility(self, manifest: GroupManifest):
        installed = parse_version(self.app_version)
        required = manifest.sync_settings.min_compatible_version
        if parse_version(required) > installed:
            raise IncompatibleVersion(self.app_version, required)
        if parse_version(manifest.app_version)[0] > installed[0]:
            raise IncompatibleVersion(self.app_version, manifest.app_version)

    @staticmethod
    def _author_names(manifest: GroupManifest) -> Dict[str, str]:
        return {device_id: member.name for member in manifest.members for device_id in member.device_ids}

    async def _authenticate(self):
        await self.retry_handler.execute_with_retry(self.transport.authenticate)

    def set_progress_callback(self, callback: Optional[ProgressCallback]):
        self.progress_callback = callback

    def _report_progress(self, group_id: str, message: str):
        self.logger.debug(f"Sync progress for group {group_id}: {message}")
        if self.progress_callback is not None:
            self.progress_callback(group_id, message)

    async def check_connection(self) -> bool:
        """Whether the cloud transport is reachable with valid credentials."""
        try:
            await self._authenticate()
        except BandSyncError as e:
            self.logger.warning(f"Cloud connection check failed: {e.kind}: {e}")
            return False
        return True

    # Sync cycle

    async def sync_group(self, group_id: str) -> SyncResult:
        """Run one sync cycle for a group.

        A request for a group that is already syncing joins the in-flight
        cycle and receives its result instead of starting a second writer.
        """
        existing = self.active_syncs.get(group_id)
        if existing is not None and not existing.done():
            self.logger.info(f"Sync already running for group {group_id}, waiting for it")
            return await asyncio.shield(existing)

        task = asyncio.ensure_future(self._run_sync(group_id))
        self.active_syncs[group_id] = task
        try:
            return await task
        finally:
            if self.active_syncs.get(group_id) is task:
                del self.active_syncs[group_id]

    async def _run_sync(self, group_id: str) -> SyncResult:
        previous_state = self.sync_states.get(group_id)
        self.sync_states[group_id] = SyncStatus.SYNCING
        self.logger.info(f"Starting sync for group {group_id}")
        self._report_progress(group_id, "Starting sync...")

        result = SyncResult(group_id=group_id)
        try:
            try:
                result = await self._run_cycles(group_id, result)
                result.complete()
            except AuthenticationRequired as e:
                result.fail(SyncStatus.AUTHENTICATION_REQUIRED, e)
            except OfflineError as e:
                result.fail(SyncStatus.OFFLINE, e)
            except BandSyncError as e:
                result.fail(SyncStatus.ERROR, e)
            except Exception as e:
                self.logger.exception(f"Unexpected failure while syncing group {group_id}")
                result.fail(SyncStatus.ERROR, e)

            self.sync_states[group_id] = result.status
            self.last_results[group_id] = result
            if result.ok:
                self.pending_conflicts[group_id] = {c.conflict_id: c for c in result.conflicts}
        finally:
            # Cancelled cycles never reach the bookkeeping above
            if self.sync_states.get(group_id) == SyncStatus.SYNCING:
                self.logger.warning(f"Sync for group {group_id} was interrupted")
                if previous_state is None:
                    del self.sync_states[group_id]
                else:
                    self.sync_states[group_id] = previous_state

        if result.error:
            self.logger.error(f"Sync failed for group {group_id}: {result.error_kind}: {result.error}")
            self._report_progress(group_id, f"Sync failed: {result.error}")
        else:
            self.logger.info(
                f"Sync finished for group {group_id}: {result.status.value}, "
                f"{result.remote_applied} applied, {result.local_pushed} pushed, "
                f"{len(result.conflicts)} conflicts"
            )
            self._report_progress(group_id, "Sync completed")
        return result

    async def _run_cycles(self, group_id: str, result: SyncResult) -> SyncResult:
        """Run the cycle, starting over when another device pushed edits to the same entities."""
        budget = self.settings.max_manifest_retries
        for attempt in range(1, budget + 1):
            try:
                await self._sync_cycle(group_id, result)
                return result
            except ConcurrentChange as e:
                if attempt == budget:
                    raise
                self.logger.warning(f"{e}; detecting conflicts again (attempt {attempt}/{budget})")
                self._report_progress(group_id, "Remote changed during sync, checking again...")
                result = SyncResult(group_id=group_id, started_at=result.started_at)
        return result

    async def _load_contested_payloads(self, group_id: str, local_entries: List[ChangeLogEntry],
                                       remote_entries: List[ChangeLogEntry]) -> Dict[EntityKey, Tuple]:
        """Entity states needed to judge annotation conflicts."""
        payloads: Dict[EntityKey, Tuple] = {}
        remote_by_key = group_by_entity(remote_entries)

        for key in self.resolver.contested_keys(local_entries, remote_entries):
            entity_type = EntityType(key[0])
            if entity_type != EntityType.ANNOTATION:
                continue

            local = await self.store.get_entity(group_id, entity_type, key[1])
            remote_latest = effective_latest(remote_by_key[key])
            remote_payload = None
            if not remote_latest.is_delete():
                try:
                    remote_payload = await self.manifests.get_snapshot(
                        group_id, entity_type, key[1], remote_latest.checksum
                    )
                except RemoteFileNotFound:
                    self.logger.warning(f"Snapshot missing for annotation {key[1]} ({remote_latest.checksum})")
            payloads[key] = (local.payload if local else None, remote_payload)

        return payloads

    async def _sync_cycle(self, group_id: str, result: SyncResult):
        group = await self._prepare_group(group_id)
        self._report_progress(group_id, "Verifying cloud connection...")
        await self._authenticate()
        if not group.cloud_enabled:
            raise CloudSyncDisabled(f"Cloud sync is not enabled for group '{group.name}'")

        self._report_progress(group_id, f"Loading group data for '{group.name}'...")
        manifest = await self.manifests.fetch_manifest(group_id)
        self._check_compatibility(manifest)
        authors = self._author_names(manifest)
        await self.manifests.publish_device(group_id, self._device_info())

        self._report_progress(group_id, "Checking for remote changes...")
        cursor = await self.store.get_cursor(group_id)
        log = await self.manifests.fetch_change_log(group_id)
        log_ids = log.change_ids()

        mismatch = self.resolver.check_version_progression(
            cursor, manifest.name, manifest.version, log.version,
            cursor.remote_change_id in log_ids if cursor.remote_change_id else True,
        )
        if mismatch is not None:
            result.conflicts.append(mismatch)
            return

        # Remote side: entries since the cursor from other devices, minus those already applied
        candidates = [e for e in log.since(cursor.remote_change_id) if e.device_id != self.device_id]
        known = await self.store.known_change_ids(group_id, [e.change_id for e in candidates])
        remote_entries = [e for e in candidates if e.change_id not in known]

        # Local side: entries since the cursor that have not been published yet
        local_since_cursor = list(self.tracker.get_changes_since(group_id, cursor.local_change_id))
        local_entries = [e for e in local_since_cursor if e.change_id not in log_ids]

        payloads = await self._load_contested_payloads(group_id, local_entries, remote_entries)
        scan = self.resolver.detect_conflicts(local_entries, remote_entries, payloads, authors)

        merge_writes: List[EntityWrite] = []
        for conflict in scan.conflicts:
            key = (conflict.entity_type.value, conflict.entity_id)
            if conflict.can_auto_resolve and self.settings.auto_resolve_conflicts:
                local_payload, remote_payload = payloads.get(key, (None, None))
                resolution = self.resolver.auto_resolve(conflict, local_payload, remote_payload)
                if resolution.success:
                    merge_writes.extend(resolution.writes)
                    result.auto_resolved += 1
                    continue
            result.conflicts.append(conflict)

        blocked = {(c.entity_type.value, c.entity_id) for c in result.conflicts}
        if result.conflicts:
            self._report_progress(group_id, f"{len(result.conflicts)} conflicts need attention")

        self._report_progress(group_id, f"Applying {len(scan.remote_apply)} remote changes...")
        await self._apply_remote(group_id, scan.remote_apply, remote_entries, blocked, result)
        if merge_writes:
            await self._apply_writes(group_id, merge_writes)

        pending = list(self.tracker.get_changes_since(group_id, cursor.local_change_id))
        to_push = [e for e in pending if e.entity_key not in blocked]
        self._report_progress(group_id, f"Uploading {len(to_push)} local changes...")
        await self._upload_local(group_id, to_push, result)

        log_version = log.version
        if to_push:
            # Refuses to append if another device touched a pushed entity after `log` was read
            written = await self.manifests.append_changes(group_id, to_push, base_change_ids=log_ids)
            log_version = written.version
            result.local_pushed = sum(1 for e in to_push if e.change_id not in log_ids)

        if result.conflicts:
            # Unresolved conflicts: keep cursors so the next cycle sees them again
            return

        new_cursor = SyncCursor(
            group_id=group_id,
            local_change_id=pending[-1].change_id if pending else cursor.local_change_id,
            remote_change_id=log.last_change_id or cursor.remote_change_id,
            remote_log_version=log_version,
            manifest_version=manifest.version,
            last_sync_at=now_utc(),
        )
        await asyncio.shield(self.store.save_cursor(new_cursor))

    async def _apply_remote(self, group_id: str, remote_apply: Dict[EntityKey, ChangeLogEntry],
                            remote_entries: List[ChangeLogEntry], blocked: set, result: SyncResult):
        """Download remote states and apply them in one local transaction."""
        downloads: Dict[EntityKey, Tuple[Dict[str, Any], Optional[bytes]]] = {}

        for key, entry in remote_apply.items():
            if entry.is_delete():
                continue
            current = await self.store.get_entity(group_id, entry.entity_type, entry.entity_id)
            if current is not None and current.checksum == entry.checksum:
                self.logger.debug(f"Skipping {entry.description}: already applied")
                continue
            try:
                payload = await self.manifests.get_snapshot(group_id, entry.entity_type, entry.entity_id,
                                                            entry.checksum)
            except RemoteFileNotFound:
                self.logger.warning(f"Snapshot for {entry.description} is missing on the remote; skipping")
                continue
            blob = None
            if entry.entity_type == EntityType.SONG_FILE:
                try:
                    blob = await self.manifests.get_blob(group_id, entry.entity_id)
                    result.blobs_downloaded += 1
                except RemoteFileNotFound:
                    self.logger.warning(f"File content for {entry.description} is missing on the remote")
            downloads[key] = (payload, blob)

        applied = 0
        async with self.store.transaction() as txn:
            for key, entry in remote_apply.items():
                if entry.is_delete():
                    if txn.delete_entity(group_id, entry.entity_type, entry.entity_id):
                        applied += 1
                    continue
                if key not in downloads:
                    continue
                payload, blob = downloads[key]
                txn.upsert_entity(StoredEntity(
                    group_id=group_id,
                    entity_type=entry.entity_type,
                    entity_id=entry.entity_id,
                    name=entry.entity_name,
                    payload=payload,
                    checksum=entry.checksum,
                ))
                if blob is not None:
                    txn.put_blob(group_id, entry.entity_id, blob)
                applied += 1

            self.tracker.record_remote_changes(
                txn, group_id, [entry for entry in remote_entries if entry.entity_key not in blocked]
            )

        result.remote_applied = applied

    async def _upload_local(self, group_id: str, entries: List[ChangeLogEntry], result: SyncResult):
        """Upload entity snapshots and file content referenced by local changes."""
        for key, entity_entries in group_by_entity(entries).items():
            entry = effective_latest(entity_entries)
            if entry.is_delete():
                continue
            entity = await self.store.get_entity(group_id, entry.entity_type, entry.entity_id)
            if entity is None:
                continue
            await self.manifests.put_snapshot(group_id, entity.entity_type, entity.entity_id,
                                              entity.checksum, entity.payload)
            if entity.entity_type == EntityType.SONG_FILE:
                blob = await self.store.get_blob(group_id, entity.entity_id)
                if blob is not None and await self.manifests.blob_needs_upload(group_id, entity.entity_id, blob):
                    await self.manifests.put_blob(group_id, entity.entity_id, blob)
                    result.blobs_uploaded += 1

    async def _apply_writes(self, group_id: str, writes: List[EntityWrite]) -> List[ChangeLogEntry]:
        entries = []
        for write in writes:
            blob = None
            if (write.entity_type == EntityType.SONG_FILE and write.change_type != ChangeType.DELETE
                    and write.metadata.get("resolution") == ResolutionAction.ACCEPT_REMOTE.value):
                try:
                    blob = await self.manifests.get_blob(group_id, write.entity_id)
                except RemoteFileNotFound:
                    self.logger.warning(f"File content for {write.entity_name} is missing on the remote")
            entries.append(await self.tracker.record_entity_change(
                group_id, write.change_type, write.entity_type, write.entity_id, write.entity_name,
                payload=write.payload, description=write.description, metadata=write.metadata, blob=blob,
            ))
        return entries

    # Group lifecycle

    async def _local_members(self, group_id: str) -> List[Member]:
        members = []
        for entity in await self.store.list_entities(group_id, EntityType.MEMBER):
            try:
                role = MemberRole(entity.payload.get("role", MemberRole.EDITOR.value))
            except ValueError:
                role = MemberRole.EDITOR
            members.append(Member(
                member_id=entity.entity_id,
                name=entity.payload.get("name", entity.name),
                role=role,
                device_ids=list(entity.payload.get("deviceIds", [])),
            ))
        return members

    async def create_group(self, name: str, group_id: Optional[str] = None) -> Group:
        """Create a local group and record its creation."""
        group = Group(group_id=group_id or str(uuid.uuid4()), name=name)
        await self.store.save_group(group)
        await self.tracker.record_entity_change(
            group.group_id, ChangeType.CREATE, EntityType.GROUP, group.group_id, name,
            payload={"id": group.group_id, "name": name},
        )
        return group

    async def enable_cloud_sync(self, group_id: str) -> GroupOperationResult:
        """Publish a local group to the cloud folder and return its share code."""
        try:
            group = await self._prepare_group(group_id)
            folder_id = group.folder_id or self.manifests.folder_for(group_id)
            self.manifests.register_folder(group_id, folder_id)
            await self._authenticate()

            manifest = GroupManifest(
                group_id=group_id,
                name=group.name,
                created_by=self.device_id,
                app_version=self.app_version,
                members=await self._local_members(group_id),
                permissions=Permissions(admin_devices=[self.device_id]),
                sync_settings=GroupSyncSettings(sync_interval_ms=self.settings.sync_interval_seconds * 1000),
            )
            try:
                await self.manifests.create_manifest(manifest)
            except ManifestConflict:
                self.logger.info(f"Group {group_id} already has a cloud manifest, reusing it")

            group.folder_id = folder_id
            group.cloud_enabled = True
            await self.store.save_group(group)

            share = generate_share_code(group_id, folder_id, self.settings.share_code_ttl_hours)
            await self.manifests.write_share_code(share)

            sync_result = await self.sync_group(group_id)
            if sync_result.ok:
                await self._start_auto_sync(group_id)
            return GroupOperationResult(
                success=sync_result.ok,
                group=group,
                share_code=share,
                sync_result=sync_result,
                error=sync_result.error,
                error_kind=sync_result.error_kind,
            )
        except BandSyncError as e:
            self.logger.error(f"Failed to enable cloud sync for group {group_id}: {e}")
            return GroupOperationResult(success=False, error=str(e), error_kind=e.kind)

    async def join_group(self, share_input: str) -> GroupOperationResult:
        """Join a shared group from a share code or deep link and run a full sync."""
        try:
            target = parse_share_input(share_input)
            await self._authenticate()

            if target.code:
                share = await self.manifests.read_share_code(target.code)
                if share is None:
                    raise ShareCodeError(f"Unknown share code: {target.code}")
                if share.is_expired():
                    raise ShareCodeError(f"Share code {target.code} has expired")
                group_id, folder_id = share.group_id, share.folder_id
            else:
                group_id, folder_id = target.group_id, target.folder_id

            self.manifests.register_folder(group_id, folder_id)
            manifest = await self.manifests.fetch_manifest(group_id)
            self._check_compatibility(manifest)

            permissions = manifest.permissions
            known_device = (permissions.can_write(self.device_id)
                            or self.device_id in permissions.viewer_devices
                            or self.device_id in permissions.read_only_devices)
            if not known_device:
                def add_device(current: GroupManifest) -> GroupManifest:
                    current.permissions.grant(self.device_id, MemberRole.EDITOR)
                    return current

                manifest = await self.manifests.update_manifest(group_id, add_device)

            existing = await self.store.get_group(group_id)
            group = Group(
                group_id=group_id,
                name=manifest.name,
                folder_id=folder_id,
                cloud_enabled=True,
                created_at=existing.created_at if existing else now_utc(),
            )
            await self.store.save_group(group)
            await self.store.save_cursor(SyncCursor(group_id=group_id))

            self.logger.info(f"Joined group '{manifest.name}' ({group_id}), running initial sync")
            sync_result = await self.sync_group(group_id)
            if sync_result.ok:
                await self._start_auto_sync(group_id)
            return GroupOperationResult(
                success=sync_result.ok,
                group=group,
                sync_result=sync_result,
                error=sync_result.error,
                error_kind=sync_result.error_kind,
            )
        except BandSyncError as e:
            self.logger.error(f"Failed to join group: {e}")
            return GroupOperationResult(success=False, error=str(e), error_kind=e.kind)

    async def disable_cloud_sync(self, group_id: str) -> GroupOperationResult:
        """Unlink a group from its cloud folder on this device.

        Background sync stops, pending conflicts are dropped and the sync
        cursors start over, so enabling sync again replays the local log.
        Local data and the remote folder are left as they are.
        """
        try:
            group = await self._prepare_group(group_id)
            await self.stop_continuous_sync(group_id)

            group.folder_id = None
            group.cloud_enabled = False
            await self.store.save_group(group)
            await self.store.save_cursor(SyncCursor(group_id=group_id))

            self.manifests.forget_folder(group_id)
            self.pending_conflicts.pop(group_id, None)
            self.sync_states.pop(group_id, None)
            self.last_results.pop(group_id, None)

            self.logger.info(f"Disabled cloud sync for group {group_id}")
            return GroupOperationResult(success=True, group=group)
        except BandSyncError as e:
            self.logger.error(f"Failed to disable cloud sync for group {group_id}: {e}")
            return GroupOperationResult(success=False, error=str(e), error_kind=e.kind)

    # Conflicts

    def get_pending_conflicts(self, group_id: str) -> List[SyncConflict]:
        return list(self.pending_conflicts.get(group_id, {}).values())

    async def resolve_conflict(self, group_id: str, conflict: SyncConflict, action: ResolutionAction,
                               manual_payload: Optional[Dict[str, Any]] = None) -> ResolutionResult:
        """Apply the user's choice for a surfaced conflict and record it locally.

        The recorded change carries the ids of the changes it settles, so the
        next sync on every device treats the entity as resolved.
        """
        try:
            await self._prepare_group(group_id)

            if conflict.conflict_type == ConflictType.VERSION_MISMATCH:
                resolution = self.resolver.resolve(conflict, action)
                if resolution.success:
                    await self._reset_cursor(group_id, keep_local=action == ResolutionAction.KEEP_LOCAL)
                    self.pending_conflicts.get(group_id, {}).pop(conflict.conflict_id, None)
                return resolution

            local = await self.store.get_entity(group_id, conflict.entity_type, conflict.entity_id)
            remote_payload = None
            needs_remote = action in (ResolutionAction.ACCEPT_REMOTE, ResolutionAction.MERGE_ANNOTATIONS,
                                      ResolutionAction.LAYER_SEPARATE)
            if needs_remote and conflict.remote_version.change_type != ChangeType.DELETE:
                remote_payload = await self.manifests.get_snapshot(
                    group_id, conflict.entity_type, conflict.entity_id, conflict.remote_version.checksum
                )

            resolution = self.resolver.resolve(conflict, action, local.payload if local else None,
                                               remote_payload, manual_payload)
            if not resolution.success:
                return resolution

            resolution.entries = await self._apply_writes(group_id, resolution.writes)
            self.pending_conflicts.get(group_id, {}).pop(conflict.conflict_id, None)
            return resolution
        except BandSyncError as e:
            self.logger.error(f"Failed to resolve conflict {conflict.conflict_id}: {e}")
            return ResolutionResult.failure(conflict.conflict_id, action, str(e), e.kind)

    async def _reset_cursor(self, group_id: str, keep_local: bool):
        """Re-baseline cursors after the remote state went backwards.

        Keeping local state replays the whole local log onto the remote;
        accepting remote state only replays the remote log.
        """
        cursor = await self.store.get_cursor(group_id)
        manifest = await self.manifests.fetch_manifest(group_id)
        log = await self.manifests.fetch_change_log(group_id)
        await self.store.save_cursor(SyncCursor(
            group_id=group_id,
            local_change_id=None if keep_local else cursor.local_change_id,
            remote_change_id=None,
            remote_log_version=log.version,
            manifest_version=manifest.version,
            last_sync_at=cursor.last_sync_at,
        ))

    # Status and housekeeping

    async def list_devices(self, group_id: str) -> List[DeviceInfo]:
        await self._prepare_group(group_id)
        window = timedelta(seconds=2 * self.settings.sync_interval_seconds)
        return await self.manifests.fetch_devices(group_id, window)

    async def prune_history(self, group_id: str) -> int:
        """Drop local log entries older than the retention period that are already synced."""
        await self._prepare_group(group_id)
        cutoff = now_utc() - timedelta(days=self.settings.change_log_retention_days)
        return await self.tracker.clear_synced_before(group_id, cutoff)

    def get_sync_status(self, group_id: str) -> Dict[str, Any]:
        """Current status, last result and pending conflicts for a group."""
        last_result = self.last_results.get(group_id)
        return {
            "group_id": group_id,
            "status": self.sync_states.get(group_id, SyncStatus.UP_TO_DATE if last_result else None),
            "is_syncing": group_id in self.active_syncs,
            "continuous": group_id in self.continuous_tasks,
            "last_sync": last_result.started_at.isoformat() if last_result else None,
            "last_error": last_result.error if last_result else None,
            "conflicts": self.get_pending_conflicts(group_id),
        }

    # Continuous sync

    def start_continuous_sync(self, group_id: str, run_now: bool = True) -> bool:
        """Start periodic background sync; must be called from a running event loop.

        With ``run_now=False`` the first cycle waits one sync interval.
        """
        task = self.continuous_tasks.get(group_id)
        if task is not None and not task.done():
            return False
        self.continuous_tasks[group_id] = asyncio.get_running_loop().create_task(
            self._continuous_loop(group_id, run_now)
        )
        self.logger.info(f"Started continuous sync for group {group_id} every {self.settings.sync_interval_seconds}s")
        return True

    async def _start_auto_sync(self, group_id: str) -> bool:
        """Start background sync when both this device and the group allow it."""
        if not self.settings.auto_sync:
            return False
        manifest = await self.manifests.fetch_manifest(group_id)
        if not manifest.sync_settings.auto_sync:
            self.logger.info(f"Group {group_id} has automatic sync turned off")
            return False
        return self.start_continuous_sync(group_id, run_now=False)

    async def stop_continuous_sync(self, group_id: str) -> bool:
        task = self.continuous_tasks.pop(group_id, None)
        if task is None:
            return False
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self.logger.info(f"Stopped continuous sync for group {group_id}")
        return True

    async def disconnect(self):
        """Stop every background sync loop."""
        for group_id in list(self.continuous_tasks):
            await self.stop_continuous_sync(group_id)

    async def _continuous_loop(self, group_id: str, run_now: bool = True):
        if not run_now:
            await asyncio.sleep(self.settings.sync_interval_seconds)
        while True:
            result = await self.sync_group(group_id)
            if result.status == SyncStatus.AUTHENTICATION_REQUIRED or result.error_kind in LOOP_STOPPING_ERRORS:
                self.logger.warning(f"Stopping continuous sync for group {group_id}: {result.error_kind}")
                self.continuous_tasks.pop(group_id, None)
                return
            await asyncio.sleep(self.settings.sync_interval_seconds)
