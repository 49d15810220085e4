"""End-to-end tests for the cloud sync manager.

Two managers with separate local stores share one cloud folder, which is how
two band members' devices see each other.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from bandsync.errors import AuthenticationRequired, ManifestConflict, NetworkError
from bandsync.models import (
    ChangeType,
    ConflictType,
    EntityType,
    ResolutionAction,
    ShareCode,
    SyncStatus,
)
from bandsync.store.local_store import LocalStore
from bandsync.sync.share_codes import build_deep_link
from bandsync.sync.sync_manager import CloudSyncManager, parse_version
from bandsync.transport.local_folder import LocalFolderTransport
from bandsync.utils.datetime import now_utc


def song(title, key="C"):
    return {"id": "song-1", "title": title, "key": key}


def stroke(stroke_id, minute=0):
    return {
        "id": stroke_id,
        "points": [[0, 0], [10, 10]],
        "color": "#000000",
        "strokeWidth": 2,
        "tool": "pen",
        "createdAt": f"2024-05-01T20:{minute:02d}:00+00:00",
    }


def annotation(*strokes):
    return {"id": "ann-1", "fileId": "file-1", "memberId": "m1", "pageNumber": 1, "strokes": list(strokes)}


async def shared_group(make_device, group_id):
    """Device A creates and shares a group; device B joins it."""
    a = make_device("device-a", "Alice's iPad")
    b = make_device("device-b", "Bob's phone")

    await a.create_group("The Band", group_id)
    shared = await a.enable_cloud_sync(group_id)
    assert shared.success, shared.error

    joined = await b.join_group(shared.share_code.code)
    assert joined.success, joined.error
    return a, b, shared.share_code


async def save_song(device, group_id, payload, change_type=ChangeType.UPDATE):
    return await device.tracker.record_entity_change(
        group_id, change_type, EntityType.SONG, "song-1", payload["title"], payload=payload
    )


async def title_on(device, group_id):
    entity = await device.store.get_entity(group_id, EntityType.SONG, "song-1")
    return entity.payload["title"] if entity else None


class TestGroupLifecycle:
    """Test creating, sharing and joining groups."""

    async def test_enable_cloud_sync_returns_share_code(self, make_device, group_id):
        a = make_device("device-a")
        await a.create_group("The Band", group_id)

        result = await a.enable_cloud_sync(group_id)

        assert result.success
        assert result.share_code.code.startswith("BS-")
        assert result.share_code.deep_link == build_deep_link(group_id, f"groups/{group_id}")
        assert result.sync_result.status == SyncStatus.UP_TO_DATE
        assert result.sync_result.local_pushed == 1

        group = await a.store.get_group(group_id)
        assert group.cloud_enabled

    async def test_enable_twice_reuses_manifest(self, make_device, group_id):
        a = make_device("device-a")
        await a.create_group("The Band", group_id)
        await a.enable_cloud_sync(group_id)

        again = await a.enable_cloud_sync(group_id)
        assert again.success
        assert (await a.manifests.fetch_manifest(group_id)).created_by == "device-a"

    async def test_join_by_code(self, make_device, group_id):
        a, b, _ = await shared_group(make_device, group_id)

        group = await b.store.get_group(group_id)
        assert group.name == "The Band"
        assert group.cloud_enabled

        entity = await b.store.get_entity(group_id, EntityType.GROUP, group_id)
        assert entity.payload["name"] == "The Band"

        manifest = await a.manifests.fetch_manifest(group_id)
        assert "device-b" in manifest.permissions.editor_devices
        assert manifest.version == 2

    async def test_join_by_deep_link(self, make_device, group_id):
        a = make_device("device-a")
        b = make_device("device-b")
        await a.create_group("The Band", group_id)
        shared = await a.enable_cloud_sync(group_id)

        result = await b.join_group(shared.share_code.deep_link)

        assert result.success
        assert result.group.group_id == group_id

    async def test_join_twice_does_not_bump_manifest(self, make_device, group_id):
        a, b, share = await shared_group(make_device, group_id)

        again = await b.join_group(share.code)

        assert again.success
        assert (await a.manifests.fetch_manifest(group_id)).version == 2

    async def test_expired_code(self, make_device, group_id):
        a = make_device("device-a")
        b = make_device("device-b")
        await a.create_group("The Band", group_id)
        shared = await a.enable_cloud_sync(group_id)
        code = shared.share_code
        await a.manifests.write_share_code(ShareCode(
            code=code.code, deep_link=code.deep_link, group_id=group_id, folder_id=code.folder_id,
            expires_at=now_utc() - timedelta(hours=1),
        ))

        result = await b.join_group(code.code)

        assert result.success is False
        assert result.error_kind == "ShareCodeError"
        assert await b.store.get_group(group_id) is None

    @pytest.mark.parametrize("text", ["BS-DEADBEEF", "hello", "bandsync://join?group=only"])
    async def test_bad_share_input(self, make_device, text):
        b = make_device("device-b")
        result = await b.join_group(text)

        assert result.success is False
        assert result.error_kind == "ShareCodeError"

    async def test_unknown_group(self, make_device):
        a = make_device("device-a")
        result = await a.sync_group("missing")

        assert result.status == SyncStatus.ERROR
        assert result.error_kind == "UnknownGroup"

    async def test_local_group_is_not_synced_until_enabled(self, make_device, group_id):
        a = make_device("device-a")
        await a.create_group("The Band", group_id)

        result = await a.sync_group(group_id)

        assert result.status == SyncStatus.ERROR
        assert result.error_kind == "CloudSyncDisabled"

    async def test_disable_cloud_sync(self, make_device, group_id):
        a, b, _ = await shared_group(make_device, group_id)
        await save_song(a, group_id, song("Blue"), ChangeType.CREATE)
        await a.sync_group(group_id)
        await b.sync_group(group_id)
        await save_song(a, group_id, song("Blue", key="D"))
        await save_song(b, group_id, song("Blue", key="E"))
        await b.sync_group(group_id)
        assert len((await a.sync_group(group_id)).conflicts) == 1
        a.start_continuous_sync(group_id, run_now=False)

        result = await a.disable_cloud_sync(group_id)

        assert result.success
        assert result.group.cloud_enabled is False
        assert result.group.folder_id is None
        assert group_id not in a.continuous_tasks
        assert a.get_pending_conflicts(group_id) == []
        assert (await a.store.get_group(group_id)).cloud_enabled is False
        assert (await a.store.get_entity(group_id, EntityType.SONG, "song-1")).payload["key"] == "D"

        blocked = await a.sync_group(group_id)
        assert blocked.error_kind == "CloudSyncDisabled"

        # Enabling again replays the whole local log, so the conflict comes back
        again = await a.enable_cloud_sync(group_id)
        assert again.success
        assert again.sync_result.status == SyncStatus.CONFLICTS_DETECTED
        assert again.sync_result.conflicts[0].remote_version.device_id == "device-b"

    async def test_disable_unknown_group(self, make_device):
        a = make_device("device-a")
        result = await a.disable_cloud_sync("missing")

        assert result.success is False
        assert result.error_kind == "UnknownGroup"

    async def test_auto_sync_starts_after_sharing_and_joining(self, make_device, group_id, fast_settings):
        automatic = fast_settings.model_copy(update={"auto_sync": True})
        a = make_device("device-a", settings=automatic)
        b = make_device("device-b", settings=automatic)
        await a.create_group("The Band", group_id)

        shared = await a.enable_cloud_sync(group_id)
        joined = await b.join_group(shared.share_code.code)

        assert joined.success
        assert a.get_sync_status(group_id)["continuous"] is True
        assert b.get_sync_status(group_id)["continuous"] is True

        await a.disconnect()
        await b.disconnect()
        assert a.continuous_tasks == {}
        assert b.continuous_tasks == {}

    async def test_group_can_turn_auto_sync_off(self, make_device, group_id, fast_settings):
        a = make_device("device-a")
        b = make_device("device-b", settings=fast_settings.model_copy(update={"auto_sync": True}))
        await a.create_group("The Band", group_id)
        shared = await a.enable_cloud_sync(group_id)

        def manual_only(manifest):
            manifest.sync_settings.auto_sync = False
            return manifest

        await a.manifests.update_manifest(group_id, manual_only)
        joined = await b.join_group(shared.share_code.code)

        assert joined.success
        assert a.get_sync_status(group_id)["continuous"] is False
        assert b.get_sync_status(group_id)["continuous"] is False


class TestPropagation:
    """Test changes flowing between devices."""

    async def test_create_update_delete_propagate(self, make_device, group_id):
        a, b, _ = await shared_group(make_device, group_id)

        await save_song(a, group_id, song("Blue"), ChangeType.CREATE)
        assert (await a.sync_group(group_id)).local_pushed == 1

        result = await b.sync_group(group_id)
        assert result.remote_applied == 1
        assert await title_on(b, group_id) == "Blue"

        await save_song(b, group_id, song("Blue (live)"))
        await b.sync_group(group_id)
        await a.sync_group(group_id)
        assert await title_on(a, group_id) == "Blue (live)"

        await a.tracker.record_entity_change(group_id, ChangeType.DELETE, EntityType.SONG, "song-1", "Blue")
        await a.sync_group(group_id)
        await b.sync_group(group_id)
        assert await title_on(b, group_id) is None

    async def test_second_sync_is_a_no_op(self, make_device, group_id, cloud_dir):
        a, b, _ = await shared_group(make_device, group_id)
        await save_song(a, group_id, song("Blue"), ChangeType.CREATE)
        await a.sync_group(group_id)
        await b.sync_group(group_id)

        log_file = cloud_dir / "groups" / group_id / "sync" / "change-log.json"
        before = log_file.read_bytes()

        for device in (a, b):
            result = await device.sync_group(group_id)
            assert result.status == SyncStatus.UP_TO_DATE
            assert result.remote_applied == 0
            assert result.local_pushed == 0

        assert log_file.read_bytes() == before
        assert await a.tracker.pending_count(group_id) == 0

    async def test_file_content_is_transferred(self, make_device, group_id):
        a, b, _ = await shared_group(make_device, group_id)
        await a.tracker.record_entity_change(
            group_id, ChangeType.CREATE, EntityType.SONG_FILE, "file-1", "blue.pdf",
            payload={"id": "file-1", "fileName": "blue.pdf", "md5": "x"}, blob=b"%PDF-1.7 blue",
        )

        pushed = await a.sync_group(group_id)
        pulled = await b.sync_group(group_id)

        assert pushed.blobs_uploaded == 1
        assert pulled.blobs_downloaded == 1
        assert await b.store.get_blob(group_id, "file-1") == b"%PDF-1.7 blue"

    async def test_devices_are_listed(self, make_device, group_id):
        a, b, _ = await shared_group(make_device, group_id)
        await a.sync_group(group_id)

        devices = await a.list_devices(group_id)

        assert {d.device_id for d in devices} == {"device-a", "device-b"}
        assert all(d.is_online for d in devices)


class TestConflicts:
    """Test conflict surfacing and resolution across devices."""

    async def edited_on_both(self, make_device, group_id):
        a, b, _ = await shared_group(make_device, group_id)
        await save_song(a, group_id, song("Blue"), ChangeType.CREATE)
        await a.sync_group(group_id)
        await b.sync_group(group_id)

        await save_song(a, group_id, song("Blue", key="D"))
        await save_song(b, group_id, song("Blue", key="E"))
        await b.sync_group(group_id)
        return a, b

    async def test_simultaneous_edit_is_surfaced(self, make_device, group_id):
        a, b = await self.edited_on_both(make_device, group_id)

        result = await a.sync_group(group_id)

        assert result.status == SyncStatus.CONFLICTS_DETECTED
        assert len(result.conflicts) == 1
        conflict = result.conflicts[0]
        assert conflict.conflict_type == ConflictType.SIMULTANEOUS_EDIT
        assert conflict.remote_version.device_id == "device-b"

        local = await a.store.get_entity(group_id, EntityType.SONG, "song-1")
        assert local.payload["key"] == "D"
        assert a.get_pending_conflicts(group_id) == [conflict]

        remote_log = await a.manifests.fetch_change_log(group_id)
        assert not [e for e in remote_log.changes
                    if e.device_id == "device-a" and e.change_type == ChangeType.UPDATE]

    async def test_offline_create_and_edit_conflict(self, make_device, group_id):
        a, b, _ = await shared_group(make_device, group_id)
        await save_song(a, group_id, {"id": "song-1", "title": "Blue"}, ChangeType.CREATE)
        await save_song(b, group_id, {"id": "song-1", "title": "Blues"})

        await a.sync_group(group_id)
        result = await b.sync_group(group_id)

        assert result.status == SyncStatus.CONFLICTS_DETECTED
        conflict = result.conflicts[0]
        assert conflict.conflict_type == ConflictType.SIMULTANEOUS_EDIT
        assert conflict.can_auto_resolve is False
        assert conflict.local_version.device_id == "device-b"
        assert conflict.remote_version.device_id == "device-a"
        assert await title_on(b, group_id) == "Blues"

    async def test_identical_edits_do_not_conflict(self, make_device, group_id):
        a, b, _ = await shared_group(make_device, group_id)
        await save_song(a, group_id, song("Blue"), ChangeType.CREATE)
        await save_song(b, group_id, song("Blue"), ChangeType.CREATE)

        await a.sync_group(group_id)
        result = await b.sync_group(group_id)

        assert result.status == SyncStatus.UP_TO_DATE
        assert result.conflicts == []

    async def test_conflict_persists_until_resolved(self, make_device, group_id):
        a, _ = await self.edited_on_both(make_device, group_id)
        await a.sync_group(group_id)

        again = await a.sync_group(group_id)
        assert again.status == SyncStatus.CONFLICTS_DETECTED
        assert len(again.conflicts) == 1

    @pytest.mark.parametrize("action,expected_key", [
        (ResolutionAction.KEEP_LOCAL, "D"),
        (ResolutionAction.ACCEPT_REMOTE, "E"),
    ])
    async def test_resolution_converges(self, make_device, group_id, action, expected_key):
        a, b = await self.edited_on_both(make_device, group_id)
        conflict = (await a.sync_group(group_id)).conflicts[0]

        resolution = await a.resolve_conflict(group_id, conflict, action)
        assert resolution.success
        assert resolution.entries[0].metadata["resolution"] == action.value
        assert a.get_pending_conflicts(group_id) == []

        assert (await a.sync_group(group_id)).status == SyncStatus.UP_TO_DATE
        assert (await b.sync_group(group_id)).status == SyncStatus.UP_TO_DATE

        for device in (a, b):
            entity = await device.store.get_entity(group_id, EntityType.SONG, "song-1")
            assert entity.payload["key"] == expected_key

        assert (await a.sync_group(group_id)).status == SyncStatus.UP_TO_DATE

    async def test_edit_published_during_append_is_detected(self, make_device, group_id):
        a, b, _ = await shared_group(make_device, group_id)
        await save_song(a, group_id, song("Blue"), ChangeType.CREATE)
        await a.sync_group(group_id)
        await b.sync_group(group_id)
        await save_song(a, group_id, song("Blue", key="D"))
        await save_song(b, group_id, song("Blue", key="E"))

        append = b.manifests.append_changes
        interleaved = []

        async def append_after_other_device(group, entries, **kwargs):
            # Device A completes a whole cycle between B's read and B's write
            if not interleaved:
                interleaved.append(await a.sync_group(group))
            return await append(group, entries, **kwargs)

        b.manifests.append_changes = append_after_other_device
        result = await b.sync_group(group_id)

        assert interleaved[0].status == SyncStatus.UP_TO_DATE
        assert interleaved[0].local_pushed == 1
        assert result.status == SyncStatus.CONFLICTS_DETECTED
        assert len(result.conflicts) == 1
        conflict = result.conflicts[0]
        assert conflict.conflict_type == ConflictType.SIMULTANEOUS_EDIT
        assert conflict.remote_version.device_id == "device-a"

        remote_log = await b.manifests.fetch_change_log(group_id)
        assert not [e for e in remote_log.changes
                    if e.device_id == "device-b" and e.change_type == ChangeType.UPDATE]

        resolution = await b.resolve_conflict(group_id, conflict, ResolutionAction.KEEP_LOCAL)
        assert resolution.success
        assert (await b.sync_group(group_id)).status == SyncStatus.UP_TO_DATE
        assert (await a.sync_group(group_id)).status == SyncStatus.UP_TO_DATE

        for device in (a, b):
            entity = await device.store.get_entity(group_id, EntityType.SONG, "song-1")
            assert entity.payload["key"] == "E"

    async def test_delete_modify(self, make_device, group_id):
        a, b, _ = await shared_group(make_device, group_id)
        await save_song(a, group_id, song("Blue"), ChangeType.CREATE)
        await a.sync_group(group_id)
        await b.sync_group(group_id)

        await a.tracker.record_entity_change(group_id, ChangeType.DELETE, EntityType.SONG, "song-1", "Blue")
        await save_song(b, group_id, song("Blue", key="G"))
        await b.sync_group(group_id)

        result = await a.sync_group(group_id)
        conflict = result.conflicts[0]
        assert conflict.conflict_type == ConflictType.DELETE_MODIFY

        resolution = await a.resolve_conflict(group_id, conflict, ResolutionAction.ACCEPT_REMOTE)
        assert resolution.entries[0].change_type == ChangeType.CREATE
        await a.sync_group(group_id)
        await b.sync_group(group_id)

        for device in (a, b):
            entity = await device.store.get_entity(group_id, EntityType.SONG, "song-1")
            assert entity.payload["key"] == "G"

    async def test_annotations_merge_automatically(self, make_device, group_id):
        a, b, _ = await shared_group(make_device, group_id)
        await a.tracker.record_entity_change(group_id, ChangeType.CREATE, EntityType.ANNOTATION, "ann-1",
                                             "page 1", payload=annotation(stroke("a", 0)))
        await a.sync_group(group_id)
        await b.sync_group(group_id)

        await a.tracker.record_entity_change(group_id, ChangeType.UPDATE, EntityType.ANNOTATION, "ann-1",
                                             "page 1", payload=annotation(stroke("a", 0), stroke("b", 1)))
        await b.tracker.record_entity_change(group_id, ChangeType.UPDATE, EntityType.ANNOTATION, "ann-1",
                                             "page 1", payload=annotation(stroke("a", 0), stroke("c", 2)))
        await b.sync_group(group_id)

        result = await a.sync_group(group_id)
        assert result.status == SyncStatus.UP_TO_DATE
        assert result.auto_resolved == 1

        await b.sync_group(group_id)
        for device in (a, b):
            entity = await device.store.get_entity(group_id, EntityType.ANNOTATION, "ann-1")
            assert [s["id"] for s in entity.payload["strokes"]] == ["a", "b", "c"]

    async def test_auto_resolve_can_be_disabled(self, make_device, group_id, fast_settings):
        a, b, _ = await shared_group(make_device, group_id)
        a.settings = fast_settings.model_copy(update={"auto_resolve_conflicts": False})
        await a.tracker.record_entity_change(group_id, ChangeType.CREATE, EntityType.ANNOTATION, "ann-1",
                                             "page 1", payload=annotation(stroke("a", 0)))
        await a.sync_group(group_id)
        await b.sync_group(group_id)
        await a.tracker.record_entity_change(group_id, ChangeType.UPDATE, EntityType.ANNOTATION, "ann-1",
                                             "page 1", payload=annotation(stroke("a", 0), stroke("b", 1)))
        await b.tracker.record_entity_change(group_id, ChangeType.UPDATE, EntityType.ANNOTATION, "ann-1",
                                             "page 1", payload=annotation(stroke("a", 0), stroke("c", 2)))
        await b.sync_group(group_id)

        result = await a.sync_group(group_id)

        assert result.status == SyncStatus.CONFLICTS_DETECTED
        assert result.conflicts[0].conflict_type == ConflictType.ANNOTATION_OVERLAP
        assert result.conflicts[0].can_auto_resolve

    async def test_invalid_resolution_is_reported(self, make_device, group_id):
        a, _ = await self.edited_on_both(make_device, group_id)
        conflict = (await a.sync_group(group_id)).conflicts[0]

        resolution = await a.resolve_conflict(group_id, conflict, ResolutionAction.MERGE_ANNOTATIONS)

        assert resolution.success is False
        assert a.get_pending_conflicts(group_id) == [conflict]

    async def test_remote_regression_is_a_version_mismatch(self, make_device, group_id, cloud_dir):
        a, _, _ = await shared_group(make_device, group_id)
        await save_song(a, group_id, song("Blue"), ChangeType.CREATE)
        await a.sync_group(group_id)
        await a.sync_group(group_id)

        (cloud_dir / "groups" / group_id / "sync" / "change-log.json").unlink()

        result = await a.sync_group(group_id)
        assert result.status == SyncStatus.CONFLICTS_DETECTED
        conflict = result.conflicts[0]
        assert conflict.conflict_type == ConflictType.VERSION_MISMATCH

        resolution = await a.resolve_conflict(group_id, conflict, ResolutionAction.KEEP_LOCAL)
        assert resolution.success

        replay = await a.sync_group(group_id)
        assert replay.status == SyncStatus.UP_TO_DATE
        log = await a.manifests.fetch_change_log(group_id)
        assert {e.entity_type for e in log.changes} == {EntityType.GROUP, EntityType.SONG}


class TestFailures:
    """Test failure statuses."""

    async def test_offline(self, tmp_path, fast_settings, group_id):
        store = LocalStore(tmp_path / "offline.db")
        manager = CloudSyncManager(store, LocalFolderTransport(tmp_path / "unmounted"), "device-a", "A",
                                   settings=fast_settings)
        await manager.create_group("The Band", group_id)

        result = await manager.sync_group(group_id)

        assert result.status == SyncStatus.OFFLINE
        assert result.error_kind == "OfflineError"
        assert await manager.tracker.pending_count(group_id) == 1

    async def test_authentication_required(self, make_device, group_id):
        a = make_device("device-a")
        await a.create_group("The Band", group_id)
        a.transport.authenticate = AsyncMock(side_effect=AuthenticationRequired("token expired"))

        result = await a.sync_group(group_id)

        assert result.status == SyncStatus.AUTHENTICATION_REQUIRED
        assert result.error == "token expired"

    async def test_incompatible_version(self, make_device, group_id):
        a, b, share = await shared_group(make_device, group_id)

        def require_newer(manifest):
            manifest.sync_settings.min_compatible_version = "9.0.0"
            return manifest

        await a.manifests.update_manifest(group_id, require_newer)

        result = await b.sync_group(group_id)
        assert result.status == SyncStatus.ERROR
        assert result.error_kind == "IncompatibleVersion"

    async def test_missing_manifest(self, make_device, group_id, cloud_dir):
        a, _, _ = await shared_group(make_device, group_id)
        (cloud_dir / "groups" / group_id / "group-manifest.json").unlink()

        result = await a.sync_group(group_id)

        assert result.status == SyncStatus.ERROR
        assert result.error_kind == "ManifestNotFound"

    @pytest.mark.parametrize("error", [
        NetworkError("connection reset"),
        ManifestConflict("lost every race"),
    ])
    async def test_failed_push_keeps_cursor(self, make_device, group_id, error):
        a, b, _ = await shared_group(make_device, group_id)
        await save_song(a, group_id, song("Blue"), ChangeType.CREATE)
        before = await a.store.get_cursor(group_id)
        append = a.manifests.append_changes
        a.manifests.append_changes = AsyncMock(side_effect=error)

        failed = await a.sync_group(group_id)

        assert failed.status == SyncStatus.ERROR
        assert failed.error_kind == type(error).__name__
        assert await a.store.get_cursor(group_id) == before
        assert await a.tracker.pending_count(group_id) == 1

        a.manifests.append_changes = append
        retried = await a.sync_group(group_id)
        assert retried.status == SyncStatus.UP_TO_DATE
        assert retried.local_pushed == 1
        await b.sync_group(group_id)
        assert await title_on(b, group_id) == "Blue"

    async def test_cancelled_sync_is_resumed_cleanly(self, make_device, group_id):
        a, b, _ = await shared_group(make_device, group_id)
        await save_song(a, group_id, song("Blue"), ChangeType.CREATE)
        await a.sync_group(group_id)
        await b.tracker.record_entity_change(group_id, ChangeType.CREATE, EntityType.SETLIST, "setlist-1",
                                             "Friday", payload={"id": "setlist-1", "name": "Friday"})
        cursor_before = await b.store.get_cursor(group_id)
        log_length = len((await b.manifests.fetch_change_log(group_id)).changes)

        upload = b._upload_local
        uploading = asyncio.Event()

        async def stalled_upload(*args):
            uploading.set()
            await asyncio.Event().wait()

        b._upload_local = stalled_upload
        task = asyncio.ensure_future(b.sync_group(group_id))
        await uploading.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        # Remote changes were committed before the cancellation, nothing else moved
        assert await title_on(b, group_id) == "Blue"
        assert await b.store.get_cursor(group_id) == cursor_before
        assert len((await b.manifests.fetch_change_log(group_id)).changes) == log_length
        status = b.get_sync_status(group_id)
        assert status["is_syncing"] is False
        assert status["status"] == SyncStatus.UP_TO_DATE

        b._upload_local = upload
        resumed = await b.sync_group(group_id)
        assert resumed.status == SyncStatus.UP_TO_DATE
        assert resumed.remote_applied == 0
        assert resumed.local_pushed == 1
        assert len((await b.manifests.fetch_change_log(group_id)).changes) == log_length + 1

        again = await b.sync_group(group_id)
        assert again.local_pushed == 0
        assert len((await b.manifests.fetch_change_log(group_id)).changes) == log_length + 1

    def test_parse_version(self):
        assert parse_version("1.2.3") == (1, 2, 3)
        assert parse_version("2.0") == (2, 0, 0)
        assert parse_version("1.4.0-beta") == (1, 4, 0)


class TestOrchestration:
    """Test coalescing, status reporting and background sync."""

    async def test_concurrent_requests_share_one_cycle(self, make_device, group_id):
        a, _, _ = await shared_group(make_device, group_id)
        await save_song(a, group_id, song("Blue"), ChangeType.CREATE)

        first, second = await asyncio.gather(a.sync_group(group_id), a.sync_group(group_id))

        assert first is second
        assert first.local_pushed == 1
        assert group_id not in a.active_syncs

    async def test_sync_status(self, make_device, group_id):
        a, _, _ = await shared_group(make_device, group_id)
        await a.sync_group(group_id)

        status = a.get_sync_status(group_id)

        assert status["status"] == SyncStatus.UP_TO_DATE
        assert status["is_syncing"] is False
        assert status["last_error"] is None
        assert status["conflicts"] == []

    async def test_continuous_sync(self, make_device, group_id):
        a, _, _ = await shared_group(make_device, group_id)
        a.last_results.clear()

        assert a.start_continuous_sync(group_id) is True
        assert a.start_continuous_sync(group_id) is False

        for _ in range(100):
            if group_id in a.last_results:
                break
            await asyncio.sleep(0.05)

        assert await a.stop_continuous_sync(group_id) is True
        assert await a.stop_continuous_sync(group_id) is False
        assert a.last_results[group_id].status == SyncStatus.UP_TO_DATE

    async def test_continuous_sync_stops_on_auth_failure(self, make_device, group_id):
        a = make_device("device-a")
        await a.create_group("The Band", group_id)
        a.transport.authenticate = AsyncMock(side_effect=AuthenticationRequired("signed out"))

        a.start_continuous_sync(group_id)
        task = a.continuous_tasks[group_id]
        await asyncio.wait_for(task, timeout=5)

        assert group_id not in a.continuous_tasks
        assert a.sync_states[group_id] == SyncStatus.AUTHENTICATION_REQUIRED

    async def test_prune_history(self, make_device, group_id):
        a, _, _ = await shared_group(make_device, group_id)
        await save_song(a, group_id, song("Blue"), ChangeType.CREATE)
        await a.sync_group(group_id)

        assert await a.prune_history(group_id) == 0
        assert len(list(a.tracker.get_changes_since(group_id))) == 2

    async def test_progress_is_reported(self, make_device, group_id):
        a, _, _ = await shared_group(make_device, group_id)
        messages = []
        a.set_progress_callback(lambda group, message: messages.append((group, message)))
        await save_song(a, group_id, song("Blue"), ChangeType.CREATE)

        await a.sync_group(group_id)

        assert messages[0] == (group_id, "Starting sync...")
        assert (group_id, "Uploading 1 local changes...") in messages
        assert messages[-1] == (group_id, "Sync completed")

    async def test_progress_reports_failure(self, make_device, group_id):
        messages = []
        a = make_device("device-a")
        a.set_progress_callback(lambda group, message: messages.append(message))

        await a.sync_group("missing")

        assert messages[-1] == "Sync failed: Unknown group: missing"

    async def test_check_connection(self, make_device, tmp_path, fast_settings):
        a = make_device("device-a")
        unmounted = CloudSyncManager(LocalStore(tmp_path / "unmounted.db"), LocalFolderTransport(tmp_path / "gone"),
                                     "device-x", "X", settings=fast_settings)

        assert await a.check_connection() is True
        assert await unmounted.check_connection() is False
