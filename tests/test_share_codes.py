"""Tests for share codes, checksums and wire models."""

from datetime import timedelta

import pytest

from bandsync.errors import ShareCodeError
from bandsync.models import ChangeLog, ChangeLogEntry, ChangeType, EntityType, GroupManifest, ShareCode
from bandsync.sync.share_codes import build_deep_link, generate_share_code, parse_share_input
from bandsync.utils.checksum import TOMBSTONE_CHECKSUM, entity_checksum
from bandsync.utils.datetime import now_utc, parse_iso


GROUP_ID = "3f2a9c1e-7b4d-4e8a-9f10-2c3d4e5f6a7b"


class TestShareCodes:
    """Test share code generation and parsing."""

    def test_generate(self):
        share = generate_share_code(GROUP_ID, "groups/band", ttl_hours=24)

        assert share.code == "BS-3F2A9C1E"
        assert share.group_id == GROUP_ID
        assert share.deep_link == build_deep_link(GROUP_ID, "groups/band")
        assert not share.is_expired()
        assert share.is_expired(now_utc() + timedelta(hours=25))

    def test_no_ttl_never_expires(self):
        share = generate_share_code(GROUP_ID, "groups/band", ttl_hours=None)
        assert share.expires_at is None
        assert not share.is_expired(now_utc() + timedelta(days=3650))

    def test_short_group_id(self):
        with pytest.raises(ShareCodeError):
            generate_share_code("g1", "groups/g1")

    def test_parse_code_is_case_insensitive(self):
        assert parse_share_input("  bs-3f2a9c1e ").code == "BS-3F2A9C1E"

    def test_parse_deep_link(self):
        target = parse_share_input(build_deep_link(GROUP_ID, "groups/band"))

        assert target.code is None
        assert target.group_id == GROUP_ID
        assert target.folder_id == "groups/band"

    @pytest.mark.parametrize("text", ["", "BS-123", "XX-3F2A9C1E", "bandsync://other?group=a&folder=b"])
    def test_parse_rejects(self, text):
        with pytest.raises(ShareCodeError):
            parse_share_input(text)

    def test_share_code_round_trip(self):
        share = generate_share_code(GROUP_ID, "groups/band", ttl_hours=1)
        assert ShareCode.from_dict(share.to_dict()) == share


class TestChecksums:
    """Test entity checksums."""

    def test_key_order_does_not_matter(self):
        assert entity_checksum({"a": 1, "b": [1, 2]}) == entity_checksum({"b": [1, 2], "a": 1})

    def test_volatile_fields_are_ignored(self):
        assert entity_checksum({"title": "Blue", "updatedAt": "x"}) == entity_checksum({"title": "Blue"})

    def test_content_changes_checksum(self):
        assert entity_checksum({"title": "Blue"}) != entity_checksum({"title": "Red"})

    def test_deleted_entity(self):
        assert entity_checksum(None) == TOMBSTONE_CHECKSUM


class TestModels:
    """Test wire models."""

    def entry(self, change_id, offset):
        return ChangeLogEntry(
            change_id=change_id, device_id="d", device_name="D",
            timestamp=now_utc() + timedelta(microseconds=offset),
            change_type=ChangeType.CREATE, entity_type=EntityType.SONG,
            entity_id=change_id, entity_name=change_id, checksum="c",
        )

    def test_change_log_append_is_ordered_and_deduplicated(self):
        log = ChangeLog()
        a, b, c = self.entry("a", 0), self.entry("b", 1), self.entry("c", 2)

        assert log.append([b, a]) == [a, b]
        assert log.append([a, c]) == [c]
        assert [e.change_id for e in log.changes] == ["a", "b", "c"]
        assert log.last_change_id == "c"

    def test_same_timestamp_orders_by_change_id(self):
        stamp = now_utc()
        first = ChangeLogEntry("x1", "d", "D", stamp, ChangeType.CREATE, EntityType.SONG, "s", "S", "c")
        second = ChangeLogEntry("x2", "e", "E", stamp, ChangeType.CREATE, EntityType.SONG, "s", "S", "c")

        assert sorted([second, first], key=lambda e: e.sort_key) == [first, second]

    def test_manifest_copy_is_independent(self):
        manifest = GroupManifest(group_id="g", name="Band", created_by="d")
        clone = manifest.copy()
        clone.permissions.editor_devices.append("x")

        assert manifest.permissions.editor_devices == []

    def test_epoch_millisecond_timestamps(self):
        assert parse_iso(0).year == 1970
        assert parse_iso("2024-05-01T20:00:00Z").tzinfo is not None
