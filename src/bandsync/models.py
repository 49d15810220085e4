"""Data models for band sync.

This module contains every structure exchanged between devices (change log
entries, manifests, device records, share codes) together with the
ephemeral results produced by a sync pass. Remote documents use camelCase
keys; ``to_dict``/``from_dict`` translate to and from the Python attributes.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .utils.datetime import now_utc, parse_iso, to_iso_string


class ChangeType(Enum):
    """Kinds of mutation recorded in the change log."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    MOVE = "MOVE"


class EntityType(Enum):
    """Entity kinds tracked by the sync core."""
    GROUP = "GROUP"
    MEMBER = "MEMBER"
    SONG = "SONG"
    SONG_FILE = "SONG_FILE"
    SETLIST = "SETLIST"
    SETLIST_ITEM = "SETLIST_ITEM"
    ANNOTATION = "ANNOTATION"


class ConflictType(Enum):
    """Classification of divergent versions of one entity."""
    SIMULTANEOUS_EDIT = "SIMULTANEOUS_EDIT"
    DELETE_MODIFY = "DELETE_MODIFY"
    STRUCTURE_CHANGE = "STRUCTURE_CHANGE"
    ANNOTATION_OVERLAP = "ANNOTATION_OVERLAP"
    VERSION_MISMATCH = "VERSION_MISMATCH"


class ResolutionAction(Enum):
    """User-selectable ways of settling a conflict."""
    KEEP_LOCAL = "KEEP_LOCAL"
    ACCEPT_REMOTE = "ACCEPT_REMOTE"
    MERGE_ANNOTATIONS = "MERGE_ANNOTATIONS"
    LAYER_SEPARATE = "LAYER_SEPARATE"
    MANUAL_MERGE = "MANUAL_MERGE"


class SyncStatus(Enum):
    """Aggregate status reported after a sync cycle."""
    OFFLINE = "OFFLINE"
    SYNCING = "SYNCING"
    UP_TO_DATE = "UP_TO_DATE"
    CONFLICTS_DETECTED = "CONFLICTS_DETECTED"
    ERROR = "ERROR"
    AUTHENTICATION_REQUIRED = "AUTHENTICATION_REQUIRED"


class MemberRole(Enum):
    """Permission level of a group member."""
    ADMIN = "admin"
    EDITOR = "editor"
    VIEWER = "viewer"


@dataclass(frozen=True)
class ChangeLogEntry:
    """One immutable mutation record.

    Entries are ordered by ``timestamp`` then ``change_id`` so every device
    sorts the same set of entries identically.
    """

    change_id: str
    device_id: str
    device_name: str
    timestamp: datetime
    change_type: ChangeType
    entity_type: EntityType
    entity_id: str
    entity_name: str
    checksum: str
    description: str = ""
    member_id: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def sort_key(self) -> Tuple[datetime, str]:
        return (self.timestamp, self.change_id)

    @property
    def entity_key(self) -> Tuple[str, str]:
        return (self.entity_type.value, self.entity_id)

    def is_delete(self) -> bool:
        return self.change_type == ChangeType.DELETE

    def resolved_change_ids(self) -> List[str]:
        """Change ids this entry settled, when it records a conflict resolution."""
        raw = self.metadata.get("resolvedChangeIds", "")
        return [change_id for change_id in raw.split(",") if change_id]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the remote JSON representation."""
        return {
            "changeId": self.change_id,
            "deviceId": self.device_id,
            "deviceName": self.device_name,
            "timestamp": to_iso_string(self.timestamp),
            "changeType": self.change_type.value,
            "entityType": self.entity_type.value,
            "entityId": self.entity_id,
            "entityName": self.entity_name,
            "memberId": self.member_id,
            "checksum": self.checksum,
            "description": self.description,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChangeLogEntry":
        """Create from the remote JSON representation."""
        return cls(
            change_id=data["changeId"],
            device_id=data["deviceId"],
            device_name=data.get("deviceName", ""),
            timestamp=parse_iso(data["timestamp"]),
            change_type=ChangeType(data["changeType"]),
            entity_type=EntityType(data["entityType"]),
            entity_id=data["entityId"],
            entity_name=data.get("entityName", ""),
            member_id=data.get("memberId"),
            checksum=data.get("checksum", ""),
            description=data.get("description", ""),
            metadata={str(k): str(v) for k, v in (data.get("metadata") or {}).items()},
        )


@dataclass
class ChangeLog:
    """Remote, append-only ledger of changes for one group."""

    changes: List[ChangeLogEntry] = field(default_factory=list)
    last_change_id: Optional[str] = None
    version: int = 0

    def change_ids(self) -> set:
        return {entry.change_id for entry in self.changes}

    def append(self, entries: List[ChangeLogEntry]) -> List[ChangeLogEntry]:
        """Append entries not already present, in deterministic order.

        Existing entries are never reordered; the batch itself is sorted by
        timestamp then change id before being added to the end.

        Returns:
            The entries that were actually added
        """
        known = self.change_ids()
        added = []
        for entry in sorted(entries, key=lambda e: e.sort_key):
            if entry.change_id in known:
                continue
            known.add(entry.change_id)
            added.append(entry)

        if added:
            self.changes.extend(added)
            self.last_change_id = added[-1].change_id
        return added

    def since(self, change_id: Optional[str]) -> List[ChangeLogEntry]:
        """Entries strictly after ``change_id``; the whole log if it is unknown."""
        if change_id:
            for index, entry in enumerate(self.changes):
                if entry.change_id == change_id:
                    return list(self.changes[index + 1:])
        return list(self.changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "changes": [entry.to_dict() for entry in self.changes],
            "lastChangeId": self.last_change_id,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChangeLog":
        return cls(
            changes=[ChangeLogEntry.from_dict(item) for item in data.get("changes", [])],
            last_change_id=data.get("lastChangeId"),
            version=int(data.get("version", 0)),
        )


@dataclass
class Member:
    """A band member listed in the group manifest."""

    member_id: str
    name: str
    role: MemberRole = MemberRole.EDITOR
    device_ids: List[str] = field(default_factory=list)
    joined_at: datetime = field(default_factory=now_utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "memberId": self.member_id,
            "name": self.name,
            "role": self.role.value,
            "deviceIds": list(self.device_ids),
            "joinedAt": to_iso_string(self.joined_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Member":
        return cls(
            member_id=data["memberId"],
            name=data.get("name", ""),
            role=MemberRole(data.get("role", MemberRole.EDITOR.value)),
            device_ids=list(data.get("deviceIds", [])),
            joined_at=parse_iso(data.get("joinedAt")) or now_utc(),
        )


@dataclass
class Permissions:
    """Device-level access lists stored on the manifest."""

    admin_devices: List[str] = field(default_factory=list)
    editor_devices: List[str] = field(default_factory=list)
    viewer_devices: List[str] = field(default_factory=list)
    read_only_devices: List[str] = field(default_factory=list)

    def can_write(self, device_id: str) -> bool:
        return device_id in self.admin_devices or device_id in self.editor_devices

    def grant(self, device_id: str, role: MemberRole = MemberRole.EDITOR) -> bool:
        """Add a device to the list for ``role``; returns False if already present."""
        target = {
            MemberRole.ADMIN: self.admin_devices,
            MemberRole.EDITOR: self.editor_devices,
            MemberRole.VIEWER: self.viewer_devices,
        }[role]
        if device_id in target:
            return False
        target.append(device_id)
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "adminDevices": list(self.admin_devices),
            "editorDevices": list(self.editor_devices),
            "viewerDevices": list(self.viewer_devices),
            "readOnlyDevices": list(self.read_only_devices),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Permissions":
        return cls(
            admin_devices=list(data.get("adminDevices", [])),
            editor_devices=list(data.get("editorDevices", [])),
            viewer_devices=list(data.get("viewerDevices", [])),
            read_only_devices=list(data.get("readOnlyDevices", [])),
        )


@dataclass
class GroupSyncSettings:
    """Group-wide sync preferences shared through the manifest."""

    auto_sync: bool = True
    sync_interval_ms: int = 30000
    encryption_enabled: bool = False
    compression_enabled: bool = False
    min_compatible_version: str = "1.0.0"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "autoSync": self.auto_sync,
            "syncInterval": self.sync_interval_ms,
            "encryptionEnabled": self.encryption_enabled,
            "compressionEnabled": self.compression_enabled,
            "minCompatibleVersion": self.min_compatible_version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GroupSyncSettings":
        return cls(
            auto_sync=bool(data.get("autoSync", True)),
            sync_interval_ms=int(data.get("syncInterval", 30000)),
            encryption_enabled=bool(data.get("encryptionEnabled", False)),
            compression_enabled=bool(data.get("compressionEnabled", False)),
            min_compatible_version=str(data.get("minCompatibleVersion", "1.0.0")),
        )


@dataclass
class GroupManifest:
    """Versioned remote description of a group.

    ``version`` strictly increases on every remote write; writers re-fetch and
    increment on conflict instead of overwriting.
    """

    group_id: str
    name: str
    created_by: str
    created_at: datetime = field(default_factory=now_utc)
    last_modified: datetime = field(default_factory=now_utc)
    version: int = 1
    app_version: str = "1.0.0"
    members: List[Member] = field(default_factory=list)
    permissions: Permissions = field(default_factory=Permissions)
    sync_settings: GroupSyncSettings = field(default_factory=GroupSyncSettings)

    def find_member(self, member_id: str) -> Optional[Member]:
        for member in self.members:
            if member.member_id == member_id:
                return member
        return None

    def copy(self) -> "GroupManifest":
        return GroupManifest.from_dict(self.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "groupId": self.group_id,
            "name": self.name,
            "createdBy": self.created_by,
            "createdAt": to_iso_string(self.created_at),
            "lastModified": to_iso_string(self.last_modified),
            "version": self.version,
            "appVersion": self.app_version,
            "members": [member.to_dict() for member in self.members],
            "permissions": self.permissions.to_dict(),
            "syncSettings": self.sync_settings.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GroupManifest":
        return cls(
            group_id=data["groupId"],
            name=data["name"],
            created_by=data.get("createdBy", ""),
            created_at=parse_iso(data.get("createdAt")) or now_utc(),
            last_modified=parse_iso(data.get("lastModified")) or now_utc(),
            version=int(data["version"]),
            app_version=data.get("appVersion", "1.0.0"),
            members=[Member.from_dict(item) for item in data.get("members", [])],
            permissions=Permissions.from_dict(data.get("permissions") or {}),
            sync_settings=GroupSyncSettings.from_dict(data.get("syncSettings") or {}),
        )


@dataclass(frozen=True)
class ConflictVersion:
    """Immutable summary of one side of a conflict, for comparison and display."""

    timestamp: datetime
    device_id: str
    device_name: str
    author_name: str
    checksum: str
    description: str
    change_id: Optional[str] = None
    change_type: Optional[ChangeType] = None

    @classmethod
    def from_entry(cls, entry: ChangeLogEntry, author_name: Optional[str] = None) -> "ConflictVersion":
        return cls(
            timestamp=entry.timestamp,
            device_id=entry.device_id,
            device_name=entry.device_name,
            author_name=author_name or entry.device_name,
            checksum=entry.checksum,
            description=entry.description,
            change_id=entry.change_id,
            change_type=entry.change_type,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": to_iso_string(self.timestamp),
            "deviceId": self.device_id,
            "deviceName": self.device_name,
            "authorName": self.author_name,
            "checksum": self.checksum,
            "description": self.description,
            "changeId": self.change_id,
            "changeType": self.change_type.value if self.change_type else None,
        }


@dataclass
class SyncConflict:
    """Two divergent versions of one entity found during a sync pass."""

    conflict_id: str
    entity_type: EntityType
    entity_id: str
    entity_name: str
    local_version: ConflictVersion
    remote_version: ConflictVersion
    conflict_type: ConflictType
    can_auto_resolve: bool
    local_change_ids: List[str] = field(default_factory=list)
    remote_change_ids: List[str] = field(default_factory=list)
    detected_at: datetime = field(default_factory=now_utc)

    def describe(self) -> str:
        """Human-readable one-line summary."""
        label = self.conflict_type.value.replace("_", " ").lower()
        return (
            f"{label} on {self.entity_type.value.lower()} '{self.entity_name}': "
            f"local by {self.local_version.author_name} vs remote by {self.remote_version.author_name}"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conflictId": self.conflict_id,
            "entityType": self.entity_type.value,
            "entityId": self.entity_id,
            "entityName": self.entity_name,
            "localVersion": self.local_version.to_dict(),
            "remoteVersion": self.remote_version.to_dict(),
            "conflictType": self.conflict_type.value,
            "canAutoResolve": self.can_auto_resolve,
            "detectedAt": to_iso_string(self.detected_at),
        }


@dataclass
class DeviceInfo:
    """A device participating in a group; refreshed every sync cycle."""

    device_id: str
    device_name: str
    app_version: str
    last_seen: datetime = field(default_factory=now_utc)
    is_online: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "deviceName": self.device_name,
            "appVersion": self.app_version,
            "lastSeen": to_iso_string(self.last_seen),
            "isOnline": self.is_online,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeviceInfo":
        return cls(
            device_id=data["deviceId"],
            device_name=data.get("deviceName", ""),
            app_version=data.get("appVersion", ""),
            last_seen=parse_iso(data.get("lastSeen")) or now_utc(),
            is_online=bool(data.get("isOnline", False)),
        )


@dataclass
class ShareCode:
    """Short token plus deep link granting join access to a group folder."""

    code: str
    deep_link: str
    group_id: str
    folder_id: str
    expires_at: Optional[datetime] = None

    def is_expired(self, at: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (at or now_utc()) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "deepLink": self.deep_link,
            "groupId": self.group_id,
            "folderId": self.folder_id,
            "expiresAt": to_iso_string(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ShareCode":
        return cls(
            code=data["code"],
            deep_link=data.get("deepLink", ""),
            group_id=data["groupId"],
            folder_id=data["folderId"],
            expires_at=parse_iso(data.get("expiresAt")),
        )


@dataclass
class Group:
    """Local record of a group this device belongs to."""

    group_id: str
    name: str
    folder_id: Optional[str] = None
    cloud_enabled: bool = False
    created_at: datetime = field(default_factory=now_utc)


@dataclass
class StoredEntity:
    """Current local state of one entity."""

    group_id: str
    entity_type: EntityType
    entity_id: str
    name: str
    payload: Dict[str, Any]
    checksum: str
    updated_at: datetime = field(default_factory=now_utc)


@dataclass
class SyncCursor:
    """Per-group progress markers; advanced only after a successful remote append."""

    group_id: str
    local_change_id: Optional[str] = None
    remote_change_id: Optional[str] = None
    remote_log_version: int = 0
    manifest_version: int = 0
    last_sync_at: Optional[datetime] = None


@dataclass
class EntityWrite:
    """A local write produced by resolving a conflict."""

    entity_type: EntityType
    entity_id: str
    entity_name: str
    change_type: ChangeType
    payload: Optional[Dict[str, Any]] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    description: Optional[str] = None


@dataclass
class ResolutionResult:
    """Outcome of applying a resolution action to a conflict."""

    conflict_id: str
    action: Optional[ResolutionAction]
    success: bool = True
    writes: List[EntityWrite] = field(default_factory=list)
    entries: List[ChangeLogEntry] = field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @classmethod
    def failure(cls, conflict_id: str, action: Optional[ResolutionAction], error: str,
                error_kind: str = "InvalidResolution") -> "ResolutionResult":
        return cls(conflict_id=conflict_id, action=action, success=False,
                   error=error, error_kind=error_kind)


@dataclass
class SyncResult:
    """Result of a sync cycle."""

    group_id: str
    status: SyncStatus = SyncStatus.SYNCING
    conflicts: List[SyncConflict] = field(default_factory=list)
    remote_applied: int = 0
    local_pushed: int = 0
    auto_resolved: int = 0
    blobs_downloaded: int = 0
    blobs_uploaded: int = 0
    error: Optional[str] = None
    error_kind: Optional[str] = None
    started_at: datetime = field(default_factory=now_utc)
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status in (SyncStatus.UP_TO_DATE, SyncStatus.CONFLICTS_DETECTED)

    def complete(self, status: Optional[SyncStatus] = None):
        """Mark sync as completed and calculate duration."""
        if status is not None:
            self.status = status
        elif self.status == SyncStatus.SYNCING:
            self.status = SyncStatus.CONFLICTS_DETECTED if self.conflicts else SyncStatus.UP_TO_DATE
        self.completed_at = now_utc()
        self.duration_seconds = (self.completed_at - self.started_at).total_seconds()

    def fail(self, status: SyncStatus, error: Exception):
        """Record a failure that aborted the cycle."""
        self.error = str(error)
        self.error_kind = getattr(error, "kind", error.__class__.__name__)
        self.complete(status)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["conflicts"] = [conflict.to_dict() for conflict in self.conflicts]
        data["started_at"] = to_iso_string(self.started_at)
        data["completed_at"] = to_iso_string(self.completed_at)
        return data


@dataclass
class GroupOperationResult:
    """Result of joining a group or enabling cloud sync for one."""

    success: bool
    group: Optional[Group] = None
    share_code: Optional[ShareCode] = None
    sync_result: Optional[SyncResult] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None


def expiry_from_hours(hours: Optional[float]) -> Optional[datetime]:
    """Expiry timestamp ``hours`` from now, or None for codes that never expire."""
    if not hours:
        return None
    return now_utc() + timedelta(hours=hours)
