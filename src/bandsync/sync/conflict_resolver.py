"""Conflict detection and resolution.

Classification of two competing versions of one entity follows a fixed
priority list, first match wins:

1. identical checksum: no conflict
2. one side deleted, the other did not: ``DELETE_MODIFY``
3. annotation entity: ``ANNOTATION_OVERLAP`` (auto-resolvable when the two
   stroke sets can be unioned without contradicting each other)
4. both sides changed structure (ordering, membership): ``STRUCTURE_CHANGE``
5. anything else: ``SIMULTANEOUS_EDIT``

``VERSION_MISMATCH`` is not about a single entity; it is produced by
:meth:`ConflictResolver.check_version_progression` when the remote log or
manifest moved backwards relative to what this device last saw.

The resolver never performs I/O. Resolutions come back as
:class:`ResolutionResult` objects listing the entity writes the caller must
apply and record.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from ..models import (
    ChangeLogEntry,
    ChangeType,
    ConflictType,
    ConflictVersion,
    EntityType,
    EntityWrite,
    ResolutionAction,
    ResolutionResult,
    SyncConflict,
    SyncCursor,
)
from ..utils.datetime import min_utc, now_utc, parse_iso


logger = logging.getLogger(__name__)

EntityKey = Tuple[str, str]
PayloadPair = Tuple[Optional[Dict[str, Any]], Optional[Dict[str, Any]]]

STRUCTURAL_ENTITY_TYPES = frozenset({EntityType.GROUP, EntityType.MEMBER, EntityType.SETLIST_ITEM})
STRUCTURAL_FIELDS = frozenset({"items", "members", "memberIds", "order", "position", "permissions"})


@dataclass
class ConflictScan:
    """Decisions for every entity touched by a sync pass."""

    conflicts: List[SyncConflict] = field(default_factory=list)
    remote_apply: Dict[EntityKey, ChangeLogEntry] = field(default_factory=dict)
    local_wins: Set[EntityKey] = field(default_factory=set)
    identical: Set[EntityKey] = field(default_factory=set)

    @property
    def conflicted_keys(self) -> Set[EntityKey]:
        return {(c.entity_type.value, c.entity_id) for c in self.conflicts}


def group_by_entity(entries: Iterable[ChangeLogEntry]) -> Dict[EntityKey, List[ChangeLogEntry]]:
    """Group entries by entity, each list in log order."""
    grouped: Dict[EntityKey, List[ChangeLogEntry]] = {}
    for entry in sorted(entries, key=lambda e: e.sort_key):
        grouped.setdefault(entry.entity_key, []).append(entry)
    return grouped


def covered_ids(entries: Iterable[ChangeLogEntry]) -> Set[str]:
    """Change ids settled by resolution entries among ``entries``."""
    covered: Set[str] = set()
    for entry in entries:
        covered.update(entry.resolved_change_ids())
    return covered


def effective_latest(entries: List[ChangeLogEntry]) -> ChangeLogEntry:
    """Latest entry that no other entry in the list has superseded."""
    covered = covered_ids(entries)
    candidates = [entry for entry in entries if entry.change_id not in covered] or entries
    return max(candidates, key=lambda e: e.sort_key)


def is_structural(entry: ChangeLogEntry) -> bool:
    """Whether a change touched ordering or membership rather than content."""
    if entry.change_type == ChangeType.MOVE or entry.entity_type in STRUCTURAL_ENTITY_TYPES:
        return True
    changed = {name.strip() for name in entry.metadata.get("changedFields", "").split(",") if name.strip()}
    return bool(changed & STRUCTURAL_FIELDS)


def _stroke_sort_key(stroke: Dict[str, Any]):
    try:
        created = parse_iso(stroke.get("createdAt")) or min_utc()
    except (TypeError, ValueError):
        created = min_utc()
    return (created, str(stroke.get("id", "")))


def strokes_mergeable(local_payload: Optional[Dict[str, Any]],
                      remote_payload: Optional[Dict[str, Any]]) -> bool:
    """True when two annotation states can be unioned without contradiction.

    Both must annotate the same file page and every stroke present on both
    sides must be identical.
    """
    if not local_payload or not remote_payload:
        return False
    if local_payload.get("fileId") != remote_payload.get("fileId"):
        return False
    if local_payload.get("pageNumber") != remote_payload.get("pageNumber"):
        return False

    local_strokes = {s.get("id"): s for s in local_payload.get("strokes", [])}
    for stroke in remote_payload.get("strokes", []):
        other = local_strokes.get(stroke.get("id"))
        if other is not None and other != stroke:
            return False
    return True


def remote_wins_tiebreak(local: ConflictVersion, remote: ConflictVersion) -> bool:
    """Later timestamp wins; exact ties go to the greater device id."""
    return (remote.timestamp, remote.device_id) > (local.timestamp, local.device_id)


def merge_annotation_payloads(local_payload: Dict[str, Any], remote_payload: Dict[str, Any],
                              local: ConflictVersion, remote: ConflictVersion) -> Dict[str, Any]:
    """Union the stroke lists of two annotation states.

    Strokes are deduplicated by id and ordered by creation time then id.
    Scalar fields, and strokes whose id exists on both sides with different
    content, come from the tie-break winner.
    """
    remote_first = remote_wins_tiebreak(local, remote)
    winner, loser = (remote_payload, local_payload) if remote_first else (local_payload, remote_payload)

    strokes: Dict[str, Dict[str, Any]] = {}
    for stroke in loser.get("strokes", []):
        strokes[stroke.get("id")] = stroke
    for stroke in winner.get("strokes", []):
        strokes[stroke.get("id")] = stroke

    merged = copy.deepcopy(winner)
    merged["strokes"] = copy.deepcopy(sorted(strokes.values(), key=_stroke_sort_key))
    return merged


class ConflictResolver:
    """Classifies competing entity versions and applies resolutions."""

    def __init__(self, device_id: str, device_name: str):
        self.device_id = device_id
        self.device_name = device_name
        self.logger = logging.getLogger(__name__)

    # Classification

    def classify(self, local: ChangeLogEntry, remote: ChangeLogEntry,
                 local_payload: Optional[Dict[str, Any]] = None,
                 remote_payload: Optional[Dict[str, Any]] = None,
                 authors: Optional[Dict[str, str]] = None) -> Optional[SyncConflict]:
        """Classify the latest local and remote change of one entity.

        Args:
            local: Latest local change
            remote: Latest remote change
            local_payload: Local entity state, needed for annotation merges
            remote_payload: Remote entity state, needed for annotation merges
            authors: Optional device id to member name mapping for display

        Returns:
            A SyncConflict, or None when both sides produced the same state
        """
        if local.checksum == remote.checksum:
            return None

        if local.is_delete() != remote.is_delete():
            conflict_type, auto = ConflictType.DELETE_MODIFY, False
        elif local.entity_type == EntityType.ANNOTATION:
            conflict_type = ConflictType.ANNOTATION_OVERLAP
            auto = strokes_mergeable(local_payload, remote_payload)
        elif is_structural(local) and is_structural(remote):
            conflict_type, auto = ConflictType.STRUCTURE_CHANGE, False
        else:
            conflict_type, auto = ConflictType.SIMULTANEOUS_EDIT, False

        authors = authors or {}
        return SyncConflict(
            conflict_id=f"{local.change_id}_{remote.change_id}",
            entity_type=local.entity_type,
            entity_id=local.entity_id,
            entity_name=remote.entity_name or local.entity_name,
            local_version=ConflictVersion.from_entry(local, authors.get(local.device_id)),
            remote_version=ConflictVersion.from_entry(remote, authors.get(remote.device_id)),
            conflict_type=conflict_type,
            can_auto_resolve=auto,
            local_change_ids=[local.change_id],
            remote_change_ids=[remote.change_id],
        )

    def contested_keys(self, local_entries: Iterable[ChangeLogEntry],
                       remote_entries: Iterable[ChangeLogEntry]) -> Set[EntityKey]:
        """Entities touched by both sides."""
        return {e.entity_key for e in local_entries} & {e.entity_key for e in remote_entries}

    def detect_conflicts(self, local_entries: List[ChangeLogEntry], remote_entries: List[ChangeLogEntry],
                         payloads: Optional[Dict[EntityKey, PayloadPair]] = None,
                         authors: Optional[Dict[str, str]] = None) -> ConflictScan:
        """Decide the fate of every entity touched by either side.

        Entities only changed remotely are applied; entities only changed
        locally are pushed. For entities touched by both sides, a side whose
        resolution entries already settled every entry of the other side wins
        outright; otherwise the latest versions are classified.
        """
        payloads = payloads or {}
        local_by_key = group_by_entity(local_entries)
        remote_by_key = group_by_entity(remote_entries)
        scan = ConflictScan()

        for key, remote_list in remote_by_key.items():
            local_list = local_by_key.get(key)
            remote_latest = effective_latest(remote_list)

            if not local_list:
                scan.remote_apply[key] = remote_latest
                continue

            local_latest = effective_latest(local_list)
            local_ids = {e.change_id for e in local_list}
            remote_ids = {e.change_id for e in remote_list}

            if remote_ids <= covered_ids(local_list):
                scan.local_wins.add(key)
                continue
            if local_ids <= covered_ids(remote_list):
                scan.remote_apply[key] = remote_latest
                continue

            local_payload, remote_payload = payloads.get(key, (None, None))
            conflict = self.classify(local_latest, remote_latest, local_payload, remote_payload, authors)
            if conflict is None:
                scan.identical.add(key)
                continue

            conflict.local_change_ids = [e.change_id for e in local_list]
            conflict.remote_change_ids = [e.change_id for e in remote_list]
            scan.conflicts.append(conflict)
            self.logger.warning(f"Conflict detected: {conflict.describe()}")

        return scan

    def check_version_progression(self, cursor: SyncCursor, group_name: str, manifest_version: int,
                                  log_version: int, log_has_cursor: bool) -> Optional[SyncConflict]:
        """Detect a remote whose manifest or change log went backwards.

        Args:
            cursor: Progress recorded after the last successful sync
            group_name: Display name of the group
            manifest_version: Version of the manifest just fetched
            log_version: Version of the change log just fetched
            log_has_cursor: Whether the remote log still contains the remote cursor
        """
        regressed = (
            log_version < cursor.remote_log_version
            or manifest_version < cursor.manifest_version
            or (cursor.remote_change_id is not None and not log_has_cursor)
        )
        if not regressed:
            return None

        seen_at = cursor.last_sync_at or now_utc()
        expected = f"log:{cursor.remote_log_version}/manifest:{cursor.manifest_version}"
        found = f"log:{log_version}/manifest:{manifest_version}"
        self.logger.warning(f"Remote state of group {cursor.group_id} regressed: expected {expected}, found {found}")

        return SyncConflict(
            conflict_id=f"{cursor.group_id}_version",
            entity_type=EntityType.GROUP,
            entity_id=cursor.group_id,
            entity_name=group_name,
            local_version=ConflictVersion(
                timestamp=seen_at,
                device_id=self.device_id,
                device_name=self.device_name,
                author_name=self.device_name,
                checksum=expected,
                description=f"last synced at {expected}",
            ),
            remote_version=ConflictVersion(
                timestamp=now_utc(),
                device_id="remote",
                device_name="cloud folder",
                author_name="cloud folder",
                checksum=found,
                description=f"remote now at {found}",
            ),
            conflict_type=ConflictType.VERSION_MISMATCH,
            can_auto_resolve=False,
        )

    # Resolution

    def _resolution_metadata(self, conflict: SyncConflict, action: ResolutionAction) -> Dict[str, str]:
        return {
            "resolution": action.value,
            "conflictId": conflict.conflict_id,
            "resolvedChangeIds": ",".join(conflict.remote_change_ids + conflict.local_change_ids),
        }

    def _side_write(self, conflict: SyncConflict, version: ConflictVersion,
                    payload: Optional[Dict[str, Any]], action: ResolutionAction) -> EntityWrite:
        if version.change_type == ChangeType.DELETE:
            return EntityWrite(
                entity_type=conflict.entity_type,
                entity_id=conflict.entity_id,
                entity_name=conflict.entity_name,
                change_type=ChangeType.DELETE,
                metadata=self._resolution_metadata(conflict, action),
            )
        return EntityWrite(
            entity_type=conflict.entity_type,
            entity_id=conflict.entity_id,
            entity_name=conflict.entity_name,
            change_type=ChangeType.UPDATE,
            payload=copy.deepcopy(payload),
            metadata=self._resolution_metadata(conflict, action),
        )

    def resolve(self, conflict: SyncConflict, action: ResolutionAction,
                local_payload: Optional[Dict[str, Any]] = None,
                remote_payload: Optional[Dict[str, Any]] = None,
                manual_payload: Optional[Dict[str, Any]] = None) -> ResolutionResult:
        """Apply a resolution action deterministically.

        Returns:
            A ResolutionResult whose ``writes`` the caller applies and records;
            ``success`` is False (with ``error_kind``) when the action cannot
            be applied to this conflict.
        """
        result = ResolutionResult(conflict_id=conflict.conflict_id, action=action)
        is_annotation = conflict.entity_type == EntityType.ANNOTATION

        if conflict.conflict_type == ConflictType.VERSION_MISMATCH:
            if action not in (ResolutionAction.KEEP_LOCAL, ResolutionAction.ACCEPT_REMOTE):
                return ResolutionResult.failure(
                    conflict.conflict_id, action,
                    "Version mismatches can only be settled by keeping local or accepting remote state",
                )
            return result

        if action == ResolutionAction.KEEP_LOCAL:
            if conflict.local_version.change_type != ChangeType.DELETE and local_payload is None:
                return ResolutionResult.failure(conflict.conflict_id, action, "Local state is not available",
                                                "MissingPayload")
            result.writes.append(self._side_write(conflict, conflict.local_version, local_payload, action))

        elif action == ResolutionAction.ACCEPT_REMOTE:
            if conflict.remote_version.change_type != ChangeType.DELETE and remote_payload is None:
                return ResolutionResult.failure(conflict.conflict_id, action, "Remote state is not available",
                                                "MissingPayload")
            write = self._side_write(conflict, conflict.remote_version, remote_payload, action)
            if write.change_type != ChangeType.DELETE and conflict.local_version.change_type == ChangeType.DELETE:
                write.change_type = ChangeType.CREATE
            result.writes.append(write)

        elif action == ResolutionAction.MERGE_ANNOTATIONS:
            if not is_annotation:
                return ResolutionResult.failure(conflict.conflict_id, action,
                                                "Only annotations can be merged")
            if local_payload is None or remote_payload is None:
                return ResolutionResult.failure(conflict.conflict_id, action,
                                                "Both annotation versions are required to merge",
                                                "MissingPayload")
            merged = merge_annotation_payloads(local_payload, remote_payload,
                                               conflict.local_version, conflict.remote_version)
            result.writes.append(EntityWrite(
                entity_type=conflict.entity_type,
                entity_id=conflict.entity_id,
                entity_name=conflict.entity_name,
                change_type=ChangeType.UPDATE,
                payload=merged,
                metadata=self._resolution_metadata(conflict, action),
                description=f"merged annotation '{conflict.entity_name}'",
            ))

        elif action == ResolutionAction.LAYER_SEPARATE:
            if not is_annotation:
                return ResolutionResult.failure(conflict.conflict_id, action,
                                                "Cannot layer non-annotation entities")
            if local_payload is None or remote_payload is None:
                return ResolutionResult.failure(conflict.conflict_id, action,
                                                "Both annotation versions are required to separate layers",
                                                "MissingPayload")
            layer_id = f"{conflict.entity_id}:{conflict.remote_version.device_id}"
            layer = copy.deepcopy(remote_payload)
            layer["id"] = layer_id
            layer["layerOf"] = conflict.entity_id
            layer["layerDeviceId"] = conflict.remote_version.device_id
            result.writes.append(self._side_write(conflict, conflict.local_version, local_payload, action))
            result.writes.append(EntityWrite(
                entity_type=EntityType.ANNOTATION,
                entity_id=layer_id,
                entity_name=f"{conflict.entity_name} ({conflict.remote_version.device_name})",
                change_type=ChangeType.CREATE,
                payload=layer,
                metadata={"layerOf": conflict.entity_id, "conflictId": conflict.conflict_id},
            ))

        elif action == ResolutionAction.MANUAL_MERGE:
            if manual_payload is None:
                return ResolutionResult.failure(conflict.conflict_id, action,
                                                "Manual merge requires a merged payload", "MissingPayload")
            result.writes.append(EntityWrite(
                entity_type=conflict.entity_type,
                entity_id=conflict.entity_id,
                entity_name=conflict.entity_name,
                change_type=ChangeType.UPDATE,
                payload=copy.deepcopy(manual_payload),
                metadata=self._resolution_metadata(conflict, action),
            ))

        self.logger.info(f"Resolved {conflict.conflict_type.value} on '{conflict.entity_name}' with {action.value}")
        return result

    def auto_resolve(self, conflict: SyncConflict, local_payload: Optional[Dict[str, Any]],
                     remote_payload: Optional[Dict[str, Any]]) -> ResolutionResult:
        """Merge an auto-resolvable conflict; never guesses for the others."""
        if not conflict.can_auto_resolve:
            return ResolutionResult.failure(conflict.conflict_id, None,
                                            f"{conflict.conflict_type.value} requires manual resolution",
                                            "ManualResolutionRequired")

        result = self.resolve(conflict, ResolutionAction.MERGE_ANNOTATIONS, local_payload, remote_payload)
        for write in result.writes:
            write.metadata["autoResolved"] = "true"
        return result
