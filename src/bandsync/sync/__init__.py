"""Synchronization core: change tracking, manifests, conflicts and orchestration."""

from .change_tracker import ChangeTracker, ChangeSequence
from .conflict_resolver import ConflictResolver, ConflictScan
from .manifest_manager import ManifestManager
from .sync_manager import CloudSyncManager

__all__ = [
    "ChangeTracker",
    "ChangeSequence",
    "ConflictResolver",
    "ConflictScan",
    "ManifestManager",
    "CloudSyncManager",
]
