"""Exception hierarchy for the sync core.

Lower layers (local store, transport, manifest manager, change tracker) raise
these; the sync manager and conflict resolver turn them into result objects
carrying a status and an ``error_kind``.
"""


class BandSyncError(Exception):
    """Base exception for sync operations."""
    
    retryable = False
    
    @property
    def kind(self) -> str:
        """Short machine-readable name used in result objects."""
        return self.__class__.__name__


class StorageUnavailable(BandSyncError):
    """Local store I/O failed; nothing about the attempted write is durable."""
    retryable = True


class TransportError(BandSyncError):
    """Base exception for cloud transport failures."""
    pass


class NetworkError(TransportError):
    """Transient network failure."""
    retryable = True


class OfflineError(NetworkError):
    """The remote folder cannot be reached at all."""
    retryable = False


class AuthenticationRequired(TransportError):
    """Remote transport rejected our credentials."""
    pass


class RemoteFileNotFound(TransportError):
    """Requested remote object does not exist."""
    
    def __init__(self, path: str):
        super().__init__(f"Remote file not found: {path}")
        self.path = path


class PreconditionFailed(TransportError):
    """Conditional write rejected because the remote object changed."""
    
    def __init__(self, path: str, expected: str = None, actual: str = None):
        super().__init__(f"Precondition failed for {path}: expected {expected}, found {actual}")
        self.path = path
        self.expected = expected
        self.actual = actual


class ManifestError(BandSyncError):
    """Base exception for remote manifest and change log problems."""
    pass


class ManifestNotFound(ManifestError):
    """The group manifest does not exist on the remote."""
    pass


class ManifestCorrupt(ManifestError):
    """A remote manifest or change log could not be parsed."""
    pass


class ManifestConflict(ManifestError):
    """Optimistic write lost the race more times than the retry budget allows."""
    retryable = True


class IncompatibleVersion(BandSyncError):
    """The group requires a newer client than the one installed."""
    
    def __init__(self, installed: str, required: str):
        super().__init__(f"Group requires app version {required} or newer (installed: {installed})")
        self.installed = installed
        self.required = required


class ShareCodeError(BandSyncError):
    """Share code is malformed, unknown or expired."""
    pass


class UnknownGroup(BandSyncError):
    """No local record exists for the requested group."""
    pass


class ConcurrentChange(ManifestError):
    """Another device published changes to entities this device is pushing.

    Raised instead of appending, so the sync cycle runs conflict detection
    again with the newer remote log.
    """
    retryable = True

    def __init__(self, group_id: str, entity_keys):
        keys = sorted(f"{entity_type}:{entity_id}" for entity_type, entity_id in entity_keys)
        super().__init__(f"Concurrent remote changes in group {group_id} to {', '.join(keys)}")
        self.group_id = group_id
        self.entity_keys = set(entity_keys)


class CloudSyncDisabled(BandSyncError):
    """The group is not (or no longer) linked to a cloud folder."""
    pass
