"""Content hashing for entity payloads and file blobs."""

import hashlib
import json
from typing import Any, Dict, Optional


# Checksum recorded for DELETE changes; two deletions of the same entity
# therefore always compare as identical outcomes.
TOMBSTONE_CHECKSUM = "tombstone"

# Fields that change on every save without changing the entity's content.
VOLATILE_FIELDS = frozenset({"updatedAt", "updated_at", "lastModified", "last_modified"})


def canonical_json(payload: Dict[str, Any]) -> str:
    """Serialize a payload deterministically (sorted keys, compact separators)."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def entity_checksum(payload: Optional[Dict[str, Any]]) -> str:
    """Compute the deterministic content hash of an entity payload.
    
    Args:
        payload: Serialized entity state, or None for a deleted entity
        
    Returns:
        Hex SHA-256 digest of the canonical payload without volatile fields
    """
    if payload is None:
        return TOMBSTONE_CHECKSUM
    
    content = {key: value for key, value in payload.items() if key not in VOLATILE_FIELDS}
    return hashlib.sha256(canonical_json(content).encode("utf-8")).hexdigest()


def content_md5(data: bytes) -> str:
    """MD5 of raw blob content, used to decide whether a file needs uploading."""
    return hashlib.md5(data).hexdigest()


def content_tag(data: bytes) -> str:
    """Version tag for an object stored on the transport."""
    return hashlib.sha256(data).hexdigest()
