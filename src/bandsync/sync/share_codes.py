"""Share codes for inviting devices into a group."""

import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qs, urlencode, urlparse

from ..errors import ShareCodeError
from ..models import ShareCode, expiry_from_hours


SHARE_CODE_PREFIX = "BS-"
DEEP_LINK_SCHEME = "bandsync"
SHARE_CODE_PATTERN = re.compile(r"^BS-[0-9A-F]{8}$")


@dataclass
class ShareTarget:
    """What a user pasted: either a short code or a fully resolved deep link."""

    code: Optional[str] = None
    group_id: Optional[str] = None
    folder_id: Optional[str] = None


def build_deep_link(group_id: str, folder_id: str) -> str:
    return f"{DEEP_LINK_SCHEME}://join?{urlencode({'group': group_id, 'folder': folder_id})}"


def generate_share_code(group_id: str, folder_id: str, ttl_hours: Optional[float] = None) -> ShareCode:
    """Create the share code for a group.

    The short code is derived from the group id, so regenerating it for the
    same group yields the same code.
    """
    compact = re.sub(r"[^0-9A-Fa-f]", "", group_id)
    if len(compact) < 8:
        raise ShareCodeError(f"Group id {group_id!r} is too short for a share code")

    return ShareCode(
        code=f"{SHARE_CODE_PREFIX}{compact[:8].upper()}",
        deep_link=build_deep_link(group_id, folder_id),
        group_id=group_id,
        folder_id=folder_id,
        expires_at=expiry_from_hours(ttl_hours),
    )


def parse_share_input(text: str) -> ShareTarget:
    """Parse a pasted short code or deep link.

    Raises:
        ShareCodeError: If the input is neither
    """
    value = (text or "").strip()
    if value.lower().startswith(f"{DEEP_LINK_SCHEME}://"):
        parsed = urlparse(value)
        params = parse_qs(parsed.query)
        group_id = (params.get("group") or [None])[0]
        folder_id = (params.get("folder") or [None])[0]
        if parsed.netloc != "join" or not group_id or not folder_id:
            raise ShareCodeError(f"Malformed share link: {value}")
        return ShareTarget(group_id=group_id, folder_id=folder_id)

    code = value.upper()
    if not SHARE_CODE_PATTERN.match(code):
        raise ShareCodeError(f"Not a valid share code: {value!r}")
    return ShareTarget(code=code)
