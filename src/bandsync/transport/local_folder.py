"""Shared-folder transport.

Treats a directory (a synced drive, NAS mount or plain local folder) as the
remote. Writes go to a temporary file and are renamed into place, so readers
never see partial objects. Conditional writes are checked and applied under a
lock so two writers in the same process cannot both pass the same check.
"""

import asyncio
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional, Tuple

from ..errors import (
    AuthenticationRequired,
    NetworkError,
    OfflineError,
    PreconditionFailed,
    RemoteFileNotFound,
)
from ..utils.checksum import content_md5, content_tag
from .base import CloudTransport, FileInfo


# One lock per folder, shared by every transport instance in this process
_folder_locks: Dict[Path, threading.Lock] = {}
_folder_locks_guard = threading.Lock()


def _lock_for(root: Path) -> threading.Lock:
    with _folder_locks_guard:
        return _folder_locks.setdefault(root, threading.Lock())


class LocalFolderTransport(CloudTransport):
    """Transport that stores objects as files below ``root``."""

    def __init__(self, root: Path, create: bool = False):
        """Initialize the transport.

        Args:
            root: Directory acting as the shared cloud folder
            create: Create ``root`` if it does not exist yet
        """
        super().__init__()
        self.root = Path(root).expanduser().absolute()
        if create:
            self.root.mkdir(parents=True, exist_ok=True)
        self._lock = _lock_for(self.root)

    def _get_path(self, remote_key: str) -> Path:
        """Get absolute local path for a remote key."""
        parts = PurePosixPath(remote_key.strip("/")).parts
        if not parts or any(part in ("..", ".") for part in parts):
            raise ValueError(f"Invalid remote path: {remote_key!r}")
        return self.root.joinpath(*parts)

    def _require_root(self):
        if not self.root.is_dir():
            raise OfflineError(f"Cloud folder not available: {self.root}")

    def _info(self, remote_key: str, path: Path, data: Optional[bytes] = None) -> FileInfo:
        if data is None:
            data = path.read_bytes()
        stat = path.stat()
        return FileInfo(
            path=remote_key.strip("/"),
            size=stat.st_size,
            modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            version_tag=content_tag(data),
            md5=content_md5(data),
        )

    async def authenticate(self) -> None:
        await asyncio.to_thread(self._authenticate_sync)

    def _authenticate_sync(self):
        self._require_root()
        if not os.access(self.root, os.R_OK | os.W_OK):
            raise AuthenticationRequired(f"No read/write access to cloud folder {self.root}")

    async def put(self, path: str, data: bytes, if_match: Optional[str] = None,
                  if_none_match: bool = False) -> FileInfo:
        return await asyncio.to_thread(self._put_sync, path, data, if_match, if_none_match)

    def _put_sync(self, remote_key: str, data: bytes, if_match: Optional[str],
                  if_none_match: bool) -> FileInfo:
        self._require_root()
        dest_path = self._get_path(remote_key)
        with self._lock:
            exists = dest_path.exists()
            if if_none_match and exists:
                raise PreconditionFailed(remote_key, expected="<absent>", actual="<present>")
            if if_match is not None:
                current = content_tag(dest_path.read_bytes()) if exists else None
                if current != if_match:
                    raise PreconditionFailed(remote_key, expected=if_match, actual=current)

            try:
                dest_path.parent.mkdir(parents=True, exist_ok=True)
                fd, temp_name = tempfile.mkstemp(dir=dest_path.parent, prefix=".tmp-")
                try:
                    with os.fdopen(fd, "wb") as f:
                        f.write(data)
                    os.replace(temp_name, dest_path)
                except BaseException:
                    if os.path.exists(temp_name):
                        os.remove(temp_name)
                    raise
            except PermissionError as e:
                raise AuthenticationRequired(f"Write to {remote_key} denied: {e}") from e
            except OSError as e:
                raise NetworkError(f"Write to {remote_key} failed: {e}") from e

            return self._info(remote_key, dest_path, data)

    async def get_with_info(self, path: str) -> Tuple[bytes, FileInfo]:
        return await asyncio.to_thread(self._get_sync, path)

    def _get_sync(self, remote_key: str) -> Tuple[bytes, FileInfo]:
        self._require_root()
        src_path = self._get_path(remote_key)
        try:
            data = src_path.read_bytes()
        except FileNotFoundError:
            raise RemoteFileNotFound(remote_key) from None
        except PermissionError as e:
            raise AuthenticationRequired(f"Read of {remote_key} denied: {e}") from e
        except OSError as e:
            raise NetworkError(f"Read of {remote_key} failed: {e}") from e
        return data, self._info(remote_key, src_path, data)

    async def stat(self, path: str) -> Optional[FileInfo]:
        return await asyncio.to_thread(self._stat_sync, path)

    def _stat_sync(self, remote_key: str) -> Optional[FileInfo]:
        self._require_root()
        path = self._get_path(remote_key)
        if not path.is_file():
            return None
        return self._info(remote_key, path)

    async def list(self, prefix: str) -> List[FileInfo]:
        return await asyncio.to_thread(self._list_sync, prefix)

    def _list_sync(self, prefix: str) -> List[FileInfo]:
        self._require_root()
        search_path = self._get_path(prefix) if prefix.strip("/") else self.root
        if not search_path.exists():
            return []

        files = []
        for root, _, filenames in os.walk(search_path):
            for filename in sorted(filenames):
                if filename.startswith(".tmp-"):
                    continue
                full_path = Path(root) / filename
                rel_path = full_path.relative_to(self.root).as_posix()
                files.append(self._info(rel_path, full_path))
        return sorted(files, key=lambda info: info.path)

    async def delete(self, path: str) -> None:
        await asyncio.to_thread(self._delete_sync, path)

    def _delete_sync(self, remote_key: str):
        self._require_root()
        path = self._get_path(remote_key)
        with self._lock:
            try:
                path.unlink()
            except FileNotFoundError:
                return
            except OSError as e:
                raise NetworkError(f"Delete of {remote_key} failed: {e}") from e
