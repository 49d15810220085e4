"""Abstract cloud transport and retry helper.

A transport moves opaque byte blobs to and from a remote folder. It offers no
locking primitive, so every object carries a version tag and writes may be
made conditional on it; the manifest manager builds its optimistic
concurrency on top of that.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from ..errors import NetworkError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileInfo:
    """Metadata of one remote object."""

    path: str
    size: int
    modified_at: datetime
    version_tag: str
    md5: Optional[str] = None


class CloudTransport(ABC):
    """Base class for remote folder transports."""

    def __init__(self):
        self.logger = logging.getLogger(f"{self.__class__.__module__}.{self.__class__.__name__}")

    @abstractmethod
    async def authenticate(self) -> None:
        """Verify the remote is reachable and accepts our credentials.

        Raises:
            OfflineError: If the remote cannot be reached
            AuthenticationRequired: If credentials are missing or rejected
        """
        pass

    @abstractmethod
    async def put(self, path: str, data: bytes, if_match: Optional[str] = None,
                  if_none_match: bool = False) -> FileInfo:
        """Write an object.

        Args:
            path: Group-scoped object path
            data: Object content
            if_match: Only write if the current version tag equals this value
            if_none_match: Only write if the object does not exist yet

        Returns:
            Metadata of the written object

        Raises:
            PreconditionFailed: If a condition does not hold
        """
        pass

    @abstractmethod
    async def get_with_info(self, path: str) -> Tuple[bytes, FileInfo]:
        """Read an object together with its metadata.

        Raises:
            RemoteFileNotFound: If the object does not exist
        """
        pass

    @abstractmethod
    async def list(self, prefix: str) -> List[FileInfo]:
        """List objects whose path starts with ``prefix``."""
        pass

    @abstractmethod
    async def delete(self, path: str) -> None:
        """Delete an object; deleting a missing object is not an error."""
        pass

    @abstractmethod
    async def stat(self, path: str) -> Optional[FileInfo]:
        """Metadata for ``path``, or None if it does not exist."""
        pass

    async def get(self, path: str) -> bytes:
        data, _ = await self.get_with_info(path)
        return data

    async def exists(self, path: str) -> bool:
        return await self.stat(path) is not None


class RetryHandler:
    """Handles retry logic for failed transport operations."""

    def __init__(self, max_attempts: int = 3, initial_delay: float = 1.0):
        """Initialize retry handler.

        Args:
            max_attempts: Total number of attempts, including the first
            initial_delay: Delay before the first retry; doubled after each failure
        """
        self.max_attempts = max(1, max_attempts)
        self.initial_delay = initial_delay

    async def execute_with_retry(self, coro, *args, **kwargs):
        """Execute a coroutine function with exponential backoff retry.

        Only retryable errors (transient network failures) are retried; all
        other errors propagate immediately.

        Returns:
            Result of the coroutine

        Raises:
            The last exception if all attempts fail
        """
        delay = self.initial_delay

        for attempt in range(1, self.max_attempts + 1):
            try:
                return await coro(*args, **kwargs)
            except NetworkError as e:
                if not e.retryable or attempt == self.max_attempts:
                    logger.error(f"Giving up after {attempt} attempt(s): {e}")
                    raise
                logger.warning(f"Attempt {attempt} failed, retrying in {delay}s: {e}")
                await asyncio.sleep(delay)
                delay *= 2
