"""Cloud transports for bandsync."""

from .base import CloudTransport, FileInfo, RetryHandler
from .local_folder import LocalFolderTransport

__all__ = ["CloudTransport", "FileInfo", "RetryHandler", "LocalFolderTransport"]
