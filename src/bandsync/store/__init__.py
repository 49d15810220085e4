"""Local persistence for bandsync."""

from .local_store import LocalStore, StoreTransaction, ORIGIN_LOCAL, ORIGIN_REMOTE

__all__ = ["LocalStore", "StoreTransaction", "ORIGIN_LOCAL", "ORIGIN_REMOTE"]
