"""bandsync - offline-first sync and conflict resolution for shared band libraries."""

__version__ = "1.0.0"
