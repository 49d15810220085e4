"""Utility helpers shared across bandsync."""
