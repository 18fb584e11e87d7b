"""Persistence for exported coordinator state."""

from collective.storage.archive import SnapshotArchive

__all__ = ["SnapshotArchive"]
