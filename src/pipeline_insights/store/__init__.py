"""Storage port and its SQLite adapter."""

from pipeline_insights.store.base import SnapshotStore
from pipeline_insights.store.sqlite_store import SQLiteSnapshotStore

__all__ = ["SQLiteSnapshotStore", "SnapshotStore"]
