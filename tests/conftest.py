"""Pytest fixtures for pipeline-insights tests."""

import tempfile
from pathlib import Path

import pytest

from pipeline_insights.models.settings import AnalyticsSettings
from pipeline_insights.service import AnalyticsService
from pipeline_insights.store import SQLiteSnapshotStore


@pytest.fixture
def temp_db() -> Path:
    """Temporary database path for isolated tests."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        path = Path(f.name)
    yield path
    path.unlink(missing_ok=True)


@pytest.fixture
def store(temp_db: Path) -> SQLiteSnapshotStore:
    """SQLiteSnapshotStore with temporary database."""
    return SQLiteSnapshotStore(temp_db)


@pytest.fixture
def settings(temp_db: Path) -> AnalyticsSettings:
    return AnalyticsSettings(db_path=temp_db)


@pytest.fixture
def service(store: SQLiteSnapshotStore, settings: AnalyticsSettings) -> AnalyticsService:
    return AnalyticsService(store, settings)
