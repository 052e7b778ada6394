"""Explicit metric filters with explanation trail."""

from .engine import FilterResult, SnapshotFilterEngine
from .rules import CurrentRecord, MetricsFilters

__all__ = ["CurrentRecord", "FilterResult", "MetricsFilters", "SnapshotFilterEngine"]
