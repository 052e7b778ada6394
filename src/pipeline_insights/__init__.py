"""Snapshot-based pipeline analytics and campaign attribution."""

__version__ = "0.1.0"
