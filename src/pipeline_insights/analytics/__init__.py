"""Metrics Engine and Stage Transition Detector over a fixed Dataset."""

from pipeline_insights.analytics.dataset import Dataset

__all__ = ["Dataset"]
