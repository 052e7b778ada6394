"""Data models for opportunities, snapshots, campaigns and settings."""

from pipeline_insights.models.campaign import Baseline, Campaign, CampaignCustomer, ExclusionReason
from pipeline_insights.models.opportunity import IngestBatch, IngestRecord, Opportunity, Snapshot
from pipeline_insights.models.period import DateRange, as_utc_date
from pipeline_insights.models.settings import AnalyticsSettings

__all__ = [
    "AnalyticsSettings",
    "Baseline",
    "Campaign",
    "CampaignCustomer",
    "DateRange",
    "ExclusionReason",
    "IngestBatch",
    "IngestRecord",
    "Opportunity",
    "Snapshot",
    "as_utc_date",
]
