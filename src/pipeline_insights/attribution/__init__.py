"""Campaign Attribution Engine: baselines, exclusions, walks and type rollups."""

from .association import BulkAssociationReport, associate_customer, bulk_associate
from .baseline import attribution_close_date, capture_baseline, classify
from .engine import CampaignAnalytics, CampaignAttributionEngine, PipelineWalk
from .rollup import CampaignTypeRollup, TypeRollup

__all__ = [
    "BulkAssociationReport",
    "CampaignAnalytics",
    "CampaignAttributionEngine",
    "CampaignTypeRollup",
    "PipelineWalk",
    "TypeRollup",
    "associate_customer",
    "attribution_close_date",
    "bulk_associate",
    "capture_baseline",
    "classify",
]
