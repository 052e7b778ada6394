"""
Caller-facing analytics operations.

Each call performs one bulk read from the store and computes over that fixed
Dataset, so concurrent ingest never shows up mid-request. Relative periods
resolve against the dataset's latest snapshot date, not the wall clock.
"""

import logging
from datetime import date
from typing import Optional, Union

from pipeline_insights.analytics.dataset import Dataset
from pipeline_insights.analytics.metrics import MetricsEngine, MetricsResult, RateResult
from pipeline_insights.analytics.movements import Movement, detect_movements
from pipeline_insights.attribution import (
    CampaignAnalytics,
    CampaignAttributionEngine,
    CampaignTypeRollup,
    PipelineWalk,
    TypeRollup,
)
from pipeline_insights.filtering import MetricsFilters
from pipeline_insights.fiscal import FiscalCalendar
from pipeline_insights.models.period import DateRange
from pipeline_insights.models.settings import AnalyticsSettings
from pipeline_insights.store.base import SnapshotStore

logger = logging.getLogger(__name__)

Period = Union[str, DateRange]

EMPTY_DATASET_ANCHOR = date(1970, 1, 1)


class AnalyticsService:
    """Resolves periods, loads a Dataset and delegates to the engines."""

    def __init__(
        self,
        store: SnapshotStore,
        settings: Optional[AnalyticsSettings] = None,
        calendar: Optional[FiscalCalendar] = None,
    ):
        self.store = store
        self.settings = settings or AnalyticsSettings()
        self.calendar = calendar or FiscalCalendar()

    def load(self) -> Dataset:
        return self.store.load_dataset()

    def resolve(
        self,
        period: Period,
        dataset: Dataset,
        reference: Optional[date] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> DateRange:
        """
        Period token or explicit range, anchored at reference (default: the
        dataset's latest date). An empty dataset has no anchor; tokens still
        resolve and validate, and every aggregate over it is empty.
        """
        anchor = reference or dataset.latest_date or start or EMPTY_DATASET_ANCHOR
        return self.calendar.resolve(period, anchor, start=start, end=end)

    def metrics_engine(self, dataset: Dataset) -> MetricsEngine:
        return MetricsEngine(dataset, self.settings)

    def compute_metrics(
        self,
        period: Period,
        filters: Optional[MetricsFilters] = None,
        *,
        as_of: Optional[date] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
        extra: bool = False,
    ) -> MetricsResult:
        """Headline metrics, plus the supplemental panels when extra is set, from one read."""
        dataset = self.load()
        date_range = self.resolve(period, dataset, as_of, start, end)
        engine = self.metrics_engine(dataset)
        filters = filters or MetricsFilters()
        logger.debug("compute_metrics %s as_of=%s", date_range, as_of or dataset.latest_date)
        return MetricsResult(
            date_range=date_range,
            as_of=as_of or dataset.latest_date,
            filters=filters,
            pipeline=engine.pipeline_summary(as_of, filters),
            stage_distribution=engine.stage_distribution(as_of, filters),
            win_rate=engine.win_rate(date_range, filters),
            close_rate=engine.close_rate(date_range, filters),
            loss_reasons=engine.loss_reason_breakdown(date_range, filters),
            loss_reasons_by_stage=engine.loss_reason_by_previous_stage(date_range, filters),
            extra=engine.supplemental(date_range, as_of, filters) if extra else None,
        )

    def compute_win_rate(
        self,
        period: Period,
        filters: Optional[MetricsFilters] = None,
        *,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> RateResult:
        dataset = self.load()
        date_range = self.resolve(period, dataset, start=start, end=end)
        return self.metrics_engine(dataset).win_rate(date_range, filters)

    def compute_close_rate(
        self,
        period: Period,
        filters: Optional[MetricsFilters] = None,
        *,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> RateResult:
        dataset = self.load()
        date_range = self.resolve(period, dataset, start=start, end=end)
        return self.metrics_engine(dataset).close_rate(date_range, filters)

    def compute_movements(
        self,
        period: Period,
        *,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> list[Movement]:
        dataset = self.load()
        date_range = self.resolve(period, dataset, start=start, end=end)
        return detect_movements(dataset, date_range, value_field=self.settings.value_field)

    def compute_campaign_analytics(self, campaign_id: int) -> CampaignAnalytics:
        return CampaignAttributionEngine(self.load(), self.settings).campaign_analytics(campaign_id)

    def compute_pipeline_walk(self, campaign_id: int) -> PipelineWalk:
        return CampaignAttributionEngine(self.load(), self.settings).pipeline_walk(campaign_id)

    def compute_campaign_type_rollup(self, campaign_type: str, fiscal_year: int) -> TypeRollup:
        return CampaignTypeRollup(self.load()).compute(campaign_type, fiscal_year)
