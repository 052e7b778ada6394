"""Per-campaign attribution: customer classification, aggregate and pipeline walk."""

import logging
from datetime import date, timedelta
from typing import Literal, Optional

from pydantic import BaseModel, Field

from pipeline_insights.analytics.dataset import Dataset
from pipeline_insights.errors import CampaignNotFoundError
from pipeline_insights.models.campaign import Campaign, CampaignCustomer, ExclusionReason
from pipeline_insights.models.settings import AnalyticsSettings
from pipeline_insights.stages import is_closed, is_lost, is_won

from .baseline import classify, stale_warning

logger = logging.getLogger(__name__)

Outcome = Literal["won", "open", "lost"]


class CustomerAttribution(BaseModel):
    """One campaign customer with its classification and current state."""

    opportunity_id: str
    name: str = ""
    client_name: Optional[str] = None
    reason: ExclusionReason
    counted: bool
    outcome: Optional[Outcome] = Field(None, description="won/open/lost from the current stage, counted customers only")
    stale: bool = False
    baseline_stage: Optional[str] = None
    baseline_value: float = 0.0
    current_stage: Optional[str] = None
    current_value: float = 0.0
    current_close_date: Optional[date] = None
    entered_pipeline: Optional[date] = None

    @property
    def rate_outcome(self) -> Optional[Outcome]:
        """Outcome for win rate and CAC, where a stale baseline counts as lost."""
        if self.outcome is not None and self.stale:
            return "lost"
        return self.outcome


class CampaignAggregate(BaseModel):
    """
    Closed-won and closed-lost counts feed win rate and CAC, so a stale
    customer is counted as lost there while its value stays in the open and
    total pipeline figures.
    """

    customer_count: int = 0
    counted_count: int = 0
    exclusions: dict[str, int] = Field(default_factory=dict)
    closed_won_count: int = 0
    closed_won_value: float = 0.0
    closed_lost_count: int = 0
    open_count: int = 0
    open_value: float = 0.0
    total_pipeline_value: float = Field(0.0, description="Open plus closed-won value of counted customers")
    starting_count: int = 0
    starting_pipeline_value: float = 0.0
    win_rate: Optional[float] = None
    close_rate: Optional[float] = None
    cost: Optional[float] = None
    cac: Optional[float] = Field(None, description="cost / closed-won count")


class CampaignAnalytics(BaseModel):
    campaign: Campaign
    as_of: Optional[date] = None
    per_customer: list[CustomerAttribution] = Field(default_factory=list)
    aggregate: CampaignAggregate
    warnings: list[str] = Field(default_factory=list)


class WalkPoint(BaseModel):
    interval_end: date
    open_pipeline: float = 0.0
    closed_won: float = 0.0
    open_count: int = 0
    won_count: int = 0


class PipelineWalk(BaseModel):
    campaign_id: int
    start: date
    end: Optional[date] = None
    points: list[WalkPoint] = Field(default_factory=list)


def _year1(value: Optional[float]) -> float:
    return float(value or 0)


class CampaignAttributionEngine:
    """
    Attribution over one Dataset. Customers are classified against their
    as-of snapshot; only Active customers feed win rate, pipeline and CAC.
    """

    def __init__(self, dataset: Dataset, settings: Optional[AnalyticsSettings] = None):
        self.dataset = dataset
        self.settings = settings or AnalyticsSettings()

    def _campaign(self, campaign_id: int) -> Campaign:
        campaign = self.dataset.campaign(campaign_id)
        if campaign is None:
            raise CampaignNotFoundError(campaign_id)
        return campaign

    def attribute(
        self,
        campaign: Campaign,
        customer: CampaignCustomer,
        as_of: Optional[date] = None,
    ) -> CustomerAttribution:
        current = self.dataset.latest_as_of(customer.opportunity_id, as_of)
        reason = classify(customer, current, campaign)
        counted = reason is ExclusionReason.ACTIVE

        outcome: Optional[Outcome] = None
        if counted:
            if is_lost(current.stage):
                outcome = "lost"
            elif is_won(current.stage):
                outcome = "won"
            else:
                outcome = "open"

        opp = self.dataset.opportunity(customer.opportunity_id)
        return CustomerAttribution(
            opportunity_id=customer.opportunity_id,
            name=opp.name,
            client_name=opp.client_name,
            reason=reason,
            counted=counted,
            outcome=outcome,
            stale=customer.stale,
            baseline_stage=customer.baseline.stage,
            baseline_value=_year1(customer.baseline.year1_value),
            current_stage=current.stage if current else None,
            current_value=_year1(current.year1_value) if current else 0.0,
            current_close_date=current.effective_close_date if current else None,
            entered_pipeline=current.entered_pipeline if current else None,
        )

    def campaign_analytics(self, campaign_id: int) -> CampaignAnalytics:
        campaign = self._campaign(campaign_id)
        customers = self.dataset.campaign_customers(campaign_id)
        rows = [self.attribute(campaign, c) for c in customers]

        warnings = []
        for customer in customers:
            warning = stale_warning(customer)
            if warning is not None:
                warnings.append(str(warning))

        counted = [r for r in rows if r.counted]
        won = [r for r in counted if r.rate_outcome == "won"]
        lost = [r for r in counted if r.rate_outcome == "lost"]
        open_ = [r for r in counted if r.outcome == "open"]
        exclusions: dict[str, int] = {}
        for r in rows:
            exclusions[r.reason.value] = exclusions.get(r.reason.value, 0) + 1

        won_value = sum(r.current_value for r in won)
        open_value = sum(r.current_value for r in open_)
        pipeline_value = sum(r.current_value for r in counted if r.outcome in ("won", "open"))
        aggregate = CampaignAggregate(
            customer_count=len(rows),
            counted_count=len(counted),
            exclusions=exclusions,
            closed_won_count=len(won),
            closed_won_value=won_value,
            closed_lost_count=len(lost),
            open_count=len(open_),
            open_value=open_value,
            total_pipeline_value=pipeline_value,
            starting_count=len(counted),
            starting_pipeline_value=sum(r.baseline_value for r in counted),
            win_rate=len(won) / (len(won) + len(lost)) if (won or lost) else None,
            close_rate=len(won) / len(counted) if counted else None,
            cost=campaign.cost,
            cac=campaign.cost / len(won) if campaign.cost and won else None,
        )
        logger.debug(
            "Campaign %s: %d customers, %d counted, %d won",
            campaign_id, len(rows), len(counted), len(won),
        )
        return CampaignAnalytics(
            campaign=campaign,
            as_of=self.dataset.latest_date,
            per_customer=rows,
            aggregate=aggregate,
            warnings=warnings,
        )

    def walk_dates(self, start: date, end: Optional[date]) -> list[date]:
        """Interval ends from start, stepping walk_interval_days, closed by end itself."""
        if end is None or end <= start:
            return [start]
        step = timedelta(days=self.settings.walk_interval_days)
        points = []
        day = start
        while day < end:
            points.append(day)
            day += step
        points.append(end)
        return points

    def pipeline_walk(self, campaign_id: int) -> PipelineWalk:
        """
        Year-1 value of counted customers at each interval end, split into open
        pipeline and closed won. Each point uses the as-of snapshot for that date.
        """
        campaign = self._campaign(campaign_id)
        customers = self.dataset.campaign_customers(campaign_id)
        end = self.dataset.latest_date

        points = []
        for day in self.walk_dates(campaign.start_date, end):
            point = WalkPoint(interval_end=day)
            for customer in customers:
                row = self.attribute(campaign, customer, as_of=day)
                if not row.counted or row.entered_pipeline is None or row.entered_pipeline > day:
                    continue
                if row.outcome == "won":
                    point.won_count += 1
                    point.closed_won += row.current_value
                elif row.outcome == "open" and not is_closed(row.current_stage):
                    point.open_count += 1
                    point.open_pipeline += row.current_value
            points.append(point)
        return PipelineWalk(campaign_id=campaign_id, start=campaign.start_date, end=end, points=points)
