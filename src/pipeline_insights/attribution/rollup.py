"""
Campaign-type rollup with cross-campaign deduplication.

An opportunity touched by several campaigns of one type in the window counts
once: attribution date is the earliest touching campaign start, value comes
from its latest qualifying snapshot.
"""

import logging
from datetime import date
from typing import Optional

from pydantic import BaseModel, Field

from pipeline_insights.analytics.dataset import Dataset
from pipeline_insights.fiscal import fiscal_year_range
from pipeline_insights.models.campaign import Campaign
from pipeline_insights.models.opportunity import Snapshot
from pipeline_insights.models.period import DateRange
from pipeline_insights.stages import is_lost, is_won

from .baseline import attribution_close_date

logger = logging.getLogger(__name__)


class RollupEntry(BaseModel):
    opportunity_id: str
    name: str = ""
    attribution_date: date
    campaign_ids: list[int] = Field(default_factory=list)
    stage: Optional[str] = None
    value: float = 0.0


class TypeRollup(BaseModel):
    campaign_type: str
    fiscal_year: int
    date_range: DateRange
    campaign_count: int = 0
    total_cost: float = 0.0
    touched_count: int = Field(0, description="Distinct opportunities touched, before qualification")
    opportunity_count: int = 0
    pipeline_value: float = 0.0
    pipeline_count: int = 0
    closed_won_value: float = 0.0
    closed_won_count: int = 0
    cac: Optional[float] = None
    entries: list[RollupEntry] = Field(default_factory=list)


class CampaignTypeRollup:
    """Deduplicated totals for one campaign type; qualifying snapshots memoised per instance."""

    def __init__(self, dataset: Dataset):
        self.dataset = dataset
        self._qualifying: dict[tuple[str, date], Optional[Snapshot]] = {}

    def qualifying_snapshot(self, opportunity_id: str, attribution_date: date) -> Optional[Snapshot]:
        """
        Latest snapshot, provided it has an entered-pipeline date and its close
        date is empty or strictly after the attribution date.
        """
        key = (opportunity_id, attribution_date)
        if key not in self._qualifying:
            snap = self.dataset.latest_as_of(opportunity_id)
            closed_on = attribution_close_date(snap) if snap else None
            ok = (
                snap is not None
                and snap.entered_pipeline is not None
                and (closed_on is None or closed_on > attribution_date)
            )
            self._qualifying[key] = snap if ok else None
        return self._qualifying[key]

    def campaigns_of_type(self, campaign_type: str, window: DateRange) -> list[Campaign]:
        wanted = campaign_type.strip().lower()
        return [
            c for c in self.dataset.campaigns()
            if c.type.strip().lower() == wanted and window.contains(c.start_date)
        ]

    def compute(self, campaign_type: str, fiscal_year: int) -> TypeRollup:
        window = fiscal_year_range(fiscal_year)
        campaigns = self.campaigns_of_type(campaign_type, window)

        touches: dict[str, list[Campaign]] = {}
        for campaign in campaigns:
            for customer in self.dataset.campaign_customers(campaign.id):
                touches.setdefault(customer.opportunity_id, []).append(campaign)

        entries: list[RollupEntry] = []
        for opp_id in sorted(touches):
            touching = touches[opp_id]
            earliest = min(c.start_date for c in touching)
            snap = self.qualifying_snapshot(opp_id, earliest)
            if snap is None:
                continue
            entries.append(
                RollupEntry(
                    opportunity_id=opp_id,
                    name=self.dataset.opportunity(opp_id).name,
                    attribution_date=earliest,
                    campaign_ids=sorted({c.id for c in touching}),
                    stage=snap.stage,
                    value=float(snap.year1_value or 0),
                )
            )

        won = [e for e in entries if is_won(e.stage)]
        pipeline = [e for e in entries if not is_won(e.stage) and not is_lost(e.stage)]
        total_cost = sum(c.cost or 0 for c in campaigns)
        logger.debug(
            "Rollup %s FY%d: %d campaigns, %d touched, %d qualifying",
            campaign_type, fiscal_year, len(campaigns), len(touches), len(entries),
        )
        return TypeRollup(
            campaign_type=campaign_type,
            fiscal_year=fiscal_year,
            date_range=window,
            campaign_count=len(campaigns),
            total_cost=total_cost,
            touched_count=len(touches),
            opportunity_count=len(entries),
            pipeline_value=sum(e.value for e in pipeline),
            pipeline_count=len(pipeline),
            closed_won_value=sum(e.value for e in won),
            closed_won_count=len(won),
            cac=total_cost / len(won) if total_cost and won else None,
            entries=entries,
        )
