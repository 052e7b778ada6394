"""Campaign and campaign-customer models."""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pipeline_insights.models.period import as_utc_date


class ExclusionReason(str, Enum):
    """Attribution classification, evaluated in declaration order."""

    PREEXISTING_CLOSED_WON = "PreexistingClosedWon"
    NEVER_ENTERED_PIPELINE = "NeverEnteredPipeline"
    CLOSED_BEFORE_CAMPAIGN_START = "ClosedBeforeCampaignStart"
    ACTIVE = "Active"


class Campaign(BaseModel):
    """Marketing campaign."""

    id: Optional[int] = None
    name: str
    type: str
    start_date: date
    cost: Optional[float] = None
    status: str = "active"
    notes: Optional[str] = None

    @field_validator("start_date", mode="before")
    @classmethod
    def coerce_dates(cls, v: object) -> object:
        return as_utc_date(v)


class Baseline(BaseModel):
    """Snapshot fields captured when a customer is associated with a campaign."""

    model_config = ConfigDict(frozen=True)

    snapshot_date: date
    stage: Optional[str] = None
    year1_value: Optional[float] = None
    tcv: Optional[float] = None
    close_date: Optional[date] = None
    entered_pipeline: bool = False
    stale: bool = False
    gap_days: int = 0


class CampaignCustomer(BaseModel):
    """Opportunity associated with a campaign, with its frozen baseline."""

    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    campaign_id: int
    opportunity_id: str
    requested_date: date
    baseline: Baseline
    attendees: Optional[int] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def stale(self) -> bool:
        return self.baseline.stale
