"""Baseline capture and exclusion classification for campaign customers."""

import logging
from datetime import date
from typing import Optional, Sequence

from pipeline_insights.errors import NoSnapshotDataError, StaleBaselineWarning
from pipeline_insights.models.campaign import Baseline, Campaign, CampaignCustomer, ExclusionReason
from pipeline_insights.models.opportunity import Snapshot
from pipeline_insights.stages import is_closed, is_won

logger = logging.getLogger(__name__)

STALE_BASELINE_DAYS = 7


def capture_baseline(
    opportunity_id: str,
    history: Sequence[Snapshot],
    requested: date,
    stale_days: int = STALE_BASELINE_DAYS,
) -> Baseline:
    """
    Freeze the snapshot closest at-or-before `requested`.

    When nothing precedes the requested date the earliest later snapshot is
    used. A gap of more than `stale_days` marks the baseline stale.
    """
    if not history:
        raise NoSnapshotDataError(opportunity_id)

    prior = [s for s in history if s.snapshot_date <= requested]
    chosen = prior[-1] if prior else history[0]
    gap = abs((requested - chosen.snapshot_date).days)
    stale = gap > stale_days
    if stale:
        logger.warning("%s", StaleBaselineWarning(opportunity_id, requested, chosen.snapshot_date, gap))

    return Baseline(
        snapshot_date=chosen.snapshot_date,
        stage=chosen.stage,
        year1_value=chosen.year1_value,
        tcv=chosen.tcv,
        close_date=chosen.close_date,
        entered_pipeline=chosen.entered_pipeline is not None,
        stale=stale,
        gap_days=gap,
    )


def stale_warning(customer: CampaignCustomer) -> Optional[StaleBaselineWarning]:
    if not customer.stale:
        return None
    return StaleBaselineWarning(
        customer.opportunity_id,
        customer.requested_date,
        customer.baseline.snapshot_date,
        customer.baseline.gap_days,
    )


def attribution_close_date(snapshot: Snapshot) -> Optional[date]:
    """Actual close date; a closed deal without one falls back to its expected close date."""
    if snapshot.close_date is not None:
        return snapshot.close_date
    if is_closed(snapshot.stage):
        return snapshot.expected_close_date
    return None


def classify(
    customer: CampaignCustomer,
    current: Optional[Snapshot],
    campaign: Campaign,
) -> ExclusionReason:
    """
    Exactly one reason per customer, first match wins:
    PreexistingClosedWon, NeverEnteredPipeline, ClosedBeforeCampaignStart, Active.
    """
    if is_won(customer.baseline.stage):
        return ExclusionReason.PREEXISTING_CLOSED_WON
    if current is None or current.entered_pipeline is None:
        return ExclusionReason.NEVER_ENTERED_PIPELINE
    closed_on = attribution_close_date(current)
    if closed_on is not None and closed_on <= campaign.start_date:
        return ExclusionReason.CLOSED_BEFORE_CAMPAIGN_START
    return ExclusionReason.ACTIVE
