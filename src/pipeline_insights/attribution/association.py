"""Associate opportunities with campaigns, one by id or in bulk by name."""

import logging
from datetime import date
from typing import Literal, Optional

from pydantic import BaseModel, Field

from pipeline_insights.errors import (
    CampaignNotFoundError,
    DataIntegrityError,
    IdentityError,
    OpportunityNotFoundError,
)
from pipeline_insights.identity import canonical_id, match_by_name
from pipeline_insights.models.campaign import CampaignCustomer
from pipeline_insights.models.settings import AnalyticsSettings
from pipeline_insights.stages import is_closed
from pipeline_insights.store.base import SnapshotStore

from .baseline import capture_baseline

logger = logging.getLogger(__name__)


class BulkAssociationItem(BaseModel):
    name: str
    status: Literal["added", "duplicate", "failed"]
    opportunity_id: Optional[str] = None
    error_code: Optional[str] = None
    message: Optional[str] = None
    stale: bool = False


class BulkAssociationReport(BaseModel):
    campaign_id: int
    successful: list[BulkAssociationItem] = Field(default_factory=list)
    duplicates: list[BulkAssociationItem] = Field(default_factory=list)
    failed: list[BulkAssociationItem] = Field(default_factory=list)


def associate_customer(
    store: SnapshotStore,
    campaign_id: int,
    opportunity_id: str,
    requested_date: Optional[date] = None,
    attendees: Optional[int] = None,
    settings: Optional[AnalyticsSettings] = None,
) -> CampaignCustomer:
    """
    Add one opportunity (canonical or external id) to a campaign, freezing its
    baseline as of requested_date (campaign start when omitted).
    """
    settings = settings or AnalyticsSettings()
    campaign = store.get_campaign(campaign_id)
    if campaign is None:
        raise CampaignNotFoundError(campaign_id)
    key = canonical_id(opportunity_id)
    if store.get_opportunity(key) is None:
        raise OpportunityNotFoundError(opportunity_id)

    requested = requested_date or campaign.start_date
    baseline = capture_baseline(
        key,
        store.list_snapshots(opportunity_id=key),
        requested,
        stale_days=settings.stale_baseline_days,
    )
    customer = CampaignCustomer(
        campaign_id=campaign_id,
        opportunity_id=key,
        requested_date=requested,
        baseline=baseline,
        attendees=attendees,
    )
    saved = store.add_campaign_customer(customer)
    logger.info("Associated %s with campaign %s (baseline %s)", key, campaign_id, baseline.snapshot_date)
    return saved


def bulk_associate(
    store: SnapshotStore,
    campaign_id: int,
    names: list[str],
    requested_date: Optional[date] = None,
    settings: Optional[AnalyticsSettings] = None,
) -> BulkAssociationReport:
    """
    Match each name to a single opportunity and associate it.
    Ambiguous and unknown names fail individually; the rest of the list proceeds.
    """
    if store.get_campaign(campaign_id) is None:
        raise CampaignNotFoundError(campaign_id)

    dataset = store.load_dataset()
    opportunities = dataset.opportunities()
    active_ids = {
        o.canonical_id
        for o in opportunities
        if (snap := dataset.latest_as_of(o.canonical_id)) is not None and not is_closed(snap.stage)
    }
    existing = {c.opportunity_id for c in store.list_campaign_customers(campaign_id)}
    report = BulkAssociationReport(campaign_id=campaign_id)

    for raw_name in names:
        name = raw_name.strip()
        if not name:
            continue
        try:
            opp = match_by_name(opportunities, name, active_ids=active_ids)
            if opp.canonical_id in existing:
                report.duplicates.append(
                    BulkAssociationItem(
                        name=name,
                        status="duplicate",
                        opportunity_id=opp.canonical_id,
                        message="already in campaign",
                    )
                )
                continue
            customer = associate_customer(
                store, campaign_id, opp.canonical_id, requested_date=requested_date, settings=settings
            )
        except (IdentityError, DataIntegrityError) as e:
            logger.warning("Bulk associate %r failed: %s", name, e)
            report.failed.append(
                BulkAssociationItem(name=name, status="failed", error_code=e.code, message=str(e))
            )
            continue
        existing.add(customer.opportunity_id)
        report.successful.append(
            BulkAssociationItem(
                name=name,
                status="added",
                opportunity_id=customer.opportunity_id,
                stale=customer.stale,
            )
        )
    return report
