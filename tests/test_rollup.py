"""Tests for campaign-type rollups."""

from datetime import date

import pytest

from pipeline_insights.analytics import Dataset
from pipeline_insights.attribution import CampaignTypeRollup
from pipeline_insights.models import Baseline, Campaign, CampaignCustomer, Opportunity, Snapshot

TWICE = "X" * 15
WON_LATER = "Y" * 15
WON_BEFORE = "Z" * 15
NOT_ENTERED = "Q" * 15
WEBINAR_ONLY = "R" * 15


def _customer(campaign_id: int, cid: str) -> CampaignCustomer:
    return CampaignCustomer(
        campaign_id=campaign_id,
        opportunity_id=cid,
        requested_date="2025-03-01",
        baseline=Baseline(snapshot_date="2025-02-28", stage="Discover"),
    )


@pytest.fixture
def dataset() -> Dataset:
    campaigns = [
        Campaign(id=1, name="Spring Summit", type="Event", start_date="2025-03-01", cost=500),
        Campaign(id=2, name="Roadshow", type="event", start_date="2025-04-01", cost=300),
        Campaign(id=3, name="Intro Webinar", type="Webinar", start_date="2025-03-15", cost=50),
        Campaign(id=4, name="Winter Gala", type="Event", start_date="2024-12-01", cost=900),
    ]
    customers = [
        _customer(1, TWICE),
        _customer(2, TWICE),
        _customer(2, WON_LATER),
        _customer(1, WON_BEFORE),
        _customer(1, NOT_ENTERED),
        _customer(3, WEBINAR_ONLY),
        _customer(4, WEBINAR_ONLY),
    ]
    ids = [TWICE, WON_LATER, WON_BEFORE, NOT_ENTERED, WEBINAR_ONLY]
    snapshots = [
        Snapshot(opportunity_id=TWICE, snapshot_date="2025-05-01", stage="Discover",
                 entered_pipeline="2025-02-01", year1_value=100),
        Snapshot(opportunity_id=WON_LATER, snapshot_date="2025-05-01", stage="Closed Won",
                 entered_pipeline="2025-02-01", close_date="2025-05-01", year1_value=200),
        Snapshot(opportunity_id=WON_BEFORE, snapshot_date="2025-05-01", stage="Closed Won",
                 entered_pipeline="2025-01-01", close_date="2025-02-15", year1_value=400),
        Snapshot(opportunity_id=NOT_ENTERED, snapshot_date="2025-05-01", stage="Discover", year1_value=60),
        Snapshot(opportunity_id=WEBINAR_ONLY, snapshot_date="2025-05-01", stage="Discover",
                 entered_pipeline="2025-02-01", year1_value=70),
    ]
    return Dataset(
        [Opportunity(canonical_id=cid, external_id=cid, name=f"Deal {cid[0]}") for cid in ids],
        snapshots,
        campaigns=campaigns,
        campaign_customers=customers,
    )


class TestCampaignTypeRollup:
    """Deduplicated totals per campaign type and fiscal year."""

    def test_campaigns_matched_case_insensitively_in_window(self, dataset: Dataset) -> None:
        rollup = CampaignTypeRollup(dataset).compute("EVENT", 2025)
        assert rollup.campaign_count == 2
        assert rollup.total_cost == 800
        assert rollup.date_range.start == date(2025, 2, 1)

    def test_opportunity_counted_once(self, dataset: Dataset) -> None:
        rollup = CampaignTypeRollup(dataset).compute("Event", 2025)
        assert rollup.touched_count == 4
        assert [e.opportunity_id for e in rollup.entries] == [TWICE, WON_LATER]
        twice = rollup.entries[0]
        assert twice.attribution_date == date(2025, 3, 1)
        assert twice.campaign_ids == [1, 2]

    def test_totals(self, dataset: Dataset) -> None:
        rollup = CampaignTypeRollup(dataset).compute("Event", 2025)
        assert rollup.opportunity_count == 2
        assert (rollup.pipeline_count, rollup.pipeline_value) == (1, 100)
        assert (rollup.closed_won_count, rollup.closed_won_value) == (1, 200)
        assert rollup.cac == 800

    def test_other_type(self, dataset: Dataset) -> None:
        rollup = CampaignTypeRollup(dataset).compute("Webinar", 2025)
        assert [e.opportunity_id for e in rollup.entries] == [WEBINAR_ONLY]
        assert rollup.cac is None

    def test_qualifying_snapshot(self, dataset: Dataset) -> None:
        rollup = CampaignTypeRollup(dataset)
        assert rollup.qualifying_snapshot(WON_BEFORE, date(2025, 3, 1)) is None
        assert rollup.qualifying_snapshot(WON_BEFORE, date(2025, 2, 1)) is not None
        assert rollup.qualifying_snapshot(NOT_ENTERED, date(2025, 3, 1)) is None
        first = rollup.qualifying_snapshot(TWICE, date(2025, 3, 1))
        assert rollup.qualifying_snapshot(TWICE, date(2025, 3, 1)) is first

    def test_empty_year(self, dataset: Dataset) -> None:
        rollup = CampaignTypeRollup(dataset).compute("Event", 2023)
        assert rollup.campaign_count == 0
        assert rollup.entries == []
