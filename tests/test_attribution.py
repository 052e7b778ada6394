"""Tests for campaign attribution: baselines, classification, aggregates and the pipeline walk."""

from datetime import date
from typing import Optional

import pytest

from pipeline_insights.analytics import Dataset
from pipeline_insights.attribution import (
    CampaignAttributionEngine,
    associate_customer,
    bulk_associate,
    capture_baseline,
    classify,
)
from pipeline_insights.attribution.baseline import attribution_close_date
from pipeline_insights.errors import CampaignNotFoundError, NoSnapshotDataError, OpportunityNotFoundError
from pipeline_insights.models import Campaign, CampaignCustomer, ExclusionReason, Opportunity, Snapshot
from pipeline_insights.store import SQLiteSnapshotStore

PREEXISTING = "P" * 15
NEVER = "N" * 15
CLOSED_EARLY = "C" * 15
WINNER = "W" * 15
OPEN = "O" * 15
STALE = "S" * 15

CAMPAIGN = Campaign(id=1, name="Spring Summit", type="Event", start_date="2025-03-01", cost=1000)


def _snap(cid: str, day: str, stage: str, **fields) -> Snapshot:
    return Snapshot(opportunity_id=cid, snapshot_date=day, stage=stage, **fields)


SNAPSHOTS = [
    _snap(PREEXISTING, "2025-02-25", "Closed Won", close_date="2025-02-20", entered_pipeline="2025-01-01"),
    _snap(PREEXISTING, "2025-03-20", "Closed Won", close_date="2025-02-20", entered_pipeline="2025-01-01"),
    _snap(NEVER, "2025-02-28", "Discover", year1_value=40),
    _snap(NEVER, "2025-03-20", "Discover", year1_value=40),
    _snap(CLOSED_EARLY, "2025-02-28", "Discover", entered_pipeline="2025-01-01", year1_value=30),
    _snap(CLOSED_EARLY, "2025-03-20", "Closed Lost", entered_pipeline="2025-01-01", close_date="2025-02-27",
          year1_value=30),
    _snap(WINNER, "2025-02-28", "Discover", entered_pipeline="2025-02-01", year1_value=100),
    _snap(WINNER, "2025-03-10", "Closed Won", entered_pipeline="2025-02-01", close_date="2025-03-10",
          year1_value=150),
    _snap(OPEN, "2025-02-28", "Discover"),
    _snap(OPEN, "2025-03-10", "Discover", entered_pipeline="2025-03-09", year1_value=200),
    _snap(OPEN, "2025-03-20", "Negotiation/Review", entered_pipeline="2025-03-09", year1_value=250),
    _snap(STALE, "2025-03-20", "Discover", entered_pipeline="2025-03-15", year1_value=80),
]


def _customer(cid: str, campaign: Campaign = CAMPAIGN, requested: Optional[date] = None) -> CampaignCustomer:
    history = sorted((s for s in SNAPSHOTS if s.opportunity_id == cid), key=lambda s: s.snapshot_date)
    requested = requested or campaign.start_date
    return CampaignCustomer(
        campaign_id=campaign.id,
        opportunity_id=cid,
        requested_date=requested,
        baseline=capture_baseline(cid, history, requested),
    )


def _dataset(campaign: Campaign = CAMPAIGN) -> Dataset:
    ids = [PREEXISTING, NEVER, CLOSED_EARLY, WINNER, OPEN, STALE]
    return Dataset(
        [Opportunity(canonical_id=cid, external_id=cid, name=f"Deal {cid[0]}") for cid in ids],
        SNAPSHOTS,
        campaigns=[campaign],
        campaign_customers=[_customer(cid, campaign) for cid in ids],
    )


class TestCaptureBaseline:
    """Baseline selection and staleness."""

    def test_closest_prior_snapshot(self) -> None:
        baseline = capture_baseline(WINNER, [s for s in SNAPSHOTS if s.opportunity_id == WINNER], date(2025, 3, 5))
        assert baseline.snapshot_date == date(2025, 2, 28)
        assert baseline.stage == "Discover"
        assert baseline.entered_pipeline is True
        assert baseline.gap_days == 5
        assert baseline.stale is False

    def test_exact_date(self) -> None:
        baseline = capture_baseline(WINNER, [s for s in SNAPSHOTS if s.opportunity_id == WINNER], date(2025, 3, 10))
        assert baseline.stage == "Closed Won"
        assert baseline.gap_days == 0

    def test_later_snapshot_used_when_nothing_prior(self) -> None:
        baseline = capture_baseline(STALE, [s for s in SNAPSHOTS if s.opportunity_id == STALE], date(2025, 3, 1))
        assert baseline.snapshot_date == date(2025, 3, 20)
        assert baseline.gap_days == 19
        assert baseline.stale is True

    def test_gap_at_threshold_not_stale(self) -> None:
        history = [_snap(WINNER, "2025-03-01", "Discover")]
        assert capture_baseline(WINNER, history, date(2025, 3, 8)).stale is False
        assert capture_baseline(WINNER, history, date(2025, 3, 9)).stale is True

    def test_no_history(self) -> None:
        with pytest.raises(NoSnapshotDataError):
            capture_baseline(WINNER, [], date(2025, 3, 1))


class TestClassify:
    """Exclusion reasons, first match wins."""

    def test_attribution_close_date(self) -> None:
        assert attribution_close_date(_snap(WINNER, "2025-03-01", "Closed Won", close_date="2025-02-01")) == date(
            2025, 2, 1
        )
        assert attribution_close_date(
            _snap(WINNER, "2025-03-01", "Closed Lost", expected_close_date="2025-02-15")
        ) == date(2025, 2, 15)
        assert attribution_close_date(_snap(WINNER, "2025-03-01", "Discover", expected_close_date="2025-02-15")) is None

    @pytest.mark.parametrize(
        "cid,expected",
        [
            (PREEXISTING, ExclusionReason.PREEXISTING_CLOSED_WON),
            (NEVER, ExclusionReason.NEVER_ENTERED_PIPELINE),
            (CLOSED_EARLY, ExclusionReason.CLOSED_BEFORE_CAMPAIGN_START),
            (WINNER, ExclusionReason.ACTIVE),
            (OPEN, ExclusionReason.ACTIVE),
        ],
    )
    def test_reasons(self, cid: str, expected: ExclusionReason) -> None:
        current = max((s for s in SNAPSHOTS if s.opportunity_id == cid), key=lambda s: s.snapshot_date)
        assert classify(_customer(cid), current, CAMPAIGN) is expected

    def test_preexisting_wins_over_later_checks(self) -> None:
        customer = _customer(PREEXISTING)
        assert classify(customer, None, CAMPAIGN) is ExclusionReason.PREEXISTING_CLOSED_WON

    def test_close_on_start_date_excluded(self) -> None:
        current = _snap(WINNER, "2025-03-20", "Closed Won", entered_pipeline="2025-02-01", close_date="2025-03-01")
        assert classify(_customer(WINNER), current, CAMPAIGN) is ExclusionReason.CLOSED_BEFORE_CAMPAIGN_START


class TestCampaignAnalytics:
    """Aggregate over counted customers."""

    def test_exclusion_counts(self) -> None:
        result = CampaignAttributionEngine(_dataset()).campaign_analytics(1)
        assert result.aggregate.customer_count == 6
        assert result.aggregate.exclusions == {
            "PreexistingClosedWon": 1,
            "NeverEnteredPipeline": 1,
            "ClosedBeforeCampaignStart": 1,
            "Active": 3,
        }

    def test_outcomes(self) -> None:
        result = CampaignAttributionEngine(_dataset()).campaign_analytics(1)
        outcomes = {r.opportunity_id: r.outcome for r in result.per_customer if r.counted}
        assert outcomes == {WINNER: "won", OPEN: "open", STALE: "open"}
        rate_outcomes = {r.opportunity_id: r.rate_outcome for r in result.per_customer if r.counted}
        assert rate_outcomes == {WINNER: "won", OPEN: "open", STALE: "lost"}

    def test_preexisting_contributes_nothing(self) -> None:
        result = CampaignAttributionEngine(_dataset()).campaign_analytics(1)
        row = next(r for r in result.per_customer if r.opportunity_id == PREEXISTING)
        assert row.counted is False
        assert row.outcome is None
        assert result.aggregate.closed_won_count == 1

    def test_aggregate_values(self) -> None:
        agg = CampaignAttributionEngine(_dataset()).campaign_analytics(1).aggregate
        assert agg.counted_count == 3
        assert agg.closed_won_value == 150
        assert agg.closed_lost_count == 1
        assert agg.open_count == 2
        assert agg.open_value == 330
        assert agg.total_pipeline_value == 480
        assert agg.starting_pipeline_value == 180
        assert agg.win_rate == 0.5
        assert agg.close_rate == pytest.approx(1 / 3)
        assert agg.cac == 1000

    def test_stale_warning_reported(self) -> None:
        result = CampaignAttributionEngine(_dataset()).campaign_analytics(1)
        assert len(result.warnings) == 1
        assert STALE in result.warnings[0]

    def test_stale_open_customer_keeps_pipeline_value(self) -> None:
        ds = Dataset(
            [Opportunity(canonical_id=STALE, external_id=STALE, name="Deal S")],
            [s for s in SNAPSHOTS if s.opportunity_id == STALE],
            campaigns=[CAMPAIGN],
            campaign_customers=[_customer(STALE)],
        )
        engine = CampaignAttributionEngine(ds)
        agg = engine.campaign_analytics(1).aggregate
        assert (agg.open_count, agg.open_value, agg.total_pipeline_value) == (1, 80, 80)
        assert (agg.closed_won_count, agg.closed_lost_count) == (0, 1)
        assert agg.win_rate == 0.0
        assert agg.cac is None
        assert engine.pipeline_walk(1).points[-1].open_pipeline == 80

    def test_cac_without_cost(self) -> None:
        free = CAMPAIGN.model_copy(update={"cost": None})
        assert CampaignAttributionEngine(_dataset(free)).campaign_analytics(1).aggregate.cac is None

    def test_unknown_campaign(self) -> None:
        with pytest.raises(CampaignNotFoundError):
            CampaignAttributionEngine(_dataset()).campaign_analytics(99)


class TestPipelineWalk:
    """Weekly open pipeline and closed won from campaign start."""

    def test_walk_dates(self) -> None:
        engine = CampaignAttributionEngine(_dataset())
        assert engine.walk_dates(date(2025, 3, 1), date(2025, 3, 20)) == [
            date(2025, 3, 1),
            date(2025, 3, 8),
            date(2025, 3, 15),
            date(2025, 3, 20),
        ]
        assert engine.walk_dates(date(2025, 3, 1), None) == [date(2025, 3, 1)]

    def test_points(self) -> None:
        walk = CampaignAttributionEngine(_dataset()).pipeline_walk(1)
        assert walk.end == date(2025, 3, 20)
        summary = [(p.interval_end, p.open_pipeline, p.open_count, p.closed_won, p.won_count) for p in walk.points]
        assert summary == [
            (date(2025, 3, 1), 130, 2, 0, 0),
            (date(2025, 3, 8), 130, 2, 0, 0),
            (date(2025, 3, 15), 230, 2, 150, 1),
            (date(2025, 3, 20), 330, 2, 150, 1),
        ]


SHORT_A = "00Q5f00000AAAAA"
SHORT_B = "00Q5f00000BBBBB"
SHORT_C = "00Q5f00000CCCCC"


@pytest.fixture
def seeded(store: SQLiteSnapshotStore) -> Campaign:
    """Acme plus two active Globex deals and one campaign."""
    store.upsert_opportunity(SHORT_A, "Acme")
    store.upsert_opportunity(SHORT_B, "Globex")
    store.upsert_opportunity(SHORT_C, "Globex")
    for cid in (SHORT_A, SHORT_B, SHORT_C):
        store.add_snapshot(_snap(cid, "2025-02-28", "Discover", entered_pipeline="2025-02-01"))
    return store.create_campaign(Campaign(name="Webinar", type="Webinar", start_date="2025-03-01"))


class TestAssociation:
    """Single and bulk association through the store."""

    def test_associate_by_long_id(self, store: SQLiteSnapshotStore, seeded: Campaign) -> None:
        customer = associate_customer(store, seeded.id, SHORT_A + "XYZ")
        assert customer.opportunity_id == SHORT_A
        assert customer.requested_date == date(2025, 3, 1)
        assert customer.baseline.snapshot_date == date(2025, 2, 28)
        assert customer.stale is False
        assert [c.opportunity_id for c in store.list_campaign_customers(seeded.id)] == [SHORT_A]

    def test_associate_stale(self, store: SQLiteSnapshotStore, seeded: Campaign) -> None:
        customer = associate_customer(store, seeded.id, SHORT_A, requested_date=date(2025, 4, 1))
        assert customer.stale is True
        assert customer.baseline.gap_days == 32

    def test_associate_unknown(self, store: SQLiteSnapshotStore, seeded: Campaign) -> None:
        with pytest.raises(CampaignNotFoundError):
            associate_customer(store, 99, SHORT_A)
        with pytest.raises(OpportunityNotFoundError):
            associate_customer(store, seeded.id, "00Q5f00000ZZZZZ")

    def test_bulk_partial_success(self, store: SQLiteSnapshotStore, seeded: Campaign) -> None:
        report = bulk_associate(store, seeded.id, ["Acme", "Globex", "Nobody", "  ", "acme"])
        assert [i.opportunity_id for i in report.successful] == [SHORT_A]
        assert [i.name for i in report.duplicates] == ["acme"]
        assert {i.name: i.error_code for i in report.failed} == {
            "Globex": "AMBIGUOUS_MATCH",
            "Nobody": "OPPORTUNITY_NOT_FOUND",
        }
        assert len(store.list_campaign_customers(seeded.id)) == 1

    def test_bulk_prefers_single_active_match(self, store: SQLiteSnapshotStore, seeded: Campaign) -> None:
        store.add_snapshot(_snap(SHORT_C, "2025-03-05", "Closed Lost", close_date="2025-03-05"))
        report = bulk_associate(store, seeded.id, ["Globex"])
        assert [i.opportunity_id for i in report.successful] == [SHORT_B]

    def test_bulk_unknown_campaign(self, store: SQLiteSnapshotStore) -> None:
        with pytest.raises(CampaignNotFoundError):
            bulk_associate(store, 42, ["Acme"])
