"""Tests for the Metrics Engine."""

from datetime import date
from typing import Optional

import pytest

from pipeline_insights.analytics import Dataset
from pipeline_insights.analytics.metrics import MetricsEngine, rate_entry_date
from pipeline_insights.errors import InvalidPeriodError, MissingAttributionDateError
from pipeline_insights.filtering import MetricsFilters
from pipeline_insights.fiscal import fiscal_year_range
from pipeline_insights.models import AnalyticsSettings, DateRange, Opportunity, Snapshot

WON = "W" * 15
LOST = "L" * 15
OPEN = "O" * 15
NODATE = "N" * 15

FY2025 = fiscal_year_range(2025)


def _opp(cid: str, name: str = "", owner: Optional[str] = None, created: Optional[str] = None) -> Opportunity:
    return Opportunity(canonical_id=cid, external_id=cid, name=name or cid, owner=owner, created_date=created)


def _snap(cid: str, day: str, stage: str, **fields) -> Snapshot:
    return Snapshot(opportunity_id=cid, snapshot_date=day, stage=stage, **fields)


@pytest.fixture
def pipeline() -> Dataset:
    """Four deals: one won, one lost, one still open, one won without any close date."""
    return Dataset(
        [
            _opp(WON, "Acme", owner="alice"),
            _opp(LOST, "Globex", owner="bob"),
            _opp(OPEN, "Initech", owner="alice"),
            _opp(NODATE, "Umbrella", owner="carol"),
        ],
        [
            _snap(WON, "2025-01-01", "Discover", year1_value=100, entered_pipeline="2025-01-01",
                  expected_close_date="2025-03-15"),
            _snap(WON, "2025-03-01", "Closed Won", year1_value=120, entered_pipeline="2025-01-01",
                  close_date="2025-03-01"),
            _snap(LOST, "2025-01-01", "Developing Champions", year1_value=50, entered_pipeline="2024-12-01",
                  expected_close_date="2025-04-01"),
            _snap(LOST, "2025-03-01", "Closed Lost", year1_value=50, entered_pipeline="2024-12-01",
                  close_date="2025-02-20", loss_reason="Price"),
            _snap(OPEN, "2025-02-10", "Discover", year1_value=200, entered_pipeline="2025-02-10",
                  expected_close_date="2025-06-30"),
            _snap(OPEN, "2025-03-01", "Negotiation/Review", year1_value=200, entered_pipeline="2025-02-10",
                  expected_close_date="2025-07-15"),
            _snap(NODATE, "2025-03-01", "Closed Won", year1_value=75, entered_pipeline="2025-01-20"),
        ],
    )


@pytest.fixture
def engine(pipeline: Dataset) -> MetricsEngine:
    return MetricsEngine(pipeline)


class TestRateEntryDate:
    """Entry-date policy used by rate calculations."""

    def test_entered_pipeline_preferred(self) -> None:
        opp = _opp(WON, created="2024-06-01")
        snap = _snap(WON, "2025-01-01", "Discover", entered_pipeline="2025-01-01", created_date="2024-12-01")
        assert rate_entry_date(opp, snap) == date(2025, 1, 1)

    def test_falls_back_to_created_date(self) -> None:
        opp = _opp(WON, created="2024-06-01")
        assert rate_entry_date(opp, _snap(WON, "2025-01-01", "Discover")) == date(2024, 6, 1)

    def test_missing_raises(self) -> None:
        with pytest.raises(MissingAttributionDateError):
            rate_entry_date(_opp(WON), _snap(WON, "2025-01-01", "Closed Won"))


class TestCurrentSnapshotSet:
    """Latest-per-opportunity projection."""

    def test_latest_per_opportunity(self, engine: MetricsEngine) -> None:
        records = engine.current_snapshot_set()
        stages = {r.opportunity.canonical_id: r.snapshot.stage for r in records}
        assert stages == {
            WON: "Closed Won",
            LOST: "Closed Lost",
            OPEN: "Negotiation/Review",
            NODATE: "Closed Won",
        }

    def test_as_of_ignores_later_snapshots(self, engine: MetricsEngine) -> None:
        records = engine.current_snapshot_set(as_of=date(2025, 1, 15))
        assert {r.opportunity.canonical_id for r in records} == {WON, LOST}
        assert all(r.snapshot.snapshot_date <= date(2025, 1, 15) for r in records)

    def test_filters_applied(self, engine: MetricsEngine) -> None:
        records = engine.current_snapshot_set(filters=MetricsFilters(owners=["Alice"]))
        assert {r.opportunity.canonical_id for r in records} == {WON, OPEN}


class TestPipelineSummary:
    """Open pipeline value and counts."""

    def test_latest(self, engine: MetricsEngine) -> None:
        summary = engine.pipeline_summary()
        assert summary.as_of == date(2025, 3, 1)
        assert summary.pipeline_value == 200
        assert summary.active_count == 1
        assert summary.avg_deal_size == 200
        assert summary.total_count == 4

    def test_as_of(self, engine: MetricsEngine) -> None:
        summary = engine.pipeline_summary(as_of=date(2025, 1, 15))
        assert summary.pipeline_value == 150
        assert summary.active_count == 2
        assert summary.avg_deal_size == 75

    def test_value_field_from_settings(self, pipeline: Dataset) -> None:
        engine = MetricsEngine(pipeline, AnalyticsSettings(value_field="amount"))
        assert engine.pipeline_summary().pipeline_value == 0

    def test_empty_dataset(self) -> None:
        summary = MetricsEngine(Dataset([], [])).pipeline_summary()
        assert summary.active_count == 0
        assert summary.avg_deal_size == 0.0


class TestWinRate:
    """Closed Won / all closed, by close date."""

    def test_fiscal_year(self, engine: MetricsEngine) -> None:
        result = engine.win_rate(FY2025)
        assert result.numerator == 1
        assert result.denominator == 2
        assert result.rate == 0.5
        assert {d.opportunity_id: d.outcome for d in result.deals} == {WON: "won", LOST: "lost"}

    def test_missing_close_date_reported(self, engine: MetricsEngine) -> None:
        result = engine.win_rate(FY2025)
        assert [e.opportunity_id for e in result.excluded] == [NODATE]
        assert result.excluded[0].code == "MISSING_ATTRIBUTION_DATE"
        assert result.excluded[0].missing == "close date"

    def test_missing_close_date_listed_for_any_range(self, engine: MetricsEngine) -> None:
        result = engine.win_rate(fiscal_year_range(2023))
        assert [(e.opportunity_id, e.missing) for e in result.excluded] == [(NODATE, "close date")]

    def test_range_excludes_close_on_end(self, engine: MetricsEngine) -> None:
        result = engine.win_rate(DateRange(start=date(2025, 2, 1), end=date(2025, 3, 1)))
        assert result.numerator == 0
        assert result.denominator == 1

    def test_nothing_closed(self, engine: MetricsEngine) -> None:
        result = engine.win_rate(fiscal_year_range(2023))
        assert result.rate is None
        assert result.denominator == 0

    def test_filtered(self, engine: MetricsEngine) -> None:
        result = engine.win_rate(FY2025, MetricsFilters(owners=["alice"]))
        assert result.rate == 1.0

    def test_created_date_fallback(self) -> None:
        ds = Dataset(
            [_opp(WON, created="2025-01-01")],
            [
                _snap(WON, "2025-01-01", "Discover"),
                _snap(WON, "2025-03-01", "Closed Won", close_date="2025-03-01"),
            ],
        )
        result = MetricsEngine(ds).win_rate(FY2025)
        assert (result.numerator, result.denominator) == (1, 1)
        assert result.deals[0].entry_date == date(2025, 1, 1)

    def test_closed_without_entry_date_excluded(self) -> None:
        ds = Dataset([_opp(WON)], [_snap(WON, "2025-03-01", "Closed Won", close_date="2025-03-01")])
        result = MetricsEngine(ds).win_rate(FY2025)
        assert result.denominator == 0
        assert [e.opportunity_id for e in result.excluded] == [WON]
        assert result.excluded[0].missing == "entered-pipeline or created date"


class TestCloseRate:
    """Closed Won / (closed + open deals that entered in range)."""

    def test_open_deal_in_denominator(self, engine: MetricsEngine) -> None:
        result = engine.close_rate(FY2025)
        assert result.numerator == 1
        assert result.denominator == 3
        assert {d.opportunity_id: d.outcome for d in result.deals}[OPEN] == "open"

    def test_open_deal_entered_outside_range(self, engine: MetricsEngine) -> None:
        result = engine.close_rate(DateRange(start=date(2025, 2, 15), end=date(2025, 4, 1)))
        assert OPEN not in {d.opportunity_id for d in result.deals}
        assert result.denominator == 2


class TestDistributions:
    """Stage histogram and loss reasons."""

    def test_stage_distribution_ordered(self, engine: MetricsEngine) -> None:
        buckets = engine.stage_distribution()
        assert [b.key for b in buckets] == ["Negotiation/Review", "Closed Won", "Closed Lost"]
        assert [b.count for b in buckets] == [1, 2, 1]
        assert [b.percentage for b in buckets] == [25.0, 50.0, 25.0]

    def test_loss_reasons(self, engine: MetricsEngine) -> None:
        buckets = engine.loss_reason_breakdown(FY2025)
        assert [(b.key, b.count, b.percentage) for b in buckets] == [("Price", 1, 100.0)]

    def test_loss_reasons_out_of_range(self, engine: MetricsEngine) -> None:
        assert engine.loss_reason_breakdown(fiscal_year_range(2024)) == []

    def test_loss_by_previous_stage(self, engine: MetricsEngine) -> None:
        groups = engine.loss_reason_by_previous_stage(FY2025)
        assert [(g.stage, g.count) for g in groups] == [("Developing Champions", 1)]
        assert groups[0].reasons[0].key == "Price"

    def test_previous_stage_prefers_captured_field(self, engine: MetricsEngine) -> None:
        snap = _snap(LOST, "2025-03-01", "Closed Lost", stage_before="ROI Analysis/Pricing")
        assert engine.previous_stage(snap) == "ROI Analysis/Pricing"

    def test_recent_losses(self, engine: MetricsEngine) -> None:
        losses = engine.recent_losses()
        assert [loss.opportunity_id for loss in losses] == [LOST]
        assert losses[0].previous_stage == "Developing Champions"
        assert losses[0].close_date == date(2025, 2, 20)

    def test_closed_won_summary(self, engine: MetricsEngine) -> None:
        summary = engine.closed_won_summary(FY2025)
        assert summary.count == 1
        assert summary.total_value == 120


@pytest.fixture
def wandering() -> Dataset:
    """One deal that leaves Discover, returns to it, then wins."""
    return Dataset(
        [_opp(WON)],
        [
            _snap(WON, "2025-01-01", "Discover", expected_close_date="2025-03-01", year1_value=10),
            _snap(WON, "2025-01-15", "Discover", expected_close_date="2025-03-31", year1_value=10),
            _snap(WON, "2025-02-01", "Negotiation/Review", expected_close_date="2025-04-15", year1_value=10),
            _snap(WON, "2025-02-15", "Discover", expected_close_date="2025-05-01", year1_value=10),
            _snap(WON, "2025-03-01", "Discover", expected_close_date="2025-06-01", year1_value=10),
            _snap(WON, "2025-03-15", "Closed Won", close_date="2025-03-15", year1_value=10),
        ],
    )


class TestHistoryMetrics:
    """Slippage, stage timing and duplicates."""

    def test_slippage_first_pass_only(self, wandering: Dataset) -> None:
        results = MetricsEngine(wandering).date_slippage()
        by_stage = {r.stage: r for r in results}
        assert [r.stage for r in results] == ["Discover", "Negotiation/Review"]
        assert by_stage["Discover"].avg_slippage_days == 30
        assert by_stage["Discover"].deal_count == 1
        assert by_stage["Discover"].slipped_count == 1
        assert by_stage["Negotiation/Review"].avg_slippage_days == 0
        assert by_stage["Negotiation/Review"].slipped_count == 0

    def test_slippage_single_stage(self, wandering: Dataset) -> None:
        results = MetricsEngine(wandering).date_slippage(stage="Negotiation/Review")
        assert [r.stage for r in results] == ["Negotiation/Review"]

    def test_stage_timing(self, wandering: Dataset) -> None:
        timing = {t.stage: t for t in MetricsEngine(wandering).stage_timing()}
        assert timing["Discover"].avg_days == 29.5
        assert timing["Discover"].deal_count == 2
        assert timing["Negotiation/Review"].avg_days == 14
        assert "Closed Won" not in timing

    def test_duplicates_overlapping_windows(self) -> None:
        ds = Dataset(
            [_opp(WON, "Acme, Inc."), _opp(LOST, "acme"), _opp(OPEN, "Other")],
            [
                _snap(WON, "2025-01-01", "Discover"),
                _snap(WON, "2025-02-01", "Discover"),
                _snap(LOST, "2025-01-15", "Discover"),
                _snap(OPEN, "2025-01-15", "Discover"),
            ],
        )
        pairs = MetricsEngine(ds).duplicate_detection()
        assert len(pairs) == 1
        assert pairs[0].normalized_name == "acme"
        assert {pairs[0].first_id, pairs[0].second_id} == {WON, LOST}
        assert pairs[0].overlap_start == pairs[0].overlap_end == date(2025, 1, 15)

    def test_closed_lost_windows_ignored(self) -> None:
        ds = Dataset(
            [_opp(WON, "Acme"), _opp(LOST, "Acme")],
            [
                _snap(WON, "2025-01-01", "Discover"),
                _snap(WON, "2025-02-01", "Closed Lost"),
                _snap(LOST, "2025-02-01", "Discover"),
            ],
        )
        assert MetricsEngine(ds).duplicate_detection() == []


class TestSupplementalMetrics:
    """Fiscal bucketing, value series and closing probability."""

    def test_pipeline_by_fiscal_quarter(self, engine: MetricsEngine) -> None:
        buckets = engine.pipeline_by_fiscal_period("quarter")
        assert [(b.period, b.count, b.value) for b in buckets] == [("FY2025 Q2", 1, 200)]

    def test_pipeline_by_fiscal_quarter_as_of(self, engine: MetricsEngine) -> None:
        buckets = engine.pipeline_by_fiscal_period("quarter", as_of=date(2025, 1, 15))
        assert [(b.period, b.count, b.value) for b in buckets] == [("FY2025 Q1", 2, 150)]

    def test_invalid_granularity(self, engine: MetricsEngine) -> None:
        with pytest.raises(InvalidPeriodError):
            engine.pipeline_by_fiscal_period("week")

    def test_value_by_date(self, engine: MetricsEngine) -> None:
        series = engine.pipeline_value_by_date()
        assert [(p.snapshot_date, p.count, p.value) for p in series] == [
            (date(2025, 1, 1), 2, 150),
            (date(2025, 2, 10), 1, 200),
            (date(2025, 3, 1), 1, 200),
        ]

    def test_closing_probability(self, engine: MetricsEngine) -> None:
        stages = {s.stage: s for s in engine.closing_probability(FY2025)}
        assert stages["Validation/Introduction"].total_deals == 0
        assert stages["Validation/Introduction"].win_rate is None
        assert stages["Discover"].win_rate == 1.0
        assert stages["Discover"].conversion_to_next == 1.0
        assert stages["Developing Champions"].closed_lost == 1
        assert stages["Developing Champions"].conversion_to_next == 0.0

    def test_closing_probability_without_validation(self, pipeline: Dataset) -> None:
        engine = MetricsEngine(pipeline, AnalyticsSettings(include_validation_in_funnel=False))
        stages = [s.stage for s in engine.closing_probability(FY2025)]
        assert "Validation/Introduction" not in stages
        assert stages[0] == "Discover"
