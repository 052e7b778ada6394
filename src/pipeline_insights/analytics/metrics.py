"""
Metrics Engine: aggregates over the latest-per-opportunity snapshot set.

Every computation starts from current_snapshot_set(): for each opportunity the
snapshot with the greatest date <= as_of, where as_of defaults to the dataset's
own latest snapshot date. Results depend only on the Dataset and the explicit
filters, never on the wall clock.
"""

import logging
from datetime import date
from itertools import combinations
from typing import Iterable, Literal, NamedTuple, Optional

from pydantic import BaseModel, Field

from pipeline_insights.analytics.dataset import Dataset
from pipeline_insights.errors import InvalidPeriodError, MissingAttributionDateError
from pipeline_insights.filtering import CurrentRecord, MetricsFilters, SnapshotFilterEngine
from pipeline_insights.fiscal import fiscal_quarter_label, fiscal_year_label
from pipeline_insights.matching import normalize_name
from pipeline_insights.models.opportunity import Opportunity, Snapshot
from pipeline_insights.models.period import DateRange
from pipeline_insights.models.settings import AnalyticsSettings
from pipeline_insights.stages import (
    CLOSED_LOST,
    CLOSED_WON,
    UNKNOWN,
    VALIDATION,
    is_closed,
    is_lost,
    is_pipeline_stage,
    is_won,
    order_stages,
)

logger = logging.getLogger(__name__)

NO_CLOSE_DATE = "No close date"
UNSPECIFIED_REASON = "Unspecified"


# --- result models ---

class PipelineSummary(BaseModel):
    as_of: Optional[date] = None
    value_field: str = "year1_value"
    pipeline_value: float = 0.0
    active_count: int = 0
    avg_deal_size: float = 0.0
    total_count: int = Field(0, description="Records in the filtered snapshot set, closed included")


class RateDeal(BaseModel):
    """A deal counted in a rate calculation."""

    opportunity_id: str
    name: str = ""
    stage: Optional[str] = None
    outcome: Literal["won", "lost", "open"]
    close_date: Optional[date] = None
    entry_date: Optional[date] = None
    value: float = 0.0


class ExcludedDeal(BaseModel):
    """
    A closed deal left out of a rate because it has no usable date.

    A deal with no close date cannot be placed in any period, so it is listed
    for every range asked about; `missing` tells it apart from an in-range
    deal that only lacks an entry date.
    """

    opportunity_id: str
    code: str
    reason: str
    missing: str = ""


class RateResult(BaseModel):
    """Rate with the exact deals behind numerator and denominator."""

    date_range: DateRange
    rate: Optional[float] = Field(None, description="numerator / denominator; None when nothing is counted")
    numerator: int = 0
    denominator: int = 0
    deals: list[RateDeal] = Field(default_factory=list)
    excluded: list[ExcludedDeal] = Field(default_factory=list)


class CategoryCount(BaseModel):
    """One histogram bucket; percentages are exact, rounding is left to presentation."""

    key: str
    count: int
    value: float = 0.0
    percentage: float = 0.0
    value_percentage: float = 0.0


class StageLossBreakdown(BaseModel):
    stage: str
    count: int
    reasons: list[CategoryCount] = Field(default_factory=list)


class SlippageResult(BaseModel):
    stage: str
    avg_slippage_days: float
    deal_count: int
    slipped_count: int = Field(0, description="Deals whose expected close moved later")
    slipped_value: float = 0.0


class DuplicatePair(BaseModel):
    normalized_name: str
    first_id: str
    second_id: str
    first_name: str
    second_name: str
    overlap_start: date
    overlap_end: date


class PeriodValue(BaseModel):
    period: str
    count: int
    value: float


class DatedValue(BaseModel):
    snapshot_date: date
    count: int
    value: float


class StageTiming(BaseModel):
    stage: str
    avg_days: float
    deal_count: int


class StageProbability(BaseModel):
    stage: str
    total_deals: int
    closed_won: int
    closed_lost: int
    win_rate: Optional[float] = None
    conversion_to_next: Optional[float] = None


class LossRecord(BaseModel):
    opportunity_id: str
    name: str = ""
    client_name: Optional[str] = None
    close_date: Optional[date] = None
    loss_reason: Optional[str] = None
    previous_stage: Optional[str] = None
    value: float = 0.0


class ClosedWonSummary(BaseModel):
    date_range: DateRange
    count: int = 0
    total_value: float = 0.0
    deals: list[RateDeal] = Field(default_factory=list)


class SupplementalMetrics(BaseModel):
    """Secondary dashboard panels, computed from the same Dataset as the headline figures."""

    pipeline_by_fiscal_quarter: list[PeriodValue] = Field(default_factory=list)
    date_slippage: list[SlippageResult] = Field(default_factory=list)
    stage_timing: list[StageTiming] = Field(default_factory=list)
    closing_probability: list[StageProbability] = Field(default_factory=list)
    closed_won: ClosedWonSummary
    recent_losses: list[LossRecord] = Field(default_factory=list)


class MetricsResult(BaseModel):
    """Dashboard aggregate for one period and filter set."""

    date_range: DateRange
    as_of: Optional[date] = None
    filters: MetricsFilters = Field(default_factory=MetricsFilters)
    pipeline: PipelineSummary
    stage_distribution: list[CategoryCount] = Field(default_factory=list)
    win_rate: RateResult
    close_rate: RateResult
    loss_reasons: list[CategoryCount] = Field(default_factory=list)
    loss_reasons_by_stage: list[StageLossBreakdown] = Field(default_factory=list)
    extra: Optional[SupplementalMetrics] = None


class _StageRun(NamedTuple):
    stage: str
    first: Snapshot
    last: Snapshot
    next: Optional[Snapshot]


# --- policy ---

def rate_entry_date(opportunity: Opportunity, snapshot: Snapshot) -> date:
    """
    Date a deal is attributed from in rate calculations: entered-pipeline date,
    falling back to the created date. Used only by rate math; raw data and
    display keep the fields as captured.
    """
    day = snapshot.entered_pipeline or snapshot.created_date or opportunity.created_date
    if day is None:
        raise MissingAttributionDateError(opportunity.canonical_id, "entered-pipeline or created date")
    return day


def _histogram(items: Iterable[tuple[str, float]], order: Optional[list[str]] = None) -> list[CategoryCount]:
    counts: dict[str, list[float]] = {}
    for key, value in items:
        bucket = counts.setdefault(key, [0, 0.0])
        bucket[0] += 1
        bucket[1] += value
    total = sum(c for c, _ in counts.values())
    total_value = sum(v for _, v in counts.values())
    if order is not None:
        keys = order_stages(counts, order)
    else:
        keys = sorted(counts, key=lambda k: (-counts[k][0], k))
    return [
        CategoryCount(
            key=k,
            count=int(counts[k][0]),
            value=counts[k][1],
            percentage=counts[k][0] * 100 / total if total else 0.0,
            value_percentage=counts[k][1] * 100 / total_value if total_value else 0.0,
        )
        for k in keys
    ]


def _stage_runs(history: Iterable[Snapshot]) -> list[_StageRun]:
    """Consecutive same-stage stretches of a history; stageless snapshots are skipped."""
    runs: list[_StageRun] = []
    first = last = None
    for snap in history:
        if not snap.stage:
            continue
        if first is not None and snap.stage != first.stage:
            runs.append(_StageRun(first.stage, first, last, snap))
            first = None
        if first is None:
            first = snap
        last = snap
    if first is not None:
        runs.append(_StageRun(first.stage, first, last, None))
    return runs


class MetricsEngine:
    """
    Pure aggregations over one Dataset.
    Filters are explicit parameters on every call; settings supply the value
    field, pipeline exclusions and stage order.
    """

    def __init__(self, dataset: Dataset, settings: Optional[AnalyticsSettings] = None):
        self.dataset = dataset
        self.settings = settings or AnalyticsSettings()

    @property
    def value_field(self) -> str:
        return self.settings.value_field

    @property
    def _stage_order(self) -> list[str]:
        return list(self.settings.stage_order) + [CLOSED_WON, CLOSED_LOST]

    def _value(self, snap: Snapshot) -> float:
        return snap.value(self.value_field)

    def _is_pipeline(self, snap: Snapshot) -> bool:
        return is_pipeline_stage(snap.stage, self.settings.pipeline_excluded_stages)

    # --- core projection ---

    def current_snapshot_set(
        self,
        as_of: Optional[date] = None,
        filters: Optional[MetricsFilters] = None,
    ) -> list[CurrentRecord]:
        """Latest snapshot per opportunity as of as_of, then filtered."""
        records = []
        for opp in self.dataset.opportunities():
            snap = self.dataset.latest_as_of(opp.canonical_id, as_of)
            if snap is not None:
                records.append(CurrentRecord(opp, snap))
        return SnapshotFilterEngine(filters, self.value_field).filter_passed(records)

    def pipeline_summary(
        self,
        as_of: Optional[date] = None,
        filters: Optional[MetricsFilters] = None,
    ) -> PipelineSummary:
        records = self.current_snapshot_set(as_of, filters)
        open_records = [r for r in records if self._is_pipeline(r.snapshot)]
        value = sum(self._value(r.snapshot) for r in open_records)
        return PipelineSummary(
            as_of=as_of or self.dataset.latest_date,
            value_field=self.value_field,
            pipeline_value=value,
            active_count=len(open_records),
            avg_deal_size=value / len(open_records) if open_records else 0.0,
            total_count=len(records),
        )

    # --- rates ---

    def _rate_deal(self, record: CurrentRecord, outcome: str, entry: Optional[date]) -> RateDeal:
        return RateDeal(
            opportunity_id=record.opportunity.canonical_id,
            name=record.opportunity.name,
            stage=record.snapshot.stage,
            outcome=outcome,
            close_date=record.snapshot.effective_close_date,
            entry_date=entry,
            value=self._value(record.snapshot),
        )

    def _excluded(self, error: MissingAttributionDateError) -> ExcludedDeal:
        logger.warning("%s", error)
        return ExcludedDeal(
            opportunity_id=error.opportunity_id,
            code=error.code,
            reason=str(error),
            missing=error.details.get("missing", ""),
        )

    def _closed_in_range(
        self,
        records: list[CurrentRecord],
        date_range: DateRange,
    ) -> tuple[list[RateDeal], list[ExcludedDeal]]:
        """Closed deals whose close date falls in range and that have an attribution date."""
        deals: list[RateDeal] = []
        excluded: list[ExcludedDeal] = []
        for record in records:
            snap = record.snapshot
            if not is_closed(snap.stage):
                continue
            close_day = snap.effective_close_date
            if close_day is None:
                excluded.append(
                    self._excluded(MissingAttributionDateError(record.opportunity.canonical_id, "close date"))
                )
                continue
            if not date_range.contains(close_day):
                continue
            try:
                entry = rate_entry_date(record.opportunity, snap)
            except MissingAttributionDateError as e:
                excluded.append(self._excluded(e))
                continue
            deals.append(self._rate_deal(record, "won" if is_won(snap.stage) else "lost", entry))
        return deals, excluded

    def win_rate(self, date_range: DateRange, filters: Optional[MetricsFilters] = None) -> RateResult:
        """Closed Won / (Closed Won + Closed Lost), by close date in range."""
        records = self.current_snapshot_set(None, filters)
        deals, excluded = self._closed_in_range(records, date_range)
        won = sum(1 for d in deals if d.outcome == "won")
        return RateResult(
            date_range=date_range,
            rate=won / len(deals) if deals else None,
            numerator=won,
            denominator=len(deals),
            deals=deals,
            excluded=excluded,
        )

    def close_rate(self, date_range: DateRange, filters: Optional[MetricsFilters] = None) -> RateResult:
        """
        Closed Won / (Closed Won + Closed Lost + open deals that entered the
        pipeline in range). Open deals use the same entry-date policy.
        """
        records = self.current_snapshot_set(None, filters)
        deals, excluded = self._closed_in_range(records, date_range)
        for record in records:
            if is_closed(record.snapshot.stage) or not record.snapshot.stage:
                continue
            try:
                entry = rate_entry_date(record.opportunity, record.snapshot)
            except MissingAttributionDateError:
                logger.debug("Open deal %s has no entry date; not counted", record.opportunity.canonical_id)
                continue
            if date_range.contains(entry):
                deals.append(self._rate_deal(record, "open", entry))
        won = sum(1 for d in deals if d.outcome == "won")
        return RateResult(
            date_range=date_range,
            rate=won / len(deals) if deals else None,
            numerator=won,
            denominator=len(deals),
            deals=deals,
            excluded=excluded,
        )

    # --- distributions ---

    def stage_distribution(
        self,
        as_of: Optional[date] = None,
        filters: Optional[MetricsFilters] = None,
    ) -> list[CategoryCount]:
        records = self.current_snapshot_set(as_of, filters)
        return _histogram(
            ((r.snapshot.stage, self._value(r.snapshot)) for r in records if r.snapshot.stage),
            order=self._stage_order,
        )

    def _lost_in_range(self, date_range: Optional[DateRange], filters: Optional[MetricsFilters]) -> list[CurrentRecord]:
        return [
            r
            for r in self.current_snapshot_set(None, filters)
            if is_lost(r.snapshot.stage)
            and (date_range is None or date_range.contains(r.snapshot.effective_close_date))
        ]

    def loss_reason_breakdown(
        self,
        date_range: Optional[DateRange] = None,
        filters: Optional[MetricsFilters] = None,
    ) -> list[CategoryCount]:
        lost = self._lost_in_range(date_range, filters)
        return _histogram((r.snapshot.loss_reason or UNSPECIFIED_REASON, self._value(r.snapshot)) for r in lost)

    def previous_stage(self, snapshot: Snapshot) -> Optional[str]:
        """Stage held before the snapshot's stage: stage_before when captured, else from history."""
        if snapshot.stage_before:
            return snapshot.stage_before
        earlier = [s for s in self.dataset.history(snapshot.opportunity_id) if s.snapshot_date < snapshot.snapshot_date]
        for prior in reversed(earlier):
            if prior.stage and prior.stage != snapshot.stage:
                return prior.stage
        return None

    def loss_reason_by_previous_stage(
        self,
        date_range: Optional[DateRange] = None,
        filters: Optional[MetricsFilters] = None,
    ) -> list[StageLossBreakdown]:
        grouped: dict[str, list[CurrentRecord]] = {}
        for record in self._lost_in_range(date_range, filters):
            grouped.setdefault(self.previous_stage(record.snapshot) or UNKNOWN, []).append(record)
        return [
            StageLossBreakdown(
                stage=stage,
                count=len(grouped[stage]),
                reasons=_histogram(
                    (r.snapshot.loss_reason or UNSPECIFIED_REASON, self._value(r.snapshot)) for r in grouped[stage]
                ),
            )
            for stage in order_stages(grouped, self._stage_order)
        ]

    # --- history-based ---

    def date_slippage(self, stage: Optional[str] = None) -> list[SlippageResult]:
        """
        Expected-close drift while in a stage: expected close date at the last
        observation before exiting minus the one at entry, averaged over
        opportunities that passed through. Only the first completed pass counts.
        """
        per_stage: dict[str, list[tuple[int, float]]] = {}
        for opp_id in self.dataset.opportunity_ids:
            seen: set[str] = set()
            for run in _stage_runs(self.dataset.history(opp_id)):
                if run.next is None or run.stage in seen or is_closed(run.stage):
                    continue
                if stage is not None and run.stage != stage:
                    continue
                entered, exited = run.first.expected_close_date, run.last.expected_close_date
                if entered is None or exited is None:
                    continue
                seen.add(run.stage)
                per_stage.setdefault(run.stage, []).append(((exited - entered).days, self._value(run.last)))

        results = []
        for name in order_stages(per_stage, self._stage_order):
            samples = per_stage[name]
            slipped = [(d, v) for d, v in samples if d > 0]
            results.append(
                SlippageResult(
                    stage=name,
                    avg_slippage_days=sum(d for d, _ in samples) / len(samples),
                    deal_count=len(samples),
                    slipped_count=len(slipped),
                    slipped_value=sum(v for _, v in slipped),
                )
            )
        return results

    def stage_timing(self) -> list[StageTiming]:
        """Average days spent in each stage before a real stage change."""
        totals: dict[str, list[float]] = {}
        for opp_id in self.dataset.opportunity_ids:
            for run in _stage_runs(self.dataset.history(opp_id)):
                if run.next is None:
                    continue
                days = (run.next.snapshot_date - run.first.snapshot_date).days
                if days > 0:
                    bucket = totals.setdefault(run.stage, [0.0, 0])
                    bucket[0] += days
                    bucket[1] += 1
        return [
            StageTiming(stage=s, avg_days=totals[s][0] / totals[s][1], deal_count=int(totals[s][1]))
            for s in order_stages(totals, self._stage_order)
        ]

    def duplicate_detection(self) -> list[DuplicatePair]:
        """
        Pairs of opportunities with equal normalized names, different canonical
        ids and overlapping windows of non-Closed-Lost snapshots.
        """
        windows: dict[str, list[tuple[Opportunity, date, date]]] = {}
        for opp in self.dataset.opportunities():
            key = normalize_name(opp.name)
            if not key:
                continue
            active = [s.snapshot_date for s in self.dataset.history(opp.canonical_id) if not is_lost(s.stage)]
            if active:
                windows.setdefault(key, []).append((opp, min(active), max(active)))

        pairs: list[DuplicatePair] = []
        for key in sorted(windows):
            for (a, a_start, a_end), (b, b_start, b_end) in combinations(windows[key], 2):
                if a.canonical_id == b.canonical_id:
                    continue
                if a_start <= b_end and b_start <= a_end:
                    pairs.append(
                        DuplicatePair(
                            normalized_name=key,
                            first_id=a.canonical_id,
                            second_id=b.canonical_id,
                            first_name=a.name,
                            second_name=b.name,
                            overlap_start=max(a_start, b_start),
                            overlap_end=min(a_end, b_end),
                        )
                    )
        return pairs

    # --- supplemental ---

    def pipeline_by_fiscal_period(
        self,
        granularity: str = "quarter",
        as_of: Optional[date] = None,
        filters: Optional[MetricsFilters] = None,
    ) -> list[PeriodValue]:
        """Open pipeline bucketed by the fiscal period of the expected close date."""
        labellers = {
            "year": fiscal_year_label,
            "quarter": fiscal_quarter_label,
            "month": lambda d: d.strftime("%Y-%m"),
        }
        if granularity not in labellers:
            raise InvalidPeriodError(granularity, "granularity must be year, quarter or month")
        label = labellers[granularity]

        buckets: dict[str, list] = {}
        for record in self.current_snapshot_set(as_of, filters):
            if not self._is_pipeline(record.snapshot):
                continue
            close = record.snapshot.expected_close_date
            key = label(close) if close else NO_CLOSE_DATE
            bucket = buckets.setdefault(key, [close or date.max, 0, 0.0])
            if close and close < bucket[0]:
                bucket[0] = close
            bucket[1] += 1
            bucket[2] += self._value(record.snapshot)
        return [
            PeriodValue(period=k, count=v[1], value=v[2])
            for k, v in sorted(buckets.items(), key=lambda kv: kv[1][0])
        ]

    def pipeline_value_by_date(self, date_range: Optional[DateRange] = None) -> list[DatedValue]:
        """Open-pipeline value captured on each snapshot date."""
        series: dict[date, list] = {}
        for opp_id in self.dataset.opportunity_ids:
            for snap in self.dataset.history(opp_id):
                if date_range is not None and not date_range.contains(snap.snapshot_date):
                    continue
                point = series.setdefault(snap.snapshot_date, [0, 0.0])
                if self._is_pipeline(snap):
                    point[0] += 1
                    point[1] += self._value(snap)
        return [DatedValue(snapshot_date=d, count=c, value=v) for d, (c, v) in sorted(series.items())]

    def closing_probability(self, date_range: Optional[DateRange] = None) -> list[StageProbability]:
        """
        For deals that closed in range, per funnel stage: how many visited it,
        how many of those won, and how many reached a later stage.
        """
        funnel = [
            s
            for s in self.settings.stage_order
            if s != VALIDATION or self.settings.include_validation_in_funnel
        ]
        closed = [
            r
            for r in self.current_snapshot_set()
            if is_closed(r.snapshot.stage)
            and (date_range is None or date_range.contains(r.snapshot.effective_close_date))
        ]
        journeys = [
            ({s.stage for s in self.dataset.history(r.opportunity.canonical_id) if s.stage}, is_won(r.snapshot.stage))
            for r in closed
        ]

        results = []
        for i, stage in enumerate(funnel):
            later = set(funnel[i + 1:]) | {CLOSED_WON}
            visited = [(stages, won) for stages, won in journeys if stage in stages]
            won = sum(1 for _, w in visited if w)
            advanced = sum(1 for stages, _ in visited if stages & later)
            results.append(
                StageProbability(
                    stage=stage,
                    total_deals=len(visited),
                    closed_won=won,
                    closed_lost=len(visited) - won,
                    win_rate=won / len(visited) if visited else None,
                    conversion_to_next=advanced / len(visited) if visited else None,
                )
            )
        return results

    def recent_losses(self, limit: int = 10, filters: Optional[MetricsFilters] = None) -> list[LossRecord]:
        lost = self._lost_in_range(None, filters)
        lost.sort(
            key=lambda r: (r.snapshot.effective_close_date or date.min, r.opportunity.canonical_id),
            reverse=True,
        )
        return [
            LossRecord(
                opportunity_id=r.opportunity.canonical_id,
                name=r.opportunity.name,
                client_name=r.opportunity.client_name,
                close_date=r.snapshot.effective_close_date,
                loss_reason=r.snapshot.loss_reason,
                previous_stage=self.previous_stage(r.snapshot),
                value=self._value(r.snapshot),
            )
            for r in lost[:limit]
        ]

    def closed_won_summary(
        self,
        date_range: DateRange,
        filters: Optional[MetricsFilters] = None,
    ) -> ClosedWonSummary:
        deals = [
            self._rate_deal(r, "won", None)
            for r in self.current_snapshot_set(None, filters)
            if is_won(r.snapshot.stage) and date_range.contains(r.snapshot.effective_close_date)
        ]
        deals.sort(key=lambda d: (d.close_date, d.opportunity_id))
        return ClosedWonSummary(
            date_range=date_range,
            count=len(deals),
            total_value=sum(d.value for d in deals),
            deals=deals,
        )

    def supplemental(
        self,
        date_range: DateRange,
        as_of: Optional[date] = None,
        filters: Optional[MetricsFilters] = None,
    ) -> SupplementalMetrics:
        return SupplementalMetrics(
            pipeline_by_fiscal_quarter=self.pipeline_by_fiscal_period("quarter", as_of, filters),
            date_slippage=self.date_slippage(),
            stage_timing=self.stage_timing(),
            closing_probability=self.closing_probability(date_range),
            closed_won=self.closed_won_summary(date_range, filters),
            recent_losses=self.recent_losses(filters=filters),
        )
