"""
Stage transition detection over ordered snapshot histories.

A movement is emitted whenever consecutive snapshots of one opportunity carry
different stages. The first snapshot emits Unknown -> stage (pipeline creation).
Closed -> closed corrections stay in the raw list but never feed flow counts.
"""

import datetime
import logging
from typing import Optional

from pydantic import BaseModel, Field

from pipeline_insights.analytics.dataset import Dataset
from pipeline_insights.models.period import DateRange
from pipeline_insights.stages import STAGE_ORDER, UNKNOWN, is_closed, order_stages

logger = logging.getLogger(__name__)


class Movement(BaseModel):
    """One observed stage change."""

    opportunity_id: str
    opportunity_name: str = ""
    from_stage: str
    to_stage: str
    date: datetime.date
    value: float = 0.0

    @property
    def is_new_deal(self) -> bool:
        return self.from_stage == UNKNOWN

    @property
    def is_closed_correction(self) -> bool:
        return is_closed(self.from_stage) and is_closed(self.to_stage)


class FlowCount(BaseModel):
    """Aggregated from -> to transitions."""

    from_stage: str
    to_stage: str
    count: int
    value: float


class ValueChange(BaseModel):
    """Value deltas observed across stage transitions into one stage."""

    from_stage: str
    to_stage: str
    transitions: int
    year1_delta: float = Field(0.0, description="Sum of year-1 value change")
    tcv_delta: float = Field(0.0, description="Sum of total contract value change")
    increased: int = 0
    decreased: int = 0


def detect_movements(
    dataset: Dataset,
    date_range: Optional[DateRange] = None,
    value_field: str = "year1_value",
) -> list[Movement]:
    """
    Movements across every opportunity's full history, optionally limited to
    those dated inside date_range. Ordered by (date, opportunity_id).
    Snapshots without a stage are skipped.
    """
    movements: list[Movement] = []
    for opp in dataset.opportunities():
        previous: Optional[str] = None
        for snap in dataset.history(opp.canonical_id):
            if not snap.stage:
                continue
            if previous is None or snap.stage != previous:
                movements.append(
                    Movement(
                        opportunity_id=opp.canonical_id,
                        opportunity_name=opp.name,
                        from_stage=previous or UNKNOWN,
                        to_stage=snap.stage,
                        date=snap.snapshot_date,
                        value=snap.value(value_field),
                    )
                )
            previous = snap.stage

    if date_range is not None:
        movements = [m for m in movements if date_range.contains(m.date)]
    movements.sort(key=lambda m: (m.date, m.opportunity_id))
    logger.debug("Detected %d movements%s", len(movements), f" in {date_range}" if date_range else "")
    return movements


def is_flow_transition(movement: Movement) -> bool:
    """Whether a movement represents a real sales-process transition."""
    return not movement.is_closed_correction


def flow_summary(movements: list[Movement], stage_order: Optional[list[str]] = None) -> list[FlowCount]:
    """From/to counts and value, excluding closed -> closed corrections."""
    totals: dict[tuple[str, str], list[float]] = {}
    for m in movements:
        if not is_flow_transition(m):
            continue
        bucket = totals.setdefault((m.from_stage, m.to_stage), [0, 0.0])
        bucket[0] += 1
        bucket[1] += m.value

    seen = [stage for pair in totals for stage in pair]
    rank = {stage: i for i, stage in enumerate(order_stages(seen, [UNKNOWN] + (stage_order or STAGE_ORDER)))}
    return [
        FlowCount(from_stage=f, to_stage=t, count=int(c), value=v)
        for (f, t), (c, v) in sorted(totals.items(), key=lambda kv: (rank[kv[0][0]], rank[kv[0][1]]))
    ]


def new_deal_count(movements: list[Movement]) -> int:
    """Number of pipeline-creation movements (Unknown -> stage)."""
    return sum(1 for m in movements if m.is_new_deal)


def value_changes_by_stage(dataset: Dataset, date_range: Optional[DateRange] = None) -> list[ValueChange]:
    """
    Year-1 and contract value deltas between the snapshot before and the
    snapshot at each real stage transition.
    """
    totals: dict[tuple[str, str], ValueChange] = {}
    for opp_id in dataset.opportunity_ids:
        prior = None
        for snap in dataset.history(opp_id):
            if not snap.stage:
                continue
            if prior is not None and snap.stage != prior.stage:
                in_range = date_range is None or date_range.contains(snap.snapshot_date)
                if in_range and not (is_closed(prior.stage) and is_closed(snap.stage)):
                    key = (prior.stage, snap.stage)
                    change = totals.get(key) or ValueChange(from_stage=prior.stage, to_stage=snap.stage, transitions=0)
                    y1 = snap.value("year1_value") - prior.value("year1_value")
                    tcv = snap.value("tcv") - prior.value("tcv")
                    totals[key] = change.model_copy(
                        update={
                            "transitions": change.transitions + 1,
                            "year1_delta": change.year1_delta + y1,
                            "tcv_delta": change.tcv_delta + tcv,
                            "increased": change.increased + (1 if y1 > 0 else 0),
                            "decreased": change.decreased + (1 if y1 < 0 else 0),
                        }
                    )
            prior = snap
    return sorted(totals.values(), key=lambda c: (c.from_stage, c.to_stage))
