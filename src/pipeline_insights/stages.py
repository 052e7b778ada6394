"""Stage names and the predicates every engine shares."""

from typing import Iterable, Optional

CLOSED_WON = "Closed Won"
CLOSED_LOST = "Closed Lost"
VALIDATION = "Validation/Introduction"
UNKNOWN = "Unknown"

CLOSED_STAGES: frozenset[str] = frozenset({CLOSED_WON, CLOSED_LOST})

# Open stages in sales-process order
STAGE_ORDER: list[str] = [
    VALIDATION,
    "Discover",
    "Developing Champions",
    "ROI Analysis/Pricing",
    "Negotiation/Review",
]


def is_closed(stage: Optional[str]) -> bool:
    return stage in CLOSED_STAGES


def is_won(stage: Optional[str]) -> bool:
    return stage == CLOSED_WON


def is_lost(stage: Optional[str]) -> bool:
    return stage == CLOSED_LOST


def is_pipeline_stage(stage: Optional[str], excluded: Iterable[str]) -> bool:
    """Open pipeline: has a stage and is not one of the excluded stages."""
    return bool(stage) and stage not in set(excluded)


def order_stages(stages: Iterable[str], order: list[str] = STAGE_ORDER) -> list[str]:
    """Sort stage names by the canonical order; unknown stages follow alphabetically."""
    known = {name: i for i, name in enumerate(order)}
    return sorted(set(stages), key=lambda s: (known.get(s, len(order)), s))
