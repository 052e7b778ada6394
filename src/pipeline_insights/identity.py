"""
Identity resolution: reconcile external opportunity ids into one canonical entity.

The canonical id is the first 15 characters of the external id. An 18-character
id upgrades a stored 15-character id sharing the prefix; the reverse never
happens. Name-only matching refuses to guess between active opportunities.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional

from pipeline_insights.errors import (
    AmbiguousMatchError,
    InvalidIdentifierError,
    OpportunityNotFoundError,
)
from pipeline_insights.matching import names_match, normalize_name
from pipeline_insights.models.opportunity import Opportunity

logger = logging.getLogger(__name__)

SHORT_ID_LENGTH = 15
LONG_ID_LENGTH = 18


def canonical_id(external_id: str) -> str:
    """First 15 characters of a validated external id."""
    ext = (external_id or "").strip()
    if len(ext) not in (SHORT_ID_LENGTH, LONG_ID_LENGTH):
        raise InvalidIdentifierError(ext)
    return ext[:SHORT_ID_LENGTH]


@dataclass(frozen=True)
class Resolution:
    """Outcome of reconciling one incoming id."""

    opportunity: Opportunity
    created: bool = False
    upgraded: bool = False


def reconcile(
    existing: Optional[Opportunity],
    external_id: str,
    name: str,
    *,
    client_name: Optional[str] = None,
    owner: Optional[str] = None,
    created_date: Optional[date] = None,
) -> Resolution:
    """
    Pure reconciliation step. `existing` is the stored opportunity with the same
    canonical id, or None. Returns the opportunity to persist and what changed.
    """
    ext = external_id.strip()
    key = canonical_id(ext)

    if existing is None:
        opp = Opportunity(
            canonical_id=key,
            external_id=ext,
            name=name,
            client_name=client_name,
            owner=owner,
            created_date=created_date,
        )
        return Resolution(opportunity=opp, created=True)

    if existing.canonical_id != key:
        raise ValueError(f"Existing opportunity {existing.canonical_id} does not match id {ext}")

    if len(existing.external_id) < len(ext):
        logger.info("Upgrading external id %s -> %s", existing.external_id, ext)
        return Resolution(
            opportunity=existing.model_copy(update={"external_id": ext}),
            upgraded=True,
        )
    return Resolution(opportunity=existing)


def match_by_name(
    opportunities: Iterable[Opportunity],
    name: str,
    *,
    active_ids: Optional[set[str]] = None,
) -> Opportunity:
    """
    Find the single opportunity whose name or client name matches `name`.

    When several match, only active ones (canonical id in `active_ids`) are
    considered; more than one active candidate raises AmbiguousMatchError.
    A lone inactive candidate is returned; several inactive ones are ambiguous too.
    """
    if not normalize_name(name):
        raise OpportunityNotFoundError(name)

    candidates = [o for o in opportunities if names_match(name, o.name) or names_match(name, o.client_name)]
    if not candidates:
        raise OpportunityNotFoundError(name)
    if len(candidates) == 1:
        return candidates[0]

    active = [o for o in candidates if active_ids is None or o.canonical_id in active_ids]
    if len(active) == 1:
        return active[0]
    pool = active or candidates
    raise AmbiguousMatchError(name, sorted(o.canonical_id for o in pool))
