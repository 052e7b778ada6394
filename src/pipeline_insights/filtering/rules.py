"""Filter rules: each returns (passed, explanation, rule_id)."""

from typing import NamedTuple, Optional

from pydantic import BaseModel, Field

from pipeline_insights.matching import search_matches
from pipeline_insights.models.opportunity import Opportunity, Snapshot


class MetricsFilters(BaseModel):
    """Explicit filter parameters passed into every metrics call."""

    owners: list[str] = Field(default_factory=list)
    stages: list[str] = Field(default_factory=list)
    clients: list[str] = Field(default_factory=list)
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    search: Optional[str] = Field(default=None, description="Free text matched against name, client and owner")

    def is_empty(self) -> bool:
        return (
            not self.owners
            and not self.stages
            and not self.clients
            and self.min_value is None
            and self.max_value is None
            and not (self.search or "").strip()
        )


class CurrentRecord(NamedTuple):
    """An opportunity paired with its as-of snapshot."""

    opportunity: Opportunity
    snapshot: Snapshot


def _normalize_for_match(text: Optional[str]) -> str:
    """Lowercase and strip for matching; empty string if None."""
    return (text or "").lower().strip()


def apply_owner_rule(record: CurrentRecord, filters: MetricsFilters, value_field: str) -> tuple[bool, str, str]:
    if not filters.owners:
        return True, "Owner filter not set", "owner"
    owner = _normalize_for_match(record.opportunity.owner)
    if owner in {_normalize_for_match(o) for o in filters.owners}:
        return True, f"Matches owner: {record.opportunity.owner}", "owner"
    return False, f"Excluded: owner {record.opportunity.owner!r} not selected", "owner"


def apply_stage_rule(record: CurrentRecord, filters: MetricsFilters, value_field: str) -> tuple[bool, str, str]:
    if not filters.stages:
        return True, "Stage filter not set", "stage"
    if record.snapshot.stage in filters.stages:
        return True, f"Matches stage: {record.snapshot.stage}", "stage"
    return False, f"Excluded: stage {record.snapshot.stage!r} not selected", "stage"


def apply_client_rule(record: CurrentRecord, filters: MetricsFilters, value_field: str) -> tuple[bool, str, str]:
    if not filters.clients:
        return True, "Client filter not set", "client"
    client = _normalize_for_match(record.opportunity.display_client)
    if client in {_normalize_for_match(c) for c in filters.clients}:
        return True, f"Matches client: {record.opportunity.display_client}", "client"
    return False, f"Excluded: client {record.opportunity.display_client!r} not selected", "client"


def apply_value_rule(record: CurrentRecord, filters: MetricsFilters, value_field: str) -> tuple[bool, str, str]:
    """
    Value range on the configured value field, bounds inclusive.
    Missing values count as 0.
    """
    if filters.min_value is None and filters.max_value is None:
        return True, "Value filter not set", "value"
    value = record.snapshot.value(value_field)
    if filters.min_value is not None and value < filters.min_value:
        return False, f"Excluded: {value_field} {value} below min {filters.min_value}", "value"
    if filters.max_value is not None and value > filters.max_value:
        return False, f"Excluded: {value_field} {value} above max {filters.max_value}", "value"
    return True, f"{value_field} {value} within range", "value"


def apply_search_rule(record: CurrentRecord, filters: MetricsFilters, value_field: str) -> tuple[bool, str, str]:
    query = (filters.search or "").strip()
    if not query:
        return True, "Search not set", "search"
    searchable = " ".join(
        [
            record.opportunity.name,
            record.opportunity.client_name or "",
            record.opportunity.owner or "",
            record.opportunity.external_id,
        ]
    )
    if search_matches(searchable, query):
        return True, f"Matches search: {query}", "search"
    return False, f"Excluded: no match for search {query!r}", "search"
