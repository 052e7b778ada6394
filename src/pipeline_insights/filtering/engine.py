"""Applies MetricsFilters to current records, keeping an explanation trail per rule."""

from typing import Callable, Optional

from pydantic import BaseModel, Field

from .rules import (
    CurrentRecord,
    MetricsFilters,
    apply_client_rule,
    apply_owner_rule,
    apply_search_rule,
    apply_stage_rule,
    apply_value_rule,
)


class FilterResult(BaseModel):
    """Result of filtering one current record."""

    passed: bool = Field(..., description="All filters passed")
    explanations: list[str] = Field(default_factory=list)
    record: CurrentRecord
    excluded_by_rule: Optional[str] = Field(
        default=None,
        description="First rule that excluded (owner|stage|client|value|search)",
    )


RuleFn = Callable[[CurrentRecord, MetricsFilters, str], tuple[bool, str, str]]


class SnapshotFilterEngine:
    """
    Applies explicit MetricsFilters to (opportunity, snapshot) records.
    Every rule runs so the explanation trail is complete; the first failing
    rule is reported as the exclusion reason.
    """

    def __init__(self, filters: Optional[MetricsFilters] = None, value_field: str = "year1_value"):
        self.filters = filters or MetricsFilters()
        self.value_field = value_field
        self._rules: list[RuleFn] = [
            apply_owner_rule,
            apply_stage_rule,
            apply_client_rule,
            apply_value_rule,
            apply_search_rule,
        ]

    def filter(self, record: CurrentRecord) -> FilterResult:
        explanations: list[str] = []
        all_passed = True
        excluded_by: Optional[str] = None

        for rule_fn in self._rules:
            passed, explanation, rule_id = rule_fn(record, self.filters, self.value_field)
            explanations.append(explanation)
            if not passed:
                all_passed = False
                if excluded_by is None:
                    excluded_by = rule_id

        return FilterResult(
            passed=all_passed,
            explanations=explanations,
            record=record,
            excluded_by_rule=excluded_by,
        )

    def filter_many(self, records: list[CurrentRecord]) -> list[FilterResult]:
        """Filter multiple records; returns all with full results."""
        return [self.filter(r) for r in records]

    def filter_passed(self, records: list[CurrentRecord]) -> list[CurrentRecord]:
        """Filter and return only the records that passed."""
        if self.filters.is_empty():
            return list(records)
        return [r.record for r in self.filter_many(records) if r.passed]
