"""
Error taxonomy for pipeline-insights.

Hierarchy:
    PipelineInsightsError
    ├── DataIntegrityError
    │   ├── UnknownOpportunityError
    │   ├── DuplicateSnapshotError
    │   └── NoSnapshotDataError
    ├── IdentityError
    │   ├── InvalidIdentifierError
    │   ├── AmbiguousMatchError
    │   └── OpportunityNotFoundError
    ├── MissingAttributionDateError
    ├── CampaignNotFoundError
    └── InvalidPeriodError

StaleBaselineWarning is not raised; it is collected into results.
"""

from datetime import date
from typing import Optional


class PipelineInsightsError(Exception):
    """Base exception for all pipeline-insights errors."""

    def __init__(self, message: str, code: str = "UNKNOWN", details: Optional[dict] = None):
        self.code = code
        self.details = details or {}
        super().__init__(f"[{code}] {message}")


# --- Data integrity ---

class DataIntegrityError(PipelineInsightsError):
    """A record contradicts the stored data model."""

    def __init__(self, message: str, code: str = "DATA_INTEGRITY", **details):
        super().__init__(message, code=code, details=details)


class UnknownOpportunityError(DataIntegrityError):
    """Snapshot references an opportunity that does not exist."""

    def __init__(self, opportunity_id: str):
        self.opportunity_id = opportunity_id
        super().__init__(
            f"Snapshot references unknown opportunity {opportunity_id}",
            code="UNKNOWN_OPPORTUNITY", opportunity_id=opportunity_id,
        )


class DuplicateSnapshotError(DataIntegrityError):
    """A snapshot already exists for this opportunity and date."""

    def __init__(self, opportunity_id: str, snapshot_date: date):
        super().__init__(
            f"Snapshot for {opportunity_id} on {snapshot_date.isoformat()} already exists",
            code="DUPLICATE_SNAPSHOT",
            opportunity_id=opportunity_id, snapshot_date=snapshot_date.isoformat(),
        )


class NoSnapshotDataError(DataIntegrityError):
    """Opportunity has no snapshots to capture a baseline from."""

    def __init__(self, opportunity_id: str):
        super().__init__(
            f"No snapshot data available for opportunity {opportunity_id}",
            code="NO_SNAPSHOT_DATA", opportunity_id=opportunity_id,
        )


# --- Identity ---

class IdentityError(PipelineInsightsError):
    """Base class for identity resolution failures."""

    def __init__(self, message: str, code: str = "IDENTITY", **details):
        super().__init__(message, code=code, details=details)


class InvalidIdentifierError(IdentityError):
    """External id is not a 15 or 18 character identifier."""

    def __init__(self, external_id: str):
        super().__init__(
            f"External id must be 15 or 18 characters, got {len(external_id)}: {external_id!r}",
            code="INVALID_IDENTIFIER", external_id=external_id,
        )


class AmbiguousMatchError(IdentityError):
    """Name-only matching found more than one active opportunity."""

    def __init__(self, name: str, candidates: list[str]):
        self.candidates = candidates
        super().__init__(
            f"Name {name!r} matches {len(candidates)} active opportunities: {', '.join(candidates)}",
            code="AMBIGUOUS_MATCH", name=name, candidates=candidates,
        )


class OpportunityNotFoundError(IdentityError):
    """No opportunity matched the given id or name."""

    def __init__(self, key: str):
        super().__init__(
            f"Opportunity not found: {key}",
            code="OPPORTUNITY_NOT_FOUND", key=key,
        )


# --- Analytics ---

class MissingAttributionDateError(PipelineInsightsError):
    """Closed snapshot has no usable date for rate calculations."""

    def __init__(self, opportunity_id: str, missing: str):
        self.opportunity_id = opportunity_id
        super().__init__(
            f"Closed opportunity {opportunity_id} has no {missing}; excluded from rate",
            code="MISSING_ATTRIBUTION_DATE",
            details={"opportunity_id": opportunity_id, "missing": missing},
        )


class CampaignNotFoundError(PipelineInsightsError):
    """Campaign id does not exist."""

    def __init__(self, campaign_id: int):
        super().__init__(
            f"Campaign not found: {campaign_id}",
            code="CAMPAIGN_NOT_FOUND", details={"campaign_id": campaign_id},
        )


class InvalidPeriodError(PipelineInsightsError):
    """Relative period token could not be resolved."""

    def __init__(self, token: str, reason: str = "unrecognised token"):
        super().__init__(
            f"Cannot resolve period {token!r}: {reason}",
            code="INVALID_PERIOD", details={"token": token},
        )


class StaleBaselineWarning(UserWarning):
    """Baseline snapshot is further than the allowed gap from the requested date."""

    def __init__(self, opportunity_id: str, requested: date, captured: date, gap_days: int):
        self.opportunity_id = opportunity_id
        self.requested = requested
        self.captured = captured
        self.gap_days = gap_days
        super().__init__(
            f"Baseline for {opportunity_id} captured {captured.isoformat()}, "
            f"{gap_days} days from requested {requested.isoformat()}; treated as Closed Lost"
        )
