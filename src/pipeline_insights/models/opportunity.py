"""Opportunity, snapshot and ingest models."""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pipeline_insights.models.period import as_utc_date


class Opportunity(BaseModel):
    """Canonical opportunity; one per canonical id."""

    canonical_id: str = Field(..., description="First 15 characters of the external id")
    external_id: str = Field(..., description="Current 15- or 18-character external id")
    name: str = ""
    client_name: Optional[str] = None
    owner: Optional[str] = None
    created_date: Optional[date] = None

    @field_validator("created_date", mode="before")
    @classmethod
    def coerce_dates(cls, v: object) -> object:
        return as_utc_date(v)

    @property
    def display_client(self) -> str:
        return self.client_name or self.name


class Snapshot(BaseModel):
    """Immutable point-in-time capture of one opportunity."""

    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    opportunity_id: str = Field(..., description="Canonical id of the opportunity")
    snapshot_date: date
    batch_id: Optional[int] = None

    stage: Optional[str] = None
    stage_before: Optional[str] = None
    confidence: Optional[str] = None

    amount: Optional[float] = None
    year1_value: Optional[float] = None
    tcv: Optional[float] = None

    expected_close_date: Optional[date] = None
    close_date: Optional[date] = None
    entered_pipeline: Optional[date] = None
    loss_reason: Optional[str] = None

    created_date: Optional[date] = None
    last_modified: Optional[date] = None

    @field_validator(
        "snapshot_date",
        "expected_close_date",
        "close_date",
        "entered_pipeline",
        "created_date",
        "last_modified",
        mode="before",
    )
    @classmethod
    def coerce_dates(cls, v: object) -> object:
        return as_utc_date(v)

    def value(self, field: str = "year1_value") -> float:
        """Monetary value of the configured field, 0 when absent."""
        return float(getattr(self, field) or 0)

    @property
    def effective_close_date(self) -> Optional[date]:
        """Actual close date, else the expected close date."""
        return self.close_date or self.expected_close_date


class IngestRecord(BaseModel):
    """One row of an ingest batch: opportunity identity plus snapshot attributes."""

    external_id: str
    name: str = ""
    client_name: Optional[str] = None
    owner: Optional[str] = None

    stage: Optional[str] = None
    stage_before: Optional[str] = None
    confidence: Optional[str] = None
    amount: Optional[float] = None
    year1_value: Optional[float] = None
    tcv: Optional[float] = None
    expected_close_date: Optional[date] = None
    close_date: Optional[date] = None
    entered_pipeline: Optional[date] = None
    loss_reason: Optional[str] = None
    created_date: Optional[date] = None
    last_modified: Optional[date] = None

    @field_validator(
        "expected_close_date",
        "close_date",
        "entered_pipeline",
        "created_date",
        "last_modified",
        mode="before",
    )
    @classmethod
    def coerce_dates(cls, v: object) -> object:
        return as_utc_date(v)

    @field_validator("external_id", mode="before")
    @classmethod
    def strip_id(cls, v: object) -> object:
        return v.strip() if isinstance(v, str) else v

    def to_snapshot(self, opportunity_id: str, snapshot_date: date, batch_id: Optional[int] = None) -> Snapshot:
        fields = self.model_dump(exclude={"external_id", "name", "client_name", "owner"})
        return Snapshot(
            opportunity_id=opportunity_id,
            snapshot_date=snapshot_date,
            batch_id=batch_id,
            **fields,
        )


class IngestBatch:
    """Record of one ingest batch (one uploaded file / snapshot date)."""

    def __init__(
        self,
        id: int,
        filename: str,
        snapshot_date: date,
        started_at: datetime,
        finished_at: Optional[datetime],
        status: str,
        records_total: int,
        records_loaded: int,
        records_failed: int,
    ):
        self.id = id
        self.filename = filename
        self.snapshot_date = snapshot_date
        self.started_at = started_at
        self.finished_at = finished_at
        self.status = status
        self.records_total = records_total
        self.records_loaded = records_loaded
        self.records_failed = records_failed
