"""Batch ingest: one file per snapshot date, record-scoped failures."""

import csv
import json
import logging
from datetime import date
from pathlib import Path
from typing import Any, Iterable, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from pipeline_insights.errors import PipelineInsightsError
from pipeline_insights.models.opportunity import IngestRecord
from pipeline_insights.store.base import SnapshotStore

logger = logging.getLogger(__name__)


class RecordOutcome(BaseModel):
    """Result for one input record."""

    index: int
    external_id: Optional[str] = None
    opportunity_id: Optional[str] = None
    ok: bool
    created: bool = False
    upgraded: bool = False
    error_code: Optional[str] = None
    message: Optional[str] = None


class IngestReport(BaseModel):
    batch_id: int
    filename: str
    snapshot_date: date
    records_total: int = 0
    records_loaded: int = 0
    records_failed: int = 0
    opportunities_created: int = 0
    opportunities_upgraded: int = 0
    outcomes: list[RecordOutcome] = Field(default_factory=list)

    @property
    def failures(self) -> list[RecordOutcome]:
        return [o for o in self.outcomes if not o.ok]


def load_records(path: Union[str, Path]) -> list[dict[str, Any]]:
    """
    Read raw records from CSV (header row of field names), JSON or YAML.
    A mapping with a `records` key is accepted for JSON/YAML.
    """
    path = Path(path)
    if path.suffix.lower() == ".csv":
        with path.open(newline="", encoding="utf-8-sig") as fh:
            return [
                {k.strip(): (v.strip() or None) if isinstance(v, str) else v for k, v in row.items() if k}
                for row in csv.DictReader(fh)
            ]
    text = path.read_text()
    data = json.loads(text) if path.suffix.lower() == ".json" else yaml.safe_load(text)
    if isinstance(data, dict):
        data = data.get("records", [])
    return list(data or [])


def _raw_external_id(raw: object) -> Optional[str]:
    if isinstance(raw, IngestRecord):
        return raw.external_id
    if isinstance(raw, dict):
        return str(raw.get("external_id") or "") or None
    return None


def ingest_batch(
    store: SnapshotStore,
    records: Iterable[Union[IngestRecord, dict[str, Any]]],
    *,
    snapshot_date: date,
    filename: str = "upload",
) -> IngestReport:
    """
    Load one batch of records as snapshots dated snapshot_date.

    Each record resolves its opportunity identity, then appends a snapshot.
    A failing record is reported and the batch continues.
    """
    batch = store.start_batch(filename, snapshot_date)
    report = IngestReport(batch_id=batch.id, filename=filename, snapshot_date=snapshot_date)

    for index, raw in enumerate(records):
        external_id: Optional[str] = None
        try:
            external_id = _raw_external_id(raw)
            record = raw if isinstance(raw, IngestRecord) else IngestRecord.model_validate(raw)
            resolution = store.upsert_opportunity(
                record.external_id,
                record.name,
                client_name=record.client_name,
                owner=record.owner,
                created_date=record.created_date,
            )
            opp = resolution.opportunity
            store.add_snapshot(record.to_snapshot(opp.canonical_id, snapshot_date, batch_id=batch.id))
        except (PipelineInsightsError, ValidationError) as e:
            code = getattr(e, "code", "VALIDATION")
            logger.warning("Record %d (%s) rejected: %s", index, external_id, e)
            report.outcomes.append(
                RecordOutcome(index=index, external_id=external_id, ok=False, error_code=code, message=str(e))
            )
            continue

        report.opportunities_created += int(resolution.created)
        report.opportunities_upgraded += int(resolution.upgraded)
        report.outcomes.append(
            RecordOutcome(
                index=index,
                external_id=record.external_id,
                opportunity_id=opp.canonical_id,
                ok=True,
                created=resolution.created,
                upgraded=resolution.upgraded,
            )
        )

    report.records_total = len(report.outcomes)
    report.records_failed = len(report.failures)
    report.records_loaded = report.records_total - report.records_failed
    status = "completed" if report.records_failed == 0 else "completed_with_errors"
    store.finish_batch(batch.id, report.records_total, report.records_loaded, report.records_failed, status=status)
    logger.info(
        "Batch %s (%s, %s): %d loaded, %d failed",
        batch.id, filename, snapshot_date, report.records_loaded, report.records_failed,
    )
    return report
