"""SQLite-backed snapshot store with identity reconciliation and batch tracking."""

import json
import logging
import sqlite3
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Optional

from pipeline_insights.analytics.dataset import Dataset
from pipeline_insights.errors import (
    CampaignNotFoundError,
    DataIntegrityError,
    DuplicateSnapshotError,
    UnknownOpportunityError,
)
from pipeline_insights.identity import Resolution, canonical_id, reconcile
from pipeline_insights.models.campaign import Campaign, CampaignCustomer
from pipeline_insights.models.opportunity import IngestBatch, Opportunity, Snapshot
from pipeline_insights.models.period import DateRange

from .base import SnapshotStore

logger = logging.getLogger(__name__)


class SQLiteSnapshotStore(SnapshotStore):
    """
    SQLite store for opportunities and their append-only snapshots.
    Opportunities are keyed by canonical id; snapshots are unique per
    (opportunity_id, snapshot_date) and carry their attributes as JSON.
    """

    def __init__(self, db_path: str | Path = "pipeline_insights.db"):
        self._db_path = Path(db_path)
        self._ensure_schema()

    def _connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _ensure_schema(self) -> None:
        schema_path = Path(__file__).parent / "schema.sql"
        with self._connection() as conn:
            conn.executescript(schema_path.read_text())

    # --- row mapping ---

    @staticmethod
    def _row_to_opp(row: sqlite3.Row) -> Opportunity:
        return Opportunity(
            canonical_id=row["canonical_id"],
            external_id=row["external_id"],
            name=row["name"],
            client_name=row["client_name"],
            owner=row["owner"],
            created_date=row["created_date"],
        )

    def _serialize_snapshot(self, snapshot: Snapshot) -> str:
        """Serialize snapshot attributes (minus keys held in columns) to JSON."""
        data = snapshot.model_dump(mode="json", exclude={"id", "opportunity_id", "snapshot_date", "batch_id"})
        return json.dumps(data, default=str)

    def _deserialize_snapshot(self, row: sqlite3.Row) -> Snapshot:
        data = json.loads(row["data"])
        return Snapshot.model_validate(
            {
                **data,
                "id": row["id"],
                "opportunity_id": row["opportunity_id"],
                "snapshot_date": row["snapshot_date"],
                "batch_id": row["batch_id"],
            }
        )

    @staticmethod
    def _deserialize_campaign(row: sqlite3.Row) -> Campaign:
        data = json.loads(row["data"])
        return Campaign.model_validate({**data, "id": row["id"]})

    @staticmethod
    def _deserialize_customer(row: sqlite3.Row) -> CampaignCustomer:
        data = json.loads(row["data"])
        return CampaignCustomer.model_validate(
            {**data, "id": row["id"], "campaign_id": row["campaign_id"], "opportunity_id": row["opportunity_id"]}
        )

    @staticmethod
    def _row_to_batch(row: sqlite3.Row) -> IngestBatch:
        return IngestBatch(
            id=row["id"],
            filename=row["filename"],
            snapshot_date=date.fromisoformat(row["snapshot_date"]),
            started_at=datetime.fromisoformat(row["started_at"]),
            finished_at=datetime.fromisoformat(row["finished_at"]) if row["finished_at"] else None,
            status=row["status"],
            records_total=row["records_total"],
            records_loaded=row["records_loaded"],
            records_failed=row["records_failed"],
        )

    # --- opportunities ---

    def list_opportunities(self) -> list[Opportunity]:
        with self._connection() as conn:
            rows = conn.execute("SELECT * FROM opportunities ORDER BY canonical_id").fetchall()
        return [self._row_to_opp(r) for r in rows]

    def get_opportunity(self, canonical_id: str) -> Optional[Opportunity]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM opportunities WHERE canonical_id = ?", (canonical_id,)
            ).fetchone()
        return self._row_to_opp(row) if row else None

    def upsert_opportunity(
        self,
        external_id: str,
        name: str,
        *,
        client_name: Optional[str] = None,
        owner: Optional[str] = None,
        created_date: Optional[date] = None,
    ) -> Resolution:
        key = canonical_id(external_id)
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM opportunities WHERE canonical_id = ?", (key,)).fetchone()
            existing = self._row_to_opp(row) if row else None
            resolution = reconcile(
                existing,
                external_id,
                name,
                client_name=client_name,
                owner=owner,
                created_date=created_date,
            )
            opp = resolution.opportunity
            if resolution.created:
                conn.execute(
                    """
                    INSERT INTO opportunities (canonical_id, external_id, name, client_name, owner, created_date)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        opp.canonical_id,
                        opp.external_id,
                        opp.name,
                        opp.client_name,
                        opp.owner,
                        opp.created_date.isoformat() if opp.created_date else None,
                    ),
                )
            elif resolution.upgraded:
                conn.execute(
                    "UPDATE opportunities SET external_id = ? WHERE canonical_id = ?",
                    (opp.external_id, opp.canonical_id),
                )
            conn.commit()
        return resolution

    # --- snapshots ---

    def add_snapshot(self, snapshot: Snapshot) -> Snapshot:
        with self._connection() as conn:
            known = conn.execute(
                "SELECT 1 FROM opportunities WHERE canonical_id = ?", (snapshot.opportunity_id,)
            ).fetchone()
            if not known:
                raise UnknownOpportunityError(snapshot.opportunity_id)
            try:
                cursor = conn.execute(
                    "INSERT INTO snapshots (opportunity_id, snapshot_date, batch_id, data) VALUES (?, ?, ?, ?)",
                    (
                        snapshot.opportunity_id,
                        snapshot.snapshot_date.isoformat(),
                        snapshot.batch_id,
                        self._serialize_snapshot(snapshot),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateSnapshotError(snapshot.opportunity_id, snapshot.snapshot_date) from e
            conn.commit()
        return snapshot.model_copy(update={"id": cursor.lastrowid})

    def list_snapshots(
        self,
        opportunity_id: Optional[str] = None,
        date_range: Optional[DateRange] = None,
    ) -> list[Snapshot]:
        clauses: list[str] = []
        params: list = []
        if opportunity_id is not None:
            clauses.append("opportunity_id = ?")
            params.append(opportunity_id)
        if date_range is not None:
            clauses.append("snapshot_date >= ? AND snapshot_date < ?")
            params.extend([date_range.start.isoformat(), date_range.end.isoformat()])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM snapshots {where} ORDER BY snapshot_date, opportunity_id", params
            ).fetchall()
        return [self._deserialize_snapshot(r) for r in rows]

    def latest_snapshot(self, opportunity_id: str, as_of: Optional[date] = None) -> Optional[Snapshot]:
        with self._connection() as conn:
            if as_of is None:
                row = conn.execute(
                    "SELECT * FROM snapshots WHERE opportunity_id = ? ORDER BY snapshot_date DESC LIMIT 1",
                    (opportunity_id,),
                ).fetchone()
            else:
                row = conn.execute(
                    """
                    SELECT * FROM snapshots WHERE opportunity_id = ? AND snapshot_date <= ?
                    ORDER BY snapshot_date DESC LIMIT 1
                    """,
                    (opportunity_id, as_of.isoformat()),
                ).fetchone()
        return self._deserialize_snapshot(row) if row else None

    # --- campaigns ---

    def list_campaigns(self, date_range: Optional[DateRange] = None) -> list[Campaign]:
        with self._connection() as conn:
            if date_range is None:
                rows = conn.execute("SELECT * FROM campaigns ORDER BY start_date, id").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM campaigns WHERE start_date >= ? AND start_date < ? ORDER BY start_date, id",
                    (date_range.start.isoformat(), date_range.end.isoformat()),
                ).fetchall()
        return [self._deserialize_campaign(r) for r in rows]

    def get_campaign(self, campaign_id: int) -> Optional[Campaign]:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM campaigns WHERE id = ?", (campaign_id,)).fetchone()
        return self._deserialize_campaign(row) if row else None

    def create_campaign(self, campaign: Campaign) -> Campaign:
        data = json.dumps(campaign.model_dump(mode="json", exclude={"id"}), default=str)
        with self._connection() as conn:
            try:
                cursor = conn.execute(
                    "INSERT INTO campaigns (name, type, start_date, data) VALUES (?, ?, ?, ?)",
                    (campaign.name, campaign.type, campaign.start_date.isoformat(), data),
                )
            except sqlite3.IntegrityError as e:
                raise DataIntegrityError(
                    f"Campaign named {campaign.name!r} already exists",
                    code="DUPLICATE_CAMPAIGN",
                    name=campaign.name,
                ) from e
            conn.commit()
        return campaign.model_copy(update={"id": cursor.lastrowid})

    def list_campaign_customers(self, campaign_id: int) -> list[CampaignCustomer]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM campaign_customers WHERE campaign_id = ? ORDER BY id", (campaign_id,)
            ).fetchall()
        return [self._deserialize_customer(r) for r in rows]

    def add_campaign_customer(self, customer: CampaignCustomer) -> CampaignCustomer:
        data = json.dumps(
            customer.model_dump(mode="json", exclude={"id", "campaign_id", "opportunity_id"}),
            default=str,
        )
        with self._connection() as conn:
            if not conn.execute("SELECT 1 FROM campaigns WHERE id = ?", (customer.campaign_id,)).fetchone():
                raise CampaignNotFoundError(customer.campaign_id)
            if not conn.execute(
                "SELECT 1 FROM opportunities WHERE canonical_id = ?", (customer.opportunity_id,)
            ).fetchone():
                raise UnknownOpportunityError(customer.opportunity_id)
            try:
                cursor = conn.execute(
                    "INSERT INTO campaign_customers (campaign_id, opportunity_id, data) VALUES (?, ?, ?)",
                    (customer.campaign_id, customer.opportunity_id, data),
                )
            except sqlite3.IntegrityError as e:
                raise DataIntegrityError(
                    f"Opportunity {customer.opportunity_id} is already in campaign {customer.campaign_id}",
                    code="DUPLICATE_CAMPAIGN_CUSTOMER",
                    campaign_id=customer.campaign_id,
                    opportunity_id=customer.opportunity_id,
                ) from e
            conn.commit()
        return customer.model_copy(update={"id": cursor.lastrowid})

    def remove_campaign_customer(self, campaign_id: int, opportunity_id: str) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                "DELETE FROM campaign_customers WHERE campaign_id = ? AND opportunity_id = ?",
                (campaign_id, opportunity_id),
            )
            conn.commit()
        return cursor.rowcount > 0

    # --- batches ---

    def start_batch(self, filename: str, snapshot_date: date) -> IngestBatch:
        """Record start of an ingest batch. Returns IngestBatch with id."""
        now = datetime.now(timezone.utc).isoformat()
        with self._connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO batches (filename, snapshot_date, started_at, status, records_total, records_loaded, records_failed)
                VALUES (?, ?, ?, 'running', 0, 0, 0)
                """,
                (filename, snapshot_date.isoformat(), now),
            )
            conn.commit()
            batch_id = cursor.lastrowid
        return IngestBatch(
            id=batch_id or 0,
            filename=filename,
            snapshot_date=snapshot_date,
            started_at=datetime.fromisoformat(now),
            finished_at=None,
            status="running",
            records_total=0,
            records_loaded=0,
            records_failed=0,
        )

    def finish_batch(
        self,
        batch_id: int,
        records_total: int,
        records_loaded: int,
        records_failed: int,
        status: str = "completed",
    ) -> None:
        """Record completion of an ingest batch."""
        now = datetime.now(timezone.utc).isoformat()
        with self._connection() as conn:
            conn.execute(
                """
                UPDATE batches SET finished_at = ?, status = ?, records_total = ?, records_loaded = ?, records_failed = ?
                WHERE id = ?
                """,
                (now, status, records_total, records_loaded, records_failed, batch_id),
            )
            conn.commit()

    def list_batches(self) -> list[IngestBatch]:
        with self._connection() as conn:
            rows = conn.execute("SELECT * FROM batches ORDER BY snapshot_date, id").fetchall()
        return [self._row_to_batch(r) for r in rows]

    def delete_batch(self, batch_id: int) -> int:
        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM snapshots WHERE batch_id = ?", (batch_id,))
            removed = cursor.rowcount
            conn.execute("DELETE FROM batches WHERE id = ?", (batch_id,))
            conn.commit()
        logger.info("Deleted batch %s (%d snapshots)", batch_id, removed)
        return removed

    def clear_all(self) -> None:
        with self._connection() as conn:
            for table in ("campaign_customers", "campaigns", "snapshots", "batches", "opportunities"):
                conn.execute(f"DELETE FROM {table}")
            conn.commit()
        logger.info("Cleared all data in %s", self._db_path)

    # --- bulk read ---

    def load_dataset(self) -> Dataset:
        with self._connection() as conn:
            conn.execute("BEGIN")
            opp_rows = conn.execute("SELECT * FROM opportunities").fetchall()
            snap_rows = conn.execute("SELECT * FROM snapshots ORDER BY snapshot_date").fetchall()
            campaign_rows = conn.execute("SELECT * FROM campaigns").fetchall()
            customer_rows = conn.execute("SELECT * FROM campaign_customers ORDER BY id").fetchall()
            conn.commit()
        logger.debug(
            "Loaded dataset: %d opportunities, %d snapshots, %d campaigns",
            len(opp_rows), len(snap_rows), len(campaign_rows),
        )
        return Dataset(
            opportunities=[self._row_to_opp(r) for r in opp_rows],
            snapshots=[self._deserialize_snapshot(r) for r in snap_rows],
            campaigns=[self._deserialize_campaign(r) for r in campaign_rows],
            campaign_customers=[self._deserialize_customer(r) for r in customer_rows],
        )
