"""Abstract storage port for opportunities, snapshots and campaigns."""

from abc import ABC, abstractmethod
from datetime import date
from typing import Optional

from pipeline_insights.analytics.dataset import Dataset
from pipeline_insights.identity import Resolution
from pipeline_insights.models.campaign import Campaign, CampaignCustomer
from pipeline_insights.models.opportunity import IngestBatch, Opportunity, Snapshot
from pipeline_insights.models.period import DateRange


class SnapshotStore(ABC):
    """
    Standard interface the analytics core depends on.
    Adapters own persistence; identity rules live in pipeline_insights.identity.
    """

    @abstractmethod
    def list_opportunities(self) -> list[Opportunity]:
        pass

    @abstractmethod
    def get_opportunity(self, canonical_id: str) -> Optional[Opportunity]:
        pass

    @abstractmethod
    def upsert_opportunity(
        self,
        external_id: str,
        name: str,
        *,
        client_name: Optional[str] = None,
        owner: Optional[str] = None,
        created_date: Optional[date] = None,
    ) -> Resolution:
        """
        Create or reconcile the opportunity for an external id.
        Never creates two opportunities for one canonical id.
        """
        pass

    @abstractmethod
    def add_snapshot(self, snapshot: Snapshot) -> Snapshot:
        """
        Append a snapshot. Raises UnknownOpportunityError for an orphan and
        DuplicateSnapshotError when the (opportunity, date) pair exists.
        """
        pass

    @abstractmethod
    def list_snapshots(
        self,
        opportunity_id: Optional[str] = None,
        date_range: Optional[DateRange] = None,
    ) -> list[Snapshot]:
        """Snapshots ascending by date (then opportunity id)."""
        pass

    def latest_snapshot(self, opportunity_id: str, as_of: Optional[date] = None) -> Optional[Snapshot]:
        """
        Snapshot with the greatest date <= as_of, or the latest one when as_of is None.
        Default: scan list_snapshots. Override where the backend can seek.
        """
        history = self.list_snapshots(opportunity_id=opportunity_id)
        candidates = [s for s in history if as_of is None or s.snapshot_date <= as_of]
        return candidates[-1] if candidates else None

    @abstractmethod
    def list_campaigns(self, date_range: Optional[DateRange] = None) -> list[Campaign]:
        pass

    @abstractmethod
    def get_campaign(self, campaign_id: int) -> Optional[Campaign]:
        pass

    @abstractmethod
    def create_campaign(self, campaign: Campaign) -> Campaign:
        pass

    @abstractmethod
    def list_campaign_customers(self, campaign_id: int) -> list[CampaignCustomer]:
        pass

    @abstractmethod
    def add_campaign_customer(self, customer: CampaignCustomer) -> CampaignCustomer:
        pass

    @abstractmethod
    def remove_campaign_customer(self, campaign_id: int, opportunity_id: str) -> bool:
        pass

    @abstractmethod
    def start_batch(self, filename: str, snapshot_date: date) -> IngestBatch:
        pass

    @abstractmethod
    def finish_batch(
        self,
        batch_id: int,
        records_total: int,
        records_loaded: int,
        records_failed: int,
        status: str = "completed",
    ) -> None:
        pass

    @abstractmethod
    def list_batches(self) -> list[IngestBatch]:
        pass

    @abstractmethod
    def delete_batch(self, batch_id: int) -> int:
        """Delete a batch and its snapshots. Returns the number of snapshots removed."""
        pass

    @abstractmethod
    def clear_all(self) -> None:
        """Explicit bulk data-clear: every table, opportunities included."""
        pass

    @abstractmethod
    def load_dataset(self) -> Dataset:
        """Bulk read of everything an analytics request needs, as one consistent view."""
        pass
