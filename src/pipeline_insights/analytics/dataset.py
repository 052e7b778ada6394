"""Request-scoped immutable snapshot set."""

from bisect import bisect_right
from datetime import date
from typing import Iterable, Optional

from pipeline_insights.errors import DuplicateSnapshotError, UnknownOpportunityError
from pipeline_insights.models.campaign import Campaign, CampaignCustomer
from pipeline_insights.models.opportunity import Opportunity, Snapshot


class Dataset:
    """
    Everything one analytics request reads, loaded once up front.
    Histories are ordered by snapshot date; as-of lookups are memoised for the
    lifetime of the instance.
    """

    def __init__(
        self,
        opportunities: Iterable[Opportunity],
        snapshots: Iterable[Snapshot],
        campaigns: Iterable[Campaign] = (),
        campaign_customers: Iterable[CampaignCustomer] = (),
    ):
        self._opportunities: dict[str, Opportunity] = {o.canonical_id: o for o in opportunities}

        grouped: dict[str, list[Snapshot]] = {key: [] for key in self._opportunities}
        for snap in snapshots:
            if snap.opportunity_id not in grouped:
                raise UnknownOpportunityError(snap.opportunity_id)
            grouped[snap.opportunity_id].append(snap)

        self._histories: dict[str, tuple[Snapshot, ...]] = {}
        self._dates: dict[str, list[date]] = {}
        for key, items in grouped.items():
            items.sort(key=lambda s: s.snapshot_date)
            dates = [s.snapshot_date for s in items]
            for prev, cur in zip(dates, dates[1:]):
                if prev == cur:
                    raise DuplicateSnapshotError(key, cur)
            self._histories[key] = tuple(items)
            self._dates[key] = dates

        self._campaigns: dict[int, Campaign] = {c.id: c for c in campaigns if c.id is not None}
        customers: dict[int, list[CampaignCustomer]] = {}
        for cc in campaign_customers:
            customers.setdefault(cc.campaign_id, []).append(cc)
        self._customers = {k: tuple(v) for k, v in customers.items()}

        all_dates = [d for dates in self._dates.values() for d in dates]
        self._latest_date: Optional[date] = max(all_dates) if all_dates else None
        self._snapshot_dates = sorted(set(all_dates))
        self._as_of_cache: dict[tuple[str, date], Optional[Snapshot]] = {}

    @property
    def latest_date(self) -> Optional[date]:
        """Latest snapshot date in the dataset; the default as-of anchor."""
        return self._latest_date

    @property
    def snapshot_dates(self) -> list[date]:
        return list(self._snapshot_dates)

    @property
    def opportunity_ids(self) -> list[str]:
        return sorted(self._opportunities)

    def is_empty(self) -> bool:
        return self._latest_date is None

    def opportunity(self, opportunity_id: str) -> Opportunity:
        try:
            return self._opportunities[opportunity_id]
        except KeyError:
            raise UnknownOpportunityError(opportunity_id) from None

    def opportunities(self) -> list[Opportunity]:
        return [self._opportunities[k] for k in self.opportunity_ids]

    def history(self, opportunity_id: str) -> tuple[Snapshot, ...]:
        return self._histories.get(opportunity_id, ())

    def latest_as_of(self, opportunity_id: str, as_of: Optional[date] = None) -> Optional[Snapshot]:
        """Snapshot with the greatest date <= as_of (dataset latest date when omitted)."""
        anchor = as_of or self._latest_date
        if anchor is None:
            return None
        key = (opportunity_id, anchor)
        if key not in self._as_of_cache:
            dates = self._dates.get(opportunity_id, [])
            idx = bisect_right(dates, anchor)
            self._as_of_cache[key] = self._histories[opportunity_id][idx - 1] if idx else None
        return self._as_of_cache[key]

    def campaigns(self) -> list[Campaign]:
        return [self._campaigns[k] for k in sorted(self._campaigns)]

    def campaign(self, campaign_id: int) -> Optional[Campaign]:
        return self._campaigns.get(campaign_id)

    def campaign_customers(self, campaign_id: int) -> tuple[CampaignCustomer, ...]:
        return self._customers.get(campaign_id, ())
