"""
Reconciliation engine.

Diffs a saved search's freshly extracted listing set against the store:
- Unknown natural ids become new listings (after a detail fetch)
- Known ones get last_seen/price/status refreshed
- Listings linked to the search but no longer seen are delisted

Every observation appends a Snapshot. All mutations for one saved
search are committed together or rolled back together.
"""

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from api.database import Listing, Snapshot, TrackingList, ListingTrackingList, utc_now
from .base import (
    Colors,
    SearchResult,
    ListingDetail,
    ScrapeError,
    ErrorSeverity,
    CircuitOpenError,
    RequestBudgetExceeded,
)

logger = logging.getLogger(__name__)

DetailFetcher = Callable[[SearchResult], Awaitable[ListingDetail]]

# ListingDetail fields copied onto a new Listing row as-is
DETAIL_COLUMNS = (
    'municipality', 'postal_code', 'property_type', 'year_built',
    'lot_size_sqft', 'lot_dimensions', 'living_area_sqft', 'bedrooms',
    'bathrooms', 'bathrooms_half', 'has_garage', 'garage_spaces',
    'has_basement', 'basement_type', 'basement_finished', 'has_pool',
    'pool_type', 'has_ac', 'has_fireplace', 'heating_type', 'water_supply',
    'sewage', 'description_text', 'broker_name', 'broker_agency',
    'days_on_market', 'original_list_date',
)


@dataclass
class ReconcileResult:
    """Counts of one saved search's reconciliation."""
    found: int = 0
    new: int = 0
    updated: int = 0
    delisted: int = 0
    errors: List[ScrapeError] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'found': self.found,
            'new': self.new,
            'updated': self.updated,
            'delisted': self.delisted,
        }


def dedupe(extracted: Iterable[SearchResult]) -> List[SearchResult]:
    """Keep the first record per natural id, preserving order."""
    seen = set()
    unique = []
    for item in extracted:
        if item.natural_id in seen:
            continue
        seen.add(item.natural_id)
        unique.append(item)
    return unique


class Reconciler:
    """
    Applies extracted listing sets to the store.

    Usage:
        reconciler = Reconciler(db)
        result = await reconciler.reconcile(search, results, detail_fetcher)
    """

    def __init__(self, db: Session, clock: Callable = utc_now):
        self.db = db
        self.clock = clock

    def find_new(self, extracted: Iterable[SearchResult]) -> List[SearchResult]:
        """Records whose natural id is not stored yet."""
        extracted = list(extracted)
        ids = [item.natural_id for item in extracted]
        if not ids:
            return []
        known = {
            row.mls_number
            for row in self.db.query(Listing.mls_number).filter(Listing.mls_number.in_(ids)).all()
        }
        return [item for item in extracted if item.natural_id not in known]

    async def fetch_details(
        self,
        items: List[SearchResult],
        detail_fetcher: DetailFetcher,
        search_id: Optional[int] = None
    ) -> Tuple[Dict[str, ListingDetail], List[ScrapeError]]:
        """
        Fetch detail records for new listings.

        A failed fetch is recorded as a warning; the listing is then
        inserted from its search-card data alone.
        """
        details: Dict[str, ListingDetail] = {}
        errors: List[ScrapeError] = []
        for item in items:
            try:
                details[item.natural_id] = await detail_fetcher(item)
            except RequestBudgetExceeded:
                logger.info(f"Request budget reached, inserting {len(items) - len(details)} listings without details")
                break
            except CircuitOpenError as e:
                errors.append(ScrapeError.from_exception(
                    e, ErrorSeverity.WARNING, url=item.detail_url, natural_id=item.natural_id,
                    saved_search_id=search_id,
                ))
                break
            except Exception as e:
                logger.warning(f"Detail fetch failed for {item.natural_id}: {e}")
                errors.append(ScrapeError.from_exception(
                    e, ErrorSeverity.WARNING, url=item.detail_url, natural_id=item.natural_id,
                    saved_search_id=search_id,
                ))
        return details, errors

    async def reconcile(
        self,
        search: TrackingList,
        extracted: Iterable[SearchResult],
        detail_fetcher: Optional[DetailFetcher] = None,
        delist_unseen: bool = True
    ) -> ReconcileResult:
        """
        Reconcile one saved search's extracted set.

        Detail pages are fetched for new listings first, then all store
        mutations are applied in a single transaction. Pass
        delist_unseen=False when the extracted set is known to be
        truncated, so listings on unvisited pages are not delisted.

        Returns:
            ReconcileResult with new/updated/delisted counts and any
            detail-fetch warnings
        """
        unique = dedupe(extracted)
        details: Dict[str, ListingDetail] = {}
        errors: List[ScrapeError] = []

        if detail_fetcher is not None:
            details, errors = await self.fetch_details(self.find_new(unique), detail_fetcher, search.id)

        result = self.apply(search, unique, details, delist_unseen)
        result.errors.extend(errors)
        return result

    def apply(
        self,
        search: TrackingList,
        extracted: Iterable[SearchResult],
        details: Optional[Dict[str, ListingDetail]] = None,
        delist_unseen: bool = True
    ) -> ReconcileResult:
        """
        Apply an extracted set to the store in one transaction.

        Raises:
            SQLAlchemyError: After rolling back every change for this search
        """
        details = details or {}
        unique = dedupe(extracted)
        result = ReconcileResult(found=len(unique))
        now = self.clock()
        log = logging.getLogger(f"scraper.{search.source}")

        try:
            for item in unique:
                listing = self.db.query(Listing).filter(Listing.mls_number == item.natural_id).first()
                if listing is None:
                    listing = self._insert(search, item, details.get(item.natural_id), now)
                    result.new += 1
                    log.info(f"  {Colors.green('[NEW]')} {item.natural_id} ${item.price:,} {item.address}")
                else:
                    if self._update(search, listing, item, now, log):
                        result.updated += 1

            if delist_unseen:
                seen = {item.natural_id for item in unique}
                result.delisted = self._delist_unseen(search, seen, now, log)

            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

        return result

    def _insert(self, search: TrackingList, item: SearchResult, detail: Optional[ListingDetail], now) -> Listing:
        listing = Listing(
            mls_number=item.natural_id,
            source=search.source,
            source_url=item.detail_url,
            address=item.address,
            original_price=item.price,
            current_price=item.price,
            price_change_count=0,
            status='active',
            first_seen_at=now,
            last_seen_at=now,
            bedrooms=item.bedrooms,
            bathrooms=item.bathrooms,
            photo_urls=[item.photo_url] if item.photo_url else [],
            photo_count=item.photo_count or (1 if item.photo_url else 0),
            raw_data={'card': item.to_dict()},
        )

        if detail is not None:
            for column in DETAIL_COLUMNS:
                value = getattr(detail, column)
                if value is not None:
                    setattr(listing, column, value)
            if detail.stories is not None:
                listing.stories = str(detail.stories)
            if detail.photo_urls:
                listing.photo_urls = detail.photo_urls
                listing.photo_count = detail.photo_count
            if listing.address == 'Unknown' and detail.address:
                listing.address = detail.address
            listing.last_detail_scrape_at = now
            listing.raw_data = {'card': item.to_dict(), 'detail': detail.to_dict()}

        self.db.add(listing)
        self.db.flush()

        self.db.add(ListingTrackingList(
            listing_id=listing.id,
            tracking_list_id=search.id,
            first_matched_at=now,
            is_active=True,
        ))
        self.db.add(Snapshot(
            listing_id=listing.id,
            captured_at=now,
            price=item.price,
            status='active',
            photo_count=listing.photo_count,
        ))
        return listing

    def _update(self, search: TrackingList, listing: Listing, item: SearchResult, now, log: logging.Logger) -> bool:
        """Refresh a re-sighted listing. Returns True if its price changed."""
        price_changed = listing.current_price != item.price
        if price_changed:
            log.info(
                f"  {Colors.yellow('[UPD]')} {item.natural_id} ${listing.current_price:,} → ${item.price:,}"
            )
            listing.price_change_count = (listing.price_change_count or 0) + 1
            listing.current_price = item.price

        if listing.status != 'active':
            logger.info(f"Listing {item.natural_id} seen again, back to active (was {listing.status})")
        listing.status = 'active'
        listing.delisted_at = None
        listing.last_seen_at = now

        membership = self.db.get(ListingTrackingList, (listing.id, search.id))
        if membership is None:
            self.db.add(ListingTrackingList(
                listing_id=listing.id,
                tracking_list_id=search.id,
                first_matched_at=now,
                is_active=True,
            ))
        else:
            membership.is_active = True

        self.db.add(Snapshot(
            listing_id=listing.id,
            captured_at=now,
            price=item.price,
            status='active',
            photo_count=item.photo_count,
        ))
        return price_changed

    def _delist_unseen(self, search: TrackingList, seen: set, now, log: logging.Logger) -> int:
        """
        Deactivate this search's memberships for listings missing from the extracted set.

        Memberships go inactive whatever the listing's status; only listings
        still active are delisted and counted.
        """
        self.db.flush()
        linked = (
            self.db.query(Listing, ListingTrackingList)
            .join(ListingTrackingList, ListingTrackingList.listing_id == Listing.id)
            .filter(
                ListingTrackingList.tracking_list_id == search.id,
                ListingTrackingList.is_active.is_(True),
            )
            .all()
        )

        delisted = 0
        for listing, membership in linked:
            if listing.mls_number in seen:
                continue
            membership.is_active = False
            if listing.status != 'active':
                continue
            listing.status = 'delisted'
            listing.delisted_at = now
            self.db.add(Snapshot(
                listing_id=listing.id,
                captured_at=now,
                price=listing.current_price,
                status='delisted',
                photo_count=listing.photo_count,
            ))
            delisted += 1
            log.info(f"  {Colors.red('[DEL]')} {listing.mls_number} {listing.address}")
        return delisted
