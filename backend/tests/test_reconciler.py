"""
Tests for the reconciliation engine.
"""

import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from sqlalchemy.exc import IntegrityError

from api.database import Listing, ListingTrackingList, Snapshot, TrackingList
from scrapers.base import (
    SearchResult,
    ListingDetail,
    ErrorSeverity,
    ErrorCategory,
    BlockedError,
    CircuitOpenError,
    RequestBudgetExceeded,
)
from scrapers.reconciler import Reconciler, dedupe


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        self.now += timedelta(minutes=1)
        return self.now


def card(natural_id, price=500000, address=None):
    return SearchResult(
        natural_id=natural_id,
        detail_url=f"https://www.realtor.ca/real-estate/{natural_id}/listing",
        address=address if address is not None else f"{natural_id[-3:]} Rue Test, Montreal, QC",
        price=price,
        bedrooms=3,
    )


@pytest.fixture
def reconciler(db_session):
    return Reconciler(db_session, clock=FakeClock())


@pytest.fixture
def second_search(db_session):
    search = TrackingList(name="Second search", source="realtor", criteria={}, is_active=True)
    db_session.add(search)
    db_session.commit()
    return search


def get_listing(db, natural_id):
    return db.query(Listing).filter(Listing.mls_number == natural_id).one()


def membership(db, listing, search):
    return db.get(ListingTrackingList, (listing.id, search.id))


class TestInsert:

    def test_new_listings(self, db_session, reconciler, realtor_search):
        result = reconciler.apply(realtor_search, [card("11111111"), card("22222222", 650000)])

        assert (result.found, result.new, result.updated, result.delisted) == (2, 2, 0, 0)
        listing = get_listing(db_session, "22222222")
        assert listing.status == "active"
        assert listing.original_price == 650000
        assert listing.current_price == 650000
        assert listing.price_change_count == 0
        assert listing.bedrooms == 3
        assert membership(db_session, listing, realtor_search).is_active is True
        snapshots = db_session.query(Snapshot).filter(Snapshot.listing_id == listing.id).all()
        assert [(s.price, s.status) for s in snapshots] == [(650000, "active")]

    def test_detail_fields_applied(self, db_session, reconciler, realtor_search):
        detail = ListingDetail(
            year_built=1985,
            property_type="detached",
            has_garage=True,
            stories=1.5,
            photo_urls=["https://cdn/1.jpg", "https://cdn/2.jpg"],
            broker_name="Jane Courtier",
        )
        reconciler.apply(realtor_search, [card("11111111")], details={"11111111": detail})

        listing = get_listing(db_session, "11111111")
        assert listing.year_built == 1985
        assert listing.property_type == "detached"
        assert listing.has_garage is True
        assert listing.stories == "1.5"
        assert listing.photo_count == 2
        assert listing.broker_name == "Jane Courtier"
        assert listing.last_detail_scrape_at is not None
        assert listing.raw_data["detail"]["year_built"] == 1985

    def test_duplicates_in_one_set(self, db_session, reconciler, realtor_search):
        result = reconciler.apply(realtor_search, [card("11111111"), card("11111111", 1)])

        assert result.found == 1
        assert get_listing(db_session, "11111111").current_price == 500000

    def test_dedupe_keeps_first(self):
        items = dedupe([card("1000001", 1), card("1000002"), card("1000001", 2)])

        assert [(i.natural_id, i.price) for i in items] == [("1000001", 1), ("1000002", 500000)]


class TestUpdate:

    def test_idempotent(self, db_session, reconciler, realtor_search):
        items = [card("11111111"), card("22222222")]
        reconciler.apply(realtor_search, items)
        result = reconciler.apply(realtor_search, items)

        assert (result.new, result.updated, result.delisted) == (0, 0, 0)
        assert db_session.query(Listing).count() == 2
        assert db_session.query(ListingTrackingList).count() == 2
        # One snapshot per observation
        assert db_session.query(Snapshot).count() == 4

    def test_price_change_counter(self, db_session, reconciler, realtor_search):
        updated = []
        for price in [100000, 100000, 150000, 150000, 120000]:
            updated.append(reconciler.apply(realtor_search, [card("11111111", price)]).updated)

        listing = get_listing(db_session, "11111111")
        assert updated == [0, 0, 1, 0, 1]
        assert listing.price_change_count == 2
        assert listing.original_price == 100000
        assert listing.current_price == 120000

    def test_last_seen_advances(self, db_session, reconciler, realtor_search):
        reconciler.apply(realtor_search, [card("11111111")])
        first_seen = get_listing(db_session, "11111111").last_seen_at
        reconciler.apply(realtor_search, [card("11111111")])

        listing = get_listing(db_session, "11111111")
        assert listing.last_seen_at > first_seen
        assert listing.first_seen_at == first_seen


class TestDelisting:

    def test_unseen_listing_delisted(self, db_session, reconciler, realtor_search):
        reconciler.apply(realtor_search, [card("11111111"), card("22222222")])
        result = reconciler.apply(realtor_search, [card("11111111")])

        assert result.delisted == 1
        gone = get_listing(db_session, "22222222")
        assert gone.status == "delisted"
        assert gone.delisted_at is not None
        assert membership(db_session, gone, realtor_search).is_active is False
        last = db_session.query(Snapshot).filter(Snapshot.listing_id == gone.id).order_by(Snapshot.id.desc()).first()
        assert last.status == "delisted"
        assert get_listing(db_session, "11111111").status == "active"

    def test_delisting_scoped_to_search(self, db_session, reconciler, realtor_search, second_search):
        reconciler.apply(second_search, [card("33333333")])
        result = reconciler.apply(realtor_search, [card("11111111")])

        assert result.delisted == 0
        assert get_listing(db_session, "33333333").status == "active"

    def test_other_membership_untouched(self, db_session, reconciler, realtor_search, second_search):
        reconciler.apply(realtor_search, [card("11111111")])
        reconciler.apply(second_search, [card("11111111")])

        reconciler.apply(realtor_search, [])

        listing = get_listing(db_session, "11111111")
        assert listing.status == "delisted"
        assert membership(db_session, listing, realtor_search).is_active is False
        assert membership(db_session, listing, second_search).is_active is True

    def test_resurrection(self, db_session, reconciler, realtor_search, second_search):
        reconciler.apply(realtor_search, [card("11111111")])
        reconciler.apply(realtor_search, [])

        result = reconciler.apply(second_search, [card("11111111")])

        listing = get_listing(db_session, "11111111")
        assert result.new == 0
        assert listing.status == "active"
        assert listing.delisted_at is None
        assert membership(db_session, listing, second_search).is_active is True
        assert membership(db_session, listing, realtor_search).is_active is False

        reconciler.apply(realtor_search, [card("11111111")])
        assert membership(db_session, listing, realtor_search).is_active is True

    def test_membership_closed_after_listing_already_delisted(
        self, db_session, reconciler, realtor_search, second_search
    ):
        reconciler.apply(realtor_search, [card("11111111")])
        reconciler.apply(second_search, [card("11111111")])
        reconciler.apply(realtor_search, [])

        result = reconciler.apply(second_search, [])

        listing = get_listing(db_session, "11111111")
        assert result.delisted == 0
        assert listing.status == "delisted"
        assert membership(db_session, listing, second_search).is_active is False
        statuses = [s.status for s in db_session.query(Snapshot).filter(Snapshot.listing_id == listing.id)]
        assert statuses.count("delisted") == 1

    def test_delisted_once(self, db_session, reconciler, realtor_search):
        reconciler.apply(realtor_search, [card("11111111")])
        reconciler.apply(realtor_search, [])
        result = reconciler.apply(realtor_search, [])

        assert result.delisted == 0

    def test_truncated_set_does_not_delist(self, db_session, reconciler, realtor_search):
        reconciler.apply(realtor_search, [card("11111111"), card("22222222")])
        result = reconciler.apply(realtor_search, [card("11111111")], delist_unseen=False)

        assert result.delisted == 0
        assert get_listing(db_session, "22222222").status == "active"


class TestTransaction:

    def test_rollback_on_store_failure(self, db_session, reconciler, realtor_search):
        reconciler.apply(realtor_search, [card("11111111")])

        bad = card("99999999")
        bad.address = None  # violates NOT NULL
        with pytest.raises(IntegrityError):
            reconciler.apply(realtor_search, [card("11111111", 450000), card("22222222"), bad])

        assert db_session.query(Listing).count() == 1
        listing = get_listing(db_session, "11111111")
        assert listing.current_price == 500000
        assert listing.price_change_count == 0


class TestDetailFetch:

    def test_failed_detail_is_warning(self, db_session, reconciler, realtor_search):
        async def fetch(item):
            if item.natural_id == "22222222":
                raise BlockedError("HTTP 403", url=item.detail_url, http_status=403)
            return ListingDetail(year_built=2001)

        result = asyncio.run(reconciler.reconcile(realtor_search, [card("11111111"), card("22222222")], fetch))

        assert result.new == 2
        assert len(result.errors) == 1
        error = result.errors[0]
        assert error.severity == ErrorSeverity.WARNING
        assert error.category == ErrorCategory.BLOCKED
        assert error.context["natural_id"] == "22222222"
        assert get_listing(db_session, "11111111").year_built == 2001
        assert get_listing(db_session, "22222222").year_built is None

    def test_details_only_for_new_listings(self, db_session, reconciler, realtor_search):
        reconciler.apply(realtor_search, [card("11111111")])
        fetched = []

        async def fetch(item):
            fetched.append(item.natural_id)
            return ListingDetail()

        asyncio.run(reconciler.reconcile(realtor_search, [card("11111111"), card("22222222")], fetch))

        assert fetched == ["22222222"]

    def test_budget_stops_detail_fetches(self, db_session, reconciler, realtor_search):
        fetched = []

        async def fetch(item):
            if fetched:
                raise RequestBudgetExceeded("budget")
            fetched.append(item.natural_id)
            return ListingDetail(year_built=1999)

        result = asyncio.run(reconciler.reconcile(
            realtor_search, [card("11111111"), card("22222222"), card("33333333")], fetch
        ))

        assert result.new == 3
        assert result.errors == []
        assert fetched == ["11111111"]

    def test_open_breaker_stops_detail_fetches(self, db_session, reconciler, realtor_search):
        calls = []

        async def fetch(item):
            calls.append(item.natural_id)
            raise CircuitOpenError("realtor", "too many failures")

        result = asyncio.run(reconciler.reconcile(realtor_search, [card("11111111"), card("22222222")], fetch))

        assert calls == ["11111111"]
        assert result.new == 2
        assert len(result.errors) == 1
        assert result.errors[0].category == ErrorCategory.RATE_LIMIT
