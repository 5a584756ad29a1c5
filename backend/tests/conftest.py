"""
Pytest configuration and fixtures for Listing Tracker tests.
"""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from api.database import Base, get_db
from api.main import app


# Create an in-memory SQLite database for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def override_get_db():
    """Override the get_db dependency for testing."""
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()


async def no_sleep(seconds):
    """Drop-in for asyncio.sleep that returns immediately."""
    return None


@pytest.fixture(scope="function")
def db_session():
    """Create a fresh database session for each test."""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(db_session, monkeypatch):
    """Create a test client with database override; background runs are disabled."""
    async def skip_background_run(run_id):
        return None

    monkeypatch.setattr("api.main.run_scrape_in_background", skip_background_run)
    app.dependency_overrides[get_db] = override_get_db
    Base.metadata.create_all(bind=engine)

    # Use TestClient directly without context manager for compatibility
    test_client = TestClient(app)
    yield test_client

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def realtor_search(db_session):
    """Create an active Realtor.ca saved search."""
    from api.database import TrackingList

    search = TrackingList(
        name="Montreal houses",
        source="realtor",
        criteria={"priceMin": 300000, "priceMax": 800000, "propertyTypes": ["detached"]},
        is_active=True
    )
    db_session.add(search)
    db_session.commit()
    db_session.refresh(search)
    return search


@pytest.fixture
def centris_search(db_session):
    """Create an active Centris.ca saved search."""
    from api.database import TrackingList

    search = TrackingList(
        name="Laval condos",
        source="centris",
        criteria={"municipalities": ["Laval"], "property_types": ["condo"]},
        is_active=True
    )
    db_session.add(search)
    db_session.commit()
    db_session.refresh(search)
    return search


@pytest.fixture
def sample_listing(db_session, realtor_search):
    """Create an active listing linked to the Realtor.ca saved search."""
    from api.database import Listing, ListingTrackingList

    listing = Listing(
        mls_number="27384910",
        source="realtor",
        source_url="https://www.realtor.ca/real-estate/27384910/123-rue-main-montreal",
        address="123 Rue Main, Montreal, QC H2X 1Y4",
        original_price=550000,
        current_price=550000,
        status="active"
    )
    db_session.add(listing)
    db_session.flush()
    db_session.add(ListingTrackingList(listing_id=listing.id, tracking_list_id=realtor_search.id, is_active=True))
    db_session.commit()
    db_session.refresh(listing)
    return listing
