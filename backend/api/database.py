from sqlalchemy import create_engine, Column, Integer, String, Float, DateTime, Boolean, Text, ForeignKey, Index, JSON
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import sessionmaker, relationship
from datetime import datetime, timezone
from pathlib import Path


def utc_now():
    """Return current UTC time (timezone-aware). Replaces deprecated datetime.utcnow()."""
    return datetime.now(timezone.utc)


Base = declarative_base()


# Allowed values for string-typed status columns
LISTING_STATUSES = ('active', 'delisted', 'sold', 'expired', 'unknown')
RUN_STATUSES = ('running', 'completed', 'partial', 'failed')
RUN_TYPES = ('scheduled', 'manual')
BREAKER_STATES = ('closed', 'open', 'half_open')
SOURCES = ('realtor', 'centris')


class Listing(Base):
    __tablename__ = 'listings'

    id = Column(Integer, primary_key=True)

    # Natural identifier issued by the listing site (MLS / Centris number)
    mls_number = Column(String(50), unique=True, nullable=False, index=True)
    source = Column(String, default='realtor')
    source_url = Column(Text, nullable=False)

    # Location
    address = Column(String(500), nullable=False)
    municipality = Column(String, index=True)
    postal_code = Column(String(10))
    latitude = Column(Float)
    longitude = Column(Float)

    # Lifecycle
    first_seen_at = Column(DateTime, default=utc_now, nullable=False)
    last_seen_at = Column(DateTime, default=utc_now, nullable=False)
    last_detail_scrape_at = Column(DateTime)
    delisted_at = Column(DateTime)
    status = Column(String, default='active', nullable=False, index=True)

    # Pricing
    original_price = Column(Integer, nullable=False)
    current_price = Column(Integer, nullable=False)
    price_change_count = Column(Integer, default=0, nullable=False)
    days_on_market = Column(Integer)
    original_list_date = Column(DateTime)

    # Structure
    property_type = Column(String)  # detached, condo, duplex, ...
    year_built = Column(Integer)
    lot_size_sqft = Column(Integer)
    lot_dimensions = Column(String)
    living_area_sqft = Column(Integer)
    bedrooms = Column(Integer)
    bathrooms = Column(Integer)
    bathrooms_half = Column(Integer)
    stories = Column(String)

    # Amenities (nullable: extraction is best-effort)
    has_garage = Column(Boolean)
    garage_spaces = Column(Integer)
    has_basement = Column(Boolean)
    basement_type = Column(String)  # full, partial, crawl, none, unknown
    basement_finished = Column(Boolean)
    has_pool = Column(Boolean)
    pool_type = Column(String)  # inground, above_ground, none, unknown
    has_ac = Column(Boolean)
    has_fireplace = Column(Boolean)
    heating_type = Column(String)
    water_supply = Column(String)
    sewage = Column(String)

    # Rich content
    description_text = Column(Text)
    photo_urls = Column(JSON, default=list)
    photo_count = Column(Integer, default=0)
    broker_name = Column(String)
    broker_agency = Column(String)

    # Raw extraction payload kept for forward compatibility
    raw_data = Column(JSON)

    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    # Relationships
    snapshots = relationship("Snapshot", back_populates="listing", cascade="all, delete-orphan")
    memberships = relationship("ListingTrackingList", back_populates="listing", cascade="all, delete-orphan")

    __table_args__ = (
        Index('ix_listings_status_last_seen', 'status', 'last_seen_at'),
    )


class Snapshot(Base):
    __tablename__ = 'snapshots'

    id = Column(Integer, primary_key=True)
    listing_id = Column(Integer, ForeignKey('listings.id', ondelete='CASCADE'), nullable=False, index=True)
    captured_at = Column(DateTime, default=utc_now, nullable=False)
    price = Column(Integer, nullable=False)
    status = Column(String, nullable=False)
    photo_count = Column(Integer)
    is_featured = Column(Boolean, default=False)

    listing = relationship("Listing", back_populates="snapshots")

    __table_args__ = (
        Index('ix_snapshots_listing_captured', 'listing_id', 'captured_at'),
    )


class TrackingList(Base):
    """A saved search. Created and edited outside the scraper."""
    __tablename__ = 'tracking_lists'

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    source = Column(String, default='realtor', nullable=False)  # realtor | centris
    criteria = Column(JSON, default=dict)
    custom_url = Column(Text)  # Overrides criteria when set
    is_active = Column(Boolean, default=True, index=True)
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    memberships = relationship("ListingTrackingList", back_populates="tracking_list", cascade="all, delete-orphan")


class ListingTrackingList(Base):
    __tablename__ = 'listing_tracking_lists'

    listing_id = Column(Integer, ForeignKey('listings.id', ondelete='CASCADE'), primary_key=True)
    tracking_list_id = Column(Integer, ForeignKey('tracking_lists.id', ondelete='CASCADE'), primary_key=True)
    first_matched_at = Column(DateTime, default=utc_now, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    listing = relationship("Listing", back_populates="memberships")
    tracking_list = relationship("TrackingList", back_populates="memberships")

    __table_args__ = (
        Index('ix_membership_list_active', 'tracking_list_id', 'is_active'),
    )


class ScrapeRun(Base):
    __tablename__ = 'scrape_runs'

    id = Column(Integer, primary_key=True)
    run_type = Column(String, default='manual', nullable=False)  # scheduled | manual
    status = Column(String, default='running', nullable=False, index=True)
    started_at = Column(DateTime, default=utc_now, nullable=False)
    completed_at = Column(DateTime)

    tracking_lists_processed = Column(Integer, default=0)
    listings_found = Column(Integer, default=0)
    listings_new = Column(Integer, default=0)
    listings_updated = Column(Integer, default=0)
    listings_delisted = Column(Integer, default=0)

    errors = Column(JSON, default=list)  # Structured ScrapeError dicts

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'run_type': self.run_type,
            'status': self.status,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'tracking_lists_processed': self.tracking_lists_processed,
            'listings_found': self.listings_found,
            'listings_new': self.listings_new,
            'listings_updated': self.listings_updated,
            'listings_delisted': self.listings_delisted,
            'errors': self.errors or [],
        }


class CircuitBreakerState(Base):
    __tablename__ = 'circuit_breaker_state'

    service = Column(String, primary_key=True)  # realtor | centris
    state = Column(String, default='closed', nullable=False)
    opened_at = Column(DateTime)
    failure_count = Column(Integer, default=0, nullable=False)
    success_count = Column(Integer, default=0, nullable=False)
    last_failure_reason = Column(Text)
    last_checked_at = Column(DateTime, default=utc_now, nullable=False)


class FingerprintUsage(Base):
    __tablename__ = 'fingerprint_usage'

    fingerprint_id = Column(String, primary_key=True)
    use_count = Column(Integer, default=0, nullable=False)
    success_count = Column(Integer, default=0, nullable=False)
    failure_count = Column(Integer, default=0, nullable=False)
    last_used_at = Column(DateTime)


class ProxyUsage(Base):
    __tablename__ = 'proxy_usage'

    id = Column(String, primary_key=True, default='current')  # Singleton row
    monthly_usage_gb = Column(Float, default=0.0, nullable=False)
    last_reset_date = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)


def as_utc(value: datetime):
    """SQLite drops tzinfo on round-trip; treat naive values as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# Database setup - import settings for database URL
from api.config import settings

if settings.database_url.startswith('sqlite'):
    # Background runs use their own session from a worker thread
    engine = create_engine(
        settings.database_url,
        echo=False,
        connect_args={"check_same_thread": False},
        pool_pre_ping=True,
    )
else:
    # Configure engine with connection pooling for better performance
    engine = create_engine(
        settings.database_url,
        echo=False,
        pool_size=5,           # Number of connections to keep in pool
        max_overflow=10,       # Additional connections allowed beyond pool_size
        pool_pre_ping=True,    # Verify connections before use (handles stale connections)
        pool_recycle=3600,     # Recycle connections after 1 hour
    )
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db():
    if settings.database_url.startswith('sqlite:///./'):
        Path(settings.database_url.replace('sqlite:///', '')).parent.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
