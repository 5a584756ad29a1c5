"""
Base classes for the listing scraper system.

This module defines the data structures shared by the extractors, the
reconciliation engine and the run controller, plus the abstract base
class every site extractor implements.
"""

from abc import ABC, abstractmethod
from typing import List, Dict, Optional, Any
from dataclasses import dataclass, field, asdict
from enum import Enum
from datetime import datetime, timezone
import asyncio
import logging
import traceback

from bs4 import BeautifulSoup
from playwright.async_api import Error as PlaywrightError
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

# ANSI color codes for terminal output
class Colors:
    """ANSI color codes for colorized logging."""
    RESET = '\033[0m'
    BOLD = '\033[1m'
    DIM = '\033[2m'

    # Colors
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    MAGENTA = '\033[95m'
    GRAY = '\033[90m'

    @staticmethod
    def green(text):
        return f"{Colors.GREEN}{text}{Colors.RESET}"

    @staticmethod
    def yellow(text):
        return f"{Colors.YELLOW}{text}{Colors.RESET}"

    @staticmethod
    def red(text):
        return f"{Colors.RED}{text}{Colors.RESET}"

    @staticmethod
    def blue(text):
        return f"{Colors.BLUE}{text}{Colors.RESET}"

    @staticmethod
    def cyan(text):
        return f"{Colors.CYAN}{text}{Colors.RESET}"

    @staticmethod
    def gray(text):
        return f"{Colors.GRAY}{text}{Colors.RESET}"

    @staticmethod
    def bold(text):
        return f"{Colors.BOLD}{text}{Colors.RESET}"


# ============================================================
# EXCEPTIONS
# ============================================================

class ScraperError(Exception):
    """Base class for scraper failures."""


class BlockedError(ScraperError):
    """The site served an anti-automation block page instead of content."""

    def __init__(self, message: str, url: Optional[str] = None, http_status: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.http_status = http_status


class CircuitOpenError(ScraperError):
    """The circuit breaker for a source family rejected the attempt."""

    def __init__(self, service: str, reason: str):
        super().__init__(f"Circuit breaker open for {service}: {reason}")
        self.service = service
        self.reason = reason


class RequestBudgetExceeded(ScraperError):
    """The per-run request ceiling was reached."""


class UrlBuildError(ValueError):
    """A saved search could not be turned into a crawlable URL."""


# ============================================================
# STRUCTURED RUN ERRORS
# ============================================================

class ErrorSeverity(str, Enum):
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    NETWORK = "network"
    PARSE = "parse"
    RATE_LIMIT = "rate_limit"
    BLOCKED = "blocked"
    DATABASE = "database"
    UNKNOWN = "unknown"


@dataclass
class ScrapeError:
    """A structured error recorded on a scrape run."""
    severity: ErrorSeverity
    category: ErrorCategory
    message: str
    context: Dict[str, Any] = field(default_factory=dict)
    stack: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        **context
    ) -> 'ScrapeError':
        """Build a structured error from an exception, classifying it."""
        if isinstance(exc, BlockedError):
            context.setdefault('url', exc.url)
            context.setdefault('http_status', exc.http_status)
        return cls(
            severity=severity,
            category=classify_error(exc),
            message=str(exc) or exc.__class__.__name__,
            context=context,
            stack=''.join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        )

    def to_dict(self) -> Dict:
        return {
            'timestamp': self.timestamp.isoformat(),
            'severity': self.severity.value,
            'category': self.category.value,
            'message': self.message,
            # Drop empty context keys so stored errors stay compact
            'context': {k: v for k, v in self.context.items() if v is not None},
            'stack': self.stack,
        }


def classify_error(exc: BaseException) -> ErrorCategory:
    """Map an exception onto the run error taxonomy."""
    if isinstance(exc, BlockedError):
        return ErrorCategory.BLOCKED
    if isinstance(exc, CircuitOpenError):
        return ErrorCategory.RATE_LIMIT
    if isinstance(exc, SQLAlchemyError):
        return ErrorCategory.DATABASE

    message = str(exc).lower()
    if '429' in message or 'rate limit' in message or 'too many requests' in message:
        return ErrorCategory.RATE_LIMIT
    if isinstance(exc, (asyncio.TimeoutError, ConnectionError, PlaywrightError)):
        return ErrorCategory.NETWORK
    if any(k in message for k in ('timeout', 'net::', 'econnreset', 'econnrefused', 'network')):
        return ErrorCategory.NETWORK
    return ErrorCategory.UNKNOWN


# ============================================================
# SITE CONFIGURATION AND EXTRACTED RECORDS
# ============================================================

@dataclass
class SiteConfig:
    """Configuration for a listing source family."""
    key: str                            # Database identifier ('realtor', 'centris')
    name: str                           # Display name
    base_url: str                       # Prefix for relative detail links
    home_url: str                       # Visited once for session warmup
    page_param: str                     # Pagination query parameter
    card_wait_selector: Optional[str] = None   # Selector awaited on search pages
    detail_wait_selector: Optional[str] = None
    block_markers: List[str] = field(default_factory=list)  # Text seen on block pages
    navigation_timeout: float = 30.0


@dataclass
class SearchResult:
    """Minimum viable record extracted from a search-result card."""
    natural_id: str
    detail_url: str
    address: str
    price: int

    # Optional card extras (not every family provides them)
    category: Optional[str] = None
    bedrooms: Optional[int] = None
    bathrooms: Optional[int] = None
    photo_count: Optional[int] = None
    photo_url: Optional[str] = None

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class ListingDetail:
    """Full optional attribute set extracted from a detail page."""
    price: Optional[int] = None
    address: Optional[str] = None
    natural_id: Optional[str] = None
    municipality: Optional[str] = None
    postal_code: Optional[str] = None
    year_built: Optional[int] = None
    lot_size_sqft: Optional[int] = None
    lot_dimensions: Optional[str] = None
    living_area_sqft: Optional[int] = None
    bedrooms: Optional[int] = None
    bathrooms: Optional[int] = None
    bathrooms_half: Optional[int] = None
    stories: Optional[float] = None
    property_type: Optional[str] = None
    has_garage: Optional[bool] = None
    garage_spaces: Optional[int] = None
    has_basement: Optional[bool] = None
    basement_type: Optional[str] = None
    basement_finished: Optional[bool] = None
    has_pool: Optional[bool] = None
    pool_type: Optional[str] = None
    has_ac: Optional[bool] = None
    has_fireplace: Optional[bool] = None
    heating_type: Optional[str] = None
    water_supply: Optional[str] = None
    sewage: Optional[str] = None
    description_text: Optional[str] = None
    photo_urls: List[str] = field(default_factory=list)
    broker_name: Optional[str] = None
    broker_agency: Optional[str] = None
    days_on_market: Optional[int] = None
    original_list_date: Optional[datetime] = None

    @property
    def photo_count(self) -> int:
        return len(self.photo_urls)

    def to_dict(self) -> Dict:
        data = asdict(self)
        if self.original_list_date:
            data['original_list_date'] = self.original_list_date.isoformat()
        return data


@dataclass
class RunStats:
    """Counters aggregated over one scrape run."""
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    tracking_lists_processed: int = 0
    listings_found: int = 0
    listings_new: int = 0
    listings_updated: int = 0
    listings_delisted: int = 0
    requests: int = 0

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at and self.started_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict:
        return {
            'tracking_lists_processed': self.tracking_lists_processed,
            'listings_found': self.listings_found,
            'listings_new': self.listings_new,
            'listings_updated': self.listings_updated,
            'listings_delisted': self.listings_delisted,
            'requests': self.requests,
            'duration_seconds': self.duration_seconds,
        }


class BaseExtractor(ABC):
    """
    Abstract base class for all site extractors.

    Extractors are pure: they read a parsed page and return records, and
    never touch the network or the database.

    Subclasses must implement:
    - extract_search_results(): Parse a search-results page
    - extract_detail(): Parse a single listing's detail page
    """

    def __init__(self, config: SiteConfig):
        """
        Initialize the extractor.

        Args:
            config: Site configuration
        """
        self.config = config
        self.logger = logging.getLogger(f"scraper.{config.key}")

    @staticmethod
    def parse(html: str) -> BeautifulSoup:
        """Parse rendered HTML into a soup."""
        return BeautifulSoup(html, 'html.parser')

    @abstractmethod
    def extract_search_results(self, soup: BeautifulSoup) -> List[SearchResult]:
        """
        Extract every listing card on a search-results page.

        Args:
            soup: Parsed search-results page

        Returns:
            List of SearchResult objects (empty at the end of pagination)
        """
        pass

    @abstractmethod
    def extract_detail(self, soup: BeautifulSoup) -> ListingDetail:
        """
        Extract the detail record from a listing page.

        Args:
            soup: Parsed detail page

        Returns:
            ListingDetail with whatever fields could be found
        """
        pass

    def is_blocked(self, text: str) -> bool:
        """Check page text for this site's block-page markers."""
        if not text:
            return False
        return any(marker in text for marker in self.config.block_markers)

    def log_empty_page(self, soup: BeautifulSoup):
        """Log why a search page produced no cards."""
        text = soup.get_text(' ', strip=True)
        if self.is_blocked(text):
            self.logger.error("Bot protection detected on page")
        elif len(text) < 1000:
            self.logger.warning("No listing cards found; page content is suspiciously short")
        else:
            self.logger.warning("No listing cards found; page has content but selectors don't match")
