"""
Run Controller - orchestrates one crawl of every active saved search.

For each saved search: build the search URL, paginate through the
result pages, fetch details for new listings and reconcile the
extracted set against the store. Every navigation goes through the
evasion toolkit (breaker, pacing, retry, bandwidth budget).
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, Type
from datetime import datetime, timezone
import logging

from bs4 import BeautifulSoup
from sqlalchemy.orm import Session

from api.database import ScrapeRun, TrackingList, utc_now
from api.healthcheck import ping_healthcheck
from .base import (
    BaseExtractor,
    BlockedError,
    CircuitOpenError,
    RequestBudgetExceeded,
    RunStats,
    ScrapeError,
    ErrorSeverity,
    ErrorCategory,
    SearchResult,
    ListingDetail,
    SiteConfig,
    Colors,
)
from .config import get_site_config
from .crawlers.stealth import StealthCrawler
from .reconciler import Reconciler, ReconcileResult
from .sites.realtor import RealtorExtractor
from .sites.centris import CentrisExtractor
from .stealth.circuit_breaker import CircuitBreaker
from .stealth.fingerprint import Fingerprint, FingerprintRotator
from .stealth.human import HumanBehavior, HumanBehaviorOptions
from .stealth.proxy import ProxyBudget
from .stealth.retry import RetryConfig, retry_navigation
from .stealth.session import SessionStore
from .stealth.timing import TimingController
from .url_builders import build_search_url, with_page

logger = logging.getLogger(__name__)


MAX_REQUESTS_PER_RUN = 500
MAX_PAGES_PER_SEARCH = 20
CONSECUTIVE_FAILURE_THRESHOLD = 5


# Registry of implemented extractors, keyed by source family
EXTRACTOR_REGISTRY: Dict[str, Type[BaseExtractor]] = {
    'realtor': RealtorExtractor,
    'centris': CentrisExtractor,
}

CrawlerFactory = Callable[[SiteConfig, Fingerprint, Optional[Dict[str, str]]], StealthCrawler]


def default_crawler_factory(
    site: SiteConfig,
    fingerprint: Fingerprint,
    proxy: Optional[Dict[str, str]]
) -> StealthCrawler:
    """Build a Playwright crawler with the stealth features switched on in settings."""
    from api.config import settings
    return StealthCrawler(
        site,
        fingerprint=fingerprint,
        proxy=proxy,
        country=settings.proxy_country,
        stealth=settings.enable_realtor_stealth,
        headless=settings.scraper_headless,
        timeout=float(settings.scraper_timeout),
        human=HumanBehavior() if settings.enable_advanced_human_behavior else None,
        human_options=HumanBehaviorOptions(),
        session_store=SessionStore() if settings.enable_session_persistence else None,
    )


class _SourceSession:
    """A crawler for one source family plus its bookkeeping for this run."""

    def __init__(self, crawler, extractor: BaseExtractor, fingerprint: Fingerprint):
        self.crawler = crawler
        self.extractor = extractor
        self.fingerprint = fingerprint
        self.failed = False


class RunController:
    """
    Owns the lifecycle of scrape runs.

    Usage:
        controller = RunController(db_session)

        if not controller.is_run_in_progress():
            run_id = controller.start_run('manual')
            await controller.execute_run(run_id)
    """

    def __init__(
        self,
        db: Session,
        crawler_factory: Optional[CrawlerFactory] = None,
        breaker: Optional[CircuitBreaker] = None,
        budget: Optional[ProxyBudget] = None,
        rotator: Optional[FingerprintRotator] = None,
        timing: Optional[TimingController] = None,
        retry_config: Optional[RetryConfig] = None,
        source_enabled: Optional[Callable[[str], bool]] = None,
        ping: Callable[[str], Awaitable[bool]] = ping_healthcheck,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
        max_requests: int = MAX_REQUESTS_PER_RUN,
        max_pages: int = MAX_PAGES_PER_SEARCH,
        failure_threshold: int = CONSECUTIVE_FAILURE_THRESHOLD,
        warmup: Optional[bool] = None
    ):
        """
        Initialize the run controller.

        Args:
            db: SQLAlchemy database session
            crawler_factory: Builds a crawler for (site, fingerprint, proxy)
            breaker, budget, rotator, timing, retry_config: Toolkit policies,
                built from settings when omitted
            source_enabled: Predicate gating saved searches by source family
            ping: Liveness notifier called with 'success' or 'fail'
            sleep: Awaitable sleep used between retries
        """
        from api.config import settings

        self.db = db
        self.crawler_factory = crawler_factory or default_crawler_factory
        self.breaker = breaker or CircuitBreaker(db)
        self.budget = budget or ProxyBudget(db)
        self.rotator = rotator or FingerprintRotator(db)
        self.timing = timing or TimingController()
        self.retry_config = retry_config or RetryConfig.from_settings()
        self.source_enabled = source_enabled or settings.is_source_enabled
        self.ping = ping
        self.sleep = sleep
        self.max_requests = max_requests
        self.max_pages = max_pages
        self.failure_threshold = failure_threshold
        self.warmup = settings.enable_session_warmup if warmup is None else warmup
        self.reconciler = Reconciler(db)

        self.requests = 0
        self._sessions: Dict[str, _SourceSession] = {}

    # ============================================================
    # RUN LIFECYCLE
    # ============================================================

    def start_run(self, run_type: str = 'manual') -> int:
        """Create a 'running' ScrapeRun row and return its id."""
        run = ScrapeRun(run_type=run_type, status='running', started_at=utc_now(), errors=[])
        self.db.add(run)
        self.db.commit()
        logger.info(f"Started {run_type} scrape run {run.id}")
        return run.id

    def is_run_in_progress(self) -> bool:
        """Whether any persisted run is still 'running'."""
        return self.db.query(ScrapeRun).filter(ScrapeRun.status == 'running').first() is not None

    async def run_scrape(self, run_type: str = 'manual') -> int:
        """Start a run and execute it to completion."""
        run_id = self.start_run(run_type)
        await self.execute_run(run_id)
        return run_id

    async def execute_run(self, run_id: int):
        """
        Crawl and reconcile every active saved search, then finalize the run.

        The run always ends in a terminal status:
        - completed: every search processed (per-search errors allowed)
        - partial: aborted after too many consecutive search failures
        - failed: an error escaped the per-search handling
        """
        stats = RunStats()
        errors: List[ScrapeError] = []
        status = 'failed'
        self.requests = 0
        self._sessions = {}

        try:
            searches = (
                self.db.query(TrackingList)
                .filter(TrackingList.is_active.is_(True))
                .order_by(TrackingList.id)
                .all()
            )
            logger.info(f"Run {run_id}: {len(searches)} active saved searches")

            consecutive_failures = 0
            for search in searches:
                if self.requests >= self.max_requests:
                    logger.warning(f"Request budget of {self.max_requests} reached, stopping run")
                    break

                if not self.source_enabled(search.source):
                    logger.info(f"Skipping saved search {search.id} ({search.name}): {search.source} scraping disabled")
                    continue

                try:
                    result = await self.process_search(search)
                except Exception as e:
                    self.db.rollback()
                    consecutive_failures += 1
                    logger.error(f"{Colors.red('[ERR]')} Saved search {search.id} ({search.name}) failed: {e}")
                    errors.append(ScrapeError.from_exception(e, ErrorSeverity.ERROR, saved_search_id=search.id))

                    if consecutive_failures >= self.failure_threshold:
                        logger.error(f"{consecutive_failures} consecutive failures, aborting run {run_id}")
                        errors.append(ScrapeError(
                            severity=ErrorSeverity.CRITICAL,
                            category=ErrorCategory.UNKNOWN,
                            message='Circuit breaker triggered - aborting scrape run',
                        ))
                        break
                    continue

                consecutive_failures = 0
                errors.extend(result.errors)
                stats.tracking_lists_processed += 1
                stats.listings_found += result.found
                stats.listings_new += result.new
                stats.listings_updated += result.updated
                stats.listings_delisted += result.delisted

            status = 'partial' if any(e.severity == ErrorSeverity.CRITICAL for e in errors) else 'completed'

        except Exception as e:
            logger.exception(f"Scrape run {run_id} failed: {e}")
            self.db.rollback()
            status = 'failed'
            errors.append(ScrapeError.from_exception(e, ErrorSeverity.CRITICAL))

        finally:
            await self.close_sessions()
            stats.requests = self.requests
            stats.completed_at = datetime.now(timezone.utc)
            self._finalize(run_id, status, stats, errors)

        await self.ping('fail' if status == 'failed' else 'success')

    def _finalize(self, run_id: int, status: str, stats: RunStats, errors: List[ScrapeError]):
        run = self.db.get(ScrapeRun, run_id)
        run.status = status
        run.completed_at = stats.completed_at
        run.tracking_lists_processed = stats.tracking_lists_processed
        run.listings_found = stats.listings_found
        run.listings_new = stats.listings_new
        run.listings_updated = stats.listings_updated
        run.listings_delisted = stats.listings_delisted
        run.errors = [e.to_dict() for e in errors]
        self.db.commit()

        summary = stats.to_dict()
        message = (
            f"Run {run_id} {status}: {summary['tracking_lists_processed']} searches, "
            f"{summary['listings_found']} found, {summary['listings_new']} new, "
            f"{summary['listings_updated']} updated, {summary['listings_delisted']} delisted, "
            f"{summary['requests']} requests, {len(errors)} errors"
        )
        if status == 'completed':
            logger.info(Colors.green(message))
        elif status == 'partial':
            logger.warning(Colors.yellow(message))
        else:
            logger.error(Colors.red(message))

    # ============================================================
    # PER-SEARCH PROCESSING
    # ============================================================

    async def process_search(self, search: TrackingList) -> ReconcileResult:
        """Paginate one saved search and reconcile what it returned."""
        session = await self._get_session(search.source)
        site = session.extractor.config
        log = logging.getLogger(f"scraper.{search.source}")

        search_url = build_search_url(search.source, search.criteria, search.custom_url)
        log.info(f"Saved search {search.id} ({search.name}): {search_url}")

        results: List[SearchResult] = []
        seen_ids = set()
        complete = True

        for page_number in range(1, self.max_pages + 1):
            if self.requests >= self.max_requests:
                log.warning(f"Request budget reached on page {page_number}, results are incomplete")
                complete = False
                break

            soup = await self.fetch_page(search.source, with_page(search_url, site.page_param, page_number), 'search')
            page_results = session.extractor.extract_search_results(soup)
            if not page_results:
                log.debug(f"Page {page_number} returned no listings, end of results")
                break

            fresh = [r for r in page_results if r.natural_id not in seen_ids]
            if not fresh:
                # Site ignored the page parameter and served a page we already have
                log.debug(f"Page {page_number} repeated earlier listings, end of results")
                break
            seen_ids.update(r.natural_id for r in fresh)
            results.extend(fresh)
            log.info(f"Page {page_number}: {len(page_results)} listings")

        async def fetch_detail(item: SearchResult) -> ListingDetail:
            if self.requests >= self.max_requests:
                raise RequestBudgetExceeded(f"Request budget of {self.max_requests} reached")
            soup = await self.fetch_page(search.source, item.detail_url, 'detail')
            return session.extractor.extract_detail(soup)

        result = await self.reconciler.reconcile(
            search, results, detail_fetcher=fetch_detail, delist_unseen=complete
        )
        log.info(
            f"Saved search {search.id}: {result.found} found, {result.new} new, "
            f"{result.updated} updated, {result.delisted} delisted"
        )
        return result

    async def fetch_page(self, source: str, url: str, page_type: str) -> BeautifulSoup:
        """
        Navigate through the evasion toolkit and return the parsed page.

        Raises:
            CircuitOpenError: The source's breaker rejected the attempt
            BlockedError: A block page was served on every attempt
        """
        decision = self.breaker.can_execute(source)
        if not decision.allowed:
            raise CircuitOpenError(source, decision.reason or 'circuit open')

        session = await self._get_session(source)

        async def navigate() -> BeautifulSoup:
            await self.timing.wait(page_type)
            self.requests += 1
            page = await session.crawler.fetch(url, page_type)
            if session.crawler.is_proxied:
                self.budget.track(page_type)
            soup = session.extractor.parse(page.html)
            if session.extractor.is_blocked(soup.get_text(' ')):
                raise BlockedError(f"Bot protection page served for {url}", url=url, http_status=page.status)
            return soup

        try:
            soup = await retry_navigation(navigate, self.retry_config, url, sleep=self.sleep)
        except Exception as e:
            session.failed = True
            self.breaker.record_failure(source, str(e)[:500])
            raise

        self.breaker.record_success(source)
        return soup

    # ============================================================
    # CRAWLER SESSIONS
    # ============================================================

    async def _get_session(self, source: str) -> _SourceSession:
        """One crawler per source family, created on first use."""
        if source in self._sessions:
            return self._sessions[source]

        if source not in EXTRACTOR_REGISTRY:
            raise ValueError(f"No extractor registered for source: {source}")

        site = get_site_config(source)
        fingerprint = self.rotator.select()
        proxy = self.budget.get_proxy_configuration()
        crawler = self.crawler_factory(site, fingerprint, proxy)
        session = _SourceSession(crawler, EXTRACTOR_REGISTRY[source](), fingerprint)
        self._sessions[source] = session

        await crawler.start()
        if self.warmup and not getattr(crawler, 'session_restored', False):
            try:
                await self.timing.wait('warmup')
                self.requests += 1
                await crawler.warmup()
                if crawler.is_proxied:
                    self.budget.track('warmup')
            except Exception as e:
                logger.warning(f"Session warmup failed for {site.name}: {e}")

        return session

    async def close_sessions(self):
        """Close every crawler and record each fingerprint's outcome."""
        for source, session in list(self._sessions.items()):
            try:
                await session.crawler.close()
            except Exception as e:
                logger.warning(f"Error closing {source} crawler: {e}")
            try:
                self.rotator.mark_used(session.fingerprint.id, success=not session.failed)
            except Exception as e:
                logger.warning(f"Could not record fingerprint usage for {session.fingerprint.id}: {e}")
                self.db.rollback()
        self._sessions = {}

    def get_health(self) -> Dict:
        """Toolkit state for monitoring."""
        return {
            'circuit_breakers': {source: self.breaker.get_status(source) for source in EXTRACTOR_REGISTRY},
            'proxy_budget': self.budget.get_status(),
            'fingerprints': self.rotator.get_stats(),
        }
