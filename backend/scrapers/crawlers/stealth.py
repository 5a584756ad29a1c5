"""
Stealth crawler for listing sites with bot detection.

Uses Playwright with one fingerprinted browser context per source family:
the fingerprint's identity, stealth headers and init scripts, an optional
proxy, and cookies restored from the previous run.
"""

import asyncio
import os
from dataclasses import dataclass
from typing import Optional, Dict
from playwright.async_api import (
    async_playwright,
    Browser,
    BrowserContext,
    Page,
    TimeoutError as PlaywrightTimeoutError,
)
import logging

from ..base import SiteConfig, BlockedError, ScraperError
from ..stealth.fingerprint import Fingerprint, FINGERPRINTS, context_options
from ..stealth.human import HumanBehavior, HumanBehaviorOptions
from ..stealth.injection import STEALTH_SCRIPT, fingerprint_script, get_stealth_headers
from ..stealth.session import SessionStore

logger = logging.getLogger(__name__)

CLOSE_TIMEOUT = 2.0


@dataclass
class FetchedPage:
    """Rendered page content returned by a crawler."""
    url: str
    html: str
    status: Optional[int] = None


class StealthCrawler:
    """
    Stealth crawler using Playwright with anti-bot bypass features.

    Features:
    - Fingerprinted browser context (user agent, viewport, locale, timezone)
    - Stealth init scripts and Chrome client-hint headers
    - Optional proxy and session (cookie) persistence
    - Optional human-like pointer, scroll and reading simulation
    """

    def __init__(
        self,
        site: SiteConfig,
        fingerprint: Optional[Fingerprint] = None,
        proxy: Optional[Dict[str, str]] = None,
        country: str = 'CA',
        stealth: bool = True,
        headless: bool = True,
        timeout: float = 30.0,
        human: Optional[HumanBehavior] = None,
        human_options: Optional[HumanBehaviorOptions] = None,
        session_store: Optional[SessionStore] = None
    ):
        """
        Initialize the stealth crawler.

        Args:
            site: Site configuration (wait selectors, session key)
            fingerprint: Browser identity bundle, defaults to the first one
            proxy: Playwright proxy settings, or None to go direct
            country: Proxy country, selects Accept-Language
            stealth: Register stealth scripts and headers
            headless: Run browser in headless mode
            timeout: Navigation timeout in seconds
            human: Human behaviour simulator, None to skip simulation
            human_options: Which simulated behaviours to run
            session_store: Cookie persistence, None to start fresh every time
        """
        self.site = site
        self.fingerprint = fingerprint or FINGERPRINTS[0]
        self.proxy = proxy
        self.country = country
        self.stealth = stealth
        self.headless = headless
        self.timeout = timeout
        self.human = human
        self.human_options = human_options
        self.session_store = session_store
        self.session_restored = False
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None  # Reusable page
        self._playwright = None

    @property
    def is_proxied(self) -> bool:
        return self.proxy is not None

    async def _get_or_create_page(self) -> Page:
        """Get reusable page or create a new one."""
        if self._page and not self._page.is_closed():
            return self._page
        self._page = await asyncio.wait_for(self._context.new_page(), timeout=10.0)
        return self._page

    async def _init_browser(self):
        """Initialize browser and context if not already done."""
        if self._browser is not None and await self._check_context_valid():
            return

        try:
            self._playwright = await async_playwright().start()

            # Verify Chromium is installed
            chromium_path = self._playwright.chromium.executable_path
            if not chromium_path or not os.path.exists(chromium_path):
                raise ScraperError("Chromium browser not found. Run: playwright install chromium")

            logger.debug("Launching Chromium browser...")
            launch_options = {
                'headless': self.headless,
                'args': [
                    '--disable-blink-features=AutomationControlled',
                    '--disable-dev-shm-usage',
                    '--no-sandbox',
                    '--disable-setuid-sandbox',
                    '--disable-background-timer-throttling',
                    '--disable-backgrounding-occluded-windows',
                    '--disable-renderer-backgrounding',
                ],
                'handle_sigint': False,
                'handle_sigterm': False,
                'handle_sighup': False,
            }
            if self.proxy:
                launch_options['proxy'] = self.proxy
            self._browser = await self._playwright.chromium.launch(**launch_options)

            if not self._browser.is_connected():
                raise ScraperError("Browser launched but not connected")

            options = context_options(self.fingerprint)
            if self.stealth:
                options['extra_http_headers'] = get_stealth_headers(self.country, self.fingerprint)
            self._context = await self._browser.new_context(**options)

            if self.stealth:
                await self._context.add_init_script(STEALTH_SCRIPT)
            await self._context.add_init_script(fingerprint_script(self.fingerprint))

            if self.session_store:
                self.session_restored = await self.session_store.load(self._context, self.site.key)

            logger.info(
                f"Browser ready for {self.site.name} "
                f"(fingerprint: {self.fingerprint.id}, proxy: {'on' if self.proxy else 'off'}, "
                f"session: {'restored' if self.session_restored else 'fresh'})"
            )

        except Exception as e:
            logger.error(f"Failed to initialize browser: {e}")
            # Clean up partial initialization
            await self._cleanup()
            raise

    async def _cleanup(self):
        """Tear down page, context, browser and driver, each bounded by CLOSE_TIMEOUT."""
        steps = [
            ('page', self._page, 'close'),
            ('context', self._context, 'close'),
            ('browser', self._browser, 'close'),
            ('playwright', self._playwright, 'stop'),
        ]
        for label, resource, method in steps:
            if resource is None:
                continue
            try:
                await asyncio.wait_for(getattr(resource, method)(), timeout=CLOSE_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning(f"{self.site.key}: {label} {method} timed out")
            except Exception as e:
                logger.warning(f"{self.site.key}: error during {label} {method}: {e}")

        self._page = None
        self._context = None
        self._browser = None
        self._playwright = None

    async def _check_context_valid(self) -> bool:
        """Check if browser context is still valid."""
        if self._context is None or self._browser is None:
            return False
        return self._browser.is_connected()

    async def start(self):
        await self._init_browser()

    async def fetch(self, url: str, page_type: str = 'search') -> FetchedPage:
        """
        Navigate to a URL and return the rendered HTML.

        Args:
            url: URL to fetch
            page_type: 'search', 'detail' or 'warmup'; selects the selector
                awaited before reading the page

        Returns:
            FetchedPage with the rendered HTML and HTTP status

        Raises:
            BlockedError: On HTTP 403
            ScraperError: On other HTTP error statuses
            playwright Error / TimeoutError: On navigation failure
        """
        await self._init_browser()

        page = await self._get_or_create_page()
        try:
            response = await page.goto(
                url,
                wait_until='domcontentloaded',
                timeout=int(self.timeout * 1000)
            )
        except Exception:
            # A failed navigation can leave the page unusable
            self._page = None
            raise

        status = response.status if response else None
        if status == 403:
            raise BlockedError(f"HTTP 403 for {url} (bot protection)", url=url, http_status=403)
        if status is not None and status >= 400:
            raise ScraperError(f"HTTP {status} for {url}")

        wait_selector = {
            'search': self.site.card_wait_selector,
            'detail': self.site.detail_wait_selector,
        }.get(page_type)
        if wait_selector:
            try:
                await page.wait_for_selector(wait_selector, timeout=8000)
            except PlaywrightTimeoutError:
                logger.debug(f"Selector {wait_selector} not found on {url}")

        if self.human:
            await self.human.interact(page, self.human_options)

        html = await page.content()
        return FetchedPage(url=page.url, html=html, status=status)

    async def warmup(self):
        """Visit the site home page once, like a visitor arriving from a search engine."""
        logger.info(f"Warming up session on {self.site.home_url}")
        await self.fetch(self.site.home_url, page_type='warmup')

    async def close(self):
        """Persist cookies, then close the browser and cleanup resources."""
        if self.session_store and self._context is not None:
            await self.session_store.save(self._context, self.site.key)
        await self._cleanup()

    async def __aenter__(self):
        """Async context manager entry."""
        await self._init_browser()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()
