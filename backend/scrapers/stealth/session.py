"""
Browser session persistence.

Cookies are written to `.sessions/{service}-session.json` after a crawl
and restored into the next browser context, unless the file is older
than STALE_AFTER_DAYS.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Optional
import json
import logging

from playwright.async_api import BrowserContext, Error as PlaywrightError

logger = logging.getLogger(__name__)


STALE_AFTER_DAYS = 7
SECONDS_PER_DAY = 60 * 60 * 24


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionStore:
    """File-backed cookie store, one file per source family."""

    def __init__(self, directory: Optional[Path] = None, clock: Callable[[], datetime] = _utc_now):
        if directory is None:
            from api.config import settings
            directory = settings.sessions_dir
        self.directory = Path(directory)
        self.clock = clock

    def path_for(self, service: str) -> Path:
        return self.directory / f"{service}-session.json"

    def _read(self, service: str) -> Optional[Dict]:
        path = self.path_for(service)
        if not path.exists():
            return None
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)

    def _write(self, service: str, data: Dict):
        self.directory.mkdir(parents=True, exist_ok=True)
        with open(self.path_for(service), 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)

    def _age_days(self, data: Dict) -> float:
        last_used = datetime.fromisoformat(data['lastUsed'])
        if last_used.tzinfo is None:
            last_used = last_used.replace(tzinfo=timezone.utc)
        return (self.clock() - last_used).total_seconds() / SECONDS_PER_DAY

    async def save(self, context: BrowserContext, service: str):
        """Capture the context's cookies. Failures are logged, not raised."""
        try:
            cookies = await context.cookies()
            try:
                existing = self._read(service) or {}
            except ValueError:
                existing = {}

            data = {
                'cookies': cookies,
                'localStorage': {},
                'sessionStorage': {},
                'lastUsed': self.clock().isoformat(),
                'useCount': existing.get('useCount', 0) + 1,
            }
            self._write(service, data)
            logger.info(f"Saved {service} session ({len(cookies)} cookies, use #{data['useCount']})")
        except (OSError, PlaywrightError) as e:
            logger.warning(f"Failed to save {service} session: {e}")

    async def load(self, context: BrowserContext, service: str) -> bool:
        """
        Restore saved cookies into a context.

        Returns:
            True if cookies were applied, False for a missing, stale,
            empty or unreadable session
        """
        try:
            data = self._read(service)
            if data is None:
                logger.info(f"No existing {service} session found - starting fresh")
                return False

            age = self._age_days(data)
            if age > STALE_AFTER_DAYS:
                logger.info(f"{service} session is stale ({int(age)} days old) - starting fresh")
                return False

            cookies = data.get('cookies') or []
            if not cookies:
                return False

            await context.add_cookies(cookies)
            logger.info(
                f"Loaded {service} session ({len(cookies)} cookies, "
                f"use #{data.get('useCount', 0)}, {int(age)} days old)"
            )
            return True
        except (OSError, ValueError, KeyError, PlaywrightError) as e:
            logger.warning(f"Failed to load {service} session: {e}")
            return False

    def clear(self, service: str):
        """Overwrite a saved session with an empty one."""
        if not self.path_for(service).exists():
            return
        self._write(service, {
            'cookies': [],
            'lastUsed': self.clock().isoformat(),
            'useCount': 0,
        })
        logger.info(f"Cleared {service} session")

    def age(self, service: str) -> Optional[float]:
        """Age of a saved session in days, or None when there is none."""
        try:
            data = self._read(service)
            return self._age_days(data) if data else None
        except (OSError, ValueError, KeyError):
            return None
