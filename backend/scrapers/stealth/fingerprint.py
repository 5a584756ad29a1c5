"""
Browser fingerprint library and rotation.

Each bundle is internally consistent (a macOS user agent always comes
with a MacIntel platform, a Safari user agent with Apple's vendor string,
and so on). Usage is persisted in the fingerprint_usage table so
least-recently-used rotation works across runs.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, List, Optional
import logging
import random

from sqlalchemy.orm import Session

from api.database import FingerprintUsage, utc_now, as_utc

logger = logging.getLogger(__name__)


def _chrome_ua(version: int, windows: bool = False) -> str:
    os_part = 'Windows NT 10.0; Win64; x64' if windows else 'Macintosh; Intel Mac OS X 10_15_7'
    return (
        f"Mozilla/5.0 ({os_part}) AppleWebKit/537.36 "
        f"(KHTML, like Gecko) Chrome/{version}.0.0.0 Safari/537.36"
    )


SAFARI_17_UA = (
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 '
    '(KHTML, like Gecko) Version/17.2 Safari/605.1.15'
)


@dataclass
class Fingerprint:
    """A consistent bundle of browser identity signals."""
    id: str
    user_agent: str
    viewport_width: int
    viewport_height: int
    screen_width: int
    screen_height: int
    platform: str
    vendor: str
    hardware_concurrency: int
    device_memory: int
    color_depth: int
    locale: str
    languages: List[str] = field(default_factory=list)
    timezone_id: str = 'America/Toronto'


FINGERPRINTS = [
    Fingerprint(
        id='mac_chrome_131_16gb',
        user_agent=_chrome_ua(131),
        viewport_width=1920, viewport_height=1080,
        screen_width=1920, screen_height=1080,
        platform='MacIntel', vendor='Google Inc.',
        hardware_concurrency=8, device_memory=16, color_depth=30,
        locale='en-CA', languages=['en-CA', 'en-US', 'en', 'fr'],
        timezone_id='America/Montreal',
    ),
    Fingerprint(
        id='mac_chrome_130_8gb',
        user_agent=_chrome_ua(130),
        viewport_width=1680, viewport_height=1050,
        screen_width=1680, screen_height=1050,
        platform='MacIntel', vendor='Google Inc.',
        hardware_concurrency=4, device_memory=8, color_depth=24,
        locale='en-CA', languages=['en-CA', 'en-US', 'en'],
        timezone_id='America/Toronto',
    ),
    Fingerprint(
        id='mac_safari_17_16gb',
        user_agent=SAFARI_17_UA,
        viewport_width=1440, viewport_height=900,
        screen_width=1440, screen_height=900,
        platform='MacIntel', vendor='Apple Computer, Inc.',
        hardware_concurrency=8, device_memory=16, color_depth=24,
        locale='en-CA', languages=['en-CA', 'en'],
        timezone_id='America/Montreal',
    ),
    Fingerprint(
        id='win_chrome_131_16gb',
        user_agent=_chrome_ua(131, windows=True),
        viewport_width=1920, viewport_height=1080,
        screen_width=1920, screen_height=1080,
        platform='Win32', vendor='Google Inc.',
        hardware_concurrency=12, device_memory=16, color_depth=24,
        locale='en-US', languages=['en-US', 'en'],
        timezone_id='America/New_York',
    ),
    Fingerprint(
        id='win_chrome_130_8gb',
        user_agent=_chrome_ua(130, windows=True),
        viewport_width=1366, viewport_height=768,
        screen_width=1366, screen_height=768,
        platform='Win32', vendor='Google Inc.',
        hardware_concurrency=8, device_memory=8, color_depth=24,
        locale='en-US', languages=['en-US', 'en'],
        timezone_id='America/Chicago',
    ),
    Fingerprint(
        id='mac_chrome_131_8gb_2k',
        user_agent=_chrome_ua(131),
        viewport_width=2560, viewport_height=1440,
        screen_width=2560, screen_height=1440,
        platform='MacIntel', vendor='Google Inc.',
        hardware_concurrency=8, device_memory=8, color_depth=30,
        locale='en-CA', languages=['en-CA', 'en-US', 'en'],
        timezone_id='America/Montreal',
    ),
]

FINGERPRINTS_BY_ID = {fp.id: fp for fp in FINGERPRINTS}

# strategy -> (max uses, window); a bundle at the ceiling is skipped
# until its last use is older than the window
ROTATION_LIMITS = {
    'moderate': (5, timedelta(hours=1)),
    'conservative': (20, timedelta(hours=24)),
}

LOW_SUCCESS_MIN_USES = 5
LOW_SUCCESS_RATE = 0.5


class FingerprintRotator:
    """
    Select fingerprints according to a rotation strategy.

    Strategies:
        off: always the first bundle
        aggressive: uniform random per call
        moderate / conservative: least recently used among bundles
            under the strategy's use ceiling
    """

    def __init__(
        self,
        db: Session,
        strategy: Optional[str] = None,
        clock: Callable = utc_now,
        rng: Optional[random.Random] = None
    ):
        if strategy is None:
            from api.config import settings
            strategy = settings.fingerprint_rotation
        self.db = db
        self.strategy = strategy
        self.clock = clock
        self.rng = rng or random.Random()

    def _usage(self) -> Dict[str, FingerprintUsage]:
        return {row.fingerprint_id: row for row in self.db.query(FingerprintUsage).all()}

    def select(self) -> Fingerprint:
        if self.strategy == 'off':
            return FINGERPRINTS[0]

        if self.strategy == 'aggressive':
            return self.rng.choice(FINGERPRINTS)

        max_uses, max_age = ROTATION_LIMITS[self.strategy]
        now = self.clock()
        usage = self._usage()

        def eligible(fp: Fingerprint) -> bool:
            row = usage.get(fp.id)
            if row is None or row.last_used_at is None:
                return True
            recent = now - as_utc(row.last_used_at) < max_age
            return not (row.use_count >= max_uses and recent)

        candidates = [fp for fp in FINGERPRINTS if eligible(fp)]
        if not candidates:
            logger.warning(f"All fingerprints exhausted for strategy '{self.strategy}', resetting usage history")
            self.db.query(FingerprintUsage).delete()
            self.db.commit()
            return FINGERPRINTS[0]

        # Never-used bundles first, then the oldest last use
        def last_used(fp: Fingerprint):
            row = usage.get(fp.id)
            if row is None or row.last_used_at is None:
                return (0, None)
            return (1, as_utc(row.last_used_at))

        never_used = [fp for fp in candidates if last_used(fp)[0] == 0]
        if never_used:
            chosen = never_used[0]
        else:
            chosen = min(candidates, key=lambda fp: last_used(fp)[1])

        logger.debug(f"Selected fingerprint {chosen.id} (strategy: {self.strategy})")
        return chosen

    def mark_used(self, fingerprint_id: str, success: bool):
        """Record the outcome of a session that used a fingerprint."""
        row = self.db.get(FingerprintUsage, fingerprint_id)
        if row is None:
            row = FingerprintUsage(fingerprint_id=fingerprint_id, use_count=0, success_count=0, failure_count=0)
            self.db.add(row)

        row.use_count = (row.use_count or 0) + 1
        if success:
            row.success_count = (row.success_count or 0) + 1
        else:
            row.failure_count = (row.failure_count or 0) + 1
        row.last_used_at = self.clock()
        self.db.commit()

        rate = row.success_count / row.use_count
        if row.use_count >= LOW_SUCCESS_MIN_USES and rate < LOW_SUCCESS_RATE:
            logger.warning(
                f"Fingerprint {fingerprint_id} has low success rate: "
                f"{rate:.0%} ({row.success_count}/{row.use_count})"
            )

    def get_stats(self) -> Dict:
        usage = self._usage()
        fingerprints = []
        for fp in FINGERPRINTS:
            row = usage.get(fp.id)
            uses = row.use_count if row else 0
            last = as_utc(row.last_used_at) if row else None
            fingerprints.append({
                'id': fp.id,
                'uses': uses,
                'success_rate': (row.success_count / uses) if row and uses else None,
                'last_used': last.isoformat() if last else None,
            })
        return {
            'strategy': self.strategy,
            'total': len(FINGERPRINTS),
            'used': sum(1 for item in fingerprints if item['uses']),
            'fingerprints': fingerprints,
        }


def context_options(fp: Fingerprint) -> Dict:
    """Playwright new_context() keyword arguments for a fingerprint."""
    return {
        'user_agent': fp.user_agent,
        'viewport': {'width': fp.viewport_width, 'height': fp.viewport_height},
        'screen': {'width': fp.screen_width, 'height': fp.screen_height},
        'locale': fp.locale,
        'timezone_id': fp.timezone_id,
        'device_scale_factor': 1,
        'has_touch': False,
        'is_mobile': False,
    }
