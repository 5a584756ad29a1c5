"""
Request pacing.

Delays are drawn from a triangular distribution (peaking midway between
min and max), scaled by the local time of day, and never shorter than a
minimum spacing between consecutive requests. The last-request timestamp
is owned by each TimingController instance.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional
import asyncio
import logging
import math
import random
import time

logger = logging.getLogger(__name__)


MIN_TIME_BETWEEN_REQUESTS_MS = 1500

# (start hour, end hour, multiplier); hours outside every band use 1.0
TIME_OF_DAY_MULTIPLIERS = [
    (0, 6, 1.4),     # late night
    (6, 9, 1.1),     # morning
    (12, 14, 1.3),   # lunch
    (18, 22, 1.0),   # evening peak
    (22, 24, 1.2),   # night
]

SUSPICIOUS_HOURS = (2, 5)

# page type -> (min ms, max ms)
PAGE_DELAYS_MS = {
    'search': (2000, 5000),
    'detail': (3000, 8000),
}

FALLBACK_DELAY_MS = (2000, 4000)


@dataclass
class TimingConfig:
    min_delay_ms: int = 2000
    max_delay_ms: int = 6000
    burst_protection: bool = True
    time_of_day_aware: bool = True
    intelligent: bool = True

    @classmethod
    def from_settings(cls) -> 'TimingConfig':
        from api.config import settings
        return cls(intelligent=settings.enable_intelligent_timing)


class TimingController:
    """Computes and waits out the delay before each request."""

    def __init__(
        self,
        config: Optional[TimingConfig] = None,
        rng: Optional[random.Random] = None,
        monotonic: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], Awaitable] = asyncio.sleep
    ):
        self.config = config or TimingConfig.from_settings()
        self.rng = rng or random.Random()
        self.monotonic = monotonic
        self.now = now
        self.sleep = sleep
        self.last_request_ms = 0.0

    def triangular_delay(self, min_ms: Optional[int] = None, max_ms: Optional[int] = None) -> int:
        """Random delay weighted toward the middle of [min_ms, max_ms]."""
        min_ms = self.config.min_delay_ms if min_ms is None else min_ms
        max_ms = self.config.max_delay_ms if max_ms is None else max_ms
        triangular = (self.rng.random() + self.rng.random()) / 2
        return int(math.floor(min_ms + triangular * (max_ms - min_ms)))

    @staticmethod
    def base_multiplier(hour: int) -> float:
        for start, end, multiplier in TIME_OF_DAY_MULTIPLIERS:
            if start <= hour < end:
                return multiplier
        return 1.0

    def time_of_day_multiplier(self, hour: Optional[int] = None) -> float:
        """Hour band multiplier with +/-10% variation."""
        if hour is None:
            hour = self.now().hour
        return self.base_multiplier(hour) * (self.rng.random() * 0.2 + 0.9)

    def time_aware_delay(self, base_ms: int, hour: Optional[int] = None) -> int:
        return int(math.floor(base_ms * self.time_of_day_multiplier(hour)))

    def is_suspicious_hour(self, hour: Optional[int] = None) -> bool:
        """Off-peak hours when automated traffic stands out."""
        if hour is None:
            hour = self.now().hour
        return SUSPICIOUS_HOURS[0] <= hour < SUSPICIOUS_HOURS[1]

    def suspicious_hours_multiplier(self, hour: Optional[int] = None) -> float:
        if self.is_suspicious_hour(hour):
            return self.rng.random() * 0.5 + 1.5
        return 1.0

    def add_jitter(self, delay_ms: float, jitter_percent: float = 0.2) -> int:
        jitter = delay_ms * jitter_percent
        variance = (self.rng.random() - 0.5) * 2 * jitter
        return int(math.floor(delay_ms + variance))

    def next_delay(self, page_type: str = 'search') -> int:
        """
        Delay in milliseconds to wait before the next request.

        Updates the burst-protection timestamp, so call once per request.
        """
        if not self.config.intelligent:
            low, high = FALLBACK_DELAY_MS
            return int(self.rng.uniform(low, high))

        min_ms, max_ms = PAGE_DELAYS_MS.get(page_type, (self.config.min_delay_ms, self.config.max_delay_ms))
        delay_ms = self.triangular_delay(min_ms, max_ms)

        if self.config.time_of_day_aware:
            hour = self.now().hour
            delay_ms = self.time_aware_delay(delay_ms, hour)
            delay_ms = int(delay_ms * self.suspicious_hours_multiplier(hour))

        if self.config.burst_protection:
            now_ms = self.monotonic() * 1000
            since_last = now_ms - self.last_request_ms
            if since_last < MIN_TIME_BETWEEN_REQUESTS_MS:
                delay_ms += int(MIN_TIME_BETWEEN_REQUESTS_MS - since_last)
            self.last_request_ms = now_ms + delay_ms

        return delay_ms

    async def wait(self, page_type: str = 'search'):
        delay_ms = self.next_delay(page_type)
        logger.debug(f"Waiting {delay_ms}ms before {page_type} page")
        await self.sleep(delay_ms / 1000)

    def reset(self):
        self.last_request_ms = 0.0
