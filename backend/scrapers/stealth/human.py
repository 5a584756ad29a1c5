"""
Human interaction simulation.

Curved pointer paths, chunked scrolling and reading pauses driven through
a Playwright page. Every action is best-effort; callers decide which of
the three behaviours to enable.
"""

from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Tuple
import asyncio
import logging
import math
import random

from playwright.async_api import Page

logger = logging.getLogger(__name__)

Point = Tuple[int, int]

MOUSE_STEPS = 20
CONTROL_POINT_SPREAD = 100     # control points land within +/-50 px
POINTER_START = (100, 100)     # Playwright does not expose the pointer position
READING_CAP_MS = 5000


def bezier_path(start: Point, end: Point, steps: int = MOUSE_STEPS, rng: Optional[random.Random] = None) -> List[Point]:
    """
    Cubic Bezier path from start to end with randomised control points.

    Returns steps + 1 points; the first is start and the last is end.
    """
    rng = rng or random
    (sx, sy), (ex, ey) = start, end

    cp1x = sx + (ex - sx) * 0.25 + (rng.random() - 0.5) * CONTROL_POINT_SPREAD
    cp1y = sy + (ey - sy) * 0.25 + (rng.random() - 0.5) * CONTROL_POINT_SPREAD
    cp2x = sx + (ex - sx) * 0.75 + (rng.random() - 0.5) * CONTROL_POINT_SPREAD
    cp2y = sy + (ey - sy) * 0.75 + (rng.random() - 0.5) * CONTROL_POINT_SPREAD

    path = []
    for i in range(steps + 1):
        t = i / steps
        mt = 1 - t
        x = mt ** 3 * sx + 3 * mt ** 2 * t * cp1x + 3 * mt * t ** 2 * cp2x + t ** 3 * ex
        y = mt ** 3 * sy + 3 * mt ** 2 * t * cp1y + 3 * mt * t ** 2 * cp2y + t ** 3 * ey
        path.append((round(x), round(y)))
    return path


def step_delay_ms(index: int, total: int) -> float:
    """Per-step pause: slow at both ends of the movement, fast in the middle."""
    return math.sin((index / total) * math.pi) * 3 + 2


def reading_time_ms(word_count: int, rng: Optional[random.Random] = None) -> float:
    """
    Skim time for a page of `word_count` words.

    20-40% of the words at 3.3-4.2 words per second, capped at 5 seconds.
    """
    rng = rng or random
    words_to_read = word_count * (rng.random() * 0.2 + 0.2)
    words_per_second = rng.random() * 0.9 + 3.3
    return min((words_to_read / words_per_second) * 1000, READING_CAP_MS)


@dataclass
class HumanBehaviorOptions:
    scroll: bool = True
    mouse_movement: bool = True
    reading_time: bool = True


class HumanBehavior:
    """Drives pointer, scroll and reading simulation on a page."""

    def __init__(
        self,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable] = asyncio.sleep
    ):
        self.rng = rng or random.Random()
        self.sleep = sleep

    async def _pause(self, ms: float):
        await self.sleep(ms / 1000)

    async def move_mouse(self, page: Page, x: float, y: float):
        path = bezier_path(POINTER_START, (round(x), round(y)), rng=self.rng)
        for i, (px, py) in enumerate(path):
            await page.mouse.move(px, py)
            await self._pause(step_delay_ms(i, len(path)))

    async def scroll(self, page: Page):
        """Scroll down in 3-7 chunks, sometimes scrolling back a little."""
        viewport_height = await page.evaluate("() => window.innerHeight")
        document_height = await page.evaluate("() => document.documentElement.scrollHeight")
        if document_height <= viewport_height:
            return

        total_scroll = document_height - viewport_height
        current = 0
        chunks = self.rng.randint(3, 7)

        for _ in range(chunks):
            current = min(current + self.rng.randint(150, 399), total_scroll)
            await page.evaluate("(y) => window.scrollTo({top: y, behavior: 'smooth'})", current)
            await self._pause(self.rng.random() * 500 + 300)
            if current >= total_scroll:
                break

        if self.rng.random() > 0.7:
            current = max(0, current - self.rng.randint(50, 249))
            await page.evaluate("(y) => window.scrollTo({top: y, behavior: 'smooth'})", current)
            await self._pause(self.rng.random() * 300 + 200)

    async def read(self, page: Page):
        word_count = await page.evaluate("() => document.body.innerText.split(/\\s+/).length")
        await self._pause(reading_time_ms(word_count, self.rng))

    async def idle(self, page: Page):
        """2-4 small pointer movements anywhere in the viewport."""
        viewport = page.viewport_size
        if not viewport:
            return
        for _ in range(self.rng.randint(2, 4)):
            await self.move_mouse(
                page,
                self.rng.random() * viewport['width'],
                self.rng.random() * viewport['height'],
            )
            await self._pause(self.rng.random() * 500 + 200)

    async def interact(self, page: Page, options: Optional[HumanBehaviorOptions] = None):
        """
        Full page interaction: initial pause, pointer move, scroll, read, idle.

        Failures are logged and swallowed; simulation never fails a fetch.
        """
        options = options or HumanBehaviorOptions()
        try:
            await self._pause(self.rng.random() * 300 + 200)

            if options.mouse_movement and self.rng.random() > 0.3:
                viewport = page.viewport_size
                if viewport:
                    await self.move_mouse(
                        page,
                        self.rng.random() * viewport['width'] * 0.8 + viewport['width'] * 0.1,
                        self.rng.random() * viewport['height'] * 0.3 + 100,
                    )

            if options.scroll and self.rng.random() > 0.2:
                await self.scroll(page)

            if options.reading_time:
                await self.read(page)

            if options.mouse_movement and self.rng.random() > 0.6:
                await self.idle(page)
        except Exception as e:
            logger.warning(f"Human behaviour simulation failed: {e}")
