"""Animated, randomized scrolling.

One scroll moves the viewport by roughly 60% of its height (scaled by the speed
factor and a 0.7-1.3 random factor, clamped to the configured bounds) along an
ease-in-out cubic curve stepped at ~60 fps. Longer moves take longer, and each
duration is randomized by 0.8-1.2.

Interruption (task cancellation, or the ``should_continue`` guard turning False)
leaves the page wherever the animation was: no completion, no snap back.
"""
from __future__ import annotations

import asyncio
import math
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import structlog

from .errors import ScrollError
from .models import SessionConfig
from .page import FeedPage, ScrollMetrics

logger = structlog.get_logger(__name__)

VIEWPORT_FRACTION = 0.6
FRAME_MS = 16
BOTTOM_BUFFER_PX = 100


def ease_in_out_cubic(t: float) -> float:
    if t < 0.5:
        return 4 * t * t * t
    return 1 - ((-2 * t + 2) ** 3) / 2


@dataclass(frozen=True, slots=True)
class ScrollTuning:
    speed_factor: float = 1.0
    min_distance: int = 200
    max_distance: int = 800
    duration_min_ms: int = 800
    duration_max_ms: int = 2000
    frame_ms: int = FRAME_MS
    bottom_buffer_px: int = BOTTOM_BUFFER_PX

    @classmethod
    def from_config(cls, config: SessionConfig) -> "ScrollTuning":
        return cls(
            speed_factor=config.scroll_speed_factor,
            min_distance=config.min_scroll_distance,
            max_distance=config.max_scroll_distance,
            duration_min_ms=config.scroll_duration_min_ms,
            duration_max_ms=config.scroll_duration_max_ms,
        )


@dataclass(slots=True)
class ScrollResult:
    distance_travelled: float
    reached_bottom: bool
    interrupted: bool = False


class ScrollDriver:
    def __init__(
        self,
        page: FeedPage,
        tuning: Optional[ScrollTuning] = None,
        *,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.page = page
        self.tuning = tuning or ScrollTuning()
        self.rng = rng or random.Random()
        self._sleep = sleep

    def compute_distance(self, viewport_height: float) -> int:
        t = self.tuning
        raw = viewport_height * VIEWPORT_FRACTION * t.speed_factor * self.rng.uniform(0.7, 1.3)
        return int(math.floor(min(max(raw, t.min_distance), t.max_distance)))

    def compute_duration(self, distance: float) -> float:
        """Animation length in milliseconds for ``distance`` pixels."""
        t = self.tuning
        base = t.duration_min_ms + (t.duration_max_ms - t.duration_min_ms) * min(distance / 1000, 1.0)
        return base * self.rng.uniform(0.8, 1.2)

    async def _metrics(self) -> ScrollMetrics:
        try:
            return await self.page.metrics()
        except Exception as exc:  # noqa: BLE001
            raise ScrollError(f"cannot read scroll metrics: {exc}") from exc

    async def is_at_bottom(self) -> bool:
        """True within ``bottom_buffer_px`` of the end of the content."""
        return (await self._metrics()).at_bottom(self.tuning.bottom_buffer_px)

    async def scroll(
        self,
        distance: Optional[float] = None,
        *,
        should_continue: Optional[Callable[[], bool]] = None,
    ) -> ScrollResult:
        """Scroll down once; ``reached_bottom`` means the viewport ends within the bottom buffer."""
        metrics = await self._metrics()
        if distance is None:
            distance = self.compute_distance(metrics.viewport_height)
        start = metrics.scroll_y
        target = min(start + max(0.0, float(distance)), metrics.max_scroll_y)
        if target <= start:
            logger.debug("scroll_at_bottom", scroll_y=start, content_height=metrics.content_height)
            return ScrollResult(distance_travelled=0.0, reached_bottom=True)

        span = target - start
        duration = self.compute_duration(span)
        frames = max(1, math.ceil(duration / self.tuning.frame_ms))
        position = start
        for frame in range(1, frames + 1):
            if should_continue is not None and not should_continue():
                logger.debug("scroll_interrupted", travelled=position - start, frame=frame)
                return ScrollResult(distance_travelled=position - start, reached_bottom=False, interrupted=True)
            position = start + span * ease_in_out_cubic(frame / frames)
            try:
                await self.page.scroll_to(position)
            except Exception as exc:  # noqa: BLE001
                raise ScrollError(f"scroll_to failed: {exc}") from exc
            if frame < frames:
                await self._sleep(self.tuning.frame_ms / 1000)

        # read back: content may have grown while scrolling
        reached_bottom = await self.is_at_bottom()
        logger.debug("scroll_complete", distance=span, duration_ms=round(duration), reached_bottom=reached_bottom)
        return ScrollResult(distance_travelled=span, reached_bottom=reached_bottom)
