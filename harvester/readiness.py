"""Content-readiness detection after a scroll.

The feed renders new cards asynchronously after the viewport moves. Rather than
sleeping a fixed time, the detector settles briefly and then polls the container
count and document height until either grows past the pre-scroll baseline.

Timing is counted in slept milliseconds (settle excluded from ``max_wait_ms``),
which keeps the bound independent of how slow each poll is.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import structlog

from .bootstrap import HARVEST_READINESS_TIMEOUTS
from .models import SessionConfig
from .page import FeedPage

logger = structlog.get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class ReadinessSnapshot:
    item_count: int
    content_height: float


class ContentReadinessDetector:
    def __init__(
        self,
        page: FeedPage,
        counter,
        *,
        settle_ms: int = 1000,
        poll_ms: int = 500,
        max_wait_ms: int = 5000,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """``counter`` is anything with ``async count_containers(page) -> int``."""
        if poll_ms <= 0:
            raise ValueError("poll_ms must be positive")
        self.page = page
        self.counter = counter
        self.settle_ms = settle_ms
        self.poll_ms = poll_ms
        self.max_wait_ms = max_wait_ms
        self._sleep = sleep

    @classmethod
    def from_config(cls, page: FeedPage, counter, config: SessionConfig, **kwargs) -> "ContentReadinessDetector":
        return cls(
            page,
            counter,
            settle_ms=config.readiness_settle_ms,
            poll_ms=config.readiness_poll_ms,
            max_wait_ms=config.readiness_max_wait_ms,
            **kwargs,
        )

    async def snapshot(self) -> ReadinessSnapshot:
        count = await self.counter.count_containers(self.page)
        metrics = await self.page.metrics()
        return ReadinessSnapshot(item_count=count, content_height=metrics.content_height)

    async def wait_until_ready(
        self,
        previous_item_count: int,
        max_wait_ms: Optional[int] = None,
        *,
        previous_content_height: Optional[float] = None,
        should_continue: Optional[Callable[[], bool]] = None,
    ) -> bool:
        """Return True once growth is observed, False when the wait runs out.

        Never raises for lack of growth. Poll errors count as "not yet".
        Cancellation propagates; ``should_continue`` returning False ends the
        wait early with False.
        """
        budget = self.max_wait_ms if max_wait_ms is None else max_wait_ms
        if self.settle_ms:
            await self._sleep(self.settle_ms / 1000)
        waited = 0
        while True:
            if should_continue is not None and not should_continue():
                return False
            try:
                current = await self.snapshot()
            except Exception as exc:  # noqa: BLE001 - a failed poll is not a verdict
                logger.debug("readiness_poll_failed", error=str(exc))
                current = None
            if current is not None:
                grew_items = current.item_count > previous_item_count
                grew_height = (
                    previous_content_height is not None and current.content_height > previous_content_height
                )
                if grew_items or grew_height:
                    logger.debug(
                        "content_ready",
                        items=current.item_count,
                        previous_items=previous_item_count,
                        waited_ms=waited,
                    )
                    return True
            if waited >= budget:
                HARVEST_READINESS_TIMEOUTS.inc()
                logger.debug("content_ready_timeout", waited_ms=waited, previous_items=previous_item_count)
                return False
            await self._sleep(self.poll_ms / 1000)
            waited += self.poll_ms
