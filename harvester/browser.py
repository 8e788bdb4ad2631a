"""Browser session lifecycle.

Opens a Chromium page on the target feed through Playwright (reusing a saved
storage_state when present, so a logged-in session survives restarts) and wraps
it in the FeedPage adapter. In mock mode no browser is launched and the
synthetic feed stands in for the page.
"""
from __future__ import annotations

import asyncio
import os
from typing import Any, Optional

import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from .errors import BrowserError, record_failure
from .mock import SyntheticFeed
from .page import FeedPage, PlaywrightFeedPage

logger = structlog.get_logger(__name__)


class BrowserSession:
    def __init__(self, settings) -> None:
        self.settings = settings
        self.page: Optional[FeedPage] = None
        self._pw: Any = None
        self._browser: Any = None
        self._context: Any = None
        self._lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self.page is not None

    @property
    def mock(self) -> bool:
        return bool(self.settings.playwright_mock_mode)

    async def open(self) -> FeedPage:
        async with self._lock:
            if self.page is not None:
                return self.page
            if self.mock:
                self.page = SyntheticFeed.from_settings(self.settings)
                logger.info("browser_session_mock", max_cards=self.settings.mock_max_cards)
                return self.page
            self.page = await self._launch()
            return self.page

    async def _launch(self) -> FeedPage:
        from playwright.async_api import async_playwright  # heavy import, real mode only

        s = self.settings
        try:
            self._pw = await async_playwright().start()
            self._browser = await self._pw.chromium.launch(headless=s.playwright_headless)
            self._context = await self._browser.new_context(
                storage_state=s.storage_state if os.path.exists(s.storage_state) else None,
                viewport={"width": s.viewport_width, "height": s.viewport_height},
                locale=s.locale,
            )
            page = await self._context.new_page()
            await self._navigate(page)
        except asyncio.CancelledError:
            await self.close()
            raise
        except Exception as exc:  # noqa: BLE001
            record_failure("browser", exc)
            await self.close()
            raise BrowserError(f"cannot open {s.feed_url}: {exc}") from exc
        logger.info("browser_session_opened", url=s.feed_url, headless=s.playwright_headless)
        return PlaywrightFeedPage(page)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(max=10),
        retry=retry_if_exception_type(Exception),
        reraise=True,
    )
    async def _navigate(self, page: Any) -> None:
        s = self.settings
        logger.debug("feed_navigation", url=s.feed_url)
        await page.goto(s.feed_url, timeout=s.navigation_timeout_ms)
        try:
            await page.wait_for_load_state("networkidle", timeout=s.navigation_timeout_ms)
        except Exception as exc:  # noqa: BLE001 - feeds keep polling; a busy network is fine
            logger.debug("networkidle_not_reached", error=str(exc))

    async def save_storage_state(self) -> bool:
        if self._context is None:
            return False
        try:
            await self._context.storage_state(path=self.settings.storage_state)
            return True
        except Exception as exc:  # noqa: BLE001
            logger.warning("storage_state_save_failed", error=str(exc))
            return False

    async def close(self) -> None:
        for name in ("_context", "_browser"):
            obj = getattr(self, name)
            if obj is not None:
                try:
                    await obj.close()
                except Exception as exc:  # noqa: BLE001 - already gone
                    logger.debug("browser_close_failed", target=name, error=str(exc))
                setattr(self, name, None)
        if self._pw is not None:
            try:
                await self._pw.stop()
            except Exception as exc:  # noqa: BLE001
                logger.debug("playwright_stop_failed", error=str(exc))
            self._pw = None
        if self.page is not None:
            logger.info("browser_session_closed", mock=self.mock)
        self.page = None
