from __future__ import annotations

import pytest
from tenacity import wait_none

from harvester.browser import BrowserSession
from harvester.mock import SyntheticFeed


class FakePlaywrightPage:
    def __init__(self, failures: int):
        self.failures = failures
        self.gotos = 0

    async def goto(self, url, timeout=None):
        self.gotos += 1
        if self.failures:
            self.failures -= 1
            raise TimeoutError("net::ERR_TIMED_OUT")

    async def wait_for_load_state(self, state, timeout=None):
        raise TimeoutError("still polling")


@pytest.mark.asyncio
async def test_mock_session_opens_synthetic_feed(settings):
    session = BrowserSession(settings)
    page = await session.open()
    assert isinstance(page, SyntheticFeed)
    assert await session.open() is page
    assert session.mock and session.is_open
    assert not await session.save_storage_state()
    await session.close()
    assert not session.is_open


@pytest.mark.asyncio
async def test_navigation_retries_transient_failures(settings):
    session = BrowserSession(settings)
    page = FakePlaywrightPage(failures=2)
    navigate = BrowserSession._navigate.retry_with(wait=wait_none())
    await navigate(session, page)
    assert page.gotos == 3


@pytest.mark.asyncio
async def test_navigation_gives_up_after_three_attempts(settings):
    session = BrowserSession(settings)
    page = FakePlaywrightPage(failures=5)
    navigate = BrowserSession._navigate.retry_with(wait=wait_none())
    with pytest.raises(TimeoutError):
        await navigate(session, page)
    assert page.gotos == 3
