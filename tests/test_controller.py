"""Collection controller scenarios driven by scripted extractors and in-memory pages."""
from __future__ import annotations

import asyncio
import random

import pytest

from harvester.controller import CollectionController
from harvester.models import CollectionState, Record, StopReason
from harvester.repository import SqliteRepository
from harvester.snapshot import SnapshotPage


def _url(i: int) -> str:
    return f"https://www.xiaohongshu.com/explore/{i}"


class ScriptedExtractor:
    """Yields ``batches[n]`` fresh records on the n-th extraction (0 = initial harvest)."""

    def __init__(self, batches):
        self.batches = list(batches)
        self.calls = 0
        self.emitted = 0

    async def extract(self, page, config=None):
        n = self.batches[self.calls] if self.calls < len(self.batches) else 0
        self.calls += 1
        out = [Record(url=_url(self.emitted + i), title=f"note {self.emitted + i}", collected_at=1) for i in range(n)]
        self.emitted += n
        return out

    async def count_containers(self, page) -> int:
        return self.emitted


class RepeatingExtractor(ScriptedExtractor):
    """Always returns the same two cards."""

    async def extract(self, page, config=None):
        self.calls += 1
        return [Record(url=_url(0), title="a"), Record(url=_url(1), title="b")]


class GatedPage(SnapshotPage):
    """Blocks inside scroll_to until ``gate`` is set."""

    def __init__(self, **kw):
        super().__init__("<html></html>", viewport_height=900, content_height=1_000_000, **kw)
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def scroll_to(self, y: float) -> None:
        self.entered.set()
        await self.gate.wait()
        await super().scroll_to(y)


class StallingCounter(ScriptedExtractor):
    """Holds the readiness poll that follows the first scroll until ``gate`` opens."""

    def __init__(self, batches):
        super().__init__(batches)
        self.polls = 0
        self.waiting = asyncio.Event()
        self.gate = asyncio.Event()

    async def count_containers(self, page) -> int:
        self.polls += 1
        if self.polls == 2:
            self.waiting.set()
            await self.gate.wait()
        return self.emitted


class FlakyPage(SnapshotPage):
    def __init__(self, failures: int):
        super().__init__("<html></html>", viewport_height=900, content_height=1_000_000)
        self.failures = failures

    async def scroll_to(self, y: float) -> None:
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("page crashed")
        await super().scroll_to(y)


def _tall_page() -> SnapshotPage:
    return SnapshotPage("<html></html>", viewport_height=900, content_height=1_000_000)


def _controller(page, extractor, no_sleep, **kw) -> CollectionController:
    return CollectionController(page, extractor=extractor, rng=random.Random(11), sleep=no_sleep, **kw)


class TestCollectionScenarios:
    @pytest.mark.asyncio
    async def test_runs_until_max_scrolls(self, no_sleep, fast_config):
        extractor = ScriptedExtractor([0, 2, 2, 2, 2, 2, 2])
        ctl = _controller(_tall_page(), extractor, no_sleep)
        result = await ctl.start(fast_config(max_scrolls=5))
        assert result.success and result.state is CollectionState.RUNNING
        assert await ctl.wait_stopped(timeout=5)
        status = ctl.get_status()
        assert status["state"] == "stopped"
        assert status["stop_reason"] == StopReason.MAX_SCROLLS.value
        assert status["scroll_count"] == 5
        assert status["record_count"] == 10
        assert extractor.calls == 6  # initial harvest + 5 rounds

    @pytest.mark.asyncio
    async def test_smart_stop_after_three_empty_rounds(self, no_sleep, fast_config):
        ctl = _controller(_tall_page(), ScriptedExtractor([0, 3, 0, 0, 0]), no_sleep)
        await ctl.start(fast_config())
        assert await ctl.wait_stopped(timeout=5)
        assert ctl.stop_reason is StopReason.NO_NEW_RECORDS
        assert ctl.scroll_count == 4
        assert len(ctl.records) == 3

    @pytest.mark.asyncio
    async def test_smart_stop_disabled_runs_to_cap(self, no_sleep, fast_config):
        ctl = _controller(_tall_page(), ScriptedExtractor([0]), no_sleep)
        await ctl.start(fast_config(max_scrolls=6, smart_stop_enabled=False))
        assert await ctl.wait_stopped(timeout=5)
        assert ctl.stop_reason is StopReason.MAX_SCROLLS
        assert ctl.get_status()["consecutive_empty_rounds"] == 6

    @pytest.mark.asyncio
    async def test_duplicates_do_not_count_as_yield(self, no_sleep, fast_config):
        ctl = _controller(_tall_page(), RepeatingExtractor([]), no_sleep)
        await ctl.start(fast_config())
        assert await ctl.wait_stopped(timeout=5)
        assert [r.url for r in ctl.records] == [_url(0), _url(1)]
        assert ctl.stop_reason is StopReason.NO_NEW_RECORDS
        assert ctl.scroll_count == 3

    @pytest.mark.asyncio
    async def test_bottom_without_growth_stops(self, no_sleep, fast_config):
        page = SnapshotPage("<html></html>", viewport_height=900, content_height=900)
        ctl = _controller(page, ScriptedExtractor([1, 0]), no_sleep)
        await ctl.start(fast_config())
        assert await ctl.wait_stopped(timeout=5)
        assert ctl.stop_reason is StopReason.REACHED_BOTTOM
        assert ctl.scroll_count == 1
        assert len(ctl.records) == 1

    @pytest.mark.asyncio
    async def test_scroll_fault_backs_off_and_continues(self, fast_config):
        slept: list[float] = []

        async def recording_sleep(seconds: float) -> None:
            slept.append(seconds)
            await asyncio.sleep(0)

        events: list[dict] = []
        ctl = CollectionController(
            FlakyPage(failures=1),
            extractor=ScriptedExtractor([0, 1, 1]),
            notifier=events.append,
            rng=random.Random(5),
            sleep=recording_sleep,
        )
        await ctl.start(fast_config(max_scrolls=2, smart_stop_enabled=False, fault_backoff_ms=50))
        assert await ctl.wait_stopped(timeout=5)
        assert ctl.stop_reason is StopReason.MAX_SCROLLS
        assert ctl.scroll_count == 2
        assert len(ctl.records) == 2
        assert 0.05 in slept
        assert "page crashed" in ctl.get_status()["last_error"]
        assert any(e["type"] == "error" and e["stage"] == "scroll" for e in events)


class TestCommands:
    @pytest.mark.asyncio
    async def test_start_rejected_while_running(self, no_sleep, fast_config):
        page = GatedPage()
        ctl = _controller(page, ScriptedExtractor([1]), no_sleep)
        assert (await ctl.start(fast_config())).success
        again = await ctl.start(fast_config())
        assert not again.success
        assert again.state is CollectionState.RUNNING
        await ctl.stop()

    @pytest.mark.asyncio
    async def test_pause_interrupts_scroll_and_resume_continues(self, no_sleep, fast_config):
        page = GatedPage()
        extractor = ScriptedExtractor([0, 1, 1])
        ctl = _controller(page, extractor, no_sleep)
        await ctl.start(fast_config(max_scrolls=2))
        await asyncio.wait_for(page.entered.wait(), timeout=2)

        paused = await ctl.pause()
        assert paused.success and ctl.state is CollectionState.PAUSED
        assert ctl.scroll_count == 0
        assert page.scroll_y == 0
        assert not (await ctl.pause()).success

        page.gate.set()
        resumed = await ctl.resume()
        assert resumed.success
        assert await ctl.wait_stopped(timeout=5)
        assert ctl.stop_reason is StopReason.MAX_SCROLLS
        assert ctl.scroll_count == 2
        assert len(ctl.records) == 2
        # the interrupted round never extracted
        assert extractor.calls == 3

    @pytest.mark.asyncio
    async def test_pause_during_readiness_wait(self, no_sleep, fast_config):
        extractor = StallingCounter([0, 1, 1])
        ctl = _controller(_tall_page(), extractor, no_sleep)
        await ctl.start(fast_config(max_scrolls=2))
        await asyncio.wait_for(extractor.waiting.wait(), timeout=2)

        assert (await ctl.pause()).success
        # the scroll finished and counts; the round never reached extraction
        assert ctl.scroll_count == 1
        assert extractor.calls == 1

        extractor.gate.set()
        assert (await ctl.resume()).success
        assert await ctl.wait_stopped(timeout=5)
        assert ctl.stop_reason is StopReason.MAX_SCROLLS
        assert ctl.scroll_count == 2
        assert extractor.calls == 2
        assert len(ctl.records) == 1

    @pytest.mark.asyncio
    async def test_stop_during_readiness_wait(self, no_sleep, fast_config):
        extractor = StallingCounter([0, 1, 1])
        ctl = _controller(_tall_page(), extractor, no_sleep)
        await ctl.start(fast_config())
        await asyncio.wait_for(extractor.waiting.wait(), timeout=2)

        assert (await ctl.stop()).success
        assert ctl.stop_reason is StopReason.USER
        extractor.gate.set()
        for _ in range(5):
            await asyncio.sleep(0)
        assert extractor.calls == 1
        assert ctl.scroll_count == 1
        assert ctl.state is CollectionState.STOPPED

    @pytest.mark.asyncio
    async def test_loop_without_session_raises(self, no_sleep):
        ctl = _controller(_tall_page(), ScriptedExtractor([]), no_sleep)
        with pytest.raises(RuntimeError):
            await ctl._round(ctl._epoch)

    @pytest.mark.asyncio
    async def test_resume_requires_pause(self, no_sleep):
        ctl = _controller(_tall_page(), ScriptedExtractor([]), no_sleep)
        result = await ctl.resume()
        assert not result.success and result.state is CollectionState.IDLE

    @pytest.mark.asyncio
    async def test_stop_persists_and_notifies(self, tmp_path, no_sleep, fast_config):
        repo = SqliteRepository(str(tmp_path / "c.sqlite3"))
        events: list[dict] = []
        page = GatedPage()
        ctl = _controller(page, ScriptedExtractor([2]), no_sleep, repository=repo, notifier=events.append)
        await ctl.start(fast_config())
        await asyncio.wait_for(page.entered.wait(), timeout=2)

        stopped = await ctl.stop()
        assert stopped.success and ctl.state is CollectionState.STOPPED
        assert ctl.stop_reason is StopReason.USER
        assert repo.count_records() == 2
        assert not (await ctl.stop()).success

        types = [e["type"] for e in events]
        assert types[0] == "status_update"
        assert "data_update" in types
        assert types[-1] == "collection_complete"
        assert events[-1]["reason"] == "user_stop"
        assert events[-1]["record_count"] == 2

    @pytest.mark.asyncio
    async def test_stop_while_paused(self, no_sleep, fast_config):
        page = GatedPage()
        ctl = _controller(page, ScriptedExtractor([1]), no_sleep)
        await ctl.start(fast_config())
        await asyncio.wait_for(page.entered.wait(), timeout=2)
        await ctl.pause()
        result = await ctl.stop()
        assert result.success
        assert ctl.get_status()["stop_reason"] == "user_stop"

    @pytest.mark.asyncio
    async def test_restart_after_stop_starts_fresh(self, no_sleep, fast_config):
        ctl = _controller(_tall_page(), ScriptedExtractor([0, 2, 0, 0, 0, 1]), no_sleep)
        await ctl.start(fast_config(max_scrolls=1))
        assert await ctl.wait_stopped(timeout=5)
        assert len(ctl.records) == 2

        await ctl.start(fast_config(max_scrolls=1))
        assert await ctl.wait_stopped(timeout=5)
        assert ctl.scroll_count == 1
        assert len(ctl.records) == 0

    @pytest.mark.asyncio
    async def test_fresh_start_replaces_stored_records(self, tmp_path, no_sleep, fast_config):
        repo = SqliteRepository(str(tmp_path / "f.sqlite3"))
        ctl = _controller(_tall_page(), ScriptedExtractor([3, 0, 1]), no_sleep, repository=repo)
        await ctl.start(fast_config(max_scrolls=1))
        assert await ctl.wait_stopped(timeout=5)
        assert repo.count_records() == 3

        await ctl.start(fast_config(max_scrolls=1))
        assert await ctl.wait_stopped(timeout=5)
        assert ctl.get_status()["record_count"] == 1
        assert [r.url for r in repo.load_records()] == [r.url for r in ctl.records] == [_url(3)]

    @pytest.mark.asyncio
    async def test_resume_previous_restores_stored_records(self, tmp_path, no_sleep, fast_config):
        repo = SqliteRepository(str(tmp_path / "r.sqlite3"))
        repo.save_records([Record(url=_url(0), title="old 0"), Record(url=_url(1), title="old 1")])
        ctl = _controller(_tall_page(), ScriptedExtractor([2, 1]), no_sleep, repository=repo)
        await ctl.start(fast_config(max_scrolls=1), resume_previous=True)
        assert await ctl.wait_stopped(timeout=5)
        assert [r.title for r in ctl.records] == ["old 0", "old 1", "note 2"]
        assert repo.count_records() == 3

    @pytest.mark.asyncio
    async def test_reset_clears_memory_and_repository(self, tmp_path, no_sleep, fast_config):
        repo = SqliteRepository(str(tmp_path / "z.sqlite3"))
        ctl = _controller(_tall_page(), ScriptedExtractor([3]), no_sleep, repository=repo)
        await ctl.start(fast_config(max_scrolls=1))
        assert await ctl.wait_stopped(timeout=5)
        assert repo.count_records() == 3

        result = await ctl.reset()
        assert result.success and result.state is CollectionState.IDLE
        assert len(ctl.records) == 0
        assert repo.count_records() == 0

    @pytest.mark.asyncio
    async def test_reset_rejected_while_running(self, no_sleep, fast_config):
        page = GatedPage()
        ctl = _controller(page, ScriptedExtractor([1]), no_sleep)
        await ctl.start(fast_config())
        assert not (await ctl.reset()).success
        await ctl.stop()

    @pytest.mark.asyncio
    async def test_failing_notifier_does_not_break_collection(self, no_sleep, fast_config):
        def boom(_event):
            raise RuntimeError("listener gone")

        ctl = _controller(_tall_page(), ScriptedExtractor([1, 1]), no_sleep, notifier=boom)
        await ctl.start(fast_config(max_scrolls=1))
        assert await ctl.wait_stopped(timeout=5)
        assert len(ctl.records) == 2

    @pytest.mark.asyncio
    async def test_async_notifier_receives_data_updates(self, no_sleep, fast_config):
        seen: list[dict] = []

        async def listener(event):
            seen.append(event)

        ctl = _controller(_tall_page(), ScriptedExtractor([2, 3]), no_sleep, notifier=listener)
        await ctl.start(fast_config(max_scrolls=1))
        assert await ctl.wait_stopped(timeout=5)
        updates = [e for e in seen if e["type"] == "data_update"]
        assert [u["new_count"] for u in updates] == [2, 3]
        assert updates[0]["initial"] is True and updates[1]["initial"] is False
        assert updates[-1]["total"] == 5
