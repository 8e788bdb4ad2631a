from __future__ import annotations

import random

import pytest

from harvester.models import SessionConfig
from harvester.readiness import ContentReadinessDetector
from harvester.snapshot import SnapshotPage
from harvester.timing import fault_backoff_delay, next_round_delay, random_delay


class ScriptedCounter:
    """count_containers returns the scripted values, then repeats the last one."""

    def __init__(self, values, fail_first: int = 0):
        self.values = list(values)
        self.calls = 0
        self.fail_first = fail_first

    async def count_containers(self, page) -> int:
        self.calls += 1
        if self.calls <= self.fail_first:
            raise RuntimeError("execution context was destroyed")
        index = min(self.calls - self.fail_first - 1, len(self.values) - 1)
        return self.values[index]


def _recording_sleep(log):
    async def _sleep(seconds: float) -> None:
        log.append(seconds)

    return _sleep


def _page() -> SnapshotPage:
    return SnapshotPage("<html></html>", viewport_height=900, content_height=3000)


class TestContentReadiness:
    @pytest.mark.asyncio
    async def test_growth_detected(self):
        slept: list[float] = []
        detector = ContentReadinessDetector(
            _page(), ScriptedCounter([5, 5, 7]), settle_ms=0, poll_ms=100, max_wait_ms=1000,
            sleep=_recording_sleep(slept),
        )
        assert await detector.wait_until_ready(5) is True
        assert slept == [0.1, 0.1]

    @pytest.mark.asyncio
    async def test_times_out_without_growth(self):
        slept: list[float] = []
        detector = ContentReadinessDetector(
            _page(), ScriptedCounter([5]), settle_ms=0, poll_ms=100, max_wait_ms=1000,
            sleep=_recording_sleep(slept),
        )
        assert await detector.wait_until_ready(5) is False
        assert len(slept) == 10
        assert sum(slept) == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_settle_precedes_first_poll(self):
        slept: list[float] = []
        detector = ContentReadinessDetector(
            _page(), ScriptedCounter([9]), settle_ms=300, poll_ms=100, max_wait_ms=0,
            sleep=_recording_sleep(slept),
        )
        assert await detector.wait_until_ready(5) is True
        assert slept == [0.3]

    @pytest.mark.asyncio
    async def test_explicit_max_wait_overrides_default(self):
        slept: list[float] = []
        detector = ContentReadinessDetector(
            _page(), ScriptedCounter([1]), settle_ms=0, poll_ms=100, max_wait_ms=5000,
            sleep=_recording_sleep(slept),
        )
        assert await detector.wait_until_ready(1, max_wait_ms=200) is False
        assert len(slept) == 2

    @pytest.mark.asyncio
    async def test_height_growth_counts_as_ready(self):
        page = _page()

        async def growing_sleep(_seconds):
            page.content_height += 500

        detector = ContentReadinessDetector(
            page, ScriptedCounter([4]), settle_ms=0, poll_ms=100, max_wait_ms=1000, sleep=growing_sleep
        )
        assert await detector.wait_until_ready(4, previous_content_height=3000) is True

    @pytest.mark.asyncio
    async def test_poll_errors_mean_not_yet(self):
        slept: list[float] = []
        counter = ScriptedCounter([8], fail_first=2)
        detector = ContentReadinessDetector(
            _page(), counter, settle_ms=0, poll_ms=100, max_wait_ms=1000, sleep=_recording_sleep(slept)
        )
        assert await detector.wait_until_ready(5) is True
        assert counter.calls == 3

    @pytest.mark.asyncio
    async def test_should_continue_ends_wait(self):
        detector = ContentReadinessDetector(
            _page(), ScriptedCounter([99]), settle_ms=0, poll_ms=100, max_wait_ms=1000,
            sleep=_recording_sleep([]),
        )
        assert await detector.wait_until_ready(5, should_continue=lambda: False) is False

    @pytest.mark.asyncio
    async def test_snapshot_and_from_config(self):
        config = SessionConfig(readiness_settle_ms=10, readiness_poll_ms=20, readiness_max_wait_ms=30)
        detector = ContentReadinessDetector.from_config(_page(), ScriptedCounter([3]), config)
        assert (detector.settle_ms, detector.poll_ms, detector.max_wait_ms) == (10, 20, 30)
        snap = await detector.snapshot()
        assert snap.item_count == 3 and snap.content_height == 3000

    def test_poll_must_be_positive(self):
        with pytest.raises(ValueError):
            ContentReadinessDetector(_page(), ScriptedCounter([0]), poll_ms=0)


class TestTiming:
    def test_round_delay_within_jitter(self):
        rng = random.Random(7)
        config = SessionConfig(interval_ms=3000, interval_jitter_ms=1000)
        for _ in range(50):
            assert 3000 <= next_round_delay(config, rng) <= 4000

    def test_no_jitter_is_exact(self):
        assert next_round_delay(SessionConfig(interval_ms=1500, interval_jitter_ms=0)) == 1500

    def test_random_delay_swaps_reversed_bounds(self):
        assert 10 <= random_delay(20, 10, random.Random(1)) <= 20

    def test_fault_backoff(self):
        assert fault_backoff_delay(SessionConfig(fault_backoff_ms=5000)) == 5000.0
