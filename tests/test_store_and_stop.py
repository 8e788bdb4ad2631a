from __future__ import annotations

import itertools
import random

from harvester.models import Record, SessionConfig, StopReason
from harvester.stop import EMPTY_ROUND_THRESHOLD, StopEvaluator
from harvester.store import AccumulatedSet


def _rec(i: int, **kw) -> Record:
    return Record(url=f"https://www.xiaohongshu.com/explore/{i}", title=kw.pop("title", f"note {i}"), **kw)


class TestAccumulatedSet:
    def test_merge_new_returns_only_unseen(self):
        store = AccumulatedSet()
        assert store.merge_new([_rec(1), _rec(2)]) == [_rec(1), _rec(2)]
        accepted = store.merge_new([_rec(2), _rec(3)])
        assert [r.url for r in accepted] == [_rec(3).url]
        assert len(store) == 3

    def test_merging_the_same_record_twice(self):
        store = AccumulatedSet()
        assert store.merge([_rec(1)]) == 1
        before = store.records
        assert store.merge([_rec(1)]) == 0
        assert store.records == before

    def test_any_arrival_order_keeps_one_copy_per_url(self):
        batch = [_rec(1), _rec(2), _rec(1, likes=3), _rec(3), _rec(2, author="x")]
        distinct = {r.url for r in batch}
        for order in itertools.permutations(batch):
            store = AccumulatedSet()
            store.merge(order)
            urls = [r.url for r in store]
            assert len(urls) == len(set(urls)) == len(distinct)

    def test_shuffled_rounds_with_overlap(self):
        rng = random.Random(7)
        pool = [_rec(i % 40) for i in range(120)]
        for _ in range(20):
            rng.shuffle(pool)
            store = AccumulatedSet()
            accepted = sum(store.merge(pool[start : start + 15]) for start in range(0, len(pool), 15))
            assert accepted == len(store) == 40
            assert len({r.url for r in store}) == 40

    def test_first_copy_wins(self):
        store = AccumulatedSet([_rec(1, likes=5)])
        store.merge([_rec(1, likes=500)])
        assert store.records[0].likes == 5

    def test_invalid_records_rejected(self):
        store = AccumulatedSet()
        assert store.merge([Record(url="https://x/explore/9"), Record(url="", title="t")]) == 0
        assert len(store) == 0

    def test_insertion_order_and_membership(self):
        store = AccumulatedSet([_rec(3), _rec(1), _rec(2)])
        assert [r.url[-1] for r in store] == ["3", "1", "2"]
        assert _rec(1).url in store
        assert "https://elsewhere" not in store

    def test_restore_replaces_contents(self):
        store = AccumulatedSet([_rec(1)])
        assert store.restore([_rec(5), _rec(6)]) == 2
        assert _rec(1).url not in store
        store.clear()
        assert len(store) == 0 and store.records == ()


class TestStopEvaluator:
    def test_max_scrolls(self):
        ev = StopEvaluator()
        d = ev.should_stop(5, 2, SessionConfig(max_scrolls=5))
        assert d and d.reason is StopReason.MAX_SCROLLS

    def test_max_scrolls_boundary(self):
        config = SessionConfig(max_scrolls=5)
        assert not StopEvaluator().should_stop(4, 1, config)
        d = StopEvaluator().should_stop(5, 1, config)
        assert d.stop and d.reason is StopReason.MAX_SCROLLS

    def test_reached_bottom(self):
        ev = StopEvaluator()
        d = ev.should_stop(1, 0, SessionConfig(), reached_bottom=True)
        assert d.reason is StopReason.REACHED_BOTTOM

    def test_max_scrolls_checked_before_bottom(self):
        d = StopEvaluator().should_stop(3, 0, SessionConfig(max_scrolls=3), reached_bottom=True)
        assert d.reason is StopReason.MAX_SCROLLS

    def test_smart_stop_after_consecutive_empty_rounds(self):
        ev = StopEvaluator()
        config = SessionConfig()
        decisions = [ev.should_stop(i, n, config) for i, n in enumerate([3, 0, 0, 0], start=1)]
        assert [bool(d) for d in decisions] == [False, False, False, True]
        assert decisions[-1].reason is StopReason.NO_NEW_RECORDS
        assert ev.consecutive_empty_rounds == EMPTY_ROUND_THRESHOLD

    def test_yield_resets_empty_counter(self):
        ev = StopEvaluator()
        config = SessionConfig()
        for n in (0, 0, 1, 0, 0):
            assert not ev.should_stop(1, n, config)
        assert ev.consecutive_empty_rounds == 2

    def test_smart_stop_disabled_still_counts(self):
        ev = StopEvaluator()
        config = SessionConfig(smart_stop_enabled=False)
        for i in range(1, 6):
            assert not ev.should_stop(i, 0, config)
        assert ev.consecutive_empty_rounds == 5

    def test_reset(self):
        ev = StopEvaluator()
        ev.should_stop(1, 0, SessionConfig())
        ev.reset()
        assert ev.consecutive_empty_rounds == 0
