"""Summaries and views over collected records.

USAGE:
    from harvester.stats import record_statistics, sort_records, filter_by_collected

    stats = record_statistics(records)
    newest_first = sort_records(records, "collected_at", "desc")
    march = filter_by_collected(records, "2024-03-01", "2024-03-31T23:59:59")
"""
from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence, Union

from .errors import ConfigError
from .models import Record

SORTABLE_FIELDS = ("collected_at", "likes", "collects", "comments")
SORT_ORDERS = ("asc", "desc")

TimeBound = Union[int, float, str, datetime, None]


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _average(values: list[int]) -> int:
    return _round_half_up(sum(values) / len(values)) if values else 0


def record_statistics(records: Iterable[Record]) -> dict[str, int]:
    """Field coverage and average engagement of ``records``.

    Averages only count records where the stat was read; they are 0 when none was.
    """
    items = list(records)
    likes = [r.likes for r in items if r.likes is not None]
    collects = [r.collects for r in items if r.collects is not None]
    comments = [r.comments for r in items if r.comments is not None]
    return {
        "total": len(items),
        "with_title": sum(1 for r in items if r.title),
        "with_author": sum(1 for r in items if r.author),
        "with_stats": sum(
            1 for r in items if r.likes is not None or r.collects is not None or r.comments is not None
        ),
        "with_images": sum(1 for r in items if r.image_url),
        "avg_likes": _average(likes),
        "avg_collects": _average(collects),
        "avg_comments": _average(comments),
    }


def sort_records(records: Iterable[Record], field: str = "collected_at", order: str = "desc") -> list[Record]:
    """Stable sort on a numeric field; records missing the value go last either way."""
    if field not in SORTABLE_FIELDS:
        raise ConfigError(f"cannot sort by {field!r}; expected one of {', '.join(SORTABLE_FIELDS)}")
    if order not in SORT_ORDERS:
        raise ConfigError(f"sort order must be 'asc' or 'desc', got {order!r}")
    items = list(records)
    present = [r for r in items if getattr(r, field) is not None]
    missing = [r for r in items if getattr(r, field) is None]
    present.sort(key=lambda r: getattr(r, field), reverse=order == "desc")
    return present + missing


def to_epoch_ms(value: TimeBound) -> Optional[int]:
    """Epoch milliseconds from a number, datetime or ISO string; naive times are UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ConfigError("time bound must be a timestamp or ISO date")
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise ConfigError("time bound must be finite")
        return int(value)
    if isinstance(value, datetime):
        moment = value
    else:
        text = str(value).strip()
        if text.isdigit():
            return int(text)
        try:
            moment = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ConfigError(f"not an ISO date or timestamp: {value!r}") from exc
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp() * 1000)


def filter_by_collected(records: Sequence[Record], start: TimeBound = None, end: TimeBound = None) -> list[Record]:
    """Records whose ``collected_at`` lies within [start, end]; a missing bound is open."""
    lo = to_epoch_ms(start)
    hi = to_epoch_ms(end)
    if lo is not None and hi is not None and lo > hi:
        raise ConfigError("start must not be after end")
    return [
        r
        for r in records
        if (lo is None or r.collected_at >= lo) and (hi is None or r.collected_at <= hi)
    ]
