"""Accumulated record set with url-keyed deduplication.

Insertion ordered; the first record seen for a url is kept and later copies are
rejected, even if they carry fresher stats.
"""
from __future__ import annotations

from typing import Iterable, Iterator

from .models import Record


class AccumulatedSet:
    def __init__(self, records: Iterable[Record] = ()) -> None:
        self._records: list[Record] = []
        self._seen: set[str] = set()
        self.merge(records)

    def merge_new(self, new_records: Iterable[Record]) -> list[Record]:
        """Append unseen valid records and return the ones accepted."""
        accepted: list[Record] = []
        for record in new_records:
            if not record.is_valid() or record.url in self._seen:
                continue
            self._seen.add(record.url)
            self._records.append(record)
            accepted.append(record)
        return accepted

    def merge(self, new_records: Iterable[Record]) -> int:
        return len(self.merge_new(new_records))

    def restore(self, records: Iterable[Record]) -> int:
        """Replace the contents with previously persisted records."""
        self.clear()
        return self.merge(records)

    def clear(self) -> None:
        self._records.clear()
        self._seen.clear()

    @property
    def records(self) -> tuple[Record, ...]:
        return tuple(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, url: object) -> bool:
        return url in self._seen

    def __iter__(self) -> Iterator[Record]:
        return iter(tuple(self._records))
