"""Exception taxonomy and aggregated failure registry.

Every fault the pipeline tolerates (extraction, scroll, storage) is logged where it
is caught and also recorded here as a JSON line, throttled per signature: the first
3 occurrences are written, then every 10th one.
"""
from __future__ import annotations

import json
import os
import threading
import time
from dataclasses import dataclass, asdict
from typing import Dict


class HarvesterError(Exception):
    """Base class for all harvester errors."""


class ConfigError(HarvesterError):
    """Invalid session configuration or settings payload."""


class ExtractionError(HarvesterError):
    """A single container could not be turned into a record."""


class ScrollError(HarvesterError):
    """The page refused a scroll action or its metrics could not be read."""


class StorageError(HarvesterError):
    """Repository read/write failure."""


class ExportError(HarvesterError):
    """Export requested with nothing to export or an unknown format."""


class BrowserError(HarvesterError):
    """Browser launch or navigation failure."""


_lock = threading.Lock()
_counts: Dict[str, int] = {}


@dataclass
class FailureRecord:
    ts: float
    category: str
    signature: str
    message: str
    occurrences: int


def _log_path() -> str:
    return os.environ.get("FAILURE_LOG", "harvest_failures.log")


def record_failure(category: str, exc: BaseException | str) -> int:
    """Count a failure and append it to the failure log when not throttled.

    Returns the number of occurrences seen so far for this signature.
    """
    sig = f"{category}:{type(exc).__name__ if not isinstance(exc, str) else 'str'}"
    with _lock:
        count = _counts.get(sig, 0) + 1
        _counts[sig] = count
        if count > 3 and (count % 10) != 0:
            return count
        rec = FailureRecord(ts=time.time(), category=category, signature=sig, message=str(exc), occurrences=count)
        try:
            with open(_log_path(), "a", encoding="utf-8") as f:
                f.write(json.dumps(asdict(rec), ensure_ascii=False) + "\n")
        except OSError:
            pass
    return count


def failure_counts() -> dict[str, int]:
    with _lock:
        return dict(_counts)


def reset_failures() -> None:
    with _lock:
        _counts.clear()
