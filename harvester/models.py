"""Data model shared by the collection pipeline, the repository and the API.

- Record: one harvested feed item, identity key ``url``
- SessionConfig: immutable knobs for one collection session
- CollectionState / StopReason: controller lifecycle vocabulary
- CommandResult: outcome of a controller command (rejections never raise)
"""
from __future__ import annotations

from dataclasses import dataclass, asdict, fields, replace
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional, TYPE_CHECKING
import math
import time

from .errors import ConfigError

if TYPE_CHECKING:  # pragma: no cover
    from .bootstrap import Settings


def now_ms() -> int:
    return int(time.time() * 1000)


def _opt_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        n = int(value)
    except (TypeError, ValueError):
        return None
    return n if n >= 0 else None


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _coerce_ms(value: Any) -> int:
    if value is None:
        return now_ms()
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip()
    if text.isdigit():
        return int(text)
    try:
        return int(datetime.fromisoformat(text.replace("Z", "+00:00")).timestamp() * 1000)
    except ValueError:
        return now_ms()


@dataclass(frozen=True, slots=True)
class Record:
    """A harvested feed item.

    Valid only when ``url`` is set and at least one of title, author or
    image_url is present. Stats are independently optional.
    """

    url: str
    title: Optional[str] = None
    author: Optional[str] = None
    likes: Optional[int] = None
    collects: Optional[int] = None
    comments: Optional[int] = None
    image_url: Optional[str] = None
    publish_time: Optional[str] = None
    collected_at: int = 0

    def is_valid(self) -> bool:
        return bool(self.url) and bool(self.title or self.author or self.image_url)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Record":
        """Build a record from a stored or previously exported mapping.

        Accepts both snake_case keys and the camelCase keys of older JSON exports.
        """
        url = _opt_str(data.get("url") or data.get("noteUrl") or data.get("link"))
        if not url:
            raise ValueError("record mapping without url")
        return cls(
            url=url,
            title=_opt_str(data.get("title")),
            author=_opt_str(data.get("author")),
            likes=_opt_int(data.get("likes")),
            collects=_opt_int(data.get("collects")),
            comments=_opt_int(data.get("comments")),
            image_url=_opt_str(data.get("image_url", data.get("imageUrl"))),
            publish_time=_opt_str(data.get("publish_time", data.get("publishTime"))),
            collected_at=_coerce_ms(
                data.get("collected_at", data.get("collectedAt", data.get("timestamp")))
            ),
        )


class CollectionState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


class StopReason(str, Enum):
    MAX_SCROLLS = "max_scrolls"
    REACHED_BOTTOM = "reached_bottom"
    NO_NEW_RECORDS = "no_new_records"
    USER = "user_stop"
    ERROR = "error"


@dataclass(slots=True)
class CommandResult:
    success: bool
    state: CollectionState
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success, "state": self.state.value}
        if self.error:
            out["error"] = self.error
        return out


# ------------------------------------------------------------
# Session configuration
# ------------------------------------------------------------

# camelCase keys used by the extension's settings payloads
_PAYLOAD_ALIASES = {
    "maxScrolls": "max_scrolls",
    "smartStop": "smart_stop_enabled",
    "smart_stop": "smart_stop_enabled",
    "collectTitle": "collect_title",
    "collectAuthor": "collect_author",
    "collectStats": "collect_stats",
    "collectImages": "collect_images",
    "collectTime": "collect_time",
    "intervalJitter": "interval_jitter_ms",
}

_BOOL_FIELDS = {
    "smart_stop_enabled",
    "collect_title",
    "collect_author",
    "collect_stats",
    "collect_images",
    "collect_time",
}


def speed_to_factor(speed: float) -> float:
    """Map the 1-10 speed slider onto a distance multiplier (5 is neutral)."""
    if not 1 <= float(speed) <= 10:
        raise ConfigError(f"scroll speed must be between 1 and 10, got {speed}")
    return float(speed) / 5.0


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


@dataclass(frozen=True, slots=True)
class SessionConfig:
    scroll_speed_factor: float = 1.0
    interval_ms: int = 3000
    interval_jitter_ms: int = 1000
    max_scrolls: int = 100
    smart_stop_enabled: bool = True
    collect_title: bool = True
    collect_author: bool = True
    collect_stats: bool = True
    collect_images: bool = True
    collect_time: bool = True
    min_scroll_distance: int = 200
    max_scroll_distance: int = 800
    scroll_duration_min_ms: int = 800
    scroll_duration_max_ms: int = 2000
    readiness_settle_ms: int = 1000
    readiness_poll_ms: int = 500
    readiness_max_wait_ms: int = 5000
    fault_backoff_ms: int = 5000

    def __post_init__(self) -> None:
        if not math.isfinite(self.scroll_speed_factor) or self.scroll_speed_factor <= 0:
            raise ConfigError("scroll_speed_factor must be positive")
        if self.max_scrolls < 1:
            raise ConfigError("max_scrolls must be at least 1")
        for name in ("interval_ms", "interval_jitter_ms", "readiness_settle_ms", "fault_backoff_ms"):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must not be negative")
        if self.readiness_poll_ms <= 0:
            raise ConfigError("readiness_poll_ms must be positive")
        if self.readiness_max_wait_ms < 0:
            raise ConfigError("readiness_max_wait_ms must not be negative")
        if not 0 < self.min_scroll_distance <= self.max_scroll_distance:
            raise ConfigError("scroll distance bounds must satisfy 0 < min <= max")
        if not 0 <= self.scroll_duration_min_ms <= self.scroll_duration_max_ms:
            raise ConfigError("scroll duration bounds must satisfy 0 <= min <= max")

    @classmethod
    def from_settings(cls, settings: "Settings", **overrides: Any) -> "SessionConfig":
        base = cls(
            scroll_speed_factor=speed_to_factor(settings.scroll_speed),
            interval_ms=settings.scroll_interval_ms,
            interval_jitter_ms=settings.interval_jitter_ms,
            max_scrolls=settings.max_scrolls,
            smart_stop_enabled=settings.smart_stop,
            collect_title=settings.collect_title,
            collect_author=settings.collect_author,
            collect_stats=settings.collect_stats,
            collect_images=settings.collect_images,
            collect_time=settings.collect_time,
            min_scroll_distance=settings.min_scroll_distance,
            max_scroll_distance=settings.max_scroll_distance,
            scroll_duration_min_ms=settings.scroll_duration_min_ms,
            scroll_duration_max_ms=settings.scroll_duration_max_ms,
            readiness_settle_ms=settings.readiness_settle_ms,
            readiness_poll_ms=settings.readiness_poll_ms,
            readiness_max_wait_ms=settings.readiness_max_wait_ms,
            fault_backoff_ms=settings.fault_backoff_ms,
        )
        return base.merge(overrides) if overrides else base

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any] | None, base: "SessionConfig | None" = None) -> "SessionConfig":
        return (base or cls()).merge(payload or {})

    def merge(self, payload: Mapping[str, Any]) -> "SessionConfig":
        """Return a copy with the values of ``payload`` applied.

        Understands field names, the extension's camelCase keys, ``scrollSpeed``
        / ``scroll_speed`` (1-10 slider) and ``scrollInterval`` (seconds).
        Unknown keys raise ConfigError.
        """
        known = {f.name for f in fields(self)}
        changes: dict[str, Any] = {}
        for key, value in payload.items():
            if value is None:
                continue
            if key in ("scrollSpeed", "scroll_speed"):
                changes["scroll_speed_factor"] = speed_to_factor(_number(key, value))
                continue
            if key == "scrollInterval":
                changes["interval_ms"] = int(_number(key, value) * 1000)
                continue
            name = _PAYLOAD_ALIASES.get(key, key)
            if name not in known:
                raise ConfigError(f"unknown session setting: {key}")
            if name in _BOOL_FIELDS:
                changes[name] = _as_bool(value)
            elif name == "scroll_speed_factor":
                changes[name] = _number(key, value)
            else:
                changes[name] = int(_number(key, value))
        return replace(self, **changes) if changes else self

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _number(key: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"{key} must be numeric")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be numeric, got {value!r}") from exc
    if not math.isfinite(number):
        raise ConfigError(f"{key} must be a finite number, got {value!r}")
    return number
