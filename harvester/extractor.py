"""Record extraction from the rendered feed.

Responsibilities:
- Discover card containers (ranked selectors, then intelligent detection)
- Read each field with first-match-wins selector lists
- Parse engagement counts ("1.2万", "3千", "5k") into integers
- Drop records that fail the validity rule (url plus title, author or image)

Design notes:
- Stateless across calls; the extractor never looks at what was collected before
- A container that raises is logged, counted and skipped; the round goes on
"""
from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional, Sequence
from urllib.parse import urldefrag, urljoin

import structlog

from .bootstrap import HARVEST_EXTRACTION_FAULTS
from .errors import ExtractionError, record_failure
from .models import Record, SessionConfig, now_ms
from .page import FeedElement, FeedPage
from .selectors import (
    AUTHOR_SELECTORS,
    CONTAINER_SELECTORS,
    IMAGE_SELECTORS,
    IMAGE_SOURCE_ATTRIBUTES,
    LIKE_COUNT_SELECTORS,
    LINK_SELECTORS,
    STATS_SCAN_CSS,
    TIME_SELECTORS,
    TITLE_LINK_FALLBACK,
    TITLE_SELECTORS,
    FieldMatcher,
    IntelligentDetection,
)

logger = structlog.get_logger(__name__)

DEFAULT_BASE_URL = "https://www.xiaohongshu.com"
MAX_TEXT_LENGTH = 200
# Stat labels are short; longer text belongs to a wrapper holding several fields
STAT_TEXT_LIMIT = 24

# =============================================================================
# TEXT HELPERS
# =============================================================================

_NUMBER = re.compile(r"(\d+(?:\.\d+)?)\s*([万千]|[wWkK](?![A-Za-z]))?")
_MULTIPLIERS = {"万": 10000, "w": 10000, "千": 1000, "k": 1000}

_LIKE_LABEL = re.compile(r"点赞|赞|like", re.I)
_COLLECT_LABEL = re.compile(r"收藏|collect", re.I)
_COMMENT_LABEL = re.compile(r"评论|comment", re.I)

_TIME_PATTERNS = [
    re.compile(r"^\d{4}-\d{1,2}-\d{1,2}"),
    re.compile(r"^\d{4}/\d{1,2}/\d{1,2}"),
    re.compile(r"^\d{1,2}-\d{1,2}(?!\d)"),
    re.compile(r"^\d{1,2}月\d{1,2}日"),
    re.compile(r"^\d+\s*(秒|分钟|分|小时|时|天|周|个月|月|年)前"),
    re.compile(r"^(刚刚|昨天|今天|前天)"),
    re.compile(r"^\d+\s*(s|sec|secs|m|min|mins|minutes?|h|hours?|d|days?|w|weeks?|mo|months?|y|years?)\s+ago\b", re.I),
]
_TIME_PREFIX = re.compile(r"^(编辑于|发布于)\s*")


def clean_text(text: Optional[str], limit: int = MAX_TEXT_LENGTH) -> str:
    """Trim, collapse internal whitespace and cut to ``limit`` characters."""
    if not text:
        return ""
    return " ".join(text.split())[:limit]


def extract_number(text: Optional[str]) -> Optional[int]:
    """First count in ``text`` as an int; 万/w multiply by 10 000, 千/k by 1 000.

    >>> extract_number("1.2万")
    12000
    """
    if not text:
        return None
    m = _NUMBER.search(text.replace(",", ""))
    if not m:
        return None
    try:
        value = Decimal(m.group(1))
    except InvalidOperation:  # pragma: no cover - regex guarantees digits
        return None
    unit = (m.group(2) or "").lower()
    value *= _MULTIPLIERS.get(unit, 1)
    return int(value)


def normalize_url(href: Optional[str], base_url: str = DEFAULT_BASE_URL) -> Optional[str]:
    """Absolute form of ``href`` against ``base_url``, fragment removed."""
    if not href:
        return None
    href = href.strip()
    if not href or href.startswith(("javascript:", "data:", "#")):
        return None
    if href.startswith("//"):
        href = "https:" + href
    elif not href.lower().startswith(("http://", "https://")):
        href = urljoin(base_url.rstrip("/") + "/", href)
    return urldefrag(href)[0] or None


def usable_image_source(src: Optional[str]) -> bool:
    if not src:
        return False
    src = src.strip()
    # inline placeholders (blank gifs, svg spinners) are not real images
    return bool(src) and not src.startswith("data:")


def is_valid_time_format(text: Optional[str]) -> bool:
    """True for the relative and absolute date shapes feeds display."""
    if not text:
        return False
    text = _TIME_PREFIX.sub("", text.strip())
    return any(p.search(text) for p in _TIME_PATTERNS)


# =============================================================================
# EXTRACTOR
# =============================================================================

class RecordExtractor:
    """Turn the current page into a list of valid records."""

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        detection: Optional[IntelligentDetection] = None,
        container_selectors: Sequence[FieldMatcher] = CONTAINER_SELECTORS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.base_url = base_url
        self.detection = detection or IntelligentDetection()
        self.container_selectors = list(container_selectors)
        self.clock = clock
        self.last_source: Optional[str] = None

    @classmethod
    def from_settings(cls, settings) -> "RecordExtractor":
        detection = IntelligentDetection(
            min_width=settings.detection_min_size_px,
            min_height=settings.detection_min_size_px,
            framework_marker_prefix=settings.marker_prefix,
        )
        return cls(base_url=settings.base_url, detection=detection)

    # ---------------------------------------------------------------- containers
    async def find_containers(self, page: FeedPage) -> list[FeedElement]:
        for matcher in self.container_selectors:
            try:
                found = await page.query_all(matcher.css)
            except Exception as exc:  # noqa: BLE001
                logger.debug("container_selector_failed", selector=matcher.name, error=str(exc))
                continue
            if found:
                self.last_source = matcher.name
                return found
        found = await self.detection.find(page)
        self.last_source = "intelligent_detection" if found else None
        return found

    async def count_containers(self, page: FeedPage) -> int:
        return len(await self.find_containers(page))

    async def page_stats(self, page: FeedPage) -> dict:
        m = await page.metrics()
        return {
            "total_items": await self.count_containers(page),
            "scroll_y": m.scroll_y,
            "viewport_height": m.viewport_height,
            "content_height": m.content_height,
            "at_bottom": m.at_bottom(),
            "container_source": self.last_source,
        }

    # ---------------------------------------------------------------- records
    async def extract(self, page: FeedPage, config: Optional[SessionConfig] = None) -> list[Record]:
        config = config or SessionConfig()
        containers = await self.find_containers(page)
        records: list[Record] = []
        skipped = 0
        for index, element in enumerate(containers):
            try:
                record = await self.extract_one(element, config)
            except Exception as exc:  # noqa: BLE001 - one broken card must not end the round
                skipped += 1
                HARVEST_EXTRACTION_FAULTS.inc()
                record_failure("extraction", ExtractionError(f"container {index}: {exc}"))
                logger.warning("container_extraction_failed", index=index, error=str(exc))
                continue
            if record is not None:
                records.append(record)
        logger.debug(
            "extraction_complete",
            containers=len(containers),
            records=len(records),
            skipped=skipped,
            source=self.last_source,
        )
        return records

    async def extract_one(self, element: FeedElement, config: SessionConfig) -> Optional[Record]:
        url = await self._link(element)
        if not url:
            return None
        title = await self._title(element) if config.collect_title else None
        author = await self._first_text(element, AUTHOR_SELECTORS) if config.collect_author else None
        image_url = await self._image(element) if config.collect_images else None
        publish_time = await self._time(element) if config.collect_time else None
        likes = collects = comments = None
        if config.collect_stats:
            likes, collects, comments = await self._stats(element)
        record = Record(
            url=url,
            title=title,
            author=author,
            likes=likes,
            collects=collects,
            comments=comments,
            image_url=image_url,
            publish_time=publish_time,
            collected_at=self.clock(),
        )
        return record if record.is_valid() else None

    # ---------------------------------------------------------------- fields
    async def _first_text(self, element: FeedElement, matchers: Sequence[FieldMatcher]) -> Optional[str]:
        for matcher in matchers:
            node = await element.select_one(matcher.css)
            if node is None:
                continue
            text = clean_text(await node.text())
            if text:
                return text
        return None

    async def _title(self, element: FeedElement) -> Optional[str]:
        title = await self._first_text(element, TITLE_SELECTORS)
        if title:
            return title
        link = await element.select_one(TITLE_LINK_FALLBACK)
        if link is not None:
            return clean_text(await link.text()) or None
        return None

    async def _link(self, element: FeedElement) -> Optional[str]:
        for matcher in LINK_SELECTORS:
            node = await element.select_one(matcher.css)
            if node is None:
                continue
            url = normalize_url(await node.attr("href"), self.base_url)
            if url:
                return url
        return None

    async def _image(self, element: FeedElement) -> Optional[str]:
        for matcher in IMAGE_SELECTORS:
            node = await element.select_one(matcher.css)
            if node is None:
                continue
            for name in IMAGE_SOURCE_ATTRIBUTES:
                src = await node.attr(name)
                if usable_image_source(src):
                    return normalize_url(src, self.base_url)
        return None

    async def _time(self, element: FeedElement) -> Optional[str]:
        for matcher in TIME_SELECTORS:
            node = await element.select_one(matcher.css)
            if node is None:
                continue
            text = clean_text(await node.text())
            if is_valid_time_format(text):
                return text
        return None

    async def _stats(self, element: FeedElement) -> tuple[Optional[int], Optional[int], Optional[int]]:
        likes = collects = comments = None
        for matcher in LIKE_COUNT_SELECTORS:
            node = await element.select_one(matcher.css)
            if node is not None:
                likes = extract_number(await node.text())
                if likes is not None:
                    break

        for node in await element.select_all(STATS_SCAN_CSS):
            text = clean_text(await node.text())
            if len(text) > STAT_TEXT_LIMIT:
                continue
            number = extract_number(text)
            if number is None:
                continue
            hints = f"{await node.class_name()} {await node.parent_class_name()}".lower()
            if likes is None and (_LIKE_LABEL.search(text) or "like" in hints):
                likes = number
            elif collects is None and (_COLLECT_LABEL.search(text) or "collect" in hints):
                collects = number
            elif comments is None and (_COMMENT_LABEL.search(text) or "comment" in hints):
                comments = number
            if likes is not None and collects is not None and comments is not None:
                break
        return likes, collects, comments
