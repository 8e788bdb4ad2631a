"""Selector definitions for feed cards, with the structural fallback detector.

Each field has an ordered list of matchers. Lists are evaluated top to bottom and
the first matcher yielding a non-empty value wins; order encodes confidence, not
preference among several hits.

Container lists behave the same way at page level: the first container selector
with at least one match is used for the whole page. When none match, the
IntelligentDetection criteria scan broad candidates instead.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog

from .page import FeedElement, FeedPage

logger = structlog.get_logger(__name__)


# =============================================================================
# SELECTOR DEFINITIONS - Editable configuration
# =============================================================================

@dataclass(frozen=True)
class FieldMatcher:
    """A CSS selector and the name reported when it wins."""
    css: str
    name: str


# Card containers, most specific first
CONTAINER_SELECTORS: list[FieldMatcher] = [
    FieldMatcher("section.note-item", "section_note_item"),
    FieldMatcher('section[class*="note-item"]', "section_note_item_partial"),
    FieldMatcher('[data-testid="note-item"]', "testid_note_item"),
    FieldMatcher(".note-item", "note_item_class"),
    FieldMatcher(".feeds-page .note-item", "feeds_page_item"),
    FieldMatcher(".search-page .note-item", "search_page_item"),
    FieldMatcher(".explore-feed .note-item", "explore_feed_item"),
    FieldMatcher('section[class*="note"]', "section_note_partial"),
    FieldMatcher('article[class*="note"]', "article_note_partial"),
    FieldMatcher('.card[class*="note"]', "card_note_partial"),
]

TITLE_SELECTORS: list[FieldMatcher] = [
    FieldMatcher(".footer .title span", "footer_title_span"),
    FieldMatcher(".footer .title", "footer_title"),
    FieldMatcher(".title span", "title_span"),
    FieldMatcher(".title", "title"),
    FieldMatcher(".note-title", "note_title"),
    FieldMatcher('[class*="title"]', "title_partial"),
    FieldMatcher('a[href*="/explore/"] span', "explore_link_span"),
    FieldMatcher(".content .title", "content_title"),
    FieldMatcher("h3", "h3"),
    FieldMatcher("h4", "h4"),
    FieldMatcher(".text-content", "text_content"),
]

# Last resort for titles: the visible text of the detail link
TITLE_LINK_FALLBACK = 'a[href*="/explore/"]'

AUTHOR_SELECTORS: list[FieldMatcher] = [
    FieldMatcher(".author .name span", "author_name_span"),
    FieldMatcher(".author-wrapper .author .name", "author_wrapper_name"),
    FieldMatcher(".author .name", "author_name"),
    FieldMatcher(".author-wrapper .name", "wrapper_name"),
    FieldMatcher(".author", "author"),
    FieldMatcher(".user-name", "user_name"),
    FieldMatcher('[class*="author"]', "author_partial"),
    FieldMatcher('[class*="user"]', "user_partial"),
    FieldMatcher(".avatar-wrapper + span", "avatar_sibling"),
    FieldMatcher(".user-info .name", "user_info_name"),
    FieldMatcher(".creator-name", "creator_name"),
]

# Dedicated like counter; other stats come from the labelled text scan
LIKE_COUNT_SELECTORS: list[FieldMatcher] = [
    FieldMatcher(".like-wrapper .count", "like_wrapper_count"),
    FieldMatcher(".like-wrapper", "like_wrapper"),
]
STATS_SCAN_CSS = "span, div, p"

IMAGE_SELECTORS: list[FieldMatcher] = [
    FieldMatcher(".cover img", "cover_img"),
    FieldMatcher("a.cover img", "cover_link_img"),
    FieldMatcher("img", "any_img"),
    FieldMatcher(".image img", "image_img"),
    FieldMatcher(".thumbnail img", "thumbnail_img"),
    FieldMatcher(".media img", "media_img"),
]
# Lazy-loading pages keep the real address in data-* until the image is visible
IMAGE_SOURCE_ATTRIBUTES: tuple[str, ...] = ("src", "data-src", "data-original", "data-lazy-src")

LINK_SELECTORS: list[FieldMatcher] = [
    FieldMatcher('a.cover[href*="/search_result/"]', "cover_search_result"),
    FieldMatcher('a[href*="/search_result/"]', "search_result"),
    FieldMatcher('a.cover[href*="/explore/"]', "cover_explore"),
    FieldMatcher('a[href*="/explore/"]', "explore"),
    FieldMatcher('a[href*="/discovery/"]', "discovery"),
    FieldMatcher('a[href*="/note/"]', "note"),
    FieldMatcher(".note-link", "note_link"),
]

TIME_SELECTORS: list[FieldMatcher] = [
    FieldMatcher(".time span", "time_span"),
    FieldMatcher(".time", "time"),
    FieldMatcher(".publish-time", "publish_time"),
    FieldMatcher(".date", "date"),
    FieldMatcher('[class*="time"]', "time_partial"),
    FieldMatcher('[class*="date"]', "date_partial"),
]


# =============================================================================
# INTELLIGENT DETECTION
# =============================================================================

@dataclass(frozen=True)
class IntelligentDetection:
    """Structural criteria for recognising a card when no container selector matches.

    A candidate is accepted only when every criterion holds: a detail link, an
    image, title or author markup, a rendered box of at least ``min_width`` x
    ``min_height``, and (unless ``framework_marker_prefix`` is None) an attribute
    whose name starts with the marker prefix.
    """

    candidate_css: str = 'section, article, div[class*="item"], div[class*="card"], div[class*="note"]'
    link_css: str = 'a[href*="/explore/"], a[href*="/note/"], a.cover'
    image_css: str = "img"
    markup_css: str = ".title, .footer .title, .author, .name"
    min_width: float = 100
    min_height: float = 100
    framework_marker_prefix: Optional[str] = "data-v-"

    async def accepts(self, element: FeedElement) -> bool:
        if await element.select_one(self.link_css) is None:
            return False
        if await element.select_one(self.image_css) is None:
            return False
        if await element.select_one(self.markup_css) is None:
            return False
        box = await element.box()
        if box is None or box[0] < self.min_width or box[1] < self.min_height:
            return False
        if self.framework_marker_prefix:
            names = await element.attribute_names()
            if not any(n.startswith(self.framework_marker_prefix) for n in names):
                return False
        return True

    async def find(self, page: FeedPage) -> list[FeedElement]:
        accepted: list[FeedElement] = []
        candidates = await page.query_all(self.candidate_css)
        for el in candidates:
            try:
                if await self.accepts(el):
                    accepted.append(el)
            except Exception as exc:  # noqa: BLE001 - a broken candidate is just not a card
                logger.debug("detection_candidate_failed", error=str(exc))
        logger.debug("intelligent_detection", candidates=len(candidates), accepted=len(accepted))
        return accepted
