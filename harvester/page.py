"""Page adapters: the narrow view of a rendered feed the pipeline works against.

The collection pipeline never touches Playwright directly. It sees:

- FeedPage: container queries, scroll metrics and an absolute scroll setter
- FeedElement: scoped queries, text, attributes and rendered size of one node

Implementations:
- PlaywrightFeedPage / PlaywrightFeedElement (live browser, this module)
- SnapshotPage / SnapshotElement (BeautifulSoup over saved HTML, harvester.snapshot)
- SyntheticFeed (infinite mock feed, harvester.mock)
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable


@dataclass(frozen=True, slots=True)
class ScrollMetrics:
    scroll_y: float
    viewport_height: float
    content_height: float

    @property
    def max_scroll_y(self) -> float:
        return max(0.0, self.content_height - self.viewport_height)

    def at_bottom(self, buffer_px: float = 100) -> bool:
        return self.scroll_y + self.viewport_height >= self.content_height - buffer_px


@runtime_checkable
class FeedElement(Protocol):
    async def select_one(self, css: str) -> Optional["FeedElement"]: ...

    async def select_all(self, css: str) -> list["FeedElement"]: ...

    async def text(self) -> str: ...

    async def attr(self, name: str) -> Optional[str]: ...

    async def attribute_names(self) -> list[str]: ...

    async def class_name(self) -> str: ...

    async def parent_class_name(self) -> str: ...

    async def box(self) -> Optional[tuple[float, float]]:
        """Rendered (width, height), None when the node is not laid out."""
        ...


@runtime_checkable
class FeedPage(Protocol):
    async def query_all(self, css: str) -> list[FeedElement]: ...

    async def metrics(self) -> ScrollMetrics: ...

    async def scroll_to(self, y: float) -> None: ...


# ------------------------------------------------------------
# Playwright implementation
# ------------------------------------------------------------

_CLASS_JS = "el => (typeof el.className === 'string' ? el.className : (el.getAttribute('class') || ''))"
_PARENT_CLASS_JS = "el => (el.parentElement ? (el.parentElement.getAttribute('class') || '') : '')"
_METRICS_JS = """() => ({
    scrollY: window.pageYOffset || document.documentElement.scrollTop || 0,
    innerHeight: window.innerHeight,
    scrollHeight: Math.max(document.body ? document.body.scrollHeight : 0,
                           document.documentElement.scrollHeight)
})"""


class PlaywrightFeedElement:
    """FeedElement over a Playwright ElementHandle."""

    __slots__ = ("_handle",)

    def __init__(self, handle) -> None:
        self._handle = handle

    async def select_one(self, css: str) -> Optional["PlaywrightFeedElement"]:
        found = await self._handle.query_selector(css)
        return PlaywrightFeedElement(found) if found else None

    async def select_all(self, css: str) -> list["PlaywrightFeedElement"]:
        return [PlaywrightFeedElement(h) for h in await self._handle.query_selector_all(css)]

    async def text(self) -> str:
        return (await self._handle.text_content()) or ""

    async def attr(self, name: str) -> Optional[str]:
        return await self._handle.get_attribute(name)

    async def attribute_names(self) -> list[str]:
        return list(await self._handle.evaluate("el => el.getAttributeNames()"))

    async def class_name(self) -> str:
        return (await self._handle.evaluate(_CLASS_JS)) or ""

    async def parent_class_name(self) -> str:
        return (await self._handle.evaluate(_PARENT_CLASS_JS)) or ""

    async def box(self) -> Optional[tuple[float, float]]:
        rect = await self._handle.bounding_box()
        if not rect:
            return None
        return float(rect["width"]), float(rect["height"])


class PlaywrightFeedPage:
    """FeedPage over a Playwright Page."""

    def __init__(self, page) -> None:
        self.page = page

    async def query_all(self, css: str) -> list[PlaywrightFeedElement]:
        return [PlaywrightFeedElement(h) for h in await self.page.query_selector_all(css)]

    async def metrics(self) -> ScrollMetrics:
        raw = await self.page.evaluate(_METRICS_JS)
        return ScrollMetrics(
            scroll_y=float(raw.get("scrollY") or 0),
            viewport_height=float(raw.get("innerHeight") or 0),
            content_height=float(raw.get("scrollHeight") or 0),
        )

    async def scroll_to(self, y: float) -> None:
        await self.page.evaluate("y => window.scrollTo(0, y)", y)
