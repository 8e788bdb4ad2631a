"""BeautifulSoup-backed page adapter for saved HTML.

Used for offline replay (``python -m harvester replay page.html``), the mock feed
and tests. Rendered size is read from the inline ``style`` width/height of a node,
since there is no layout engine; nodes without it report no box.
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

from bs4 import BeautifulSoup, Tag

from .page import ScrollMetrics

_STYLE_SIZE = re.compile(r"(?<![-\w])(width|height)\s*:\s*([0-9.]+)px", re.I)


def _join_attr(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return " ".join(value)
    return str(value)


class SnapshotElement:
    __slots__ = ("tag",)

    def __init__(self, tag: Tag) -> None:
        self.tag = tag

    async def select_one(self, css: str) -> Optional["SnapshotElement"]:
        found = self.tag.select_one(css)
        return SnapshotElement(found) if found is not None else None

    async def select_all(self, css: str) -> list["SnapshotElement"]:
        return [SnapshotElement(t) for t in self.tag.select(css)]

    async def text(self) -> str:
        return self.tag.get_text()

    async def attr(self, name: str) -> Optional[str]:
        return _join_attr(self.tag.get(name))

    async def attribute_names(self) -> list[str]:
        return list(self.tag.attrs.keys())

    async def class_name(self) -> str:
        return _join_attr(self.tag.get("class")) or ""

    async def parent_class_name(self) -> str:
        parent = self.tag.parent
        if not isinstance(parent, Tag):
            return ""
        return _join_attr(parent.get("class")) or ""

    async def box(self) -> Optional[tuple[float, float]]:
        style = _join_attr(self.tag.get("style")) or ""
        sizes = {k.lower(): float(v) for k, v in _STYLE_SIZE.findall(style)}
        if "width" not in sizes or "height" not in sizes:
            return None
        return sizes["width"], sizes["height"]


class SnapshotPage:
    """FeedPage over a static HTML document with a simulated viewport.

    ``content_height`` defaults to three viewports so that a replayed page can be
    scrolled a little; scrolling never changes the document.
    """

    def __init__(self, html: str, *, viewport_height: float = 900, content_height: float | None = None,
                 scroll_y: float = 0) -> None:
        self.soup = BeautifulSoup(html, "html.parser")
        self.viewport_height = float(viewport_height)
        self.content_height = float(content_height if content_height is not None else viewport_height * 3)
        self.scroll_y = float(scroll_y)
        self.scroll_calls = 0

    @classmethod
    def from_file(cls, path: str | Path, **kwargs) -> "SnapshotPage":
        return cls(Path(path).read_text(encoding="utf-8"), **kwargs)

    async def query_all(self, css: str) -> list[SnapshotElement]:
        return [SnapshotElement(t) for t in self.soup.select(css)]

    async def metrics(self) -> ScrollMetrics:
        return ScrollMetrics(self.scroll_y, self.viewport_height, self.content_height)

    async def scroll_to(self, y: float) -> None:
        self.scroll_calls += 1
        max_y = max(0.0, self.content_height - self.viewport_height)
        self.scroll_y = min(max(0.0, float(y)), max_y)
