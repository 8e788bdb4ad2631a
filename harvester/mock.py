"""Synthetic infinite feed used in mock mode (no real browser).

Renders note cards shaped like the real explore page and appends a new batch
whenever the viewport gets within one screen of the end of the document, until
``max_cards`` is reached. Card content is deterministic for a given index.
"""
from __future__ import annotations

from bs4 import BeautifulSoup

from .snapshot import SnapshotPage

CARD_HEIGHT = 340
CARDS_PER_ROW = 4

_TOPICS = ["周末探店", "通勤穿搭", "家常菜谱", "旅行攻略", "读书笔记", "健身打卡", "咖啡地图", "租房改造"]
_AUTHORS = ["小鹿日记", "Momo", "阿橙不吃辣", "城市漫游者", "Lina", "早睡早起", "糖糖", "老周"]
_TIMES = ["3天前", "昨天 18:20", "2小时前", "10-12", "2024-03-08", "5分钟前", "前天 09:10", "11月2日"]


def note_id(index: int) -> str:
    return f"65{index:022x}"


def _likes(index: int) -> str:
    n = (index * 7919) % 23000
    if n >= 10000:
        return f"{n / 10000:.1f}万"
    return str(n)


def render_card(index: int) -> str:
    nid = note_id(index)
    title = f"{_TOPICS[index % len(_TOPICS)]} #{index}"
    author = _AUTHORS[index % len(_AUTHORS)]
    published = _TIMES[index % len(_TIMES)]
    return (
        f'<section class="note-item" data-index="{index}" data-v-a264b01a="" '
        f'style="width: 236px; height: {CARD_HEIGHT}px">'
        f'<div data-v-a264b01a="">'
        f'<a href="/explore/{nid}" style="display: none;"></a>'
        f'<a class="cover ld mask" href="/explore/{nid}">'
        f'<img src="https://sns-img.example.com/{nid}.jpg"></a>'
        f'<div class="footer"><a class="title"><span>{title}</span></a>'
        f'<div class="card-bottom-wrapper">'
        f'<a class="author" href="/user/profile/u{index % len(_AUTHORS)}">'
        f'<img class="author-avatar" src="data:image/gif;base64,R0lGODlhAQABAAAAACw=">'
        f'<span class="name">{author}</span></a>'
        f'<span class="like-wrapper like-active"><span class="count">{_likes(index)}</span></span>'
        f'<span class="collect-wrapper"><span class="count">{index % 97}</span></span>'
        f'<span class="comment-wrapper"><span class="count">{index % 31}</span></span>'
        f'</div></div>'
        f'<div class="time"><span>{published}</span></div>'
        f'</div></section>'
    )


class SyntheticFeed(SnapshotPage):
    def __init__(self, *, batch_size: int = 12, max_cards: int = 60, viewport_height: float = 900) -> None:
        if batch_size < 1 or max_cards < 1:
            raise ValueError("batch_size and max_cards must be positive")
        self.batch_size = batch_size
        self.max_cards = max_cards
        self.card_count = 0
        super().__init__(
            '<html><body><div class="feeds-container"></div></body></html>',
            viewport_height=viewport_height,
            content_height=viewport_height,
        )
        self._container = self.soup.select_one("div.feeds-container")
        # first paint fills a bit more than one screen, like the real page
        self.append_batch()
        while self.content_height < self.viewport_height * 1.5 and not self.exhausted:
            self.append_batch()

    @classmethod
    def from_settings(cls, settings) -> "SyntheticFeed":
        return cls(
            batch_size=settings.mock_batch_size,
            max_cards=settings.mock_max_cards,
            viewport_height=settings.viewport_height,
        )

    @property
    def exhausted(self) -> bool:
        return self.card_count >= self.max_cards

    def append_batch(self) -> int:
        start = self.card_count
        end = min(self.max_cards, start + self.batch_size)
        if end <= start:
            return 0
        batch = BeautifulSoup("".join(render_card(i) for i in range(start, end)), "html.parser")
        for card in batch.select("section.note-item"):
            self._container.append(card.extract())
        self.card_count = end
        rows = -(-self.card_count // CARDS_PER_ROW)
        self.content_height = max(self.viewport_height, rows * CARD_HEIGHT + 200.0)
        return end - start

    async def scroll_to(self, y: float) -> None:
        await super().scroll_to(y)
        if self.scroll_y + 2 * self.viewport_height >= self.content_height:
            self.append_batch()
