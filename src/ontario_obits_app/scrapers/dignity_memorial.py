#!filepath: src/ontario_obits_app/scrapers/dignity_memorial.py
from __future__ import annotations

from dataclasses import replace
from typing import Optional

from bs4 import BeautifulSoup, Tag

from ontario_obits_app.scrapers.base import ObitCard, SourceAdapter, card_from_selectors
from ontario_obits_app.scrapers.errors import StructureError
from ontario_obits_app.scrapers.normalize import truncate_text
from ontario_obits_app.sources.models import DignityMemorialConfig, Source
from ontario_obits_app.utils.url import with_query_param

_OBIT_LINK = "a[href*='/obituaries/']"


class DignityMemorialAdapter(SourceAdapter):
    """Dignity Memorial search listings.

    Only listing facts are kept: detail pages are not fetched and images are
    never hotlinked. When no card container matches, the parents of
    individual obituary links are used as cards.
    """

    kind = "dignity_memorial"
    container_selectors = (
        "div.obit-card",
        "div.obituary-card",
        "article[class*='obit']",
        ".search-results .result",
        "ul.obituaries li",
    )

    def discover_listing_urls(self, source: Source, max_age_days: int) -> list[str]:
        pages = max(1, source.max_pages_per_run)
        return [source.base_url] + [
            with_query_param(source.base_url, "page", n) for n in range(2, pages + 1)
        ]

    def select_containers(self, soup: BeautifulSoup, source: Source, url: str = "") -> list[Tag]:
        try:
            return super().select_containers(soup, source, url)
        except StructureError:
            parents: list[Tag] = []
            for a in soup.select(_OBIT_LINK):
                if "/search" in str(a.get("href") or ""):
                    continue
                parent = a.parent
                if isinstance(parent, Tag) and all(parent is not p for p in parents):
                    parents.append(parent)
            if not parents:
                raise
            self.logger.info(f"Using obituary link parents as cards, source={source.domain}, cards={len(parents)}")
            return parents

    def parse_card(self, el: Tag, source: Source) -> Optional[ObitCard]:
        card = card_from_selectors(
            el,
            name=("h2 a", "h3 a", "h4 a", "h2", "h3", "h4", "[class*='name']", "a[class*='obit']", _OBIT_LINK),
            dates=("[class*='life-span']", "[class*='date']", "time"),
            description=("[class*='excerpt']", "[class*='summary']", "p"),
            location=("[class*='location']", "[class*='city']"),
            funeral_home=("[class*='funeral']", "[class*='provider']"),
            link=(_OBIT_LINK, "a[href]"),
        )
        if card is None:
            return None
        limit = source.config.description_limit if isinstance(source.config, DignityMemorialConfig) else 200
        return replace(card, image="", description=truncate_text(card.description, limit))
