#!filepath: src/ontario_obits_app/scrapers/legacy_com.py
from __future__ import annotations

from datetime import timedelta
from typing import Optional

from bs4 import Tag

from ontario_obits_app.scrapers.base import ObitCard, SourceAdapter, card_from_selectors
from ontario_obits_app.sources.models import LegacyComConfig, Source


class LegacyComAdapter(SourceAdapter):
    """legacy.com newspaper listings.

    A `/today` base URL is followed by one `/browse?date=` page per
    preceding day, up to the configured look-back.
    """

    kind = "legacy_com"
    container_selectors = (
        "div[data-component='ObituaryCard']",
        ".obituary-card",
        ".ObituaryCard",
        "article.obituary",
        "li.obituary",
    )

    def discover_listing_urls(self, source: Source, max_age_days: int) -> list[str]:
        pages = max(1, source.max_pages_per_run)
        urls = [source.base_url]
        if "/today" in source.base_url:
            days_back = max_age_days
            if isinstance(source.config, LegacyComConfig):
                days_back = min(days_back, source.config.days_back)
            root = source.base_url.split("/today", 1)[0]
            today = self._today()
            for offset in range(1, days_back + 1):
                day = (today - timedelta(days=offset)).isoformat()
                urls.append(f"{root}/browse?date={day}")
        return urls[:pages]

    def parse_card(self, el: Tag, source: Source) -> Optional[ObitCard]:
        return card_from_selectors(
            el,
            name=("[data-component='NameHeadline']", ".obit-name", ".name", "h2", "h3", "a"),
            dates=("[data-component='ObituaryDates']", ".obit-dates", ".dates"),
            description=("[data-component='ObituaryText']", ".obit-text", "p"),
            location=("[data-component='Location']", ".location"),
            funeral_home=("[data-component='FuneralHome']", ".funeral-home"),
        )
