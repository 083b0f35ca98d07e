#!filepath: src/ontario_obits_app/scrapers/tribute_archive.py
from __future__ import annotations

from typing import Optional

from bs4 import Tag

from ontario_obits_app.scrapers.base import ObitCard, SourceAdapter, card_from_selectors
from ontario_obits_app.sources.models import Source, TributeArchiveConfig
from ontario_obits_app.utils.url import with_query_param


class TributeArchiveAdapter(SourceAdapter):
    """Tribute Archive funeral home listings."""

    kind = "tribute_archive"
    container_selectors = (
        ".tribute-item",
        ".obituary-item",
        ".card.obituary",
        "article.tribute",
        "li.tribute",
    )

    def discover_listing_urls(self, source: Source, max_age_days: int) -> list[str]:
        cfg = source.config if isinstance(source.config, TributeArchiveConfig) else TributeArchiveConfig()
        pages = max(1, source.max_pages_per_run)
        urls = [source.base_url]
        for n in range(2, pages + 1):
            if cfg.pagination_style == "path":
                urls.append(f"{source.base_url.rstrip('/')}/page/{n}")
            else:
                urls.append(with_query_param(source.base_url, cfg.page_param, n))
        return urls

    def parse_card(self, el: Tag, source: Source) -> Optional[ObitCard]:
        return card_from_selectors(
            el,
            name=(".tribute-name", ".obituary-name", ".name", "h2", "h3", "a"),
            dates=(".tribute-dates", ".obituary-dates", ".dates", ".date"),
            description=(".tribute-excerpt", ".excerpt", "p"),
            location=(".tribute-location", ".location"),
        )
