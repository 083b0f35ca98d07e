#!filepath: src/ontario_obits_app/scrapers/frontrunner.py
from __future__ import annotations

from typing import Optional

from bs4 import BeautifulSoup, Tag

from ontario_obits_app.scrapers.base import (
    DetailFields,
    ObitCard,
    ObituaryRecord,
    SourceAdapter,
    card_from_selectors,
    element_text,
    first_match,
)
from ontario_obits_app.scrapers.normalize import (
    extract_age_from_text,
    factual_summary,
    parse_date_range,
)
from ontario_obits_app.sources.models import FrontRunnerConfig, Source

_DETAIL_BODY = (".obituary-text", ".obit-text", ".entry-content", "#obituary", "article", "main")
_DETAIL_DATES = (".obit-dates", ".dates", ".lifespan")


class FrontRunnerAdapter(SourceAdapter):
    """FrontRunner-hosted funeral home sites."""

    kind = "frontrunner"
    container_selectors = (
        ".obituary-item",
        ".obit-listing",
        "article.obituary",
        ".tribute-item",
        "li.obituary",
    )

    def discover_listing_urls(self, source: Source, max_age_days: int) -> list[str]:
        base = source.base_url.rstrip("/")
        pages = max(1, source.max_pages_per_run)
        return [source.base_url] + [f"{base}/page/{n}" for n in range(2, pages + 1)]

    def parse_card(self, el: Tag, source: Source) -> Optional[ObitCard]:
        return card_from_selectors(
            el,
            name=(".obit-name", ".name", "h2", "h3", "a.entry-anchor", "a"),
            dates=(".obit-dates", ".dates", ".date", "time"),
            description=(".obit-excerpt", ".excerpt", ".description", "p"),
            location=(".obit-location", ".location"),
        )

    def fetch_detail(self, record: ObituaryRecord, source: Source) -> Optional[DetailFields]:
        cfg = source.config
        if not record.source_url or (isinstance(cfg, FrontRunnerConfig) and not cfg.fetch_details):
            return None
        soup = BeautifulSoup(self._get(record.source_url, source), "lxml")
        body = element_text(first_match(soup, _DETAIL_BODY))
        if not body:
            return None
        birth, death = parse_date_range(element_text(first_match(soup, _DETAIL_DATES)))
        return DetailFields(
            description=factual_summary(body),
            date_of_birth=birth,
            date_of_death=death,
            age=extract_age_from_text(body),
        )
