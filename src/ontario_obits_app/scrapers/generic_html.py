#!filepath: src/ontario_obits_app/scrapers/generic_html.py
from __future__ import annotations

from typing import Optional

from bs4 import Tag

from ontario_obits_app.scrapers.base import ObitCard, SourceAdapter, card_from_selectors
from ontario_obits_app.sources.models import GenericHtmlConfig, Source
from ontario_obits_app.utils.url import with_query_param


def _cfg(source: Source) -> GenericHtmlConfig:
    cfg = source.config
    return cfg if isinstance(cfg, GenericHtmlConfig) else GenericHtmlConfig()


def _with_fallback(configured: str, defaults: tuple[str, ...]) -> tuple[str, ...]:
    return (configured, *defaults) if configured else defaults


class GenericHtmlAdapter(SourceAdapter):
    """Any listing whose card fields can be described with CSS selectors."""

    kind = "generic_html"
    container_selectors = (
        "article.obituary",
        ".obituary-item",
        ".obituary-listing .item",
        "li.obituary",
        ".obit",
        ".tribute-item",
    )

    def candidate_selectors(self, source: Source) -> list[str]:
        out = super().candidate_selectors(source)
        listing = _cfg(source).selector("listing")
        if listing and listing not in out:
            learned = source.config.learned_container_selector
            out.insert(1 if learned else 0, listing)
        return out

    def discover_listing_urls(self, source: Source, max_age_days: int) -> list[str]:
        param = _cfg(source).pagination_param
        urls = [source.base_url]
        if param:
            for page in range(2, max(1, source.max_pages_per_run) + 1):
                urls.append(with_query_param(source.base_url, param, page))
        return urls[: max(1, source.max_pages_per_run)]

    def parse_card(self, el: Tag, source: Source) -> Optional[ObitCard]:
        cfg = _cfg(source)
        return card_from_selectors(
            el,
            name=_with_fallback(cfg.selector("name"), ("h2", "h3", "h4", ".name", "a")),
            dates=_with_fallback(cfg.selector("date"), (".dates", ".date", "time")),
            description=_with_fallback(cfg.selector("description"), (".excerpt", ".summary", "p")),
            location=_with_fallback(cfg.selector("location"), (".location", ".city")),
            link=_with_fallback(cfg.selector("link"), ("a[href]",)),
            image=_with_fallback(cfg.selector("image"), ("img",)),
        )
