#!filepath: src/ontario_obits_app/scrapers/remembering_ca.py
from __future__ import annotations

import re
from typing import Optional

from bs4 import Tag

from ontario_obits_app.scrapers.base import (
    ObitCard,
    SourceAdapter,
    element_text,
    first_match,
)
from ontario_obits_app.scrapers.normalize import (
    normalize_date,
    parse_date_range,
    truncate_text,
    year_only_date,
)
from ontario_obits_app.sources.models import RememberingCaConfig, Source
from ontario_obits_app.utils.url import with_query_param

_PUBLISHED_RE = re.compile(r"published online\s*:?\s*([A-Za-z]+\.?\s+\d{1,2},?\s+\d{4})", re.I)


class RememberingCaAdapter(SourceAdapter):
    """remembering.ca newspaper obituary networks.

    Images are never hotlinked from these listings.
    """

    kind = "remembering_ca"
    container_selectors = (
        "div.ap_ad_wrap",
        ".obit-listing-item",
        ".obituary-item",
        "article.obituary",
        "div.listing-item",
        "li.obituary",
    )

    def request_headers(self, source: Source) -> dict[str, str]:
        return {"Accept-Language": self.http.accept_language}

    def discover_listing_urls(self, source: Source, max_age_days: int) -> list[str]:
        pages = max(1, source.max_pages_per_run)
        return [source.base_url] + [
            with_query_param(source.base_url, "page", n) for n in range(2, pages + 1)
        ]

    def parse_card(self, el: Tag, source: Source) -> Optional[ObitCard]:
        name = element_text(first_match(el, (".ap_name", ".obit-name", ".name", "h2", "h3")))
        if not name:
            return None

        date_text = element_text(first_match(el, (".ap_dates", ".obit-dates", ".dates", ".date")))
        birth, death = parse_date_range(date_text)
        if not birth:
            birth = year_only_date(element_text(first_match(el, (".year_birth", ".birth-year"))))
        if not death:
            death = year_only_date(element_text(first_match(el, (".year_death", ".death-year"))))
        if not death:
            m = _PUBLISHED_RE.search(el.get_text(" ", strip=True))
            if m:
                death = normalize_date(m.group(1))

        limit = 200
        if isinstance(source.config, RememberingCaConfig):
            limit = source.config.description_limit
        link_el = first_match(el, ("a.ap_link", "a[href]"))
        return ObitCard(
            name=name,
            birth_text=birth,
            death_text=death,
            link=str(link_el.get("href") or "") if link_el is not None else "",
            description=truncate_text(
                element_text(first_match(el, (".ap_text", ".obit-text", ".description", "p"))),
                limit,
            ),
            location=element_text(first_match(el, (".ap_location", ".obit-location", ".location"))),
        )
