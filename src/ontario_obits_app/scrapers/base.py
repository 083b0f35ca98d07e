#!src/ontario_obits_app/scrapers/base.py
from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any, Callable, ClassVar, Optional, Union

import requests
from bs4 import BeautifulSoup, Tag

from ontario_obits_app.scrapers.adaptive_selector import AdaptiveSelector, count_matches
from ontario_obits_app.scrapers.errors import FetchError, FetchErrorKind, StructureError
from ontario_obits_app.scrapers.normalize import (
    is_placeholder_image,
    is_valid_death_date,
    normalize_city,
    normalize_date,
    normalize_name,
    parse_date_range,
    provenance_hash,
    resolve_age,
)
from ontario_obits_app.settings import HttpConfig
from ontario_obits_app.sources.models import Source
from ontario_obits_app.utils.backoff import call_with_exponential_backoff
from ontario_obits_app.utils.logger import get_logger
from ontario_obits_app.utils.url import redact_url, resolve_url

MIN_CONTAINER_MATCHES = 3


@dataclass(frozen=True, slots=True)
class ObitCard:
    """Raw fields scraped from one listing card, before normalization."""

    name: str = ""
    date_text: str = ""
    birth_text: str = ""
    death_text: str = ""
    age_text: str = ""
    link: str = ""
    image: str = ""
    description: str = ""
    location: str = ""
    funeral_home: str = ""


@dataclass(frozen=True, slots=True)
class CardOk:
    card: ObitCard
    index: int


@dataclass(frozen=True, slots=True)
class CardError:
    reason: str
    index: int
    detail: str = ""


CardResult = Union[CardOk, CardError]


@dataclass(frozen=True, slots=True)
class ObituaryRecord:
    """Canonical obituary, ready to be stored as a pending row."""

    provenance_hash: str
    name: str
    date_of_birth: str = ""
    date_of_death: str = ""
    age: Optional[int] = None
    funeral_home: str = ""
    location: str = ""
    city_normalized: str = ""
    description: str = ""
    image_url: str = ""
    source_url: str = ""
    source_domain: str = ""
    source_type: str = ""

    def as_row(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class DetailFields:
    """Fields a detail page may contribute. Empty values leave the card as is."""

    description: str = ""
    date_of_birth: str = ""
    date_of_death: str = ""
    age: Optional[int] = None
    location: str = ""
    funeral_home: str = ""
    image_url: str = ""
    extra: dict[str, Any] = field(default_factory=dict)


class SourceAdapter(ABC):
    """Shared fetch, container selection and normalization for one platform family.

    Subclasses name their platform `kind`, list their prioritized
    `container_selectors`, build listing URLs and turn one container element
    into an `ObitCard`.
    """

    kind: ClassVar[str] = ""
    container_selectors: ClassVar[tuple[str, ...]] = ()

    def __init__(
        self,
        http: Optional[HttpConfig] = None,
        *,
        session: Optional[requests.Session] = None,
        selector_strategy: Optional[AdaptiveSelector] = None,
        sleep: Callable[[float], None] = time.sleep,
        today: Optional[Callable[[], date]] = None,
    ) -> None:
        self.http = http or HttpConfig()
        self.session = session or self._build_session()
        self.selector_strategy = selector_strategy
        self._sleep = sleep
        self._today = today or date.today
        self.logger = get_logger(f"ontario_obits_app.scrapers.{self.kind or 'adapter'}")

    def _build_session(self) -> requests.Session:
        s = requests.Session()
        s.headers.update(
            {
                "User-Agent": self.http.user_agent,
                "Accept": self.http.accept,
            }
        )
        return s

    def request_headers(self, source: Source) -> dict[str, str]:
        return {}

    def discover_listing_urls(self, source: Source, max_age_days: int) -> list[str]:
        """Listing pages to fetch, capped by the source page budget."""
        return [source.base_url]

    def fetch_listing(self, url: str, source: Source) -> str:
        """GET a listing page with bounded exponential-backoff retries.

        Raises:
            FetchError: When the page cannot be fetched.
        """
        return self._get(url, source)

    def fetch_detail(self, record: ObituaryRecord, source: Source) -> Optional[DetailFields]:
        """Enrich a record from its detail page. Adapters without one return None."""
        return None

    def _get(self, url: str, source: Source) -> str:
        attempts = {"n": 0}
        headers = self.request_headers(source)

        def _attempt() -> str:
            attempts["n"] += 1
            try:
                r = self.session.get(url, timeout=self.http.timeout_seconds, headers=headers or None)
            except requests.RequestException as e:
                raise FetchError.from_request_exception(e, url) from e
            if int(r.status_code) != 200:
                raise FetchError(FetchErrorKind.HTTP_STATUS, url, status_code=int(r.status_code))
            return r.text

        def _on_retry(attempt: int, delay: float, exc: Exception) -> None:
            self.logger.info(
                f"Fetch retry, source={source.domain}, url={redact_url(url)}, attempt={attempt}, delay={delay:.1f}s, err={exc}"
            )

        try:
            return call_with_exponential_backoff(
                _attempt,
                max_retries=self.http.max_retries,
                base_delay=self.http.backoff_base_seconds,
                jitter=0.0,
                is_retryable=lambda e: isinstance(e, FetchError) and e.retryable,
                on_retry=_on_retry,
                sleep=self._sleep,
            )
        except FetchError as e:
            e.attempts = attempts["n"]
            raise

    def candidate_selectors(self, source: Source) -> list[str]:
        cfg = source.config
        out: list[str] = []
        for sel in (cfg.learned_container_selector, *cfg.container_selectors, *self.container_selectors):
            sel = str(sel or "").strip()
            if sel and sel not in out:
                out.append(sel)
        return out

    def select_containers(self, soup: BeautifulSoup, source: Source, url: str = "") -> list[Tag]:
        """Pick card containers, falling back to structure detection.

        The first selector matching at least three elements wins. Otherwise
        the adaptive strategy may supply one. Failing that, the first
        selector with any match is used.

        Raises:
            StructureError: When nothing matches at all.
        """
        tried = self.candidate_selectors(source)
        first_partial = ""
        for sel in tried:
            n = count_matches(soup, sel)
            if n >= MIN_CONTAINER_MATCHES:
                return list(soup.select(sel))
            if n and not first_partial:
                first_partial = sel

        if self.selector_strategy is not None:
            learned = self.selector_strategy.choose(soup, source, tried)
            if learned:
                return list(soup.select(learned))

        if first_partial:
            return list(soup.select(first_partial))
        raise StructureError(source.domain, url or source.base_url, len(tried))

    def extract_obit_cards(self, html: str, source: Source, url: str = "") -> list[CardResult]:
        """Parse listing HTML into per-card results. Bad cards become `CardError`."""
        soup = BeautifulSoup(html or "", "lxml")
        results: list[CardResult] = []
        for index, el in enumerate(self.select_containers(soup, source, url)):
            try:
                card = self.parse_card(el, source)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                results.append(CardError(reason="parse_error", index=index, detail=str(e)[:200]))
                continue
            if card is None:
                results.append(CardError(reason="empty_card", index=index))
                continue
            results.append(CardOk(card=card, index=index))
        return results

    @abstractmethod
    def parse_card(self, el: Tag, source: Source) -> Optional[ObitCard]:
        """Turn one container element into a card, or None to skip it."""
        raise NotImplementedError

    def normalize(self, card: ObitCard, source: Source) -> ObituaryRecord:
        """Convert a raw card into the canonical record for `source`."""
        name = normalize_name(card.name)

        if card.birth_text or card.death_text:
            birth = normalize_date(card.birth_text)
            death = normalize_date(card.death_text)
        else:
            birth, death = parse_date_range(card.date_text)
        if death and not is_valid_death_date(death, today=self._today()):
            death = ""
        if birth and death and birth >= death:
            birth = ""

        age = resolve_age(card.age_text, card.description, birth, death)

        funeral_home = (
            " ".join(card.funeral_home.split())
            or source.config.funeral_home_name
            or source.display_name
        )
        location = " ".join(card.location.split()) or source.city
        city = normalize_city(location) or normalize_city(source.city)

        image = resolve_url(card.image, source.base_url)
        if is_placeholder_image(image):
            image = ""

        return ObituaryRecord(
            provenance_hash=provenance_hash(name, death, funeral_home, city),
            name=name,
            date_of_birth=birth,
            date_of_death=death,
            age=age,
            funeral_home=funeral_home,
            location=location,
            city_normalized=city,
            description=" ".join(card.description.split()),
            image_url=image,
            source_url=resolve_url(card.link, source.base_url),
            source_domain=source.domain,
            source_type=self.kind,
        )


def element_text(el: Optional[Tag]) -> str:
    if el is None:
        return ""
    return " ".join(el.get_text(" ", strip=True).split())


def first_match(el: Tag, selectors: tuple[str, ...] | list[str]) -> Optional[Tag]:
    for sel in selectors:
        if not sel:
            continue
        found = el.select_one(sel)
        if found is not None:
            return found
    return None


def image_src(el: Optional[Tag]) -> str:
    if el is None:
        return ""
    for attr in ("src", "data-src", "data-lazy-src"):
        value = str(el.get(attr) or "").strip()
        if value and not value.startswith("data:"):
            return value
    return ""


def card_from_selectors(
    el: Tag,
    *,
    name: tuple[str, ...],
    dates: tuple[str, ...],
    description: tuple[str, ...] = ("p",),
    location: tuple[str, ...] = (),
    funeral_home: tuple[str, ...] = (),
    link: tuple[str, ...] = ("a[href]",),
    image: tuple[str, ...] = ("img",),
) -> Optional[ObitCard]:
    """Build a card from prioritized per-field selectors.

    Returns None when no name can be found.
    """
    name_text = element_text(first_match(el, name))
    if not name_text:
        return None
    link_el = el if el.name == "a" and el.get("href") else first_match(el, link)
    return ObitCard(
        name=name_text,
        date_text=element_text(first_match(el, dates)),
        link=str(link_el.get("href") or "") if link_el is not None else "",
        image=image_src(first_match(el, image)),
        description=element_text(first_match(el, description)),
        location=element_text(first_match(el, location)) if location else "",
        funeral_home=element_text(first_match(el, funeral_home)) if funeral_home else "",
    )
