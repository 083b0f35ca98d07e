#!filepath: src/ontario_obits_app/scrapers/adaptive_selector.py
"""Structure-change detection for listing pages.

When none of a source's known container selectors match enough elements,
the listing has probably been redesigned. `AdaptiveSelector` guesses the
repeating card element, scores it, and hands the winner to a persistence
callback so later runs start from it.
"""
from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from bs4 import BeautifulSoup, Tag

from ontario_obits_app.sources.models import Source
from ontario_obits_app.utils.logger import get_logger

logger = get_logger(__name__)

PersistFn = Callable[[Source, str], None]
AlertFn = Callable[[str, str, str, dict], object]

_CANDIDATE_TAGS = ("article", "li", "div", "section", "tr")
_DATE_HINT_RE = re.compile(
    r"\b(19|20)\d{2}\b|\b(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\b",
    re.I,
)
_OBIT_HINT_RE = re.compile(r"obituar|obit|tribute|memorial|passed|funeral|memoriam", re.I)
_SKIP_CLASS_RE = re.compile(r"^(nav|menu|footer|header|row|col|container|clearfix|wrapper)", re.I)


@dataclass(frozen=True, slots=True)
class SelectorCandidate:
    """A guessed container selector and how well it looks like a card list."""

    selector: str
    count: int
    score: float


def count_matches(soup: BeautifulSoup, selector: str) -> int:
    if not selector:
        return 0
    try:
        return len(soup.select(selector))
    except (ValueError, NotImplementedError):
        logger.warning(f"Invalid CSS selector, selector={selector}")
        return 0


def _signal(el: Tag) -> float:
    text = el.get_text(" ", strip=True)
    if not text:
        return 0.0
    score = 0.0
    if el.find("a", href=True) is not None:
        score += 0.4
    if _DATE_HINT_RE.search(text):
        score += 0.3
    if _OBIT_HINT_RE.search(text) or _OBIT_HINT_RE.search(" ".join(el.get("class") or [])):
        score += 0.2
    if el.find(["h2", "h3", "h4", "strong"]) is not None:
        score += 0.1
    return score


class AdaptiveSelector:
    """Detect candidates, score them, persist the winner if it is better.

    Args:
        min_matches: Elements a selector must match to count as a card list.
        min_signal: Average per-element signal a candidate needs.
        persist: Called with the source and the new selector.
        alert: Structured telemetry sink `(level, subsystem, code, message, context)`.
        enabled: When False, `choose` never guesses.
    """

    def __init__(
        self,
        *,
        min_matches: int = 3,
        min_signal: float = 0.5,
        persist: Optional[PersistFn] = None,
        alert: Optional[AlertFn] = None,
        enabled: bool = True,
    ) -> None:
        self.min_matches = int(min_matches)
        self.min_signal = float(min_signal)
        self._persist = persist
        self._alert = alert
        self.enabled = bool(enabled)

    def detect(self, soup: BeautifulSoup) -> list[SelectorCandidate]:
        """Rank repeating `tag.class` groups by how card-like they look."""
        groups: Counter[str] = Counter()
        for tag_name in _CANDIDATE_TAGS:
            for el in soup.find_all(tag_name, class_=True):
                classes = [c for c in (el.get("class") or []) if not _SKIP_CLASS_RE.match(c)]
                if classes:
                    groups[f"{tag_name}.{classes[0]}"] += 1

        out: list[SelectorCandidate] = []
        for selector, count in groups.items():
            if count < self.min_matches:
                continue
            elements = soup.select(selector)
            signal = sum(_signal(el) for el in elements) / max(1, len(elements))
            if signal < self.min_signal:
                continue
            out.append(SelectorCandidate(selector=selector, count=count, score=round(signal * count, 3)))
        out.sort(key=lambda c: (-c.score, c.selector))
        return out

    def choose(self, soup: BeautifulSoup, source: Source, tried: Sequence[str]) -> Optional[str]:
        """Return a replacement container selector, or None.

        The winner is persisted only when it matches more elements than the
        source's current learned selector.
        """
        if not self.enabled:
            return None

        candidates = [c for c in self.detect(soup) if c.selector not in tried]
        if not candidates:
            self._emit(
                "warning",
                "SCRAPE_SELECTOR_UNRESOLVED",
                f"Listing structure changed and no replacement selector was found for {source.domain}",
                {"source": source.domain, "tried": len(tried)},
            )
            return None

        best = candidates[0]
        current = source.config.learned_container_selector
        current_count = count_matches(soup, current)
        if best.count > current_count:
            if self._persist is not None:
                self._persist(source, best.selector)
            self._emit(
                "warning",
                "SCRAPE_SELECTOR_LEARNED",
                f"Listing structure changed, learned new container selector for {source.domain}",
                {
                    "source": source.domain,
                    "selector": best.selector,
                    "previous": current or "-",
                    "matches": best.count,
                },
            )
        return best.selector

    def _emit(self, level: str, code: str, message: str, context: dict) -> None:
        if self._alert is not None:
            self._alert(level, "SCRAPE", code, message, context)
        else:
            logger.warning(f"{message}, code={code}")
