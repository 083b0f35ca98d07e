#!filepath: src/ontario_obits_app/scrapers/normalize.py
"""Pure normalization helpers shared by every source adapter.

Nothing in this module touches the network or the database, so it can be
exercised directly from tests.
"""
from __future__ import annotations

import hashlib
import re
from datetime import date, datetime
from typing import Optional

from unidecode import unidecode

DATE_FORMATS: tuple[str, ...] = (
    "%B %d, %Y",
    "%b %d, %Y",
    "%B %d %Y",
    "%b %d %Y",
    "%d %B %Y",
    "%d %b %Y",
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%m-%d-%Y",
    "%Y-%m-%d",
    "%d-%b-%Y",
)

MONTH_YEAR_FORMATS: tuple[str, ...] = ("%B %Y", "%b %Y")

MIN_AGE = 1
MAX_AGE = 120
MIN_DEATH_YEAR = 1900

_WS_RE = re.compile(r"\s+")
_ORDINAL_RE = re.compile(r"\b(\d{1,2})(st|nd|rd|th)\b", re.I)
_WEEKDAY_RE = re.compile(
    r"^(monday|tuesday|wednesday|thursday|friday|saturday|sunday),?\s+", re.I
)
_BARE_YEAR_RE = re.compile(r"^\d{4}$")
_YEAR_RE = re.compile(r"\b(18|19|20)\d{2}\b")
_EMBEDDED_DATE_RE = re.compile(
    r"\b(jan|feb|mar|apr|may|jun|jul|aug|sep|sept|oct|nov|dec)[a-z]*\.?\s+\d{1,2}(?:st|nd|rd|th)?,?\s+\d{4}\b",
    re.I,
)
_RANGE_SPLIT_RE = re.compile(r"\s*[–—~]\s*|\s+-\s+|\s+to\s+", re.I)

_DEATH_KEYWORDS: tuple[str, ...] = (
    "passed away",
    "passed peacefully",
    "passed on",
    "died",
    "aged",
    "entered into rest",
    "went to be with",
    "called home",
)
_DEATH_CONTEXT_RE = re.compile(
    r"\b(" + "|".join(re.escape(k) for k in _DEATH_KEYWORDS) + r")\b", re.I
)
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
_AGE_PATTERNS: tuple[tuple[re.Pattern[str], int], ...] = (
    (re.compile(r"\bat the (?:age|young age|grand age) of\s+(\d{1,3})\b", re.I), 0),
    (re.compile(r"\baged?\s+(\d{1,3})\b", re.I), 0),
    (re.compile(r"\b(\d{1,3})\s+years\s+(?:of\s+age|old|young)\b", re.I), 0),
    (re.compile(r"\bin\s+(?:his|her|their)\s+(\d{1,3})(?:st|nd|rd|th)\s+year\b", re.I), -1),
)

_POSTAL_RE = re.compile(r"\b[A-Z]\d[A-Z]\s*\d[A-Z]\d\b", re.I)
_PROVINCE_SUFFIX_RE = re.compile(r",?\s*\b(ON|Ont\.?|Ontario|Canada)\s*$", re.I)
_STREET_WORD_RE = re.compile(
    r"\b(street|road|avenue|drive|boulevard|crescent|court|lane|highway|concession|suite|unit|p\.?o\.? box)\b",
    re.I,
)
_STREET_SUFFIX_RE = re.compile(r"\s(st|rd|ave|dr|blvd|cres|ct|ln|hwy|pkwy)\.?$", re.I)
_LEAKED_WORD_RE = re.compile(
    r"\b(funeral|obituary|obituaries|chapel|hospital|passed|cemetery|visitation|home|centre|center|church|memorial|service|reception|arrangements)\b",
    re.I,
)
MAX_CITY_LENGTH = 40

TORONTO_AREAS: frozenset[str] = frozenset(
    {
        "north york",
        "scarborough",
        "etobicoke",
        "east york",
        "york",
        "willowdale",
        "don mills",
        "agincourt",
        "thornhill",
    }
)

CITY_TRUNCATIONS: dict[str, str] = {
    "sault ste": "Sault Ste. Marie",
    "sault ste.": "Sault Ste. Marie",
    "sault ste marie": "Sault Ste. Marie",
    "niagara on the": "Niagara-on-the-Lake",
    "niagara-on-the": "Niagara-on-the-Lake",
    "niagara on the lake": "Niagara-on-the-Lake",
    "whitchurch": "Whitchurch-Stouffville",
    "whitchurch stouffville": "Whitchurch-Stouffville",
    "st. catharine": "St. Catharines",
    "st catharine": "St. Catharines",
    "st catharines": "St. Catharines",
    "bradford west": "Bradford West Gwillimbury",
    "bradford": "Bradford West Gwillimbury",
}

_NAME_SUFFIX_RE = re.compile(r"\s+(obituary|obit\.?)\s*$", re.I)
_NAME_PREFIX_RE = re.compile(r"^(obituary of|in (loving )?memory of)\s+", re.I)
_HASH_NAME_TOKEN_RE = re.compile(r"\b(jr|sr|ii|iii|iv|v|dr|mr|mrs|ms|miss|prof)\b\.?", re.I)

_PLACEHOLDER_IMAGE_RE = re.compile(
    r"(placeholder|default|generic|no[-_]?photo|avatar|logo|spacer)", re.I
)


def _collapse(text: str | None) -> str:
    return _WS_RE.sub(" ", str(text or "")).strip()


def _clean_date_text(text: str) -> str:
    s = _collapse(text)
    s = _WEEKDAY_RE.sub("", s)
    s = _ORDINAL_RE.sub(r"\1", s)
    s = re.sub(r"\bSept\b", "Sep", s, flags=re.I)
    s = re.sub(r"\b([A-Za-z]{3})\.", r"\1", s)
    return s.strip(" .,;")


def normalize_date(text: str | None, *, today: Optional[date] = None) -> str:
    """Parse a free-form date into ISO `YYYY-MM-DD`.

    Bare 4-digit years and empty or zero dates yield "". Month-year strings
    resolve to the first of the month. A date embedded in longer text is
    used only as a last resort, and never when a short fragment would
    resolve to today.

    Args:
        text: Raw date text.
        today: Reference date for the fragment guard.

    Returns:
        str: ISO date or "".
    """
    s = _clean_date_text(str(text or ""))
    if not s or s.startswith("0000"):
        return ""
    if _BARE_YEAR_RE.match(s):
        return ""

    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(s, fmt).date().isoformat()
        except ValueError:
            continue

    for fmt in MONTH_YEAR_FORMATS:
        try:
            return datetime.strptime(s, fmt).date().replace(day=1).isoformat()
        except ValueError:
            continue

    m = _EMBEDDED_DATE_RE.search(s)
    if m and m.group(0) != s:
        found = normalize_date(m.group(0), today=today)
        ref = today or date.today()
        if found and not (found == ref.isoformat() and len(s) < 10):
            return found
    return ""


def parse_date_range(text: str | None) -> tuple[str, str]:
    """Split "March 1945 – Jan 2026" style text into (birth, death) ISO dates.

    A single date is taken as the date of death.
    """
    s = _collapse(text)
    if not s:
        return "", ""
    parts = [p for p in _RANGE_SPLIT_RE.split(s, maxsplit=1) if p.strip()]
    if len(parts) == 2:
        return normalize_date(parts[0]), normalize_date(parts[1])
    return "", normalize_date(s)


def year_only_date(text: str | None) -> str:
    """Return `YYYY-01-01` for text holding just a year, else ""."""
    s = _collapse(text)
    m = _YEAR_RE.search(s)
    if not m or len(s) > 12:
        return ""
    return f"{m.group(0)}-01-01"


def is_valid_death_date(iso: str | None, *, today: Optional[date] = None) -> bool:
    """True for an ISO date between 1900 and today inclusive."""
    s = str(iso or "").strip()
    if not s or s.startswith("0000"):
        return False
    try:
        d = date.fromisoformat(s)
    except ValueError:
        return False
    ref = today or date.today()
    return MIN_DEATH_YEAR <= d.year and d <= ref


def calculate_age(birth: str | None, death: str | None) -> Optional[int]:
    """Whole years between two ISO dates, or None when out of range."""
    try:
        b = date.fromisoformat(str(birth or ""))
        d = date.fromisoformat(str(death or ""))
    except ValueError:
        return None
    years = d.year - b.year - ((d.month, d.day) < (b.month, b.day))
    return years if MIN_AGE <= years <= MAX_AGE else None


def extract_age_from_text(text: str | None) -> Optional[int]:
    """Find the age at death, looking only at sentences that mention a death.

    "She was admitted to college at the age of 16. She passed away at the
    age of 84." yields 84.
    """
    for sentence in _SENTENCE_SPLIT_RE.split(_collapse(text)):
        if not _DEATH_CONTEXT_RE.search(sentence):
            continue
        for pattern, offset in _AGE_PATTERNS:
            for m in pattern.finditer(sentence):
                age = int(m.group(1)) + offset
                if MIN_AGE <= age <= MAX_AGE:
                    return age
    return None


def coerce_age(value: object) -> Optional[int]:
    try:
        age = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return age if MIN_AGE <= age <= MAX_AGE else None


def resolve_age(explicit: object, text: str | None, birth: str, death: str) -> Optional[int]:
    """Explicit field first, then death-scoped text, then birth/death delta."""
    age = coerce_age(explicit) if explicit not in (None, "") else None
    if age is not None:
        return age
    age = extract_age_from_text(text)
    if age is not None:
        return age
    return calculate_age(birth, death)


def _title(s: str) -> str:
    if s != s.lower() and s != s.upper():
        return s
    return " ".join(w[:1].upper() + w[1:].lower() for w in s.split(" "))


def normalize_city(raw: str | None) -> str:
    """Canonical city name, or "" when the value does not look like a city.

    Strips province and postal suffixes, maps Toronto neighbourhoods to
    Toronto and repairs known truncations. Street addresses, values with
    digits and leaked listing text are rejected.
    """
    s = _collapse(raw)
    if not s:
        return ""
    s = _POSTAL_RE.sub("", s).strip(" ,")
    for _ in range(2):
        s = _PROVINCE_SUFFIX_RE.sub("", s).strip(" ,.")
    if "," in s:
        s = s.split(",", 1)[0].strip()
    s = s.strip(" .-")
    if not s:
        return ""

    low = s.lower()
    if low in CITY_TRUNCATIONS:
        return CITY_TRUNCATIONS[low]
    if low in TORONTO_AREAS:
        return "Toronto"

    if len(s) > MAX_CITY_LENGTH or any(ch.isdigit() for ch in s):
        return ""
    if _STREET_WORD_RE.search(s) or _STREET_SUFFIX_RE.search(s):
        return ""
    if _LEAKED_WORD_RE.search(s):
        return ""
    return _title(s)


def normalize_name(raw: str | None) -> str:
    """Display name with listing boilerplate removed."""
    s = _collapse(raw)
    s = _NAME_PREFIX_RE.sub("", s)
    s = _NAME_SUFFIX_RE.sub("", s)
    return s.strip(" ,-|")


def _hash_name(name: str) -> str:
    s = _HASH_NAME_TOKEN_RE.sub(" ", unidecode(str(name or "")).lower())
    return _collapse(s.replace(",", " "))


def provenance_hash(name: str, date_of_death: str, funeral_home: str, city: str) -> str:
    """Stable dedup fingerprint of one death notice."""
    parts = (
        _hash_name(name),
        str(date_of_death or "").strip(),
        _collapse(funeral_home).lower(),
        _collapse(city).lower(),
    )
    return hashlib.sha1("|".join(parts).encode("utf_8")).hexdigest()


def is_placeholder_image(url: str | None) -> bool:
    return bool(_PLACEHOLDER_IMAGE_RE.search(str(url or "")))


def truncate_text(text: str | None, limit: int) -> str:
    s = _collapse(text)
    if len(s) <= limit:
        return s
    return f"{s[: limit - 3].rstrip()}..."


def factual_summary(text: str | None, *, limit: int = 600) -> str:
    """Short factual lead built from the sentences that carry death facts."""
    sentences = _SENTENCE_SPLIT_RE.split(_collapse(text))
    picked = [s for s in sentences if _DEATH_CONTEXT_RE.search(s)]
    if not picked:
        picked = sentences[:2]
    return truncate_text(" ".join(picked[:3]), limit)
