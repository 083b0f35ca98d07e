#!filepath: src/ontario_obits_app/validation/fact_check.py
"""Fact preservation checks run before any rewrite may be published.

Checks run in a fixed order and stop at the first failure, so every
rejection names exactly one missing or broken fact.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional

from ontario_obits_app.settings import ValidationConfig


class ReasonCode(str, Enum):
    OK = "ok"
    EMPTY_OUTPUT = "empty_output"
    TOO_SHORT = "too_short"
    TOO_LONG = "too_long"
    IMPLAUSIBLE_DATA = "implausible_data"
    NAME_MISSING = "name_missing"
    DEATH_YEAR_MISSING = "death_year_missing"
    DEATH_DAY_MISSING = "death_day_missing"
    AGE_MISSING = "age_missing"
    LOCATION_MISSING = "location_missing"
    LLM_ARTIFACT = "llm_artifact"
    JSON_PARSE_FAILED = "json_parse_failed"


@dataclass(frozen=True, slots=True)
class ValidationResult:
    ok: bool
    reason: ReasonCode = ReasonCode.OK
    detail: str = ""

    @classmethod
    def passed(cls) -> ValidationResult:
        return cls(ok=True)

    @classmethod
    def failed(cls, reason: ReasonCode, detail: str = "") -> ValidationResult:
        return cls(ok=False, reason=reason, detail=detail)

    @property
    def code(self) -> str:
        return self.reason.value


@dataclass(frozen=True, slots=True)
class FactBlock:
    """Facts a rewrite must preserve.

    Attributes:
        name: Full name as stored.
        date_of_death: ISO date or empty.
        date_of_birth: ISO date or empty.
        age: Age at death, or None.
        location: City or place, first segment is checked.
        funeral_home: Funeral home name.
    """

    name: str
    date_of_death: str = ""
    date_of_birth: str = ""
    age: Optional[int] = None
    location: str = ""
    funeral_home: str = ""

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> FactBlock:
        keys = set(row.keys())

        def _get(key: str) -> Any:
            return row[key] if key in keys else None

        dod = str(_get("date_of_death") or "").strip()
        if dod == "0000-00-00":
            dod = ""
        age = _get("age")
        return cls(
            name=str(_get("name") or "").strip(),
            date_of_death=dod,
            date_of_birth=str(_get("date_of_birth") or "").strip(),
            age=int(age) if age not in (None, "") and int(age) > 0 else None,
            location=str(_get("city_normalized") or _get("location") or "").strip(),
            funeral_home=str(_get("funeral_home") or "").strip(),
        )

    def with_overrides(self, fields: Mapping[str, Any]) -> FactBlock:
        """Return a copy refined by sanity-checked extracted fields."""
        return FactBlock(
            name=self.name,
            date_of_death=str(fields.get("date_of_death") or self.date_of_death),
            date_of_birth=str(fields.get("date_of_birth") or self.date_of_birth),
            age=int(fields["age"]) if fields.get("age") else self.age,
            location=str(fields.get("location") or self.location),
            funeral_home=str(fields.get("funeral_home") or self.funeral_home),
        )


_PAREN_RE = re.compile(r"\s*\(([^)]*)\)\s*")
_SUFFIX_RE = re.compile(r"^(jr|sr|ii|iii|iv)\.?$", re.I)
_TITLE_RE = re.compile(r"^(mr|mrs|ms|dr|rev)\.?$", re.I)

_IMPLAUSIBLE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\baged?\s+(?:of\s+)?0\b", re.I),
    re.compile(r"\bat\s+the\s+age\s+of\s+0\b", re.I),
    re.compile(r"\bin\s+(?:his|her|their)\s+(?:1st|first)\s+year\b", re.I),
    re.compile(r"\baged?\s+(?:of\s+)?(?:1[3-9]\d{2}|20\d{2})\b", re.I),
)


def name_tokens(full_name: str) -> tuple[str, str, list[str]]:
    """Split a name into (last, first, nicknames) with suffixes and titles removed."""
    nicknames = [n.strip() for n in re.findall(r"\(([^)]*)\)", full_name or "") if n.strip()]
    clean = " ".join(_PAREN_RE.sub(" ", str(full_name or "")).split())
    parts = clean.split(" ") if clean else []
    while len(parts) > 1 and _SUFFIX_RE.match(parts[-1].rstrip(",")):
        parts.pop()
    last = parts[-1].rstrip(",") if parts else ""
    first = parts[0] if parts else ""
    if _TITLE_RE.match(first) and len(parts) > 1:
        first = parts[1]
    return last, first, nicknames


def _name_present(text_lower: str, full_name: str, min_len: int) -> tuple[bool, str]:
    last, first, nicknames = name_tokens(full_name)
    if len(last) >= min_len:
        return last.lower() in text_lower, last
    # Last name too short to match reliably: the first name or a nickname stands in.
    candidates = [alt for alt in (first, *nicknames) if len(alt) >= min_len]
    if not candidates:
        return True, ""
    for alt in candidates:
        if alt.lower() in text_lower:
            return True, alt
    return False, first


def city_token(location: str) -> str:
    return re.split(r"[,\-]", str(location or ""), maxsplit=1)[0].strip()


def validate_rewrite(
    text: str, facts: FactBlock, cfg: Optional[ValidationConfig] = None
) -> ValidationResult:
    """Check a rewrite against the facts it must preserve.

    Args:
        text: Candidate rewrite.
        facts: Facts known for the record.
        cfg: Length limits and artifact phrases.

    Returns:
        ValidationResult: The first failing check, or a pass.
    """
    c = cfg or ValidationConfig()
    body = str(text or "").strip()
    if not body:
        return ValidationResult.failed(ReasonCode.EMPTY_OUTPUT, "Rewrite is empty")

    n = len(body)
    if n < int(c.min_length):
        return ValidationResult.failed(ReasonCode.TOO_SHORT, f"Rewrite too short ({n} chars)")
    if n > int(c.max_length):
        return ValidationResult.failed(ReasonCode.TOO_LONG, f"Rewrite too long ({n} chars)")

    for pattern in _IMPLAUSIBLE_PATTERNS:
        m = pattern.search(body)
        if m:
            return ValidationResult.failed(ReasonCode.IMPLAUSIBLE_DATA, f"Implausible phrase: {m.group(0)!r}")

    lower = body.lower()
    if facts.name:
        ok, token = _name_present(lower, facts.name, int(c.min_name_length))
        if not ok:
            return ValidationResult.failed(ReasonCode.NAME_MISSING, f"Rewrite does not mention {token!r}")

    parts = facts.date_of_death.split("-") if facts.date_of_death else []
    if len(parts) == 3:
        year, day = parts[0], parts[2].lstrip("0")
        if year not in body:
            return ValidationResult.failed(ReasonCode.DEATH_YEAR_MISSING, f"Rewrite does not mention death year {year}")
        if day and day not in body:
            return ValidationResult.failed(ReasonCode.DEATH_DAY_MISSING, f"Rewrite does not mention death day {day}")

    if facts.age is not None and facts.age > 0:
        if str(int(facts.age)) not in body:
            return ValidationResult.failed(ReasonCode.AGE_MISSING, f"Rewrite does not mention age {facts.age}")

    city = city_token(facts.location)
    if city and city.lower() not in lower:
        return ValidationResult.failed(ReasonCode.LOCATION_MISSING, f"Rewrite does not mention {city!r}")

    for phrase in c.artifact_phrases:
        p = str(phrase or "").strip().lower()
        if p and p in lower:
            return ValidationResult.failed(ReasonCode.LLM_ARTIFACT, f"Rewrite contains {p!r}")

    return ValidationResult.passed()
