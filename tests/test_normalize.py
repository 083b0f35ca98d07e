#!filepath: tests/test_normalize.py
from __future__ import annotations

from datetime import date

import pytest

from ontario_obits_app.scrapers.normalize import (
    calculate_age,
    extract_age_from_text,
    is_placeholder_image,
    is_valid_death_date,
    normalize_city,
    normalize_date,
    normalize_name,
    parse_date_range,
    provenance_hash,
    resolve_age,
    year_only_date,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("January 5th, 2026", "2026-01-05"),
        ("Sept. 3, 2025", "2025-09-03"),
        ("Monday, June 2, 2025", "2025-06-02"),
        ("3 March 1941", "1941-03-03"),
        ("2025-11-30", "2025-11-30"),
        ("March 2025", "2025-03-01"),
        ("2026", ""),
        ("0000-00-00", ""),
        ("", ""),
        ("not a date", ""),
    ],
)
def test_normalize_date(raw: str, expected: str) -> None:
    assert normalize_date(raw) == expected


def test_parse_date_range_splits_birth_and_death() -> None:
    assert parse_date_range("March 3, 1941 - January 5, 2026") == ("1941-03-03", "2026-01-05")
    assert parse_date_range("1941-03-03 to 2026-01-05") == ("1941-03-03", "2026-01-05")


def test_single_date_is_taken_as_death() -> None:
    assert parse_date_range("January 5, 2026") == ("", "2026-01-05")


def test_year_only_fallback() -> None:
    assert year_only_date("2025") == "2025-01-01"
    assert year_only_date("") == ""


def test_death_date_bounds() -> None:
    today = date(2026, 2, 20)
    assert is_valid_death_date("2026-02-13", today=today)
    assert not is_valid_death_date("2026-03-01", today=today)
    assert not is_valid_death_date("1899-12-31", today=today)
    assert not is_valid_death_date("0000-00-00", today=today)


def test_calculate_age() -> None:
    assert calculate_age("1941-03-03", "2026-01-05") == 84
    assert calculate_age("1941-01-01", "2026-01-05") == 85
    assert calculate_age("", "2026-01-05") is None


def test_age_only_read_from_death_sentences() -> None:
    text = "She was admitted to college at the age of 16. She passed away at the age of 84."
    assert extract_age_from_text(text) == 84


def test_nth_year_means_one_less() -> None:
    assert extract_age_from_text("He passed away peacefully in his 90th year.") == 89


def test_resolve_age_prefers_explicit_field() -> None:
    assert resolve_age("77", "She died aged 80.", "", "") == 77
    assert resolve_age("", "She died aged 80.", "", "") == 80
    assert resolve_age("", "", "1941-03-03", "2026-01-05") == 84
    assert resolve_age("0", "", "", "") is None


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("Newmarket, ON", "Newmarket"),
        ("NEWMARKET, Ontario L3Y 1A1", "Newmarket"),
        ("North York, ON", "Toronto"),
        ("Scarborough", "Toronto"),
        ("Sault Ste", "Sault Ste. Marie"),
        ("Niagara On The", "Niagara-on-the-Lake"),
        ("123 Main Street", ""),
        ("Main St.", ""),
        ("Smith Funeral Home", ""),
        ("", ""),
    ],
)
def test_normalize_city(raw: str, expected: str) -> None:
    assert normalize_city(raw) == expected


def test_normalize_name_strips_listing_boilerplate() -> None:
    assert normalize_name("John Smith Obituary") == "John Smith"
    assert normalize_name("In Loving Memory of Mary Jones") == "Mary Jones"


def test_provenance_hash_ignores_titles_and_case() -> None:
    a = provenance_hash("Dr. John Smith", "2026-01-05", "Roadhouse & Rose", "Newmarket")
    b = provenance_hash("john smith", "2026-01-05", "ROADHOUSE & ROSE", "newmarket")
    c = provenance_hash("John Smith", "2026-01-06", "Roadhouse & Rose", "Newmarket")
    assert a == b
    assert a != c


def test_placeholder_images() -> None:
    assert is_placeholder_image("https://x.ca/img/no-photo.png")
    assert is_placeholder_image("/static/default-avatar.jpg")
    assert not is_placeholder_image("https://x.ca/photos/jane-doe.jpg")


def test_provenance_hash_folds_accents() -> None:
    a = provenance_hash("Hélène Bérubé", "2026-01-05", "", "Sudbury")
    b = provenance_hash("Helene Berube", "2026-01-05", "", "Sudbury")
    assert a == b
