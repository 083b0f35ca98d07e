#!filepath: tests/test_adapters.py
from __future__ import annotations

from datetime import date

import pytest

from conftest import LISTING_HTML as REMEMBERING_HTML
from conftest import FakeResponse, FakeSession
from ontario_obits_app.scrapers.adaptive_selector import AdaptiveSelector
from ontario_obits_app.scrapers.base import CardError, CardOk
from ontario_obits_app.scrapers.dignity_memorial import DignityMemorialAdapter
from ontario_obits_app.scrapers.errors import FetchError, FetchErrorKind, StructureError
from ontario_obits_app.scrapers.frontrunner import FrontRunnerAdapter
from ontario_obits_app.scrapers.generic_html import GenericHtmlAdapter
from ontario_obits_app.scrapers.legacy_com import LegacyComAdapter
from ontario_obits_app.scrapers.remembering_ca import RememberingCaAdapter
from ontario_obits_app.scrapers.tribute_archive import TributeArchiveAdapter
from ontario_obits_app.sources.models import (
    DignityMemorialConfig,
    FrontRunnerConfig,
    GenericHtmlConfig,
    LegacyComConfig,
    RememberingCaConfig,
    Source,
    TributeArchiveConfig,
)

TODAY = date(2026, 3, 1)

ADAPTIVE_HTML = """
<html><body><div class="results">
""" + "".join(
    f"""
<div class="memorial-card">
  <h3>Person {i} Lastname</h3>
  <span>January {i + 1}, 2026</span>
  <a href="/m/{i}">Read</a>
</div>"""
    for i in range(4)
) + "</div></body></html>"


def _source(adapter_type: str, config, base_url: str, **kw) -> Source:
    return Source(id=1, domain=kw.pop("domain", "example.ca"), base_url=base_url, adapter_type=adapter_type, config=config, **kw)


def test_remembering_ca_cards_and_normalize() -> None:
    src = _source(
        "remembering_ca", RememberingCaConfig(), "https://obituaries.yorkregion.com/obituaries",
        domain="obituaries.yorkregion.com", city="Newmarket", name="York Region Obituaries",
    )
    adapter = RememberingCaAdapter(session=FakeSession({}), today=lambda: TODAY)
    results = adapter.extract_obit_cards(REMEMBERING_HTML, src)

    oks = [r for r in results if isinstance(r, CardOk)]
    errors = [r for r in results if isinstance(r, CardError)]
    assert len(oks) == 3
    assert len(errors) == 1 and errors[0].reason == "empty_card"

    jane = adapter.normalize(oks[0].card, src)
    assert jane.name == "Jane Doe"
    assert jane.date_of_birth == "1941-03-03"
    assert jane.date_of_death == "2026-02-13"
    assert jane.age == 84
    assert jane.city_normalized == "Newmarket"
    assert jane.source_url == "https://obituaries.yorkregion.com/obituary/jane-doe-123"
    assert jane.image_url == ""
    assert jane.funeral_home == "York Region Obituaries"
    assert len(jane.provenance_hash) == 40

    john = adapter.normalize(oks[1].card, src)
    assert john.date_of_birth == ""
    assert john.date_of_death == "2026-01-05"

    ruth = adapter.normalize(oks[2].card, src)
    assert ruth.date_of_death == "2025-01-01"


def test_remembering_ca_description_is_capped() -> None:
    html = REMEMBERING_HTML.replace("She will be missed by her family.", "x" * 400)
    src = _source("remembering_ca", RememberingCaConfig(), "https://r.ca/obits")
    cards = RememberingCaAdapter(session=FakeSession({}), today=lambda: TODAY).extract_obit_cards(html, src)
    assert len(cards[0].card.description) <= 200


def test_future_death_date_is_dropped() -> None:
    html = REMEMBERING_HTML.replace("February 13, 2026", "December 1, 2026")
    src = _source("remembering_ca", RememberingCaConfig(), "https://r.ca/obits")
    adapter = RememberingCaAdapter(session=FakeSession({}), today=lambda: TODAY)
    first = adapter.extract_obit_cards(html, src)[0]
    assert adapter.normalize(first.card, src).date_of_death == ""


def test_fetch_retries_server_errors() -> None:
    url = "https://r.ca/obits"
    session = FakeSession({url: [FakeResponse(503), FakeResponse(502), FakeResponse(200, "<html></html>")]})
    sleeps: list[float] = []
    adapter = RememberingCaAdapter(session=session, sleep=sleeps.append)
    src = _source("remembering_ca", RememberingCaConfig(), url)

    assert adapter.fetch_listing(url, src) == "<html></html>"
    assert len(session.calls) == 3
    assert sleeps == [0.5, 1.0]


def test_fetch_does_not_retry_client_errors() -> None:
    url = "https://r.ca/obits?token=secret"
    session = FakeSession({url: FakeResponse(404)})
    adapter = RememberingCaAdapter(session=session, sleep=lambda s: None)
    src = _source("remembering_ca", RememberingCaConfig(), url)

    with pytest.raises(FetchError) as ei:
        adapter.fetch_listing(url, src)
    assert ei.value.kind == FetchErrorKind.HTTP_STATUS
    assert ei.value.code == "SCRAPE_HTTP_4XX"
    assert ei.value.attempts == 1
    assert "secret" not in ei.value.url
    assert len(session.calls) == 1


def test_no_containers_raises_structure_error() -> None:
    src = _source("generic_html", GenericHtmlConfig(), "https://g.ca/obits")
    adapter = GenericHtmlAdapter(session=FakeSession({}))
    with pytest.raises(StructureError):
        adapter.extract_obit_cards("<html><body><p>Nothing</p></body></html>", src)


def test_adaptive_selector_learns_and_persists() -> None:
    persisted: list[tuple[str, str]] = []
    alerts: list[tuple] = []
    strategy = AdaptiveSelector(
        persist=lambda s, sel: persisted.append((s.domain, sel)),
        alert=lambda *a: alerts.append(a),
    )
    src = _source("generic_html", GenericHtmlConfig(), "https://g.ca/obits", domain="g.ca")
    adapter = GenericHtmlAdapter(session=FakeSession({}), selector_strategy=strategy, today=lambda: TODAY)

    results = adapter.extract_obit_cards(ADAPTIVE_HTML, src)

    assert len([r for r in results if isinstance(r, CardOk)]) == 4
    assert persisted == [("g.ca", "div.memorial-card")]
    assert alerts[0][2] == "SCRAPE_SELECTOR_LEARNED"


def test_adaptive_selector_disabled() -> None:
    strategy = AdaptiveSelector(enabled=False)
    src = _source("generic_html", GenericHtmlConfig(), "https://g.ca/obits")
    adapter = GenericHtmlAdapter(session=FakeSession({}), selector_strategy=strategy)
    with pytest.raises(StructureError):
        adapter.extract_obit_cards(ADAPTIVE_HTML, src)


def test_generic_html_uses_configured_selectors() -> None:
    html = "".join(
        f'<li class="row-x"><b class="who">Person {i}</b><i class="when">May {i + 1}, 2025</i>'
        f'<img src="/img/placeholder.png"><a href="/o/{i}">more</a></li>'
        for i in range(3)
    )
    cfg = GenericHtmlConfig.model_validate({"listing_selector": "li.row-x", "name_selector": ".who", "date_selector": ".when"})
    src = _source("generic_html", cfg, "https://g.ca/obits", city="Barrie")
    adapter = GenericHtmlAdapter(session=FakeSession({}), today=lambda: TODAY)

    cards = [r for r in adapter.extract_obit_cards(html, src) if isinstance(r, CardOk)]
    assert [c.card.name for c in cards] == ["Person 0", "Person 1", "Person 2"]
    record = adapter.normalize(cards[0].card, src)
    assert record.date_of_death == "2025-05-01"
    assert record.image_url == ""
    assert record.city_normalized == "Barrie"


def test_listing_url_discovery() -> None:
    fr = _source("frontrunner", FrontRunnerConfig(), "https://fh.ca/obituaries/", max_pages_per_run=3)
    assert FrontRunnerAdapter(session=FakeSession({})).discover_listing_urls(fr, 7) == [
        "https://fh.ca/obituaries/",
        "https://fh.ca/obituaries/page/2",
        "https://fh.ca/obituaries/page/3",
    ]

    rc = _source("remembering_ca", RememberingCaConfig(), "https://r.ca/obits", max_pages_per_run=2)
    assert RememberingCaAdapter(session=FakeSession({})).discover_listing_urls(rc, 7) == [
        "https://r.ca/obits",
        "https://r.ca/obits?page=2",
    ]

    ta = _source("tribute_archive", TributeArchiveConfig(pagination_style="path"), "https://t.ca/obits", max_pages_per_run=2)
    assert TributeArchiveAdapter(session=FakeSession({})).discover_listing_urls(ta, 7) == [
        "https://t.ca/obits",
        "https://t.ca/obits/page/2",
    ]

    gh = _source("generic_html", GenericHtmlConfig(pagination_param="pg"), "https://g.ca/list?x=1", max_pages_per_run=2)
    assert GenericHtmlAdapter(session=FakeSession({})).discover_listing_urls(gh, 7) == [
        "https://g.ca/list?x=1",
        "https://g.ca/list?x=1&pg=2",
    ]


def test_legacy_com_browses_previous_days() -> None:
    src = _source(
        "legacy_com", LegacyComConfig(days_back=7),
        "https://www.legacy.com/ca/obituaries/local/ontario/today", max_pages_per_run=3,
    )
    adapter = LegacyComAdapter(session=FakeSession({}), today=lambda: date(2026, 2, 20))
    assert adapter.discover_listing_urls(src, 7) == [
        "https://www.legacy.com/ca/obituaries/local/ontario/today",
        "https://www.legacy.com/ca/obituaries/local/ontario/browse?date=2026-02-19",
        "https://www.legacy.com/ca/obituaries/local/ontario/browse?date=2026-02-18",
    ]


def test_frontrunner_detail_builds_factual_summary() -> None:
    detail_url = "https://fh.ca/obituary/jane-doe"
    body = (
        '<html><body><div class="obit-dates">March 3, 1941 - February 13, 2026</div>'
        '<div class="obituary-text">Jane loved gardening. She passed away in Newmarket at the age of 84. '
        "Visitation will be held Friday.</div></body></html>"
    )
    adapter = FrontRunnerAdapter(session=FakeSession({detail_url: FakeResponse(200, body)}))
    src = _source("frontrunner", FrontRunnerConfig(), "https://fh.ca/obituaries")
    from ontario_obits_app.scrapers.base import ObituaryRecord

    detail = adapter.fetch_detail(ObituaryRecord(provenance_hash="h", name="Jane Doe", source_url=detail_url), src)

    assert detail is not None
    assert detail.date_of_birth == "1941-03-03"
    assert detail.date_of_death == "2026-02-13"
    assert detail.age == 84
    assert "passed away" in detail.description


DIGNITY_HTML = """
<html><body><div class="search-results">
<div class="obit-card">
  <h3><a href="/obituaries/newmarket-on/jane-doe-1234">Jane Doe</a></h3>
  <div class="life-span">March 3, 1941 - February 13, 2026</div>
  <img src="https://cdn.dignitymemorial.com/photos/jane.jpg">
  <div class="provider-name">Roadhouse &amp; Rose Funeral Home</div>
  <p>""" + "Jane passed away peacefully at the age of 84. " * 8 + """</p>
</div>
<div class="obit-card">
  <h3><a href="/obituaries/aurora-on/john-smith-99">John Smith</a></h3>
  <div class="life-span">January 5, 2026</div>
</div>
<div class="obit-card">
  <h3><a href="/obituaries/toronto-on/ruth-ng-7">Ruth Ng</a></h3>
  <div class="life-span">May 1, 1950 - January 20, 2026</div>
</div>
</div></body></html>
"""


def test_dignity_memorial_keeps_listing_facts_only() -> None:
    src = _source("dignity_memorial", DignityMemorialConfig(), "https://www.dignitymemorial.com/obituaries/newmarket-on")
    adapter = DignityMemorialAdapter(session=FakeSession({}), today=lambda: TODAY)

    results = adapter.extract_obit_cards(DIGNITY_HTML, src)

    assert [r.card.name for r in results if isinstance(r, CardOk)] == ["Jane Doe", "John Smith", "Ruth Ng"]
    jane = adapter.normalize(results[0].card, src)
    assert jane.date_of_death == "2026-02-13"
    assert jane.age == 84
    assert jane.image_url == ""
    assert len(jane.description) <= 200
    assert jane.funeral_home == "Roadhouse & Rose Funeral Home"
    assert jane.source_url == "https://www.dignitymemorial.com/obituaries/newmarket-on/jane-doe-1234"
    assert adapter.fetch_detail(jane, src) is None

    paged = _source("dignity_memorial", DignityMemorialConfig(), "https://www.dignitymemorial.com/obituaries", max_pages_per_run=2)
    assert adapter.discover_listing_urls(paged, 7) == [
        "https://www.dignitymemorial.com/obituaries",
        "https://www.dignitymemorial.com/obituaries?page=2",
    ]


def test_dignity_memorial_falls_back_to_obituary_links() -> None:
    html = """
    <html><body>
      <p><a href="/obituaries/search?q=doe">Search again</a></p>
      <div><a href="/obituaries/newmarket-on/jane-doe-1234">Jane Doe</a><span class="date">February 13, 2026</span></div>
      <div><a href="/obituaries/aurora-on/john-smith-99">John Smith</a><span class="date">January 5, 2026</span></div>
    </body></html>
    """
    src = _source("dignity_memorial", DignityMemorialConfig(), "https://www.dignitymemorial.com/obituaries")
    adapter = DignityMemorialAdapter(session=FakeSession({}), today=lambda: TODAY)

    cards = [r.card for r in adapter.extract_obit_cards(html, src) if isinstance(r, CardOk)]

    assert [c.name for c in cards] == ["Jane Doe", "John Smith"]
    assert adapter.normalize(cards[1], src).date_of_death == "2026-01-05"


def test_dignity_memorial_without_links_is_a_structure_error() -> None:
    src = _source("dignity_memorial", DignityMemorialConfig(), "https://www.dignitymemorial.com/obituaries")
    adapter = DignityMemorialAdapter(session=FakeSession({}))
    with pytest.raises(StructureError):
        adapter.extract_obit_cards("<html><body><p>Maintenance</p></body></html>", src)
