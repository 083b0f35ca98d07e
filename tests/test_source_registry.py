#!filepath: tests/test_source_registry.py
from __future__ import annotations

from pathlib import Path

import pytest

from ontario_obits_app.settings import CircuitBreakerConfig
from ontario_obits_app.sources.models import GenericHtmlConfig, LegacyComConfig, TributeArchiveConfig
from ontario_obits_app.sources.registry import SourceRegistry


def _registry(conn, clock, threshold: int = 3) -> SourceRegistry:
    return SourceRegistry(conn, CircuitBreakerConfig(failure_threshold=threshold, open_hours=24), clock=clock)


def test_upsert_whitelists_fields_and_applies_defaults(conn, clock) -> None:
    reg = _registry(conn, clock)
    res = reg.upsert_source({"domain": "Example.CA", "base_url": "https://example.ca/obits", "total_collected": 999})
    assert res.created

    src = reg.get_source(res.source_id)
    assert src is not None
    assert src.domain == "example.ca"
    assert src.adapter_type == "generic_html"
    assert src.enabled
    assert src.province == "ON"
    assert src.total_collected == 0
    assert isinstance(src.config, GenericHtmlConfig)

    again = reg.upsert_source({"domain": "example.ca", "city": "Barrie"})
    assert not again.created
    assert again.source_id == res.source_id
    assert reg.get_source_by_domain("example.ca").city == "Barrie"


def test_upsert_requires_domain(conn, clock) -> None:
    with pytest.raises(ValueError):
        _registry(conn, clock).upsert_source({"base_url": "https://x.ca"})


def test_config_parses_to_adapter_variant(conn, clock) -> None:
    reg = _registry(conn, clock)
    reg.upsert_source(
        {"domain": "t.ca", "adapter_type": "tribute_archive", "config": {"pagination_style": "path"}}
    )
    reg.upsert_source({"domain": "l.ca", "adapter_type": "legacy_com", "config": "{not json"})
    reg.upsert_source({"domain": "bad.ca", "adapter_type": "tribute_archive", "config": {"pagination_style": "sideways"}})

    assert reg.get_source_by_domain("t.ca").config == TributeArchiveConfig(pagination_style="path")
    assert isinstance(reg.get_source_by_domain("l.ca").config, LegacyComConfig)
    assert reg.get_source_by_domain("bad.ca").config.pagination_style == "query"


def test_circuit_opens_after_threshold_and_closes_on_success(conn, clock) -> None:
    reg = _registry(conn, clock, threshold=3)
    sid = reg.upsert_source({"domain": "flaky.ca", "base_url": "https://flaky.ca"}).source_id

    assert reg.record_failure(sid, "timeout") is False
    assert reg.record_failure(sid, "timeout") is False
    assert reg.record_failure(sid, "timeout") is True
    assert [s.domain for s in reg.get_active_sources()] == []
    assert reg.get_stats().circuit_open == 1

    clock.advance(25 * 3600)
    assert [s.domain for s in reg.get_active_sources()] == ["flaky.ca"]

    reg.record_success(sid, 4)
    src = reg.get_source(sid)
    assert src.consecutive_failures == 0
    assert src.circuit_open_until is None
    assert src.total_collected == 4


def test_circuit_open_is_reported_once_per_opening(conn, clock) -> None:
    reg = _registry(conn, clock, threshold=2)
    sid = reg.upsert_source({"domain": "flaky.ca", "base_url": "https://flaky.ca"}).source_id

    assert [reg.record_failure(sid, "timeout") for _ in range(4)] == [False, True, False, False]

    clock.advance(25 * 3600)
    assert reg.record_failure(sid, "timeout") is True
    assert reg.record_failure(sid, "timeout") is False
    assert reg.get_source(sid).consecutive_failures == 6


def test_active_sources_least_recently_succeeded_first(conn, clock) -> None:
    reg = _registry(conn, clock)
    a = reg.upsert_source({"domain": "a.ca"}).source_id
    b = reg.upsert_source({"domain": "b.ca"}).source_id
    reg.upsert_source({"domain": "c.ca", "enabled": 0})

    reg.record_success(a, 1)
    clock.advance(60)
    reg.record_success(b, 1)
    reg.upsert_source({"domain": "d.ca"})

    assert [s.domain for s in reg.get_active_sources()] == ["d.ca", "a.ca", "b.ca"]


def test_ban_pattern_and_enable(conn, clock) -> None:
    reg = _registry(conn, clock)
    for d in ("news.spam.com", "obits.spam.com", "good.ca"):
        reg.upsert_source({"domain": d})

    assert reg.ban_domain_pattern("*.spam.com") == 2
    assert [s.domain for s in reg.get_active_sources()] == ["good.ca"]
    with pytest.raises(ValueError):
        reg.ban_domain_pattern("*")

    src = reg.get_source_by_domain("news.spam.com")
    assert reg.set_enabled(src.id, True)
    assert reg.get_stats().as_dict() == {"total": 3, "enabled": 2, "disabled": 1, "circuit_open": 0}


def test_learned_selector_is_persisted(conn, clock) -> None:
    reg = _registry(conn, clock)
    sid = reg.upsert_source({"domain": "g.ca", "config": {"pagination_param": "page"}}).source_id
    reg.save_learned_selector(reg.get_source(sid), "div.memorial-card")

    cfg = reg.get_source(sid).config
    assert cfg.learned_container_selector == "div.memorial-card"
    assert cfg.pagination_param == "page"


def test_location_lookup_and_delete(conn, clock) -> None:
    reg = _registry(conn, clock)
    reg.upsert_source({"domain": "a.ca", "region": "York Region", "city": "Newmarket"})
    sid = reg.upsert_source({"domain": "b.ca", "region": "York Region", "city": "Aurora"}).source_id

    assert [s.domain for s in reg.get_sources_by_location(region="york region")] == ["a.ca", "b.ca"]
    assert [s.domain for s in reg.get_sources_by_location(city="Aurora")] == ["b.ca"]
    assert reg.delete_source(sid)
    assert reg.get_source(sid) is None


def test_seed_defaults_from_yaml(conn, clock, tmp_path: Path) -> None:
    path = tmp_path / "sources.yaml"
    path.write_text(
        "sources:\n"
        "  - domain: obituaries.yorkregion.com\n"
        "    adapter_type: remembering_ca\n"
        "    base_url: https://obituaries.yorkregion.com/obituaries\n"
        "  - domain: fh.ca\n"
        "    adapter_type: frontrunner\n"
        "  - not-a-mapping\n",
        encoding="utf-8",
    )
    reg = _registry(conn, clock)
    assert reg.seed_defaults(path) == 2
    assert reg.seed_defaults(path) == 0
    assert len(reg.list_sources()) == 2


def test_repo_catalog_seeds(conn, clock, app_cfg) -> None:
    reg = _registry(conn, clock)
    assert reg.seed_defaults(Path(app_cfg.paths.sources)) >= 1
    assert reg.get_source_by_domain("obituaries.yorkregion.com").adapter_type == "remembering_ca"


def test_reseed_keeps_operator_changes(conn, clock, tmp_path: Path) -> None:
    path = tmp_path / "sources.yaml"
    path.write_text("sources:\n  - domain: fh.ca\n    adapter_type: frontrunner\n", encoding="utf-8")
    reg = _registry(conn, clock)
    reg.seed_defaults(path)
    reg.set_enabled(reg.get_source_by_domain("fh.ca").id, False)

    reg.seed_defaults(path)
    assert not reg.get_source_by_domain("fh.ca").enabled
