#!filepath: tests/test_collection_stage.py
from __future__ import annotations

from datetime import date

from conftest import LISTING_HTML, FakeResponse, FakeSession
from ontario_obits_app.db.repos.obituaries_repo import ObituariesRepo
from ontario_obits_app.db.repos.suppressions_repo import SuppressionsRepo
from ontario_obits_app.modules.collection_stage import CollectionStage, merge_detail
from ontario_obits_app.scrapers.base import DetailFields, ObituaryRecord
from ontario_obits_app.scrapers.remembering_ca import RememberingCaAdapter
from ontario_obits_app.sources.registry import SourceRegistry
from ontario_obits_app.utils.job_lock import JobLock

BASE = "https://r.ca/obits"
TODAY = date(2026, 3, 1)


def _seed(conn, clock, **overrides) -> int:
    data = {
        "domain": "r.ca",
        "base_url": BASE,
        "adapter_type": "remembering_ca",
        "city": "Newmarket",
        "max_pages_per_run": 1,
        "min_request_interval": 0,
        **overrides,
    }
    return SourceRegistry(conn, clock=clock).upsert_source(data).source_id


def _stage(ctx, session: FakeSession) -> CollectionStage:
    return CollectionStage(
        ctx,
        adapter_factory=lambda src: RememberingCaAdapter(session=session, sleep=lambda s: None, today=lambda: TODAY),
    )


def test_collects_then_dedupes_on_second_pass(conn, clock, make_ctx) -> None:
    sid = _seed(conn, clock)
    session = FakeSession({BASE: FakeResponse(200, LISTING_HTML)})
    stage = _stage(make_ctx(), session)

    first = stage.run()
    assert first.sources_processed == 1
    assert first.obituaries_found == 3
    assert first.obituaries_added == 3
    assert first.per_source["r.ca"] == {"found": 3, "added": 3, "errors": 1}

    second = stage.run()
    assert second.obituaries_found == 3
    assert second.obituaries_added == 0

    counts = ObituariesRepo(conn).status_counts()
    assert counts["pending"] == 3
    src = SourceRegistry(conn, clock=clock).get_source(sid)
    assert src.consecutive_failures == 0
    assert src.total_collected == 6


def test_suppressed_hash_is_not_collected_again(conn, clock, make_ctx) -> None:
    _seed(conn, clock)
    session = FakeSession({BASE: FakeResponse(200, LISTING_HTML)})
    stage = _stage(make_ctx(), session)
    stage.run()

    jane = conn.execute("SELECT id FROM obituaries WHERE name = 'Jane Doe';").fetchone()
    assert SuppressionsRepo(conn, clock=clock).suppress(jane["id"], "family_request")
    conn.execute("DELETE FROM obituaries WHERE id = ?;", (jane["id"],))
    conn.commit()

    again = stage.run()
    assert again.obituaries_added == 0
    assert conn.execute("SELECT COUNT(1) AS c FROM obituaries WHERE name = 'Jane Doe';").fetchone()["c"] == 0


def test_first_page_failure_counts_against_circuit(conn, clock, make_ctx) -> None:
    sid = _seed(conn, clock)
    session = FakeSession({BASE: FakeResponse(404)})

    result = _stage(make_ctx(), session).run()

    assert result.sources_processed == 1
    assert result.obituaries_added == 0
    assert result.errors and result.errors[0].startswith("r.ca: ")
    src = SourceRegistry(conn, clock=clock).get_source(sid)
    assert src.consecutive_failures == 1
    assert "404" in (src.last_failure_reason or "")


def test_later_page_failure_only_stops_pagination(conn, clock, make_ctx) -> None:
    sid = _seed(conn, clock, max_pages_per_run=2)
    session = FakeSession({BASE: FakeResponse(200, LISTING_HTML), f"{BASE}?page=2": FakeResponse(500)})

    result = _stage(make_ctx(), session).run()

    assert result.obituaries_added == 3
    assert result.errors == []
    assert SourceRegistry(conn, clock=clock).get_source(sid).consecutive_failures == 0


def test_missing_adapter_is_skipped_and_recorded(conn, clock, make_ctx) -> None:
    sid = _seed(conn, clock)
    result = CollectionStage(make_ctx(), adapter_factory=lambda src: None).run()

    assert result.sources_processed == 0
    assert result.sources_skipped == 1
    assert SourceRegistry(conn, clock=clock).get_source(sid).consecutive_failures == 1


def test_source_filter_limits_the_pass(conn, clock, make_ctx) -> None:
    _seed(conn, clock)
    _seed(conn, clock, domain="other.ca", base_url="https://other.ca/obits")
    session = FakeSession({BASE: FakeResponse(200, LISTING_HTML)})
    stage = _stage(make_ctx(), session)
    stage.source_filter = "R.CA"

    result = stage.run()

    assert list(result.per_source) == ["r.ca"]
    assert session.calls == [BASE]


def test_held_lock_skips_the_pass(conn, clock, db_path, make_ctx) -> None:
    _seed(conn, clock)
    holder = JobLock(db_path, "collect", 900, clock=clock)
    assert holder.acquire()
    try:
        result = _stage(make_ctx(), FakeSession({})).run()
    finally:
        holder.release()

    assert result.skipped_locked
    assert result.sources_processed == 0


def test_merge_detail_refreshes_hash_and_age() -> None:
    record = ObituaryRecord(
        provenance_hash="old",
        name="Jane Doe",
        date_of_death="2026-02-13",
        funeral_home="Roadhouse & Rose",
        city_normalized="",
    )
    merged = merge_detail(
        record,
        DetailFields(description="Jane passed away.", date_of_birth="1941-03-03", location="Newmarket, ON"),
    )

    assert merged.description == "Jane passed away."
    assert merged.city_normalized == "Newmarket"
    assert merged.age == 84
    assert merged.provenance_hash != "old"
    assert merge_detail(record, DetailFields()) is record
