#!filepath: tests/test_admin_ops.py
from __future__ import annotations

from pathlib import Path

import pytest
from typer.testing import CliRunner

from conftest import ROOT
from ontario_obits_app import admin_ops, cli
from ontario_obits_app.db.repos.obituaries_repo import ObituariesRepo
from ontario_obits_app.db.repos.suppressions_repo import SuppressionsRepo
from ontario_obits_app.scrapers.base import ObituaryRecord
from ontario_obits_app.settings import Settings
from ontario_obits_app.sources.registry import SourceRegistry
from ontario_obits_app.utils.project_paths import ProjectPaths


def _insert(conn, key: str = "h-1") -> int:
    ObituariesRepo(conn).insert_pending(
        ObituaryRecord(provenance_hash=key, name="Jane Doe", date_of_death="2026-02-13", description="Jane died.")
    )
    return int(conn.execute("SELECT id FROM obituaries WHERE provenance_hash = ?;", (key,)).fetchone()["id"])


def test_suppress_and_unsuppress(conn, make_ctx) -> None:
    ctx = make_ctx()
    obit_id = _insert(conn)

    res = admin_ops.suppress_obituaries(ctx, [obit_id, 9999], "family_request", "call from daughter")
    assert res.as_dict() == {"processed": 2, "succeeded": 1, "failed": 1, "errors": ["ID 9999: not found"]}
    assert SuppressionsRepo(conn).is_blocked("h-1")
    row = ObituariesRepo(conn).get(obit_id)
    assert row["suppressed_reason"] == "family_request"
    assert ObituariesRepo(conn).status_counts()["suppressed"] == 1

    assert admin_ops.unsuppress_obituaries(ctx, [obit_id]).succeeded == 1
    assert not SuppressionsRepo(conn).is_blocked("h-1")
    assert ObituariesRepo(conn).get(obit_id)["suppressed_at"] is None


def test_unknown_suppression_reason_falls_back(conn, make_ctx) -> None:
    obit_id = _insert(conn)
    admin_ops.suppress_obituaries(make_ctx(), [obit_id], "because")
    assert ObituariesRepo(conn).get(obit_id)["suppressed_reason"] == "admin_action"


def test_requeue_published_record(conn, make_ctx) -> None:
    obit_id = _insert(conn)
    repo = ObituariesRepo(conn)
    assert repo.publish(obit_id, "Jane Doe died on February 13, 2026.")

    res = admin_ops.requeue_obituaries(make_ctx(), [obit_id], "family asked for changes")

    assert res.succeeded == 1
    row = repo.get(obit_id)
    assert row["status"] == "pending"
    assert row["ai_description"] is None
    assert row["rewrite_request_reason"] == "family asked for changes"
    assert row["audit_requeue_count"] == 0


def test_source_toggles_and_ban(conn, make_ctx) -> None:
    ctx = make_ctx()
    reg = SourceRegistry(conn)
    reg.upsert_source({"domain": "a.spam.com"})
    reg.upsert_source({"domain": "good.ca"})

    assert admin_ops.set_source_enabled(ctx, "good.ca", False)
    assert not admin_ops.set_source_enabled(ctx, "missing.ca", True)
    assert admin_ops.ban_sources(ctx, "*.spam.com") == 1
    assert reg.get_stats().enabled == 0


def test_seed_and_health_report(conn, make_ctx) -> None:
    ctx = make_ctx()
    assert admin_ops.seed_sources(ctx) >= 1
    _insert(conn)

    report = admin_ops.health_report(ctx)

    assert report["obituaries"]["pending"] == 1
    assert report["sources"]["total"] >= 1
    assert report["health"]["pipeline_healthy"] is False


def test_limiter_stats_without_llm(make_ctx) -> None:
    stats = admin_ops.limiter_stats(make_ctx(limiter=False))
    assert stats["cron_budget"] == 4400
    assert stats["chatbot_budget"] == 1100
    assert stats["cron_used"] == 0


def test_open_context_creates_database(tmp_path: Path, app_cfg) -> None:
    app = app_cfg.model_copy(update={"paths": app_cfg.paths.model_copy(update={"db": str(tmp_path / "new" / "o.db")})})
    settings = Settings(app=app, paths=ProjectPaths(root=ROOT))

    with admin_ops.open_context(settings) as ctx:
        assert ctx.llm is None and ctx.limiter is None
        assert ObituariesRepo(ctx.conn).status_counts()["pending"] == 0
        telemetry = ctx.telemetry
        assert telemetry.conn is not None
    assert (tmp_path / "new" / "o.db").exists()
    assert telemetry.conn is None


@pytest.fixture
def runner(monkeypatch: pytest.MonkeyPatch, app_cfg) -> CliRunner:
    settings = Settings(app=app_cfg, paths=ProjectPaths(root=ROOT))
    monkeypatch.setattr(cli, "_settings", lambda: settings)
    monkeypatch.setattr(cli, "configure_logging", lambda: None)
    return CliRunner()


def test_cli_seed_and_list_sources(runner: CliRunner) -> None:
    assert runner.invoke(cli.app, ["init-db"]).exit_code == 0

    seeded = runner.invoke(cli.app, ["seed-sources"])
    assert seeded.exit_code == 0
    assert "Sources seeded" in seeded.output

    listed = runner.invoke(cli.app, ["sources"])
    assert listed.exit_code == 0
    assert "'total': 6" in listed.output


def test_cli_unknown_source_exits_nonzero(runner: CliRunner) -> None:
    result = runner.invoke(cli.app, ["source-disable", "nowhere.ca"])
    assert result.exit_code == 1


def test_cli_suppress_reports_missing_ids(runner: CliRunner) -> None:
    result = runner.invoke(cli.app, ["suppress", "41", "42", "--reason", "privacy"])
    assert result.exit_code == 0
    assert "ID 41: not found" in result.output
