#!filepath: src/ontario_obits_app/cli.py
from __future__ import annotations

from typing import Any, Optional

import typer
from rich import print
from rich.table import Table

from ontario_obits_app import admin_ops
from ontario_obits_app.db.migrate import ensure_schema, recreate_schema
from ontario_obits_app.settings import Settings, SettingsError, get_settings
from ontario_obits_app.sources.registry import SourceRegistry
from ontario_obits_app.utils.logger import configure_logging, get_logger

app = typer.Typer(help="Ontario obituaries: collect, rewrite, audit and moderate.")
logger = get_logger(__name__)


@app.callback()
def main() -> None:
    configure_logging()


def _print_result(title: str, data: dict[str, Any]) -> None:
    table = Table(title=title, show_header=False)
    for k, v in data.items():
        if isinstance(v, (list, dict)) and not v:
            continue
        table.add_row(str(k), str(v))
    print(table)


def _settings() -> Settings:
    try:
        return get_settings()
    except SettingsError as e:
        logger.error(str(e))
        raise typer.Exit(code=2) from e


@app.command("init-db")
def init_db(reset: bool = typer.Option(False, help="Drop the database file first")) -> None:
    s = _settings()
    s.db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = recreate_schema(str(s.db_path)) if reset else ensure_schema(str(s.db_path))
    conn.close()
    print(f"[bold green]Database ready[/bold green]: {s.db_path}")


@app.command("seed-sources")
def seed_sources(path: Optional[str] = typer.Option(None, help="Sources YAML, defaults to paths.sources")) -> None:
    with admin_ops.open_context(_settings()) as ctx:
        created = admin_ops.seed_sources(ctx, path)
    print(f"[bold green]Sources seeded[/bold green]: created={created}")


@app.command()
def collect(source: Optional[str] = typer.Option(None, "--source", help="Only collect this domain")) -> None:
    with admin_ops.open_context(_settings()) as ctx:
        result = admin_ops.run_collection(ctx, source)
    _print_result("Collection", result.as_dict())


@app.command()
def rewrite(batch_size: Optional[int] = typer.Option(None, "--batch-size", min=1, help="Records per batch")) -> None:
    with admin_ops.open_context(_settings(), with_llm=True) as ctx:
        result = admin_ops.run_rewrite(ctx, batch_size)
    _print_result("Rewrite", result.as_dict())
    if result.stopped_reason == "auth_failed":
        raise typer.Exit(code=1)


@app.command()
def audit(batch_size: Optional[int] = typer.Option(None, "--batch-size", min=1, help="Records per batch")) -> None:
    with admin_ops.open_context(_settings(), with_llm=True) as ctx:
        result = admin_ops.run_audit(ctx, batch_size)
    _print_result("Audit", result.as_dict())
    if result.stopped_reason == "auth_failed":
        raise typer.Exit(code=1)


@app.command()
def suppress(
    obit_ids: list[int] = typer.Argument(..., help="Obituary ids"),
    reason: str = typer.Option("admin_action", help="family_request, funeral_home_request, admin_action, legal_notice or privacy"),
    notes: str = typer.Option("", help="Free text kept with the takedown"),
) -> None:
    with admin_ops.open_context(_settings()) as ctx:
        result = admin_ops.suppress_obituaries(ctx, obit_ids, reason, notes)
    _print_result("Suppress", result.as_dict())


@app.command()
def unsuppress(obit_ids: list[int] = typer.Argument(..., help="Obituary ids")) -> None:
    with admin_ops.open_context(_settings()) as ctx:
        result = admin_ops.unsuppress_obituaries(ctx, obit_ids)
    _print_result("Unsuppress", result.as_dict())


@app.command()
def requeue(
    obit_ids: list[int] = typer.Argument(..., help="Obituary ids"),
    reason: str = typer.Option("admin_request", help="Stored as the rewrite request reason"),
) -> None:
    with admin_ops.open_context(_settings()) as ctx:
        result = admin_ops.requeue_obituaries(ctx, obit_ids, reason)
    _print_result("Requeue", result.as_dict())


def _toggle(domain: str, enabled: bool) -> None:
    with admin_ops.open_context(_settings()) as ctx:
        ok = admin_ops.set_source_enabled(ctx, domain, enabled)
    if not ok:
        print(f"[bold red]Unknown source[/bold red]: {domain}")
        raise typer.Exit(code=1)
    print(f"[bold]{domain}[/bold] {'enabled' if enabled else 'disabled'}")


@app.command("source-enable")
def source_enable(domain: str = typer.Argument(...)) -> None:
    _toggle(domain, True)


@app.command("source-disable")
def source_disable(domain: str = typer.Argument(...)) -> None:
    _toggle(domain, False)


@app.command("source-ban")
def source_ban(pattern: str = typer.Argument(..., help="Domain glob, for example *.example.com")) -> None:
    with admin_ops.open_context(_settings()) as ctx:
        n = admin_ops.ban_sources(ctx, pattern)
    print(f"[bold]Disabled {n} source(s)[/bold] matching {pattern}")


@app.command()
def sources() -> None:
    with admin_ops.open_context(_settings()) as ctx:
        registry = SourceRegistry(ctx.conn, ctx.app.circuit_breaker)
        rows = registry.list_sources()
        stats = registry.get_stats().as_dict()

    table = Table(title="Sources")
    for col in ("id", "domain", "adapter", "enabled", "failures", "circuit open until", "last success", "collected"):
        table.add_column(col)
    for src in rows:
        table.add_row(
            str(src.id),
            src.domain,
            src.adapter_type,
            "yes" if src.enabled else "no",
            str(src.consecutive_failures),
            src.circuit_open_until or "-",
            src.last_success or "-",
            str(src.total_collected),
        )
    print(table)
    print(stats)


@app.command("limiter-stats")
def limiter_stats() -> None:
    with admin_ops.open_context(_settings()) as ctx:
        stats = admin_ops.limiter_stats(ctx)
    _print_result("Token budget", stats)


@app.command()
def health() -> None:
    with admin_ops.open_context(_settings()) as ctx:
        report = admin_ops.health_report(ctx)
    _print_result("Obituaries", report["obituaries"])
    _print_result("Sources", report["sources"])
    if "health" in report:
        _print_result("Health", report["health"])


if __name__ == "__main__":
    app()
