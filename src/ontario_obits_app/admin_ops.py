#!filepath: src/ontario_obits_app/admin_ops.py
"""Operator actions shared by the CLI and scheduled runs.

Every function takes an open StageContext so callers decide how the
database, telemetry sink and LLM client are wired.
"""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

from ontario_obits_app.db.migrate import ensure_schema
from ontario_obits_app.db.repos.obituaries_repo import ObituariesRepo
from ontario_obits_app.db.repos.suppressions_repo import SuppressionsRepo
from ontario_obits_app.llm.groq_client import GroqClient, GroqSettings
from ontario_obits_app.llm.rate_limiter import TokenBudgetLimiter
from ontario_obits_app.modules.audit_stage import AuditResult, AuditStage
from ontario_obits_app.modules.base import StageContext
from ontario_obits_app.modules.collection_stage import CollectionResult, CollectionStage
from ontario_obits_app.modules.rewrite_stage import RewriteResult, RewriteStage
from ontario_obits_app.settings import Settings, get_settings
from ontario_obits_app.sources.registry import SourceRegistry
from ontario_obits_app.telemetry.events import Telemetry
from ontario_obits_app.utils.logger import get_logger

logger = get_logger(__name__)

MAX_ERRORS = 20


@dataclass
class AdminResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def fail(self, message: str) -> None:
        self.failed += 1
        if len(self.errors) < MAX_ERRORS:
            self.errors.append(message)

    def as_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "errors": list(self.errors),
        }


@contextmanager
def open_context(settings: Optional[Settings] = None, *, with_llm: bool = False) -> Iterator[StageContext]:
    """Open the database and build a stage context.

    Args:
        settings: Settings to use, defaults to the cached ones.
        with_llm: Also wire the Groq client and the shared token budget.

    Yields:
        StageContext: Context whose connections are closed on exit.
    """
    s = settings or get_settings()
    db_path = str(s.db_path)
    s.db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = ensure_schema(db_path)
    telemetry = Telemetry.open(db_path, s.app.telemetry)
    try:
        ctx = StageContext(
            conn=conn,
            app=s.app,
            db_path=db_path,
            telemetry=telemetry,
            limiter=TokenBudgetLimiter(db_path, s.app.rate_limiter) if with_llm else None,
            llm=GroqClient(GroqSettings()) if with_llm else None,
        )
        yield ctx
    finally:
        telemetry.close()
        conn.close()


def run_collection(ctx: StageContext, source: Optional[str] = None) -> CollectionResult:
    return CollectionStage(ctx, source_filter=source).run()


def run_rewrite(ctx: StageContext, batch_size: Optional[int] = None) -> RewriteResult:
    return RewriteStage(ctx, batch_size=batch_size).run()


def run_audit(ctx: StageContext, batch_size: Optional[int] = None) -> AuditResult:
    return AuditStage(ctx, batch_size=batch_size).run()


def seed_sources(ctx: StageContext, path: Optional[str] = None) -> int:
    registry = SourceRegistry(ctx.conn, ctx.app.circuit_breaker, clock=ctx.clock)
    return registry.seed_defaults(Path(path or ctx.app.paths.sources))


def suppress_obituaries(ctx: StageContext, ids: Iterable[int], reason: str = "admin_action", notes: str = "") -> AdminResult:
    """Take records down and block them from being collected again."""
    repo = SuppressionsRepo(ctx.conn, clock=ctx.clock)
    result = AdminResult()
    for obit_id in ids:
        result.processed += 1
        try:
            if repo.suppress(obit_id, reason, notes):
                result.succeeded += 1
            else:
                result.fail(f"ID {obit_id}: not found")
        except Exception as e:
            logger.error(f"Suppress failed, obit_id={obit_id}, err={e}", exc_info=True)
            result.fail(f"ID {obit_id}: {type(e).__name__}")
    return result


def unsuppress_obituaries(ctx: StageContext, ids: Iterable[int]) -> AdminResult:
    repo = SuppressionsRepo(ctx.conn, clock=ctx.clock)
    result = AdminResult()
    for obit_id in ids:
        result.processed += 1
        try:
            if repo.unsuppress(obit_id):
                result.succeeded += 1
            else:
                result.fail(f"ID {obit_id}: not found")
        except Exception as e:
            logger.error(f"Unsuppress failed, obit_id={obit_id}, err={e}", exc_info=True)
            result.fail(f"ID {obit_id}: {type(e).__name__}")
    return result


def requeue_obituaries(ctx: StageContext, ids: Iterable[int], reason: str = "admin_request") -> AdminResult:
    """Send records back to pending so the next rewrite batch redoes them."""
    repo = ObituariesRepo(ctx.conn, clock=ctx.clock)
    result = AdminResult()
    for obit_id in ids:
        result.processed += 1
        try:
            if repo.request_rewrite(obit_id, reason):
                result.succeeded += 1
            else:
                result.fail(f"ID {obit_id}: not found")
        except Exception as e:
            logger.error(f"Requeue failed, obit_id={obit_id}, err={e}", exc_info=True)
            result.fail(f"ID {obit_id}: {type(e).__name__}")
    return result


def set_source_enabled(ctx: StageContext, domain: str, enabled: bool) -> bool:
    registry = SourceRegistry(ctx.conn, ctx.app.circuit_breaker, clock=ctx.clock)
    source = registry.get_source_by_domain(domain)
    if source is None:
        logger.warning(f"Unknown source, domain={domain}")
        return False
    return registry.set_enabled(source.id, enabled)


def ban_sources(ctx: StageContext, pattern: str) -> int:
    return SourceRegistry(ctx.conn, ctx.app.circuit_breaker, clock=ctx.clock).ban_domain_pattern(pattern)


def limiter_stats(ctx: StageContext) -> dict[str, Any]:
    limiter = ctx.limiter or TokenBudgetLimiter(ctx.db_path, ctx.app.rate_limiter, clock=ctx.clock)
    return limiter.get_stats()


def health_report(ctx: StageContext) -> dict[str, Any]:
    """Health counters plus record and source totals."""
    report: dict[str, Any] = {
        "obituaries": ObituariesRepo(ctx.conn, clock=ctx.clock).status_counts(),
        "sources": SourceRegistry(ctx.conn, ctx.app.circuit_breaker, clock=ctx.clock).get_stats().as_dict(),
    }
    if ctx.telemetry.health is not None:
        report["health"] = ctx.telemetry.health.summary().as_dict()
    return report
