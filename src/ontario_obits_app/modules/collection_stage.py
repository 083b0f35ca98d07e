#!src/ontario_obits_app/modules/collection_stage.py
from __future__ import annotations

import importlib
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Optional

import requests

from ontario_obits_app.db.repos.obituaries_repo import ObituariesRepo
from ontario_obits_app.db.repos.suppressions_repo import SuppressionsRepo
from ontario_obits_app.modules.base import StageContext
from ontario_obits_app.scrapers.adaptive_selector import AdaptiveSelector
from ontario_obits_app.scrapers.base import CardError, CardOk, DetailFields, ObituaryRecord, SourceAdapter
from ontario_obits_app.scrapers.errors import FetchError, StructureError
from ontario_obits_app.scrapers.normalize import calculate_age, normalize_city, provenance_hash
from ontario_obits_app.sources.models import Source
from ontario_obits_app.sources.registry import SourceRegistry
from ontario_obits_app.utils.job_lock import JobLock
from ontario_obits_app.utils.logger import get_logger
from ontario_obits_app.utils.url import redact_url

logger = get_logger(__name__)

ADAPTERS: dict[str, str] = {
    "generic_html": "ontario_obits_app.scrapers.generic_html.GenericHtmlAdapter",
    "frontrunner": "ontario_obits_app.scrapers.frontrunner.FrontRunnerAdapter",
    "remembering_ca": "ontario_obits_app.scrapers.remembering_ca.RememberingCaAdapter",
    "legacy_com": "ontario_obits_app.scrapers.legacy_com.LegacyComAdapter",
    "tribute_archive": "ontario_obits_app.scrapers.tribute_archive.TributeArchiveAdapter",
    "dignity_memorial": "ontario_obits_app.scrapers.dignity_memorial.DignityMemorialAdapter",
}

AdapterFactory = Callable[[Source], Optional[SourceAdapter]]


def _load_adapter_class(dotted: str) -> type[SourceAdapter]:
    mod_name, attr = str(dotted).rsplit(".", 1)
    mod = importlib.import_module(mod_name)
    adapter_cls = getattr(mod, attr)
    if not isinstance(adapter_cls, type) or not issubclass(adapter_cls, SourceAdapter):
        raise TypeError(f"Invalid adapter, dotted={dotted}")
    return adapter_cls


def merge_detail(record: ObituaryRecord, detail: DetailFields) -> ObituaryRecord:
    """Overlay non-empty detail fields onto a record and refresh its hash."""
    updates: dict[str, Any] = {}
    for key in ("description", "date_of_birth", "date_of_death", "location", "funeral_home", "image_url"):
        value = getattr(detail, key)
        if value:
            updates[key] = value
    if detail.age:
        updates["age"] = detail.age
    if not updates:
        return record

    merged = replace(record, **updates)
    if "location" in updates:
        merged = replace(merged, city_normalized=normalize_city(merged.location) or record.city_normalized)
    if merged.date_of_birth and merged.date_of_death and merged.date_of_birth >= merged.date_of_death:
        merged = replace(merged, date_of_birth="")
    if merged.age is None:
        merged = replace(merged, age=calculate_age(merged.date_of_birth, merged.date_of_death))
    return replace(
        merged,
        provenance_hash=provenance_hash(
            merged.name, merged.date_of_death, merged.funeral_home, merged.city_normalized
        ),
    )


@dataclass
class SourceRunResult:
    """Outcome of one source within a collection pass."""

    domain: str
    found: int = 0
    added: int = 0
    duplicates: int = 0
    skipped: int = 0
    errors: int = 0
    pages: int = 0
    ok: bool = True
    attempted: bool = True
    error_message: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return {"found": self.found, "added": self.added, "errors": self.errors}


@dataclass
class CollectionResult:
    sources_processed: int = 0
    sources_skipped: int = 0
    obituaries_found: int = 0
    obituaries_added: int = 0
    errors: list[str] = field(default_factory=list)
    per_source: dict[str, dict[str, int]] = field(default_factory=dict)
    skipped_locked: bool = False

    def add(self, r: SourceRunResult) -> None:
        if r.attempted:
            self.sources_processed += 1
        else:
            self.sources_skipped += 1
        self.obituaries_found += r.found
        self.obituaries_added += r.added
        if r.error_message:
            self.errors.append(f"{r.domain}: {r.error_message}")
        self.per_source[r.domain] = r.as_dict()

    def as_dict(self) -> dict[str, Any]:
        return {
            "sources_processed": self.sources_processed,
            "sources_skipped": self.sources_skipped,
            "obituaries_found": self.obituaries_found,
            "obituaries_added": self.obituaries_added,
            "errors": list(self.errors),
            "per_source": dict(self.per_source),
            "skipped_locked": self.skipped_locked,
        }


@dataclass
class CollectionStage:
    """One collection pass over every active source.

    Sources are visited in the registry's least-recently-succeeded order. A
    source whose first listing page cannot be fetched or parsed counts as a
    failure for its circuit breaker, and the pass moves on to the next one.
    """

    ctx: StageContext
    source_filter: Optional[str] = None
    session: Optional[requests.Session] = None
    adapter_factory: Optional[AdapterFactory] = None

    def run(self) -> CollectionResult:
        cfg = self.ctx.app.collector
        with JobLock(self.ctx.db_path, "collect", cfg.lock_ttl_seconds, clock=self.ctx.clock) as lock:
            if not lock.acquired:
                logger.info("Collection skipped, another pass holds the lock")
                return CollectionResult(skipped_locked=True)
            return self.collect()

    def collect(self) -> CollectionResult:
        """Run the pass without taking the job lock."""
        registry = SourceRegistry(self.ctx.conn, self.ctx.app.circuit_breaker, clock=self.ctx.clock)
        repo = ObituariesRepo(self.ctx.conn, clock=self.ctx.clock)
        suppressions = SuppressionsRepo(self.ctx.conn, clock=self.ctx.clock)
        self.ctx.telemetry.record_ran("SCRAPE")

        sources = registry.get_active_sources()
        wanted = str(self.source_filter or "").strip().lower()
        if wanted:
            sources = [s for s in sources if s.domain == wanted]
            if not sources:
                logger.error(f"Source filter matched no active source, source_filter={self.source_filter}")

        result = CollectionResult()
        any_ok = False
        for source in sources:
            try:
                r = self._run_one(source, registry, repo, suppressions)
            except Exception as e:
                logger.error(f"Source run crashed, source={source.domain}, err={e}", exc_info=True)
                registry.record_failure(source.id, f"unexpected: {type(e).__name__}")
                r = SourceRunResult(domain=source.domain, ok=False, errors=1, error_message=type(e).__name__)
            result.add(r)
            any_ok = any_ok or r.ok

        if any_ok:
            self.ctx.telemetry.record_success("SCRAPE")
        self._log_summary(result)
        return result

    def _adapter_for(self, source: Source, registry: SourceRegistry) -> Optional[SourceAdapter]:
        if self.adapter_factory is not None:
            return self.adapter_factory(source)
        dotted = ADAPTERS.get(source.adapter_type)
        if not dotted:
            return None
        adapter_cls = _load_adapter_class(dotted)
        strategy = AdaptiveSelector(
            persist=registry.save_learned_selector,
            alert=self.ctx.telemetry.log_event,
            enabled=self.ctx.app.collector.adaptive_selectors,
        )
        return adapter_cls(
            self.ctx.app.http,
            session=self.session,
            selector_strategy=strategy,
            sleep=self.ctx.sleep,
        )

    def _fail(
        self,
        registry: SourceRegistry,
        source: Source,
        r: SourceRunResult,
        code: str,
        message: str,
        context: dict[str, Any],
        *,
        level: str = "warning",
    ) -> SourceRunResult:
        r.ok = False
        r.errors += 1
        r.error_message = message
        opened = registry.record_failure(source.id, message, self.ctx.app.circuit_breaker.failure_threshold)
        self.ctx.telemetry.log_event(level, "SCRAPE", code, message, {"source": source.domain, **context})
        if opened:
            self.ctx.telemetry.log_event(
                "warning",
                "SCRAPE",
                "SCRAPE_CIRCUIT_OPEN",
                f"Circuit opened for {source.domain}",
                {"source": source.domain},
            )
        return r

    def _run_one(
        self,
        source: Source,
        registry: SourceRegistry,
        repo: ObituariesRepo,
        suppressions: SuppressionsRepo,
    ) -> SourceRunResult:
        r = SourceRunResult(domain=source.domain)
        adapter = self._adapter_for(source, registry)
        if adapter is None:
            r.attempted = False
            return self._fail(
                registry,
                source,
                r,
                "SCRAPE_ADAPTER_MISSING",
                f"No adapter for type {source.adapter_type}",
                {"adapter": source.adapter_type},
            )

        cfg = self.ctx.app.collector
        interval = float(source.min_request_interval)
        pages = max(1, int(source.max_pages_per_run or cfg.default_max_pages))
        urls = adapter.discover_listing_urls(source, cfg.max_age_days)[:pages]
        want_details = bool(cfg.fetch_details or getattr(source.config, "fetch_details", False))

        logger.info(f"Collecting source, source={source.domain}, adapter={source.adapter_type}, pages={len(urls)}")

        for page_no, url in enumerate(urls, start=1):
            if page_no > 1 and interval > 0:
                self.ctx.sleep(interval)

            try:
                html = adapter.fetch_listing(url, source)
                cards = adapter.extract_obit_cards(html, source, url)
            except FetchError as e:
                if page_no == 1:
                    level = "error" if e.code == "SCRAPE_HTTP_5XX" else "warning"
                    return self._fail(
                        registry, source, r, e.code, str(e), {"url": e.url, "attempts": e.attempts}, level=level
                    )
                logger.warning(f"Pagination stopped on fetch error, source={source.domain}, page={page_no}, err={e}")
                r.errors += 1
                break
            except StructureError as e:
                if page_no == 1:
                    return self._fail(registry, source, r, "SCRAPE_STRUCTURE", str(e), {"url": e.url})
                logger.info(f"Pagination stopped, no cards, source={source.domain}, page={page_no}")
                break

            r.pages += 1
            for item in cards:
                if isinstance(item, CardError):
                    r.errors += 1
                    logger.debug(
                        f"Card skipped, source={source.domain}, index={item.index}, reason={item.reason}, detail={item.detail}"
                    )
                    continue
                r.found += 1
                self._store(adapter, source, item, repo, suppressions, r, want_details, interval)

        registry.record_success(source.id, r.found)
        logger.info(
            f"Source collected, source={source.domain}, found={r.found}, added={r.added}, duplicates={r.duplicates}, skipped={r.skipped}, pages={r.pages}"
        )
        return r

    def _store(
        self,
        adapter: SourceAdapter,
        source: Source,
        item: CardOk,
        repo: ObituariesRepo,
        suppressions: SuppressionsRepo,
        r: SourceRunResult,
        want_details: bool,
        interval: float,
    ) -> None:
        try:
            record = adapter.normalize(item.card, source)
        except (TypeError, ValueError) as e:
            r.errors += 1
            logger.debug(f"Card normalize failed, source={source.domain}, index={item.index}, err={e}")
            return
        if repo.has_hash(record.provenance_hash):
            r.duplicates += 1
            return

        if want_details and record.source_url:
            if interval > 0:
                self.ctx.sleep(interval)
            try:
                detail = adapter.fetch_detail(record, source)
            except FetchError as e:
                logger.info(f"Detail fetch failed, source={source.domain}, url={redact_url(record.source_url)}, err={e}")
                detail = None
            if detail is not None:
                record = merge_detail(record, detail)

        if not record.name or not record.date_of_death:
            r.skipped += 1
            return
        if suppressions.is_blocked(record.provenance_hash):
            r.skipped += 1
            logger.info(f"Blocked obituary skipped, source={source.domain}, hash={record.provenance_hash[:12]}")
            return

        res = repo.insert_pending(record)
        if res.inserted:
            r.added += 1
        else:
            r.duplicates += 1

    def _log_summary(self, result: CollectionResult) -> None:
        logger.info(
            f"Collection pass done, processed={result.sources_processed}, skipped={result.sources_skipped}, found={result.obituaries_found}, added={result.obituaries_added}, errors={len(result.errors)}"
        )
        for domain, stats in result.per_source.items():
            logger.info(
                f"Collection summary, source={domain}, found={stats['found']}, added={stats['added']}, errors={stats['errors']}"
            )
