#!src/ontario_obits_app/modules/rewrite_stage.py
"""Rewrite pending obituaries and publish the ones that keep every fact.

A record moves from pending to published only here, and only after its
rewrite passes `validate_rewrite`. Anything else leaves it pending with the
failure reason recorded for the next run.
"""
from __future__ import annotations

import re
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional

from ontario_obits_app.db.repos.obituaries_repo import ObituariesRepo
from ontario_obits_app.llm.errors import LLMError
from ontario_obits_app.llm.models import ChatClient, ChatMessage, ChatRequest, ChatResponse
from ontario_obits_app.llm.rate_limiter import TokenBudgetLimiter
from ontario_obits_app.modules.base import StageContext
from ontario_obits_app.prompts.template import PromptTemplate, load_prompt
from ontario_obits_app.scrapers.normalize import calculate_age, normalize_city
from ontario_obits_app.utils.job_lock import JobLock
from ontario_obits_app.utils.logger import get_logger
from ontario_obits_app.utils.serialization import parse_json_object
from ontario_obits_app.validation.fact_check import FactBlock, ReasonCode, validate_rewrite

logger = get_logger(__name__)

CONSUMER = "rewriter"
MAX_ERRORS = 20

_ISO_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_MARKUP_RE = re.compile(r"[<>{}\[\]]|https?://")


class Outcome(str, Enum):
    PUBLISHED = "published"
    FAILED = "failed"
    RATE_LIMITED = "rate_limited"
    AUTH_FAILED = "auth_failed"


@dataclass
class RewriteResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    stopped_reason: str = ""
    errors: list[str] = field(default_factory=list)
    skipped_locked: bool = False

    def error(self, message: str) -> None:
        if len(self.errors) < MAX_ERRORS:
            self.errors.append(message)

    def as_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "stopped_reason": self.stopped_reason,
            "errors": list(self.errors),
            "skipped_locked": self.skipped_locked,
        }


class _Deferred(Exception):
    """The token budget refused the call."""


def _iso_date(value: Any) -> Optional[date]:
    s = str(value or "").strip()
    if not _ISO_RE.match(s):
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        return None


def sanitize_extracted(
    data: Mapping[str, Any], *, fallback_death: str = "", today: Optional[date] = None
) -> dict[str, Any]:
    """Keep only extracted fields that pass basic plausibility checks.

    Args:
        data: Fields returned by the model.
        fallback_death: Stored date of death, used for the birth date check.
        today: Reference date.

    Returns:
        dict: Subset of date_of_death, date_of_birth, age, location and
        funeral_home that survived.
    """
    ref = today or datetime.now(timezone.utc).date()
    out: dict[str, Any] = {}

    dod = _iso_date(data.get("date_of_death"))
    if dod is not None and 2000 <= dod.year and dod <= ref:
        out["date_of_death"] = dod.isoformat()

    death_ref = _iso_date(out.get("date_of_death") or fallback_death)
    dob = _iso_date(data.get("date_of_birth"))
    if dob is not None and dob.year >= 1880 and (death_ref is None or dob < death_ref):
        out["date_of_birth"] = dob.isoformat()

    raw_age = data.get("age")
    if isinstance(raw_age, (int, float, str)) and str(raw_age).strip().isdigit():
        age = int(str(raw_age).strip())
        if 1 <= age <= 120:
            out["age"] = age

    for key, max_len in (("location", 60), ("funeral_home", 120)):
        value = " ".join(str(data.get(key) or "").split())
        if 2 <= len(value) <= max_len and not _MARKUP_RE.search(value):
            out[key] = value

    birth = out.get("date_of_birth", "")
    death = out.get("date_of_death") or fallback_death
    computed = calculate_age(birth, death) if birth and death else None
    if computed is not None:
        if "age" in out and abs(int(out["age"]) - computed) > 1:
            logger.info(f"Extracted age disagrees with dates, using computed, age={out['age']}, computed={computed}")
            out["age"] = computed
    return out


def fact_lines(row: Mapping[str, Any]) -> str:
    facts = FactBlock.from_row(row)
    lines = [f"Name: {facts.name}"]
    if facts.date_of_death:
        lines.append(f"Date of death: {facts.date_of_death}")
    if facts.date_of_birth:
        lines.append(f"Date of birth: {facts.date_of_birth}")
    if facts.age:
        lines.append(f"Age: {facts.age}")
    if facts.location:
        lines.append(f"Location: {facts.location}")
    if facts.funeral_home:
        lines.append(f"Funeral home: {facts.funeral_home}")
    return "\n".join(lines)


@dataclass
class RewriteStage:
    """Rate-limited rewrite batch.

    Records are handled strictly one after another with a fixed delay
    between LLM calls. The batch stops early on a budget rejection or an
    upstream rate limit, aborts on an authentication failure, and stops
    before `max_runtime_seconds` would be exceeded.
    """

    ctx: StageContext
    batch_size: Optional[int] = None
    system_prompt: Optional[PromptTemplate] = None
    user_prompt: Optional[PromptTemplate] = None

    def __post_init__(self) -> None:
        prompts_dir = self.ctx.app.paths.prompts_dir
        if self.system_prompt is None:
            self.system_prompt = load_prompt(prompts_dir, "rewrite_system")
        if self.user_prompt is None:
            self.user_prompt = load_prompt(prompts_dir, "rewrite_user")

    @property
    def repo(self) -> ObituariesRepo:
        return ObituariesRepo(self.ctx.conn, clock=self.ctx.clock)

    @property
    def _llm(self) -> ChatClient:
        if self.ctx.llm is None:
            raise RuntimeError("LLM client not configured")
        return self.ctx.llm

    @property
    def _limiter(self) -> TokenBudgetLimiter:
        if self.ctx.limiter is None:
            raise RuntimeError("Rate limiter not configured")
        return self.ctx.limiter

    def run(self) -> RewriteResult:
        cfg = self.ctx.app.rewriter
        with JobLock(self.ctx.db_path, "rewrite", cfg.lock_ttl_seconds, clock=self.ctx.clock) as lock:
            if not lock.acquired:
                logger.info("Rewrite skipped, another batch holds the lock")
                return RewriteResult(skipped_locked=True, stopped_reason="locked")
            return self.rewrite_batch()

    def get_pending_count(self) -> int:
        return self.repo.count_rewrite_pending()

    def get_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = dict(self.repo.status_counts())
        stats["rewrite_pending"] = self.get_pending_count()
        if self.ctx.limiter is not None:
            stats["limiter"] = self.ctx.limiter.get_stats()
        return stats

    def rewrite_batch(self) -> RewriteResult:
        """Process one bounded batch without taking the job lock."""
        cfg = self.ctx.app.rewriter
        result = RewriteResult()
        if self.ctx.llm is None or self.ctx.limiter is None:
            result.stopped_reason = "not_configured"
            result.error("LLM client or rate limiter not configured")
            logger.error("Rewrite batch needs an LLM client and a rate limiter")
            return result

        self.ctx.telemetry.record_ran("REWRITE")
        started = self.ctx.clock()
        size = int(self.batch_size or cfg.batch_size)
        rows = self.repo.select_rewrite_batch(size)
        if not rows:
            logger.info("No pending obituaries to rewrite")
            self.ctx.telemetry.record_success("REWRITE")
            return result

        for i, row in enumerate(rows):
            if i > 0:
                remaining = float(cfg.max_runtime_seconds) - (self.ctx.clock() - started)
                if remaining < float(cfg.request_delay_seconds):
                    result.stopped_reason = "time_budget"
                    logger.info(f"Rewrite batch stopping before time limit, remaining={remaining:.1f}s")
                    break
                self.ctx.sleep(float(cfg.request_delay_seconds))

            obit_id = int(row["id"])
            result.processed += 1
            try:
                outcome, reason = self._process(row)
            except Exception as e:
                logger.error(f"Rewrite crashed, obit_id={obit_id}, err={e}", exc_info=True)
                self.repo.record_rewrite_failure(obit_id, f"error:{type(e).__name__}")
                result.failed += 1
                result.error(f"ID {obit_id}: unexpected {type(e).__name__}")
                continue

            if outcome == Outcome.PUBLISHED:
                result.succeeded += 1
                continue

            result.failed += 1
            result.error(f"ID {obit_id}: {reason}")
            if outcome == Outcome.RATE_LIMITED:
                result.stopped_reason = "rate_limited"
                break
            if outcome == Outcome.AUTH_FAILED:
                result.stopped_reason = "auth_failed"
                break

        if result.succeeded:
            self.ctx.telemetry.record_success("REWRITE")
        logger.info(
            f"Rewrite batch done, processed={result.processed}, succeeded={result.succeeded}, failed={result.failed}, stopped={result.stopped_reason or '-'}"
        )
        return result

    def build_messages(self, row: Mapping[str, Any]) -> list[ChatMessage]:
        if self.system_prompt is None or self.user_prompt is None:
            raise RuntimeError("Rewrite prompts are not loaded")
        user = self.user_prompt.render(
            {"FACTS": fact_lines(row), "DESCRIPTION": str(row["description"] or "").strip()}
        )
        return [
            ChatMessage(role="system", content=self.system_prompt.render({})),
            ChatMessage(role="user", content=user),
        ]

    def _process(self, row: sqlite3.Row) -> tuple[Outcome, str]:
        obit_id = int(row["id"])
        messages = self.build_messages(row)

        try:
            resp = self._complete(messages)
        except _Deferred:
            self.ctx.telemetry.log_event(
                "info",
                "REWRITE",
                "REWRITE_BUDGET_DEFERRED",
                "Token budget exhausted, deferring rewrite batch",
                {"obit_id": obit_id, "reset_in": self.ctx.limiter.seconds_until_reset() if self.ctx.limiter else 0},
            )
            return Outcome.RATE_LIMITED, "rate_limited:budget"
        except LLMError as e:
            ctx = {"obit_id": obit_id, "model": e.model, "status": e.http_status}
            if e.is_auth:
                self.ctx.telemetry.log_event("critical", "LLM", e.event_code, "LLM authentication failed", ctx)
                return Outcome.AUTH_FAILED, "llm:auth"
            if e.is_rate_limit:
                self.ctx.telemetry.log_event("warning", "LLM", e.event_code, "LLM rate limited", ctx)
                return Outcome.RATE_LIMITED, "rate_limited:upstream"
            self.ctx.telemetry.log_event("error", "LLM", e.event_code, f"LLM call failed: {e}", ctx)
            self.repo.record_rewrite_failure(obit_id, f"llm:{e.reason}")
            return Outcome.FAILED, f"llm:{e.reason}"

        data = parse_json_object(resp.content)
        text = str((data or {}).get("rewritten_text") or "").strip()
        if data is None or not text:
            return self._reject(obit_id, ReasonCode.JSON_PARSE_FAILED, "Response is not a JSON object with rewritten_text")

        today = datetime.fromtimestamp(self.ctx.clock(), timezone.utc).date()
        extracted = sanitize_extracted(data, fallback_death=str(row["date_of_death"] or ""), today=today)
        corrections = dict(extracted)
        # The audit re-check reads city_normalized, so validate the city that gets stored.
        city = normalize_city(extracted.pop("location", ""))
        if city:
            extracted["location"] = city
            corrections["city_normalized"] = city
        else:
            corrections.pop("location", None)
        facts = FactBlock.from_row(row).with_overrides(extracted)
        verdict = validate_rewrite(text, facts, self.ctx.app.validation)
        if not verdict.ok:
            return self._reject(obit_id, verdict.reason, verdict.detail)

        if not self.repo.publish(obit_id, text, corrections):
            logger.warning(f"Publish skipped, row no longer pending, obit_id={obit_id}")
            return Outcome.FAILED, "publish:not_pending"

        logger.info(f"Obituary published, obit_id={obit_id}, model={resp.model}, tokens={resp.total_tokens}")
        return Outcome.PUBLISHED, ""

    def _reject(self, obit_id: int, reason: ReasonCode, detail: str) -> tuple[Outcome, str]:
        code = f"validation:{reason.value}"
        self.repo.record_rewrite_failure(obit_id, code)
        self.ctx.telemetry.log_event(
            "warning",
            "REWRITE",
            "REWRITE_VALIDATION_FAILED",
            f"Rewrite rejected, {detail}",
            {"obit_id": obit_id, "reason": reason.value},
        )
        return Outcome.FAILED, code

    def _reserve(self) -> bool:
        return self._limiter.may_proceed(self.ctx.app.rewriter.estimated_tokens, CONSUMER)

    def _complete(self, messages: list[ChatMessage]) -> ChatResponse:
        """Call the LLM under a token reservation.

        A budget rejection or a 403 on the primary model gets one retry on
        the fallback model after `fallback_delay_seconds`.

        Raises:
            _Deferred: The budget refused the call.
            LLMError: The call failed.
        """
        cfg = self.ctx.app.rewriter
        model = cfg.model
        if not self._reserve():
            if not cfg.fallback_model or cfg.fallback_model == cfg.model:
                raise _Deferred()
            logger.info(f"Budget refused primary model, retrying with fallback, fallback={cfg.fallback_model}")
            self.ctx.sleep(float(cfg.fallback_delay_seconds))
            if not self._reserve():
                raise _Deferred()
            model = cfg.fallback_model

        try:
            return self._call(model, messages)
        except LLMError as e:
            if e.http_status != 403 or model == cfg.fallback_model or not cfg.fallback_model:
                raise
            logger.info(f"Model permission blocked, trying fallback, model={model}, fallback={cfg.fallback_model}")
        self.ctx.sleep(float(cfg.fallback_delay_seconds))
        if not self._reserve():
            raise _Deferred()
        return self._call(cfg.fallback_model, messages)

    def _call(self, model: str, messages: list[ChatMessage]) -> ChatResponse:
        """One reserved LLM call. The reservation is settled either way."""
        cfg = self.ctx.app.rewriter
        est = int(cfg.estimated_tokens)
        req = ChatRequest(
            model=model,
            messages=messages,
            temperature=cfg.temperature,
            max_tokens=cfg.max_tokens,
            top_p=cfg.top_p,
            response_format={"type": "json_object"},
        )
        try:
            resp = self._llm.chat(req)
        except Exception:
            self._limiter.release_reservation(est, CONSUMER)
            raise
        self._limiter.record_usage(resp.billed_tokens(est), CONSUMER, est)
        return resp
