#!src/ontario_obits_app/modules/audit_stage.py
from __future__ import annotations

import random
import sqlite3
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Mapping, Optional

from ontario_obits_app.db.repos.obituaries_repo import ObituariesRepo
from ontario_obits_app.llm.errors import LLMError
from ontario_obits_app.llm.models import ChatClient, ChatMessage, ChatRequest, ChatResponse
from ontario_obits_app.llm.rate_limiter import TokenBudgetLimiter
from ontario_obits_app.modules.base import StageContext
from ontario_obits_app.prompts.template import PromptTemplate, load_prompt
from ontario_obits_app.utils.job_lock import JobLock
from ontario_obits_app.utils.logger import get_logger
from ontario_obits_app.utils.serialization import parse_json_object
from ontario_obits_app.validation.fact_check import FactBlock, validate_rewrite

logger = get_logger(__name__)

CONSUMER = "authenticity"
MAX_ERRORS = 20
MAX_ISSUES = 5
AUDIT_TEXT_CHARS = 2000


@dataclass(frozen=True, slots=True)
class AuditVerdict:
    """Parsed auditor response."""

    status: str
    issues: tuple[str, ...] = ()
    corrections: Mapping[str, Any] = field(default_factory=dict)
    confidence: float = 0.0

    @property
    def flagged(self) -> bool:
        return self.status == "flagged"


@dataclass
class AuditResult:
    processed: int = 0
    passed: int = 0
    requeued: int = 0
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
            "passed": self.passed,
            "requeued": self.requeued,
            "failed": self.failed,
            "stopped_reason": self.stopped_reason,
            "errors": list(self.errors),
            "skipped_locked": self.skipped_locked,
        }


def _valid_iso(value: Any) -> bool:
    try:
        date.fromisoformat(str(value or "").strip())
    except ValueError:
        return False
    return len(str(value).strip()) == 10


def filter_corrections(raw: Any, confidence: float, min_confidence: float) -> dict[str, Any]:
    """Keep corrections only when confident and well-formed.

    Accepted fields are date_of_death and date_of_birth as ISO dates, age as
    an integer from 0 to 130, and city_normalized as short text.
    """
    if confidence < min_confidence or not isinstance(raw, dict):
        return {}
    out: dict[str, Any] = {}
    for key in ("date_of_death", "date_of_birth"):
        if key in raw and _valid_iso(raw[key]):
            out[key] = str(raw[key]).strip()
    if "age" in raw and str(raw["age"]).strip().isdigit():
        age = int(str(raw["age"]).strip())
        if 0 <= age <= 130:
            out["age"] = age
    city = " ".join(str(raw.get("city_normalized") or "").split())
    if 2 <= len(city) <= 60 and "<" not in city:
        out["city_normalized"] = city
    return out


def parse_audit_response(text: str, *, min_confidence: float = 0.9) -> Optional[AuditVerdict]:
    """Parse the auditor JSON. Returns None when the response is unusable."""
    data = parse_json_object(text)
    if data is None or "status" not in data:
        return None
    status = "flagged" if str(data.get("status") or "").strip().lower() == "flagged" else "pass"
    issues_raw = data.get("issues")
    issues = tuple(
        " ".join(str(i).split())[:200] for i in (issues_raw if isinstance(issues_raw, list) else []) if str(i).strip()
    )[:MAX_ISSUES]
    try:
        confidence = float(data.get("confidence") or 0.0)
    except (TypeError, ValueError):
        confidence = 0.0
    return AuditVerdict(
        status=status,
        issues=issues,
        corrections=filter_corrections(data.get("corrections"), confidence, min_confidence),
        confidence=confidence,
    )


def record_lines(row: Mapping[str, Any]) -> str:
    def _or_missing(value: Any) -> str:
        s = str(value or "").strip()
        return s if s and s != "0000-00-00" else "Not provided"

    age = row["age"]
    text = str(row["ai_description"] or row["description"] or "")[:AUDIT_TEXT_CHARS]
    return "\n".join(
        [
            f"Name: {row['name']}",
            f"Date of Birth: {_or_missing(row['date_of_birth'])}",
            f"Date of Death: {_or_missing(row['date_of_death'])}",
            f"Listed Age: {int(age) if age and int(age) > 0 else 'Not provided'}",
            f"Location: {_or_missing(row['location'])}",
            f"City (normalized): {_or_missing(row['city_normalized'])}",
            f"Funeral Home: {_or_missing(row['funeral_home'])}",
            f"Obituary Text: {text}",
        ]
    )


@dataclass
class AuditStage:
    """Post-publication audit.

    Each published record is first re-checked with the same fact checks as
    the rewrite gate. A record that still passes is sent to the LLM auditor.
    Any failure moves the record back to pending for a fresh rewrite.
    """

    ctx: StageContext
    batch_size: Optional[int] = None
    rng: Optional[random.Random] = None
    system_prompt: Optional[PromptTemplate] = None
    user_prompt: Optional[PromptTemplate] = None

    def __post_init__(self) -> None:
        prompts_dir = self.ctx.app.paths.prompts_dir
        if self.system_prompt is None:
            self.system_prompt = load_prompt(prompts_dir, "audit_system")
        if self.user_prompt is None:
            self.user_prompt = load_prompt(prompts_dir, "audit_user")

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

    def run(self) -> AuditResult:
        cfg = self.ctx.app.auditor
        with JobLock(self.ctx.db_path, "audit", cfg.lock_ttl_seconds, clock=self.ctx.clock) as lock:
            if not lock.acquired:
                logger.info("Audit skipped, another batch holds the lock")
                return AuditResult(skipped_locked=True, stopped_reason="locked")
            return self.audit_batch()

    def get_stats(self) -> dict[str, int]:
        counts = self.repo.status_counts()
        return {
            "published": counts["published"],
            "audited": counts["audited"],
            "never_audited": max(0, counts["published"] - counts["audited"]),
            "requeued_total": counts["requeued"],
        }

    def audit_batch(self) -> AuditResult:
        """Audit one bounded batch without taking the job lock."""
        cfg = self.ctx.app.auditor
        result = AuditResult()
        if self.ctx.llm is None or self.ctx.limiter is None:
            result.stopped_reason = "not_configured"
            result.error("LLM client or rate limiter not configured")
            logger.error("Audit batch needs an LLM client and a rate limiter")
            return result

        self.ctx.telemetry.record_ran("AUDIT")
        started = self.ctx.clock()
        rows = self.repo.select_audit_batch(
            int(self.batch_size or cfg.batch_size), recheck_fraction=cfg.recheck_fraction, rng=self.rng
        )
        if not rows:
            logger.info("No published obituaries to audit")
            return result

        llm_calls = 0
        for row in rows:
            obit_id = int(row["id"])
            result.processed += 1

            try:
                verdict = validate_rewrite(
                    str(row["ai_description"] or ""), FactBlock.from_row(row), self.ctx.app.validation
                )
                if not verdict.ok:
                    self._requeue(obit_id, f"audit:{verdict.code}", verdict.detail, result)
                    continue

                if llm_calls > 0:
                    remaining = float(cfg.max_runtime_seconds) - (self.ctx.clock() - started)
                    if remaining < float(cfg.request_delay_seconds):
                        result.processed -= 1
                        result.stopped_reason = "time_budget"
                        logger.info(f"Audit batch stopping before time limit, remaining={remaining:.1f}s")
                        break
                    self.ctx.sleep(float(cfg.request_delay_seconds))

                if not self._limiter.may_proceed(cfg.estimated_tokens, CONSUMER):
                    result.processed -= 1
                    result.stopped_reason = "rate_limited"
                    self.ctx.telemetry.log_event(
                        "info", "AUDIT", "AUDIT_BUDGET_DEFERRED", "Token budget exhausted, deferring audit batch",
                        {"obit_id": obit_id},
                    )
                    break

                llm_calls += 1
                resp = self._call(row)
            except LLMError as e:
                ctx = {"obit_id": obit_id, "model": e.model, "status": e.http_status}
                result.failed += 1
                result.error(f"ID {obit_id}: llm:{e.reason}")
                if e.is_auth:
                    self.ctx.telemetry.log_event("critical", "LLM", e.event_code, "LLM authentication failed", ctx)
                    result.stopped_reason = "auth_failed"
                    break
                if e.is_rate_limit:
                    self.ctx.telemetry.log_event("warning", "LLM", e.event_code, "LLM rate limited", ctx)
                    result.stopped_reason = "rate_limited"
                    break
                self.ctx.telemetry.log_event("error", "LLM", e.event_code, f"Audit call failed: {e}", ctx)
                continue
            except Exception as e:
                logger.error(f"Audit crashed, obit_id={obit_id}, err={e}", exc_info=True)
                result.failed += 1
                result.error(f"ID {obit_id}: unexpected {type(e).__name__}")
                continue

            self._apply(row, resp, result)

        if result.processed:
            self.ctx.telemetry.record_success("AUDIT")
        logger.info(
            f"Audit batch done, processed={result.processed}, passed={result.passed}, requeued={result.requeued}, failed={result.failed}, stopped={result.stopped_reason or '-'}"
        )
        return result

    def _apply(self, row: sqlite3.Row, resp: ChatResponse, result: AuditResult) -> None:
        obit_id = int(row["id"])
        verdict = parse_audit_response(resp.content, min_confidence=self.ctx.app.auditor.min_correction_confidence)
        if verdict is None:
            logger.warning(f"Unparseable audit response treated as pass, obit_id={obit_id}")
            verdict = AuditVerdict(status="pass")

        if verdict.flagged:
            issues = "; ".join(verdict.issues) or "unspecified"
            self._requeue(obit_id, f"audit:flagged: {issues}", issues, result)
            return

        if self.repo.mark_audit_pass(obit_id, verdict.corrections):
            result.passed += 1
            if verdict.corrections:
                logger.info(
                    f"Audit corrections applied, obit_id={obit_id}, fields={sorted(verdict.corrections)}, confidence={verdict.confidence:.2f}"
                )
        else:
            result.failed += 1
            result.error(f"ID {obit_id}: no longer published")

    def _requeue(self, obit_id: int, reason: str, detail: str, result: AuditResult) -> None:
        if not self.repo.requeue_from_audit(obit_id, reason):
            result.failed += 1
            result.error(f"ID {obit_id}: no longer published")
            return
        result.requeued += 1
        self.ctx.telemetry.log_event(
            "warning",
            "AUDIT",
            "AUDIT_REQUEUED",
            f"Published obituary sent back for rewrite, {detail}",
            {"obit_id": obit_id, "reason": reason.split(":", 2)[1] if ":" in reason else reason},
        )

    def _call(self, row: sqlite3.Row) -> ChatResponse:
        if self.system_prompt is None or self.user_prompt is None:
            raise RuntimeError("Audit prompts are not loaded")
        cfg = self.ctx.app.auditor
        est = int(cfg.estimated_tokens)
        req = ChatRequest(
            model=cfg.model,
            messages=[
                ChatMessage(role="system", content=self.system_prompt.render({})),
                ChatMessage(role="user", content=self.user_prompt.render({"RECORD": record_lines(row)})),
            ],
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
