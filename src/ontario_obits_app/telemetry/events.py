#!filepath: src/ontario_obits_app/telemetry/events.py
from __future__ import annotations

import logging
import re
import secrets
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from ontario_obits_app.db.migrate import connect
from ontario_obits_app.settings import TelemetryConfig
from ontario_obits_app.telemetry.alerts import AlertDeduper, dedupe_key
from ontario_obits_app.telemetry.health import HealthCounterStore
from ontario_obits_app.utils.logger import get_logger
from ontario_obits_app.utils.url import extract_domain, redact_url

logger = get_logger("ontario_obits_app.events")

_LEVELS: dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}

_ALERT_LEVELS = frozenset({"warning", "error", "critical"})

_SECRET_KEY_RE = re.compile(r"(key|token|secret|password|authorization|cookie)", re.I)
_SQL_TABLE_RE = re.compile(r"\b(?:FROM|INTO|UPDATE)\s+([A-Za-z_][A-Za-z0-9_]*)", re.I)


def new_run_id() -> str:
    return f"r-{secrets.token_hex(4)}"


def redact_query(sql: str) -> str:
    """Reduce an SQL statement to `VERB table`, dropping values and clauses."""
    s = str(sql or "").strip()
    verb = s.split(None, 1)[0].upper() if s else ""
    m = _SQL_TABLE_RE.search(s)
    table = m.group(1) if m else "?"
    return f"{verb} {table}".strip()


def sanitize_context(context: Mapping[str, Any], *, max_body_chars: int = 500) -> dict[str, Any]:
    """Make a log context safe to surface.

    URL values lose their query strings. Secret-looking keys are masked.
    Bodies are truncated. SQL is reduced to verb and table.
    """
    out: dict[str, Any] = {}
    for k, v in context.items():
        key = str(k)
        if v is None:
            continue
        if _SECRET_KEY_RE.search(key):
            out[key] = "***"
        elif key == "url" or key.endswith("_url"):
            out[key] = redact_url(str(v))
        elif key in ("query", "sql"):
            out[key] = redact_query(str(v))
        elif key in ("data", "body", "raw", "response"):
            text = str(v)
            out[key] = text if len(text) <= max_body_chars else f"{text[:max_body_chars]}..."
        else:
            out[key] = v
    return out


def _discriminator(context: Mapping[str, Any]) -> str:
    for key in ("source", "source_domain", "hook"):
        value = str(context.get(key) or "").strip()
        if value:
            return value
    return extract_domain(str(context.get("url") or ""))


def format_event(level: str, subsystem: str, code: str, message: str, context: Mapping[str, Any]) -> str:
    line = f"[{level.upper()}][{subsystem.upper()}][{code}] {message}"
    if context:
        pairs = ", ".join(f"{k}={v}" for k, v in context.items())
        line = f"{line} {{{pairs}}}"
    return line


@dataclass
class Telemetry:
    """Structured event sink shared by every job.

    Warning and above always bump the health counter for the event code. The
    log line itself is emitted once per (subsystem, code, discriminator)
    within the dedupe window. Critical events are recorded as the last
    critical health entry even when the log line is suppressed.

    Attributes:
        health: Health counter store, or None to skip counting.
        deduper: Alert deduper, or None to log every event.
        cfg: Telemetry limits.
        run_id: Identifier attached to every event of this process.
        conn: Connection owned by this sink, closed by `close`.
    """

    health: Optional[HealthCounterStore] = None
    deduper: Optional[AlertDeduper] = None
    cfg: TelemetryConfig = field(default_factory=TelemetryConfig)
    run_id: str = field(default_factory=new_run_id)
    conn: Optional[sqlite3.Connection] = None

    @classmethod
    def open(cls, db_path: str, cfg: Optional[TelemetryConfig] = None) -> Telemetry:
        """Build a sink persisting counters and dedupe state in `db_path`."""
        c = cfg or TelemetryConfig()
        conn = connect(db_path, autocommit=True)
        return cls(
            health=HealthCounterStore(
                conn,
                ttl_seconds=c.counter_ttl_seconds,
                cap=c.counter_cap,
                max_codes=c.max_counter_codes,
                healthy_within_seconds=c.healthy_within_seconds,
            ),
            deduper=AlertDeduper(conn, window_seconds=c.dedupe_seconds),
            cfg=c,
            conn=conn,
        )

    def log_event(
        self,
        level: str,
        subsystem: str,
        code: str,
        message: str,
        context: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Record one structured event.

        Args:
            level: debug, info, warning, error or critical.
            subsystem: Emitting component, for example SCRAPE or REWRITE.
            code: Stable machine-readable event code.
            message: Human readable message.
            context: Extra fields such as obit_id, source or url.

        Returns:
            bool: Whether the log line was emitted.
        """
        lvl = str(level or "info").lower()
        if lvl not in _LEVELS:
            lvl = "info"
        raw_ctx = dict(context or {})
        ctx = sanitize_context(raw_ctx, max_body_chars=self.cfg.max_body_chars)
        ctx["run_id"] = self.run_id

        if lvl in _ALERT_LEVELS:
            if self.health is not None:
                self.health.increment(code)
                if lvl == "critical":
                    self.health.record_critical(code, message)
            if self.deduper is not None:
                key = dedupe_key(subsystem, code, _discriminator(raw_ctx))
                if not self.deduper.should_emit(key):
                    return False

        logger.log(_LEVELS[lvl], format_event(lvl, subsystem, code, message, ctx))
        return True

    def record_ran(self, subsystem: str) -> None:
        if self.health is not None:
            self.health.record_ran(subsystem)

    def record_success(self, subsystem: str) -> None:
        if self.health is not None:
            self.health.record_success(subsystem)

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None


def http_error_code(subsystem: str, status_code: int) -> tuple[str, str]:
    """Map an HTTP status to an event `(level, code)` pair."""
    if status_code >= 500:
        return "error", f"{subsystem.upper()}_HTTP_5XX"
    return "warning", f"{subsystem.upper()}_HTTP_4XX"
