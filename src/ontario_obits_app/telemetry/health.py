#!filepath: src/ontario_obits_app/telemetry/health.py
from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from typing import Any, Optional

from ontario_obits_app.db.tx import immediate
from ontario_obits_app.utils.clock import Clock, epoch_now, sql_ts


@dataclass(frozen=True, slots=True)
class HealthSummary:
    """Snapshot of pipeline health for admin surfaces."""

    total_issues_24h: int
    unique_codes: int
    top_codes: list[tuple[str, int]]
    last_critical: Optional[dict[str, Any]]
    last_ran: dict[str, str] = field(default_factory=dict)
    last_success: dict[str, str] = field(default_factory=dict)
    pipeline_healthy: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "total_issues_24h": self.total_issues_24h,
            "unique_codes": self.unique_codes,
            "top_codes": [{"code": c, "count": n} for c, n in self.top_codes],
            "last_critical": self.last_critical,
            "last_ran": dict(self.last_ran),
            "last_success": dict(self.last_success),
            "pipeline_healthy": self.pipeline_healthy,
        }


class HealthCounterStore:
    """Code to count map with a TTL window, plus last-ran and last-success marks.

    Each code gets its own window: the first increment after expiry starts a
    fresh count. Counts saturate at `cap` and at most `max_codes` codes are
    kept, evicting the lowest counts first.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        ttl_seconds: int = 86400,
        cap: int = 9999,
        max_codes: int = 100,
        healthy_within_seconds: int = 7200,
        clock: Clock = epoch_now,
    ) -> None:
        self._conn = conn
        self._ttl = int(ttl_seconds)
        self._cap = int(cap)
        self._max_codes = int(max_codes)
        self._healthy_within = int(healthy_within_seconds)
        self._clock = clock

    def increment(self, code: str) -> int:
        """Count one occurrence of `code` and return the new count."""
        code = str(code or "UNKNOWN").strip()[:80]
        now = self._clock()
        with immediate(self._conn):
            row = self._conn.execute(
                "SELECT count, window_expires_at FROM health_counters WHERE code = ?;",
                (code,),
            ).fetchone()
            if row is None or float(row["window_expires_at"]) <= now:
                count = 1
                self._conn.execute(
                    """
                    INSERT INTO health_counters(code, count, window_expires_at)
                    VALUES (?, 1, ?)
                    ON CONFLICT(code) DO UPDATE SET count = 1,
                      window_expires_at = excluded.window_expires_at;
                    """,
                    (code, now + self._ttl),
                )
            else:
                count = min(self._cap, int(row["count"]) + 1)
                self._conn.execute(
                    "UPDATE health_counters SET count = ? WHERE code = ?;",
                    (count, code),
                )
            self._evict(now, keep=code)
        return count

    def counts(self) -> dict[str, int]:
        """Return live counts, ignoring expired windows."""
        rows = self._conn.execute(
            "SELECT code, count FROM health_counters WHERE window_expires_at > ? ORDER BY count DESC, code;",
            (self._clock(),),
        ).fetchall()
        return {str(r["code"]): int(r["count"]) for r in rows}

    def record_ran(self, subsystem: str) -> None:
        self._mark(f"ran:{subsystem.upper()}")

    def record_success(self, subsystem: str) -> None:
        self._mark(f"success:{subsystem.upper()}")

    def record_critical(self, code: str, message: str) -> None:
        self._mark("critical", detail=f"{code}: {message[:200]}")

    def pipeline_healthy(self) -> bool:
        """True when both SCRAPE and REWRITE succeeded recently."""
        now = self._clock()
        for subsystem in ("SCRAPE", "REWRITE"):
            at = self._mark_at(f"success:{subsystem}")
            if at is None or now - at > self._healthy_within:
                return False
        return True

    def summary(self) -> HealthSummary:
        counts = self.counts()
        marks = self._conn.execute("SELECT name, at, detail FROM health_marks;").fetchall()
        last_ran: dict[str, str] = {}
        last_success: dict[str, str] = {}
        last_critical: Optional[dict[str, Any]] = None
        for m in marks:
            name = str(m["name"])
            kind, _, subsystem = name.partition(":")
            if kind == "ran":
                last_ran[subsystem] = sql_ts(float(m["at"]))
            elif kind == "success":
                last_success[subsystem] = sql_ts(float(m["at"]))
            elif name == "critical":
                last_critical = {"at": sql_ts(float(m["at"])), "detail": m["detail"]}
        return HealthSummary(
            total_issues_24h=sum(counts.values()),
            unique_codes=len(counts),
            top_codes=list(counts.items())[:5],
            last_critical=last_critical,
            last_ran=last_ran,
            last_success=last_success,
            pipeline_healthy=self.pipeline_healthy(),
        )

    def reset(self) -> None:
        with immediate(self._conn):
            self._conn.execute("DELETE FROM health_counters;")
            self._conn.execute("DELETE FROM health_marks;")

    def _mark(self, name: str, detail: Optional[str] = None) -> None:
        with immediate(self._conn):
            self._conn.execute(
                """
                INSERT INTO health_marks(name, at, detail) VALUES (?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET at = excluded.at, detail = excluded.detail;
                """,
                (name, self._clock(), detail),
            )

    def _mark_at(self, name: str) -> Optional[float]:
        row = self._conn.execute(
            "SELECT at FROM health_marks WHERE name = ?;", (name,)
        ).fetchone()
        return float(row["at"]) if row is not None else None

    def _evict(self, now: float, *, keep: str) -> None:
        self._conn.execute(
            "DELETE FROM health_counters WHERE window_expires_at <= ?;", (now,)
        )
        row = self._conn.execute("SELECT COUNT(1) AS c FROM health_counters;").fetchone()
        overflow = int(row["c"]) - self._max_codes
        if overflow > 0:
            self._conn.execute(
                """
                DELETE FROM health_counters WHERE code IN (
                  SELECT code FROM health_counters WHERE code <> ?
                  ORDER BY count ASC, window_expires_at ASC LIMIT ?
                );
                """,
                (keep, overflow),
            )

