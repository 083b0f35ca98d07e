#!src/ontario_obits_app/db/repos/obituaries_repo.py
from __future__ import annotations

import hashlib
import random
import sqlite3
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from ontario_obits_app.scrapers.base import ObituaryRecord
from ontario_obits_app.utils.clock import Clock, epoch_now, sql_ts

CORRECTABLE_FIELDS: tuple[str, ...] = (
    "date_of_death",
    "date_of_birth",
    "age",
    "location",
    "city_normalized",
    "funeral_home",
)

_INSERT_COLUMNS: tuple[str, ...] = (
    "provenance_hash",
    "name",
    "date_of_birth",
    "date_of_death",
    "age",
    "funeral_home",
    "location",
    "city_normalized",
    "description",
    "image_url",
    "source_url",
    "source_domain",
    "source_type",
)


@dataclass(frozen=True, slots=True)
class InsertResult:
    inserted: bool
    reason: str


def text_hash(text: str) -> str:
    return hashlib.sha256(str(text or "").encode("utf_8")).hexdigest()


def _none_if_empty(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str) and not value.strip():
        return None
    return value


class ObituariesRepo:
    """Obituary rows and their pipeline state transitions.

    Every transition is a single UPDATE guarded by the expected current
    status, so concurrent jobs can never leave a half-written record.
    """

    def __init__(self, conn: sqlite3.Connection, *, clock: Clock = epoch_now) -> None:
        self._conn = conn
        self._clock = clock

    def get(self, obit_id: int) -> Optional[sqlite3.Row]:
        return self._conn.execute(
            "SELECT * FROM obituaries WHERE id = ?;", (int(obit_id),)
        ).fetchone()

    def has_hash(self, provenance_hash: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM obituaries WHERE provenance_hash = ? LIMIT 1;", (provenance_hash,)
        ).fetchone()
        return row is not None

    def insert_pending(self, record: ObituaryRecord) -> InsertResult:
        """Insert a new pending row unless its provenance hash is already known."""
        data = record.as_row()
        values = [_none_if_empty(data[c]) if c != "name" else data[c] for c in _INSERT_COLUMNS]
        before = self._conn.total_changes
        self._conn.execute(
            f"""
            INSERT OR IGNORE INTO obituaries({', '.join(_INSERT_COLUMNS)}, status, created_at, updated_at)
            VALUES ({', '.join('?' for _ in _INSERT_COLUMNS)}, 'pending', ?, ?);
            """,
            values + [sql_ts(self._clock()), sql_ts(self._clock())],
        )
        self._conn.commit()
        if self._conn.total_changes == before:
            return InsertResult(inserted=False, reason="duplicate_hash")
        return InsertResult(inserted=True, reason="inserted")

    def select_rewrite_batch(self, limit: int) -> list[sqlite3.Row]:
        """Pending, unsuppressed rows with source text and no rewrite, oldest first."""
        return self._conn.execute(
            """
            SELECT * FROM obituaries
            WHERE status = 'pending'
              AND suppressed_at IS NULL
              AND length(trim(coalesce(description, ''))) > 0
              AND length(coalesce(ai_description, '')) = 0
            ORDER BY created_at ASC, id ASC
            LIMIT ?;
            """,
            (max(0, int(limit)),),
        ).fetchall()

    def count_rewrite_pending(self) -> int:
        row = self._conn.execute(
            """
            SELECT COUNT(1) AS c FROM obituaries
            WHERE status = 'pending' AND suppressed_at IS NULL
              AND length(trim(coalesce(description, ''))) > 0
              AND length(coalesce(ai_description, '')) = 0;
            """
        ).fetchone()
        return int(row["c"])

    def publish(self, obit_id: int, text: str, corrections: Optional[Mapping[str, Any]] = None) -> bool:
        """Set the rewrite and `status=published` in one statement.

        Args:
            obit_id: Row id.
            text: Validated rewrite, must be non-empty.
            corrections: Optional fact fields confirmed during the rewrite.

        Returns:
            bool: True when the row moved from pending to published.
        """
        body = str(text or "").strip()
        if not body:
            raise ValueError("Refusing to publish an empty rewrite")
        now = sql_ts(self._clock())
        extra = {k: v for k, v in dict(corrections or {}).items() if k in CORRECTABLE_FIELDS}
        assignments = "".join(f", {k} = ?" for k in extra)
        cur = self._conn.execute(
            f"""
            UPDATE obituaries SET
              ai_description = ?,
              ai_description_hash = ?,
              status = 'published',
              published_at = ?,
              rewrite_request_reason = NULL,
              last_rewrite_error_at = NULL,
              updated_at = ?{assignments}
            WHERE id = ? AND status = 'pending' AND suppressed_at IS NULL;
            """,
            [body, text_hash(body), now, now, *extra.values(), int(obit_id)],
        )
        self._conn.commit()
        return cur.rowcount == 1

    def record_rewrite_failure(self, obit_id: int, reason: str) -> None:
        """Leave the row pending, remembering why the last attempt failed."""
        now = sql_ts(self._clock())
        self._conn.execute(
            """
            UPDATE obituaries SET rewrite_request_reason = ?, last_rewrite_error_at = ?, updated_at = ?
            WHERE id = ? AND status = 'pending';
            """,
            (str(reason)[:500], now, now, int(obit_id)),
        )
        self._conn.commit()

    def select_audit_batch(
        self, limit: int, *, recheck_fraction: float = 0.2, rng: Optional[random.Random] = None
    ) -> list[sqlite3.Row]:
        """Published rows to audit: mostly never audited, some due a re-check."""
        total = max(0, int(limit))
        recheck = int(round(total * max(0.0, min(1.0, recheck_fraction))))
        fresh_rows = self._conn.execute(
            """
            SELECT * FROM obituaries
            WHERE status = 'published' AND suppressed_at IS NULL AND last_audit_at IS NULL
            ORDER BY id ASC LIMIT ?;
            """,
            (total * 5,),
        ).fetchall()
        picker = rng or random.Random()
        fresh = picker.sample(fresh_rows, k=min(len(fresh_rows), total - recheck))
        recheck_rows = self._conn.execute(
            """
            SELECT * FROM obituaries
            WHERE status = 'published' AND suppressed_at IS NULL AND last_audit_at IS NOT NULL
            ORDER BY last_audit_at ASC, id ASC LIMIT ?;
            """,
            (total - len(fresh),),
        ).fetchall()
        return list(fresh) + list(recheck_rows)

    def mark_audit_pass(self, obit_id: int, corrections: Optional[Mapping[str, Any]] = None) -> bool:
        now = sql_ts(self._clock())
        extra = {k: v for k, v in dict(corrections or {}).items() if k in CORRECTABLE_FIELDS}
        assignments = "".join(f", {k} = ?" for k in extra)
        cur = self._conn.execute(
            f"""
            UPDATE obituaries SET
              audit_status = 'pass',
              audit_flags = NULL,
              last_audit_at = ?,
              last_audited_hash = ai_description_hash,
              updated_at = ?{assignments}
            WHERE id = ? AND status = 'published';
            """,
            [now, now, *extra.values(), int(obit_id)],
        )
        self._conn.commit()
        return cur.rowcount == 1

    def requeue_from_audit(self, obit_id: int, reason: str) -> bool:
        """Move a published row back to pending after a failed audit.

        Clears the rewrite and audit metadata and increments
        `audit_requeue_count` by exactly one.
        """
        now = sql_ts(self._clock())
        cur = self._conn.execute(
            """
            UPDATE obituaries SET
              status = 'pending',
              ai_description = NULL,
              ai_description_hash = NULL,
              published_at = NULL,
              audit_status = NULL,
              audit_flags = NULL,
              last_audit_at = NULL,
              last_audited_hash = NULL,
              audit_requeue_count = audit_requeue_count + 1,
              rewrite_requested_at = ?,
              rewrite_request_reason = ?,
              updated_at = ?
            WHERE id = ? AND status = 'published';
            """,
            (now, str(reason)[:500], now, int(obit_id)),
        )
        self._conn.commit()
        return cur.rowcount == 1

    def request_rewrite(self, obit_id: int, reason: str) -> bool:
        """Admin action: force a row back to pending for a fresh rewrite."""
        now = sql_ts(self._clock())
        cur = self._conn.execute(
            """
            UPDATE obituaries SET
              status = 'pending',
              ai_description = NULL,
              ai_description_hash = NULL,
              published_at = NULL,
              audit_status = NULL,
              audit_flags = NULL,
              last_audit_at = NULL,
              last_audited_hash = NULL,
              rewrite_requested_at = ?,
              rewrite_request_reason = ?,
              updated_at = ?
            WHERE id = ?;
            """,
            (now, str(reason or "admin_request")[:500], now, int(obit_id)),
        )
        self._conn.commit()
        return cur.rowcount == 1

    def status_counts(self) -> dict[str, int]:
        row = self._conn.execute(
            """
            SELECT
              COALESCE(SUM(status = 'pending' AND suppressed_at IS NULL), 0) AS pending,
              COALESCE(SUM(status = 'published' AND suppressed_at IS NULL), 0) AS published,
              COALESCE(SUM(suppressed_at IS NOT NULL), 0) AS suppressed,
              COALESCE(SUM(status = 'published' AND last_audit_at IS NOT NULL), 0) AS audited,
              COALESCE(SUM(audit_requeue_count), 0) AS requeued
            FROM obituaries;
            """
        ).fetchone()
        return {k: int(row[k]) for k in ("pending", "published", "suppressed", "audited", "requeued")}
