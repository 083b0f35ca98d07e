#!src/ontario_obits_app/db/repos/suppressions_repo.py
from __future__ import annotations

import sqlite3

from ontario_obits_app.utils.clock import Clock, epoch_now, sql_ts
from ontario_obits_app.utils.logger import get_logger

logger = get_logger(__name__)

SUPPRESSION_REASONS: frozenset[str] = frozenset(
    {"family_request", "funeral_home_request", "admin_action", "legal_notice", "privacy"}
)


class SuppressionsRepo:
    """Manual takedowns and the do-not-republish blocklist keyed by provenance hash."""

    def __init__(self, conn: sqlite3.Connection, *, clock: Clock = epoch_now) -> None:
        self._conn = conn
        self._clock = clock

    def suppress(self, obit_id: int, reason: str = "admin_action", notes: str = "") -> bool:
        """Hide a record everywhere and block it from being collected again."""
        why = reason if reason in SUPPRESSION_REASONS else "admin_action"
        row = self._conn.execute(
            "SELECT id, provenance_hash, name, date_of_death FROM obituaries WHERE id = ?;",
            (int(obit_id),),
        ).fetchone()
        if row is None:
            return False
        now = sql_ts(self._clock())
        self._conn.execute(
            "UPDATE obituaries SET suppressed_at = ?, suppressed_reason = ?, updated_at = ? WHERE id = ?;",
            (now, why, now, int(obit_id)),
        )
        self._conn.execute(
            """
            INSERT INTO suppressions(obituary_id, provenance_hash, name, date_of_death, reason, notes, do_not_republish, created_at)
            VALUES (?, ?, ?, ?, ?, ?, 1, ?);
            """,
            (int(obit_id), row["provenance_hash"], row["name"], row["date_of_death"], why, notes[:500], now),
        )
        self._conn.commit()
        logger.info(f"Obituary suppressed, obit_id={obit_id}, reason={why}")
        return True

    def unsuppress(self, obit_id: int) -> bool:
        row = self._conn.execute(
            "SELECT provenance_hash FROM obituaries WHERE id = ?;", (int(obit_id),)
        ).fetchone()
        if row is None:
            return False
        now = sql_ts(self._clock())
        self._conn.execute(
            "UPDATE obituaries SET suppressed_at = NULL, suppressed_reason = NULL, updated_at = ? WHERE id = ?;",
            (now, int(obit_id)),
        )
        self._conn.execute(
            "UPDATE suppressions SET do_not_republish = 0 WHERE provenance_hash = ?;",
            (row["provenance_hash"],),
        )
        self._conn.commit()
        logger.info(f"Obituary unsuppressed, obit_id={obit_id}")
        return True

    def is_blocked(self, provenance_hash: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM suppressions WHERE provenance_hash = ? AND do_not_republish = 1 LIMIT 1;",
            (provenance_hash,),
        ).fetchone()
        return row is not None
