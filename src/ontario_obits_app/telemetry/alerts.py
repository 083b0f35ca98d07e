#!filepath: src/ontario_obits_app/telemetry/alerts.py
from __future__ import annotations

import hashlib
import sqlite3

from ontario_obits_app.db.tx import immediate
from ontario_obits_app.utils.clock import Clock, epoch_now


def dedupe_key(subsystem: str, code: str, discriminator: str = "") -> str:
    raw = f"{subsystem.upper()}|{code.upper()}|{discriminator.lower()}"
    return hashlib.md5(raw.encode("utf_8")).hexdigest()


class AlertDeduper:
    """Suppresses repeats of the same alert within a time window.

    Args:
        conn: Autocommit sqlite connection.
        window_seconds: Repeat suppression window.
        clock: Epoch clock, injectable for tests.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        window_seconds: int = 300,
        clock: Clock = epoch_now,
    ) -> None:
        self._conn = conn
        self._window = int(window_seconds)
        self._clock = clock

    def should_emit(self, key: str) -> bool:
        """Record a hit for `key`, returning True when it should be surfaced."""
        now = self._clock()
        with immediate(self._conn):
            row = self._conn.execute(
                "SELECT last_seen FROM alert_dedupe WHERE dedupe_key = ?;", (key,)
            ).fetchone()
            if row is not None and now - float(row["last_seen"]) < self._window:
                self._conn.execute(
                    "UPDATE alert_dedupe SET hits = hits + 1 WHERE dedupe_key = ?;",
                    (key,),
                )
                return False
            self._conn.execute(
                """
                INSERT INTO alert_dedupe(dedupe_key, last_seen, hits) VALUES (?, ?, 1)
                ON CONFLICT(dedupe_key) DO UPDATE SET last_seen = excluded.last_seen, hits = 1;
                """,
                (key, now),
            )
            self._conn.execute(
                "DELETE FROM alert_dedupe WHERE last_seen < ?;", (now - 10 * self._window,)
            )
        return True
