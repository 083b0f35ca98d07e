#!filepath: src/ontario_obits_app/utils/job_lock.py
from __future__ import annotations

import json
import os
import secrets
import sqlite3
from typing import Optional

from ontario_obits_app.db.migrate import connect
from ontario_obits_app.db.tx import immediate
from ontario_obits_app.utils.clock import Clock, epoch_now
from ontario_obits_app.utils.logger import get_logger

logger = get_logger(__name__)


class JobLock:
    """Time-boxed, auto-expiring lock so one job type never runs twice at once.

    The lock lives in `kv_store` under `lock:<name>`. Acquisition succeeds
    when no row exists or the existing one has expired, and is done inside a
    single BEGIN IMMEDIATE transaction. Release only deletes the row when it
    is still ours.

    Example:
        with JobLock(db_path, "rewrite", ttl_seconds=270) as lock:
            if not lock.acquired:
                return
            ...
    """

    def __init__(
        self,
        db_path: str,
        name: str,
        ttl_seconds: float,
        *,
        clock: Clock = epoch_now,
    ) -> None:
        self._db_path = str(db_path)
        self.name = str(name)
        self.key = f"lock:{self.name}"
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self.owner = f"{os.getpid()}-{secrets.token_hex(4)}"
        self.acquired = False
        self._conn: Optional[sqlite3.Connection] = None

    def acquire(self) -> bool:
        conn = self._connection()
        now = self._clock()
        with immediate(conn):
            row = conn.execute(
                "SELECT value, expires_at FROM kv_store WHERE key = ?;", (self.key,)
            ).fetchone()
            if row is not None and float(row["expires_at"] or 0) > now:
                logger.info(f"Job lock busy, name={self.name}, held_by={row['value']}")
                self.acquired = False
                return False
            conn.execute(
                """
                INSERT INTO kv_store(key, value, version, expires_at) VALUES (?, ?, 1, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                  version = kv_store.version + 1, expires_at = excluded.expires_at,
                  updated_at = datetime('now');
                """,
                (self.key, json.dumps({"owner": self.owner, "at": now}), now + self.ttl_seconds),
            )
        self.acquired = True
        return True

    def release(self) -> None:
        if not self.acquired:
            self._close()
            return
        conn = self._connection()
        with immediate(conn):
            conn.execute(
                "DELETE FROM kv_store WHERE key = ? AND json_extract(value, '$.owner') = ?;",
                (self.key, self.owner),
            )
        self.acquired = False
        self._close()

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = connect(self._db_path, autocommit=True)
        return self._conn

    def _close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> JobLock:
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
