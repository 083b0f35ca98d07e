#!filepath: src/ontario_obits_app/llm/rate_limiter.py
"""Shared per-minute token budget for every LLM consumer.

The current window is one JSON record in `kv_store`. Every mutation is a
compare-and-swap on its version, performed inside a BEGIN IMMEDIATE
transaction on a short-lived connection, so two threads or processes can
never both commit against the same version.
"""
from __future__ import annotations

import json
import math
import sqlite3
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from ontario_obits_app.db.migrate import connect
from ontario_obits_app.db.tx import immediate
from ontario_obits_app.settings import RateLimiterConfig
from ontario_obits_app.utils.clock import Clock, epoch_now
from ontario_obits_app.utils.logger import get_logger

logger = get_logger(__name__)

POOL_CRON = "cron"
POOL_CHATBOT = "chatbot"

CONSUMER_POOLS: dict[str, str] = {
    "rewriter": POOL_CRON,
    "authenticity": POOL_CRON,
    "chatbot": POOL_CHATBOT,
}

WINDOW_KEY = "rate_window:groq"


def normalize_consumer(consumer: str) -> str:
    return str(consumer or "").strip().lower()


@dataclass(frozen=True, slots=True)
class PoolBudgets:
    total: int
    cron: int
    chatbot: int

    @classmethod
    def from_config(cls, cfg: RateLimiterConfig) -> PoolBudgets:
        total = int(cfg.tpm_budget)
        if total < int(cfg.min_tpm_budget):
            logger.warning(
                f"Token budget below minimum, using default, configured={total}, minimum={cfg.min_tpm_budget}"
            )
            total = int(RateLimiterConfig().tpm_budget)
        cron = int(math.floor(total * float(cfg.cron_fraction)))
        return cls(total=total, cron=cron, chatbot=total - cron)

    def for_pool(self, pool: str) -> int:
        return self.cron if pool == POOL_CRON else self.chatbot


@dataclass(frozen=True, slots=True)
class RateWindow:
    """The current budget window.

    Attributes:
        v: Monotonic version, bumped on every write.
        expires: Epoch second the window ends.
        cron_tokens: Tokens charged to the cron pool.
        chatbot_tokens: Tokens charged to the chatbot pool.
        calls: Reservations per consumer.
    """

    v: int
    expires: float
    cron_tokens: int = 0
    chatbot_tokens: int = 0
    calls: dict[str, int] = field(default_factory=dict)

    def used(self, pool: str) -> int:
        return self.cron_tokens if pool == POOL_CRON else self.chatbot_tokens

    def charged(self, pool: str, delta: int, *, consumer: str = "", count_call: bool = False) -> RateWindow:
        calls = dict(self.calls)
        if count_call and consumer:
            calls[consumer] = calls.get(consumer, 0) + 1
        used = max(0, self.used(pool) + int(delta))
        if pool == POOL_CRON:
            return replace(self, v=self.v + 1, cron_tokens=used, calls=calls)
        return replace(self, v=self.v + 1, chatbot_tokens=used, calls=calls)

    def to_json(self) -> str:
        return json.dumps(
            {
                "v": self.v,
                "expires": self.expires,
                "cron_tokens": self.cron_tokens,
                "chatbot_tokens": self.chatbot_tokens,
                "calls": self.calls,
            },
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, raw: str) -> Optional[RateWindow]:
        try:
            data = json.loads(raw)
            return cls(
                v=int(data["v"]),
                expires=float(data["expires"]),
                cron_tokens=int(data.get("cron_tokens", 0)),
                chatbot_tokens=int(data.get("chatbot_tokens", 0)),
                calls={str(k): int(v) for k, v in dict(data.get("calls") or {}).items()},
            )
        except (ValueError, KeyError, TypeError):
            return None


class _CasConflict(Exception):
    pass


class TokenBudgetLimiter:
    """Atomic admission control over a shared tokens-per-minute quota.

    Consumers map onto two pools through a fixed table. Unknown consumers
    are rejected without touching the window.

    Args:
        db_path: SQLite database holding `kv_store`.
        cfg: Budget configuration.
        clock: Epoch clock, injectable for tests.
        key: kv_store key of the window record.
    """

    def __init__(
        self,
        db_path: str,
        cfg: Optional[RateLimiterConfig] = None,
        *,
        clock: Clock = epoch_now,
        key: str = WINDOW_KEY,
    ) -> None:
        self._db_path = str(db_path)
        self._cfg = cfg or RateLimiterConfig()
        self._clock = clock
        self._key = key
        self.budgets = PoolBudgets.from_config(self._cfg)

    @property
    def window_seconds(self) -> int:
        return int(self._cfg.window_seconds)

    def pool_for(self, consumer: str) -> Optional[str]:
        return CONSUMER_POOLS.get(normalize_consumer(consumer))

    def may_proceed(self, estimated_tokens: int, consumer: str) -> bool:
        """Reserve `estimated_tokens` from the consumer's pool if the budget allows.

        The availability check and the reservation happen in one
        compare-and-swap. An expired window is replaced by a fresh one with
        the reservation already applied.

        Returns:
            bool: False on a non-positive estimate, an unknown consumer, an
            exhausted pool, or exhausted CAS retries.
        """
        name = normalize_consumer(consumer)
        pool = self.pool_for(name)
        if pool is None:
            logger.error(f"Rate limiter rejected unknown consumer, consumer={consumer!r}")
            return False
        est = int(estimated_tokens or 0)
        if est <= 0:
            logger.warning(f"Rate limiter rejected non-positive estimate, consumer={name}, estimate={est}")
            return False
        budget = self.budgets.for_pool(pool)

        for attempt in range(1, int(self._cfg.max_cas_retries) + 1):
            try:
                with self._connection() as conn, immediate(conn):
                    now = self._clock()
                    version, window = self._read(conn)
                    if window is None or window.expires <= now:
                        fresh = RateWindow(v=0 if window is None else window.v, expires=now + self.window_seconds)
                        self._cas(conn, version, fresh.charged(pool, est, consumer=name, count_call=True))
                        return True

                    used = window.used(pool)
                    if used + est > budget:
                        logger.info(
                            f"Token budget exhausted, consumer={name}, pool={pool}, used={used}, estimate={est}, budget={budget}"
                        )
                        return False
                    self._cas(conn, version, window.charged(pool, est, consumer=name, count_call=True))
                    return True
            except (_CasConflict, sqlite3.OperationalError) as e:
                logger.debug(f"Rate window CAS retry, attempt={attempt}, consumer={name}, err={e}")
                continue

        logger.warning(f"Rate window CAS retries exhausted, consumer={name}, estimate={est}")
        return False

    def record_usage(self, actual_tokens: int, consumer: str, estimated: Optional[int] = None) -> bool:
        """Adjust a reservation by `actual - estimated` once the real usage is known.

        Pass the same estimate given to `may_proceed`. Without one the full
        actual usage is charged again.

        Returns:
            bool: False only for unknown consumers or exhausted CAS retries.
        """
        name = normalize_consumer(consumer)
        pool = self.pool_for(name)
        if pool is None:
            logger.error(f"Rate limiter usage for unknown consumer, consumer={consumer!r}")
            return False

        if estimated is None:
            logger.warning(f"Usage recorded without estimate, charging in full, consumer={name}")
            delta = int(actual_tokens)
        else:
            delta = int(actual_tokens) - int(estimated)
        if delta == 0:
            return True

        for attempt in range(1, int(self._cfg.max_cas_retries) + 1):
            try:
                with self._connection() as conn, immediate(conn):
                    now = self._clock()
                    version, window = self._read(conn)
                    if window is None or window.expires <= now:
                        if delta <= 0:
                            return True
                        fresh = RateWindow(v=0 if window is None else window.v, expires=now + self.window_seconds)
                        self._cas(conn, version, fresh.charged(pool, delta))
                        return True
                    self._cas(conn, version, window.charged(pool, delta))
                    return True
            except (_CasConflict, sqlite3.OperationalError) as e:
                logger.debug(f"Rate window CAS retry, attempt={attempt}, consumer={name}, err={e}")
                continue

        logger.warning(f"Rate window usage update lost, consumer={name}, delta={delta}")
        return False

    def release_reservation(self, estimated: int, consumer: str) -> bool:
        """Return a whole reservation after a failed call."""
        return self.record_usage(0, consumer, estimated)

    def current_window(self) -> Optional[RateWindow]:
        with self._connection() as conn:
            _, window = self._read(conn)
        if window is None or window.expires <= self._clock():
            return None
        return window

    def seconds_until_reset(self) -> float:
        window = self.current_window()
        if window is None:
            return 0.0
        return max(0.0, window.expires - self._clock())

    def get_stats(self) -> dict[str, Any]:
        window = self.current_window()
        cron_used = window.cron_tokens if window else 0
        chatbot_used = window.chatbot_tokens if window else 0
        return {
            "tpm_budget": self.budgets.total,
            "cron_budget": self.budgets.cron,
            "chatbot_budget": self.budgets.chatbot,
            "cron_used": cron_used,
            "chatbot_used": chatbot_used,
            "cron_remaining": max(0, self.budgets.cron - cron_used),
            "chatbot_remaining": max(0, self.budgets.chatbot - chatbot_used),
            "calls": dict(window.calls) if window else {},
            "version": window.v if window else 0,
            "expires_in": round(self.seconds_until_reset(), 1),
        }

    def reset(self) -> None:
        with self._connection() as conn, immediate(conn):
            conn.execute("DELETE FROM kv_store WHERE key = ?;", (self._key,))
        logger.info("Rate window reset")

    def _connection(self) -> _ClosingConnection:
        return _ClosingConnection(connect(self._db_path, autocommit=True, timeout=5.0))

    def _read(self, conn: sqlite3.Connection) -> tuple[Optional[int], Optional[RateWindow]]:
        row = conn.execute(
            "SELECT value, version FROM kv_store WHERE key = ?;", (self._key,)
        ).fetchone()
        if row is None:
            return None, None
        return int(row["version"]), RateWindow.from_json(str(row["value"]))

    def _cas(self, conn: sqlite3.Connection, expected: Optional[int], window: RateWindow) -> None:
        """Write `window` only if the stored version is still `expected`."""
        if expected is None:
            cur = conn.execute(
                "INSERT OR IGNORE INTO kv_store(key, value, version, expires_at) VALUES (?, ?, ?, ?);",
                (self._key, window.to_json(), window.v, window.expires),
            )
        else:
            cur = conn.execute(
                """
                UPDATE kv_store SET value = ?, version = ?, expires_at = ?, updated_at = datetime('now')
                WHERE key = ? AND version = ?;
                """,
                (window.to_json(), window.v, window.expires, self._key, expected),
            )
        if cur.rowcount != 1:
            raise _CasConflict(f"version moved, expected={expected}")


class _ClosingConnection:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def __enter__(self) -> sqlite3.Connection:
        return self._conn

    def __exit__(self, exc_type, exc, tb) -> None:
        self._conn.close()
