#!filepath: src/ontario_obits_app/sources/registry.py
from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

from ontario_obits_app.settings import CircuitBreakerConfig
from ontario_obits_app.sources.models import (
    ADAPTER_KINDS,
    AdapterConfig,
    Source,
    decode_config_json,
    dump_adapter_config,
)
from ontario_obits_app.utils.clock import Clock, epoch_now, sql_ts, sql_ts_plus
from ontario_obits_app.utils.logger import get_logger
from ontario_obits_app.utils.serialization import load_yaml_dict

logger = get_logger(__name__)

UPSERT_FIELDS: tuple[str, ...] = (
    "domain",
    "name",
    "base_url",
    "adapter_type",
    "config",
    "city",
    "region",
    "province",
    "enabled",
    "image_allowlisted",
    "max_pages_per_run",
    "min_request_interval",
)

UPSERT_DEFAULTS: dict[str, Any] = {
    "name": "",
    "base_url": "",
    "adapter_type": "generic_html",
    "config": "{}",
    "city": "",
    "region": "",
    "province": "ON",
    "enabled": 1,
    "image_allowlisted": 0,
    "max_pages_per_run": 5,
    "min_request_interval": 2.0,
}


@dataclass(frozen=True, slots=True)
class UpsertResult:
    source_id: int
    created: bool


@dataclass(frozen=True, slots=True)
class RegistryStats:
    total: int
    enabled: int
    disabled: int
    circuit_open: int

    def as_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "enabled": self.enabled,
            "disabled": self.disabled,
            "circuit_open": self.circuit_open,
        }


def _clean_upsert(data: Mapping[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key in UPSERT_FIELDS:
        if key not in data:
            continue
        value = data[key]
        if key == "config":
            value = json.dumps(decode_config_json(value), ensure_ascii=False, sort_keys=True)
        elif key in ("enabled", "image_allowlisted"):
            value = 1 if value in (True, 1, "1", "true", "yes", "on") else 0
        elif key == "max_pages_per_run":
            value = max(1, int(value or 1))
        elif key == "min_request_interval":
            value = max(0.0, float(value or 0.0))
        elif key == "adapter_type":
            value = str(value or "generic_html").strip()
        else:
            value = str(value or "").strip()
        out[key] = value
    return out


class SourceRegistry:
    """Persistent catalog of sources with a consecutive-failure circuit breaker.

    A source accumulating `failure_threshold` failures in a row is excluded
    from `get_active_sources` for `open_hours`. Any success closes the circuit
    and resets the streak.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        cfg: Optional[CircuitBreakerConfig] = None,
        *,
        clock: Clock = epoch_now,
    ) -> None:
        self._conn = conn
        self._cfg = cfg or CircuitBreakerConfig()
        self._clock = clock

    def get_active_sources(self) -> list[Source]:
        """Enabled sources with a closed circuit, least recently succeeded first."""
        rows = self._conn.execute(
            """
            SELECT * FROM sources
            WHERE enabled = 1
              AND (circuit_open_until IS NULL OR circuit_open_until <= ?)
            ORDER BY last_success IS NOT NULL, last_success ASC, id ASC;
            """,
            (sql_ts(self._clock()),),
        ).fetchall()
        return [Source.from_row(r) for r in rows]

    def list_sources(self) -> list[Source]:
        rows = self._conn.execute("SELECT * FROM sources ORDER BY domain;").fetchall()
        return [Source.from_row(r) for r in rows]

    def get_source(self, source_id: int) -> Optional[Source]:
        row = self._conn.execute("SELECT * FROM sources WHERE id = ?;", (int(source_id),)).fetchone()
        return Source.from_row(row) if row is not None else None

    def get_source_by_domain(self, domain: str) -> Optional[Source]:
        row = self._conn.execute(
            "SELECT * FROM sources WHERE domain = ?;", (str(domain).strip(),)
        ).fetchone()
        return Source.from_row(row) if row is not None else None

    def get_sources_by_location(self, region: str = "", city: str = "") -> list[Source]:
        clauses = ["enabled = 1"]
        params: list[Any] = []
        if region:
            clauses.append("lower(region) = lower(?)")
            params.append(region)
        if city:
            clauses.append("lower(city) = lower(?)")
            params.append(city)
        rows = self._conn.execute(
            f"SELECT * FROM sources WHERE {' AND '.join(clauses)} ORDER BY domain;", params
        ).fetchall()
        return [Source.from_row(r) for r in rows]

    def record_success(self, source_id: int, count: int) -> None:
        """Reset the failure streak, close the circuit and add to the total."""
        now = sql_ts(self._clock())
        self._conn.execute(
            """
            UPDATE sources SET
              consecutive_failures = 0,
              circuit_open_until = NULL,
              last_success = ?,
              total_collected = total_collected + ?,
              updated_at = ?
            WHERE id = ?;
            """,
            (now, max(0, int(count)), now, int(source_id)),
        )
        self._conn.commit()

    def record_failure(self, source_id: int, reason: str, threshold: Optional[int] = None) -> bool:
        """Count one failure, opening the circuit once the streak reaches the threshold.

        Returns:
            bool: True only when this failure moved the circuit from closed to
                open. Failures while it is already open return False.
        """
        limit = int(threshold if threshold is not None else self._cfg.failure_threshold)
        epoch = self._clock()
        now = sql_ts(epoch)
        open_until = sql_ts_plus(epoch, hours=self._cfg.open_hours)
        before = self._conn.execute(
            "SELECT circuit_open_until FROM sources WHERE id = ?;", (int(source_id),)
        ).fetchone()
        if before is None:
            return False
        was_open = before["circuit_open_until"] is not None and before["circuit_open_until"] > now
        self._conn.execute(
            """
            UPDATE sources SET
              consecutive_failures = consecutive_failures + 1,
              last_failure = ?,
              last_failure_reason = ?,
              circuit_open_until = CASE
                WHEN consecutive_failures + 1 >= ? THEN ?
                ELSE circuit_open_until
              END,
              updated_at = ?
            WHERE id = ?;
            """,
            (now, str(reason or "")[:500], limit, open_until, now, int(source_id)),
        )
        self._conn.commit()
        row = self._conn.execute(
            "SELECT domain, consecutive_failures FROM sources WHERE id = ?;", (int(source_id),)
        ).fetchone()
        opened = not was_open and int(row["consecutive_failures"]) >= limit
        if opened:
            logger.warning(
                f"Circuit opened, source={row['domain']}, failures={row['consecutive_failures']}, until={open_until}"
            )
        return opened

    def upsert_source(self, data: Mapping[str, Any]) -> UpsertResult:
        """Create or update a source keyed by `domain`.

        Only whitelisted fields reach storage. An invalid JSON config is
        stored as `{}`.

        Raises:
            ValueError: When `domain` is missing.
        """
        fields = _clean_upsert(data)
        domain = str(fields.get("domain") or "").strip().lower()
        if not domain:
            raise ValueError("Source upsert requires a domain")
        fields["domain"] = domain
        if fields.get("adapter_type") and fields["adapter_type"] not in ADAPTER_KINDS:
            logger.warning(f"Unknown adapter type, domain={domain}, adapter={fields['adapter_type']}")

        existing = self._conn.execute("SELECT id FROM sources WHERE domain = ?;", (domain,)).fetchone()
        now = sql_ts(self._clock())
        if existing is None:
            row = {**UPSERT_DEFAULTS, **fields}
            cols = list(row.keys())
            self._conn.execute(
                f"INSERT INTO sources({', '.join(cols)}, created_at, updated_at) "
                f"VALUES ({', '.join('?' for _ in cols)}, ?, ?);",
                [row[c] for c in cols] + [now, now],
            )
            self._conn.commit()
            created = self._conn.execute("SELECT id FROM sources WHERE domain = ?;", (domain,)).fetchone()
            return UpsertResult(source_id=int(created["id"]), created=True)

        updates = {k: v for k, v in fields.items() if k != "domain"}
        if updates:
            assignments = ", ".join(f"{k} = ?" for k in updates)
            self._conn.execute(
                f"UPDATE sources SET {assignments}, updated_at = ? WHERE id = ?;",
                list(updates.values()) + [now, int(existing["id"])],
            )
            self._conn.commit()
        return UpsertResult(source_id=int(existing["id"]), created=False)

    def save_adapter_config(self, source_id: int, cfg: AdapterConfig) -> None:
        self._conn.execute(
            "UPDATE sources SET config = ?, updated_at = ? WHERE id = ?;",
            (dump_adapter_config(cfg), sql_ts(self._clock()), int(source_id)),
        )
        self._conn.commit()

    def save_learned_selector(self, source: Source, selector: str) -> None:
        """Persist a container selector found by structure detection."""
        current = self.get_source(source.id) or source
        updated = current.config.model_copy(update={"learned_container_selector": selector})
        self.save_adapter_config(source.id, updated)
        logger.info(f"Learned selector saved, source={source.domain}, selector={selector}")

    def set_enabled(self, source_id: int, enabled: bool) -> bool:
        cur = self._conn.execute(
            "UPDATE sources SET enabled = ?, updated_at = ? WHERE id = ?;",
            (1 if enabled else 0, sql_ts(self._clock()), int(source_id)),
        )
        self._conn.commit()
        return cur.rowcount > 0

    def ban_domain_pattern(self, pattern: str) -> int:
        """Disable every source whose domain matches a `*` glob.

        Returns:
            int: Number of sources disabled.
        """
        raw = str(pattern or "").strip().lower()
        if not raw or raw.strip("*") == "":
            raise ValueError("Ban pattern must name part of a domain")
        like = raw.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_").replace("*", "%")
        cur = self._conn.execute(
            "UPDATE sources SET enabled = 0, updated_at = ? WHERE enabled = 1 AND domain LIKE ? ESCAPE '\\';",
            (sql_ts(self._clock()), like),
        )
        self._conn.commit()
        logger.info(f"Domain pattern banned, pattern={raw}, disabled={cur.rowcount}")
        return int(cur.rowcount)

    def delete_source(self, source_id: int) -> bool:
        cur = self._conn.execute("DELETE FROM sources WHERE id = ?;", (int(source_id),))
        self._conn.commit()
        return cur.rowcount > 0

    def get_stats(self) -> RegistryStats:
        row = self._conn.execute(
            """
            SELECT
              COUNT(1) AS total,
              COALESCE(SUM(enabled = 1), 0) AS enabled,
              COALESCE(SUM(enabled = 0), 0) AS disabled,
              COALESCE(SUM(circuit_open_until IS NOT NULL AND circuit_open_until > ?), 0) AS circuit_open
            FROM sources;
            """,
            (sql_ts(self._clock()),),
        ).fetchone()
        return RegistryStats(
            total=int(row["total"]),
            enabled=int(row["enabled"]),
            disabled=int(row["disabled"]),
            circuit_open=int(row["circuit_open"]),
        )

    def seed_defaults(self, path: Path) -> int:
        """Insert every source listed in a YAML catalog that is not yet known.

        Existing rows are left alone so operator changes survive a re-seed.

        Returns:
            int: Number of sources newly created.
        """
        res = load_yaml_dict(path)
        if not res.ok:
            logger.error(f"Failed to load seed sources, path={path}")
            return 0
        entries = res.data.get("sources", [])
        if not isinstance(entries, list):
            logger.error(f"Invalid seed sources, sources is not a list, path={path}")
            return 0

        created = 0
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            if self.get_source_by_domain(str(entry.get("domain") or "").strip().lower()) is not None:
                continue
            try:
                if self.upsert_source(entry).created:
                    created += 1
            except ValueError as e:
                logger.warning(f"Skipping seed source, err={e}")
        logger.info(f"Seed sources applied, path={path}, entries={len(entries)}, created={created}")
        return created
