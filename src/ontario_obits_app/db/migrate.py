#!filepath: src/ontario_obits_app/db/migrate.py
from __future__ import annotations

import os
import sqlite3
from pathlib import Path

from ontario_obits_app.db.schema import SCHEMA
from ontario_obits_app.utils.logger import get_logger

logger = get_logger(__name__)


def connect(db_path: str, *, autocommit: bool = False, timeout: float = 30.0) -> sqlite3.Connection:
    """Open an sqlite connection with the pragmas every job relies on.

    Args:
        db_path: Database path, or ":memory:".
        autocommit: Open with `isolation_level=None` so callers drive
            transactions explicitly with BEGIN IMMEDIATE.
        timeout: Busy timeout in seconds.

    Returns:
        sqlite3.Connection: Open connection.
    """
    if db_path != ":memory:":
        Path(db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(
        db_path,
        timeout=timeout,
        isolation_level=None if autocommit else "",
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    if db_path != ":memory:":
        conn.execute("PRAGMA journal_mode = WAL;")
        conn.execute("PRAGMA synchronous = NORMAL;")
    return conn


def _columns(conn: sqlite3.Connection, table: str) -> set[str]:
    rows = conn.execute(f"PRAGMA table_info({table});").fetchall()
    return {r["name"] for r in rows}


def _add_column_if_missing(conn: sqlite3.Connection, table: str, col_def: str) -> bool:
    col_name = col_def.strip().split()[0]
    if col_name in _columns(conn, table):
        return False
    conn.execute(f"ALTER TABLE {table} ADD COLUMN {col_def};")
    return True


def _apply_migrations(conn: sqlite3.Connection) -> list[str]:
    applied: list[str] = []

    existing_tables = {
        r[0]
        for r in conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table';"
        ).fetchall()
    }

    if "obituaries" in existing_tables:
        for col_def in (
            "ai_description_hash TEXT",
            "published_at TEXT",
            "audit_status TEXT",
            "audit_flags TEXT",
            "last_audit_at TEXT",
            "last_audited_hash TEXT",
            "audit_requeue_count INTEGER NOT NULL DEFAULT 0",
            "rewrite_requested_at TEXT",
            "rewrite_request_reason TEXT",
            "last_rewrite_error_at TEXT",
            "suppressed_at TEXT",
            "suppressed_reason TEXT",
        ):
            if _add_column_if_missing(conn, "obituaries", col_def):
                applied.append(f"add_column=obituaries.{col_def.split()[0]}")

    if "sources" in existing_tables:
        for col_def in (
            "province TEXT NOT NULL DEFAULT 'ON'",
            "image_allowlisted INTEGER NOT NULL DEFAULT 0",
            "max_pages_per_run INTEGER NOT NULL DEFAULT 5",
            "min_request_interval REAL NOT NULL DEFAULT 2.0",
            "last_failure_reason TEXT",
        ):
            if _add_column_if_missing(conn, "sources", col_def):
                applied.append(f"add_column=sources.{col_def.split()[0]}")

    return applied


def ensure_schema(db_path: str) -> sqlite3.Connection:
    """Create tables, apply column migrations and return a connection.

    Args:
        db_path: Database path.

    Returns:
        sqlite3.Connection: Open connection with the schema in place.
    """
    conn = connect(db_path)
    conn.executescript(SCHEMA)
    applied = _apply_migrations(conn)
    if applied:
        logger.info(f"Schema migrated, db={db_path}, applied={','.join(applied)}")
    conn.commit()
    return conn


def recreate_schema(db_path: str) -> sqlite3.Connection:
    """Drop the database file and build the schema from scratch."""
    if os.path.exists(db_path):
        os.remove(db_path)
    return ensure_schema(db_path)
