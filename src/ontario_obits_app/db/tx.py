#!filepath: src/ontario_obits_app/db/tx.py
from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from typing import Iterator


@contextmanager
def immediate(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block inside BEGIN IMMEDIATE, committing on success.

    The write lock is taken up front, so no other connection can commit
    between the reads and writes done inside the block. The connection
    must be in autocommit mode (`isolation_level=None`).

    Raises:
        sqlite3.OperationalError: When the lock cannot be taken within the
            connection busy timeout.
    """
    conn.execute("BEGIN IMMEDIATE;")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK;")
        raise
    conn.execute("COMMIT;")
