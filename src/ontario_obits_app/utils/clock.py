#!filepath: src/ontario_obits_app/utils/clock.py
from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from typing import Callable

SQL_TS_FORMAT = "%Y-%m-%d %H:%M:%S"

Clock = Callable[[], float]


def epoch_now() -> float:
    return time.time()


def sql_ts(epoch: float | None = None) -> str:
    """Format an epoch as a sortable UTC timestamp, matching sqlite datetime()."""
    value = epoch_now() if epoch is None else float(epoch)
    return datetime.fromtimestamp(value, tz=timezone.utc).strftime(SQL_TS_FORMAT)


def sql_ts_plus(epoch: float, *, hours: float = 0, seconds: float = 0) -> str:
    base = datetime.fromtimestamp(float(epoch), tz=timezone.utc)
    return (base + timedelta(hours=hours, seconds=seconds)).strftime(SQL_TS_FORMAT)
