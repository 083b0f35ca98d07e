#!filepath: src/ontario_obits_app/modules/base.py
from __future__ import annotations

import sqlite3
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

from ontario_obits_app.llm.models import ChatClient
from ontario_obits_app.llm.rate_limiter import TokenBudgetLimiter
from ontario_obits_app.settings import AppConfig
from ontario_obits_app.telemetry.events import Telemetry
from ontario_obits_app.utils.clock import Clock, epoch_now


class StageResult(Protocol):
    def as_dict(self) -> dict[str, Any]: ...


class Stage(Protocol):
    """A pipeline stage."""

    def run(self) -> StageResult:
        """Run one pass of the stage.

        Returns:
            StageResult: Aggregate counts for the pass.
        """


@dataclass(frozen=True, slots=True)
class StageContext:
    """Shared context passed to stages.

    Attributes:
        conn: Connection used for record reads and writes.
        app: Validated application config.
        db_path: Database path, for components that open their own connection.
        telemetry: Structured event sink.
        limiter: Shared token budget, required by LLM stages.
        llm: Chat client, required by LLM stages.
        clock: Epoch clock.
        sleep: Sleep function, replaced in tests.
    """

    conn: sqlite3.Connection
    app: AppConfig
    db_path: str
    telemetry: Telemetry = field(default_factory=Telemetry)
    limiter: Optional[TokenBudgetLimiter] = None
    llm: Optional[ChatClient] = None
    clock: Clock = epoch_now
    sleep: Callable[[float], None] = time.sleep
