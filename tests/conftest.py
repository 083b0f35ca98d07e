#!filepath: tests/conftest.py
from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]


def pytest_configure() -> None:
    """Ensure src layout is importable during tests."""
    src = (ROOT / "src").resolve()
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))


class FakeClock:
    """Settable epoch clock."""

    def __init__(self, now: float = 1_780_000_000.0) -> None:
        self.now = float(now)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += float(seconds)


class FakeChat:
    """Chat client returning queued replies or raising queued errors."""

    def __init__(self, replies=None, tokens: int = 800) -> None:
        self.replies = list(replies or [])
        self.tokens = tokens
        self.requests = []

    def chat(self, req):
        from ontario_obits_app.llm.models import ChatResponse

        self.requests.append(req)
        if not self.replies:
            raise AssertionError("FakeChat has no reply queued")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return ChatResponse(content=reply, provider="fake", model=str(req.model), total_tokens=self.tokens)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "obits.db")


@pytest.fixture
def conn(db_path: str):
    from ontario_obits_app.db.migrate import ensure_schema

    c = ensure_schema(db_path)
    yield c
    c.close()


@pytest.fixture
def app_cfg(db_path: str):
    from ontario_obits_app.settings import AppConfig, PathsConfig

    return AppConfig(
        paths=PathsConfig(
            db=db_path,
            sources=str(ROOT / "configs" / "sources.yaml"),
            prompts_dir=str(ROOT / "configs" / "prompts"),
            data_root=str(Path(db_path).parent),
        )
    )


@pytest.fixture
def make_ctx(conn, app_cfg, db_path, clock):
    """Build a StageContext around the temp database."""
    from ontario_obits_app.llm.rate_limiter import TokenBudgetLimiter
    from ontario_obits_app.modules.base import StageContext
    from ontario_obits_app.telemetry.events import Telemetry

    def _make(llm=None, *, limiter=True, app=None, telemetry=None):
        cfg = app or app_cfg
        return StageContext(
            conn=conn,
            app=cfg,
            db_path=db_path,
            telemetry=telemetry or Telemetry.open(db_path, cfg.telemetry),
            limiter=TokenBudgetLimiter(db_path, cfg.rate_limiter, clock=clock) if limiter else None,
            llm=llm,
            clock=clock,
            sleep=lambda s: None,
        )

    return _make


LISTING_HTML = """
<html><body>
<div class="ap_ad_wrap">
  <a class="ap_link" href="/obituary/jane-doe-123">
    <div class="ap_name">Jane Doe Obituary</div>
  </a>
  <div class="ap_dates">March 3, 1941 - February 13, 2026</div>
  <div class="ap_location">Newmarket, ON</div>
  <div class="ap_text">Jane passed away peacefully in Newmarket on February 13, 2026, at the age of 84. She will be missed by her family.</div>
</div>
<div class="ap_ad_wrap">
  <a class="ap_link" href="/obituary/john-smith-456"><div class="ap_name">John Smith</div></a>
  <div class="ap_dates">January 5, 2026</div>
  <div class="ap_text">John died at home.</div>
</div>
<div class="ap_ad_wrap">
  <a class="ap_link" href="/obituary/ruth-ng-789"><div class="ap_name">Ruth Ng</div></a>
  <div class="year_birth">1950</div><div class="year_death">2025</div>
</div>
<div class="ap_ad_wrap"><div class="ap_dates">No name here</div></div>
</body></html>
"""


@dataclass
class FakeResponse:
    status_code: int
    text: str = ""


class FakeSession:
    """Returns queued responses per URL; the last one repeats."""

    def __init__(self, pages: dict) -> None:
        self.pages = {k: list(v) if isinstance(v, list) else [v] for k, v in pages.items()}
        self.calls: list[str] = []

    def get(self, url, timeout=None, headers=None):
        self.calls.append(url)
        queue = self.pages.get(url) or [FakeResponse(404)]
        return queue.pop(0) if len(queue) > 1 else queue[0]
