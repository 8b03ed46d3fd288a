"""Pytest configuration and shared fixtures for FolioOracle tests.

Every test runs against a fresh in-memory SQLite database and a scripted
oracle, so nothing touches the real database or a hosted model.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from config import reload_settings
from db_engine import init_db, reset_engine
from models import AccountType, AssetKind, Exchange, Holding
from prompts import clear_prompt_cache
from repositories import AccountRepository, HoldingRepository
from services import HoldingFeed, MarketDataService

USER_ID = "user-1"
NOW = datetime(2024, 7, 29, 12, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def isolated_db(monkeypatch: pytest.MonkeyPatch):
    """Point settings at a private in-memory database for each test."""
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.setenv("METRICS_STALENESS_HOURS", "24")
    monkeypatch.setenv("REFRESH_DELAY_SECONDS", "1.0")
    monkeypatch.setenv("PRICE_SYNC_INTERVAL_SECONDS", "60")
    monkeypatch.setenv("BATCH_PRICE_FORMAT", "text")
    reload_settings()
    reset_engine()
    clear_prompt_cache()
    init_db()

    yield

    reset_engine()


# =============================================================================
# Oracle Fixtures
# =============================================================================


class FakeOracle:
    """Scripted oracle: returns queued replies in order and records every call."""

    def __init__(self, replies: Optional[List[Any]] = None):
        self.replies: List[Any] = list(replies or [])
        self.calls: List[Dict[str, Any]] = []

    def queue(self, *replies: Any) -> "FakeOracle":
        self.replies.extend(replies)
        return self

    def generate(self, prompt, use_search=False, schema=None, temperature=None) -> str:
        self.calls.append({
            "prompt": prompt,
            "use_search": use_search,
            "schema": schema,
            "temperature": temperature,
        })
        if not self.replies:
            raise AssertionError(f"Unexpected oracle call: {prompt[:80]}")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    @property
    def prompts(self) -> List[str]:
        return [call["prompt"] for call in self.calls]


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def market_data(oracle: FakeOracle) -> MarketDataService:
    return MarketDataService(oracle)


@pytest.fixture
def feed() -> HoldingFeed:
    return HoldingFeed()


# =============================================================================
# Time Fixtures
# =============================================================================


class FakeClock:
    """Clock whose time only moves when a test (or the fake sleep) moves it."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


class SleepRecorder:
    """Replacement for time.sleep that records delays and advances a FakeClock."""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.delays: List[float] = []
        self.clock = clock

    def __call__(self, seconds: float):
        self.delays.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps(clock: FakeClock) -> SleepRecorder:
    return SleepRecorder(clock)


# =============================================================================
# Factories
# =============================================================================


@pytest.fixture
def account():
    return AccountRepository.add(USER_ID, "My TFSA", AccountType.TFSA)


def make_stock(account_id: int, ticker: str = "AAPL", exchange: Exchange = Exchange.USA, **fields) -> Holding:
    values = dict(
        user_id=USER_ID,
        account_id=account_id,
        kind=AssetKind.STOCK,
        name=f"{ticker} Inc.",
        ticker=ticker,
        exchange=exchange,
        shares=10.0,
        avg_cost=100.0,
        current_price=120.0,
    )
    values.update(fields)
    return HoldingRepository.add(Holding(**values))


def lookup_reply(
    ticker: str = "AAPL",
    name: str = "Apple Inc.",
    price: str = "195.50",
    **overrides: str
) -> str:
    """A well-formed full-lookup answer in the delimited wire format."""
    values = {
        "TICKER": ticker,
        "NAME": name,
        "PRICE": price,
        "YEARLY_DIVIDEND": "1.00",
        "PE_RATIO": "30.5",
        "FORWARD_PE": "28.1",
        "52_WEEK_LOW": "164.08",
        "52_WEEK_HIGH": "199.62",
        "COMPANY_PROFILE": "Designs consumer electronics.",
        "MARKET_CAP": "3.0T",
        "DIVIDEND_YIELD": "0.51",
    }
    values.update(overrides)
    return "|||".join(f"{key}:::{value}" for key, value in values.items())
