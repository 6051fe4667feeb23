"""Pytest fixtures and utilities for the TradeGuard test suite."""
import asyncio
import json
import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from tradeguard.audit.hash_chain import AuditLog
from tradeguard.core.config import TradeGuardConfig
from tradeguard.core.context import InMemoryMarketData
from tradeguard.core.engine import TradingEngine
from tradeguard.core.models import (
    PortfolioState, PositionHolding, TradeAction, TradeProposal
)
from tradeguard.execution.paper import PaperBroker
from tradeguard.providers.base import RawResponse, ReasoningProvider
from tradeguard.providers.cascade import ProviderCascade
from tradeguard.risk.modes import build_mode_policies
from tradeguard.storage.database import Database


# =============================================================================
# Reference Times (New York is UTC-4 in October)
# =============================================================================

MONDAY_OPEN = datetime(2026, 10, 19, 14, 0, tzinfo=timezone.utc)       # Mon 10:00 ET
MONDAY_EVENING = datetime(2026, 10, 19, 22, 0, tzinfo=timezone.utc)    # Mon 18:00 ET
TUESDAY_OPEN = datetime(2026, 10, 20, 13, 30, tzinfo=timezone.utc)     # Tue 09:30 ET
SATURDAY_NOON = datetime(2026, 10, 24, 16, 0, tzinfo=timezone.utc)     # Sat 12:00 ET

DEFAULT_PRICES = {
    "AAPL": "150",
    "MSFT": "400",
    "NVDA": "120",
    "SPY": "500",
}


# =============================================================================
# Test Doubles
# =============================================================================

class FixedClock:
    """Controllable clock for the engine."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class StaticProvider(ReasoningProvider):
    """Provider returning a canned body, or failing on demand."""

    kind = "static"

    def __init__(self, provider_id: str, body: Any = None, delay: float = 0,
                 error: Optional[Exception] = None):
        super().__init__(provider_id)
        self.body = body
        self.delay = delay
        self.error = error
        self.calls = 0
        self.closed = False

    async def query(self, context) -> RawResponse:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return RawResponse(provider_id=self.provider_id, kind=self.kind, body=self.body)

    async def close(self):
        self.closed = True


def decisions_body(*items: Dict[str, Any]) -> str:
    """Provider body in the usual ``{"decisions": [...]}`` envelope."""
    return json.dumps({"decisions": list(items)})


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture
def tg_config():
    """Default configuration with two books and the New York calendar."""
    config = TradeGuardConfig()
    config.portfolio.portfolio_tags_str = "KALIC,DC"
    config.portfolio.starting_capital = Decimal("1000000")
    config.market_hours.holidays_str = ""
    config.modes.default_mode = "normal"
    return config


@pytest.fixture
def mode_policies(tg_config):
    """Mode table built from the default configuration."""
    return build_mode_policies(tg_config)


# =============================================================================
# Model Fixtures
# =============================================================================

@pytest.fixture
def million_portfolio():
    """A $1M all-cash book."""
    return PortfolioState(portfolio_tag="KALIC", cash=Decimal("1000000"))


@pytest.fixture
def portfolio_with_aapl():
    """A $1M book holding 100 AAPL at $140."""
    return PortfolioState(
        portfolio_tag="KALIC",
        cash=Decimal("985000"),
        positions={
            "AAPL": PositionHolding(
                symbol="AAPL",
                quantity=Decimal("100"),
                avg_price=Decimal("140"),
                market_price=Decimal("150"),
            )
        },
    )


@pytest.fixture
def buy_proposal():
    """BUY 100 AAPL with confluence."""
    return TradeProposal(
        symbol="AAPL",
        action=TradeAction.BUY,
        quantity=Decimal("100"),
        confidence=0.8,
        reasoning="RSI oversold, MACD crossover and rising volume",
        signals=["RSI", "MACD", "VOLUME"],
        predicted_direction="up",
        predicted_timeframe_days=5,
    )


# =============================================================================
# Component Fixtures
# =============================================================================

@pytest.fixture
def clock():
    """Clock fixed at Monday 10:00 New York time."""
    return FixedClock(MONDAY_OPEN)


@pytest.fixture
def market_data():
    """In-memory prices stamped at Monday's open."""
    data = InMemoryMarketData()
    data.load_prices(DEFAULT_PRICES, timestamp=MONDAY_OPEN)
    return data


@pytest.fixture
def broker(market_data):
    """Paper broker with KALIC and DC books of $1M each."""
    return PaperBroker(market_data, ["KALIC", "DC"], starting_capital=Decimal("1000000"))


@pytest.fixture
def audit_log():
    """In-memory audit log."""
    return AuditLog()


@pytest_asyncio.fixture
async def test_database():
    """Create an in-memory test database."""
    db = Database("sqlite+aiosqlite:///:memory:")
    await db.initialize()
    yield db
    await db.close()


@pytest.fixture
def provider():
    """Single static provider; tests set ``provider.body``."""
    return StaticProvider("primary", body=decisions_body())


@pytest_asyncio.fixture
async def engine(tg_config, provider, market_data, broker, test_database, audit_log, clock):
    """Engine wired to in-memory collaborators."""
    cascade = ProviderCascade([provider], timeout_seconds=1.0)
    trading_engine = TradingEngine(
        cascade=cascade,
        market_data=market_data,
        executor=broker,
        portfolio_source=broker,
        database=test_database,
        audit=audit_log,
        config=tg_config,
        clock=clock,
    )
    await trading_engine.initialize()
    yield trading_engine
    await trading_engine.shutdown()


# =============================================================================
# Helper Functions
# =============================================================================

def audit_events(audit: AuditLog) -> List[str]:
    """Event names in the audit log, oldest first."""
    return [r["payload"].get("event") for r in audit._records]


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers."""
    for item in items:
        if not any(marker.name in ["unit", "integration"] for marker in item.own_markers):
            item.add_marker(pytest.mark.unit)
