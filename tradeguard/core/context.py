"""Market data access and market context assembly.

The context builder is read-only: it gathers the book's portfolio, quotes for
the watchlist and held symbols, the benchmark price and recent decisions into
a single MarketContext for the reasoning providers. Quotes older than the
configured age are listed in ``stale_symbols`` rather than dropped.
"""
from abc import ABC, abstractmethod
from bisect import bisect_right
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

import structlog

from tradeguard.core.config import PortfolioConfig
from tradeguard.core.models import (
    MarketContext, ModePolicy, Override, PortfolioState, Quote, TradeDecision,
    TradingModeName, utc_now
)

logger = structlog.get_logger(__name__)


class MarketDataSource(ABC):
    """Read-only source of prices and indicators."""

    @abstractmethod
    async def get_quotes(self, symbols: Iterable[str]) -> Dict[str, Quote]:
        """Latest quote per symbol; unknown symbols are omitted."""

    async def get_quote(self, symbol: str) -> Optional[Quote]:
        quotes = await self.get_quotes([symbol])
        return quotes.get(symbol)

    async def get_price_at(self, symbol: str, when: datetime) -> Optional[Decimal]:
        """Price at or before ``when``. Defaults to the latest quote."""
        quote = await self.get_quote(symbol)
        return quote.price if quote else None


class InMemoryMarketData(MarketDataSource):
    """Price store for paper trading and tests.

    Keeps a time-ordered history per symbol so later lookups by time (for
    prediction evaluation) see the price that was current at that moment.
    """

    def __init__(self):
        self._history: Dict[str, List[Tuple[datetime, Quote]]] = {}

    def set_price(
        self,
        symbol: str,
        price,
        timestamp: Optional[datetime] = None,
        change_pct: Optional[float] = None,
        indicators: Optional[Dict[str, float]] = None,
    ) -> Quote:
        symbol = symbol.upper()
        quote = Quote(
            symbol=symbol,
            price=Decimal(str(price)),
            timestamp=timestamp or utc_now(),
            change_pct=change_pct,
            indicators=indicators or {},
        )
        history = self._history.setdefault(symbol, [])
        history.append((quote.timestamp, quote))
        history.sort(key=lambda item: item[0])
        return quote

    def load_prices(self, prices: Dict[str, object], timestamp: Optional[datetime] = None):
        """Bulk-load ``{symbol: price}``."""
        for symbol, price in prices.items():
            self.set_price(symbol, price, timestamp)

    @property
    def symbols(self) -> List[str]:
        return sorted(self._history)

    async def get_quotes(self, symbols: Iterable[str]) -> Dict[str, Quote]:
        quotes = {}
        for symbol in symbols:
            history = self._history.get(symbol.upper())
            if history:
                quotes[symbol.upper()] = history[-1][1]
        return quotes

    async def get_price_at(self, symbol: str, when: datetime) -> Optional[Decimal]:
        history = self._history.get(symbol.upper())
        if not history:
            return None
        idx = bisect_right([ts for ts, _ in history], when)
        if idx == 0:
            return None
        return history[idx - 1][1].price


class MarketContextBuilder:
    """Assembles the MarketContext for one cycle without mutating anything."""

    def __init__(self, market_data: MarketDataSource, config: Optional[PortfolioConfig] = None):
        self.market_data = market_data
        self.config = config or PortfolioConfig()

    async def build(
        self,
        portfolio: PortfolioState,
        mode: TradingModeName,
        mode_policy: ModePolicy,
        override: Optional[Override] = None,
        trades_today: int = 0,
        session_id: Optional[str] = None,
        recent_decisions: Optional[List[TradeDecision]] = None,
        now: Optional[datetime] = None,
    ) -> MarketContext:
        """
        Build a context snapshot.

        Args:
            portfolio: Current state of the book
            mode: Active trading mode
            mode_policy: Limits of the active mode
            override: Active override, if any
            trades_today: Trades approved or deferred so far today
            session_id: Active session
            recent_decisions: Latest decisions, newest first
            now: Snapshot time

        Returns:
            MarketContext ready for the provider prompt
        """
        now = now or utc_now()
        benchmark = self.config.benchmark_symbol
        symbols = list(dict.fromkeys(
            self.config.watchlist + list(portfolio.positions) + [benchmark]
        ))
        quotes = await self.market_data.get_quotes(symbols)

        max_age = timedelta(minutes=self.config.stale_price_minutes)
        stale = sorted(s for s, q in quotes.items() if now - q.timestamp > max_age)
        missing = [s for s in symbols if s not in quotes]
        if stale or missing:
            logger.warning(
                "context.stale_prices",
                portfolio=portfolio.portfolio_tag,
                stale=stale or None,
                missing=missing or None,
            )

        benchmark_quote = quotes.get(benchmark)
        context = MarketContext(
            portfolio_tag=portfolio.portfolio_tag,
            session_id=session_id,
            generated_at=now,
            mode=mode,
            mode_policy=mode_policy,
            override_pct=override.max_position_pct if override else None,
            trades_today=trades_today,
            portfolio=portfolio,
            quotes=quotes,
            stale_symbols=stale,
            benchmark_symbol=benchmark,
            benchmark_price=benchmark_quote.price if benchmark_quote else None,
            recent_decisions=[
                {
                    "timestamp": d.timestamp.isoformat(),
                    "symbol": d.symbol,
                    "action": d.action.value,
                    "outcome": d.outcome.value,
                    "rule_id": d.rule_id,
                }
                for d in (recent_decisions or [])[:10]
            ],
        )
        logger.debug(
            "context.built",
            portfolio=portfolio.portfolio_tag,
            quotes=len(quotes),
            stale=len(stale),
        )
        return context
