"""Per-portfolio risk controls.

Bundles everything the guardrails and the queue need for one book behind a
single asyncio lock: the mode controller, the circuit breaker and the count
of trades approved today. Books never share a lock, so KALIC and DC can trade
concurrently.
"""
import asyncio
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import structlog

from tradeguard.core.config import TradeGuardConfig, tradeguard_config
from tradeguard.core.models import TradingModeName, utc_now
from tradeguard.risk.circuit_breaker import BreakerEvent, CircuitBreaker
from tradeguard.risk.modes import ModeController, build_mode_policies

logger = structlog.get_logger(__name__)


class PortfolioControls:
    """Lock, mode, breaker and daily trade counter for one book."""

    def __init__(self, portfolio_tag: str, config: Optional[TradeGuardConfig] = None):
        config = config or tradeguard_config
        self.portfolio_tag = portfolio_tag
        self.lock = asyncio.Lock()
        self.modes = ModeController(
            portfolio_tag,
            build_mode_policies(config),
            TradingModeName(config.modes.default_mode),
        )
        self.breaker = CircuitBreaker(portfolio_tag, self.modes, config.circuit_breaker)
        self._trades_day: Optional[str] = None
        self._trades_today = 0

    def trades_today(self, now: Optional[datetime] = None) -> int:
        day = self.breaker.trading_day(now or utc_now())
        if day != self._trades_day:
            self._trades_day = day
            self._trades_today = 0
        return self._trades_today

    def record_trade(self, now: Optional[datetime] = None) -> int:
        """Count one approved or deferred trade against today's budget."""
        count = self.trades_today(now) + 1
        self._trades_today = count
        return count

    def refresh(self, now: Optional[datetime] = None, portfolio_value=None) -> List[BreakerEvent]:
        """Apply time-based recovery. Call with the lock held."""
        now = now or utc_now()
        self.modes.active_override(now)
        return self.breaker.refresh(now, portfolio_value)


class ControlRegistry:
    """Controls for every configured book, created on first use."""

    def __init__(self, config: Optional[TradeGuardConfig] = None,
                 portfolio_tags: Optional[Iterable[str]] = None):
        self.config = config or tradeguard_config
        self._controls: Dict[str, PortfolioControls] = {}
        for tag in portfolio_tags or self.config.portfolio.portfolio_tags:
            self.get(tag)

    def get(self, portfolio_tag: str) -> PortfolioControls:
        tag = portfolio_tag.upper()
        controls = self._controls.get(tag)
        if controls is None:
            controls = PortfolioControls(tag, self.config)
            self._controls[tag] = controls
            logger.debug("controls.created", portfolio=tag)
        return controls

    def __contains__(self, portfolio_tag: str) -> bool:
        return portfolio_tag.upper() in self._controls

    @property
    def portfolio_tags(self) -> List[str]:
        return list(self._controls)
