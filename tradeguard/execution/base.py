"""Collaborator interfaces for order execution and portfolio state."""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional

from tradeguard.core.models import PortfolioState, TradeAction, utc_now


@dataclass
class ExecutionResult:
    """A filled order.

    Attributes:
        fill_price: Average fill price
        quantity: Filled quantity
        execution_ref: Executor's reference for the fill
        realized_pnl: Profit realized by this fill (exits only)
    """
    fill_price: Decimal
    quantity: Decimal
    execution_ref: str
    realized_pnl: Optional[Decimal] = None
    executed_at: datetime = field(default_factory=utc_now)


class OrderExecutor(ABC):
    """Places orders for a portfolio book."""

    @abstractmethod
    async def execute(
        self,
        portfolio_tag: str,
        symbol: str,
        action: TradeAction,
        quantity: Decimal,
        limit_price: Optional[Decimal] = None,
    ) -> ExecutionResult:
        """Execute an order or raise. Must not partially apply on failure."""


class PortfolioSource(ABC):
    """Provides the current state of a portfolio book."""

    @abstractmethod
    async def get_portfolio(self, portfolio_tag: str) -> PortfolioState:
        """Cash and positions for the book, marked to latest prices."""
