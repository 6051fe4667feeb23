"""Paper broker - independently simulated portfolio books.

Each book (KALIC, DC, ...) has its own cash, positions and realized P&L.
Market orders fill at the latest quote; limit orders fill at the limit price
when it is marketable, and fall back to the limit price when no quote exists.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, Optional
from uuid import uuid4

import structlog

from tradeguard.core.context import MarketDataSource
from tradeguard.core.exceptions import ExecutionRejected
from tradeguard.core.models import PortfolioState, PositionHolding, TradeAction, utc_now
from tradeguard.execution.base import ExecutionResult, OrderExecutor, PortfolioSource

logger = structlog.get_logger(__name__)


@dataclass
class PaperPosition:
    quantity: Decimal
    avg_price: Decimal


@dataclass
class PaperBook:
    """Cash, positions and trade statistics for one simulated book."""
    portfolio_tag: str
    starting_capital: Decimal
    cash: Decimal
    positions: Dict[str, PaperPosition] = field(default_factory=dict)
    realized_pnl: Decimal = Decimal("0")
    trades_to_date: int = 0
    winning_trades: int = 0
    losing_trades: int = 0

    def buy(self, symbol: str, quantity: Decimal, price: Decimal):
        cost = quantity * price
        if cost > self.cash:
            raise ExecutionRejected(
                f"Insufficient cash for {quantity} {symbol}: need {cost}, have {self.cash}",
                portfolio=self.portfolio_tag,
            )
        position = self.positions.get(symbol)
        if position is None:
            self.positions[symbol] = PaperPosition(quantity=quantity, avg_price=price)
        else:
            total_qty = position.quantity + quantity
            position.avg_price = (
                position.avg_price * position.quantity + price * quantity
            ) / total_qty
            position.quantity = total_qty
        self.cash -= cost
        self.trades_to_date += 1

    def sell(self, symbol: str, quantity: Decimal, price: Decimal) -> Decimal:
        position = self.positions.get(symbol)
        if position is None or position.quantity < quantity:
            held = position.quantity if position else Decimal("0")
            raise ExecutionRejected(
                f"Cannot sell {quantity} {symbol}: holding {held}",
                portfolio=self.portfolio_tag,
            )
        pnl = (price - position.avg_price) * quantity
        position.quantity -= quantity
        if position.quantity == 0:
            del self.positions[symbol]
        self.cash += quantity * price
        self.realized_pnl += pnl
        self.trades_to_date += 1
        if pnl > 0:
            self.winning_trades += 1
        elif pnl < 0:
            self.losing_trades += 1
        return pnl

    def reset(self, starting_capital: Optional[Decimal] = None):
        if starting_capital is not None:
            self.starting_capital = starting_capital
        self.cash = self.starting_capital
        self.positions.clear()
        self.realized_pnl = Decimal("0")
        self.trades_to_date = 0
        self.winning_trades = 0
        self.losing_trades = 0


class PaperBroker(OrderExecutor, PortfolioSource):
    """
    Executes orders against simulated books.

    Book state is only touched by ``execute`` and ``reset``; callers serialize
    access per book with the portfolio lock.
    """

    def __init__(
        self,
        market_data: MarketDataSource,
        portfolio_tags: Iterable[str],
        starting_capital: Decimal = Decimal("1000000"),
    ):
        self.market_data = market_data
        self.books: Dict[str, PaperBook] = {
            tag.upper(): PaperBook(
                portfolio_tag=tag.upper(),
                starting_capital=starting_capital,
                cash=starting_capital,
            )
            for tag in portfolio_tags
        }

    def book(self, portfolio_tag: str) -> PaperBook:
        book = self.books.get(portfolio_tag.upper())
        if book is None:
            raise KeyError(f"Unknown portfolio: {portfolio_tag}")
        return book

    async def _fill_price(
        self, symbol: str, action: TradeAction, limit_price: Optional[Decimal]
    ) -> Decimal:
        quote = await self.market_data.get_quote(symbol)
        if quote is None:
            if limit_price is not None:
                return limit_price
            raise ExecutionRejected(f"Could not determine execution price for {symbol}")
        if limit_price is None:
            return quote.price
        if action == TradeAction.BUY and quote.price > limit_price:
            raise ExecutionRejected(
                f"BUY limit {limit_price} below market {quote.price} for {symbol}"
            )
        if action == TradeAction.SELL and quote.price < limit_price:
            raise ExecutionRejected(
                f"SELL limit {limit_price} above market {quote.price} for {symbol}"
            )
        return quote.price

    async def execute(
        self,
        portfolio_tag: str,
        symbol: str,
        action: TradeAction,
        quantity: Decimal,
        limit_price: Optional[Decimal] = None,
    ) -> ExecutionResult:
        book = self.book(portfolio_tag)
        if quantity <= 0:
            raise ExecutionRejected(f"Quantity must be positive, got {quantity}")
        price = await self._fill_price(symbol, action, limit_price)

        realized = None
        if action == TradeAction.BUY:
            book.buy(symbol, quantity, price)
        elif action == TradeAction.SELL:
            realized = book.sell(symbol, quantity, price)
        else:
            raise ExecutionRejected(f"Action {action.value} is not executable")

        result = ExecutionResult(
            fill_price=price,
            quantity=quantity,
            execution_ref=f"paper-{uuid4().hex[:12]}",
            realized_pnl=realized,
        )
        logger.info(
            "paper.order_filled",
            portfolio=book.portfolio_tag,
            symbol=symbol,
            action=action.value,
            quantity=str(quantity),
            price=str(price),
            realized_pnl=str(realized) if realized is not None else None,
            cash=str(book.cash),
        )
        return result

    async def get_portfolio(self, portfolio_tag: str) -> PortfolioState:
        book = self.book(portfolio_tag)
        quotes = await self.market_data.get_quotes(list(book.positions))
        positions = {
            symbol: PositionHolding(
                symbol=symbol,
                quantity=pos.quantity,
                avg_price=pos.avg_price,
                market_price=quotes[symbol].price if symbol in quotes else None,
            )
            for symbol, pos in book.positions.items()
        }
        return PortfolioState(
            portfolio_tag=book.portfolio_tag,
            cash=book.cash,
            positions=positions,
            realized_pnl=book.realized_pnl,
            as_of=utc_now(),
        )

    def reset(self, portfolio_tag: str, starting_capital: Optional[Decimal] = None):
        """Restore a book to its starting capital with no positions."""
        book = self.book(portfolio_tag)
        book.reset(starting_capital)
        logger.warning(
            "paper.book_reset",
            portfolio=book.portfolio_tag,
            starting_capital=str(book.starting_capital),
        )
