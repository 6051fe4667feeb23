"""Unit tests for the paper broker."""
import pytest
from datetime import timedelta
from decimal import Decimal

from tradeguard.core.exceptions import ExecutionRejected
from tradeguard.core.models import TradeAction

from conftest import MONDAY_OPEN

LATER = MONDAY_OPEN + timedelta(minutes=5)


class TestOrders:
    """Test simulated fills."""

    @pytest.mark.asyncio
    async def test_market_buy(self, broker):
        result = await broker.execute("KALIC", "AAPL", TradeAction.BUY, Decimal("100"))

        book = broker.book("KALIC")
        assert result.fill_price == Decimal("150")
        assert result.realized_pnl is None
        assert book.cash == Decimal("985000")
        assert book.positions["AAPL"].quantity == Decimal("100")

    @pytest.mark.asyncio
    async def test_average_price_on_add(self, broker, market_data):
        await broker.execute("KALIC", "AAPL", TradeAction.BUY, Decimal("100"))
        market_data.set_price("AAPL", "160", timestamp=LATER)
        await broker.execute("KALIC", "AAPL", TradeAction.BUY, Decimal("100"))

        assert broker.book("KALIC").positions["AAPL"].avg_price == Decimal("155")

    @pytest.mark.asyncio
    async def test_sell_realizes_pnl(self, broker, market_data):
        """Selling above cost books a win."""
        await broker.execute("KALIC", "AAPL", TradeAction.BUY, Decimal("100"))
        market_data.set_price("AAPL", "165", timestamp=LATER)

        result = await broker.execute("KALIC", "AAPL", TradeAction.SELL, Decimal("100"))

        book = broker.book("KALIC")
        assert result.realized_pnl == Decimal("1500")
        assert "AAPL" not in book.positions
        assert book.cash == Decimal("1001500")
        assert book.winning_trades == 1
        assert book.trades_to_date == 2

    @pytest.mark.asyncio
    async def test_limit_not_marketable(self, broker):
        with pytest.raises(ExecutionRejected):
            await broker.execute("KALIC", "AAPL", TradeAction.BUY, Decimal("1"), Decimal("140"))

    @pytest.mark.asyncio
    async def test_limit_fills_at_market(self, broker):
        result = await broker.execute("KALIC", "AAPL", TradeAction.BUY, Decimal("1"), Decimal("155"))
        assert result.fill_price == Decimal("150")

    @pytest.mark.asyncio
    async def test_unknown_symbol_without_limit(self, broker):
        with pytest.raises(ExecutionRejected):
            await broker.execute("KALIC", "ZZZZ", TradeAction.BUY, Decimal("1"))

    @pytest.mark.asyncio
    async def test_insufficient_cash(self, broker):
        """A rejected order leaves the book untouched."""
        with pytest.raises(ExecutionRejected):
            await broker.execute("KALIC", "MSFT", TradeAction.BUY, Decimal("5000"))
        assert broker.book("KALIC").cash == Decimal("1000000")

    @pytest.mark.asyncio
    async def test_oversell(self, broker):
        with pytest.raises(ExecutionRejected):
            await broker.execute("KALIC", "AAPL", TradeAction.SELL, Decimal("1"))

    @pytest.mark.asyncio
    async def test_hold_not_executable(self, broker):
        with pytest.raises(ExecutionRejected):
            await broker.execute("KALIC", "AAPL", TradeAction.HOLD, Decimal("1"))


class TestBooks:
    """Test book isolation and reporting."""

    @pytest.mark.asyncio
    async def test_books_are_independent(self, broker):
        await broker.execute("KALIC", "AAPL", TradeAction.BUY, Decimal("100"))

        dc = await broker.get_portfolio("DC")

        assert dc.cash == Decimal("1000000")
        assert dc.positions == {}

    @pytest.mark.asyncio
    async def test_portfolio_marked_to_market(self, broker, market_data):
        await broker.execute("KALIC", "AAPL", TradeAction.BUY, Decimal("100"))
        market_data.set_price("AAPL", "170", timestamp=LATER)

        portfolio = await broker.get_portfolio("kalic")

        assert portfolio.positions["AAPL"].market_price == Decimal("170")
        assert portfolio.total_value == Decimal("1002000")

    def test_unknown_book(self, broker):
        with pytest.raises(KeyError):
            broker.book("OTHER")

    @pytest.mark.asyncio
    async def test_reset(self, broker):
        await broker.execute("DC", "AAPL", TradeAction.BUY, Decimal("100"))

        broker.reset("DC", Decimal("500000"))

        book = broker.book("DC")
        assert book.cash == Decimal("500000")
        assert book.positions == {}
        assert book.trades_to_date == 0
