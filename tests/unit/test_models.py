"""Unit tests for data models in TradeGuard."""
import pytest
from datetime import timedelta
from decimal import Decimal

from pydantic import ValidationError

from tradeguard.core.exceptions import InvalidQueueTransition
from tradeguard.core.models import (
    CircuitBreakerState, CycleResult, DecisionOutcome, Override, PerformanceSnapshot,
    PortfolioState, PositionHolding, QueueStatus, QueuedTrade, SessionStatus, TradeAction,
    TradeDecision, TradeProposal, TradingSession
)

from conftest import MONDAY_OPEN


# =============================================================================
# Enum Tests
# =============================================================================

class TestEnums:
    """Test enumeration values and behavior."""

    def test_trade_action_values(self):
        assert TradeAction.BUY.value == "BUY"
        assert TradeAction("HOLD") == TradeAction.HOLD

    def test_queue_status_values(self):
        assert [s.value for s in QueueStatus] == [
            "queued", "executing", "executed", "failed", "cancelled"
        ]


# =============================================================================
# Session Tests
# =============================================================================

class TestTradingSession:
    """Test TradingSession model."""

    def test_session_close(self):
        session = TradingSession(portfolio_tag="KALIC", starting_value=Decimal("1000000"))

        session.close(Decimal("1010000"), now=MONDAY_OPEN, notes="done")

        assert session.status == SessionStatus.ENDED
        assert not session.is_active
        assert session.end_time == MONDAY_OPEN
        assert session.notes == "done"

    def test_session_close_twice(self):
        session = TradingSession(portfolio_tag="KALIC", starting_value=Decimal("1000000"))
        session.close(Decimal("1000000"))

        with pytest.raises(ValueError):
            session.close(Decimal("1000000"))


# =============================================================================
# Proposal Tests
# =============================================================================

class TestTradeProposal:
    """Test TradeProposal model."""

    def test_symbol_normalized(self):
        proposal = TradeProposal(symbol=" aapl ", action=TradeAction.BUY)
        assert proposal.symbol == "AAPL"

    def test_blank_symbol_rejected(self):
        with pytest.raises(ValidationError):
            TradeProposal(symbol="  ", action=TradeAction.BUY)

    def test_direction_validated(self):
        assert TradeProposal(symbol="AAPL", action="BUY", predicted_direction="UP").predicted_direction == "up"
        with pytest.raises(ValidationError):
            TradeProposal(symbol="AAPL", action="BUY", predicted_direction="sideways")

    def test_confidence_bounds(self):
        with pytest.raises(ValidationError):
            TradeProposal(symbol="AAPL", action="BUY", confidence=1.2)


# =============================================================================
# Queue Model Tests
# =============================================================================

class TestQueuedTrade:
    """Test the forward-only status machine."""

    def make(self):
        return QueuedTrade(
            portfolio_tag="kalic", symbol="aapl", action=TradeAction.BUY, quantity=Decimal("1")
        )

    def test_normalized_tags(self):
        trade = self.make()
        assert trade.portfolio_tag == "KALIC"
        assert trade.symbol == "AAPL"

    def test_happy_path(self):
        trade = self.make()
        trade.transition(QueueStatus.EXECUTING)
        trade.transition(QueueStatus.EXECUTED)
        assert trade.is_terminal

    @pytest.mark.parametrize("path", [
        [QueueStatus.EXECUTED],
        [QueueStatus.EXECUTING, QueueStatus.CANCELLED],
        [QueueStatus.CANCELLED, QueueStatus.QUEUED],
        [QueueStatus.EXECUTING, QueueStatus.FAILED, QueueStatus.QUEUED],
    ])
    def test_illegal_transitions(self, path):
        trade = self.make()
        with pytest.raises(InvalidQueueTransition):
            for status in path:
                trade.transition(status)

    def test_quantity_positive(self):
        with pytest.raises(ValidationError):
            QueuedTrade(portfolio_tag="KALIC", symbol="AAPL", action="BUY", quantity=Decimal("0"))


# =============================================================================
# Portfolio Tests
# =============================================================================

class TestPortfolioState:
    """Test portfolio valuation."""

    def test_total_value(self, portfolio_with_aapl):
        assert portfolio_with_aapl.positions_value == Decimal("15000")
        assert portfolio_with_aapl.total_value == Decimal("1000000")
        assert portfolio_with_aapl.positions["AAPL"].unrealized_pnl == Decimal("1000")

    def test_position_value_at_price(self, portfolio_with_aapl):
        assert portfolio_with_aapl.position_value("AAPL", Decimal("200")) == Decimal("20000")
        assert portfolio_with_aapl.position_value("MSFT") == Decimal("0")
        assert portfolio_with_aapl.quantity_of("MSFT") == Decimal("0")

    def test_unpriced_position_uses_cost(self):
        holding = PositionHolding(symbol="AAPL", quantity=Decimal("10"), avg_price=Decimal("100"))
        assert holding.market_value == Decimal("1000")
        assert holding.unrealized_pnl == Decimal("0")

    def test_bankrupt(self):
        assert PortfolioState(portfolio_tag="DC", cash=Decimal("0")).is_bankrupt


# =============================================================================
# Risk State Tests
# =============================================================================

class TestCircuitBreakerState:
    """Test derived breaker fields."""

    def test_daily_loss_pct(self):
        state = CircuitBreakerState(
            portfolio_tag="KALIC",
            day_start_value=Decimal("200000"),
            daily_realized_pnl=Decimal("-5000"),
        )
        assert state.daily_loss_pct == Decimal("2.5")

    def test_gain_is_zero_loss(self):
        state = CircuitBreakerState(
            portfolio_tag="KALIC",
            day_start_value=Decimal("200000"),
            daily_realized_pnl=Decimal("5000"),
        )
        assert state.daily_loss_pct == Decimal("0")

    def test_is_paused(self):
        state = CircuitBreakerState(portfolio_tag="KALIC", paused_until=MONDAY_OPEN)
        assert state.is_paused(MONDAY_OPEN - timedelta(seconds=1))
        assert not state.is_paused(MONDAY_OPEN)


class TestOverride:
    """Test override activity window."""

    def test_window(self):
        override = Override(
            portfolio_tag="KALIC",
            max_position_pct=Decimal("20"),
            reason="earnings",
            granted_by="desk",
            granted_at=MONDAY_OPEN,
            expires_at=MONDAY_OPEN + timedelta(minutes=30),
        )
        assert override.is_active(MONDAY_OPEN)
        assert not override.is_active(MONDAY_OPEN + timedelta(minutes=30))


# =============================================================================
# Reporting Tests
# =============================================================================

class TestReporting:
    """Test result and snapshot helpers."""

    def test_win_rate(self):
        snapshot = PerformanceSnapshot(
            portfolio_tag="KALIC",
            portfolio_value=Decimal("1"),
            cash=Decimal("1"),
            positions_value=Decimal("0"),
            winning_trades=3,
            losing_trades=1,
        )
        assert snapshot.win_rate == 75.0

    def test_win_rate_without_trades(self):
        snapshot = PerformanceSnapshot(
            portfolio_tag="KALIC",
            portfolio_value=Decimal("1"),
            cash=Decimal("1"),
            positions_value=Decimal("0"),
        )
        assert snapshot.win_rate is None

    def test_cycle_result_counts(self):
        result = CycleResult(portfolio_tag="KALIC", session_id="s1", decisions=[
            TradeDecision(portfolio_tag="KALIC", action="BUY", symbol="AAPL",
                          outcome=DecisionOutcome.REJECTED),
            TradeDecision(portfolio_tag="KALIC", action="HOLD", symbol="MSFT",
                          outcome=DecisionOutcome.HELD),
            TradeDecision(portfolio_tag="KALIC", action="BUY", symbol="NVDA",
                          outcome=DecisionOutcome.REJECTED),
        ])
        assert result.count(DecisionOutcome.REJECTED) == 2
        assert result.count(DecisionOutcome.APPROVED) == 0
