"""Unit tests for the circuit breaker."""
import pytest
from datetime import timedelta
from decimal import Decimal

from tradeguard.core.config import CircuitBreakerConfig
from tradeguard.core.models import TradingModeName
from tradeguard.risk.circuit_breaker import CircuitBreaker
from tradeguard.risk.modes import ModeController

from conftest import MONDAY_OPEN, TUESDAY_OPEN

BOOK_VALUE = Decimal("1000000")


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def modes(mode_policies):
    return ModeController("KALIC", mode_policies, TradingModeName.NORMAL)


@pytest.fixture
def breaker(modes):
    """Breaker with the default 10% / 5 losses / 60 minutes settings."""
    cb = CircuitBreaker("KALIC", modes, CircuitBreakerConfig(
        daily_loss_threshold_pct=Decimal("10"),
        fallback_mode="conservative",
        consecutive_loss_limit=5,
        pause_minutes=60,
    ))
    cb.refresh(MONDAY_OPEN, BOOK_VALUE)
    return cb


def record_losses(breaker, count, amount="-100", start=MONDAY_OPEN):
    events = []
    for i in range(count):
        events.extend(breaker.record_outcome(Decimal(amount), start + timedelta(minutes=i)))
    return events


# =============================================================================
# Consecutive Loss Tests
# =============================================================================

class TestConsecutiveLosses:
    """Test the losing-streak pause."""

    def test_five_losses_pause_trading(self, breaker, modes):
        """The fifth consecutive loss pauses the book."""
        events = record_losses(breaker, 5)

        assert modes.mode == TradingModeName.PAUSED
        assert breaker.state.paused_until == MONDAY_OPEN + timedelta(minutes=4, hours=1)
        assert breaker.is_paused(MONDAY_OPEN + timedelta(minutes=10))
        assert [e.event for e in events] == ["consecutive_losses_paused"]
        assert events[0].transition.to_mode == TradingModeName.PAUSED
        # Streak starts over once the pause is applied
        assert breaker.state.consecutive_losses == 0

    def test_four_losses_do_not_pause(self, breaker, modes):
        record_losses(breaker, 4)

        assert modes.mode == TradingModeName.NORMAL
        assert breaker.state.consecutive_losses == 4

    def test_win_resets_streak(self, breaker, modes):
        record_losses(breaker, 4)
        breaker.record_outcome(Decimal("50"), MONDAY_OPEN + timedelta(minutes=5))
        record_losses(breaker, 4, start=MONDAY_OPEN + timedelta(minutes=6))

        assert modes.mode == TradingModeName.NORMAL
        assert breaker.state.consecutive_losses == 4

    def test_breakeven_leaves_streak_unchanged(self, breaker):
        record_losses(breaker, 3)
        breaker.record_outcome(Decimal("0"), MONDAY_OPEN + timedelta(minutes=5))

        assert breaker.state.consecutive_losses == 3

    def test_pause_expires_and_restores_mode(self, breaker, modes):
        """Recovery is purely time based."""
        modes.set_mode(TradingModeName.AGGRESSIVE, "setup")
        record_losses(breaker, 5)
        assert modes.mode == TradingModeName.PAUSED

        # Still paused just before the window ends
        breaker.refresh(MONDAY_OPEN + timedelta(minutes=63))
        assert modes.mode == TradingModeName.PAUSED

        events = breaker.refresh(MONDAY_OPEN + timedelta(minutes=64))
        assert modes.mode == TradingModeName.AGGRESSIVE
        assert [e.event for e in events] == ["pause_expired"]
        assert breaker.state.paused_until is None

    def test_operator_mode_change_survives_pause_expiry(self, breaker, modes):
        """If an operator moved the book out of PAUSED, expiry leaves it alone."""
        record_losses(breaker, 5)
        modes.set_mode(TradingModeName.CONSERVATIVE, "operator decision")

        breaker.refresh(MONDAY_OPEN + timedelta(hours=2))

        assert modes.mode == TradingModeName.CONSERVATIVE

    def test_streak_persists_across_days(self, breaker):
        record_losses(breaker, 3)
        breaker.record_outcome(Decimal("-100"), TUESDAY_OPEN)

        assert breaker.state.consecutive_losses == 4


# =============================================================================
# Daily Loss Tests
# =============================================================================

class TestDailyLoss:
    """Test the daily realized-loss trigger."""

    def test_daily_loss_forces_conservative(self, breaker, modes):
        """Losing 10% of the day-start value switches to the fallback mode."""
        events = breaker.record_outcome(Decimal("-100000"), MONDAY_OPEN)

        assert modes.mode == TradingModeName.CONSERVATIVE
        assert breaker.state.daily_loss_tripped
        assert breaker.state.daily_loss_pct == Decimal("10")
        assert events[-1].event == "daily_loss_triggered"

    def test_below_threshold_no_trip(self, breaker, modes):
        breaker.record_outcome(Decimal("-99999"), MONDAY_OPEN)

        assert modes.mode == TradingModeName.NORMAL
        assert not breaker.state.daily_loss_tripped

    def test_trip_fires_once_per_day(self, breaker):
        breaker.record_outcome(Decimal("-100000"), MONDAY_OPEN)
        events = breaker.record_outcome(Decimal("-1000"), MONDAY_OPEN + timedelta(minutes=1))

        assert all(e.event != "daily_loss_triggered" for e in events)

    def test_day_rollover_restores_mode(self, breaker, modes):
        breaker.record_outcome(Decimal("-100000"), MONDAY_OPEN)

        events = breaker.refresh(TUESDAY_OPEN, Decimal("900000"))

        assert modes.mode == TradingModeName.NORMAL
        assert not breaker.state.daily_loss_tripped
        assert breaker.state.daily_realized_pnl == Decimal("0")
        assert breaker.state.day_start_value == Decimal("900000")
        assert events[0].event == "day_rolled"
        assert events[0].transition.to_mode == TradingModeName.NORMAL

    def test_already_stricter_mode_kept(self, breaker, modes):
        """A trip never loosens the mode."""
        modes.set_mode(TradingModeName.PAUSED, "operator")

        breaker.record_outcome(Decimal("-100000"), MONDAY_OPEN)

        assert modes.mode == TradingModeName.PAUSED

    def test_pause_then_daily_trip_resumes_into_fallback(self, breaker, modes):
        """When both trigger, pause expiry lands in the fallback mode."""
        record_losses(breaker, 4, amount="-20000")
        events = breaker.record_outcome(Decimal("-20000"), MONDAY_OPEN + timedelta(minutes=4))

        assert {e.event for e in events} == {"daily_loss_triggered", "consecutive_losses_paused"}
        assert modes.mode == TradingModeName.PAUSED

        breaker.refresh(MONDAY_OPEN + timedelta(hours=2))
        assert modes.mode == TradingModeName.CONSERVATIVE


# =============================================================================
# Configuration Tests
# =============================================================================

class TestBreakerConfig:
    """Test runtime configuration updates."""

    def test_update_config(self, breaker, modes):
        breaker.update_config(consecutive_loss_limit=2, pause_minutes=15)
        record_losses(breaker, 2)

        assert modes.mode == TradingModeName.PAUSED
        assert breaker.state.paused_until == MONDAY_OPEN + timedelta(minutes=16)

    def test_update_unknown_setting(self, breaker):
        with pytest.raises(ValueError):
            breaker.update_config(not_a_setting=1)

    def test_update_invalid_value(self, breaker):
        with pytest.raises(ValueError):
            breaker.update_config(pause_minutes=0)
