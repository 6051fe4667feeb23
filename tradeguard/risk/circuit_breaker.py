"""Circuit breaker - forces safer modes after losses.

Two independent triggers, both evaluated synchronously right after a realized
outcome is reported:

- Daily loss: realized loss today reaches the threshold (as % of the value at
  the start of the trading day). The book is forced into the fallback mode
  (CONSERVATIVE by default) for the rest of the trading day.
- Consecutive losses: N losing outcomes in a row pause the book for a fixed
  window.

Recovery is time-based only: the pause ends when its window elapses and the
daily trip clears at the next exchange-midnight boundary. Both restore the
mode that was active before the trigger.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

import structlog

from tradeguard.core.config import CircuitBreakerConfig
from tradeguard.core.models import (
    CircuitBreakerState, ModeTransition, TradingModeName, utc_now
)
from tradeguard.risk.modes import ModeController

logger = structlog.get_logger(__name__)

# Higher is more restrictive
MODE_SEVERITY = {
    TradingModeName.AGGRESSIVE: 0,
    TradingModeName.NORMAL: 1,
    TradingModeName.CONSERVATIVE: 2,
    TradingModeName.PAUSED: 3,
}


@dataclass
class BreakerEvent:
    """Something the breaker did; callers append these to the audit log."""
    portfolio_tag: str
    event: str
    reason: str
    at: datetime
    transition: Optional[ModeTransition] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_audit_payload(self) -> Dict[str, Any]:
        payload = {
            "event": f"circuit_breaker.{self.event}",
            "portfolio": self.portfolio_tag,
            "reason": self.reason,
            "at": self.at.isoformat(),
            **self.details,
        }
        if self.transition is not None:
            payload["from_mode"] = self.transition.from_mode.value
            payload["to_mode"] = self.transition.to_mode.value
        return payload


class CircuitBreaker:
    """
    Loss protection for one portfolio book.

    Not thread-safe on its own; callers hold the book's lock while calling
    ``refresh`` and ``record_outcome``.
    """

    def __init__(
        self,
        portfolio_tag: str,
        modes: ModeController,
        config: Optional[CircuitBreakerConfig] = None,
    ):
        self.portfolio_tag = portfolio_tag
        self.modes = modes
        self.config = config or CircuitBreakerConfig()
        self.state = CircuitBreakerState(portfolio_tag=portfolio_tag)
        self.history: List[BreakerEvent] = []

    def trading_day(self, now: datetime) -> str:
        """Trading day of ``now`` in the boundary timezone (YYYY-MM-DD)."""
        return now.astimezone(ZoneInfo(self.config.day_boundary_timezone)).date().isoformat()

    def is_paused(self, now: Optional[datetime] = None) -> bool:
        return self.state.is_paused(now or utc_now())

    def update_config(self, **changes: Any) -> CircuitBreakerConfig:
        """Replace thresholds at runtime. Unknown fields raise ValueError."""
        unknown = set(changes) - set(CircuitBreakerConfig.model_fields)
        if unknown:
            raise ValueError(f"Unknown circuit breaker settings: {sorted(unknown)}")
        self.config = CircuitBreakerConfig(**{**self.config.model_dump(), **changes})
        logger.info(
            "circuit_breaker.config_updated",
            portfolio=self.portfolio_tag,
            changes={k: str(v) for k, v in changes.items()},
        )
        return self.config

    # === Time-based recovery ===

    def refresh(self, now: Optional[datetime] = None,
                portfolio_value: Optional[Decimal] = None) -> List[BreakerEvent]:
        """
        Apply day rollover and pause expiry.

        Args:
            now: Current time
            portfolio_value: Book value, used as the new day-start value

        Returns:
            Events produced (mode restorations, day rollover)
        """
        now = now or utc_now()
        events: List[BreakerEvent] = []
        state = self.state

        day = self.trading_day(now)
        if state.trading_day != day:
            if state.trading_day is not None:
                events.extend(self._roll_day(day, now))
            state.trading_day = day
            state.day_start_value = portfolio_value
            state.daily_realized_pnl = Decimal("0")
            state.daily_loss_tripped = False
        elif state.day_start_value is None and portfolio_value is not None:
            state.day_start_value = portfolio_value

        if state.paused_until is not None and now >= state.paused_until:
            events.append(self._end_pause(now))

        self.history.extend(events)
        return events

    def _roll_day(self, new_day: str, now: datetime) -> List[BreakerEvent]:
        state = self.state
        events = []
        transition = None
        restore = state.mode_before_trip
        if state.daily_loss_tripped and restore is not None:
            if state.paused_until is not None:
                # Still paused; hand the restore target to the pause
                state.mode_before_pause = restore
            elif self.modes.mode == TradingModeName(self.config.fallback_mode):
                transition = self.modes.set_mode(
                    restore, "daily loss limit reset at day boundary", source="recovery", now=now
                )
        state.mode_before_trip = None

        events.append(BreakerEvent(
            portfolio_tag=self.portfolio_tag,
            event="day_rolled",
            reason=f"new trading day {new_day}",
            at=now,
            transition=transition,
            details={
                "previous_day": state.trading_day,
                "previous_daily_pnl": str(state.daily_realized_pnl),
            },
        ))
        logger.info(
            "circuit_breaker.day_rolled",
            portfolio=self.portfolio_tag,
            previous_day=state.trading_day,
            new_day=new_day,
        )
        return events

    def _end_pause(self, now: datetime) -> BreakerEvent:
        state = self.state
        restore = state.mode_before_pause or TradingModeName.NORMAL
        transition = None
        if self.modes.mode == TradingModeName.PAUSED:
            transition = self.modes.set_mode(
                restore, "consecutive-loss pause expired", source="recovery", now=now
            )
        state.paused_until = None
        state.mode_before_pause = None
        logger.info(
            "circuit_breaker.pause_expired",
            portfolio=self.portfolio_tag,
            restored_mode=restore.value,
        )
        return BreakerEvent(
            portfolio_tag=self.portfolio_tag,
            event="pause_expired",
            reason="pause window elapsed",
            at=now,
            transition=transition,
        )

    # === Triggers ===

    def record_outcome(
        self,
        realized_pnl: Decimal,
        now: Optional[datetime] = None,
        portfolio_value: Optional[Decimal] = None,
    ) -> List[BreakerEvent]:
        """
        Record a realized trade outcome and evaluate both triggers.

        A zero P&L neither extends nor resets the losing streak.

        Args:
            realized_pnl: Realized profit (negative for a loss)
            now: Outcome time
            portfolio_value: Book value after the outcome

        Returns:
            Events produced, including any refresh events
        """
        now = now or utc_now()
        start_value = None
        if portfolio_value is not None:
            start_value = portfolio_value - realized_pnl
        events = self.refresh(now, start_value)
        state = self.state

        state.daily_realized_pnl += realized_pnl
        if realized_pnl < 0:
            state.consecutive_losses += 1
        elif realized_pnl > 0:
            state.consecutive_losses = 0

        logger.info(
            "circuit_breaker.outcome_recorded",
            portfolio=self.portfolio_tag,
            realized_pnl=str(realized_pnl),
            daily_pnl=str(state.daily_realized_pnl),
            consecutive_losses=state.consecutive_losses,
        )

        new_events = []
        if (
            not state.daily_loss_tripped
            and state.daily_loss_pct >= self.config.daily_loss_threshold_pct
        ):
            new_events.append(self._trip_daily_loss(now))

        if state.consecutive_losses >= self.config.consecutive_loss_limit:
            new_events.append(self._trip_consecutive_losses(now))

        self.history.extend(new_events)
        return events + new_events

    def _trip_daily_loss(self, now: datetime) -> BreakerEvent:
        state = self.state
        fallback = TradingModeName(self.config.fallback_mode)
        state.daily_loss_tripped = True
        reason = (
            f"daily loss {state.daily_loss_pct.quantize(Decimal('0.01'))}% reached "
            f"{self.config.daily_loss_threshold_pct}% limit"
        )

        transition = None
        if state.paused_until is not None:
            # Paused now; resume into the fallback rather than the old mode
            prior = state.mode_before_pause
            if prior is not None and MODE_SEVERITY[prior] < MODE_SEVERITY[fallback]:
                state.mode_before_trip = prior
                state.mode_before_pause = fallback
        elif MODE_SEVERITY[self.modes.mode] < MODE_SEVERITY[fallback]:
            state.mode_before_trip = self.modes.mode
            transition = self.modes.set_mode(fallback, reason, source="circuit_breaker", now=now)

        state.last_trigger_reason = reason
        state.last_triggered_at = now
        logger.critical(
            "circuit_breaker.daily_loss_triggered",
            portfolio=self.portfolio_tag,
            daily_pnl=str(state.daily_realized_pnl),
            daily_loss_pct=str(state.daily_loss_pct),
            threshold_pct=str(self.config.daily_loss_threshold_pct),
            mode=self.modes.mode.value,
        )
        return BreakerEvent(
            portfolio_tag=self.portfolio_tag,
            event="daily_loss_triggered",
            reason=reason,
            at=now,
            transition=transition,
            details={
                "daily_pnl": str(state.daily_realized_pnl),
                "day_start_value": str(state.day_start_value),
            },
        )

    def _trip_consecutive_losses(self, now: datetime) -> BreakerEvent:
        state = self.state
        losses = state.consecutive_losses
        reason = f"{losses} consecutive losing trades"
        pause_until = now + timedelta(minutes=self.config.pause_minutes)

        transition = None
        if state.paused_until is None:
            state.mode_before_pause = self.modes.mode
            transition = self.modes.set_mode(
                TradingModeName.PAUSED, reason, source="circuit_breaker", now=now
            )
        state.paused_until = pause_until
        state.consecutive_losses = 0
        state.last_trigger_reason = reason
        state.last_triggered_at = now

        logger.critical(
            "circuit_breaker.paused",
            portfolio=self.portfolio_tag,
            consecutive_losses=losses,
            paused_until=pause_until.isoformat(),
        )
        return BreakerEvent(
            portfolio_tag=self.portfolio_tag,
            event="consecutive_losses_paused",
            reason=reason,
            at=now,
            transition=transition,
            details={"paused_until": pause_until.isoformat(), "consecutive_losses": losses},
        )
