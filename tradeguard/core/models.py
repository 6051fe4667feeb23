"""Data models for the TradeGuard decision engine.

Everything that crosses a component boundary is defined here: sessions,
proposals, decisions, queued trades, circuit breaker state, audit entries and
the status/result objects returned by the control surface.

All monetary values and quantities use Decimal for precision.
All timestamps are timezone-aware UTC datetime objects.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from tradeguard.core.exceptions import InvalidQueueTransition


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class TradeAction(str, Enum):
    """Proposed trade direction."""
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class TradingModeName(str, Enum):
    """Operating modes, from most to least permissive."""
    AGGRESSIVE = "aggressive"
    NORMAL = "normal"
    CONSERVATIVE = "conservative"
    PAUSED = "paused"


class SessionStatus(str, Enum):
    """Trading session lifecycle."""
    ACTIVE = "active"
    ENDED = "ended"


class DecisionOutcome(str, Enum):
    """What the guardrail layer did with a proposal."""
    APPROVED = "approved"
    REJECTED = "rejected"
    DEFERRED = "deferred"
    HELD = "held"             # HOLD proposals, recorded but never queued
    CANCELLED = "cancelled"   # cycle cancelled before evaluation


class QueueStatus(str, Enum):
    """Queued trade lifecycle."""
    QUEUED = "queued"
    EXECUTING = "executing"
    EXECUTED = "executed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Forward-only; terminal states have no exits
QUEUE_TRANSITIONS: Dict[QueueStatus, frozenset] = {
    QueueStatus.QUEUED: frozenset({QueueStatus.EXECUTING, QueueStatus.CANCELLED}),
    QueueStatus.EXECUTING: frozenset({QueueStatus.EXECUTED, QueueStatus.FAILED}),
    QueueStatus.EXECUTED: frozenset(),
    QueueStatus.FAILED: frozenset(),
    QueueStatus.CANCELLED: frozenset(),
}


# =============================================================================
# Trading Mode Models
# =============================================================================

class ModePolicy(BaseModel):
    """Limits attached to a trading mode.

    Attributes:
        mode: Mode these limits belong to
        max_position_pct: Largest single position, as % of portfolio value
        max_trades_per_day: Approved or deferred trades allowed per trading day
        requires_confluence: Whether confidence/signal checks apply
        allows_new_entries: False for PAUSED (exits only)
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    mode: TradingModeName
    max_position_pct: Decimal = Field(..., ge=0, le=100)
    max_trades_per_day: int = Field(..., ge=0)
    requires_confluence: bool = False
    allows_new_entries: bool = True


class ModeTransition(BaseModel):
    """A change of trading mode for one portfolio."""
    portfolio_tag: str
    from_mode: TradingModeName
    to_mode: TradingModeName
    reason: str
    source: str = Field(default="operator", description="operator, circuit_breaker or recovery")
    at: datetime = Field(default_factory=utc_now)


class Override(BaseModel):
    """Time-boxed human override of the position limit."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    portfolio_tag: str
    max_position_pct: Decimal = Field(..., gt=0, le=100)
    reason: str
    granted_by: str = "operator"
    granted_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime

    def is_active(self, now: datetime) -> bool:
        return self.granted_at <= now < self.expires_at


# =============================================================================
# Session Models
# =============================================================================

class TradingSession(BaseModel):
    """A bounded trading session for one portfolio book.

    Attributes:
        portfolio_tag: Book this session trades (e.g. "KALIC")
        starting_value: Portfolio value when the session opened
        benchmark_start_price: Benchmark price when the session opened
        decisions_count: Decisions recorded during the session
        trades_count: Decisions approved for execution
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    id: str = Field(default_factory=lambda: str(uuid4()))
    portfolio_tag: str
    start_time: datetime = Field(default_factory=utc_now)
    end_time: Optional[datetime] = None
    starting_value: Decimal
    ending_value: Optional[Decimal] = None
    benchmark_start_price: Optional[Decimal] = None
    decisions_count: int = 0
    trades_count: int = 0
    notes: Optional[str] = None
    status: SessionStatus = SessionStatus.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    def close(self, ending_value: Decimal, now: Optional[datetime] = None,
              notes: Optional[str] = None) -> None:
        """Close the session. A closed session cannot be closed again."""
        if not self.is_active:
            raise ValueError(f"Session {self.id} already ended")
        self.end_time = now or utc_now()
        self.ending_value = ending_value
        if notes:
            self.notes = notes
        self.status = SessionStatus.ENDED


# =============================================================================
# Proposal & Decision Models
# =============================================================================

class TradeProposal(BaseModel):
    """Structured trade idea parsed from a reasoning provider response."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    symbol: str
    action: TradeAction
    quantity: Optional[Decimal] = Field(default=None, description="Shares; sized by policy if absent")
    target_position_pct: Optional[Decimal] = Field(default=None, ge=0, le=100)
    limit_price: Optional[Decimal] = None
    confidence: float = Field(default=0.5, ge=0, le=1)
    reasoning: str = ""
    signals: List[str] = Field(default_factory=list)
    predicted_direction: Optional[str] = None
    predicted_price_target: Optional[Decimal] = None
    predicted_timeframe_days: Optional[int] = Field(default=None, ge=0)

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, v: str) -> str:
        v = v.strip().upper()
        if not v:
            raise ValueError("Symbol must not be empty")
        return v

    @field_validator("predicted_direction")
    @classmethod
    def validate_direction(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip().lower()
        if v not in ("up", "down", "flat"):
            raise ValueError("Predicted direction must be up, down or flat")
        return v


class TradeDecision(BaseModel):
    """Durable record of one proposal and what the guardrails did with it.

    Outcome fields (``actual_*``, ``prediction_accurate``) are filled in later
    by the prediction evaluation pass. Decisions are never deleted.
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    id: str = Field(default_factory=lambda: str(uuid4()))
    session_id: Optional[str] = None
    portfolio_tag: str
    timestamp: datetime = Field(default_factory=utc_now)
    action: TradeAction
    symbol: str
    quantity: Optional[Decimal] = None
    price_at_decision: Optional[Decimal] = None
    confidence: float = Field(default=0.0, ge=0, le=1)
    reasoning: str = ""
    model_used: Optional[str] = None

    # Prediction
    predicted_direction: Optional[str] = None
    predicted_price_target: Optional[Decimal] = None
    predicted_timeframe_days: Optional[int] = None

    # Guardrail result
    outcome: DecisionOutcome
    rule_id: Optional[str] = None
    rejection_reason: Optional[str] = None
    adjustments: List[str] = Field(default_factory=list)
    queued_trade_id: Optional[str] = None
    execution_ref: Optional[str] = None

    # Filled by prediction evaluation
    actual_outcome: Optional[str] = None
    actual_price_at_timeframe: Optional[Decimal] = None
    prediction_accurate: Optional[bool] = None
    evaluated_at: Optional[datetime] = None

    @property
    def is_evaluated(self) -> bool:
        return self.prediction_accurate is not None


# =============================================================================
# Circuit Breaker Models
# =============================================================================

class CircuitBreakerState(BaseModel):
    """Loss-tracking state for one portfolio's circuit breaker."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    portfolio_tag: str
    trading_day: Optional[str] = None  # YYYY-MM-DD in the boundary timezone
    day_start_value: Optional[Decimal] = None
    daily_realized_pnl: Decimal = Decimal("0")
    consecutive_losses: int = 0
    daily_loss_tripped: bool = False
    paused_until: Optional[datetime] = None
    mode_before_pause: Optional[TradingModeName] = None
    mode_before_trip: Optional[TradingModeName] = None
    last_trigger_reason: Optional[str] = None
    last_triggered_at: Optional[datetime] = None

    @computed_field
    @property
    def daily_loss_pct(self) -> Decimal:
        """Realized loss today as a positive % of day-start value."""
        if not self.day_start_value or self.day_start_value <= 0:
            return Decimal("0")
        if self.daily_realized_pnl >= 0:
            return Decimal("0")
        return (-self.daily_realized_pnl / self.day_start_value) * 100

    def is_paused(self, now: datetime) -> bool:
        return self.paused_until is not None and now < self.paused_until


# =============================================================================
# Queue Models
# =============================================================================

class QueuedTrade(BaseModel):
    """An order waiting for its trading window.

    Status only ever moves forward (see QUEUE_TRANSITIONS); once a trade is
    executed, failed or cancelled it never changes again.
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    id: str = Field(default_factory=lambda: str(uuid4()))
    portfolio_tag: str
    symbol: str
    action: TradeAction
    quantity: Decimal = Field(..., gt=0)
    target_price: Optional[Decimal] = None
    reference_price: Optional[Decimal] = Field(default=None, description="Price when the trade was decided")
    status: QueueStatus = QueueStatus.QUEUED
    source: str = "decision_cycle"
    venue: str = "equities"
    condition: Optional[str] = None
    conviction: Optional[float] = None
    reasoning: Optional[str] = None
    decision_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    scheduled_for: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    execution_price: Optional[Decimal] = None
    execution_ref: Optional[str] = None
    realized_pnl: Optional[Decimal] = None
    error_message: Optional[str] = None

    @field_validator("symbol", "portfolio_tag")
    @classmethod
    def normalize_upper(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("action")
    @classmethod
    def no_hold_orders(cls, v: TradeAction) -> TradeAction:
        if v == TradeAction.HOLD:
            raise ValueError("HOLD cannot be queued")
        return v

    @property
    def is_terminal(self) -> bool:
        return not QUEUE_TRANSITIONS[self.status]

    def can_transition(self, new_status: QueueStatus) -> bool:
        return new_status in QUEUE_TRANSITIONS[self.status]

    def transition(self, new_status: QueueStatus) -> None:
        """Move to ``new_status`` or raise InvalidQueueTransition."""
        if not self.can_transition(new_status):
            raise InvalidQueueTransition(self.id, self.status.value, new_status.value)
        self.status = new_status


class QueueLogEntry(BaseModel):
    """One event in a queued trade's history."""
    id: str = Field(default_factory=lambda: str(uuid4()))
    queue_id: str
    event: str
    details: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class BatchEnqueueResult(BaseModel):
    """Outcome of enqueueing several trades at once."""
    total: int
    success_count: int
    fail_count: int
    queued_ids: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class SchedulerStatus(BaseModel):
    """Queue worker status surface."""
    running: bool
    queued_count: int
    current_time: datetime
    current_exchange_time: str
    market_open: bool
    next_market_open: str


# =============================================================================
# Audit Models
# =============================================================================

class AuditEntry(BaseModel):
    """One link of the hash-chained audit trail.

    ``prev_hash`` is the ``entry_hash`` of the previous entry, or the genesis
    sentinel for the first entry.
    """
    sequence: int
    chain_timestamp: str
    prev_hash: str
    payload: Dict[str, Any]
    entry_hash: str


class ChainVerification(BaseModel):
    """Result of walking the audit chain from genesis."""
    ok: bool
    checked: int
    broken_at: Optional[int] = None
    reason: Optional[str] = None


# =============================================================================
# Portfolio Models
# =============================================================================

class PositionHolding(BaseModel):
    """A position in one symbol within a portfolio book."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    symbol: str
    quantity: Decimal
    avg_price: Decimal
    market_price: Optional[Decimal] = None

    @computed_field
    @property
    def market_value(self) -> Decimal:
        price = self.market_price if self.market_price is not None else self.avg_price
        return self.quantity * price

    @computed_field
    @property
    def unrealized_pnl(self) -> Decimal:
        if self.market_price is None:
            return Decimal("0")
        return (self.market_price - self.avg_price) * self.quantity


class PortfolioState(BaseModel):
    """Snapshot of a portfolio book's cash and positions."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    portfolio_tag: str
    cash: Decimal
    positions: Dict[str, PositionHolding] = Field(default_factory=dict)
    realized_pnl: Decimal = Decimal("0")
    as_of: datetime = Field(default_factory=utc_now)

    @computed_field
    @property
    def positions_value(self) -> Decimal:
        return sum((p.market_value for p in self.positions.values()), Decimal("0"))

    @computed_field
    @property
    def total_value(self) -> Decimal:
        return self.cash + self.positions_value

    @property
    def is_bankrupt(self) -> bool:
        return self.total_value <= 0

    def quantity_of(self, symbol: str) -> Decimal:
        holding = self.positions.get(symbol)
        return holding.quantity if holding else Decimal("0")

    def position_value(self, symbol: str, price: Optional[Decimal] = None) -> Decimal:
        holding = self.positions.get(symbol)
        if holding is None:
            return Decimal("0")
        if price is not None:
            return holding.quantity * price
        return holding.market_value


class Quote(BaseModel):
    """Latest price for a symbol as seen by the market data source."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    symbol: str
    price: Decimal
    timestamp: datetime = Field(default_factory=utc_now)
    change_pct: Optional[float] = None
    indicators: Dict[str, float] = Field(default_factory=dict)


class MarketContext(BaseModel):
    """Read-only snapshot handed to the reasoning providers."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    portfolio_tag: str
    session_id: Optional[str] = None
    generated_at: datetime = Field(default_factory=utc_now)
    mode: TradingModeName
    mode_policy: ModePolicy
    override_pct: Optional[Decimal] = None
    trades_today: int = 0
    portfolio: PortfolioState
    quotes: Dict[str, Quote] = Field(default_factory=dict)
    stale_symbols: List[str] = Field(default_factory=list)
    benchmark_symbol: Optional[str] = None
    benchmark_price: Optional[Decimal] = None
    recent_decisions: List[Dict[str, Any]] = Field(default_factory=list)

    def price_of(self, symbol: str) -> Optional[Decimal]:
        quote = self.quotes.get(symbol)
        return quote.price if quote else None


# =============================================================================
# Performance Models
# =============================================================================

class PerformanceSnapshot(BaseModel):
    """Point-in-time performance of one portfolio book."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    id: str = Field(default_factory=lambda: str(uuid4()))
    portfolio_tag: str
    session_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)
    portfolio_value: Decimal
    cash: Decimal
    positions_value: Decimal
    benchmark_symbol: Optional[str] = None
    benchmark_value: Optional[Decimal] = None
    total_pnl: Decimal = Decimal("0")
    total_pnl_percent: Decimal = Decimal("0")
    benchmark_pnl_percent: Optional[Decimal] = None
    prediction_accuracy: Optional[float] = None
    trades_to_date: int = 0
    winning_trades: int = 0
    losing_trades: int = 0

    @computed_field
    @property
    def win_rate(self) -> Optional[float]:
        closed = self.winning_trades + self.losing_trades
        if closed == 0:
            return None
        return self.winning_trades / closed * 100


class PredictionAccuracy(BaseModel):
    """Aggregate accuracy of evaluated predictions."""
    total_predictions: int = 0
    evaluated: int = 0
    correct: int = 0
    accuracy_pct: Optional[float] = None
    by_model: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


# =============================================================================
# Control Surface Models
# =============================================================================

class ControlResult(BaseModel):
    """Result of a control-surface operation."""
    success: bool
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)


class CycleResult(BaseModel):
    """Outcome of one decision cycle."""
    portfolio_tag: str
    session_id: str
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    provider_id: Optional[str] = None
    decisions: List[TradeDecision] = Field(default_factory=list)
    malformed_count: int = 0
    cancelled: bool = False
    snapshot: Optional[PerformanceSnapshot] = None

    def count(self, outcome: DecisionOutcome) -> int:
        return sum(1 for d in self.decisions if d.outcome == outcome)


class EngineStatus(BaseModel):
    """Status of one portfolio book as reported by the engine."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    portfolio_tag: str
    is_running: bool
    halted: bool
    halt_reason: Optional[str] = None
    current_session: Optional[TradingSession] = None
    mode: TradingModeName
    override: Optional[Override] = None
    circuit_breaker: CircuitBreakerState
    trades_today: int = 0
    portfolio_value: Decimal
    cash: Decimal
    positions_value: Decimal
    is_bankrupt: bool = False
    sessions_completed: int = 0
    total_decisions: int = 0
    total_trades: int = 0
