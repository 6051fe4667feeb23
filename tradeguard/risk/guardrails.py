"""Guardrail policy - every proposal passes through here before it can trade.

Rules are registered with a priority and evaluated in order. The first
blocking failure rejects the proposal with a stable rule id; a rule may also
shrink the quantity (recorded as an adjustment) or defer the proposal until
a precondition holds. Rule ids:

    CIRCUIT_BREAKER_PAUSE_ACTIVE     new entries while the book is paused
    INVALID_PROPOSAL                 not an executable action
    NO_PRICE                         no usable price for the symbol
    INVALID_QUANTITY                 sized to zero or less
    NO_POSITION_TO_SELL              SELL without a holding
    MAX_POSITION_EXCEEDED            resulting position above the cap
    MAX_TRADES_PER_DAY               daily trade budget used up
    CONFLUENCE_LOW_CONFIDENCE        confidence below threshold
    CONFLUENCE_INSUFFICIENT_SIGNALS  too few confirming indicators
    GUARDRAIL_RULE_ERROR             a rule raised; blocked to be safe
"""
import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_DOWN, Decimal
from typing import Any, Callable, Dict, List, Optional, Union

import structlog

from tradeguard.core.config import GuardrailConfig
from tradeguard.core.models import (
    ModePolicy, Override, PortfolioState, TradeAction, TradeProposal, utc_now
)

logger = structlog.get_logger(__name__)


# Indicator families that count toward confluence when named in the reasoning
INDICATOR_PATTERNS: Dict[str, str] = {
    "RSI": r"\bRSI\b",
    "MACD": r"\bMACD\b",
    "BOLLINGER": r"\bBollinger\b|\bBBANDS?\b",
    "SMA": r"\bSMA\b|moving average",
    "EMA": r"\bEMA\b",
    "ADX": r"\bADX\b",
    "STOCHASTIC": r"\bStoch(astic)?\b",
    "WILLIAMS_R": r"Williams\s*%?R",
    "CCI": r"\bCCI\b",
    "MFI": r"\bMFI\b|money flow",
    "VOLUME": r"\bvolume\b",
    "VWAP": r"\bVWAP\b",
}


def count_signals(proposal: TradeProposal) -> int:
    """Number of distinct confirming signals behind a proposal.

    Uses the explicit signal list when the provider supplied one, otherwise
    counts indicator families mentioned in the reasoning.
    """
    if proposal.signals:
        return len({s.strip().upper() for s in proposal.signals if s.strip()})
    text = proposal.reasoning or ""
    return sum(
        1 for pattern in INDICATOR_PATTERNS.values()
        if re.search(pattern, text, re.IGNORECASE)
    )


# =============================================================================
# Decision variants
# =============================================================================

@dataclass
class Approved:
    """Proposal may trade, possibly with a smaller quantity."""
    quantity: Decimal
    price: Decimal
    adjustments: List[str] = field(default_factory=list)


@dataclass
class Rejected:
    """Proposal blocked by a rule; the portfolio is untouched."""
    reason: str
    rule_id: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Deferred:
    """Proposal acceptable once ``condition`` holds."""
    condition: str
    quantity: Decimal
    price: Decimal
    reason: str = ""
    adjustments: List[str] = field(default_factory=list)


GuardrailDecision = Union[Approved, Rejected, Deferred]


# =============================================================================
# Rule registry
# =============================================================================

@dataclass
class RuleCheck:
    """Result of a single rule.

    Attributes:
        passed: Whether the proposal passed this rule
        reason: Human-readable explanation if the rule failed
        rule_id: Stable identifier reported on rejection
        defer_condition: When set on a failure, defer instead of reject
        metadata: Additional diagnostic information
    """
    passed: bool
    reason: str = ""
    rule_id: Optional[str] = None
    defer_condition: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GuardrailRule:
    """Individual guardrail rule definition.

    Attributes:
        name: Unique identifier for the rule
        check_fn: Function that performs the validation
        priority: Lower numbers = higher priority (checked first)
        is_blocking: If True, failure stops all further checks
    """
    name: str
    check_fn: Callable[["ProposalCheck"], RuleCheck]
    priority: int = 100
    is_blocking: bool = True


@dataclass
class ProposalCheck:
    """Working state for one evaluation. Rules may shrink ``quantity``."""
    proposal: TradeProposal
    portfolio: PortfolioState
    policy: ModePolicy
    override: Optional[Override]
    trades_today: int
    price: Optional[Decimal]
    now: datetime
    pending_quantity: Decimal = Decimal("0")
    pending_cost: Decimal = Decimal("0")
    quantity: Decimal = Decimal("0")
    adjustments: List[str] = field(default_factory=list)

    @property
    def effective_max_position_pct(self) -> Decimal:
        if self.override is not None and self.override.is_active(self.now):
            return self.override.max_position_pct
        return self.policy.max_position_pct


class GuardrailPolicy:
    """
    Approves, shrinks, rejects or defers proposals.

    The policy is stateless between calls: mode, override and trades-today
    are passed in by the caller, who holds the portfolio lock.
    """

    MAX_REJECTION_HISTORY = 1000

    def __init__(self, config: Optional[GuardrailConfig] = None):
        self.config = config or GuardrailConfig()
        self._rules: List[GuardrailRule] = []
        self._register_default_rules()
        self.rejections: List[Dict[str, Any]] = []

    def _register_default_rules(self):
        """Register the default set of rules in priority order."""
        self._rules = [
            GuardrailRule("pause", self._check_pause, priority=1),
            GuardrailRule("proposal", self._check_proposal, priority=2),
            GuardrailRule("holding", self._check_holding, priority=3),
            GuardrailRule("max_position", self._check_max_position, priority=4),
            GuardrailRule("trades_per_day", self._check_trades_per_day, priority=5),
            GuardrailRule("confluence", self._check_confluence, priority=6),
            GuardrailRule("cash", self._check_cash, priority=7),
        ]
        self._rules.sort(key=lambda r: r.priority)

    @property
    def rules(self) -> List[GuardrailRule]:
        return list(self._rules)

    def evaluate(
        self,
        proposal: TradeProposal,
        portfolio: PortfolioState,
        policy: ModePolicy,
        override: Optional[Override],
        trades_today: int,
        price: Optional[Decimal],
        now: Optional[datetime] = None,
        pending_quantity: Decimal = Decimal("0"),
        pending_cost: Decimal = Decimal("0"),
    ) -> GuardrailDecision:
        """
        Evaluate a proposal against all rules.

        Args:
            proposal: Parsed provider proposal
            portfolio: Current state of the book
            policy: Limits of the book's active mode
            override: Active override, if any
            trades_today: Trades approved or deferred this trading day
            price: Reference price (limit price or latest quote)
            now: Evaluation time (defaults to current UTC time)
            pending_quantity: Open BUY quantity already queued for this symbol
            pending_cost: Cost of every open BUY queued for the book

        Returns:
            Approved, Rejected or Deferred
        """
        check = ProposalCheck(
            proposal=proposal,
            portfolio=portfolio,
            policy=policy,
            override=override,
            trades_today=trades_today,
            price=price,
            now=now or utc_now(),
            pending_quantity=pending_quantity,
            pending_cost=pending_cost,
        )

        deferral: Optional[RuleCheck] = None
        for rule in self._rules:
            try:
                result = rule.check_fn(check)
            except Exception as e:
                logger.error(
                    "guardrails.rule_error",
                    rule=rule.name,
                    error=str(e),
                    symbol=proposal.symbol,
                )
                return self._reject(
                    check,
                    f"Guardrail rule '{rule.name}' encountered an error",
                    "GUARDRAIL_RULE_ERROR",
                )

            if result.passed:
                continue
            if result.defer_condition:
                deferral = result
                continue
            if rule.is_blocking:
                return self._reject(check, result.reason, result.rule_id or rule.name.upper(), result.metadata)

        if deferral is not None:
            logger.info(
                "guardrails.proposal_deferred",
                portfolio=portfolio.portfolio_tag,
                symbol=proposal.symbol,
                condition=deferral.defer_condition,
                reason=deferral.reason,
            )
            return Deferred(
                condition=deferral.defer_condition,
                quantity=check.quantity,
                price=check.price,
                reason=deferral.reason,
                adjustments=list(check.adjustments),
            )

        logger.info(
            "guardrails.proposal_approved",
            portfolio=portfolio.portfolio_tag,
            symbol=proposal.symbol,
            action=proposal.action.value,
            quantity=str(check.quantity),
            adjustments=check.adjustments or None,
        )
        return Approved(quantity=check.quantity, price=check.price, adjustments=list(check.adjustments))

    def _reject(self, check: ProposalCheck, reason: str, rule_id: str,
                metadata: Optional[Dict[str, Any]] = None) -> Rejected:
        logger.warning(
            "guardrails.proposal_rejected",
            portfolio=check.portfolio.portfolio_tag,
            symbol=check.proposal.symbol,
            action=check.proposal.action.value,
            rule_id=rule_id,
            reason=reason,
        )
        self.rejections.append({
            "timestamp": check.now.isoformat(),
            "portfolio": check.portfolio.portfolio_tag,
            "symbol": check.proposal.symbol,
            "action": check.proposal.action.value,
            "rule_id": rule_id,
            "reason": reason,
        })
        if len(self.rejections) > self.MAX_REJECTION_HISTORY:
            self.rejections = self.rejections[-self.MAX_REJECTION_HISTORY:]
        return Rejected(reason=reason, rule_id=rule_id, metadata=metadata or {})

    # === Rule implementations ===

    def _check_pause(self, check: ProposalCheck) -> RuleCheck:
        """New entries are blocked while the mode forbids them, unless overridden."""
        if check.proposal.action != TradeAction.BUY or check.policy.allows_new_entries:
            return RuleCheck(passed=True)
        if check.override is not None and check.override.is_active(check.now):
            check.adjustments.append("pause lifted by active override")
            return RuleCheck(passed=True)
        return RuleCheck(
            passed=False,
            reason=f"Trading paused ({check.policy.mode.value}); new entries blocked",
            rule_id="CIRCUIT_BREAKER_PAUSE_ACTIVE",
        )

    def _check_proposal(self, check: ProposalCheck) -> RuleCheck:
        """Validate the action and price, and size the order."""
        proposal = check.proposal
        if proposal.action == TradeAction.HOLD:
            return RuleCheck(passed=False, reason="HOLD is not executable", rule_id="INVALID_PROPOSAL")

        if check.price is None or check.price <= 0:
            return RuleCheck(
                passed=False,
                reason=f"No usable price for {proposal.symbol}",
                rule_id="NO_PRICE",
            )

        if proposal.quantity is not None:
            quantity = proposal.quantity
        elif proposal.action == TradeAction.SELL:
            quantity = check.portfolio.quantity_of(proposal.symbol)
        else:
            pct = proposal.target_position_pct or self.config.default_position_pct
            quantity = check.portfolio.total_value * pct / Decimal("100") / check.price
            check.adjustments.append(f"sized to {pct}% of portfolio value")

        quantity = self._round_lot(quantity)
        if quantity <= 0:
            return RuleCheck(
                passed=False,
                reason=f"Quantity for {proposal.symbol} rounds to zero",
                rule_id="INVALID_QUANTITY",
            )
        check.quantity = quantity
        return RuleCheck(passed=True)

    def _check_holding(self, check: ProposalCheck) -> RuleCheck:
        """SELL is clamped to the quantity actually held."""
        if check.proposal.action != TradeAction.SELL:
            return RuleCheck(passed=True)
        held = check.portfolio.quantity_of(check.proposal.symbol)
        if held <= 0:
            return RuleCheck(
                passed=False,
                reason=f"No {check.proposal.symbol} position to sell",
                rule_id="NO_POSITION_TO_SELL",
            )
        if check.quantity > held:
            check.adjustments.append(f"sell quantity clamped from {check.quantity} to held {held}")
            check.quantity = held
        return RuleCheck(passed=True)

    def _check_max_position(self, check: ProposalCheck) -> RuleCheck:
        """Resulting position, including open queued BUYs, must stay within the cap."""
        if check.proposal.action != TradeAction.BUY:
            return RuleCheck(passed=True)

        total_value = check.portfolio.total_value
        if total_value <= 0:
            return RuleCheck(
                passed=False,
                reason="Portfolio has no value",
                rule_id="MAX_POSITION_EXCEEDED",
            )

        cap_pct = check.effective_max_position_pct
        cap_value = total_value * cap_pct / Decimal("100")
        existing_value = (
            check.portfolio.position_value(check.proposal.symbol, check.price)
            + check.pending_quantity * check.price
        )
        resulting_value = existing_value + check.quantity * check.price

        if resulting_value <= cap_value:
            return RuleCheck(passed=True)

        resulting_pct = resulting_value / total_value * Decimal("100")
        metadata = {
            "resulting_value": str(resulting_value),
            "resulting_pct": str(resulting_pct.quantize(Decimal("0.01"))),
            "cap_pct": str(cap_pct),
            "pending_quantity": str(check.pending_quantity),
        }

        if self.config.downsize_to_cap:
            allowed = self._round_lot((cap_value - existing_value) / check.price)
            if allowed > 0:
                check.adjustments.append(
                    f"downsized from {check.quantity} to {allowed} to respect {cap_pct}% cap"
                )
                check.quantity = allowed
                return RuleCheck(passed=True, metadata=metadata)

        return RuleCheck(
            passed=False,
            reason=(
                f"Position in {check.proposal.symbol} would be "
                f"{metadata['resulting_pct']}% of portfolio, cap is {cap_pct}%"
            ),
            rule_id="MAX_POSITION_EXCEEDED",
            metadata=metadata,
        )

    def _check_trades_per_day(self, check: ProposalCheck) -> RuleCheck:
        limit = check.policy.max_trades_per_day
        if check.trades_today >= limit:
            return RuleCheck(
                passed=False,
                reason=f"Daily trade limit reached ({check.trades_today}/{limit})",
                rule_id="MAX_TRADES_PER_DAY",
            )
        return RuleCheck(passed=True)

    def _check_confluence(self, check: ProposalCheck) -> RuleCheck:
        """Confidence and signal agreement, for new entries in modes that require it."""
        if not check.policy.requires_confluence or check.proposal.action != TradeAction.BUY:
            return RuleCheck(passed=True)

        if check.proposal.confidence < self.config.min_confidence:
            return RuleCheck(
                passed=False,
                reason=(
                    f"Confidence {check.proposal.confidence:.2f} below "
                    f"{self.config.min_confidence:.2f}"
                ),
                rule_id="CONFLUENCE_LOW_CONFIDENCE",
            )

        signals = count_signals(check.proposal)
        if signals < self.config.min_signals:
            return RuleCheck(
                passed=False,
                reason=f"Only {signals} confirming signal(s), need {self.config.min_signals}",
                rule_id="CONFLUENCE_INSUFFICIENT_SIGNALS",
            )
        return RuleCheck(passed=True)

    def _check_cash(self, check: ProposalCheck) -> RuleCheck:
        """BUY cost above cash not already committed to open BUYs defers."""
        if check.proposal.action != TradeAction.BUY:
            return RuleCheck(passed=True)
        cost = check.quantity * check.price
        available = check.portfolio.cash - check.pending_cost
        if cost > available:
            return RuleCheck(
                passed=False,
                reason=f"Cost {cost} exceeds available cash {available}",
                defer_condition="sufficient_cash",
            )
        return RuleCheck(passed=True)

    def _round_lot(self, quantity: Decimal) -> Decimal:
        lot = self.config.lot_size
        return (quantity / lot).to_integral_value(rounding=ROUND_DOWN) * lot
