"""Risk controls for TradeGuard.

This module provides:
- Trading modes with per-mode limits and a time-boxed override slot
- Priority-ordered guardrail rules with stable rejection rule ids
- A circuit breaker for daily loss and consecutive-loss protection
- Per-portfolio locking so books trade independently
"""

from tradeguard.risk.circuit_breaker import BreakerEvent, CircuitBreaker
from tradeguard.risk.controls import ControlRegistry, PortfolioControls
from tradeguard.risk.guardrails import (
    Approved,
    Deferred,
    GuardrailDecision,
    GuardrailPolicy,
    GuardrailRule,
    Rejected,
    RuleCheck,
    count_signals,
)
from tradeguard.risk.modes import ModeController, build_mode_policies

__all__ = [
    'Approved',
    'BreakerEvent',
    'CircuitBreaker',
    'ControlRegistry',
    'Deferred',
    'GuardrailDecision',
    'GuardrailPolicy',
    'GuardrailRule',
    'ModeController',
    'PortfolioControls',
    'Rejected',
    'RuleCheck',
    'build_mode_policies',
    'count_signals',
]
