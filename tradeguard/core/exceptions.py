"""Error taxonomy for TradeGuard.

Every error carries a machine-readable ``kind`` alongside its message so the
control surface and the audit trail can report failures without parsing text.
Guardrail rejections and circuit-breaker pauses are decision outcomes, not
exceptions; they surface as rule ids on the recorded decision.
"""

from typing import Any, Dict, List, Optional


class TradeGuardError(Exception):
    """Base class for all TradeGuard errors."""

    kind = "trade_guard_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, **self.details}


class NoActiveSession(TradeGuardError):
    """A cycle or session operation was requested without an active session."""

    kind = "no_active_session"


class SessionAlreadyActive(TradeGuardError):
    """A session was started while another is active for the same portfolio."""

    kind = "session_already_active"


class CycleAlreadyRunning(TradeGuardError):
    """A decision cycle was requested while one is in flight for the portfolio."""

    kind = "cycle_already_running"


class AllProvidersExhausted(TradeGuardError):
    """Every reasoning provider in the cascade failed.

    Attributes:
        attempts: One entry per provider tried, in priority order, each a dict
            with ``provider_id``, ``reason`` and ``elapsed_seconds``.
    """

    kind = "all_providers_exhausted"

    def __init__(self, attempts: List[Dict[str, Any]]):
        summary = ", ".join(f"{a['provider_id']}: {a['reason']}" for a in attempts)
        super().__init__(
            f"All reasoning providers failed ({summary or 'none configured'})",
            attempts=attempts,
        )
        self.attempts = attempts


class MalformedProviderResponse(TradeGuardError):
    """A provider response (or one proposal inside it) could not be parsed."""

    kind = "malformed_provider_response"

    def __init__(self, message: str, provider_id: Optional[str] = None, raw: Any = None):
        super().__init__(message, provider_id=provider_id)
        self.provider_id = provider_id
        self.raw = raw


class QueueExecutionFailed(TradeGuardError):
    """Executing a queued order failed. Terminal for that order."""

    kind = "queue_execution_failed"

    def __init__(self, queue_id: str, reason: str):
        super().__init__(f"Queued trade {queue_id} failed: {reason}", queue_id=queue_id)
        self.queue_id = queue_id
        self.reason = reason


class ExecutionRejected(TradeGuardError):
    """The executor refused an order (no price, insufficient cash or shares)."""

    kind = "execution_rejected"


class InvalidQueueTransition(TradeGuardError):
    """A queued order was asked to move to a status it cannot reach."""

    kind = "invalid_queue_transition"

    def __init__(self, queue_id: str, current: str, requested: str):
        super().__init__(
            f"Queued trade {queue_id} cannot move from {current} to {requested}",
            queue_id=queue_id,
            current=current,
            requested=requested,
        )
        self.queue_id = queue_id
        self.current = current
        self.requested = requested


class ChainVerificationFailed(TradeGuardError):
    """The audit hash chain no longer verifies. Automated trading halts."""

    kind = "chain_verification_failed"

    def __init__(self, broken_at: int, reason: str):
        super().__init__(
            f"Audit chain broken at entry {broken_at}: {reason}",
            broken_at=broken_at,
        )
        self.broken_at = broken_at
        self.reason = reason


class StoreUnavailable(TradeGuardError):
    """The persistent store could not be read or written."""

    kind = "store_unavailable"


class TradingHalted(TradeGuardError):
    """Automated trading is halted pending human acknowledgement."""

    kind = "trading_halted"
