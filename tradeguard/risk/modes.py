"""Trading modes and the human override slot.

Each portfolio book has exactly one active mode at a time. The mode decides
the position cap, the daily trade budget and whether confluence is required.
A time-boxed override can raise the position cap for a book; it expires on
its own once the wall clock passes ``expires_at``.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

import structlog

from tradeguard.core.config import TradeGuardConfig, tradeguard_config
from tradeguard.core.models import (
    ModePolicy, ModeTransition, Override, TradingModeName, utc_now
)

logger = structlog.get_logger(__name__)


def build_mode_policies(config: Optional[TradeGuardConfig] = None) -> Dict[TradingModeName, ModePolicy]:
    """Build the mode table from configuration."""
    config = config or tradeguard_config
    return {
        TradingModeName(name): ModePolicy(mode=TradingModeName(name), **limits)
        for name, limits in config.mode_limits().items()
    }


class ModeController:
    """
    Holds the active mode and override for one portfolio book.

    Every transition is recorded with its source (operator, circuit_breaker
    or recovery) and returned to the caller so it can be audited.
    """

    def __init__(
        self,
        portfolio_tag: str,
        policies: Dict[TradingModeName, ModePolicy],
        initial_mode: TradingModeName = TradingModeName.NORMAL,
    ):
        missing = set(TradingModeName) - set(policies)
        if missing:
            raise ValueError(f"Missing mode policies: {sorted(m.value for m in missing)}")

        self.portfolio_tag = portfolio_tag
        self.policies = policies
        self._mode = initial_mode
        self._override: Optional[Override] = None
        self.history: List[ModeTransition] = []

    @property
    def mode(self) -> TradingModeName:
        return self._mode

    @property
    def policy(self) -> ModePolicy:
        return self.policies[self._mode]

    def set_mode(
        self,
        new_mode: TradingModeName,
        reason: str,
        source: str = "operator",
        now: Optional[datetime] = None,
    ) -> Optional[ModeTransition]:
        """
        Switch to ``new_mode``.

        Returns:
            The transition, or None when already in that mode
        """
        if new_mode == self._mode:
            return None

        transition = ModeTransition(
            portfolio_tag=self.portfolio_tag,
            from_mode=self._mode,
            to_mode=new_mode,
            reason=reason,
            source=source,
            at=now or utc_now(),
        )
        self._mode = new_mode
        self.history.append(transition)

        log = logger.warning if new_mode == TradingModeName.PAUSED else logger.info
        log(
            "modes.transition",
            portfolio=self.portfolio_tag,
            from_mode=transition.from_mode.value,
            to_mode=transition.to_mode.value,
            reason=reason,
            source=source,
        )
        return transition

    # === Override slot ===

    def grant_override(
        self,
        max_position_pct: Decimal,
        duration: timedelta,
        reason: str,
        granted_by: str = "operator",
        now: Optional[datetime] = None,
    ) -> Override:
        """Install an override, replacing any existing one."""
        now = now or utc_now()
        if duration <= timedelta(0):
            raise ValueError("Override duration must be positive")

        self._override = Override(
            portfolio_tag=self.portfolio_tag,
            max_position_pct=max_position_pct,
            reason=reason,
            granted_by=granted_by,
            granted_at=now,
            expires_at=now + duration,
        )
        logger.warning(
            "modes.override_granted",
            portfolio=self.portfolio_tag,
            max_position_pct=str(max_position_pct),
            expires_at=self._override.expires_at.isoformat(),
            granted_by=granted_by,
            reason=reason,
        )
        return self._override

    def revoke_override(self) -> Optional[Override]:
        """Remove the override. Returns the revoked one, if any."""
        revoked, self._override = self._override, None
        if revoked:
            logger.info("modes.override_revoked", portfolio=self.portfolio_tag)
        return revoked

    def active_override(self, now: Optional[datetime] = None) -> Optional[Override]:
        """The override in force at ``now``; expired overrides are dropped."""
        if self._override is None:
            return None
        now = now or utc_now()
        if self._override.is_active(now):
            return self._override
        if now >= self._override.expires_at:
            logger.info(
                "modes.override_expired",
                portfolio=self.portfolio_tag,
                expired_at=self._override.expires_at.isoformat(),
            )
            self._override = None
        return None

    def effective_max_position_pct(self, now: Optional[datetime] = None) -> Decimal:
        override = self.active_override(now)
        if override is not None:
            return override.max_position_pct
        return self.policy.max_position_pct
