"""Normalize provider responses into canonical trade proposals.

Providers disagree on envelope and field names (``ticker`` vs ``symbol``,
``rationale`` vs ``reasoning``, confidence on 0-1 or 0-100). This adapter maps
every known dialect onto TradeProposal and drops fields it does not know.
A bad envelope makes the whole response malformed; a bad item only skips
that proposal.
"""
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

import structlog
from pydantic import ValidationError

from tradeguard.core.exceptions import MalformedProviderResponse
from tradeguard.core.models import TradeAction, TradeProposal
from tradeguard.providers.base import RawResponse, decode_json_text

logger = structlog.get_logger(__name__)

ENVELOPE_KEYS = ("decisions", "trades", "actions", "proposals", "recommendations", "orders")

FIELD_ALIASES: Dict[str, Iterable[str]] = {
    "symbol": ("symbol", "ticker", "asset", "stock"),
    "action": ("action", "side", "decision", "signal", "trade"),
    "quantity": ("quantity", "qty", "shares", "size", "amount"),
    "target_position_pct": ("target_position_pct", "position_pct", "target_pct", "allocation_pct"),
    "limit_price": ("limit_price", "limit"),
    "confidence": ("confidence", "conviction", "probability"),
    "reasoning": ("reasoning", "rationale", "reason", "thesis", "explanation"),
    "signals": ("signals", "indicators", "confluence"),
    "predicted_direction": ("predicted_direction", "direction", "prediction", "outlook"),
    "predicted_price_target": ("predicted_price_target", "price_target", "target_price", "target"),
    "predicted_timeframe_days": ("predicted_timeframe_days", "timeframe_days", "timeframe", "horizon_days"),
}

ACTION_WORDS = {
    "buy": TradeAction.BUY, "long": TradeAction.BUY, "enter": TradeAction.BUY, "add": TradeAction.BUY,
    "sell": TradeAction.SELL, "short": TradeAction.SELL, "exit": TradeAction.SELL,
    "close": TradeAction.SELL, "trim": TradeAction.SELL, "reduce": TradeAction.SELL,
    "hold": TradeAction.HOLD, "wait": TradeAction.HOLD, "none": TradeAction.HOLD,
    "pass": TradeAction.HOLD,
}

DIRECTION_WORDS = {
    "up": "up", "bullish": "up", "higher": "up", "rise": "up",
    "down": "down", "bearish": "down", "lower": "down", "fall": "down",
    "flat": "flat", "neutral": "flat", "sideways": "flat",
}


def _first(item: Dict[str, Any], canonical: str) -> Any:
    lowered = {str(k).lower(): v for k, v in item.items()}
    for alias in FIELD_ALIASES[canonical]:
        value = lowered.get(alias)
        if value is not None and value != "":
            return value
    return None


def _decimal(value: Any, field: str) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, str):
        value = value.replace("$", "").replace(",", "").replace("%", "").strip()
        if not value:
            return None
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"{field} is not a number: {value!r}")
    if not result.is_finite():
        raise ValueError(f"{field} is not finite: {value!r}")
    return result


def _confidence(value: Any) -> float:
    if value is None:
        return 0.5
    if isinstance(value, str) and value.strip().lower() in ("high", "medium", "low"):
        return {"high": 0.8, "medium": 0.6, "low": 0.4}[value.strip().lower()]
    number = float(_decimal(value, "confidence"))
    if 1 < number <= 100:
        number /= 100
    if not 0 <= number <= 1:
        raise ValueError(f"confidence out of range: {value!r}")
    return number


def _timeframe(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return int(value)
    match = re.match(r"\s*(\d+)\s*(d|day|days|w|week|weeks)?\s*$", str(value), re.IGNORECASE)
    if not match:
        raise ValueError(f"timeframe not understood: {value!r}")
    days = int(match.group(1))
    if match.group(2) and match.group(2).lower().startswith("w"):
        days *= 7
    return days


def _signals(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [s.strip() for s in value.split(",") if s.strip()]
    if isinstance(value, dict):
        return [str(k) for k in value]
    return [str(s) for s in value]


class ResponseParser:
    """Turns a RawResponse into proposals."""

    def __init__(self, max_proposals: int = 10):
        self.max_proposals = max_proposals

    def extract_items(self, raw: RawResponse) -> List[Dict[str, Any]]:
        """
        Unwrap the envelope into a list of proposal dicts.

        Raises:
            MalformedProviderResponse: The envelope is unusable
        """
        body = raw.body
        if isinstance(body, (bytes, bytearray)):
            body = body.decode("utf-8", errors="replace")
        if isinstance(body, str):
            try:
                body = decode_json_text(body)
            except ValueError as e:
                raise MalformedProviderResponse(str(e), raw.provider_id, raw.body)

        if isinstance(body, dict):
            for key in ENVELOPE_KEYS:
                lowered = {str(k).lower(): v for k, v in body.items()}
                if key in lowered:
                    body = lowered[key]
                    break
            else:
                if _first(body, "symbol") is not None:
                    body = [body]
                else:
                    raise MalformedProviderResponse(
                        "response object has no decisions", raw.provider_id, raw.body
                    )

        if not isinstance(body, list):
            raise MalformedProviderResponse(
                f"expected a list of decisions, got {type(body).__name__}",
                raw.provider_id,
                raw.body,
            )

        if len(body) > self.max_proposals:
            logger.warning(
                "parser.proposals_truncated",
                provider=raw.provider_id,
                received=len(body),
                kept=self.max_proposals,
            )
            body = body[:self.max_proposals]
        return body

    def to_proposal(self, item: Any, provider_id: Optional[str] = None) -> TradeProposal:
        """
        Map one item onto a TradeProposal.

        Raises:
            MalformedProviderResponse: Item is missing required fields or has bad values
        """
        if not isinstance(item, dict):
            raise MalformedProviderResponse(
                f"decision is not an object: {item!r}", provider_id, item
            )
        try:
            symbol = _first(item, "symbol")
            action_word = _first(item, "action")
            if symbol is None or action_word is None:
                raise ValueError("decision needs a symbol and an action")
            action = ACTION_WORDS.get(str(action_word).strip().lower())
            if action is None:
                raise ValueError(f"unknown action {action_word!r}")

            direction = _first(item, "predicted_direction")
            if direction is not None:
                direction = DIRECTION_WORDS.get(str(direction).strip().lower())

            quantity = _decimal(_first(item, "quantity"), "quantity")
            if quantity is not None and quantity <= 0:
                raise ValueError(f"quantity must be positive, got {quantity}")

            return TradeProposal(
                symbol=str(symbol),
                action=action,
                quantity=quantity,
                target_position_pct=_decimal(_first(item, "target_position_pct"), "target_position_pct"),
                limit_price=_decimal(_first(item, "limit_price"), "limit_price"),
                confidence=_confidence(_first(item, "confidence")),
                reasoning=str(_first(item, "reasoning") or ""),
                signals=_signals(_first(item, "signals")),
                predicted_direction=direction,
                predicted_price_target=_decimal(_first(item, "predicted_price_target"), "price_target"),
                predicted_timeframe_days=_timeframe(_first(item, "predicted_timeframe_days")),
            )
        except (ValueError, TypeError, ValidationError) as e:
            raise MalformedProviderResponse(str(e), provider_id, item)

    def parse(self, raw: RawResponse) -> List[TradeProposal]:
        """Strict parse: any malformed item fails the whole response."""
        return [self.to_proposal(item, raw.provider_id) for item in self.extract_items(raw)]
