"""Reasoning provider interface and prompt rendering."""
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from tradeguard.core.models import MarketContext

SYSTEM_PROMPT = (
    "You are a disciplined equity trader managing a simulated portfolio. "
    "Respond with JSON only: {\"decisions\": [{\"symbol\", \"action\" (BUY|SELL|HOLD), "
    "\"quantity\", \"confidence\" (0-1), \"reasoning\", \"signals\" (indicator names), "
    "\"predicted_direction\" (up|down|flat), \"price_target\", \"timeframe_days\"}]}. "
    "Respect the position limit and trade budget shown in the context."
)


@dataclass
class RawResponse:
    """Provider output before normalization.

    Attributes:
        provider_id: Provider that produced the response
        kind: Response dialect, used by the parser to pick field aliases
        body: Decoded JSON (dict/list) or raw text
        elapsed_seconds: Wall time of the call
    """
    provider_id: str
    kind: str
    body: Any
    elapsed_seconds: float = 0.0


def render_prompt(context: MarketContext, max_proposals: int = 10) -> str:
    """Render a compact JSON prompt from the market context."""
    portfolio = context.portfolio
    payload = {
        "portfolio": context.portfolio_tag,
        "as_of": context.generated_at.isoformat(),
        "mode": context.mode.value,
        "max_position_pct": str(context.override_pct or context.mode_policy.max_position_pct),
        "trades_remaining_today": max(context.mode_policy.max_trades_per_day - context.trades_today, 0),
        "cash": str(portfolio.cash),
        "total_value": str(portfolio.total_value),
        "positions": {
            s: {"quantity": str(p.quantity), "avg_price": str(p.avg_price)}
            for s, p in portfolio.positions.items()
        },
        "quotes": {
            s: {
                "price": str(q.price),
                "change_pct": q.change_pct,
                "indicators": q.indicators,
                "stale": s in context.stale_symbols,
            }
            for s, q in context.quotes.items()
        },
        "benchmark": {"symbol": context.benchmark_symbol, "price": str(context.benchmark_price)},
        "recent_decisions": context.recent_decisions,
        "max_proposals": max_proposals,
    }
    return json.dumps(payload, separators=(",", ":"))


class ReasoningProvider(ABC):
    """A model endpoint that turns a market context into trade proposals."""

    kind: str = "generic"

    def __init__(self, provider_id: str):
        self.provider_id = provider_id

    @abstractmethod
    async def query(self, context: MarketContext) -> RawResponse:
        """Query the provider once. No retries; the cascade handles fallback."""

    async def close(self):
        """Release any held resources."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.provider_id!r})"


def decode_json_text(text: Optional[str]) -> Any:
    """Decode JSON that may be wrapped in a markdown fence or prose.

    Raises:
        ValueError: No JSON document could be found
    """
    if text is None:
        raise ValueError("empty response")
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped.strip("`")
        if stripped.lower().startswith("json"):
            stripped = stripped[4:]
        stripped = stripped.strip()
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        pass

    # Fall back to the outermost object or array in the text
    for opener, closer in (("{", "}"), ("[", "]")):
        start, end = stripped.find(opener), stripped.rfind(closer)
        if start != -1 and end > start:
            try:
                return json.loads(stripped[start:end + 1])
            except json.JSONDecodeError:
                continue
    raise ValueError("no JSON document in response")
