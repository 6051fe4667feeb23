"""TradeGuard - semi-autonomous, risk-governed trading decisions."""

__version__ = "0.3.0"
