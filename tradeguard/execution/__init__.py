"""Order execution and portfolio sources."""

from tradeguard.execution.base import ExecutionResult, OrderExecutor, PortfolioSource
from tradeguard.execution.paper import PaperBroker

__all__ = [
    'ExecutionResult',
    'OrderExecutor',
    'PaperBroker',
    'PortfolioSource',
]
