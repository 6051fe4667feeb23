"""Trade queue, market hours and the background scheduler."""

from tradeguard.scheduler.market_hours import MarketCalendar
from tradeguard.scheduler.runner import SchedulerRunner
from tradeguard.scheduler.trade_queue import TickResult, TradeQueue

__all__ = [
    'MarketCalendar',
    'SchedulerRunner',
    'TickResult',
    'TradeQueue',
]
