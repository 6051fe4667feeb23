"""Trade queue - holds orders until their trading window opens.

Orders move strictly forward: queued -> executing -> executed | failed, or
queued -> cancelled. A failed order is terminal and never retried, and an
order found in ``executing`` after a restart is marked failed rather than
re-run, so no order can execute twice.

Books are processed concurrently on each tick, each under its own lock, and
every execution call carries an explicit timeout so one hung book cannot
stall the others.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

import structlog

from tradeguard.audit.hash_chain import AuditLog
from tradeguard.core.config import SchedulerConfig
from tradeguard.core.exceptions import InvalidQueueTransition, QueueExecutionFailed, TradeGuardError
from tradeguard.core.models import (
    BatchEnqueueResult, QueueLogEntry, QueueStatus, QueuedTrade, SchedulerStatus, TradeAction,
    utc_now
)
from tradeguard.execution.base import OrderExecutor, PortfolioSource
from tradeguard.risk.controls import ControlRegistry
from tradeguard.scheduler.market_hours import MarketCalendar
from tradeguard.storage.database import Database

logger = structlog.get_logger(__name__)

ConditionCheck = Callable[[QueuedTrade], Awaitable[bool]]


@dataclass
class TickResult:
    """What one tick did."""
    at: datetime
    market_open: bool
    executed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    waiting: int = 0


class TradeQueue:
    """
    In-memory queue backed by the database.

    ``submit`` expects the caller to hold the book's lock (the engine does,
    during a cycle). ``tick`` and ``cancel`` take the lock themselves.
    While ``is_halted()`` is true nothing executes; orders stay queued.
    """

    def __init__(
        self,
        executor: OrderExecutor,
        calendar: MarketCalendar,
        controls: ControlRegistry,
        audit: AuditLog,
        database: Optional[Database] = None,
        portfolio_source: Optional[PortfolioSource] = None,
        config: Optional[SchedulerConfig] = None,
        is_halted: Optional[Callable[[], bool]] = None,
    ):
        self.executor = executor
        self.calendar = calendar
        self.controls = controls
        self.audit = audit
        self.database = database
        self.portfolio_source = portfolio_source
        self.config = config or SchedulerConfig()
        self.is_halted = is_halted or (lambda: False)

        self._trades: Dict[str, QueuedTrade] = {}
        self._log: Dict[str, List[QueueLogEntry]] = {}
        self._conditions: Dict[str, ConditionCheck] = {}
        self.running = False
        self.last_tick: Optional[datetime] = None

        if portfolio_source is not None:
            self.register_condition("sufficient_cash", self._has_sufficient_cash)

    # === Conditions ===

    def register_condition(self, name: str, check: ConditionCheck):
        """Register a readiness check for trades carrying ``condition=name``."""
        self._conditions[name] = check

    async def _has_sufficient_cash(self, trade: QueuedTrade) -> bool:
        price = trade.target_price or trade.reference_price
        if price is None:
            return True
        portfolio = await self.portfolio_source.get_portfolio(trade.portfolio_tag)
        return portfolio.cash >= trade.quantity * price

    async def _is_ready(self, trade: QueuedTrade, now: datetime) -> bool:
        if trade.scheduled_for is not None and trade.scheduled_for > now:
            return False
        if not trade.condition:
            return True
        check = self._conditions.get(trade.condition)
        if check is None:
            logger.warning(
                "queue.unknown_condition",
                queue_id=trade.id,
                condition=trade.condition,
            )
            return False
        return await check(trade)

    # === Persistence ===

    async def load(self) -> int:
        """
        Load open trades from the database.

        Trades persisted as ``executing`` were interrupted mid-execution and
        are marked failed.

        Returns:
            Number of trades loaded
        """
        if self.database is None:
            return 0

        loaded = 0
        for status in (QueueStatus.QUEUED, QueueStatus.EXECUTING):
            for trade in await self.database.get_queued_trades(status=status.value):
                self._trades[trade.id] = trade
                loaded += 1
                if trade.status == QueueStatus.EXECUTING:
                    await self._fail(trade, "interrupted before completion (restart)", utc_now())

        logger.info("queue.loaded", trades=loaded)
        return loaded

    async def _persist(self, trade: QueuedTrade):
        if self.database is not None:
            await self.database.save_queued_trade(trade)

    async def _record(self, trade: QueuedTrade, event: str, details: Optional[str] = None,
                      **audit_fields: Any):
        entry = QueueLogEntry(queue_id=trade.id, event=event, details=details)
        self._log.setdefault(trade.id, []).append(entry)
        if self.database is not None:
            await self.database.add_queue_log(entry)
        await self.audit.append({
            "event": f"queue.{event}",
            "queue_id": trade.id,
            "portfolio": trade.portfolio_tag,
            "symbol": trade.symbol,
            "action": trade.action.value,
            "quantity": str(trade.quantity),
            "status": trade.status.value,
            "details": details,
            **audit_fields,
        })

    # === Enqueue / cancel ===

    async def enqueue(self, trade: QueuedTrade) -> str:
        """Add a trade to the queue and return its id."""
        if trade.status != QueueStatus.QUEUED:
            raise InvalidQueueTransition(trade.id, trade.status.value, QueueStatus.QUEUED.value)
        if trade.portfolio_tag not in self.controls:
            raise ValueError(f"Unknown portfolio: {trade.portfolio_tag}")
        if trade.id in self._trades:
            raise ValueError(f"Trade {trade.id} already queued")

        self._trades[trade.id] = trade
        await self._persist(trade)
        await self._record(
            trade,
            "queued",
            f"{trade.action.value} {trade.quantity} {trade.symbol}"
            + (f" (waiting for {trade.condition})" if trade.condition else ""),
            source=trade.source,
            condition=trade.condition,
        )
        logger.info(
            "queue.trade_queued",
            queue_id=trade.id,
            portfolio=trade.portfolio_tag,
            symbol=trade.symbol,
            action=trade.action.value,
            quantity=str(trade.quantity),
            condition=trade.condition,
        )
        return trade.id

    async def enqueue_batch(self, trades: Iterable[QueuedTrade]) -> BatchEnqueueResult:
        """Enqueue several trades; failures are reported, not raised."""
        trades = list(trades)
        queued_ids, errors = [], []
        for trade in trades:
            try:
                queued_ids.append(await self.enqueue(trade))
            except (ValueError, TradeGuardError) as e:
                errors.append(f"{trade.symbol}: {e}")
        return BatchEnqueueResult(
            total=len(trades),
            success_count=len(queued_ids),
            fail_count=len(errors),
            queued_ids=queued_ids,
            errors=errors,
        )

    async def cancel(self, queue_id: str, reason: str = "cancelled by operator") -> QueuedTrade:
        """
        Cancel a queued trade.

        Raises:
            KeyError: Unknown id
            InvalidQueueTransition: Trade is no longer queued
        """
        trade = self.get(queue_id)
        if trade is None:
            raise KeyError(f"Unknown queued trade: {queue_id}")

        async with self.controls.get(trade.portfolio_tag).lock:
            trade.transition(QueueStatus.CANCELLED)
            await self._persist(trade)
            await self._record(trade, "cancelled", reason)

        logger.info("queue.trade_cancelled", queue_id=queue_id, reason=reason)
        return trade

    # === Execution ===

    async def submit(self, trade: QueuedTrade, now: Optional[datetime] = None) -> QueuedTrade:
        """
        Enqueue and, if the window is open, execute immediately.

        The caller must hold the book's lock.
        """
        now = now or utc_now()
        await self.enqueue(trade)
        if self.is_halted():
            logger.info("queue.submit_halted", queue_id=trade.id)
            return trade
        if self.calendar.is_open(now) and await self._is_ready(trade, now):
            await self._execute(trade, now)
        return trade

    async def tick(self, now: Optional[datetime] = None) -> TickResult:
        """
        Execute every ready trade whose window is open.

        When the venue is closed nothing transitions.
        """
        now = now or utc_now()
        self.last_tick = now
        result = TickResult(at=now, market_open=self.calendar.is_open(now))

        queued = [t for t in self._trades.values() if t.status == QueueStatus.QUEUED]
        if not result.market_open:
            result.waiting = len(queued)
            logger.debug("queue.tick_market_closed", queued=len(queued))
            return result
        if self.is_halted():
            result.waiting = len(queued)
            logger.info("queue.tick_halted", queued=len(queued))
            return result

        by_portfolio: Dict[str, List[QueuedTrade]] = {}
        for trade in sorted(queued, key=lambda t: t.created_at):
            by_portfolio.setdefault(trade.portfolio_tag, []).append(trade)

        outcomes = await asyncio.gather(*(
            self._process_portfolio(tag, trades, now) for tag, trades in by_portfolio.items()
        ))
        for executed, failed, waiting in outcomes:
            result.executed.extend(executed)
            result.failed.extend(failed)
            result.waiting += waiting

        if result.executed or result.failed:
            logger.info(
                "queue.tick_completed",
                executed=len(result.executed),
                failed=len(result.failed),
                waiting=result.waiting,
            )
        return result

    async def _process_portfolio(self, portfolio_tag: str, trades: List[QueuedTrade], now: datetime):
        executed, failed, waiting = [], [], 0
        async with self.controls.get(portfolio_tag).lock:
            for trade in trades:
                # May have been cancelled while waiting for the lock
                if trade.status != QueueStatus.QUEUED:
                    continue
                if self.is_halted() or not await self._is_ready(trade, now):
                    waiting += 1
                    continue
                await self._execute(trade, now)
                if trade.status == QueueStatus.EXECUTED:
                    executed.append(trade.id)
                else:
                    failed.append(trade.id)
        return executed, failed, waiting

    async def _execute(self, trade: QueuedTrade, now: datetime):
        """Run one trade to a terminal state. Book lock must be held."""
        trade.transition(QueueStatus.EXECUTING)
        await self._persist(trade)
        await self._record(trade, "executing")

        timeout = self.config.execution_timeout_seconds
        try:
            result = await asyncio.wait_for(
                self.executor.execute(
                    trade.portfolio_tag,
                    trade.symbol,
                    trade.action,
                    trade.quantity,
                    trade.target_price,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            await self._fail(trade, f"execution timed out after {timeout}s", now)
            return
        except TradeGuardError as e:
            await self._fail(trade, e.message, now)
            return
        except Exception as e:
            logger.error("queue.executor_error", queue_id=trade.id, error=str(e), exc_info=True)
            await self._fail(trade, f"executor error: {e}", now)
            return

        trade.transition(QueueStatus.EXECUTED)
        trade.executed_at = result.executed_at
        trade.execution_price = result.fill_price
        trade.execution_ref = result.execution_ref
        trade.realized_pnl = result.realized_pnl
        await self._persist(trade)
        await self._record(
            trade,
            "executed",
            f"filled at {result.fill_price}",
            execution_price=str(result.fill_price),
            execution_ref=result.execution_ref,
            realized_pnl=str(result.realized_pnl) if result.realized_pnl is not None else None,
        )
        logger.info(
            "queue.trade_executed",
            queue_id=trade.id,
            portfolio=trade.portfolio_tag,
            symbol=trade.symbol,
            action=trade.action.value,
            quantity=str(trade.quantity),
            price=str(result.fill_price),
        )

        if result.realized_pnl is not None:
            await self._feed_breaker(trade.portfolio_tag, result.realized_pnl, now)

    async def _fail(self, trade: QueuedTrade, reason: str, now: datetime):
        error = QueueExecutionFailed(trade.id, reason)
        trade.transition(QueueStatus.FAILED)
        trade.error_message = reason
        trade.executed_at = now
        await self._persist(trade)
        await self._record(trade, "failed", reason, error_kind=error.kind)
        logger.error(
            "queue.trade_failed",
            queue_id=trade.id,
            portfolio=trade.portfolio_tag,
            symbol=trade.symbol,
            reason=reason,
        )

    async def _feed_breaker(self, portfolio_tag: str, realized_pnl: Decimal, now: datetime):
        """Report a realized outcome to the book's breaker. Lock must be held."""
        value = None
        if self.portfolio_source is not None:
            value = (await self.portfolio_source.get_portfolio(portfolio_tag)).total_value
        events = self.controls.get(portfolio_tag).breaker.record_outcome(realized_pnl, now, value)
        for event in events:
            await self.audit.append(event.to_audit_payload())

    # === Queries ===

    def get(self, queue_id: str) -> Optional[QueuedTrade]:
        return self._trades.get(queue_id)

    def list(
        self,
        status: Optional[QueueStatus] = None,
        portfolio_tag: Optional[str] = None,
        limit: int = 100,
    ) -> List[QueuedTrade]:
        """Trades in creation order, optionally filtered."""
        trades = sorted(self._trades.values(), key=lambda t: t.created_at)
        if status is not None:
            trades = [t for t in trades if t.status == status]
        if portfolio_tag is not None:
            trades = [t for t in trades if t.portfolio_tag == portfolio_tag.upper()]
        return trades[:limit]

    async def get_log(self, queue_id: str) -> List[QueueLogEntry]:
        if self.database is not None:
            return await self.database.get_queue_log(queue_id)
        return list(self._log.get(queue_id, []))

    def pending_buys(self, portfolio_tag: str, symbol: Optional[str] = None) -> Tuple[Decimal, Decimal]:
        """
        Open BUY exposure for a book: queued or executing, not yet filled.

        Returns:
            (quantity in ``symbol`` or in every symbol, cost at the decision price)
        """
        tag = portfolio_tag.upper()
        quantity = Decimal("0")
        cost = Decimal("0")
        for trade in self._trades.values():
            if trade.portfolio_tag != tag or trade.action != TradeAction.BUY or trade.is_terminal:
                continue
            if symbol is not None and trade.symbol != symbol.upper():
                continue
            quantity += trade.quantity
            price = trade.target_price or trade.reference_price
            if price is not None:
                cost += trade.quantity * price
        return quantity, cost

    def queued_count(self) -> int:
        return sum(1 for t in self._trades.values() if t.status == QueueStatus.QUEUED)

    def status(self, now: Optional[datetime] = None) -> SchedulerStatus:
        now = now or utc_now()
        return SchedulerStatus(
            running=self.running,
            queued_count=self.queued_count(),
            current_time=now,
            current_exchange_time=self.calendar.local(now).strftime("%Y-%m-%d %H:%M:%S %Z"),
            market_open=self.calendar.is_open(now),
            next_market_open=self.calendar.describe_next_open(now),
        )
