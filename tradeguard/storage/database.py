"""Database storage for sessions, decisions, queued trades and snapshots."""
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, List, Optional

import structlog
from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Integer, Numeric, String, Text, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from tradeguard.core.config import database_config
from tradeguard.core.exceptions import StoreUnavailable
from tradeguard.core.models import (
    DecisionOutcome, PerformanceSnapshot, QueueLogEntry, QueueStatus, QueuedTrade,
    SessionStatus, TradeAction, TradeDecision, TradingSession
)

logger = structlog.get_logger(__name__)

Base = declarative_base()


class SessionModel(Base):
    """SQLAlchemy model for trading sessions."""
    __tablename__ = 'trading_sessions'

    id = Column(String, primary_key=True)
    portfolio_tag = Column(String, nullable=False, index=True)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=True)
    starting_value = Column(Numeric(36, 18), nullable=False)
    ending_value = Column(Numeric(36, 18), nullable=True)
    benchmark_start_price = Column(Numeric(36, 18), nullable=True)
    decisions_count = Column(Integer, default=0)
    trades_count = Column(Integer, default=0)
    notes = Column(Text, nullable=True)
    status = Column(String, nullable=False, default='active')


class DecisionModel(Base):
    """SQLAlchemy model for trade decisions."""
    __tablename__ = 'trade_decisions'

    id = Column(String, primary_key=True)
    session_id = Column(String, nullable=True, index=True)
    portfolio_tag = Column(String, nullable=False, index=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    action = Column(String, nullable=False)
    symbol = Column(String, nullable=False, index=True)
    quantity = Column(Numeric(36, 18), nullable=True)
    price_at_decision = Column(Numeric(36, 18), nullable=True)
    confidence = Column(Float, nullable=False, default=0.0)
    reasoning = Column(Text, nullable=False, default='')
    model_used = Column(String, nullable=True)
    predicted_direction = Column(String, nullable=True)
    predicted_price_target = Column(Numeric(36, 18), nullable=True)
    predicted_timeframe_days = Column(Integer, nullable=True)
    outcome = Column(String, nullable=False)
    rule_id = Column(String, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    adjustments_json = Column(JSON, default=list)
    queued_trade_id = Column(String, nullable=True)
    execution_ref = Column(String, nullable=True)
    actual_outcome = Column(String, nullable=True)
    actual_price_at_timeframe = Column(Numeric(36, 18), nullable=True)
    prediction_accurate = Column(Boolean, nullable=True)
    evaluated_at = Column(DateTime(timezone=True), nullable=True)


class QueuedTradeModel(Base):
    """SQLAlchemy model for queued trades."""
    __tablename__ = 'trade_queue'

    id = Column(String, primary_key=True)
    portfolio_tag = Column(String, nullable=False, index=True)
    symbol = Column(String, nullable=False)
    action = Column(String, nullable=False)
    quantity = Column(Numeric(36, 18), nullable=False)
    target_price = Column(Numeric(36, 18), nullable=True)
    reference_price = Column(Numeric(36, 18), nullable=True)
    status = Column(String, nullable=False, index=True)
    source = Column(String, nullable=False)
    venue = Column(String, nullable=False)
    condition = Column(String, nullable=True)
    conviction = Column(Float, nullable=True)
    reasoning = Column(Text, nullable=True)
    decision_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    scheduled_for = Column(DateTime(timezone=True), nullable=True)
    executed_at = Column(DateTime(timezone=True), nullable=True)
    execution_price = Column(Numeric(36, 18), nullable=True)
    execution_ref = Column(String, nullable=True)
    realized_pnl = Column(Numeric(36, 18), nullable=True)
    error_message = Column(Text, nullable=True)


class QueueLogModel(Base):
    """SQLAlchemy model for queue events."""
    __tablename__ = 'trade_queue_log'

    id = Column(String, primary_key=True)
    queue_id = Column(String, nullable=False, index=True)
    event = Column(String, nullable=False)
    details = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)


class SnapshotModel(Base):
    """SQLAlchemy model for performance snapshots."""
    __tablename__ = 'performance_snapshots'

    id = Column(String, primary_key=True)
    portfolio_tag = Column(String, nullable=False, index=True)
    session_id = Column(String, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    portfolio_value = Column(Numeric(36, 18), nullable=False)
    cash = Column(Numeric(36, 18), nullable=False)
    positions_value = Column(Numeric(36, 18), nullable=False)
    benchmark_symbol = Column(String, nullable=True)
    benchmark_value = Column(Numeric(36, 18), nullable=True)
    total_pnl = Column(Numeric(36, 18), default=0)
    total_pnl_percent = Column(Numeric(36, 18), default=0)
    benchmark_pnl_percent = Column(Numeric(36, 18), nullable=True)
    prediction_accuracy = Column(Float, nullable=True)
    trades_to_date = Column(Integer, default=0)
    winning_trades = Column(Integer, default=0)
    losing_trades = Column(Integer, default=0)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite returns naive datetimes; re-attach UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class Database:
    """Async database interface.

    Every driver error is re-raised as StoreUnavailable so callers can halt
    automated trading instead of continuing on partial state.
    """

    def __init__(self, url: Optional[str] = None):
        # Convert SQLite URL to async version if needed
        db_url = url or database_config.database_url
        if db_url.startswith('sqlite:///') and not db_url.startswith('sqlite+aiosqlite:///'):
            db_url = db_url.replace('sqlite:///', 'sqlite+aiosqlite:///')

        self.url = db_url
        self.engine: AsyncEngine = create_async_engine(db_url, echo=False)
        self.session_maker = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    async def initialize(self):
        """Create tables."""
        if self.url.startswith('sqlite+aiosqlite:///') and ':memory:' not in self.url:
            Path(self.url.replace('sqlite+aiosqlite:///', '')).parent.mkdir(parents=True, exist_ok=True)
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Could not initialize database: {e}") from e
        logger.info("database.initialized", url=self.url.split('@')[-1])

    async def close(self):
        """Close database connection."""
        await self.engine.dispose()

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self.session_maker() as session:
                yield session
        except SQLAlchemyError as e:
            logger.error("database.error", error=str(e))
            raise StoreUnavailable(f"Database operation failed: {e}") from e

    # Session operations
    async def save_session(self, trading_session: TradingSession):
        """Save or update a trading session."""
        async with self._session() as session:
            db_row = await session.get(SessionModel, trading_session.id)
            if db_row is None:
                db_row = SessionModel(id=trading_session.id)
                session.add(db_row)
            db_row.portfolio_tag = trading_session.portfolio_tag
            db_row.start_time = trading_session.start_time
            db_row.end_time = trading_session.end_time
            db_row.starting_value = trading_session.starting_value
            db_row.ending_value = trading_session.ending_value
            db_row.benchmark_start_price = trading_session.benchmark_start_price
            db_row.decisions_count = trading_session.decisions_count
            db_row.trades_count = trading_session.trades_count
            db_row.notes = trading_session.notes
            db_row.status = trading_session.status.value
            await session.commit()

    async def get_session(self, session_id: str) -> Optional[TradingSession]:
        """Get a trading session by ID."""
        async with self._session() as session:
            db_row = await session.get(SessionModel, session_id)
            return self._session_from_model(db_row) if db_row else None

    async def get_active_session(self, portfolio_tag: str) -> Optional[TradingSession]:
        """Get the active session for a portfolio, if any."""
        async with self._session() as session:
            result = await session.execute(
                select(SessionModel)
                .where(SessionModel.portfolio_tag == portfolio_tag)
                .where(SessionModel.status == SessionStatus.ACTIVE.value)
                .order_by(SessionModel.start_time.desc())
            )
            db_row = result.scalars().first()
            return self._session_from_model(db_row) if db_row else None

    async def get_sessions(
        self,
        portfolio_tag: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100
    ) -> List[TradingSession]:
        """Get sessions with optional filters, newest first."""
        async with self._session() as session:
            query = select(SessionModel).order_by(SessionModel.start_time.desc()).limit(limit)
            if portfolio_tag:
                query = query.where(SessionModel.portfolio_tag == portfolio_tag)
            if status:
                query = query.where(SessionModel.status == status)
            result = await session.execute(query)
            return [self._session_from_model(r) for r in result.scalars().all()]

    async def count_sessions(self, portfolio_tag: Optional[str] = None,
                             status: Optional[str] = None) -> int:
        async with self._session() as session:
            query = select(func.count()).select_from(SessionModel)
            if portfolio_tag:
                query = query.where(SessionModel.portfolio_tag == portfolio_tag)
            if status:
                query = query.where(SessionModel.status == status)
            return (await session.execute(query)).scalar_one()

    # Decision operations
    async def save_decision(self, decision: TradeDecision):
        """Save or update a decision."""
        async with self._session() as session:
            db_row = await session.get(DecisionModel, decision.id)
            if db_row is None:
                db_row = DecisionModel(id=decision.id)
                session.add(db_row)
            for name in (
                'session_id', 'portfolio_tag', 'timestamp', 'symbol', 'quantity',
                'price_at_decision', 'confidence', 'reasoning', 'model_used',
                'predicted_direction', 'predicted_price_target', 'predicted_timeframe_days',
                'rule_id', 'rejection_reason', 'queued_trade_id', 'execution_ref',
                'actual_outcome', 'actual_price_at_timeframe', 'prediction_accurate',
                'evaluated_at',
            ):
                setattr(db_row, name, getattr(decision, name))
            db_row.action = decision.action.value
            db_row.outcome = decision.outcome.value
            db_row.adjustments_json = list(decision.adjustments)
            await session.commit()

    async def get_decision(self, decision_id: str) -> Optional[TradeDecision]:
        """Get a decision by ID."""
        async with self._session() as session:
            db_row = await session.get(DecisionModel, decision_id)
            return self._decision_from_model(db_row) if db_row else None

    async def get_decisions(
        self,
        session_id: Optional[str] = None,
        portfolio_tag: Optional[str] = None,
        symbol: Optional[str] = None,
        outcome: Optional[str] = None,
        limit: int = 100
    ) -> List[TradeDecision]:
        """Get decisions with optional filters, newest first."""
        async with self._session() as session:
            query = select(DecisionModel).order_by(DecisionModel.timestamp.desc()).limit(limit)
            if session_id:
                query = query.where(DecisionModel.session_id == session_id)
            if portfolio_tag:
                query = query.where(DecisionModel.portfolio_tag == portfolio_tag)
            if symbol:
                query = query.where(DecisionModel.symbol == symbol)
            if outcome:
                query = query.where(DecisionModel.outcome == outcome)
            result = await session.execute(query)
            return [self._decision_from_model(r) for r in result.scalars().all()]

    async def get_unevaluated_decisions(self, portfolio_tag: Optional[str] = None) -> List[TradeDecision]:
        """Decisions with a prediction that has not been evaluated yet."""
        async with self._session() as session:
            query = (
                select(DecisionModel)
                .where(DecisionModel.prediction_accurate.is_(None))
                .where(DecisionModel.predicted_timeframe_days.is_not(None))
                .order_by(DecisionModel.timestamp.asc())
            )
            if portfolio_tag:
                query = query.where(DecisionModel.portfolio_tag == portfolio_tag)
            result = await session.execute(query)
            return [self._decision_from_model(r) for r in result.scalars().all()]

    async def count_decisions(self, portfolio_tag: Optional[str] = None,
                              outcome: Optional[str] = None) -> int:
        async with self._session() as session:
            query = select(func.count()).select_from(DecisionModel)
            if portfolio_tag:
                query = query.where(DecisionModel.portfolio_tag == portfolio_tag)
            if outcome:
                query = query.where(DecisionModel.outcome == outcome)
            return (await session.execute(query)).scalar_one()

    # Queue operations
    async def save_queued_trade(self, trade: QueuedTrade):
        """Save or update a queued trade."""
        async with self._session() as session:
            db_row = await session.get(QueuedTradeModel, trade.id)
            if db_row is None:
                db_row = QueuedTradeModel(id=trade.id)
                session.add(db_row)
            for name in (
                'portfolio_tag', 'symbol', 'quantity', 'target_price', 'reference_price', 'source', 'venue',
                'condition', 'conviction', 'reasoning', 'decision_id', 'created_at',
                'scheduled_for', 'executed_at', 'execution_price', 'execution_ref',
                'realized_pnl', 'error_message',
            ):
                setattr(db_row, name, getattr(trade, name))
            db_row.action = trade.action.value
            db_row.status = trade.status.value
            await session.commit()

    async def get_queued_trade(self, queue_id: str) -> Optional[QueuedTrade]:
        async with self._session() as session:
            db_row = await session.get(QueuedTradeModel, queue_id)
            return self._queued_trade_from_model(db_row) if db_row else None

    async def get_queued_trades(
        self,
        status: Optional[str] = None,
        portfolio_tag: Optional[str] = None,
        limit: int = 1000
    ) -> List[QueuedTrade]:
        """Get queued trades with optional filters, oldest first."""
        async with self._session() as session:
            query = select(QueuedTradeModel).order_by(QueuedTradeModel.created_at.asc()).limit(limit)
            if status:
                query = query.where(QueuedTradeModel.status == status)
            if portfolio_tag:
                query = query.where(QueuedTradeModel.portfolio_tag == portfolio_tag)
            result = await session.execute(query)
            return [self._queued_trade_from_model(r) for r in result.scalars().all()]

    async def add_queue_log(self, entry: QueueLogEntry):
        async with self._session() as session:
            session.add(QueueLogModel(
                id=entry.id,
                queue_id=entry.queue_id,
                event=entry.event,
                details=entry.details,
                timestamp=entry.timestamp,
            ))
            await session.commit()

    async def get_queue_log(self, queue_id: str) -> List[QueueLogEntry]:
        async with self._session() as session:
            result = await session.execute(
                select(QueueLogModel)
                .where(QueueLogModel.queue_id == queue_id)
                .order_by(QueueLogModel.timestamp.asc())
            )
            return [
                QueueLogEntry(
                    id=r.id,
                    queue_id=r.queue_id,
                    event=r.event,
                    details=r.details,
                    timestamp=_utc(r.timestamp),
                )
                for r in result.scalars().all()
            ]

    # Snapshot operations
    async def save_snapshot(self, snapshot: PerformanceSnapshot):
        async with self._session() as session:
            data = snapshot.model_dump(exclude={'win_rate'})
            session.add(SnapshotModel(**data))
            await session.commit()

    async def get_snapshots(
        self,
        portfolio_tag: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 1000
    ) -> List[PerformanceSnapshot]:
        """Get snapshots oldest first."""
        async with self._session() as session:
            query = select(SnapshotModel).order_by(SnapshotModel.timestamp.asc()).limit(limit)
            if portfolio_tag:
                query = query.where(SnapshotModel.portfolio_tag == portfolio_tag)
            if since:
                query = query.where(SnapshotModel.timestamp >= since)
            result = await session.execute(query)
            return [self._snapshot_from_model(r) for r in result.scalars().all()]

    # Helpers
    def _session_from_model(self, model: SessionModel) -> TradingSession:
        """Convert DB model to TradingSession object."""
        return TradingSession(
            id=model.id,
            portfolio_tag=model.portfolio_tag,
            start_time=_utc(model.start_time),
            end_time=_utc(model.end_time),
            starting_value=model.starting_value,
            ending_value=model.ending_value,
            benchmark_start_price=model.benchmark_start_price,
            decisions_count=model.decisions_count or 0,
            trades_count=model.trades_count or 0,
            notes=model.notes,
            status=SessionStatus(model.status),
        )

    def _decision_from_model(self, model: DecisionModel) -> TradeDecision:
        """Convert DB model to TradeDecision object."""
        return TradeDecision(
            id=model.id,
            session_id=model.session_id,
            portfolio_tag=model.portfolio_tag,
            timestamp=_utc(model.timestamp),
            action=TradeAction(model.action),
            symbol=model.symbol,
            quantity=model.quantity,
            price_at_decision=model.price_at_decision,
            confidence=model.confidence or 0.0,
            reasoning=model.reasoning or '',
            model_used=model.model_used,
            predicted_direction=model.predicted_direction,
            predicted_price_target=model.predicted_price_target,
            predicted_timeframe_days=model.predicted_timeframe_days,
            outcome=DecisionOutcome(model.outcome),
            rule_id=model.rule_id,
            rejection_reason=model.rejection_reason,
            adjustments=model.adjustments_json or [],
            queued_trade_id=model.queued_trade_id,
            execution_ref=model.execution_ref,
            actual_outcome=model.actual_outcome,
            actual_price_at_timeframe=model.actual_price_at_timeframe,
            prediction_accurate=model.prediction_accurate,
            evaluated_at=_utc(model.evaluated_at),
        )

    def _queued_trade_from_model(self, model: QueuedTradeModel) -> QueuedTrade:
        """Convert DB model to QueuedTrade object."""
        return QueuedTrade(
            id=model.id,
            portfolio_tag=model.portfolio_tag,
            symbol=model.symbol,
            action=TradeAction(model.action),
            quantity=model.quantity,
            target_price=model.target_price,
            reference_price=model.reference_price,
            status=QueueStatus(model.status),
            source=model.source,
            venue=model.venue,
            condition=model.condition,
            conviction=model.conviction,
            reasoning=model.reasoning,
            decision_id=model.decision_id,
            created_at=_utc(model.created_at),
            scheduled_for=_utc(model.scheduled_for),
            executed_at=_utc(model.executed_at),
            execution_price=model.execution_price,
            execution_ref=model.execution_ref,
            realized_pnl=model.realized_pnl,
            error_message=model.error_message,
        )

    def _snapshot_from_model(self, model: SnapshotModel) -> PerformanceSnapshot:
        """Convert DB model to PerformanceSnapshot object."""
        return PerformanceSnapshot(
            id=model.id,
            portfolio_tag=model.portfolio_tag,
            session_id=model.session_id,
            timestamp=_utc(model.timestamp),
            portfolio_value=model.portfolio_value,
            cash=model.cash,
            positions_value=model.positions_value,
            benchmark_symbol=model.benchmark_symbol,
            benchmark_value=model.benchmark_value,
            total_pnl=model.total_pnl,
            total_pnl_percent=model.total_pnl_percent,
            benchmark_pnl_percent=model.benchmark_pnl_percent,
            prediction_accuracy=model.prediction_accuracy,
            trades_to_date=model.trades_to_date or 0,
            winning_trades=model.winning_trades or 0,
            losing_trades=model.losing_trades or 0,
        )
