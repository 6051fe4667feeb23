"""Trading engine - orchestrates the decision cycle and the control surface."""
import asyncio
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Set

import structlog

from tradeguard.audit.hash_chain import AuditLog
from tradeguard.core.config import TradeGuardConfig, tradeguard_config
from tradeguard.core.context import MarketContextBuilder, MarketDataSource
from tradeguard.core.exceptions import (
    AllProvidersExhausted, ChainVerificationFailed, CycleAlreadyRunning, InvalidQueueTransition,
    MalformedProviderResponse, NoActiveSession, SessionAlreadyActive, StoreUnavailable,
    TradingHalted
)
from tradeguard.core.models import (
    ChainVerification, ControlResult, CycleResult, DecisionOutcome, EngineStatus,
    PerformanceSnapshot, PredictionAccuracy, QueueLogEntry, QueueStatus, QueuedTrade,
    SchedulerStatus, SessionStatus, TradeAction, TradeDecision, TradeProposal, TradingModeName,
    TradingSession, utc_now
)
from tradeguard.execution.base import OrderExecutor, PortfolioSource
from tradeguard.providers.cascade import ProviderCascade
from tradeguard.risk.circuit_breaker import BreakerEvent
from tradeguard.risk.controls import ControlRegistry, PortfolioControls
from tradeguard.risk.guardrails import Deferred, GuardrailPolicy, Rejected
from tradeguard.scheduler.market_hours import MarketCalendar
from tradeguard.scheduler.trade_queue import TradeQueue
from tradeguard.storage.database import Database

logger = structlog.get_logger(__name__)

# Moves smaller than this (in %) count as flat when scoring predictions
FLAT_MOVE_PCT = Decimal("1")


class CancelToken:
    """Cooperative cancellation for a running cycle."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class TradingEngine:
    """
    Main engine that turns market snapshots into risk-governed orders.

    Responsibilities:
    - Session lifecycle per portfolio book
    - Decision cycle: context -> provider cascade -> parse -> guardrails -> queue
    - Control surface: modes, overrides, breaker settings, queue cancellation
    - Prediction evaluation and performance snapshots
    - Halting on audit chain or store failure
    """

    def __init__(
        self,
        cascade: ProviderCascade,
        market_data: MarketDataSource,
        executor: OrderExecutor,
        portfolio_source: PortfolioSource,
        database: Database,
        audit: AuditLog,
        config: Optional[TradeGuardConfig] = None,
        calendar: Optional[MarketCalendar] = None,
        controls: Optional[ControlRegistry] = None,
        guardrails: Optional[GuardrailPolicy] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config or tradeguard_config
        self.cascade = cascade
        self.market_data = market_data
        self.portfolio_source = portfolio_source
        self.database = database
        self.audit = audit
        self.clock = clock

        self.calendar = calendar or MarketCalendar(self.config.market_hours)
        self.controls = controls or ControlRegistry(self.config)
        self.guardrails = guardrails or GuardrailPolicy(self.config.guardrails)
        self.context_builder = MarketContextBuilder(market_data, self.config.portfolio)
        self.queue = TradeQueue(
            executor=executor,
            calendar=self.calendar,
            controls=self.controls,
            audit=audit,
            database=database,
            portfolio_source=portfolio_source,
            config=self.config.scheduler,
            is_halted=lambda: self.is_halted,
        )

        # State
        self._sessions: Dict[str, TradingSession] = {}
        self._running_cycles: Set[str] = set()
        self._halt_reason: Optional[str] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self):
        """Restore active sessions and the open queue from the store."""
        for tag in self.controls.portfolio_tags:
            session = await self.database.get_active_session(tag)
            if session is not None:
                self._sessions[tag] = session
        loaded = await self.queue.load()
        logger.info(
            "engine.initialized",
            portfolios=self.controls.portfolio_tags,
            active_sessions=list(self._sessions),
            queued_trades=loaded,
        )

    async def shutdown(self):
        await self.cascade.close()
        logger.info("engine.stopped")

    @property
    def is_halted(self) -> bool:
        return self._halt_reason is not None

    @property
    def halt_reason(self) -> Optional[str]:
        return self._halt_reason

    async def halt(self, reason: str):
        """Stop automated trading until a human resumes it."""
        if self._halt_reason is None:
            self._halt_reason = reason
            logger.critical("engine.halted", reason=reason)
            try:
                await self.audit.append({"event": "engine.halted", "reason": reason})
            except OSError as e:
                logger.error("engine.halt_audit_failed", error=str(e))

    async def resume_trading(self, acknowledged_by: str) -> ControlResult:
        """Clear a halt after human acknowledgement."""
        if self._halt_reason is None:
            return ControlResult(success=False, message="Trading is not halted")
        reason, self._halt_reason = self._halt_reason, None
        await self.audit.append({
            "event": "engine.resumed",
            "acknowledged_by": acknowledged_by,
            "halt_reason": reason,
        })
        logger.warning("engine.resumed", acknowledged_by=acknowledged_by, halt_reason=reason)
        return ControlResult(success=True, message="Trading resumed", data={"halt_reason": reason})

    def _check_not_halted(self):
        if self._halt_reason is not None:
            raise TradingHalted(f"Automated trading halted: {self._halt_reason}")

    def _controls(self, portfolio_tag: str) -> PortfolioControls:
        tag = portfolio_tag.upper()
        if tag not in self.controls:
            raise ValueError(f"Unknown portfolio: {portfolio_tag}")
        return self.controls.get(tag)

    async def _audit_events(self, events: List[BreakerEvent]):
        for event in events:
            await self.audit.append(event.to_audit_payload())

    # =========================================================================
    # Sessions
    # =========================================================================

    def active_session(self, portfolio_tag: str) -> Optional[TradingSession]:
        return self._sessions.get(portfolio_tag.upper())

    async def start_session(self, portfolio_tag: str, notes: Optional[str] = None,
                            now: Optional[datetime] = None) -> TradingSession:
        """
        Open a trading session for a book.

        Raises:
            SessionAlreadyActive: The book already has an active session
            TradingHalted: Automated trading is halted
            ChainVerificationFailed: Audit chain check on start failed
        """
        now = now or self.clock()
        controls = self._controls(portfolio_tag)
        tag = controls.portfolio_tag
        self._check_not_halted()

        existing = self._sessions.get(tag)
        if existing is not None:
            raise SessionAlreadyActive(
                f"Portfolio {tag} already has active session {existing.id}",
                session_id=existing.id,
            )

        if self.config.audit.verify_on_session_start:
            await self.verify_audit_chain()

        async with controls.lock:
            portfolio = await self.portfolio_source.get_portfolio(tag)
            await self._audit_events(controls.refresh(now, portfolio.total_value))
            benchmark = await self.market_data.get_quote(self.config.portfolio.benchmark_symbol)
            session = TradingSession(
                portfolio_tag=tag,
                start_time=now,
                starting_value=portfolio.total_value,
                benchmark_start_price=benchmark.price if benchmark else None,
                notes=notes,
            )
            await self.database.save_session(session)
            self._sessions[tag] = session

        await self.audit.append({
            "event": "session.started",
            "portfolio": tag,
            "session_id": session.id,
            "starting_value": str(session.starting_value),
            "mode": controls.modes.mode.value,
        })
        logger.info(
            "engine.session_started",
            portfolio=tag,
            session_id=session.id,
            starting_value=str(session.starting_value),
        )
        return session

    async def end_session(self, portfolio_tag: str, notes: Optional[str] = None,
                          now: Optional[datetime] = None) -> TradingSession:
        """
        Close the book's active session.

        Raises:
            NoActiveSession: Nothing to close
        """
        now = now or self.clock()
        controls = self._controls(portfolio_tag)
        tag = controls.portfolio_tag
        session = self._sessions.get(tag)
        if session is None:
            raise NoActiveSession(f"No active session for {tag}")

        async with controls.lock:
            portfolio = await self.portfolio_source.get_portfolio(tag)
            session.close(portfolio.total_value, now, notes)
            await self.database.save_session(session)
            del self._sessions[tag]

        await self.audit.append({
            "event": "session.ended",
            "portfolio": tag,
            "session_id": session.id,
            "ending_value": str(session.ending_value),
            "decisions": session.decisions_count,
            "trades": session.trades_count,
        })
        logger.info(
            "engine.session_ended",
            portfolio=tag,
            session_id=session.id,
            ending_value=str(session.ending_value),
            decisions=session.decisions_count,
            trades=session.trades_count,
        )
        return session

    # =========================================================================
    # Decision cycle
    # =========================================================================

    async def run_cycle(
        self,
        portfolio_tag: str,
        cancel_token: Optional[CancelToken] = None,
        now: Optional[datetime] = None,
    ) -> CycleResult:
        """
        Run one decision cycle for a book.

        Raises:
            NoActiveSession: No session is active for the book
            CycleAlreadyRunning: A cycle for the book is already in flight
            TradingHalted: Automated trading is halted
            AllProvidersExhausted: No provider produced a usable response
            StoreUnavailable: The store failed (trading is halted first)
        """
        controls = self._controls(portfolio_tag)
        tag = controls.portfolio_tag
        self._check_not_halted()

        session = self._sessions.get(tag)
        if session is None:
            raise NoActiveSession(f"No active session for {tag}")
        if tag in self._running_cycles:
            raise CycleAlreadyRunning(f"A cycle is already running for {tag}")

        self._running_cycles.add(tag)
        try:
            return await self._run_cycle(controls, session, cancel_token or CancelToken(), now)
        except StoreUnavailable as e:
            await self.halt(f"store unavailable: {e.message}")
            raise
        finally:
            self._running_cycles.discard(tag)

    async def _run_cycle(self, controls: PortfolioControls, session: TradingSession,
                         token: CancelToken, now: Optional[datetime]) -> CycleResult:
        tag = controls.portfolio_tag
        started = now or self.clock()
        result = CycleResult(portfolio_tag=tag, session_id=session.id, started_at=started)
        logger.info("engine.cycle_started", portfolio=tag, session_id=session.id)

        if self.config.audit.verify_every_cycle:
            await self.verify_audit_chain()

        # Context (read-only)
        async with controls.lock:
            portfolio = await self.portfolio_source.get_portfolio(tag)
            await self._audit_events(controls.refresh(started, portfolio.total_value))
            recent = await self.database.get_decisions(portfolio_tag=tag, limit=10)
            context = await self.context_builder.build(
                portfolio=portfolio,
                mode=controls.modes.mode,
                mode_policy=controls.modes.policy,
                override=controls.modes.active_override(started),
                trades_today=controls.trades_today(started),
                session_id=session.id,
                recent_decisions=recent,
                now=started,
            )

        if token.cancelled:
            return await self._finish(result, session, cancelled=True)

        # Cascade
        try:
            cascade_result = await self.cascade.query(context)
        except AllProvidersExhausted as e:
            await self.audit.append({
                "event": "cycle.providers_exhausted",
                "portfolio": tag,
                "session_id": session.id,
                "attempts": e.attempts,
            })
            raise
        result.provider_id = cascade_result.provider_id
        if cascade_result.attempts:
            await self.audit.append({
                "event": "cycle.provider_fallback",
                "portfolio": tag,
                "provider_id": cascade_result.provider_id,
                "attempts": cascade_result.attempts,
            })

        if token.cancelled:
            return await self._finish(result, session, cancelled=True)

        # Parse; malformed proposals are skipped, not fatal
        proposals: List[TradeProposal] = []
        for item in cascade_result.items:
            try:
                proposals.append(self.cascade.parser.to_proposal(item, cascade_result.provider_id))
            except MalformedProviderResponse as e:
                result.malformed_count += 1
                logger.warning(
                    "engine.malformed_proposal",
                    portfolio=tag,
                    provider=cascade_result.provider_id,
                    error=e.message,
                )
                await self.audit.append({
                    "event": "decision.malformed",
                    "portfolio": tag,
                    "session_id": session.id,
                    "provider_id": cascade_result.provider_id,
                    "error": e.message,
                    "raw": str(e.raw)[:500],
                })

        # Guardrails and execution, one proposal at a time under the lock
        for index, proposal in enumerate(proposals):
            if token.cancelled:
                for skipped in proposals[index:]:
                    result.decisions.append(
                        await self._record_cancelled(skipped, session, cascade_result.provider_id, now)
                    )
                return await self._finish(result, session, cancelled=True)
            decision = await self._handle_proposal(
                controls, session, proposal, cascade_result.provider_id, now
            )
            result.decisions.append(decision)

        return await self._finish(result, session, cancelled=False)

    async def _handle_proposal(
        self,
        controls: PortfolioControls,
        session: TradingSession,
        proposal: TradeProposal,
        provider_id: str,
        now: Optional[datetime],
    ) -> TradeDecision:
        tag = controls.portfolio_tag
        async with controls.lock:
            when = now or self.clock()
            portfolio = await self.portfolio_source.get_portfolio(tag)
            await self._audit_events(controls.refresh(when, portfolio.total_value))

            quote = await self.market_data.get_quote(proposal.symbol)
            price = proposal.limit_price or (quote.price if quote else None)
            decision = TradeDecision(
                session_id=session.id,
                portfolio_tag=tag,
                timestamp=when,
                action=proposal.action,
                symbol=proposal.symbol,
                quantity=proposal.quantity,
                price_at_decision=quote.price if quote else price,
                confidence=proposal.confidence,
                reasoning=proposal.reasoning,
                model_used=provider_id,
                predicted_direction=proposal.predicted_direction,
                predicted_price_target=proposal.predicted_price_target,
                predicted_timeframe_days=proposal.predicted_timeframe_days,
                outcome=DecisionOutcome.HELD,
            )
            session.decisions_count += 1

            if proposal.action == TradeAction.HOLD:
                await self.database.save_decision(decision)
                await self._audit_decision(decision)
                return decision

            pending_quantity, _ = self.queue.pending_buys(tag, proposal.symbol)
            _, pending_cost = self.queue.pending_buys(tag)
            verdict = self.guardrails.evaluate(
                proposal=proposal,
                portfolio=portfolio,
                policy=controls.modes.policy,
                override=controls.modes.active_override(when),
                trades_today=controls.trades_today(when),
                price=price,
                now=when,
                pending_quantity=pending_quantity,
                pending_cost=pending_cost,
            )

            if isinstance(verdict, Rejected):
                decision.outcome = DecisionOutcome.REJECTED
                decision.rule_id = verdict.rule_id
                decision.rejection_reason = verdict.reason
                await self.database.save_decision(decision)
                await self._audit_decision(decision, **verdict.metadata)
                return decision

            trade = QueuedTrade(
                portfolio_tag=tag,
                symbol=proposal.symbol,
                action=proposal.action,
                quantity=verdict.quantity,
                target_price=proposal.limit_price,
                reference_price=verdict.price,
                conviction=proposal.confidence,
                reasoning=proposal.reasoning[:500] or None,
                decision_id=decision.id,
                created_at=when,
            )
            decision.quantity = verdict.quantity
            decision.adjustments = list(verdict.adjustments)
            decision.queued_trade_id = trade.id

            if isinstance(verdict, Deferred):
                decision.outcome = DecisionOutcome.DEFERRED
                decision.rejection_reason = verdict.reason
                trade.condition = verdict.condition
                controls.record_trade(when)
                await self.database.save_decision(decision)
                await self._audit_decision(decision, condition=verdict.condition)
                await self.queue.enqueue(trade)
                return decision

            decision.outcome = DecisionOutcome.APPROVED
            controls.record_trade(when)
            session.trades_count += 1
            await self.database.save_decision(decision)
            await self._audit_decision(decision)
            await self.queue.submit(trade, when)
            if trade.status == QueueStatus.EXECUTED:
                decision.execution_ref = trade.execution_ref
                await self.database.save_decision(decision)
            return decision

    async def _record_cancelled(self, proposal: TradeProposal, session: TradingSession,
                                provider_id: str, now: Optional[datetime]) -> TradeDecision:
        decision = TradeDecision(
            session_id=session.id,
            portfolio_tag=session.portfolio_tag,
            timestamp=now or self.clock(),
            action=proposal.action,
            symbol=proposal.symbol,
            quantity=proposal.quantity,
            confidence=proposal.confidence,
            reasoning=proposal.reasoning,
            model_used=provider_id,
            outcome=DecisionOutcome.CANCELLED,
            rejection_reason="cycle cancelled",
        )
        session.decisions_count += 1
        await self.database.save_decision(decision)
        await self._audit_decision(decision)
        return decision

    async def _audit_decision(self, decision: TradeDecision, **extra: Any):
        await self.audit.append({
            "event": f"decision.{decision.outcome.value}",
            "decision_id": decision.id,
            "portfolio": decision.portfolio_tag,
            "session_id": decision.session_id,
            "symbol": decision.symbol,
            "action": decision.action.value,
            "quantity": str(decision.quantity) if decision.quantity is not None else None,
            "confidence": decision.confidence,
            "model_used": decision.model_used,
            "rule_id": decision.rule_id,
            "reason": decision.rejection_reason,
            "adjustments": decision.adjustments,
            "queued_trade_id": decision.queued_trade_id,
            **extra,
        })

    async def _finish(self, result: CycleResult, session: TradingSession,
                      cancelled: bool) -> CycleResult:
        result.cancelled = cancelled
        result.snapshot = await self.write_snapshot(session.portfolio_tag, session)
        await self.database.save_session(session)
        result.completed_at = self.clock()

        await self.audit.append({
            "event": "cycle.cancelled" if cancelled else "cycle.completed",
            "portfolio": result.portfolio_tag,
            "session_id": result.session_id,
            "provider_id": result.provider_id,
            "approved": result.count(DecisionOutcome.APPROVED),
            "rejected": result.count(DecisionOutcome.REJECTED),
            "deferred": result.count(DecisionOutcome.DEFERRED),
            "held": result.count(DecisionOutcome.HELD),
            "cancelled": result.count(DecisionOutcome.CANCELLED),
            "malformed": result.malformed_count,
        })
        logger.info(
            "engine.cycle_cancelled" if cancelled else "engine.cycle_completed",
            portfolio=result.portfolio_tag,
            provider=result.provider_id,
            decisions=len(result.decisions),
            approved=result.count(DecisionOutcome.APPROVED),
            rejected=result.count(DecisionOutcome.REJECTED),
            malformed=result.malformed_count,
        )
        return result

    # =========================================================================
    # Outcomes, predictions and performance
    # =========================================================================

    async def record_trade_outcome(self, portfolio_tag: str, realized_pnl: Decimal,
                                   now: Optional[datetime] = None) -> List[BreakerEvent]:
        """Report a position close realized outside the queue."""
        controls = self._controls(portfolio_tag)
        now = now or self.clock()
        async with controls.lock:
            portfolio = await self.portfolio_source.get_portfolio(controls.portfolio_tag)
            events = controls.breaker.record_outcome(realized_pnl, now, portfolio.total_value)
        await self.audit.append({
            "event": "outcome.recorded",
            "portfolio": controls.portfolio_tag,
            "realized_pnl": str(realized_pnl),
        })
        await self._audit_events(events)
        return events

    async def evaluate_predictions(self, portfolio_tag: Optional[str] = None,
                                   now: Optional[datetime] = None) -> int:
        """
        Score predictions whose timeframe has elapsed.

        A move within FLAT_MOVE_PCT counts as flat. Decisions without an
        explicit direction are scored by their action (BUY=up, SELL=down,
        HOLD=flat).

        Returns:
            Number of decisions evaluated
        """
        now = now or self.clock()
        evaluated = 0
        pending = await self.database.get_unevaluated_decisions(
            portfolio_tag.upper() if portfolio_tag else None
        )
        for decision in pending:
            if not decision.price_at_decision:
                continue
            due = decision.timestamp + timedelta(days=decision.predicted_timeframe_days or 0)
            if due > now:
                continue
            actual_price = await self.market_data.get_price_at(decision.symbol, due)
            if actual_price is None:
                continue

            change_pct = (actual_price - decision.price_at_decision) / decision.price_at_decision * 100
            if change_pct > FLAT_MOVE_PCT:
                actual = "up"
            elif change_pct < -FLAT_MOVE_PCT:
                actual = "down"
            else:
                actual = "flat"
            predicted = decision.predicted_direction or {
                TradeAction.BUY: "up", TradeAction.SELL: "down", TradeAction.HOLD: "flat",
            }[decision.action]

            decision.actual_outcome = actual
            decision.actual_price_at_timeframe = actual_price
            decision.prediction_accurate = predicted == actual
            decision.evaluated_at = now
            await self.database.save_decision(decision)
            evaluated += 1

        if evaluated:
            logger.info("engine.predictions_evaluated", count=evaluated)
        return evaluated

    async def get_prediction_accuracy(self, portfolio_tag: Optional[str] = None) -> PredictionAccuracy:
        decisions = await self.database.get_decisions(
            portfolio_tag=portfolio_tag.upper() if portfolio_tag else None, limit=100000
        )
        with_prediction = [d for d in decisions if d.predicted_timeframe_days is not None]
        evaluated = [d for d in with_prediction if d.is_evaluated]
        correct = sum(1 for d in evaluated if d.prediction_accurate)

        by_model: Dict[str, Dict[str, Any]] = {}
        for d in evaluated:
            stats = by_model.setdefault(d.model_used or "unknown", {"evaluated": 0, "correct": 0})
            stats["evaluated"] += 1
            stats["correct"] += 1 if d.prediction_accurate else 0
        for stats in by_model.values():
            stats["accuracy_pct"] = stats["correct"] / stats["evaluated"] * 100

        return PredictionAccuracy(
            total_predictions=len(with_prediction),
            evaluated=len(evaluated),
            correct=correct,
            accuracy_pct=correct / len(evaluated) * 100 if evaluated else None,
            by_model=by_model,
        )

    async def write_snapshot(self, portfolio_tag: str,
                             session: Optional[TradingSession] = None) -> PerformanceSnapshot:
        """Record the book's current performance against the benchmark."""
        tag = portfolio_tag.upper()
        portfolio = await self.portfolio_source.get_portfolio(tag)
        benchmark_symbol = self.config.portfolio.benchmark_symbol
        benchmark = await self.market_data.get_quote(benchmark_symbol)
        starting_capital = self.config.portfolio.starting_capital

        benchmark_pnl_pct = None
        if benchmark and session and session.benchmark_start_price:
            benchmark_pnl_pct = (benchmark.price / session.benchmark_start_price - 1) * 100

        executed = await self.database.get_queued_trades(
            status=QueueStatus.EXECUTED.value, portfolio_tag=tag, limit=100000
        )
        accuracy = await self.get_prediction_accuracy(tag)
        total_pnl = portfolio.total_value - starting_capital

        snapshot = PerformanceSnapshot(
            portfolio_tag=tag,
            session_id=session.id if session else None,
            timestamp=self.clock(),
            portfolio_value=portfolio.total_value,
            cash=portfolio.cash,
            positions_value=portfolio.positions_value,
            benchmark_symbol=benchmark_symbol,
            benchmark_value=benchmark.price if benchmark else None,
            total_pnl=total_pnl,
            total_pnl_percent=total_pnl / starting_capital * 100,
            benchmark_pnl_percent=benchmark_pnl_pct,
            prediction_accuracy=accuracy.accuracy_pct,
            trades_to_date=len(executed),
            winning_trades=sum(1 for t in executed if t.realized_pnl is not None and t.realized_pnl > 0),
            losing_trades=sum(1 for t in executed if t.realized_pnl is not None and t.realized_pnl < 0),
        )
        await self.database.save_snapshot(snapshot)
        return snapshot

    async def get_performance_history(self, portfolio_tag: str, days: int = 30) -> List[PerformanceSnapshot]:
        since = self.clock() - timedelta(days=days)
        return await self.database.get_snapshots(portfolio_tag.upper(), since=since)

    # =========================================================================
    # Control surface
    # =========================================================================

    async def set_trading_mode(self, portfolio_tag: str, mode: TradingModeName,
                               reason: str, operator: str = "operator") -> ControlResult:
        controls = self._controls(portfolio_tag)
        async with controls.lock:
            transition = controls.modes.set_mode(mode, reason, source="operator", now=self.clock())
        if transition is None:
            return ControlResult(success=True, message=f"Already in {mode.value} mode")
        await self.audit.append({
            "event": "mode.changed",
            "portfolio": controls.portfolio_tag,
            "from_mode": transition.from_mode.value,
            "to_mode": transition.to_mode.value,
            "reason": reason,
            "operator": operator,
        })
        return ControlResult(
            success=True,
            message=f"{controls.portfolio_tag} switched to {mode.value}",
            data=transition.model_dump(mode="json"),
        )

    async def grant_override(self, portfolio_tag: str, max_position_pct: Decimal,
                             duration_minutes: int, reason: str,
                             granted_by: str = "operator") -> ControlResult:
        controls = self._controls(portfolio_tag)
        limit = self.config.guardrails.max_override_minutes
        if duration_minutes <= 0 or duration_minutes > limit:
            return ControlResult(
                success=False,
                message=f"Override duration must be between 1 and {limit} minutes",
            )
        if not reason.strip():
            return ControlResult(success=False, message="Override requires a reason")

        async with controls.lock:
            try:
                override = controls.modes.grant_override(
                    Decimal(str(max_position_pct)),
                    timedelta(minutes=duration_minutes),
                    reason,
                    granted_by=granted_by,
                    now=self.clock(),
                )
            except ValueError as e:
                return ControlResult(success=False, message=str(e))

        await self.audit.append({
            "event": "override.granted",
            "portfolio": controls.portfolio_tag,
            "max_position_pct": str(override.max_position_pct),
            "expires_at": override.expires_at.isoformat(),
            "granted_by": granted_by,
            "reason": reason,
        })
        return ControlResult(
            success=True,
            message=f"Override active until {override.expires_at.isoformat()}",
            data=override.model_dump(mode="json"),
        )

    async def revoke_override(self, portfolio_tag: str, operator: str = "operator") -> ControlResult:
        controls = self._controls(portfolio_tag)
        async with controls.lock:
            revoked = controls.modes.revoke_override()
        if revoked is None:
            return ControlResult(success=False, message="No override to revoke")
        await self.audit.append({
            "event": "override.revoked",
            "portfolio": controls.portfolio_tag,
            "operator": operator,
        })
        return ControlResult(success=True, message="Override revoked")

    async def update_circuit_breaker_config(self, portfolio_tag: Optional[str] = None,
                                            **changes: Any) -> ControlResult:
        """Change breaker thresholds for one book, or all books when no tag is given."""
        tags = [portfolio_tag.upper()] if portfolio_tag else self.controls.portfolio_tags
        for tag in tags:
            controls = self._controls(tag)
            async with controls.lock:
                try:
                    controls.breaker.update_config(**changes)
                except ValueError as e:
                    return ControlResult(success=False, message=str(e))
        await self.audit.append({
            "event": "circuit_breaker.config_updated",
            "portfolios": tags,
            "changes": {k: str(v) for k, v in changes.items()},
        })
        return ControlResult(success=True, message="Circuit breaker updated", data={"portfolios": tags})

    async def cancel_queued_trade(self, queue_id: str, reason: str = "cancelled by operator") -> ControlResult:
        try:
            trade = await self.queue.cancel(queue_id, reason)
        except KeyError:
            return ControlResult(success=False, message=f"Unknown queued trade {queue_id}")
        except InvalidQueueTransition as e:
            return ControlResult(success=False, message=e.message)
        return ControlResult(success=True, message=f"Cancelled {trade.symbol} {trade.action.value}")

    async def enqueue_trades(self, trades: List[QueuedTrade]):
        """Manually queue trades (e.g. from an external review)."""
        return await self.queue.enqueue_batch(trades)

    async def reset_portfolio(self, portfolio_tag: str,
                              starting_capital: Optional[Decimal] = None) -> ControlResult:
        """Reset a simulated book. Not allowed while a session is active."""
        controls = self._controls(portfolio_tag)
        tag = controls.portfolio_tag
        if tag in self._sessions:
            return ControlResult(success=False, message=f"End the active session for {tag} first")
        reset = getattr(self.portfolio_source, "reset", None)
        if reset is None:
            return ControlResult(success=False, message="Portfolio source does not support reset")
        async with controls.lock:
            reset(tag, starting_capital)
        await self.audit.append({
            "event": "portfolio.reset",
            "portfolio": tag,
            "starting_capital": str(starting_capital) if starting_capital else None,
        })
        return ControlResult(success=True, message=f"{tag} reset")

    async def verify_audit_chain(self, halt_on_failure: bool = True) -> ChainVerification:
        """
        Verify the audit chain end to end.

        Raises:
            ChainVerificationFailed: When broken and ``halt_on_failure`` is set
        """
        result = await self.audit.verify()
        if not result.ok and halt_on_failure:
            await self.halt(f"audit chain broken at entry {result.broken_at}")
            raise ChainVerificationFailed(result.broken_at, result.reason or "")
        return result

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_status(self, portfolio_tag: str) -> EngineStatus:
        controls = self._controls(portfolio_tag)
        tag = controls.portfolio_tag
        now = self.clock()
        portfolio = await self.portfolio_source.get_portfolio(tag)
        return EngineStatus(
            portfolio_tag=tag,
            is_running=tag in self._running_cycles,
            halted=self.is_halted,
            halt_reason=self._halt_reason,
            current_session=self._sessions.get(tag),
            mode=controls.modes.mode,
            override=controls.modes.active_override(now),
            circuit_breaker=controls.breaker.state,
            trades_today=controls.trades_today(now),
            portfolio_value=portfolio.total_value,
            cash=portfolio.cash,
            positions_value=portfolio.positions_value,
            is_bankrupt=portfolio.is_bankrupt,
            sessions_completed=await self.database.count_sessions(tag, SessionStatus.ENDED.value),
            total_decisions=await self.database.count_decisions(tag),
            total_trades=await self.database.count_decisions(tag, DecisionOutcome.APPROVED.value),
        )

    async def get_decisions(self, session_id: Optional[str] = None, symbol: Optional[str] = None,
                            limit: int = 50, portfolio_tag: Optional[str] = None) -> List[TradeDecision]:
        return await self.database.get_decisions(
            session_id=session_id,
            portfolio_tag=portfolio_tag.upper() if portfolio_tag else None,
            symbol=symbol.upper() if symbol else None,
            limit=limit,
        )

    def get_scheduler_status(self) -> SchedulerStatus:
        return self.queue.status(self.clock())

    def list_queue(self, status: Optional[QueueStatus] = None, portfolio_tag: Optional[str] = None,
                   limit: int = 100) -> List[QueuedTrade]:
        return self.queue.list(status=status, portfolio_tag=portfolio_tag, limit=limit)

    async def get_queue_log(self, queue_id: str) -> List[QueueLogEntry]:
        return await self.queue.get_log(queue_id)
