"""
TradeGuard - Main Entry Point

Semi-autonomous trading decisions for the KALIC and DC paper books, governed
by trading modes, guardrails and a circuit breaker, with a hash-chained
audit trail.

Usage:
    # Check configuration
    python main.py check

    # Initialize database
    python main.py init-db

    # Run one decision cycle for a book (opens a session if needed)
    python main.py run-cycle --portfolio KALIC --prices prices.json

    # Run the scheduler with automatic cycles until interrupted
    python main.py serve --prices prices.json

    # Show status, queue and audit chain
    python main.py status --portfolio DC
    python main.py queue --status queued
    python main.py verify-audit
"""

import argparse
import asyncio
import json
import signal
from pathlib import Path
from typing import Dict, Optional

import structlog

from tradeguard.audit.hash_chain import AuditLog
from tradeguard.core.config import tradeguard_config
from tradeguard.core.context import InMemoryMarketData
from tradeguard.core.engine import TradingEngine
from tradeguard.core.exceptions import TradeGuardError
from tradeguard.core.models import QueueStatus, TradingModeName
from tradeguard.execution.paper import PaperBroker
from tradeguard.providers.cascade import create_cascade
from tradeguard.scheduler.runner import SchedulerRunner
from tradeguard.storage.database import Database
from tradeguard.utils.logging_config import setup_logging

logger = structlog.get_logger(__name__)


def load_prices(path: Optional[str]) -> InMemoryMarketData:
    """Load ``{"SYMBOL": price}`` from a JSON file into a market data source."""
    market_data = InMemoryMarketData()
    if path:
        with Path(path).open("r", encoding="utf-8") as fh:
            market_data.load_prices(json.load(fh))
        logger.info("app.prices_loaded", path=path, symbols=len(market_data.symbols))
    return market_data


class TradeGuardApp:
    """
    Wires the engine to its collaborators.

    Paper books live in memory, so their cash and positions start from
    PORTFOLIO_STARTING_CAPITAL on every run; sessions, decisions, the queue
    and the audit chain persist.
    """

    def __init__(self, prices_path: Optional[str] = None):
        self.prices_path = prices_path
        self.config = tradeguard_config

        # Components
        self.database: Optional[Database] = None
        self.audit: Optional[AuditLog] = None
        self.engine: Optional[TradingEngine] = None
        self.scheduler: Optional[SchedulerRunner] = None

        # State
        self._shutdown_event = asyncio.Event()
        self._initialized = False

    async def initialize(self):
        """Initialize all components based on configuration."""
        logger.info(
            "app.initializing",
            portfolios=self.config.portfolio.portfolio_tags,
            providers=self.config.providers.model_priority,
            paper=self.config.is_paper_trading,
        )

        self.database = Database()
        await self.database.initialize()

        self.audit = AuditLog(self.config.audit.audit_file)

        market_data = load_prices(self.prices_path)
        broker = PaperBroker(
            market_data,
            self.config.portfolio.portfolio_tags,
            starting_capital=self.config.portfolio.starting_capital,
        )

        self.engine = TradingEngine(
            cascade=create_cascade(self.config.providers),
            market_data=market_data,
            executor=broker,
            portfolio_source=broker,
            database=self.database,
            audit=self.audit,
            config=self.config,
        )
        await self.engine.initialize()

        self._initialized = True
        logger.info("app.initialized")

    async def run_cycles(self):
        """Run one cycle for every book with an active session."""
        for tag in self.config.portfolio.portfolio_tags:
            if self.engine.active_session(tag) is None:
                continue
            try:
                await self.engine.run_cycle(tag)
            except TradeGuardError as e:
                logger.error("app.cycle_failed", portfolio=tag, kind=e.kind, error=e.message)

    async def serve(self):
        """Open sessions for every book and run the scheduler until stopped."""
        if not self._initialized:
            raise RuntimeError("App not initialized. Call initialize() first.")

        for tag in self.config.portfolio.portfolio_tags:
            if self.engine.active_session(tag) is None:
                await self.engine.start_session(tag, notes="opened by scheduler")

        self.scheduler = SchedulerRunner(
            self.engine.queue,
            self.config.scheduler,
            run_cycles=self.run_cycles if self.config.scheduler.auto_cycle_enabled else None,
            on_halt=self.engine.halt,
        )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._signal_handler)

        await self.scheduler.start()
        await self._shutdown_event.wait()

    async def shutdown(self):
        """Perform graceful shutdown."""
        logger.info("app.shutting_down")

        if self.scheduler:
            await self.scheduler.stop()

        if self.engine:
            await self.engine.shutdown()

        if self.database:
            await self.database.close()

        logger.info("app.shutdown_complete")

    def _signal_handler(self):
        logger.info("app.shutdown_signal_received")
        self._shutdown_event.set()


def print_status(status: Dict):
    """Print formatted status output."""
    print("\n" + "=" * 60)
    print(f"           TRADEGUARD - {status['portfolio_tag']} STATUS")
    print("=" * 60)

    print(f"\nHalted: {status['halted']}" + (f" ({status['halt_reason']})" if status['halted'] else ""))
    print(f"Mode: {status['mode'].upper()}")
    if status.get("override"):
        override = status["override"]
        print(f"Override: {override['max_position_pct']}% until {override['expires_at']}")

    session = status.get("current_session")
    print(f"Session: {session['id'] if session else 'none'}")

    print("\nPortfolio:")
    print(f"   Value: {status['portfolio_value']}")
    print(f"   Cash: {status['cash']}")
    print(f"   Positions: {status['positions_value']}")
    print(f"   Trades today: {status['trades_today']}")

    cb = status["circuit_breaker"]
    print("\nCircuit Breaker:")
    print(f"   Daily realized P&L: {cb['daily_realized_pnl']}")
    print(f"   Consecutive losses: {cb['consecutive_losses']}")
    if cb.get("paused_until"):
        print(f"   Paused until: {cb['paused_until']}")
    if cb.get("last_trigger_reason"):
        print(f"   Last trigger: {cb['last_trigger_reason']}")

    print(f"\nDecisions: {status['total_decisions']}  Trades: {status['total_trades']}")
    print("\n" + "=" * 60)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="TradeGuard - risk-governed trading decisions"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("check", help="Check configuration and exit")
    sub.add_parser("init-db", help="Initialize database and exit")
    sub.add_parser("verify-audit", help="Verify the audit hash chain")

    status = sub.add_parser("status", help="Show book status")
    status.add_argument("--portfolio", default="KALIC")
    status.add_argument("--prices", help="JSON file of symbol prices")

    queue = sub.add_parser("queue", help="List queued trades")
    queue.add_argument("--status", choices=[s.value for s in QueueStatus])
    queue.add_argument("--portfolio")

    cancel = sub.add_parser("cancel", help="Cancel a queued trade")
    cancel.add_argument("queue_id")
    cancel.add_argument("--reason", default="cancelled from CLI")

    cycle = sub.add_parser("run-cycle", help="Run one decision cycle")
    cycle.add_argument("--portfolio", default="KALIC")
    cycle.add_argument("--prices", help="JSON file of symbol prices")

    serve = sub.add_parser("serve", help="Run the scheduler until interrupted")
    serve.add_argument("--prices", help="JSON file of symbol prices")

    mode = sub.add_parser("set-mode", help="Switch a book's trading mode")
    mode.add_argument("--portfolio", default="KALIC")
    mode.add_argument("mode", choices=[m.value for m in TradingModeName])
    mode.add_argument("--reason", required=True)

    return parser


async def main():
    """Main entry point."""
    args = build_parser().parse_args()

    setup_logging(json_output=False)

    if args.command == "check":
        validation = tradeguard_config.validate_configuration()
        print("\n" + "=" * 60)
        print("           CONFIGURATION CHECK")
        print("=" * 60)
        if validation["valid"]:
            print("\n✓ Configuration is valid")
        else:
            print("\n✗ Configuration errors:")
            for issue in validation["issues"]:
                print(f"   - {issue}")
        print(f"\nPortfolios: {', '.join(tradeguard_config.portfolio.portfolio_tags)}")
        print(f"Providers: {', '.join(tradeguard_config.providers.model_priority)}")
        print(f"Default mode: {tradeguard_config.modes.default_mode}")
        print("\n" + "=" * 60)
        return

    if args.command == "init-db":
        print("\nInitializing database...")
        db = Database()
        await db.initialize()
        print("✓ Database initialized successfully")
        await db.close()
        return

    if args.command == "verify-audit":
        result = await AuditLog(tradeguard_config.audit.audit_file).verify()
        if result.ok:
            print(f"✓ Audit chain intact ({result.checked} entries)")
        else:
            print(f"✗ Audit chain broken at entry {result.broken_at}: {result.reason}")
        return

    app = TradeGuardApp(prices_path=getattr(args, "prices", None))
    try:
        await app.initialize()

        if args.command == "serve":
            await app.serve()
            return

        engine = app.engine
        if args.command == "status":
            status = await engine.get_status(args.portfolio)
            print_status(status.model_dump(mode="json"))
        elif args.command == "queue":
            trades = engine.list_queue(
                status=QueueStatus(args.status) if args.status else None,
                portfolio_tag=args.portfolio,
            )
            scheduler = engine.get_scheduler_status()
            print(f"\nMarket open: {scheduler.market_open}  Next open: {scheduler.next_market_open}")
            for trade in trades:
                print(
                    f"   {trade.id}  {trade.portfolio_tag:<6} {trade.action.value:<4} "
                    f"{trade.quantity} {trade.symbol}  [{trade.status.value}]"
                )
            if not trades:
                print("   Queue is empty")
        elif args.command == "cancel":
            result = await engine.cancel_queued_trade(args.queue_id, args.reason)
            print(("✓ " if result.success else "✗ ") + result.message)
        elif args.command == "set-mode":
            result = await engine.set_trading_mode(
                args.portfolio, TradingModeName(args.mode), args.reason
            )
            print(("✓ " if result.success else "✗ ") + result.message)
        elif args.command == "run-cycle":
            if engine.active_session(args.portfolio) is None:
                await engine.start_session(args.portfolio, notes="opened from CLI")
            result = await engine.run_cycle(args.portfolio)
            print(f"\nCycle for {result.portfolio_tag} via {result.provider_id}:")
            for decision in result.decisions:
                detail = decision.rule_id or ""
                print(
                    f"   {decision.action.value:<4} {decision.symbol:<6} "
                    f"{decision.outcome.value:<9} {detail}"
                )
            if result.malformed_count:
                print(f"   ({result.malformed_count} malformed proposals skipped)")

    except TradeGuardError as e:
        logger.error("main.error", kind=e.kind, error=e.message)
        print(f"\n✗ {e.message}")
    except KeyboardInterrupt:
        print("\n\nShutdown requested by user...")
    finally:
        await app.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
