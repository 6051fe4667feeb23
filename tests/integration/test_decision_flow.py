"""Integration tests for the TradeGuard decision flow.

These tests run the engine against real collaborators:
- File-backed SQLite store and JSONL audit chain
- Provider cascade with fallback
- Trade queue driven by the scheduler worker
- Two books trading concurrently
"""
import asyncio
import json
import pytest
import pytest_asyncio
from decimal import Decimal

from tradeguard.audit.hash_chain import AuditLog
from tradeguard.core.engine import CancelToken, TradingEngine
from tradeguard.core.exceptions import ChainVerificationFailed, CycleAlreadyRunning
from tradeguard.core.models import DecisionOutcome, QueueStatus, TradingModeName
from tradeguard.providers.cascade import ProviderCascade
from tradeguard.scheduler.runner import SchedulerRunner
from tradeguard.storage.database import Database

from conftest import (
    MONDAY_EVENING, TUESDAY_OPEN, StaticProvider, audit_events, decisions_body
)


pytestmark = pytest.mark.integration

BUY_AAPL = {"symbol": "AAPL", "action": "BUY", "quantity": 100, "confidence": 0.9}
BUY_MSFT = {"symbol": "MSFT", "action": "BUY", "quantity": 50, "confidence": 0.9}


# =============================================================================
# Fixtures
# =============================================================================

@pytest_asyncio.fixture
async def file_database(tmp_path):
    """SQLite database on disk, so a second engine can reopen it."""
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'tradeguard.db'}")
    await db.initialize()
    yield db
    await db.close()


@pytest.fixture
def audit_path(tmp_path):
    return tmp_path / "audit" / "audit.jsonl"


def build_engine(providers, database, audit, tg_config, market_data, broker, clock,
                 timeout=1.0):
    return TradingEngine(
        cascade=ProviderCascade(providers, timeout_seconds=timeout),
        market_data=market_data,
        executor=broker,
        portfolio_source=broker,
        database=database,
        audit=audit,
        config=tg_config,
        clock=clock,
    )


@pytest_asyncio.fixture
async def disk_engine(tg_config, provider, market_data, broker, file_database, audit_path, clock):
    """Engine writing its audit chain to disk."""
    engine = build_engine([provider], file_database, AuditLog(str(audit_path)),
                          tg_config, market_data, broker, clock)
    await engine.initialize()
    yield engine
    await engine.shutdown()


def tamper_line(path, index, **changes):
    """Rewrite one JSONL audit line's payload in place."""
    lines = path.read_text(encoding="utf-8").splitlines()
    record = json.loads(lines[index])
    record["payload"].update(changes)
    lines[index] = json.dumps(record)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


# =============================================================================
# Full Cycle Tests
# =============================================================================

class TestFullCycle:
    """Test a session from start to finish."""

    @pytest.mark.asyncio
    async def test_session_round_trip(self, disk_engine, provider, broker, file_database):
        provider.body = decisions_body(
            BUY_AAPL,
            {"symbol": "NVDA", "action": "BUY", "quantity": 1000},
            {"symbol": "MSFT", "action": "HOLD", "reasoning": "wait for earnings"},
        )
        session = await disk_engine.start_session("KALIC")

        result = await disk_engine.run_cycle("KALIC")
        ended = await disk_engine.end_session("KALIC")

        assert result.count(DecisionOutcome.APPROVED) == 1
        assert result.count(DecisionOutcome.REJECTED) == 1
        assert result.count(DecisionOutcome.HELD) == 1
        assert ended.decisions_count == 3
        assert ended.trades_count == 1

        stored = await file_database.get_decisions(session_id=session.id)
        assert {d.symbol for d in stored} == {"AAPL", "NVDA", "MSFT"}
        executed = await file_database.get_queued_trades(status=QueueStatus.EXECUTED.value)
        assert [t.symbol for t in executed] == ["AAPL"]

        verification = await disk_engine.verify_audit_chain()
        assert verification.ok
        assert verification.checked == len(disk_engine.audit)

    @pytest.mark.asyncio
    async def test_fallback_provider_answers(self, tg_config, market_data, broker,
                                             test_database, audit_log, clock):
        """A slow primary times out and the secondary's answer is used."""
        slow = StaticProvider("primary", body=decisions_body(BUY_MSFT), delay=0.5)
        backup = StaticProvider("backup", body=decisions_body(BUY_AAPL))
        engine = build_engine([slow, backup], test_database, audit_log,
                              tg_config, market_data, broker, clock, timeout=0.05)
        await engine.initialize()
        await engine.start_session("DC")

        result = await engine.run_cycle("DC")

        assert result.provider_id == "backup"
        assert [d.symbol for d in result.decisions] == ["AAPL"]
        assert result.decisions[0].model_used == "backup"
        assert "cycle.provider_fallback" in audit_events(audit_log)
        await engine.shutdown()
        assert slow.closed and backup.closed


# =============================================================================
# Concurrency Tests
# =============================================================================

class TestConcurrency:
    """Test per-book isolation and single-flight cycles."""

    @pytest.mark.asyncio
    async def test_second_cycle_on_same_book_refused(self, engine, provider):
        provider.body = decisions_body(BUY_AAPL)
        provider.delay = 0.2
        await engine.start_session("KALIC")

        results = await asyncio.gather(
            engine.run_cycle("KALIC"),
            engine.run_cycle("KALIC"),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], CycleAlreadyRunning)
        assert provider.calls == 1

    @pytest.mark.asyncio
    async def test_books_run_concurrently(self, disk_engine, provider, broker):
        provider.body = decisions_body(BUY_AAPL)
        provider.delay = 0.05
        await disk_engine.start_session("KALIC")
        await disk_engine.start_session("DC")

        kalic, dc = await asyncio.gather(disk_engine.run_cycle("KALIC"), disk_engine.run_cycle("DC"))

        assert kalic.decisions[0].outcome == DecisionOutcome.APPROVED
        assert dc.decisions[0].outcome == DecisionOutcome.APPROVED
        assert broker.book("KALIC").positions["AAPL"].quantity == Decimal("100")
        assert broker.book("DC").positions["AAPL"].quantity == Decimal("100")

    @pytest.mark.asyncio
    async def test_modes_are_independent(self, engine, provider):
        """Pausing one book leaves the other trading."""
        await engine.set_trading_mode("KALIC", TradingModeName.PAUSED, "review")
        provider.body = decisions_body(BUY_AAPL)
        await engine.start_session("KALIC")
        await engine.start_session("DC")

        kalic = await engine.run_cycle("KALIC")
        dc = await engine.run_cycle("DC")

        assert kalic.decisions[0].rule_id == "CIRCUIT_BREAKER_PAUSE_ACTIVE"
        assert dc.decisions[0].outcome == DecisionOutcome.APPROVED

    @pytest.mark.asyncio
    async def test_cancel_mid_cycle(self, engine, provider, broker):
        """Cancelling while the provider is thinking drops its answer."""
        provider.body = decisions_body(BUY_AAPL, BUY_MSFT)
        provider.delay = 0.1
        await engine.start_session("KALIC")
        token = CancelToken()

        async def cancel_soon():
            await asyncio.sleep(0.02)
            token.cancel()

        result, _ = await asyncio.gather(
            engine.run_cycle("KALIC", cancel_token=token),
            cancel_soon(),
        )

        assert result.cancelled
        assert result.decisions == []
        assert broker.book("KALIC").positions == {}
        # The book is usable again
        token2 = CancelToken()
        provider.delay = 0
        again = await engine.run_cycle("KALIC", cancel_token=token2)
        assert not again.cancelled


# =============================================================================
# Audit Chain Tests
# =============================================================================

class TestAuditChain:
    """Test tamper detection on the file-backed chain."""

    @pytest.mark.asyncio
    async def test_tampered_entry_halts_trading(self, disk_engine, provider, audit_path):
        provider.body = decisions_body(BUY_AAPL)
        await disk_engine.start_session("KALIC")
        await disk_engine.run_cycle("KALIC")
        await disk_engine.end_session("KALIC")

        tamper_line(audit_path, 1, quantity="999")

        with pytest.raises(ChainVerificationFailed) as exc_info:
            await disk_engine.start_session("KALIC")

        assert exc_info.value.broken_at == 2
        assert disk_engine.is_halted

        resumed = await disk_engine.resume_trading("compliance")
        assert resumed.success

    @pytest.mark.asyncio
    async def test_chain_continues_after_reopen(self, disk_engine, audit_path):
        await disk_engine.start_session("KALIC")
        await disk_engine.end_session("KALIC")

        reopened = AuditLog(str(audit_path))
        await reopened.append({"event": "operator.note", "text": "checked"})

        result = await reopened.verify()
        assert result.ok
        assert result.checked == 3


# =============================================================================
# Queue and Restart Tests
# =============================================================================

class TestQueueLifecycle:
    """Test after-hours orders across a restart and the scheduler worker."""

    @pytest.mark.asyncio
    async def test_queued_order_survives_restart(self, tg_config, provider, market_data, broker,
                                                 file_database, audit_path, clock):
        clock.now = MONDAY_EVENING
        provider.body = decisions_body(BUY_AAPL)
        first = build_engine([provider], file_database, AuditLog(str(audit_path)),
                             tg_config, market_data, broker, clock)
        await first.initialize()
        await first.start_session("KALIC")
        result = await first.run_cycle("KALIC")
        queue_id = result.decisions[0].queued_trade_id
        await first.shutdown()

        second = build_engine([provider], file_database, AuditLog(str(audit_path)),
                              tg_config, market_data, broker, clock)
        await second.initialize()

        assert second.active_session("KALIC") is not None
        assert second.queue.get(queue_id).status == QueueStatus.QUEUED

        runner = SchedulerRunner(second.queue, tg_config.scheduler)
        await runner.run_once(TUESDAY_OPEN)

        assert second.queue.get(queue_id).status == QueueStatus.EXECUTED
        log = await second.get_queue_log(queue_id)
        assert [entry.event for entry in log] == ["queued", "executing", "executed"]
        assert broker.book("KALIC").positions["AAPL"].quantity == Decimal("100")

    @pytest.mark.asyncio
    async def test_runner_drives_cycles(self, engine, provider, tg_config):
        provider.body = decisions_body(BUY_AAPL)
        await engine.start_session("KALIC")
        calls = []

        async def run_cycles():
            calls.append(await engine.run_cycle("KALIC"))

        runner = SchedulerRunner(engine.queue, tg_config.scheduler, run_cycles=run_cycles)
        await runner.run_once(TUESDAY_OPEN)
        await runner.run_once(TUESDAY_OPEN)

        assert len(calls) == 1
        assert calls[0].decisions[0].outcome == DecisionOutcome.APPROVED

    @pytest.mark.asyncio
    async def test_runner_start_stop(self, engine, tg_config):
        runner = SchedulerRunner(engine.queue, tg_config.scheduler)

        await runner.start()
        assert runner.is_running
        assert engine.get_scheduler_status().running

        await runner.stop()
        assert not runner.is_running
        assert not engine.get_scheduler_status().running
