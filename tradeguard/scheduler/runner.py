"""Background worker that drives the trade queue and, optionally, cycles."""
import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

import structlog

from tradeguard.core.config import SchedulerConfig
from tradeguard.core.exceptions import StoreUnavailable
from tradeguard.core.models import utc_now
from tradeguard.scheduler.trade_queue import TradeQueue

logger = structlog.get_logger(__name__)

CycleCallback = Callable[[], Awaitable[None]]
HaltCallback = Callable[[str], Awaitable[None]]


class SchedulerRunner:
    """
    Periodic worker.

    Calls ``TradeQueue.tick`` every ``tick_interval_seconds`` and, when a
    cycle callback is configured, runs it every ``cycle_interval_minutes``.
    A store failure halts the worker and is reported through ``on_halt``.
    """

    def __init__(
        self,
        queue: TradeQueue,
        config: Optional[SchedulerConfig] = None,
        run_cycles: Optional[CycleCallback] = None,
        on_halt: Optional[HaltCallback] = None,
    ):
        self.queue = queue
        self.config = config or SchedulerConfig()
        self.run_cycles = run_cycles
        self.on_halt = on_halt
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._last_cycle: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        """Start the worker task."""
        if self.is_running:
            return
        self._stop.clear()
        self.queue.running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "scheduler.started",
            tick_interval=self.config.tick_interval_seconds,
            auto_cycle=self.run_cycles is not None,
        )

    async def stop(self):
        """Signal the worker to stop and wait for it."""
        self._stop.set()
        if self._task:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self.queue.running = False
        logger.info("scheduler.stopped")

    async def wait(self):
        if self._task:
            await self._task

    async def _loop(self):
        interval = self.config.tick_interval_seconds
        while not self._stop.is_set():
            try:
                await self.run_once()
            except StoreUnavailable as e:
                logger.critical("scheduler.store_unavailable", error=str(e))
                if self.on_halt:
                    await self.on_halt(f"store unavailable: {e}")
                break
            except Exception as e:
                logger.error("scheduler.loop_error", error=str(e), exc_info=True)

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        self.queue.running = False

    async def run_once(self, now: Optional[datetime] = None):
        """One iteration: optional cycles, then a queue tick."""
        now = now or utc_now()
        if self.run_cycles is not None and self._cycle_due(now):
            self._last_cycle = now
            await self.run_cycles()
        return await self.queue.tick(now)

    def _cycle_due(self, now: datetime) -> bool:
        if self._last_cycle is None:
            return True
        return now - self._last_cycle >= timedelta(minutes=self.config.cycle_interval_minutes)
