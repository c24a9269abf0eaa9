"""
Agent Scheduler - owns the periodic intervention tick
"""

import asyncio
from typing import Awaitable, Callable, List, Optional

from penny.agents.intervention_gate import InterventionGate
from penny.config import AGENT_CONFIG
from penny.core.models import Intervention, PortfolioSnapshot
from penny.utils.logger import AgentLogger


class AgentScheduler:
    """
    Runs one tick on start, then one every interval until stopped.

    Ticks issued through the same scheduler (periodic or via trigger) are
    serialized with a lock, so the gate's state has a single writer.
    """

    def __init__(self, gate: InterventionGate,
                 snapshot_provider: Callable[[], Awaitable[PortfolioSnapshot]],
                 interval_seconds: Optional[float] = None,
                 logger: Optional[AgentLogger] = None):
        self.gate = gate
        self.snapshot_provider = snapshot_provider
        self.interval_seconds = interval_seconds or AGENT_CONFIG["tick_interval_seconds"]
        self.logger = logger
        self.tick_count = 0
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def trigger(self) -> List[Intervention]:
        """Run a tick now, waiting for any tick already in progress."""
        async with self._lock:
            snapshot = await self.snapshot_provider()
            fired = await self.gate.run_tick(snapshot)
            self.tick_count += 1
            return fired

    async def _safe_tick(self):
        try:
            await self.trigger()
        except Exception as e:
            if self.logger:
                self.logger.log_error("scheduled_tick", e)

    async def _loop(self):
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self._safe_tick()

    async def start(self):
        """Run the first tick immediately, then schedule the rest."""
        if self.is_running:
            return
        await self._safe_tick()
        self._task = asyncio.create_task(self._loop(), name="penny-agent-scheduler")
        if self.logger:
            self.logger.log_step("scheduler_started", {"interval_seconds": self.interval_seconds})

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        if self.logger:
            self.logger.log_step("scheduler_stopped", {"ticks": self.tick_count})
