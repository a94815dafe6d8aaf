"""
Schedule clock - periodic tick calling dispatch_due_schedules(now).
"""
import asyncio
import logging
from typing import Optional

from flow_automation.flow_engine.errors import FlowEngineError
from flow_automation.utils import utcnow

logger = logging.getLogger(__name__)


class ScheduleClock:
    """
    Usage:
        clock = ScheduleClock(dispatcher, tick_seconds=60)
        await clock.run()      # until clock.stop()
    """

    def __init__(self, dispatcher, tick_seconds: float = 60, clock=None):
        self.dispatcher = dispatcher
        self.tick_seconds = tick_seconds
        self.clock = clock or utcnow
        self._stopped: Optional[asyncio.Event] = None

    async def tick(self):
        """
        One dispatch round. Failures are logged so the clock keeps running.
        """
        now = self.clock()
        try:
            executions = await self.dispatcher.dispatch_due_schedules(now)
        except FlowEngineError as e:
            logger.error(f"Schedule dispatch at {now.isoformat()} failed: {e}")
            return []
        for execution in executions:
            logger.info(f"Scheduled execution {execution.id} finished: {execution.status}")
        return executions

    async def run(self):
        self._stopped = asyncio.Event()
        logger.info(f"Schedule clock started (every {self.tick_seconds}s)")

        while not self._stopped.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.tick_seconds)
            except asyncio.TimeoutError:
                continue

        logger.info("Schedule clock stopped")

    def stop(self):
        if self._stopped is not None:
            self._stopped.set()
