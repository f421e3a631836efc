# ========================================================
# tasks/settlement.py
# ========================================================
"""
Settlement scheduler: finalise contests whose end time has passed.
Runs every FINALIZE_CONTEST_INTERVAL_SECONDS (default: 5 minutes).
"""
import asyncio

from context import AppContext
from logging_setup import logger
from services.settlement import check_and_finalize_contests


class SettlementScheduler:
    """Single logical worker; passes never overlap."""

    def __init__(self, ctx: AppContext):
        self.ctx = ctx
        self._lock = asyncio.Lock()

    async def run_once(self) -> dict[int, str]:
        if self._lock.locked():
            logger.warning("⏳ Settlement pass still running, skipping this tick")
            return {}
        async with self._lock:
            outcomes = await check_and_finalize_contests(self.ctx)
        if outcomes:
            logger.info(f"🏁 Settlement pass done: {outcomes}")
        else:
            logger.debug("No contests due for settlement.")
        return outcomes

    async def loop(self):
        interval = self.ctx.settings.finalize_contest_interval
        while True:
            try:
                await self.run_once()
            except Exception as e:
                logger.exception(f"Settlement task error: {e}")
            await asyncio.sleep(interval)
