# ========================================================
# tasks/periodic_tasks.py
# ========================================================
"""
Periodic background task manager for:
- Contest settlement (finalise / cancel ended contests)
- Notification delivery
"""
import asyncio

from context import AppContext
from logging_setup import logger

from . import settlement, notifier


# ------------------------------------------
# Start All Tasks
# --------------------------------------------
async def start_all_tasks(ctx: AppContext, loop: asyncio.AbstractEventLoop = None) -> list[asyncio.Task]:
    """
    Boot all repeating service loops (non-blocking)
    """
    if loop is None:
        loop = asyncio.get_running_loop()

    scheduler = settlement.SettlementScheduler(ctx)
    delivery = notifier.NotificationJob(ctx, notifier.build_push_sender(ctx.settings))

    tasks = [
        loop.create_task(scheduler.loop(), name="SettlementLoop"),
        loop.create_task(delivery.loop(), name="NotifierLoop"),
    ]

    logger.info("🚀 All periodic background tasks are now running")
    return tasks
