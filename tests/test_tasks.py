import asyncio

from models import Contest, ContestStatus
from tasks import start_background_tasks, stop_background_tasks
from tasks.notifier import build_push_sender
from tasks.settlement import SettlementScheduler


class TestSettlementScheduler:
    async def test_run_once_settles_due_contests(self, ctx, factory, clock):
        contest = await factory.contest(min_required_players=1)
        clock.set(contest["endTime"])

        outcomes = await SettlementScheduler(ctx).run_once()

        assert outcomes == {contest["id"]: "CANCELLED"}
        assert (await factory.get(Contest, contest["id"])).status == ContestStatus.CANCELLED

    async def test_overlapping_pass_is_skipped(self, ctx):
        scheduler = SettlementScheduler(ctx)
        async with scheduler._lock:
            assert await scheduler.run_once() == {}


class TestBackgroundTasks:
    async def test_start_and_stop(self, ctx, factory, clock):
        contest = await factory.contest()
        clock.set(contest["endTime"])

        await start_background_tasks(ctx)
        for _ in range(50):
            await asyncio.sleep(0.05)
            if (await factory.get(Contest, contest["id"])).status == ContestStatus.ENDED:
                break
        await stop_background_tasks()

        assert (await factory.get(Contest, contest["id"])).status == ContestStatus.ENDED

    def test_no_sender_without_token(self, settings):
        assert build_push_sender(settings) is None
