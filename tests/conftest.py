"""
Shared fixtures: a fresh SQLite database per test, an AppContext with a
controllable clock and seeded RNG, and a small factory for users,
balances and contests.
"""
import random

import pytest
from sqlalchemy import select

from config import Settings
from context import AppContext
from db import UnitOfWork, build_engine, build_session_factory, init_db
from models import PrizeSelection, User
from services import contests, ledger
from utils.money import Money

START_TS = 1_700_000_000


class Clock:
    """Callable epoch clock that only moves when told to."""

    def __init__(self, now: int = START_TS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> int:
        self.now += seconds
        return self.now

    def set(self, ts: int) -> int:
        self.now = ts
        return self.now


class Factory:
    def __init__(self, ctx: AppContext):
        self.ctx = ctx

    async def user(self, name: str = "player", tg_id: int | None = None, referral_code: str | None = None, is_active: bool = True) -> int:
        async with UnitOfWork(self.ctx.session_factory) as session:
            user = User(
                name=name,
                tg_id=tg_id,
                referral_code=referral_code,
                is_active=is_active,
                created_ts=self.ctx.now(),
            )
            session.add(user)
            await session.flush()
            return user.id

    async def fund(self, user_id: int, real: int = 0, bonus: int = 0, withdrawable: bool = False):
        async with UnitOfWork(self.ctx.session_factory) as session:
            await ledger.adjust(session, user_id, real, bonus, update_withdrawable=withdrawable, ts=self.ctx.now())

    async def balance(self, user_id: int) -> Money:
        async with UnitOfWork(self.ctx.session_factory) as session:
            return await ledger.get_balance(session, user_id)

    async def rows(self, model, *where) -> list:
        async with UnitOfWork(self.ctx.session_factory) as session:
            stmt = select(model)
            if where:
                stmt = stmt.where(*where)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get(self, model, pk):
        async with UnitOfWork(self.ctx.session_factory) as session:
            return await session.get(model, pk)

    def contest_props(self, **overrides) -> dict:
        now = self.ctx.now()
        props = {
            "title": "Friday Quiz",
            "entry_fee": 100,
            "entry_fee_max_bonus_money": 20,
            "prize_selection": PrizeSelection.TOP_WINNERS.value,
            "top_winners_count": 3,
            "prize_value_real": 100,
            "prize_value_bonus": 10,
            "start_time": now,
            "end_time": now + 3600,
            "min_required_players": 0,
        }
        props.update(overrides)
        return props

    @staticmethod
    def questions(count: int = 3) -> list[dict]:
        return [
            {
                "question_no": n,
                "question_text": f"Question {n}?",
                "options": [{"optionId": i, "optionText": f"Option {i}"} for i in range(1, 5)],
                "correct_option_id": 1,
            }
            for n in range(1, count + 1)
        ]

    async def contest(self, activate: bool = True, question_count: int = 3, **overrides) -> dict:
        created = await contests.create_contest(
            self.ctx, self.contest_props(**overrides), self.questions(question_count)
        )
        if activate:
            return await contests.activate_contest(self.ctx, created["id"])
        return created


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite+aiosqlite://",
        settlement_max_attempts=3,
        notification_max_retry=2,
        notification_fetch_limit=50,
        withdraw_min_amount=100,
        referral_bonus=50,
        referrer_bonus=25,
        app_upi_id="contests@upi",
    )


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'contest.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def ctx(settings, engine, clock):
    return AppContext(
        settings=settings,
        session_factory=build_session_factory(engine),
        clock=clock,
        rng=random.Random(1234),
    )


@pytest.fixture
def factory(ctx):
    return Factory(ctx)
