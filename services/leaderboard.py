# ==================================================================
# services/leaderboard.py: all-time player leaderboard
# ==================================================================
from sqlalchemy import select

from context import AppContext
from db import UnitOfWork
from models import User

DEFAULT_QUERY_LIMIT = 1000


async def get_leaderboard(ctx: AppContext, limit: int = DEFAULT_QUERY_LIMIT) -> list[dict]:
    """
    Active users who played at least once, best first: earnings (real,
    then bonus), contests won, contests played, then oldest account.
    """
    async with UnitOfWork(ctx.session_factory) as session:
        result = await session.execute(
            select(User)
            .where(User.is_active.is_(True), User.total_played > 0)
            .order_by(
                User.total_earning_real.desc(),
                User.total_earning_bonus.desc(),
                User.contest_won.desc(),
                User.total_played.desc(),
                User.id.asc(),
            )
            .limit(max(limit, 0))
        )
        return [user.leaderboard_dict() for user in result.scalars().all()]
